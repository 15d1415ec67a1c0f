"""
Test configuration and shared fixtures for Hedgeflow backend tests.
"""

from datetime import date, datetime
from typing import Optional

import pytest

from hedgeflow.brokers.paper import PaperBroker
from hedgeflow.core.config import StrategyKind, build_instance_config
from hedgeflow.core.events import InMemoryNotificationChannel
from hedgeflow.execution.models import Leg, Position, PositionStatus, net_credit
from hedgeflow.schemas.broker import OptionType, OrderSide
from hedgeflow.services.persistence import InMemoryPersistenceSink, WriteBehindQueue


# Monday 6 Jan 2025; Tuesday 7 Jan is the NIFTY weekly expiry
MONDAY = datetime(2025, 1, 6, 9, 30)
EXPIRY = date(2025, 1, 7)


# =============================================================================
# Configs
# =============================================================================

@pytest.fixture
def spread_config():
    """NIFTY iron condor instance."""
    return build_instance_config(dict(
        id="ic-test",
        kind=StrategyKind.SPREAD,
        instrument="NIFTY",
        underlying_symbol="NSE:NIFTY 50",
        lot_size=75,
        strike_step=50,
        target_credit=12.0,
    ))


@pytest.fixture
def delta_neutral_config():
    """SENSEX delta-neutral instance with leg stops and trailing."""
    return build_instance_config(dict(
        id="dn-test",
        kind=StrategyKind.DELTA_NEUTRAL,
        instrument="SENSEX",
        underlying_symbol="BSE:SENSEX",
        exchange="BFO",
        lot_size=20,
        strike_step=100,
        combined_stop_fraction=0.6,
        leg_stop_fraction=0.6,
        trail_enabled=True,
        max_rolls=0,
        max_system_rolls=0,
        max_discretionary_rolls=0,
    ))


@pytest.fixture
def single_leg_config():
    """ATM single-leg instance trailing a 20-lot BUY."""
    return build_instance_config(dict(
        id="scalp-test",
        kind=StrategyKind.SINGLE_LEG,
        instrument="NIFTY",
        underlying_symbol="NSE:NIFTY 50",
        lot_size=20,
        strike_step=50,
        trail_enabled=True,
        max_loss_pct=None,
        exit_weekday="daily",
    ))


# =============================================================================
# Positions
# =============================================================================

def make_leg(
    leg_id: str,
    side: OrderSide,
    option_type: OptionType,
    entry: float,
    current: Optional[float] = None,
    quantity: int = 75,
    strike: float = 24000,
) -> Leg:
    leg = Leg(
        leg_id=leg_id,
        side=side,
        option_type=option_type,
        strike=strike,
        symbol=f"NIFTY25107{int(strike)}{option_type.value}",
        exchange="NFO",
        quantity=quantity,
        entry_premium=entry,
        expiry=EXPIRY,
        opened_at=MONDAY,
    )
    if current is not None:
        leg.current_premium = current
    return leg


def condor_legs(quantity: int = 75):
    """Call spread credit 12 (15 - 3) and put spread credit 12 (14 - 2)."""
    return [
        make_leg("CE_BUY", OrderSide.BUY, OptionType.CALL, 3.0, quantity=quantity, strike=24300),
        make_leg("CE_SELL", OrderSide.SELL, OptionType.CALL, 15.0, quantity=quantity, strike=24150),
        make_leg("PE_BUY", OrderSide.BUY, OptionType.PUT, 2.0, quantity=quantity, strike=23700),
        make_leg("PE_SELL", OrderSide.SELL, OptionType.PUT, 14.0, quantity=quantity, strike=23850),
    ]


def make_position(legs, kind=StrategyKind.SPREAD, quantity: int = 75, instance_id: str = "ic-test") -> Position:
    credit = net_credit(legs)
    return Position(
        position_id=f"{instance_id}-0001",
        instance_id=instance_id,
        instrument="NIFTY",
        kind=kind,
        entry_date=MONDAY,
        expiry_date=EXPIRY,
        spot_at_entry=24000.0,
        legs=legs,
        status=PositionStatus.ACTIVE,
        quantity=quantity,
        entry_credit=credit,
        total_credit=credit,
    )


@pytest.fixture
def condor_position():
    return make_position(condor_legs())


# =============================================================================
# Collaborators
# =============================================================================

@pytest.fixture
def notifier():
    return InMemoryNotificationChannel()


@pytest.fixture
def persistence_sink():
    return InMemoryPersistenceSink()


@pytest.fixture
def persistence(persistence_sink):
    return WriteBehindQueue(persistence_sink, retry_delay=0)


@pytest.fixture
def paper_broker():
    return PaperBroker()
