"""
Preset strategy instances matching the desk's standard setups.
Weekdays follow datetime.weekday(): Monday == 0.
"""

from datetime import time
from typing import Dict, List

from hedgeflow.core.config import StrategyInstanceConfig, StrategyKind, build_instance_config
from hedgeflow.core.exceptions import ConfigurationError


def nifty_iron_condor(**overrides) -> StrategyInstanceConfig:
    data = dict(
        id="ic-nifty",
        kind=StrategyKind.SPREAD,
        instrument="NIFTY",
        underlying_symbol="NSE:NIFTY 50",
        exchange="NFO",
        lot_size=75,
        strike_step=50,
        otm_pct=0.5,
        hedge_width=150,
        target_credit=12.0,
        entry_weekdays=[0],
        entry_start=time(9, 30),
        entry_end=time(10, 59),
        expiry_weekday=1,
        exit_weekday="expiry",
        exit_time=time(15, 15),
        max_rolls=2,
        max_system_rolls=1,
        max_discretionary_rolls=1,
        max_loss_pct=6.0,
        iron_fly_exit_pct=2.0,
    )
    data.update(overrides)
    return build_instance_config(data)


def sensex_iron_condor(**overrides) -> StrategyInstanceConfig:
    data = dict(
        id="ic-sensex",
        kind=StrategyKind.SPREAD,
        instrument="SENSEX",
        underlying_symbol="BSE:SENSEX",
        exchange="BFO",
        lot_size=20,
        strike_step=100,
        otm_pct=0.5,
        hedge_width=500,
        target_credit=38.0,
        entry_weekdays=[2],
        entry_start=time(9, 30),
        entry_end=time(10, 59),
        expiry_weekday=3,
        exit_weekday="expiry",
        exit_time=time(15, 15),
    )
    data.update(overrides)
    return build_instance_config(data)


def sensex_delta_neutral(**overrides) -> StrategyInstanceConfig:
    data = dict(
        id="dn-sensex",
        kind=StrategyKind.DELTA_NEUTRAL,
        instrument="SENSEX",
        underlying_symbol="BSE:SENSEX",
        exchange="BFO",
        lot_size=20,
        strike_step=100,
        buy_delta=0.50,
        sell_delta=0.40,
        risk_free_rate=0.065,
        default_iv=0.15,
        entry_weekdays=[4],
        entry_start=time(15, 20),
        entry_end=time(15, 25),
        expiry_weekday=3,
        exit_weekday=0,
        exit_time=time(15, 15),
        combined_stop_fraction=0.60,
        leg_stop_fraction=0.60,
        trail_enabled=True,
        max_rolls=0,
        max_system_rolls=0,
        max_discretionary_rolls=0,
    )
    data.update(overrides)
    return build_instance_config(data)


def nifty_atm_scalp(**overrides) -> StrategyInstanceConfig:
    data = dict(
        id="scalp-nifty",
        kind=StrategyKind.SINGLE_LEG,
        instrument="NIFTY",
        underlying_symbol="NSE:NIFTY 50",
        exchange="NFO",
        lot_size=65,
        strike_step=50,
        entry_weekdays=[0, 1, 2, 3, 4],
        entry_start=time(9, 30),
        entry_end=time(14, 30),
        expiry_weekday=1,
        exit_weekday="daily",
        exit_time=time(15, 21),
        leg_stop_fraction=0.30,
        trail_enabled=True,
        max_loss_pct=None,
        max_rolls=0,
        max_system_rolls=0,
        max_discretionary_rolls=0,
        product="MIS",
        entry_cadence=3,
        monitor_cadence=3,
        expiry_monitor_cadence=3,
    )
    data.update(overrides)
    return build_instance_config(data)


PRESETS = {
    "ic-nifty": nifty_iron_condor,
    "ic-sensex": sensex_iron_condor,
    "dn-sensex": sensex_delta_neutral,
    "scalp-nifty": nifty_atm_scalp,
}


def preset_configs(names: List[str]) -> Dict[str, StrategyInstanceConfig]:
    unknown = [n for n in names if n not in PRESETS]
    if unknown:
        raise ConfigurationError(f"Unknown presets: {', '.join(unknown)}")
    return {name: PRESETS[name]() for name in names}
