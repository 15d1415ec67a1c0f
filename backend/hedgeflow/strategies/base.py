"""
Topology Builders
Hedgeflow Options Engine

A builder turns a spot price and an option chain into candidate legs for
one strategy topology. Builders never place orders and never read the
clock; `now` always comes from the caller.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from loguru import logger

from hedgeflow.core.config import StrategyInstanceConfig, StrategyKind
from hedgeflow.core.exceptions import ConfigurationError
from hedgeflow.execution.models import Leg
from hedgeflow.schemas.broker import OptionContract, OptionType, OrderSide

# Quotes for contracts, keyed by contract symbol
QuoteFn = Callable[[List[OptionContract]], Awaitable[Dict[str, float]]]

EXPIRY_CUTOFF = time(15, 30)


@dataclass
class EntryCandidate:
    legs: List[Leg]
    expiry: date


class TopologyBuilder(ABC):
    kind: StrategyKind

    def __init__(self, config: StrategyInstanceConfig):
        self.config = config

    def validate(self) -> None:
        """Raise ConfigurationError when the config cannot drive this topology."""
        if self.config.kind != self.kind:
            raise ConfigurationError(
                f"{type(self).__name__} cannot run {self.config.kind.value} instance {self.config.id}"
            )

    def in_entry_window(self, now: datetime) -> bool:
        cfg = self.config
        return now.weekday() in cfg.entry_weekdays and cfg.entry_start <= now.time() <= cfg.entry_end

    def select_expiry(self, chain: Sequence[OptionContract], today: date) -> Optional[date]:
        """Nearest expiry on or after today, preferring the configured expiry weekday."""
        expiries = sorted({c.expiry for c in chain if c.expiry >= today})
        if not expiries:
            return None
        preferred = [e for e in expiries if e.weekday() == self.config.expiry_weekday]
        return preferred[0] if preferred else expiries[0]

    @staticmethod
    def find_contract(
        chain: Sequence[OptionContract],
        expiry: date,
        strike: float,
        option_type: OptionType,
    ) -> Optional[OptionContract]:
        for contract in chain:
            if contract.expiry == expiry and contract.option_type == option_type and contract.strike == strike:
                return contract
        return None

    def years_to_expiry(self, expiry: date, now: datetime) -> float:
        expiry_at = datetime.combine(expiry, EXPIRY_CUTOFF, tzinfo=now.tzinfo)
        return max((expiry_at - now).total_seconds(), 0.0) / 86400.0 / 365.0

    def make_leg(
        self,
        leg_id: str,
        side: OrderSide,
        contract: OptionContract,
        premium: float,
        delta: Optional[float] = None,
    ) -> Leg:
        return Leg(
            leg_id=leg_id,
            side=side,
            option_type=contract.option_type,
            strike=contract.strike,
            symbol=contract.symbol,
            exchange=contract.exchange,
            quantity=self.config.lot_size,
            entry_premium=premium,
            expiry=contract.expiry,
            delta=delta,
        )

    async def quote_legs(
        self,
        picks: List[tuple],
        quotes: QuoteFn,
    ) -> Optional[List[Leg]]:
        """Price (leg_id, side, contract, delta) picks; None if any quote is missing."""
        prices = await quotes([contract for _, _, contract, _ in picks])
        legs = []
        for leg_id, side, contract, delta in picks:
            price = prices.get(contract.symbol)
            if price is None or price <= 0:
                logger.warning(f"[{self.config.id}] no quote for {contract.symbol}, skipping")
                return None
            legs.append(self.make_leg(leg_id, side, contract, price, delta))
        return legs

    @abstractmethod
    async def build_entry(
        self,
        spot: float,
        chain: Sequence[OptionContract],
        quotes: QuoteFn,
        now: datetime,
    ) -> Optional[EntryCandidate]:
        """Candidate legs for a fresh position, or None."""
        pass

    async def build_side(
        self,
        option_type: OptionType,
        spot: float,
        chain: Sequence[OptionContract],
        expiry: date,
        quotes: QuoteFn,
        suffix: str,
        at_the_money: bool = False,
    ) -> Optional[List[Leg]]:
        """Replacement spread for one side. Only spread topologies support rolling."""
        logger.warning(f"[{self.config.id}] {self.kind.value} topology does not roll")
        return None
