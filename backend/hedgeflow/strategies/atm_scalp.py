from datetime import datetime
from typing import Optional, Sequence

from loguru import logger

from hedgeflow.core.config import StrategyKind
from hedgeflow.schemas.broker import OptionContract, OptionType, OrderSide
from hedgeflow.strategies.base import EntryCandidate, QuoteFn, TopologyBuilder


class AtmSingleLegBuilder(TopologyBuilder):
    """Single long ATM option, protected by a leg stop and the trailing lock."""

    kind = StrategyKind.SINGLE_LEG

    async def build_entry(
        self,
        spot: float,
        chain: Sequence[OptionContract],
        quotes: QuoteFn,
        now: datetime,
    ) -> Optional[EntryCandidate]:
        expiry = self.select_expiry(chain, now.date())
        if expiry is None:
            return None

        option_type = OptionType(self.config.option_type)
        strike = round(spot / self.config.strike_step) * self.config.strike_step
        contract = self.find_contract(chain, expiry, strike, option_type)
        if contract is None:
            logger.warning(f"[{self.config.id}] ATM {strike:g}{option_type.value} not listed for {expiry}")
            return None

        legs = await self.quote_legs([(f"{option_type.value}_BUY", OrderSide.BUY, contract, None)], quotes)
        return EntryCandidate(legs, expiry) if legs else None
