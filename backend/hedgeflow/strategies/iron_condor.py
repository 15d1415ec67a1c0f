import math
from datetime import date, datetime
from typing import List, Optional, Sequence

from loguru import logger

from hedgeflow.core.config import StrategyKind
from hedgeflow.core.exceptions import ConfigurationError
from hedgeflow.execution.models import Leg
from hedgeflow.schemas.broker import OptionContract, OptionType, OrderSide
from hedgeflow.strategies.base import EntryCandidate, QuoteFn, TopologyBuilder


class IronCondorBuilder(TopologyBuilder):
    """
    Short strangle hedged by wings: SELL strikes `otm_pct` away from spot
    (rounded outward to the strike step), BUY strikes `hedge_width` further out.
    """

    kind = StrategyKind.SPREAD

    def validate(self) -> None:
        super().validate()
        if self.config.hedge_width <= 0 or self.config.hedge_width % self.config.strike_step:
            raise ConfigurationError(
                f"{self.config.id}: hedge_width must be a positive multiple of strike_step"
            )
        if self.config.target_credit <= 0:
            raise ConfigurationError(f"{self.config.id}: target_credit must be positive")

    def sell_strike(self, spot: float, option_type: OptionType) -> float:
        step = self.config.strike_step
        offset = self.config.otm_pct / 100
        if option_type == OptionType.CALL:
            return math.ceil(spot * (1 + offset) / step) * step
        return math.floor(spot * (1 - offset) / step) * step

    def atm_strike(self, spot: float) -> float:
        step = self.config.strike_step
        return round(spot / step) * step

    def strikes(self, spot: float, option_type: OptionType, at_the_money: bool = False):
        sell = self.atm_strike(spot) if at_the_money else self.sell_strike(spot, option_type)
        width = self.config.hedge_width
        buy = sell + width if option_type == OptionType.CALL else sell - width
        return sell, buy

    def _side_picks(
        self,
        option_type: OptionType,
        spot: float,
        chain: Sequence[OptionContract],
        expiry: date,
        suffix: str = "",
        at_the_money: bool = False,
    ) -> Optional[List[tuple]]:
        sell_strike, buy_strike = self.strikes(spot, option_type, at_the_money)
        sell = self.find_contract(chain, expiry, sell_strike, option_type)
        buy = self.find_contract(chain, expiry, buy_strike, option_type)
        if sell is None or buy is None:
            logger.warning(
                f"[{self.config.id}] {option_type.value} strikes {sell_strike:g}/{buy_strike:g} "
                f"not listed for {expiry}"
            )
            return None
        tag = option_type.value
        return [
            (f"{tag}_BUY{suffix}", OrderSide.BUY, buy, None),
            (f"{tag}_SELL{suffix}", OrderSide.SELL, sell, None),
        ]

    async def build_entry(
        self,
        spot: float,
        chain: Sequence[OptionContract],
        quotes: QuoteFn,
        now: datetime,
    ) -> Optional[EntryCandidate]:
        expiry = self.select_expiry(chain, now.date())
        if expiry is None:
            logger.warning(f"[{self.config.id}] no live expiry in chain")
            return None

        picks = []
        for option_type in (OptionType.CALL, OptionType.PUT):
            side = self._side_picks(option_type, spot, chain, expiry)
            if side is None:
                return None
            picks.extend(side)

        legs = await self.quote_legs(picks, quotes)
        return EntryCandidate(legs, expiry) if legs else None

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
        picks = self._side_picks(option_type, spot, chain, expiry, suffix, at_the_money)
        if picks is None:
            return None
        return await self.quote_legs(picks, quotes)
