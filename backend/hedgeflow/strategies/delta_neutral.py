from datetime import datetime
from typing import Optional, Sequence

from loguru import logger

from hedgeflow.core.config import StrategyKind
from hedgeflow.core.exceptions import ConfigurationError
from hedgeflow.schemas.broker import OptionContract, OptionType, OrderSide
from hedgeflow.strategies.base import EntryCandidate, QuoteFn, TopologyBuilder
from hedgeflow.utils.greeks import select_delta_pair


class DeltaNeutralBuilder(TopologyBuilder):
    """
    Long ATM (0.50 delta) and short near-OTM (0.40 delta) on both sides,
    a net-debit structure whose deltas roughly cancel.
    """

    kind = StrategyKind.DELTA_NEUTRAL

    def validate(self) -> None:
        super().validate()
        cfg = self.config
        if cfg.sell_delta >= cfg.buy_delta:
            raise ConfigurationError(f"{cfg.id}: sell_delta must be below buy_delta")
        if not cfg.leg_stop_fraction:
            raise ConfigurationError(f"{cfg.id}: delta-neutral instances need leg_stop_fraction")

    async def build_entry(
        self,
        spot: float,
        chain: Sequence[OptionContract],
        quotes: QuoteFn,
        now: datetime,
    ) -> Optional[EntryCandidate]:
        cfg = self.config
        expiry = self.select_expiry(chain, now.date())
        if expiry is None:
            logger.warning(f"[{cfg.id}] no live expiry in chain")
            return None

        t = self.years_to_expiry(expiry, now)
        listed = [c for c in chain if c.expiry == expiry]

        picks = []
        net_delta = 0.0
        for option_type in (OptionType.CALL, OptionType.PUT):
            pair = select_delta_pair(
                listed, option_type, spot, t, cfg.risk_free_rate, cfg.default_iv,
                buy_delta=cfg.buy_delta, sell_delta=cfg.sell_delta,
            )
            if pair is None:
                logger.warning(f"[{cfg.id}] cannot pick {option_type.value} strikes by delta")
                return None
            buy, sell = pair
            tag = option_type.value
            picks.append((f"{tag}_BUY", OrderSide.BUY, buy.contract, buy.delta))
            picks.append((f"{tag}_SELL", OrderSide.SELL, sell.contract, sell.delta))
            net_delta += buy.delta - sell.delta

        logger.info(f"[{cfg.id}] delta picks net delta {net_delta:+.4f}")
        legs = await self.quote_legs(picks, quotes)
        return EntryCandidate(legs, expiry) if legs else None
