"""
Simulated Option Feed
Hedgeflow Options Engine

MarketFeed over historical underlying candles. The harness moves the
cursor candle by candle; option chains are synthesized around the current
spot on the configured weekly expiry weekday and premiums come from the
pricing utility, so the same candles always produce the same quotes.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional

from loguru import logger

from hedgeflow.brokers.base import MarketFeed
from hedgeflow.core.exceptions import ExternalFeedError
from hedgeflow.schemas.broker import Candle, OptionContract, OptionType
from hedgeflow.utils.greeks import bs_price, decay_model_premium

EXPIRY_CUTOFF = time(15, 30)


@dataclass
class SimulatedUnderlying:
    instrument: str
    underlying_symbol: str
    exchange: str
    strike_step: float
    expiry_weekday: int
    candles: List[Candle]
    spot: Optional[float] = None
    as_of: Optional[datetime] = None


class SimulatedOptionFeed(MarketFeed):
    """
    Deterministic option market built from underlying candles.

    pricing="decay" uses the spot-distance decay model; "black_scholes"
    prices every contract with Black-Scholes at a flat IV.
    """

    def __init__(
        self,
        iv: float = 0.15,
        rate: float = 0.065,
        strikes_each_side: int = 40,
        expiries: int = 2,
        pricing: str = "decay",
    ):
        if pricing not in ("decay", "black_scholes"):
            raise ValueError(f"Unknown pricing model: {pricing}")
        self.iv = iv
        self.rate = rate
        self.strikes_each_side = strikes_each_side
        self.expiries = expiries
        self.pricing = pricing
        self.underlyings: Dict[str, SimulatedUnderlying] = {}
        self._by_symbol: Dict[str, SimulatedUnderlying] = {}
        self._contracts: Dict[str, OptionContract] = {}
        self._owner: Dict[str, str] = {}

    def add_underlying(
        self,
        instrument: str,
        underlying_symbol: str,
        exchange: str,
        strike_step: float,
        expiry_weekday: int,
        candles: List[Candle],
    ) -> None:
        underlying = SimulatedUnderlying(
            instrument=instrument,
            underlying_symbol=underlying_symbol,
            exchange=exchange,
            strike_step=strike_step,
            expiry_weekday=expiry_weekday,
            candles=sorted(candles, key=lambda c: c.date),
        )
        self.underlyings[instrument] = underlying
        self._by_symbol[underlying_symbol] = underlying

    def update(self, instrument: str, now: datetime, spot: float) -> None:
        """Move the cursor of one underlying."""
        underlying = self.underlyings[instrument]
        underlying.spot = spot
        underlying.as_of = now

    # =========================================================================
    # Contracts and pricing
    # =========================================================================

    def _expiries(self, underlying: SimulatedUnderlying, today: date) -> List[date]:
        ahead = (underlying.expiry_weekday - today.weekday()) % 7
        first = today + timedelta(days=ahead)
        return [first + timedelta(weeks=i) for i in range(self.expiries)]

    @staticmethod
    def contract_symbol(instrument: str, expiry: date, strike: float, option_type: OptionType) -> str:
        return f"{instrument}{expiry:%y%m%d}{int(strike)}{option_type.value}"

    def _years_left(self, expiry: date, now: datetime) -> float:
        expiry_at = datetime.combine(expiry, EXPIRY_CUTOFF, tzinfo=now.tzinfo)
        return max((expiry_at - now).total_seconds(), 0.0) / 86400.0 / 365.0

    def premium(self, symbol: str) -> Optional[float]:
        """Current simulated premium of a listed contract."""
        contract = self._contracts.get(symbol)
        if contract is None:
            return None
        underlying = self.underlyings[self._owner[symbol]]
        if underlying.spot is None:
            return None
        t = self._years_left(contract.expiry, underlying.as_of)
        if self.pricing == "decay":
            return decay_model_premium(underlying.spot, contract.strike, t, self.iv, contract.option_type)
        value = bs_price(underlying.spot, contract.strike, t, self.rate, self.iv, contract.option_type)
        return round(max(value, 0.05), 2)

    # =========================================================================
    # MarketFeed
    # =========================================================================

    async def get_ltp(self, symbols: List[str]) -> Dict[str, float]:
        prices: Dict[str, float] = {}
        for key in symbols:
            underlying = self._by_symbol.get(key)
            if underlying is not None:
                if underlying.spot is not None:
                    prices[key] = underlying.spot
                continue
            premium = self.premium(key.split(":", 1)[-1])
            if premium is not None:
                prices[key] = premium
        return prices

    async def get_option_chain(self, exchange: str, underlying: str) -> List[OptionContract]:
        source = self.underlyings.get(underlying)
        if source is None or source.spot is None:
            raise ExternalFeedError(f"No simulated data for {underlying}")

        step = source.strike_step
        atm = round(source.spot / step) * step
        chain = []
        for expiry in self._expiries(source, source.as_of.date()):
            for i in range(-self.strikes_each_side, self.strikes_each_side + 1):
                strike = atm + i * step
                for option_type in (OptionType.CALL, OptionType.PUT):
                    symbol = self.contract_symbol(underlying, expiry, strike, option_type)
                    contract = self._contracts.get(symbol)
                    if contract is None:
                        contract = OptionContract(
                            symbol=symbol,
                            strike=strike,
                            option_type=option_type,
                            expiry=expiry,
                            exchange=exchange,
                        )
                        self._contracts[symbol] = contract
                        self._owner[symbol] = underlying
                    chain.append(contract)
        logger.debug(f"Simulated chain {underlying} @ {source.spot}: {len(chain)} contracts")
        return chain

    async def get_historical_candles(
        self,
        token: int,
        interval: str,
        from_date: datetime,
        to_date: datetime,
    ) -> List[Candle]:
        # token is the position of the underlying in registration order
        instruments = list(self.underlyings)
        if token < 0 or token >= len(instruments):
            raise ExternalFeedError(f"Unknown simulated token {token}")
        candles = self.underlyings[instruments[token]].candles
        return [c for c in candles if from_date <= c.date <= to_date]
