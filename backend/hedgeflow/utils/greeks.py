"""
Pricing Utility
Hedgeflow Options Engine

Minimal Black-Scholes support for leg selection and simulated fills:
- Cumulative normal via the Abramowitz-Stegun polynomial
- Signed call/put delta and theoretical premium
- Strike-by-target-delta scan with buy/sell collision guard
- Spot-distance decay model used by the backtest feed
"""

import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

from hedgeflow.schemas.broker import OptionContract, OptionType

# Abramowitz & Stegun 7.1.26
_A1 = 0.254829592
_A2 = -0.284496736
_A3 = 1.421413741
_A4 = -1.453152027
_A5 = 1.061405429
_P = 0.3275911


def normal_cdf(x: float) -> float:
    sign = -1.0 if x < 0 else 1.0
    z = abs(x) / math.sqrt(2.0)
    t = 1.0 / (1.0 + _P * z)
    y = 1.0 - (((((_A5 * t + _A4) * t) + _A3) * t + _A2) * t + _A1) * t * math.exp(-z * z)
    return 0.5 * (1.0 + sign * y)


def _d1_d2(spot: float, strike: float, t: float, rate: float, iv: float):
    d1 = (math.log(spot / strike) + (rate + 0.5 * iv * iv) * t) / (iv * math.sqrt(t))
    return d1, d1 - iv * math.sqrt(t)


def bs_delta(
    spot: float,
    strike: float,
    t: float,
    rate: float,
    iv: float,
    option_type: OptionType,
) -> Optional[float]:
    """
    Black-Scholes delta, N(d1) for calls and N(d1) - 1 for puts.
    Returns None when time or volatility is not positive.
    """
    if t <= 0 or iv <= 0 or spot <= 0 or strike <= 0:
        return None
    d1, _ = _d1_d2(spot, strike, t, rate, iv)
    nd1 = normal_cdf(d1)
    return round(nd1 if option_type == OptionType.CALL else nd1 - 1.0, 4)


def bs_price(
    spot: float,
    strike: float,
    t: float,
    rate: float,
    iv: float,
    option_type: OptionType,
) -> float:
    """Black-Scholes premium; intrinsic value at or after expiry."""
    if t <= 0 or iv <= 0:
        intrinsic = spot - strike if option_type == OptionType.CALL else strike - spot
        return max(intrinsic, 0.0)
    d1, d2 = _d1_d2(spot, strike, t, rate, iv)
    disc = math.exp(-rate * t)
    if option_type == OptionType.CALL:
        return spot * normal_cdf(d1) - strike * disc * normal_cdf(d2)
    return strike * disc * normal_cdf(-d2) - spot * normal_cdf(-d1)


def decay_model_premium(
    spot: float,
    strike: float,
    t: float,
    iv: float,
    option_type: OptionType,
    floor: float = 0.5,
) -> float:
    """
    Spot-distance decay approximation: ATM premium ~ 0.4 * spot * iv * sqrt(t),
    reduced by half the OTM distance, plus intrinsic value, never below `floor`.
    """
    atm = spot * iv * math.sqrt(max(t, 0.0)) * 0.4
    if option_type == OptionType.CALL:
        otm = max(strike - spot, 0.0)
        intrinsic = max(spot - strike, 0.0)
    else:
        otm = max(spot - strike, 0.0)
        intrinsic = max(strike - spot, 0.0)
    value = max(atm - otm * 0.5, 0.0) + intrinsic
    return round(max(value, floor), 2)


@dataclass
class DeltaPick:
    contract: OptionContract
    delta: float


def find_strike_by_delta(
    chain: Sequence[OptionContract],
    target_delta: float,
    option_type: OptionType,
    spot: float,
    t: float,
    rate: float,
    iv: float,
) -> Optional[DeltaPick]:
    """Contract whose |delta| is closest to |target_delta|. First strike wins ties."""
    best: Optional[DeltaPick] = None
    best_diff = math.inf
    for contract in sorted(chain, key=lambda c: c.strike):
        if contract.option_type != option_type:
            continue
        delta = bs_delta(spot, contract.strike, t, rate, iv, option_type)
        if delta is None:
            continue
        diff = abs(abs(delta) - abs(target_delta))
        if diff < best_diff:
            best_diff = diff
            best = DeltaPick(contract, delta)
    return best


def next_strike_away(
    chain: Sequence[OptionContract],
    option_type: OptionType,
    strike: float,
) -> Optional[OptionContract]:
    """
    Adjacent contract further out of the money: next strike above for
    calls, next below for puts.
    """
    same_type = [c for c in chain if c.option_type == option_type]
    if option_type == OptionType.CALL:
        above = [c for c in same_type if c.strike > strike]
        return min(above, key=lambda c: c.strike) if above else None
    below = [c for c in same_type if c.strike < strike]
    return max(below, key=lambda c: c.strike) if below else None


def select_delta_pair(
    chain: Sequence[OptionContract],
    option_type: OptionType,
    spot: float,
    t: float,
    rate: float,
    iv: float,
    buy_delta: float = 0.50,
    sell_delta: float = 0.40,
) -> Optional[List[DeltaPick]]:
    """
    Buy and sell legs of one side picked by delta. When both land on the
    same strike the sell leg moves one strike further out of the money.
    Returns [buy, sell] or None if the chain cannot supply both.
    """
    buy = find_strike_by_delta(chain, buy_delta, option_type, spot, t, rate, iv)
    sell = find_strike_by_delta(chain, sell_delta, option_type, spot, t, rate, iv)
    if buy is None or sell is None:
        return None

    if sell.contract.strike == buy.contract.strike:
        moved = next_strike_away(chain, option_type, buy.contract.strike)
        if moved is None:
            return None
        sell = DeltaPick(moved, bs_delta(spot, moved.strike, t, rate, iv, option_type) or 0.0)

    return [buy, sell]


def time_to_expiry_years(days: float) -> float:
    return max(days, 0.0) / 365.0
