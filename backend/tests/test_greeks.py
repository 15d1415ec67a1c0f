"""
Tests for the pricing utility.
"""

import math
from datetime import date

import pytest

from hedgeflow.schemas.broker import OptionContract, OptionType
from hedgeflow.utils.greeks import (
    bs_delta,
    bs_price,
    decay_model_premium,
    find_strike_by_delta,
    next_strike_away,
    normal_cdf,
    select_delta_pair,
    time_to_expiry_years,
)


def chain(strikes, expiry=date(2025, 1, 9)):
    return [
        OptionContract(symbol=f"SENSEX{int(k)}{t.value}", strike=k, option_type=t, expiry=expiry, exchange="BFO")
        for k in strikes
        for t in (OptionType.CALL, OptionType.PUT)
    ]


class TestNormalCdf:
    """Tests for the cumulative normal approximation."""

    def test_symmetry(self):
        assert normal_cdf(0.0) == pytest.approx(0.5, abs=1e-7)
        assert normal_cdf(1.0) + normal_cdf(-1.0) == pytest.approx(1.0, abs=1e-7)

    def test_known_values(self):
        assert normal_cdf(1.96) == pytest.approx(0.975, abs=1e-4)
        assert normal_cdf(-1.0) == pytest.approx(0.1587, abs=1e-4)


class TestBlackScholes:
    """Tests for delta and price."""

    def test_atm_call_delta_above_half(self):
        delta = bs_delta(80000, 80000, 7 / 365, 0.065, 0.15, OptionType.CALL)
        assert 0.5 < delta < 0.55

    def test_put_delta_is_call_minus_one(self):
        call = bs_delta(80000, 80500, 7 / 365, 0.065, 0.15, OptionType.CALL)
        put = bs_delta(80000, 80500, 7 / 365, 0.065, 0.15, OptionType.PUT)
        assert put == pytest.approx(call - 1.0, abs=1e-4)

    def test_delta_rounded_to_four_places(self):
        delta = bs_delta(24000, 24100, 3 / 365, 0.065, 0.15, OptionType.CALL)
        assert delta == round(delta, 4)

    @pytest.mark.parametrize("t,iv", [(0.0, 0.15), (-0.01, 0.15), (0.02, 0.0)])
    def test_delta_undefined_without_time_or_vol(self, t, iv):
        assert bs_delta(24000, 24000, t, 0.065, iv, OptionType.CALL) is None

    def test_price_at_expiry_is_intrinsic(self):
        assert bs_price(24100, 24000, 0.0, 0.065, 0.15, OptionType.CALL) == 100
        assert bs_price(24100, 24000, 0.0, 0.065, 0.15, OptionType.PUT) == 0

    def test_put_call_parity(self):
        s, k, t, r, iv = 24000, 24200, 10 / 365, 0.065, 0.15
        call = bs_price(s, k, t, r, iv, OptionType.CALL)
        put = bs_price(s, k, t, r, iv, OptionType.PUT)
        assert call - put == pytest.approx(s - k * math.exp(-r * t), abs=1e-6)


class TestDecayModel:
    """Tests for the spot-distance decay approximation."""

    def test_atm_premium(self):
        t = 7 / 365
        expected = 24000 * 0.15 * math.sqrt(t) * 0.4
        assert decay_model_premium(24000, 24000, t, 0.15, OptionType.CALL) == pytest.approx(expected, abs=0.01)

    def test_otm_distance_reduces_premium(self):
        t = 7 / 365
        atm = decay_model_premium(24000, 24000, t, 0.15, OptionType.CALL)
        otm = decay_model_premium(24000, 24100, t, 0.15, OptionType.CALL)
        assert otm == pytest.approx(atm - 50, abs=0.02)

    def test_floor(self):
        assert decay_model_premium(24000, 26000, 1 / 365, 0.15, OptionType.CALL) == 0.5
        assert decay_model_premium(24000, 24000, 0.0, 0.15, OptionType.PUT) == 0.5

    def test_intrinsic_added_in_the_money(self):
        assert decay_model_premium(24300, 24000, 0.0, 0.15, OptionType.CALL) == 300


class TestStrikeSelection:
    """Tests for delta-based strike selection."""

    def test_find_strike_closest_delta(self):
        strikes = [79500 + 100 * i for i in range(11)]
        pick = find_strike_by_delta(chain(strikes), 0.5, OptionType.CALL, 80000, 7 / 365, 0.065, 0.15)
        assert pick.contract.strike in (80000, 80100)
        assert pick.contract.option_type == OptionType.CALL

    def test_put_uses_absolute_delta(self):
        strikes = [79500 + 100 * i for i in range(11)]
        pick = find_strike_by_delta(chain(strikes), 0.4, OptionType.PUT, 80000, 7 / 365, 0.065, 0.15)
        assert pick.delta < 0
        assert pick.contract.strike < 80000

    def test_next_strike_away(self):
        c = chain([80000, 80100, 80200])
        assert next_strike_away(c, OptionType.CALL, 80100).strike == 80200
        assert next_strike_away(c, OptionType.PUT, 80100).strike == 80000
        assert next_strike_away(c, OptionType.CALL, 80200) is None

    def test_collision_moves_sell_further_out(self):
        # Coarse chain: 0.50 and 0.40 deltas both land on the ATM strike
        c = chain([78000, 80000, 82000])
        pair = select_delta_pair(c, OptionType.CALL, 80000, 7 / 365, 0.065, 0.15, 0.50, 0.40)
        buy, sell = pair
        assert buy.contract.strike == 80000
        assert sell.contract.strike == 82000

    def test_pair_none_when_chain_empty(self):
        assert select_delta_pair([], OptionType.CALL, 80000, 7 / 365, 0.065, 0.15) is None

    def test_time_to_expiry_years(self):
        assert time_to_expiry_years(365) == 1.0
        assert time_to_expiry_years(-3) == 0.0
