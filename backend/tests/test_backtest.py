"""
Tests for the backtest harness, metrics and report.
"""

from datetime import datetime

import pytest

from hedgeflow.backtest import (
    BacktestConfig,
    BacktestHarness,
    calculate_stats,
    format_backtest_report,
    max_drawdown,
    session_path,
)
from hedgeflow.core.exceptions import ConfigurationError
from hedgeflow.execution.models import Trade
from hedgeflow.schemas.broker import Candle


def candle(day, o, h, l, c):
    return Candle(date=datetime(2025, 1, day), open=o, high=h, low=l, close=c)


def trade(n, pnl, month=1, reason="Expiry Exit"):
    entry = datetime(2025, month, 6, 9, 30)
    return Trade(
        trade_id=f"ic-test-{n:04d}",
        instance_id="ic-test",
        instrument="NIFTY",
        entry_date=entry,
        exit_date=entry.replace(day=7, hour=15, minute=15),
        pnl=pnl,
        close_reason=reason,
        snapshot={},
    )


class TestSessionPath:
    """Tests for expanding daily candles into minute ticks."""

    def test_up_day_visits_low_first(self):
        ticks = list(session_path(candle(6, 100, 110, 95, 105)))
        prices = [p for _, p in ticks]

        assert len(ticks) == 376
        assert ticks[0] == (datetime(2025, 1, 6, 9, 15), 100)
        assert ticks[-1] == (datetime(2025, 1, 6, 15, 30), 105)
        assert min(prices) == 95
        assert max(prices) == 110
        assert prices.index(95) < prices.index(110)

    def test_down_day_visits_high_first(self):
        prices = [p for _, p in session_path(candle(6, 100, 110, 90, 95))]
        assert prices.index(110) < prices.index(90)


class TestMetrics:
    """Tests for ledger statistics."""

    def test_max_drawdown(self):
        assert max_drawdown([100, -50, 200, -300]) == 300
        assert max_drawdown([-100]) == 100
        assert max_drawdown([]) == 0

    def test_calculate_stats(self):
        trades = [trade(1, 1000), trade(2, -500), trade(3, 1500, month=2), trade(4, -200, month=2, reason="4x SL")]
        stats = calculate_stats(trades, capital=100000, name="ic-test")

        assert stats.total_trades == 4
        assert stats.winners == 2
        assert stats.losers == 2
        assert stats.win_rate == 50.0
        assert stats.total_pnl == 1800
        assert stats.avg_win == 1250
        assert stats.avg_loss == -350
        assert stats.best_trade["trade_id"] == "ic-test-0003"
        assert stats.worst_trade["trade_id"] == "ic-test-0002"
        assert stats.max_drawdown == 500
        assert stats.sharpe_ratio == pytest.approx(450 / 682500 ** 0.5 * 52 ** 0.5, abs=0.01)
        assert stats.monthly["2025-01"] == {"pnl": 500.0, "trades": 2, "wins": 1}
        assert stats.reasons == {"4x SL": 1, "Expiry Exit": 3}

    def test_empty_ledger(self):
        stats = calculate_stats([], capital=100000)
        assert stats.total_trades == 0
        assert stats.best_trade is None

    def test_report(self):
        stats = calculate_stats([trade(1, 1000), trade(2, -400)], capital=100000, name="ic-test")
        report = format_backtest_report(stats, 100000, "2025-01-06 to 2025-01-07")
        assert "BACKTEST REPORT" in report
        assert "ic-test" in report
        assert "Expiry Exit" in report
        assert "2025-01" in report


class TestHarness:
    """Tests for end-to-end replay."""

    def test_needs_instances(self):
        with pytest.raises(ConfigurationError):
            BacktestHarness([])

    @pytest.mark.asyncio
    async def test_needs_candles(self, spread_config):
        with pytest.raises(ConfigurationError):
            await BacktestHarness([spread_config]).run({"NIFTY": []})

    @pytest.mark.asyncio
    async def test_open_position_closed_at_end_of_data(self, spread_config):
        harness = BacktestHarness([spread_config], BacktestConfig(interval="day"))
        result = await harness.run({"NIFTY": [candle(6, 24000, 24000, 24000, 24000)]})

        assert len(result.trades) == 1
        trade = result.trades[0]
        assert trade.entry_date == datetime(2025, 1, 6, 9, 30)
        assert trade.exit_date == datetime(2025, 1, 6, 15, 30)
        assert trade.close_reason == "End of Data"
        assert result.warnings == []
        assert result.persisted >= 2

    @pytest.mark.asyncio
    async def test_identical_inputs_identical_ledger(self, spread_config):
        candles = {"NIFTY": [
            candle(6, 24000, 24080, 23950, 24040),
            candle(7, 24040, 24120, 23990, 24100),
        ]}
        config = BacktestConfig(interval="day")
        first = await BacktestHarness([spread_config], config).run(candles)
        second = await BacktestHarness([spread_config], config).run(candles)

        assert first.trades
        assert first.ledger_json() == second.ledger_json()
        assert first.to_json() == second.to_json()
        assert "BACKTEST REPORT" in first.report()
