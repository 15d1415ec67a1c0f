"""
Backtest Module
Hedgeflow Options Engine

- SimulatedOptionFeed: synthetic option chains priced from underlying candles
- BacktestHarness: replays candles through the live decision path
- Metrics: win rate, drawdown, Sharpe-like ratio, monthly and exit-reason breakdowns
"""

from hedgeflow.backtest.simulator import SimulatedOptionFeed
from hedgeflow.backtest.metrics import (
    BacktestStats,
    calculate_stats,
    format_backtest_report,
    max_drawdown,
    sharpe_ratio,
)
from hedgeflow.backtest.engine import (
    BacktestConfig,
    BacktestHarness,
    BacktestResult,
    run_backtest,
    session_path,
)

__all__ = [
    "SimulatedOptionFeed",
    "BacktestStats",
    "calculate_stats",
    "format_backtest_report",
    "max_drawdown",
    "sharpe_ratio",
    "BacktestConfig",
    "BacktestHarness",
    "BacktestResult",
    "run_backtest",
    "session_path",
]
