"""
Backtest Metrics
Hedgeflow Options Engine

Aggregate statistics over a trade ledger and the boxed text report.
"""

from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from hedgeflow.execution.models import Trade

# Weekly strategies: one trade per week
PERIODS_PER_YEAR = 52


@dataclass
class BacktestStats:
    """Performance metrics for a ledger."""
    name: str = ""
    total_trades: int = 0
    winners: int = 0
    losers: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    best_trade: Optional[Dict[str, Any]] = None
    worst_trade: Optional[Dict[str, Any]] = None
    max_drawdown: float = 0.0
    sharpe_ratio: float = 0.0
    monthly: Dict[str, Dict[str, float]] = field(default_factory=dict)
    reasons: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _summary(trade: Trade) -> Dict[str, Any]:
    return {
        "trade_id": trade.trade_id,
        "instrument": trade.instrument,
        "entry_date": trade.entry_date.isoformat(),
        "pnl": trade.pnl,
        "close_reason": trade.close_reason,
    }


def max_drawdown(pnls: Sequence[float]) -> float:
    """Largest peak-to-trough drop of cumulative pnl, starting from zero."""
    if not len(pnls):
        return 0.0
    equity = np.cumsum(np.asarray(pnls, dtype=float))
    peaks = np.maximum.accumulate(np.concatenate(([0.0], equity)))[1:]
    return float(np.max(peaks - equity))


def sharpe_ratio(pnls: Sequence[float], capital: float) -> float:
    """Mean over population std of per-trade returns on capital, annualized weekly."""
    if not len(pnls) or capital <= 0:
        return 0.0
    returns = np.asarray(pnls, dtype=float) / capital
    std = returns.std()
    if std == 0:
        return 0.0
    return float(returns.mean() / std * np.sqrt(PERIODS_PER_YEAR))


def calculate_stats(trades: Sequence[Trade], capital: float, name: str = "") -> BacktestStats:
    stats = BacktestStats(name=name, total_trades=len(trades))
    if not trades:
        return stats

    pnls = np.array([t.pnl for t in trades], dtype=float)
    wins = pnls[pnls > 0]
    losses = pnls[pnls < 0]

    stats.winners = int(wins.size)
    stats.losers = int(losses.size)
    stats.win_rate = round(wins.size / pnls.size * 100, 2)
    stats.total_pnl = round(float(pnls.sum()), 2)
    stats.avg_win = round(float(wins.mean()), 2) if wins.size else 0.0
    stats.avg_loss = round(float(losses.mean()), 2) if losses.size else 0.0
    # argmax/argmin return the first occurrence, so ties go to the earlier trade
    stats.best_trade = _summary(trades[int(np.argmax(pnls))])
    stats.worst_trade = _summary(trades[int(np.argmin(pnls))])
    stats.max_drawdown = round(max_drawdown(pnls), 2)
    stats.sharpe_ratio = round(sharpe_ratio(pnls, capital), 2)

    monthly: Dict[str, Dict[str, float]] = {}
    for trade in trades:
        bucket = monthly.setdefault(trade.entry_date.strftime("%Y-%m"), {"pnl": 0.0, "trades": 0, "wins": 0})
        bucket["pnl"] = round(bucket["pnl"] + trade.pnl, 2)
        bucket["trades"] += 1
        bucket["wins"] += 1 if trade.pnl > 0 else 0
    stats.monthly = monthly
    stats.reasons = dict(sorted(Counter(t.close_reason for t in trades).items()))
    return stats


def format_backtest_report(
    stats: BacktestStats,
    capital: float,
    period: str = "",
    breakdown: Optional[List[BacktestStats]] = None,
) -> str:
    """Format backtest statistics as a readable report."""
    ret = stats.total_pnl / capital * 100 if capital else 0.0
    lines = [
        "╔══════════════════════════════════════════════════════════════╗",
        "║                    BACKTEST REPORT                           ║",
        "╠══════════════════════════════════════════════════════════════╣",
        f"║ Strategy: {stats.name:<51}║",
        f"║ Period:   {period:<51}║",
        "╠══════════════════════════════════════════════════════════════╣",
        f"║ Capital:             ₹{capital:>15,.2f}                        ║",
        f"║ Net P&L:             ₹{stats.total_pnl:>15,.2f}                        ║",
        f"║ Return:              {ret:>15.2f}%                        ║",
        f"║ Max Drawdown:        ₹{stats.max_drawdown:>15,.2f}                        ║",
        "╠══════════════════════════════════════════════════════════════╣",
        f"║ Total Trades:        {stats.total_trades:>15}                          ║",
        f"║ Winners:             {stats.winners:>15}                          ║",
        f"║ Losers:              {stats.losers:>15}                          ║",
        f"║ Win Rate:            {stats.win_rate:>15.2f}%                        ║",
        f"║ Avg Win:             ₹{stats.avg_win:>15,.2f}                        ║",
        f"║ Avg Loss:            ₹{stats.avg_loss:>15,.2f}                        ║",
        f"║ Sharpe Ratio:        {stats.sharpe_ratio:>15.2f}                          ║",
        "╠══════════════════════════════════════════════════════════════╣",
        "║ Exit Reasons                                                 ║",
    ]
    for reason, count in stats.reasons.items():
        lines.append(f"║   {reason:<30}{count:>10}                   ║")

    if stats.monthly:
        lines.append("╠══════════════════════════════════════════════════════════════╣")
        lines.append("║ Month        P&L              Trades   Wins                  ║")
        for month, bucket in sorted(stats.monthly.items()):
            lines.append(
                f"║ {month:<9}₹{bucket['pnl']:>14,.2f}   {bucket['trades']:>6}   {bucket['wins']:>4}                  ║"
            )

    for sub in breakdown or []:
        lines.append("╠══════════════════════════════════════════════════════════════╣")
        lines.append(f"║ {sub.name:<61}║")
        lines.append(
            f"║   trades {sub.total_trades:>4}  win {sub.win_rate:>6.2f}%  pnl ₹{sub.total_pnl:>13,.2f}           ║"
        )

    lines.append("╚══════════════════════════════════════════════════════════════╝")
    return "\n".join(lines)
