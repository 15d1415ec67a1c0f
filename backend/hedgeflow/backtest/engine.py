"""
Backtest Harness
Hedgeflow Options Engine

Replays historical underlying candles through the same TradingDesk,
StrategyEngine and OrderSequencer used live:
- SimulatedOptionFeed supplies spot, chains and premiums from the candles
- PaperBroker fills market orders at the simulated premium
- The scheduler's cadence rule is applied to candle timestamps
- No settle delays, no randomness and no wall-clock reads, so identical
  candles and configs produce a byte-identical ledger

Usage:
    harness = BacktestHarness([nifty_iron_condor()])
    result = await harness.run({"NIFTY": candles})
    print(result.report())
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from loguru import logger

from hedgeflow.backtest.metrics import BacktestStats, calculate_stats, format_backtest_report
from hedgeflow.backtest.simulator import SimulatedOptionFeed
from hedgeflow.brokers.paper import PaperBroker
from hedgeflow.core.config import StrategyInstanceConfig
from hedgeflow.core.events import InMemoryNotificationChannel
from hedgeflow.core.exceptions import ConfigurationError
from hedgeflow.execution.models import Trade
from hedgeflow.execution.orchestrator import TradingDesk
from hedgeflow.schemas.broker import Candle
from hedgeflow.services.persistence import InMemoryPersistenceSink, WriteBehindQueue
from hedgeflow.services.scheduler import MARKET_CLOSE, MARKET_OPEN


@dataclass
class BacktestConfig:
    """Configuration for a backtest run."""
    capital: float = 100000.0
    iv: float = 0.15
    rate: float = 0.065
    pricing: str = "decay"              # decay | black_scholes
    strikes_each_side: int = 40
    interval: str = "minute"            # minute | day
    end_reason: str = "End of Data"


@dataclass
class BacktestResult:
    """Complete backtest output."""
    trades: List[Trade]
    stats: BacktestStats
    by_instrument: Dict[str, BacktestStats]
    config: BacktestConfig
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    alerts: int = 0
    persisted: int = 0
    gateway_calls: int = 0
    warnings: List[str] = field(default_factory=list)

    def ledger_json(self) -> str:
        """Canonical ledger serialization; equal inputs give equal bytes."""
        return json.dumps([t.to_dict() for t in self.trades], sort_keys=True, indent=2)

    def to_dict(self) -> Dict:
        return {
            "start": self.start.isoformat() if self.start else None,
            "end": self.end.isoformat() if self.end else None,
            "stats": self.stats.to_dict(),
            "by_instrument": {k: v.to_dict() for k, v in sorted(self.by_instrument.items())},
            "alerts": self.alerts,
            "trades": [t.to_dict() for t in self.trades],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, indent=2)

    def report(self) -> str:
        period = f"{self.start:%Y-%m-%d} to {self.end:%Y-%m-%d}" if self.start and self.end else ""
        breakdown = [self.by_instrument[k] for k in sorted(self.by_instrument)] if len(self.by_instrument) > 1 else None
        return format_backtest_report(self.stats, self.config.capital, period, breakdown)


def session_path(candle: Candle) -> Iterator[Tuple[datetime, float]]:
    """
    Expand a daily candle into one-minute ticks across the session.
    The path runs open -> low -> high -> close on an up day and
    open -> high -> low -> close otherwise, each segment a third of the session.
    """
    day = candle.date.date()
    start = datetime.combine(day, MARKET_OPEN, tzinfo=candle.date.tzinfo)
    minutes = (MARKET_CLOSE.hour * 60 + MARKET_CLOSE.minute) - (MARKET_OPEN.hour * 60 + MARKET_OPEN.minute)
    if candle.close >= candle.open:
        points = [candle.open, candle.low, candle.high, candle.close]
    else:
        points = [candle.open, candle.high, candle.low, candle.close]

    for m in range(minutes + 1):
        pos = m / minutes * 3
        seg = min(int(pos), 2)
        frac = pos - seg
        price = points[seg] + (points[seg + 1] - points[seg]) * frac
        yield start + timedelta(minutes=m), round(price, 2)


class BacktestHarness:
    """Deterministic replay of strategy instances over historical candles."""

    def __init__(
        self,
        configs: Sequence[StrategyInstanceConfig],
        config: Optional[BacktestConfig] = None,
    ):
        if not configs:
            raise ConfigurationError("Backtest needs at least one strategy instance")
        self.configs = list(configs)
        self.config = config or BacktestConfig()
        self.feed = SimulatedOptionFeed(
            iv=self.config.iv,
            rate=self.config.rate,
            strikes_each_side=self.config.strikes_each_side,
            pricing=self.config.pricing,
        )
        self.broker = PaperBroker(price_source=self.feed.premium, id_prefix="BT")
        self.notifier = InMemoryNotificationChannel()
        self.sink = InMemoryPersistenceSink()
        self.persistence = WriteBehindQueue(self.sink, retry_delay=0)
        self.desk = TradingDesk(
            self.feed,
            self.broker,
            notifier=self.notifier,
            persistence=self.persistence,
            settle_delay=0.0,
        )
        for cfg in self.configs:
            self.desk.add_instance(cfg)

    def _register(self, candles: Dict[str, List[Candle]]) -> None:
        for instrument in sorted(candles):
            cfg = next((c for c in self.configs if c.instrument == instrument), None)
            if cfg is None:
                logger.warning(f"No strategy instance trades {instrument}, its candles are ignored")
                continue
            self.feed.add_underlying(
                instrument,
                cfg.underlying_symbol,
                cfg.exchange,
                cfg.strike_step,
                cfg.expiry_weekday,
                candles[instrument],
            )

    def _timeline(self) -> Dict[datetime, Dict[str, float]]:
        timeline: Dict[datetime, Dict[str, float]] = {}
        for instrument, underlying in self.feed.underlyings.items():
            for candle in underlying.candles:
                if self.config.interval == "day":
                    ticks = session_path(candle)
                else:
                    ticks = [(candle.date.replace(second=0, microsecond=0), candle.close)]
                for ts, price in ticks:
                    timeline.setdefault(ts, {})[instrument] = price
        return timeline

    async def run(self, candles: Dict[str, List[Candle]]) -> BacktestResult:
        self._register(candles)
        timeline = self._timeline()
        stamps = sorted(timeline)
        if not stamps:
            raise ConfigurationError("Backtest needs at least one candle")
        logger.info(
            f"Backtest {', '.join(c.id for c in self.configs)}: {len(stamps)} ticks "
            f"{stamps[0]:%Y-%m-%d} to {stamps[-1]:%Y-%m-%d}"
        )

        for ts in stamps:
            spots = timeline[ts]
            # Instruments run one after another so order ids stay reproducible
            for instrument in sorted(spots):
                self.feed.update(instrument, ts, spots[instrument])
                await self.desk.tick(ts, [instrument])
            await self.persistence.flush()

        last = stamps[-1]
        await self.desk.close_all(last, self.config.end_reason)
        await self.persistence.flush()
        return self._result(stamps[0], last)

    def _result(self, start: datetime, end: datetime) -> BacktestResult:
        trades = sorted(
            (t for engine in self.desk.engines.values() for t in engine.ledger),
            key=lambda t: (t.exit_date, t.trade_id),
        )
        by_instrument = {
            instrument: calculate_stats(
                [t for t in trades if t.instrument == instrument],
                self.config.capital,
                name=instrument,
            )
            for instrument in sorted({t.instrument for t in trades})
        }
        warnings = []
        for engine in self.desk.engines.values():
            if engine.position is not None:
                warnings.append(f"{engine.config.id} still holds {engine.position.position_id}")
        for warning in warnings:
            logger.warning(warning)

        name = " + ".join(c.id for c in self.configs)
        return BacktestResult(
            trades=trades,
            stats=calculate_stats(trades, self.config.capital, name=name),
            by_instrument=by_instrument,
            config=self.config,
            start=start,
            end=end,
            alerts=len(self.notifier.alerts()),
            persisted=len(self.sink.writes),
            gateway_calls=len(self.broker.calls),
            warnings=warnings,
        )


async def run_backtest(
    configs: Sequence[StrategyInstanceConfig],
    candles: Dict[str, List[Candle]],
    config: Optional[BacktestConfig] = None,
) -> BacktestResult:
    """Quick function to run a backtest."""
    harness = BacktestHarness(configs, config)
    return await harness.run(candles)
