"""
Trading Desk

Owns one StrategyEngine per strategy instance and routes scheduler ticks:
- Instances trading the same instrument share one lock, so their ticks
  never interleave
- Distinct instruments tick concurrently
- Configuration errors block only the affected instance

Usage:
    desk = create_desk(configs, feed=broker, gateway=broker)
    await desk.tick(now)
"""

import asyncio
from datetime import datetime, time
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger

from hedgeflow.brokers.base import ExecutionGateway, MarketFeed
from hedgeflow.core.config import StrategyInstanceConfig, TradingSettings, build_instance_config
from hedgeflow.core.events import NotificationChannel
from hedgeflow.core.exceptions import ConfigurationError
from hedgeflow.execution.engine import StrategyEngine
from hedgeflow.services.persistence import WriteBehindQueue
from hedgeflow.services.scheduler import MARKET_CLOSE, MARKET_OPEN, EntryPoint, due_entry_points


class TradingDesk:
    """Registry and dispatcher for strategy engines."""

    def __init__(
        self,
        feed: MarketFeed,
        gateway: ExecutionGateway,
        notifier: Optional[NotificationChannel] = None,
        persistence: Optional[WriteBehindQueue] = None,
        settle_delay: float = 1.0,
        quote_timeout: float = 5.0,
        order_timeout: float = 10.0,
        market_open: time = MARKET_OPEN,
        market_close: time = MARKET_CLOSE,
    ):
        self.feed = feed
        self.gateway = gateway
        self.notifier = notifier
        self.persistence = persistence
        self.settle_delay = settle_delay
        self.quote_timeout = quote_timeout
        self.order_timeout = order_timeout
        self.market_open = market_open
        self.market_close = market_close
        self.engines: Dict[str, StrategyEngine] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def add_instance(self, config: StrategyInstanceConfig) -> StrategyEngine:
        if config.id in self.engines:
            raise ConfigurationError(f"Instance {config.id} already registered")
        lock = self._locks.setdefault(config.instrument, asyncio.Lock())
        engine = StrategyEngine(
            config,
            feed=self.feed,
            gateway=self.gateway,
            notifier=self.notifier,
            persistence=self.persistence,
            settle_delay=self.settle_delay,
            quote_timeout=self.quote_timeout,
            order_timeout=self.order_timeout,
            lock=lock,
        )
        self.engines[config.id] = engine
        logger.info(f"Registered {config.kind.value} instance {config.id} on {config.instrument}")
        return engine

    def add_raw_instance(self, data: Dict[str, Any]) -> Optional[StrategyEngine]:
        """Validate and register; an invalid config is logged and left out."""
        try:
            return self.add_instance(build_instance_config(data))
        except ConfigurationError as e:
            logger.error(f"Instance {data.get('id', '?')} not registered: {e.message}")
            return None

    def engines_for(self, instrument: str) -> List[StrategyEngine]:
        return [e for e in self.engines.values() if e.config.instrument == instrument]

    @property
    def instruments(self) -> List[str]:
        return sorted({e.config.instrument for e in self.engines.values()})

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def _run(self, engine: StrategyEngine, point: EntryPoint, now: datetime) -> None:
        instrument = engine.config.instrument
        if point == EntryPoint.MONITOR:
            await engine.monitor(now)
        elif point == EntryPoint.EXPIRY_EXIT:
            await engine.expiry_exit(instrument, now)
        else:
            await engine.check_entry(instrument, now)

    async def _tick_instrument(self, instrument: str, now: datetime) -> None:
        for engine in self.engines_for(instrument):
            for point in due_entry_points(engine.config, now, self.market_open, self.market_close):
                try:
                    await self._run(engine, point, now)
                except Exception as e:
                    logger.exception(f"[{engine.config.id}] {point.value} at {now:%Y-%m-%d %H:%M} failed: {e}")

    async def tick(self, now: datetime, instruments: Optional[Iterable[str]] = None) -> None:
        """Dispatch every due entry point; instruments run concurrently."""
        targets = list(instruments) if instruments is not None else self.instruments
        await asyncio.gather(*(self._tick_instrument(i, now) for i in targets))

    async def close_all(self, now: datetime, reason: str = "Manual Exit") -> None:
        for engine in self.engines.values():
            await engine.close_position(now, reason)

    def get_status(self) -> Dict[str, Any]:
        return {
            "instances": {iid: e.get_status() for iid, e in self.engines.items()},
            "open_positions": sum(1 for e in self.engines.values() if e.position is not None),
            "realized_pnl": round(sum(t.pnl for e in self.engines.values() for t in e.ledger), 2),
        }


def create_desk(
    configs: Iterable[StrategyInstanceConfig],
    feed: MarketFeed,
    gateway: ExecutionGateway,
    notifier: Optional[NotificationChannel] = None,
    persistence: Optional[WriteBehindQueue] = None,
    trading: Optional[TradingSettings] = None,
) -> TradingDesk:
    trading = trading or TradingSettings()
    desk = TradingDesk(
        feed,
        gateway,
        notifier=notifier,
        persistence=persistence,
        settle_delay=trading.settle_delay_seconds,
        quote_timeout=trading.quote_timeout_seconds,
        order_timeout=trading.order_timeout_seconds,
        market_open=trading.market_open_time,
        market_close=trading.market_close_time,
    )
    for config in configs:
        desk.add_instance(config)
    return desk
