"""
Scheduler
Hedgeflow Options Engine

Cadence rules deciding which entry points are due at a given minute, and
the asyncio time source that dispatches them. SchedulerService is the only
component that reads the wall clock; the backtest harness applies the same
`due_entry_points` rule to candle timestamps.
"""

import asyncio
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo

from loguru import logger

from hedgeflow.core.config import StrategyInstanceConfig

IST = ZoneInfo("Asia/Kolkata")
MARKET_OPEN = time(9, 15)
MARKET_CLOSE = time(15, 30)


class EntryPoint(str, Enum):
    CHECK_ENTRY = "check_entry"
    MONITOR = "monitor"
    EXPIRY_EXIT = "expiry_exit"


def _minutes_since(start: time, now: datetime) -> int:
    return (now.hour * 60 + now.minute) - (start.hour * 60 + start.minute)


def due_entry_points(
    config: StrategyInstanceConfig,
    now: datetime,
    market_open: time = MARKET_OPEN,
    market_close: time = MARKET_CLOSE,
) -> List[EntryPoint]:
    """
    Entry points due at `now`, in dispatch order: monitor first so exits act
    on fresh premiums, then the cutoff exit, then entry.
    """
    due: List[EntryPoint] = []
    weekday = now.weekday()
    t = now.time().replace(second=0, microsecond=0)

    if weekday < 5 and market_open <= t <= market_close:
        cadence = config.expiry_monitor_cadence if weekday == config.expiry_weekday else config.monitor_cadence
        if _minutes_since(market_open, now) % cadence == 0:
            due.append(EntryPoint.MONITOR)

    exit_at = config.exit_time
    if config.is_exit_day(weekday) and (t.hour, t.minute) == (exit_at.hour, exit_at.minute):
        due.append(EntryPoint.EXPIRY_EXIT)

    if weekday in config.entry_weekdays and config.entry_start <= t <= config.entry_end:
        if _minutes_since(config.entry_start, now) % config.entry_cadence == 0:
            due.append(EntryPoint.CHECK_ENTRY)

    return due


class SchedulerService:
    """
    Wakes at each minute boundary and hands the desk the entry points due
    for every registered instance.
    """

    def __init__(
        self,
        desk,
        tz: ZoneInfo = IST,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.desk = desk
        self.tz = tz
        self._clock = clock or (lambda: datetime.now(self.tz))
        self._task: Optional[asyncio.Task] = None
        self._running = False

    def now(self) -> datetime:
        return self._clock().replace(second=0, microsecond=0)

    async def run_once(self, now: Optional[datetime] = None) -> None:
        now = now or self.now()
        await self.desk.tick(now)

    async def _loop(self) -> None:
        while self._running:
            current = self._clock()
            next_minute = (current + timedelta(minutes=1)).replace(second=0, microsecond=0)
            await asyncio.sleep(max((next_minute - current).total_seconds(), 0.0))
            try:
                await self.run_once(next_minute)
            except Exception as e:
                logger.exception(f"Scheduler tick {next_minute:%H:%M} failed: {e}")

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._running = True
            self._task = asyncio.create_task(self._loop())
            logger.info("Scheduler started")

    async def stop(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Scheduler stopped")
