"""
Trade Ledger Persistence
Hedgeflow Options Engine

Write-behind persistence decoupled from the trading decision path:
- PersistenceSink interface with in-memory and SQLAlchemy implementations
- WriteBehindQueue draining writes on a background task
- Explicit pnl throttle: per position, at most one write per
  `pnl_interval_seconds` of tick time and only when pnl moved by at
  least `pnl_min_change`. Entry and close writes are never throttled.
- Failed writes retried up to `max_retries`, then dropped with an error log
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from hedgeflow.core.config import PersistenceSettings
from hedgeflow.db.models import TradeLedgerEntry
from hedgeflow.db.session import session_scope


class PersistenceSink(ABC):
    """Destination for trade ledger writes."""

    @abstractmethod
    async def record_entry(self, snapshot: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def update_pnl(self, position_id: str, pnl: float) -> None:
        pass

    @abstractmethod
    async def record_close(self, snapshot: Dict[str, Any], reason: str) -> None:
        pass


class InMemoryPersistenceSink(PersistenceSink):
    """Dict-backed sink used by backtests and tests."""

    def __init__(self):
        self.rows: Dict[str, Dict[str, Any]] = {}
        self.writes: List[Tuple[str, str]] = []

    async def record_entry(self, snapshot: Dict[str, Any]) -> None:
        self.rows[snapshot["position_id"]] = dict(snapshot)
        self.writes.append(("entry", snapshot["position_id"]))

    async def update_pnl(self, position_id: str, pnl: float) -> None:
        if position_id in self.rows:
            self.rows[position_id]["pnl"] = pnl
        self.writes.append(("pnl", position_id))

    async def record_close(self, snapshot: Dict[str, Any], reason: str) -> None:
        row = dict(snapshot)
        row["close_reason"] = reason
        self.rows[snapshot["position_id"]] = row
        self.writes.append(("close", snapshot["position_id"]))


class SqlPersistenceSink(PersistenceSink):
    """SQLAlchemy async sink writing to the trade_ledger table."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def _find(self, db, position_id: str) -> Optional[TradeLedgerEntry]:
        result = await db.execute(
            select(TradeLedgerEntry).where(TradeLedgerEntry.position_id == position_id)
        )
        return result.scalar_one_or_none()

    async def record_entry(self, snapshot: Dict[str, Any]) -> None:
        async with session_scope(self.session_factory) as db:
            db.add(TradeLedgerEntry.from_snapshot(snapshot))

    async def update_pnl(self, position_id: str, pnl: float) -> None:
        async with session_scope(self.session_factory) as db:
            entry = await self._find(db, position_id)
            if entry is None:
                logger.warning(f"pnl update for unknown position {position_id}")
                return
            entry.pnl = pnl

    async def record_close(self, snapshot: Dict[str, Any], reason: str) -> None:
        async with session_scope(self.session_factory) as db:
            entry = await self._find(db, snapshot["position_id"])
            if entry is None:
                entry = TradeLedgerEntry.from_snapshot(snapshot)
                db.add(entry)
            entry.apply_snapshot(snapshot)
            entry.close_reason = reason


# =============================================================================
# Write-behind queue
# =============================================================================

@dataclass
class _Write:
    kind: str                      # entry | pnl | close
    position_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 0


@dataclass
class _PnlMark:
    at: datetime
    pnl: float


class WriteBehindQueue:
    """
    Fire-and-forget front of a PersistenceSink.

    Enqueue methods never await and never raise. A worker task (`start`)
    drains the queue; `flush` drains it inline for shutdown and backtests.
    """

    def __init__(
        self,
        sink: PersistenceSink,
        pnl_interval_seconds: float = 300.0,
        pnl_min_change: float = 100.0,
        max_retries: int = 3,
        retry_delay: float = 0.5,
        max_size: int = 1000,
    ):
        self.sink = sink
        self.pnl_interval_seconds = pnl_interval_seconds
        self.pnl_min_change = pnl_min_change
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_size)
        self._last_pnl: Dict[str, _PnlMark] = {}
        self._closed: set = set()
        self._worker: Optional[asyncio.Task] = None
        self.dropped = 0

    @classmethod
    def from_settings(cls, sink: PersistenceSink, config: PersistenceSettings) -> "WriteBehindQueue":
        return cls(
            sink,
            pnl_interval_seconds=config.pnl_interval_seconds,
            pnl_min_change=config.pnl_min_change,
            max_retries=config.max_retries,
            max_size=config.queue_size,
        )

    # -------------------------------------------------------------------------
    # Producers
    # -------------------------------------------------------------------------

    def enqueue_entry(self, snapshot: Dict[str, Any], at: datetime) -> None:
        position_id = snapshot["position_id"]
        self._last_pnl[position_id] = _PnlMark(at, snapshot.get("pnl", 0.0))
        self._put(_Write("entry", position_id, {"snapshot": snapshot}))

    def enqueue_pnl(self, position_id: str, pnl: float, at: datetime) -> bool:
        """Queue a pnl write if the throttle allows it. Returns True when queued."""
        if position_id in self._closed:
            return False
        last = self._last_pnl.get(position_id)
        if last is not None:
            elapsed = (at - last.at).total_seconds()
            if elapsed < self.pnl_interval_seconds or abs(pnl - last.pnl) < self.pnl_min_change:
                return False
        self._last_pnl[position_id] = _PnlMark(at, pnl)
        self._put(_Write("pnl", position_id, {"pnl": round(pnl, 2)}))
        return True

    def enqueue_close(self, snapshot: Dict[str, Any], reason: str) -> None:
        position_id = snapshot["position_id"]
        self._closed.add(position_id)
        self._last_pnl.pop(position_id, None)
        self._put(_Write("close", position_id, {"snapshot": snapshot, "reason": reason}))

    def _put(self, write: _Write) -> None:
        try:
            self._queue.put_nowait(write)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.error(f"Persistence queue full, dropped {write.kind} for {write.position_id}")

    # -------------------------------------------------------------------------
    # Consumer
    # -------------------------------------------------------------------------

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def _apply(self, write: _Write) -> None:
        if write.kind == "entry":
            await self.sink.record_entry(write.payload["snapshot"])
        elif write.kind == "pnl":
            # A close already queued makes this update stale
            if write.position_id in self._closed:
                return
            await self.sink.update_pnl(write.position_id, write.payload["pnl"])
        else:
            await self.sink.record_close(write.payload["snapshot"], write.payload["reason"])

    async def _process(self, write: _Write) -> None:
        try:
            await self._attempt(write)
        finally:
            # Every pnl write queued before the close has been handled by now
            if write.kind == "close":
                self._closed.discard(write.position_id)

    async def _attempt(self, write: _Write) -> None:
        while True:
            write.attempts += 1
            try:
                await self._apply(write)
                return
            except Exception as e:
                if write.attempts >= self.max_retries:
                    self.dropped += 1
                    logger.error(
                        f"Persistence {write.kind} for {write.position_id} dropped after "
                        f"{write.attempts} attempts: {e}"
                    )
                    return
                logger.warning(f"Persistence {write.kind} for {write.position_id} failed (attempt {write.attempts}): {e}")
                if self.retry_delay:
                    await asyncio.sleep(self.retry_delay * write.attempts)

    async def flush(self) -> None:
        while not self._queue.empty():
            write = self._queue.get_nowait()
            try:
                await self._process(write)
            finally:
                self._queue.task_done()

    async def _run(self) -> None:
        while True:
            write = await self._queue.get()
            try:
                await self._process(write)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())
            logger.info("Persistence write-behind worker started")

    async def stop(self) -> None:
        if self._worker is not None:
            await self._queue.join()
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        await self.flush()
        logger.info("Persistence write-behind worker stopped")
