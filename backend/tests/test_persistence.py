"""
Tests for the write-behind persistence queue.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import MONDAY
from hedgeflow.services.persistence import PersistenceSink, WriteBehindQueue


def snapshot(position_id="ic-test-0001", pnl=0.0):
    return {"position_id": position_id, "pnl": pnl, "legs": []}


class TestPnlThrottle:
    """Tests for the pnl update throttle."""

    def test_needs_interval_and_change(self, persistence):
        persistence.enqueue_entry(snapshot(), MONDAY)

        # Too soon
        assert not persistence.enqueue_pnl("ic-test-0001", 500.0, MONDAY + timedelta(minutes=1))
        # Late enough but too small a move
        assert not persistence.enqueue_pnl("ic-test-0001", 50.0, MONDAY + timedelta(minutes=6))
        # Both conditions met
        assert persistence.enqueue_pnl("ic-test-0001", 150.0, MONDAY + timedelta(minutes=6))
        assert persistence.pending == 2

    def test_throttle_restarts_from_last_write(self, persistence):
        persistence.enqueue_entry(snapshot(), MONDAY)
        assert persistence.enqueue_pnl("ic-test-0001", 200.0, MONDAY + timedelta(minutes=5))
        assert not persistence.enqueue_pnl("ic-test-0001", 900.0, MONDAY + timedelta(minutes=8))
        assert persistence.enqueue_pnl("ic-test-0001", 900.0, MONDAY + timedelta(minutes=10))

    def test_unknown_position_writes_immediately(self, persistence):
        assert persistence.enqueue_pnl("other", -20.0, MONDAY)

    def test_no_pnl_after_close(self, persistence):
        persistence.enqueue_entry(snapshot(), MONDAY)
        persistence.enqueue_close(snapshot(pnl=300.0), "Manual Exit")
        assert not persistence.enqueue_pnl("ic-test-0001", 5000.0, MONDAY + timedelta(hours=1))


class TestFlush:
    """Tests for draining the queue into the sink."""

    @pytest.mark.asyncio
    async def test_writes_in_order(self, persistence, persistence_sink):
        persistence.enqueue_entry(snapshot(), MONDAY)
        persistence.enqueue_pnl("ic-test-0001", 400.0, MONDAY + timedelta(minutes=5))
        persistence.enqueue_close(snapshot(pnl=420.0), "Expiry Exit")
        await persistence.flush()

        assert persistence_sink.writes == [
            ("entry", "ic-test-0001"),
            ("close", "ic-test-0001"),
        ]

    @pytest.mark.asyncio
    async def test_close_tracking_released_after_flush(self, persistence, persistence_sink):
        for n in range(50):
            persistence.enqueue_entry(snapshot(f"ic-test-{n:04d}"), MONDAY)
            persistence.enqueue_close(snapshot(f"ic-test-{n:04d}"), "Time Exit")
        await persistence.flush()
        assert len(persistence_sink.writes) == 100
        assert persistence._closed == set()
        assert persistence_sink.rows["ic-test-0001"]["close_reason"] == "Expiry Exit"
        assert persistence.pending == 0

    @pytest.mark.asyncio
    async def test_pnl_written_while_open(self, persistence, persistence_sink):
        persistence.enqueue_entry(snapshot(), MONDAY)
        persistence.enqueue_pnl("ic-test-0001", 400.0, MONDAY + timedelta(minutes=5))
        await persistence.flush()
        assert persistence_sink.rows["ic-test-0001"]["pnl"] == 400.0

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        sink = MagicMock(spec=PersistenceSink)
        sink.record_entry = AsyncMock(side_effect=[ConnectionError("db down"), None])
        queue = WriteBehindQueue(sink, retry_delay=0)
        queue.enqueue_entry(snapshot(), MONDAY)
        await queue.flush()

        assert sink.record_entry.await_count == 2
        assert queue.dropped == 0

    @pytest.mark.asyncio
    async def test_drops_after_max_retries(self):
        sink = MagicMock(spec=PersistenceSink)
        sink.record_entry = AsyncMock(side_effect=ConnectionError("db down"))
        queue = WriteBehindQueue(sink, retry_delay=0, max_retries=3)
        queue.enqueue_entry(snapshot(), MONDAY)
        await queue.flush()

        assert sink.record_entry.await_count == 3
        assert queue.dropped == 1

    def test_full_queue_drops(self, persistence_sink):
        queue = WriteBehindQueue(persistence_sink, max_size=1)
        queue.enqueue_entry(snapshot("a"), MONDAY)
        queue.enqueue_entry(snapshot("b"), MONDAY)
        assert queue.pending == 1
        assert queue.dropped == 1


class TestWorker:
    """Tests for the background worker lifecycle."""

    @pytest.mark.asyncio
    async def test_stop_drains(self, persistence, persistence_sink):
        persistence.start()
        persistence.enqueue_entry(snapshot(), MONDAY)
        persistence.enqueue_close(snapshot(), "Manual Exit")
        await persistence.stop()
        assert [w[0] for w in persistence_sink.writes] == ["entry", "close"]
