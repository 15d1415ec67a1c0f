"""
Tests for scheduler cadence rules and the scheduler service.
"""

from datetime import datetime, time
from unittest.mock import AsyncMock, MagicMock

import pytest

from hedgeflow.services.scheduler import EntryPoint, SchedulerService, due_entry_points


def at(day, hour, minute):
    # 6 Jan 2025 is a Monday
    return datetime(2025, 1, 5 + day, hour, minute)


MON, TUE, WED, SAT = 1, 2, 3, 6


class TestDueEntryPoints:
    """Tests for the cadence rule."""

    def test_entry_window_opens_with_monitor(self, spread_config):
        assert due_entry_points(spread_config, at(MON, 9, 30)) == [EntryPoint.MONITOR, EntryPoint.CHECK_ENTRY]

    def test_entry_every_minute_in_window(self, spread_config):
        assert due_entry_points(spread_config, at(MON, 9, 31)) == [EntryPoint.CHECK_ENTRY]
        assert due_entry_points(spread_config, at(MON, 9, 35)) == [EntryPoint.MONITOR, EntryPoint.CHECK_ENTRY]
        assert due_entry_points(spread_config, at(MON, 9, 36)) == []

    def test_five_minute_monitor(self, spread_config):
        assert due_entry_points(spread_config, at(WED, 10, 0)) == [EntryPoint.MONITOR]
        assert due_entry_points(spread_config, at(WED, 10, 2)) == []

    def test_minute_monitor_on_expiry_day(self, spread_config):
        assert due_entry_points(spread_config, at(TUE, 10, 2)) == [EntryPoint.MONITOR]

    def test_expiry_exit_at_cutoff(self, spread_config):
        assert due_entry_points(spread_config, at(TUE, 15, 15)) == [EntryPoint.MONITOR, EntryPoint.EXPIRY_EXIT]
        assert EntryPoint.EXPIRY_EXIT not in due_entry_points(spread_config, at(MON, 15, 15))

    def test_daily_exit(self, single_leg_config):
        assert EntryPoint.EXPIRY_EXIT in due_entry_points(single_leg_config, at(WED, 15, 15))

    def test_closed_market(self, spread_config):
        assert due_entry_points(spread_config, at(SAT, 10, 0)) == []
        assert due_entry_points(spread_config, at(MON, 9, 10)) == []
        assert due_entry_points(spread_config, at(WED, 15, 35)) == []

    def test_custom_market_hours(self, spread_config):
        points = due_entry_points(spread_config, at(WED, 10, 0), market_open=time(9, 0))
        assert points == [EntryPoint.MONITOR]
        assert due_entry_points(spread_config, at(WED, 10, 3), market_open=time(9, 3)) == [EntryPoint.MONITOR]

    def test_seconds_ignored(self, spread_config):
        now = at(WED, 10, 0).replace(second=42)
        assert due_entry_points(spread_config, now) == [EntryPoint.MONITOR]


class TestSchedulerService:
    """Tests for the wall-clock driver."""

    @pytest.mark.asyncio
    async def test_run_once_uses_clock_minute(self):
        desk = MagicMock()
        desk.tick = AsyncMock()
        service = SchedulerService(desk, clock=lambda: datetime(2025, 1, 6, 9, 30, 17, 500))

        await service.run_once()
        desk.tick.assert_awaited_once_with(datetime(2025, 1, 6, 9, 30))

    @pytest.mark.asyncio
    async def test_run_once_explicit_time(self):
        desk = MagicMock()
        desk.tick = AsyncMock()
        service = SchedulerService(desk)
        await service.run_once(at(TUE, 15, 15))
        desk.tick.assert_awaited_once_with(at(TUE, 15, 15))

    @pytest.mark.asyncio
    async def test_start_stop(self):
        desk = MagicMock()
        desk.tick = AsyncMock()
        service = SchedulerService(desk)
        service.start()
        assert service._task is not None
        await service.stop()
        assert service._task is None
