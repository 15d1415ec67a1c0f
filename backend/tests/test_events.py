"""
Tests for notification channels.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from conftest import MONDAY
from hedgeflow.core.config import NotificationSettings
from hedgeflow.core.events import (
    AlertSeverity,
    CompositeNotificationChannel,
    EventType,
    InMemoryNotificationChannel,
    NotificationEvent,
    RedisStreamNotificationChannel,
    safe_publish,
)


def event(event_type=EventType.ALERT, severity=AlertSeverity.HIGH):
    return NotificationEvent(
        event_type=event_type,
        timestamp=MONDAY,
        instance_id="ic-test",
        instrument="NIFTY",
        message="3x roll",
        severity=severity,
    )


class TestInMemoryChannel:
    """Tests for the in-memory channel."""

    @pytest.mark.asyncio
    async def test_filters(self):
        channel = InMemoryNotificationChannel()
        await channel.publish(event(EventType.POSITION_OPENED, None))
        await channel.publish(event(severity=AlertSeverity.HIGH))
        await channel.publish(event(severity=AlertSeverity.CRITICAL))

        assert len(channel.of_type(EventType.POSITION_OPENED)) == 1
        assert len(channel.alerts()) == 2
        assert len(channel.alerts(AlertSeverity.CRITICAL)) == 1

    @pytest.mark.asyncio
    async def test_bounded(self):
        channel = InMemoryNotificationChannel(max_events=2)
        for _ in range(5):
            await channel.publish(event())
        assert len(channel.events) == 2

    def test_timestamp_is_tick_time(self):
        assert event().timestamp == MONDAY


class TestSafePublish:
    """Tests for fire-and-forget publishing."""

    @pytest.mark.asyncio
    async def test_swallows_channel_errors(self):
        channel = MagicMock()
        channel.publish = AsyncMock(side_effect=RuntimeError("broken pipe"))
        await safe_publish(channel, event())
        channel.publish.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_none_channel(self):
        await safe_publish(None, event())

    @pytest.mark.asyncio
    async def test_composite_continues_after_failure(self):
        broken = MagicMock()
        broken.publish = AsyncMock(side_effect=RuntimeError("down"))
        memory = InMemoryNotificationChannel()
        await CompositeNotificationChannel([broken, memory]).publish(event())
        assert len(memory.events) == 1

    @pytest.mark.asyncio
    async def test_hung_channel_dropped_after_timeout(self):
        async def stall(_event):
            await asyncio.sleep(3600)

        channel = MagicMock()
        channel.publish = AsyncMock(side_effect=stall)
        await asyncio.wait_for(safe_publish(channel, event(), timeout=0.05), timeout=1.0)
        channel.publish.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_hung_redis_does_not_block_caller(self):
        async def stall(*args, **kwargs):
            await asyncio.sleep(3600)

        channel = RedisStreamNotificationChannel("redis://localhost:6379/0")
        channel._redis = MagicMock()
        channel._redis.xadd = AsyncMock(side_effect=stall)
        await asyncio.wait_for(safe_publish(channel, event(), timeout=0.05), timeout=1.0)


class TestRedisStreamChannel:
    """Tests for the Redis Streams channel."""

    @pytest.mark.asyncio
    async def test_xadd_per_event_type(self):
        channel = RedisStreamNotificationChannel("redis://localhost:6379/0", stream_prefix="hf:events:")
        channel._redis = MagicMock()
        channel._redis.xadd = AsyncMock()

        await channel.publish(event(severity=AlertSeverity.CRITICAL))

        args, kwargs = channel._redis.xadd.call_args
        assert args[0] == "hf:events:alert"
        assert args[1]["severity"] == "CRITICAL"
        assert args[1]["instance_id"] == "ic-test"
        assert kwargs["maxlen"] == 10000

    @pytest.mark.asyncio
    async def test_client_uses_publish_timeout(self):
        settings = NotificationSettings(redis_url="redis://cache:6379/1", publish_timeout=0.5)
        channel = RedisStreamNotificationChannel.from_settings(settings)
        with patch("hedgeflow.core.events.redis.from_url") as from_url:
            await channel.connect()
        _, kwargs = from_url.call_args
        assert kwargs["socket_timeout"] == 0.5
        assert kwargs["socket_connect_timeout"] == 0.5

    @pytest.mark.asyncio
    async def test_close(self):
        channel = RedisStreamNotificationChannel("redis://localhost:6379/0")
        client = MagicMock()
        client.close = AsyncMock()
        channel._redis = client
        await channel.close()
        client.close.assert_awaited_once()
        assert channel._redis is None
