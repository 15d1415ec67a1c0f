"""
Notification Channel
Hedgeflow Options Engine

Position lifecycle events published for UIs and operators:
- Typed event model carrying a position snapshot
- In-memory channel for paper trading and backtests
- Redis Streams channel for live deployments
- Fan-out composite

Publishing is fire-and-forget: a failing or hung channel is logged and
never reaches the trading decision path.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from loguru import logger
import redis.asyncio as redis
from pydantic import BaseModel, ConfigDict, Field

from hedgeflow.core.config import NotificationSettings


PUBLISH_TIMEOUT = 2.0


# =============================================================================
# Event Types & Definitions
# =============================================================================

class EventType(str, Enum):
    """Lifecycle events emitted by the engine."""
    POSITION_OPENED = "position_opened"
    POSITION_UPDATE = "position_update"
    ALERT = "alert"
    POSITION_CLOSED = "position_closed"
    ROLL_RECORDED = "roll_recorded"


class AlertSeverity(str, Enum):
    """Alert severities surfaced to users."""
    INFO = "INFO"           # Discretionary suggestions
    HIGH = "HIGH"           # Roll triggers, max-loss hold
    CRITICAL = "CRITICAL"   # 4x exits, combined stop


class NotificationEvent(BaseModel):
    """Event payload. `timestamp` is the tick time, never the wall clock."""

    model_config = ConfigDict(use_enum_values=True)

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: EventType
    timestamp: datetime
    instance_id: str
    instrument: str
    message: str = ""
    severity: Optional[AlertSeverity] = None
    position: Optional[Dict[str, Any]] = None


# =============================================================================
# Channels
# =============================================================================

class NotificationChannel(ABC):
    """Destination for lifecycle events."""

    @abstractmethod
    async def publish(self, event: NotificationEvent) -> None:
        """Deliver one event."""
        pass

    async def close(self) -> None:
        pass


class InMemoryNotificationChannel(NotificationChannel):
    """Collects events in order of publication."""

    def __init__(self, max_events: Optional[int] = None):
        self.events: List[NotificationEvent] = []
        self.max_events = max_events

    async def publish(self, event: NotificationEvent) -> None:
        self.events.append(event)
        if self.max_events and len(self.events) > self.max_events:
            del self.events[0]

    def of_type(self, event_type: EventType) -> List[NotificationEvent]:
        return [e for e in self.events if e.event_type == event_type.value]

    def alerts(self, severity: Optional[AlertSeverity] = None) -> List[NotificationEvent]:
        alerts = self.of_type(EventType.ALERT)
        if severity is None:
            return alerts
        return [e for e in alerts if e.severity == severity.value]


class RedisStreamNotificationChannel(NotificationChannel):
    """Publishes each event type to its own Redis stream."""

    def __init__(
        self,
        redis_url: str,
        stream_prefix: str = "hf:events:",
        max_stream_length: int = 10000,
        socket_timeout: float = PUBLISH_TIMEOUT,
    ):
        self.redis_url = redis_url
        self.stream_prefix = stream_prefix
        self.max_stream_length = max_stream_length
        self.socket_timeout = socket_timeout
        self._redis: Optional[redis.Redis] = None

    @classmethod
    def from_settings(cls, config: NotificationSettings) -> "RedisStreamNotificationChannel":
        return cls(
            redis_url=config.redis_url,
            stream_prefix=config.stream_prefix,
            max_stream_length=config.stream_max_len,
            socket_timeout=config.publish_timeout,
        )

    async def connect(self) -> None:
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=self.socket_timeout,
                socket_connect_timeout=self.socket_timeout,
            )
            logger.info(f"Notification channel connected to Redis: {self.redis_url}")

    def stream_name(self, event_type: str) -> str:
        return f"{self.stream_prefix}{event_type}"

    async def publish(self, event: NotificationEvent) -> None:
        if self._redis is None:
            await self.connect()

        event_data = {
            "data": event.model_dump_json(),
            "event_type": event.event_type,
            "instance_id": event.instance_id,
            "timestamp": event.timestamp.isoformat(),
        }
        if event.severity:
            event_data["severity"] = event.severity

        await self._redis.xadd(
            self.stream_name(event.event_type),
            event_data,
            maxlen=self.max_stream_length,
            approximate=True,
        )

    async def close(self) -> None:
        if self._redis:
            await self._redis.close()
            self._redis = None
            logger.info("Notification channel disconnected from Redis")


class CompositeNotificationChannel(NotificationChannel):
    """Fans an event out to several channels; one failing channel does not block the rest."""

    def __init__(self, channels: List[NotificationChannel]):
        self.channels = channels

    async def publish(self, event: NotificationEvent) -> None:
        for channel in self.channels:
            try:
                await channel.publish(event)
            except Exception as e:
                logger.error(f"{type(channel).__name__} failed to publish {event.event_type}: {e}")

    async def close(self) -> None:
        for channel in self.channels:
            await channel.close()


async def safe_publish(
    channel: Optional[NotificationChannel],
    event: NotificationEvent,
    timeout: float = PUBLISH_TIMEOUT,
) -> None:
    """Publish without letting channel failures or stalls escape."""
    if channel is None:
        return
    try:
        await asyncio.wait_for(channel.publish(event), timeout=timeout)
    except asyncio.TimeoutError:
        logger.error(f"Notification {event.event_type} for {event.instance_id} dropped: no ack within {timeout}s")
    except Exception as e:
        logger.error(f"Notification {event.event_type} for {event.instance_id} dropped: {e}")
