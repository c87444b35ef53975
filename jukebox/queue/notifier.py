from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Protocol

import structlog
from redis.asyncio import Redis

logger = structlog.get_logger(__name__)

EVENT_TRACK_ADDED = "track_added"
EVENT_TRACK_CHANGED = "track_changed"
EVENT_TRACK_REMOVED = "track_removed"
EVENT_QUEUE_CLEARED = "queue_cleared"


def venue_channel(venue_id: str) -> str:
    return f"venue:{venue_id}:events"


class QueueNotifier(Protocol):
    async def notify(self, venue_id: str, event_kind: str, payload: dict[str, object]) -> None: ...


class NullQueueNotifier:
    async def notify(self, venue_id: str, event_kind: str, payload: dict[str, object]) -> None:
        return None


class RedisQueueNotifier:
    """Publishes queue events for the real-time fan-out service."""

    def __init__(self, redis: Redis) -> None:
        self._redis = redis

    async def notify(self, venue_id: str, event_kind: str, payload: dict[str, object]) -> None:
        message = json.dumps(
            {
                "venue_id": venue_id,
                "event": event_kind,
                "payload": payload,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            separators=(",", ":"),
        )
        receivers = await self._redis.publish(venue_channel(venue_id), message)
        logger.debug("queue_event_published", venue_id=venue_id, event=event_kind, receivers=receivers)
