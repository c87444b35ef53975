from __future__ import annotations

import asyncio
import json

import pytest

from jukebox.queue.notifier import EVENT_TRACK_ADDED, NullQueueNotifier, RedisQueueNotifier, venue_channel


@pytest.mark.asyncio
async def test_redis_notifier_publishes_on_venue_channel(redis_client) -> None:
    pubsub = redis_client.pubsub()
    await pubsub.subscribe(venue_channel("venue-1"))
    await pubsub.get_message(timeout=1.0)

    await RedisQueueNotifier(redis_client).notify("venue-1", EVENT_TRACK_ADDED, {"track_id": "track-1"})

    message = None
    for _ in range(20):
        message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=0.1)
        if message is not None:
            break
        await asyncio.sleep(0.01)
    await pubsub.aclose()

    assert message is not None
    assert message["channel"] == b"venue:venue-1:events"
    body = json.loads(message["data"])
    assert body["venue_id"] == "venue-1"
    assert body["event"] == "track_added"
    assert body["payload"] == {"track_id": "track-1"}
    assert "timestamp" in body


@pytest.mark.asyncio
async def test_null_notifier_accepts_events() -> None:
    assert await NullQueueNotifier().notify("venue-1", EVENT_TRACK_ADDED, {}) is None
