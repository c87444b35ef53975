from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Protocol

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from jukebox.queue.errors import QueueStoreError
from jukebox.queue.types import Lane, QueueEntry

logger = structlog.get_logger(__name__)

DEFAULT_KEY_TTL_SECONDS = 86400


def lane_key(venue_id: str, lane: Lane) -> str:
    return f"queue:{venue_id}:{lane.value}"


def active_set_key(venue_id: str) -> str:
    return f"queue:{venue_id}:set"


def current_key(venue_id: str) -> str:
    return f"queue:{venue_id}:current"


def user_count_key(venue_id: str, user_id: str) -> str:
    return f"queue:{venue_id}:user:{user_id}:count"


def _decode(value: bytes | str) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


class QueueStore(Protocol):
    async def reserve_track(self, venue_id: str, track_id: str) -> bool: ...

    async def release_track(self, venue_id: str, track_id: str) -> None: ...

    async def user_active_count(self, venue_id: str, user_id: str) -> int: ...

    async def claim_user_slot(self, venue_id: str, user_id: str, *, cap: int) -> tuple[bool, int]: ...

    async def push_entry(self, entry: QueueEntry) -> int: ...

    async def remove_entry(self, venue_id: str, track_id: str) -> QueueEntry | None: ...

    async def pop_entry(self, venue_id: str, lane: Lane) -> QueueEntry | None: ...

    async def decrement_user_count(self, venue_id: str, user_id: str) -> int: ...

    async def set_current(self, entry: QueueEntry) -> None: ...

    async def get_current(self, venue_id: str) -> QueueEntry | None: ...

    async def list_lane(self, venue_id: str, lane: Lane) -> list[QueueEntry]: ...

    async def active_track_ids(self, venue_id: str) -> set[str]: ...

    async def count_active_users(self, venue_id: str) -> int: ...

    async def clear(self, venue_id: str) -> None: ...

    async def ping(self) -> bool: ...


@asynccontextmanager
async def _store_errors(operation: str, **context: object) -> AsyncIterator[None]:
    try:
        yield
    except RedisError as exc:
        logger.warning(
            "queue_store_operation_failed",
            operation=operation,
            error_type=type(exc).__name__,
            **context,
        )
        raise QueueStoreError(operation) from exc


class RedisQueueStore:
    """Redis layout per venue: two lane LISTs, the active track SET,
    the "current" STRING and one standard-lane counter per user."""

    def __init__(self, redis: Redis, *, key_ttl_seconds: int = DEFAULT_KEY_TTL_SECONDS) -> None:
        self._redis = redis
        self._key_ttl_seconds = max(1, int(key_ttl_seconds))

    async def reserve_track(self, venue_id: str, track_id: str) -> bool:
        key = active_set_key(venue_id)
        async with _store_errors("reserve_track", venue_id=venue_id, track_id=track_id):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.sadd(key, track_id)
                pipe.expire(key, self._key_ttl_seconds)
                added, _ = await pipe.execute()
        return int(added) == 1

    async def release_track(self, venue_id: str, track_id: str) -> None:
        async with _store_errors("release_track", venue_id=venue_id, track_id=track_id):
            await self._redis.srem(active_set_key(venue_id), track_id)

    async def user_active_count(self, venue_id: str, user_id: str) -> int:
        async with _store_errors("user_active_count", venue_id=venue_id, user_id=user_id):
            raw_count = await self._redis.get(user_count_key(venue_id, user_id))
        if raw_count is None:
            return 0
        return max(0, int(_decode(raw_count)))

    async def claim_user_slot(self, venue_id: str, user_id: str, *, cap: int) -> tuple[bool, int]:
        """Count one more standard-lane request against ``cap``.

        INCR first, then give the slot back when it overshoots, so concurrent
        claims can never all pass. Returns ``(claimed, count_before_claim)``.
        """
        key = user_count_key(venue_id, user_id)
        async with _store_errors("claim_user_slot", venue_id=venue_id, user_id=user_id):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.incr(key)
                pipe.expire(key, self._key_ttl_seconds)
                value, _ = await pipe.execute()
            value = int(value)
            if value > cap:
                await self._redis.decr(key)
                return False, value - 1
        return True, value - 1

    async def push_entry(self, entry: QueueEntry) -> int:
        queue_key = lane_key(entry.venue_id, entry.lane)
        async with _store_errors("push_entry", venue_id=entry.venue_id, track_id=entry.track_id):
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.rpush(queue_key, entry.to_json())
                pipe.expire(queue_key, self._key_ttl_seconds)
                if entry.lane is Lane.STANDARD:
                    pipe.expire(user_count_key(entry.venue_id, entry.requested_by), self._key_ttl_seconds)
                results = await pipe.execute()
        return int(results[0])

    async def remove_entry(self, venue_id: str, track_id: str) -> QueueEntry | None:
        async with _store_errors("remove_entry", venue_id=venue_id, track_id=track_id):
            for lane in (Lane.PRIORITY, Lane.STANDARD):
                key = lane_key(venue_id, lane)
                for raw_entry in await self._redis.lrange(key, 0, -1):
                    entry = QueueEntry.from_json(raw_entry)
                    if entry.track_id != track_id:
                        continue
                    # LREM on the stored bytes; zero means a dequeue got there first.
                    removed = await self._redis.lrem(key, 1, raw_entry)
                    return entry if int(removed) else None
        return None

    async def pop_entry(self, venue_id: str, lane: Lane) -> QueueEntry | None:
        async with _store_errors("pop_entry", venue_id=venue_id, lane=lane.value):
            raw_entry = await self._redis.lpop(lane_key(venue_id, lane))
        if raw_entry is None:
            return None
        return QueueEntry.from_json(raw_entry)

    async def decrement_user_count(self, venue_id: str, user_id: str) -> int:
        key = user_count_key(venue_id, user_id)
        async with _store_errors("decrement_user_count", venue_id=venue_id, user_id=user_id):
            value = int(await self._redis.decr(key))
            if value < 0:
                # Add back only the overshoot so concurrent increments survive.
                value = int(await self._redis.incrby(key, -value))
                await self._redis.expire(key, self._key_ttl_seconds)
        return max(0, value)

    async def set_current(self, entry: QueueEntry) -> None:
        async with _store_errors("set_current", venue_id=entry.venue_id, track_id=entry.track_id):
            await self._redis.set(
                current_key(entry.venue_id),
                entry.to_json(),
                ex=self._key_ttl_seconds,
            )

    async def get_current(self, venue_id: str) -> QueueEntry | None:
        async with _store_errors("get_current", venue_id=venue_id):
            raw_entry = await self._redis.get(current_key(venue_id))
        if raw_entry is None:
            return None
        return QueueEntry.from_json(raw_entry)

    async def list_lane(self, venue_id: str, lane: Lane) -> list[QueueEntry]:
        async with _store_errors("list_lane", venue_id=venue_id, lane=lane.value):
            raw_entries = await self._redis.lrange(lane_key(venue_id, lane), 0, -1)
        return [QueueEntry.from_json(raw_entry) for raw_entry in raw_entries]

    async def active_track_ids(self, venue_id: str) -> set[str]:
        async with _store_errors("active_track_ids", venue_id=venue_id):
            members = await self._redis.smembers(active_set_key(venue_id))
        return {_decode(member) for member in members}

    async def _user_count_keys(self, venue_id: str) -> list[str]:
        pattern = user_count_key(venue_id, "*")
        return [_decode(key) async for key in self._redis.scan_iter(match=pattern)]

    async def count_active_users(self, venue_id: str) -> int:
        async with _store_errors("count_active_users", venue_id=venue_id):
            keys = await self._user_count_keys(venue_id)
            if not keys:
                return 0
            values = await self._redis.mget(keys)
        return sum(1 for value in values if value is not None and int(_decode(value)) > 0)

    async def clear(self, venue_id: str) -> None:
        async with _store_errors("clear", venue_id=venue_id):
            keys = [
                current_key(venue_id),
                lane_key(venue_id, Lane.PRIORITY),
                lane_key(venue_id, Lane.STANDARD),
                active_set_key(venue_id),
                *await self._user_count_keys(venue_id),
            ]
            await self._redis.delete(*keys)

    async def ping(self) -> bool:
        async with _store_errors("ping"):
            return bool(await self._redis.ping())
