from __future__ import annotations

from functools import lru_cache

from redis.asyncio import Redis

from jukebox.core.config import get_settings
from jukebox.db.session import SessionLocal
from jukebox.economy.points.service import PointsLedger
from jukebox.queue.coordinator import QueueCoordinator
from jukebox.queue.notifier import RedisQueueNotifier
from jukebox.queue.store import RedisQueueStore
from jukebox.services.points_client import (
    HttpPointsServiceClient,
    LocalPointsServiceClient,
    PointsServiceClient,
)


@lru_cache(maxsize=1)
def get_points_ledger() -> PointsLedger:
    return PointsLedger(SessionLocal)


@lru_cache(maxsize=1)
def get_local_points_client() -> LocalPointsServiceClient:
    return LocalPointsServiceClient(get_points_ledger())


@lru_cache(maxsize=1)
def get_redis() -> Redis:
    return Redis.from_url(get_settings().redis_url)


@lru_cache(maxsize=1)
def get_points_client() -> PointsServiceClient:
    settings = get_settings()
    if settings.points_service_url:
        return HttpPointsServiceClient(
            base_url=settings.points_service_url,
            internal_token=settings.internal_api_token,
            timeout_seconds=settings.points_service_timeout_seconds,
        )
    return get_local_points_client()


@lru_cache(maxsize=1)
def get_queue_coordinator() -> QueueCoordinator:
    settings = get_settings()
    redis = get_redis()
    return QueueCoordinator(
        store=RedisQueueStore(redis, key_ttl_seconds=settings.queue_key_ttl_seconds),
        points_client=get_points_client(),
        notifier=RedisQueueNotifier(redis),
        default_user_cap=settings.queue_user_song_limit,
        standard_cost=settings.queue_standard_song_cost,
        priority_cost=settings.queue_priority_song_cost,
        charge_timeout_seconds=settings.points_service_timeout_seconds,
        charge_max_attempts=settings.points_charge_max_attempts,
        store_max_attempts=settings.queue_store_max_attempts,
        backoff_base_seconds=settings.points_retry_backoff_base_seconds,
        backoff_max_seconds=settings.points_retry_backoff_max_seconds,
    )
