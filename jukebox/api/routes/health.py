from __future__ import annotations

import asyncio
from typing import Any

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from sqlalchemy import text

from jukebox.api.dependencies import get_points_client, get_redis
from jukebox.core.config import get_settings
from jukebox.db.session import SessionLocal
from jukebox.queue.errors import QueueStoreError
from jukebox.queue.store import RedisQueueStore

router = APIRouter(tags=["health"])


def _ok_check(extra: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"status": "ok"}
    if extra:
        payload.update(extra)
    return payload


def _failed_check(error: str) -> dict[str, str]:
    return {"status": "failed", "error": error}


async def _check_database() -> dict[str, Any]:
    try:
        async with SessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _ok_check()
    except Exception as exc:
        return _failed_check(str(exc))


async def _check_redis() -> dict[str, Any]:
    try:
        if not await RedisQueueStore(get_redis()).ping():
            return _failed_check("redis ping was not acknowledged")
        return _ok_check()
    except QueueStoreError as exc:
        return _failed_check(str(exc.__cause__ or exc))


async def _check_points_service() -> dict[str, Any] | None:
    points_service_url = get_settings().points_service_url
    if not points_service_url:
        return None
    if await get_points_client().health_check():
        return _ok_check({"url": points_service_url})
    return _failed_check(f"points service at {points_service_url} is not healthy")


async def _collect_checks() -> dict[str, dict[str, Any]]:
    database, redis, points_service = await asyncio.gather(
        _check_database(),
        _check_redis(),
        _check_points_service(),
    )
    checks = {"database": database, "redis": redis}
    if points_service is not None:
        checks["points_service"] = points_service
    return checks


def _all_checks_ok(checks: dict[str, dict[str, Any]]) -> bool:
    return all(check.get("status") == "ok" for check in checks.values())


def _checks_response(checks: dict[str, dict[str, Any]], *, ok_status: str, failed_status: str) -> JSONResponse:
    is_ok = _all_checks_ok(checks)
    return JSONResponse(
        status_code=status.HTTP_200_OK if is_ok else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": ok_status if is_ok else failed_status,
            "checks": checks,
        },
    )


@router.get("/live")
async def live() -> dict[str, str]:
    return {"status": "live"}


@router.get("/health")
async def health() -> JSONResponse:
    return _checks_response(await _collect_checks(), ok_status="ok", failed_status="degraded")


@router.get("/ready")
async def ready() -> JSONResponse:
    return _checks_response(await _collect_checks(), ok_status="ready", failed_status="not_ready")
