from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import TypeVar
from uuid import uuid4

import structlog

from jukebox.core.backoff import retry_backoff_seconds
from jukebox.queue.errors import (
    DuplicateTrackError,
    InsufficientBalanceError,
    NoTrackAvailableError,
    PointsServiceUnavailableError,
    QueueStoreError,
    QueueStoreUnavailableError,
    QuotaExceededError,
    RequestVoidedError,
    TrackNotQueuedError,
)
from jukebox.queue.notifier import (
    EVENT_QUEUE_CLEARED,
    EVENT_TRACK_ADDED,
    EVENT_TRACK_CHANGED,
    EVENT_TRACK_REMOVED,
    NullQueueNotifier,
    QueueNotifier,
)
from jukebox.queue.selector import NextTrackSelector
from jukebox.queue.store import QueueStore
from jukebox.queue.types import (
    AVERAGE_TRACK_DURATION_SECONDS,
    Lane,
    QueueEntry,
    QueueState,
    QueueStats,
)
from jukebox.services.alerts import send_ops_alert
from jukebox.services.points_client import (
    PointsRefundResult,
    PointsReserveResult,
    PointsServiceClient,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

CHARGE_REASON = "queue_request"
REFUND_REASON = "queue_request_compensation"
DEFAULT_USER_CAP = 10
DEFAULT_STANDARD_COST = 10
DEFAULT_PRIORITY_COST = 25
MAX_ID_LENGTH = 64
MAX_CORRELATION_ID_LENGTH = 255
DEFAULT_CHARGE_TIMEOUT_SECONDS = 5.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE_SECONDS = 0.2
DEFAULT_BACKOFF_MAX_SECONDS = 2.0


def build_correlation_id(*, venue_id: str, track_id: str, user_id: str, request_id: str) -> str:
    return f"{venue_id}:{track_id}:{user_id}:{request_id}"


def _require_text(name: str, value: str, *, max_length: int | None = None) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    if max_length is not None and len(value) > max_length:
        raise ValueError(f"{name} must be at most {max_length} characters")


class QueueCoordinator:
    """Keeps the Redis queue and the points ledger in step.

    ``add_track`` is a saga: reserve the track in the venue's active set,
    claim one of the requester's standard-lane slots, charge through the
    points client, then push the entry. Any failure after the reservation is
    undone; once the charge has started the rest of the saga runs to
    completion even if the caller goes away, and every failure past that point
    refunds the charge under the same correlation id. A request id whose charge
    was already refunded is void.
    """

    def __init__(
        self,
        *,
        store: QueueStore,
        points_client: PointsServiceClient,
        notifier: QueueNotifier | None = None,
        selector: NextTrackSelector | None = None,
        default_user_cap: int = DEFAULT_USER_CAP,
        standard_cost: int = DEFAULT_STANDARD_COST,
        priority_cost: int = DEFAULT_PRIORITY_COST,
        charge_timeout_seconds: float = DEFAULT_CHARGE_TIMEOUT_SECONDS,
        charge_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        store_max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS,
        backoff_max_seconds: float = DEFAULT_BACKOFF_MAX_SECONDS,
    ) -> None:
        self._store = store
        self._points_client = points_client
        self._notifier = notifier or NullQueueNotifier()
        self._selector = selector or NextTrackSelector()
        self._default_user_cap = max(1, int(default_user_cap))
        self._lane_costs = {Lane.STANDARD: int(standard_cost), Lane.PRIORITY: int(priority_cost)}
        self._charge_timeout_seconds = float(charge_timeout_seconds)
        self._charge_max_attempts = max(1, int(charge_max_attempts))
        self._store_max_attempts = max(1, int(store_max_attempts))
        self._backoff_base_seconds = backoff_base_seconds
        self._backoff_max_seconds = backoff_max_seconds

    def _resolve_cap(self, user_cap: int | None) -> int:
        return self._default_user_cap if user_cap is None else max(0, int(user_cap))

    async def _backoff(self, attempt: int) -> None:
        await asyncio.sleep(
            retry_backoff_seconds(
                next_retry_attempt=attempt,
                base_seconds=self._backoff_base_seconds,
                backoff_max_seconds=self._backoff_max_seconds,
            )
        )

    async def _store_call(self, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        for attempt in range(1, self._store_max_attempts + 1):
            try:
                return await call()
            except QueueStoreError:
                if attempt >= self._store_max_attempts:
                    raise
                logger.warning("queue_store_retry_scheduled", operation=operation, attempt=attempt)
                await self._backoff(attempt)
        raise AssertionError("unreachable")

    async def add_track(
        self,
        venue_id: str,
        user_id: str,
        track_id: str,
        title: str,
        duration_seconds: int,
        lane: Lane | str,
        cost: int | None = None,
        *,
        thumbnail: str = "",
        user_cap: int | None = None,
        request_id: str | None = None,
    ) -> QueueEntry:
        _require_text("venue_id", venue_id, max_length=MAX_ID_LENGTH)
        _require_text("user_id", user_id, max_length=MAX_ID_LENGTH)
        _require_text("track_id", track_id, max_length=MAX_ID_LENGTH)
        _require_text("title", title)
        lane = Lane(lane)
        if cost is None:
            cost = self._lane_costs[lane]
        if isinstance(duration_seconds, bool) or not isinstance(duration_seconds, int) or duration_seconds < 0:
            raise ValueError("duration_seconds must be a non-negative integer")
        if isinstance(cost, bool) or not isinstance(cost, int) or cost <= 0:
            raise ValueError("cost must be a positive integer")
        if request_id is not None:
            _require_text("request_id", request_id, max_length=MAX_ID_LENGTH)

        request_id = request_id or uuid4().hex
        correlation_id = build_correlation_id(
            venue_id=venue_id,
            track_id=track_id,
            user_id=user_id,
            request_id=request_id,
        )
        if len(correlation_id) > MAX_CORRELATION_ID_LENGTH:
            raise ValueError(f"correlation id must be at most {MAX_CORRELATION_ID_LENGTH} characters")

        try:
            reserved = await self._store.reserve_track(venue_id, track_id)
        except QueueStoreError as exc:
            raise QueueStoreUnavailableError("reserve_track") from exc
        if not reserved:
            raise DuplicateTrackError(f"track {track_id} is already queued")

        entry = QueueEntry(
            track_id=track_id,
            title=title,
            duration_seconds=duration_seconds,
            lane=lane,
            requested_by=user_id,
            venue_id=venue_id,
            added_at=datetime.now(timezone.utc),
            thumbnail=thumbnail,
            request_id=request_id,
            cost=cost,
        )

        if lane is Lane.STANDARD:
            cap = self._resolve_cap(user_cap)
            try:
                claimed, active_count = await self._store.claim_user_slot(venue_id, user_id, cap=cap)
            except QueueStoreError as exc:
                await self._compensate(entry, correlation_id=correlation_id, refund=False, failure="quota_check")
                raise QueueStoreUnavailableError("claim_user_slot") from exc
            if not claimed:
                await self._compensate(entry, correlation_id=correlation_id, refund=False, failure="quota_exceeded")
                raise QuotaExceededError(user_cap=cap, active_count=active_count)

        return await asyncio.shield(self._charge_and_enqueue(entry, correlation_id=correlation_id))

    async def _charge_and_enqueue(self, entry: QueueEntry, *, correlation_id: str) -> QueueEntry:
        holds_slot = entry.lane is Lane.STANDARD
        try:
            charge = await self._charge(entry, correlation_id=correlation_id)
        except Exception:
            # The charge may have landed before the failure.
            await self._compensate(
                entry,
                correlation_id=correlation_id,
                refund=True,
                failure="charge_error",
                release_slot=holds_slot,
            )
            raise
        if charge.insufficient_funds:
            await self._compensate(
                entry,
                correlation_id=correlation_id,
                refund=False,
                failure="insufficient_balance",
                release_slot=holds_slot,
            )
            raise InsufficientBalanceError(f"not enough points for {entry.cost}")
        if charge.voided:
            await self._compensate(
                entry,
                correlation_id=correlation_id,
                refund=False,
                failure="request_voided",
                release_slot=holds_slot,
            )
            raise RequestVoidedError(f"request {entry.request_id} was already charged and refunded")
        if not charge.ok:
            # The charge may have landed with its reply lost.
            await self._compensate(
                entry,
                correlation_id=correlation_id,
                refund=True,
                failure="points_service_unavailable",
                release_slot=holds_slot,
            )
            raise PointsServiceUnavailableError("points service did not confirm the charge")

        try:
            queue_length = await self._store.push_entry(entry)
        except QueueStoreError as exc:
            complete = await self._compensate(
                entry,
                correlation_id=correlation_id,
                refund=True,
                failure="push_entry",
                original_transaction_id=charge.transaction_id,
                release_slot=holds_slot,
            )
            raise QueueStoreUnavailableError("push_entry", compensation_complete=complete) from exc

        logger.info(
            "queue_track_added",
            venue_id=entry.venue_id,
            user_id=entry.requested_by,
            track_id=entry.track_id,
            lane=entry.lane.value,
            cost=entry.cost,
            correlation_id=correlation_id,
            transaction_id=charge.transaction_id,
            new_balance=charge.new_balance,
            queue_length=queue_length,
        )
        await self._notify(entry.venue_id, EVENT_TRACK_ADDED, entry.as_event_payload())
        return entry

    async def _charge(self, entry: QueueEntry, *, correlation_id: str) -> PointsReserveResult:
        result = PointsReserveResult.service_unavailable()
        for attempt in range(1, self._charge_max_attempts + 1):
            try:
                result = await asyncio.wait_for(
                    self._points_client.reserve(
                        user_id=entry.requested_by,
                        venue_id=entry.venue_id,
                        amount=entry.cost,
                        reason=CHARGE_REASON,
                        correlation_id=correlation_id,
                    ),
                    timeout=self._charge_timeout_seconds,
                )
            except asyncio.TimeoutError:
                result = PointsReserveResult.service_unavailable()

            if result.ok or result.insufficient_funds:
                return result

            logger.warning(
                "queue_charge_attempt_failed",
                venue_id=entry.venue_id,
                correlation_id=correlation_id,
                attempt=attempt,
                max_attempts=self._charge_max_attempts,
            )
            if attempt < self._charge_max_attempts:
                await self._backoff(attempt)
        return result

    async def _refund(
        self,
        entry: QueueEntry,
        *,
        correlation_id: str,
        original_transaction_id: int | None,
    ) -> bool:
        for attempt in range(1, self._charge_max_attempts + 1):
            try:
                result = await asyncio.wait_for(
                    self._points_client.refund(
                        user_id=entry.requested_by,
                        venue_id=entry.venue_id,
                        amount=entry.cost,
                        reason=REFUND_REASON,
                        correlation_id=correlation_id,
                        original_transaction_id=original_transaction_id,
                    ),
                    timeout=self._charge_timeout_seconds,
                )
            except asyncio.TimeoutError:
                result = PointsRefundResult.service_unavailable()
            except Exception:
                logger.warning(
                    "queue_refund_attempt_failed",
                    venue_id=entry.venue_id,
                    correlation_id=correlation_id,
                    attempt=attempt,
                    exc_info=True,
                )
                result = PointsRefundResult.service_unavailable()

            if result.ok:
                logger.info(
                    "queue_charge_refunded",
                    venue_id=entry.venue_id,
                    correlation_id=correlation_id,
                    nothing_to_refund=result.nothing_to_refund,
                    new_balance=result.new_balance,
                )
                return True
            if attempt < self._charge_max_attempts:
                await self._backoff(attempt)
        return False

    async def _release(self, venue_id: str, track_id: str) -> bool:
        try:
            await self._store_call("release_track", lambda: self._store.release_track(venue_id, track_id))
        except QueueStoreError:
            return False
        return True

    async def _release_slot(self, venue_id: str, user_id: str) -> bool:
        try:
            await self._store_call(
                "decrement_user_count",
                lambda: self._store.decrement_user_count(venue_id, user_id),
            )
        except QueueStoreError:
            return False
        return True

    async def _compensate(
        self,
        entry: QueueEntry,
        *,
        correlation_id: str,
        refund: bool,
        failure: str,
        original_transaction_id: int | None = None,
        release_slot: bool = False,
    ) -> bool:
        refunded = True
        if refund:
            refunded = await self._refund(
                entry,
                correlation_id=correlation_id,
                original_transaction_id=original_transaction_id,
            )
        released = await self._release(entry.venue_id, entry.track_id)
        slot_released = True
        if release_slot:
            slot_released = await self._release_slot(entry.venue_id, entry.requested_by)
        if refunded and released and slot_released:
            return True

        details: dict[str, object] = {
            "venue_id": entry.venue_id,
            "user_id": entry.requested_by,
            "track_id": entry.track_id,
            "cost": entry.cost,
            "correlation_id": correlation_id,
            "failure": failure,
            "refunded": refunded,
            "released": released,
            "slot_released": slot_released,
        }
        logger.critical("queue_compensation_incomplete", **details)
        await send_ops_alert(event="queue_compensation_incomplete", payload=details)
        return False

    async def _notify(self, venue_id: str, event_kind: str, payload: dict[str, object]) -> None:
        try:
            await self._notifier.notify(venue_id, event_kind, payload)
        except Exception:
            logger.warning("queue_notify_failed", venue_id=venue_id, event=event_kind, exc_info=True)

    async def next_track(self, venue_id: str) -> QueueEntry:
        try:
            entry = await self._selector.pop_next(self._store, venue_id)
        except QueueStoreError as exc:
            raise QueueStoreUnavailableError("pop_entry") from exc
        if entry is None:
            raise NoTrackAvailableError(f"queue for venue {venue_id} is empty")

        # The entry is already off its lane; bookkeeping failures must not lose it.
        try:
            if entry.lane is Lane.STANDARD:
                await self._store_call(
                    "decrement_user_count",
                    lambda: self._store.decrement_user_count(venue_id, entry.requested_by),
                )
            await self._store_call("release_track", lambda: self._store.release_track(venue_id, entry.track_id))
            await self._store_call("set_current", lambda: self._store.set_current(entry))
        except QueueStoreError:
            logger.error(
                "queue_dequeue_bookkeeping_failed",
                venue_id=venue_id,
                track_id=entry.track_id,
                user_id=entry.requested_by,
                lane=entry.lane.value,
            )

        logger.info(
            "queue_track_changed",
            venue_id=venue_id,
            track_id=entry.track_id,
            lane=entry.lane.value,
            requested_by=entry.requested_by,
        )
        await self._notify(venue_id, EVENT_TRACK_CHANGED, entry.as_event_payload())
        return entry

    async def remove_track(self, venue_id: str, track_id: str, *, refund: bool = True) -> QueueEntry:
        """Take a waiting track off the queue, refunding its requester by default."""
        try:
            entry = await self._store.remove_entry(venue_id, track_id)
        except QueueStoreError as exc:
            raise QueueStoreUnavailableError("remove_entry") from exc
        if entry is None:
            raise TrackNotQueuedError(f"track {track_id} is not waiting in venue {venue_id}")

        correlation_id = build_correlation_id(
            venue_id=entry.venue_id,
            track_id=entry.track_id,
            user_id=entry.requested_by,
            request_id=entry.request_id,
        )
        complete = await self._compensate(
            entry,
            correlation_id=correlation_id,
            refund=refund,
            failure="remove_track",
            release_slot=entry.lane is Lane.STANDARD,
        )
        logger.info(
            "queue_track_removed",
            venue_id=venue_id,
            track_id=track_id,
            lane=entry.lane.value,
            requested_by=entry.requested_by,
            refunded=refund,
            compensation_complete=complete,
        )
        await self._notify(venue_id, EVENT_TRACK_REMOVED, entry.as_event_payload())
        return entry

    async def get_current(self, venue_id: str) -> QueueEntry | None:
        try:
            return await self._store.get_current(venue_id)
        except QueueStoreError as exc:
            raise QueueStoreUnavailableError("get_current") from exc

    async def get_queue_state(self, venue_id: str) -> QueueState:
        try:
            return QueueState(
                venue_id=venue_id,
                current=await self._store.get_current(venue_id),
                priority=await self._store.list_lane(venue_id, Lane.PRIORITY),
                standard=await self._store.list_lane(venue_id, Lane.STANDARD),
                active_track_ids=await self._store.active_track_ids(venue_id),
            )
        except QueueStoreError as exc:
            raise QueueStoreUnavailableError("get_queue_state") from exc

    async def get_queue_stats(self, venue_id: str) -> QueueStats:
        state = await self.get_queue_state(venue_id)
        try:
            active_users = await self._store.count_active_users(venue_id)
        except QueueStoreError as exc:
            raise QueueStoreUnavailableError("count_active_users") from exc

        waiting = self._selector.peek_order(state.priority, state.standard)
        return QueueStats(
            venue_id=venue_id,
            total_tracks=len(waiting),
            priority_count=len(state.priority),
            standard_count=len(state.standard),
            active_users=active_users,
            estimated_wait_seconds=sum(
                entry.duration_seconds or AVERAGE_TRACK_DURATION_SECONDS for entry in waiting
            ),
        )

    async def can_user_add(self, venue_id: str, user_id: str, user_cap: int | None = None) -> bool:
        try:
            active_count = await self._store.user_active_count(venue_id, user_id)
        except QueueStoreError as exc:
            raise QueueStoreUnavailableError("user_active_count") from exc
        return active_count < self._resolve_cap(user_cap)

    async def clear_queue(self, venue_id: str) -> None:
        try:
            await self._store.clear(venue_id)
        except QueueStoreError as exc:
            raise QueueStoreUnavailableError("clear") from exc
        logger.info("queue_cleared", venue_id=venue_id)
        await self._notify(venue_id, EVENT_QUEUE_CLEARED, {})
