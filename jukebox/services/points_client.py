from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import httpx
import structlog

from jukebox.economy.points.errors import InsufficientBalanceError, LedgerUnavailableError
from jukebox.economy.points.service import PointsLedger
from jukebox.economy.points.types import REFERENCE_TYPE_QUEUE_REQUEST, TransactionType

logger = structlog.get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 5.0
USER_AGENT = "jukebox-queue/0.1.0"
ERROR_CODE_REQUEST_VOIDED = "E_REQUEST_VOIDED"


@dataclass(slots=True)
class PointsReserveResult:
    ok: bool
    new_balance: int | None = None
    transaction_id: int | None = None
    insufficient_funds: bool = False
    unavailable: bool = False
    idempotent_replay: bool = False
    voided: bool = False

    @classmethod
    def insufficient(cls) -> PointsReserveResult:
        return cls(ok=False, insufficient_funds=True)

    @classmethod
    def request_voided(cls) -> PointsReserveResult:
        return cls(ok=False, voided=True)

    @classmethod
    def service_unavailable(cls) -> PointsReserveResult:
        return cls(ok=False, unavailable=True)


@dataclass(slots=True)
class PointsRefundResult:
    ok: bool
    new_balance: int | None = None
    transaction_id: int | None = None
    unavailable: bool = False
    nothing_to_refund: bool = False

    @classmethod
    def service_unavailable(cls) -> PointsRefundResult:
        return cls(ok=False, unavailable=True)


class PointsServiceClient(Protocol):
    async def reserve(
        self,
        *,
        user_id: str,
        venue_id: str,
        amount: int,
        reason: str,
        correlation_id: str,
    ) -> PointsReserveResult: ...

    async def refund(
        self,
        *,
        user_id: str,
        venue_id: str,
        amount: int,
        reason: str,
        correlation_id: str,
        original_transaction_id: int | None = None,
    ) -> PointsRefundResult: ...

    async def get_balance(self, *, user_id: str, venue_id: str) -> int: ...

    async def health_check(self) -> bool: ...


class LocalPointsServiceClient:
    """Ledger living in the same process."""

    def __init__(self, ledger: PointsLedger) -> None:
        self._ledger = ledger

    async def reserve(
        self,
        *,
        user_id: str,
        venue_id: str,
        amount: int,
        reason: str,
        correlation_id: str,
    ) -> PointsReserveResult:
        try:
            transaction = await self._ledger.apply_transaction(
                user_id=user_id,
                venue_id=venue_id,
                type=TransactionType.SPEND,
                amount=amount,
                description=reason,
                reference_id=correlation_id,
                reference_type=REFERENCE_TYPE_QUEUE_REQUEST,
                metadata={"reason": reason},
            )
            # A replayed charge that was already refunded must not buy a second enqueue.
            refunded = transaction.idempotent_replay and (
                await self._ledger.find_transaction(
                    reference_id=correlation_id,
                    reference_type=REFERENCE_TYPE_QUEUE_REQUEST,
                    type=TransactionType.REFUND,
                )
                is not None
            )
        except InsufficientBalanceError:
            return PointsReserveResult.insufficient()
        except LedgerUnavailableError:
            return PointsReserveResult.service_unavailable()

        if refunded:
            logger.warning(
                "points_reserve_voided",
                user_id=user_id,
                venue_id=venue_id,
                correlation_id=correlation_id,
                transaction_id=transaction.transaction_id,
            )
            return PointsReserveResult.request_voided()

        return PointsReserveResult(
            ok=True,
            new_balance=transaction.balance_after,
            transaction_id=transaction.transaction_id,
            idempotent_replay=transaction.idempotent_replay,
        )

    async def refund(
        self,
        *,
        user_id: str,
        venue_id: str,
        amount: int,
        reason: str,
        correlation_id: str,
        original_transaction_id: int | None = None,
    ) -> PointsRefundResult:
        try:
            spend = await self._ledger.find_transaction(
                reference_id=correlation_id,
                reference_type=REFERENCE_TYPE_QUEUE_REQUEST,
                type=TransactionType.SPEND,
            )
            if spend is None:
                logger.info(
                    "points_refund_skipped_no_charge",
                    user_id=user_id,
                    venue_id=venue_id,
                    correlation_id=correlation_id,
                )
                return PointsRefundResult(ok=True, nothing_to_refund=True)

            if spend.amount != amount:
                logger.warning(
                    "points_refund_amount_mismatch",
                    correlation_id=correlation_id,
                    requested_amount=amount,
                    charged_amount=spend.amount,
                )

            transaction = await self._ledger.apply_transaction(
                user_id=spend.user_id,
                venue_id=spend.venue_id,
                type=TransactionType.REFUND,
                amount=spend.amount,
                description=reason,
                reference_id=correlation_id,
                reference_type=REFERENCE_TYPE_QUEUE_REQUEST,
                metadata={
                    "reason": reason,
                    "original_transaction_id": original_transaction_id or spend.transaction_id,
                },
            )
        except LedgerUnavailableError:
            return PointsRefundResult.service_unavailable()

        return PointsRefundResult(
            ok=True,
            new_balance=transaction.balance_after,
            transaction_id=transaction.transaction_id,
        )

    async def get_balance(self, *, user_id: str, venue_id: str) -> int:
        return await self._ledger.get_balance(user_id, venue_id)

    async def health_check(self) -> bool:
        return True


def _optional_int(payload: dict[str, Any], key: str) -> int | None:
    value = payload.get(key)
    return int(value) if isinstance(value, int) and not isinstance(value, bool) else None


def _error_code(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    detail = payload.get("detail") if isinstance(payload, dict) else None
    if not isinstance(detail, dict):
        return None
    code = detail.get("code")
    return code if isinstance(code, str) else None


class HttpPointsServiceClient:
    """Remote ledger reached through the internal points API."""

    def __init__(
        self,
        *,
        base_url: str,
        internal_token: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout_seconds,
            headers={
                "Content-Type": "application/json",
                "User-Agent": USER_AGENT,
                "X-Internal-Token": internal_token,
            },
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, body: dict[str, object]) -> httpx.Response | None:
        try:
            return await self._client.post(path, json=body)
        except httpx.HTTPError as exc:
            logger.warning(
                "points_service_request_failed",
                path=path,
                error_type=type(exc).__name__,
            )
            return None

    async def reserve(
        self,
        *,
        user_id: str,
        venue_id: str,
        amount: int,
        reason: str,
        correlation_id: str,
    ) -> PointsReserveResult:
        response = await self._post(
            "/internal/points/reserve",
            {
                "user_id": user_id,
                "venue_id": venue_id,
                "amount": amount,
                "reason": reason,
                "correlation_id": correlation_id,
            },
        )
        if response is None:
            return PointsReserveResult.service_unavailable()
        if response.status_code == httpx.codes.CONFLICT:
            if _error_code(response) == ERROR_CODE_REQUEST_VOIDED:
                return PointsReserveResult.request_voided()
            return PointsReserveResult.insufficient()
        if response.status_code != httpx.codes.OK:
            logger.warning(
                "points_service_unexpected_status",
                path="/internal/points/reserve",
                status_code=response.status_code,
            )
            return PointsReserveResult.service_unavailable()

        try:
            payload = response.json()
        except ValueError:
            return PointsReserveResult.service_unavailable()
        return PointsReserveResult(
            ok=True,
            new_balance=_optional_int(payload, "new_balance"),
            transaction_id=_optional_int(payload, "transaction_id"),
            idempotent_replay=bool(payload.get("idempotent_replay", False)),
        )

    async def refund(
        self,
        *,
        user_id: str,
        venue_id: str,
        amount: int,
        reason: str,
        correlation_id: str,
        original_transaction_id: int | None = None,
    ) -> PointsRefundResult:
        response = await self._post(
            "/internal/points/refund",
            {
                "user_id": user_id,
                "venue_id": venue_id,
                "amount": amount,
                "reason": reason,
                "correlation_id": correlation_id,
                "original_transaction_id": original_transaction_id,
            },
        )
        if response is None or response.status_code != httpx.codes.OK:
            return PointsRefundResult.service_unavailable()

        try:
            payload = response.json()
        except ValueError:
            return PointsRefundResult.service_unavailable()
        return PointsRefundResult(
            ok=True,
            new_balance=_optional_int(payload, "new_balance"),
            transaction_id=_optional_int(payload, "transaction_id"),
            nothing_to_refund=bool(payload.get("nothing_to_refund", False)),
        )

    async def get_balance(self, *, user_id: str, venue_id: str) -> int:
        try:
            response = await self._client.get(f"/internal/points/balance/{venue_id}/{user_id}")
            response.raise_for_status()
            return int(response.json()["balance"])
        except (httpx.HTTPError, ValueError, KeyError) as exc:
            raise LedgerUnavailableError("get_balance") from exc

    async def health_check(self) -> bool:
        try:
            response = await self._client.get("/health")
        except httpx.HTTPError:
            return False
        return response.status_code == httpx.codes.OK
