from __future__ import annotations

from datetime import datetime

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from jukebox.api.dependencies import get_local_points_client, get_points_ledger
from jukebox.core.config import get_settings
from jukebox.economy.points.errors import InsufficientBalanceError, LedgerUnavailableError
from jukebox.economy.points.service import PointsLedger
from jukebox.economy.points.types import LedgerTransactionResult, TransactionType
from jukebox.services.internal_auth import is_internal_request_authenticated
from jukebox.services.points_client import ERROR_CODE_REQUEST_VOIDED, LocalPointsServiceClient

router = APIRouter(tags=["internal", "points"])
logger = structlog.get_logger(__name__)


class PointsReserveRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    venue_id: str = Field(min_length=1, max_length=64)
    amount: int = Field(gt=0)
    reason: str = Field(default="queue_request", max_length=255)
    correlation_id: str = Field(min_length=1, max_length=255)


class PointsReserveResponse(BaseModel):
    ok: bool
    transaction_id: int | None = None
    new_balance: int | None = None
    idempotent_replay: bool = False


class PointsRefundRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    venue_id: str = Field(min_length=1, max_length=64)
    amount: int = Field(gt=0)
    reason: str = Field(default="queue_request_compensation", max_length=255)
    correlation_id: str = Field(min_length=1, max_length=255)
    original_transaction_id: int | None = Field(default=None, gt=0)


class PointsRefundResponse(BaseModel):
    ok: bool
    transaction_id: int | None = None
    new_balance: int | None = None
    nothing_to_refund: bool = False


class PointsBalanceResponse(BaseModel):
    user_id: str
    venue_id: str
    balance: int = Field(ge=0)


class PointsTransactionRequest(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    venue_id: str = Field(min_length=1, max_length=64)
    type: TransactionType
    amount: int = Field(gt=0)
    description: str = ""
    reference_id: str | None = Field(default=None, max_length=255)
    reference_type: str | None = Field(default=None, max_length=32)
    metadata: dict[str, object] = Field(default_factory=dict)


class PointsTransactionResponse(BaseModel):
    transaction_id: int
    user_id: str
    venue_id: str
    type: TransactionType
    amount: int = Field(gt=0)
    balance_before: int = Field(ge=0)
    balance_after: int = Field(ge=0)
    description: str
    reference_id: str | None
    reference_type: str | None
    created_at: datetime
    idempotent_replay: bool
    metadata: dict[str, object]


class PointsHistoryResponse(BaseModel):
    items: list[PointsTransactionResponse]
    total: int = Field(ge=0)
    page: int = Field(ge=1)
    limit: int = Field(ge=1)
    total_pages: int = Field(ge=0)


class PointsAuditResponse(BaseModel):
    user_id: str
    venue_id: str
    stored_balance: int
    replayed_balance: int
    transactions_count: int = Field(ge=0)
    chain_breaks: int = Field(ge=0)
    has_drift: bool


class VenuePointsSummaryResponse(BaseModel):
    venue_id: str
    total_users: int = Field(ge=0)
    total_points_earned: int = Field(ge=0)
    total_points_spent: int = Field(ge=0)
    total_points_in_circulation: int = Field(ge=0)
    volume_by_type: dict[str, int]


def _assert_internal_access(request: Request) -> None:
    settings = get_settings()
    if not is_internal_request_authenticated(request, expected_token=settings.internal_api_token):
        logger.warning(
            "internal_points_auth_failed",
            reason="invalid_token",
            path=request.url.path,
        )
        raise HTTPException(status_code=403, detail={"code": "E_FORBIDDEN"})


def _ledger_unavailable() -> HTTPException:
    return HTTPException(status_code=503, detail={"code": "E_LEDGER_UNAVAILABLE"})


def _insufficient_balance(exc: InsufficientBalanceError | None = None) -> HTTPException:
    detail: dict[str, object] = {"code": "E_INSUFFICIENT_BALANCE"}
    if exc is not None:
        detail.update(requested=exc.requested, available=exc.available)
    return HTTPException(status_code=409, detail=detail)


def _as_transaction_response(result: LedgerTransactionResult) -> PointsTransactionResponse:
    return PointsTransactionResponse(
        transaction_id=result.transaction_id,
        user_id=result.user_id,
        venue_id=result.venue_id,
        type=result.type,
        amount=result.amount,
        balance_before=result.balance_before,
        balance_after=result.balance_after,
        description=result.description,
        reference_id=result.reference_id,
        reference_type=result.reference_type,
        created_at=result.created_at,
        idempotent_replay=result.idempotent_replay,
        metadata=result.metadata,
    )


@router.post("/internal/points/reserve", response_model=PointsReserveResponse)
async def reserve_points(
    payload: PointsReserveRequest,
    request: Request,
    points_client: LocalPointsServiceClient = Depends(get_local_points_client),
) -> PointsReserveResponse:
    _assert_internal_access(request)
    result = await points_client.reserve(
        user_id=payload.user_id,
        venue_id=payload.venue_id,
        amount=payload.amount,
        reason=payload.reason,
        correlation_id=payload.correlation_id,
    )
    if result.voided:
        raise HTTPException(status_code=409, detail={"code": ERROR_CODE_REQUEST_VOIDED})
    if result.insufficient_funds:
        raise _insufficient_balance()
    if not result.ok:
        raise _ledger_unavailable()
    return PointsReserveResponse(
        ok=True,
        transaction_id=result.transaction_id,
        new_balance=result.new_balance,
        idempotent_replay=result.idempotent_replay,
    )


@router.post("/internal/points/refund", response_model=PointsRefundResponse)
async def refund_points(
    payload: PointsRefundRequest,
    request: Request,
    points_client: LocalPointsServiceClient = Depends(get_local_points_client),
) -> PointsRefundResponse:
    _assert_internal_access(request)
    result = await points_client.refund(
        user_id=payload.user_id,
        venue_id=payload.venue_id,
        amount=payload.amount,
        reason=payload.reason,
        correlation_id=payload.correlation_id,
        original_transaction_id=payload.original_transaction_id,
    )
    if not result.ok:
        raise _ledger_unavailable()
    return PointsRefundResponse(
        ok=True,
        transaction_id=result.transaction_id,
        new_balance=result.new_balance,
        nothing_to_refund=result.nothing_to_refund,
    )


@router.get("/internal/points/balance/{venue_id}/{user_id}", response_model=PointsBalanceResponse)
async def get_points_balance(
    venue_id: str,
    user_id: str,
    request: Request,
    ledger: PointsLedger = Depends(get_points_ledger),
) -> PointsBalanceResponse:
    _assert_internal_access(request)
    try:
        balance = await ledger.get_balance(user_id, venue_id)
    except LedgerUnavailableError as exc:
        raise _ledger_unavailable() from exc
    return PointsBalanceResponse(user_id=user_id, venue_id=venue_id, balance=balance)


@router.post("/internal/points/transactions", response_model=PointsTransactionResponse)
async def apply_points_transaction(
    payload: PointsTransactionRequest,
    request: Request,
    ledger: PointsLedger = Depends(get_points_ledger),
) -> PointsTransactionResponse:
    _assert_internal_access(request)
    try:
        result = await ledger.apply_transaction(
            user_id=payload.user_id,
            venue_id=payload.venue_id,
            type=payload.type,
            amount=payload.amount,
            description=payload.description,
            reference_id=payload.reference_id,
            reference_type=payload.reference_type,
            metadata=payload.metadata,
        )
    except InsufficientBalanceError as exc:
        raise _insufficient_balance(exc) from exc
    except ValueError as exc:
        raise HTTPException(
            status_code=422,
            detail={"code": "E_INVALID_TRANSACTION", "message": str(exc)},
        ) from exc
    except LedgerUnavailableError as exc:
        raise _ledger_unavailable() from exc
    return _as_transaction_response(result)


@router.get("/internal/points/history/{venue_id}/{user_id}", response_model=PointsHistoryResponse)
async def get_points_history(
    venue_id: str,
    user_id: str,
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    type: TransactionType | None = Query(default=None),
    reference_type: str | None = Query(default=None, max_length=32),
    ledger: PointsLedger = Depends(get_points_ledger),
) -> PointsHistoryResponse:
    _assert_internal_access(request)
    try:
        history = await ledger.get_transaction_history(
            user_id,
            venue_id,
            type=type,
            reference_type=reference_type,
            page=page,
            limit=limit,
        )
    except LedgerUnavailableError as exc:
        raise _ledger_unavailable() from exc
    return PointsHistoryResponse(
        items=[_as_transaction_response(item) for item in history.transactions],
        total=history.total,
        page=history.page,
        limit=history.limit,
        total_pages=history.total_pages,
    )


@router.get("/internal/points/audit/{venue_id}/{user_id}", response_model=PointsAuditResponse)
async def audit_points_balance(
    venue_id: str,
    user_id: str,
    request: Request,
    ledger: PointsLedger = Depends(get_points_ledger),
) -> PointsAuditResponse:
    _assert_internal_access(request)
    try:
        audit = await ledger.verify_balance(user_id, venue_id)
    except LedgerUnavailableError as exc:
        raise _ledger_unavailable() from exc
    return PointsAuditResponse(
        user_id=audit.user_id,
        venue_id=audit.venue_id,
        stored_balance=audit.stored_balance,
        replayed_balance=audit.replayed_balance,
        transactions_count=audit.transactions_count,
        chain_breaks=audit.chain_breaks,
        has_drift=audit.has_drift,
    )


@router.get("/internal/points/venues/{venue_id}/summary", response_model=VenuePointsSummaryResponse)
async def get_venue_points_summary(
    venue_id: str,
    request: Request,
    ledger: PointsLedger = Depends(get_points_ledger),
) -> VenuePointsSummaryResponse:
    _assert_internal_access(request)
    try:
        summary = await ledger.get_venue_summary(venue_id)
    except LedgerUnavailableError as exc:
        raise _ledger_unavailable() from exc
    return VenuePointsSummaryResponse(
        venue_id=summary.venue_id,
        total_users=summary.total_users,
        total_points_earned=summary.total_points_earned,
        total_points_spent=summary.total_points_spent,
        total_points_in_circulation=summary.total_points_in_circulation,
        volume_by_type=summary.volume_by_type,
    )
