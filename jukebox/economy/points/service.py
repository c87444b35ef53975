from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import structlog
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import async_sessionmaker

from jukebox.db.models.points_transactions import PointsTransaction
from jukebox.db.repo.balances_repo import BalancesRepo
from jukebox.db.repo.points_transactions_repo import PointsTransactionsRepo
from jukebox.economy.points.errors import InsufficientBalanceError, LedgerUnavailableError
from jukebox.economy.points.types import (
    BalanceAudit,
    LedgerTransactionResult,
    PointsHistoryPage,
    TransactionType,
    VenuePointsSummary,
)
from jukebox.services.alerts import send_ops_alert

logger = structlog.get_logger(__name__)

TRANSIENT_STORE_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError, OSError)
MAX_HISTORY_PAGE_SIZE = 100
MAX_ID_LENGTH = 64
MAX_REFERENCE_ID_LENGTH = 255


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_result(entry: PointsTransaction, *, idempotent_replay: bool) -> LedgerTransactionResult:
    return LedgerTransactionResult(
        transaction_id=int(entry.id),
        user_id=entry.user_id,
        venue_id=entry.venue_id,
        type=TransactionType(entry.type),
        amount=int(entry.amount),
        balance_before=int(entry.balance_before),
        balance_after=int(entry.balance_after),
        description=entry.description,
        reference_id=entry.reference_id,
        reference_type=entry.reference_type,
        created_at=entry.created_at,
        idempotent_replay=idempotent_replay,
        metadata=dict(entry.metadata_ or {}),
    )


def _require_id(name: str, value: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    if len(value) > MAX_ID_LENGTH:
        raise ValueError(f"{name} must be at most {MAX_ID_LENGTH} characters")


@asynccontextmanager
async def _store_errors(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except TRANSIENT_STORE_ERRORS as exc:
        logger.warning(
            "points_ledger_unavailable",
            operation=operation,
            error_type=type(exc).__name__,
        )
        raise LedgerUnavailableError(operation) from exc


class PointsLedger:
    """Per-(user, venue) balances plus the append-only points transaction log.

    Every balance change is a single guarded UPDATE and is written in the same
    database transaction as its log row, so the log replays to the balance.
    Idempotency rides on the (reference_id, reference_type, type) unique key.
    """

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._session_factory = session_factory

    async def get_balance(self, user_id: str, venue_id: str) -> int:
        _require_id("user_id", user_id)
        _require_id("venue_id", venue_id)

        async with _store_errors("get_balance"):
            async with self._session_factory.begin() as session:
                await BalancesRepo.ensure_exists(
                    session,
                    user_id=user_id,
                    venue_id=venue_id,
                    now_utc=_utcnow(),
                )
                balance = await BalancesRepo.get_current_balance(
                    session,
                    user_id=user_id,
                    venue_id=venue_id,
                )
        return int(balance or 0)

    async def find_transaction(
        self,
        *,
        reference_id: str,
        reference_type: str | None,
        type: TransactionType | str,
    ) -> LedgerTransactionResult | None:
        tx_type = TransactionType(type)
        async with _store_errors("find_transaction"):
            async with self._session_factory() as session:
                entry = await PointsTransactionsRepo.get_by_reference(
                    session,
                    reference_id=reference_id,
                    reference_type=reference_type,
                    tx_type=tx_type.value,
                )
        if entry is None:
            return None
        return _as_result(entry, idempotent_replay=True)

    async def apply_transaction(
        self,
        *,
        user_id: str,
        venue_id: str,
        type: TransactionType | str,
        amount: int,
        description: str = "",
        reference_id: str | None = None,
        reference_type: str | None = None,
        metadata: dict[str, object] | None = None,
    ) -> LedgerTransactionResult:
        tx_type = TransactionType(type)
        _require_id("user_id", user_id)
        _require_id("venue_id", venue_id)
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValueError("amount must be a positive integer")
        if reference_id is not None and not reference_type:
            # NULL reference types never collide under the unique key.
            raise ValueError("reference_type is required together with reference_id")
        if reference_id is not None and len(reference_id) > MAX_REFERENCE_ID_LENGTH:
            raise ValueError(f"reference_id must be at most {MAX_REFERENCE_ID_LENGTH} characters")

        if reference_id is not None:
            existing = await self.find_transaction(
                reference_id=reference_id,
                reference_type=reference_type,
                type=tx_type,
            )
            if existing is not None:
                logger.info(
                    "points_transaction_replayed",
                    transaction_id=existing.transaction_id,
                    reference_id=reference_id,
                    reference_type=reference_type,
                    type=tx_type.value,
                )
                return existing

        try:
            result = await self._apply_once(
                user_id=user_id,
                venue_id=venue_id,
                tx_type=tx_type,
                amount=amount,
                description=description,
                reference_id=reference_id,
                reference_type=reference_type,
                metadata=metadata or {},
            )
        except IntegrityError:
            if reference_id is None:
                raise
            # A concurrent request with the same reference committed first.
            existing = await self.find_transaction(
                reference_id=reference_id,
                reference_type=reference_type,
                type=tx_type,
            )
            if existing is None:
                raise
            logger.info(
                "points_transaction_replayed",
                transaction_id=existing.transaction_id,
                reference_id=reference_id,
                reference_type=reference_type,
                type=tx_type.value,
                raced=True,
            )
            return existing

        logger.info(
            "points_transaction_applied",
            transaction_id=result.transaction_id,
            user_id=user_id,
            venue_id=venue_id,
            type=tx_type.value,
            amount=amount,
            balance_after=result.balance_after,
            reference_id=reference_id,
            reference_type=reference_type,
        )
        return result

    async def _apply_once(
        self,
        *,
        user_id: str,
        venue_id: str,
        tx_type: TransactionType,
        amount: int,
        description: str,
        reference_id: str | None,
        reference_type: str | None,
        metadata: dict[str, object],
    ) -> LedgerTransactionResult:
        now_utc = _utcnow()
        async with _store_errors("apply_transaction"):
            async with self._session_factory.begin() as session:
                await BalancesRepo.ensure_exists(
                    session,
                    user_id=user_id,
                    venue_id=venue_id,
                    now_utc=now_utc,
                )

                if tx_type.is_debit:
                    balance_after = await BalancesRepo.try_debit(
                        session,
                        user_id=user_id,
                        venue_id=venue_id,
                        amount=amount,
                        count_as_spent=tx_type is TransactionType.SPEND,
                        now_utc=now_utc,
                    )
                    if balance_after is None:
                        available = await BalancesRepo.get_current_balance(
                            session,
                            user_id=user_id,
                            venue_id=venue_id,
                        )
                        raise InsufficientBalanceError(
                            user_id=user_id,
                            venue_id=venue_id,
                            requested=amount,
                            available=int(available or 0),
                        )
                    balance_before = balance_after + amount
                else:
                    balance_after = await BalancesRepo.credit(
                        session,
                        user_id=user_id,
                        venue_id=venue_id,
                        amount=amount,
                        count_as_earned=tx_type in {TransactionType.EARN, TransactionType.BONUS},
                        now_utc=now_utc,
                    )
                    balance_before = balance_after - amount

                entry = await PointsTransactionsRepo.create(
                    session,
                    entry=PointsTransaction(
                        user_id=user_id,
                        venue_id=venue_id,
                        type=tx_type.value,
                        amount=amount,
                        balance_before=balance_before,
                        balance_after=balance_after,
                        description=description,
                        reference_id=reference_id,
                        reference_type=reference_type,
                        metadata_=metadata,
                        created_at=now_utc,
                    ),
                )
                return _as_result(entry, idempotent_replay=False)

    async def get_transaction_history(
        self,
        user_id: str,
        venue_id: str,
        *,
        type: TransactionType | str | None = None,
        reference_type: str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> PointsHistoryPage:
        tx_type = TransactionType(type).value if type is not None else None
        safe_page = max(1, int(page))
        safe_limit = min(MAX_HISTORY_PAGE_SIZE, max(1, int(limit)))

        async with _store_errors("get_transaction_history"):
            async with self._session_factory() as session:
                total = await PointsTransactionsRepo.count_for_user(
                    session,
                    user_id=user_id,
                    venue_id=venue_id,
                    tx_type=tx_type,
                    reference_type=reference_type,
                )
                entries = await PointsTransactionsRepo.list_for_user(
                    session,
                    user_id=user_id,
                    venue_id=venue_id,
                    tx_type=tx_type,
                    reference_type=reference_type,
                    limit=safe_limit,
                    offset=(safe_page - 1) * safe_limit,
                )

        return PointsHistoryPage(
            transactions=[_as_result(entry, idempotent_replay=False) for entry in entries],
            total=total,
            page=safe_page,
            limit=safe_limit,
        )

    async def verify_balance(self, user_id: str, venue_id: str) -> BalanceAudit:
        async with _store_errors("verify_balance"):
            async with self._session_factory() as session:
                chain = await PointsTransactionsRepo.list_chain(
                    session,
                    user_id=user_id,
                    venue_id=venue_id,
                )
                stored_balance = await BalancesRepo.get_current_balance(
                    session,
                    user_id=user_id,
                    venue_id=venue_id,
                )

        replayed = 0
        chain_breaks = 0
        for tx_type, amount, balance_before, balance_after in chain:
            expected_after = replayed - amount if TransactionType(tx_type).is_debit else replayed + amount
            if balance_before != replayed or balance_after != expected_after:
                chain_breaks += 1
            replayed = expected_after

        audit = BalanceAudit(
            user_id=user_id,
            venue_id=venue_id,
            stored_balance=int(stored_balance or 0),
            replayed_balance=replayed,
            transactions_count=len(chain),
            chain_breaks=chain_breaks,
        )
        if audit.has_drift:
            details: dict[str, object] = {
                "user_id": user_id,
                "venue_id": venue_id,
                "stored_balance": audit.stored_balance,
                "replayed_balance": audit.replayed_balance,
                "chain_breaks": chain_breaks,
            }
            logger.error("points_balance_drift_detected", **details)
            await send_ops_alert(event="points_balance_drift_detected", payload=details)
        return audit

    async def get_venue_summary(self, venue_id: str) -> VenuePointsSummary:
        async with _store_errors("get_venue_summary"):
            async with self._session_factory() as session:
                totals = await BalancesRepo.venue_summary(session, venue_id=venue_id)
                volume = await PointsTransactionsRepo.volume_by_type(session, venue_id=venue_id)

        return VenuePointsSummary(
            venue_id=venue_id,
            volume_by_type=volume,
            **totals,
        )
