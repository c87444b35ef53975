from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from jukebox.db.models.points_transactions import PointsTransaction


class PointsTransactionsRepo:
    @staticmethod
    async def get_by_reference(
        session: AsyncSession,
        *,
        reference_id: str,
        reference_type: str | None,
        tx_type: str,
    ) -> PointsTransaction | None:
        stmt = select(PointsTransaction).where(
            PointsTransaction.reference_id == reference_id,
            PointsTransaction.type == tx_type,
        )
        if reference_type is None:
            stmt = stmt.where(PointsTransaction.reference_type.is_(None))
        else:
            stmt = stmt.where(PointsTransaction.reference_type == reference_type)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def create(session: AsyncSession, *, entry: PointsTransaction) -> PointsTransaction:
        session.add(entry)
        await session.flush()
        return entry

    @staticmethod
    def _filtered(
        stmt,
        *,
        user_id: str,
        venue_id: str,
        tx_type: str | None,
        reference_type: str | None,
    ):
        stmt = stmt.where(
            PointsTransaction.user_id == user_id,
            PointsTransaction.venue_id == venue_id,
        )
        if tx_type is not None:
            stmt = stmt.where(PointsTransaction.type == tx_type)
        if reference_type is not None:
            stmt = stmt.where(PointsTransaction.reference_type == reference_type)
        return stmt

    @staticmethod
    async def count_for_user(
        session: AsyncSession,
        *,
        user_id: str,
        venue_id: str,
        tx_type: str | None = None,
        reference_type: str | None = None,
    ) -> int:
        stmt = PointsTransactionsRepo._filtered(
            select(func.count(PointsTransaction.id)),
            user_id=user_id,
            venue_id=venue_id,
            tx_type=tx_type,
            reference_type=reference_type,
        )
        result = await session.execute(stmt)
        return int(result.scalar_one() or 0)

    @staticmethod
    async def list_for_user(
        session: AsyncSession,
        *,
        user_id: str,
        venue_id: str,
        limit: int,
        offset: int,
        tx_type: str | None = None,
        reference_type: str | None = None,
    ) -> list[PointsTransaction]:
        stmt = PointsTransactionsRepo._filtered(
            select(PointsTransaction),
            user_id=user_id,
            venue_id=venue_id,
            tx_type=tx_type,
            reference_type=reference_type,
        )
        stmt = stmt.order_by(PointsTransaction.id.desc()).limit(max(1, int(limit))).offset(max(0, int(offset)))
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def list_chain(
        session: AsyncSession,
        *,
        user_id: str,
        venue_id: str,
    ) -> list[tuple[str, int, int, int]]:
        stmt = (
            select(
                PointsTransaction.type,
                PointsTransaction.amount,
                PointsTransaction.balance_before,
                PointsTransaction.balance_after,
            )
            .where(
                PointsTransaction.user_id == user_id,
                PointsTransaction.venue_id == venue_id,
            )
            .order_by(PointsTransaction.id.asc())
        )
        result = await session.execute(stmt)
        return [(str(t), int(a), int(b), int(c)) for t, a, b, c in result.all()]

    @staticmethod
    async def volume_by_type(session: AsyncSession, *, venue_id: str) -> dict[str, int]:
        stmt = (
            select(PointsTransaction.type, func.coalesce(func.sum(PointsTransaction.amount), 0))
            .where(PointsTransaction.venue_id == venue_id)
            .group_by(PointsTransaction.type)
        )
        result = await session.execute(stmt)
        return {str(tx_type): int(total or 0) for tx_type, total in result.all()}
