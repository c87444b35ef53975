from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from jukebox.db.models.points_balances import PointsBalance


def _dialect_insert(session: AsyncSession):
    if session.get_bind().dialect.name == "sqlite":
        return sqlite_insert
    return postgresql_insert


class BalancesRepo:
    @staticmethod
    async def get(session: AsyncSession, *, user_id: str, venue_id: str) -> PointsBalance | None:
        return await session.get(PointsBalance, (user_id, venue_id))

    @staticmethod
    async def ensure_exists(
        session: AsyncSession,
        *,
        user_id: str,
        venue_id: str,
        now_utc: datetime,
    ) -> None:
        insert = _dialect_insert(session)
        stmt = (
            insert(PointsBalance)
            .values(
                user_id=user_id,
                venue_id=venue_id,
                current_balance=0,
                total_earned=0,
                total_spent=0,
                last_activity=now_utc,
                created_at=now_utc,
                updated_at=now_utc,
            )
            .on_conflict_do_nothing(index_elements=["user_id", "venue_id"])
        )
        await session.execute(stmt)

    @staticmethod
    async def get_current_balance(session: AsyncSession, *, user_id: str, venue_id: str) -> int | None:
        stmt = select(PointsBalance.current_balance).where(
            PointsBalance.user_id == user_id,
            PointsBalance.venue_id == venue_id,
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def try_debit(
        session: AsyncSession,
        *,
        user_id: str,
        venue_id: str,
        amount: int,
        count_as_spent: bool,
        now_utc: datetime,
    ) -> int | None:
        """Guarded decrement; returns the new balance or None when funds are short."""
        values: dict[str, object] = {
            "current_balance": PointsBalance.current_balance - amount,
            "last_activity": now_utc,
            "updated_at": now_utc,
        }
        if count_as_spent:
            values["total_spent"] = PointsBalance.total_spent + amount

        stmt = (
            update(PointsBalance)
            .where(
                PointsBalance.user_id == user_id,
                PointsBalance.venue_id == venue_id,
                PointsBalance.current_balance >= amount,
            )
            .values(**values)
            .returning(PointsBalance.current_balance)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def credit(
        session: AsyncSession,
        *,
        user_id: str,
        venue_id: str,
        amount: int,
        count_as_earned: bool,
        now_utc: datetime,
    ) -> int:
        values: dict[str, object] = {
            "current_balance": PointsBalance.current_balance + amount,
            "last_activity": now_utc,
            "updated_at": now_utc,
        }
        if count_as_earned:
            values["total_earned"] = PointsBalance.total_earned + amount

        stmt = (
            update(PointsBalance)
            .where(
                PointsBalance.user_id == user_id,
                PointsBalance.venue_id == venue_id,
            )
            .values(**values)
            .returning(PointsBalance.current_balance)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return int(result.scalar_one())

    @staticmethod
    async def venue_summary(session: AsyncSession, *, venue_id: str) -> dict[str, int]:
        stmt = select(
            func.count(PointsBalance.user_id),
            func.coalesce(func.sum(PointsBalance.total_earned), 0),
            func.coalesce(func.sum(PointsBalance.total_spent), 0),
            func.coalesce(func.sum(PointsBalance.current_balance), 0),
        ).where(PointsBalance.venue_id == venue_id)
        result = await session.execute(stmt)
        users, earned, spent, circulating = result.one()
        return {
            "total_users": int(users or 0),
            "total_points_earned": int(earned or 0),
            "total_points_spent": int(spent or 0),
            "total_points_in_circulation": int(circulating or 0),
        }
