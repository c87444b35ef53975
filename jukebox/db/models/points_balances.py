from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from jukebox.db.models.base import Base


class PointsBalance(Base):
    __tablename__ = "points_balances"
    __table_args__ = (
        CheckConstraint(
            "current_balance >= 0",
            name="ck_points_balances_current_balance_non_negative",
        ),
        CheckConstraint("total_earned >= 0", name="ck_points_balances_total_earned_non_negative"),
        CheckConstraint("total_spent >= 0", name="ck_points_balances_total_spent_non_negative"),
        Index("idx_points_balances_venue", "venue_id"),
        Index("idx_points_balances_last_activity", "last_activity"),
    )

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    venue_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    current_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_earned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_spent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_activity: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
