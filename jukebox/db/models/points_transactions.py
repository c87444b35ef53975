from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from jukebox.db.models.base import Base

CREDIT_TYPES = ("earn", "bonus", "refund")
DEBIT_TYPES = ("spend", "penalty")
TRANSACTION_TYPES = CREDIT_TYPES + DEBIT_TYPES


class PointsTransaction(Base):
    __tablename__ = "points_transactions"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_points_transactions_amount_positive"),
        CheckConstraint(
            "type IN ('earn','spend','bonus','penalty','refund')",
            name="ck_points_transactions_type",
        ),
        CheckConstraint(
            "balance_before >= 0 AND balance_after >= 0",
            name="ck_points_transactions_balances_non_negative",
        ),
        CheckConstraint(
            "(type IN ('earn','bonus','refund') AND balance_after = balance_before + amount)"
            " OR (type IN ('spend','penalty') AND balance_after = balance_before - amount)",
            name="ck_points_transactions_balance_delta",
        ),
        UniqueConstraint(
            "reference_id",
            "reference_type",
            "type",
            name="uq_points_transactions_reference",
        ),
        Index("idx_points_transactions_user_venue", "user_id", "venue_id", "id"),
        Index("idx_points_transactions_venue_created", "venue_id", "created_at"),
    )

    # SQLite only auto-increments INTEGER PRIMARY KEY columns.
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    venue_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_before: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    reference_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reference_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    metadata_: Mapped[dict[str, object]] = mapped_column(
        "metadata",
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=False,
        default=dict,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
