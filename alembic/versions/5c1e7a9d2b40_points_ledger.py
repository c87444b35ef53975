"""points_ledger

Revision ID: 5c1e7a9d2b40
Revises:
Create Date: 2026-10-19 12:00:00.000000
"""
from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "5c1e7a9d2b40"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "points_balances",
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("venue_id", sa.String(64), nullable=False),
        sa.Column("current_balance", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_earned", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_spent", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_activity", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint(
            "current_balance >= 0",
            name="ck_points_balances_current_balance_non_negative",
        ),
        sa.CheckConstraint("total_earned >= 0", name="ck_points_balances_total_earned_non_negative"),
        sa.CheckConstraint("total_spent >= 0", name="ck_points_balances_total_spent_non_negative"),
        sa.PrimaryKeyConstraint("user_id", "venue_id"),
    )
    op.create_index("idx_points_balances_venue", "points_balances", ["venue_id"])
    op.create_index("idx_points_balances_last_activity", "points_balances", ["last_activity"])

    op.create_table(
        "points_transactions",
        sa.Column("id", sa.BigInteger(), sa.Identity(always=False), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("venue_id", sa.String(64), nullable=False),
        sa.Column("type", sa.String(16), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_before", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column("reference_id", sa.String(255), nullable=True),
        sa.Column("reference_type", sa.String(32), nullable=True),
        sa.Column(
            "metadata",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            server_default=sa.text("'{}'::jsonb"),
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.CheckConstraint("amount > 0", name="ck_points_transactions_amount_positive"),
        sa.CheckConstraint(
            "type IN ('earn','spend','bonus','penalty','refund')",
            name="ck_points_transactions_type",
        ),
        sa.CheckConstraint(
            "balance_before >= 0 AND balance_after >= 0",
            name="ck_points_transactions_balances_non_negative",
        ),
        sa.CheckConstraint(
            "(type IN ('earn','bonus','refund') AND balance_after = balance_before + amount)"
            " OR (type IN ('spend','penalty') AND balance_after = balance_before - amount)",
            name="ck_points_transactions_balance_delta",
        ),
        sa.UniqueConstraint(
            "reference_id",
            "reference_type",
            "type",
            name="uq_points_transactions_reference",
        ),
    )
    op.create_index(
        "idx_points_transactions_user_venue",
        "points_transactions",
        ["user_id", "venue_id", "id"],
    )
    op.create_index(
        "idx_points_transactions_venue_created",
        "points_transactions",
        ["venue_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_points_transactions_venue_created", table_name="points_transactions")
    op.drop_index("idx_points_transactions_user_venue", table_name="points_transactions")
    op.drop_table("points_transactions")
    op.drop_index("idx_points_balances_last_activity", table_name="points_balances")
    op.drop_index("idx_points_balances_venue", table_name="points_balances")
    op.drop_table("points_balances")
