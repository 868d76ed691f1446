"""Create credit ledger tables

Revision ID: 001
Revises: None
Create Date: 2024-09-02 00:00:00.000000+00:00

What:  `account_balances` (one row per account) and `usage_entries` (the
       append-only audit trail behind every balance change).

Rollback: downgrade() drops both tables (all balances and history lost).
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "account_balances",
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column(
            "credits",
            sa.Integer(),
            nullable=False,
            server_default=sa.text("0"),
            comment="Remaining page credits",
        ),
        sa.Column(
            "subscription_type",
            sa.String(50),
            nullable=False,
            server_default=sa.text("'free'"),
        ),
        sa.Column(
            "subscription_status",
            sa.String(20),
            nullable=False,
            server_default=sa.text("'active'"),
            comment="active, cancelled, expired",
        ),
        sa.Column("billing_cycle_start", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("billing_cycle_end", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("monthly_usage", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("lifetime_usage", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.PrimaryKeyConstraint("account_id"),
        sa.CheckConstraint("credits >= 0", name="ck_account_balances_credits_non_negative"),
    )
    op.create_index(
        "idx_account_balances_cycle_end",
        "account_balances",
        ["subscription_status", "billing_cycle_end"],
    )

    op.create_table(
        "usage_entries",
        sa.Column(
            "id",
            postgresql.UUID(as_uuid=True),
            server_default=sa.text("gen_random_uuid()"),
            nullable=False,
        ),
        sa.Column("account_id", sa.String(64), nullable=False),
        sa.Column(
            "amount",
            sa.Integer(),
            nullable=False,
            comment="Signed delta: negative for usage/expiry, positive for grants",
        ),
        sa.Column(
            "reason",
            sa.String(20),
            nullable=False,
            comment="usage, admin_add, plan_grant, refund, reset, expiry",
        ),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("idempotency_key", sa.String(255), nullable=True),
        sa.Column("actor", sa.String(64), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["account_id"], ["account_balances.account_id"]),
        # A retried debit/grant collides here.
        sa.UniqueConstraint("idempotency_key", name="uq_usage_entries_idempotency_key"),
    )
    op.create_index(
        "idx_usage_entries_account_created",
        "usage_entries",
        ["account_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_usage_entries_account_created", table_name="usage_entries")
    op.drop_table("usage_entries")
    op.drop_index("idx_account_balances_cycle_end", table_name="account_balances")
    op.drop_table("account_balances")
