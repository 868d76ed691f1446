"""Scope usage_entries.idempotency_key to the account

Revision ID: 004
Revises: 003
Create Date: 2024-10-09 00:00:00.000000+00:00

What:  Replaces the global unique constraint on idempotency_key with one on
       (account_id, idempotency_key). Keys come from callers, so two accounts
       may legitimately reuse the same request identifier.
"""

from typing import Sequence, Union

from alembic import op

revision: str = "004"
down_revision: Union[str, None] = "003"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    with op.batch_alter_table("usage_entries") as batch:
        batch.drop_constraint("uq_usage_entries_idempotency_key", type_="unique")
        batch.create_unique_constraint(
            "uq_usage_entries_account_idempotency_key", ["account_id", "idempotency_key"]
        )


def downgrade() -> None:
    with op.batch_alter_table("usage_entries") as batch:
        batch.drop_constraint("uq_usage_entries_account_idempotency_key", type_="unique")
        batch.create_unique_constraint("uq_usage_entries_idempotency_key", ["idempotency_key"])
