"""
RExeli Backend — Credit Ledger SQLAlchemy Models
==================================================

What:  ORM models for the `account_balances` and `usage_entries` tables.
Why:   Page credits gate every extraction; the balance row is the fast path
       for authorization and the entries are the audit trail behind it.
How:   One balance row per account, mutated only by LedgerService inside a
       transaction that also appends the matching UsageEntry.
Who:   LedgerService (all writes), MeteredExtractionService (reads via
       the ledger), Alembic.

Table Design Rationale:
    - account_id is the primary key: accounts are owned by the auth system,
      the ledger only mirrors their identifier.
    - credits has a CHECK (credits >= 0) so a missed guard in code still
      cannot produce a negative balance.
    - usage_entries.amount is a signed delta and balance_after the running
      balance, so SUM(amount) per account reconciles against credits.
    - (account_id, idempotency_key) is UNIQUE (NULLs allowed): a retried
      debit or grant on the same account collides at the database level.
      Keys are chosen by callers, so two accounts may use the same one.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rexeli.database import Base
from rexeli.enums import SubscriptionStatus, SubscriptionType
from rexeli.models.types import UTCDateTime, utcnow


class AccountBalance(Base):
    """
    Current credit balance and subscription state for one account.

    Lifecycle:
        1. Created at signup with the free plan (0 credits)
        2. assign_plan grants the plan allotment and opens a billing cycle
        3. reset_monthly_credits refills recurring plans at each cycle end
        4. check_subscription_expiry clears one-time or cancelled plans
        5. Never deleted; is_active=False disables an account
    """

    __tablename__ = "account_balances"

    account_id: Mapped[str] = mapped_column(String(64), primary_key=True)

    credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # ── Subscription ──────────────────────────────────────────────────────
    subscription_type: Mapped[str] = mapped_column(
        String(50), nullable=False, default=SubscriptionType.FREE.value
    )
    subscription_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=SubscriptionStatus.ACTIVE.value
    )
    # NULL for the free plan, which has no billing cycle.
    billing_cycle_start: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    billing_cycle_end: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # ── Usage Counters ────────────────────────────────────────────────────
    monthly_usage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lifetime_usage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    entries: Mapped[list["UsageEntry"]] = relationship(
        back_populates="account", lazy="raise"
    )

    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_account_balances_credits_non_negative"),
        # Drives the reset/expiry sweeps.
        Index("idx_account_balances_cycle_end", "subscription_status", "billing_cycle_end"),
    )

    def __repr__(self) -> str:
        return (
            f"<AccountBalance(account_id='{self.account_id}', credits={self.credits}, "
            f"plan='{self.subscription_type}', status='{self.subscription_status}')>"
        )


class UsageEntry(Base):
    """
    Immutable record of a single balance change.

    amount is negative for usage and expiry, positive for grants and refunds,
    and either sign for a reset (the difference to the plan allotment).
    """

    __tablename__ = "usage_entries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    account_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("account_balances.account_id"), nullable=False
    )

    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(20), nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)

    idempotency_key: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True
    )
    actor: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    account: Mapped[AccountBalance] = relationship(back_populates="entries", lazy="raise")

    __table_args__ = (
        Index("idx_usage_entries_account_created", "account_id", "created_at"),
        UniqueConstraint(
            "account_id", "idempotency_key", name="uq_usage_entries_account_idempotency_key"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<UsageEntry(account_id='{self.account_id}', amount={self.amount}, "
            f"reason='{self.reason}', balance_after={self.balance_after})>"
        )
