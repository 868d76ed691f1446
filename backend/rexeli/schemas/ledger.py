"""
RExeli Backend — Credit Ledger Schemas
========================================

What:  Request bodies and results for balance, authorization, debit/credit,
       plan management and the periodic reset/expiry sweeps.
How:   Response models use `from_attributes` so LedgerService can build them
       straight from ORM rows.
"""

import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from rexeli.enums import SubscriptionStatus, SubscriptionType, UsageReason


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════


class BalanceResponse(BaseModel):
    """Current balance and subscription state of one account."""
    account_id: str
    credits: int = Field(description="Remaining page credits (never negative)")
    subscription_type: SubscriptionType
    subscription_status: SubscriptionStatus
    billing_cycle_start: Optional[datetime] = None
    billing_cycle_end: Optional[datetime] = None
    monthly_usage: int = 0
    lifetime_usage: int = 0
    is_active: bool = True
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class AuthorizationResult(BaseModel):
    """
    Outcome of a read-only credit check.

    shortfall is `required - available` when denied and 0 when allowed, so a
    client can tell the user exactly how many pages are missing.
    """
    allowed: bool
    required: int
    available: int
    shortfall: int = 0


class LedgerResult(BaseModel):
    """Result of a debit or credit: the new balance and the entry written."""
    account_id: str
    new_balance: int
    amount: int = Field(description="Signed delta applied to the balance")
    reason: UsageReason
    entry_id: uuid.UUID


class UsageEntryResponse(BaseModel):
    id: uuid.UUID
    account_id: str
    amount: int
    reason: UsageReason
    balance_after: int
    idempotency_key: Optional[str] = None
    actor: str
    description: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class UsageHistoryResponse(BaseModel):
    entries: List[UsageEntryResponse]
    total: int


class ResetResult(BaseModel):
    accounts_reset: int
    account_ids: List[str] = Field(default_factory=list)


class ExpiryResult(BaseModel):
    subscriptions_expired: int
    account_ids: List[str] = Field(default_factory=list)


class ReconcileResult(BaseModel):
    """Cached balance compared with the sum of the account's usage entries."""
    account_id: str
    cached_balance: int
    ledger_balance: int
    drift: int


# ══════════════════════════════════════════════════════════════════════════
# Request Models
# ══════════════════════════════════════════════════════════════════════════


class OpenAccountRequest(BaseModel):
    account_id: str = Field(min_length=1, max_length=64)
    subscription_type: SubscriptionType = SubscriptionType.FREE


class AssignPlanRequest(BaseModel):
    subscription_type: SubscriptionType


class DebitRequest(BaseModel):
    # Range checks happen in LedgerService so they surface as 400s.
    amount: int = Field(description="Pages to charge")
    idempotency_key: str = Field(min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)


class CreditRequest(BaseModel):
    amount: int = Field(description="Credits to add")
    reason: UsageReason = UsageReason.ADMIN_ADD
    description: Optional[str] = Field(default=None, max_length=1000)
    idempotency_key: Optional[str] = Field(default=None, max_length=255)


class SetActiveRequest(BaseModel):
    is_active: bool
