"""
RExeli Backend — Domain Enumerations
======================================

What:  Closed sets of values shared by models, schemas and services.
How:   `str, Enum` classes so values serialize as plain strings in JSON and
       compare equal to the strings stored in VARCHAR columns.
Who:   Imported by ORM models (column defaults), Pydantic schemas
       (request validation) and services (state machines).
"""

from enum import Enum
from typing import Dict, Optional


# ══════════════════════════════════════════════════════════════════════════
# Training Documents
# ══════════════════════════════════════════════════════════════════════════


class DocumentType(str, Enum):
    RENT_ROLL = "rent_roll"
    OPERATING_BUDGET = "operating_budget"
    BROKER_SALES_COMPARABLES = "broker_sales_comparables"
    BROKER_LEASE_COMPARABLES = "broker_lease_comparables"
    BROKER_LISTING = "broker_listing"
    OFFERING_MEMO = "offering_memo"
    LEASE_AGREEMENT = "lease_agreement"
    FINANCIAL_STATEMENTS = "financial_statements"
    # Placeholder until classification has run; never trained on.
    UNKNOWN = "unknown"


TRAINABLE_DOCUMENT_TYPES = [t for t in DocumentType if t is not DocumentType.UNKNOWN]


class ProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class VerificationStatus(str, Enum):
    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    REJECTED = "rejected"


class DatasetSplit(str, Enum):
    UNASSIGNED = "unassigned"
    TRAIN = "train"
    VALIDATION = "validation"


# ══════════════════════════════════════════════════════════════════════════
# Fine-Tuning Jobs & Model Versions
# ══════════════════════════════════════════════════════════════════════════


class JobStatus(str, Enum):
    QUEUED = "queued"
    UPLOADING = "uploading"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED})

# Advisory progress reported by get_status.
JOB_PROGRESS: Dict[JobStatus, int] = {
    JobStatus.QUEUED: 0,
    JobStatus.UPLOADING: 25,
    JobStatus.RUNNING: 50,
    JobStatus.SUCCEEDED: 100,
    JobStatus.FAILED: 100,
    JobStatus.CANCELLED: 100,
}


class TriggerSource(str, Enum):
    MANUAL = "manual"
    AUTO = "auto"


class ProviderJobState(str, Enum):
    """Normalized state reported by a training provider poll."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class DeploymentStatus(str, Enum):
    TESTING = "testing"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


# ══════════════════════════════════════════════════════════════════════════
# Credit Ledger
# ══════════════════════════════════════════════════════════════════════════


class SubscriptionType(str, Enum):
    FREE = "free"
    ENTREPRENEUR_MONTHLY = "entrepreneur_monthly"
    PROFESSIONAL_MONTHLY = "professional_monthly"
    BUSINESS_MONTHLY = "business_monthly"
    ENTREPRENEUR_ANNUAL = "entrepreneur_annual"
    PROFESSIONAL_ANNUAL = "professional_annual"
    BUSINESS_ANNUAL = "business_annual"
    ONE_TIME_ENTREPRENEUR = "one_time_entrepreneur"
    ONE_TIME_PROFESSIONAL = "one_time_professional"
    ONE_TIME_BUSINESS = "one_time_business"

    @property
    def monthly_credits(self) -> int:
        return PLAN_CREDITS[self]

    @property
    def billing_cycle(self) -> Optional["BillingCycle"]:
        return PLAN_CYCLES[self]

    @property
    def is_recurring(self) -> bool:
        return self.billing_cycle in (BillingCycle.MONTHLY, BillingCycle.ANNUAL)


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"
    ONE_TIME = "one_time"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class UsageReason(str, Enum):
    USAGE = "usage"
    ADMIN_ADD = "admin_add"
    PLAN_GRANT = "plan_grant"
    REFUND = "refund"
    RESET = "reset"
    EXPIRY = "expiry"


# Reasons an elevated actor may pass to LedgerService.credit().
CREDIT_REASONS = frozenset({UsageReason.ADMIN_ADD, UsageReason.PLAN_GRANT, UsageReason.REFUND})

# Page credits granted per billing period.
PLAN_CREDITS: Dict[SubscriptionType, int] = {
    SubscriptionType.FREE: 0,
    SubscriptionType.ENTREPRENEUR_MONTHLY: 250,
    SubscriptionType.PROFESSIONAL_MONTHLY: 1500,
    SubscriptionType.BUSINESS_MONTHLY: 7500,
    SubscriptionType.ENTREPRENEUR_ANNUAL: 250,
    SubscriptionType.PROFESSIONAL_ANNUAL: 1500,
    SubscriptionType.BUSINESS_ANNUAL: 7500,
    SubscriptionType.ONE_TIME_ENTREPRENEUR: 250,
    SubscriptionType.ONE_TIME_PROFESSIONAL: 1250,
    SubscriptionType.ONE_TIME_BUSINESS: 6250,
}

PLAN_CYCLES: Dict[SubscriptionType, Optional[BillingCycle]] = {
    SubscriptionType.FREE: None,
    SubscriptionType.ENTREPRENEUR_MONTHLY: BillingCycle.MONTHLY,
    SubscriptionType.PROFESSIONAL_MONTHLY: BillingCycle.MONTHLY,
    SubscriptionType.BUSINESS_MONTHLY: BillingCycle.MONTHLY,
    SubscriptionType.ENTREPRENEUR_ANNUAL: BillingCycle.ANNUAL,
    SubscriptionType.PROFESSIONAL_ANNUAL: BillingCycle.ANNUAL,
    SubscriptionType.BUSINESS_ANNUAL: BillingCycle.ANNUAL,
    SubscriptionType.ONE_TIME_ENTREPRENEUR: BillingCycle.ONE_TIME,
    SubscriptionType.ONE_TIME_PROFESSIONAL: BillingCycle.ONE_TIME,
    SubscriptionType.ONE_TIME_BUSINESS: BillingCycle.ONE_TIME,
}


# ══════════════════════════════════════════════════════════════════════════
# Authorization
# ══════════════════════════════════════════════════════════════════════════


class ActorRole(str, Enum):
    USER = "user"
    ADMIN = "admin"
    SYSTEM = "system"
