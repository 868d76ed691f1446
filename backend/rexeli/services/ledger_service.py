"""
RExeli Backend — Credit Ledger Service
========================================

What:  Per-account page-credit accounting: balance reads, authorization,
       debits, administrative credits, plan assignment and the periodic
       reset/expiry sweeps.
Why:   Every billable extraction goes through here; a lost or doubled update
       is either free usage or a customer charged twice.
How:   Each mutation runs in its own transaction that changes the balance row
       and appends the matching UsageEntry together.

Consistency Model:
    - Per-account asyncio.Lock serializes mutations inside one process.
    - Across processes the balance UPDATE is conditional
      (`WHERE credits >= :amount` for debits, `WHERE billing_cycle_end =
      :observed` for resets/expiry), so a concurrent writer makes the
      statement match zero rows instead of overwriting.
    - idempotency_key is UNIQUE per account on usage_entries; a replay is
      detected before the write and, if two replays race, by the
      IntegrityError on insert.

Flow (debit):
    ┌───────────┐   ┌────────────────┐   ┌───────────────────┐   ┌────────────┐
    │ key seen? │──▶│ UPDATE credits │──▶│ rowcount == 1 ?   │──▶│ INSERT     │
    │ (409)     │   │ WHERE >= amt   │   │ else 402 shortfall│   │ UsageEntry │
    └───────────┘   └────────────────┘   └───────────────────┘   └────────────┘
"""

import asyncio
import calendar
import logging
from collections import defaultdict
from datetime import datetime
from typing import DefaultDict, List, Optional, Tuple

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rexeli.config import settings
from rexeli.database import async_session_factory
from rexeli.enums import (
    CREDIT_REASONS,
    BillingCycle,
    SubscriptionStatus,
    SubscriptionType,
    UsageReason,
)
from rexeli.exceptions import (
    DuplicateOperationError,
    InsufficientCreditsError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from rexeli.models.ledger import AccountBalance, UsageEntry
from rexeli.models.types import as_utc, utcnow
from rexeli.schemas.ledger import (
    AuthorizationResult,
    BalanceResponse,
    ExpiryResult,
    LedgerResult,
    ReconcileResult,
    ResetResult,
    UsageEntryResponse,
    UsageHistoryResponse,
)
from rexeli.security import Actor

logger = logging.getLogger(__name__)

RECURRING_PLANS = [p.value for p in SubscriptionType if p.is_recurring]
ONE_TIME_PLANS = [
    p.value for p in SubscriptionType if p.billing_cycle is BillingCycle.ONE_TIME
]

_CYCLE_MONTHS = {
    BillingCycle.MONTHLY: 1,
    BillingCycle.ANNUAL: 12,
    # One-time purchases are valid for one month and never renew.
    BillingCycle.ONE_TIME: 1,
}


# ══════════════════════════════════════════════════════════════════════════
# Billing Cycle Arithmetic
# ══════════════════════════════════════════════════════════════════════════


def add_months(value: datetime, months: int) -> datetime:
    """Calendar-month addition; the day is clamped to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_cycle(previous_end: datetime, cycle: BillingCycle, now: datetime) -> Tuple[datetime, datetime]:
    """
    Advances a billing cycle by whole cycles from `previous_end` until its end
    is in the future. Returns (new_start, new_end).

    An account whose reset was missed for three months lands on the cycle
    containing `now` rather than on a cycle that already ended.
    """
    months = _CYCLE_MONTHS[cycle]
    k = 1
    while add_months(previous_end, k * months) <= now:
        k += 1
    return add_months(previous_end, (k - 1) * months), add_months(previous_end, k * months)


class LedgerService:
    """
    Credit ledger operations.

    Responsibilities:
        - get_balance / authorize: read-only checks
        - debit / credit: atomic balance change + usage entry
        - open_account / assign_plan / cancel_subscription: subscription lifecycle
        - reset_monthly_credits / check_subscription_expiry: scheduled sweeps
        - usage_history / reconcile: audit views
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        max_credit_per_transaction: Optional[int] = None,
    ):
        self._session_factory = session_factory or async_session_factory
        self._max_credit = max_credit_per_transaction or settings.ledger_max_credit_per_transaction
        self._locks: DefaultDict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ── Internal helpers ──────────────────────────────────────────────────

    @staticmethod
    async def _get_account(
        session: AsyncSession, account_id: str, for_update: bool = False
    ) -> AccountBalance:
        query = select(AccountBalance).where(AccountBalance.account_id == account_id)
        if for_update:
            # Row lock on PostgreSQL; ignored by SQLite.
            query = query.with_for_update()
        result = await session.execute(query)
        account = result.scalar_one_or_none()
        if account is None:
            raise NotFoundError(resource="account", resource_id=account_id)
        return account

    @staticmethod
    async def _key_applied(
        session: AsyncSession, account_id: str, idempotency_key: Optional[str]
    ) -> bool:
        if not idempotency_key:
            return False
        result = await session.execute(
            select(UsageEntry.id).where(
                UsageEntry.account_id == account_id,
                UsageEntry.idempotency_key == idempotency_key,
            )
        )
        return result.first() is not None

    @staticmethod
    def _append_entry(
        session: AsyncSession,
        account_id: str,
        amount: int,
        reason: UsageReason,
        balance_after: int,
        actor: str,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> UsageEntry:
        entry = UsageEntry(
            account_id=account_id,
            amount=amount,
            reason=reason.value,
            balance_after=balance_after,
            actor=actor,
            description=description,
            idempotency_key=idempotency_key,
        )
        session.add(entry)
        return entry

    @staticmethod
    def _validate_amount(amount: int, upper: Optional[int] = None) -> None:
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise ValidationError(
                message="Amount must be a positive whole number of credits",
                field="amount",
                context={"amount": amount},
            )
        if upper is not None and amount > upper:
            raise ValidationError(
                message=f"Amount exceeds the per-transaction maximum of {upper} credits",
                field="amount",
                context={"amount": amount, "maximum": upper},
            )

    # ── Reads ─────────────────────────────────────────────────────────────

    async def get_balance(self, account_id: str) -> BalanceResponse:
        async with self._session_factory() as session:
            account = await self._get_account(session, account_id)
            return BalanceResponse.model_validate(account)

    async def authorize(self, account_id: str, required_credits: int) -> AuthorizationResult:
        """
        Read-only check that `account_id` can pay for `required_credits` pages.

        Does not reserve anything; the debit after a successful extraction is
        the authoritative check.
        """
        self._validate_amount(required_credits)
        async with self._session_factory() as session:
            account = await self._get_account(session, account_id)

        available = account.credits if account.is_active else 0
        allowed = account.is_active and available >= required_credits
        return AuthorizationResult(
            allowed=allowed,
            required=required_credits,
            available=available,
            shortfall=0 if allowed else max(required_credits - available, 0),
        )

    async def usage_history(
        self, account_id: str, limit: int = 50, offset: int = 0
    ) -> UsageHistoryResponse:
        async with self._session_factory() as session:
            await self._get_account(session, account_id)
            total = (
                await session.execute(
                    select(func.count(UsageEntry.id)).where(UsageEntry.account_id == account_id)
                )
            ).scalar() or 0
            rows = (
                await session.execute(
                    select(UsageEntry)
                    .where(UsageEntry.account_id == account_id)
                    .order_by(UsageEntry.created_at.desc(), UsageEntry.id)
                    .limit(limit)
                    .offset(offset)
                )
            ).scalars().all()
        return UsageHistoryResponse(
            entries=[UsageEntryResponse.model_validate(r) for r in rows],
            total=total,
        )

    async def reconcile(self, account_id: str) -> ReconcileResult:
        """Compares the cached balance with SUM(amount) over the account's entries."""
        async with self._session_factory() as session:
            account = await self._get_account(session, account_id)
            ledger_balance = (
                await session.execute(
                    select(func.coalesce(func.sum(UsageEntry.amount), 0)).where(
                        UsageEntry.account_id == account_id
                    )
                )
            ).scalar() or 0

        drift = account.credits - int(ledger_balance)
        if drift:
            logger.error(
                "Ledger drift for account %s: cached=%d ledger=%d",
                account_id,
                account.credits,
                ledger_balance,
            )
        return ReconcileResult(
            account_id=account_id,
            cached_balance=account.credits,
            ledger_balance=int(ledger_balance),
            drift=drift,
        )

    # ── Balance mutations ─────────────────────────────────────────────────

    async def debit(
        self,
        account_id: str,
        amount: int,
        idempotency_key: str,
        reason: UsageReason = UsageReason.USAGE,
        actor: Optional[Actor] = None,
        description: Optional[str] = None,
    ) -> LedgerResult:
        """
        Charges `amount` credits.

        Raises:
            ValidationError: amount not a positive int, or no idempotency key
            NotFoundError: unknown account
            InvalidStateError: account deactivated
            DuplicateOperationError: idempotency_key already applied
            InsufficientCreditsError: amount > balance (carries the shortfall)
        """
        self._validate_amount(amount)
        if not idempotency_key:
            raise ValidationError(message="An idempotency key is required", field="idempotency_key")
        if reason in (UsageReason.RESET, UsageReason.EXPIRY, UsageReason.PLAN_GRANT):
            raise ValidationError(
                message=f"'{reason.value}' entries are written by the ledger itself",
                field="reason",
            )

        actor_id = actor.actor_id if actor else account_id
        async with self._locks[account_id]:
            try:
                async with self._session_factory() as session, session.begin():
                    if await self._key_applied(session, account_id, idempotency_key):
                        raise DuplicateOperationError(idempotency_key=idempotency_key)

                    account = await self._get_account(session, account_id)
                    if not account.is_active:
                        raise InvalidStateError(
                            message="Account is deactivated", current_state="inactive"
                        )

                    values = {
                        "credits": AccountBalance.credits - amount,
                        "updated_at": utcnow(),
                    }
                    if reason is UsageReason.USAGE:
                        values["monthly_usage"] = AccountBalance.monthly_usage + amount
                        values["lifetime_usage"] = AccountBalance.lifetime_usage + amount

                    result = await session.execute(
                        update(AccountBalance)
                        .where(
                            AccountBalance.account_id == account_id,
                            AccountBalance.credits >= amount,
                        )
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    await session.refresh(account)
                    if result.rowcount != 1:
                        raise InsufficientCreditsError(
                            required=amount,
                            available=account.credits,
                            context={"account_id": account_id},
                        )

                    entry = self._append_entry(
                        session,
                        account_id=account_id,
                        amount=-amount,
                        reason=reason,
                        balance_after=account.credits,
                        actor=actor_id,
                        description=description,
                        idempotency_key=idempotency_key,
                    )
                    await session.flush()
            except IntegrityError:
                logger.info("Concurrent replay of idempotency key %s rejected", idempotency_key)
                raise DuplicateOperationError(idempotency_key=idempotency_key)

        logger.info(
            "Debited %d credits from %s (%s), balance=%d",
            amount,
            account_id,
            reason.value,
            account.credits,
        )
        return LedgerResult(
            account_id=account_id,
            new_balance=account.credits,
            amount=-amount,
            reason=reason,
            entry_id=entry.id,
        )

    async def credit(
        self,
        account_id: str,
        amount: int,
        reason: UsageReason,
        actor: Actor,
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> LedgerResult:
        """
        Adds credits on behalf of an administrator or the system.

        Raises:
            AuthorizationError: actor is not admin/system
            ValidationError: amount outside 1..max per transaction, or a reason
                other than admin_add / plan_grant / refund
        """
        actor.require_elevated("credit")
        if reason not in CREDIT_REASONS:
            raise ValidationError(
                message=f"Credit reason must be one of: {sorted(r.value for r in CREDIT_REASONS)}",
                field="reason",
            )
        self._validate_amount(amount, upper=self._max_credit)

        async with self._locks[account_id]:
            try:
                async with self._session_factory() as session, session.begin():
                    if await self._key_applied(session, account_id, idempotency_key):
                        raise DuplicateOperationError(idempotency_key=idempotency_key)
                    account = await self._get_account(session, account_id)

                    await session.execute(
                        update(AccountBalance)
                        .where(AccountBalance.account_id == account_id)
                        .values(credits=AccountBalance.credits + amount, updated_at=utcnow())
                        .execution_options(synchronize_session=False)
                    )
                    await session.refresh(account)
                    entry = self._append_entry(
                        session,
                        account_id=account_id,
                        amount=amount,
                        reason=reason,
                        balance_after=account.credits,
                        actor=actor.actor_id,
                        description=description,
                        idempotency_key=idempotency_key,
                    )
                    await session.flush()
            except IntegrityError:
                raise DuplicateOperationError(idempotency_key=idempotency_key)

        logger.info(
            "Credited %d to %s (%s by %s), balance=%d",
            amount,
            account_id,
            reason.value,
            actor.actor_id,
            account.credits,
        )
        return LedgerResult(
            account_id=account_id,
            new_balance=account.credits,
            amount=amount,
            reason=reason,
            entry_id=entry.id,
        )

    # ── Subscription lifecycle ────────────────────────────────────────────

    async def open_account(
        self,
        account_id: str,
        actor: Actor,
        subscription_type: SubscriptionType = SubscriptionType.FREE,
    ) -> BalanceResponse:
        """Creates the balance row at signup, then grants the plan if it is paid."""
        if actor.actor_id != account_id:
            actor.require_elevated("open_account")
        try:
            async with self._session_factory() as session, session.begin():
                session.add(AccountBalance(account_id=account_id, credits=0))
        except IntegrityError:
            raise DuplicateOperationError(
                message=f"Account '{account_id}' already exists",
                context={"account_id": account_id},
            )
        logger.info("Opened ledger account %s", account_id)

        if subscription_type is not SubscriptionType.FREE:
            return await self.assign_plan(account_id, subscription_type, actor)
        return await self.get_balance(account_id)

    async def assign_plan(
        self,
        account_id: str,
        plan: SubscriptionType,
        actor: Actor,
        now: Optional[datetime] = None,
    ) -> BalanceResponse:
        """
        Puts an account on `plan`: status active, credits set to the plan
        allotment (recorded as a plan_grant entry), a fresh billing cycle and
        monthly_usage reset.
        """
        actor.require_elevated("assign_plan")
        now = now or utcnow()
        allotment = plan.monthly_credits

        async with self._locks[account_id]:
            async with self._session_factory() as session, session.begin():
                account = await self._get_account(session, account_id, for_update=True)
                delta = allotment - account.credits

                account.subscription_type = plan.value
                account.subscription_status = SubscriptionStatus.ACTIVE.value
                account.credits = allotment
                account.monthly_usage = 0
                if plan.billing_cycle is None:
                    account.billing_cycle_start = None
                    account.billing_cycle_end = None
                else:
                    account.billing_cycle_start = now
                    account.billing_cycle_end = add_months(now, _CYCLE_MONTHS[plan.billing_cycle])

                if delta:
                    self._append_entry(
                        session,
                        account_id=account_id,
                        amount=delta,
                        reason=UsageReason.PLAN_GRANT,
                        balance_after=allotment,
                        actor=actor.actor_id,
                        description=f"Plan assigned: {plan.value}",
                    )
                await session.flush()
                balance = BalanceResponse.model_validate(account)

        logger.info("Assigned plan %s to %s (%d credits)", plan.value, account_id, allotment)
        return balance

    async def cancel_subscription(self, account_id: str, actor: Actor) -> BalanceResponse:
        """
        Stops renewal. Remaining credits stay usable until the cycle end, when
        check_subscription_expiry clears them.
        """
        if actor.actor_id != account_id:
            actor.require_elevated("cancel_subscription")

        async with self._locks[account_id]:
            async with self._session_factory() as session, session.begin():
                account = await self._get_account(session, account_id, for_update=True)
                if account.subscription_status != SubscriptionStatus.ACTIVE.value:
                    raise InvalidStateError(
                        message="Only an active subscription can be cancelled",
                        current_state=account.subscription_status,
                    )
                if account.subscription_type == SubscriptionType.FREE.value:
                    raise InvalidStateError(
                        message="The free plan has no subscription to cancel",
                        current_state=account.subscription_type,
                    )
                account.subscription_status = SubscriptionStatus.CANCELLED.value
                await session.flush()
                balance = BalanceResponse.model_validate(account)

        logger.info("Cancelled subscription for %s", account_id)
        return balance

    async def set_active(self, account_id: str, is_active: bool, actor: Actor) -> BalanceResponse:
        """Deactivates or reactivates an account; deactivated accounts cannot spend."""
        actor.require_elevated("set_active")
        async with self._locks[account_id]:
            async with self._session_factory() as session, session.begin():
                account = await self._get_account(session, account_id, for_update=True)
                account.is_active = is_active
                await session.flush()
                balance = BalanceResponse.model_validate(account)
        logger.info("Account %s is_active=%s (by %s)", account_id, is_active, actor.actor_id)
        return balance

    # ── Scheduled sweeps ──────────────────────────────────────────────────

    async def _due_accounts(self, *conditions) -> List[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AccountBalance.account_id)
                .where(*conditions)
                .order_by(AccountBalance.account_id)
            )
            return list(result.scalars().all())

    async def reset_monthly_credits(self, now: Optional[datetime] = None) -> ResetResult:
        """
        Refills every active recurring subscription whose cycle has ended.

        Idempotent for a given `now`: the UPDATE is conditioned on the cycle
        end observed when the row was read, and the advanced cycle end is in
        the future, so a second run finds nothing due.
        """
        now = now or utcnow()
        due = await self._due_accounts(
            AccountBalance.subscription_status == SubscriptionStatus.ACTIVE.value,
            AccountBalance.subscription_type.in_(RECURRING_PLANS),
            AccountBalance.billing_cycle_end.is_not(None),
            AccountBalance.billing_cycle_end < now,
        )

        reset_ids: List[str] = []
        for account_id in due:
            try:
                if await self._reset_account(account_id, now):
                    reset_ids.append(account_id)
            except SQLAlchemyError as e:
                logger.error("Credit reset failed for %s: %s", account_id, str(e), exc_info=True)

        logger.info("Monthly credit reset: %d of %d due accounts reset", len(reset_ids), len(due))
        return ResetResult(accounts_reset=len(reset_ids), account_ids=reset_ids)

    async def _reset_account(self, account_id: str, now: datetime) -> bool:
        async with self._locks[account_id]:
            async with self._session_factory() as session, session.begin():
                account = await self._get_account(session, account_id)
                observed_end = account.billing_cycle_end
                plan = SubscriptionType(account.subscription_type)
                if (
                    account.subscription_status != SubscriptionStatus.ACTIVE.value
                    or not plan.is_recurring
                    or observed_end is None
                    or as_utc(observed_end) >= now
                ):
                    return False

                new_start, new_end = next_cycle(as_utc(observed_end), plan.billing_cycle, now)
                allotment = plan.monthly_credits
                delta = allotment - account.credits

                result = await session.execute(
                    update(AccountBalance)
                    .where(
                        AccountBalance.account_id == account_id,
                        AccountBalance.subscription_status == SubscriptionStatus.ACTIVE.value,
                        AccountBalance.billing_cycle_end == observed_end,
                    )
                    .values(
                        credits=allotment,
                        monthly_usage=0,
                        billing_cycle_start=new_start,
                        billing_cycle_end=new_end,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    logger.info("Reset of %s already applied elsewhere", account_id)
                    return False

                self._append_entry(
                    session,
                    account_id=account_id,
                    amount=delta,
                    reason=UsageReason.RESET,
                    balance_after=allotment,
                    actor="system",
                    description=f"Credit reset: {plan.value} (cycle ending {new_end.date()})",
                )
        return True

    async def check_subscription_expiry(self, now: Optional[datetime] = None) -> ExpiryResult:
        """
        Expires non-renewing subscriptions whose cycle has ended: one-time
        plans and cancelled subscriptions. Credits are cleared with an expiry
        entry. Already-expired accounts are never selected.
        """
        now = now or utcnow()
        due = await self._due_accounts(
            AccountBalance.subscription_status.in_(
                [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.CANCELLED.value]
            ),
            or_(
                AccountBalance.subscription_status == SubscriptionStatus.CANCELLED.value,
                AccountBalance.subscription_type.in_(ONE_TIME_PLANS),
            ),
            AccountBalance.billing_cycle_end.is_not(None),
            AccountBalance.billing_cycle_end < now,
        )

        expired_ids: List[str] = []
        for account_id in due:
            try:
                if await self._expire_account(account_id, now):
                    expired_ids.append(account_id)
            except SQLAlchemyError as e:
                logger.error("Expiry failed for %s: %s", account_id, str(e), exc_info=True)

        logger.info("Subscription expiry: %d accounts expired", len(expired_ids))
        return ExpiryResult(subscriptions_expired=len(expired_ids), account_ids=expired_ids)

    async def _expire_account(self, account_id: str, now: datetime) -> bool:
        async with self._locks[account_id]:
            async with self._session_factory() as session, session.begin():
                account = await self._get_account(session, account_id)
                status = account.subscription_status
                observed_end = account.billing_cycle_end
                non_renewing = (
                    status == SubscriptionStatus.CANCELLED.value
                    or account.subscription_type in ONE_TIME_PLANS
                )
                if (
                    status == SubscriptionStatus.EXPIRED.value
                    or not non_renewing
                    or observed_end is None
                    or as_utc(observed_end) >= now
                ):
                    return False

                cleared = account.credits
                result = await session.execute(
                    update(AccountBalance)
                    .where(
                        AccountBalance.account_id == account_id,
                        AccountBalance.subscription_status == status,
                        AccountBalance.billing_cycle_end == observed_end,
                    )
                    .values(
                        subscription_status=SubscriptionStatus.EXPIRED.value,
                        credits=0,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return False

                self._append_entry(
                    session,
                    account_id=account_id,
                    amount=-cleared,
                    reason=UsageReason.EXPIRY,
                    balance_after=0,
                    actor="system",
                    description=f"Subscription expired: {account.subscription_type}",
                )
        return True


# ── Singleton Instance ────────────────────────────────────────────────────
ledger_service = LedgerService()
