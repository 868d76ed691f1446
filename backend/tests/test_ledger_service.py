"""
RExeli Backend — Credit Ledger Service Tests
==============================================

What:  LedgerService against a real (SQLite) database.
Why:   Balance arithmetic, idempotency and the scheduled sweeps are where a
       bug turns into free usage or a double charge.

What we test:
    ✅ Authorization reports the exact shortfall (5 credits vs 7 pages → 2)
    ✅ A debit never takes the balance below zero, even under concurrency
    ✅ A replayed idempotency key is charged once (keys are scoped per account)
    ✅ Monthly reset refills once per cycle, and is idempotent
    ✅ Cancelled and one-time subscriptions expire with an audit entry
    ✅ The cached balance always reconciles with the usage entries
"""

import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import InvalidRequestError

from rexeli.enums import BillingCycle, SubscriptionStatus, SubscriptionType, UsageReason
from rexeli.exceptions import (
    AuthorizationError,
    DuplicateOperationError,
    InsufficientCreditsError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from rexeli.models.ledger import AccountBalance
from rexeli.models.types import as_utc
from rexeli.services.ledger_service import add_months, next_cycle

from conftest import ADMIN, USER


async def open_with_credits(ledger, account_id: str, credits: int):
    await ledger.open_account(account_id, ADMIN)
    if credits:
        await ledger.credit(account_id, credits, UsageReason.ADMIN_ADD, ADMIN)


class TestBillingCycleArithmetic:
    def test_add_months_clamps_day(self):
        start = datetime(2024, 1, 31, tzinfo=timezone.utc)
        assert add_months(start, 1) == datetime(2024, 2, 29, tzinfo=timezone.utc)
        assert add_months(start, 12) == datetime(2025, 1, 31, tzinfo=timezone.utc)

    def test_next_cycle_catches_up_missed_cycles(self):
        """Three missed monthly resets land on the cycle containing now."""
        previous_end = datetime(2024, 1, 15, tzinfo=timezone.utc)
        now = datetime(2024, 4, 20, tzinfo=timezone.utc)
        start, end = next_cycle(previous_end, BillingCycle.MONTHLY, now)
        assert start == datetime(2024, 4, 15, tzinfo=timezone.utc)
        assert end == datetime(2024, 5, 15, tzinfo=timezone.utc)


@pytest.mark.asyncio
class TestAuthorizeAndDebit:
    async def test_shortfall_reported_on_authorize_and_debit(self, ledger):
        """5 credits, 7 pages: denied with a shortfall of 2 and nothing charged."""
        await open_with_credits(ledger, "acct-1", 5)

        check = await ledger.authorize("acct-1", 7)
        assert check.allowed is False
        assert check.available == 5
        assert check.shortfall == 2

        with pytest.raises(InsufficientCreditsError) as exc_info:
            await ledger.debit("acct-1", 7, idempotency_key="job-1")
        assert exc_info.value.shortfall == 2
        assert exc_info.value.context["shortfall"] == 2

        balance = await ledger.get_balance("acct-1")
        assert balance.credits == 5
        history = await ledger.usage_history("acct-1")
        assert [e.reason for e in history.entries] == [UsageReason.ADMIN_ADD]

    async def test_debit_updates_balance_usage_and_history(self, ledger):
        await open_with_credits(ledger, "acct-1", 20)

        result = await ledger.debit("acct-1", 7, idempotency_key="extract-1", description="7 pages")

        assert result.new_balance == 13
        assert result.amount == -7
        balance = await ledger.get_balance("acct-1")
        assert balance.monthly_usage == 7
        assert balance.lifetime_usage == 7

        history = await ledger.usage_history("acct-1")
        assert history.total == 2
        usage = [e for e in history.entries if e.reason is UsageReason.USAGE][0]
        assert usage.amount == -7
        assert usage.balance_after == 13
        assert usage.idempotency_key == "extract-1"
        assert usage.actor == "acct-1"

    async def test_replayed_idempotency_key_is_charged_once(self, ledger):
        await open_with_credits(ledger, "acct-1", 20)
        await ledger.debit("acct-1", 3, idempotency_key="same-key")

        with pytest.raises(DuplicateOperationError):
            await ledger.debit("acct-1", 3, idempotency_key="same-key")

        assert (await ledger.get_balance("acct-1")).credits == 17

    async def test_same_key_on_different_accounts_both_charge(self, ledger):
        await open_with_credits(ledger, "acct-1", 20)
        await open_with_credits(ledger, "acct-2", 20)

        await ledger.debit("acct-1", 3, idempotency_key="upload-42")
        await ledger.debit("acct-2", 5, idempotency_key="upload-42")

        assert (await ledger.get_balance("acct-1")).credits == 17
        assert (await ledger.get_balance("acct-2")).credits == 15

    async def test_concurrent_debits_never_overdraw(self, ledger):
        """Ten concurrent 10-credit debits against 50 credits: exactly five succeed."""
        await open_with_credits(ledger, "acct-1", 50)

        results = await asyncio.gather(
            *(ledger.debit("acct-1", 10, idempotency_key=f"k-{i}") for i in range(10)),
            return_exceptions=True,
        )

        succeeded = [r for r in results if not isinstance(r, Exception)]
        refused = [r for r in results if isinstance(r, InsufficientCreditsError)]
        assert len(succeeded) == 5
        assert len(refused) == 5
        assert (await ledger.get_balance("acct-1")).credits == 0
        assert (await ledger.reconcile("acct-1")).drift == 0

    @pytest.mark.parametrize("amount", [0, -3, True])
    async def test_debit_rejects_non_positive_amounts(self, ledger, amount):
        await open_with_credits(ledger, "acct-1", 5)
        with pytest.raises(ValidationError):
            await ledger.debit("acct-1", amount, idempotency_key="k")

    async def test_debit_requires_idempotency_key(self, ledger):
        await open_with_credits(ledger, "acct-1", 5)
        with pytest.raises(ValidationError):
            await ledger.debit("acct-1", 1, idempotency_key="")

    async def test_debit_cannot_write_ledger_internal_reasons(self, ledger):
        await open_with_credits(ledger, "acct-1", 5)
        with pytest.raises(ValidationError):
            await ledger.debit("acct-1", 1, idempotency_key="k", reason=UsageReason.RESET)

    async def test_unknown_account(self, ledger):
        with pytest.raises(NotFoundError):
            await ledger.get_balance("nobody")
        with pytest.raises(NotFoundError):
            await ledger.debit("nobody", 1, idempotency_key="k")

    async def test_entries_are_never_lazy_loaded(self, ledger, session_factory):
        await open_with_credits(ledger, "acct-1", 5)

        async with session_factory() as session:
            account = await session.get(AccountBalance, "acct-1")
            with pytest.raises(InvalidRequestError):
                account.entries

    async def test_inactive_account_cannot_spend(self, ledger):
        await open_with_credits(ledger, "acct-1", 10)
        await ledger.set_active("acct-1", False, ADMIN)

        check = await ledger.authorize("acct-1", 1)
        assert check.allowed is False
        assert check.available == 0

        with pytest.raises(InvalidStateError):
            await ledger.debit("acct-1", 1, idempotency_key="k")


@pytest.mark.asyncio
class TestCredit:
    async def test_credit_requires_elevated_actor(self, ledger):
        await ledger.open_account("user-1", USER)
        with pytest.raises(AuthorizationError):
            await ledger.credit("user-1", 10, UsageReason.ADMIN_ADD, USER)

    async def test_credit_above_maximum_rejected(self, ledger):
        await ledger.open_account("acct-1", ADMIN)
        with pytest.raises(ValidationError):
            await ledger.credit("acct-1", 100_001, UsageReason.ADMIN_ADD, ADMIN)

    async def test_credit_reason_must_be_a_grant(self, ledger):
        await ledger.open_account("acct-1", ADMIN)
        with pytest.raises(ValidationError):
            await ledger.credit("acct-1", 10, UsageReason.USAGE, ADMIN)

    async def test_refund_is_recorded(self, ledger):
        await open_with_credits(ledger, "acct-1", 10)
        await ledger.debit("acct-1", 4, idempotency_key="k")

        result = await ledger.credit(
            "acct-1", 4, UsageReason.REFUND, ADMIN, idempotency_key="refund-k"
        )

        assert result.new_balance == 10
        with pytest.raises(DuplicateOperationError):
            await ledger.credit("acct-1", 4, UsageReason.REFUND, ADMIN, idempotency_key="refund-k")


@pytest.mark.asyncio
class TestSubscriptions:
    async def test_open_account_twice_is_duplicate(self, ledger):
        await ledger.open_account("acct-1", ADMIN)
        with pytest.raises(DuplicateOperationError):
            await ledger.open_account("acct-1", ADMIN)

    async def test_user_may_only_open_own_account(self, ledger):
        with pytest.raises(AuthorizationError):
            await ledger.open_account("someone-else", USER)

    async def test_assign_plan_grants_allotment(self, ledger):
        await ledger.open_account("acct-1", ADMIN)
        now = datetime(2024, 1, 15, tzinfo=timezone.utc)

        balance = await ledger.assign_plan(
            "acct-1", SubscriptionType.ENTREPRENEUR_MONTHLY, ADMIN, now=now
        )

        assert balance.credits == 250
        assert balance.subscription_status is SubscriptionStatus.ACTIVE
        assert as_utc(balance.billing_cycle_end) == datetime(2024, 2, 15, tzinfo=timezone.utc)
        history = await ledger.usage_history("acct-1")
        assert history.entries[0].reason is UsageReason.PLAN_GRANT
        assert history.entries[0].amount == 250

    async def test_cancel_free_plan_is_invalid(self, ledger):
        await ledger.open_account("acct-1", ADMIN)
        with pytest.raises(InvalidStateError):
            await ledger.cancel_subscription("acct-1", ADMIN)


@pytest.mark.asyncio
class TestScheduledSweeps:
    async def test_monthly_reset_refills_once(self, ledger):
        await ledger.open_account("acct-1", ADMIN)
        await ledger.assign_plan(
            "acct-1",
            SubscriptionType.ENTREPRENEUR_MONTHLY,
            ADMIN,
            now=datetime(2024, 1, 15, tzinfo=timezone.utc),
        )
        await ledger.debit("acct-1", 100, idempotency_key="k")
        now = datetime(2024, 2, 20, tzinfo=timezone.utc)

        first = await ledger.reset_monthly_credits(now=now)
        second = await ledger.reset_monthly_credits(now=now)

        assert first.account_ids == ["acct-1"]
        assert second.accounts_reset == 0
        balance = await ledger.get_balance("acct-1")
        assert balance.credits == 250
        assert balance.monthly_usage == 0
        assert balance.lifetime_usage == 100
        assert as_utc(balance.billing_cycle_end) == datetime(2024, 3, 15, tzinfo=timezone.utc)
        assert (await ledger.reconcile("acct-1")).drift == 0

    async def test_reset_skips_cycles_not_yet_ended(self, ledger):
        await ledger.open_account("acct-1", ADMIN)
        await ledger.assign_plan(
            "acct-1",
            SubscriptionType.BUSINESS_MONTHLY,
            ADMIN,
            now=datetime(2024, 1, 15, tzinfo=timezone.utc),
        )

        result = await ledger.reset_monthly_credits(now=datetime(2024, 2, 1, tzinfo=timezone.utc))

        assert result.accounts_reset == 0

    async def test_cancelled_subscription_expires_at_cycle_end(self, ledger):
        await ledger.open_account("acct-1", ADMIN)
        await ledger.assign_plan(
            "acct-1",
            SubscriptionType.PROFESSIONAL_MONTHLY,
            ADMIN,
            now=datetime(2024, 1, 15, tzinfo=timezone.utc),
        )
        await ledger.cancel_subscription("acct-1", ADMIN)
        now = datetime(2024, 2, 16, tzinfo=timezone.utc)

        # A cancelled plan is not refilled...
        assert (await ledger.reset_monthly_credits(now=now)).accounts_reset == 0
        # ...it expires instead, once.
        first = await ledger.check_subscription_expiry(now=now)
        second = await ledger.check_subscription_expiry(now=now)

        assert first.account_ids == ["acct-1"]
        assert second.subscriptions_expired == 0
        balance = await ledger.get_balance("acct-1")
        assert balance.subscription_status is SubscriptionStatus.EXPIRED
        assert balance.credits == 0
        history = await ledger.usage_history("acct-1")
        assert history.entries[0].reason is UsageReason.EXPIRY
        assert history.entries[0].amount == -1500
        assert (await ledger.reconcile("acct-1")).drift == 0

    async def test_one_time_plan_expires(self, ledger):
        await ledger.open_account("acct-1", ADMIN)
        await ledger.assign_plan(
            "acct-1",
            SubscriptionType.ONE_TIME_ENTREPRENEUR,
            ADMIN,
            now=datetime(2024, 1, 15, tzinfo=timezone.utc),
        )

        result = await ledger.check_subscription_expiry(
            now=datetime(2024, 3, 1, tzinfo=timezone.utc)
        )

        assert result.account_ids == ["acct-1"]
        assert (await ledger.get_balance("acct-1")).credits == 0
