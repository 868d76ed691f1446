"""
RExeli Backend — Credit Ledger Routes
=======================================

What:  Account balance, authorization, debit/credit, subscription and audit
       endpoints under /api/accounts.
How:   Thin handlers: resolve the actor, delegate to LedgerService, let the
       global exception handlers shape errors.

Access:
    Users may read and spend their own account. Everything else (credits,
    plan changes, activation, reconciliation, other users' accounts) needs an
    admin or system actor.
"""

import logging

from fastapi import APIRouter, Depends, Query

from rexeli.dependencies import get_ledger_service
from rexeli.schemas.common import ErrorResponse
from rexeli.schemas.ledger import (
    AssignPlanRequest,
    AuthorizationResult,
    BalanceResponse,
    CreditRequest,
    DebitRequest,
    LedgerResult,
    OpenAccountRequest,
    ReconcileResult,
    SetActiveRequest,
    UsageHistoryResponse,
)
from rexeli.security import Actor, get_actor
from rexeli.services.ledger_service import LedgerService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/accounts", tags=["Credit Ledger"])

COMMON_ERRORS = {
    400: {"description": "Invalid amount or request", "model": ErrorResponse},
    403: {"description": "Actor may not access this account", "model": ErrorResponse},
    404: {"description": "Unknown account", "model": ErrorResponse},
}


def _require_self_or_admin(actor: Actor, account_id: str, operation: str) -> None:
    if actor.actor_id != account_id:
        actor.require_elevated(operation)


@router.post(
    "",
    status_code=201,
    response_model=BalanceResponse,
    responses={**COMMON_ERRORS, 409: {"description": "Account exists", "model": ErrorResponse}},
    summary="Open a credit account",
)
async def open_account(
    body: OpenAccountRequest,
    actor: Actor = Depends(get_actor),
    ledger: LedgerService = Depends(get_ledger_service),
) -> BalanceResponse:
    return await ledger.open_account(body.account_id, actor, body.subscription_type)


@router.get(
    "/{account_id}/balance",
    response_model=BalanceResponse,
    responses=COMMON_ERRORS,
    summary="Current balance and subscription state",
)
async def get_balance(
    account_id: str,
    actor: Actor = Depends(get_actor),
    ledger: LedgerService = Depends(get_ledger_service),
) -> BalanceResponse:
    _require_self_or_admin(actor, account_id, "get_balance")
    return await ledger.get_balance(account_id)


@router.get(
    "/{account_id}/authorize",
    response_model=AuthorizationResult,
    responses=COMMON_ERRORS,
    summary="Check whether the account can pay for N pages",
    description="Read-only; nothing is reserved. A denied check reports the shortfall.",
)
async def authorize(
    account_id: str,
    pages: int = Query(..., description="Pages the caller intends to process"),
    actor: Actor = Depends(get_actor),
    ledger: LedgerService = Depends(get_ledger_service),
) -> AuthorizationResult:
    _require_self_or_admin(actor, account_id, "authorize")
    return await ledger.authorize(account_id, pages)


@router.post(
    "/{account_id}/debit",
    response_model=LedgerResult,
    responses={
        **COMMON_ERRORS,
        402: {"description": "Insufficient credits", "model": ErrorResponse},
        409: {"description": "Idempotency key already applied", "model": ErrorResponse},
    },
    summary="Charge credits",
)
async def debit(
    account_id: str,
    body: DebitRequest,
    actor: Actor = Depends(get_actor),
    ledger: LedgerService = Depends(get_ledger_service),
) -> LedgerResult:
    _require_self_or_admin(actor, account_id, "debit")
    return await ledger.debit(
        account_id,
        body.amount,
        body.idempotency_key,
        actor=actor,
        description=body.description,
    )


@router.post(
    "/{account_id}/credit",
    response_model=LedgerResult,
    responses=COMMON_ERRORS,
    summary="Add credits (admin)",
)
async def credit(
    account_id: str,
    body: CreditRequest,
    actor: Actor = Depends(get_actor),
    ledger: LedgerService = Depends(get_ledger_service),
) -> LedgerResult:
    return await ledger.credit(
        account_id,
        body.amount,
        body.reason,
        actor,
        description=body.description,
        idempotency_key=body.idempotency_key,
    )


@router.put(
    "/{account_id}/plan",
    response_model=BalanceResponse,
    responses=COMMON_ERRORS,
    summary="Assign a subscription plan (admin)",
)
async def assign_plan(
    account_id: str,
    body: AssignPlanRequest,
    actor: Actor = Depends(get_actor),
    ledger: LedgerService = Depends(get_ledger_service),
) -> BalanceResponse:
    return await ledger.assign_plan(account_id, body.subscription_type, actor)


@router.post(
    "/{account_id}/cancel",
    response_model=BalanceResponse,
    responses={**COMMON_ERRORS, 409: {"description": "Not active", "model": ErrorResponse}},
    summary="Cancel renewal; credits stay usable until the cycle ends",
)
async def cancel_subscription(
    account_id: str,
    actor: Actor = Depends(get_actor),
    ledger: LedgerService = Depends(get_ledger_service),
) -> BalanceResponse:
    return await ledger.cancel_subscription(account_id, actor)


@router.put(
    "/{account_id}/active",
    response_model=BalanceResponse,
    responses=COMMON_ERRORS,
    summary="Deactivate or reactivate an account (admin)",
)
async def set_active(
    account_id: str,
    body: SetActiveRequest,
    actor: Actor = Depends(get_actor),
    ledger: LedgerService = Depends(get_ledger_service),
) -> BalanceResponse:
    return await ledger.set_active(account_id, body.is_active, actor)


@router.get(
    "/{account_id}/usage",
    response_model=UsageHistoryResponse,
    responses=COMMON_ERRORS,
    summary="Usage entries, newest first",
)
async def usage_history(
    account_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    actor: Actor = Depends(get_actor),
    ledger: LedgerService = Depends(get_ledger_service),
) -> UsageHistoryResponse:
    _require_self_or_admin(actor, account_id, "usage_history")
    return await ledger.usage_history(account_id, limit=limit, offset=offset)


@router.get(
    "/{account_id}/reconcile",
    response_model=ReconcileResult,
    responses=COMMON_ERRORS,
    summary="Compare the cached balance with the sum of ledger entries (admin)",
)
async def reconcile(
    account_id: str,
    actor: Actor = Depends(get_actor),
    ledger: LedgerService = Depends(get_ledger_service),
) -> ReconcileResult:
    actor.require_elevated("reconcile")
    return await ledger.reconcile(account_id)
