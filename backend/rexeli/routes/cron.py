"""
RExeli Backend — Scheduled Task Routes
========================================

What:  POST endpoints hit by the external scheduler (hourly / daily).
How:   Guarded by the shared `X-Cron-Secret` header; each call runs one
       sweep and returns its counters. Every sweep is safe to repeat.

Schedule (typical):
    reset-monthly-credits     daily
    check-subscription-expiry daily
    monitor-fine-tuning       every 5 minutes
    auto-train                hourly
"""

import logging
from typing import List

from fastapi import APIRouter, Depends

from rexeli.dependencies import get_ledger_service, get_orchestrator_service
from rexeli.schemas.fine_tuning import JobResponse, MonitorResult
from rexeli.schemas.ledger import ExpiryResult, ResetResult
from rexeli.security import Actor, verify_cron_secret
from rexeli.services.ledger_service import LedgerService
from rexeli.services.orchestrator_service import OrchestratorService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["Scheduled Tasks"])


@router.post("/reset-monthly-credits", response_model=ResetResult)
async def reset_monthly_credits(
    actor: Actor = Depends(verify_cron_secret),
    ledger: LedgerService = Depends(get_ledger_service),
) -> ResetResult:
    return await ledger.reset_monthly_credits()


@router.post("/check-subscription-expiry", response_model=ExpiryResult)
async def check_subscription_expiry(
    actor: Actor = Depends(verify_cron_secret),
    ledger: LedgerService = Depends(get_ledger_service),
) -> ExpiryResult:
    return await ledger.check_subscription_expiry()


@router.post("/monitor-fine-tuning", response_model=MonitorResult)
async def monitor_fine_tuning(
    actor: Actor = Depends(verify_cron_secret),
    orchestrator: OrchestratorService = Depends(get_orchestrator_service),
) -> MonitorResult:
    return await orchestrator.monitor_active_jobs()


@router.post("/auto-train", response_model=List[JobResponse])
async def auto_train(
    actor: Actor = Depends(verify_cron_secret),
    orchestrator: OrchestratorService = Depends(get_orchestrator_service),
) -> List[JobResponse]:
    return await orchestrator.run_auto_triggers()
