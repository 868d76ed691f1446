"""
RExeli Backend — Fine-Tuning & Deployment Routes
==================================================

What:  Job lifecycle endpoints (/api/fine-tuning/jobs) and model version
       management (/api/fine-tuning/versions, /api/fine-tuning/route).
Who:   Admin console. Reads of the routing decision are open to any actor so
       the extraction frontend can show which model will serve a type.
"""

import logging
import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from rexeli.dependencies import get_deployment_service, get_orchestrator_service
from rexeli.enums import DocumentType
from rexeli.schemas.common import ErrorResponse
from rexeli.schemas.fine_tuning import (
    DeployRequest,
    JobResponse,
    JobStatusResponse,
    ModelVersionResponse,
    PromoteRequest,
    RouteResponse,
    StartJobRequest,
    TriggerCheckResult,
)
from rexeli.security import Actor, get_actor
from rexeli.services.deployment_service import DeploymentService
from rexeli.services.orchestrator_service import OrchestratorService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/fine-tuning", tags=["Fine-Tuning"])

JOB_NOT_FOUND = {404: {"description": "Job not found", "model": ErrorResponse}}
VERSION_NOT_FOUND = {404: {"description": "Model version not found", "model": ErrorResponse}}
WRONG_STATE = {409: {"description": "Invalid state transition", "model": ErrorResponse}}


# ══════════════════════════════════════════════════════════════════════════
# Jobs
# ══════════════════════════════════════════════════════════════════════════


@router.post(
    "/jobs",
    status_code=201,
    response_model=JobResponse,
    responses={
        422: {"description": "Not enough verified training documents", "model": ErrorResponse},
        502: {"description": "Training provider rejected the job", "model": ErrorResponse},
    },
    summary="Start a fine-tuning job",
    description=(
        "Snapshots the verified train/validation split for the document type and "
        "submits it. A transient provider failure leaves the job queued; the "
        "monitor resubmits it."
    ),
)
async def start_job(
    body: StartJobRequest,
    actor: Actor = Depends(get_actor),
    orchestrator: OrchestratorService = Depends(get_orchestrator_service),
) -> JobResponse:
    return await orchestrator.start(
        body.document_type, actor, hyperparameters=body.hyperparameters, notes=body.notes
    )


@router.get("/jobs", response_model=List[JobResponse], summary="List jobs, newest first")
async def list_jobs(
    document_type: Optional[DocumentType] = None,
    limit: int = Query(default=50, ge=1, le=200),
    actor: Actor = Depends(get_actor),
    orchestrator: OrchestratorService = Depends(get_orchestrator_service),
) -> List[JobResponse]:
    actor.require_elevated("list_jobs")
    return await orchestrator.list_jobs(document_type, limit=limit)


@router.get("/jobs/{job_id}", response_model=JobResponse, responses=JOB_NOT_FOUND)
async def get_job(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    orchestrator: OrchestratorService = Depends(get_orchestrator_service),
) -> JobResponse:
    actor.require_elevated("get_job")
    return await orchestrator.get_job(job_id)


@router.get(
    "/jobs/{job_id}/status",
    response_model=JobStatusResponse,
    responses=JOB_NOT_FOUND,
    summary="Job status with advisory progress",
)
async def get_job_status(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    orchestrator: OrchestratorService = Depends(get_orchestrator_service),
) -> JobStatusResponse:
    actor.require_elevated("get_job_status")
    return await orchestrator.get_status(job_id)


@router.post(
    "/jobs/{job_id}/cancel",
    response_model=JobResponse,
    responses={**JOB_NOT_FOUND, **WRONG_STATE},
    summary="Cancel a job that has not finished",
)
async def cancel_job(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    orchestrator: OrchestratorService = Depends(get_orchestrator_service),
) -> JobResponse:
    return await orchestrator.cancel(job_id, actor)


@router.get(
    "/triggers/{document_type}",
    response_model=TriggerCheckResult,
    summary="Whether enough new verified documents exist to retrain",
)
async def check_trigger(
    document_type: DocumentType,
    actor: Actor = Depends(get_actor),
    orchestrator: OrchestratorService = Depends(get_orchestrator_service),
) -> TriggerCheckResult:
    actor.require_elevated("check_trigger")
    return await orchestrator.check_trigger(document_type)


# ══════════════════════════════════════════════════════════════════════════
# Model Versions
# ══════════════════════════════════════════════════════════════════════════


@router.post(
    "/jobs/{job_id}/deploy",
    status_code=201,
    response_model=ModelVersionResponse,
    responses={**JOB_NOT_FOUND, **WRONG_STATE},
    summary="Deploy a succeeded job as a new model version",
)
async def deploy_job(
    job_id: uuid.UUID,
    body: DeployRequest,
    actor: Actor = Depends(get_actor),
    deployments: DeploymentService = Depends(get_deployment_service),
) -> ModelVersionResponse:
    return await deployments.deploy(
        job_id,
        actor,
        deployment_status=body.deployment_status,
        traffic_percentage=body.traffic_percentage,
        notes=body.notes,
    )


@router.get("/versions", response_model=List[ModelVersionResponse], summary="List model versions")
async def list_versions(
    document_type: Optional[DocumentType] = None,
    actor: Actor = Depends(get_actor),
    deployments: DeploymentService = Depends(get_deployment_service),
) -> List[ModelVersionResponse]:
    actor.require_elevated("list_versions")
    return await deployments.list_versions(document_type)


@router.post(
    "/versions/{version_id}/promote",
    response_model=ModelVersionResponse,
    responses={**VERSION_NOT_FOUND, **WRONG_STATE},
    summary="Activate a version fully or as a canary",
)
async def promote_version(
    version_id: uuid.UUID,
    body: PromoteRequest,
    actor: Actor = Depends(get_actor),
    deployments: DeploymentService = Depends(get_deployment_service),
) -> ModelVersionResponse:
    return await deployments.promote(version_id, actor, traffic_percentage=body.traffic_percentage)


@router.post(
    "/versions/{version_id}/archive",
    response_model=ModelVersionResponse,
    responses=VERSION_NOT_FOUND,
    summary="Take a version out of rotation",
)
async def archive_version(
    version_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    deployments: DeploymentService = Depends(get_deployment_service),
) -> ModelVersionResponse:
    return await deployments.archive(version_id, actor)


@router.get(
    "/route/{document_type}",
    response_model=RouteResponse,
    summary="Which model version would serve a request",
)
async def route_for(
    document_type: DocumentType,
    request_key: Optional[str] = Query(default=None, max_length=255),
    actor: Actor = Depends(get_actor),
    deployments: DeploymentService = Depends(get_deployment_service),
) -> RouteResponse:
    version = await deployments.route_for(document_type, request_key=request_key)
    return RouteResponse(document_type=document_type, version=version, use_base_model=version is None)
