"""
RExeli Backend — Fine-Tuning & Deployment Schemas
===================================================

What:  Job, status, monitor, trigger and model version representations, plus
       the request bodies for starting jobs and deploying versions.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from rexeli.enums import DeploymentStatus, DocumentType, JobStatus, TriggerSource


# ══════════════════════════════════════════════════════════════════════════
# Fine-Tuning Jobs
# ══════════════════════════════════════════════════════════════════════════


class Hyperparameters(BaseModel):
    """Tuning parameters; unset values fall back to provider defaults."""
    epoch_count: Optional[int] = Field(default=None, ge=1, le=50)
    batch_size: Optional[int] = Field(default=None, ge=1, le=64)
    learning_rate: Optional[float] = Field(default=None, gt=0, le=1)


class StartJobRequest(BaseModel):
    document_type: DocumentType
    hyperparameters: Optional[Hyperparameters] = None
    notes: Optional[str] = Field(default=None, max_length=2000)


class StatusTransition(BaseModel):
    from_status: Optional[JobStatus] = Field(default=None, alias="from")
    to_status: JobStatus = Field(alias="to")
    at: datetime

    model_config = {"populate_by_name": True}


class JobResponse(BaseModel):
    id: uuid.UUID
    document_type: DocumentType
    external_job_id: Optional[str] = None
    status: JobStatus
    base_model: str
    hyperparameters: Dict[str, Any]
    training_document_ids: List[str]
    validation_document_ids: List[str]
    training_examples_count: int
    validation_examples_count: int
    fine_tuned_model_id: Optional[str] = None
    deploy_pending: bool = False
    error: Optional[str] = None
    status_history: List[StatusTransition]
    triggered_by: TriggerSource
    created_by: str
    notes: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class JobStatusResponse(BaseModel):
    """Lightweight status view with advisory progress (0, 25, 50 or 100)."""
    job_id: uuid.UUID
    status: JobStatus
    progress: int
    external_job_id: Optional[str] = None
    fine_tuned_model_id: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class MonitorResult(BaseModel):
    """Counters for one monitor pass."""
    checked: int = 0
    submitted: int = 0
    updated: int = 0
    completed: int = 0
    failed: int = 0
    still_running: int = 0
    deployed: int = Field(default=0, description="Pending deployments completed on this pass")
    errors: int = 0


class TriggerCheckResult(BaseModel):
    document_type: DocumentType
    should_trigger: bool
    verified_count: int
    next_trigger_at: int
    min_documents_required: int
    auto_trigger_enabled: bool
    reason: str


# ══════════════════════════════════════════════════════════════════════════
# Model Versions
# ══════════════════════════════════════════════════════════════════════════


class DeployRequest(BaseModel):
    deployment_status: DeploymentStatus = DeploymentStatus.ACTIVE
    traffic_percentage: int = Field(default=100, ge=0, le=100)
    notes: Optional[str] = Field(default=None, max_length=2000)


class PromoteRequest(BaseModel):
    traffic_percentage: int = Field(default=100, ge=1, le=100)


class ModelVersionResponse(BaseModel):
    id: uuid.UUID
    job_id: uuid.UUID
    document_type: DocumentType
    model_id: str
    version_number: int
    deployment_status: DeploymentStatus
    traffic_percentage: int
    deployed_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    notes: Optional[str] = None
    created_by: str
    created_at: datetime

    model_config = {"from_attributes": True}


class RouteResponse(BaseModel):
    """Which model serves a request; `version` is null for the base model."""
    document_type: DocumentType
    version: Optional[ModelVersionResponse] = None
    use_base_model: bool
