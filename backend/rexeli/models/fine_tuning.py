"""
RExeli Backend — Fine-Tuning SQLAlchemy Models
================================================

What:  ORM models for `fine_tuning_jobs`, `training_triggers` and
       `model_versions`.
Why:   A job is a long-running, externally-timed process; its row is the
       only place that knows what was submitted, where the provider is, and
       which model came out of it.
How:   Status transitions are applied with compare-and-set UPDATEs in
       OrchestratorService; the document id lists are written once at
       creation and never modified.
Who:   OrchestratorService, DeploymentService, Alembic.

Relationships:
    fine_tuning_jobs 1 ──── 0..1 model_versions   (unique job_id)
    training_triggers: one row per document type
"""

import uuid
from datetime import datetime
from typing import Any, Optional

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
from sqlalchemy.orm import Mapped, mapped_column

from rexeli.database import Base
from rexeli.enums import DeploymentStatus, JobStatus, TriggerSource
from rexeli.models.types import JSONType, UTCDateTime, utcnow


class FineTuningJob(Base):
    """
    One submission of a dataset snapshot to the training provider.

    State machine:
        queued → uploading → running → succeeded
                                     → failed
        any non-terminal → cancelled (manual)
        queued/uploading → failed (provider error)
    """

    __tablename__ = "fine_tuning_jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    document_type: Mapped[str] = mapped_column(String(50), nullable=False)

    # NULL until the provider accepts the submission.
    external_job_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=JobStatus.QUEUED.value
    )

    # ── Submission ────────────────────────────────────────────────────────
    base_model: Mapped[str] = mapped_column(String(255), nullable=False)
    hyperparameters: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    # Snapshot of document ids taken at start(); immutable afterwards.
    training_document_ids: Mapped[list[str]] = mapped_column(JSONType, nullable=False)
    validation_document_ids: Mapped[list[str]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    training_examples_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    validation_examples_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # ── Result ────────────────────────────────────────────────────────────
    fine_tuned_model_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # Set when the job succeeds under auto-deploy; cleared once the hook has run.
    deploy_pending: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # List of {"from": ..., "to": ..., "at": ISO-8601} dicts.
    status_history: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType, nullable=False, default=list
    )

    triggered_by: Mapped[str] = mapped_column(
        String(20), nullable=False, default=TriggerSource.MANUAL.value
    )
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("idx_fine_tuning_jobs_status", "status"),
        Index("idx_fine_tuning_jobs_type_created", "document_type", "created_at"),
        Index("idx_fine_tuning_jobs_deploy_pending", "deploy_pending"),
    )

    @property
    def job_status(self) -> JobStatus:
        return JobStatus(self.status)

    def __repr__(self) -> str:
        return (
            f"<FineTuningJob(id={self.id}, type='{self.document_type}', "
            f"status='{self.status}', external='{self.external_job_id}')>"
        )


class TrainingTrigger(Base):
    """Automatic retraining schedule for one document type."""

    __tablename__ = "training_triggers"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    document_type: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)

    # A new job every `trigger_interval` verified documents.
    trigger_interval: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    min_documents_required: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    auto_trigger_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    last_trigger_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_trigger_at: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    last_triggered_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    last_job_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    total_triggers: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<TrainingTrigger(type='{self.document_type}', "
            f"next_at={self.next_trigger_at}, enabled={self.auto_trigger_enabled})>"
        )


class ModelVersion(Base):
    """A deployable fine-tuned model produced by exactly one succeeded job."""

    __tablename__ = "model_versions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("fine_tuning_jobs.id"), nullable=False, unique=True
    )
    document_type: Mapped[str] = mapped_column(String(50), nullable=False)
    # Provider-side model name passed to the extraction capability.
    model_id: Mapped[str] = mapped_column(String(255), nullable=False)
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)

    deployment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DeploymentStatus.TESTING.value
    )
    traffic_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    deployed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    archived_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("document_type", "version_number", name="uq_model_versions_type_number"),
        CheckConstraint(
            "traffic_percentage >= 0 AND traffic_percentage <= 100",
            name="ck_model_versions_traffic_range",
        ),
        Index("idx_model_versions_type_status", "document_type", "deployment_status"),
    )

    def __repr__(self) -> str:
        return (
            f"<ModelVersion(type='{self.document_type}', v{self.version_number}, "
            f"status='{self.deployment_status}', traffic={self.traffic_percentage})>"
        )
