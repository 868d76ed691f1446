"""
RExeli Backend — Training Document SQLAlchemy Models
======================================================

What:  ORM models for `training_documents` and `verification_edits`.
Why:   Verified extractions are the raw material for fine-tuning jobs; the
       registry tracks every document from upload to dataset split.
How:   Three independent status columns (processing, verification, split)
       plus an include_in_training soft-exclusion flag.
Who:   RegistryService (all writes), OrchestratorService (snapshot reads).

Lifecycle:
    pending → processing → completed | failed        (processing_status)
    unverified → verified | rejected                  (verification_status)
    unassigned → train | validation                   (dataset_split)
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Boolean, Float, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from rexeli.database import Base
from rexeli.enums import DatasetSplit, DocumentType, ProcessingStatus, VerificationStatus
from rexeli.models.types import JSONType, UTCDateTime, utcnow


class TrainingDocument(Base):
    """A stored source document and the state of its extraction."""

    __tablename__ = "training_documents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # ── File Metadata ─────────────────────────────────────────────────────
    # Opaque reference returned by DocumentStorage.put().
    file_ref: Mapped[str] = mapped_column(String(512), nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    mime_type: Mapped[str] = mapped_column(
        String(100), nullable=False, default="application/pdf"
    )
    document_type: Mapped[str] = mapped_column(
        String(50), nullable=False, default=DocumentType.UNKNOWN.value
    )

    # ── Extraction ────────────────────────────────────────────────────────
    processing_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=ProcessingStatus.PENDING.value
    )
    extraction: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    extraction_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # ── Verification ──────────────────────────────────────────────────────
    verification_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=VerificationStatus.UNVERIFIED.value
    )
    verified_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    verification_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # ── Dataset ───────────────────────────────────────────────────────────
    dataset_split: Mapped[str] = mapped_column(
        String(20), nullable=False, default=DatasetSplit.UNASSIGNED.value
    )
    include_in_training: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        # Snapshot query: verified + included + split, per type.
        Index(
            "idx_training_documents_eligible",
            "document_type",
            "verification_status",
            "dataset_split",
        ),
        Index("idx_training_documents_created_at", created_at.desc()),
    )

    @property
    def is_verified(self) -> bool:
        return self.verification_status == VerificationStatus.VERIFIED.value

    def __repr__(self) -> str:
        return (
            f"<TrainingDocument(id={self.id}, type='{self.document_type}', "
            f"processing='{self.processing_status}', "
            f"verification='{self.verification_status}', split='{self.dataset_split}')>"
        )


class VerificationEdit(Base):
    """Append-only record of a reviewer correcting an extraction payload."""

    __tablename__ = "verification_edits"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("training_documents.id"), nullable=False, index=True
    )
    previous_payload: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    corrected_payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    # Top-level keys whose value differs between the two payloads.
    changed_fields: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)
    edited_by: Mapped[str] = mapped_column(String(64), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return (
            f"<VerificationEdit(document_id={self.document_id}, "
            f"changed_fields={self.changed_fields}, edited_by='{self.edited_by}')>"
        )
