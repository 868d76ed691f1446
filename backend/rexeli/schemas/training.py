"""
RExeli Backend — Training Document Registry Schemas
=====================================================

What:  Document representations, verification requests, split results,
       query filters and per-type training metrics.
"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from rexeli.enums import DatasetSplit, DocumentType, ProcessingStatus, VerificationStatus


# ══════════════════════════════════════════════════════════════════════════
# Response Models
# ══════════════════════════════════════════════════════════════════════════


class DocumentResponse(BaseModel):
    """Full representation of a training document."""
    id: uuid.UUID
    file_ref: str
    filename: str
    file_size: int
    mime_type: str
    document_type: DocumentType
    processing_status: ProcessingStatus
    extraction: Optional[Dict[str, Any]] = None
    extraction_confidence: Optional[float] = None
    error_message: Optional[str] = None
    verification_status: VerificationStatus
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    dataset_split: DatasetSplit
    include_in_training: bool
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class DocumentListResponse(BaseModel):
    documents: List[DocumentResponse]
    total: int = Field(description="Number of documents matching the filters")


class ProcessResult(BaseModel):
    """Per-document outcome of process_document / process_batch."""
    document_id: uuid.UUID
    processing_status: ProcessingStatus
    document_type: Optional[DocumentType] = None
    error_message: Optional[str] = None


class BatchProcessResponse(BaseModel):
    results: List[ProcessResult]
    succeeded: int
    failed: int


class SplitResult(BaseModel):
    document_type: DocumentType
    total: int
    train: int
    validation: int


class DatasetExport(BaseModel):
    """One split of a document type as JSONL tuning rows, with format problems listed."""

    document_type: DocumentType
    split: DatasetSplit
    example_count: int
    valid: bool
    errors: List[str] = Field(default_factory=list)
    jsonl: str = Field(description="One {\"text_input\", \"output\"} object per line")


class VerificationEditResponse(BaseModel):
    id: uuid.UUID
    document_id: uuid.UUID
    previous_payload: Optional[Dict[str, Any]] = None
    corrected_payload: Dict[str, Any]
    changed_fields: List[str]
    edited_by: str
    notes: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class TrainingMetrics(BaseModel):
    """Dataset readiness for one document type."""
    document_type: DocumentType
    total_documents: int = 0
    completed: int = 0
    failed: int = 0
    verified: int = 0
    rejected: int = 0
    included: int = 0
    train: int = 0
    validation: int = 0
    average_confidence: Optional[float] = None
    ready_for_training: bool = False


# ══════════════════════════════════════════════════════════════════════════
# Request Models
# ══════════════════════════════════════════════════════════════════════════


class DocumentMetadata(BaseModel):
    filename: str = Field(min_length=1, max_length=255)
    size: int = Field(default=0, ge=0)
    mime_type: str = Field(default="application/pdf", max_length=100)


class CreateDocumentRequest(BaseModel):
    """Registers a document already placed in storage."""
    file_ref: str = Field(min_length=1, max_length=512)
    document_type: DocumentType = DocumentType.UNKNOWN
    metadata: DocumentMetadata


class DocumentFilters(BaseModel):
    """Optional equality filters for RegistryService.query(); None means any."""
    document_type: Optional[DocumentType] = None
    processing_status: Optional[ProcessingStatus] = None
    verification_status: Optional[VerificationStatus] = None
    dataset_split: Optional[DatasetSplit] = None
    is_verified: Optional[bool] = None
    include_in_training: Optional[bool] = None


class RecordExtractionRequest(BaseModel):
    payload: Dict[str, Any]
    # Bounds are enforced by RegistryService (400 rather than 422).
    confidence: float


class VerifyRequest(BaseModel):
    corrected_payload: Optional[Dict[str, Any]] = None
    notes: Optional[str] = Field(default=None, max_length=2000)


class RejectRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=2000)


class InclusionRequest(BaseModel):
    include: bool


class BatchProcessRequest(BaseModel):
    document_ids: List[uuid.UUID] = Field(min_length=1, max_length=100)


class SplitRequest(BaseModel):
    document_type: Optional[DocumentType] = None
    train_percentage: int = 80
