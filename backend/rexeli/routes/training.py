"""
RExeli Backend — Training Document Routes
===========================================

What:  Upload, extraction, review and dataset-preparation endpoints under
       /api/training.
Who:   The admin review console. Every endpoint requires an admin or system
       actor; training data never belongs to an end user.

Verification Flow:
    upload → process (classify + extract) → verify / reject → auto-split → export
    A successful verify schedules an auto-trigger check for the document's
    type, which may start a fine-tuning job in the background.
"""

import logging
import uuid
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, Query, UploadFile

from rexeli.dependencies import get_orchestrator_service, get_registry_service
from rexeli.enums import DatasetSplit, DocumentType, ProcessingStatus, VerificationStatus
from rexeli.schemas.common import ErrorResponse
from rexeli.schemas.training import (
    BatchProcessRequest,
    BatchProcessResponse,
    CreateDocumentRequest,
    DatasetExport,
    DocumentFilters,
    DocumentListResponse,
    DocumentResponse,
    InclusionRequest,
    ProcessResult,
    RecordExtractionRequest,
    RejectRequest,
    SplitRequest,
    SplitResult,
    TrainingMetrics,
    VerificationEditResponse,
    VerifyRequest,
)
from rexeli.security import Actor, get_actor
from rexeli.services.orchestrator_service import OrchestratorService
from rexeli.services.registry_service import RegistryService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/training", tags=["Training Documents"])

NOT_FOUND = {404: {"description": "Document not found", "model": ErrorResponse}}
WRONG_STATE = {409: {"description": "Document is in the wrong state", "model": ErrorResponse}}


async def require_admin(actor: Actor = Depends(get_actor)) -> Actor:
    actor.require_elevated("training_documents")
    return actor


# ── Records ───────────────────────────────────────────────────────────────


@router.post(
    "/documents/upload",
    status_code=201,
    response_model=DocumentResponse,
    responses={400: {"description": "Unsupported file type or size", "model": ErrorResponse}},
    summary="Upload and register a training document",
)
async def upload_document(
    file: UploadFile = File(..., description="PDF, image or spreadsheet"),
    document_type: DocumentType = Form(default=DocumentType.UNKNOWN),
    actor: Actor = Depends(require_admin),
    registry: RegistryService = Depends(get_registry_service),
) -> DocumentResponse:
    content = await file.read()
    logger.info("Upload from %s: %s (%d bytes)", actor.actor_id, file.filename, len(content))
    try:
        return await registry.upload(
            content,
            file.filename or "document.pdf",
            document_type=document_type,
            content_length=file.size,
        )
    finally:
        await file.close()


@router.post(
    "/documents",
    status_code=201,
    response_model=DocumentResponse,
    summary="Register a document already in storage",
)
async def create_document(
    body: CreateDocumentRequest,
    actor: Actor = Depends(require_admin),
    registry: RegistryService = Depends(get_registry_service),
) -> DocumentResponse:
    return await registry.create(body.file_ref, body.document_type, body.metadata)


@router.get(
    "/documents",
    response_model=DocumentListResponse,
    summary="List documents with optional filters",
)
async def query_documents(
    document_type: Optional[DocumentType] = None,
    processing_status: Optional[ProcessingStatus] = None,
    verification_status: Optional[VerificationStatus] = None,
    dataset_split: Optional[DatasetSplit] = None,
    is_verified: Optional[bool] = None,
    include_in_training: Optional[bool] = None,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    actor: Actor = Depends(require_admin),
    registry: RegistryService = Depends(get_registry_service),
) -> DocumentListResponse:
    filters = DocumentFilters(
        document_type=document_type,
        processing_status=processing_status,
        verification_status=verification_status,
        dataset_split=dataset_split,
        is_verified=is_verified,
        include_in_training=include_in_training,
    )
    return await registry.query(filters, limit=limit, offset=offset)


@router.get(
    "/documents/{document_id}",
    response_model=DocumentResponse,
    responses=NOT_FOUND,
    summary="Get one document",
)
async def get_document(
    document_id: uuid.UUID,
    actor: Actor = Depends(require_admin),
    registry: RegistryService = Depends(get_registry_service),
) -> DocumentResponse:
    return await registry.get(document_id)


# ── Extraction ────────────────────────────────────────────────────────────


@router.put(
    "/documents/{document_id}/extraction",
    response_model=DocumentResponse,
    responses={**NOT_FOUND, 400: {"description": "Confidence out of range", "model": ErrorResponse}},
    summary="Record an extraction produced elsewhere",
)
async def record_extraction(
    document_id: uuid.UUID,
    body: RecordExtractionRequest,
    actor: Actor = Depends(require_admin),
    registry: RegistryService = Depends(get_registry_service),
) -> DocumentResponse:
    return await registry.record_extraction(document_id, body.payload, body.confidence)


@router.post(
    "/documents/{document_id}/process",
    response_model=ProcessResult,
    responses={**NOT_FOUND, **WRONG_STATE},
    summary="Classify (if needed) and extract one document",
    description="Extraction failures are reported in the result, not as an HTTP error.",
)
async def process_document(
    document_id: uuid.UUID,
    actor: Actor = Depends(require_admin),
    registry: RegistryService = Depends(get_registry_service),
) -> ProcessResult:
    return await registry.process_document(document_id)


@router.post(
    "/documents/process-batch",
    response_model=BatchProcessResponse,
    summary="Process up to 100 documents; failures are isolated per document",
)
async def process_batch(
    body: BatchProcessRequest,
    actor: Actor = Depends(require_admin),
    registry: RegistryService = Depends(get_registry_service),
) -> BatchProcessResponse:
    return await registry.process_batch(body.document_ids)


# ── Review ────────────────────────────────────────────────────────────────


@router.post(
    "/documents/{document_id}/verify",
    response_model=DocumentResponse,
    responses={**NOT_FOUND, **WRONG_STATE},
    summary="Verify an extraction, optionally with corrections",
)
async def verify_document(
    document_id: uuid.UUID,
    body: VerifyRequest,
    background_tasks: BackgroundTasks,
    actor: Actor = Depends(require_admin),
    registry: RegistryService = Depends(get_registry_service),
    orchestrator: OrchestratorService = Depends(get_orchestrator_service),
) -> DocumentResponse:
    document = await registry.verify(
        document_id, actor, corrected_payload=body.corrected_payload, notes=body.notes
    )
    background_tasks.add_task(orchestrator.maybe_auto_start, document.document_type)
    return document


@router.post(
    "/documents/{document_id}/reject",
    response_model=DocumentResponse,
    responses={**NOT_FOUND, **WRONG_STATE},
    summary="Reject an extraction and exclude it from training",
)
async def reject_document(
    document_id: uuid.UUID,
    body: RejectRequest,
    actor: Actor = Depends(require_admin),
    registry: RegistryService = Depends(get_registry_service),
) -> DocumentResponse:
    return await registry.reject(document_id, actor, reason=body.reason)


@router.put(
    "/documents/{document_id}/inclusion",
    response_model=DocumentResponse,
    responses={**NOT_FOUND, **WRONG_STATE},
    summary="Include or exclude a document from training",
)
async def set_inclusion(
    document_id: uuid.UUID,
    body: InclusionRequest,
    actor: Actor = Depends(require_admin),
    registry: RegistryService = Depends(get_registry_service),
) -> DocumentResponse:
    return await registry.set_inclusion(document_id, body.include, actor)


@router.get(
    "/documents/{document_id}/edits",
    response_model=List[VerificationEditResponse],
    responses=NOT_FOUND,
    summary="Corrections made during verification",
)
async def edit_history(
    document_id: uuid.UUID,
    actor: Actor = Depends(require_admin),
    registry: RegistryService = Depends(get_registry_service),
) -> List[VerificationEditResponse]:
    return await registry.edit_history(document_id)


# ── Dataset ───────────────────────────────────────────────────────────────


@router.post(
    "/split",
    response_model=List[SplitResult],
    summary="Assign verified documents to train/validation",
)
async def auto_assign_split(
    body: SplitRequest,
    actor: Actor = Depends(require_admin),
    registry: RegistryService = Depends(get_registry_service),
) -> List[SplitResult]:
    return await registry.auto_assign_split(body.document_type, body.train_percentage)


@router.get(
    "/metrics",
    response_model=List[TrainingMetrics],
    summary="Dataset readiness per document type",
)
async def training_metrics(
    actor: Actor = Depends(require_admin),
    registry: RegistryService = Depends(get_registry_service),
) -> List[TrainingMetrics]:
    return await registry.metrics()


@router.get(
    "/export",
    response_model=DatasetExport,
    summary="Export one split of a document type as JSONL tuning rows",
)
async def export_dataset(
    document_type: DocumentType = Query(...),
    split: DatasetSplit = Query(default=DatasetSplit.TRAIN),
    actor: Actor = Depends(require_admin),
    registry: RegistryService = Depends(get_registry_service),
) -> DatasetExport:
    return await registry.export_dataset(document_type, split)
