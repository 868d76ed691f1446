"""
RExeli Backend — Training Document Registry Service
=====================================================

What:  Tracks uploaded documents through extraction, human verification and
       dataset split assignment.
Why:   Fine-tuning jobs train only on documents a reviewer has verified; the
       registry is the single place that decides which documents qualify.
How:   Each operation runs in its own transaction. Extraction calls happen
       between two short transactions (mark processing → call collaborators
       → record outcome) so no database connection is held during model I/O.
Who:   Training routes, OrchestratorService (eligible-set snapshot),
       auto-trigger checks.

Processing Flow (process_document):
    ┌──────────┐   ┌──────────────┐   ┌───────────────┐   ┌────────────────┐
    │ mark     │──▶│ storage.get  │──▶│ classify if   │──▶│ extract →      │
    │processing│   │ (blob)       │   │ type=unknown  │   │ completed      │
    └──────────┘   └──────────────┘   └───────────────┘   └────────────────┘
    Any collaborator failure → processing_status=failed, error_message set.
"""

import asyncio
import hashlib
import json
import logging
import math
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rexeli.config import settings
from rexeli.database import async_session_factory
from rexeli.enums import (
    TRAINABLE_DOCUMENT_TYPES,
    DatasetSplit,
    DocumentType,
    ProcessingStatus,
    VerificationStatus,
)
from rexeli.exceptions import InvalidStateError, NotFoundError, RExeliError, ValidationError
from rexeli.models.training import TrainingDocument, VerificationEdit
from rexeli.models.types import utcnow
from rexeli.schemas.training import (
    BatchProcessResponse,
    DatasetExport,
    DocumentFilters,
    DocumentListResponse,
    DocumentMetadata,
    DocumentResponse,
    ProcessResult,
    SplitResult,
    TrainingMetrics,
    VerificationEditResponse,
)
from rexeli.security import Actor
from rexeli.services.extraction_base import ExtractionService
from rexeli.services.gemini_service import gemini_service
from rexeli.services.storage_service import DocumentStorage, document_storage
from rexeli.services.training_provider import TrainingExample, tuning_rows, validate_tuning_jsonl

logger = logging.getLogger(__name__)

MIN_TRAIN_PERCENTAGE = 50
MAX_TRAIN_PERCENTAGE = 95


def split_order_key(document_id: uuid.UUID) -> str:
    """Stable pseudo-random ordering for dataset splits."""
    return hashlib.sha256(str(document_id).encode()).hexdigest()


def changed_fields(previous: Optional[Dict[str, Any]], corrected: Dict[str, Any]) -> List[str]:
    previous = previous or {}
    keys = set(previous) | set(corrected)
    return sorted(k for k in keys if previous.get(k) != corrected.get(k))


def eligible_conditions(document_type: str) -> list:
    """Verified, included documents of one type (any split)."""
    return [
        TrainingDocument.document_type == document_type,
        TrainingDocument.verification_status == VerificationStatus.VERIFIED.value,
        TrainingDocument.include_in_training.is_(True),
    ]


class RegistryService:
    """
    Training document registry.

    Responsibilities:
        - create / upload / get / query: document records
        - record_extraction / process_document / process_batch: extraction
        - verify / reject / set_inclusion / edit_history: review workflow
        - auto_assign_split / export_dataset / metrics: dataset preparation
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        storage: Optional[DocumentStorage] = None,
        extractor: Optional[ExtractionService] = None,
    ):
        self._session_factory = session_factory or async_session_factory
        self._storage = storage or document_storage
        self._extractor = extractor or gemini_service

    @staticmethod
    async def _get_document(session: AsyncSession, document_id: uuid.UUID) -> TrainingDocument:
        result = await session.execute(
            select(TrainingDocument).where(TrainingDocument.id == document_id)
        )
        document = result.scalar_one_or_none()
        if document is None:
            raise NotFoundError(resource="training document", resource_id=str(document_id))
        return document

    # ── Records ───────────────────────────────────────────────────────────

    async def create(
        self,
        file_ref: str,
        document_type: DocumentType,
        metadata: DocumentMetadata,
    ) -> DocumentResponse:
        """Registers a stored document with processing_status=pending."""
        async with self._session_factory() as session, session.begin():
            document = TrainingDocument(
                file_ref=file_ref,
                filename=metadata.filename,
                file_size=metadata.size,
                mime_type=metadata.mime_type,
                document_type=DocumentType(document_type).value,
                processing_status=ProcessingStatus.PENDING.value,
            )
            session.add(document)
            await session.flush()
            response = DocumentResponse.model_validate(document)

        logger.info(
            "Registered training document %s (%s, %s)",
            response.id,
            metadata.filename,
            response.document_type.value,
        )
        return response

    async def upload(
        self,
        blob: bytes,
        filename: str,
        document_type: DocumentType = DocumentType.UNKNOWN,
        content_length: Optional[int] = None,
    ) -> DocumentResponse:
        """Stores the blob, then registers it. The blob is removed if registration fails."""
        file_ref = await self._storage.put(blob, filename, content_length=content_length)
        try:
            return await self.create(
                file_ref=file_ref,
                document_type=document_type,
                metadata=DocumentMetadata(
                    filename=filename,
                    size=len(blob),
                    mime_type=self._storage.mime_type_for(filename),
                ),
            )
        except Exception:
            await self._storage.delete(file_ref)
            raise

    async def get(self, document_id: uuid.UUID) -> DocumentResponse:
        async with self._session_factory() as session:
            return DocumentResponse.model_validate(await self._get_document(session, document_id))

    async def query(
        self,
        filters: Optional[DocumentFilters] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> DocumentListResponse:
        """Newest-first listing with equality filters and a total count."""
        filters = filters or DocumentFilters()
        conditions = []
        if filters.document_type is not None:
            conditions.append(TrainingDocument.document_type == filters.document_type.value)
        if filters.processing_status is not None:
            conditions.append(
                TrainingDocument.processing_status == filters.processing_status.value
            )
        if filters.verification_status is not None:
            conditions.append(
                TrainingDocument.verification_status == filters.verification_status.value
            )
        if filters.dataset_split is not None:
            conditions.append(TrainingDocument.dataset_split == filters.dataset_split.value)
        if filters.is_verified is True:
            conditions.append(
                TrainingDocument.verification_status == VerificationStatus.VERIFIED.value
            )
        elif filters.is_verified is False:
            conditions.append(
                TrainingDocument.verification_status != VerificationStatus.VERIFIED.value
            )
        if filters.include_in_training is not None:
            conditions.append(
                TrainingDocument.include_in_training.is_(filters.include_in_training)
            )

        async with self._session_factory() as session:
            total = (
                await session.execute(select(func.count(TrainingDocument.id)).where(*conditions))
            ).scalar() or 0
            rows = (
                await session.execute(
                    select(TrainingDocument)
                    .where(*conditions)
                    .order_by(TrainingDocument.created_at.desc(), TrainingDocument.id)
                    .limit(limit)
                    .offset(offset)
                )
            ).scalars().all()

        return DocumentListResponse(
            documents=[DocumentResponse.model_validate(r) for r in rows],
            total=total,
        )

    # ── Extraction ────────────────────────────────────────────────────────

    async def record_extraction(
        self,
        document_id: uuid.UUID,
        payload: Dict[str, Any],
        confidence: float,
        document_type: Optional[str] = None,
    ) -> DocumentResponse:
        """
        Stores an extraction result and marks the document completed.

        A new extraction replaces the reviewed payload, so an earlier
        verification is reset to unverified.
        """
        if not isinstance(payload, dict):
            raise ValidationError(message="Extraction payload must be a JSON object", field="payload")
        if confidence is None or math.isnan(confidence) or not 0.0 <= confidence <= 1.0:
            raise ValidationError(
                message="Confidence must be between 0 and 1",
                field="confidence",
                context={"confidence": confidence},
            )

        async with self._session_factory() as session, session.begin():
            document = await self._get_document(session, document_id)
            document.extraction = payload
            document.extraction_confidence = float(confidence)
            document.processing_status = ProcessingStatus.COMPLETED.value
            document.error_message = None
            if document_type:
                document.document_type = DocumentType(document_type).value
            if document.verification_status != VerificationStatus.UNVERIFIED.value:
                document.verification_status = VerificationStatus.UNVERIFIED.value
                document.verified_by = None
                document.verified_at = None
                document.dataset_split = DatasetSplit.UNASSIGNED.value
            await session.flush()
            response = DocumentResponse.model_validate(document)

        logger.info("Recorded extraction for %s (confidence=%.2f)", document_id, confidence)
        return response

    async def _mark_failed(self, document_id: uuid.UUID, message: str) -> None:
        async with self._session_factory() as session, session.begin():
            document = await self._get_document(session, document_id)
            document.processing_status = ProcessingStatus.FAILED.value
            document.error_message = message

    async def process_document(self, document_id: uuid.UUID) -> ProcessResult:
        """
        Runs classification (when the type is unknown) and extraction.

        Collaborator failures are recorded on the document and returned in the
        result; only NotFound / InvalidState for the document itself raise.
        """
        async with self._session_factory() as session, session.begin():
            document = await self._get_document(session, document_id)
            if document.processing_status == ProcessingStatus.PROCESSING.value:
                raise InvalidStateError(
                    message="Document is already being processed",
                    current_state=document.processing_status,
                )
            document.processing_status = ProcessingStatus.PROCESSING.value
            document.error_message = None
            file_ref = document.file_ref
            mime_type = document.mime_type
            document_type = document.document_type

        try:
            blob = await self._storage.get(file_ref)
            if document_type == DocumentType.UNKNOWN.value:
                classification = await self._extractor.classify(blob, mime_type)
                if classification.document_type == DocumentType.UNKNOWN.value:
                    raise ValidationError(
                        message="Document type could not be determined",
                        context={"confidence": classification.confidence},
                    )
                document_type = classification.document_type
                logger.info(
                    "Classified %s as %s (confidence=%.2f)",
                    document_id,
                    document_type,
                    classification.confidence,
                )
            extraction = await self._extractor.extract(blob, mime_type, document_type)
            await self.record_extraction(
                document_id, extraction.payload, extraction.confidence, document_type=document_type
            )
        except RExeliError as e:
            logger.warning("Processing failed for document %s: %s", document_id, e.message)
            await self._mark_failed(document_id, e.message)
            return ProcessResult(
                document_id=document_id,
                processing_status=ProcessingStatus.FAILED,
                error_message=e.message,
            )

        return ProcessResult(
            document_id=document_id,
            processing_status=ProcessingStatus.COMPLETED,
            document_type=DocumentType(document_type),
        )

    async def process_batch(self, document_ids: List[uuid.UUID]) -> BatchProcessResponse:
        """
        Processes several documents with bounded parallelism. Every document
        gets a result; one failure never aborts the others.
        """
        semaphore = asyncio.Semaphore(settings.batch_concurrency)

        async def run_one(document_id: uuid.UUID) -> ProcessResult:
            async with semaphore:
                try:
                    return await self.process_document(document_id)
                except RExeliError as e:
                    return ProcessResult(
                        document_id=document_id,
                        processing_status=ProcessingStatus.FAILED,
                        error_message=e.message,
                    )
                except Exception as e:
                    logger.error(
                        "Unexpected error processing document %s", document_id, exc_info=True
                    )
                    message = f"Unexpected error: {type(e).__name__}"
                    try:
                        await self._mark_failed(document_id, message)
                    except Exception:
                        logger.error("Could not record failure for %s", document_id, exc_info=True)
                    return ProcessResult(
                        document_id=document_id,
                        processing_status=ProcessingStatus.FAILED,
                        error_message=message,
                    )

        results = await asyncio.gather(*(run_one(d) for d in document_ids))
        succeeded = sum(1 for r in results if r.processing_status is ProcessingStatus.COMPLETED)
        logger.info("Batch processed: %d succeeded, %d failed", succeeded, len(results) - succeeded)
        return BatchProcessResponse(
            results=list(results), succeeded=succeeded, failed=len(results) - succeeded
        )

    # ── Review ────────────────────────────────────────────────────────────

    @staticmethod
    def _require_completed(document: TrainingDocument) -> None:
        if document.processing_status != ProcessingStatus.COMPLETED.value:
            raise InvalidStateError(
                message="Only documents with a completed extraction can be reviewed",
                current_state=document.processing_status,
            )

    async def verify(
        self,
        document_id: uuid.UUID,
        actor: Actor,
        corrected_payload: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
    ) -> DocumentResponse:
        """Marks the extraction verified, optionally replacing it with a correction."""
        actor.require_elevated("verify")
        async with self._session_factory() as session, session.begin():
            document = await self._get_document(session, document_id)
            self._require_completed(document)

            if corrected_payload is not None:
                session.add(
                    VerificationEdit(
                        document_id=document.id,
                        previous_payload=document.extraction,
                        corrected_payload=corrected_payload,
                        changed_fields=changed_fields(document.extraction, corrected_payload),
                        edited_by=actor.actor_id,
                        notes=notes,
                    )
                )
                document.extraction = corrected_payload

            if document.verification_status == VerificationStatus.REJECTED.value:
                document.include_in_training = True
            document.verification_status = VerificationStatus.VERIFIED.value
            document.verified_by = actor.actor_id
            document.verified_at = utcnow()
            document.rejection_reason = None
            document.verification_notes = notes
            await session.flush()
            response = DocumentResponse.model_validate(document)

        logger.info(
            "Document %s verified by %s%s",
            document_id,
            actor.actor_id,
            " with corrections" if corrected_payload is not None else "",
        )
        return response

    async def reject(
        self, document_id: uuid.UUID, actor: Actor, reason: Optional[str] = None
    ) -> DocumentResponse:
        """Rejects the extraction and excludes the document from training."""
        actor.require_elevated("reject")
        async with self._session_factory() as session, session.begin():
            document = await self._get_document(session, document_id)
            self._require_completed(document)
            document.verification_status = VerificationStatus.REJECTED.value
            document.verified_by = actor.actor_id
            document.verified_at = utcnow()
            document.rejection_reason = reason
            document.include_in_training = False
            document.dataset_split = DatasetSplit.UNASSIGNED.value
            await session.flush()
            response = DocumentResponse.model_validate(document)

        logger.info("Document %s rejected by %s", document_id, actor.actor_id)
        return response

    async def set_inclusion(
        self, document_id: uuid.UUID, include: bool, actor: Actor
    ) -> DocumentResponse:
        """Soft include/exclude; a rejected document cannot be re-included."""
        actor.require_elevated("set_inclusion")
        async with self._session_factory() as session, session.begin():
            document = await self._get_document(session, document_id)
            if include and document.verification_status == VerificationStatus.REJECTED.value:
                raise InvalidStateError(
                    message="A rejected document must be verified before it can be included",
                    current_state=document.verification_status,
                )
            document.include_in_training = include
            if not include:
                document.dataset_split = DatasetSplit.UNASSIGNED.value
            await session.flush()
            response = DocumentResponse.model_validate(document)
        return response

    async def edit_history(self, document_id: uuid.UUID) -> List[VerificationEditResponse]:
        async with self._session_factory() as session:
            await self._get_document(session, document_id)
            rows = (
                await session.execute(
                    select(VerificationEdit)
                    .where(VerificationEdit.document_id == document_id)
                    .order_by(VerificationEdit.created_at)
                )
            ).scalars().all()
        return [VerificationEditResponse.model_validate(r) for r in rows]

    # ── Dataset preparation ───────────────────────────────────────────────

    async def auto_assign_split(
        self,
        document_type: Optional[DocumentType] = None,
        train_percentage: int = 80,
    ) -> List[SplitResult]:
        """
        Re-partitions every verified, included document of each type into
        train/validation.

        Documents are ordered by a hash of their id, so the same pool always
        yields the same partition; train count = floor(n * pct / 100).
        """
        if (
            isinstance(train_percentage, bool)
            or not isinstance(train_percentage, int)
            or not MIN_TRAIN_PERCENTAGE <= train_percentage <= MAX_TRAIN_PERCENTAGE
        ):
            raise ValidationError(
                message=(
                    f"train_percentage must be between {MIN_TRAIN_PERCENTAGE} "
                    f"and {MAX_TRAIN_PERCENTAGE}"
                ),
                field="train_percentage",
                context={"train_percentage": train_percentage},
            )

        types = [DocumentType(document_type)] if document_type else TRAINABLE_DOCUMENT_TYPES
        results: List[SplitResult] = []
        for doc_type in types:
            async with self._session_factory() as session, session.begin():
                documents = (
                    await session.execute(
                        select(TrainingDocument).where(*eligible_conditions(doc_type.value))
                    )
                ).scalars().all()
                if not documents and document_type is None:
                    continue

                ordered = sorted(documents, key=lambda d: split_order_key(d.id))
                train_count = len(ordered) * train_percentage // 100
                for index, document in enumerate(ordered):
                    document.dataset_split = (
                        DatasetSplit.TRAIN.value if index < train_count
                        else DatasetSplit.VALIDATION.value
                    )

            results.append(
                SplitResult(
                    document_type=doc_type,
                    total=len(ordered),
                    train=train_count,
                    validation=len(ordered) - train_count,
                )
            )
            logger.info(
                "Split %s: %d train / %d validation",
                doc_type.value,
                train_count,
                len(ordered) - train_count,
            )
        return results

    async def export_dataset(
        self,
        document_type: DocumentType,
        split: DatasetSplit = DatasetSplit.TRAIN,
    ) -> DatasetExport:
        """
        Renders one split of a type as the JSONL rows a tuning job would
        receive, and validates every line. Problems are reported, not raised.
        """
        doc_type = DocumentType(document_type)
        split = DatasetSplit(split)
        if split is DatasetSplit.UNASSIGNED:
            raise ValidationError(message="Only train or validation can be exported", field="split")

        async with self._session_factory() as session:
            documents = (
                await session.execute(
                    select(TrainingDocument)
                    .where(
                        *eligible_conditions(doc_type.value),
                        TrainingDocument.dataset_split == split.value,
                    )
                    .order_by(TrainingDocument.created_at, TrainingDocument.id)
                )
            ).scalars().all()

        examples = [
            TrainingExample(
                document_id=str(d.id),
                document_type=d.document_type,
                file_ref=d.file_ref,
                filename=d.filename,
                output=d.extraction or {},
            )
            for d in documents
        ]
        jsonl = "\n".join(json.dumps(row) for row in tuning_rows(examples))
        errors = validate_tuning_jsonl(jsonl)
        if not examples:
            errors.append(f"No verified {doc_type.value} documents in the {split.value} split")

        logger.info(
            "Exported %s/%s: %d examples, %d problems",
            doc_type.value,
            split.value,
            len(examples),
            len(errors),
        )
        return DatasetExport(
            document_type=doc_type,
            split=split,
            example_count=len(examples),
            valid=not errors,
            errors=errors,
            jsonl=jsonl,
        )

    async def count_eligible(self, document_type: str) -> int:
        """Verified, included documents of a type, regardless of split."""
        async with self._session_factory() as session:
            return (
                await session.execute(
                    select(func.count(TrainingDocument.id)).where(
                        *eligible_conditions(document_type)
                    )
                )
            ).scalar() or 0

    async def metrics(self) -> List[TrainingMetrics]:
        """Per-type dataset readiness, one row per trainable document type."""

        def count_where(condition):
            return func.sum(case((condition, 1), else_=0))

        query = select(
            TrainingDocument.document_type,
            func.count(TrainingDocument.id),
            count_where(TrainingDocument.processing_status == ProcessingStatus.COMPLETED.value),
            count_where(TrainingDocument.processing_status == ProcessingStatus.FAILED.value),
            count_where(TrainingDocument.verification_status == VerificationStatus.VERIFIED.value),
            count_where(TrainingDocument.verification_status == VerificationStatus.REJECTED.value),
            count_where(TrainingDocument.include_in_training.is_(True)),
            count_where(TrainingDocument.dataset_split == DatasetSplit.TRAIN.value),
            count_where(TrainingDocument.dataset_split == DatasetSplit.VALIDATION.value),
            func.avg(TrainingDocument.extraction_confidence),
        ).group_by(TrainingDocument.document_type)

        async with self._session_factory() as session:
            rows = {row[0]: row for row in (await session.execute(query)).all()}

        metrics: List[TrainingMetrics] = []
        for doc_type in TRAINABLE_DOCUMENT_TYPES:
            row = rows.get(doc_type.value)
            if row is None:
                metrics.append(TrainingMetrics(document_type=doc_type))
                continue
            _, total, completed, failed, verified, rejected, included, train, validation, avg = row
            metrics.append(
                TrainingMetrics(
                    document_type=doc_type,
                    total_documents=total,
                    completed=completed or 0,
                    failed=failed or 0,
                    verified=verified or 0,
                    rejected=rejected or 0,
                    included=included or 0,
                    train=train or 0,
                    validation=validation or 0,
                    average_confidence=round(float(avg), 4) if avg is not None else None,
                    ready_for_training=(train or 0) >= settings.min_training_documents,
                )
            )
        return metrics


# ── Singleton Instance ────────────────────────────────────────────────────
registry_service = RegistryService()
