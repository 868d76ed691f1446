"""
RExeli Backend — Metered Extraction
=====================================

What:  Runs one credit-gated extraction: authorize, pick a model, extract,
       then charge.
Why:   Users pay per page, and only for extractions that actually succeed.
How:   The ledger's authorize() is a cheap pre-check; the debit afterwards is
       the authoritative one. A failed extraction never reaches the debit.
Who:   POST /api/extract.
"""

import logging
from typing import Optional

from rexeli.enums import DocumentType, UsageReason
from rexeli.exceptions import InsufficientCreditsError
from rexeli.schemas.extraction import ExtractionResponse
from rexeli.services.deployment_service import DeploymentService, deployment_service
from rexeli.services.extraction_base import ExtractionService
from rexeli.services.gemini_service import gemini_service
from rexeli.services.ledger_service import LedgerService, ledger_service
from rexeli.services.storage_service import DocumentStorage, document_storage

logger = logging.getLogger(__name__)


class MeteredExtractionService:
    def __init__(
        self,
        ledger: Optional[LedgerService] = None,
        deployments: Optional[DeploymentService] = None,
        storage: Optional[DocumentStorage] = None,
        extractor: Optional[ExtractionService] = None,
    ):
        self._ledger = ledger or ledger_service
        self._deployments = deployments or deployment_service
        self._storage = storage or document_storage
        self._extractor = extractor or gemini_service

    async def extract(
        self,
        account_id: str,
        file_ref: str,
        document_type: DocumentType,
        page_count: int,
        idempotency_key: str,
        mime_type: str = "application/pdf",
    ) -> ExtractionResponse:
        """
        Raises:
            InsufficientCreditsError: balance below page_count (nothing extracted)
            ExtractionServiceError / CircuitBreakerOpenError: extraction failed (nothing charged)
            DuplicateOperationError: idempotency_key was already charged
        """
        check = await self._ledger.authorize(account_id, page_count)
        if not check.allowed:
            raise InsufficientCreditsError(
                required=check.required,
                available=check.available,
                context={"account_id": account_id},
            )

        doc_type = DocumentType(document_type)
        version = await self._deployments.route_for(doc_type, request_key=idempotency_key)
        model_id = version.model_id if version else None

        blob = await self._storage.get(file_ref)
        result = await self._extractor.extract(blob, mime_type, doc_type.value, model_id=model_id)

        charged = await self._ledger.debit(
            account_id,
            page_count,
            idempotency_key,
            reason=UsageReason.USAGE,
            description=f"Extraction of {page_count} page(s) ({doc_type.value})",
        )
        logger.info(
            "Extraction for %s charged %d credits (model=%s)",
            account_id,
            page_count,
            model_id or "base",
        )
        return ExtractionResponse(
            payload=result.payload,
            confidence=result.confidence,
            model_version_id=version.id if version else None,
            model_id=model_id,
            credits_charged=page_count,
            balance_after=charged.new_balance,
        )


# ── Singleton Instance ────────────────────────────────────────────────────
metered_extraction_service = MeteredExtractionService()
