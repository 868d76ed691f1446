"""
RExeli Backend — Metered Extraction Route
===========================================

What:  POST /api/extract: extract a stored document and charge the caller's
       account per page.
How:   The caller's own account is charged (X-Actor-Id). Nothing is charged
       when extraction fails.
"""

import logging

from fastapi import APIRouter, Depends

from rexeli.dependencies import get_metered_extraction_service
from rexeli.schemas.common import ErrorResponse
from rexeli.schemas.extraction import ExtractionResponse, ExtractRequest
from rexeli.security import Actor, get_actor
from rexeli.services.metered_extraction import MeteredExtractionService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Extraction"])


@router.post(
    "/extract",
    response_model=ExtractionResponse,
    responses={
        402: {"description": "Not enough credits; details carry the shortfall", "model": ErrorResponse},
        404: {"description": "Unknown account or file", "model": ErrorResponse},
        409: {"description": "Idempotency key already charged", "model": ErrorResponse},
        503: {"description": "Extraction service unavailable", "model": ErrorResponse},
    },
    summary="Extract a document, paying one credit per page",
)
async def extract(
    body: ExtractRequest,
    actor: Actor = Depends(get_actor),
    service: MeteredExtractionService = Depends(get_metered_extraction_service),
) -> ExtractionResponse:
    return await service.extract(
        account_id=actor.actor_id,
        file_ref=body.file_ref,
        document_type=body.document_type,
        page_count=body.page_count,
        idempotency_key=body.idempotency_key,
        mime_type=body.mime_type,
    )
