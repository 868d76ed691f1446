"""
RExeli Backend — Metered Extraction Schemas
=============================================

What:  Request/response for a credit-gated extraction call.
"""

import uuid
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from rexeli.enums import DocumentType


class ExtractRequest(BaseModel):
    file_ref: str = Field(min_length=1, max_length=512)
    document_type: DocumentType
    page_count: int = Field(ge=1, le=10_000, description="Pages to charge")
    mime_type: str = Field(default="application/pdf", max_length=100)
    idempotency_key: str = Field(min_length=1, max_length=255)


class ExtractionResponse(BaseModel):
    payload: Dict[str, Any]
    confidence: float
    model_version_id: Optional[uuid.UUID] = None
    model_id: Optional[str] = Field(default=None, description="Null when the base model served")
    credits_charged: int
    balance_after: int
