"""
RExeli Backend — Google Gemini Extraction Service
===================================================

What:  ExtractionService implementation backed by Google Gemini.
Why:   Gemini reads PDFs and page scans natively and can be fine-tuned, so
       the same provider serves base and tuned models.
How:   Sends the document bytes inline with a type-specific prompt, asks for a
       JSON response, and wraps every call in tenacity retries plus a
       circuit breaker.
Who:   RegistryService (classify + extract for training documents) and
       MeteredExtractionService (billable extraction with a routed model).

Resilience Strategy:
    1. Tenacity retry with exponential backoff + jitter for transient failures
    2. Circuit breaker to fail fast while Gemini is down
    3. Per-call request id in every log line
"""

import json
import logging
import time
import uuid
from typing import Any, Dict, Optional

import google.generativeai as genai
from tenacity import (
    RetryError,
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from rexeli.config import settings
from rexeli.enums import DocumentType, TRAINABLE_DOCUMENT_TYPES
from rexeli.exceptions import CircuitBreakerOpenError, ExtractionServiceError
from rexeli.services.extraction_base import (
    ClassificationResult,
    ExtractionResult,
    ExtractionService,
)

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Circuit Breaker Implementation
# ══════════════════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Circuit breaker guarding calls to an external service.

    State Machine:
        CLOSED (normal operation)
            → On failure: increment failure_count
            → When failure_count >= threshold: transition to OPEN

        OPEN (rejecting all requests)
            → All calls raise CircuitBreakerOpenError immediately
            → After recovery_timeout seconds: transition to HALF_OPEN

        HALF_OPEN (testing recovery)
            → Allow ONE request through
            → On success: transition to CLOSED (reset failure_count)
            → On failure: transition back to OPEN (reset timer)

    State lives in process memory; each uvicorn worker keeps its own breaker.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, failure_threshold: int = 5, recovery_timeout: int = 60):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time: Optional[float] = None

    def can_execute(self) -> bool:
        """
        Returns True if a request may proceed.

        Raises:
            CircuitBreakerOpenError if OPEN and the recovery timeout hasn't elapsed.
        """
        if self.state == self.CLOSED:
            return True

        if self.state == self.OPEN:
            elapsed = time.time() - (self.last_failure_time or 0)
            if elapsed >= self.recovery_timeout:
                logger.info("Circuit breaker transitioning to HALF_OPEN after %.1fs", elapsed)
                self.state = self.HALF_OPEN
                return True
            remaining = int(self.recovery_timeout - elapsed)
            raise CircuitBreakerOpenError(recovery_time=remaining)

        return True

    def record_success(self) -> None:
        if self.state == self.HALF_OPEN:
            logger.info("Circuit breaker transitioning to CLOSED (service recovered)")
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time = None

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.time()

        if self.state == self.HALF_OPEN:
            logger.warning("Circuit breaker returning to OPEN (test request failed)")
            self.state = self.OPEN
        elif self.failure_count >= self.failure_threshold:
            logger.warning(
                "Circuit breaker OPENING after %d consecutive failures",
                self.failure_count,
            )
            self.state = self.OPEN


# ══════════════════════════════════════════════════════════════════════════
# Prompts
# ══════════════════════════════════════════════════════════════════════════

CLASSIFY_PROMPT = """You are a commercial real estate analyst. Classify this document
into exactly one of these categories:

{categories}

Respond with JSON only:
{{"document_type": "<category>", "confidence": <number between 0 and 1>}}"""

# Fields the extraction prompt asks for, per document type.
EXTRACTION_HINTS: Dict[DocumentType, str] = {
    DocumentType.RENT_ROLL: (
        "property name, as-of date, and one entry per unit with unit number, tenant, "
        "square feet, lease start/end, monthly rent, and occupancy status; totals"
    ),
    DocumentType.OPERATING_BUDGET: (
        "property name, budget period, income line items, expense line items, "
        "net operating income"
    ),
    DocumentType.BROKER_SALES_COMPARABLES: (
        "one entry per comparable with address, sale date, sale price, square feet, "
        "price per square foot, cap rate"
    ),
    DocumentType.BROKER_LEASE_COMPARABLES: (
        "one entry per comparable with address, tenant, lease date, square feet, "
        "rent per square foot, term, lease type"
    ),
    DocumentType.BROKER_LISTING: (
        "property address, asking price, property type, square feet, year built, "
        "broker contact"
    ),
    DocumentType.OFFERING_MEMO: (
        "property name and address, asking price, cap rate, NOI, occupancy, "
        "unit mix, investment highlights"
    ),
    DocumentType.LEASE_AGREEMENT: (
        "landlord, tenant, premises, commencement and expiration dates, base rent "
        "schedule, security deposit, renewal options"
    ),
    DocumentType.FINANCIAL_STATEMENTS: (
        "entity, reporting period, revenue, operating expenses, net income, "
        "assets, liabilities"
    ),
}

EXTRACT_PROMPT = """You are a commercial real estate data extraction system.
Extract the following from this {document_type} document: {hints}.

Respond with JSON only:
{{"data": <extracted fields as a JSON object>, "confidence": <number between 0 and 1>}}"""


def _clamp_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    return min(max(confidence, 0.0), 1.0)


# ══════════════════════════════════════════════════════════════════════════
# Gemini Service
# ══════════════════════════════════════════════════════════════════════════

class GeminiExtractionService(ExtractionService):
    """
    Gemini implementation of classification and extraction.

    Error Handling Chain:
        API call fails → tenacity retries (N attempts with backoff)
        → All retries fail → record circuit breaker failure, raise
          ExtractionServiceError
        → Threshold reached → later calls raise CircuitBreakerOpenError
          without touching the network
    """

    def __init__(self):
        if settings.gemini_api_key and settings.gemini_api_key != "your_gemini_api_key_here":
            genai.configure(api_key=settings.gemini_api_key)

        self.model = genai.GenerativeModel(settings.gemini_model)
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=settings.cb_failure_threshold,
            recovery_timeout=settings.cb_recovery_timeout,
        )

        logger.info(
            "GeminiExtractionService initialized with model=%s, "
            "circuit_breaker(threshold=%d, recovery=%ds)",
            settings.gemini_model,
            settings.cb_failure_threshold,
            settings.cb_recovery_timeout,
        )

    def _model_for(self, model_id: Optional[str]):
        """Base model unless a fine-tuned model name is given."""
        if not model_id:
            return self.model
        return genai.GenerativeModel(model_id)

    async def classify(self, blob: bytes, mime_type: str) -> ClassificationResult:
        categories = "\n".join(f"- {t.value}" for t in TRAINABLE_DOCUMENT_TYPES)
        prompt = CLASSIFY_PROMPT.format(categories=categories)
        data = await self._guarded_call(self.model, prompt, blob, mime_type, "classify")

        document_type = str(data.get("document_type", "")).lower()
        if document_type not in {t.value for t in TRAINABLE_DOCUMENT_TYPES}:
            logger.warning("Classifier returned unknown type '%s'", document_type)
            document_type = DocumentType.UNKNOWN.value
        return ClassificationResult(
            document_type=document_type,
            confidence=_clamp_confidence(data.get("confidence")),
        )

    async def extract(
        self,
        blob: bytes,
        mime_type: str,
        document_type: str,
        model_id: Optional[str] = None,
    ) -> ExtractionResult:
        hints = EXTRACTION_HINTS.get(document_type, "all key fields")
        prompt = EXTRACT_PROMPT.format(
            document_type=document_type.replace("_", " "), hints=hints
        )
        data = await self._guarded_call(
            self._model_for(model_id), prompt, blob, mime_type, "extract"
        )
        payload = data.get("data")
        if not isinstance(payload, dict):
            payload = {"value": payload}
        return ExtractionResult(payload=payload, confidence=_clamp_confidence(data.get("confidence")))

    async def _guarded_call(
        self, model, prompt: str, blob: bytes, mime_type: str, operation: str
    ) -> Dict[str, Any]:
        """
        Circuit breaker check, retried API call, breaker bookkeeping.

        The breaker check sits outside the retried function so an open
        circuit is never retried.
        """
        request_id = str(uuid.uuid4())[:8]
        self.circuit_breaker.can_execute()

        logger.info(
            "[%s] Starting Gemini %s (%s, %d bytes)", request_id, operation, mime_type, len(blob)
        )

        try:
            result = await self._call_gemini_with_retry(model, prompt, blob, mime_type, request_id)
            self.circuit_breaker.record_success()
            return result
        except RetryError as e:
            self.circuit_breaker.record_failure()
            logger.error(
                "[%s] All Gemini retries exhausted: %s",
                request_id,
                str(e.last_attempt.exception()) if e.last_attempt else "Unknown error",
            )
            raise ExtractionServiceError(
                message="Document extraction failed after multiple attempts. Please try again later.",
                retry_after=self.circuit_breaker.recovery_timeout,
                context={"request_id": request_id, "attempts": settings.retry_max_attempts},
            )
        except Exception as e:
            self.circuit_breaker.record_failure()
            logger.error(
                "[%s] Gemini %s failed: %s", request_id, operation, str(e), exc_info=True
            )
            raise ExtractionServiceError(
                message="An unexpected error occurred during document extraction.",
                context={"request_id": request_id, "error_type": type(e).__name__},
            )

    @retry(
        # The SDK raises generic exceptions for API errors; malformed JSON is
        # retried too since a second sample usually parses.
        retry=retry_if_exception_type(Exception),
        stop=stop_after_attempt(settings.retry_max_attempts),
        wait=wait_exponential(multiplier=settings.retry_min_wait, max=settings.retry_max_wait)
        + wait_random(0, 1),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _call_gemini_with_retry(
        self, model, prompt: str, blob: bytes, mime_type: str, request_id: str
    ) -> Dict[str, Any]:
        start_time = time.time()
        try:
            response = await model.generate_content_async(
                [prompt, {"mime_type": mime_type, "data": blob}],
                generation_config={"response_mime_type": "application/json"},
                request_options={"timeout": 120},
            )
            data = json.loads(response.text)
            if not isinstance(data, dict):
                raise ValueError("Gemini response is not a JSON object")

            logger.info(
                "[%s] Gemini call completed in %.0fms",
                request_id,
                (time.time() - start_time) * 1000,
            )
            return data
        except Exception as e:
            logger.warning(
                "[%s] Gemini API call failed after %.0fms: %s",
                request_id,
                (time.time() - start_time) * 1000,
                str(e),
            )
            raise

    async def health_check(self) -> bool:
        """Lists models (no token cost) to confirm key validity and reachability."""
        try:
            models = genai.list_models()
            model_names = [m.name for m in models]
            target = f"models/{settings.gemini_model}"
            if target not in model_names:
                logger.warning("Configured model %s not found in available models", target)
            return True
        except Exception as e:
            logger.warning("Gemini health check failed: %s", str(e))
            return False


# ── Singleton Instance ────────────────────────────────────────────────────
# Shared so the circuit breaker state spans all requests.
gemini_service = GeminiExtractionService()
