"""
RExeli Backend — Gemini Extraction Service Tests (Mocked)
===========================================================

What:  GeminiExtractionService with the Google Generative AI SDK mocked.
Why:   Tests should not make real API calls (costs money, requires network).
How:   Patches the genai module and model to simulate success/failure; the
       retried call is replaced outright where a failure would otherwise
       sleep through tenacity's backoff.

What we test:
    ✅ Classification maps Gemini's answer onto a document type
    ✅ Extraction returns the payload and a clamped confidence
    ✅ A fine-tuned model id selects that model
    ✅ Failures record on the circuit breaker; an open breaker fails fast
    ❌ Real API calls (use integration tests for that)
"""

import json
import time
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from rexeli.exceptions import CircuitBreakerOpenError, ExtractionServiceError
from rexeli.services.gemini_service import CircuitBreaker, GeminiExtractionService


class TestCircuitBreaker:
    """Tests for the CircuitBreaker resilience pattern."""

    def test_initial_state_is_closed(self):
        cb = CircuitBreaker(failure_threshold=5, recovery_timeout=60)
        assert cb.state == "closed"
        assert cb.failure_count == 0

    def test_stays_closed_under_threshold(self):
        cb = CircuitBreaker(failure_threshold=5, recovery_timeout=60)
        for _ in range(4):
            cb.record_failure()
        assert cb.state == "closed"
        assert cb.can_execute() is True

    def test_open_circuit_rejects_calls(self):
        """OPEN circuit breaker should reject calls with CircuitBreakerOpenError."""
        cb = CircuitBreaker(failure_threshold=1, recovery_timeout=60)
        cb.record_failure()

        assert cb.state == "open"
        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            cb.can_execute()
        assert 0 < exc_info.value.recovery_time <= 60

    def test_half_open_after_recovery_timeout(self):
        cb = CircuitBreaker(failure_threshold=1, recovery_timeout=0)
        cb.record_failure()
        time.sleep(0.01)

        assert cb.can_execute() is True
        assert cb.state == "half_open"

    def test_failure_in_half_open_reopens(self):
        cb = CircuitBreaker(failure_threshold=3, recovery_timeout=0)
        for _ in range(3):
            cb.record_failure()
        cb.can_execute()

        cb.record_failure()

        assert cb.state == "open"

    def test_success_resets_failure_count(self):
        cb = CircuitBreaker(failure_threshold=5, recovery_timeout=60)
        cb.record_failure()
        cb.record_failure()

        cb.record_success()

        assert cb.failure_count == 0
        assert cb.state == "closed"


def gemini_response(data) -> MagicMock:
    response = MagicMock()
    response.text = json.dumps(data)
    return response


@pytest.fixture
def mock_genai():
    with patch("rexeli.services.gemini_service.genai") as mocked:
        yield mocked


@pytest.fixture
def service(mock_genai):
    """GeminiExtractionService whose base model is a MagicMock."""
    svc = GeminiExtractionService()
    svc.model = MagicMock()
    return svc


class TestGeminiExtractionMocked:
    @pytest.mark.asyncio
    async def test_classify_maps_document_type(self, service):
        service.model.generate_content_async = AsyncMock(
            return_value=gemini_response({"document_type": "Rent_Roll", "confidence": 0.93})
        )

        result = await service.classify(b"%PDF", "application/pdf")

        assert result.document_type == "rent_roll"
        assert result.confidence == pytest.approx(0.93)

    @pytest.mark.asyncio
    async def test_classify_unrecognized_type_is_unknown(self, service):
        service.model.generate_content_async = AsyncMock(
            return_value=gemini_response({"document_type": "grocery_list", "confidence": 0.99})
        )

        result = await service.classify(b"%PDF", "application/pdf")

        assert result.document_type == "unknown"

    @pytest.mark.asyncio
    async def test_extract_returns_payload_and_clamped_confidence(self, service):
        service.model.generate_content_async = AsyncMock(
            return_value=gemini_response({"data": {"tenant": "Acme"}, "confidence": 1.7})
        )

        result = await service.extract(b"%PDF", "application/pdf", "lease_agreement")

        assert result.payload == {"tenant": "Acme"}
        assert result.confidence == 1.0
        prompt = service.model.generate_content_async.await_args.args[0][0]
        assert "lease agreement" in prompt
        assert service.circuit_breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_extract_with_fine_tuned_model(self, service, mock_genai):
        tuned = MagicMock()
        tuned.generate_content_async = AsyncMock(
            return_value=gemini_response({"data": {"units": 12}, "confidence": 0.8})
        )
        mock_genai.GenerativeModel.return_value = tuned

        result = await service.extract(
            b"%PDF", "application/pdf", "rent_roll", model_id="tunedModels/rent-roll-v2"
        )

        mock_genai.GenerativeModel.assert_called_with("tunedModels/rent-roll-v2")
        assert result.payload == {"units": 12}
        service.model.generate_content_async.assert_not_called()

    @pytest.mark.asyncio
    async def test_failure_records_breaker_failure(self, service):
        service._call_gemini_with_retry = AsyncMock(side_effect=RuntimeError("quota exceeded"))

        with pytest.raises(ExtractionServiceError):
            await service.extract(b"%PDF", "application/pdf", "rent_roll")

        assert service.circuit_breaker.failure_count == 1

    @pytest.mark.asyncio
    async def test_open_circuit_fails_fast(self, service):
        service._call_gemini_with_retry = AsyncMock()
        for _ in range(service.circuit_breaker.failure_threshold):
            service.circuit_breaker.record_failure()

        with pytest.raises(CircuitBreakerOpenError):
            await service.classify(b"%PDF", "application/pdf")

        service._call_gemini_with_retry.assert_not_called()

    @pytest.mark.asyncio
    async def test_health_check_returns_bool(self, service, mock_genai):
        mock_genai.list_models.return_value = [MagicMock()]
        assert await service.health_check() is True

        mock_genai.list_models.side_effect = RuntimeError("no network")
        assert await service.health_check() is False
