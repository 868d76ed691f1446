"""
RExeli Backend — Model Training Provider
==========================================

What:  Contract and Gemini implementation for submitting, polling and
       cancelling fine-tuning jobs at an external provider.
Why:   The orchestrator owns the job state machine; the provider only
       reports what it sees. Keeping the two apart lets tests drive the
       state machine with a scripted fake.
How:   `TrainingProvider` is the contract. `GeminiTuningProvider` maps it onto
       google-generativeai's tuned model API. The SDK is synchronous, so each
       call runs in a worker thread via `asyncio.to_thread`.

Error Translation:
    google.api_core exceptions are split into:
        - permanent (bad dataset, credentials, quota plan) → ProviderRejectedError
        - everything else (timeouts, 5xx, rate limits)     → TrainingProviderError
"""

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from rexeli.config import settings
from rexeli.enums import ProviderJobState
from rexeli.exceptions import ProviderRejectedError, TrainingProviderError

logger = logging.getLogger(__name__)


@dataclass
class TrainingExample:
    """One verified document as the provider sees it."""
    document_id: str
    document_type: str
    file_ref: str
    filename: str
    output: Dict[str, Any]


@dataclass
class TrainingDataset:
    train: List[TrainingExample] = field(default_factory=list)
    validation: List[TrainingExample] = field(default_factory=list)


@dataclass
class PollResult:
    """Provider view of a job. RUNNING means training has begun, PENDING that it has not."""
    state: ProviderJobState
    fine_tuned_model_id: Optional[str] = None
    error: Optional[str] = None


class TrainingProvider(ABC):
    """Contract for an external model-training provider."""

    @abstractmethod
    async def submit_job(
        self,
        dataset: TrainingDataset,
        hyperparameters: Dict[str, Any],
        base_model: str,
        display_name: str,
    ) -> str:
        """
        Submits a tuning job and returns the provider's job id.

        Raises:
            ProviderRejectedError: the provider refused the request permanently
            TrainingProviderError: transient failure, safe to resubmit
        """
        ...

    @abstractmethod
    async def poll_status(self, external_job_id: str) -> PollResult:
        ...

    @abstractmethod
    async def cancel(self, external_job_id: str) -> None:
        ...


# ══════════════════════════════════════════════════════════════════════════
# Tuning Rows
# ══════════════════════════════════════════════════════════════════════════

TUNING_ROW_KEYS = ("text_input", "output")


def tuning_rows(examples: List[TrainingExample]) -> List[Dict[str, str]]:
    """Each example becomes {"text_input": <instruction>, "output": <JSON>}."""
    return [
        {
            "text_input": (
                f"Extract structured {ex.document_type.replace('_', ' ')} data "
                f"from document '{ex.filename}' ({ex.file_ref})."
            ),
            "output": json.dumps(ex.output, sort_keys=True),
        }
        for ex in examples
    ]


def validate_tuning_jsonl(jsonl: str) -> List[str]:
    """
    Checks a JSONL export line by line; returns one message per problem.

    Every line must be a JSON object with non-empty `text_input` and
    `output` strings, and `output` must itself decode to a non-empty object.
    """
    errors: List[str] = []
    for number, line in enumerate(jsonl.splitlines(), start=1):
        try:
            row = json.loads(line)
        except json.JSONDecodeError as e:
            errors.append(f"Line {number}: invalid JSON ({e.msg})")
            continue
        if not isinstance(row, dict):
            errors.append(f"Line {number}: expected an object")
            continue
        missing = [k for k in TUNING_ROW_KEYS if not isinstance(row.get(k), str) or not row[k]]
        if missing:
            errors.append(f"Line {number}: missing {', '.join(missing)}")
            continue
        try:
            output = json.loads(row["output"])
        except json.JSONDecodeError:
            errors.append(f"Line {number}: output is not JSON")
            continue
        if not isinstance(output, dict) or not output:
            errors.append(f"Line {number}: output has no extracted fields")
    return errors


# ══════════════════════════════════════════════════════════════════════════
# Gemini Implementation
# ══════════════════════════════════════════════════════════════════════════

# Refusals that will not change on retry.
_PERMANENT_ERRORS = (
    google_exceptions.InvalidArgument,
    google_exceptions.PermissionDenied,
    google_exceptions.Unauthenticated,
    google_exceptions.FailedPrecondition,
    google_exceptions.NotFound,
    google_exceptions.AlreadyExists,
)

_TUNED_MODEL_ID_MAX = 40


def _tuned_model_id(display_name: str) -> str:
    """Gemini ids: lowercase letters, digits and dashes, at most 40 chars."""
    slug = re.sub(r"[^a-z0-9-]+", "-", display_name.lower()).strip("-")
    return slug[:_TUNED_MODEL_ID_MAX].rstrip("-")


class GeminiTuningProvider(TrainingProvider):
    """
    Fine-tunes Gemini models through `genai.create_tuned_model`.

    Train examples are sent as tuning_rows().
    The external job id is the tuned model name ("tunedModels/<id>"), which
    doubles as the fine_tuned_model_id once the model is ACTIVE.
    """

    def __init__(self):
        if settings.gemini_api_key and settings.gemini_api_key != "your_gemini_api_key_here":
            genai.configure(api_key=settings.gemini_api_key)

    @staticmethod
    def _translate(error: Exception, operation: str) -> Exception:
        if isinstance(error, _PERMANENT_ERRORS):
            return ProviderRejectedError(
                message=f"Training provider rejected {operation}: {error}",
                context={"operation": operation, "error_type": type(error).__name__},
            )
        return TrainingProviderError(
            message=f"Training provider unavailable during {operation}",
            context={"operation": operation, "error_type": type(error).__name__},
        )

    async def submit_job(
        self,
        dataset: TrainingDataset,
        hyperparameters: Dict[str, Any],
        base_model: str,
        display_name: str,
    ) -> str:
        tuning_kwargs = {
            k: hyperparameters[k]
            for k in ("epoch_count", "batch_size", "learning_rate")
            if hyperparameters.get(k) is not None
        }
        model_id = _tuned_model_id(display_name)
        try:
            operation = await asyncio.to_thread(
                genai.create_tuned_model,
                source_model=base_model,
                training_data=tuning_rows(dataset.train),
                id=model_id,
                display_name=display_name,
                **tuning_kwargs,
            )
        except google_exceptions.AlreadyExists:
            # Ids are derived from the job: an earlier attempt was accepted.
            logger.info("Gemini tuned model %s already exists; submit accepted", model_id)
            return f"tunedModels/{model_id}"
        except Exception as e:
            logger.warning("Gemini create_tuned_model failed: %s", str(e))
            raise self._translate(e, "submit")

        external_id = operation.metadata.tuned_model
        logger.info(
            "Submitted Gemini tuning job %s (%d train examples, base=%s)",
            external_id,
            len(dataset.train),
            base_model,
        )
        return external_id

    async def poll_status(self, external_job_id: str) -> PollResult:
        try:
            model = await asyncio.to_thread(genai.get_tuned_model, external_job_id)
        except Exception as e:
            logger.warning("Gemini get_tuned_model(%s) failed: %s", external_job_id, str(e))
            raise self._translate(e, "poll")

        state = getattr(model.state, "name", str(model.state))
        task = getattr(model, "tuning_task", None)
        started = bool(task is not None and getattr(task, "start_time", None))

        if state == "ACTIVE":
            return PollResult(state=ProviderJobState.SUCCEEDED, fine_tuned_model_id=model.name)
        if state == "FAILED":
            return PollResult(
                state=ProviderJobState.FAILED,
                error="Gemini reported the tuning job as FAILED",
            )
        if state == "CREATING" and started:
            return PollResult(state=ProviderJobState.RUNNING)
        return PollResult(state=ProviderJobState.PENDING)

    async def cancel(self, external_job_id: str) -> None:
        """Gemini has no cancel; deleting the tuned model stops and removes it."""
        try:
            await asyncio.to_thread(genai.delete_tuned_model, external_job_id)
        except Exception as e:
            logger.warning("Gemini delete_tuned_model(%s) failed: %s", external_job_id, str(e))
            raise self._translate(e, "cancel")
        logger.info("Cancelled Gemini tuning job %s", external_job_id)


# ── Singleton Instance ────────────────────────────────────────────────────
training_provider = GeminiTuningProvider()
