"""
RExeli Backend — Gemini Tuning Provider Tests (Mocked)
========================================================

What:  GeminiTuningProvider with google-generativeai patched out.

What we test:
    ✅ Submission sends one tuning row per train example and returns the tuned model name
    ✅ google.api_core errors split into permanent and transient failures
    ✅ A resubmit that finds the tuned model already created is accepted
    ✅ Tuned model states map onto provider job states
    ✅ JSONL exports are checked line by line
"""

import json
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest
from google.api_core import exceptions as google_exceptions

from rexeli.enums import ProviderJobState
from rexeli.exceptions import ProviderRejectedError, TrainingProviderError
from rexeli.services.training_provider import (
    GeminiTuningProvider,
    TrainingDataset,
    TrainingExample,
    _tuned_model_id,
    validate_tuning_jsonl,
)


def example(i: int) -> TrainingExample:
    return TrainingExample(
        document_id=f"doc-{i}",
        document_type="rent_roll",
        file_ref=f"2024/09/01/{i}.pdf",
        filename=f"rent-roll-{i}.pdf",
        output={"units": i},
    )


@pytest.fixture
def mock_genai():
    with patch("rexeli.services.training_provider.genai") as mocked:
        yield mocked


def tuned_model(state: str, started: bool = False):
    return SimpleNamespace(
        name="tunedModels/rexeli-rent-roll-1a2b3c4d",
        state=SimpleNamespace(name=state),
        tuning_task=SimpleNamespace(start_time="2024-09-01T00:00:00Z" if started else None),
    )


def test_tuned_model_id_is_slugged_and_bounded():
    slug = _tuned_model_id("RExeli rent_roll 1a2b3c4d (retry) with a very long suffix")
    assert slug == slug.lower()
    assert len(slug) <= 40
    assert not slug.endswith("-")
    assert "_" not in slug and " " not in slug


def test_validate_tuning_jsonl_reports_each_bad_line():
    good = json.dumps({"text_input": "Extract rent roll data", "output": '{"units": 4}'})
    jsonl = "\n".join(
        [
            good,
            "{not json",
            json.dumps({"text_input": "Extract rent roll data"}),
            json.dumps({"text_input": "Extract rent roll data", "output": "{}"}),
            json.dumps(["text_input", "output"]),
        ]
    )

    errors = validate_tuning_jsonl(jsonl)

    assert [e.split(":")[0] for e in errors] == ["Line 2", "Line 3", "Line 4", "Line 5"]
    assert "missing output" in errors[1]
    assert validate_tuning_jsonl(good) == []


@pytest.mark.asyncio
class TestGeminiTuningProvider:
    async def test_submit_sends_train_rows(self, mock_genai):
        operation = MagicMock()
        operation.metadata.tuned_model = "tunedModels/rexeli-rent-roll-1a2b3c4d"
        mock_genai.create_tuned_model.return_value = operation
        dataset = TrainingDataset(train=[example(1), example(2)], validation=[example(3)])

        external_id = await GeminiTuningProvider().submit_job(
            dataset,
            {"epoch_count": 3, "learning_rate": None},
            "models/gemini-1.5-flash-001-tuning",
            display_name="rexeli-rent_roll-1a2b3c4d",
        )

        assert external_id == "tunedModels/rexeli-rent-roll-1a2b3c4d"
        kwargs = mock_genai.create_tuned_model.call_args.kwargs
        assert kwargs["source_model"] == "models/gemini-1.5-flash-001-tuning"
        assert kwargs["epoch_count"] == 3
        assert "learning_rate" not in kwargs
        assert kwargs["id"] == "rexeli-rent-roll-1a2b3c4d"
        rows = kwargs["training_data"]
        assert len(rows) == 2
        assert json.loads(rows[0]["output"]) == {"units": 1}

    @pytest.mark.parametrize(
        "error,expected",
        [
            (google_exceptions.InvalidArgument("bad dataset"), ProviderRejectedError),
            (google_exceptions.PermissionDenied("no access"), ProviderRejectedError),
            (google_exceptions.ServiceUnavailable("try later"), TrainingProviderError),
            (google_exceptions.DeadlineExceeded("timeout"), TrainingProviderError),
        ],
    )
    async def test_submit_error_translation(self, mock_genai, error, expected):
        mock_genai.create_tuned_model.side_effect = error

        with pytest.raises(expected):
            await GeminiTuningProvider().submit_job(
                TrainingDataset(train=[example(1)]), {}, "models/base", "rexeli-x"
            )

    async def test_resubmit_after_timeout_adopts_existing_model(self, mock_genai):
        """The first create timed out client-side but Gemini kept the model."""
        mock_genai.create_tuned_model.side_effect = [
            google_exceptions.DeadlineExceeded("timeout"),
            google_exceptions.AlreadyExists("tunedModels/rexeli-rent-roll-1a2b3c4d exists"),
        ]
        provider = GeminiTuningProvider()
        dataset = TrainingDataset(train=[example(1)])

        with pytest.raises(TrainingProviderError):
            await provider.submit_job(dataset, {}, "models/base", "rexeli-rent_roll-1a2b3c4d")
        external_id = await provider.submit_job(
            dataset, {}, "models/base", "rexeli-rent_roll-1a2b3c4d"
        )

        assert external_id == "tunedModels/rexeli-rent-roll-1a2b3c4d"
        assert mock_genai.create_tuned_model.call_count == 2

    @pytest.mark.parametrize(
        "state,started,expected",
        [
            ("CREATING", False, ProviderJobState.PENDING),
            ("CREATING", True, ProviderJobState.RUNNING),
            ("ACTIVE", True, ProviderJobState.SUCCEEDED),
            ("FAILED", True, ProviderJobState.FAILED),
        ],
    )
    async def test_poll_state_mapping(self, mock_genai, state, started, expected):
        mock_genai.get_tuned_model.return_value = tuned_model(state, started)

        result = await GeminiTuningProvider().poll_status("tunedModels/rexeli-rent-roll-1a2b3c4d")

        assert result.state is expected
        if expected is ProviderJobState.SUCCEEDED:
            assert result.fine_tuned_model_id == "tunedModels/rexeli-rent-roll-1a2b3c4d"

    async def test_cancel_deletes_tuned_model(self, mock_genai):
        await GeminiTuningProvider().cancel("tunedModels/x")
        mock_genai.delete_tuned_model.assert_called_once_with("tunedModels/x")
