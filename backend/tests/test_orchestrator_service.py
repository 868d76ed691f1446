"""
RExeli Backend — Fine-Tuning Orchestrator Tests
=================================================

What:  The job state machine driven by a scripted training provider.
Why:   Jobs outlive requests and processes; every transition must be
       recorded exactly once and terminal jobs must never move again.
How:   FakeTrainingProvider answers submit/poll/cancel as each test sets it
       up; submission retries use wait_none() so nothing sleeps.

What we test:
    ✅ start() snapshots the train/validation split and submits
    ✅ Permanent rejection fails the job; transient failure leaves it queued
    ✅ Monitor walks uploading → running → succeeded and deploys once
    ✅ Terminal jobs are never polled again
    ✅ A deployment that fails after success is retried on the next pass
    ✅ One job raising mid-pass does not stop the others
    ✅ Cancel works from queued, uploading and running; terminal jobs refuse it
    ✅ Auto-trigger fires at the threshold and not again while a job runs
"""

import asyncio
import warnings
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from rexeli.config import settings
from rexeli.enums import (
    DeploymentStatus,
    DocumentType,
    JobStatus,
    ProviderJobState,
    TriggerSource,
)
from rexeli.exceptions import (
    AuthorizationError,
    InsufficientDataError,
    InvalidStateError,
    ProviderRejectedError,
    TrainingProviderError,
    ValidationError,
)
from rexeli.schemas.fine_tuning import Hyperparameters
from rexeli.services.orchestrator_service import ManualDeployPolicy, OrchestratorService
from rexeli.services.training_provider import PollResult

from conftest import ADMIN, USER, seed_verified_documents


def history(job):
    return [(t.from_status, t.to_status) for t in job.status_history]


async def job_in_status(orchestrator, provider, document_type, status):
    """Starts a job and drives it to `status` through the scripted provider."""
    if status is JobStatus.QUEUED:
        provider.submit_errors = [TrainingProviderError() for _ in range(3)]
    job = await orchestrator.start(document_type, ADMIN)
    polled = {
        JobStatus.RUNNING: PollResult(state=ProviderJobState.RUNNING),
        JobStatus.SUCCEEDED: PollResult(
            state=ProviderJobState.SUCCEEDED, fine_tuned_model_id="tunedModels/x"
        ),
        JobStatus.FAILED: PollResult(state=ProviderJobState.FAILED, error="loss diverged"),
    }
    if status in polled:
        provider.poll_results[job.external_job_id] = polled[status]
        await orchestrator.monitor_active_jobs()
    job = await orchestrator.get_job(job.id)
    assert job.status is status
    return job


@pytest.mark.asyncio
class TestStart:
    async def test_start_snapshots_split_and_submits(self, orchestrator, provider, ready_dataset):
        job = await orchestrator.start(
            ready_dataset, ADMIN, hyperparameters=Hyperparameters(batch_size=4)
        )

        assert job.status is JobStatus.UPLOADING
        assert job.external_job_id == provider.submitted[0]["external_id"]
        assert job.training_examples_count == 10
        assert job.validation_examples_count == 3
        assert job.hyperparameters == {"epoch_count": 3, "batch_size": 4}
        assert job.triggered_by is TriggerSource.MANUAL
        assert job.started_at is not None
        assert history(job) == [
            (None, JobStatus.QUEUED),
            (JobStatus.QUEUED, JobStatus.UPLOADING),
        ]
        dataset = provider.submitted[0]["dataset"]
        assert len(dataset.train) == 10
        assert len(dataset.validation) == 3
        assert {ex.document_id for ex in dataset.train} == set(job.training_document_ids)

    async def test_insufficient_training_data(self, orchestrator, registry):
        await seed_verified_documents(registry, 5)
        await registry.auto_assign_split(DocumentType.RENT_ROLL)

        with pytest.raises(InsufficientDataError) as exc_info:
            await orchestrator.start(DocumentType.RENT_ROLL, ADMIN)

        assert exc_info.value.context["available"] == 4
        assert await orchestrator.list_jobs() == []

    async def test_start_requires_admin(self, orchestrator, ready_dataset):
        with pytest.raises(AuthorizationError):
            await orchestrator.start(ready_dataset, USER)

    async def test_unknown_type_cannot_be_trained(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.start(DocumentType.UNKNOWN, ADMIN)

    async def test_permanent_rejection_fails_job(self, orchestrator, provider, ready_dataset):
        provider.submit_errors = [ProviderRejectedError(message="dataset too small for base model")]

        with pytest.raises(ProviderRejectedError):
            await orchestrator.start(ready_dataset, ADMIN)

        [job] = await orchestrator.list_jobs()
        assert job.status is JobStatus.FAILED
        assert job.error == "dataset too small for base model"
        assert job.completed_at is not None

    async def test_transient_failure_is_retried(self, orchestrator, provider, ready_dataset):
        provider.submit_errors = [TrainingProviderError()]

        job = await orchestrator.start(ready_dataset, ADMIN)

        assert job.status is JobStatus.UPLOADING
        assert len(provider.submitted) == 1

    async def test_exhausted_retries_leave_job_queued(self, orchestrator, provider, ready_dataset):
        provider.submit_errors = [TrainingProviderError() for _ in range(3)]

        job = await orchestrator.start(ready_dataset, ADMIN)

        assert job.status is JobStatus.QUEUED
        assert job.external_job_id is None

        # The next monitor pass submits it.
        result = await orchestrator.monitor_active_jobs()

        assert result.submitted == 1
        assert (await orchestrator.get_job(job.id)).status is JobStatus.UPLOADING


@pytest.mark.asyncio
class TestMonitor:
    async def test_running_then_succeeded_deploys_once(
        self, orchestrator, provider, deployments, ready_dataset
    ):
        job = await orchestrator.start(ready_dataset, ADMIN)

        provider.poll_results[job.external_job_id] = PollResult(state=ProviderJobState.RUNNING)
        first = await orchestrator.monitor_active_jobs()
        assert (first.updated, first.still_running) == (1, 1)
        assert (await orchestrator.get_job(job.id)).status is JobStatus.RUNNING

        provider.poll_results[job.external_job_id] = PollResult(
            state=ProviderJobState.SUCCEEDED,
            fine_tuned_model_id="tunedModels/rent-roll-v1",
        )
        second = await orchestrator.monitor_active_jobs()
        assert second.completed == 1

        finished = await orchestrator.get_job(job.id)
        assert finished.status is JobStatus.SUCCEEDED
        assert finished.fine_tuned_model_id == "tunedModels/rent-roll-v1"
        [version] = await deployments.list_versions(DocumentType.RENT_ROLL)
        assert version.job_id == job.id
        assert version.deployment_status is DeploymentStatus.ACTIVE
        assert version.traffic_percentage == 100

        # Terminal: never polled again, never deployed again.
        polls = len(provider.poll_calls)
        third = await orchestrator.monitor_active_jobs()
        assert third.checked == 0
        assert len(provider.poll_calls) == polls
        assert len(await deployments.list_versions()) == 1

    async def test_early_success_walks_through_running(self, orchestrator, provider, ready_dataset):
        job = await orchestrator.start(ready_dataset, ADMIN)
        provider.poll_results[job.external_job_id] = PollResult(
            state=ProviderJobState.SUCCEEDED, fine_tuned_model_id="tunedModels/x"
        )

        await orchestrator.monitor_active_jobs()

        finished = await orchestrator.get_job(job.id)
        assert history(finished)[-2:] == [
            (JobStatus.UPLOADING, JobStatus.RUNNING),
            (JobStatus.RUNNING, JobStatus.SUCCEEDED),
        ]

    async def test_concurrent_passes_fire_hook_once(
        self, orchestrator, provider, deployments, ready_dataset
    ):
        job = await orchestrator.start(ready_dataset, ADMIN)
        provider.poll_results[job.external_job_id] = PollResult(
            state=ProviderJobState.SUCCEEDED, fine_tuned_model_id="tunedModels/x"
        )

        results = await asyncio.gather(
            orchestrator.monitor_active_jobs(), orchestrator.monitor_active_jobs()
        )

        assert sum(r.completed for r in results) == 1
        assert len(await deployments.list_versions()) == 1

    async def test_deploy_store_failure_is_retried_next_pass(
        self, orchestrator, provider, deployments, ready_dataset
    ):
        job = await orchestrator.start(ready_dataset, ADMIN)
        provider.poll_results[job.external_job_id] = PollResult(
            state=ProviderJobState.SUCCEEDED, fine_tuned_model_id="tunedModels/x"
        )
        locked = OperationalError("INSERT INTO model_versions", {}, Exception("database is locked"))

        with patch.object(deployments, "deploy", AsyncMock(side_effect=locked)):
            first = await orchestrator.monitor_active_jobs()

        assert (first.completed, first.errors, first.deployed) == (1, 1, 0)
        stranded = await orchestrator.get_job(job.id)
        assert stranded.status is JobStatus.SUCCEEDED
        assert stranded.deploy_pending is True
        assert await deployments.list_versions() == []

        second = await orchestrator.monitor_active_jobs()

        assert (second.checked, second.deployed, second.errors) == (0, 1, 0)
        [version] = await deployments.list_versions(DocumentType.RENT_ROLL)
        assert version.job_id == job.id
        assert (await orchestrator.get_job(job.id)).deploy_pending is False

        third = await orchestrator.monitor_active_jobs()
        assert third.deployed == 0
        assert len(await deployments.list_versions()) == 1

    async def test_pending_deploy_done_by_operator_is_cleared(
        self, orchestrator, provider, deployments, ready_dataset
    ):
        job = await orchestrator.start(ready_dataset, ADMIN)
        provider.poll_results[job.external_job_id] = PollResult(
            state=ProviderJobState.SUCCEEDED, fine_tuned_model_id="tunedModels/x"
        )
        locked = OperationalError("INSERT INTO model_versions", {}, Exception("database is locked"))
        with patch.object(deployments, "deploy", AsyncMock(side_effect=locked)):
            await orchestrator.monitor_active_jobs()

        await deployments.deploy(job.id, ADMIN)
        result = await orchestrator.monitor_active_jobs()

        assert result.errors == 0
        assert (await orchestrator.get_job(job.id)).deploy_pending is False
        assert len(await deployments.list_versions()) == 1

    async def test_unexpected_error_on_one_job_does_not_stop_the_pass(
        self, orchestrator, provider, ready_dataset
    ):
        broken = await orchestrator.start(ready_dataset, ADMIN)
        healthy = await orchestrator.start(ready_dataset, ADMIN)
        provider.poll_errors[broken.external_job_id] = RuntimeError("malformed response")
        provider.poll_results[healthy.external_job_id] = PollResult(state=ProviderJobState.RUNNING)

        result = await orchestrator.monitor_active_jobs()

        assert (result.checked, result.updated, result.errors) == (2, 1, 1)
        assert (await orchestrator.get_job(broken.id)).status is JobStatus.UPLOADING
        assert (await orchestrator.get_job(healthy.id)).status is JobStatus.RUNNING

    async def test_pending_poll_leaves_job_uploading(self, orchestrator, provider, ready_dataset):
        job = await orchestrator.start(ready_dataset, ADMIN)
        provider.poll_results[job.external_job_id] = PollResult(state=ProviderJobState.PENDING)

        result = await orchestrator.monitor_active_jobs()

        assert (result.updated, result.still_running) == (0, 1)
        assert (await orchestrator.get_job(job.id)).status is JobStatus.UPLOADING

    async def test_provider_failure_fails_job(self, orchestrator, provider, ready_dataset):
        job = await orchestrator.start(ready_dataset, ADMIN)
        provider.poll_results[job.external_job_id] = PollResult(
            state=ProviderJobState.FAILED, error="loss diverged"
        )

        result = await orchestrator.monitor_active_jobs()

        assert result.failed == 1
        failed = await orchestrator.get_job(job.id)
        assert failed.status is JobStatus.FAILED
        assert failed.error == "loss diverged"

    async def test_poll_outage_is_counted_not_fatal(self, orchestrator, provider, ready_dataset):
        job = await orchestrator.start(ready_dataset, ADMIN)
        provider.poll_errors[job.external_job_id] = TrainingProviderError()

        result = await orchestrator.monitor_active_jobs()

        assert result.errors == 1
        assert (await orchestrator.get_job(job.id)).status is JobStatus.UPLOADING

    async def test_job_unknown_to_provider_fails(self, orchestrator, provider, ready_dataset):
        job = await orchestrator.start(ready_dataset, ADMIN)
        provider.poll_errors[job.external_job_id] = ProviderRejectedError(message="not found")

        result = await orchestrator.monitor_active_jobs()

        assert result.failed == 1
        assert (await orchestrator.get_job(job.id)).error == "not found"

    async def test_manual_policy_does_not_deploy(
        self, session_factory, provider, registry, deployments, ready_dataset
    ):
        manual = OrchestratorService(
            session_factory=session_factory,
            provider=provider,
            deployment_policy=ManualDeployPolicy(),
            registry=registry,
        )
        job = await manual.start(ready_dataset, ADMIN)
        provider.poll_results[job.external_job_id] = PollResult(
            state=ProviderJobState.SUCCEEDED, fine_tuned_model_id="tunedModels/x"
        )

        await manual.monitor_active_jobs()

        assert (await manual.get_job(job.id)).status is JobStatus.SUCCEEDED
        assert await deployments.list_versions() == []


@pytest.mark.asyncio
class TestCancelAndStatus:
    async def test_cancel_is_local_then_provider(self, orchestrator, provider, ready_dataset):
        job = await orchestrator.start(ready_dataset, ADMIN)

        cancelled = await orchestrator.cancel(job.id, ADMIN)

        assert cancelled.status is JobStatus.CANCELLED
        assert provider.cancelled == [job.external_job_id]
        status = await orchestrator.get_status(job.id)
        assert status.progress == 100

        with pytest.raises(InvalidStateError):
            await orchestrator.cancel(job.id, ADMIN)

    @pytest.mark.parametrize(
        "status", [JobStatus.QUEUED, JobStatus.UPLOADING, JobStatus.RUNNING]
    )
    async def test_cancel_from_every_active_status(
        self, orchestrator, provider, ready_dataset, status
    ):
        job = await job_in_status(orchestrator, provider, ready_dataset, status)

        cancelled = await orchestrator.cancel(job.id, ADMIN)

        assert cancelled.status is JobStatus.CANCELLED
        assert cancelled.completed_at is not None
        assert history(cancelled)[-1] == (status, JobStatus.CANCELLED)
        if job.external_job_id:
            assert provider.cancelled == [job.external_job_id]
        else:
            assert provider.cancelled == []

    @pytest.mark.parametrize("status", [JobStatus.SUCCEEDED, JobStatus.FAILED])
    async def test_cancel_terminal_job_is_invalid(
        self, orchestrator, provider, ready_dataset, status
    ):
        job = await job_in_status(orchestrator, provider, ready_dataset, status)

        with pytest.raises(InvalidStateError):
            await orchestrator.cancel(job.id, ADMIN)

        assert (await orchestrator.get_job(job.id)).status is status
        assert provider.cancelled == []

    async def test_cancelled_job_ignores_later_success(self, orchestrator, provider, ready_dataset):
        job = await orchestrator.start(ready_dataset, ADMIN)
        await orchestrator.cancel(job.id, ADMIN)
        provider.poll_results[job.external_job_id] = PollResult(
            state=ProviderJobState.SUCCEEDED, fine_tuned_model_id="tunedModels/x"
        )

        await orchestrator.monitor_active_jobs()

        assert (await orchestrator.get_job(job.id)).status is JobStatus.CANCELLED

    async def test_status_progress_is_advisory(self, orchestrator, ready_dataset):
        job = await orchestrator.start(ready_dataset, ADMIN)

        status = await orchestrator.get_status(job.id)

        assert status.status is JobStatus.UPLOADING
        assert status.progress == 25


@pytest.mark.asyncio
class TestAutoTrigger:
    async def test_below_minimum_does_not_trigger(self, orchestrator, registry):
        await seed_verified_documents(registry, 9)

        check = await orchestrator.check_trigger(DocumentType.RENT_ROLL)

        assert check.should_trigger is False
        assert check.reason == "Need 1 more verified documents"
        assert await orchestrator.maybe_auto_start(DocumentType.RENT_ROLL) is None

    async def test_threshold_starts_one_job(self, orchestrator, registry):
        await seed_verified_documents(registry, 13)

        job = await orchestrator.maybe_auto_start(DocumentType.RENT_ROLL)

        assert job is not None
        assert job.triggered_by is TriggerSource.AUTO
        assert job.created_by == "system"
        assert job.training_examples_count == 10
        check = await orchestrator.check_trigger(DocumentType.RENT_ROLL)
        assert check.next_trigger_at == 23

        # Job in flight and threshold moved: nothing more to start.
        assert await orchestrator.run_auto_triggers() == []


def test_default_submit_backoff_is_bounded(session_factory, provider, registry):
    """Exponential backoff capped at retry_max_wait, plus up to a second of jitter."""
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        service = OrchestratorService(
            session_factory=session_factory,
            provider=provider,
            deployment_policy=ManualDeployPolicy(),
            registry=registry,
        )
        delays = [
            service._submit_wait(SimpleNamespace(attempt_number=n)) for n in range(1, 10)
        ]

    assert delays[0] <= settings.retry_min_wait + 1
    assert all(0 <= d <= settings.retry_max_wait + 1 for d in delays)
