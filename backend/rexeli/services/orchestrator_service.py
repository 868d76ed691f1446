"""
RExeli Backend — Fine-Tuning Job Orchestrator
===============================================

What:  Creates fine-tuning jobs from verified documents, submits them to the
       training provider, follows them to a terminal state and hands
       successful models to the deployment policy.
Why:   Training takes minutes to hours and happens elsewhere; the job row is
       the durable record that lets any process pick up where another left
       off.
How:   Every status change is a compare-and-set UPDATE conditioned on the
       status the caller observed, so concurrent monitors, cancels and
       submissions cannot overwrite each other. Provider calls never happen
       inside a database transaction.
Who:   Fine-tuning routes, the scheduled monitor (cron route / CLI), and
       auto-trigger checks after verification.

State Machine:
    queued ──submit accepted──▶ uploading ──provider running──▶ running
    running ──provider success──▶ succeeded
    running ──provider error────▶ failed
    queued/uploading ──provider error──▶ failed
    any non-terminal ──cancel──▶ cancelled
    Terminal states (succeeded, failed, cancelled) never change.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, DefaultDict, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from rexeli.config import settings
from rexeli.database import async_session_factory
from rexeli.enums import (
    JOB_PROGRESS,
    TERMINAL_JOB_STATUSES,
    TRAINABLE_DOCUMENT_TYPES,
    DatasetSplit,
    DeploymentStatus,
    DocumentType,
    JobStatus,
    ProviderJobState,
    TriggerSource,
    VerificationStatus,
)
from rexeli.exceptions import (
    CollaboratorUnavailableError,
    DatabaseError,
    DuplicateOperationError,
    InsufficientDataError,
    InvalidStateError,
    NotFoundError,
    ProviderRejectedError,
    RExeliError,
    TrainingProviderError,
    ValidationError,
)
from rexeli.models.fine_tuning import FineTuningJob, TrainingTrigger
from rexeli.models.training import TrainingDocument
from rexeli.models.types import utcnow
from rexeli.schemas.fine_tuning import (
    Hyperparameters,
    JobResponse,
    JobStatusResponse,
    ModelVersionResponse,
    MonitorResult,
    TriggerCheckResult,
)
from rexeli.security import SYSTEM_ACTOR, Actor
from rexeli.services.deployment_service import DeploymentService, deployment_service
from rexeli.services.registry_service import RegistryService, registry_service
from rexeli.services.training_provider import (
    PollResult,
    TrainingDataset,
    TrainingExample,
    TrainingProvider,
    training_provider,
)

logger = logging.getLogger(__name__)

ACTIVE_JOB_STATUSES = [s.value for s in JobStatus if s not in TERMINAL_JOB_STATUSES]


# ══════════════════════════════════════════════════════════════════════════
# Deployment Policies (on-success hook)
# ══════════════════════════════════════════════════════════════════════════


class DeploymentPolicy(ABC):
    """Decides what happens to a job's model right after it succeeds."""

    # Succeeded jobs are flagged deploy_pending and retried until the hook completes.
    deploys = False

    @abstractmethod
    async def on_success(self, job: JobResponse) -> Optional[ModelVersionResponse]:
        ...


class AutoDeployPolicy(DeploymentPolicy):
    """
    Deploys every succeeded job with a fixed status and traffic share.

    Refusals from DeploymentService (already deployed, invalid settings) are
    final and only logged. Store failures propagate so the orchestrator keeps
    the job pending and retries on the next monitor pass.
    """

    deploys = True

    def __init__(
        self,
        deployments: DeploymentService,
        deployment_status: DeploymentStatus = DeploymentStatus.ACTIVE,
        traffic_percentage: int = 100,
    ):
        self._deployments = deployments
        self.deployment_status = DeploymentStatus(deployment_status)
        self.traffic_percentage = traffic_percentage

    async def on_success(self, job: JobResponse) -> Optional[ModelVersionResponse]:
        try:
            version = await self._deployments.deploy(
                job.id,
                SYSTEM_ACTOR,
                deployment_status=self.deployment_status,
                traffic_percentage=self.traffic_percentage,
                notes=f"Auto-deployed from job {job.id}",
            )
        except DuplicateOperationError:
            logger.info("Job %s already has a model version", job.id)
            return None
        except DatabaseError:
            raise
        except RExeliError as e:
            # The job stays succeeded; an operator can deploy it manually.
            logger.error("Auto-deploy of job %s failed: %s", job.id, e.message)
            return None
        logger.info(
            "Auto-deployed job %s as %s v%d",
            job.id,
            version.document_type.value,
            version.version_number,
        )
        return version


class ManualDeployPolicy(DeploymentPolicy):
    """Leaves deployment to an operator."""

    async def on_success(self, job: JobResponse) -> Optional[ModelVersionResponse]:
        logger.info("Job %s succeeded; awaiting manual deployment", job.id)
        return None


def default_deployment_policy(deployments: Optional[DeploymentService] = None) -> DeploymentPolicy:
    if settings.auto_deploy_models:
        return AutoDeployPolicy(
            deployments or deployment_service,
            deployment_status=DeploymentStatus(settings.auto_deploy_status),
            traffic_percentage=settings.auto_deploy_traffic_percentage,
        )
    return ManualDeployPolicy()


# ══════════════════════════════════════════════════════════════════════════
# Orchestrator
# ══════════════════════════════════════════════════════════════════════════


class OrchestratorService:
    """
    Fine-tuning job lifecycle.

    Responsibilities:
        - start: snapshot eligible documents, persist, submit
        - monitor_active_jobs: poll every non-terminal job once
        - cancel / get_status / get_job / list_jobs
        - check_trigger / maybe_auto_start: retrain every N verified documents
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        provider: Optional[TrainingProvider] = None,
        deployment_policy: Optional[DeploymentPolicy] = None,
        submit_wait=None,
        registry: Optional[RegistryService] = None,
    ):
        self._session_factory = session_factory or async_session_factory
        self._provider = provider or training_provider
        self._registry = registry or registry_service
        self.deployment_policy = deployment_policy or default_deployment_policy()
        self._submit_wait = submit_wait or (
            wait_exponential(multiplier=settings.retry_min_wait, max=settings.retry_max_wait)
            + wait_random(0, 1)
        )
        self._trigger_locks: DefaultDict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # ── Internal helpers ──────────────────────────────────────────────────

    @staticmethod
    async def _get_job(session: AsyncSession, job_id: uuid.UUID) -> FineTuningJob:
        result = await session.execute(select(FineTuningJob).where(FineTuningJob.id == job_id))
        job = result.scalar_one_or_none()
        if job is None:
            raise NotFoundError(resource="fine-tuning job", resource_id=str(job_id))
        return job

    async def _load(self, job_id: uuid.UUID) -> FineTuningJob:
        async with self._session_factory() as session:
            return await self._get_job(session, job_id)

    async def _transition(
        self,
        job_id: uuid.UUID,
        expected: JobStatus,
        new: JobStatus,
        **values: Any,
    ) -> bool:
        """
        Compare-and-set status change. Returns False if the job is no longer
        in `expected` (another writer got there first).
        """
        now = utcnow()
        async with self._session_factory() as session, session.begin():
            job = await self._get_job(session, job_id)
            if job.status != expected.value:
                return False
            history = list(job.status_history or [])
            history.append({"from": expected.value, "to": new.value, "at": now.isoformat()})
            if new in TERMINAL_JOB_STATUSES:
                values.setdefault("completed_at", now)

            result = await session.execute(
                update(FineTuningJob)
                .where(FineTuningJob.id == job_id, FineTuningJob.status == expected.value)
                .values(status=new.value, status_history=history, **values)
                .execution_options(synchronize_session=False)
            )
            changed = result.rowcount == 1

        if changed:
            logger.info("Job %s: %s → %s", job_id, expected.value, new.value)
        return changed

    async def _build_dataset(self, job: FineTuningJob) -> TrainingDataset:
        ids = [uuid.UUID(i) for i in job.training_document_ids + job.validation_document_ids]
        async with self._session_factory() as session:
            documents = {
                str(d.id): d
                for d in (
                    await session.execute(
                        select(TrainingDocument).where(TrainingDocument.id.in_(ids))
                    )
                ).scalars()
            }

        def examples(id_list: List[str]) -> List[TrainingExample]:
            return [
                TrainingExample(
                    document_id=doc_id,
                    document_type=documents[doc_id].document_type,
                    file_ref=documents[doc_id].file_ref,
                    filename=documents[doc_id].filename,
                    output=documents[doc_id].extraction or {},
                )
                for doc_id in id_list
                if doc_id in documents
            ]

        return TrainingDataset(
            train=examples(job.training_document_ids),
            validation=examples(job.validation_document_ids),
        )

    async def _submit_with_retry(self, job: FineTuningJob, dataset: TrainingDataset) -> str:
        """Submission is retried on transient provider errors only."""
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TrainingProviderError),
            stop=stop_after_attempt(settings.retry_max_attempts),
            wait=self._submit_wait,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                return await self._provider.submit_job(
                    dataset,
                    job.hyperparameters or {},
                    job.base_model,
                    display_name=f"rexeli-{job.document_type}-{job.id.hex[:8]}",
                )

    async def _submit(self, job_id: uuid.UUID) -> FineTuningJob:
        """
        Submits a queued job.

        Accepted → uploading with external_job_id. Permanent rejection →
        failed, and ProviderRejectedError is raised. Transient failure → the
        job stays queued for the next monitor pass.
        """
        job = await self._load(job_id)
        if job.status != JobStatus.QUEUED.value or job.external_job_id:
            return job

        dataset = await self._build_dataset(job)
        try:
            external_id = await self._submit_with_retry(job, dataset)
        except ProviderRejectedError as e:
            await self._transition(job_id, JobStatus.QUEUED, JobStatus.FAILED, error=e.message)
            logger.error("Provider rejected job %s: %s", job_id, e.message)
            raise
        except CollaboratorUnavailableError as e:
            logger.warning("Submission of job %s deferred: %s", job_id, e.message)
            return await self._load(job_id)

        accepted = await self._transition(
            job_id,
            JobStatus.QUEUED,
            JobStatus.UPLOADING,
            external_job_id=external_id,
            started_at=utcnow(),
        )
        if not accepted:
            # Cancelled while the submission was in flight.
            logger.warning("Job %s left queued during submission; cancelling %s", job_id, external_id)
            await self._cancel_at_provider(external_id)
        return await self._load(job_id)

    async def _cancel_at_provider(self, external_job_id: str) -> None:
        try:
            await self._provider.cancel(external_job_id)
        except (CollaboratorUnavailableError, ProviderRejectedError) as e:
            logger.warning("Provider cancel of %s failed: %s", external_job_id, e.message)

    # ── Start ─────────────────────────────────────────────────────────────

    async def start(
        self,
        document_type: DocumentType,
        actor: Actor,
        hyperparameters: Optional[Hyperparameters] = None,
        notes: Optional[str] = None,
        triggered_by: TriggerSource = TriggerSource.MANUAL,
        base_model: Optional[str] = None,
    ) -> JobResponse:
        """
        Snapshots the eligible training set, persists a queued job, then submits it.

        Raises:
            AuthorizationError: actor is not admin/system
            ValidationError: document_type is `unknown`
            InsufficientDataError: fewer than MIN_TRAINING_DOCUMENTS train documents
            ProviderRejectedError: provider refused the job (job is now failed)
        """
        actor.require_elevated("start_fine_tuning")
        doc_type = DocumentType(document_type)
        if doc_type is DocumentType.UNKNOWN:
            raise ValidationError(message="Cannot train on unclassified documents", field="document_type")

        params: Dict[str, Any] = {"epoch_count": settings.default_epochs}
        if hyperparameters is not None:
            params.update(hyperparameters.model_dump(exclude_none=True))

        now = utcnow()
        async with self._session_factory() as session, session.begin():
            rows = (
                await session.execute(
                    select(TrainingDocument.id, TrainingDocument.dataset_split)
                    .where(
                        TrainingDocument.document_type == doc_type.value,
                        TrainingDocument.verification_status == VerificationStatus.VERIFIED.value,
                        TrainingDocument.include_in_training.is_(True),
                        TrainingDocument.dataset_split.in_(
                            [DatasetSplit.TRAIN.value, DatasetSplit.VALIDATION.value]
                        ),
                    )
                    .order_by(TrainingDocument.created_at, TrainingDocument.id)
                )
            ).all()
            train_ids = [str(r[0]) for r in rows if r[1] == DatasetSplit.TRAIN.value]
            validation_ids = [str(r[0]) for r in rows if r[1] == DatasetSplit.VALIDATION.value]

            if len(train_ids) < settings.min_training_documents:
                raise InsufficientDataError(
                    required=settings.min_training_documents,
                    available=len(train_ids),
                    document_type=doc_type.value,
                )

            job = FineTuningJob(
                document_type=doc_type.value,
                status=JobStatus.QUEUED.value,
                base_model=base_model or settings.default_base_model,
                hyperparameters=params,
                training_document_ids=train_ids,
                validation_document_ids=validation_ids,
                training_examples_count=len(train_ids),
                validation_examples_count=len(validation_ids),
                status_history=[{"from": None, "to": JobStatus.QUEUED.value, "at": now.isoformat()}],
                triggered_by=TriggerSource(triggered_by).value,
                created_by=actor.actor_id,
                notes=notes,
            )
            session.add(job)
            await session.flush()
            job_id = job.id

        logger.info(
            "Created fine-tuning job %s for %s (%d train / %d validation)",
            job_id,
            doc_type.value,
            len(train_ids),
            len(validation_ids),
        )
        return JobResponse.model_validate(await self._submit(job_id))

    # ── Monitor ───────────────────────────────────────────────────────────

    async def monitor_active_jobs(self) -> MonitorResult:
        """
        One pass over every non-terminal job with bounded concurrency.

        Failures are isolated per job: they are logged and counted, and the
        job is retried on the next pass. Succeeded jobs whose deployment hook
        did not complete are retried here too.
        """
        async with self._session_factory() as session:
            job_ids = list(
                (
                    await session.execute(
                        select(FineTuningJob.id)
                        .where(FineTuningJob.status.in_(ACTIVE_JOB_STATUSES))
                        .order_by(FineTuningJob.created_at)
                    )
                ).scalars()
            )
            pending_deploy_ids = []
            if self.deployment_policy.deploys:
                pending_deploy_ids = list(
                    (
                        await session.execute(
                            select(FineTuningJob.id)
                            .where(
                                FineTuningJob.status == JobStatus.SUCCEEDED.value,
                                FineTuningJob.deploy_pending.is_(True),
                            )
                            .order_by(FineTuningJob.completed_at)
                        )
                    ).scalars()
                )

        result = MonitorResult(checked=len(job_ids))
        semaphore = asyncio.Semaphore(settings.monitor_concurrency)

        async def guarded(job_id: uuid.UUID, step) -> str:
            async with semaphore:
                try:
                    return await step(job_id)
                except CollaboratorUnavailableError as e:
                    logger.warning("Monitor: job %s not updated: %s", job_id, e.message)
                    return "error"
                except Exception as e:
                    logger.error("Monitor: job %s failed unexpectedly: %s", job_id, e, exc_info=True)
                    return "error"

        async def retry_deploy(job_id: uuid.UUID) -> str:
            return "deployed" if await self._run_success_hook(job_id) else "error"

        steps = [guarded(j, self._monitor_one) for j in job_ids]
        steps += [guarded(j, retry_deploy) for j in pending_deploy_ids]
        for outcome in await asyncio.gather(*steps):
            if outcome == "submitted":
                result.submitted += 1
                result.updated += 1
            elif outcome == "completed":
                result.completed += 1
                result.updated += 1
            elif outcome == "completed_undeployed":
                result.completed += 1
                result.updated += 1
                result.errors += 1
            elif outcome == "deployed":
                result.deployed += 1
            elif outcome == "failed":
                result.failed += 1
                result.updated += 1
            elif outcome == "updated":
                result.updated += 1
                result.still_running += 1
            elif outcome == "error":
                result.errors += 1
            elif outcome == "running":
                result.still_running += 1

        logger.info(
            "Monitor pass: checked=%d updated=%d completed=%d failed=%d running=%d "
            "deployed=%d errors=%d",
            result.checked,
            result.updated,
            result.completed,
            result.failed,
            result.still_running,
            result.deployed,
            result.errors,
        )
        return result

    async def _monitor_one(self, job_id: uuid.UUID) -> str:
        job = await self._load(job_id)
        status = job.job_status
        if status.is_terminal:
            return "skipped"

        if not job.external_job_id:
            if status is not JobStatus.QUEUED:
                logger.error("Job %s is %s without an external id", job_id, status.value)
                return "error"
            try:
                job = await self._submit(job_id)
            except ProviderRejectedError:
                return "failed"
            return "submitted" if job.status == JobStatus.UPLOADING.value else "error"

        try:
            poll = await self._provider.poll_status(job.external_job_id)
        except ProviderRejectedError as e:
            # The provider no longer knows this job.
            failed = await self._transition(job_id, status, JobStatus.FAILED, error=e.message)
            return "failed" if failed else "skipped"

        return await self._apply_poll(job_id, status, poll)

    async def _apply_poll(self, job_id: uuid.UUID, status: JobStatus, poll: PollResult) -> str:
        if poll.state is ProviderJobState.PENDING:
            return "running"

        if poll.state is ProviderJobState.RUNNING:
            if status is JobStatus.UPLOADING:
                moved = await self._transition(job_id, JobStatus.UPLOADING, JobStatus.RUNNING)
                return "updated" if moved else "skipped"
            return "running"

        if poll.state is ProviderJobState.SUCCEEDED:
            if status is JobStatus.UPLOADING:
                if not await self._transition(job_id, JobStatus.UPLOADING, JobStatus.RUNNING):
                    return "skipped"
            if not await self._transition(
                job_id,
                JobStatus.RUNNING,
                JobStatus.SUCCEEDED,
                fine_tuned_model_id=poll.fine_tuned_model_id,
                deploy_pending=self.deployment_policy.deploys,
            ):
                return "skipped"
            return "completed" if await self._run_success_hook(job_id) else "completed_undeployed"

        if poll.state is ProviderJobState.FAILED:
            failed = await self._transition(
                job_id, status, JobStatus.FAILED, error=poll.error or "Training failed at provider"
            )
            return "failed" if failed else "skipped"

        # Cancelled on the provider side.
        cancelled = await self._transition(job_id, status, JobStatus.CANCELLED)
        return "updated" if cancelled else "skipped"

    async def _run_success_hook(self, job_id: uuid.UUID) -> bool:
        """
        Runs the deployment policy for a succeeded job. On failure the job
        keeps deploy_pending and the next monitor pass tries again.
        """
        job = JobResponse.model_validate(await self._load(job_id))
        try:
            await self.deployment_policy.on_success(job)
        except Exception as e:
            logger.error(
                "Deployment hook for job %s failed, retrying next pass: %s", job_id, e, exc_info=True
            )
            return False

        if job.deploy_pending:
            async with self._session_factory() as session, session.begin():
                await session.execute(
                    update(FineTuningJob)
                    .where(FineTuningJob.id == job_id)
                    .values(deploy_pending=False)
                    .execution_options(synchronize_session=False)
                )
        return True

    # ── Cancel & reads ────────────────────────────────────────────────────

    async def cancel(self, job_id: uuid.UUID, actor: Actor) -> JobResponse:
        """
        Cancels locally first, then asks the provider (best effort).

        Raises:
            InvalidStateError: the job is already terminal
        """
        actor.require_elevated("cancel_fine_tuning")
        while True:
            job = await self._load(job_id)
            status = job.job_status
            if status.is_terminal:
                raise InvalidStateError(
                    message=f"Job is already {status.value}", current_state=status.value
                )
            if await self._transition(job_id, status, JobStatus.CANCELLED):
                break

        if job.external_job_id:
            await self._cancel_at_provider(job.external_job_id)
        logger.info("Job %s cancelled by %s", job_id, actor.actor_id)
        return JobResponse.model_validate(await self._load(job_id))

    async def get_job(self, job_id: uuid.UUID) -> JobResponse:
        return JobResponse.model_validate(await self._load(job_id))

    async def get_status(self, job_id: uuid.UUID) -> JobStatusResponse:
        job = await self._load(job_id)
        status = job.job_status
        return JobStatusResponse(
            job_id=job.id,
            status=status,
            progress=JOB_PROGRESS[status],
            external_job_id=job.external_job_id,
            fine_tuned_model_id=job.fine_tuned_model_id,
            error=job.error,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )

    async def list_jobs(
        self, document_type: Optional[DocumentType] = None, limit: int = 50
    ) -> List[JobResponse]:
        query = select(FineTuningJob).order_by(FineTuningJob.created_at.desc()).limit(limit)
        if document_type is not None:
            query = query.where(FineTuningJob.document_type == DocumentType(document_type).value)
        async with self._session_factory() as session:
            rows = (await session.execute(query)).scalars().all()
        return [JobResponse.model_validate(r) for r in rows]

    # ── Auto-trigger ──────────────────────────────────────────────────────

    async def _get_or_create_trigger(
        self, session: AsyncSession, document_type: str
    ) -> TrainingTrigger:
        trigger = (
            await session.execute(
                select(TrainingTrigger).where(TrainingTrigger.document_type == document_type)
            )
        ).scalar_one_or_none()
        if trigger is None:
            minimum = settings.min_training_documents
            trigger = TrainingTrigger(
                document_type=document_type,
                trigger_interval=10,
                min_documents_required=minimum,
                next_trigger_at=minimum,
                auto_trigger_enabled=True,
                last_trigger_count=0,
                total_triggers=0,
            )
            session.add(trigger)
            await session.flush()
        return trigger

    async def check_trigger(self, document_type: DocumentType) -> TriggerCheckResult:
        """Whether enough new verified documents exist to retrain this type."""
        doc_type = DocumentType(document_type)
        async with self._session_factory() as session, session.begin():
            trigger = await self._get_or_create_trigger(session, doc_type.value)
            verified_count = (
                await session.execute(
                    select(func.count(TrainingDocument.id)).where(
                        TrainingDocument.document_type == doc_type.value,
                        TrainingDocument.verification_status == VerificationStatus.VERIFIED.value,
                        TrainingDocument.include_in_training.is_(True),
                    )
                )
            ).scalar() or 0

        if not trigger.auto_trigger_enabled:
            should, reason = False, "Auto-trigger disabled"
        elif verified_count < trigger.min_documents_required:
            should = False
            reason = (
                f"Need {trigger.min_documents_required - verified_count} more verified documents"
            )
        elif verified_count < trigger.next_trigger_at:
            should = False
            reason = f"Next training at {trigger.next_trigger_at} verified documents"
        else:
            should, reason = True, f"Threshold reached ({verified_count} verified documents)"

        return TriggerCheckResult(
            document_type=doc_type,
            should_trigger=should,
            verified_count=verified_count,
            next_trigger_at=trigger.next_trigger_at,
            min_documents_required=trigger.min_documents_required,
            auto_trigger_enabled=trigger.auto_trigger_enabled,
            reason=reason,
        )

    async def maybe_auto_start(self, document_type: DocumentType) -> Optional[JobResponse]:
        """
        Starts a job when the trigger threshold is reached and no job for the
        type is in flight. Returns None when nothing was started.
        """
        doc_type = DocumentType(document_type)
        async with self._trigger_locks[doc_type.value]:
            check = await self.check_trigger(doc_type)
            if not check.should_trigger:
                return None

            async with self._session_factory() as session:
                in_flight = (
                    await session.execute(
                        select(func.count(FineTuningJob.id)).where(
                            FineTuningJob.document_type == doc_type.value,
                            FineTuningJob.status.in_(ACTIVE_JOB_STATUSES),
                        )
                    )
                ).scalar() or 0
            if in_flight:
                logger.info("Auto-trigger for %s skipped: a job is already running", doc_type.value)
                return None

            # Newly verified documents are unassigned until the pool is re-split.
            await self._registry.auto_assign_split(doc_type)
            try:
                job = await self.start(
                    doc_type,
                    SYSTEM_ACTOR,
                    notes=f"Auto-triggered at {check.verified_count} verified documents",
                    triggered_by=TriggerSource.AUTO,
                )
            except (InsufficientDataError, ProviderRejectedError) as e:
                logger.warning("Auto-trigger for %s did not start a job: %s", doc_type.value, e.message)
                return None

            async with self._session_factory() as session, session.begin():
                trigger = await self._get_or_create_trigger(session, doc_type.value)
                trigger.last_trigger_count = check.verified_count
                trigger.next_trigger_at = check.verified_count + trigger.trigger_interval
                trigger.last_triggered_at = utcnow()
                trigger.last_job_id = job.id
                trigger.total_triggers += 1

        logger.info("Auto-triggered job %s for %s", job.id, doc_type.value)
        return job

    async def run_auto_triggers(self) -> List[JobResponse]:
        """Checks every trainable type once; returns the jobs that were started."""
        started = []
        for doc_type in TRAINABLE_DOCUMENT_TYPES:
            job = await self.maybe_auto_start(doc_type)
            if job is not None:
                started.append(job)
        return started


# ── Singleton Instance ────────────────────────────────────────────────────
orchestrator_service = OrchestratorService()
