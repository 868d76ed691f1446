"""
RExeli Backend — Model Version Deployment Service
===================================================

What:  Turns succeeded fine-tuning jobs into numbered model versions and
       decides which version serves each extraction request.
Why:   Rolling out a new model must never leave two versions both claiming
       all traffic, and a bad version must be easy to take out of rotation.
How:   Version creation and (de)activation of the other versions of the
       same document type happen in one transaction, serialized per document
       type. Routing reads the current versions and draws a number in
       [0, 100).

Traffic Model:
    - One active version at 100%: it serves everything (minus testing shares).
    - Canary: a new active version at N% keeps the previous full version
      active at (100 - N)%.
    - Testing versions receive their traffic share first; actives split the
      remainder in proportion to their percentages.
    - Any share not covered by a version falls back to the base model
      (route_for returns None).
"""

import asyncio
import hashlib
import logging
import random
import uuid
from collections import defaultdict
from typing import DefaultDict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from rexeli.database import async_session_factory
from rexeli.enums import DeploymentStatus, DocumentType, JobStatus
from rexeli.exceptions import (
    DuplicateOperationError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from rexeli.models.fine_tuning import FineTuningJob, ModelVersion
from rexeli.models.types import utcnow
from rexeli.schemas.fine_tuning import ModelVersionResponse
from rexeli.security import Actor

logger = logging.getLogger(__name__)

DEPLOYABLE_STATUSES = (DeploymentStatus.ACTIVE, DeploymentStatus.TESTING)
VERSION_NUMBER_ATTEMPTS = 3


def routing_draw(document_type: str, request_key: str) -> float:
    """Maps a request key to a stable point in [0, 100)."""
    digest = hashlib.sha256(f"{document_type}:{request_key}".encode()).hexdigest()
    return (int(digest[:12], 16) % 10_000) / 100.0


class DeploymentService:
    """
    Model version deployment and traffic routing.

    Responsibilities:
        - deploy: succeeded job → new version (active or testing)
        - promote / archive: change a version's place in rotation
        - route_for: pick the version for one request
        - list_versions: version history per document type
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        rng: Optional[random.Random] = None,
    ):
        self._session_factory = session_factory or async_session_factory
        self._rng = rng or random.Random()
        self._locks: DefaultDict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    @staticmethod
    async def _get_version(session: AsyncSession, version_id: uuid.UUID) -> ModelVersion:
        result = await session.execute(select(ModelVersion).where(ModelVersion.id == version_id))
        version = result.scalar_one_or_none()
        if version is None:
            raise NotFoundError(resource="model version", resource_id=str(version_id))
        return version

    @staticmethod
    def _validate_traffic(status: DeploymentStatus, traffic_percentage: int) -> None:
        if status not in DEPLOYABLE_STATUSES:
            raise ValidationError(
                message="Versions can only be deployed as 'active' or 'testing'",
                field="deployment_status",
            )
        lower = 1 if status is DeploymentStatus.ACTIVE else 0
        if (
            isinstance(traffic_percentage, bool)
            or not isinstance(traffic_percentage, int)
            or not lower <= traffic_percentage <= 100
        ):
            raise ValidationError(
                message=f"traffic_percentage must be between {lower} and 100",
                field="traffic_percentage",
                context={"traffic_percentage": traffic_percentage},
            )

    @staticmethod
    async def _activate(
        session: AsyncSession, version: ModelVersion, traffic_percentage: int
    ) -> None:
        """
        Makes `version` active at `traffic_percentage` and adjusts the other
        active versions of its type in the same transaction.

        At 100% every other active version is demoted to inactive. Below 100%
        the strongest other active version (highest traffic, then newest)
        stays active with the complementary share and the rest are demoted.
        """
        others = (
            await session.execute(
                select(ModelVersion)
                .where(
                    ModelVersion.document_type == version.document_type,
                    ModelVersion.deployment_status == DeploymentStatus.ACTIVE.value,
                    ModelVersion.id != version.id,
                )
                .order_by(ModelVersion.traffic_percentage.desc(), ModelVersion.version_number.desc())
            )
        ).scalars().all()

        baseline = others[0] if others and traffic_percentage < 100 else None
        for other in others:
            if other is baseline:
                other.traffic_percentage = 100 - traffic_percentage
                continue
            other.deployment_status = DeploymentStatus.INACTIVE.value
            other.traffic_percentage = 0
            logger.info(
                "Demoted %s v%d to inactive", other.document_type, other.version_number
            )

        version.deployment_status = DeploymentStatus.ACTIVE.value
        version.traffic_percentage = traffic_percentage
        version.deployed_at = utcnow()
        if baseline is not None:
            logger.info(
                "Canary %s v%d at %d%%, v%d keeps %d%%",
                version.document_type,
                version.version_number,
                traffic_percentage,
                baseline.version_number,
                baseline.traffic_percentage,
            )

    # ── Deployment ────────────────────────────────────────────────────────

    async def deploy(
        self,
        job_id: uuid.UUID,
        actor: Actor,
        deployment_status: DeploymentStatus = DeploymentStatus.ACTIVE,
        traffic_percentage: int = 100,
        notes: Optional[str] = None,
    ) -> ModelVersionResponse:
        """
        Creates the next version for a succeeded job.

        Raises:
            NotFoundError: unknown job
            InvalidStateError: job not succeeded (or no model id recorded)
            DuplicateOperationError: the job already has a version
            InvalidStateError: concurrent deployments kept taking the next
                version number
        """
        actor.require_elevated("deploy")
        deployment_status = DeploymentStatus(deployment_status)
        self._validate_traffic(deployment_status, traffic_percentage)

        async with self._session_factory() as session:
            job = (
                await session.execute(select(FineTuningJob).where(FineTuningJob.id == job_id))
            ).scalar_one_or_none()
        if job is None:
            raise NotFoundError(resource="fine-tuning job", resource_id=str(job_id))

        async with self._locks[job.document_type]:
            for attempt in range(1, VERSION_NUMBER_ATTEMPTS + 1):
                try:
                    response = await self._create_version(
                        job_id, actor, deployment_status, traffic_percentage, notes
                    )
                    break
                except IntegrityError:
                    existing = await self._version_for_job(job_id)
                    if existing is not None:
                        raise DuplicateOperationError(
                            message="This job has already been deployed",
                            context={"job_id": str(job_id), "version_id": str(existing)},
                        )
                    # Another process took the version number first.
                    logger.warning(
                        "Version number conflict deploying job %s (attempt %d/%d)",
                        job_id,
                        attempt,
                        VERSION_NUMBER_ATTEMPTS,
                    )
            else:
                raise InvalidStateError(
                    message="Could not allocate a version number; another deployment "
                    "of this document type is in progress",
                    context={"job_id": str(job_id), "document_type": job.document_type},
                )

        logger.info(
            "Deployed %s v%d (%s, %d%%) from job %s",
            response.document_type.value,
            response.version_number,
            response.deployment_status.value,
            response.traffic_percentage,
            job_id,
        )
        return response

    async def _version_for_job(self, job_id: uuid.UUID) -> Optional[uuid.UUID]:
        async with self._session_factory() as session:
            row = (
                await session.execute(select(ModelVersion.id).where(ModelVersion.job_id == job_id))
            ).first()
        return row[0] if row is not None else None

    @staticmethod
    async def _next_version_number(session: AsyncSession, document_type: str) -> int:
        current_max = (
            await session.execute(
                select(func.coalesce(func.max(ModelVersion.version_number), 0)).where(
                    ModelVersion.document_type == document_type
                )
            )
        ).scalar() or 0
        return current_max + 1

    async def _create_version(
        self,
        job_id: uuid.UUID,
        actor: Actor,
        deployment_status: DeploymentStatus,
        traffic_percentage: int,
        notes: Optional[str],
    ) -> ModelVersionResponse:
        async with self._session_factory() as session, session.begin():
            job = (
                await session.execute(select(FineTuningJob).where(FineTuningJob.id == job_id))
            ).scalar_one()
            if job.status != JobStatus.SUCCEEDED.value or not job.fine_tuned_model_id:
                raise InvalidStateError(
                    message="Only a succeeded job with a trained model can be deployed",
                    current_state=job.status,
                )
            existing = (
                await session.execute(select(ModelVersion.id).where(ModelVersion.job_id == job_id))
            ).first()
            if existing is not None:
                raise DuplicateOperationError(
                    message="This job has already been deployed",
                    context={"job_id": str(job_id), "version_id": str(existing[0])},
                )

            version = ModelVersion(
                job_id=job.id,
                document_type=job.document_type,
                model_id=job.fine_tuned_model_id,
                version_number=await self._next_version_number(session, job.document_type),
                deployment_status=DeploymentStatus.TESTING.value,
                traffic_percentage=0,
                notes=notes,
                created_by=actor.actor_id,
            )
            session.add(version)
            await session.flush()

            if deployment_status is DeploymentStatus.ACTIVE:
                await self._activate(session, version, traffic_percentage)
            else:
                version.traffic_percentage = traffic_percentage
                version.deployed_at = utcnow()
            await session.flush()
            return ModelVersionResponse.model_validate(version)

    async def promote(
        self, version_id: uuid.UUID, actor: Actor, traffic_percentage: int = 100
    ) -> ModelVersionResponse:
        """Activates a testing or inactive version (full or canary)."""
        actor.require_elevated("promote")
        self._validate_traffic(DeploymentStatus.ACTIVE, traffic_percentage)

        async with self._session_factory() as session:
            document_type = (await self._get_version(session, version_id)).document_type

        async with self._locks[document_type]:
            async with self._session_factory() as session, session.begin():
                version = await self._get_version(session, version_id)
                if version.deployment_status == DeploymentStatus.ARCHIVED.value:
                    raise InvalidStateError(
                        message="Archived versions cannot be promoted",
                        current_state=version.deployment_status,
                    )
                await self._activate(session, version, traffic_percentage)
                await session.flush()
                response = ModelVersionResponse.model_validate(version)

        logger.info(
            "Promoted %s v%d to active at %d%%",
            response.document_type.value,
            response.version_number,
            traffic_percentage,
        )
        return response

    async def archive(self, version_id: uuid.UUID, actor: Actor) -> ModelVersionResponse:
        """
        Takes a version out of rotation for good. If exactly one active
        version remains for the type it regains 100% of the traffic.
        """
        actor.require_elevated("archive")
        async with self._session_factory() as session:
            document_type = (await self._get_version(session, version_id)).document_type

        async with self._locks[document_type]:
            async with self._session_factory() as session, session.begin():
                version = await self._get_version(session, version_id)
                if version.deployment_status == DeploymentStatus.ARCHIVED.value:
                    raise InvalidStateError(
                        message="Version is already archived",
                        current_state=version.deployment_status,
                    )
                was_active = version.deployment_status == DeploymentStatus.ACTIVE.value
                version.deployment_status = DeploymentStatus.ARCHIVED.value
                version.traffic_percentage = 0
                version.archived_at = utcnow()

                if was_active:
                    remaining = (
                        await session.execute(
                            select(ModelVersion).where(
                                ModelVersion.document_type == document_type,
                                ModelVersion.deployment_status == DeploymentStatus.ACTIVE.value,
                                ModelVersion.id != version.id,
                            )
                        )
                    ).scalars().all()
                    if len(remaining) == 1:
                        remaining[0].traffic_percentage = 100
                await session.flush()
                response = ModelVersionResponse.model_validate(version)

        logger.info("Archived %s v%d", response.document_type.value, response.version_number)
        return response

    # ── Reads ─────────────────────────────────────────────────────────────

    async def list_versions(
        self, document_type: Optional[DocumentType] = None
    ) -> List[ModelVersionResponse]:
        query = select(ModelVersion).order_by(
            ModelVersion.document_type, ModelVersion.version_number.desc()
        )
        if document_type is not None:
            query = query.where(ModelVersion.document_type == DocumentType(document_type).value)
        async with self._session_factory() as session:
            rows = (await session.execute(query)).scalars().all()
        return [ModelVersionResponse.model_validate(r) for r in rows]

    async def route_for(
        self, document_type: DocumentType, request_key: Optional[str] = None
    ) -> Optional[ModelVersionResponse]:
        """
        Picks the version that serves one request, or None for the base model.

        With a request_key the same key always lands on the same version while
        the deployment is unchanged.
        """
        doc_type = DocumentType(document_type).value
        async with self._session_factory() as session:
            versions = (
                await session.execute(
                    select(ModelVersion)
                    .where(
                        ModelVersion.document_type == doc_type,
                        ModelVersion.deployment_status.in_(
                            [s.value for s in DEPLOYABLE_STATUSES]
                        ),
                        ModelVersion.traffic_percentage > 0,
                    )
                    .order_by(ModelVersion.version_number)
                )
            ).scalars().all()
        if not versions:
            return None

        draw = (
            routing_draw(doc_type, request_key) if request_key is not None
            else self._rng.random() * 100
        )

        cumulative = 0.0
        testing = [v for v in versions if v.deployment_status == DeploymentStatus.TESTING.value]
        for version in testing:
            cumulative += version.traffic_percentage
            if draw < min(cumulative, 100.0):
                return ModelVersionResponse.model_validate(version)

        remaining = max(100.0 - cumulative, 0.0)
        actives = [v for v in versions if v.deployment_status == DeploymentStatus.ACTIVE.value]
        total_active = sum(v.traffic_percentage for v in actives)
        if not actives or remaining == 0:
            return None

        # Actives share the remaining band; a partial total leaves a base-model gap.
        scale = remaining / max(total_active, 100)
        for version in actives:
            cumulative += version.traffic_percentage * scale
            if draw < cumulative:
                return ModelVersionResponse.model_validate(version)
        return None


# ── Singleton Instance ────────────────────────────────────────────────────
deployment_service = DeploymentService()
