"""
RExeli Backend — Test Configuration (conftest.py)
===================================================

What:  Shared pytest fixtures for the entire test suite.
Why:   Services take their session factory and collaborators as constructor
       arguments, so every test gets real services bound to a throwaway
       SQLite database and scripted fakes for storage, Gemini and tuning.
How:   pytest auto-discovers conftest.py and makes fixtures available to all tests.

Fixture Hierarchy:
    Function-scoped (created fresh for each test):
    ├── session_factory: async sessionmaker on a fresh aiosqlite file
    ├── storage / extractor / provider: in-memory collaborators
    ├── ledger / registry / deployments / orchestrator: services under test
    └── test_client: HTTPX AsyncClient with service dependencies overridden
"""

import os
import tempfile

# Override settings for testing BEFORE any rexeli imports: the settings
# singleton is built on first import.
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///" + os.path.join(
    tempfile.mkdtemp(prefix="rexeli_db_"), "test.db"
)
os.environ["GEMINI_API_KEY"] = "test-key-not-real"
os.environ["STORAGE_ROOT"] = tempfile.mkdtemp(prefix="rexeli_test_")
os.environ["LOG_LEVEL"] = "WARNING"  # Reduce noise during tests
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["MIN_TRAINING_DOCUMENTS"] = "10"

import uuid  # noqa: E402
from typing import Any, Dict, List, Optional  # noqa: E402
from unittest.mock import AsyncMock  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from tenacity import wait_none  # noqa: E402

import rexeli.models  # noqa: E402,F401  (registers every table on Base.metadata)
from rexeli.database import Base  # noqa: E402
from rexeli.enums import ActorRole, DocumentType, ProviderJobState  # noqa: E402
from rexeli.exceptions import NotFoundError  # noqa: E402
from rexeli.schemas.training import DocumentMetadata  # noqa: E402
from rexeli.security import Actor  # noqa: E402
from rexeli.services.deployment_service import DeploymentService  # noqa: E402
from rexeli.services.extraction_base import (  # noqa: E402
    ClassificationResult,
    ExtractionResult,
    ExtractionService,
)
from rexeli.services.ledger_service import LedgerService  # noqa: E402
from rexeli.services.metered_extraction import MeteredExtractionService  # noqa: E402
from rexeli.services.orchestrator_service import (  # noqa: E402
    AutoDeployPolicy,
    OrchestratorService,
)
from rexeli.services.registry_service import RegistryService  # noqa: E402
from rexeli.services.storage_service import DocumentStorage  # noqa: E402
from rexeli.services.training_provider import (  # noqa: E402
    PollResult,
    TrainingDataset,
    TrainingProvider,
)


ADMIN = Actor(actor_id="admin-1", role=ActorRole.ADMIN)
USER = Actor(actor_id="user-1", role=ActorRole.USER)

SAMPLE_PAYLOAD = {"property_name": "Maple Court", "units": [{"unit": "101", "rent": 1450}]}


# ══════════════════════════════════════════════════════════════════════════
# Test Doubles
# ══════════════════════════════════════════════════════════════════════════


class InMemoryStorage(DocumentStorage):
    """Dict-backed DocumentStorage."""

    def __init__(self):
        self.blobs: Dict[str, bytes] = {}

    async def put(self, blob: bytes, filename: str, content_length: Optional[int] = None) -> str:
        file_ref = f"mem/{uuid.uuid4()}-{filename}"
        self.blobs[file_ref] = blob
        return file_ref

    async def get(self, file_ref: str) -> bytes:
        if file_ref not in self.blobs:
            raise NotFoundError(resource="document file", resource_id=file_ref)
        return self.blobs[file_ref]

    async def delete(self, file_ref: str) -> None:
        self.blobs.pop(file_ref, None)


class FakeExtractor(ExtractionService):
    """
    Scripted extraction service.

    classify/extract are AsyncMocks so tests can set return_value or
    side_effect and assert on calls.
    """

    def __init__(self):
        self.classify = AsyncMock(
            return_value=ClassificationResult(
                document_type=DocumentType.RENT_ROLL.value, confidence=0.9
            )
        )
        self.extract = AsyncMock(
            return_value=ExtractionResult(payload=dict(SAMPLE_PAYLOAD), confidence=0.87)
        )
        self.health_check = AsyncMock(return_value=True)

    # Abstract methods are shadowed by the instance attributes above.
    async def classify(self, blob: bytes, mime_type: str) -> ClassificationResult:  # pragma: no cover
        raise NotImplementedError

    async def extract(self, blob, mime_type, document_type, model_id=None):  # pragma: no cover
        raise NotImplementedError

    async def health_check(self) -> bool:  # pragma: no cover
        raise NotImplementedError


class FakeTrainingProvider(TrainingProvider):
    """
    Training provider whose answers are set per test.

    submit_errors: exceptions raised by successive submit_job calls before
    one succeeds. poll_results / poll_errors: keyed by external job id.
    """

    def __init__(self):
        self.submitted: List[Dict[str, Any]] = []
        self.cancelled: List[str] = []
        self.submit_errors: List[Exception] = []
        self.poll_results: Dict[str, PollResult] = {}
        self.poll_errors: Dict[str, Exception] = {}
        self.poll_calls: List[str] = []

    async def submit_job(
        self,
        dataset: TrainingDataset,
        hyperparameters: Dict[str, Any],
        base_model: str,
        display_name: str,
    ) -> str:
        if self.submit_errors:
            raise self.submit_errors.pop(0)
        external_id = f"tunedModels/{display_name}"
        self.submitted.append(
            {
                "external_id": external_id,
                "dataset": dataset,
                "hyperparameters": hyperparameters,
                "base_model": base_model,
            }
        )
        return external_id

    async def poll_status(self, external_job_id: str) -> PollResult:
        self.poll_calls.append(external_job_id)
        if external_job_id in self.poll_errors:
            raise self.poll_errors[external_job_id]
        return self.poll_results.get(external_job_id, PollResult(state=ProviderJobState.PENDING))

    async def cancel(self, external_job_id: str) -> None:
        self.cancelled.append(external_job_id)


# ══════════════════════════════════════════════════════════════════════════
# Database & Service Fixtures
# ══════════════════════════════════════════════════════════════════════════


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """
    Provides a session factory on a fresh SQLite database.

    What:    Every table from rexeli.models, created with create_all.
    Why:     Services own their transactions, so tests exercise real commits
             and conditional UPDATEs rather than a mocked session.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'rexeli.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def provider():
    return FakeTrainingProvider()


@pytest.fixture
def ledger(session_factory):
    return LedgerService(session_factory=session_factory)


@pytest.fixture
def registry(session_factory, storage, extractor):
    return RegistryService(session_factory=session_factory, storage=storage, extractor=extractor)


@pytest.fixture
def deployments(session_factory):
    return DeploymentService(session_factory=session_factory)


@pytest.fixture
def orchestrator(session_factory, provider, deployments, registry):
    """Orchestrator with auto-deploy (active, 100%) and no retry sleeps."""
    return OrchestratorService(
        session_factory=session_factory,
        provider=provider,
        deployment_policy=AutoDeployPolicy(deployments),
        submit_wait=wait_none(),
        registry=registry,
    )


@pytest.fixture
def metered(ledger, deployments, storage, extractor):
    return MeteredExtractionService(
        ledger=ledger, deployments=deployments, storage=storage, extractor=extractor
    )


# ══════════════════════════════════════════════════════════════════════════
# Seeding Helpers
# ══════════════════════════════════════════════════════════════════════════


async def add_completed_document(
    registry: RegistryService,
    document_type: DocumentType = DocumentType.RENT_ROLL,
    filename: str = "rent-roll.pdf",
    payload: Optional[Dict[str, Any]] = None,
):
    document = await registry.create(
        file_ref=f"mem/{uuid.uuid4()}.pdf",
        document_type=document_type,
        metadata=DocumentMetadata(filename=filename, size=1024),
    )
    return await registry.record_extraction(
        document.id, payload if payload is not None else dict(SAMPLE_PAYLOAD), 0.9
    )


async def seed_verified_documents(
    registry: RegistryService,
    count: int,
    document_type: DocumentType = DocumentType.RENT_ROLL,
) -> list:
    """Creates `count` completed, verified documents of one type."""
    documents = []
    for i in range(count):
        document = await add_completed_document(
            registry, document_type, filename=f"{document_type.value}-{i}.pdf"
        )
        documents.append(await registry.verify(document.id, ADMIN))
    return documents


@pytest_asyncio.fixture
async def ready_dataset(registry):
    """Thirteen verified rent rolls split 80/20: exactly 10 train, 3 validation."""
    await seed_verified_documents(registry, 13)
    await registry.auto_assign_split(DocumentType.RENT_ROLL)
    return DocumentType.RENT_ROLL


# ══════════════════════════════════════════════════════════════════════════
# HTTP Client
# ══════════════════════════════════════════════════════════════════════════


@pytest_asyncio.fixture
async def test_client(ledger, registry, deployments, orchestrator, metered):
    """
    Provides an async HTTP test client for endpoint testing.

    What:    HTTPX AsyncClient routed straight into the FastAPI app.
    How:     Service getters are overridden with the services above, so
             requests hit the per-test database and fakes.

    Usage:
        async def test_health(test_client):
            response = await test_client.get("/health")
    """
    from rexeli import dependencies
    from rexeli.main import app

    app.dependency_overrides = {
        dependencies.get_ledger_service: lambda: ledger,
        dependencies.get_registry_service: lambda: registry,
        dependencies.get_deployment_service: lambda: deployments,
        dependencies.get_orchestrator_service: lambda: orchestrator,
        dependencies.get_metered_extraction_service: lambda: metered,
    }
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides = {}


def actor_headers(actor: Actor) -> Dict[str, str]:
    return {"X-Actor-Id": actor.actor_id, "X-Actor-Role": actor.role.value}
