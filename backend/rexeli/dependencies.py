"""
RExeli Backend — Service Dependencies
=======================================

What:  FastAPI dependency getters for the service singletons.
Why:   Routes depend on these instead of importing singletons directly, so
       tests can swap in services bound to a throwaway database through
       `app.dependency_overrides`.
"""

from rexeli.services.deployment_service import DeploymentService, deployment_service
from rexeli.services.ledger_service import LedgerService, ledger_service
from rexeli.services.metered_extraction import (
    MeteredExtractionService,
    metered_extraction_service,
)
from rexeli.services.orchestrator_service import OrchestratorService, orchestrator_service
from rexeli.services.registry_service import RegistryService, registry_service


def get_ledger_service() -> LedgerService:
    return ledger_service


def get_registry_service() -> RegistryService:
    return registry_service


def get_orchestrator_service() -> OrchestratorService:
    return orchestrator_service


def get_deployment_service() -> DeploymentService:
    return deployment_service


def get_metered_extraction_service() -> MeteredExtractionService:
    return metered_extraction_service
