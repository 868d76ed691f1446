"""
RExeli Backend — ORM Models
=============================

Importing this package registers every table with `Base.metadata`
(Alembic autogenerate and the test fixtures rely on it).
"""

from rexeli.models.fine_tuning import FineTuningJob, ModelVersion, TrainingTrigger
from rexeli.models.ledger import AccountBalance, UsageEntry
from rexeli.models.training import TrainingDocument, VerificationEdit

__all__ = [
    "AccountBalance",
    "UsageEntry",
    "TrainingDocument",
    "VerificationEdit",
    "FineTuningJob",
    "TrainingTrigger",
    "ModelVersion",
]
