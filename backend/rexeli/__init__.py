"""
RExeli Backend — Application Package Initializer
=================================================

What: Marks the `rexeli` directory as a Python package.
Who:  Used by uvicorn (`rexeli.main:app`), Alembic, pytest and the cron CLI.

Architecture Note:
    The backend follows the same layered architecture throughout:

    ┌─────────────────────────────────────┐
    │           Routes (API Layer)        │  ← HTTP concerns only
    ├─────────────────────────────────────┤
    │         Services (Business Logic)   │  ← Ledger, registry, jobs, deployments
    ├─────────────────────────────────────┤
    │       Models & Schemas (Data)       │  ← SQLAlchemy ORM + Pydantic
    ├─────────────────────────────────────┤
    │        Database (Persistence)       │  ← Async SQLAlchemy sessions
    └─────────────────────────────────────┘

    Services own their transactions: every state-changing operation opens a
    session from the shared factory and commits or rolls back as one unit.
    Routes and the cron CLI are thin callers on top of them.
"""

__version__ = "1.0.0"
