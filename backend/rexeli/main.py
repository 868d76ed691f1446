"""
RExeli Backend — FastAPI Application Factory
==============================================

What:  Creates and configures the FastAPI application instance.
Why:   Middleware, exception handlers, routers and lifecycle live in one place.
How:   create_app() returns a configured FastAPI instance.
Who:   uvicorn (uvicorn rexeli.main:app) and the route tests.

Application Architecture:
    ┌───────────────────────────────────────────────────────────────┐
    │                        FastAPI App                            │
    │  Middleware: RateLimit → RequestID → AccessLog → GZip → CORS  │
    │                                                               │
    │  Routers:                                                     │
    │    /api/accounts   /api/extract   /api/training               │
    │    /api/fine-tuning   /api/cron   /health                     │
    │                                                               │
    │  Exception Handlers (RExeliError hierarchy → HTTP):           │
    │    Validation 400 │ Authorization 403 │ NotFound 404          │
    │    InvalidState / DuplicateOperation 409                      │
    │    InsufficientCredits 402 │ InsufficientData 422             │
    │    RateLimit 429 │ ProviderRejected 502                       │
    │    CollaboratorUnavailable 503 │ Database 500                 │
    └───────────────────────────────────────────────────────────────┘
"""

import logging
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from rexeli import __version__
from rexeli.config import settings
from rexeli.database import dispose_engine
from rexeli.exceptions import (
    AuthorizationError,
    CircuitBreakerOpenError,
    CollaboratorUnavailableError,
    DatabaseError,
    DuplicateOperationError,
    InsufficientCreditsError,
    InsufficientDataError,
    InvalidStateError,
    NotFoundError,
    ProviderRejectedError,
    RateLimitExceededError,
    RExeliError,
    ValidationError,
)
from rexeli.middleware.logging import RequestLoggingMiddleware
from rexeli.middleware.rate_limit import RateLimitMiddleware
from rexeli.middleware.request_id import RequestIDMiddleware, request_id_var
from rexeli.routes import cron, extract, fine_tuning, health, ledger, training

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configures the root logger once at startup.

    Format: 2024-01-15T12:00:00 [INFO] rexeli.services.ledger_service: message
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    # Per-operation chatter from third-party libraries.
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    setup_logging()
    logger.info("RExeli Backend %s starting up", __version__)

    try:
        settings.validate_required_for_production()
    except ValueError as e:
        # Keep serving: health checks and ledger reads still work.
        logger.error("Configuration error: %s", e)

    storage = Path(settings.storage_root)
    storage.mkdir(parents=True, exist_ok=True)
    logger.info("Document storage: %s", storage.resolve())
    logger.info(
        "Deployment policy: %s",
        f"auto ({settings.auto_deploy_status} at {settings.auto_deploy_traffic_percentage}%)"
        if settings.auto_deploy_models
        else "manual",
    )

    yield

    logger.info("RExeli Backend shutting down")
    await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def _error_response(
    status_code: int,
    error: str,
    message: str,
    details: Optional[dict] = None,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    content = {"error": error, "message": message, "request_id": request_id_var.get("")}
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content, headers=headers)


# Client-facing errors: the message and context are safe to return.
CLIENT_ERRORS = [
    (ValidationError, 400, "validation_error"),
    (AuthorizationError, 403, "forbidden"),
    (NotFoundError, 404, "not_found"),
    (InvalidStateError, 409, "invalid_state"),
    (DuplicateOperationError, 409, "duplicate_operation"),
    (InsufficientDataError, 422, "insufficient_training_data"),
]


def register_exception_handlers(app: FastAPI) -> None:
    """
    Maps the RExeliError hierarchy to HTTP responses.

    Server-side failures (database, unexpected) return a generic message;
    their context is logged, never sent.
    """

    def client_error_handler(status_code: int, error: str):
        async def handler(request: Request, exc: RExeliError):
            logger.info("[%s] %s: %s", request_id_var.get(""), error, exc.message)
            return _error_response(status_code, error, exc.message, exc.context)

        return handler

    for exc_class, status_code, error in CLIENT_ERRORS:
        app.add_exception_handler(exc_class, client_error_handler(status_code, error))

    @app.exception_handler(InsufficientCreditsError)
    async def handle_insufficient_credits(request: Request, exc: InsufficientCreditsError):
        return _error_response(
            402,
            "insufficient_credits",
            exc.message,
            {
                **exc.context,
                "required": exc.required,
                "available": exc.available,
                "shortfall": exc.shortfall,
            },
        )

    @app.exception_handler(RateLimitExceededError)
    async def handle_rate_limit(request: Request, exc: RateLimitExceededError):
        return _error_response(
            429,
            "rate_limit_exceeded",
            exc.message,
            exc.context,
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(ProviderRejectedError)
    async def handle_provider_rejected(request: Request, exc: ProviderRejectedError):
        logger.error("[%s] Provider rejected request: %s", request_id_var.get(""), exc.message)
        return _error_response(502, "provider_rejected", exc.message, exc.context)

    @app.exception_handler(CircuitBreakerOpenError)
    async def handle_circuit_breaker(request: Request, exc: CircuitBreakerOpenError):
        logger.warning("[%s] Circuit breaker open: %s", request_id_var.get(""), exc.message)
        return _error_response(
            503,
            "service_unavailable",
            exc.message,
            {"recovery_time": exc.recovery_time},
            headers={"Retry-After": str(exc.recovery_time)},
        )

    @app.exception_handler(CollaboratorUnavailableError)
    async def handle_collaborator_unavailable(request: Request, exc: CollaboratorUnavailableError):
        logger.error(
            "[%s] Collaborator unavailable: %s | %s",
            request_id_var.get(""),
            exc.message,
            exc.context,
        )
        headers = {"Retry-After": str(exc.retry_after)} if exc.retry_after else None
        return _error_response(503, "service_unavailable", exc.message, headers=headers)

    @app.exception_handler(DatabaseError)
    async def handle_database_error(request: Request, exc: DatabaseError):
        logger.error(
            "[%s] Database error: %s | %s", request_id_var.get(""), exc.message, exc.context
        )
        return _error_response(
            500, "server_error", "An internal error occurred. Please try again later."
        )

    @app.exception_handler(RExeliError)
    async def handle_rexeli_error(request: Request, exc: RExeliError):
        logger.error(
            "[%s] Unhandled %s: %s", request_id_var.get(""), type(exc).__name__, exc.message
        )
        return _error_response(500, "server_error", "An internal error occurred.")

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error("[%s] Unexpected error: %s", request_id_var.get(""), exc, exc_info=True)
        return _error_response(
            500,
            "internal_server_error",
            "An unexpected error occurred. Please try again or contact support.",
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app() -> FastAPI:
    app = FastAPI(
        title="RExeli API",
        description=(
            "Commercial real estate document extraction with per-page credit metering, "
            "a human-verified training dataset, and fine-tuned model deployment."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Last added runs first: RateLimit → RequestID → Logging → GZip → CORS.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(RateLimitMiddleware)

    register_exception_handlers(app)

    app.include_router(health.router)
    app.include_router(ledger.router)
    app.include_router(extract.router)
    app.include_router(training.router)
    app.include_router(fine_tuning.router)
    app.include_router(cron.router)

    return app


app = create_app()
