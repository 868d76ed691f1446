"""
RExeli Backend — Custom Exception Hierarchy
=============================================

What:  Defines application-specific exceptions for different error scenarios.
Why:   Custom exceptions enable targeted error handling with appropriate HTTP
       status codes and actionable messages.
How:   Each exception class carries a message and optional context dict.
       Global exception handlers (registered in main.py) catch these and
       return structured JSON error responses with correct HTTP status codes.
Who:   Raised by services; caught by global handlers, the cron CLI, and the
       batch loops that isolate per-item failures.

Exception Hierarchy:
    RExeliError (base)
    ├── ValidationError               → 400 Bad Request
    ├── AuthorizationError            → 403 Forbidden
    ├── NotFoundError                 → 404 Not Found
    ├── InvalidStateError             → 409 Conflict (illegal transition)
    ├── DuplicateOperationError       → 409 Conflict (idempotency key reused)
    ├── InsufficientCreditsError      → 402 Payment Required
    ├── InsufficientDataError         → 422 Unprocessable Entity
    ├── CollaboratorUnavailableError  → 503 Service Unavailable (transient I/O)
    │   ├── ExtractionServiceError
    │   ├── CircuitBreakerOpenError
    │   ├── TrainingProviderError
    │   └── FileStorageError
    ├── ProviderRejectedError         → 502 Bad Gateway (permanent refusal)
    ├── DatabaseError                 → 500 Internal Server Error
    └── RateLimitExceededError        → 429 Too Many Requests
"""

from typing import Any, Dict, Optional


class RExeliError(Exception):
    """
    Base exception for all RExeli application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional detail; returned as `details` for client-actionable
                  errors, logged only for server errors
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(RExeliError):
    """
    Raised when input fails a business rule.

    When:    Non-positive amounts, credit grants above the per-transaction cap,
             confidence outside [0, 1], a train percentage outside 50..95.
    HTTP:    400 Bad Request
    """

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class AuthorizationError(RExeliError):
    """
    Raised when an administrative operation is attempted without an elevated actor.

    HTTP:    403 Forbidden
    """

    def __init__(
        self,
        message: str = "This operation requires administrator privileges",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class NotFoundError(RExeliError):
    """
    Raised when a requested resource does not exist.

    SQLAlchemy returns None for missing records; services convert that into
    NotFoundError so the HTTP layer can answer 404.
    """

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class InvalidStateError(RExeliError):
    """
    Raised when an operation is not allowed from the entity's current state.

    Examples: deploying a job that has not succeeded, cancelling a failed job,
    verifying a document whose extraction never completed.
    HTTP:    409 Conflict
    """

    def __init__(
        self,
        message: str = "Operation not allowed in the current state",
        current_state: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if current_state:
            ctx["current_state"] = current_state
        super().__init__(message=message, context=ctx)
        self.current_state = current_state


class DuplicateOperationError(RExeliError):
    """
    Raised when an idempotency key (or a one-per-entity operation) was already applied.

    HTTP:    409 Conflict
    """

    def __init__(
        self,
        message: str = "This operation has already been applied",
        idempotency_key: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if idempotency_key:
            ctx["idempotency_key"] = idempotency_key
        super().__init__(message=message, context=ctx)
        self.idempotency_key = idempotency_key


class InsufficientCreditsError(RExeliError):
    """
    Raised when an account cannot pay for the requested pages.

    The shortfall is always reported so the client can tell the user exactly
    how many credits are missing.
    HTTP:    402 Payment Required
    """

    def __init__(
        self,
        required: int,
        available: int,
        context: Optional[Dict[str, Any]] = None,
    ):
        shortfall = max(required - available, 0)
        message = (
            f"Insufficient credits: {required} required, {available} available "
            f"({shortfall} short)"
        )
        ctx = context or {}
        ctx.update({"required": required, "available": available, "shortfall": shortfall})
        super().__init__(message=message, context=ctx)
        self.required = required
        self.available = available
        self.shortfall = shortfall


class InsufficientDataError(RExeliError):
    """
    Raised when too few eligible training documents exist to start a job.

    HTTP:    422 Unprocessable Entity
    """

    def __init__(
        self,
        required: int,
        available: int,
        document_type: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"At least {required} verified training documents are required, "
            f"only {available} available"
        )
        if document_type:
            message += f" for '{document_type}'"
        ctx = context or {}
        ctx.update({"required": required, "available": available})
        if document_type:
            ctx["document_type"] = document_type
        super().__init__(message=message, context=ctx)
        self.required = required
        self.available = available


class CollaboratorUnavailableError(RExeliError):
    """
    Raised when an external collaborator fails transiently.

    Callers may retry later. Inside a monitor pass this is logged and left for
    the next scheduled run rather than escalated.
    HTTP:    503 Service Unavailable
    """

    def __init__(
        self,
        message: str = "An external service is temporarily unavailable",
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if retry_after:
            ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after


class ExtractionServiceError(CollaboratorUnavailableError):
    """
    Raised when the extraction/classification capability fails after retries.

    HTTP:    503 Service Unavailable
    """

    def __init__(
        self,
        message: str = "Document extraction service is temporarily unavailable",
        retry_after: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, retry_after=retry_after, context=context)


class CircuitBreakerOpenError(CollaboratorUnavailableError):
    """
    Raised when the circuit breaker around the extraction service is OPEN.

    How circuit breaker works:
        CLOSED (normal) → failures increment counter
        → After N failures → OPEN (reject all calls for recovery_time seconds)
        → After recovery_time → HALF-OPEN (allow one test call)
        → If test succeeds → CLOSED; if it fails → OPEN again
    """

    def __init__(
        self,
        recovery_time: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"Extraction service is temporarily unavailable due to repeated failures. "
            f"The service will automatically retry in approximately {recovery_time} seconds."
        )
        ctx = context or {}
        ctx["recovery_time"] = recovery_time
        super().__init__(message=message, retry_after=recovery_time, context=ctx)
        self.recovery_time = recovery_time


class TrainingProviderError(CollaboratorUnavailableError):
    """
    Raised when the model-training provider cannot be reached or answers with
    a transient failure (timeouts, 5xx, rate limits).
    """

    def __init__(
        self,
        message: str = "Training provider is temporarily unavailable",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class FileStorageError(CollaboratorUnavailableError):
    """
    Raised when document storage reads or writes fail.

    The message returned to clients never contains file system paths.
    """

    def __init__(
        self,
        message: str = "Document storage operation failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class ProviderRejectedError(RExeliError):
    """
    Raised when the training provider permanently refuses a submission
    (invalid dataset, bad credentials, billing problems).

    The job that triggered it is marked failed; retrying the same request
    will not help.
    HTTP:    502 Bad Gateway
    """

    def __init__(
        self,
        message: str = "Training provider rejected the job",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class DatabaseError(RExeliError):
    """
    Raised when database operations fail unexpectedly.

    The client message is always generic; details are logged server-side only.
    HTTP:    500 Internal Server Error
    """

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class RateLimitExceededError(RExeliError):
    """
    Raised when a client exceeds the per-IP request rate limit.

    HTTP:    429 Too Many Requests
    """

    def __init__(
        self,
        retry_after: int = 60,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = (
            f"Rate limit exceeded. Please wait {retry_after} seconds before making more requests."
        )
        ctx = context or {}
        ctx["retry_after"] = retry_after
        super().__init__(message=message, context=ctx)
        self.retry_after = retry_after
