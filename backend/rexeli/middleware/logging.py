"""
RExeli Backend — Access Log Middleware
========================================

What:  One log line per request: method, path, status, duration, request id
       and the calling actor.
Why:   Ledger and deployment changes are audited in the database, but the
       access log is where latency and error rates are watched.
How:   Level follows the status class (5xx ERROR, 4xx WARNING, else INFO).
       Request bodies are never logged; extraction payloads can hold tenant data.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from rexeli.middleware.request_id import request_id_var

logger = logging.getLogger("rexeli.access")

QUIET_PATHS = {"/health"}


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path in QUIET_PATHS:
            return await call_next(request)

        started = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - started) * 1000

        status = response.status_code
        if status >= 500:
            level = logging.ERROR
        elif status >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO

        rid = request_id_var.get("")
        actor = request.headers.get("X-Actor-Id", "-")
        logger.log(
            level,
            "%s %s %d %.1fms [%s] actor=%s",
            request.method,
            path,
            status,
            duration_ms,
            rid,
            actor,
            extra={
                "request_id": rid,
                "method": request.method,
                "path": path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
                "actor_id": actor,
            },
        )
        return response
