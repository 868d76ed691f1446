"""
RExeli Backend — Request ID Middleware
========================================

What:  Tags every request with a correlation id and echoes it back in the
       `X-Request-ID` response header.
Why:   Error envelopes carry the id, so a client report can be matched to the
       server log lines of the same request.
How:   Reuses an id sent by the gateway, otherwise generates a short one, and
       stores it in a ContextVar that loggers and exception handlers read.
"""

import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# Coroutine-local: concurrent requests on one event loop each see their own id.
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

REQUEST_ID_HEADER = "X-Request-ID"


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        rid = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        request_id_var.set(rid)
        request.state.request_id = rid
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = rid
        return response
