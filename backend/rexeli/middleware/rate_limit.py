"""
RExeli Backend — Rate Limiting Middleware
===========================================

What:  Sliding-window request limiter keyed by caller.
Why:   Extraction and upload calls hit Gemini quotas; one noisy tenant should
       not exhaust them for everyone.
How:   Keeps recent request timestamps per key in memory. The key is the
       gateway's `X-Actor-Id` when present, else the client IP.
       Health checks, docs and the scheduler's /api/cron/* calls are exempt.

Scope:
    Single-process only. Several uvicorn workers each keep their own window.
"""

import logging
import time
from collections import defaultdict
from typing import Dict, List

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from rexeli.config import settings

logger = logging.getLogger(__name__)


class RateLimitMiddleware(BaseHTTPMiddleware):
    EXCLUDED_PATHS = {"/health", "/docs", "/openapi.json", "/redoc"}
    EXCLUDED_PREFIXES = ("/api/cron/",)

    def __init__(self, app, **kwargs):
        super().__init__(app, **kwargs)
        self._requests: Dict[str, List[float]] = defaultdict(list)
        self._seen = 0

    @staticmethod
    def _key_for(request: Request) -> str:
        actor_id = request.headers.get("X-Actor-Id")
        if actor_id:
            return f"actor:{actor_id}"
        host = request.client.host if request.client else "unknown"
        return f"ip:{host}"

    def _exempt(self, path: str) -> bool:
        return path in self.EXCLUDED_PATHS or path.startswith(self.EXCLUDED_PREFIXES)

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if self._exempt(request.url.path):
            return await call_next(request)

        key = self._key_for(request)
        now = time.time()
        window_start = now - settings.rate_limit_window
        recent = [ts for ts in self._requests[key] if ts > window_start]
        self._requests[key] = recent

        if len(recent) >= settings.rate_limit_requests:
            retry_after = int(recent[0] + settings.rate_limit_window - now) + 1
            logger.warning(
                "Rate limit exceeded for %s: %d requests in %ds",
                key,
                len(recent),
                settings.rate_limit_window,
            )
            return JSONResponse(
                status_code=429,
                content={
                    "error": "rate_limit_exceeded",
                    "message": f"Too many requests. Retry in {retry_after} seconds.",
                    "details": {"retry_after": retry_after},
                },
                headers={"Retry-After": str(retry_after)},
            )

        recent.append(now)
        self._seen += 1
        if self._seen % 1000 == 0:
            self._evict_idle(window_start)
        return await call_next(request)

    def _evict_idle(self, window_start: float) -> None:
        idle = [k for k, stamps in self._requests.items() if not stamps or stamps[-1] < window_start]
        for key in idle:
            del self._requests[key]
        if idle:
            logger.debug("Evicted %d idle rate-limit keys", len(idle))
