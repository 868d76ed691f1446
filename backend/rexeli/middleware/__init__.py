"""
RExeli Backend — Middleware Package
=====================================

Request path (outermost first):
    RateLimit → RequestID → AccessLog → GZip → CORS → route

The rate limiter rejects before a request id is assigned; everything after
it logs with the request id from `request_id_var`.
"""
