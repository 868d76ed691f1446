"""
RExeli Backend — API Routers
==============================

    health       GET  /health
    ledger       /api/accounts/*        credit ledger and subscriptions
    extract      POST /api/extract      metered extraction
    training     /api/training/*        document registry and review
    fine_tuning  /api/fine-tuning/*     jobs, model versions, routing
    cron         POST /api/cron/*       scheduler entry points
"""
