"""
RExeli Backend — Services Layer
=================================

Business logic between the routes (HTTP) and the database. Each service
opens its own transactions and returns Pydantic schemas, never ORM rows.

Service Inventory:
    - LedgerService: page credits, subscriptions, usage audit trail
    - RegistryService: training documents from upload to dataset split
    - OrchestratorService: fine-tuning job lifecycle and auto-triggers
    - DeploymentService: model versions, canaries, traffic routing
    - MeteredExtractionService: authorize → route → extract → debit

Collaborators (abstract base + one implementation each):
    - DocumentStorage / LocalDocumentStorage (aiofiles)
    - ExtractionService / GeminiExtractionService (google-generativeai)
    - TrainingProvider / GeminiTuningProvider (google-generativeai tuning)
"""
