"""
RExeli Backend — Abstract Extraction Service Interface
========================================================

What:  Contract for the document classification/extraction capability.
Why:   The registry and metered extraction only need "what type is this?" and
       "give me the structured data"; the model behind it is interchangeable.
How:   Concrete implementations inherit from ExtractionService and return
       plain result objects. GeminiExtractionService is the production one;
       tests substitute an AsyncMock with the same methods.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional


@dataclass
class ClassificationResult:
    document_type: str
    confidence: float


@dataclass
class ExtractionResult:
    payload: Dict[str, Any] = field(default_factory=dict)
    confidence: float = 0.0


class ExtractionService(ABC):
    """
    Abstract interface for document classification and extraction.

    Contract:
        - Implementations handle their own retries and circuit breaking
        - Transient failures surface as CollaboratorUnavailableError subclasses
          (ExtractionServiceError, CircuitBreakerOpenError)
        - confidence is always within [0, 1]
    """

    @abstractmethod
    async def classify(self, blob: bytes, mime_type: str) -> ClassificationResult:
        """Determines the document type of a stored document."""
        ...

    @abstractmethod
    async def extract(
        self,
        blob: bytes,
        mime_type: str,
        document_type: str,
        model_id: Optional[str] = None,
    ) -> ExtractionResult:
        """
        Extracts structured data for `document_type`.

        Args:
            model_id: Fine-tuned model to call; None uses the base model.
        """
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Lightweight reachability probe used by GET /health."""
        ...
