"""Exception hierarchy shared across the pipeline.

Propagation model:
    - `ProviderUnavailable` subclasses are raised by remote adapters (embedding,
      retrieval, generation) after their own retry budget is exhausted. Callers
      recover through tier fallback; they are never shown to users verbatim.
      `FastStoreUnavailable` is the exception: quota fails closed on it.
    - `GenerationFailed` is raised by the tier router when a generation tier
      cannot produce an answer, annotated with the tier and a reason.
    - `QuotaExceeded` carries a structured `QuotaDenial` and is the only error
      that is surfaced to the user as-is (through its message).
    - `CacheInconsistency` marks a stored cache record whose tier cannot be
      interpreted. Readers treat it as a miss; the next successful resolution
      overwrites the record.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tutor_pipeline.core.routing_types import QuotaDenial, Tier


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ProviderUnavailable(PipelineError):
    """A remote capability provider timed out or returned a server error."""


class EmbeddingUnavailable(ProviderUnavailable):
    """Embedding provider failed after retries."""


class RetrievalUnavailable(ProviderUnavailable):
    """Retrieval index could not be queried (distinct from an empty result)."""


class GenerationUnavailable(ProviderUnavailable):
    """Generation provider failed after retries."""


class FastStoreUnavailable(ProviderUnavailable):
    """Configured Redis backend failed on an operation that must not go local."""


class GenerationFailed(PipelineError):
    """A generation tier could not produce an answer."""

    def __init__(self, tier: "Tier", reason: str) -> None:
        self.tier = tier
        self.reason = reason
        super().__init__(f"generation failed at tier={tier.value}: {reason}")


class QuotaExceeded(PipelineError):
    """Raised when a billable operation would exceed the user's quota."""

    def __init__(self, denial: "QuotaDenial") -> None:
        self.denial = denial
        super().__init__(denial.message)


class CacheInconsistency(PipelineError):
    """Stored cache record does not match the expected tier contract."""
