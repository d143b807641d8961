"""Domain errors (typed).

Adapters translate library exceptions into this family; use cases propagate
them unchanged so callers (HTTP layer, ingestion jobs) own the retry policy.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover - typing only
    from kb_rag.domain.models import FailedRecord


class DomainError(Exception):
    """Base class for domain-specific errors."""


class ValidationError(DomainError):
    """Invalid input/domain state."""


class ConfigError(DomainError):
    """Fatal configuration problem (unknown provider, invalid chunking, ...)."""


class IndexConfigError(ConfigError):
    """Index schema conflict, e.g. an existing index with another dimension."""


class EmbeddingProviderError(DomainError):
    """Embedding backend failed: auth, quota or malformed response."""

    def __init__(self, message: str, reason: str = "provider_error") -> None:
        super().__init__(message)
        self.reason = reason


class VectorStoreError(DomainError):
    """Vector index backend failed or is misconfigured."""


class SearchError(VectorStoreError):
    """k-NN search failed (connectivity, malformed query, missing index)."""


class PartialInsertError(DomainError):
    """Some records of a bulk insert were rejected; the rest stay inserted."""

    def __init__(self, inserted_count: int, failed: Sequence[FailedRecord]) -> None:
        super().__init__(f"{len(failed)} record(s) rejected, {inserted_count} inserted")
        self.inserted_count = inserted_count
        self.failed = list(failed)


class GenerationError(DomainError):
    """Chat model failed. `reason` and `retryable` let callers pick a retry policy."""

    def __init__(
        self,
        message: str,
        reason: str = "provider_error",
        retryable: bool = False,
        provider: str | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.retryable = retryable
        self.provider = provider


class RequestTimeoutError(DomainError, TimeoutError):
    """An external call exceeded its deadline."""

    def __init__(self, operation: str, timeout_s: float | None = None) -> None:
        detail = f" after {timeout_s:g}s" if timeout_s is not None else ""
        super().__init__(f"{operation} timed out{detail}")
        self.operation = operation
        self.timeout_s = timeout_s
