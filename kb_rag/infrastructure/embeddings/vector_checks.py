from __future__ import annotations

from collections.abc import Iterable, Sequence

from kb_rag.domain.errors import EmbeddingProviderError
from kb_rag.domain.types import Vector


def to_vector(values: Iterable[float]) -> Vector:
    return tuple(float(x) for x in values)


def check_vectors(vectors: Sequence[Vector], expected_count: int, dimension: int) -> None:
    """Reject responses the index could not use: wrong count, wrong size, all zeros."""
    if len(vectors) != expected_count:
        raise EmbeddingProviderError(
            f"expected {expected_count} embeddings, got {len(vectors)}",
            reason="malformed_response",
        )
    for i, v in enumerate(vectors):
        if len(v) != dimension:
            raise EmbeddingProviderError(
                f"embedding {i} has dimension {len(v)}, expected {dimension}",
                reason="malformed_response",
            )
        if not any(v):
            raise EmbeddingProviderError(
                f"embedding {i} is an all-zero vector", reason="malformed_response"
            )
