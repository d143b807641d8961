from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from kb_rag.domain.types import Vector


@runtime_checkable
class EmbeddingPort(Protocol):
    """Text → fixed-dimension vector.

    embed_batch preserves order and length. Adapters raise
    EmbeddingProviderError or RequestTimeoutError; they never retry.
    """

    dimension: int

    async def embed(self, text: str) -> Vector: ...

    async def embed_batch(self, texts: Sequence[str]) -> list[Vector]: ...
