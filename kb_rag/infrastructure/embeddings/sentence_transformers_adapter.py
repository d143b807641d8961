from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from kb_rag.application.ports.embedding_port import EmbeddingPort
from kb_rag.domain.errors import EmbeddingProviderError
from kb_rag.domain.types import Vector
from kb_rag.infrastructure.embeddings.vector_checks import check_vectors, to_vector


@dataclass
class SentenceTransformersEmbeddingAdapter(EmbeddingPort):
    """Local embeddings; model calls run in a worker thread to keep the event loop free."""

    model_name: str = "sentence-transformers/all-MiniLM-L6-v2"
    dimension: int = 384
    device: str = "cpu"  # "cuda" | "mps" when available
    batch_size: int = 64
    normalize: bool = True

    def __post_init__(self) -> None:
        self._model: Any | None = None

    def _get(self) -> Any:
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer  # type: ignore
            except Exception as ex:  # pragma: no cover
                raise EmbeddingProviderError(
                    "sentence-transformers not installed", reason="unavailable"
                ) from ex
            self._model = SentenceTransformer(self.model_name, device=self.device)
        return self._model

    def _encode(self, texts: list[str]) -> list[Vector]:
        model = self._get()
        arr = model.encode(
            texts,
            batch_size=self.batch_size,
            normalize_embeddings=self.normalize,
            convert_to_numpy=True,
        )
        return [to_vector(row) for row in arr]

    async def embed(self, text: str) -> Vector:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: Sequence[str]) -> list[Vector]:
        if not texts:
            return []
        try:
            vectors = await asyncio.to_thread(self._encode, list(texts))
        except EmbeddingProviderError:
            raise
        except Exception as ex:  # noqa: BLE001
            raise EmbeddingProviderError(
                f"sentence-transformers encode failed: {ex}", reason="unavailable"
            ) from ex
        check_vectors(vectors, len(texts), self.dimension)
        return vectors
