from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from importlib import import_module
from typing import Any

from kb_rag.application.ports.embedding_port import EmbeddingPort
from kb_rag.domain.errors import EmbeddingProviderError, RequestTimeoutError
from kb_rag.domain.types import Vector
from kb_rag.infrastructure.embeddings.vector_checks import check_vectors, to_vector
from kb_rag.infrastructure.openai_compat.errors import classify

_EMBEDDING_REASONS = {"auth": "auth", "rate_limited": "quota", "unavailable": "unavailable"}


@dataclass
class OpenAIEmbeddingAdapter(EmbeddingPort):
    api_key: str | None = None
    model: str = "text-embedding-3-small"
    dimension: int = 1536
    base_url: str | None = None
    timeout_s: float = 30.0
    client: Any | None = None  # injectable AsyncOpenAI-compatible client

    def _get_client(self) -> Any:
        if self.client is None:
            # Defer import of openai to first use to avoid hard dependency in tests
            module = import_module("openai")
            self.client = module.AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout_s,
                max_retries=0,
            )
        return self.client

    async def embed(self, text: str) -> Vector:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: Sequence[str]) -> list[Vector]:
        if not texts:
            return []
        client = self._get_client()
        try:
            resp: Any = await client.embeddings.create(model=self.model, input=list(texts))
        except Exception as ex:  # noqa: BLE001
            reason = classify(ex)
            if reason == "timeout":
                raise RequestTimeoutError("embedding", self.timeout_s) from ex
            raise EmbeddingProviderError(
                f"OpenAI embedding request failed: {ex}",
                reason=_EMBEDDING_REASONS.get(reason or "", "provider_error"),
            ) from ex

        try:
            data = sorted(resp.data, key=lambda d: d.index)
            vectors = [to_vector(d.embedding) for d in data]
        except Exception as ex:  # noqa: BLE001
            raise EmbeddingProviderError(
                f"unexpected embedding response: {ex}", reason="malformed_response"
            ) from ex
        check_vectors(vectors, len(texts), self.dimension)
        return vectors

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.close()
