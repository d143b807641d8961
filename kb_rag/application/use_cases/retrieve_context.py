# kb_rag/application/use_cases/retrieve_context.py
from __future__ import annotations

import logging

from kb_rag.application.deadlines import with_deadline
from kb_rag.application.dto.query_dto import ContextResponse
from kb_rag.application.ports.embedding_port import EmbeddingPort
from kb_rag.application.ports.telemetry_port import NoopTelemetry, TelemetryPort
from kb_rag.application.ports.vector_index_port import VectorIndexPort
from kb_rag.domain.errors import ValidationError
from kb_rag.domain.models import RetrievalResult
from kb_rag.domain.services.context_assembly import extract_sources, format_context
from kb_rag.domain.services.relevance_scoring import normalize_hits

logger = logging.getLogger(__name__)


class RetrieveContext:
    """
    Query → embedding → k-NN search → normalized RetrievalResult.

    Scores come back lower-is-better regardless of the backend, in the
    index's own best-first order. No score threshold is applied.
    """

    def __init__(
        self,
        embedding: EmbeddingPort,
        index: VectorIndexPort,
        index_name: str,
        embed_timeout_s: float | None = None,
        search_timeout_s: float | None = None,
        max_context_chars: int | None = None,
        telemetry: TelemetryPort | None = None,
    ) -> None:
        self.embedding = embedding
        self.index = index
        self.index_name = index_name
        self.embed_timeout_s = embed_timeout_s
        self.search_timeout_s = search_timeout_s
        self.max_context_chars = max_context_chars
        self.telemetry = telemetry or NoopTelemetry()

    async def retrieve(self, query: str, k: int) -> RetrievalResult:
        # 1) Validate
        if k < 0:
            raise ValidationError(f"k must be >= 0, got {k}")
        if not query or not query.strip():
            raise ValidationError("question must not be empty")
        if k == 0:
            return ()

        with self.telemetry.span("rag.retrieve", {"rag.k": k}):
            # 2) Embed query
            q_vec = await with_deadline(
                self.embedding.embed(query), self.embed_timeout_s, "query embedding"
            )
            # 3) Search
            hits = await with_deadline(
                self.index.knn_search(self.index_name, q_vec, k),
                self.search_timeout_s,
                "knn search",
            )

        # 4) Normalize
        result = normalize_hits(hits[:k], self.index.score_kind)
        logger.debug("retrieved %d of k=%d from %s", len(result), k, self.index_name)
        return result

    def build_context(self, results: RetrievalResult) -> str:
        with self.telemetry.span("rag.build_context", {"rag.documents": len(results)}):
            return format_context(results, self.max_context_chars)

    async def get_context(self, question: str, max_docs: int = 5) -> ContextResponse:
        results = await self.retrieve(question, max_docs)
        return ContextResponse(
            context=self.build_context(results),
            sources=extract_sources(results),
            document_count=len(results),
        )
