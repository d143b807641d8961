"""Knowledge base facade used by the CLI and the HTTP API.

Pure delegation to the use cases plus the small admin surface (stats,
delete, raw search, provider listing). Holds no request state.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Sequence
from typing import Any
from uuid import NAMESPACE_URL, uuid5

from kb_rag.application.deadlines import with_deadline
from kb_rag.application.dto.ingest_dto import IngestDocumentDTO, IngestReport
from kb_rag.application.dto.query_dto import ContextResponse, QueryOptions
from kb_rag.application.ports.clock_port import ClockPort
from kb_rag.application.ports.embedding_port import EmbeddingPort
from kb_rag.application.ports.vector_index_port import VectorIndexPort
from kb_rag.application.use_cases.answer_question import AnswerQuestion
from kb_rag.application.use_cases.ingest_documents import IngestDocuments
from kb_rag.application.use_cases.provider_registry import ChatProviderRegistry, ProviderProbe
from kb_rag.application.use_cases.retrieve_context import RetrieveContext
from kb_rag.domain.errors import ValidationError
from kb_rag.domain.models import (
    SOURCE_KEY,
    TITLE_KEY,
    AnswerResult,
    Document,
    IndexStats,
    RetrievalResult,
    StreamEvent,
)

logger = logging.getLogger(__name__)


class KnowledgeBaseService:
    def __init__(
        self,
        index: VectorIndexPort,
        embedding: EmbeddingPort,
        ingest_uc: IngestDocuments,
        retriever: RetrieveContext,
        answerer: AnswerQuestion,
        providers: ChatProviderRegistry,
        clock: ClockPort,
        index_name: str,
        dimension: int,
        default_k: int = 5,
        index_timeout_s: float | None = None,
    ) -> None:
        self.index = index
        self.embedding = embedding
        self.ingest_uc = ingest_uc
        self.retriever = retriever
        self.answerer = answerer
        self.providers = providers
        self.clock = clock
        self.index_name = index_name
        self.dimension = dimension
        self.default_k = default_k
        self.index_timeout_s = index_timeout_s
        self._index_ready = False

    async def startup(self) -> bool:
        """Create the index if absent. A dimension mismatch fails fast with IndexConfigError."""
        created = await with_deadline(
            self.index.create_index_if_absent(self.index_name, self.dimension),
            self.index_timeout_s,
            "create index",
        )
        if created:
            logger.info("created index %s (dimension=%d)", self.index_name, self.dimension)
        else:
            logger.info("using existing index %s", self.index_name)
        self._index_ready = True
        return created

    async def ensure_index(self) -> None:
        # delete_index drops the index; the next use recreates it.
        if not self._index_ready:
            await self.startup()

    # ---------- Ingestion ----------

    def to_document(self, dto: IngestDocumentDTO) -> Document:
        if not dto.text or not dto.text.strip():
            raise ValidationError("document text must not be empty")
        base = {TITLE_KEY: dto.title, SOURCE_KEY: dto.source, "url": dto.url}
        metadata: dict[str, Any] = {k: v for k, v in base.items() if v is not None}
        metadata.update(dto.metadata)
        ingested_at = self.clock.now()
        metadata["ingested_at"] = ingested_at.isoformat()
        doc_id = dto.id or str(uuid5(NAMESPACE_URL, f"{dto.source or ''}\n{dto.text}"))
        return Document(id=doc_id, text=dto.text, metadata=metadata, ingested_at=ingested_at)

    async def ingest(
        self, documents: Sequence[IngestDocumentDTO], reset: bool = False
    ) -> IngestReport:
        """Ingest documents. With `reset`, the index is dropped and recreated first."""
        if not documents:
            raise ValidationError("no documents to ingest")
        docs = [self.to_document(d) for d in documents]
        if reset:
            await self.delete_index()
        await self.ensure_index()
        return await self.ingest_uc.execute(docs)

    # ---------- Questions ----------

    def _k(self, k: int | None) -> int:
        return self.default_k if k is None else k

    async def answer(
        self, question: str, options: QueryOptions | None = None
    ) -> AnswerResult | AsyncIterator[StreamEvent]:
        opts = options or QueryOptions()
        await self.ensure_index()
        k = self._k(opts.max_context_docs)
        if opts.streaming:
            return self.answerer.stream(question, k, opts.provider)
        return await self.answerer.execute(question, k, opts.provider)

    async def get_context(self, question: str, max_docs: int | None = None) -> ContextResponse:
        await self.ensure_index()
        return await self.retriever.get_context(question, self._k(max_docs))

    async def search(self, query: str, k: int | None = None) -> RetrievalResult:
        await self.ensure_index()
        return await self.retriever.retrieve(query, self._k(k))

    # ---------- Admin ----------

    async def index_stats(self) -> IndexStats:
        return await with_deadline(
            self.index.stats(self.index_name), self.index_timeout_s, "index stats"
        )

    async def delete_index(self) -> None:
        """Drop the index with all its records. Absent indices are not an error."""
        self._index_ready = False
        await with_deadline(
            self.index.delete_all(self.index_name), self.index_timeout_s, "delete index"
        )
        logger.info("deleted index %s", self.index_name)

    def list_providers(self) -> dict[str, Any]:
        return {"providers": self.providers.names(), "default": self.providers.default}

    async def probe_provider(self, name: str | None = None) -> ProviderProbe:
        return await self.providers.probe(name)

    async def aclose(self) -> None:
        await self.providers.aclose()
        await self.index.aclose()
        aclose = getattr(self.embedding, "aclose", None)
        if aclose is not None:
            await aclose()
