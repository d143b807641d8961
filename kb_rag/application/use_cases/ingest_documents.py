# kb_rag/application/use_cases/ingest_documents.py
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Sequence
from typing import TypeVar

from kb_rag.application.deadlines import with_deadline
from kb_rag.application.dto.ingest_dto import IngestReport
from kb_rag.application.ports.clock_port import ClockPort
from kb_rag.application.ports.embedding_port import EmbeddingPort
from kb_rag.application.ports.telemetry_port import NoopTelemetry, TelemetryPort
from kb_rag.application.ports.vector_index_port import VectorIndexPort
from kb_rag.domain.errors import EmbeddingProviderError, PartialInsertError, ValidationError
from kb_rag.domain.models import (
    BulkInsertResult,
    Chunk,
    Document,
    FailedRecord,
    IndexedRecord,
    make_record_id,
)
from kb_rag.domain.services.chunking import ChunkingParams, chunk_document
from kb_rag.domain.types import Vector

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _batched(items: Sequence[T], size: int) -> list[Sequence[T]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


async def _bounded_gather(
    calls: Sequence[Awaitable[T]], limit: int
) -> list[T | BaseException]:
    """Run calls with at most `limit` in flight; results (or exceptions) in input order."""
    sem = asyncio.Semaphore(max(1, limit))

    async def run(aw: Awaitable[T]) -> T:
        async with sem:
            return await aw

    return await asyncio.gather(*(run(c) for c in calls), return_exceptions=True)


class IngestDocuments:
    """
    Documents → chunks → embeddings → IndexedRecords → bulk insert.

    Rejected records (PartialInsertError) are logged and collected into the
    report; they never abort the other batches. Any other failure propagates
    after all in-flight batches have settled.
    """

    def __init__(
        self,
        embedding: EmbeddingPort,
        index: VectorIndexPort,
        clock: ClockPort,
        index_name: str,
        chunking: ChunkingParams | None = None,
        embedding_batch_size: int = 64,
        embedding_concurrency: int = 4,
        insert_batch_size: int = 100,
        insert_concurrency: int = 2,
        embed_timeout_s: float | None = None,
        index_timeout_s: float | None = None,
        refresh_after_write: bool = False,
        telemetry: TelemetryPort | None = None,
    ) -> None:
        self.embedding = embedding
        self.index = index
        self.clock = clock
        self.index_name = index_name
        self.chunking = chunking or ChunkingParams()
        self.embedding_batch_size = max(1, embedding_batch_size)
        self.embedding_concurrency = embedding_concurrency
        self.insert_batch_size = max(1, insert_batch_size)
        self.insert_concurrency = insert_concurrency
        self.embed_timeout_s = embed_timeout_s
        self.index_timeout_s = index_timeout_s
        self.refresh_after_write = refresh_after_write
        self.telemetry = telemetry or NoopTelemetry()

    async def execute(self, documents: Sequence[Document]) -> IngestReport:
        for doc in documents:
            if not doc.id:
                raise ValidationError("document id must not be empty")

        with self.telemetry.span("rag.ingest", {"rag.ingest.documents": len(documents)}):
            chunks: list[Chunk] = []
            for doc in documents:
                chunks.extend(chunk_document(doc, self.chunking))
            if not chunks:
                return IngestReport(
                    documents_ingested=len(documents), chunks_created=0, chunks_indexed=0
                )

            vectors = await self._embed_all([c.text for c in chunks])
            now = self.clock.now()
            records = [
                IndexedRecord(
                    record_id=make_record_id(c.document_id, c.index),
                    embedding=v,
                    text=c.text,
                    metadata=dict(c.metadata),
                    timestamp=now,
                )
                for c, v in zip(chunks, vectors, strict=True)
            ]

            inserted, failures = await self._insert_all(records)
            if self.refresh_after_write:
                await with_deadline(
                    self.index.refresh(self.index_name), self.index_timeout_s, "index refresh"
                )

        self.telemetry.observe("rag.ingest.chunks", float(inserted), {"status": "indexed"})
        if failures:
            self.telemetry.incr("rag.errors.total", {"error_type": "partial_insert"})
        logger.info(
            "ingested %d document(s): %d chunk(s) created, %d indexed, %d rejected",
            len(documents),
            len(chunks),
            inserted,
            len(failures),
        )
        return IngestReport(
            documents_ingested=len(documents),
            chunks_created=len(chunks),
            chunks_indexed=inserted,
            failures=failures,
        )

    async def _embed_all(self, texts: list[str]) -> list[Vector]:
        batches = _batched(texts, self.embedding_batch_size)
        results = await _bounded_gather(
            [
                with_deadline(self.embedding.embed_batch(list(b)), self.embed_timeout_s, "embed")
                for b in batches
            ],
            self.embedding_concurrency,
        )
        vectors: list[Vector] = []
        for batch, res in zip(batches, results, strict=True):
            if isinstance(res, BaseException):
                raise res
            if len(res) != len(batch):
                raise EmbeddingProviderError(
                    f"embedding batch returned {len(res)} vectors for {len(batch)} texts",
                    reason="malformed_response",
                )
            vectors.extend(res)
        return vectors

    async def _insert_all(self, records: list[IndexedRecord]) -> tuple[int, list[FailedRecord]]:
        results: list[BulkInsertResult | BaseException] = await _bounded_gather(
            [
                with_deadline(
                    self.index.bulk_insert(self.index_name, list(b)),
                    self.index_timeout_s,
                    "bulk insert",
                )
                for b in _batched(records, self.insert_batch_size)
            ],
            self.insert_concurrency,
        )

        inserted = 0
        failures: list[FailedRecord] = []
        first_error: BaseException | None = None
        for res in results:
            if isinstance(res, PartialInsertError):
                inserted += res.inserted_count
                failures.extend(res.failed)
                logger.warning("bulk insert into %s: %s", self.index_name, res)
            elif isinstance(res, BaseException):
                first_error = first_error or res
            else:
                inserted += res.inserted_count
                if res.error is not None:
                    failures.extend(res.error.failed)
                    logger.warning("bulk insert into %s: %s", self.index_name, res.error)
        if first_error is not None:
            raise first_error
        return inserted, failures
