# kb_rag/domain/models.py
# Domain models must be pure (no I/O, no external libs)
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal
from uuid import NAMESPACE_URL, uuid5

from kb_rag.domain.errors import PartialInsertError
from kb_rag.domain.types import Vector

SOURCE_KEY = "source"
TITLE_KEY = "title"
UNKNOWN_SOURCE = "unknown"


@dataclass(frozen=True)
class Document:
    """
    Input unit for ingestion.

    - id:          opaque identifier (caller- or system-assigned)
    - text:        raw UTF-8 text, any length
    - metadata:    free-form mapping; the core reads `source` and `title` only
    - ingested_at: when the document entered the pipeline

    A Document ends its life at chunking; downstream code only sees Chunks.
    """

    id: str
    text: str
    metadata: Mapping[str, Any]
    ingested_at: datetime


@dataclass(frozen=True)
class Chunk:
    """Contiguous substring of a Document, the unit of embedding and indexing."""

    document_id: str
    index: int
    total: int
    text: str
    metadata: Mapping[str, Any]


@dataclass(frozen=True)
class IndexedRecord:
    """Persisted unit inside the vector index. Never mutated after creation."""

    record_id: str
    embedding: Vector
    text: str
    metadata: Mapping[str, Any]
    timestamp: datetime


@dataclass(frozen=True)
class SearchHit:
    """Raw k-NN hit as the index reports it (score in the index's own direction)."""

    text: str
    metadata: Mapping[str, Any]
    raw_score: float


@dataclass(frozen=True)
class ScoredChunk:
    """Retrieved passage with a relevance score where lower is better (0 = perfect)."""

    text: str
    metadata: Mapping[str, Any]
    score: float

    @property
    def source(self) -> str | None:
        value = self.metadata.get(SOURCE_KEY)
        return str(value) if value else None


RetrievalResult = tuple[ScoredChunk, ...]


@dataclass(frozen=True)
class SourceScore:
    source: str
    score: float


@dataclass(frozen=True)
class AnswerResult:
    """Final output of one question. Not persisted by the core."""

    response_text: str
    sources_used: list[str]
    relevance_scores: list[SourceScore]
    provider: str
    timestamp: datetime
    documents_used: int = 0


StreamEventType = Literal["metadata", "content", "done", "error"]


@dataclass(frozen=True)
class StreamEvent:
    type: StreamEventType
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": self.data}


@dataclass(frozen=True)
class IndexStats:
    index_name: str
    record_count: int = 0
    size_bytes: int = 0


@dataclass(frozen=True)
class FailedRecord:
    """A record the index rejected, with the backend's reason."""

    record: IndexedRecord
    reason: str
    status: int | None = None


@dataclass(frozen=True)
class BulkInsertResult:
    inserted_count: int
    error: PartialInsertError | None = None

    @property
    def failed(self) -> list[FailedRecord]:
        return self.error.failed if self.error else []


def make_record_id(document_id: str, chunk_index: int) -> str:
    """Deterministic record id, so re-ingesting a document overwrites its chunks."""
    return str(uuid5(NAMESPACE_URL, f"{document_id}::chunk::{chunk_index}"))
