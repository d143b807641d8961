from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from kb_rag.domain.models import FailedRecord


@dataclass(slots=True, frozen=True)
class IngestDocumentDTO:
    """One document as callers submit it.

    `id` is optional; without it the document id is derived from source and
    text, so re-submitting the same document overwrites its records.
    """

    text: str
    source: str | None = None
    title: str | None = None
    url: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str | None = None


@dataclass(frozen=True)
class IngestReport:
    documents_ingested: int
    chunks_created: int
    chunks_indexed: int
    failures: list[FailedRecord] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures
