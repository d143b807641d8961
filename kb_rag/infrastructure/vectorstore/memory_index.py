from __future__ import annotations

import asyncio
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field

import numpy as np

from kb_rag.application.ports.vector_index_port import VectorIndexPort
from kb_rag.domain.errors import (
    IndexConfigError,
    PartialInsertError,
    SearchError,
    VectorStoreError,
)
from kb_rag.domain.models import (
    BulkInsertResult,
    FailedRecord,
    IndexedRecord,
    IndexStats,
    SearchHit,
)
from kb_rag.domain.types import ScoreKind, Vector

# Returns a rejection reason for records the "server" refuses, or None.
RejectFn = Callable[[IndexedRecord], str | None]


@dataclass
class _Index:
    dimension: int
    records: dict[str, IndexedRecord] = field(default_factory=dict)


class InMemoryVectorIndex(VectorIndexPort):
    """Exact (brute-force) Euclidean index in numpy, for tests and local runs.

    Scores mimic OpenSearch l2 scoring, `1 / (1 + d²)`, so they are
    SIMILARITY scores in (0, 1]. Ties keep insertion order.
    """

    score_kind = ScoreKind.SIMILARITY

    def __init__(self, reject: RejectFn | None = None) -> None:
        self._indices: dict[str, _Index] = {}
        self._lock = asyncio.Lock()
        self._reject = reject

    def _get(self, name: str, error_cls: type[VectorStoreError] = VectorStoreError) -> _Index:
        idx = self._indices.get(name)
        if idx is None:
            raise error_cls(f"index {name!r} does not exist")
        return idx

    async def create_index_if_absent(self, name: str, dimension: int) -> bool:
        if dimension <= 0:
            raise IndexConfigError(f"dimension must be > 0, got {dimension}")
        async with self._lock:
            existing = self._indices.get(name)
            if existing is not None:
                if existing.dimension != dimension:
                    raise IndexConfigError(
                        f"index {name!r} exists with dimension {existing.dimension}, "
                        f"expected {dimension}"
                    )
                return False
            self._indices[name] = _Index(dimension=dimension)
            return True

    async def bulk_insert(self, name: str, records: Sequence[IndexedRecord]) -> BulkInsertResult:
        idx = self._get(name)
        for r in records:
            if len(r.embedding) != idx.dimension:
                raise IndexConfigError(
                    f"record {r.record_id} has dimension {len(r.embedding)}, index {name!r} "
                    f"expects {idx.dimension}"
                )
        failed: list[FailedRecord] = []
        for r in records:
            reason = self._reject(r) if self._reject else None
            if reason is not None:
                failed.append(FailedRecord(record=r, reason=reason, status=400))
                continue
            idx.records[r.record_id] = r
        inserted = len(records) - len(failed)
        if failed:
            return BulkInsertResult(inserted, PartialInsertError(inserted, failed))
        return BulkInsertResult(inserted)

    async def knn_search(self, name: str, query_vector: Vector, k: int) -> list[SearchHit]:
        idx = self._get(name, SearchError)
        if len(query_vector) != idx.dimension:
            raise IndexConfigError(
                f"query vector has dimension {len(query_vector)}, index {name!r} "
                f"expects {idx.dimension}"
            )
        if k <= 0 or not idx.records:
            return []
        records = list(idx.records.values())
        matrix = np.asarray([r.embedding for r in records], dtype=np.float64)
        q = np.asarray(query_vector, dtype=np.float64)
        sq_dist = np.sum((matrix - q) ** 2, axis=1)
        order = np.argsort(sq_dist, kind="stable")[:k]
        return [
            SearchHit(
                text=records[i].text,
                metadata=records[i].metadata,
                raw_score=float(1.0 / (1.0 + sq_dist[i])),
            )
            for i in order
        ]

    async def delete_all(self, name: str) -> None:
        async with self._lock:
            self._indices.pop(name, None)

    async def stats(self, name: str) -> IndexStats:
        idx = self._indices.get(name)
        if idx is None:
            return IndexStats(index_name=name)
        return IndexStats(index_name=name, record_count=len(idx.records))

    async def refresh(self, name: str) -> None:
        return None

    async def aclose(self) -> None:
        return None
