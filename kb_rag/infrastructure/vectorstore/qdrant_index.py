"""Qdrant vector index adapter (async client).

Encapsulates qdrant-client, converts its exceptions into domain errors and
declares the score direction of the configured metric.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from importlib import import_module
from typing import Any

from kb_rag.application.ports.vector_index_port import VectorIndexPort
from kb_rag.domain.errors import IndexConfigError, SearchError, VectorStoreError
from kb_rag.domain.models import BulkInsertResult, IndexedRecord, IndexStats, SearchHit
from kb_rag.domain.types import ScoreKind, Vector

logger = logging.getLogger(__name__)

# Qdrant returns the raw distance for euclid (lower is better) and a
# similarity for cosine/dot (higher is better).
_SCORE_KINDS = {
    "euclid": ScoreKind.DISTANCE,
    "cosine": ScoreKind.SIMILARITY,
    "dot": ScoreKind.SIMILARITY,
}


@dataclass
class QdrantConfig:
    """Configuration for Qdrant client connection."""

    url: str
    api_key: str | None = None
    prefer_grpc: bool = False
    timeout_s: int = 30
    metric: str = "euclid"  # "euclid" | "cosine" | "dot"


class QdrantVectorIndex(VectorIndexPort):
    def __init__(self, cfg: QdrantConfig, client: Any | None = None) -> None:
        metric = cfg.metric.lower()
        if metric not in _SCORE_KINDS:
            raise IndexConfigError(f"unsupported qdrant metric {cfg.metric!r}")
        self._cfg = cfg
        self._metric = metric
        self.score_kind = _SCORE_KINDS[metric]
        self._dimensions: dict[str, int] = {}
        self._client = client if client is not None else self._init_client(cfg)

    def _init_client(self, cfg: QdrantConfig) -> Any:
        try:
            qdrant_client = import_module("qdrant_client")
            return qdrant_client.AsyncQdrantClient(
                url=cfg.url,
                api_key=cfg.api_key or None,
                timeout=cfg.timeout_s,
                prefer_grpc=cfg.prefer_grpc,
            )
        except Exception as ex:
            raise VectorStoreError(f"Qdrant init failed: {ex}") from ex

    async def _existing_dimension(self, name: str) -> int | None:
        if not await self._client.collection_exists(name):
            return None
        info = await self._client.get_collection(name)
        return int(info.config.params.vectors.size)

    async def _expected_dimension(
        self, name: str, error_cls: type[VectorStoreError] = VectorStoreError
    ) -> int:
        if name not in self._dimensions:
            try:
                dim = await self._existing_dimension(name)
            except Exception as ex:
                raise error_cls(f"qdrant read collection {name}: {ex}") from ex
            if dim is None:
                raise error_cls(f"collection {name!r} does not exist")
            self._dimensions[name] = dim
        return self._dimensions[name]

    def _check_existing(self, name: str, existing: int, dimension: int) -> None:
        if existing != dimension:
            raise IndexConfigError(
                f"collection {name!r} exists with dimension {existing}, expected {dimension}"
            )
        self._dimensions[name] = existing

    async def create_index_if_absent(self, name: str, dimension: int) -> bool:
        if dimension <= 0:
            raise IndexConfigError(f"dimension must be > 0, got {dimension}")
        try:
            existing = await self._existing_dimension(name)
        except Exception as ex:
            raise VectorStoreError(f"qdrant read collection {name}: {ex}") from ex
        if existing is not None:
            self._check_existing(name, existing, dimension)
            return False

        models = import_module("qdrant_client.models")
        distance = {
            "cosine": models.Distance.COSINE,
            "euclid": models.Distance.EUCLID,
            "dot": models.Distance.DOT,
        }[self._metric]
        try:
            await self._client.create_collection(
                collection_name=name,
                vectors_config=models.VectorParams(size=dimension, distance=distance),
            )
        except Exception as ex:
            # Lost a creation race: adopt the winner's schema or fail on mismatch.
            try:
                existing = await self._existing_dimension(name)
            except Exception:
                existing = None
            if existing is None:
                raise VectorStoreError(f"qdrant create collection {name}: {ex}") from ex
            self._check_existing(name, existing, dimension)
            return False
        self._dimensions[name] = dimension
        logger.info("created qdrant collection %s (dimension=%d)", name, dimension)
        return True

    async def bulk_insert(self, name: str, records: Sequence[IndexedRecord]) -> BulkInsertResult:
        if not records:
            return BulkInsertResult(inserted_count=0)
        dim = await self._expected_dimension(name)
        for r in records:
            if len(r.embedding) != dim:
                raise IndexConfigError(
                    f"record {r.record_id} has dimension {len(r.embedding)}, collection "
                    f"{name!r} expects {dim}"
                )
        models = import_module("qdrant_client.models")
        points = [
            models.PointStruct(
                id=r.record_id,
                vector=list(r.embedding),
                payload={
                    "text": r.text,
                    "metadata": dict(r.metadata),
                    "timestamp": r.timestamp.isoformat(),
                },
            )
            for r in records
        ]
        try:
            # Qdrant applies a batch atomically; there are no per-point rejections.
            await self._client.upsert(collection_name=name, points=points, wait=True)
        except Exception as ex:
            raise VectorStoreError(f"qdrant upsert into {name}: {ex}") from ex
        return BulkInsertResult(inserted_count=len(records))

    async def knn_search(self, name: str, query_vector: Vector, k: int) -> list[SearchHit]:
        if k <= 0:
            return []
        dim = await self._expected_dimension(name, SearchError)
        if len(query_vector) != dim:
            raise IndexConfigError(
                f"query vector has dimension {len(query_vector)}, collection {name!r} "
                f"expects {dim}"
            )
        try:
            resp = await self._client.query_points(
                collection_name=name,
                query=list(query_vector),
                limit=k,
                with_payload=True,
                with_vectors=False,
            )
        except Exception as ex:
            raise SearchError(f"qdrant search in {name}: {ex}") from ex
        hits: list[SearchHit] = []
        for p in resp.points:
            payload = p.payload or {}
            hits.append(
                SearchHit(
                    text=payload.get("text", ""),
                    metadata=payload.get("metadata") or {},
                    raw_score=float(p.score),
                )
            )
        return hits

    async def delete_all(self, name: str) -> None:
        self._dimensions.pop(name, None)
        try:
            if not await self._client.collection_exists(name):
                return
            await self._client.delete_collection(collection_name=name)
        except Exception as ex:
            raise VectorStoreError(f"qdrant delete collection {name}: {ex}") from ex
        logger.info("deleted qdrant collection %s", name)

    async def stats(self, name: str) -> IndexStats:
        try:
            if not await self._client.collection_exists(name):
                return IndexStats(index_name=name)
            info = await self._client.get_collection(name)
        except Exception as ex:
            raise VectorStoreError(f"qdrant stats for {name}: {ex}") from ex
        return IndexStats(index_name=name, record_count=int(info.points_count or 0))

    async def refresh(self, name: str) -> None:
        # Writes use wait=True and are searchable on return.
        return None

    async def aclose(self) -> None:
        await self._client.close()
