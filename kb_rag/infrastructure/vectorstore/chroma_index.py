from __future__ import annotations

import asyncio
import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from kb_rag.application.ports.vector_index_port import VectorIndexPort
from kb_rag.domain.errors import IndexConfigError, SearchError, VectorStoreError
from kb_rag.domain.models import BulkInsertResult, IndexedRecord, IndexStats, SearchHit
from kb_rag.domain.types import ScoreKind, Vector

try:  # pragma: no cover - exercised via tests with monkeypatch
    import chromadb
except Exception:  # noqa: BLE001
    chromadb = None

_DIMENSION_KEY = "dimension"
_TIMESTAMP_KEY = "_indexed_at"
_JSON_KEYS = "_json_keys"


def _sanitize(metadata: Mapping[str, Any]) -> dict[str, Any]:
    """Chroma accepts only scalar metadata: drop None, JSON-encode the rest.

    Encoded keys are listed under `_json_keys` so `_restore` can decode them.
    """
    out: dict[str, Any] = {}
    encoded: list[str] = []
    for k, v in metadata.items():
        if v is None:
            continue
        if isinstance(v, (str, int, float, bool)):
            out[k] = v
        else:
            out[k] = json.dumps(v, default=str)
            encoded.append(k)
    if encoded:
        out[_JSON_KEYS] = ",".join(encoded)
    return out


def _restore(metadata: Mapping[str, Any] | None) -> dict[str, Any]:
    meta = dict(metadata or {})
    meta.pop(_TIMESTAMP_KEY, None)
    for k in filter(None, str(meta.pop(_JSON_KEYS, "")).split(",")):
        if isinstance(meta.get(k), str):
            meta[k] = json.loads(meta[k])
    return meta


@dataclass
class ChromaConfig:
    host: str = "localhost"
    port: int = 8000


class ChromaVectorIndex(VectorIndexPort):
    """Chroma server index (l2 space). Chroma returns distances, lower is better.

    The client is synchronous; every call is off-loaded with asyncio.to_thread.
    """

    score_kind = ScoreKind.DISTANCE

    def __init__(self, cfg: ChromaConfig, client: Any | None = None) -> None:
        if client is None:
            if chromadb is None:
                raise VectorStoreError("chromadb not installed.")
            try:
                client = chromadb.HttpClient(host=cfg.host, port=cfg.port)
            except Exception as ex:  # noqa: BLE001
                raise VectorStoreError(
                    f"Failed to connect to Chroma at {cfg.host}:{cfg.port}: {ex}"
                ) from ex
        self._client = client
        self._collections: dict[str, Any] = {}

    def _names(self) -> list[str]:
        return [c if isinstance(c, str) else c.name for c in self._client.list_collections()]

    def _lookup(self, name: str) -> Any | None:
        if name in self._collections:
            return self._collections[name]
        if name not in self._names():
            return None
        coll = self._client.get_collection(name=name)
        self._collections[name] = coll
        return coll

    @staticmethod
    def _dimension_of(name: str, coll: Any) -> int:
        try:
            return int((coll.metadata or {})[_DIMENSION_KEY])
        except Exception as ex:  # noqa: BLE001
            raise IndexConfigError(f"collection {name!r} carries no dimension metadata") from ex

    def _require(self, name: str, error_cls: type[VectorStoreError]) -> tuple[Any, int]:
        try:
            coll = self._lookup(name)
        except Exception as ex:  # noqa: BLE001
            raise error_cls(f"chroma lookup {name}: {ex}") from ex
        if coll is None:
            raise error_cls(f"collection {name!r} does not exist")
        return coll, self._dimension_of(name, coll)

    def _create_sync(self, name: str, dimension: int) -> bool:
        coll = self._lookup(name)
        created = False
        if coll is None:
            try:
                coll = self._client.create_collection(
                    name=name, metadata={"hnsw:space": "l2", _DIMENSION_KEY: dimension}
                )
                created = True
            except Exception as ex:  # noqa: BLE001
                coll = self._lookup(name)
                if coll is None:
                    raise VectorStoreError(f"chroma create collection {name}: {ex}") from ex
            self._collections[name] = coll
        existing = self._dimension_of(name, coll)
        if existing != dimension:
            raise IndexConfigError(
                f"collection {name!r} exists with dimension {existing}, expected {dimension}"
            )
        return created

    async def create_index_if_absent(self, name: str, dimension: int) -> bool:
        if dimension <= 0:
            raise IndexConfigError(f"dimension must be > 0, got {dimension}")
        try:
            return await asyncio.to_thread(self._create_sync, name, dimension)
        except (IndexConfigError, VectorStoreError):
            raise
        except Exception as ex:  # noqa: BLE001
            raise VectorStoreError(f"chroma create collection {name}: {ex}") from ex

    def _insert_sync(self, name: str, records: Sequence[IndexedRecord]) -> BulkInsertResult:
        coll, dim = self._require(name, VectorStoreError)
        for r in records:
            if len(r.embedding) != dim:
                raise IndexConfigError(
                    f"record {r.record_id} has dimension {len(r.embedding)}, collection "
                    f"{name!r} expects {dim}"
                )
        try:
            coll.upsert(
                ids=[r.record_id for r in records],
                embeddings=[list(r.embedding) for r in records],
                metadatas=[
                    {**_sanitize(r.metadata), _TIMESTAMP_KEY: r.timestamp.isoformat()}
                    for r in records
                ],
                documents=[r.text for r in records],
            )
        except Exception as ex:  # noqa: BLE001
            raise VectorStoreError(f"Upsert failed: {ex}") from ex
        return BulkInsertResult(inserted_count=len(records))

    async def bulk_insert(self, name: str, records: Sequence[IndexedRecord]) -> BulkInsertResult:
        if not records:
            return BulkInsertResult(inserted_count=0)
        return await asyncio.to_thread(self._insert_sync, name, records)

    def _search_sync(self, name: str, query_vector: Vector, k: int) -> list[SearchHit]:
        coll, dim = self._require(name, SearchError)
        if len(query_vector) != dim:
            raise IndexConfigError(
                f"query vector has dimension {len(query_vector)}, collection {name!r} "
                f"expects {dim}"
            )
        try:
            result = coll.query(
                query_embeddings=[list(query_vector)],
                n_results=k,
                include=["documents", "metadatas", "distances"],
            )
        except Exception as ex:  # noqa: BLE001
            raise SearchError(f"Search failed: {ex}") from ex
        docs = (result.get("documents") or [[]])[0]
        metas = (result.get("metadatas") or [[]])[0]
        dists = (result.get("distances") or [[]])[0]
        hits: list[SearchHit] = []
        for doc, meta, dist in zip(docs, metas, dists, strict=False):
            hits.append(SearchHit(text=doc or "", metadata=_restore(meta), raw_score=float(dist)))
        return hits

    async def knn_search(self, name: str, query_vector: Vector, k: int) -> list[SearchHit]:
        if k <= 0:
            return []
        return await asyncio.to_thread(self._search_sync, name, query_vector, k)

    def _delete_sync(self, name: str) -> None:
        self._collections.pop(name, None)
        if name in self._names():
            self._client.delete_collection(name=name)

    async def delete_all(self, name: str) -> None:
        try:
            await asyncio.to_thread(self._delete_sync, name)
        except Exception as ex:  # noqa: BLE001
            raise VectorStoreError(f"chroma delete collection {name}: {ex}") from ex

    def _stats_sync(self, name: str) -> IndexStats:
        coll = self._lookup(name)
        if coll is None:
            return IndexStats(index_name=name)
        return IndexStats(index_name=name, record_count=int(coll.count()))

    async def stats(self, name: str) -> IndexStats:
        try:
            return await asyncio.to_thread(self._stats_sync, name)
        except Exception as ex:  # noqa: BLE001
            raise VectorStoreError(f"chroma stats for {name}: {ex}") from ex

    async def refresh(self, name: str) -> None:
        return None

    async def aclose(self) -> None:
        self._collections.clear()
