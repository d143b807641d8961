"""OpenSearch k-NN index adapter over httpx.

Speaks the REST API directly: knn_vector mapping (HNSW, l2), NDJSON bulk
with per-item error accounting, `knn` queries, `_stats` and `_refresh`.
All transport and HTTP errors are translated into domain errors.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from kb_rag.application.ports.vector_index_port import VectorIndexPort
from kb_rag.domain.errors import (
    IndexConfigError,
    PartialInsertError,
    RequestTimeoutError,
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

logger = logging.getLogger(__name__)

TEXT_FIELD = "content"
VECTOR_FIELD = "embedding"
METADATA_FIELD = "metadata"
TIMESTAMP_FIELD = "timestamp"


@dataclass
class OpenSearchConfig:
    """Connection and HNSW settings for the OpenSearch adapter."""

    endpoint: str
    username: str | None = None
    password: str | None = None
    verify_tls: bool = True
    timeout_s: float = 30.0
    ef_search: int = 100
    ef_construction: int = 128
    m: int = 24


def index_body(dimension: int, cfg: OpenSearchConfig) -> dict[str, Any]:
    return {
        "settings": {
            "index": {
                "knn": True,
                "knn.algo_param.ef_search": cfg.ef_search,
            }
        },
        "mappings": {
            "properties": {
                TEXT_FIELD: {"type": "text"},
                VECTOR_FIELD: {
                    "type": "knn_vector",
                    "dimension": dimension,
                    "method": {
                        "name": "hnsw",
                        "space_type": "l2",
                        "engine": "nmslib",
                        "parameters": {"ef_construction": cfg.ef_construction, "m": cfg.m},
                    },
                },
                METADATA_FIELD: {"type": "object", "enabled": True},
                TIMESTAMP_FIELD: {"type": "date"},
            }
        },
    }


class OpenSearchVectorIndex(VectorIndexPort):
    """k-NN index on OpenSearch.

    OpenSearch reports l2 hits as `1 / (1 + d²)`, higher is better, so the
    raw score is a SIMILARITY.
    """

    score_kind = ScoreKind.SIMILARITY

    def __init__(self, cfg: OpenSearchConfig, client: httpx.AsyncClient | None = None) -> None:
        self._cfg = cfg
        self._dimensions: dict[str, int] = {}
        self._owns_client = client is None
        if client is None:
            auth = (cfg.username, cfg.password or "") if cfg.username else None
            client = httpx.AsyncClient(
                base_url=cfg.endpoint.rstrip("/"),
                auth=auth,
                verify=cfg.verify_tls,
                timeout=cfg.timeout_s,
            )
        self._client = client

    async def _request(
        self,
        method: str,
        path: str,
        op: str,
        error_cls: type[VectorStoreError] = VectorStoreError,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as ex:
            raise RequestTimeoutError(f"opensearch {op}", self._cfg.timeout_s) from ex
        except httpx.HTTPError as ex:
            raise error_cls(f"opensearch {op} failed: {ex}") from ex

    # ---------- Schema ----------

    async def _read_dimension(self, name: str, error_cls: type[VectorStoreError]) -> int | None:
        resp = await self._request("GET", f"/{name}/_mapping", "read mapping", error_cls)
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise error_cls(f"opensearch read mapping {name}: {resp.status_code} {resp.text}")
        try:
            body = resp.json()
            mapping = next(iter(body.values()))["mappings"]["properties"][VECTOR_FIELD]
            return int(mapping["dimension"])
        except Exception as ex:  # noqa: BLE001
            raise IndexConfigError(f"index {name!r} has no usable {VECTOR_FIELD} mapping") from ex

    async def _expected_dimension(
        self, name: str, error_cls: type[VectorStoreError] = VectorStoreError
    ) -> int:
        if name not in self._dimensions:
            dim = await self._read_dimension(name, error_cls)
            if dim is None:
                raise error_cls(f"index {name!r} does not exist")
            self._dimensions[name] = dim
        return self._dimensions[name]

    async def _adopt_existing(self, name: str, dimension: int) -> None:
        existing = await self._read_dimension(name, VectorStoreError)
        if existing is None:
            raise VectorStoreError(f"index {name!r} vanished while being created")
        if existing != dimension:
            raise IndexConfigError(
                f"index {name!r} exists with dimension {existing}, expected {dimension}"
            )
        self._dimensions[name] = existing

    async def create_index_if_absent(self, name: str, dimension: int) -> bool:
        if dimension <= 0:
            raise IndexConfigError(f"dimension must be > 0, got {dimension}")
        head = await self._request("HEAD", f"/{name}", "index exists")
        if head.status_code == 200:
            await self._adopt_existing(name, dimension)
            return False

        resp = await self._request(
            "PUT", f"/{name}", "create index", json=index_body(dimension, self._cfg)
        )
        if resp.status_code < 300:
            self._dimensions[name] = dimension
            logger.info("created opensearch index %s (dimension=%d)", name, dimension)
            return True
        if resp.status_code == 400 and "resource_already_exists_exception" in resp.text:
            # Lost a creation race; the winner's schema decides.
            await self._adopt_existing(name, dimension)
            return False
        raise VectorStoreError(f"opensearch create index {name}: {resp.status_code} {resp.text}")

    # ---------- Writes ----------

    async def bulk_insert(self, name: str, records: Sequence[IndexedRecord]) -> BulkInsertResult:
        if not records:
            return BulkInsertResult(inserted_count=0)
        dim = await self._expected_dimension(name)
        for r in records:
            if len(r.embedding) != dim:
                raise IndexConfigError(
                    f"record {r.record_id} has dimension {len(r.embedding)}, index {name!r} "
                    f"expects {dim}"
                )

        lines: list[str] = []
        for r in records:
            lines.append(json.dumps({"index": {"_index": name, "_id": r.record_id}}))
            lines.append(
                json.dumps(
                    {
                        TEXT_FIELD: r.text,
                        VECTOR_FIELD: list(r.embedding),
                        METADATA_FIELD: dict(r.metadata),
                        TIMESTAMP_FIELD: r.timestamp.isoformat(),
                    },
                    default=str,
                )
            )
        resp = await self._request(
            "POST",
            "/_bulk",
            "bulk insert",
            content="\n".join(lines) + "\n",
            headers={"Content-Type": "application/x-ndjson"},
        )
        if resp.status_code >= 400:
            raise VectorStoreError(f"opensearch bulk insert: {resp.status_code} {resp.text}")

        body = resp.json()
        failed: list[FailedRecord] = []
        if body.get("errors"):
            for record, item in zip(records, body.get("items", []), strict=False):
                action = next(iter(item.values()), {})
                status = action.get("status")
                error = action.get("error")
                if error or (status is not None and status >= 300):
                    reason = error.get("reason") if isinstance(error, dict) else str(error)
                    failed.append(FailedRecord(record=record, reason=reason or "", status=status))

        inserted = len(records) - len(failed)
        if failed:
            logger.warning(
                "opensearch bulk into %s: %d of %d record(s) rejected",
                name,
                len(failed),
                len(records),
            )
            return BulkInsertResult(inserted, PartialInsertError(inserted, failed))
        return BulkInsertResult(inserted)

    async def delete_all(self, name: str) -> None:
        self._dimensions.pop(name, None)
        resp = await self._request("DELETE", f"/{name}", "delete index")
        if resp.status_code == 404:
            return
        if resp.status_code >= 400:
            raise VectorStoreError(
                f"opensearch delete index {name}: {resp.status_code} {resp.text}"
            )
        logger.info("deleted opensearch index %s", name)

    async def refresh(self, name: str) -> None:
        resp = await self._request("POST", f"/{name}/_refresh", "refresh")
        if resp.status_code >= 400 and resp.status_code != 404:
            raise VectorStoreError(f"opensearch refresh {name}: {resp.status_code} {resp.text}")

    # ---------- Reads ----------

    async def knn_search(self, name: str, query_vector: Vector, k: int) -> list[SearchHit]:
        if k <= 0:
            return []
        dim = await self._expected_dimension(name, SearchError)
        if len(query_vector) != dim:
            raise IndexConfigError(
                f"query vector has dimension {len(query_vector)}, index {name!r} expects {dim}"
            )
        query = {
            "size": k,
            "query": {"knn": {VECTOR_FIELD: {"vector": list(query_vector), "k": k}}},
            "_source": {"excludes": [VECTOR_FIELD]},
        }
        resp = await self._request(
            "POST", f"/{name}/_search", "knn search", SearchError, json=query
        )
        if resp.status_code == 404:
            raise SearchError(f"index {name!r} does not exist")
        if resp.status_code >= 400:
            raise SearchError(f"opensearch knn search {name}: {resp.status_code} {resp.text}")
        try:
            hits = resp.json()["hits"]["hits"]
            return [
                SearchHit(
                    text=h["_source"].get(TEXT_FIELD, ""),
                    metadata=h["_source"].get(METADATA_FIELD) or {},
                    raw_score=float(h.get("_score") or 0.0),
                )
                for h in hits[:k]
            ]
        except Exception as ex:  # noqa: BLE001
            raise SearchError(f"malformed opensearch search response: {ex}") from ex

    async def stats(self, name: str) -> IndexStats:
        resp = await self._request("GET", f"/{name}/_stats", "stats")
        if resp.status_code == 404:
            return IndexStats(index_name=name)
        if resp.status_code >= 400:
            raise VectorStoreError(f"opensearch stats {name}: {resp.status_code} {resp.text}")
        primaries = resp.json().get("_all", {}).get("primaries", {})
        return IndexStats(
            index_name=name,
            record_count=int(primaries.get("docs", {}).get("count", 0)),
            size_bytes=int(primaries.get("store", {}).get("size_in_bytes", 0)),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
