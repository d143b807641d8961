"""OpenSearch adapter against httpx.MockTransport (no running cluster)."""

import json
from datetime import UTC, datetime

import httpx
import pytest

from kb_rag.domain.errors import (
    IndexConfigError,
    RequestTimeoutError,
    SearchError,
    VectorStoreError,
)
from kb_rag.domain.models import IndexedRecord
from kb_rag.domain.types import ScoreKind
from kb_rag.infrastructure.vectorstore.opensearch_index import (
    OpenSearchConfig,
    OpenSearchVectorIndex,
)

NOW = datetime(2024, 5, 1, tzinfo=UTC)


def _mapping(dim):
    vector = {"type": "knn_vector", "dimension": dim}
    return {"kb": {"mappings": {"properties": {"embedding": vector}}}}


def _index(handler) -> OpenSearchVectorIndex:
    client = httpx.AsyncClient(base_url="http://os:9200", transport=httpx.MockTransport(handler))
    return OpenSearchVectorIndex(OpenSearchConfig(endpoint="http://os:9200"), client=client)


def _record(rid, dim=3):
    return IndexedRecord(rid, tuple([0.5] * dim), f"text {rid}", {"source": f"{rid}.md"}, NOW)


@pytest.mark.asyncio
async def test_create_index_sends_knn_mapping():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "HEAD":
            return httpx.Response(404)
        if request.method == "PUT" and request.url.path == "/kb":
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"acknowledged": True})
        return httpx.Response(500)

    index = _index(handler)
    assert await index.create_index_if_absent("kb", 3) is True
    vector = seen["body"]["mappings"]["properties"]["embedding"]
    assert vector["type"] == "knn_vector"
    assert vector["dimension"] == 3
    assert vector["method"]["name"] == "hnsw"
    assert vector["method"]["space_type"] == "l2"
    assert seen["body"]["settings"]["index"]["knn"] is True
    assert index.score_kind is ScoreKind.SIMILARITY


@pytest.mark.asyncio
async def test_existing_index_is_adopted_or_rejected():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "HEAD":
            return httpx.Response(200)
        if request.url.path == "/kb/_mapping":
            return httpx.Response(200, json=_mapping(3))
        return httpx.Response(500)

    assert await _index(handler).create_index_if_absent("kb", 3) is False
    with pytest.raises(IndexConfigError):
        await _index(handler).create_index_if_absent("kb", 1536)


@pytest.mark.asyncio
async def test_lost_creation_race_adopts_winner():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "HEAD":
            return httpx.Response(404)
        if request.method == "PUT":
            return httpx.Response(
                400, json={"error": {"type": "resource_already_exists_exception"}}
            )
        if request.url.path == "/kb/_mapping":
            return httpx.Response(200, json=_mapping(3))
        return httpx.Response(500)

    assert await _index(handler).create_index_if_absent("kb", 3) is False


@pytest.mark.asyncio
async def test_bulk_insert_reports_rejected_items():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/kb/_mapping":
            return httpx.Response(200, json=_mapping(3))
        if request.url.path == "/_bulk":
            seen["lines"] = request.content.decode().splitlines()
            seen["content_type"] = request.headers["content-type"]
            return httpx.Response(
                200,
                json={
                    "errors": True,
                    "items": [
                        {"index": {"status": 201}},
                        {
                            "index": {
                                "status": 400,
                                "error": {
                                    "type": "mapper_parsing_exception",
                                    "reason": "failed to parse field [metadata]",
                                },
                            }
                        },
                    ],
                },
            )
        return httpx.Response(500)

    result = await _index(handler).bulk_insert("kb", [_record("a"), _record("b")])

    assert result.inserted_count == 1
    assert [f.record.record_id for f in result.failed] == ["b"]
    assert result.failed[0].reason == "failed to parse field [metadata]"
    assert result.failed[0].status == 400
    assert seen["content_type"] == "application/x-ndjson"
    assert len(seen["lines"]) == 4
    assert json.loads(seen["lines"][0]) == {"index": {"_index": "kb", "_id": "a"}}
    doc = json.loads(seen["lines"][1])
    assert doc["content"] == "text a"
    assert doc["metadata"] == {"source": "a.md"}
    assert doc["timestamp"] == NOW.isoformat()


@pytest.mark.asyncio
async def test_bulk_insert_checks_dimension_before_sending():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/kb/_mapping":
            return httpx.Response(200, json=_mapping(3))
        raise AssertionError("bulk must not be sent")

    with pytest.raises(IndexConfigError):
        await _index(handler).bulk_insert("kb", [_record("a", dim=4)])


@pytest.mark.asyncio
async def test_knn_search_returns_raw_scores():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/kb/_mapping":
            return httpx.Response(200, json=_mapping(3))
        if request.url.path == "/kb/_search":
            seen["query"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "hits": {
                        "hits": [
                            {
                                "_score": 0.9,
                                "_source": {"content": "a", "metadata": {"source": "a.md"}},
                            },
                            {"_score": 0.7, "_source": {"content": "b", "metadata": {}}},
                        ]
                    }
                },
            )
        return httpx.Response(500)

    hits = await _index(handler).knn_search("kb", (0.1, 0.2, 0.3), 2)

    assert [(h.text, h.raw_score) for h in hits] == [("a", 0.9), ("b", 0.7)]
    assert hits[0].metadata == {"source": "a.md"}
    assert seen["query"]["size"] == 2
    assert seen["query"]["query"]["knn"]["embedding"] == {"vector": [0.1, 0.2, 0.3], "k": 2}


@pytest.mark.asyncio
async def test_search_on_missing_index_is_search_error():
    index = _index(lambda request: httpx.Response(404))
    with pytest.raises(SearchError):
        await index.knn_search("kb", (0.1, 0.2, 0.3), 2)


@pytest.mark.asyncio
async def test_stats_and_missing_index():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/kb/_stats":
            return httpx.Response(
                200,
                json={
                    "_all": {"primaries": {"docs": {"count": 42}, "store": {"size_in_bytes": 2048}}}
                },
            )
        return httpx.Response(404)

    index = _index(handler)
    stats = await index.stats("kb")
    assert (stats.record_count, stats.size_bytes) == (42, 2048)
    missing = await index.stats("other")
    assert (missing.record_count, missing.size_bytes) == (0, 0)
    await index.delete_all("other")


@pytest.mark.asyncio
async def test_delete_all_drops_the_index_so_it_can_be_recreated():
    state = {"dim": None, "calls": []}

    def handler(request: httpx.Request) -> httpx.Response:
        state["calls"].append((request.method, request.url.path))
        exists = state["dim"] is not None
        if request.method == "HEAD":
            return httpx.Response(200 if exists else 404)
        if request.method == "GET" and request.url.path == "/kb/_mapping":
            if not exists:
                return httpx.Response(404)
            return httpx.Response(200, json=_mapping(state["dim"]))
        if request.method == "PUT":
            dim = json.loads(request.content)["mappings"]["properties"]["embedding"]["dimension"]
            state["dim"] = dim
            return httpx.Response(200, json={"acknowledged": True})
        if request.method == "DELETE":
            if not exists:
                return httpx.Response(404)
            state["dim"] = None
            return httpx.Response(200, json={"acknowledged": True})
        return httpx.Response(500)

    index = _index(handler)
    assert await index.create_index_if_absent("kb", 2) is True
    await index.delete_all("kb")
    assert ("DELETE", "/kb") in state["calls"]
    await index.delete_all("kb")
    assert await index.create_index_if_absent("kb", 3) is True
    with pytest.raises(IndexConfigError):
        await index.bulk_insert("kb", [_record("a", dim=2)])


@pytest.mark.asyncio
async def test_delete_all_server_error():
    index = _index(lambda request: httpx.Response(500, text="boom"))
    with pytest.raises(VectorStoreError):
        await index.delete_all("kb")


@pytest.mark.asyncio
async def test_transport_errors_are_translated():
    def slow(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    def down(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(RequestTimeoutError):
        await _index(slow).stats("kb")
    with pytest.raises(VectorStoreError):
        await _index(down).stats("kb")
    with pytest.raises(SearchError):
        await _index(down).knn_search("kb", (0.1,), 1)
