"""HTTP API through FastAPI's TestClient with an in-memory service."""

import json
from datetime import UTC, datetime

import pytest
from fastapi.testclient import TestClient

from kb_rag.application.ports.llm_port import LLMResponse
from kb_rag.application.use_cases.provider_registry import ChatProviderRegistry
from kb_rag.config.composition import build_service
from kb_rag.config.settings import AppSettings
from kb_rag.domain.errors import GenerationError, RequestTimeoutError
from kb_rag.interface.http.api import create_app, status_for


class FixedClock:
    def now(self):
        return datetime(2024, 5, 1, tzinfo=UTC)


class FakeEmbedding:
    dimension = 2

    async def embed(self, text):
        return (1.0, 0.0)

    async def embed_batch(self, texts):
        return [(1.0, 0.0) for _ in texts]


class FakeChat:
    def __init__(self, name, error=None):
        self.name = name
        self.error = error

    async def chat(self, messages, temperature=0.7, max_tokens=1000):
        if self.error:
            raise self.error
        return LLMResponse(text=f"answer from {self.name}")

    async def stream_chat(self, messages, temperature=0.7, max_tokens=1000):
        yield "Hello"
        yield " there"

    async def aclose(self):
        return None


def _app(default_k=5, **chats):
    chats = chats or {"openai": FakeChat("openai")}
    settings = AppSettings(
        vector_backend="memory",
        index_name="kb",
        vector_dimension=2,
        embedding_provider="openai",
        llm_providers=tuple(chats),
        llm_default_provider=next(iter(chats)),
        log_format="text",
        default_k=default_k,
    )

    def factory():
        return build_service(
            settings,
            embedding=FakeEmbedding(),
            providers=ChatProviderRegistry(chats, next(iter(chats))),
            clock=FixedClock(),
        )

    return create_app(factory)


@pytest.fixture
def client():
    with TestClient(_app()) as c:
        c.post(
            "/v1/ingest",
            json={"documents": [{"content": "Use the batch span processor.", "source": "sdk.md"}]},
        )
        yield c


def _sse_events(body: str) -> list[dict]:
    lines = [line for line in body.splitlines() if line.startswith("data: ")]
    return [json.loads(line[len("data: ") :]) for line in lines]


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy", "service": "kb-rag"}


def test_ingest_reports_counts():
    with TestClient(_app()) as c:
        resp = c.post(
            "/v1/ingest",
            json={
                "documents": [{"content": "a" * 1200, "title": "Long", "metadata": {"lang": "en"}}]
            },
        )
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert (body["documents_ingested"], body["chunks_created"], body["chunks_indexed"]) == (1, 3, 3)
    assert body["failed"] == []


def test_chat(client):
    resp = client.post("/v1/chat", json={"message": "How do I batch spans?"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["response"] == "answer from openai"
    assert body["sources"] == ["sdk.md"]
    assert body["relevance_scores"][0]["source"] == "sdk.md"
    assert body["metadata"]["provider"] == "openai"
    assert body["metadata"]["documents_used"] == 1


def test_chat_stream_event_sequence(client):
    resp = client.post("/v1/chat/stream", json={"message": "batch?"})
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/event-stream")
    events = _sse_events(resp.text)
    assert [e["type"] for e in events] == ["metadata", "content", "content", "done"]
    assert events[0]["data"]["sources"] == ["sdk.md"]
    assert "".join(e["data"]["content"] for e in events[1:3]) == "Hello there"


def test_unknown_provider_is_400(client):
    resp = client.post("/v1/chat", json={"message": "q", "provider": "claude"})
    assert resp.status_code == 400
    assert resp.json()["error"] == "ConfigError"
    assert client.post("/v1/chat/stream", json={"message": "q", "provider": "x"}).status_code == 400


def test_request_validation_is_400(client):
    resp = client.post("/v1/chat", json={"message": ""})
    assert resp.status_code == 400
    assert resp.json()["success"] is False
    assert client.post("/v1/ingest", json={"documents": []}).status_code == 400


@pytest.mark.parametrize(
    "error,status",
    [
        (GenerationError("upstream down", reason="unavailable", retryable=True), 502),
        (RequestTimeoutError("generation", 120), 504),
    ],
)
def test_provider_failures_map_to_gateway_errors(error, status):
    with TestClient(_app(openai=FakeChat("openai", error=error))) as c:
        resp = c.post("/v1/chat", json={"message": "q"})
    assert resp.status_code == status
    assert resp.json()["message"] == str(error)


def test_context_and_providers(client):
    body = client.get("/v1/chat/context", params={"question": "batch?", "max_docs": 3}).json()
    assert body["document_count"] == 1
    assert body["sources"] == ["sdk.md"]
    assert body["context"].startswith("Source: sdk.md (Relevance: 0.000)")

    providers = client.get("/v1/chat/providers").json()
    assert providers == {"success": True, "providers": ["openai"], "default": "openai"}

    probe = client.post("/v1/chat/test-provider", json={}).json()
    assert probe["success"] is True
    assert probe["response"] == "answer from openai"


def test_admin_endpoints(client):
    info = client.get("/v1/admin/index").json()
    assert (info["index_name"], info["record_count"]) == ("kb", 1)

    results = client.post("/v1/admin/search", json={"query": "spans", "max_results": 2}).json()
    assert results["results"][0]["content"] == "Use the batch span processor."

    assert client.delete("/v1/admin/index").json()["success"] is True
    assert client.get("/v1/admin/index").json()["record_count"] == 0


def test_status_mapping():
    from kb_rag.domain.errors import ConfigError, SearchError, ValidationError

    assert status_for(ValidationError("x")) == 400
    assert status_for(ConfigError("x")) == 400
    assert status_for(RequestTimeoutError("x")) == 504
    assert status_for(SearchError("x")) == 502


def _docs(*texts):
    return {"documents": [{"content": t, "source": f"doc{i}.md"} for i, t in enumerate(texts)]}


def test_configured_default_k_applies_when_request_omits_it():
    with TestClient(_app(default_k=1)) as c:
        c.post("/v1/ingest", json=_docs("Spans.", "Metrics.", "Logs."))

        chat = c.post("/v1/chat", json={"message": "q"}).json()
        assert chat["metadata"]["documents_used"] == 1

        ctx = c.get("/v1/chat/context", params={"question": "q"}).json()
        assert ctx["document_count"] == 1

        found = c.post("/v1/admin/search", json={"query": "q"}).json()
        assert len(found["results"]) == 1

        explicit = c.post("/v1/chat", json={"message": "q", "max_context_docs": 3}).json()
        assert explicit["metadata"]["documents_used"] == 3


def test_ingest_with_reset_replaces_previous_records():
    with TestClient(_app()) as c:
        c.post("/v1/ingest", json=_docs("Old page one.", "Old page two."))
        assert c.get("/v1/admin/index").json()["record_count"] == 2

        resp = c.post("/v1/ingest", params={"reset": "true"}, json=_docs("New page."))
        assert resp.status_code == 200
        assert resp.json()["chunks_indexed"] == 1

        assert c.get("/v1/admin/index").json()["record_count"] == 1
        results = c.post("/v1/admin/search", json={"query": "page"}).json()["results"]
        assert [r["content"] for r in results] == ["New page."]


def test_ingest_after_delete_recreates_index(client):
    assert client.delete("/v1/admin/index").json()["message"] == "Index deleted"
    resp = client.post("/v1/ingest", json=_docs("Fresh start."))
    assert resp.status_code == 200
    assert client.get("/v1/admin/index").json()["record_count"] == 1
