"""Question answering: blocking results, streamed event order and stream failures."""

import asyncio
from datetime import UTC, datetime

import pytest

from kb_rag.application.ports.llm_port import LLMResponse
from kb_rag.application.use_cases.answer_question import (
    SYSTEM_PROMPT,
    AnswerQuestion,
    PipelineState,
    RequestLifecycle,
    build_messages,
    error_payload,
)
from kb_rag.application.use_cases.provider_registry import ChatProviderRegistry
from kb_rag.application.use_cases.retrieve_context import RetrieveContext
from kb_rag.domain.errors import ConfigError, GenerationError, RequestTimeoutError
from kb_rag.domain.models import IndexedRecord
from kb_rag.domain.services.context_assembly import NO_CONTEXT_SENTINEL
from kb_rag.infrastructure.vectorstore.memory_index import InMemoryVectorIndex

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)


class FixedClock:
    def now(self):
        return NOW


class FakeEmbedding:
    dimension = 2

    def __init__(self):
        self.calls = 0

    async def embed(self, text):
        self.calls += 1
        return (0.0, 0.0)

    async def embed_batch(self, texts):
        return [(0.0, 0.0) for _ in texts]


class FakeChat:
    def __init__(
        self, name="openai", fragments=("Hello", "", " world"), fail_after=None, delay=0.0
    ):
        self.name = name
        self.fragments = fragments
        self.fail_after = fail_after
        self.delay = delay
        self.messages = None
        self.closed = False

    async def chat(self, messages, temperature=0.7, max_tokens=1000):
        self.messages = list(messages)
        if self.delay:
            await asyncio.sleep(self.delay)
        return LLMResponse(text="The answer.")

    async def stream_chat(self, messages, temperature=0.7, max_tokens=1000):
        self.messages = list(messages)
        try:
            for i, fragment in enumerate(self.fragments):
                if self.fail_after is not None and i == self.fail_after:
                    raise GenerationError("upstream 503", reason="unavailable", retryable=True)
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield fragment
        finally:
            self.closed = True

    async def aclose(self):
        return None


async def _answerer(chat=None, records=True, generate_timeout_s=None):
    index = InMemoryVectorIndex()
    await index.create_index_if_absent("kb", 2)
    if records:
        await index.bulk_insert(
            "kb",
            [
                IndexedRecord("1", (0.0, 0.0), "Set OTEL_SERVICE_NAME.", {"source": "env.md"}, NOW),
                IndexedRecord("2", (1.0, 0.0), "Use the SDK.", {"source": "sdk.md"}, NOW),
            ],
        )
    emb = FakeEmbedding()
    chat = chat or FakeChat()
    registry = ChatProviderRegistry({"openai": chat, "vllm": FakeChat("vllm")}, default="openai")
    answerer = AnswerQuestion(
        RetrieveContext(emb, index, "kb"),
        registry,
        FixedClock(),
        generate_timeout_s=generate_timeout_s,
    )
    return answerer, chat, emb


async def _collect(events):
    return [e async for e in events]


@pytest.mark.asyncio
async def test_execute_returns_answer_with_sources():
    answerer, chat, _ = await _answerer()
    result = await answerer.execute("How do I name my service?", k=2)

    assert result.response_text == "The answer."
    assert result.provider == "openai"
    assert result.sources_used == ["env.md", "sdk.md"]
    assert [s.source for s in result.relevance_scores] == ["env.md", "sdk.md"]
    assert result.relevance_scores[0].score == pytest.approx(0.0)
    assert result.documents_used == 2
    assert result.timestamp == NOW
    assert chat.messages[0].content == SYSTEM_PROMPT
    assert "Source: env.md (Relevance: 0.000)" in chat.messages[1].content
    assert chat.messages[1].content.endswith("User question: How do I name my service?")


@pytest.mark.asyncio
async def test_empty_index_still_generates():
    answerer, chat, _ = await _answerer(records=False)
    result = await answerer.execute("anything?")
    assert result.sources_used == []
    assert result.documents_used == 0
    assert NO_CONTEXT_SENTINEL in chat.messages[1].content


@pytest.mark.asyncio
async def test_unknown_provider_fails_before_retrieval():
    answerer, _, emb = await _answerer()
    with pytest.raises(ConfigError):
        await answerer.execute("q", provider="claude")
    with pytest.raises(ConfigError):
        answerer.stream("q", provider="claude")
    assert emb.calls == 0


@pytest.mark.asyncio
async def test_explicit_provider_is_used():
    answerer, _, _ = await _answerer()
    result = await answerer.execute("q", provider="vllm")
    assert result.provider == "vllm"


@pytest.mark.asyncio
async def test_generation_deadline():
    answerer, _, _ = await _answerer(chat=FakeChat(delay=1.0), generate_timeout_s=0.01)
    with pytest.raises(RequestTimeoutError):
        await answerer.execute("q")


@pytest.mark.asyncio
async def test_stream_event_order():
    answerer, chat, _ = await _answerer()
    events = await _collect(answerer.stream("q", k=2))

    assert [e.type for e in events] == ["metadata", "content", "content", "done"]
    meta = events[0].data
    assert meta["sources"] == ["env.md", "sdk.md"]
    assert meta["provider"] == "openai"
    assert meta["timestamp"] == NOW.isoformat()
    assert meta["documents_used"] == 2
    # empty fragments are skipped
    assert [e.data["content"] for e in events[1:3]] == ["Hello", " world"]
    assert events[-1].data["fragment_count"] == 2
    assert events[-1].data["elapsed_ms"] >= 0
    assert chat.closed


@pytest.mark.asyncio
async def test_stream_failure_after_content_ends_with_error():
    answerer, chat, _ = await _answerer(chat=FakeChat(fragments=("a", "b", "c"), fail_after=1))
    events = await _collect(answerer.stream("q"))

    assert [e.type for e in events] == ["metadata", "content", "error"]
    assert events[-1].data == {
        "message": "upstream 503",
        "error_type": "GenerationError",
        "retryable": True,
    }
    assert chat.closed


@pytest.mark.asyncio
async def test_stream_retrieval_failure_emits_metadata_then_error():
    answerer, chat, _ = await _answerer()
    events = await _collect(answerer.stream("   "))

    assert [e.type for e in events] == ["metadata", "error"]
    assert events[0].data["sources"] == []
    assert events[1].data["error_type"] == "ValidationError"
    assert events[1].data["retryable"] is False
    assert chat.messages is None


@pytest.mark.asyncio
async def test_stream_fragment_deadline():
    answerer, chat, _ = await _answerer(chat=FakeChat(delay=1.0), generate_timeout_s=0.05)
    events = await _collect(answerer.stream("q"))

    assert [e.type for e in events] == ["metadata", "error"]
    assert events[-1].data["error_type"] == "RequestTimeoutError"
    assert events[-1].data["retryable"] is True


@pytest.mark.asyncio
async def test_closing_stream_early_closes_provider_stream():
    answerer, chat, _ = await _answerer(chat=FakeChat(fragments=("a", "b", "c", "d")))
    events = answerer.stream("q")

    first = await anext(events)
    second = await anext(events)
    await events.aclose()

    assert first.type == "metadata"
    assert second.data == {"content": "a"}
    assert chat.closed


def test_lifecycle_transitions():
    lc = RequestLifecycle()
    lc.advance(PipelineState.RETRIEVING)
    lc.advance(PipelineState.CONTEXT_BUILDING)
    with pytest.raises(RuntimeError):
        lc.advance(PipelineState.COMPLETED)
    lc.fail()
    assert lc.terminal
    lc.fail()
    assert lc.history == [
        PipelineState.IDLE,
        PipelineState.RETRIEVING,
        PipelineState.CONTEXT_BUILDING,
        PipelineState.FAILED,
    ]


def test_build_messages_layout():
    system, user = build_messages("CTX", "Q?")
    assert system.role == "system"
    assert user.role == "user"
    assert user.content == "Context information:\nCTX\n\nUser question: Q?"


def test_error_payload_retryable_flags():
    assert error_payload(RequestTimeoutError("generation"))["retryable"] is True
    assert error_payload(GenerationError("bad key", reason="auth"))["retryable"] is False
    assert error_payload(ValueError("x")) == {
        "message": "x",
        "error_type": "ValueError",
        "retryable": False,
    }
