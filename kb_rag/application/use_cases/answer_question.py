# kb_rag/application/use_cases/answer_question.py
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import aclosing
from enum import Enum
from typing import Any

from kb_rag.application.deadlines import with_deadline
from kb_rag.application.ports.clock_port import ClockPort
from kb_rag.application.ports.llm_port import ChatMessage, ChatModelPort
from kb_rag.application.ports.telemetry_port import NoopTelemetry, TelemetryPort
from kb_rag.application.use_cases.provider_registry import ChatProviderRegistry
from kb_rag.application.use_cases.retrieve_context import RetrieveContext
from kb_rag.domain.errors import GenerationError, RequestTimeoutError
from kb_rag.domain.models import AnswerResult, RetrievalResult, StreamEvent
from kb_rag.domain.services.context_assembly import extract_sources, relevance_scores

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an assistant for a technical knowledge base. Help developers understand and "
    "apply what the documentation describes.\n\n"
    "Instructions:\n"
    "1. Give accurate, practical and actionable answers based on the provided context.\n"
    "2. Include code examples when they help.\n"
    "3. If the context does not contain enough information, say so explicitly and then "
    "offer general guidance.\n"
    "4. Do not invent APIs, options or versions that the context does not mention."
)

_END = object()


class PipelineState(str, Enum):
    IDLE = "idle"
    RETRIEVING = "retrieving"
    CONTEXT_BUILDING = "context_building"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.IDLE: frozenset({PipelineState.RETRIEVING, PipelineState.FAILED}),
    PipelineState.RETRIEVING: frozenset({PipelineState.CONTEXT_BUILDING, PipelineState.FAILED}),
    PipelineState.CONTEXT_BUILDING: frozenset({PipelineState.GENERATING, PipelineState.FAILED}),
    PipelineState.GENERATING: frozenset({PipelineState.COMPLETED, PipelineState.FAILED}),
    PipelineState.COMPLETED: frozenset(),
    PipelineState.FAILED: frozenset(),
}


class RequestLifecycle:
    """Per-request state machine. Terminal states are final."""

    def __init__(self) -> None:
        self.state = PipelineState.IDLE
        self.history: list[PipelineState] = [PipelineState.IDLE]

    @property
    def terminal(self) -> bool:
        return not _TRANSITIONS[self.state]

    def advance(self, target: PipelineState) -> None:
        if target not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"illegal pipeline transition {self.state.value} -> {target.value}")
        self.state = target
        self.history.append(target)

    def fail(self) -> None:
        if not self.terminal:
            self.advance(PipelineState.FAILED)


def build_messages(context: str, question: str) -> list[ChatMessage]:
    return [
        ChatMessage(role="system", content=SYSTEM_PROMPT),
        ChatMessage(
            role="user",
            content=f"Context information:\n{context}\n\nUser question: {question}",
        ),
    ]


def error_payload(ex: BaseException) -> dict[str, Any]:
    retryable = isinstance(ex, RequestTimeoutError) or bool(getattr(ex, "retryable", False))
    return {"message": str(ex), "error_type": type(ex).__name__, "retryable": retryable}


class AnswerQuestion:
    """
    Retrieval → context → generation, blocking or streamed.

    The provider is resolved before any I/O so an unknown name fails fast
    with ConfigError. Failures are not retried here.
    """

    def __init__(
        self,
        retriever: RetrieveContext,
        providers: ChatProviderRegistry,
        clock: ClockPort,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        generate_timeout_s: float | None = None,
        telemetry: TelemetryPort | None = None,
    ) -> None:
        self.retriever = retriever
        self.providers = providers
        self.clock = clock
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.generate_timeout_s = generate_timeout_s
        self.telemetry = telemetry or NoopTelemetry()

    async def execute(
        self, question: str, k: int = 5, provider: str | None = None
    ) -> AnswerResult:
        name = self.providers.resolve_name(provider)
        model = self.providers.get(name)
        lifecycle = RequestLifecycle()
        started = time.monotonic()
        try:
            lifecycle.advance(PipelineState.RETRIEVING)
            results = await self.retriever.retrieve(question, k)
            lifecycle.advance(PipelineState.CONTEXT_BUILDING)
            context = self.retriever.build_context(results)
            lifecycle.advance(PipelineState.GENERATING)
            with self.telemetry.span(
                "rag.generate", {"rag.provider": name, "rag.context_length": len(context)}
            ):
                messages = build_messages(context, question)
                resp = await with_deadline(
                    model.chat(messages, self.temperature, self.max_tokens),
                    self.generate_timeout_s,
                    "generation",
                )
            lifecycle.advance(PipelineState.COMPLETED)
        except Exception as ex:
            failed_in = lifecycle.state
            lifecycle.fail()
            self._record_failure(ex, name, failed_in)
            raise

        self._record_success(name, started, mode="blocking")
        return AnswerResult(
            response_text=resp.text,
            sources_used=extract_sources(results),
            relevance_scores=relevance_scores(results),
            provider=name,
            timestamp=self.clock.now(),
            documents_used=len(results),
        )

    def stream(
        self, question: str, k: int = 5, provider: str | None = None
    ) -> AsyncIterator[StreamEvent]:
        """Resolve the provider now, then return the event stream.

        The stream yields one `metadata` event, zero or more `content` events and
        exactly one terminal `done` or `error` event. Closing it early closes the
        provider stream.
        """
        name = self.providers.resolve_name(provider)
        return self._events(question, k, name, self.providers.get(name))

    async def _events(
        self, question: str, k: int, name: str, model: ChatModelPort
    ) -> AsyncIterator[StreamEvent]:
        lifecycle = RequestLifecycle()
        started = time.monotonic()
        fragments = 0

        try:
            lifecycle.advance(PipelineState.RETRIEVING)
            results: RetrievalResult = await self.retriever.retrieve(question, k)
            lifecycle.advance(PipelineState.CONTEXT_BUILDING)
            context = self.retriever.build_context(results)
        except Exception as ex:
            failed_in = lifecycle.state
            lifecycle.fail()
            self._record_failure(ex, name, failed_in)
            yield StreamEvent("metadata", self._metadata(name, ()))
            yield StreamEvent("error", error_payload(ex))
            return

        yield StreamEvent("metadata", self._metadata(name, results))

        lifecycle.advance(PipelineState.GENERATING)
        try:
            source = model.stream_chat(
                build_messages(context, question), self.temperature, self.max_tokens
            )
            async with aclosing(source) as it:
                while True:
                    fragment = await with_deadline(
                        anext(it, _END), self.generate_timeout_s, "generation stream"
                    )
                    if fragment is _END:
                        break
                    if not fragment:
                        continue
                    fragments += 1
                    yield StreamEvent("content", {"content": fragment})
        except (GeneratorExit, asyncio.CancelledError):
            lifecycle.fail()
            logger.info(
                "stream for provider %s closed by consumer after %d fragment(s)", name, fragments
            )
            raise
        except Exception as ex:
            failed_in = lifecycle.state
            lifecycle.fail()
            self._record_failure(ex, name, failed_in)
            yield StreamEvent("error", error_payload(ex))
            return

        lifecycle.advance(PipelineState.COMPLETED)
        elapsed_ms = self._record_success(name, started, mode="streaming")
        yield StreamEvent("done", {"elapsed_ms": elapsed_ms, "fragment_count": fragments})

    def _metadata(self, name: str, results: RetrievalResult) -> dict[str, Any]:
        return {
            "sources": extract_sources(results),
            "relevance_scores": [
                {"source": s.source, "score": s.score} for s in relevance_scores(results)
            ],
            "provider": name,
            "timestamp": self.clock.now().isoformat(),
            "documents_used": len(results),
        }

    def _record_success(self, name: str, started: float, mode: str) -> float:
        elapsed_ms = (time.monotonic() - started) * 1000
        tags = {"status": "success", "provider": name, "mode": mode}
        self.telemetry.incr("rag.queries.total", tags)
        self.telemetry.observe("rag.query.latency_ms", elapsed_ms, tags)
        return elapsed_ms

    def _record_failure(self, ex: Exception, name: str, state: PipelineState) -> None:
        error_type = type(ex).__name__
        self.telemetry.incr("rag.queries.total", {"status": "error", "provider": name})
        self.telemetry.incr("rag.errors.total", {"error_type": error_type, "stage": state.value})
        if isinstance(ex, GenerationError):
            logger.error("generation with %s failed (%s): %s", name, ex.reason, ex)
        else:
            logger.error("request failed while %s: %s: %s", state.value, error_type, ex)
