from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from importlib import import_module
from typing import Any, cast

from kb_rag.application.ports.llm_port import ChatMessage, ChatModelPort, LLMResponse
from kb_rag.domain.errors import GenerationError, RequestTimeoutError
from kb_rag.infrastructure.openai_compat.errors import classify

_RETRYABLE = {"rate_limited", "unavailable"}


@dataclass
class OpenAIChatAdapter(ChatModelPort):
    """Chat adapter for OpenAI and any OpenAI-compatible server (vLLM, LiteLLM, ...)."""

    name: str
    model: str
    api_key: str = "EMPTY"
    base_url: str | None = None  # e.g. "http://localhost:8000/v1" for vLLM
    timeout_s: float = 60.0
    client: Any | None = None  # injectable AsyncOpenAI-compatible client

    def _get_client(self) -> Any:
        if self.client is None:
            # Defer import of openai to first use to avoid hard dependency in tests
            module = import_module("openai")
            self.client = module.AsyncOpenAI(
                base_url=self.base_url,
                api_key=self.api_key,
                timeout=self.timeout_s,
                max_retries=0,
            )
        return self.client

    def _translate(self, ex: Exception) -> Exception:
        reason = classify(ex)
        if reason == "timeout":
            return RequestTimeoutError(f"{self.name} generation", self.timeout_s)
        reason = reason or "provider_error"
        return GenerationError(
            f"{self.name} request failed: {ex}",
            reason=reason,
            retryable=reason in _RETRYABLE,
            provider=self.name,
        )

    async def chat(
        self, messages: Sequence[ChatMessage], temperature: float = 0.7, max_tokens: int = 1000
    ) -> LLMResponse:
        client = self._get_client()
        payload: Any = [{"role": m.role, "content": m.content} for m in messages]
        try:
            resp: Any = await client.chat.completions.create(
                model=self.model,
                messages=cast(Any, payload),
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except Exception as ex:  # noqa: BLE001
            # Translate external errors to domain-specific errors
            raise self._translate(ex) from ex
        if not resp.choices:
            raise GenerationError(
                f"{self.name} returned no choices", reason="provider_error", provider=self.name
            )
        choice = resp.choices[0]
        usage = getattr(resp, "usage", None)
        return LLMResponse(
            text=choice.message.content or "",
            finish_reason=choice.finish_reason or "stop",
            usage_tokens=getattr(usage, "total_tokens", None),
        )

    async def stream_chat(
        self, messages: Sequence[ChatMessage], temperature: float = 0.7, max_tokens: int = 1000
    ) -> AsyncIterator[str]:
        client = self._get_client()
        payload: Any = [{"role": m.role, "content": m.content} for m in messages]
        try:
            stream: Any = await client.chat.completions.create(
                model=self.model,
                messages=cast(Any, payload),
                temperature=temperature,
                max_tokens=max_tokens,
                stream=True,
            )
        except Exception as ex:  # noqa: BLE001
            raise self._translate(ex) from ex

        try:
            async for event in stream:
                if not event.choices:
                    continue
                delta = event.choices[0].delta.content
                if delta:
                    yield delta
        except Exception as ex:  # noqa: BLE001
            raise self._translate(ex) from ex
        finally:
            # Releases the HTTP connection when the consumer stops early
            await stream.close()

    async def aclose(self) -> None:
        if self.client is not None:
            await self.client.close()
