from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class ChatMessage:
    role: str  # "system" | "user" | "assistant"
    content: str


@dataclass(frozen=True)
class LLMResponse:
    text: str
    finish_reason: str = "stop"
    usage_tokens: int | None = None


class ChatModelPort(Protocol):
    """Chat completion provider.

    Failures surface as GenerationError (with `reason` and `retryable`) or
    RequestTimeoutError. `stream_chat` yields text fragments in order; closing
    the iterator must release the underlying connection.
    """

    name: str

    async def chat(
        self, messages: Sequence[ChatMessage], temperature: float = 0.7, max_tokens: int = 1000
    ) -> LLMResponse: ...

    def stream_chat(
        self, messages: Sequence[ChatMessage], temperature: float = 0.7, max_tokens: int = 1000
    ) -> AsyncIterator[str]: ...

    async def aclose(self) -> None: ...
