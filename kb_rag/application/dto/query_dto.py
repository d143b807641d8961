# kb_rag/application/dto/query_dto.py
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class QueryOptions:
    """
    Per-question options.

    - provider: chat provider name; None selects the configured default
    - max_context_docs: k for retrieval; None uses DEFAULT_K, 0 skips retrieval entirely
    - streaming: answer() returns an async iterator of StreamEvents when True
    """

    provider: str | None = None
    max_context_docs: int | None = None
    streaming: bool = False


@dataclass(frozen=True)
class ContextResponse:
    """Context-only answer: what the model would have been shown."""

    context: str
    sources: list[str]
    document_count: int
