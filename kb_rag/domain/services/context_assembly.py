"""Context assembly: turn a RetrievalResult into the text block the model sees.

Pure functions. The block layout is part of the prompt contract and must stay
byte-stable; tests pin it.
"""

from __future__ import annotations

from collections.abc import Sequence

from kb_rag.domain.models import UNKNOWN_SOURCE, ScoredChunk, SourceScore

NO_CONTEXT_SENTINEL = "No relevant context found in the knowledge base."
BLOCK_SEPARATOR = "\n\n---\n\n"


def format_block(chunk: ScoredChunk) -> str:
    return f"Source: {chunk.source or UNKNOWN_SOURCE} (Relevance: {chunk.score:.3f})\n{chunk.text}"


def format_context(results: Sequence[ScoredChunk], max_chars: int | None = None) -> str:
    """Render results in order, or the sentinel when there are none.

    With `max_chars`, whole blocks are appended while they fit. A first block
    that alone exceeds the bound is cut to `max_chars`.
    """
    if not results:
        return NO_CONTEXT_SENTINEL

    blocks = [format_block(r) for r in results]
    if not max_chars or max_chars <= 0:
        return BLOCK_SEPARATOR.join(blocks)

    if len(blocks[0]) > max_chars:
        return blocks[0][:max_chars]

    kept = [blocks[0]]
    used = len(blocks[0])
    for block in blocks[1:]:
        needed = len(BLOCK_SEPARATOR) + len(block)
        if used + needed > max_chars:
            break
        kept.append(block)
        used += needed
    return BLOCK_SEPARATOR.join(kept)


def extract_sources(results: Sequence[ScoredChunk]) -> list[str]:
    """Distinct non-empty sources, first-seen order."""
    seen: dict[str, None] = {}
    for r in results:
        if r.source:
            seen.setdefault(r.source, None)
    return list(seen)


def relevance_scores(results: Sequence[ScoredChunk]) -> list[SourceScore]:
    return [SourceScore(source=r.source or UNKNOWN_SOURCE, score=r.score) for r in results]
