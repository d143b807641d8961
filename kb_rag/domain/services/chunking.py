from __future__ import annotations

from collections import deque
from collections.abc import Iterator, Sequence
from dataclasses import dataclass

from kb_rag.domain.errors import ConfigError
from kb_rag.domain.models import Chunk, Document

DEFAULT_SEPARATORS: tuple[str, ...] = ("\n\n", "\n", " ", "")

# ---------- Value Objects ----------


@dataclass(frozen=True)
class TextSpan:
    """Half-open character range [start, end) into the source text."""

    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start


@dataclass(frozen=True)
class ChunkingParams:
    chunk_size: int = 500
    chunk_overlap: int = 50
    separators: tuple[str, ...] = DEFAULT_SEPARATORS

    def validate(self) -> None:
        if self.chunk_size <= 0:
            raise ConfigError(f"chunk_size must be > 0, got {self.chunk_size}")
        if self.chunk_overlap < 0:
            raise ConfigError(f"chunk_overlap must be >= 0, got {self.chunk_overlap}")
        if self.chunk_overlap >= self.chunk_size:
            raise ConfigError(
                f"chunk_overlap ({self.chunk_overlap}) must be smaller than "
                f"chunk_size ({self.chunk_size})"
            )


# ---------- Splitting ----------


def _split_keeping_separator(text: str, span: TextSpan, sep: str) -> Iterator[TextSpan]:
    """Split span at every `sep`; the separator stays at the end of the left piece."""
    pos = span.start
    while pos < span.end:
        idx = text.find(sep, pos, span.end)
        if idx == -1:
            yield TextSpan(pos, span.end)
            return
        cut = idx + len(sep)
        yield TextSpan(pos, cut)
        pos = cut


def _atomic_pieces(
    text: str, span: TextSpan, separators: Sequence[str], chunk_size: int
) -> list[TextSpan]:
    """Break span into contiguous pieces no longer than chunk_size.

    Uses the first separator that occurs inside the span and recurses into
    oversized pieces with the remaining, finer separators. The empty separator
    (or running out of separators) hard-splits into single characters.
    """
    sep = ""
    remaining: Sequence[str] = ()
    for i, candidate in enumerate(separators):
        if candidate == "":
            break
        if text.find(candidate, span.start, span.end) != -1:
            sep = candidate
            remaining = separators[i + 1 :]
            break

    if sep == "":
        return [TextSpan(i, i + 1) for i in range(span.start, span.end)]

    pieces: list[TextSpan] = []
    for piece in _split_keeping_separator(text, span, sep):
        if piece.length <= chunk_size:
            pieces.append(piece)
        else:
            pieces.extend(_atomic_pieces(text, piece, remaining, chunk_size))
    return pieces


def _merge_pieces(pieces: Sequence[TextSpan], chunk_size: int, overlap: int) -> list[TextSpan]:
    """Greedy window packing; each new window restarts from a tail of <= overlap chars."""
    chunks: list[TextSpan] = []
    window: deque[TextSpan] = deque()
    total = 0
    for piece in pieces:
        if window and total + piece.length > chunk_size:
            chunks.append(TextSpan(window[0].start, window[-1].end))
            while window and (total > overlap or total + piece.length > chunk_size):
                total -= window.popleft().length
        window.append(piece)
        total += piece.length
    if window:
        chunks.append(TextSpan(window[0].start, window[-1].end))
    return chunks


def split_text_spans(text: str, params: ChunkingParams | None = None) -> list[TextSpan]:
    """Chunk boundaries for `text`. Pure function of its input."""
    p = params or ChunkingParams()
    if not text:
        return []
    if len(text) <= p.chunk_size:
        return [TextSpan(0, len(text))]
    pieces = _atomic_pieces(text, TextSpan(0, len(text)), p.separators, p.chunk_size)
    return _merge_pieces(pieces, p.chunk_size, p.chunk_overlap)


def split_text(text: str, params: ChunkingParams | None = None) -> list[str]:
    return [text[s.start : s.end] for s in split_text_spans(text, params)]


# ---------- Documents ----------


def chunk_document(document: Document, params: ChunkingParams | None = None) -> list[Chunk]:
    """Chunk a document and merge chunk bookkeeping into the inherited metadata."""
    texts = split_text(document.text, params)
    total = len(texts)
    return [
        Chunk(
            document_id=document.id,
            index=i,
            total=total,
            text=t,
            metadata={
                **document.metadata,
                "document_id": document.id,
                "chunk_index": i,
                "chunk_total": total,
                "chunk_size": len(t),
            },
        )
        for i, t in enumerate(texts)
    ]


# Properties:
#
# - No I/O, no globals, no external NLP libs.
# - Every chunk is text[start:end]; consecutive spans overlap or touch, so the
#   union covers the input exactly.
# - With hard character splitting the overlap is exactly chunk_overlap; at
#   separator boundaries it is the longest whole-piece tail that fits.
