from __future__ import annotations

from collections.abc import Iterable

from kb_rag.domain.models import ScoredChunk, SearchHit
from kb_rag.domain.types import ScoreKind


def to_relevance(raw_score: float, kind: ScoreKind) -> float:
    """Map a raw index score onto the pipeline convention: lower is better, 0 = perfect.

    SIMILARITY scores (higher is better, in [0, 1]) become `1 - raw`.
    DISTANCE scores are already lower-is-better and pass through.
    """
    if kind is ScoreKind.SIMILARITY:
        return 1.0 - raw_score
    return raw_score


def normalize_hits(hits: Iterable[SearchHit], kind: ScoreKind) -> tuple[ScoredChunk, ...]:
    # Both mappings are monotonic, so the index's best-first order is kept as is.
    return tuple(
        ScoredChunk(text=h.text, metadata=h.metadata, score=to_relevance(h.raw_score, kind))
        for h in hits
    )
