from kb_rag.domain.models import ScoredChunk, SourceScore
from kb_rag.domain.services.context_assembly import (
    NO_CONTEXT_SENTINEL,
    extract_sources,
    format_context,
    relevance_scores,
)


def _results() -> list[ScoredChunk]:
    return [
        ScoredChunk(text="alpha", metadata={"source": "a.md"}, score=0.1),
        ScoredChunk(text="beta", metadata={}, score=0.25),
    ]


def test_empty_results_give_sentinel():
    assert format_context([]) == NO_CONTEXT_SENTINEL
    assert NO_CONTEXT_SENTINEL == "No relevant context found in the knowledge base."


def test_block_layout_is_stable():
    assert format_context(_results()) == (
        "Source: a.md (Relevance: 0.100)\nalpha"
        "\n\n---\n\n"
        "Source: unknown (Relevance: 0.250)\nbeta"
    )


def test_max_chars_keeps_whole_blocks():
    first_block = "Source: a.md (Relevance: 0.100)\nalpha"
    assert format_context(_results(), max_chars=40) == first_block
    assert format_context(_results(), max_chars=10) == first_block[:10]
    assert format_context(_results(), max_chars=0) == format_context(_results())


def test_extract_sources_first_seen_order():
    results = [
        ScoredChunk("1", {"source": "b"}, 0.1),
        ScoredChunk("2", {"source": "a"}, 0.2),
        ScoredChunk("3", {"source": "b"}, 0.3),
        ScoredChunk("4", {}, 0.4),
        ScoredChunk("5", {"source": ""}, 0.5),
        ScoredChunk("6", {"source": "c"}, 0.6),
    ]
    assert extract_sources(results) == ["b", "a", "c"]
    assert extract_sources([]) == []


def test_relevance_scores_per_result():
    assert relevance_scores(_results()) == [
        SourceScore(source="a.md", score=0.1),
        SourceScore(source="unknown", score=0.25),
    ]
