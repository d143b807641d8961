"""Tests for domain models."""

from dataclasses import FrozenInstanceError
from datetime import UTC, datetime

import pytest

from kb_rag.domain.errors import PartialInsertError
from kb_rag.domain.models import (
    BulkInsertResult,
    FailedRecord,
    IndexedRecord,
    ScoredChunk,
    StreamEvent,
    make_record_id,
)


def test_record_id_is_deterministic_per_chunk():
    assert make_record_id("doc-1", 0) == make_record_id("doc-1", 0)
    assert make_record_id("doc-1", 0) != make_record_id("doc-1", 1)
    assert make_record_id("doc-1", 0) != make_record_id("doc-2", 0)


def test_scored_chunk_source():
    assert ScoredChunk("t", {"source": "a.md"}, 0.1).source == "a.md"
    assert ScoredChunk("t", {}, 0.1).source is None
    assert ScoredChunk("t", {"source": ""}, 0.1).source is None


def test_indexed_record_is_frozen():
    rec = IndexedRecord("r", (0.1, 0.2), "t", {}, datetime(2024, 1, 1, tzinfo=UTC))
    with pytest.raises(FrozenInstanceError):
        rec.text = "changed"  # type: ignore[misc]


def test_stream_event_to_dict():
    assert StreamEvent("content", {"content": "hi"}).to_dict() == {
        "type": "content",
        "data": {"content": "hi"},
    }


def test_bulk_insert_result_failed_view():
    rec = IndexedRecord("r", (0.1,), "t", {}, datetime(2024, 1, 1, tzinfo=UTC))
    failure = FailedRecord(record=rec, reason="bad", status=400)
    assert BulkInsertResult(2).failed == []
    assert BulkInsertResult(1, PartialInsertError(1, [failure])).failed == [failure]
