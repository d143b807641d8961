import sys

import numpy as np
import pytest

from kb_rag.domain.errors import EmbeddingProviderError
from kb_rag.infrastructure.embeddings.sentence_transformers_adapter import (
    SentenceTransformersEmbeddingAdapter,
)


class FakeModel:
    def __init__(self, name, device=None):
        self.name = name
        self.device = device
        self.calls = []

    def encode(self, texts, batch_size, normalize_embeddings, convert_to_numpy):
        self.calls.append((list(texts), batch_size, normalize_embeddings))
        return np.array([[float(len(t)), 1.0, 0.0] for t in texts], dtype=np.float32)


class FakeModule:
    SentenceTransformer = FakeModel


@pytest.mark.asyncio
async def test_encode_runs_through_model(monkeypatch):
    monkeypatch.setitem(sys.modules, "sentence_transformers", FakeModule())
    adapter = SentenceTransformersEmbeddingAdapter(model_name="mini", dimension=3, batch_size=8)

    vectors = await adapter.embed_batch(["ab", "abcd"])

    assert vectors == [(2.0, 1.0, 0.0), (4.0, 1.0, 0.0)]
    assert all(isinstance(x, float) for x in vectors[0])
    assert adapter._model.calls == [(["ab", "abcd"], 8, True)]
    assert await adapter.embed("x") == (1.0, 1.0, 0.0)


@pytest.mark.asyncio
async def test_wrong_dimension_is_malformed(monkeypatch):
    monkeypatch.setitem(sys.modules, "sentence_transformers", FakeModule())
    adapter = SentenceTransformersEmbeddingAdapter(model_name="mini", dimension=384)
    with pytest.raises(EmbeddingProviderError) as exc:
        await adapter.embed("x")
    assert exc.value.reason == "malformed_response"


@pytest.mark.asyncio
async def test_model_failure_is_unavailable(monkeypatch):
    class BrokenModel(FakeModel):
        def encode(self, *args, **kwargs):
            raise RuntimeError("CUDA out of memory")

    class BrokenModule:
        SentenceTransformer = BrokenModel

    monkeypatch.setitem(sys.modules, "sentence_transformers", BrokenModule())
    adapter = SentenceTransformersEmbeddingAdapter(model_name="mini", dimension=3)
    with pytest.raises(EmbeddingProviderError) as exc:
        await adapter.embed("x")
    assert exc.value.reason == "unavailable"
