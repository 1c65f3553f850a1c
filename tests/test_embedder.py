from types import SimpleNamespace

import numpy as np
import pytest
import pytest_asyncio

from kbsearch import embedder as embedder_module
from kbsearch.embedder import CachedEmbedder, Embedder, EmbeddingConfig, EmbeddingProvider
from kbsearch.search.cache import SearchCache


class FakeProvider:
    dimensions = 2
    model = "fake-embed"

    def __init__(self):
        self.batches: list[list[str]] = []

    async def embed(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.batches.append(list(texts))
        return [[float(len(t)), 1.0] for t in texts]


@pytest_asyncio.fixture
async def cache():
    cache = SearchCache()
    yield cache
    cache.dispose()


def test_fake_provider_satisfies_protocol():
    assert isinstance(FakeProvider(), EmbeddingProvider)


@pytest.mark.asyncio
async def test_cached_embed(cache):
    provider = FakeProvider()
    embedder = CachedEmbedder(provider, cache)

    first = await embedder.embed("kernel")
    second = await embedder.embed("kernel")

    assert first == second == [6.0, 1.0]
    assert provider.batches == [["kernel"]]
    assert embedder.dimensions == 2


@pytest.mark.asyncio
async def test_cached_batch_only_fetches_missing(cache):
    provider = FakeProvider()
    embedder = CachedEmbedder(provider, cache)
    await embedder.embed("ab")

    vectors = await embedder.embed_batch(["ab", "abc", "abcd"])

    assert vectors == [[2.0, 1.0], [3.0, 1.0], [4.0, 1.0]]
    assert provider.batches[-1] == ["abc", "abcd"]


@pytest.mark.asyncio
async def test_cache_keyed_by_model(cache):
    provider = FakeProvider()
    await CachedEmbedder(provider, cache, model="m1").embed("kernel")
    await CachedEmbedder(provider, cache, model="m2").embed("kernel")

    assert len(provider.batches) == 2


@pytest.mark.asyncio
async def test_embedder_normalizes_and_orders(monkeypatch):
    captured = {}

    async def fake_aembedding(model, input):
        captured["model"] = model
        captured["input"] = input
        return SimpleNamespace(
            data=[
                {"index": 1, "embedding": [0.0, 2.0]},
                {"index": 0, "embedding": [3.0, 4.0]},
            ]
        )

    monkeypatch.setattr(embedder_module.litellm, "aembedding", fake_aembedding)
    embedder = Embedder(EmbeddingConfig(model="ollama/nomic-embed-text", dim=2))

    vectors = await embedder.embed_batch(["first", "x" * 9000])

    assert captured["model"] == "ollama/nomic-embed-text"
    assert len(captured["input"][1]) == 8000
    assert np.allclose(vectors, [[0.6, 0.8], [0.0, 1.0]])
    assert embedder.dimensions == 2


@pytest.mark.asyncio
async def test_embedder_empty_batch():
    embedder = Embedder(EmbeddingConfig(model="m", dim=2))
    assert await embedder.embed_batch([]) == []
