from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import litellm
import numpy as np

from kbsearch.constants import EMBEDDING_TEXT_LIMIT
from kbsearch.search.cache import SearchCache


@runtime_checkable
class EmbeddingProvider(Protocol):
    dimensions: int

    async def embed(self, text: str) -> list[float]: ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]: ...


@dataclass
class EmbeddingConfig:
    model: str
    dim: int


class Embedder:
    def __init__(self, config: EmbeddingConfig):
        self.config = config

    @property
    def dimensions(self) -> int:
        return self.config.dim

    @property
    def model(self) -> str:
        return self.config.model

    def _normalize(self, embeddings: np.ndarray) -> np.ndarray:
        norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
        return embeddings / np.where(norms == 0, 1, norms)

    def _parse_response(self, response) -> np.ndarray:
        sorted_data = sorted(response.data, key=lambda x: x["index"])
        embeddings = np.array([item["embedding"] for item in sorted_data])
        return self._normalize(embeddings)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        truncated = [t[:EMBEDDING_TEXT_LIMIT] for t in texts]
        response = await litellm.aembedding(model=self.config.model, input=truncated)
        return self._parse_response(response).tolist()

    async def embed(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]


class CachedEmbedder:
    """Wraps a provider with the query-embedding cache, keyed by model and text."""

    def __init__(self, provider: EmbeddingProvider, cache: SearchCache, model: str | None = None):
        self.provider = provider
        self.cache = cache
        self.model = model or getattr(provider, "model", type(provider).__name__)

    @property
    def dimensions(self) -> int:
        return self.provider.dimensions

    async def embed(self, text: str) -> list[float]:
        cached = self.cache.get_embedding(text, self.model)
        if cached is not None:
            return cached
        embedding = await self.provider.embed(text)
        self.cache.set_embedding(text, self.model, embedding)
        return embedding

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        results: list[list[float] | None] = [self.cache.get_embedding(t, self.model) for t in texts]
        missing = [i for i, r in enumerate(results) if r is None]
        if missing:
            fresh = await self.provider.embed_batch([texts[i] for i in missing])
            for i, embedding in zip(missing, fresh):
                self.cache.set_embedding(texts[i], self.model, embedding)
                results[i] = embedding
        return results  # type: ignore[return-value]
