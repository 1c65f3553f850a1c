import asyncio
import re
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import fields

from kbsearch.constants import (
    NEUTRAL_SCORE,
    PROBE_TIMEOUT,
    REQUEST_TIMEOUT,
    RERANK_BATCH_SIZE,
    RERANK_DOCUMENT_LIMIT,
    RERANK_MAX_TOKENS,
    RERANK_MODEL,
    RERANK_TEMPERATURE,
    RERANK_TOP_K,
)
from kbsearch.llm.ollama import OllamaClient
from kbsearch.logging import get_logger
from kbsearch.search.cache import SearchCache
from kbsearch.search.scoring import blend
from kbsearch.search.types import RerankedResult, SearchResult

_logger = get_logger(__name__)

type ProgressCallback = Callable[[int, int], None]

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")

RATING_PROMPT = """Rate the relevance of this document to the search query on a scale of 0-10.
0 = completely irrelevant
5 = somewhat relevant
10 = highly relevant

Query: "{query}"

Document:
{document}

Return ONLY a single number from 0 to 10, nothing else."""


def _search_fields(result: SearchResult) -> dict:
    return {f.name: getattr(result, f.name) for f in fields(SearchResult)}


def to_reranked(
    result: SearchResult,
    retrieval_rank: int,
    blended_score: float,
    oracle_score: float | None = None,
) -> RerankedResult:
    values = _search_fields(result)
    values["score"] = blended_score
    return RerankedResult(
        **values,
        oracle_score=oracle_score,
        retrieval_rank=retrieval_rank,
        blended_score=blended_score,
    )


def passthrough(results: list[SearchResult], start: int = 0) -> list[RerankedResult]:
    """Keep retrieval order and scores; rank numbering continues from `start`."""
    return [to_reranked(r, start + i, r.score) for i, r in enumerate(results)]


def parse_rating(text: str) -> float | None:
    """First number in the reply, read as a 0-10 rating and scaled to [0, 1]."""
    match = _NUMBER_RE.search(text)
    if match is None:
        return None
    return max(0.0, min(1.0, float(match.group()) / 10))


def document_text(result: SearchResult) -> str:
    return result.preview or result.title or ""


class Reranker(ABC):
    @abstractmethod
    async def is_available(self) -> bool: ...

    def reset_availability(self) -> None:
        pass

    @abstractmethod
    async def rerank(
        self,
        query: str,
        results: list[SearchResult],
        top_k: int | None = None,
        use_position_blending: bool = True,
        on_progress: ProgressCallback | None = None,
    ) -> list[RerankedResult]: ...

    async def rerank_with_progress(
        self,
        query: str,
        results: list[SearchResult],
        on_progress: ProgressCallback,
        top_k: int | None = None,
        use_position_blending: bool = True,
    ) -> list[RerankedResult]:
        return await self.rerank(query, results, top_k, use_position_blending, on_progress)

    async def close(self) -> None:
        pass


class NoopReranker(Reranker):
    """Passthrough reranker that preserves original order."""

    async def is_available(self) -> bool:
        return False

    async def rerank(
        self,
        query: str,
        results: list[SearchResult],
        top_k: int | None = None,
        use_position_blending: bool = True,
        on_progress: ProgressCallback | None = None,
    ) -> list[RerankedResult]:
        return passthrough(results)


class OllamaReranker(Reranker):
    """Reranks retrieval hits by asking a local LLM to rate each one 0-10.

    The oracle only sees the top `top_k` candidates; each gets one generate
    call, at most `batch_size` in flight. Any oracle failure scores the
    document as neutral 0.5, and an unreachable server (or missing model)
    leaves the retrieval order untouched.
    """

    def __init__(
        self,
        client: OllamaClient | None = None,
        model: str = RERANK_MODEL,
        top_k: int = RERANK_TOP_K,
        batch_size: int = RERANK_BATCH_SIZE,
        timeout: float = REQUEST_TIMEOUT,
        probe_timeout: float = PROBE_TIMEOUT,
        cache: SearchCache | None = None,
    ):
        self.client = client or OllamaClient(timeout=timeout)
        self.model = model
        self.top_k = top_k
        self.batch_size = batch_size
        self.timeout = timeout
        self.probe_timeout = probe_timeout
        self.cache = cache
        self._available: bool | None = None

    async def is_available(self) -> bool:
        if self._available is not None:
            return self._available

        try:
            self._available = await self.client.has_model(self.model, timeout=self.probe_timeout)
        except Exception as e:
            _logger.debug("reranker unavailable, oracle not reachable", error=str(e))
            self._available = False
            return False

        if not self._available:
            _logger.debug("reranker model not found", model=self.model)
        return self._available

    def reset_availability(self) -> None:
        self._available = None

    async def score_document(self, query: str, document: str) -> float:
        document_hash = None
        if self.cache is not None:
            document_hash = self.cache.hash_document(document)
            cached = self.cache.get_rerank_score(query, document_hash)
            if cached is not None:
                return cached

        prompt = RATING_PROMPT.format(query=query, document=document[:RERANK_DOCUMENT_LIMIT])
        try:
            reply = await self.client.generate(
                self.model,
                prompt,
                temperature=RERANK_TEMPERATURE,
                max_tokens=RERANK_MAX_TOKENS,
                timeout=self.timeout,
            )
        except Exception as e:
            _logger.debug("reranker scoring failed", error=str(e))
            return NEUTRAL_SCORE

        score = parse_rating(reply)
        if score is None:
            _logger.debug("reranker returned non-numeric score", response=reply)
            return NEUTRAL_SCORE

        if self.cache is not None and document_hash is not None:
            self.cache.set_rerank_score(query, document_hash, score)
        return score

    async def score_documents(
        self,
        query: str,
        documents: list[str],
        on_progress: ProgressCallback | None = None,
    ) -> list[float]:
        scores = [NEUTRAL_SCORE] * len(documents)
        total = len(documents)
        completed = 0

        async def score_one(index: int, document: str) -> None:
            nonlocal completed
            try:
                scores[index] = await self.score_document(query, document)
            finally:
                completed += 1
                if on_progress:
                    on_progress(completed, total)

        for start in range(0, total, self.batch_size):
            batch = documents[start : start + self.batch_size]
            await asyncio.gather(*(score_one(start + i, doc) for i, doc in enumerate(batch)))

        return scores

    async def rerank(
        self,
        query: str,
        results: list[SearchResult],
        top_k: int | None = None,
        use_position_blending: bool = True,
        on_progress: ProgressCallback | None = None,
    ) -> list[RerankedResult]:
        if not results:
            return []

        if not await self.is_available():
            _logger.debug("reranker unavailable, keeping retrieval order")
            return passthrough(results)

        top_k = self.top_k if top_k is None else top_k
        candidates = results[:top_k]
        remaining = results[top_k:]

        _logger.debug("reranking candidates", count=len(candidates), model=self.model)
        oracle_scores = await self.score_documents(query, [document_text(r) for r in candidates], on_progress)

        reranked: list[RerankedResult] = []
        for rank, (result, oracle_score) in enumerate(zip(candidates, oracle_scores)):
            if use_position_blending:
                blended = blend(result.score, oracle_score, rank)
            else:
                blended = (result.score + oracle_score) / 2
            reranked.append(to_reranked(result, rank, blended, oracle_score))

        reranked.sort(key=lambda r: r.blended_score, reverse=True)
        return reranked + passthrough(remaining, start=len(candidates))

    async def close(self) -> None:
        await self.client.close()
