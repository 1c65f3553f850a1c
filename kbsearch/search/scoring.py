"""Score normalization and rank-position policy.

Lexical and vector backends score on incomparable scales. Both are mapped to
[0, 1] similarity here before fusion, and the rank-position helpers decide how
much a result's retrieval score is trusted relative to the oracle's opinion.
"""

from dataclasses import replace

from kbsearch.constants import BLEND_BANDS, BLEND_FALLBACK, COSINE_DISTANCE_RANGE, TOP_RANK_BONUS
from kbsearch.search.types import SearchResult, SourceType


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def normalize_lexical_scores(results: list[SearchResult]) -> list[SearchResult]:
    """Min-max normalize lexical relevance on magnitude.

    FTS5 bm25() is negative with more negative meaning better, so abs() makes
    every backend's sign convention rank the same way. When all magnitudes
    tie every result gets 1.0 and rank order alone decides.
    """
    if not results:
        return []

    magnitudes = [abs(r.score) for r in results]
    low = min(magnitudes)
    high = max(magnitudes)
    spread = high - low

    if spread == 0:
        return [replace(r, score=1.0) for r in results]

    return [replace(r, score=(m - low) / spread) for r, m in zip(results, magnitudes)]


def normalize_vector_scores(results: list[SearchResult]) -> list[SearchResult]:
    """Convert cosine distance to similarity, or clamp a ready-made similarity."""
    normalized: list[SearchResult] = []
    for r in results:
        if r.distance is not None:
            similarity = 1.0 - r.distance / COSINE_DISTANCE_RANGE
        else:
            similarity = r.score
        normalized.append(replace(r, score=_clamp(similarity)))
    return normalized


def normalize_scores(results: list[SearchResult], source_type: SourceType) -> list[SearchResult]:
    if source_type == SourceType.LEXICAL:
        return normalize_lexical_scores(results)
    return normalize_vector_scores(results)


def blend_weights(rank: int) -> tuple[float, float]:
    """Return (retrieval_weight, oracle_weight) for a zero-based rank.

    Ranks 0-3 inclusive form the top band.
    """
    for last_rank, retrieval_weight, oracle_weight in BLEND_BANDS:
        if rank <= last_rank:
            return retrieval_weight, oracle_weight
    return BLEND_FALLBACK


def blend(retrieval_score: float, oracle_score: float, rank: int) -> float:
    retrieval_weight, oracle_weight = blend_weights(rank)
    return retrieval_weight * retrieval_score + oracle_weight * oracle_score


def top_rank_bonus(score: float, rank: int) -> float:
    return score * TOP_RANK_BONUS.get(rank, 1.0)
