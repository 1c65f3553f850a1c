from dataclasses import dataclass, replace

from kbsearch.constants import ORIGINAL_QUERY_MULTIPLIER, RRF_K
from kbsearch.logging import get_logger
from kbsearch.search.scoring import normalize_scores, top_rank_bonus
from kbsearch.search.types import RetrievalSource, SearchResult

_logger = get_logger(__name__)


@dataclass
class _Accumulator:
    result: SearchResult
    total_score: float
    appearances: int = 1


def weighted_rrf(
    sources: list[RetrievalSource],
    k: int = RRF_K,
    apply_top_bonus: bool = True,
    normalize_first: bool = True,
    original_query_multiplier: float = ORIGINAL_QUERY_MULTIPLIER,
) -> list[SearchResult]:
    """Weighted Reciprocal Rank Fusion across labeled result sources.

    Each result at rank r contributes weight / (k + r + 1), where weight is
    the source weight, doubled (by default) for the user's literal query.
    With `apply_top_bonus` the first three ranks of every source are boosted.
    Contributions are summed per `source_key`; the first-seen payload is kept.

    Returns results sorted by fused score, highest first. Ties keep the order
    in which keys were first encountered.
    """
    entries: dict[str, _Accumulator] = {}

    for source in sources:
        results = normalize_scores(source.results, source.source_type) if normalize_first else source.results
        weight = source.weight * (original_query_multiplier if source.is_original_query else 1.0)

        for rank, result in enumerate(results):
            contribution = weight / (k + rank + 1)
            if apply_top_bonus:
                contribution = top_rank_bonus(contribution, rank)

            entry = entries.get(result.source_key)
            if entry is None:
                entries[result.source_key] = _Accumulator(result=result, total_score=contribution)
                continue

            entry.total_score += contribution
            entry.appearances += 1

    ranked = sorted(entries.values(), key=lambda e: e.total_score, reverse=True)
    overlapping = sum(1 for e in ranked if e.appearances > 1)
    _logger.debug("fused sources", sources=len(sources), unique=len(ranked), overlapping=overlapping)
    return [replace(e.result, score=e.total_score) for e in ranked]


def deduplicate_results(results: list[SearchResult]) -> list[SearchResult]:
    """Keep the first occurrence of every `source_key`, preserving order."""
    seen: set[str] = set()
    unique: list[SearchResult] = []
    for r in results:
        if r.source_key in seen:
            continue
        seen.add(r.source_key)
        unique.append(r)
    return unique
