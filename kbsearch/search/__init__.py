from kbsearch.search.cache import CacheStats, LRUCache, SearchCache, create_search_cache
from kbsearch.search.expansion import QueryExpansionService, extract_key_terms
from kbsearch.search.fusion import deduplicate_results, weighted_rrf
from kbsearch.search.reranker import NoopReranker, OllamaReranker, Reranker
from kbsearch.search.scoring import (
    blend,
    blend_weights,
    normalize_lexical_scores,
    normalize_scores,
    normalize_vector_scores,
    top_rank_bonus,
)
from kbsearch.search.types import (
    Capabilities,
    ExpandedQuery,
    ExpansionMethod,
    QuerySource,
    RerankedResult,
    RetrievalSource,
    SearchMode,
    SearchResult,
    SourceType,
)

__all__ = [
    "CacheStats",
    "Capabilities",
    "ExpandedQuery",
    "ExpansionMethod",
    "LRUCache",
    "NoopReranker",
    "OllamaReranker",
    "QueryExpansionService",
    "QuerySource",
    "RerankedResult",
    "Reranker",
    "RetrievalSource",
    "SearchCache",
    "SearchMode",
    "SearchResult",
    "SourceType",
    "blend",
    "blend_weights",
    "create_search_cache",
    "deduplicate_results",
    "extract_key_terms",
    "normalize_lexical_scores",
    "normalize_scores",
    "normalize_vector_scores",
    "top_rank_bonus",
    "weighted_rrf",
]
