import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace

from kbsearch.config import SearchConfig
from kbsearch.constants import ORIGINAL_QUERY_WEIGHT, RRF_OVERFETCH_FACTOR
from kbsearch.embedder import CachedEmbedder, EmbeddingProvider
from kbsearch.llm.ollama import OllamaClient
from kbsearch.logging import get_logger
from kbsearch.search.cache import CacheStats, SearchCache, create_search_cache
from kbsearch.search.expansion import QueryExpansionService
from kbsearch.search.fusion import deduplicate_results, weighted_rrf
from kbsearch.search.reranker import OllamaReranker, Reranker
from kbsearch.search.types import (
    Capabilities,
    ExpandedQuery,
    ExpansionMethod,
    QuerySource,
    RetrievalSource,
    SearchMode,
    SearchResult,
    SourceType,
)

_logger = get_logger(__name__)

type SearchFn = Callable[[str, int], Awaitable[list[SearchResult]]]
type StageCallback = Callable[[str, int, int], None]

ADVANCED_STAGES = 4


class ConfigurationError(Exception):
    """No retrieval backend is wired into the engine."""


@dataclass
class SearchOptions:
    mode: SearchMode | None = None
    limit: int | None = None
    expand_query: bool | None = None
    expansion_method: ExpansionMethod | None = None
    rerank: bool | None = None
    lexical_weight: float | None = None
    vector_weight: float | None = None


def _tag(results: list[SearchResult], **annotations) -> list[SearchResult]:
    return [replace(r, **annotations) for r in results]


class SearchEngine:
    """Runs a query through retrieval, fusion and optional reranking.

    Backends are plain async callables `(query, limit) -> results`. A missing
    vector backend or an unreachable oracle downgrades the requested mode
    instead of failing.
    """

    def __init__(
        self,
        config: SearchConfig | None = None,
        lexical_search: SearchFn | None = None,
        vector_search: SearchFn | None = None,
        embedder: EmbeddingProvider | None = None,
        cache: SearchCache | None = None,
        reranker: Reranker | None = None,
        expander: QueryExpansionService | None = None,
        client: OllamaClient | None = None,
    ):
        self.config = config or SearchConfig()
        self.cache = cache or create_search_cache(self.config.caching)
        self._client = client
        self.reranker = reranker or self._build_reranker()
        self.expander = expander or self._build_expander()
        self.lexical_search: SearchFn | None = None
        self.vector_search: SearchFn | None = None
        self.embedder: CachedEmbedder | None = None
        self.set_backends(lexical_search, vector_search, embedder)

    def _oracle_client(self) -> OllamaClient:
        if self._client is None:
            self._client = OllamaClient(self.config.ollama_url, timeout=self.config.request_timeout)
        return self._client

    def _build_reranker(self) -> Reranker:
        return OllamaReranker(
            client=self._oracle_client(),
            model=self.config.reranking.model,
            top_k=self.config.reranking.top_k,
            batch_size=self.config.reranking.batch_size,
            timeout=self.config.request_timeout,
            probe_timeout=self.config.probe_timeout,
            cache=self.cache,
        )

    def _build_expander(self) -> QueryExpansionService:
        return QueryExpansionService(
            client=self._oracle_client(),
            model=self.config.query_expansion.llm_model,
            probe_timeout=self.config.probe_timeout,
            cache=self.cache,
        )

    def set_backends(
        self,
        lexical_search: SearchFn | None,
        vector_search: SearchFn | None = None,
        embedder: EmbeddingProvider | None = None,
    ) -> None:
        self.lexical_search = lexical_search
        self.vector_search = vector_search
        self.embedder = CachedEmbedder(embedder, self.cache) if embedder is not None else None

    async def update_config(self, config: SearchConfig) -> None:
        """Swap configuration; oracle-backed services are rebuilt against the new settings."""
        old_client = self._client
        self.config = config
        self._client = OllamaClient(config.ollama_url, timeout=config.request_timeout)
        self.reranker = self._build_reranker()
        self.expander = self._build_expander()
        if old_client is not None:
            await old_client.close()

    async def get_capabilities(self) -> Capabilities:
        llm_available, rerank_available = await asyncio.gather(
            self.expander.check_available(),
            self.reranker.is_available(),
        )
        return Capabilities(
            lexical=self.lexical_search is not None,
            vector=self.vector_search is not None,
            expansion_prf=self.lexical_search is not None,
            expansion_llm=llm_available,
            reranking=rerank_available,
        )

    async def get_effective_mode(self, requested: SearchMode) -> SearchMode:
        if self.lexical_search is None:
            return SearchMode.SEMANTIC

        has_vector = self.vector_search is not None
        match requested:
            case SearchMode.ADVANCED:
                if not await self.reranker.is_available():
                    return SearchMode.HYBRID if has_vector else SearchMode.FAST
                return SearchMode.ADVANCED
            case SearchMode.HYBRID | SearchMode.SEMANTIC:
                return requested if has_vector else SearchMode.FAST
        return SearchMode.FAST

    async def search(
        self,
        query: str,
        options: SearchOptions | None = None,
        on_progress: StageCallback | None = None,
    ) -> list[SearchResult]:
        if self.lexical_search is None and self.vector_search is None:
            raise ConfigurationError("no retrieval backend configured")

        options = options or SearchOptions()
        requested = SearchMode(options.mode or self.config.default_mode)
        mode = await self.get_effective_mode(requested)
        limit = options.limit or self.config.default_limit

        _logger.debug("search", mode=requested, effective=mode, query=query, limit=limit)

        match mode:
            case SearchMode.SEMANTIC:
                return await self._search_semantic(query, limit)
            case SearchMode.HYBRID:
                return await self._search_hybrid(query, limit, options)
            case SearchMode.ADVANCED:
                return await self._search_advanced(query, limit, options, on_progress)
        return await self._search_fast(query, limit)

    async def _search_fast(self, query: str, limit: int) -> list[SearchResult]:
        results = await self.lexical_search(query, limit)
        return _tag(results, retrieval_method=SourceType.LEXICAL)

    async def _search_semantic(self, query: str, limit: int) -> list[SearchResult]:
        results = await self.vector_search(query, limit)
        return _tag(results, retrieval_method=SourceType.VECTOR)

    async def _vector_or_empty(self, query: str, limit: int) -> list[SearchResult]:
        if self.vector_search is None:
            return []
        try:
            return await self.vector_search(query, limit)
        except Exception as e:
            _logger.warning("vector search failed, using lexical only", error=str(e))
            return []

    async def _retrieve(self, query: str, limit: int) -> tuple[list[SearchResult], list[SearchResult]]:
        overfetch = limit * RRF_OVERFETCH_FACTOR
        lexical, vector = await asyncio.gather(
            self.lexical_search(query, overfetch),
            self._vector_or_empty(query, overfetch),
        )
        return (
            _tag(lexical, retrieval_method=SourceType.LEXICAL),
            _tag(vector, retrieval_method=SourceType.VECTOR),
        )

    def _fuse(self, sources: list[RetrievalSource]) -> list[SearchResult]:
        hybrid = self.config.hybrid
        fused = weighted_rrf(
            sources,
            k=hybrid.k,
            apply_top_bonus=hybrid.use_position_bonus,
            normalize_first=True,
            original_query_multiplier=hybrid.original_query_multiplier,
        )
        return deduplicate_results(fused)

    async def _search_hybrid(self, query: str, limit: int, options: SearchOptions) -> list[SearchResult]:
        hybrid = self.config.hybrid
        lexical_weight = hybrid.lexical_weight if options.lexical_weight is None else options.lexical_weight
        vector_weight = hybrid.vector_weight if options.vector_weight is None else options.vector_weight

        lexical, vector = await self._retrieve(query, limit)
        if not vector:
            return lexical[:limit]

        fused = self._fuse(
            [
                RetrievalSource(lexical, lexical_weight, SourceType.LEXICAL, is_original_query=True),
                RetrievalSource(vector, vector_weight, SourceType.VECTOR, is_original_query=True),
            ]
        )
        return _tag(fused[:limit], query_source=QuerySource.ORIGINAL)

    async def _expand(self, query: str, method: ExpansionMethod) -> list[ExpandedQuery]:
        settings = self.config.query_expansion
        top_contents: list[str] = []
        if method in (ExpansionMethod.PRF, ExpansionMethod.BOTH):
            initial = await self.lexical_search(query, settings.prf_top_k)
            top_contents = [r.preview for r in initial]

        return await self.expander.expand(
            query,
            top_contents,
            method=method,
            term_count=settings.prf_term_count,
            max_variants=settings.max_variants,
        )

    async def _search_advanced(
        self,
        query: str,
        limit: int,
        options: SearchOptions,
        on_progress: StageCallback | None,
    ) -> list[SearchResult]:
        def progress(stage: str, step: int) -> None:
            if on_progress:
                on_progress(stage, step, ADVANCED_STAGES)

        do_expand = self.config.query_expansion.enabled if options.expand_query is None else options.expand_query
        do_rerank = self.config.reranking.enabled if options.rerank is None else options.rerank
        method = options.expansion_method or self.config.query_expansion.method
        hybrid = self.config.hybrid

        progress("Initializing", 0)

        variants = [ExpandedQuery(query=query, weight=ORIGINAL_QUERY_WEIGHT, source=QuerySource.ORIGINAL)]
        if do_expand:
            progress("Expanding query", 1)
            variants = await self._expand(query, method)
            _logger.debug("query expansion", variants=len(variants))

        progress("Retrieving results", 2)
        sources: list[RetrievalSource] = []
        for variant in variants:
            lexical, vector = await self._retrieve(variant.query, limit)
            is_original = variant.source == QuerySource.ORIGINAL
            sources.append(
                RetrievalSource(
                    _tag(lexical, query_source=variant.source),
                    hybrid.lexical_weight * variant.weight,
                    SourceType.LEXICAL,
                    is_original_query=is_original,
                )
            )
            if vector:
                sources.append(
                    RetrievalSource(
                        _tag(vector, query_source=variant.source),
                        hybrid.vector_weight * variant.weight,
                        SourceType.VECTOR,
                        is_original_query=is_original,
                    )
                )

        progress("Fusing results", 3)
        fused = self._fuse(sources)

        if not do_rerank:
            return fused[:limit]

        progress("Reranking", 4)
        reranked = await self.reranker.rerank(
            query,
            fused,
            top_k=self.config.reranking.top_k,
            use_position_blending=self.config.reranking.use_position_blending,
        )
        return reranked[:limit]

    def get_cache_stats(self) -> dict[str, CacheStats]:
        return self.cache.get_stats()

    def clear_cache(self) -> None:
        self.cache.clear()

    async def dispose(self) -> None:
        self.cache.dispose()
        await self.reranker.close()
        await self.expander.close()


def create_search_engine(
    config: SearchConfig | None = None,
    lexical_search: SearchFn | None = None,
    vector_search: SearchFn | None = None,
    embedder: EmbeddingProvider | None = None,
) -> SearchEngine:
    """Engine with its own cache, reranker and expansion service."""
    return SearchEngine(
        config=config,
        lexical_search=lexical_search,
        vector_search=vector_search,
        embedder=embedder,
    )
