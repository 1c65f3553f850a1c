import json
import re
from collections import Counter

from kbsearch.constants import (
    EXPANDED_QUERY_WEIGHT,
    EXPANSION_MAX_TOKENS,
    EXPANSION_MAX_VARIANTS,
    EXPANSION_MODEL,
    EXPANSION_TEMPERATURE,
    EXPANSION_TIMEOUT,
    ORIGINAL_QUERY_WEIGHT,
    PRF_TERM_COUNT,
    PROBE_TIMEOUT,
)
from kbsearch.llm.ollama import OllamaClient
from kbsearch.logging import get_logger
from kbsearch.search.cache import SearchCache
from kbsearch.search.types import ExpandedQuery, ExpansionMethod, QuerySource

_logger = get_logger(__name__)

_TOKEN_SPLIT_RE = re.compile(r"[^a-z0-9]+")
_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*?\]")

STOPWORDS = frozenset(
    """
    the a an and or but in on at to for of with by from as is was are were been
    be have has had do does did will would could should may might must shall can need
    this that these those it its they them their we our you your he she him her
    what which who whom when where why how all each every both few more most other
    some such no nor not only own same so than too very just also now here there
    """.split()
)

VARIANTS_PROMPT = """Generate {count} alternative search queries for the following query. Each alternative should capture the same intent but use different words or phrasings. Consider synonyms, related concepts, and different perspectives.

Original query: "{query}"

Return ONLY a JSON array of strings, no explanation. Example format:
["alternative query 1", "alternative query 2", "alternative query 3"]"""


def extract_key_terms(texts: list[str], query: str, max_terms: int = PRF_TERM_COUNT) -> list[str]:
    """Most frequent non-trivial terms in `texts` that are not already in the query."""
    query_terms = {t for t in query.lower().split() if len(t) > 2}
    counts: Counter[str] = Counter()
    for text in texts:
        for token in _TOKEN_SPLIT_RE.split(text.lower()):
            if len(token) > 2 and token not in STOPWORDS and token not in query_terms:
                counts[token] += 1
    return [term for term, _ in counts.most_common(max_terms)]


def _original(query: str) -> ExpandedQuery:
    return ExpandedQuery(query=query, weight=ORIGINAL_QUERY_WEIGHT, source=QuerySource.ORIGINAL)


def parse_variants(reply: str, query: str, max_variants: int) -> list[str]:
    match = _JSON_ARRAY_RE.search(reply)
    if match is None:
        return []
    parsed = json.loads(match.group())
    if not isinstance(parsed, list):
        return []
    return [v for v in parsed[:max_variants] if isinstance(v, str) and v and v != query]


class QueryExpansionService:
    """Rewrites a query into weighted variants.

    Pseudo-relevance feedback needs no model: it appends the most frequent
    terms of the top lexical hits. LLM expansion asks the oracle for
    paraphrases and quietly falls back to the original query.
    """

    def __init__(
        self,
        client: OllamaClient | None = None,
        model: str = EXPANSION_MODEL,
        probe_timeout: float = PROBE_TIMEOUT,
        timeout: float = EXPANSION_TIMEOUT,
        cache: SearchCache | None = None,
    ):
        self.client = client or OllamaClient()
        self.model = model
        self.probe_timeout = probe_timeout
        self.timeout = timeout
        self.cache = cache
        self._available: bool | None = None

    async def check_available(self) -> bool:
        if self._available is not None:
            return self._available
        try:
            await self.client.list_models(timeout=self.probe_timeout)
            self._available = True
        except Exception as e:
            _logger.debug("LLM expansion unavailable, oracle not reachable", error=str(e))
            self._available = False
        return self._available

    def reset_availability(self) -> None:
        self._available = None

    async def is_model_available(self) -> bool:
        try:
            return await self.client.has_model(self.model, timeout=self.probe_timeout)
        except Exception:
            return False

    def _cached(self, query: str, method: ExpansionMethod) -> list[str] | None:
        if self.cache is None:
            return None
        return self.cache.get_expansion(query, method)

    def _store(self, query: str, method: ExpansionMethod, variants: list[str]) -> None:
        if self.cache is not None:
            self.cache.set_expansion(query, method, variants)

    def expand_prf(self, query: str, top_contents: list[str], term_count: int = PRF_TERM_COUNT) -> list[ExpandedQuery]:
        # Cached on query alone, so a stale variant can outlive a re-index until TTL expiry
        variants = self._cached(query, ExpansionMethod.PRF)
        if variants is None:
            terms = extract_key_terms(top_contents, query, term_count) if top_contents else []
            variants = [f"{query} {' '.join(terms)}"] if terms else []
            if top_contents:
                self._store(query, ExpansionMethod.PRF, variants)

        expanded = [_original(query)]
        expanded += [ExpandedQuery(v, EXPANDED_QUERY_WEIGHT, QuerySource.PRF) for v in variants]
        return expanded

    async def expand_llm(self, query: str, max_variants: int = EXPANSION_MAX_VARIANTS) -> list[ExpandedQuery]:
        expanded = [_original(query)]

        variants = self._cached(query, ExpansionMethod.LLM)
        if variants is None:
            if not await self.check_available():
                _logger.debug("LLM query expansion unavailable")
                return expanded
            try:
                reply = await self.client.generate(
                    self.model,
                    VARIANTS_PROMPT.format(count=max_variants, query=query),
                    temperature=EXPANSION_TEMPERATURE,
                    max_tokens=EXPANSION_MAX_TOKENS,
                    timeout=self.timeout,
                )
                variants = parse_variants(reply, query, max_variants)
            except Exception as e:
                _logger.debug("LLM query expansion failed", error=str(e))
                return expanded
            self._store(query, ExpansionMethod.LLM, variants)

        expanded += [ExpandedQuery(v, EXPANDED_QUERY_WEIGHT, QuerySource.LLM) for v in variants]
        return expanded

    async def expand(
        self,
        query: str,
        top_contents: list[str],
        method: ExpansionMethod = ExpansionMethod.PRF,
        term_count: int = PRF_TERM_COUNT,
        max_variants: int = EXPANSION_MAX_VARIANTS,
    ) -> list[ExpandedQuery]:
        match method:
            case ExpansionMethod.PRF:
                return self.expand_prf(query, top_contents, term_count)
            case ExpansionMethod.LLM:
                return await self.expand_llm(query, max_variants)
            case ExpansionMethod.BOTH:
                prf = self.expand_prf(query, top_contents, term_count)
                llm = await self.expand_llm(query, max_variants)
                return prf + [q for q in llm if q.source != QuerySource.ORIGINAL]
        return [_original(query)]

    async def close(self) -> None:
        await self.client.close()
