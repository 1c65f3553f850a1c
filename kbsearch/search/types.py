from dataclasses import dataclass
from enum import StrEnum


class SourceType(StrEnum):
    """Retrieval backend kind; decides how raw scores are normalized."""

    LEXICAL = "lexical"
    VECTOR = "vector"


class SearchMode(StrEnum):
    FAST = "fast"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"
    ADVANCED = "advanced"


class ExpansionMethod(StrEnum):
    PRF = "prf"
    LLM = "llm"
    BOTH = "both"


class QuerySource(StrEnum):
    ORIGINAL = "original"
    PRF = "prf"
    LLM = "llm"


@dataclass(frozen=True)
class SearchResult:
    """One matched location in the corpus.

    `score` means different things at different pipeline stages: raw backend
    relevance, normalized similarity, fused RRF score or blended rerank score.
    `distance` is only set by vector backends (cosine distance, lower is closer).
    """

    file_path: str
    line_number: int
    preview: str = ""
    score: float = 0.0
    title: str | None = None
    distance: float | None = None
    source_key: str = ""

    # Pipeline annotations
    retrieval_method: SourceType | None = None
    query_source: QuerySource | None = None

    def __post_init__(self):
        if not self.source_key:
            object.__setattr__(self, "source_key", f"{self.file_path}:{self.line_number}")


@dataclass(frozen=True)
class RerankedResult(SearchResult):
    """Search result after the rerank stage; `score` equals `blended_score`."""

    oracle_score: float | None = None
    retrieval_rank: int = 0
    blended_score: float = 0.0


@dataclass
class RetrievalSource:
    """One labeled batch of results to fuse. List order is the rank."""

    results: list[SearchResult]
    weight: float
    source_type: SourceType
    is_original_query: bool = False


@dataclass
class ExpandedQuery:
    query: str
    weight: float
    source: QuerySource = QuerySource.ORIGINAL


@dataclass
class Capabilities:
    lexical: bool
    vector: bool
    expansion_prf: bool
    expansion_llm: bool
    reranking: bool
