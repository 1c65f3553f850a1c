import json
from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from kbsearch.constants import (
    CACHE_TTL_SECONDS,
    DEFAULT_LIMIT,
    EXPANSION_MAX_VARIANTS,
    EXPANSION_MODEL,
    OLLAMA_URL,
    ORIGINAL_QUERY_MULTIPLIER,
    PRF_TERM_COUNT,
    PRF_TOP_K,
    PROBE_TIMEOUT,
    REQUEST_TIMEOUT,
    RERANK_BATCH_SIZE,
    RERANK_MODEL,
    RERANK_TOP_K,
    RRF_K,
    SEARCH_CACHE_MAX_ENTRIES,
)
from kbsearch.logging import get_logger
from kbsearch.search.types import ExpansionMethod, SearchMode

KBSEARCH_DIR = Path.home() / ".kbsearch"
SETTINGS_PATH = KBSEARCH_DIR / "settings.json"

_logger = get_logger(__name__)


def load_user_settings() -> dict:
    if not SETTINGS_PATH.exists():
        return {}
    try:
        return json.loads(SETTINGS_PATH.read_text())
    except (json.JSONDecodeError, OSError):
        _logger.warning("Failed to load user settings", exc_info=True)
        return {}


def save_user_settings(settings: dict) -> None:
    SETTINGS_PATH.parent.mkdir(parents=True, exist_ok=True)
    SETTINGS_PATH.write_text(json.dumps(settings, indent=2))


class QueryExpansionConfig(BaseModel):
    enabled: bool = True
    method: ExpansionMethod = ExpansionMethod.PRF
    prf_top_k: int = Field(default=PRF_TOP_K, gt=0)
    prf_term_count: int = Field(default=PRF_TERM_COUNT, gt=0)
    llm_model: str = EXPANSION_MODEL
    max_variants: int = Field(default=EXPANSION_MAX_VARIANTS, gt=0)


class RerankingConfig(BaseModel):
    # Off by default: needs a pulled oracle model
    enabled: bool = False
    model: str = RERANK_MODEL
    top_k: int = Field(default=RERANK_TOP_K, gt=0)
    batch_size: int = Field(default=RERANK_BATCH_SIZE, gt=0)
    use_position_blending: bool = True


class HybridConfig(BaseModel):
    lexical_weight: float = 0.5
    vector_weight: float = 0.5
    use_position_bonus: bool = True
    k: int = Field(default=RRF_K, gt=0)
    original_query_multiplier: float = ORIGINAL_QUERY_MULTIPLIER

    @field_validator("lexical_weight", "vector_weight", "original_query_multiplier")
    @classmethod
    def _validate_weight(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"weights must be non-negative, got {v}")
        return v


class CachingConfig(BaseModel):
    enabled: bool = True
    ttl_seconds: float = Field(default=CACHE_TTL_SECONDS, gt=0)
    max_entries: int = Field(default=SEARCH_CACHE_MAX_ENTRIES, gt=0)


class SearchConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="KBSEARCH_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        validate_assignment=True,
    )

    default_mode: SearchMode = SearchMode.HYBRID
    default_limit: int = Field(default=DEFAULT_LIMIT, gt=0)

    # Ollama-compatible oracle server
    ollama_url: str = OLLAMA_URL
    probe_timeout: float = Field(default=PROBE_TIMEOUT, gt=0)
    request_timeout: float = Field(default=REQUEST_TIMEOUT, gt=0)

    query_expansion: QueryExpansionConfig = Field(default_factory=QueryExpansionConfig)
    reranking: RerankingConfig = Field(default_factory=RerankingConfig)
    hybrid: HybridConfig = Field(default_factory=HybridConfig)
    caching: CachingConfig = Field(default_factory=CachingConfig)

    @field_validator("default_mode", mode="before")
    @classmethod
    def _normalize_mode(cls, v):
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("ollama_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


PERSIST_KEYS = frozenset(
    {
        "default_mode",
        "default_limit",
        "ollama_url",
        "query_expansion",
        "reranking",
        "hybrid",
        "caching",
    }
)


def get_config() -> SearchConfig:
    settings = load_user_settings()

    # init args (settings.json) > env vars > defaults
    overrides = {k: settings[k] for k in PERSIST_KEYS if k in settings}
    return SearchConfig(**overrides)
