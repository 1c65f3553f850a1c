# --- Fusion ---

RRF_K = 60
RRF_OVERFETCH_FACTOR = 2
ORIGINAL_QUERY_MULTIPLIER = 2.0

# rank -> multiplicative bonus applied to a fused contribution
TOP_RANK_BONUS = {0: 1.15, 1: 1.10, 2: 1.05}


# --- Position-aware blending ---
# (last rank of band, retrieval weight, oracle weight); ranks past the last band use FALLBACK

BLEND_BANDS: tuple[tuple[int, float, float], ...] = (
    (3, 0.75, 0.25),
    (10, 0.60, 0.40),
)
BLEND_FALLBACK = (0.40, 0.60)

# cosine distance spans [0, 2]
COSINE_DISTANCE_RANGE = 2.0


# --- Oracle ---

OLLAMA_URL = "http://localhost:11434"
RERANK_MODEL = "qwen3:0.6b"
EXPANSION_MODEL = "qwen3:1.7b"

RERANK_TOP_K = 30
RERANK_BATCH_SIZE = 5
RERANK_DOCUMENT_LIMIT = 1000  # chars of a document sent to the oracle
RERANK_TEMPERATURE = 0.1
RERANK_MAX_TOKENS = 16
NEUTRAL_SCORE = 0.5

EXPANSION_TEMPERATURE = 0.7
EXPANSION_MAX_TOKENS = 256
EXPANSION_TIMEOUT = 60.0
EXPANSION_MAX_VARIANTS = 3
PRF_TOP_K = 5
PRF_TERM_COUNT = 5
ORIGINAL_QUERY_WEIGHT = 2.0
EXPANDED_QUERY_WEIGHT = 1.0

PROBE_TIMEOUT = 2.0  # seconds
REQUEST_TIMEOUT = 30.0  # seconds


# --- Caching ---

CACHE_MAX_ENTRIES = 1000
SEARCH_CACHE_MAX_ENTRIES = 500
RERANK_CACHE_FACTOR = 2
CACHE_TTL_SECONDS = 900  # 15 min
CACHE_CLEANUP_INTERVAL = 300.0  # 5 min
CACHE_KEY_LENGTH = 16  # hex chars of sha256 kept


# --- Search ---

DEFAULT_LIMIT = 20
EMBEDDING_TEXT_LIMIT = 8000
