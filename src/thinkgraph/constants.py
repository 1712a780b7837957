"""Tunable constants shared across thinkgraph modules."""

# ─────────────────────────────────────────────────────────────────────────────
# Log file format
# ─────────────────────────────────────────────────────────────────────────────

RECORD_TYPE_FIELD = "_type"
SAVED_AT_FIELD = "_savedAt"
DEFAULT_ENTITY_TYPE = "default"  # Type given to entities created by add()

# ─────────────────────────────────────────────────────────────────────────────
# Pruning
# ─────────────────────────────────────────────────────────────────────────────

DEPRECATED_MARKER = "[DEPRECATED]"
PRUNE_PREVIEW_LIMIT = 10

# ─────────────────────────────────────────────────────────────────────────────
# Auto-linking
# ─────────────────────────────────────────────────────────────────────────────

SHARED_TOKEN_MIN_LENGTH = 4  # Name tokens must be longer than 3 chars
SIMILAR_WORD_MIN_LENGTH = 3  # find_similar word matches must exceed 2 chars

# ─────────────────────────────────────────────────────────────────────────────
# Semantic search
# ─────────────────────────────────────────────────────────────────────────────

DEFAULT_SIMILARITY_THRESHOLD = 0.7
DEFAULT_SEARCH_LIMIT = 10
EMBEDDING_BATCH_SIZE = 20
FALLBACK_SIMILARITY = 1.0

DEFAULT_EMBEDDING_MODEL = "all-MiniLM-L6-v2"
DEFAULT_EMBEDDING_DIMENSION = 384
