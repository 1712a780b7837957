"""Embedding backends and vector math.

The semantic search layer depends only on the ``EmbeddingBackend`` contract:
given texts and an input type, return one vector (or None on failure) per text.
``SentenceTransformerBackend`` is the local implementation; it loads the model
lazily so importing thinkgraph stays cheap. ``CachedEmbeddingBackend`` puts a
SQLite-backed cache in front of any backend.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Literal, Protocol, Sequence, runtime_checkable

import numpy as np

from .constants import DEFAULT_EMBEDDING_DIMENSION, DEFAULT_EMBEDDING_MODEL

if TYPE_CHECKING:
    from .config import Settings

logger = logging.getLogger(__name__)

InputType = Literal["query", "document"]
Vector = list[float]


class EmbeddingDimensionError(ValueError):
    """Two vectors of different dimensionality were compared.

    Signals mixed embedding models or a misconfigured dimension, never a
    transient failure.
    """


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two equal-length vectors.

    Returns 0.0 if either vector has zero norm.

    Raises:
        EmbeddingDimensionError: If the vectors differ in length.
    """
    if len(a) != len(b):
        raise EmbeddingDimensionError(
            f"Vectors must have the same dimensions (got {len(a)} and {len(b)})"
        )

    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    similarity = float(np.dot(va, vb) / (norm_a * norm_b))
    # Clamp floating-point overshoot
    return max(-1.0, min(1.0, similarity))


class VectorStatus(Enum):
    """Status of the embedding backend."""

    READY = "ready"
    DEGRADED = "degraded"  # Not yet loaded, or model load failed
    UNAVAILABLE = "unavailable"  # Dependency missing


@dataclass
class VectorHealth:
    """Health status of an embedding backend."""

    status: VectorStatus
    error: str | None = None
    embedding_model: str | None = None
    dimension: int | None = None


@runtime_checkable
class EmbeddingBackend(Protocol):
    """Contract for anything that turns text into vectors."""

    @property
    def is_available(self) -> bool: ...

    def initialize(self) -> bool:
        """Try to become available. Returns the resulting availability."""
        ...

    def embed(self, texts: list[str], input_type: InputType) -> list[Vector | None]:
        """Return one vector or None per input text, in order."""
        ...


class SentenceTransformerBackend:
    """Local embeddings via sentence-transformers.

    The model is loaded on the first ``initialize()`` (2-3 second cold start),
    not in the constructor.
    """

    def __init__(
        self,
        model_name: str = DEFAULT_EMBEDDING_MODEL,
        dimension: int = DEFAULT_EMBEDDING_DIMENSION,
    ):
        self._model_name = model_name
        self._dimension = dimension
        self._model = None
        self._model_loaded = False
        self.health = VectorHealth(
            status=VectorStatus.DEGRADED,
            error="Embedding model loads on first use",
        )

    @property
    def model_name(self) -> str:
        return self._model_name

    @property
    def dimension(self) -> int:
        return self._dimension

    @property
    def is_available(self) -> bool:
        return self._model_loaded and self._model is not None

    def initialize(self) -> bool:
        """Try to load the embedding model. Returns True on success."""
        if self._model_loaded:
            return True

        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:
            self.health = VectorHealth(
                status=VectorStatus.UNAVAILABLE,
                error=f"sentence-transformers not installed: {e}",
            )
            logger.warning(f"Semantic search unavailable: {e}")
            return False

        try:
            model = SentenceTransformer(self._model_name)
        except (OSError, RuntimeError, ValueError) as e:
            self.health = VectorHealth(
                status=VectorStatus.DEGRADED,
                error=f"Embedding model failed: {e}",
            )
            logger.warning(f"Embedding model unavailable: {e}")
            return False

        model_dims = model.get_sentence_embedding_dimension()
        if model_dims is not None and model_dims != self._dimension:
            logger.warning(
                f"Model {self._model_name} produces {model_dims}-dim vectors, "
                f"configured for {self._dimension}; mismatched vectors will be dropped"
            )

        self._model = model
        self._model_loaded = True
        self.health = VectorHealth(
            status=VectorStatus.READY,
            embedding_model=self._model_name,
            dimension=self._dimension,
        )
        return True

    def embed(self, texts: list[str], input_type: InputType) -> list[Vector | None]:
        if not texts:
            return []
        if not self.is_available and not self.initialize():
            return [None] * len(texts)

        kwargs = {}
        # Models with asymmetric query/document prompts declare them by name
        prompts = getattr(self._model, "prompts", None) or {}
        if input_type in prompts:
            kwargs["prompt_name"] = input_type

        try:
            encoded = self._model.encode(texts, **kwargs)
        except (RuntimeError, ValueError, TypeError) as e:
            logger.warning(f"Embedding generation failed for {len(texts)} texts: {e}")
            return [None] * len(texts)

        results: list[Vector | None] = []
        for row in encoded:
            vector = [float(x) for x in row]
            if len(vector) != self._dimension:
                logger.warning(
                    f"Dropping {len(vector)}-dim embedding (expected {self._dimension})"
                )
                results.append(None)
            else:
                results.append(vector)
        return results


class EmbeddingCache:
    """Persistent text -> vector cache in a small SQLite database.

    Vectors are stored as float32 blobs in sqlite-vec's wire format.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: sqlite3.Connection | None = None
        self._init_db()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(
                str(self.db_path), timeout=30.0, check_same_thread=False
            )
            self._conn.execute("PRAGMA journal_mode=WAL")
        return self._conn

    def _init_db(self) -> None:
        conn = self._get_conn()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS embeddings (
                cache_key TEXT PRIMARY KEY,
                dimension INTEGER NOT NULL,
                embedding BLOB NOT NULL,
                created_at TEXT DEFAULT (datetime('now'))
            )
        """)
        conn.commit()

    def get(self, key: str) -> Vector | None:
        row = self._get_conn().execute(
            "SELECT embedding FROM embeddings WHERE cache_key = ?", (key,)
        ).fetchone()
        if row is None:
            return None
        return np.frombuffer(row[0], dtype=np.float32).astype(float).tolist()

    def put_many(self, items: list[tuple[str, Vector]]) -> None:
        if not items:
            return

        import sqlite_vec

        conn = self._get_conn()
        conn.executemany(
            """
            INSERT OR REPLACE INTO embeddings (cache_key, dimension, embedding)
            VALUES (?, ?, ?)
            """,
            [(key, len(vec), sqlite_vec.serialize_float32(vec)) for key, vec in items],
        )
        conn.commit()

    def count(self) -> int:
        return self._get_conn().execute("SELECT COUNT(*) FROM embeddings").fetchone()[0]

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None


class CachedEmbeddingBackend:
    """Serves cached vectors and only forwards misses to the wrapped backend."""

    def __init__(self, backend: EmbeddingBackend, cache: EmbeddingCache, namespace: str):
        self._backend = backend
        self._cache = cache
        self._namespace = namespace  # typically the model name

    @property
    def is_available(self) -> bool:
        return self._backend.is_available

    def initialize(self) -> bool:
        return self._backend.initialize()

    def _key(self, text: str, input_type: InputType) -> str:
        return f"{self._namespace}:{input_type}:{text}"

    def embed(self, texts: list[str], input_type: InputType) -> list[Vector | None]:
        results: list[Vector | None] = [None] * len(texts)
        misses: list[int] = []

        try:
            for i, text in enumerate(texts):
                cached = self._cache.get(self._key(text, input_type))
                if cached is None:
                    misses.append(i)
                else:
                    results[i] = cached
        except sqlite3.Error as e:
            logger.warning(f"Embedding cache read failed: {e}")
            misses = list(range(len(texts)))

        if not misses:
            return results

        generated = self._backend.embed([texts[i] for i in misses], input_type)
        to_store: list[tuple[str, Vector]] = []
        for i, vector in zip(misses, generated):
            results[i] = vector
            if vector is not None:
                to_store.append((self._key(texts[i], input_type), vector))

        try:
            self._cache.put_many(to_store)
        except sqlite3.Error as e:
            logger.warning(f"Embedding cache write failed: {e}")
        return results

    def close(self) -> None:
        self._cache.close()


def backend_from_settings(settings: Settings) -> EmbeddingBackend:
    """Sentence-transformers backend, behind the on-disk cache unless disabled."""
    backend = SentenceTransformerBackend(
        model_name=settings.embedding_model,
        dimension=settings.embedding_dimensions,
    )
    if not settings.use_embedding_cache:
        return backend

    try:
        cache = EmbeddingCache(settings.embedding_cache_path)
    except (sqlite3.Error, OSError) as e:
        logger.warning(f"Embedding cache disabled, could not open {settings.embedding_cache_path}: {e}")
        return backend
    return CachedEmbeddingBackend(backend, cache, namespace=settings.embedding_model)
