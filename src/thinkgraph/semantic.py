"""Semantic search over the knowledge graph.

Per query:
1. Make sure the embedding backend is available (lazy init). If not, fall back
   to substring search with every hit scored 1.0.
2. Embed the query. A None vector also falls back.
3. Backfill: embed every entity that has observations but no vector yet, in
   sequential batches. A failing batch is logged and skipped.
4. Rank every embedded entity by cosine similarity, keep those at or above
   the threshold, best first, up to the limit.

Backfill never refreshes an existing vector. Clear it first to re-embed an
entity whose observations changed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .constants import (
    DEFAULT_SEARCH_LIMIT,
    DEFAULT_SIMILARITY_THRESHOLD,
    EMBEDDING_BATCH_SIZE,
    FALLBACK_SIMILARITY,
)
from .embeddings import cosine_similarity

if TYPE_CHECKING:
    from .embeddings import EmbeddingBackend
    from .graph import KnowledgeGraph
    from .models import Entity

logger = logging.getLogger(__name__)


@dataclass
class SearchHit:
    """An entity matched by semantic search."""

    entity: Entity
    similarity: float
    degraded: bool = False  # True when produced by the substring fallback

    def to_dict(self) -> dict:
        data = self.entity.to_dict()
        data.pop("embedding", None)
        data["similarity"] = round(self.similarity, 4)
        return data


def entity_document(entity: Entity) -> str:
    """Text embedded for an entity: name, type, then each observation."""
    return "\n".join([entity.name, entity.entity_type, *entity.observation_texts])


class SemanticSearch:
    """Embedding-backed ranking with substring fallback."""

    def __init__(
        self,
        graph: KnowledgeGraph,
        backend: EmbeddingBackend | None,
        batch_size: int = EMBEDDING_BATCH_SIZE,
    ):
        self._graph = graph
        self._backend = backend
        self._batch_size = batch_size

    async def _ensure_backend(self) -> bool:
        if self._backend is None:
            return False
        if self._backend.is_available:
            return True
        try:
            return await asyncio.to_thread(self._backend.initialize)
        except (RuntimeError, OSError, ValueError) as e:
            logger.warning(f"Embedding backend initialization failed: {e}")
            return False

    def _fallback(self, query: str) -> list[SearchHit]:
        # Every substring match, unranked and untruncated
        return [
            SearchHit(entity=e, similarity=FALLBACK_SIMILARITY, degraded=True)
            for e in self._graph.search_nodes(query)
        ]

    async def _embed(self, texts: list[str], input_type) -> list[list[float] | None]:
        return await asyncio.to_thread(self._backend.embed, texts, input_type)

    async def backfill(self) -> int:
        """Embed entities lacking a vector. Returns how many were embedded."""
        if not await self._ensure_backend():
            return 0

        pending = [
            e for e in self._graph.entities()
            if e.embedding is None and e.observations
        ]
        embedded = 0
        for start in range(0, len(pending), self._batch_size):
            batch = pending[start:start + self._batch_size]
            try:
                vectors = await self._embed([entity_document(e) for e in batch], "document")
            except (RuntimeError, OSError, ValueError, TypeError) as e:
                logger.warning(
                    f"Embedding batch {start // self._batch_size + 1} failed, skipping "
                    f"{len(batch)} entities: {e}"
                )
                continue

            for entity, vector in zip(batch, vectors):
                if vector is not None:
                    entity.embedding = list(vector)
                    embedded += 1

        if pending:
            logger.debug(f"Backfilled {embedded}/{len(pending)} entity embeddings")
        return embedded

    async def search(
        self,
        query: str,
        threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        limit: int = DEFAULT_SEARCH_LIMIT,
        backfill: bool = True,
    ) -> list[SearchHit]:
        """Rank entities by similarity to ``query``.

        Raises:
            EmbeddingDimensionError: If a stored vector's dimension differs
                from the query vector's (mixed embedding models).
        """
        if not await self._ensure_backend():
            logger.info("Embedding backend unavailable, using substring search")
            return self._fallback(query)

        try:
            query_vectors = await self._embed([query], "query")
        except (RuntimeError, OSError, ValueError, TypeError) as e:
            logger.warning(f"Query embedding failed: {e}")
            query_vectors = [None]
        query_vector = query_vectors[0] if query_vectors else None
        if query_vector is None:
            logger.info("Query embedding unavailable, using substring search")
            return self._fallback(query)

        if backfill:
            await self.backfill()

        hits = []
        for entity in self._graph.entities():
            if entity.embedding is None:
                continue
            similarity = cosine_similarity(query_vector, entity.embedding)
            if similarity >= threshold:
                hits.append(SearchHit(entity=entity, similarity=similarity))

        hits.sort(key=lambda h: h.similarity, reverse=True)
        return hits[:limit] if limit > 0 else hits

    def clear_embedding(self, name: str) -> bool:
        """Drop an entity's vector so the next backfill re-embeds it."""
        entity = self._graph.get_entity(name)
        if entity is None or entity.embedding is None:
            return False
        entity.embedding = None
        return True

    def clear_embeddings(self) -> int:
        cleared = 0
        for entity in self._graph.entities():
            if entity.embedding is not None:
                entity.embedding = None
                cleared += 1
        return cleared
