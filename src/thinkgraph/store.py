"""JSONL-backed knowledge graph store.

The log file holds one JSON record per line, tagged by ``_type``:

    {"name": ..., "entityType": ..., "observations": [...], "_type": "entity", "_savedAt": ...}
    {"from": ..., "to": ..., "relationType": ..., "_type": "relation", "_savedAt": ...}

Loading streams the file line by line in a worker thread. Malformed lines are
logged and skipped; entity lines whose observations are plain strings (the
legacy format) are upgraded to timestamped observations. Every mutating
operation rewrites the whole file before returning.

Durability is best-effort: I/O errors are logged, never raised. The store
assumes a single writer process; concurrent writers race and the last save
wins.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections import Counter
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, AsyncIterator, Iterable

from pydantic import ValidationError

from .autolink import AutoLinker
from .constants import DEFAULT_SEARCH_LIMIT, DEFAULT_SIMILARITY_THRESHOLD, SIMILAR_WORD_MIN_LENGTH
from .graph import KnowledgeGraph, ObservationPredicate
from .models import (
    Entity,
    EntityRecord,
    MemoryQuery,
    Observation,
    QueryHit,
    Relation,
    parse_record,
    utc_now_iso,
)
from .pruning import PruneRequest, prune
from .semantic import SearchHit, SemanticSearch
from .timeutil import ensure_utc, parse_timestamp

if TYPE_CHECKING:
    from .config import Settings
    from .embeddings import EmbeddingBackend

logger = logging.getLogger(__name__)


class JsonlStore:
    """Knowledge graph persisted to a newline-delimited JSON log.

    Construct one per process (or per test) and pass it to consumers. Use
    ``JsonlStore.open()`` to guarantee a final save on every exit path.
    """

    def __init__(
        self,
        file_path: Path,
        auto_link: bool = False,
        embedding_backend: EmbeddingBackend | None = None,
    ):
        self.file_path = Path(file_path)
        self.auto_link = auto_link
        self._embedding_backend = embedding_backend
        self._graph = KnowledgeGraph()
        self._semantic = SemanticSearch(self._graph, embedding_backend)
        self._linker = AutoLinker()
        self._load_task: asyncio.Task | None = None
        self._loaded = False
        self._save_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        embedding_backend: EmbeddingBackend | None = None,
    ) -> "JsonlStore":
        return cls(
            settings.memory_path,
            auto_link=settings.auto_link,
            embedding_backend=embedding_backend,
        )

    @classmethod
    @asynccontextmanager
    async def open(cls, file_path: Path, **kwargs) -> AsyncIterator["JsonlStore"]:
        """Load a store and save it on exit, including when the body raises."""
        store = cls(file_path, **kwargs)
        await store.ensure_loaded()
        try:
            yield store
        finally:
            await store.close()

    @property
    def graph(self) -> KnowledgeGraph:
        """The in-memory graph. Read from it; mutate through the store."""
        return self._graph

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    # --- Loading ---

    async def ensure_loaded(self) -> None:
        """Wait for the initial load, starting it if needed.

        Concurrent callers share one in-flight load; once loaded this returns
        immediately.
        """
        if self._loaded:
            return
        if self._load_task is None:
            self._load_task = asyncio.ensure_future(self._load())
        await self._load_task

    async def reload(self) -> dict:
        """Discard in-memory state and load the file again.

        Use after the file was edited or restored outside this process.
        """
        self._loaded = False
        self._load_task = asyncio.ensure_future(self._load())
        await self._load_task
        return {
            "status": "reloaded",
            "entities": len(self._graph),
            "relations": self._graph.relation_count(),
        }

    async def _load(self) -> None:
        try:
            graph = await asyncio.to_thread(self._read_log)
        except (OSError, ValueError) as e:
            logger.error(f"Error loading memory from {self.file_path}: {e}")
            graph = KnowledgeGraph()

        self._graph = graph
        self._semantic = SemanticSearch(graph, self._embedding_backend)
        self._loaded = True

    def _read_log(self) -> KnowledgeGraph:
        """Stream the log into a fresh graph. Runs in a worker thread."""
        graph = KnowledgeGraph()

        if not self.file_path.exists():
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            self.file_path.write_text("", encoding="utf-8")
            logger.info(f"Created empty memory file at {self.file_path}")
            return graph

        # Relations are applied after all entities so line order does not matter
        pending_relations: list[Relation] = []
        skipped = 0

        # Decoded per line so one bad byte only costs its own line
        with self.file_path.open("rb") as f:
            for line_no, raw in enumerate(f, start=1):
                try:
                    line = raw.decode("utf-8")
                except UnicodeDecodeError as e:
                    skipped += 1
                    logger.warning(
                        f"Skipping malformed line {line_no} in {self.file_path}: invalid UTF-8 ({e.reason})"
                    )
                    continue
                if not line.strip():
                    continue
                try:
                    record = parse_record(line)
                except ValidationError as e:
                    skipped += 1
                    first = e.errors(include_url=False)[0]
                    logger.warning(
                        f"Skipping malformed line {line_no} in {self.file_path}: {first['msg']}"
                    )
                    continue

                if isinstance(record, EntityRecord):
                    if not graph.add_entity(record.to_entity()):
                        logger.debug(f"Duplicate entity '{record.name}' on line {line_no}, keeping first")
                else:
                    pending_relations.append(record.to_relation())

        for relation in pending_relations:
            if not graph.add_relation(relation):
                logger.debug(f"Dropped relation {relation.triple}: duplicate or missing endpoint")

        if skipped:
            logger.warning(
                f"Loaded {len(graph)} entities, skipped {skipped} malformed lines"
            )
        return graph

    # --- Saving ---

    def _serialize(self) -> list[str]:
        saved_at = utc_now_iso()
        lines = []
        for entity in self._graph.entities():
            lines.append(_dumps(entity.to_record(saved_at)))
        for relation in self._graph.relations():
            lines.append(_dumps(relation.to_record(saved_at)))
        return lines

    def _write_lines(self, lines: list[str]) -> bool:
        tmp_path = self.file_path.with_name(f".{self.file_path.name}.{os.getpid()}.tmp")
        try:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8", newline="\n") as f:
                for line in lines:
                    f.write(line)
                    f.write("\n")
            os.replace(tmp_path, self.file_path)
            return True
        except OSError as e:
            logger.error(f"Error saving memory to {self.file_path}: {e}")
            try:
                tmp_path.unlink(missing_ok=True)
            except OSError:
                logger.debug(f"Could not remove temp file {tmp_path}")
            return False

    async def save(self) -> bool:
        """Rewrite the log file from the in-memory graph.

        Returns False if the write failed (the error is logged). A store that
        never finished loading does not save, so it cannot clobber the file.
        """
        if not self._loaded:
            logger.debug("Save skipped: store not loaded")
            return False
        lines = self._serialize()
        async with self._save_lock:
            return await asyncio.to_thread(self._write_lines, lines)

    async def close(self) -> None:
        """Final save. Call on shutdown (``open()`` does this for you)."""
        await self.save()

    async def _commit(self, changed: bool) -> None:
        if changed:
            await self.save()

    # --- Observation-level API ---

    async def add(
        self,
        entity_name: str,
        text: str,
        version: str | None = None,
    ) -> Observation:
        """Record an observation, creating the entity if it is unknown.

        A brand-new entity is auto-linked to existing ones when auto-linking
        is enabled. Re-adding text the entity already has returns the existing
        observation unchanged.
        """
        await self.ensure_loaded()

        is_new = not self._graph.has_entity(entity_name)
        if is_new:
            self._graph.add_entity(Entity(name=entity_name))
        entity = self._graph.get_entity(entity_name)

        for existing in entity.observations:
            if existing.text == text:
                return existing

        self._graph.add_observations(entity_name, [text], version=version)
        observation = entity.observations[-1]

        if is_new and self.auto_link:
            self._linker.link(self._graph, entity_name, text)

        await self.save()
        return observation

    async def query(self, query: MemoryQuery | None = None, **criteria) -> list[QueryHit]:
        """Find observations matching keyword, time range and tag filters.

        ``tag`` is a case-insensitive substring of the observation text.
        Observations carry no agent, so any ``agent`` filter matches nothing.
        """
        await self.ensure_loaded()
        if query is None:
            query = MemoryQuery.model_validate(criteria)
        if query.agent:
            return []

        keyword = query.keyword.lower() if query.keyword else None
        tag = query.tag.lower() if query.tag else None
        after = ensure_utc(query.time.after) if query.time and query.time.after else None
        before = ensure_utc(query.time.before) if query.time and query.time.before else None

        hits: list[QueryHit] = []
        for entity, obs in self._graph.iter_observations():
            text = obs.text.lower()
            if keyword and keyword not in text:
                continue
            if tag and tag not in text:
                continue
            if after or before:
                try:
                    ts = parse_timestamp(obs.timestamp)
                except ValueError:
                    continue
                if after and ts < after:
                    continue
                if before and ts > before:
                    continue
            hits.append(QueryHit(entity_name=entity.name, observation=obs))

        if query.limit and query.limit > 0:
            return hits[:query.limit]
        return hits

    async def prune(self, request: PruneRequest, dry_run: bool = False) -> int:
        """Delete or deprecate matching observations. Returns the count pruned."""
        await self.ensure_loaded()
        count = prune(self._graph, request, dry_run=dry_run)
        await self._commit(count > 0 and not dry_run)
        return count

    async def delete_observations_where(self, predicate: ObservationPredicate) -> int:
        """Remove observations selected by ``predicate(entity, observation)``."""
        await self.ensure_loaded()
        removed = self._graph.delete_observations_where(predicate)
        await self._commit(removed > 0)
        return removed

    # --- Entity / relation API ---

    async def add_entity(self, entity: Entity) -> bool:
        await self.ensure_loaded()
        added = self._graph.add_entity(entity)
        await self._commit(added)
        return added

    async def create_entities(self, entities: Iterable[dict]) -> dict:
        """Create several entities with a single save.

        Accepts dicts with ``name``, ``entityType`` and ``observations``.
        """
        await self.ensure_loaded()
        created, existing = [], []
        for data in entities:
            entity = Entity.model_validate(data)
            if self._graph.add_entity(entity):
                created.append(entity.name)
            else:
                existing.append(entity.name)
        await self._commit(bool(created))
        return {"created": created, "existing": existing}

    async def delete_entity(self, name: str) -> bool:
        await self.ensure_loaded()
        deleted = self._graph.delete_entity(name)
        await self._commit(deleted)
        return deleted

    async def delete_entities(self, names: Iterable[str]) -> int:
        await self.ensure_loaded()
        deleted = sum(1 for name in names if self._graph.delete_entity(name))
        await self._commit(deleted > 0)
        return deleted

    async def update_entity(
        self,
        name: str,
        entity_type: str | None = None,
        observations: list[str] | None = None,
    ) -> bool:
        await self.ensure_loaded()
        updated = self._graph.update_entity(name, entity_type, observations)
        await self._commit(updated)
        return updated

    async def add_observations(
        self,
        name: str,
        texts: list[str],
        version: str | None = None,
    ) -> list[str]:
        await self.ensure_loaded()
        added = self._graph.add_observations(name, texts, version=version)
        await self._commit(bool(added))
        return added

    async def delete_observations(self, name: str, texts: list[str]) -> bool:
        await self.ensure_loaded()
        found = self._graph.delete_observations(name, texts)
        await self._commit(found)
        return found

    async def add_relation(self, relation: Relation) -> bool:
        await self.ensure_loaded()
        added = self._graph.add_relation(relation)
        await self._commit(added)
        return added

    async def create_relations(self, relations: Iterable[dict]) -> dict:
        """Create several relations with a single save.

        Returns dict with 'created' and 'failed' lists; failures carry a reason.
        """
        await self.ensure_loaded()
        created, failed = [], []
        for data in relations:
            relation = Relation.model_validate(data)
            if self._graph.add_relation(relation):
                created.append(relation.to_dict())
            else:
                failed.append({**relation.to_dict(), "reason": self._relation_failure(relation)})
        await self._commit(bool(created))
        return {
            "created": created,
            "failed": failed,
            "summary": f"Created {len(created)}, failed {len(failed)}",
        }

    def _relation_failure(self, relation: Relation) -> str:
        if not self._graph.has_entity(relation.from_entity):
            return f"from entity not found: {relation.from_entity}"
        if not self._graph.has_entity(relation.to_entity):
            return f"to entity not found: {relation.to_entity}"
        return "relation already exists"

    async def delete_relation(self, relation: Relation) -> bool:
        await self.ensure_loaded()
        deleted = self._graph.delete_relation(relation)
        await self._commit(deleted)
        return deleted

    async def update_relation(self, relation: Relation) -> str | None:
        await self.ensure_loaded()
        outcome = self._graph.update_relation(relation)
        await self._commit(outcome is not None)
        return outcome

    async def import_graph(self, data: dict) -> dict:
        """Merge a ``{"entities": [...], "relations": [...]}`` document.

        Existing entities are left untouched. One save at the end.
        """
        await self.ensure_loaded()
        entities = [Entity.model_validate(e) for e in data.get("entities") or []]
        relations = [Relation.model_validate(r) for r in data.get("relations") or []]

        # Entities first, so relations may point at incoming or existing entities
        entities_added = sum(1 for e in entities if self._graph.add_entity(e))
        relations_added = sum(1 for r in relations if self._graph.add_relation(r))
        await self._commit(entities_added > 0 or relations_added > 0)
        return {"entities_added": entities_added, "relations_added": relations_added}

    # --- Read API ---

    async def search_nodes(self, query: str) -> list[Entity]:
        await self.ensure_loaded()
        return self._graph.search_nodes(query)

    async def get_entities(self, names: Iterable[str]) -> list[Entity]:
        await self.ensure_loaded()
        return self._graph.get_entities(names)

    async def read_graph(self) -> dict:
        await self.ensure_loaded()
        return self._graph.read_graph()

    async def find_similar(self, name: str) -> list[str]:
        """Entity names that look like ``name``.

        An exact case-insensitive match is returned alone. Otherwise names
        containing (or contained in) ``name``, or sharing a word longer than
        two characters, are returned.
        """
        await self.ensure_loaded()
        needle = name.lower().strip()
        needle_words = needle.split()

        results = []
        for entity_name in self._graph.entity_names():
            candidate = entity_name.lower()
            if candidate == needle:
                return [entity_name]
            if candidate in needle or needle in candidate:
                results.append(entity_name)
                continue
            if any(
                word in needle_words and len(word) >= SIMILAR_WORD_MIN_LENGTH
                for word in candidate.split()
            ):
                results.append(entity_name)
        return results

    async def stats(self) -> dict:
        await self.ensure_loaded()
        entities = self._graph.entities()
        return {
            "file": str(self.file_path),
            "entity_count": len(entities),
            "relation_count": self._graph.relation_count(),
            "observation_count": sum(len(e.observations) for e in entities),
            "embedded_count": sum(1 for e in entities if e.embedding is not None),
            "types": dict(Counter(e.entity_type for e in entities)),
        }

    # --- Semantic search ---

    def _embedded_count(self) -> int:
        return sum(1 for e in self._graph.entities() if e.embedding is not None)

    async def semantic_search(
        self,
        query: str,
        threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        limit: int = DEFAULT_SEARCH_LIMIT,
        backfill: bool = True,
    ) -> list[SearchHit]:
        """Rank entities by embedding similarity, falling back to substring search.

        Saves when backfill produced new embeddings.
        """
        await self.ensure_loaded()
        before = self._embedded_count()
        hits = await self._semantic.search(query, threshold=threshold, limit=limit, backfill=backfill)
        await self._commit(self._embedded_count() != before)
        return hits

    async def backfill_embeddings(self) -> int:
        await self.ensure_loaded()
        embedded = await self._semantic.backfill()
        await self._commit(embedded > 0)
        return embedded

    async def clear_embeddings(self, names: Iterable[str] | None = None) -> int:
        """Drop stored vectors (all, or for ``names``) so they are re-embedded."""
        await self.ensure_loaded()
        if names is None:
            cleared = self._semantic.clear_embeddings()
        else:
            cleared = sum(1 for name in names if self._semantic.clear_embedding(name))
        await self._commit(cleared > 0)
        return cleared


def _dumps(record: dict) -> str:
    return json.dumps(record, ensure_ascii=False, separators=(",", ":"))
