"""In-memory knowledge graph.

Pure data structure: no I/O. All mutation of entities and relations goes
through ``KnowledgeGraph`` so its invariants hold:

- entity names are unique and immutable; ``add_entity`` never upserts
- a relation exists only while both endpoints exist
- relations are de-duplicated by their (from, to, relationType) triple
"""

from typing import Callable, Iterable, Iterator

from .models import Entity, Observation, Relation


ObservationPredicate = Callable[[Entity, Observation], bool]


class KnowledgeGraph:
    """Entities keyed by name plus outgoing relation sets keyed by source name."""

    def __init__(self) -> None:
        self._entities: dict[str, Entity] = {}
        self._outgoing: dict[str, set[Relation]] = {}

    def __len__(self) -> int:
        return len(self._entities)

    def __contains__(self, name: object) -> bool:
        return name in self._entities

    # --- Read access ---

    def has_entity(self, name: str) -> bool:
        return name in self._entities

    def get_entity(self, name: str) -> Entity | None:
        return self._entities.get(name)

    def entities(self) -> list[Entity]:
        """All entities in insertion order."""
        return list(self._entities.values())

    def entity_names(self) -> list[str]:
        return list(self._entities)

    def relations(self) -> list[Relation]:
        """All relations, flattened across sources."""
        return [rel for rels in self._outgoing.values() for rel in rels]

    def relation_count(self) -> int:
        return sum(len(rels) for rels in self._outgoing.values())

    def relations_from(self, name: str) -> list[Relation]:
        """Relations where ``name`` is the source."""
        return list(self._outgoing.get(name, ()))

    def relations_for(self, name: str) -> list[Relation]:
        """Relations touching ``name`` in either direction."""
        return [
            rel for rel in self.relations()
            if rel.from_entity == name or rel.to_entity == name
        ]

    def has_relation(self, relation: Relation) -> bool:
        return relation in self._outgoing.get(relation.from_entity, ())

    # --- Entity operations ---

    def add_entity(self, entity: Entity) -> bool:
        """Insert a copy of ``entity``. Returns False if the name is taken."""
        if entity.name in self._entities:
            return False
        self._entities[entity.name] = entity.copy_entity()
        return True

    def delete_entity(self, name: str) -> bool:
        """Delete an entity and every relation that touches it."""
        if name not in self._entities:
            return False

        del self._entities[name]
        self._outgoing.pop(name, None)
        for source in list(self._outgoing):
            remaining = {r for r in self._outgoing[source] if r.to_entity != name}
            if remaining:
                self._outgoing[source] = remaining
            else:
                del self._outgoing[source]
        return True

    def update_entity(
        self,
        name: str,
        entity_type: str | None = None,
        observations: list[str] | None = None,
    ) -> bool:
        """Replace an entity's type and/or observation list.

        Replacement observations are stamped with the current time. Returns
        False if the entity does not exist.
        """
        entity = self._entities.get(name)
        if entity is None:
            return False
        if entity_type is not None:
            entity.entity_type = entity_type
        if observations is not None:
            entity.observations = [Observation(text=text) for text in observations]
        return True

    # --- Relation operations ---

    def add_relation(self, relation: Relation) -> bool:
        """Add a relation if both endpoints exist and the triple is new."""
        if relation.from_entity not in self._entities or relation.to_entity not in self._entities:
            return False
        relations = self._outgoing.setdefault(relation.from_entity, set())
        if relation in relations:
            return False
        relations.add(relation)
        return True

    def delete_relation(self, relation: Relation) -> bool:
        """Delete an exact (from, to, relationType) match."""
        relations = self._outgoing.get(relation.from_entity)
        if not relations or relation not in relations:
            return False
        relations.discard(relation)
        if not relations:
            del self._outgoing[relation.from_entity]
        return True

    def update_relation(self, relation: Relation) -> str | None:
        """Delete-then-add a relation.

        Returns "updated" if it already existed, "created" if it is new, or
        None if an endpoint is missing.
        """
        existed = self.delete_relation(relation)
        if not self.add_relation(relation):
            return None
        return "updated" if existed else "created"

    # --- Observation operations ---

    def add_observations(
        self,
        name: str,
        texts: Iterable[str],
        version: str | None = None,
    ) -> list[str]:
        """Append observations, skipping texts the entity already has.

        Returns the texts actually added (empty if the entity is unknown).
        """
        entity = self._entities.get(name)
        if entity is None:
            return []

        added: list[str] = []
        for text in texts:
            if entity.has_observation(text):
                continue
            entity.observations.append(Observation(text=text, version=version))
            added.append(text)
        return added

    def delete_observations(self, name: str, texts: Iterable[str]) -> bool:
        """Remove observations whose text exactly matches one of ``texts``.

        Returns True whenever the entity exists, even if nothing matched.
        """
        entity = self._entities.get(name)
        if entity is None:
            return False
        doomed = set(texts)
        entity.observations = [o for o in entity.observations if o.text not in doomed]
        return True

    def delete_observations_where(self, predicate: ObservationPredicate) -> int:
        """Remove every observation for which ``predicate(entity, obs)`` is true.

        Entities left empty are kept; callers decide whether to collect them.
        """
        removed = 0
        for entity in self._entities.values():
            kept = [o for o in entity.observations if not predicate(entity, o)]
            removed += len(entity.observations) - len(kept)
            entity.observations = kept
        return removed

    def iter_observations(self) -> Iterator[tuple[Entity, Observation]]:
        """Yield (entity, observation) pairs in entity then insertion order."""
        for entity in self._entities.values():
            for obs in entity.observations:
                yield entity, obs

    # --- Search ---

    def search_nodes(self, query: str) -> list[Entity]:
        """Case-insensitive substring match over name, type and observations."""
        if not query or not query.strip():
            return []

        needle = query.lower()
        results = []
        for entity in self._entities.values():
            if needle in entity.name.lower() or needle in entity.entity_type.lower():
                results.append(entity)
            elif any(needle in o.text.lower() for o in entity.observations):
                results.append(entity)
        return results

    def get_entities(self, names: Iterable[str]) -> list[Entity]:
        """Entities for the given names; unknown names are skipped."""
        return [self._entities[name] for name in names if name in self._entities]

    # --- Serialization ---

    def to_json(self) -> dict:
        return {
            "entities": [e.to_dict() for e in self._entities.values()],
            "relations": [r.to_dict() for r in self.relations()],
        }

    def read_graph(self) -> dict:
        """Full graph snapshot with counts."""
        data = self.to_json()
        data["summary"] = {
            "entity_count": len(self._entities),
            "relation_count": self.relation_count(),
        }
        return data

    def clear(self) -> None:
        self._entities.clear()
        self._outgoing.clear()

    def load_json(self, data: dict) -> None:
        """Replace the graph contents with ``data`` (``to_json`` layout).

        Entities go through ``add_entity`` and relations through
        ``add_relation``, so duplicate names and dangling relations are dropped.
        """
        self.clear()
        for entity_data in data.get("entities") or []:
            self.add_entity(Entity.model_validate(entity_data))
        for relation_data in data.get("relations") or []:
            self.add_relation(Relation.model_validate(relation_data))

    @classmethod
    def from_json(cls, data: dict) -> "KnowledgeGraph":
        graph = cls()
        graph.load_json(data)
        return graph

    def check_index_consistency(self) -> list[str]:
        """Validate relation index against entities. Returns list of errors.

        Debug/test utility: an empty list means every relation is keyed under
        its source and both endpoints exist.
        """
        errors: list[str] = []
        for source, relations in self._outgoing.items():
            if not relations:
                errors.append(f"_outgoing[{source}] is an empty set")
            for rel in relations:
                if rel.from_entity != source:
                    errors.append(f"{rel.triple} filed under wrong source {source}")
                if rel.from_entity not in self._entities:
                    errors.append(f"{rel.triple} has missing source")
                if rel.to_entity not in self._entities:
                    errors.append(f"{rel.triple} has missing target")
        return errors
