"""Heuristic relation proposals for newly created entities.

When a brand-new entity receives its first observation, its name and that
observation are compared against every other entity. Every heuristic that
matches proposes a relation; proposals go through ``KnowledgeGraph.add_relation``
so duplicates and dangling endpoints are rejected there.

Known limitation: matching is raw lowercase substring/token containment on
observation text, not a structured tag field. False positives are expected.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .constants import SHARED_TOKEN_MIN_LENGTH
from .models import Relation

if TYPE_CHECKING:
    from .graph import KnowledgeGraph

logger = logging.getLogger(__name__)

USES_PHRASE = "uses"
MEMBERSHIP_PHRASES = ("belongs to", "part of")


def _tokens(text: str) -> list[str]:
    return text.lower().split()


class AutoLinker:
    """Proposes is_a / references / related_to / uses / belongs_to relations."""

    def propose(
        self,
        graph: KnowledgeGraph,
        entity_name: str,
        observation_text: str,
    ) -> list[Relation]:
        """Return candidate relations without touching the graph."""
        if not observation_text:
            return []

        name_lower = entity_name.lower()
        name_tokens = _tokens(entity_name)
        text_lower = observation_text.lower()
        text_tokens = set(_tokens(observation_text))
        mentions_uses = USES_PHRASE in text_lower
        mentions_membership = any(p in text_lower for p in MEMBERSHIP_PHRASES)

        proposals: list[Relation] = []
        for other_name in graph.entity_names():
            other_lower = other_name.lower()
            if other_lower == name_lower:
                continue
            other_tokens = _tokens(other_name)

            # More specific name -> more general name
            if other_lower in name_lower:
                proposals.append(self._relation(entity_name, other_name, "is_a"))
            elif name_lower in other_lower:
                proposals.append(self._relation(other_name, entity_name, "is_a"))

            if text_tokens.intersection(other_tokens):
                proposals.append(self._relation(entity_name, other_name, "references"))

            if any(
                len(token) >= SHARED_TOKEN_MIN_LENGTH and token in other_tokens
                for token in name_tokens
            ):
                proposals.append(self._relation(entity_name, other_name, "related_to"))

            if mentions_uses and other_lower in text_lower:
                proposals.append(self._relation(entity_name, other_name, "uses"))

            if mentions_membership and other_lower in text_lower:
                proposals.append(self._relation(entity_name, other_name, "belongs_to"))

        return proposals

    def link(
        self,
        graph: KnowledgeGraph,
        entity_name: str,
        observation_text: str,
    ) -> list[Relation]:
        """Apply proposals to the graph. Returns the relations actually added."""
        added = [
            rel for rel in self.propose(graph, entity_name, observation_text)
            if graph.add_relation(rel)
        ]
        if added:
            logger.debug(f"Auto-linked entity '{entity_name}' with {len(added)} relations")
        return added

    @staticmethod
    def _relation(from_name: str, to_name: str, relation_type: str) -> Relation:
        return Relation(from_entity=from_name, to_entity=to_name, relation_type=relation_type)
