"""Bulk observation pruning.

Observations older than a cutoff and/or containing a tag substring are either
removed or soft-deprecated with a ``[DEPRECATED]`` prefix. Entities emptied by
pruning are deleted together with their relations.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from pydantic import BaseModel, field_validator

from .constants import DEPRECATED_MARKER
from .timeutil import ensure_utc, parse_timestamp

if TYPE_CHECKING:
    from .graph import KnowledgeGraph
    from .models import Observation

logger = logging.getLogger(__name__)


class PruneRequest(BaseModel):
    """Pruning criteria as received from the CLI or automation callers."""

    before: datetime | None = None
    tag: str | None = None
    deprecate: bool = False

    @field_validator("before")
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        return ensure_utc(value) if value is not None else None

    @property
    def is_unconstrained(self) -> bool:
        """True when neither ``before`` nor ``tag`` is set (matches everything)."""
        return self.before is None and not self.tag


def is_deprecated(observation: Observation) -> bool:
    return observation.text.startswith(DEPRECATED_MARKER)


def matches(observation: Observation, before: datetime | None, tag: str | None) -> bool:
    """Whether an observation falls under the prune criteria.

    Observations with unparseable timestamps never match a ``before`` cutoff.
    """
    if before is not None:
        try:
            if parse_timestamp(observation.timestamp) >= before:
                return False
        except ValueError:
            logger.debug(f"Unparseable observation timestamp: {observation.timestamp!r}")
            return False
    if tag and tag not in observation.text:
        return False
    return True


def prune_observations(
    graph: KnowledgeGraph,
    before: datetime | None = None,
    tag: str | None = None,
    deprecate: bool = False,
    dry_run: bool = False,
) -> int:
    """Delete or deprecate matching observations.

    Args:
        graph: Graph to prune in place
        before: Only observations strictly older than this (aware datetime)
        tag: Only observations whose text contains this substring
        deprecate: Prefix with ``[DEPRECATED]`` instead of removing
        dry_run: Count what would be pruned without changing anything

    Returns:
        Number of observations pruned. Already-deprecated observations are not
        counted again when ``deprecate`` is set. Callers save if nonzero.
    """
    if before is not None:
        before = ensure_utc(before)

    pruned = 0
    emptied: list[str] = []

    for entity in graph.entities():
        original_count = len(entity.observations)
        if deprecate:
            for obs in entity.observations:
                if is_deprecated(obs) or not matches(obs, before, tag):
                    continue
                if not dry_run:
                    obs.text = f"{DEPRECATED_MARKER} {obs.text}"
                pruned += 1
        else:
            kept = [obs for obs in entity.observations if not matches(obs, before, tag)]
            pruned += original_count - len(kept)
            if not dry_run:
                entity.observations = kept

        if not dry_run and original_count > 0 and not entity.observations:
            emptied.append(entity.name)

    for name in emptied:
        graph.delete_entity(name)

    if pruned:
        action = "deprecated" if deprecate else "deleted"
        suffix = " (dry run)" if dry_run else ""
        logger.info(
            f"Pruned {pruned} observations ({action}), removed {len(emptied)} empty entities{suffix}"
        )
    return pruned


def prune(graph: KnowledgeGraph, request: PruneRequest, dry_run: bool = False) -> int:
    """Apply a ``PruneRequest`` to the graph."""
    return prune_observations(
        graph,
        before=request.before,
        tag=request.tag,
        deprecate=request.deprecate,
        dry_run=dry_run,
    )
