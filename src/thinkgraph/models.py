"""Core data models for the knowledge graph.

Uses Pydantic v2 for validation. JSON field names (``entityType``, ``from``,
``relationType``) are kept as aliases so the on-disk log stays compatible with
files written by earlier versions.
"""

from datetime import datetime, timezone
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator

from .constants import DEFAULT_ENTITY_TYPE, RECORD_TYPE_FIELD, SAVED_AT_FIELD


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    """Get current UTC timestamp as an ISO-8601 string."""
    return utc_now().isoformat()


class Observation(BaseModel):
    """A single timestamped fact about an entity."""

    text: str
    timestamp: str = Field(default_factory=utc_now_iso)
    version: str | None = None  # writer's schema version, free-form


class Entity(BaseModel):
    """A node in the knowledge graph, keyed by name."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    entity_type: str = Field(default=DEFAULT_ENTITY_TYPE, alias="entityType")
    observations: list[Observation] = Field(default_factory=list)
    embedding: list[float] | None = None

    @field_validator("observations", mode="before")
    @classmethod
    def _upgrade_legacy_observations(cls, value):
        """Accept plain-string observations and stamp them with the current time."""
        if not isinstance(value, list):
            return value
        return [
            {"text": obs, "timestamp": utc_now_iso()} if isinstance(obs, str) else obs
            for obs in value
        ]

    @property
    def observation_texts(self) -> list[str]:
        """Plain-text view of the observations, oldest first."""
        return [o.text for o in self.observations]

    def has_observation(self, text: str) -> bool:
        """Exact-text containment check."""
        return any(o.text == text for o in self.observations)

    def copy_entity(self) -> "Entity":
        """Return an independent copy (observation list and embedding not shared)."""
        return Entity(
            name=self.name,
            entity_type=self.entity_type,
            observations=[o.model_copy() for o in self.observations],
            embedding=list(self.embedding) if self.embedding is not None else None,
        )

    def to_dict(self) -> dict:
        """Serialize with JSON field names, omitting empty optional fields."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_record(self, saved_at: str) -> dict:
        """Serialize as one line of the durable log."""
        return {**self.to_dict(), RECORD_TYPE_FIELD: "entity", SAVED_AT_FIELD: saved_at}


class Relation(BaseModel):
    """A directed, typed edge. Identity is the (from, to, relationType) triple."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    from_entity: str = Field(alias="from")
    to_entity: str = Field(alias="to")
    relation_type: str = Field(alias="relationType")  # active voice: "uses", "implements"

    @property
    def triple(self) -> tuple[str, str, str]:
        return (self.from_entity, self.to_entity, self.relation_type)

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

    def to_record(self, saved_at: str) -> dict:
        """Serialize as one line of the durable log."""
        return {**self.to_dict(), RECORD_TYPE_FIELD: "relation", SAVED_AT_FIELD: saved_at}


# ─────────────────────────────────────────────────────────────────────────────
# Log records
# ─────────────────────────────────────────────────────────────────────────────


class EntityRecord(Entity):
    """An ``entity`` line of the durable log."""

    record_type: Literal["entity"] = Field(alias=RECORD_TYPE_FIELD)
    saved_at: str | None = Field(default=None, alias=SAVED_AT_FIELD)

    def to_entity(self) -> Entity:
        return self.copy_entity()


class RelationRecord(Relation):
    """A ``relation`` line of the durable log."""

    record_type: Literal["relation"] = Field(alias=RECORD_TYPE_FIELD)
    saved_at: str | None = Field(default=None, alias=SAVED_AT_FIELD)

    def to_relation(self) -> Relation:
        return Relation(
            from_entity=self.from_entity,
            to_entity=self.to_entity,
            relation_type=self.relation_type,
        )


LogRecord = Annotated[
    Union[EntityRecord, RelationRecord],
    Field(discriminator="record_type"),
]

_RECORD_ADAPTER: TypeAdapter[LogRecord] = TypeAdapter(LogRecord)


def parse_record(line: str) -> EntityRecord | RelationRecord:
    """Parse one log line.

    Raises:
        pydantic.ValidationError: If the line is not JSON or does not match
            either record schema.
    """
    return _RECORD_ADAPTER.validate_json(line)


# ─────────────────────────────────────────────────────────────────────────────
# Query
# ─────────────────────────────────────────────────────────────────────────────


class TimeRange(BaseModel):
    """Inclusive time bounds for observation queries."""

    before: datetime | None = None
    after: datetime | None = None


class MemoryQuery(BaseModel):
    """Filter criteria for observation-level queries."""

    keyword: str | None = None
    time: TimeRange | None = None
    tag: str | None = None
    agent: str | None = None
    limit: int | None = None


class QueryHit(BaseModel):
    """One observation matched by a query, with its owning entity."""

    model_config = ConfigDict(populate_by_name=True)

    entity_name: str = Field(alias="entityName")
    observation: Observation

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
