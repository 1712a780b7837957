"""Shared test fixtures and helpers for thinkgraph tests."""

import json
import tempfile
from pathlib import Path

import pytest

from thinkgraph.graph import KnowledgeGraph
from thinkgraph.models import Entity, Observation, Relation
from thinkgraph.store import JsonlStore

VOCABULARY = ("database", "storage", "python", "language", "web", "music")


class FakeBackend:
    """Deterministic embedding backend for tests.

    Each vector counts occurrences of a fixed vocabulary, so texts sharing
    words are similar and unrelated texts are orthogonal.
    """

    def __init__(self, available: bool = True, fail_batches: set[int] | None = None, dimension: int | None = None):
        self.available = available
        self.fail_batches = fail_batches or set()
        self.dimension = dimension or len(VOCABULARY)
        self.calls: list[tuple[list[str], str]] = []
        self.initialize_calls = 0

    @property
    def is_available(self) -> bool:
        return self.available and self.initialize_calls > 0

    def initialize(self) -> bool:
        self.initialize_calls += 1
        return self.available

    def vector(self, text: str) -> list[float]:
        words = text.lower().split()
        vec = [float(sum(1 for w in words if vocab in w)) for vocab in VOCABULARY]
        return (vec + [0.0] * self.dimension)[:self.dimension]

    def embed(self, texts: list[str], input_type: str) -> list[list[float] | None]:
        self.calls.append((list(texts), input_type))
        if input_type == "document":
            batch_no = sum(1 for _, kind in self.calls if kind == "document")
            if batch_no in self.fail_batches:
                raise RuntimeError(f"batch {batch_no} failed")
        return [self.vector(t) for t in texts]


# --- Fixtures ---


@pytest.fixture
def temp_dir():
    """Provide a temporary directory, cleaned up after the test."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def memory_file(temp_dir):
    return temp_dir / "memory.jsonl"


@pytest.fixture
def store(memory_file):
    """A fresh, not-yet-loaded store on an empty path."""
    return JsonlStore(memory_file)


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def sample_graph():
    """Small graph: two languages, a database, and a couple of relations."""
    graph = KnowledgeGraph()
    graph.add_entity(make_entity("Python", "language", ["A programming language", "Used for web backends"]))
    graph.add_entity(make_entity("JavaScript", "language", ["Runs in the browser"]))
    graph.add_entity(make_entity("SQLite", "database", ["Embedded database storage"]))
    graph.add_relation(make_relation("Python", "SQLite", "uses"))
    graph.add_relation(make_relation("JavaScript", "Python", "related_to"))
    return graph


# --- Helper Functions (not fixtures) ---


def make_entity(name: str, entity_type: str = "concept", texts: list[str] | None = None, timestamp: str | None = None) -> Entity:
    observations = []
    for text in texts or []:
        if timestamp is None:
            observations.append(Observation(text=text))
        else:
            observations.append(Observation(text=text, timestamp=timestamp))
    return Entity(name=name, entity_type=entity_type, observations=observations)


def make_relation(from_name: str, to_name: str, relation_type: str = "relates_to") -> Relation:
    return Relation(from_entity=from_name, to_entity=to_name, relation_type=relation_type)


def write_lines(path: Path, records: list) -> None:
    """Write a log file; dicts are JSON-encoded, strings written verbatim."""
    with path.open("w", encoding="utf-8") as f:
        for record in records:
            f.write(record if isinstance(record, str) else json.dumps(record))
            f.write("\n")


def read_records(path: Path) -> list[dict]:
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]
