"""Tests for semantic search: ranking, backfill and substring fallback."""

import asyncio

import pytest
from conftest import FakeBackend, make_entity

from thinkgraph.embeddings import EmbeddingDimensionError
from thinkgraph.graph import KnowledgeGraph
from thinkgraph.semantic import SemanticSearch, entity_document


def build_graph(count=0):
    graph = KnowledgeGraph()
    graph.add_entity(make_entity("SQLite", "database", ["Embedded database storage"]))
    graph.add_entity(make_entity("Python", "language", ["A programming language for web"]))
    graph.add_entity(make_entity("Mozart", "composer", ["Classical music"]))
    for i in range(count):
        graph.add_entity(make_entity(f"Extra {i}", "thing", [f"extra storage {i}"]))
    return graph


class TestRanking:
    def test_results_sorted_and_thresholded(self):
        graph = build_graph()
        search = SemanticSearch(graph, FakeBackend())
        hits = asyncio.run(search.search("database storage", threshold=0.5))
        assert [h.entity.name for h in hits] == ["SQLite"]
        assert hits[0].similarity > 0.9
        assert not hits[0].degraded

    def test_low_threshold_includes_more_in_order(self):
        graph = build_graph()
        search = SemanticSearch(graph, FakeBackend())
        hits = asyncio.run(search.search("python language database", threshold=0.1))
        names = [h.entity.name for h in hits]
        assert names == ["Python", "SQLite"]
        assert hits[0].similarity >= hits[1].similarity

    def test_limit(self):
        graph = build_graph(count=5)
        search = SemanticSearch(graph, FakeBackend())
        hits = asyncio.run(search.search("storage", threshold=0.1, limit=3))
        assert len(hits) == 3

    def test_without_backfill_only_embedded_entities_rank(self):
        graph = build_graph()
        search = SemanticSearch(graph, FakeBackend())
        assert asyncio.run(search.search("database", threshold=0.1, backfill=False)) == []
        assert all(e.embedding is None for e in graph.entities())

    def test_dimension_mismatch_raises(self):
        graph = build_graph()
        graph.get_entity("SQLite").embedding = [1.0, 0.0]
        search = SemanticSearch(graph, FakeBackend())
        with pytest.raises(EmbeddingDimensionError):
            asyncio.run(search.search("database", backfill=False))


class TestFallback:
    def test_unavailable_backend_falls_back_to_substring(self):
        graph = build_graph()
        search = SemanticSearch(graph, FakeBackend(available=False))
        hits = asyncio.run(search.search("LANGUAGE", limit=1))
        assert [(h.entity.name, h.similarity, h.degraded) for h in hits] == [("Python", 1.0, True)]

    def test_fallback_returns_every_substring_match(self):
        graph = build_graph(count=4)
        search = SemanticSearch(graph, None)
        hits = asyncio.run(search.search("storage", limit=2))
        assert [h.entity.name for h in hits] == [e.name for e in graph.search_nodes("storage")]
        assert len(hits) == 5

    def test_query_embedding_failure_falls_back(self):
        class NoQueryBackend(FakeBackend):
            def embed(self, texts, input_type):
                if input_type == "query":
                    return [None] * len(texts)
                return super().embed(texts, input_type)

        graph = build_graph()
        hits = asyncio.run(SemanticSearch(graph, NoQueryBackend()).search("mozart"))
        assert [(h.entity.name, h.degraded) for h in hits] == [("Mozart", True)]


class TestBackfill:
    def test_batches_are_sequential_and_sized(self):
        graph = build_graph(count=42)
        backend = FakeBackend()
        search = SemanticSearch(graph, backend)
        assert asyncio.run(search.backfill()) == 45
        sizes = [len(texts) for texts, kind in backend.calls if kind == "document"]
        assert sizes == [20, 20, 5]

    def test_failed_batch_is_skipped(self):
        graph = build_graph(count=42)
        backend = FakeBackend(fail_batches={2})
        search = SemanticSearch(graph, backend)
        assert asyncio.run(search.backfill()) == 25
        missing = [e.name for e in graph.entities() if e.embedding is None]
        assert len(missing) == 20

        # A later backfill picks up what was skipped
        assert asyncio.run(search.backfill()) == 20

    def test_entities_without_observations_are_not_embedded(self):
        graph = build_graph()
        graph.add_entity(make_entity("Blank", "thing"))
        search = SemanticSearch(graph, FakeBackend())
        asyncio.run(search.backfill())
        assert graph.get_entity("Blank").embedding is None

    def test_existing_vectors_are_not_refreshed(self):
        graph = build_graph()
        graph.get_entity("SQLite").embedding = [0.0] * 6
        backend = FakeBackend()
        asyncio.run(SemanticSearch(graph, backend).backfill())
        assert graph.get_entity("SQLite").embedding == [0.0] * 6
        embedded_docs = [t for texts, _ in backend.calls for t in texts]
        assert not any(doc.startswith("SQLite") for doc in embedded_docs)

    def test_clear_embedding(self):
        graph = build_graph()
        search = SemanticSearch(graph, FakeBackend())
        asyncio.run(search.backfill())
        assert search.clear_embedding("SQLite")
        assert not search.clear_embedding("SQLite")
        assert search.clear_embeddings() == 2

    def test_unavailable_backend_backfills_nothing(self):
        graph = build_graph()
        assert asyncio.run(SemanticSearch(graph, FakeBackend(available=False)).backfill()) == 0


def test_entity_document():
    entity = make_entity("SQLite", "database", ["one", "two"])
    assert entity_document(entity) == "SQLite\ndatabase\none\ntwo"
