"""Tests for vector math, the sentence-transformers backend and the embedding cache."""

import sys
from unittest.mock import MagicMock, Mock, patch

import numpy as np
import pytest

from thinkgraph.config import Settings
from thinkgraph.embeddings import (
    CachedEmbeddingBackend,
    EmbeddingBackend,
    EmbeddingCache,
    EmbeddingDimensionError,
    SentenceTransformerBackend,
    VectorStatus,
    backend_from_settings,
    cosine_similarity,
)


class TestCosineSimilarity:
    def test_identical_vectors(self):
        assert cosine_similarity([1.0, 2.0, 3.0], [1.0, 2.0, 3.0]) == pytest.approx(1.0)

    def test_orthogonal_and_opposite(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_zero_vector(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 1.0]) == 0.0

    def test_stays_in_bounds(self):
        rng = np.random.default_rng(7)
        for _ in range(50):
            a = rng.normal(size=8).tolist()
            value = cosine_similarity(a, [x * 3.0 for x in a])
            assert -1.0 <= value <= 1.0

    def test_dimension_mismatch(self):
        with pytest.raises(EmbeddingDimensionError):
            cosine_similarity([1.0, 2.0], [1.0, 2.0, 3.0])

    def test_dimension_error_is_value_error(self):
        assert issubclass(EmbeddingDimensionError, ValueError)


def fake_sentence_transformers(dimension=3, prompts=None, encode=None):
    model = MagicMock()
    model.get_sentence_embedding_dimension.return_value = dimension
    model.prompts = prompts or {}
    model.encode.side_effect = encode or (lambda texts, **kwargs: np.ones((len(texts), dimension)))
    module = Mock()
    module.SentenceTransformer.return_value = model
    return module, model


class TestSentenceTransformerBackend:
    def test_model_loads_lazily(self):
        module, _ = fake_sentence_transformers()
        with patch.dict(sys.modules, {"sentence_transformers": module}):
            backend = SentenceTransformerBackend("tiny", dimension=3)
            assert not backend.is_available
            assert backend.health.status == VectorStatus.DEGRADED
            module.SentenceTransformer.assert_not_called()

            assert backend.initialize()
            assert backend.is_available
            assert backend.health.status == VectorStatus.READY
            module.SentenceTransformer.assert_called_once_with("tiny")

    def test_embed_returns_lists(self):
        module, _ = fake_sentence_transformers()
        with patch.dict(sys.modules, {"sentence_transformers": module}):
            backend = SentenceTransformerBackend("tiny", dimension=3)
            vectors = backend.embed(["a", "b"], "document")
        assert vectors == [[1.0, 1.0, 1.0], [1.0, 1.0, 1.0]]

    def test_prompt_name_passed_when_model_declares_it(self):
        module, model = fake_sentence_transformers(prompts={"query": "query: "})
        with patch.dict(sys.modules, {"sentence_transformers": module}):
            backend = SentenceTransformerBackend("tiny", dimension=3)
            backend.embed(["q"], "query")
            backend.embed(["d"], "document")
        assert model.encode.call_args_list[0].kwargs == {"prompt_name": "query"}
        assert model.encode.call_args_list[1].kwargs == {}

    def test_wrong_dimension_vectors_are_dropped(self):
        module, _ = fake_sentence_transformers(dimension=4)
        with patch.dict(sys.modules, {"sentence_transformers": module}):
            backend = SentenceTransformerBackend("tiny", dimension=3)
            assert backend.embed(["a"], "document") == [None]

    def test_encode_failure_gives_none_per_text(self):
        def boom(texts, **kwargs):
            raise RuntimeError("out of memory")

        module, _ = fake_sentence_transformers(encode=boom)
        with patch.dict(sys.modules, {"sentence_transformers": module}):
            backend = SentenceTransformerBackend("tiny", dimension=3)
            assert backend.embed(["a", "b"], "document") == [None, None]

    def test_model_load_failure(self):
        module = Mock()
        module.SentenceTransformer.side_effect = OSError("no such model")
        with patch.dict(sys.modules, {"sentence_transformers": module}):
            backend = SentenceTransformerBackend("missing", dimension=3)
            assert not backend.initialize()
            assert backend.embed(["a"], "query") == [None]
        assert backend.health.status == VectorStatus.DEGRADED
        assert "no such model" in backend.health.error

    def test_missing_dependency(self):
        with patch.dict(sys.modules, {"sentence_transformers": None}):
            backend = SentenceTransformerBackend("tiny", dimension=3)
            assert not backend.initialize()
        assert backend.health.status == VectorStatus.UNAVAILABLE

    def test_empty_input(self):
        backend = SentenceTransformerBackend("tiny", dimension=3)
        assert backend.embed([], "document") == []

    def test_satisfies_protocol(self):
        assert isinstance(SentenceTransformerBackend(), EmbeddingBackend)


class TestEmbeddingCache:
    def test_put_and_get(self, temp_dir):
        cache = EmbeddingCache(temp_dir / "cache" / "embeddings.db")
        cache.put_many([("k1", [0.5, 0.25, 1.0])])
        assert cache.get("k1") == [0.5, 0.25, 1.0]
        assert cache.get("missing") is None
        assert cache.count() == 1
        cache.close()

    def test_persists_across_instances(self, temp_dir):
        path = temp_dir / "embeddings.db"
        cache = EmbeddingCache(path)
        cache.put_many([("k", [1.0, 0.0])])
        cache.close()
        assert EmbeddingCache(path).get("k") == [1.0, 0.0]


class TestCachedEmbeddingBackend:
    def make(self, temp_dir):
        inner = Mock()
        inner.is_available = True
        inner.embed.side_effect = lambda texts, input_type: [[float(len(t)), 1.0] for t in texts]
        cache = EmbeddingCache(temp_dir / "embeddings.db")
        return CachedEmbeddingBackend(inner, cache, namespace="tiny"), inner, cache

    def test_only_misses_are_forwarded(self, temp_dir):
        backend, inner, cache = self.make(temp_dir)
        assert backend.embed(["ab", "abcd"], "document") == [[2.0, 1.0], [4.0, 1.0]]
        assert backend.embed(["ab", "xyz"], "document") == [[2.0, 1.0], [3.0, 1.0]]
        assert inner.embed.call_args_list[1].args == (["xyz"], "document")
        assert cache.count() == 3

    def test_input_type_is_part_of_key(self, temp_dir):
        backend, inner, _ = self.make(temp_dir)
        backend.embed(["ab"], "document")
        backend.embed(["ab"], "query")
        assert inner.embed.call_count == 2

    def test_failed_vectors_are_not_cached(self, temp_dir):
        backend, inner, cache = self.make(temp_dir)
        inner.embed.side_effect = lambda texts, input_type: [None for _ in texts]
        assert backend.embed(["ab"], "document") == [None]
        assert cache.count() == 0

    def test_full_hit_skips_backend(self, temp_dir):
        backend, inner, _ = self.make(temp_dir)
        backend.embed(["ab"], "query")
        backend.embed(["ab"], "query")
        assert inner.embed.call_count == 1


class TestBackendFromSettings:
    def test_cache_disabled(self, temp_dir):
        settings = Settings(use_embedding_cache=False, cache_dir=temp_dir)
        backend = backend_from_settings(settings)
        assert isinstance(backend, SentenceTransformerBackend)
        assert backend.model_name == settings.embedding_model

    def test_cache_enabled(self, temp_dir):
        settings = Settings(cache_dir=temp_dir / "cache")
        backend = backend_from_settings(settings)
        assert isinstance(backend, CachedEmbeddingBackend)
        assert settings.embedding_cache_path.exists()
        backend.close()
