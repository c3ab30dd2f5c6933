"""
Tests for the vector store backends and similarity helpers.
"""

from unittest.mock import MagicMock

import pytest

from autoapply.services.vector_store import (
    InMemoryVectorStore,
    SqlVectorStore,
    StoredEmbedding,
    content_hash,
    cosine_similarity,
    get_vector_store,
)


class TestCosineSimilarity:
    """Test the similarity function."""

    def test_identical_vectors(self):
        assert cosine_similarity([1.0, 2.0], [1.0, 2.0]) == pytest.approx(1.0)

    def test_orthogonal_vectors(self):
        assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)

    def test_opposite_vectors(self):
        assert cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)

    def test_zero_vector(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0

    def test_length_mismatch(self):
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0]) == 0.0


class TestContentHash:
    def test_whitespace_insensitive(self):
        assert content_hash("Python  developer\n") == content_hash("Python developer")

    def test_changes_with_text(self):
        assert content_hash("Python") != content_hash("Go")


class TestStoredEmbedding:
    def test_current_requires_hash_and_dimensions(self):
        stored = StoredEmbedding(vector=(1.0, 0.0), content_hash="abc")

        assert stored.is_current("abc", 2)
        assert not stored.is_current("def", 2)
        assert not stored.is_current("abc", 3)


class TestBackends:
    """Both backends behave the same."""

    @pytest.fixture(params=["memory", "sql"])
    def store(self, request, session_factory):
        return get_vector_store(request.param, session_factory)

    @pytest.mark.asyncio
    async def test_put_and_get(self, store, profile, job):
        assert await store.get("user", profile.id) is None

        await store.put("user", profile.id, [0.5, 0.5], "hash-1")
        await store.put("job", job.id, [1.0, 0.0], "hash-2")

        assert await store.get("user", profile.id) == StoredEmbedding((0.5, 0.5), "hash-1")
        assert set(await store.get_many("job", [job.id, "missing"])) == {job.id}

    @pytest.mark.asyncio
    async def test_last_write_wins(self, store, job):
        await store.put("job", job.id, [1.0, 0.0], "old")
        await store.put("job", job.id, [0.0, 1.0], "new")

        assert await store.get("job", job.id) == StoredEmbedding((0.0, 1.0), "new")


def test_factory():
    session_factory = MagicMock()
    assert isinstance(get_vector_store("sql", session_factory), SqlVectorStore)
    assert isinstance(get_vector_store("memory"), InMemoryVectorStore)
    with pytest.raises(ValueError):
        get_vector_store("sql")
    with pytest.raises(ValueError):
        get_vector_store("chroma")
