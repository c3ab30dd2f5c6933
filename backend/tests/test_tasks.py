"""
Tests for Celery Background Tasks

Tests cover:
- Celery app configuration and queue routing
- refresh_job_embeddings task (rate limited)
- refresh_profile_embedding task
- Task retries on transient provider failures
- Embedding provider built once per worker
"""

import pytest
from unittest.mock import MagicMock, PropertyMock, patch

from autoapply.celery import celery_app
from autoapply.errors import PermanentCapabilityError, TransientCapabilityError
from autoapply.services.vector_store import content_hash
from autoapply.tasks.embeddings import EmbeddingTask, refresh_job_embeddings, refresh_profile_embedding


def make_job(job_id="job-123", description="We need a Python developer", embedding=None, embedding_hash=None):
    job = MagicMock()
    job.id = job_id
    job.description = description
    job.embedding = embedding
    job.embedding_hash = embedding_hash
    return job


@pytest.fixture
def provider():
    provider = MagicMock()
    provider.dimensions = 3
    with patch.object(EmbeddingTask, "provider", new_callable=PropertyMock, return_value=provider):
        yield provider


class TestCeleryApp:
    """Test Celery app configuration."""

    def test_celery_app_exists(self):
        assert celery_app is not None
        assert celery_app.main == "autoapply"

    def test_celery_uses_redis_broker(self):
        assert "redis" in celery_app.conf.broker_url

    def test_embedding_tasks_routed_to_embeddings_queue(self):
        routes = celery_app.conf.task_routes
        assert routes["autoapply.tasks.embeddings.refresh_job_embeddings"]["queue"] == "embeddings"
        assert routes["autoapply.tasks.embeddings.refresh_profile_embedding"]["queue"] == "embeddings"

    def test_json_serializer_only(self):
        assert celery_app.conf.task_serializer == "json"
        assert celery_app.conf.accept_content == ["json"]


class TestEmbeddingTask:
    """Test the provider shared by embedding tasks."""

    def test_tasks_use_embedding_base(self):
        assert isinstance(refresh_job_embeddings, EmbeddingTask)
        assert isinstance(refresh_profile_embedding, EmbeddingTask)

    @patch("autoapply.services.embedding_providers.get_embedding_provider")
    def test_provider_built_once(self, mock_factory):
        built = MagicMock()
        mock_factory.return_value = built

        with patch.object(refresh_job_embeddings, "_provider", None):
            assert refresh_job_embeddings.provider is built
            assert refresh_job_embeddings.provider is built

        mock_factory.assert_called_once()


class TestRefreshJobEmbeddings:
    """Test refresh_job_embeddings background task."""

    def test_is_celery_task(self):
        assert hasattr(refresh_job_embeddings, "delay")
        assert refresh_job_embeddings.rate_limit == "100/m"

    @patch("autoapply.tasks.embeddings.store_embedding")
    @patch("autoapply.tasks.embeddings.embed_texts")
    @patch("autoapply.tasks.embeddings.get_jobs")
    def test_embeds_only_stale_jobs(self, mock_get_jobs, mock_embed, mock_store, provider):
        current = make_job(
            "job-current",
            description="Current",
            embedding=[0.1, 0.2, 0.3],
            embedding_hash=content_hash("Current"),
        )
        changed = make_job(
            "job-changed",
            description="Rewritten",
            embedding=[0.1, 0.2, 0.3],
            embedding_hash=content_hash("Original"),
        )
        missing = make_job("job-missing", description="New posting")
        mock_get_jobs.return_value = [current, changed, missing]
        mock_embed.return_value = [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0]]

        stats = refresh_job_embeddings.run(["job-current", "job-changed", "job-missing"])

        assert stats == {"checked": 3, "refreshed": 2, "skipped": 0}
        mock_embed.assert_called_once_with(provider, ["Rewritten", "New posting"])
        stored_ids = [c.args[1] for c in mock_store.call_args_list]
        assert stored_ids == ["job-changed", "job-missing"]
        assert mock_store.call_args_list[1].args[3] == content_hash("New posting")

    @patch("autoapply.tasks.embeddings.store_embedding")
    @patch("autoapply.tasks.embeddings.embed_texts")
    @patch("autoapply.tasks.embeddings.get_jobs")
    def test_dimension_change_is_stale(self, mock_get_jobs, mock_embed, mock_store, provider):
        """A vector from a different model is regenerated even if the hash matches."""
        job = make_job(description="Same", embedding=[0.1] * 1536, embedding_hash=content_hash("Same"))
        mock_get_jobs.return_value = [job]
        mock_embed.return_value = [[1.0, 0.0, 0.0]]

        stats = refresh_job_embeddings.run()

        assert stats["refreshed"] == 1
        mock_get_jobs.assert_called_once_with(None)

    @patch("autoapply.tasks.embeddings.store_embedding")
    @patch("autoapply.tasks.embeddings.embed_texts")
    @patch("autoapply.tasks.embeddings.get_jobs")
    def test_blank_descriptions_skipped(self, mock_get_jobs, mock_embed, mock_store, provider):
        mock_get_jobs.return_value = [make_job(description="   ")]

        stats = refresh_job_embeddings.run()

        assert stats == {"checked": 1, "refreshed": 0, "skipped": 1}
        mock_embed.assert_not_called()

    @patch("autoapply.tasks.embeddings.store_embedding")
    @patch("autoapply.tasks.embeddings.embed_texts")
    @patch("autoapply.tasks.embeddings.get_jobs")
    def test_transient_failure_retries(self, mock_get_jobs, mock_embed, mock_store, provider):
        mock_get_jobs.return_value = [make_job()]
        error = TransientCapabilityError("embedding", "rate limited")
        mock_embed.side_effect = error

        with patch.object(refresh_job_embeddings, "retry", side_effect=RuntimeError("retry")) as mock_retry:
            with pytest.raises(RuntimeError, match="retry"):
                refresh_job_embeddings.run()

        mock_retry.assert_called_once_with(exc=error)
        mock_store.assert_not_called()

    @patch("autoapply.tasks.embeddings.store_embedding")
    @patch("autoapply.tasks.embeddings.embed_texts")
    @patch("autoapply.tasks.embeddings.get_jobs")
    def test_permanent_failure_not_retried(self, mock_get_jobs, mock_embed, mock_store, provider):
        mock_get_jobs.return_value = [make_job()]
        mock_embed.side_effect = PermanentCapabilityError("embedding", "input too long")

        with patch.object(refresh_job_embeddings, "retry") as mock_retry:
            with pytest.raises(PermanentCapabilityError):
                refresh_job_embeddings.run()

        mock_retry.assert_not_called()


class TestRefreshProfileEmbedding:
    """Test refresh_profile_embedding task."""

    @pytest.fixture
    def mock_profile(self):
        profile = MagicMock()
        profile.id = "user-1"
        profile.resume_text = "Experienced Python developer"
        profile.embedding = None
        profile.embedding_hash = None
        return profile

    @patch("autoapply.tasks.embeddings.store_embedding")
    @patch("autoapply.tasks.embeddings.embed_texts")
    @patch("autoapply.tasks.embeddings.get_profile")
    def test_refreshes_missing_embedding(self, mock_get_profile, mock_embed, mock_store, mock_profile, provider):
        from autoapply.models import Profile

        mock_get_profile.return_value = mock_profile
        mock_embed.return_value = [[0.1, 0.2, 0.3]]

        result = refresh_profile_embedding.run("user-1")

        assert result == {"refreshed": True}
        mock_store.assert_called_once_with(
            Profile, "user-1", [0.1, 0.2, 0.3], content_hash(mock_profile.resume_text)
        )

    @patch("autoapply.tasks.embeddings.store_embedding")
    @patch("autoapply.tasks.embeddings.embed_texts")
    @patch("autoapply.tasks.embeddings.get_profile")
    def test_current_embedding_left_alone(self, mock_get_profile, mock_embed, mock_store, mock_profile, provider):
        mock_profile.embedding = [0.1, 0.2, 0.3]
        mock_profile.embedding_hash = content_hash(mock_profile.resume_text)
        mock_get_profile.return_value = mock_profile

        result = refresh_profile_embedding.run("user-1")

        assert result == {"refreshed": False, "reason": "current"}
        mock_embed.assert_not_called()

    @patch("autoapply.tasks.embeddings.get_profile")
    def test_profile_not_found(self, mock_get_profile):
        mock_get_profile.return_value = None

        result = refresh_profile_embedding.run("nobody")

        assert result == {"error": "Profile not found"}
