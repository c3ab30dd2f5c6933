"""
Tests for the Matching Engine

Tests cover:
- Pure score components (vector clamp, keyword coverage, weighting, percent)
- Ranking order and deterministic tie-break
- Embedding generation, caching and staleness
- Partial results when an embedding cannot be generated
"""

from unittest.mock import MagicMock

import pytest

from autoapply.errors import NotFoundError, PermanentCapabilityError, TransientCapabilityError
from autoapply.services.matcher import (
    MatchingEngine,
    MatchScore,
    combine_scores,
    keyword_component,
    sort_scores,
    to_percent,
    vector_component,
)
from autoapply.services.vector_store import InMemoryVectorStore
from tests.conftest import JOB_DESCRIPTION, RESUME, StubEmbeddings, unit_vector_at


def make_engine(profiles, jobs, embeddings, **kwargs):
    return MatchingEngine(
        embeddings=embeddings,
        vector_store=InMemoryVectorStore(),
        profiles=profiles,
        jobs=jobs,
        backoff_seconds=0,
        **kwargs,
    )


class TestScoreComponents:
    """Test the pure scoring functions."""

    def test_keyword_score_is_share_of_requirements(self):
        """Two of three requirements covered → 2/3."""
        score, matched = keyword_component({"python", "sql"}, ["python", "go", "sql"])

        assert score == pytest.approx(2 / 3)
        assert matched == ["python", "sql"]

    def test_keyword_match_is_case_insensitive(self):
        score, matched = keyword_component(["Python", "  PostgreSQL "], ["python", "postgresql"])

        assert score == 1.0
        assert matched == ["postgresql", "python"]

    def test_keyword_score_zero_without_requirements(self):
        """Jobs with no requirements contribute no keyword score."""
        assert keyword_component({"python"}, []) == (0.0, [])
        assert keyword_component({"python"}, ["", "  "]) == (0.0, [])

    def test_duplicate_requirements_counted_once(self):
        score, _ = keyword_component({"python"}, ["Python", "python", "go"])

        assert score == pytest.approx(0.5)

    def test_negative_similarity_floors_at_zero(self):
        assert vector_component([1.0, 0.0], [-1.0, 0.0]) == 0.0

    def test_missing_vector_scores_zero(self):
        assert vector_component(None, [1.0, 0.0]) == 0.0
        assert vector_component([1.0, 0.0], None) == 0.0

    def test_default_weights(self):
        """0.6 × vector + 0.4 × keyword."""
        assert combine_scores(0.9, 2 / 3) == pytest.approx(0.80667, abs=1e-4)

    def test_percent_rounds_down(self):
        assert to_percent(0.80667) == 80
        assert to_percent(1.0) == 100
        assert to_percent(0.0) == 0

    def test_percent_tolerates_float_error(self):
        """0.29 * 100 is 28.999999999999996 in binary floating point."""
        assert to_percent(0.29) == 29

    @pytest.mark.parametrize("vector", [-1.0, -0.2, 0.0, 0.33, 0.9, 1.0])
    @pytest.mark.parametrize("keyword", [0.0, 1 / 3, 2 / 3, 1.0])
    def test_final_score_always_in_unit_interval(self, vector, keyword):
        final = combine_scores(max(0.0, vector), keyword)

        assert 0.0 <= final <= 1.0
        assert 0 <= to_percent(final) <= 100

    def test_sort_breaks_ties_by_job_id(self):
        scores = [
            MatchScore("u", "job-c", 0.5, 0.5, 0.5),
            MatchScore("u", "job-a", 0.5, 0.5, 0.5),
            MatchScore("u", "job-b", 0.9, 0.9, 0.9),
        ]

        assert [s.job_id for s in sort_scores(scores)] == ["job-b", "job-a", "job-c"]


class TestMatchingEngine:
    """Test ranking against a real database."""

    @pytest.mark.asyncio
    async def test_documented_scenario_scores_80_percent(self, profiles, jobs, profile, job):
        """skills {python, sql}, requirements [python, go, sql], vector 0.9 → 80%."""
        embeddings = StubEmbeddings({RESUME: [1.0, 0.0], JOB_DESCRIPTION: unit_vector_at(0.9)})
        engine = make_engine(profiles, jobs, embeddings)

        result = await engine.rank(profile.id, [job.id])

        [score] = result.scores
        assert score.vector_score == pytest.approx(0.9)
        assert score.keyword_score == pytest.approx(2 / 3)
        assert score.final_score == pytest.approx(0.8067, abs=1e-3)
        assert score.score_percent == 80
        assert result.warnings == []

    @pytest.mark.asyncio
    async def test_rank_is_permutation_sorted_descending(self, profiles, jobs, profile):
        embeddings = StubEmbeddings()
        for i, requirements in enumerate([["go"], ["python", "sql"], ["python", "rust"]]):
            await jobs.upsert_by_url(
                f"https://jobs.example.com/{i}",
                id=f"job-{i}",
                title=f"Job {i}",
                description=f"Description {i}",
                requirements=requirements,
            )
        engine = make_engine(profiles, jobs, embeddings)

        result = await engine.rank(profile.id, ["job-0", "job-1", "job-2"])

        assert sorted(result.ordered_ids()) == ["job-0", "job-1", "job-2"]
        assert result.ordered_ids() == ["job-1", "job-2", "job-0"]
        finals = [s.final_score for s in result.scores]
        assert finals == sorted(finals, reverse=True)

    @pytest.mark.asyncio
    async def test_equal_scores_ordered_by_job_id(self, profiles, jobs, profile):
        """Identical jobs rank in job id order regardless of input order."""
        for job_id in ("job-b", "job-a", "job-c"):
            await jobs.upsert_by_url(
                f"https://jobs.example.com/{job_id}",
                id=job_id,
                title="Same",
                description="Same description",
                requirements=["python"],
            )
        engine = make_engine(profiles, jobs, StubEmbeddings())

        first = await engine.rank(profile.id, ["job-c", "job-b", "job-a"])
        second = await engine.rank(profile.id, ["job-a", "job-c", "job-b"])

        assert first.ordered_ids() == ["job-a", "job-b", "job-c"]
        assert second.scores == first.scores

    @pytest.mark.asyncio
    async def test_embeddings_are_generated_then_cached(self, profiles, jobs, profile, job):
        embeddings = StubEmbeddings()
        engine = make_engine(profiles, jobs, embeddings)

        await engine.rank(profile.id, [job.id])
        await engine.rank(profile.id, [job.id])

        assert embeddings.calls == [RESUME, JOB_DESCRIPTION]

    @pytest.mark.asyncio
    async def test_changed_description_regenerates_embedding(self, profiles, jobs, profile, job):
        embeddings = StubEmbeddings()
        engine = make_engine(profiles, jobs, embeddings)
        await engine.rank(profile.id, [job.id])

        await jobs.upsert_by_url(job.url, description="Now a Rust role")
        await engine.rank(profile.id, [job.id])

        assert embeddings.calls[-1] == "Now a Rust role"

    @pytest.mark.asyncio
    async def test_dimension_change_marks_embedding_stale(self, profiles, jobs, profile, job):
        """A provider with a different dimensionality re-embeds everything."""
        store = InMemoryVectorStore()
        first = MatchingEngine(StubEmbeddings(dimensions=2), store, profiles, jobs)
        await first.rank(profile.id, [job.id])

        wider = StubEmbeddings(dimensions=3)
        second = MatchingEngine(wider, store, profiles, jobs)
        await second.rank(profile.id, [job.id])

        assert wider.calls == [RESUME, JOB_DESCRIPTION]

    @pytest.mark.asyncio
    async def test_failed_job_embedding_is_partial_result(self, profiles, jobs, profile, job):
        """The job is still ranked, with vector score 0 and a warning."""
        embeddings = StubEmbeddings()
        embeddings.fail(JOB_DESCRIPTION, PermanentCapabilityError("embedding", "input too long"))
        await jobs.upsert_by_url(
            "https://jobs.example.com/other", id="job-ok", title="Other", description="Fine"
        )
        engine = make_engine(profiles, jobs, embeddings)

        result = await engine.rank(profile.id, [job.id, "job-ok"])

        by_id = {s.job_id: s for s in result.scores}
        assert set(by_id) == {job.id, "job-ok"}
        assert by_id[job.id].vector_score == 0.0
        assert by_id[job.id].keyword_score == pytest.approx(2 / 3)
        assert by_id["job-ok"].vector_score == 1.0
        assert len(result.warnings) == 1
        assert job.id in result.warnings[0]

    @pytest.mark.asyncio
    async def test_transient_embedding_error_is_retried(self, profiles, jobs, profile, job):
        embeddings = StubEmbeddings()
        embeddings.fail(JOB_DESCRIPTION, TransientCapabilityError("embedding", "rate limited"))
        engine = make_engine(profiles, jobs, embeddings)

        result = await engine.rank(profile.id, [job.id])

        assert result.warnings == []
        assert result.scores[0].vector_score == 1.0
        assert embeddings.calls.count(JOB_DESCRIPTION) == 2

    @pytest.mark.asyncio
    async def test_failed_user_embedding_degrades_to_keywords(self, profiles, jobs, profile, job):
        embeddings = StubEmbeddings()
        embeddings.fail(RESUME, PermanentCapabilityError("embedding", "bad input"))
        engine = make_engine(profiles, jobs, embeddings)

        result = await engine.rank(profile.id, [job.id])

        assert result.scores[0].vector_score == 0.0
        assert result.scores[0].final_score == pytest.approx(0.4 * 2 / 3)
        assert any("user-1" in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_unknown_job_raises_not_found(self, profiles, jobs, profile):
        engine = make_engine(profiles, jobs, StubEmbeddings())

        with pytest.raises(NotFoundError):
            await engine.rank(profile.id, ["missing-job"])

    @pytest.mark.asyncio
    async def test_unknown_user_raises_not_found(self, profiles, jobs, job):
        engine = make_engine(profiles, jobs, StubEmbeddings())

        with pytest.raises(NotFoundError):
            await engine.rank("nobody", [job.id])

    def test_weights_must_sum_to_one(self):
        with pytest.raises(ValueError):
            make_engine(MagicMock(), MagicMock(), StubEmbeddings(), vector_weight=0.7, keyword_weight=0.4)

    @pytest.mark.asyncio
    async def test_custom_weights(self, profiles, jobs, profile, job):
        embeddings = StubEmbeddings({RESUME: [1.0, 0.0], JOB_DESCRIPTION: [1.0, 0.0]})
        engine = make_engine(profiles, jobs, embeddings, vector_weight=0.0, keyword_weight=1.0)

        result = await engine.rank(profile.id, [job.id])

        assert result.scores[0].final_score == pytest.approx(2 / 3)


class TestFeed:
    """Test the ranked feed."""

    @pytest.mark.asyncio
    async def test_feed_lists_every_job_with_metadata(self, profiles, jobs, profile, job):
        embeddings = StubEmbeddings({RESUME: [1.0, 0.0], JOB_DESCRIPTION: unit_vector_at(0.9)})
        engine = make_engine(profiles, jobs, embeddings)

        feed = await engine.get_feed(profile.id)

        [item] = feed.items
        assert item.job_id == job.id
        assert item.score_percent == 80
        assert item.metadata["title"] == "Backend Engineer"
        assert item.metadata["url"] == job.url
        assert item.metadata["matched_skills"] == ["python", "sql"]
        assert item.metadata["missing_skills"] == ["go"]

    @pytest.mark.asyncio
    async def test_feed_is_empty_without_jobs(self, profiles, jobs, profile):
        feed = await make_engine(profiles, jobs, StubEmbeddings()).get_feed(profile.id)

        assert feed.items == []
