"""
Matching Engine - Hybrid job relevance scoring

Calculates how well each job matches a user's profile and produces a
ranked feed.

Match Score Composition (default weights):
    - Vector Similarity (60%): cosine similarity of resume and description
      embeddings, clamped to [0, 1]
    - Keyword Match (40%): share of the job's requirements found in the
      user's skill set (case-insensitive; 0 when the job lists none)

Score Range: 0-1 canonical, exposed as a 0-100 integer percentage

Ordering: final score descending, ties broken by job id ascending, so the
same inputs always produce the same ranking.

Embeddings:
    Missing or stale embeddings are generated on demand and written back
    through the VectorStore. A job whose embedding cannot be generated is
    still ranked with a vector score of 0 and reported as a warning.

Complexity Analysis:
    - keyword_component: O(r) where r=requirement count
    - rank: O(n * d) where n=jobs, d=embedding dimensions, plus at most
      n+1 embedding calls when every cache entry is stale
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from autoapply.errors import CapabilityError, PermanentCapabilityError
from autoapply.middleware.metrics import record_match_score_latency
from autoapply.models import Job, Profile
from autoapply.services.capabilities import EmbeddingProvider, call_with_retries
from autoapply.services.repository import JobRepository, ProfileRepository
from autoapply.services.skills import normalize_skill, normalize_skills
from autoapply.services.vector_store import (
    JOB,
    USER,
    VectorStore,
    content_hash,
    cosine_similarity,
)

logger = logging.getLogger(__name__)

DEFAULT_VECTOR_WEIGHT = 0.6
DEFAULT_KEYWORD_WEIGHT = 0.4


# ==================== Scoring ====================

def vector_component(user_vector: Optional[Sequence[float]], job_vector: Optional[Sequence[float]]) -> float:
    """Cosine similarity clamped to [0, 1]; 0 when either vector is missing."""
    if not user_vector or not job_vector:
        return 0.0
    return min(1.0, max(0.0, cosine_similarity(user_vector, job_vector)))


def keyword_component(user_skills: Iterable[str], requirements: Iterable[str]) -> Tuple[float, List[str]]:
    """
    Fraction of job requirements covered by the user's skills.

    Requirements are normalized (lowercase, collapsed whitespace) and
    deduplicated before counting.

    Returns:
        Tuple of (score in [0, 1], sorted matched requirements)

    Example:
        >>> keyword_component({"Python", "SQL"}, ["python", "go", "sql"])
        (0.6666666666666666, ['python', 'sql'])
    """
    required = normalize_skills(requirements)
    if not required:
        return 0.0, []

    matched = sorted(required & normalize_skills(user_skills))
    return len(matched) / len(required), matched


def combine_scores(
    vector_score: float,
    keyword_score: float,
    vector_weight: float = DEFAULT_VECTOR_WEIGHT,
    keyword_weight: float = DEFAULT_KEYWORD_WEIGHT,
) -> float:
    final = vector_weight * vector_score + keyword_weight * keyword_score
    return min(1.0, max(0.0, final))


def to_percent(score: float) -> int:
    """0..1 score to a 0-100 integer, rounded down."""
    # Round first so 0.29 * 100 = 28.999999999999996 still reads as 29
    return int(math.floor(round(score * 100, 6)))


@dataclass(frozen=True)
class MatchScore:
    user_id: str
    job_id: str
    vector_score: float
    keyword_score: float
    final_score: float
    matched_skills: Tuple[str, ...] = ()

    @property
    def score_percent(self) -> int:
        return to_percent(self.final_score)


@dataclass
class RankingResult:
    """Ranked scores plus warnings for jobs that were only partially scored."""

    scores: List[MatchScore] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def ordered_ids(self) -> List[str]:
        return [score.job_id for score in self.scores]


@dataclass
class FeedEntry:
    job_id: str
    score_percent: int
    score: float
    metadata: Dict[str, object]


@dataclass
class FeedResult:
    user_id: str
    items: List[FeedEntry] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def sort_scores(scores: Iterable[MatchScore]) -> List[MatchScore]:
    return sorted(scores, key=lambda s: (-s.final_score, s.job_id))


# ==================== Engine ====================

class MatchingEngine:
    """
    Ranks jobs for a user.

    Attributes:
        embeddings: Embedding capability bound at startup
        vector_store: Cache of user/job embeddings
        vector_weight / keyword_weight: Non-negative, summing to 1
    """

    def __init__(
        self,
        embeddings: EmbeddingProvider,
        vector_store: VectorStore,
        profiles: ProfileRepository,
        jobs: JobRepository,
        vector_weight: float = DEFAULT_VECTOR_WEIGHT,
        keyword_weight: float = DEFAULT_KEYWORD_WEIGHT,
        embedding_concurrency: int = 8,
        embedding_timeout: Optional[float] = 30.0,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
    ) -> None:
        if vector_weight < 0 or keyword_weight < 0:
            raise ValueError("Match weights must be non-negative")
        if not math.isclose(vector_weight + keyword_weight, 1.0, abs_tol=1e-6):
            raise ValueError(
                f"Match weights must sum to 1.0 (got {vector_weight} + {keyword_weight})"
            )

        self.embeddings = embeddings
        self.vector_store = vector_store
        self.profiles = profiles
        self.jobs = jobs
        self.vector_weight = vector_weight
        self.keyword_weight = keyword_weight
        self.embedding_timeout = embedding_timeout
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self._embedding_slots = asyncio.Semaphore(max(1, embedding_concurrency))

    async def rank(self, user_id: str, job_ids: Sequence[str]) -> RankingResult:
        """
        Score and order the given jobs for a user.

        Args:
            user_id: Profile id
            job_ids: Candidate jobs (duplicates are ignored)

        Returns:
            RankingResult with one MatchScore per distinct job id

        Raises:
            NotFoundError: Unknown user or job id
        """
        start = time.perf_counter()
        unique_ids = list(dict.fromkeys(job_ids))

        profile = await self.profiles.get(user_id)
        jobs = await self.jobs.get_many(unique_ids)
        jobs_in_order = [jobs[job_id] for job_id in unique_ids]

        result = RankingResult()
        user_vector = await self._ensure_user_embedding(profile, result.warnings)
        job_vectors = await self._ensure_job_embeddings(jobs_in_order, result.warnings)

        scores = [
            self.score(profile, job, user_vector, job_vectors.get(job.id))
            for job in jobs_in_order
        ]
        result.scores = sort_scores(scores)

        record_match_score_latency(time.perf_counter() - start)
        if result.warnings:
            logger.warning(f"Ranking for {user_id} is partial: {len(result.warnings)} warning(s)")
        return result

    def score(
        self,
        profile: Profile,
        job: Job,
        user_vector: Optional[Sequence[float]],
        job_vector: Optional[Sequence[float]],
    ) -> MatchScore:
        vector_score = vector_component(user_vector, job_vector)
        keyword_score, matched = keyword_component(profile.skills or [], job.requirements or [])
        return MatchScore(
            user_id=profile.id,
            job_id=job.id,
            vector_score=vector_score,
            keyword_score=keyword_score,
            final_score=combine_scores(
                vector_score, keyword_score, self.vector_weight, self.keyword_weight
            ),
            matched_skills=tuple(matched),
        )

    async def get_feed(self, user_id: str) -> FeedResult:
        """Rank every stored job for the user, with display metadata."""
        job_ids = await self.jobs.list_ids()
        ranking = await self.rank(user_id, job_ids)
        jobs = await self.jobs.get_many(ranking.ordered_ids())

        profile = await self.profiles.get(user_id)
        feed = FeedResult(user_id=user_id, warnings=list(ranking.warnings))
        for match in ranking.scores:
            job = jobs[match.job_id]
            feed.items.append(
                FeedEntry(
                    job_id=match.job_id,
                    score_percent=match.score_percent,
                    score=match.final_score,
                    metadata={
                        "title": job.title,
                        "company": job.company,
                        "location": job.location,
                        "url": job.url,
                        "vector_score": round(match.vector_score, 4),
                        "keyword_score": round(match.keyword_score, 4),
                        "matched_skills": list(match.matched_skills),
                        "missing_skills": missing_requirements(profile, job),
                    },
                )
            )
        return feed

    # ==================== Embeddings ====================

    async def _ensure_user_embedding(
        self, profile: Profile, warnings: List[str]
    ) -> Optional[Tuple[float, ...]]:
        if not (profile.resume_text or "").strip():
            warnings.append(f"User {profile.id} has no resume text; vector scores are 0")
            return None

        source_hash = content_hash(profile.resume_text)
        stored = await self.vector_store.get(USER, profile.id)
        if stored is not None and stored.is_current(source_hash, self.embeddings.dimensions):
            return stored.vector

        try:
            vector = await self._embed(profile.resume_text, f"user {profile.id}")
        except CapabilityError as e:
            logger.warning(f"User embedding failed for {profile.id}: {e}")
            warnings.append(f"Embedding failed for user {profile.id}: {e.reason}; vector scores are 0")
            return None

        await self.vector_store.put(USER, profile.id, vector, source_hash)
        return tuple(vector)

    async def _ensure_job_embeddings(
        self, jobs: List[Job], warnings: List[str]
    ) -> Dict[str, Tuple[float, ...]]:
        stored = await self.vector_store.get_many(JOB, [job.id for job in jobs])
        dimensions = self.embeddings.dimensions

        vectors: Dict[str, Tuple[float, ...]] = {}
        stale: List[Tuple[Job, str]] = []
        for job in jobs:
            if not (job.description or "").strip():
                warnings.append(f"Job {job.id} has no description; vector score is 0")
                continue
            source_hash = content_hash(job.description)
            entry = stored.get(job.id)
            if entry is not None and entry.is_current(source_hash, dimensions):
                vectors[job.id] = entry.vector
            else:
                stale.append((job, source_hash))

        if stale:
            logger.info(f"Generating {len(stale)} job embedding(s)")
            outcomes = await asyncio.gather(
                *(self._refresh_job(job, source_hash) for job, source_hash in stale)
            )
            for (job, _), (vector, error) in zip(stale, outcomes):
                if vector is not None:
                    vectors[job.id] = vector
                else:
                    warnings.append(f"Embedding failed for job {job.id}: {error}; vector score is 0")

        return vectors

    async def _refresh_job(
        self, job: Job, source_hash: str
    ) -> Tuple[Optional[Tuple[float, ...]], Optional[str]]:
        try:
            vector = await self._embed(job.description, f"job {job.id}")
        except CapabilityError as e:
            logger.warning(f"Job embedding failed for {job.id}: {e}")
            return None, e.reason
        await self.vector_store.put(JOB, job.id, vector, source_hash)
        return tuple(vector), None

    async def _embed(self, text: str, label: str) -> List[float]:
        """
        Embed one text with transient retries under the embedding timeout.

        Raises:
            CapabilityError: Permanent failure, exhausted retries or timeout
        """
        async with self._embedding_slots:
            try:
                vector = await asyncio.wait_for(
                    call_with_retries(
                        lambda: self.embeddings.embed(text),
                        name=f"embedding for {label}",
                        max_attempts=self.max_attempts,
                        base_delay=self.backoff_seconds,
                    ),
                    timeout=self.embedding_timeout,
                )
            except asyncio.TimeoutError:
                raise PermanentCapabilityError(
                    "embedding", f"timed out after {self.embedding_timeout}s"
                ) from None

        if len(vector) != self.embeddings.dimensions:
            raise PermanentCapabilityError(
                "embedding",
                f"expected {self.embeddings.dimensions} dimensions, got {len(vector)}",
            )
        return list(vector)


def missing_requirements(profile: Profile, job: Job) -> List[str]:
    """Normalized job requirements the profile does not cover."""
    skills = normalize_skills(profile.skills or [])
    return sorted({normalize_skill(r) for r in job.requirements or [] if r and r.strip()} - skills)
