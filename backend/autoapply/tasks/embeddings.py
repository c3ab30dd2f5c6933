"""
Background Tasks for Embedding Refresh

Celery tasks that pre-compute the embeddings the matching engine would
otherwise generate on the request path:
- refresh_job_embeddings: stale job description embeddings
- refresh_profile_embedding: a user's resume embedding

Staleness follows the matching engine: missing, content hash mismatch, or
a length that differs from the provider's dimensions. Writes replace the
(vector, hash) pair with one UPDATE, so a refresh racing a ranking request
is last-write-wins.

All tasks support:
- Automatic retries on transient provider failures
- Rate limiting for API calls
- Prometheus metrics
"""

import asyncio
import logging
import time
from typing import Dict, List, Optional

from celery import Task
from prometheus_client import Counter, Histogram
from sqlalchemy import update

from autoapply.celery import celery_app
from autoapply.errors import CapabilityError
from autoapply.services.vector_store import content_hash

logger = logging.getLogger(__name__)

# ==================== Prometheus Metrics ====================

TASK_DURATION = Histogram(
    "celery_task_duration_seconds",
    "Time spent executing Celery tasks",
    ["task_name"]
)

TASK_FAILURES = Counter(
    "celery_task_failures_total",
    "Number of Celery task failures",
    ["task_name"]
)

EMBEDDINGS_GENERATED = Counter(
    "embeddings_generated_total",
    "Number of embeddings generated",
    ["kind"]
)


# ==================== Task Base ====================

class EmbeddingTask(Task):
    """Task base holding the worker's embedding provider, built on first use."""

    _provider = None

    @property
    def provider(self):
        if self._provider is None:
            from autoapply.config import get_settings
            from autoapply.services.embedding_providers import get_embedding_provider

            settings = get_settings()
            self._provider = get_embedding_provider(
                settings.embedding_provider,
                api_key=settings.openai_api_key,
                model_name=settings.embedding_model or None,
            )
        return self._provider


# ==================== Helper Functions ====================

def embed_texts(provider, texts: List[str]) -> List[List[float]]:
    """Embed texts with the given provider (synchronous wrapper)."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(provider.embed_batch(texts))
    finally:
        loop.close()


def get_jobs(job_ids: Optional[List[str]] = None) -> List:
    """Jobs by id, or every job when ids are not given."""
    from autoapply.database import get_db_session
    from autoapply.models import Job

    session = get_db_session()
    try:
        query = session.query(Job)
        if job_ids is not None:
            query = query.filter(Job.id.in_(job_ids))
        return query.all()
    finally:
        session.close()


def get_profile(user_id: str):
    from autoapply.database import get_db_session
    from autoapply.models import Profile

    session = get_db_session()
    try:
        return session.query(Profile).filter(Profile.id == user_id).first()
    finally:
        session.close()


def store_embedding(model, entity_id: str, vector: List[float], source_hash: str) -> None:
    """Replace vector and hash of one row in a single UPDATE."""
    from autoapply.database import get_db_session

    session = get_db_session()
    try:
        session.execute(
            update(model)
            .where(model.id == entity_id)
            .values(embedding=[float(v) for v in vector], embedding_hash=source_hash)
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def is_stale(
    embedding: Optional[List[float]],
    stored_hash: Optional[str],
    source_hash: str,
    dimensions: int,
) -> bool:
    if not embedding:
        return True
    return stored_hash != source_hash or len(embedding) != dimensions


# ==================== Celery Tasks ====================

@celery_app.task(base=EmbeddingTask, bind=True, rate_limit="100/m", max_retries=3, default_retry_delay=30)
def refresh_job_embeddings(self, job_ids: Optional[List[str]] = None) -> Dict[str, int]:
    """
    Generate embeddings for jobs whose cached vector is stale.

    Args:
        job_ids: Jobs to check; all jobs when omitted

    Returns:
        Dict with refresh statistics
    """
    from autoapply.models import Job

    start_time = time.time()
    stats = {"checked": 0, "refreshed": 0, "skipped": 0}

    try:
        stale = []
        for job in get_jobs(job_ids):
            stats["checked"] += 1
            if not (job.description or "").strip():
                stats["skipped"] += 1
                continue
            source_hash = content_hash(job.description)
            if is_stale(job.embedding, job.embedding_hash, source_hash, self.provider.dimensions):
                stale.append((job.id, job.description, source_hash))

        if stale:
            vectors = embed_texts(self.provider, [description for _, description, _ in stale])
            for (job_id, _, source_hash), vector in zip(stale, vectors):
                store_embedding(Job, job_id, vector, source_hash)
                stats["refreshed"] += 1
                EMBEDDINGS_GENERATED.labels(kind="job").inc()

        logger.info(f"Refreshed {stats['refreshed']} of {stats['checked']} job embeddings")
        return stats

    except CapabilityError as exc:
        TASK_FAILURES.labels(task_name="refresh_job_embeddings").inc()
        logger.error(f"Job embedding refresh failed: {exc}")
        if exc.transient:
            raise self.retry(exc=exc)
        raise

    finally:
        duration = time.time() - start_time
        TASK_DURATION.labels(task_name="refresh_job_embeddings").observe(duration)


@celery_app.task(base=EmbeddingTask, bind=True, max_retries=3, default_retry_delay=30)
def refresh_profile_embedding(self, user_id: str) -> Dict[str, object]:
    """
    Regenerate a user's resume embedding if it is stale.

    Called after the resume changes so the next feed request does not pay
    for the embedding call.
    """
    from autoapply.models import Profile

    start_time = time.time()

    try:
        profile = get_profile(user_id)
        if not profile:
            logger.error(f"Profile not found: {user_id}")
            return {"error": "Profile not found"}
        if not (profile.resume_text or "").strip():
            return {"refreshed": False, "reason": "no resume text"}

        source_hash = content_hash(profile.resume_text)
        if not is_stale(
            profile.embedding, profile.embedding_hash, source_hash, self.provider.dimensions
        ):
            return {"refreshed": False, "reason": "current"}

        vector = embed_texts(self.provider, [profile.resume_text])[0]
        store_embedding(Profile, user_id, vector, source_hash)
        EMBEDDINGS_GENERATED.labels(kind="user").inc()
        logger.info(f"Refreshed resume embedding for {user_id}")
        return {"refreshed": True}

    except CapabilityError as exc:
        TASK_FAILURES.labels(task_name="refresh_profile_embedding").inc()
        logger.error(f"Profile embedding refresh failed for {user_id}: {exc}")
        if exc.transient:
            raise self.retry(exc=exc)
        raise

    finally:
        duration = time.time() - start_time
        TASK_DURATION.labels(task_name="refresh_profile_embedding").observe(duration)
