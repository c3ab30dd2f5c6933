"""
Celery worker for embedding refresh.

Only embedding work goes through the broker. Application pipelines carry
credentials and run inside the API process instead.

Usage:
    celery -A autoapply.celery worker -Q embeddings --loglevel=info

    from autoapply.tasks.embeddings import refresh_job_embeddings
    refresh_job_embeddings.delay(["job-123"])
"""

from celery import Celery

from autoapply.config import get_settings

settings = get_settings()

EMBEDDING_TASKS = (
    "autoapply.tasks.embeddings.refresh_job_embeddings",
    "autoapply.tasks.embeddings.refresh_profile_embedding",
)

celery_app = Celery(
    "autoapply",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    enable_utc=True,
    timezone="UTC",
    # Embedding batches are slow and rate limited; one at a time per process
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    result_expires=3600,
    task_routes={name: {"queue": "embeddings"} for name in EMBEDDING_TASKS},
    task_default_queue="default",
)

celery_app.autodiscover_tasks(["autoapply.tasks"])
