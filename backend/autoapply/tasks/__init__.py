"""
Celery Task Modules

Background tasks:
- embeddings.py: Job and profile embedding refresh
"""

from autoapply.tasks.embeddings import (
    refresh_job_embeddings,
    refresh_profile_embedding,
)

__all__ = [
    "refresh_job_embeddings",
    "refresh_profile_embedding",
]
