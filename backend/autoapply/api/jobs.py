import logging

from fastapi import APIRouter, Depends, Response

from autoapply.api.deps import get_container
from autoapply.container import Container
from autoapply.schemas import JobCreate, JobResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=JobResponse, status_code=201)
async def ingest_job(
    posting: JobCreate,
    response: Response,
    container: Container = Depends(get_container),
):
    """Insert a scraped posting, or update the job with the same URL."""
    result = await container.ingestion.ingest(posting)
    if not result.created:
        response.status_code = 200
    if result.warnings:
        response.headers["X-Ingest-Warnings"] = str(len(result.warnings))

    if container.settings.precompute_embeddings and (result.created or result.embedding_invalidated):
        from autoapply.tasks.embeddings import refresh_job_embeddings

        refresh_job_embeddings.delay([result.job.id])

    return JobResponse.model_validate(result.job)


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, container: Container = Depends(get_container)):
    job = await container.jobs.get(job_id)
    return JobResponse.model_validate(job)
