"""
Job Ingestion - Store scraped postings as job listings

Scrapers are external collaborators: anything with an async
``fetch_jobs(query, location)`` returning JobCreate postings can feed this
service.

Processing:
    1. Upsert by URL (the same posting scraped twice updates one row)
    2. Extract requirements through the text-generation capability when the
       posting does not carry a list and the description is new or changed
    3. A changed description clears the cached embedding; it is regenerated
       on the next ranking or by the embedding refresh task

Requirement extraction failures do not reject the posting: the job is
stored with no requirements (keyword score 0) and a warning is returned.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Protocol

from autoapply.errors import CapabilityError, ValidationError
from autoapply.models import Job
from autoapply.schemas.job import JobCreate
from autoapply.services.capabilities import TextGenerator, call_with_retries
from autoapply.services.repository import JobRepository

logger = logging.getLogger(__name__)


class JobSource(Protocol):
    """A scraper yielding raw postings."""

    source: str

    async def fetch_jobs(self, search_query: str, location: str = "uk") -> List[JobCreate]:
        ...


@dataclass
class IngestResult:
    job: Job
    created: bool
    embedding_invalidated: bool = False
    warnings: List[str] = field(default_factory=list)


@dataclass
class IngestionStats:
    created: int = 0
    updated: int = 0
    failed: int = 0
    job_ids: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class JobIngestionService:
    def __init__(
        self,
        jobs: JobRepository,
        text_generator: TextGenerator,
        capability_max_attempts: int = 3,
        capability_backoff_seconds: float = 1.0,
    ) -> None:
        self.jobs = jobs
        self.text_generator = text_generator
        self.capability_max_attempts = capability_max_attempts
        self.capability_backoff_seconds = capability_backoff_seconds

    async def ingest(self, posting: JobCreate) -> IngestResult:
        """
        Insert or update one posting.

        Raises:
            ValidationError: Posting without URL or description
        """
        url = posting.url.strip()
        if not url or not posting.description.strip():
            raise ValidationError("A job posting needs a URL and a description")

        existing = await self.jobs.find_by_url(url)
        description_changed = existing is None or existing.description != posting.description

        fields = posting.model_dump(exclude={"url", "requirements"})
        warnings: List[str] = []

        if posting.requirements is not None:
            fields["requirements"] = _clean_requirements(posting.requirements)
        elif description_changed:
            requirements, warning = await self._extract_requirements(url, posting.description)
            fields["requirements"] = requirements
            if warning:
                warnings.append(warning)

        job, created = await self.jobs.upsert_by_url(url, **fields)
        invalidated = not created and description_changed
        logger.info(
            f"{'Created' if created else 'Updated'} job {job.id} ({job.title}) "
            f"with {len(job.requirements or [])} requirement(s)"
        )
        return IngestResult(
            job=job,
            created=created,
            embedding_invalidated=invalidated,
            warnings=warnings,
        )

    async def ingest_many(self, postings: Iterable[JobCreate]) -> IngestionStats:
        """Ingest a batch; a bad posting is counted and skipped."""
        stats = IngestionStats()
        for posting in postings:
            try:
                result = await self.ingest(posting)
            except ValidationError as e:
                stats.failed += 1
                stats.warnings.append(f"{posting.url or '<no url>'}: {e.message}")
                continue

            if result.created:
                stats.created += 1
            else:
                stats.updated += 1
            stats.job_ids.append(result.job.id)
            stats.warnings.extend(result.warnings)
        return stats

    async def ingest_from(
        self,
        source: JobSource,
        queries: Iterable[str],
        location: str = "uk",
    ) -> IngestionStats:
        """Fetch each query from a scraper and ingest the results."""
        postings: List[JobCreate] = []
        for query in queries:
            try:
                fetched = await source.fetch_jobs(query, location=location)
            except Exception as e:
                logger.error(f"Error fetching jobs from {source.source} for '{query}': {e}")
                continue
            logger.info(f"Fetched {len(fetched)} jobs from {source.source} for '{query}'")
            postings.extend(fetched)
        return await self.ingest_many(postings)

    async def _extract_requirements(self, url: str, description: str) -> tuple:
        try:
            requirements = await call_with_retries(
                lambda: self.text_generator.extract_requirements(description),
                name=f"requirements for {url}",
                max_attempts=self.capability_max_attempts,
                base_delay=self.capability_backoff_seconds,
            )
        except CapabilityError as e:
            logger.warning(f"Requirement extraction failed for {url}: {e}")
            return [], f"Requirement extraction failed for {url}: {e.reason}"
        return _clean_requirements(requirements), None


def _clean_requirements(requirements: Optional[Iterable[str]]) -> List[str]:
    """Strip blanks and case-insensitive duplicates, keeping first spelling."""
    seen = set()
    cleaned = []
    for requirement in requirements or []:
        text = " ".join(str(requirement).split())
        if text and text.lower() not in seen:
            seen.add(text.lower())
            cleaned.append(text)
    return cleaned
