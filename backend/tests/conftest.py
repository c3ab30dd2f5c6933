"""
Shared fixtures: a temporary SQLite database per test, repositories, and
stand-ins for the three capabilities.
"""

import asyncio
import math
from typing import Dict, List, Optional, Tuple
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from autoapply.database import create_session_factory, init_db
from autoapply.errors import CapabilityError
from autoapply.services.audit import AuditTrail
from autoapply.services.capabilities import AutomationOutcome
from autoapply.services.lifecycle import Stage
from autoapply.services.orchestrator import ApplicationOrchestrator
from autoapply.services.repository import ApplicationRepository, JobRepository, ProfileRepository

RESUME = "Backend engineer. Python, SQL and Docker. Built data pipelines on AWS."
JOB_DESCRIPTION = "We need a Python engineer comfortable with SQL and Go."
JOB_URL = "https://jobs.example.com/postings/1"


class StubEmbeddings:
    """
    Embedding capability with canned vectors.

    Unknown texts get a fixed unit vector; texts listed in ``failures`` raise
    the given error (one per call, then the canned vector).
    """

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, dimensions: int = 2) -> None:
        self.vectors = vectors or {}
        self._dimensions = dimensions
        self.failures: Dict[str, List[CapabilityError]] = {}
        self.calls: List[str] = []

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def fail(self, text: str, *errors: CapabilityError) -> None:
        self.failures.setdefault(text, []).extend(errors)

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        pending = self.failures.get(text)
        if pending:
            raise pending.pop(0)
        return list(self.vectors.get(text, [1.0] + [0.0] * (self._dimensions - 1)))

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [await self.embed(t) for t in texts]


def unit_vector_at(similarity: float) -> List[float]:
    """2-d vector whose cosine similarity with [1, 0] is ``similarity``."""
    return [similarity, math.sqrt(1 - similarity ** 2)]


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    factory = create_session_factory(f"sqlite:///{tmp_path / 'autoapply-test.db'}")
    await init_db(factory)
    yield factory
    await factory.kw["bind"].dispose()


@pytest.fixture
def repository(session_factory):
    return ApplicationRepository(session_factory)


@pytest.fixture
def profiles(session_factory):
    return ProfileRepository(session_factory)


@pytest.fixture
def jobs(session_factory):
    return JobRepository(session_factory)


@pytest.fixture
def audit(session_factory):
    return AuditTrail(session_factory)


@pytest_asyncio.fixture
async def profile(profiles):
    return await profiles.upsert(
        "user-1",
        full_name="Ada Lovelace",
        email="ada@example.com",
        phone="+44 20 7946 0000",
        location="London",
        resume_text=RESUME,
        skills=["Python", "SQL"],
    )


@pytest_asyncio.fixture
async def job(jobs):
    created, _ = await jobs.upsert_by_url(
        JOB_URL,
        title="Backend Engineer",
        company="Example Ltd",
        location="London",
        description=JOB_DESCRIPTION,
        requirements=["python", "go", "sql"],
    )
    return created


@pytest.fixture
def text_generator():
    generator = AsyncMock()
    generator.tailor.return_value = "Tailored resume for Backend Engineer"
    generator.extract_requirements.return_value = ["python", "sql"]
    generator.answer_questions.side_effect = lambda questions, profile, resume: {
        q: f"answer to {q}" for q in questions
    }
    return generator


@pytest.fixture
def automation():
    client = AsyncMock()
    client.apply.return_value = AutomationOutcome(succeeded=True, screenshot_ref="shots/confirm.png")
    return client


@pytest.fixture
def orchestrator(repository, profiles, jobs, audit, text_generator, automation):
    return ApplicationOrchestrator(
        repository=repository,
        profiles=profiles,
        jobs=jobs,
        audit=audit,
        text_generator=text_generator,
        automation=automation,
        max_retries=2,
        stage_timeouts={Stage.TAILOR: 2.0, Stage.AUTOMATE: 2.0},
        capability_max_attempts=3,
        capability_backoff_seconds=0,
    )


async def event_kinds(audit: AuditTrail, application_id: str) -> List[str]:
    return [event.kind for event in await audit.list_for(application_id)]


def hold_after_event(audit: AuditTrail, kind: str) -> Tuple[asyncio.Event, asyncio.Event]:
    """
    Make the pipeline block right after it records ``kind``.

    Returns (reached, release): ``reached`` is set once the event is stored;
    the pipeline continues after ``release`` is set.
    """
    reached = asyncio.Event()
    release = asyncio.Event()
    record = audit.record

    async def held_record(application_id, event_kind, message="", metadata=None):
        await record(application_id, event_kind, message, metadata)
        if event_kind == kind:
            reached.set()
            await release.wait()

    audit.record = held_record
    return reached, release
