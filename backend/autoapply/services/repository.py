"""
Repositories - Persistence boundary for applications, profiles and jobs

Every method opens its own session from the injected factory, so the
request path and background pipelines never share a session.

Application invariants enforced here:
    - One live application per (user, job): the unique ``dedupe_key``
      column rejects duplicates; IntegrityError becomes ConflictError.
    - Status changes are compare-and-set: ``transition()`` updates the row
      only if it is still in the expected status, so concurrent actors
      (duplicate approve clicks, expiry sweep vs. approval) cannot both win.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from autoapply.errors import ConflictError, NotFoundError
from autoapply.models import Application, ApplicationStatus, Job, Profile
from autoapply.models.application import dedupe_key_for

logger = logging.getLogger(__name__)

StatusSpec = Union[ApplicationStatus, Iterable[ApplicationStatus]]


def _status_values(expected: StatusSpec) -> List[str]:
    if isinstance(expected, ApplicationStatus):
        return [expected.value]
    return [s.value for s in expected]


class ApplicationRepository:
    """CRUD and compare-and-set status transitions for Application."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def create(self, user_id: str, job_id: str) -> Application:
        """
        Insert a new application in ``drafting``.

        Raises:
            ConflictError: A live application already exists for the pair
        """
        application = Application(
            user_id=user_id,
            job_id=job_id,
            status=ApplicationStatus.DRAFTING.value,
            dedupe_key=dedupe_key_for(user_id, job_id),
            retry_count=0,
        )
        async with self.session_factory() as session:
            session.add(application)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ConflictError(
                    f"An application for user {user_id} and job {job_id} already exists"
                ) from e
            await session.refresh(application)
        return application

    async def find(self, application_id: str) -> Optional[Application]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Application).where(Application.id == application_id)
            )
            return result.scalar_one_or_none()

    async def get(self, application_id: str) -> Application:
        application = await self.find(application_id)
        if application is None:
            raise NotFoundError("Application", application_id)
        return application

    async def list_for_user(self, user_id: str) -> List[Application]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Application)
                .where(Application.user_id == user_id)
                .order_by(Application.created_at.desc())
            )
            return list(result.scalars().all())

    async def transition(
        self,
        application_id: str,
        expected: StatusSpec,
        to: ApplicationStatus,
        **fields: Any,
    ) -> Application:
        """
        Move an application to ``to`` if it is currently in ``expected``.

        Args:
            application_id: Application to update
            expected: Status (or statuses) the row must currently have
            to: New status (may equal the current one to only update fields)
            **fields: Extra column values, literal or SQL expressions

        Returns:
            The updated Application

        Raises:
            NotFoundError: No such application
            ConflictError: The application is no longer in ``expected``
        """
        allowed = _status_values(expected)
        async with self.session_factory() as session:
            result = await session.execute(
                update(Application)
                .where(
                    Application.id == application_id,
                    Application.status.in_(allowed),
                )
                .values(status=to.value, **fields)
            )
            await session.commit()

        if result.rowcount == 0:
            current = await self.get(application_id)
            raise ConflictError(
                f"Application {application_id} is '{current.status}', "
                f"expected {' or '.join(allowed)}"
            )

        return await self.get(application_id)

    async def list_with_status(self, status: ApplicationStatus) -> List[Application]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Application)
                .where(Application.status == status.value)
                .order_by(Application.created_at)
            )
            return list(result.scalars().all())

    async def list_awaiting_approval_since(self, cutoff: datetime) -> List[Application]:
        """Applications in needs_approval whose approval was requested before cutoff."""
        async with self.session_factory() as session:
            result = await session.execute(
                select(Application).where(
                    Application.status == ApplicationStatus.NEEDS_APPROVAL.value,
                    Application.approval_requested_at < cutoff,
                )
            )
            return list(result.scalars().all())


class ProfileRepository:
    """User profiles; clears the cached embedding when the resume changes."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def find(self, user_id: str) -> Optional[Profile]:
        async with self.session_factory() as session:
            result = await session.execute(select(Profile).where(Profile.id == user_id))
            return result.scalar_one_or_none()

    async def get(self, user_id: str) -> Profile:
        profile = await self.find(user_id)
        if profile is None:
            raise NotFoundError("User", user_id)
        return profile

    async def upsert(self, user_id: str, **fields: Any) -> Profile:
        """
        Create the profile or update the given fields.

        Returns:
            The stored profile
        """
        async with self.session_factory() as session:
            result = await session.execute(select(Profile).where(Profile.id == user_id))
            profile = result.scalar_one_or_none()

            if profile is None:
                profile = Profile(id=user_id, skills=[])
                session.add(profile)

            resume_changed = (
                "resume_text" in fields and fields["resume_text"] != profile.resume_text
            )
            for field, value in fields.items():
                setattr(profile, field, value)

            # Clear embedding if resume changed (regenerated on next ranking)
            if resume_changed:
                profile.embedding = None
                profile.embedding_hash = None

            await session.commit()
            await session.refresh(profile)
            return profile


class JobRepository:
    """Job listings keyed by id, deduplicated by URL."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory

    async def find(self, job_id: str) -> Optional[Job]:
        async with self.session_factory() as session:
            result = await session.execute(select(Job).where(Job.id == job_id))
            return result.scalar_one_or_none()

    async def get(self, job_id: str) -> Job:
        job = await self.find(job_id)
        if job is None:
            raise NotFoundError("Job", job_id)
        return job

    async def find_by_url(self, url: str) -> Optional[Job]:
        async with self.session_factory() as session:
            result = await session.execute(select(Job).where(Job.url == url))
            return result.scalar_one_or_none()

    async def get_many(self, job_ids: List[str]) -> Dict[str, Job]:
        """
        Fetch jobs by id.

        Raises:
            NotFoundError: If any id is unknown
        """
        if not job_ids:
            return {}
        async with self.session_factory() as session:
            result = await session.execute(select(Job).where(Job.id.in_(job_ids)))
            jobs = {job.id: job for job in result.scalars().all()}

        missing = sorted(set(job_ids) - set(jobs))
        if missing:
            raise NotFoundError("Job", ", ".join(missing))
        return jobs

    async def list_ids(self) -> List[str]:
        async with self.session_factory() as session:
            result = await session.execute(select(Job.id).order_by(Job.id))
            return [row[0] for row in result.fetchall()]

    async def upsert_by_url(self, url: str, **fields: Any) -> Tuple[Job, bool]:
        """
        Insert a job or update the one with the same URL.

        Clears the cached embedding when the description changes.

        Returns:
            Tuple of (job, created)
        """
        async with self.session_factory() as session:
            result = await session.execute(select(Job).where(Job.url == url))
            job = result.scalar_one_or_none()
            created = job is None

            if created:
                job = Job(url=url, requirements=[])
                session.add(job)

            description_changed = (
                "description" in fields and fields["description"] != job.description
            )
            for field, value in fields.items():
                setattr(job, field, value)

            if description_changed and not created:
                job.embedding = None
                job.embedding_hash = None

            await session.commit()
            await session.refresh(job)
            return job, created
