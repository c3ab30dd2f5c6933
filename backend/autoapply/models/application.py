"""
Application Models - SQLAlchemy ORM models for the application lifecycle

An Application tracks one attempt to apply a user to a job. It is mutated
only through orchestrator-issued status transitions and is never deleted.

Status Flow:
    drafting → needs_approval → drafting (approved) → submitted
    drafting → failed → drafting (retry)

Uniqueness:
    ``dedupe_key`` holds "{user_id}:{job_id}" while the application is live
    and is cleared once the application is abandoned (retries exhausted or
    approval expired). The unique constraint on it rejects a second live
    application for the same pair; NULLs never collide.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import Column, String, Integer, Text, DateTime, JSON, ForeignKey, Index

from autoapply.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApplicationStatus(str, Enum):
    """Lifecycle status of an Application."""

    DRAFTING = "drafting"
    NEEDS_APPROVAL = "needs_approval"
    SUBMITTED = "submitted"
    FAILED = "failed"


def dedupe_key_for(user_id: str, job_id: str) -> str:
    return f"{user_id}:{job_id}"


class Application(Base):
    """
    Job application entity.

    Attributes:
        id: UUID primary key
        user_id: Owning profile id
        job_id: Target job id
        status: Lifecycle status (indexed)
        dedupe_key: "{user_id}:{job_id}" while live, NULL once abandoned
        tailored_resume_ref: Reference to the tailored resume artifact
        tailored_resume: Tailored resume text
        screenshot_ref: Optional screenshot from the automation run
        failure_reason: Human-readable reason for the last failure
        retry_count: Number of explicit retries so far
    """

    __tablename__ = "applications"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("profiles.id"), nullable=False, index=True)
    job_id = Column(String, ForeignKey("jobs.id"), nullable=False, index=True)
    status = Column(String(20), nullable=False, default=ApplicationStatus.DRAFTING.value, index=True)
    dedupe_key = Column(String(255), nullable=True, unique=True)
    tailored_resume_ref = Column(String(255), nullable=True)
    tailored_resume = Column(Text, nullable=True)
    screenshot_ref = Column(String(2000), nullable=True)
    failure_reason = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    approval_requested_at = Column(DateTime(timezone=True), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    submitted_at = Column(DateTime(timezone=True), nullable=True)

    @property
    def status_enum(self) -> ApplicationStatus:
        return ApplicationStatus(self.status)

    @property
    def is_abandoned(self) -> bool:
        return self.dedupe_key is None

    def __repr__(self) -> str:
        return f"<Application(id='{self.id}', status='{self.status}')>"


class ApplicationEvent(Base):
    """
    Append-only audit event for an Application.

    ``metadata`` is a reserved attribute on declarative classes, so the
    column is exposed as ``details``.
    """

    __tablename__ = "application_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    application_id = Column(String, ForeignKey("applications.id"), nullable=False)
    kind = Column(String(100), nullable=False)
    message = Column(Text, nullable=False, default="")
    details = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_application_events_app_time", "application_id", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<ApplicationEvent(application_id='{self.application_id}', kind='{self.kind}')>"
