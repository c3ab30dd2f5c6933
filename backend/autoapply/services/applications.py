"""
Application Service - Request-path entry points of the lifecycle

Every entry point validates its input, performs at most one compare-and-set
transition, records an audit event, and hands long-running work to the
TaskScheduler. None of them block on a pipeline.

Entry points:
    create_application   persist in drafting, start the pipeline at tailor
    approve_application  needs_approval → drafting, resume at automate
    reject_application   needs_approval → failed ("rejected by user")
    retry_application    failed → drafting, retry_count + 1, restart at tailor
    cancel_application   stop a running pipeline at its next stage boundary
    answer_questions     draft answers to application form questions
    expire_stale_approvals  periodic: needs_approval past its TTL → failed
    recover_interrupted  startup: drafting with no pipeline → failed ("interrupted")

Credentials passed to an entry point are owned by it until a pipeline run
takes them over; if the call fails before that, they are discarded here.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from autoapply.errors import ConflictError, ExhaustedRetryError, ValidationError
from autoapply.models import Application, ApplicationEvent, ApplicationStatus
from autoapply.models.application import utcnow
from autoapply.services.audit import AuditTrail
from autoapply.services.capabilities import TextGenerator, call_with_retries
from autoapply.services.credentials import Credentials, discard_quietly
from autoapply.services.lifecycle import Stage, Trigger, apply_trigger
from autoapply.services.orchestrator import INTERRUPTED
from autoapply.services.repository import ApplicationRepository, JobRepository, ProfileRepository
from autoapply.services.task_scheduler import TaskScheduler

logger = logging.getLogger(__name__)

REJECTED_BY_USER = "rejected by user"
APPROVAL_EXPIRED = "approval expired"
CANCELLED_BY_USER = "cancelled"
NOT_SCHEDULED = "not scheduled"


class ApplicationService:
    """Validates requests and turns them into transitions and pipeline runs."""

    def __init__(
        self,
        repository: ApplicationRepository,
        profiles: ProfileRepository,
        jobs: JobRepository,
        audit: AuditTrail,
        scheduler: TaskScheduler,
        text_generator: TextGenerator,
        max_retries: int = 3,
        approval_ttl_hours: int = 72,
        capability_max_attempts: int = 3,
        capability_backoff_seconds: float = 1.0,
    ) -> None:
        self.repository = repository
        self.profiles = profiles
        self.jobs = jobs
        self.audit = audit
        self.scheduler = scheduler
        self.text_generator = text_generator
        self.max_retries = max_retries
        self.approval_ttl_hours = approval_ttl_hours
        self.capability_max_attempts = capability_max_attempts
        self.capability_backoff_seconds = capability_backoff_seconds

    # ==================== Lifecycle Entry Points ====================

    async def create_application(
        self,
        user_id: str,
        job_id: str,
        credentials: Optional[Credentials] = None,
    ) -> Application:
        """
        Persist a new application and start its pipeline in the background.

        Raises:
            ValidationError: Blank user or job id
            NotFoundError: Unknown user or job
            ConflictError: A live application for the pair already exists
        """
        try:
            if not (user_id or "").strip() or not (job_id or "").strip():
                raise ValidationError("user_id and job_id are required")
            if self.scheduler.closed:
                raise ConflictError("Service is shutting down; no new applications are accepted")
            await self.profiles.get(user_id)
            await self.jobs.get(job_id)
            application = await self.repository.create(user_id, job_id)
        except Exception:
            discard_quietly(credentials)
            raise

        await self.audit.record(
            application.id,
            "application_created",
            "Application created",
            {
                "user_id": user_id,
                "job_id": job_id,
                "has_login": credentials is not None,
            },
        )
        try:
            self.scheduler.submit(application.id, credentials, Stage.TAILOR)
        except Exception as e:
            discard_quietly(credentials)
            await self._fail_stranded(application, NOT_SCHEDULED, "pipeline_not_scheduled", str(e))
            raise

        logger.info(f"Created application {application.id} for user {user_id}, job {job_id}")
        return application

    async def approve_application(self, application_id: str, credentials: Credentials) -> Application:
        """
        Approve an application waiting for credentials and resume automation.

        Raises:
            ValidationError: No credentials supplied
            NotFoundError: Unknown application
            ConflictError: Not in needs_approval, or already being resumed
        """
        if credentials is None or credentials.discarded:
            raise ValidationError("Credentials are required to approve an application")

        try:
            # The run that stopped at the gate may still be winding down
            await self.scheduler.wait_if_awaiting_approval(application_id)
            with self.scheduler.reservation(application_id) as reservation:
                application = await apply_trigger(
                    self.repository,
                    application_id,
                    Trigger.APPROVED,
                    approved_at=utcnow(),
                )
                await self.audit.record(
                    application_id, "application_approved", "Approved by user; credentials supplied"
                )
                # A missing artifact means tailoring must run again before automation
                start_stage = Stage.AUTOMATE if application.tailored_resume else Stage.TAILOR
                reservation.start(credentials, start_stage)
        except Exception:
            discard_quietly(credentials)
            raise

        return application

    async def reject_application(self, application_id: str, reason: Optional[str] = None) -> Application:
        """
        Reject an application waiting for approval.

        Raises:
            NotFoundError: Unknown application
            ConflictError: Not in needs_approval
        """
        reason = (reason or "").strip() or REJECTED_BY_USER
        current = await self.repository.get(application_id)

        application = await apply_trigger(
            self.repository,
            application_id,
            Trigger.REJECTED,
            failure_reason=reason,
            **self._release_if_exhausted(current),
        )
        await self.audit.record(application_id, "application_rejected", reason, {"reason": reason})
        return application

    async def retry_application(
        self,
        application_id: str,
        credentials: Optional[Credentials] = None,
    ) -> Application:
        """
        Re-run a failed application from tailoring.

        Raises:
            NotFoundError: Unknown application
            ExhaustedRetryError: retry_count has reached max_retries
            ConflictError: Not failed, abandoned, or a run is already active
        """
        try:
            with self.scheduler.reservation(application_id) as reservation:
                current = await self.repository.get(application_id)
                if current.status_enum != ApplicationStatus.FAILED:
                    raise ConflictError(
                        f"Only failed applications can be retried; {application_id} is '{current.status}'"
                    )
                if current.retry_count >= self.max_retries:
                    raise ExhaustedRetryError(application_id, self.max_retries)
                if current.is_abandoned:
                    raise ConflictError(
                        f"Application {application_id} was abandoned; create a new application instead"
                    )

                application = await apply_trigger(
                    self.repository,
                    application_id,
                    Trigger.RETRY_REQUESTED,
                    retry_count=Application.retry_count + 1,
                    failure_reason=None,
                    screenshot_ref=None,
                    approval_requested_at=None,
                    approved_at=None,
                )
                await self.audit.record(
                    application_id,
                    "retry_requested",
                    f"Retry {application.retry_count} of {self.max_retries}",
                    {
                        "retry_count": application.retry_count,
                        "max_retries": self.max_retries,
                        "has_login": credentials is not None,
                    },
                )
                reservation.start(credentials, Stage.TAILOR)
        except Exception:
            discard_quietly(credentials)
            raise

        return application

    async def cancel_application(self, application_id: str) -> Application:
        """
        Cancel a running pipeline, or withdraw an application awaiting approval.

        A running pipeline stops at its next stage boundary and ends
        ``failed`` with reason "cancelled". An automation already in progress
        is allowed to finish.

        Raises:
            NotFoundError: Unknown application
            ConflictError: Nothing to cancel
        """
        application = await self.repository.get(application_id)

        if self.scheduler.cancel(application_id):
            await self.audit.record(
                application_id, "cancel_requested", "Cancellation requested by user"
            )
            return application

        if application.status_enum == ApplicationStatus.NEEDS_APPROVAL:
            application = await apply_trigger(
                self.repository,
                application_id,
                Trigger.REJECTED,
                failure_reason=CANCELLED_BY_USER,
                **self._release_if_exhausted(application),
            )
            await self.audit.record(
                application_id, "application_cancelled", "Withdrawn while awaiting approval"
            )
            return application

        raise ConflictError(
            f"Application {application_id} is '{application.status}' with no running pipeline"
        )

    # ==================== Queries ====================

    async def get_application(self, application_id: str) -> Application:
        return await self.repository.get(application_id)

    def is_running(self, application_id: str) -> bool:
        return self.scheduler.is_running(application_id)

    async def list_applications(self, user_id: str) -> List[Application]:
        return await self.repository.list_for_user(user_id)

    async def list_events(self, application_id: str) -> List[ApplicationEvent]:
        await self.repository.get(application_id)
        return await self.audit.list_for(application_id)

    async def answer_questions(self, application_id: str, questions: List[str]) -> Dict[str, str]:
        """
        Draft answers to application form questions.

        Uses the tailored resume when one exists, else the master resume.

        Raises:
            ValidationError: No usable questions
            NotFoundError: Unknown application
            CapabilityError: Text generation failed after retries
        """
        cleaned = [q.strip() for q in questions if q and q.strip()]
        if not cleaned:
            raise ValidationError("At least one non-empty question is required")

        application = await self.repository.get(application_id)
        profile = await self.profiles.get(application.user_id)
        resume = application.tailored_resume or profile.resume_text

        answers = await call_with_retries(
            lambda: self.text_generator.answer_questions(
                cleaned, profile.automation_profile(), resume
            ),
            name=f"answers for {application_id}",
            max_attempts=self.capability_max_attempts,
            base_delay=self.capability_backoff_seconds,
        )
        await self.audit.record(
            application_id,
            "questions_answered",
            f"Answered {len(cleaned)} question(s)",
            {
                "question_count": len(cleaned),
                "unanswered": sum(1 for q in cleaned if not answers.get(q)),
            },
        )
        return answers

    # ==================== Approval Expiry ====================

    async def expire_stale_approvals(self, now: Optional[datetime] = None) -> int:
        """
        Fail applications that have waited for approval longer than the TTL.

        Expired applications are abandoned: their (user, job) slot is
        released so the user can apply again.

        Returns:
            Number of applications expired
        """
        if self.approval_ttl_hours <= 0:
            return 0

        cutoff = (now or utcnow()) - timedelta(hours=self.approval_ttl_hours)
        expired = 0

        for application in await self.repository.list_awaiting_approval_since(cutoff):
            try:
                # Skip applications whose approval is in flight
                with self.scheduler.reservation(application.id):
                    await apply_trigger(
                        self.repository,
                        application.id,
                        Trigger.APPROVAL_EXPIRED,
                        failure_reason=APPROVAL_EXPIRED,
                        dedupe_key=None,
                    )
            except ConflictError:
                logger.info(f"Skipped expiring {application.id}: state changed")
                continue

            await self.audit.record(
                application.id,
                "approval_expired",
                APPROVAL_EXPIRED,
                {
                    "approval_requested_at": application.approval_requested_at,
                    "ttl_hours": self.approval_ttl_hours,
                },
            )
            expired += 1

        if expired:
            logger.info(f"Expired {expired} application(s) awaiting approval")
        return expired

    # ==================== Startup Recovery ====================

    async def recover_interrupted(self) -> int:
        """
        Fail drafting applications that have no pipeline in this process.

        Run once at startup: a drafting application without a run was left
        behind by a crash or restart. It ends ``failed`` with reason
        "interrupted" and can be retried.

        Returns:
            Number of applications recovered
        """
        recovered = 0
        for application in await self.repository.list_with_status(ApplicationStatus.DRAFTING):
            if self.scheduler.is_running(application.id):
                continue
            if await self._fail_stranded(
                application, INTERRUPTED, "pipeline_interrupted", "No pipeline after restart"
            ):
                recovered += 1

        if recovered:
            logger.warning(f"Recovered {recovered} application(s) interrupted by a restart")
        return recovered

    async def _fail_stranded(
        self,
        application: Application,
        reason: str,
        kind: str,
        message: str,
    ) -> bool:
        """Fail a drafting application that has no pipeline; False if it moved on."""
        try:
            await apply_trigger(
                self.repository,
                application.id,
                Trigger.STAGE_FAILED,
                failure_reason=reason,
                **self._release_if_exhausted(application),
            )
        except ConflictError:
            logger.info(f"Left {application.id} alone: state changed")
            return False

        await self.audit.record(application.id, kind, message, {"reason": reason})
        return True

    def _release_if_exhausted(self, application: Application) -> Dict[str, None]:
        if application.retry_count >= self.max_retries:
            return {"dedupe_key": None}
        return {}
