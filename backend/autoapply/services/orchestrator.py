"""
Application Orchestrator - Background pipeline for one application

Pipeline (executed in order, one audit event on entry and one on outcome
per stage):

    1. Tailor    text generator → tailored resume, stored on the application
    2. Gate      no credentials → needs_approval, pipeline suspends
    3. Automate  browser automation with the tailored resume
    4. Finalize  submitted on success, failed with the reported reason otherwise

Failure Handling:
    Capability errors and stage timeouts inside a stage never propagate out
    of ``run()``; they move the application to ``failed`` with a readable
    reason. Transient capability errors are retried inside the stage with
    exponential backoff; the stage's wall-clock budget covers all attempts.

Cancellation:
    Cooperative. The cancel flag is checked at stage boundaries only; a
    cancel that arrives during automation takes effect after it resolves,
    at which point the outcome is finalized anyway.

Credentials:
    Received by value, handed to the automation call only, and discarded
    when the automate stage returns (or when ``run()`` exits early).
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional, TypeVar

from autoapply.errors import CapabilityError, ConflictError, StageTimeoutError
from autoapply.middleware.metrics import (
    ACTIVE_AUTOMATIONS,
    record_pipeline_outcome,
    record_stage_duration,
)
from autoapply.models import Application, ApplicationStatus, Job, Profile
from autoapply.models.application import utcnow
from autoapply.services.audit import AuditTrail
from autoapply.services.capabilities import (
    AutomationClient,
    AutomationOutcome,
    TextGenerator,
    call_with_retries,
)
from autoapply.services.credentials import Credentials, discard_quietly
from autoapply.services.lifecycle import Stage, Trigger, apply_trigger
from autoapply.services.repository import ApplicationRepository, JobRepository, ProfileRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")

TAILORING_FAILED = "tailoring failed"
STAGE_TIMEOUT = "stage timeout"
AUTOMATION_FAILED = "automation failed"
CANCELLED = "cancelled"
INTERNAL_ERROR = "internal error"
INTERRUPTED = "interrupted"


@dataclass
class PipelineControl:
    """
    Per-run handles supplied by the TaskScheduler.

    Attributes:
        cancel_requested: Set to stop the pipeline at the next stage boundary
        awaiting_approval: Set by the gate when the run is about to suspend
        tailoring_slots: Bound on concurrent text-generation calls
        automation_slots: Bound on concurrent browser sessions
    """

    cancel_requested: asyncio.Event = field(default_factory=asyncio.Event)
    awaiting_approval: asyncio.Event = field(default_factory=asyncio.Event)
    tailoring_slots: asyncio.Semaphore = field(default_factory=lambda: asyncio.Semaphore(1))
    automation_slots: asyncio.Semaphore = field(default_factory=lambda: asyncio.Semaphore(1))


@dataclass(frozen=True)
class PipelineResult:
    """Status an application was left in when its pipeline run ended."""

    application_id: str
    status: ApplicationStatus
    failure_reason: Optional[str] = None


class ApplicationOrchestrator:
    """
    Drives the pipeline stages for one application at a time.

    Concurrency across applications is the TaskScheduler's job; one
    orchestrator instance is shared by all runs and holds no per-run state.
    """

    def __init__(
        self,
        repository: ApplicationRepository,
        profiles: ProfileRepository,
        jobs: JobRepository,
        audit: AuditTrail,
        text_generator: TextGenerator,
        automation: AutomationClient,
        max_retries: int = 3,
        stage_timeouts: Optional[Dict[Stage, float]] = None,
        capability_max_attempts: int = 3,
        capability_backoff_seconds: float = 1.0,
    ) -> None:
        self.repository = repository
        self.profiles = profiles
        self.jobs = jobs
        self.audit = audit
        self.text_generator = text_generator
        self.automation = automation
        self.max_retries = max_retries
        self.stage_timeouts = stage_timeouts or {}
        self.capability_max_attempts = capability_max_attempts
        self.capability_backoff_seconds = capability_backoff_seconds

    # ==================== Entry Point ====================

    async def run(
        self,
        application_id: str,
        credentials: Optional[Credentials] = None,
        start_stage: Stage = Stage.TAILOR,
        control: Optional[PipelineControl] = None,
    ) -> PipelineResult:
        """
        Execute the pipeline from ``start_stage`` until it suspends or ends.

        Args:
            application_id: Application in ``drafting``
            credentials: Job-site login, or None to stop at the gate
            start_stage: TAILOR for new runs and retries, AUTOMATE after approval
            control: Cancellation flag and concurrency bounds

        Returns:
            PipelineResult describing where the application ended up
        """
        control = control or PipelineControl()
        try:
            await self._run(application_id, credentials, start_stage, control)
        except ConflictError as e:
            # Another actor moved the application; its state wins
            logger.warning(f"Pipeline for {application_id} stopped: {e}")
            await self.audit.record(
                application_id, "pipeline_aborted", str(e), {"reason": "state changed"}
            )
        finally:
            discard_quietly(credentials)

        result = await self._result(application_id)
        record_pipeline_outcome(result.status.value)
        logger.info(
            f"Pipeline for {application_id} ended: {result.status.value}"
            + (f" ({result.failure_reason})" if result.failure_reason else "")
        )
        return result

    async def fail_unexpectedly(self, application_id: str, error: BaseException) -> None:
        """
        Record an error that escaped the pipeline and fail the application.

        Used by the scheduler so background crashes stay observable. Leaves
        the application alone if it already moved out of ``drafting``.
        """
        await self.audit.record(
            application_id,
            "pipeline_error",
            INTERNAL_ERROR,
            {"error_type": type(error).__name__, "error": str(error)},
        )
        await self._fail_if_drafting(application_id, INTERNAL_ERROR)

    async def fail_interrupted(self, application_id: str) -> None:
        """
        Fail an application whose run was killed mid-stage (forced shutdown).

        The application stays retryable unless its retries are used up.
        """
        await self.audit.record(
            application_id, "pipeline_interrupted", "Pipeline stopped before it finished"
        )
        await self._fail_if_drafting(application_id, INTERRUPTED)

    async def _fail_if_drafting(self, application_id: str, reason: str) -> None:
        try:
            application = await self.repository.get(application_id)
            await self._fail(application, reason)
        except ConflictError:
            logger.warning(f"Application {application_id} left drafting before it could be failed")
        except Exception:
            logger.exception(f"Could not mark application {application_id} as failed")

    # ==================== Pipeline ====================

    async def _run(
        self,
        application_id: str,
        credentials: Optional[Credentials],
        start_stage: Stage,
        control: PipelineControl,
    ) -> None:
        application = await self.repository.get(application_id)
        if application.status_enum != ApplicationStatus.DRAFTING:
            logger.warning(
                f"Not running pipeline for {application_id}: status is '{application.status}'"
            )
            return

        profile = await self.profiles.get(application.user_id)
        job = await self.jobs.get(application.job_id)

        await self.audit.record(
            application_id,
            "pipeline_started",
            f"Pipeline started at {start_stage.value}",
            {"start_stage": start_stage.value, "retry_count": application.retry_count},
        )

        if start_stage == Stage.TAILOR or not application.tailored_resume:
            if await self._cancel_if_requested(application, control, Stage.TAILOR):
                return
            application = await self._tailor(application, profile, job, control)
            if application is None:
                return

        if await self._cancel_if_requested(application, control, Stage.GATE):
            return
        if not await self._gate(application, credentials, control):
            return

        if await self._cancel_if_requested(application, control, Stage.AUTOMATE):
            return
        outcome = await self._automate(application, profile, job, credentials, control)
        if outcome is None:
            return

        await self._finalize(application, outcome)

    async def _tailor(
        self,
        application: Application,
        profile: Profile,
        job: Job,
        control: PipelineControl,
    ) -> Optional[Application]:
        requirements = list(job.requirements or [])
        await self.audit.record(
            application.id,
            "tailoring_started",
            "Tailoring resume",
            {"job_id": job.id, "requirement_count": len(requirements)},
        )

        try:
            async with control.tailoring_slots:
                tailored = await self._run_stage(
                    Stage.TAILOR,
                    application.id,
                    lambda: self.text_generator.tailor(
                        profile.resume_text, job.description, requirements
                    ),
                )
        except StageTimeoutError as e:
            await self._record_timeout(application.id, e)
            await self._fail(application, STAGE_TIMEOUT)
            return None
        except CapabilityError as e:
            await self.audit.record(
                application.id,
                "tailoring_failed",
                e.reason,
                {"transient": e.transient, "error": e.reason},
            )
            await self._fail(application, TAILORING_FAILED)
            return None

        if not tailored or not tailored.strip():
            await self.audit.record(application.id, "tailoring_failed", "Empty tailored resume")
            await self._fail(application, TAILORING_FAILED)
            return None

        artifact_ref = f"tailored-resume/{application.id}/{application.retry_count}"
        application = await apply_trigger(
            self.repository,
            application.id,
            Trigger.TAILORED,
            tailored_resume=tailored,
            tailored_resume_ref=artifact_ref,
        )
        await self.audit.record(
            application.id,
            "tailoring_succeeded",
            "Tailored resume stored",
            {"tailored_resume_ref": artifact_ref, "length": len(tailored)},
        )
        return application

    async def _gate(
        self,
        application: Application,
        credentials: Optional[Credentials],
        control: PipelineControl,
    ) -> bool:
        """Return True when the pipeline may continue to automation."""
        await self.audit.record(application.id, "gate_started", "Checking for credentials")

        if credentials is None or credentials.discarded:
            # Must be set before needs_approval becomes visible
            control.awaiting_approval.set()
            await apply_trigger(
                self.repository,
                application.id,
                Trigger.CREDENTIALS_ABSENT,
                approval_requested_at=utcnow(),
            )
            await self.audit.record(
                application.id,
                "approval_required",
                "Waiting for the user to approve and supply credentials",
            )
            return False

        await self.audit.record(application.id, "credentials_supplied", "Credentials present")
        return True

    async def _automate(
        self,
        application: Application,
        profile: Profile,
        job: Job,
        credentials: Credentials,
        control: PipelineControl,
    ) -> Optional[AutomationOutcome]:
        await self.audit.record(
            application.id,
            "automation_started",
            "Submitting application",
            {"job_url": job.url, "tailored_resume_ref": application.tailored_resume_ref},
        )
        automation_profile = profile.automation_profile()
        resume_text = application.tailored_resume

        try:
            async with control.automation_slots:
                ACTIVE_AUTOMATIONS.inc()
                try:
                    with credentials:
                        outcome = await self._run_stage(
                            Stage.AUTOMATE,
                            application.id,
                            lambda: self.automation.apply(
                                job.url, credentials.reveal(), automation_profile, resume_text
                            ),
                        )
                finally:
                    ACTIVE_AUTOMATIONS.dec()
        except StageTimeoutError as e:
            await self._record_timeout(application.id, e)
            await self._fail(application, STAGE_TIMEOUT)
            return None
        except CapabilityError as e:
            await self.audit.record(
                application.id,
                "automation_failed",
                e.reason,
                {"transient": e.transient, "error_reason": e.reason},
            )
            await self._fail(application, e.reason or AUTOMATION_FAILED)
            return None

        if outcome.succeeded:
            await self.audit.record(
                application.id,
                "automation_succeeded",
                "Application form submitted",
                {"screenshot_ref": outcome.screenshot_ref},
            )
        else:
            await self.audit.record(
                application.id,
                "automation_failed",
                outcome.error_reason or AUTOMATION_FAILED,
                {"error_reason": outcome.error_reason, "screenshot_ref": outcome.screenshot_ref},
            )
        return outcome

    async def _finalize(self, application: Application, outcome: AutomationOutcome) -> None:
        await self.audit.record(application.id, "finalize_started", "Recording automation outcome")

        if outcome.succeeded:
            await apply_trigger(
                self.repository,
                application.id,
                Trigger.AUTOMATION_SUCCEEDED,
                submitted_at=utcnow(),
                screenshot_ref=outcome.screenshot_ref,
                failure_reason=None,
            )
            await self.audit.record(application.id, "application_submitted", "Application submitted")
            return

        await self._fail(
            application,
            outcome.error_reason or AUTOMATION_FAILED,
            trigger=Trigger.AUTOMATION_FAILED,
            screenshot_ref=outcome.screenshot_ref,
        )

    # ==================== Helpers ====================

    async def _run_stage(
        self,
        stage: Stage,
        application_id: str,
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        """Run a capability call with transient retries under the stage budget."""
        timeout = self.stage_timeouts.get(stage)
        start = time.perf_counter()
        outcome = "error"
        try:
            result = await asyncio.wait_for(
                call_with_retries(
                    operation,
                    name=f"{stage.value} for {application_id}",
                    max_attempts=self.capability_max_attempts,
                    base_delay=self.capability_backoff_seconds,
                ),
                timeout=timeout,
            )
            outcome = "ok"
            return result
        except asyncio.TimeoutError as e:
            outcome = "timeout"
            raise StageTimeoutError(stage.value, timeout) from e
        finally:
            record_stage_duration(stage.value, outcome, time.perf_counter() - start)

    async def _record_timeout(self, application_id: str, error: StageTimeoutError) -> None:
        await self.audit.record(
            application_id,
            "stage_timeout",
            str(error),
            {"stage": error.stage, "timeout_seconds": error.timeout},
        )

    async def _cancel_if_requested(
        self,
        application: Application,
        control: PipelineControl,
        next_stage: Stage,
    ) -> bool:
        if not control.cancel_requested.is_set():
            return False
        await self.audit.record(
            application.id,
            "pipeline_cancelled",
            f"Cancelled before {next_stage.value}",
            {"next_stage": next_stage.value},
        )
        await self._fail(application, CANCELLED)
        return True

    async def _fail(
        self,
        application: Application,
        reason: str,
        trigger: Trigger = Trigger.STAGE_FAILED,
        **fields,
    ) -> Application:
        """
        Move a drafting application to ``failed``.

        Once no retries remain, the (user, job) slot is released so the
        user may start a fresh application for the same job.
        """
        retries_remaining = max(0, self.max_retries - application.retry_count)
        if retries_remaining == 0:
            fields["dedupe_key"] = None

        failed = await apply_trigger(
            self.repository, application.id, trigger, failure_reason=reason, **fields
        )
        await self.audit.record(
            application.id,
            "application_failed",
            reason,
            {
                "reason": reason,
                "retry_count": application.retry_count,
                "retries_remaining": retries_remaining,
            },
        )
        return failed

    async def _result(self, application_id: str) -> PipelineResult:
        application = await self.repository.get(application_id)
        return PipelineResult(
            application_id=application.id,
            status=application.status_enum,
            failure_reason=application.failure_reason,
        )
