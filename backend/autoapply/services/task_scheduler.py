"""
Task Scheduler - In-process runner for application pipelines

Pipelines run as asyncio tasks in the API process rather than on Celery:
credentials are accepted by value and must never be serialized onto a
broker.

Guarantees:
    - At most one active pipeline per application id. ``submit()`` and
      ``reservation()`` raise ConflictError while a run is active or
      reserved, so duplicate approve clicks cannot start two runs.
    - ``max_concurrent_pipelines`` bounds the worker pool. Automation
      (browser sessions) and tailoring (LLM calls) have their own,
      independent semaphores shared by every run.
    - Every run ends with a PipelineResult. Errors that escape the
      orchestrator are logged, counted and turn the application ``failed``
      with reason "internal error"; they never crash the event loop.
    - A run force-cancelled at shutdown leaves its application ``failed``
      with reason "interrupted".

Usage:
    scheduler = TaskScheduler(orchestrator, max_concurrent_automations=2)
    scheduler.submit(application.id, credentials)

    # State change and pipeline start as one step
    with scheduler.reservation(application_id) as reservation:
        await repository.transition(...)
        reservation.start(credentials, Stage.AUTOMATE)
"""

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional

from autoapply.errors import ConflictError
from autoapply.middleware.metrics import ACTIVE_PIPELINES, record_pipeline_outcome
from autoapply.models import ApplicationStatus
from autoapply.services.credentials import Credentials, discard_quietly
from autoapply.services.lifecycle import Stage
from autoapply.services.orchestrator import (
    INTERNAL_ERROR,
    ApplicationOrchestrator,
    PipelineControl,
    PipelineResult,
)

logger = logging.getLogger(__name__)


@dataclass
class _Run:
    control: PipelineControl
    task: Optional["asyncio.Task[PipelineResult]"] = None
    start_stage: Optional[Stage] = None


class Reservation:
    """Claim on an application id that is released unless ``start()`` is called."""

    def __init__(self, scheduler: "TaskScheduler", application_id: str, run: _Run) -> None:
        self._scheduler = scheduler
        self._run = run
        self.application_id = application_id

    @property
    def started(self) -> bool:
        return self._run.task is not None

    def start(
        self,
        credentials: Optional[Credentials] = None,
        start_stage: Stage = Stage.TAILOR,
    ) -> "asyncio.Task[PipelineResult]":
        if self.started:
            raise ConflictError(f"Pipeline for {self.application_id} already started")
        return self._scheduler._start(self.application_id, self._run, credentials, start_stage)


@dataclass
class SchedulerStats:
    active: List[str] = field(default_factory=list)
    reserved: List[str] = field(default_factory=list)


class TaskScheduler:
    """Runs orchestrator pipelines off the request path."""

    def __init__(
        self,
        orchestrator: ApplicationOrchestrator,
        max_concurrent_pipelines: int = 8,
        max_concurrent_automations: int = 2,
        max_concurrent_tailoring: int = 4,
    ) -> None:
        self.orchestrator = orchestrator
        self._pipeline_slots = asyncio.Semaphore(max(1, max_concurrent_pipelines))
        self._automation_slots = asyncio.Semaphore(max(1, max_concurrent_automations))
        self._tailoring_slots = asyncio.Semaphore(max(1, max_concurrent_tailoring))
        self._runs: Dict[str, _Run] = {}
        self._closed = False

    # ==================== Submission ====================

    def submit(
        self,
        application_id: str,
        credentials: Optional[Credentials] = None,
        start_stage: Stage = Stage.TAILOR,
    ) -> "asyncio.Task[PipelineResult]":
        """
        Start the pipeline for an application in the background.

        Raises:
            ConflictError: A pipeline for this application is active or reserved
        """
        with self.reservation(application_id) as reservation:
            return reservation.start(credentials, start_stage)

    @contextmanager
    def reservation(self, application_id: str) -> Iterator[Reservation]:
        """
        Claim the application id for the duration of the block.

        Raises:
            ConflictError: A pipeline for this application is active or reserved
        """
        if self._closed:
            raise ConflictError("Scheduler is shutting down")
        if application_id in self._runs:
            raise ConflictError(f"A pipeline is already running for application {application_id}")

        run = _Run(control=self._new_control())
        self._runs[application_id] = run
        try:
            yield Reservation(self, application_id, run)
        finally:
            if run.task is None and self._runs.get(application_id) is run:
                del self._runs[application_id]

    def _new_control(self) -> PipelineControl:
        return PipelineControl(
            cancel_requested=asyncio.Event(),
            tailoring_slots=self._tailoring_slots,
            automation_slots=self._automation_slots,
        )

    def _start(
        self,
        application_id: str,
        run: _Run,
        credentials: Optional[Credentials],
        start_stage: Stage,
    ) -> "asyncio.Task[PipelineResult]":
        run.start_stage = start_stage
        run.task = asyncio.get_running_loop().create_task(
            self._execute(application_id, run, credentials, start_stage),
            name=f"pipeline:{application_id}",
        )
        run.task.add_done_callback(lambda _: self._release(application_id, run))
        logger.info(f"Pipeline submitted for {application_id} at stage {start_stage.value}")
        return run.task

    def _release(self, application_id: str, run: _Run) -> None:
        if self._runs.get(application_id) is run:
            del self._runs[application_id]

    async def _execute(
        self,
        application_id: str,
        run: _Run,
        credentials: Optional[Credentials],
        start_stage: Stage,
    ) -> PipelineResult:
        try:
            async with self._pipeline_slots:
                ACTIVE_PIPELINES.inc()
                try:
                    return await self.orchestrator.run(
                        application_id, credentials, start_stage, run.control
                    )
                finally:
                    ACTIVE_PIPELINES.dec()
        except asyncio.CancelledError:
            logger.warning(f"Pipeline task for {application_id} was cancelled")
            record_pipeline_outcome("interrupted")
            await self.orchestrator.fail_interrupted(application_id)
            raise
        except Exception as e:
            logger.exception(f"Unexpected error in pipeline for {application_id}")
            record_pipeline_outcome("error")
            await self.orchestrator.fail_unexpectedly(application_id, e)
            return PipelineResult(application_id, ApplicationStatus.FAILED, INTERNAL_ERROR)
        finally:
            discard_quietly(credentials)

    # ==================== Inspection & Control ====================

    @property
    def closed(self) -> bool:
        return self._closed

    def is_running(self, application_id: str) -> bool:
        """True while a pipeline for the id is reserved, queued or executing."""
        return application_id in self._runs

    async def wait_if_awaiting_approval(self, application_id: str) -> None:
        """
        Let a run that has reached the approval gate finish and release its id.

        Returns immediately when no run is registered or the run is still
        working; a reservation taken afterwards then raises ConflictError.
        """
        run = self._runs.get(application_id)
        if run is None or run.task is None or not run.control.awaiting_approval.is_set():
            return
        await asyncio.wait({run.task})
        self._release(application_id, run)

    def cancel(self, application_id: str) -> bool:
        """
        Ask the pipeline to stop at its next stage boundary.

        Returns:
            False if nothing is running for the application
        """
        run = self._runs.get(application_id)
        if run is None:
            return False
        run.control.cancel_requested.set()
        logger.info(f"Cancellation requested for {application_id}")
        return True

    async def join(self, application_id: str) -> Optional[PipelineResult]:
        """Wait for the application's current run, if any, and return its result."""
        run = self._runs.get(application_id)
        if run is None or run.task is None:
            return None
        return await asyncio.shield(run.task)

    async def drain(self) -> List[PipelineResult]:
        """Wait until every submitted pipeline has finished."""
        results: List[PipelineResult] = []
        while True:
            tasks = [run.task for run in self._runs.values() if run.task is not None]
            if not tasks:
                return results
            for outcome in await asyncio.gather(*tasks, return_exceptions=True):
                if isinstance(outcome, PipelineResult):
                    results.append(outcome)

    async def shutdown(self, timeout: float = 30.0) -> None:
        """
        Stop accepting work, cancel runs cooperatively, then force-cancel
        whatever is still running after ``timeout`` seconds.
        """
        self._closed = True
        for run in self._runs.values():
            run.control.cancel_requested.set()

        tasks = [run.task for run in self._runs.values() if run.task is not None]
        if not tasks:
            return

        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Force-cancelled {len(pending)} pipeline(s) at shutdown")
            await asyncio.gather(*pending, return_exceptions=True)

    def stats(self) -> SchedulerStats:
        stats = SchedulerStats()
        for application_id, run in self._runs.items():
            (stats.active if run.task is not None else stats.reserved).append(application_id)
        return stats
