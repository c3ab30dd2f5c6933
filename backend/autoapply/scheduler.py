"""
Periodic Jobs - Approval expiry sweep

Applications parked in needs_approval are failed with reason
"approval expired" once they have waited longer than
``approval_ttl_hours``. The sweep runs every ``approval_sweep_minutes``
on an APScheduler AsyncIOScheduler inside the API process, next to the
TaskScheduler it coordinates with.

Default Schedule: hourly, 72 hour TTL (``approval_ttl_hours=0`` disables)
"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from autoapply.config import Settings
from autoapply.services.applications import ApplicationService

logger = logging.getLogger(__name__)


async def expire_stale_approvals(service: ApplicationService) -> int:
    """Scheduled task: expire applications that waited too long for approval."""
    try:
        return await service.expire_stale_approvals()
    except Exception:
        logger.exception("Approval expiry sweep failed")
        return 0


def start_scheduler(service: ApplicationService, settings: Settings) -> Optional[AsyncIOScheduler]:
    """
    Start the periodic sweep.

    Returns:
        The running scheduler, or None when approval expiry is disabled
    """
    if settings.approval_ttl_hours <= 0:
        logger.info("Approval expiry disabled")
        return None

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        expire_stale_approvals,
        trigger=IntervalTrigger(minutes=settings.approval_sweep_minutes),
        args=[service],
        id="expire_stale_approvals",
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    scheduler.start()
    logger.info(
        f"Scheduler started: expiring approvals older than {settings.approval_ttl_hours}h "
        f"every {settings.approval_sweep_minutes} minutes"
    )
    return scheduler


def stop_scheduler(scheduler: Optional[AsyncIOScheduler]) -> None:
    if scheduler is not None and scheduler.running:
        scheduler.shutdown(wait=False)
