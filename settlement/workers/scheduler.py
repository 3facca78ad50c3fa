"""
Background scheduler for agency transfers.

Webhooks only mark splits as due; this scheduler polls for due splits and
hands them to the TransferExecutor. Retries are driven by the split's
``next_attempt_at``, so a restart loses nothing.
"""

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
import structlog

from settlement.services.transfer_executor import TransferExecutor

logger = structlog.get_logger()

TRANSFER_JOB_ID = "run_due_transfers"

job_defaults = {
    "coalesce": True,  # Combine missed runs into one
    "max_instances": 1,  # Never overlap passes in one process
    "misfire_grace_time": 60,
}


async def run_transfer_pass(executor: TransferExecutor) -> None:
    """Scheduler entry point for one transfer pass."""
    try:
        counts = await executor.run_due_transfers()
    except Exception:
        logger.exception("transfer_pass_failed")
        return
    if counts:
        logger.info("transfer_pass_finished", **counts)


def create_scheduler(executor: TransferExecutor, interval_seconds: int) -> AsyncIOScheduler:
    """Build a scheduler with the transfer job registered (not started)."""
    scheduler = AsyncIOScheduler(
        jobstores={"default": MemoryJobStore()},
        executors={"default": AsyncIOExecutor()},
        job_defaults=job_defaults,
        timezone="UTC",
    )
    scheduler.add_job(
        run_transfer_pass,
        "interval",
        seconds=interval_seconds,
        args=[executor],
        id=TRANSFER_JOB_ID,
        name="Execute due agency transfers",
        replace_existing=True,
    )
    return scheduler


def start_scheduler(scheduler: AsyncIOScheduler) -> None:
    if not scheduler.running:
        scheduler.start()
        for job in scheduler.get_jobs():
            logger.info("scheduled_job", job=job.name, next_run=str(job.next_run_time))


def shutdown_scheduler(scheduler: AsyncIOScheduler) -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")
