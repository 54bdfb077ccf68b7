"""
Background worker for processing scheduled jobs.

Usage:
    python -m crm_sync.worker

The worker purges stale jobs on start, enqueues the periodic provider sync
every SYNC_INTERVAL_MINUTES, and polls for due jobs. Each claimed batch runs
concurrently, one session per job; jobs for the same (user, integration) never
overlap because they share an idempotency key.
"""

import asyncio
import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError

from crm_sync.core.config import settings
from crm_sync.core.errors import (
    AuthExpiredError,
    ConfigurationError,
    IntegrationNotFoundError,
    ProviderError,
    TokenDecryptionError,
)
from crm_sync.core.structured_logging import build_log_context
from crm_sync.db.enums import JobStatus, JobType
from crm_sync.db.models import Job
from crm_sync.db.session import SessionLocal
from crm_sync.jobs.registry import resolve_job_handler
from crm_sync.services import (
    job_service,
    notification_service,
    oauth_state_service,
    sync_scheduler,
    sync_service,
)

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = settings.WORKER_POLL_INTERVAL
BATCH_SIZE = settings.WORKER_BATCH_SIZE


@dataclass(frozen=True)
class JobFailure:
    """User-safe failure description and the retry decision for it."""

    reason: str
    retryable: bool
    notify: bool = True
    reconnect: bool = False
    retry_after: float | None = None


def classify_failure(exc: BaseException) -> JobFailure:
    if isinstance(exc, (AuthExpiredError, TokenDecryptionError)):
        return JobFailure("Access expired; reconnect the account", retryable=False, reconnect=True)
    if isinstance(exc, IntegrationNotFoundError):
        return JobFailure("Account is no longer connected", retryable=False, notify=False)
    if isinstance(exc, ConfigurationError):
        return JobFailure("Sync is not configured on the server", retryable=False)
    if isinstance(exc, ProviderError):
        return JobFailure(str(exc), retryable=exc.retryable, retry_after=exc.retry_after)
    if isinstance(exc, asyncio.TimeoutError):
        return JobFailure("Sync timed out", retryable=False)
    if isinstance(exc, ValueError):
        return JobFailure("Invalid sync request", retryable=False, notify=False)
    if isinstance(exc, SQLAlchemyError):
        return JobFailure("Temporary storage error", retryable=True)
    return JobFailure("Unexpected error during sync", retryable=True)


async def process_job(db, job) -> None:
    """Process a single job based on its type."""
    logger.info(
        "Processing job %s (type=%s, attempt=%s)",
        job.id,
        job.job_type,
        job.attempts,
    )
    handler = resolve_job_handler(job.job_type)
    await handler(db, job)


def _record_job_failure(db, job: Job, failure: JobFailure) -> None:
    """Surface terminal provider sync failures to the user."""
    if job.job_type != JobType.PROVIDER_SYNC.value or job.status != JobStatus.FAILED.value:
        return
    payload = job.payload or {}
    user_id_raw = payload.get("user_id")
    integration_type = payload.get("integration_type")
    if not user_id_raw or not integration_type:
        return
    try:
        user_id = UUID(str(user_id_raw))
    except ValueError:
        return

    sync_service.record_sync_error(db, user_id, integration_type, failure.reason)
    if not failure.notify:
        return
    if failure.reconnect:
        notification_service.notify_reconnect_required(db, user_id, integration_type)
    else:
        notification_service.notify_sync_failed(
            db, user_id, integration_type, reason=failure.reason
        )


async def run_job(db, job: Job) -> None:
    """Run a claimed job and record its outcome."""
    try:
        await asyncio.wait_for(process_job(db, job), timeout=settings.SYNC_JOB_TIMEOUT_SECONDS)
    except Exception as exc:
        db.rollback()
        failure = classify_failure(exc)
        job_service.mark_job_failed(
            db, job, failure.reason, retryable=failure.retryable, retry_after=failure.retry_after
        )
        logger.error(
            "Job %s failed (%s): status=%s attempts=%s/%s",
            job.id,
            type(exc).__name__,
            job.status,
            job.attempts,
            job.max_attempts,
            extra=build_log_context(job_id=str(job.id)),
        )
        _record_job_failure(db, job, failure)
        return

    job_service.mark_job_completed(db, job)
    logger.info("Job %s completed successfully", job.id)


async def _run_claimed(job_id: UUID) -> None:
    with SessionLocal() as db:
        job = db.get(Job, job_id)
        if job is None:
            return
        await run_job(db, job)


async def process_due_jobs(limit: int = BATCH_SIZE) -> int:
    """Claim and run one batch of due jobs. Returns the batch size."""
    with SessionLocal() as db:
        job_ids = [job.id for job in job_service.claim_pending_jobs(db, limit=limit)]
    if job_ids:
        logger.info("Claimed %s pending jobs", len(job_ids))
        await asyncio.gather(*(_run_claimed(job_id) for job_id in job_ids))
    return len(job_ids)


def cleanup_stale_jobs() -> int:
    with SessionLocal() as db:
        purged = job_service.purge_stale_jobs(db)
        oauth_state_service.purge_expired_states(db)
    if purged:
        logger.info("Purged %s stale jobs", purged)
    return purged


async def worker_loop() -> None:
    """Main worker loop - polls for and processes pending jobs."""
    logger.info(
        "Worker starting (poll interval: %ss, batch size: %s, sync interval: %sm)",
        POLL_INTERVAL_SECONDS,
        BATCH_SIZE,
        settings.SYNC_INTERVAL_MINUTES,
    )
    cleanup_stale_jobs()

    loop = asyncio.get_running_loop()
    next_schedule_at = loop.time()
    while True:
        try:
            if loop.time() >= next_schedule_at:
                with SessionLocal() as db:
                    sync_scheduler.schedule_periodic_sync(db)
                next_schedule_at = loop.time() + settings.SYNC_INTERVAL_MINUTES * 60
            await process_due_jobs()
        except Exception:
            logger.exception("Error in worker loop")

        await asyncio.sleep(POLL_INTERVAL_SECONDS)


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    asyncio.run(worker_loop())


if __name__ == "__main__":
    main()
