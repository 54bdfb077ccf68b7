"""Job service - business logic for background job scheduling and processing."""

from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from crm_sync.core.backoff import BackoffPolicy
from crm_sync.core.config import settings
from crm_sync.db.enums import JobStatus, JobType
from crm_sync.db.models import Job
from crm_sync.schemas.job import QueueStats


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def retry_policy() -> BackoffPolicy:
    """Job-level retry policy (attempt ceiling and exponential delay)."""
    return BackoffPolicy(
        max_attempts=settings.SYNC_JOB_MAX_ATTEMPTS,
        base_delay=settings.SYNC_JOB_BACKOFF_BASE_SECONDS,
        max_delay=settings.SYNC_JOB_BACKOFF_MAX_SECONDS,
        jitter=False,
    )


def schedule_job(
    db: Session,
    job_type: JobType,
    payload: dict,
    user_id: UUID | None = None,
    run_at: datetime | None = None,
    idempotency_key: str | None = None,
    max_attempts: int | None = None,
) -> Job:
    """
    Schedule a new background job.

    If run_at is None, the job runs immediately.
    If idempotency_key is provided, duplicate jobs with same key will fail
    with IntegrityError (caller should catch and handle).
    """
    job = Job(
        user_id=user_id,
        job_type=job_type.value,
        payload=payload,
        run_at=run_at or _now_utc(),
        status=JobStatus.PENDING.value,
        max_attempts=max_attempts or settings.SYNC_JOB_MAX_ATTEMPTS,
        idempotency_key=idempotency_key,
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    return job


def enqueue_unique(
    db: Session,
    job_type: JobType,
    payload: dict,
    *,
    idempotency_key: str,
    user_id: UUID | None = None,
    run_at: datetime | None = None,
) -> Job | None:
    """
    Schedule a job unless one with the same key is still pending or running.

    Returns the new job, or None when the enqueue was a no-op.
    """
    if get_job_by_key(db, idempotency_key) is not None:
        return None
    try:
        return schedule_job(
            db,
            job_type=job_type,
            payload=payload,
            user_id=user_id,
            run_at=run_at,
            idempotency_key=idempotency_key,
        )
    except IntegrityError:
        db.rollback()
        return None


def get_job_by_key(db: Session, idempotency_key: str) -> Job | None:
    """Keys are held only by pending or running jobs."""
    return db.query(Job).filter(Job.idempotency_key == idempotency_key).first()


def get_pending_jobs(db: Session, limit: int = 10, now: datetime | None = None) -> list[Job]:
    """
    Get pending jobs that are due to run.

    Returns jobs where status='pending' and run_at <= now, ordered by run_at.
    """
    now = now or _now_utc()
    return (
        db.query(Job)
        .filter(
            Job.status == JobStatus.PENDING.value,
            Job.run_at <= now,
        )
        .order_by(Job.run_at)
        .limit(limit)
        .all()
    )


def claim_pending_jobs(db: Session, limit: int = 10, now: datetime | None = None) -> list[Job]:
    """
    Atomically claim due jobs and mark them running.

    Uses SKIP LOCKED on PostgreSQL so parallel workers never claim the same row.
    """
    now = now or _now_utc()
    query = (
        db.query(Job)
        .filter(
            Job.status == JobStatus.PENDING.value,
            Job.run_at <= now,
        )
        .order_by(Job.run_at)
        .limit(limit)
    )
    if db.get_bind().dialect.name == "postgresql":
        query = query.with_for_update(skip_locked=True)
    jobs = query.all()
    for job in jobs:
        job.status = JobStatus.RUNNING.value
        job.attempts += 1
        job.started_at = now
    db.commit()
    return jobs


def get_job(db: Session, job_id: UUID, user_id: UUID | None = None) -> Job | None:
    """Get a job by ID, optionally scoped to user."""
    query = db.query(Job).filter(Job.id == job_id)
    if user_id:
        query = query.filter(Job.user_id == user_id)
    return query.first()


def list_jobs(
    db: Session,
    user_id: UUID,
    status: JobStatus | None = None,
    job_type: JobType | None = None,
    limit: int = 50,
) -> list[Job]:
    """List jobs for a user with optional filters."""
    query = db.query(Job).filter(Job.user_id == user_id)
    if status:
        query = query.filter(Job.status == status.value)
    if job_type:
        query = query.filter(Job.job_type == job_type.value)
    return query.order_by(Job.created_at.desc()).limit(limit).all()


def update_progress(db: Session, job: Job, percent: int, detail: dict | None = None) -> Job:
    """Record progress for long-running jobs (0-100)."""
    job.progress = max(0, min(100, percent))
    if detail is not None:
        job.progress_detail = detail
    db.commit()
    return job


def mark_job_completed(db: Session, job: Job) -> Job:
    """Mark a job as completed and release its idempotency key."""
    job.status = JobStatus.COMPLETED.value
    job.completed_at = _now_utc()
    job.progress = 100
    job.last_error = None
    job.idempotency_key = None
    db.commit()
    db.refresh(job)
    return job


def mark_job_failed(
    db: Session,
    job: Job,
    error: str,
    *,
    retryable: bool = True,
    retry_after: float | None = None,
    now: datetime | None = None,
) -> Job:
    """
    Mark a job as failed.

    Retryable failures with attempts left go back to pending with an
    exponential delay, never shorter than a provider's ``retry_after``;
    anything else is terminal and releases the key.
    """
    now = now or _now_utc()
    policy = retry_policy()
    job.last_error = error
    if retryable and job.attempts < job.max_attempts:
        delay = policy.delay_for(job.attempts)
        if retry_after:
            delay = max(delay, policy.delay_for(job.attempts, retry_after))
        job.status = JobStatus.PENDING.value
        job.run_at = now + timedelta(seconds=delay)
    else:
        job.status = JobStatus.FAILED.value
        job.completed_at = now
        job.idempotency_key = None
    db.commit()
    db.refresh(job)
    return job


def purge_stale_jobs(
    db: Session,
    *,
    max_age: timedelta | None = None,
    now: datetime | None = None,
) -> int:
    """
    Remove queued jobs older than ``max_age`` and fail jobs stuck running
    since before it (left behind by a crashed worker).

    Returns the number of jobs removed or failed.
    """
    now = now or _now_utc()
    cutoff = now - (max_age or timedelta(minutes=settings.STALE_JOB_MAX_AGE_MINUTES))
    removed = (
        db.query(Job)
        .filter(Job.status == JobStatus.PENDING.value, Job.created_at < cutoff)
        .delete(synchronize_session=False)
    )
    stuck = (
        db.query(Job)
        .filter(Job.status == JobStatus.RUNNING.value, Job.started_at < cutoff)
        .update(
            {
                Job.status: JobStatus.FAILED.value,
                Job.last_error: "Abandoned by worker",
                Job.completed_at: now,
                Job.idempotency_key: None,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return removed + stuck


def get_queue_stats(db: Session, job_type: JobType | None = None) -> QueueStats:
    """Counts of jobs by status."""
    query = db.query(Job.status, func.count(Job.id))
    if job_type:
        query = query.filter(Job.job_type == job_type.value)
    counts = dict(query.group_by(Job.status).all())
    return QueueStats(
        pending=counts.get(JobStatus.PENDING.value, 0),
        running=counts.get(JobStatus.RUNNING.value, 0),
        completed=counts.get(JobStatus.COMPLETED.value, 0),
        failed=counts.get(JobStatus.FAILED.value, 0),
    )
