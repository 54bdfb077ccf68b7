from datetime import datetime, timedelta, timezone

from crm_sync.db.enums import JobStatus, JobType
from crm_sync.db.models import Job
from crm_sync.services import job_service

NOW = datetime(2026, 10, 1, 12, tzinfo=timezone.utc)


def _schedule(db, user, key=None, run_at=None, payload=None):
    return job_service.schedule_job(
        db=db,
        job_type=JobType.PROVIDER_SYNC,
        payload=payload or {"user_id": str(user.id), "integration_type": "calendar_google"},
        user_id=user.id,
        run_at=run_at or datetime.now(timezone.utc),
        idempotency_key=key,
    )


def test_claim_pending_jobs_marks_running(db, test_user):
    _schedule(db, test_user)
    _schedule(db, test_user)

    claimed = job_service.claim_pending_jobs(db, limit=1)
    assert len(claimed) == 1
    claimed_job = claimed[0]
    assert claimed_job.status == JobStatus.RUNNING.value
    assert claimed_job.attempts == 1
    assert claimed_job.started_at is not None

    pending = job_service.get_pending_jobs(db, limit=10)
    assert len(pending) == 1
    assert pending[0].id != claimed_job.id


def test_claim_skips_jobs_not_yet_due(db, test_user):
    _schedule(db, test_user, run_at=datetime.now(timezone.utc) + timedelta(minutes=5))

    assert job_service.claim_pending_jobs(db, limit=10) == []


def test_enqueue_unique_is_a_no_op_while_key_is_held(db, test_user):
    first = job_service.enqueue_unique(
        db, JobType.PROVIDER_SYNC, {}, idempotency_key="k1", user_id=test_user.id
    )
    second = job_service.enqueue_unique(
        db, JobType.PROVIDER_SYNC, {}, idempotency_key="k1", user_id=test_user.id
    )

    assert first is not None
    assert second is None
    assert db.query(Job).count() == 1


def test_completion_releases_key(db, test_user):
    job = _schedule(db, test_user, key="k1")
    job_service.claim_pending_jobs(db)

    job_service.mark_job_completed(db, job)

    assert job.status == JobStatus.COMPLETED.value
    assert job.progress == 100
    assert job.idempotency_key is None
    again = job_service.enqueue_unique(db, JobType.PROVIDER_SYNC, {}, idempotency_key="k1")
    assert again is not None


def test_retryable_failure_returns_to_pending_with_backoff(db, test_user):
    job = _schedule(db, test_user, key="k1")
    job_service.claim_pending_jobs(db)

    job_service.mark_job_failed(db, job, "Google Calendar returned 503", retryable=True, now=NOW)

    assert job.status == JobStatus.PENDING.value
    assert job.run_at == NOW + timedelta(seconds=30)
    assert job.last_error == "Google Calendar returned 503"
    assert job.idempotency_key == "k1"

    job.attempts = 2
    job_service.mark_job_failed(db, job, "again", retryable=True, now=NOW)
    assert job.run_at == NOW + timedelta(seconds=60)


def test_retry_after_extends_the_job_backoff(db, test_user):
    job = _schedule(db, test_user, key="k1")
    job_service.claim_pending_jobs(db)

    job_service.mark_job_failed(db, job, "Gmail returned 429", retryable=True, retry_after=120, now=NOW)
    assert job.run_at == NOW + timedelta(seconds=120)

    job_service.mark_job_failed(db, job, "Gmail returned 429", retryable=True, retry_after=5, now=NOW)
    assert job.run_at == NOW + timedelta(seconds=30)


def test_failure_is_terminal_when_attempts_run_out(db, test_user):
    job = _schedule(db, test_user, key="k1")
    job.attempts = job.max_attempts
    db.commit()

    job_service.mark_job_failed(db, job, "still failing", retryable=True, now=NOW)

    assert job.status == JobStatus.FAILED.value
    assert job.completed_at == NOW
    assert job.idempotency_key is None


def test_non_retryable_failure_is_terminal_on_first_attempt(db, test_user):
    job = _schedule(db, test_user, key="k1")
    job_service.claim_pending_jobs(db)

    job_service.mark_job_failed(db, job, "Access expired", retryable=False, now=NOW)

    assert job.status == JobStatus.FAILED.value
    assert job.idempotency_key is None


def test_update_progress_clamps(db, test_user):
    job = _schedule(db, test_user)

    job_service.update_progress(db, job, 140, {"fetched": 1.0})
    assert job.progress == 100
    assert job.progress_detail == {"fetched": 1.0}

    job_service.update_progress(db, job, -5)
    assert job.progress == 0


def test_purge_stale_jobs(db, test_user):
    stale = _schedule(db, test_user, key="stale")
    fresh = _schedule(db, test_user, key="fresh")
    stuck = _schedule(db, test_user, key="stuck")
    stale.created_at = NOW - timedelta(hours=2)
    fresh.created_at = NOW - timedelta(minutes=5)
    stuck.status = JobStatus.RUNNING.value
    stuck.started_at = NOW - timedelta(hours=2)
    db.commit()
    stale_id, fresh_id, stuck_id = stale.id, fresh.id, stuck.id

    purged = job_service.purge_stale_jobs(db, max_age=timedelta(hours=1), now=NOW)

    assert purged == 2
    db.expire_all()
    assert db.get(Job, stale_id) is None
    assert db.get(Job, fresh_id).status == JobStatus.PENDING.value
    abandoned = db.get(Job, stuck_id)
    assert abandoned.status == JobStatus.FAILED.value
    assert abandoned.idempotency_key is None
    assert abandoned.last_error == "Abandoned by worker"


def test_queue_stats(db, test_user):
    _schedule(db, test_user)
    done = _schedule(db, test_user)
    job_service.mark_job_completed(db, done)
    failed = _schedule(db, test_user)
    job_service.mark_job_failed(db, failed, "boom", retryable=False)

    stats = job_service.get_queue_stats(db)

    assert (stats.pending, stats.running, stats.completed, stats.failed) == (1, 0, 1, 1)
    assert job_service.get_queue_stats(db, JobType.PROVIDER_SYNC).pending == 1


def test_list_jobs_is_scoped_to_user(db, test_user):
    job = _schedule(db, test_user)

    assert [j.id for j in job_service.list_jobs(db, test_user.id)] == [job.id]
    assert job_service.get_job(db, job.id, user_id=test_user.id).id == job.id
