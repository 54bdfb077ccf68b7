import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from crm_sync import worker
from crm_sync.core.errors import (
    AuthExpiredError,
    IntegrationNotFoundError,
    ProviderError,
    TokenDecryptionError,
)
from crm_sync.db.enums import IntegrationType, JobStatus, JobType, NotificationType
from crm_sync.db.models import Job, Notification, OAuthState
from crm_sync.schemas.sync import SyncOutcome
from crm_sync.services import job_service, sync_scheduler, sync_service


# =============================================================================
# Failure classification
# =============================================================================

def test_auth_failures_need_reconnect():
    for exc in (AuthExpiredError(), TokenDecryptionError("bad tag")):
        failure = worker.classify_failure(exc)
        assert failure.retryable is False
        assert failure.reconnect is True
        assert "bad tag" not in failure.reason


def test_provider_errors_keep_their_retry_decision():
    assert worker.classify_failure(ProviderError("Gmail returned 503", retryable=True)).retryable
    terminal = worker.classify_failure(ProviderError("Gmail returned 403", retryable=False))
    assert terminal.retryable is False
    assert terminal.reason == "Gmail returned 403"


def test_missing_integration_is_terminal_and_silent():
    failure = worker.classify_failure(IntegrationNotFoundError("gone"))
    assert (failure.retryable, failure.notify) == (False, False)


def test_timeout_is_terminal():
    assert worker.classify_failure(asyncio.TimeoutError()).retryable is False


def test_unexpected_errors_are_retried_without_leaking_detail():
    failure = worker.classify_failure(RuntimeError("secret=abc"))
    assert failure.retryable is True
    assert "secret" not in failure.reason


# =============================================================================
# Job execution
# =============================================================================

def _claim_sync_job(db, user_id, integration_type=IntegrationType.CALENDAR_GOOGLE):
    sync_scheduler.queue_immediate_sync(db, user_id, integration_type)
    [job] = job_service.claim_pending_jobs(db)
    return job


def _patch_sync(monkeypatch, behaviour):
    async def fake_sync_user(db, user_id, integration_type, *, mode, progress=None):
        return await behaviour(user_id, integration_type, mode)

    monkeypatch.setattr("crm_sync.services.sync_service.sync_user", fake_sync_user)


def _outcome(user_id, integration_type, mode):
    return SyncOutcome(
        user_id=user_id,
        integration_type=integration_type.value,
        mode=mode,
        synced_at=datetime.now(timezone.utc),
    )


@pytest.mark.asyncio
async def test_successful_job_completes_and_releases_key(db, test_user, make_integration, monkeypatch):
    make_integration()

    async def succeed(user_id, integration_type, mode):
        return _outcome(user_id, integration_type, mode)

    _patch_sync(monkeypatch, succeed)
    job = _claim_sync_job(db, test_user.id)

    await worker.run_job(db, job)

    assert job.status == JobStatus.COMPLETED.value
    assert job.idempotency_key is None


@pytest.mark.asyncio
async def test_retryable_failure_requeues_without_notifying(db, test_user, make_integration, monkeypatch):
    make_integration()

    async def rate_limited(user_id, integration_type, mode):
        raise ProviderError(
            "Google Calendar returned 429", retryable=True, status_code=429, retry_after=300
        )

    _patch_sync(monkeypatch, rate_limited)
    job = _claim_sync_job(db, test_user.id)

    await worker.run_job(db, job)

    assert job.status == JobStatus.PENDING.value
    assert job.run_at > datetime.now(timezone.utc) + timedelta(seconds=240)
    assert job.last_error == "Google Calendar returned 429"
    assert db.query(Notification).count() == 0


@pytest.mark.asyncio
async def test_auth_expiry_fails_job_and_asks_for_reconnect(db, test_user, make_integration, monkeypatch):
    make_integration()

    async def expired(user_id, integration_type, mode):
        raise AuthExpiredError()

    _patch_sync(monkeypatch, expired)
    job = _claim_sync_job(db, test_user.id)

    await worker.run_job(db, job)

    assert job.status == JobStatus.FAILED.value
    assert job.idempotency_key is None
    notification = db.query(Notification).one()
    assert notification.type == NotificationType.RECONNECT_REQUIRED.value
    state = sync_service.get_sync_state(db, test_user.id, IntegrationType.CALENDAR_GOOGLE)
    assert state.last_error == "Access expired; reconnect the account"


@pytest.mark.asyncio
async def test_exhausted_retries_notify_failure(db, test_user, make_integration, monkeypatch):
    make_integration()

    async def unavailable(user_id, integration_type, mode):
        raise ProviderError("Google Calendar returned 503", retryable=True, status_code=503)

    _patch_sync(monkeypatch, unavailable)
    job = _claim_sync_job(db, test_user.id)
    job.attempts = job.max_attempts
    db.commit()

    await worker.run_job(db, job)

    assert job.status == JobStatus.FAILED.value
    notification = db.query(Notification).one()
    assert notification.type == NotificationType.SYNC_FAILED.value
    assert notification.body == "Google Calendar returned 503"


@pytest.mark.asyncio
async def test_job_timeout_is_terminal(db, test_user, make_integration, monkeypatch):
    make_integration()

    async def hang(user_id, integration_type, mode):
        await asyncio.sleep(5)

    _patch_sync(monkeypatch, hang)
    monkeypatch.setattr(worker.settings, "SYNC_JOB_TIMEOUT_SECONDS", 0.01)
    job = _claim_sync_job(db, test_user.id)

    await worker.run_job(db, job)

    assert job.status == JobStatus.FAILED.value
    assert job.last_error == "Sync timed out"


@pytest.mark.asyncio
async def test_process_due_jobs_runs_claimed_batch(db, test_user, make_integration, monkeypatch):
    make_integration()
    seen = []

    async def succeed(user_id, integration_type, mode):
        seen.append((user_id, integration_type))
        return _outcome(user_id, integration_type, mode)

    _patch_sync(monkeypatch, succeed)
    job = sync_scheduler.queue_immediate_sync(db, test_user.id, IntegrationType.CALENDAR_GOOGLE)
    job_id = job.id

    processed = await worker.process_due_jobs(limit=5)

    assert processed == 1
    assert seen == [(test_user.id, IntegrationType.CALENDAR_GOOGLE)]
    db.expire_all()
    assert db.get(Job, job_id).status == JobStatus.COMPLETED.value
    assert await worker.process_due_jobs(limit=5) == 0


@pytest.mark.asyncio
async def test_process_job_uses_registry(monkeypatch):
    calls: dict[str, str] = {}

    async def stub_handler(_db, job):
        calls["job_type"] = job.job_type

    def stub_resolver(job_type: str):
        calls["resolved"] = job_type
        return stub_handler

    monkeypatch.setattr(worker, "resolve_job_handler", stub_resolver)
    job = type("Job", (), {"id": "job-1", "job_type": "provider_sync", "attempts": 1})()

    await worker.process_job(None, job)

    assert calls == {"resolved": "provider_sync", "job_type": "provider_sync"}


def test_cleanup_purges_stale_jobs_and_expired_states(db, test_user):
    old = datetime.now(timezone.utc) - timedelta(hours=3)
    job = job_service.schedule_job(db, job_type=JobType.PROVIDER_SYNC, payload={})
    job.created_at = old
    db.add(
        OAuthState(
            state="expired",
            user_id=test_user.id,
            integration_type="calendar_google",
            expires_at=old,
        )
    )
    db.commit()

    assert worker.cleanup_stale_jobs() == 1
    db.expire_all()
    assert db.query(Job).count() == 0
    assert db.query(OAuthState).count() == 0
