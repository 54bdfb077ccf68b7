"""Provider sync scheduling.

Every sync job for a (user, integration type) pair carries the same
idempotency key, so at most one is pending or running at a time and a second
trigger while one is in flight is a no-op.
"""

from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta, timezone
from typing import TypedDict
from uuid import UUID

from sqlalchemy.orm import Session

from crm_sync.core.config import settings
from crm_sync.db.enums import IntegrationType, JobType, SyncMode
from crm_sync.db.models import Integration, Job, SyncState
from crm_sync.schemas.job import SyncJobPayload
from crm_sync.services import job_service

logger = logging.getLogger(__name__)


class SyncScheduleCounts(TypedDict):
    eligible: int
    jobs_created: int
    duplicates_skipped: int


def sync_job_key(user_id: UUID | str, integration_type: IntegrationType | str) -> str:
    key = integration_type.value if isinstance(integration_type, IntegrationType) else integration_type
    return f"provider-sync:{key}:{user_id}"


def _payload(user_id: UUID, integration_type: IntegrationType, mode: SyncMode) -> dict:
    return SyncJobPayload(
        user_id=user_id,
        integration_type=integration_type,
        mode=mode,
    ).model_dump(mode="json")


def schedule_for(
    db: Session,
    user_id: UUID,
    integration_type: IntegrationType,
    *,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> Job | None:
    """Enqueue a staggered incremental sync; None if one is already in flight."""
    now = now or datetime.now(timezone.utc)
    delay = (rng or random).uniform(0, settings.SYNC_STAGGER_SECONDS)
    return job_service.enqueue_unique(
        db,
        JobType.PROVIDER_SYNC,
        _payload(user_id, integration_type, SyncMode.INCREMENTAL),
        idempotency_key=sync_job_key(user_id, integration_type),
        user_id=user_id,
        run_at=now + timedelta(seconds=delay),
    )


def queue_immediate_sync(
    db: Session,
    user_id: UUID,
    integration_type: IntegrationType,
    mode: SyncMode = SyncMode.INCREMENTAL,
    *,
    now: datetime | None = None,
) -> Job | None:
    """Enqueue a sync due now; None if one is already pending or running."""
    job = job_service.enqueue_unique(
        db,
        JobType.PROVIDER_SYNC,
        _payload(user_id, integration_type, mode),
        idempotency_key=sync_job_key(user_id, integration_type),
        user_id=user_id,
        run_at=now or datetime.now(timezone.utc),
    )
    if job is None:
        logger.info(
            "Sync already queued for user=%s type=%s",
            user_id,
            integration_type.value,
        )
    return job


def list_sync_targets(db: Session) -> list[tuple[UUID, IntegrationType]]:
    """(user, type) pairs with sync enabled and an active integration."""
    rows = (
        db.query(SyncState.user_id, SyncState.integration_type)
        .join(
            Integration,
            (Integration.user_id == SyncState.user_id)
            & (Integration.integration_type == SyncState.integration_type),
        )
        .filter(SyncState.sync_enabled.is_(True), Integration.is_active.is_(True))
        .order_by(SyncState.user_id)
        .all()
    )
    targets: list[tuple[UUID, IntegrationType]] = []
    for user_id, integration_type in rows:
        try:
            targets.append((user_id, IntegrationType(integration_type)))
        except ValueError:
            logger.warning("Skipping sync state with unknown type %s", integration_type)
    return targets


def schedule_periodic_sync(
    db: Session,
    *,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> SyncScheduleCounts:
    """Enqueue one incremental sync per eligible (user, type) pair."""
    now = now or datetime.now(timezone.utc)
    targets = list_sync_targets(db)
    jobs_created = 0
    duplicates_skipped = 0
    for user_id, integration_type in targets:
        job = schedule_for(db, user_id, integration_type, now=now, rng=rng)
        if job is None:
            duplicates_skipped += 1
        else:
            jobs_created += 1

    logger.info(
        "Periodic sync scheduled: eligible=%s created=%s skipped=%s",
        len(targets),
        jobs_created,
        duplicates_skipped,
    )
    return {
        "eligible": len(targets),
        "jobs_created": jobs_created,
        "duplicates_skipped": duplicates_skipped,
    }
