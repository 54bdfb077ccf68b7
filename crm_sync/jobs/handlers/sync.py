"""Provider sync job handlers."""

from __future__ import annotations

import logging

from pydantic import ValidationError

logger = logging.getLogger(__name__)


async def process_provider_sync(db, job) -> None:
    """
    Run one orchestrator pass for a user's integration.

    Payload:
      - user_id (required): target user UUID
      - integration_type (required): calendar_google | calendar_outlook | mail_gmail | mail_outlook
      - mode (optional): incremental (default) | full
    """
    from crm_sync.schemas.job import SyncJobPayload
    from crm_sync.services import job_service, notification_service, sync_service

    try:
        payload = SyncJobPayload.model_validate(job.payload or {})
    except ValidationError as exc:
        raise ValueError("Invalid provider_sync payload") from exc

    def report(progress: "sync_service.SyncProgress") -> None:
        job_service.update_progress(
            db,
            job,
            progress.percent,
            {"fetched": round(progress.fetched, 3), "processed": round(progress.processed, 3)},
        )

    outcome = await sync_service.sync_user(
        db,
        payload.user_id,
        payload.integration_type,
        mode=payload.mode,
        progress=report,
    )
    notification_service.notify_sync_completed(
        db,
        payload.user_id,
        payload.integration_type.value,
        added=outcome.added,
        updated=outcome.updated,
    )
    logger.info(
        "Provider sync complete for user=%s type=%s synced=%s added=%s updated=%s skipped=%s fallback=%s",
        payload.user_id,
        payload.integration_type.value,
        outcome.synced,
        outcome.added,
        outcome.updated,
        outcome.skipped,
        outcome.fell_back_to_full,
    )
