"""Pydantic schemas for background jobs."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict

from crm_sync.db.enums import IntegrationType, SyncMode


class SyncJobPayload(BaseModel):
    """Payload carried by a provider sync job."""
    user_id: UUID
    integration_type: IntegrationType
    mode: SyncMode = SyncMode.INCREMENTAL


class JobRead(BaseModel):
    """Job response schema."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID | None
    job_type: str
    payload: dict
    run_at: datetime
    status: str
    attempts: int
    max_attempts: int
    progress: int
    progress_detail: dict
    last_error: str | None
    created_at: datetime
    completed_at: datetime | None


class QueueStats(BaseModel):
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
