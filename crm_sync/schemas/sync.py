"""Pydantic schemas for provider items and sync results."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from crm_sync.db.enums import InteractionType, ParticipantRole, SyncMode


class Participant(BaseModel):
    """Attendee, sender or recipient attached to an external item."""
    email: str | None = None
    display_name: str | None = None
    role: ParticipantRole = ParticipantRole.ATTENDEE
    is_organizer: bool = False
    is_self: bool = False
    response_status: str | None = None


class ExternalItem(BaseModel):
    """Calendar event or mail message as returned by a provider (transient)."""
    external_id: str
    external_source: str
    interaction_type: InteractionType
    subject: str | None = None
    body: str | None = None
    location: str | None = None
    occurred_at: datetime
    ends_at: datetime | None = None
    participants: list[Participant] = Field(default_factory=list)
    metadata: dict = Field(default_factory=dict)
    deleted: bool = False


class SyncOutcome(BaseModel):
    """Result of one orchestrator pass."""
    user_id: UUID
    integration_type: str
    mode: SyncMode
    fell_back_to_full: bool = False
    synced: int = 0
    added: int = 0
    updated: int = 0
    skipped: int = 0
    cursors: dict[str, str] = Field(default_factory=dict)
    synced_at: datetime

    @property
    def cursor(self) -> str | None:
        """Cursor for single-source providers (first source otherwise)."""
        return next(iter(self.cursors.values()), None)


class SyncStatusRead(BaseModel):
    """User-visible sync status."""
    is_connected: bool
    provider: str | None = None
    account_email: str | None = None
    last_sync_at: datetime | None = None
    sync_enabled: bool = False
    phase: str | None = None
    total_items: int = 0
    last_error: str | None = None


class DisconnectResult(BaseModel):
    success: bool
    tokens_revoked: bool
    warning: str | None = None


class SyncSettingsRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    integration_type: str
    sync_enabled: bool
    selected_source_ids: list[str]
    lookback_days: int
    excluded_emails: list[str]
    excluded_domains: list[str]
