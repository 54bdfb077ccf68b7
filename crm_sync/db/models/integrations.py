"""SQLAlchemy ORM models for provider integrations and sync state."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from crm_sync.db.base import Base
from crm_sync.db.enums import SyncPhase
from crm_sync.db.models.core import utcnow


class Integration(Base):
    """
    Per-user OAuth integration.

    Tokens are stored AES-GCM encrypted. Deleting an integration never touches
    contacts or interactions that were synced through it.
    """

    __tablename__ = "integrations"
    __table_args__ = (UniqueConstraint("user_id", "integration_type", name="uq_integration_user_type"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    integration_type: Mapped[str] = mapped_column(String(30), nullable=False)
    access_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    account_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    provider_metadata: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)


class SyncState(Base):
    """
    Sync bookkeeping for one (user, integration type) pair.

    ``cursors`` maps a provider source id (calendar id, mail folder) to the
    opaque incremental cursor issued for it.
    """

    __tablename__ = "sync_states"
    __table_args__ = (UniqueConstraint("user_id", "integration_type", name="uq_sync_state_user_type"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    integration_type: Mapped[str] = mapped_column(String(30), nullable=False)

    phase: Mapped[str] = mapped_column(String(30), default=SyncPhase.DISABLED.value, nullable=False)
    sync_enabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    cursors: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    selected_source_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    lookback_days: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    excluded_emails: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    excluded_domains: Mapped[list] = mapped_column(JSON, nullable=False, default=list)

    last_sync_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_synced: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow, nullable=False)


class OAuthState(Base):
    """Pending OAuth authorization (CSRF state). Single use, short lived."""

    __tablename__ = "oauth_states"

    state: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    integration_type: Mapped[str] = mapped_column(String(30), nullable=False)
    code_verifier: Mapped[str | None] = mapped_column(String(128), nullable=True)
    redirect_context: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
