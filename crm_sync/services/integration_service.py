"""Integration lifecycle: OAuth connect/callback, disconnect, status and settings.

A thin request layer resolves the authenticated user and calls into these
functions; nothing here knows about HTTP routing.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Literal
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from crm_sync.core.errors import IntegrationNotFoundError, TokenDecryptionError
from crm_sync.core.encryption import decrypt_token
from crm_sync.db.enums import IntegrationType, InteractionType, SyncMode
from crm_sync.db.models import Integration, User
from crm_sync.providers.google_calendar import GoogleCalendarClient
from crm_sync.providers.registry import build_provider_client, resolve_provider_client
from crm_sync.schemas.sync import (
    DisconnectResult,
    ExternalItem,
    SyncSettingsRead,
    SyncStatusRead,
)
from crm_sync.services import (
    contact_matcher,
    interaction_service,
    oauth_state_service,
    sync_scheduler,
    sync_service,
    token_vault,
)
from crm_sync.utils.normalization import normalize_email

logger = logging.getLogger(__name__)

DEFAULT_EVENT_WINDOW_DAYS = 30
CALENDAR_PREFERENCE = (IntegrationType.CALENDAR_GOOGLE, IntegrationType.CALENDAR_OUTLOOK)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def require_integration(
    db: Session,
    user_id: UUID,
    integration_type: IntegrationType,
) -> Integration:
    integration = token_vault.get_integration(db, user_id, integration_type)
    if integration is None:
        raise IntegrationNotFoundError(f"No active {integration_type.value} integration")
    return integration


def resolve_calendar_integration(db: Session, user_id: UUID) -> Integration:
    """The user's active calendar integration, Google first."""
    for integration_type in CALENDAR_PREFERENCE:
        integration = token_vault.get_integration(db, user_id, integration_type)
        if integration is not None:
            return integration
    raise IntegrationNotFoundError("No active calendar integration")


# =============================================================================
# OAuth
# =============================================================================


async def connect(
    db: Session,
    user_id: UUID,
    integration_type: IntegrationType,
    *,
    redirect_context: str | None = None,
) -> str:
    """Start the OAuth flow; returns the provider authorization URL."""
    # Fails with ConfigurationError before any state is stored.
    token_vault.get_client_config(integration_type)
    verifier, challenge = token_vault.generate_pkce_pair()
    state = await oauth_state_service.create_state(
        db,
        user_id=user_id,
        integration_type=integration_type.value,
        code_verifier=verifier,
        redirect_context=redirect_context,
    )
    return token_vault.build_authorization_url(
        integration_type,
        state=state,
        code_challenge=challenge,
    )


async def handle_callback(
    db: Session,
    code: str,
    state: str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> tuple[Integration, str | None]:
    """
    Finish the OAuth flow.

    Consumes the single-use state, exchanges the code, stores encrypted
    tokens, enables sync and queues the first (full) sync. Returns the
    integration and the redirect context captured at connect time.
    """
    pending = await oauth_state_service.consume_state(db, state)
    integration_type = IntegrationType(pending.integration_type)
    grant = await token_vault.exchange_code(
        integration_type,
        code,
        code_verifier=pending.code_verifier,
        transport=transport,
    )
    account_email = await token_vault.fetch_account_email(
        integration_type, grant.access_token, transport=transport
    )
    integration = token_vault.save_integration(
        db,
        pending.user_id,
        integration_type,
        grant,
        account_email=account_email,
    )

    state_row = sync_service.get_or_create_sync_state(db, pending.user_id, integration_type)
    sync_service.enable_sync(db, state_row)
    sync_scheduler.queue_immediate_sync(db, pending.user_id, integration_type, SyncMode.FULL)
    logger.info(
        "Connected %s for user=%s",
        integration_type.value,
        pending.user_id,
    )
    return integration, pending.redirect_context


async def disconnect(
    db: Session,
    user_id: UUID,
    integration_type: IntegrationType,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> DisconnectResult:
    """
    Revoke (best effort) and delete the integration; disable its sync state.

    Interactions and contacts synced through the integration are kept.
    """
    integration = token_vault.get_integration(db, user_id, integration_type, active_only=False)
    if integration is None:
        raise IntegrationNotFoundError(f"No {integration_type.value} integration")

    tokens_revoked = False
    token_ciphertext = integration.refresh_token_encrypted or integration.access_token_encrypted
    try:
        token = decrypt_token(token_ciphertext)
    except TokenDecryptionError:
        logger.warning("Stored token unreadable during disconnect for user=%s", user_id)
        token = None
    if token:
        tokens_revoked = await token_vault.revoke(
            token, integration_type.oauth_provider, transport=transport
        )

    token_vault.delete_integration(db, integration)
    state = sync_service.get_sync_state(db, user_id, integration_type)
    if state is not None:
        sync_service.disable_sync(db, state, clear_cursors=True)

    warning = None
    if not tokens_revoked:
        warning = (
            "Disconnected locally, but access could not be revoked with the provider. "
            "You may revoke it from your account security settings."
        )
    logger.info(
        "Disconnected %s for user=%s revoked=%s",
        integration_type.value,
        user_id,
        tokens_revoked,
    )
    return DisconnectResult(success=True, tokens_revoked=tokens_revoked, warning=warning)


# =============================================================================
# Status and settings
# =============================================================================


def get_status(db: Session, user_id: UUID, integration_type: IntegrationType) -> SyncStatusRead:
    integration = token_vault.get_integration(db, user_id, integration_type)
    state = sync_service.get_sync_state(db, user_id, integration_type)
    client_cls = resolve_provider_client(integration_type)
    return SyncStatusRead(
        is_connected=integration is not None,
        provider=integration_type.value if integration else None,
        account_email=integration.account_email if integration else None,
        last_sync_at=state.last_sync_at if state else None,
        sync_enabled=bool(state and state.sync_enabled and integration),
        phase=state.phase if state else None,
        total_items=interaction_service.count_interactions(db, user_id, client_cls.external_source),
        last_error=state.last_error if state else None,
    )


def update_settings(
    db: Session,
    user_id: UUID,
    integration_type: IntegrationType,
    *,
    enabled: bool | None = None,
    selected_source_ids: list[str] | None = None,
    lookback_days: int | None = None,
    excluded_emails: list[str] | None = None,
    excluded_domains: list[str] | None = None,
) -> SyncSettingsRead:
    """
    Update sync preferences.

    Widening the look-back window clears every cursor so the next pass
    re-imports the larger window; deselected sources lose their cursor.
    """
    if lookback_days is not None and lookback_days < 1:
        raise ValueError("lookback_days must be at least 1")
    state = sync_service.get_or_create_sync_state(db, user_id, integration_type)

    if selected_source_ids is not None:
        selected = list(dict.fromkeys(s for s in selected_source_ids if s))
        state.selected_source_ids = selected
        if selected:
            state.cursors = {k: v for k, v in (state.cursors or {}).items() if k in selected}
    if lookback_days is not None:
        if lookback_days > state.lookback_days:
            state.cursors = {}
        state.lookback_days = lookback_days
    if excluded_emails is not None:
        state.excluded_emails = sorted(
            {e for e in (normalize_email(v) for v in excluded_emails) if e}
        )
    if excluded_domains is not None:
        state.excluded_domains = sorted(
            {d.strip().lower().lstrip("@") for d in excluded_domains if d and d.strip()}
        )
    db.commit()

    if enabled is True:
        require_integration(db, user_id, integration_type)
        sync_service.enable_sync(db, state)
    elif enabled is False:
        sync_service.disable_sync(db, state)
    elif state.sync_enabled and not state.cursors:
        sync_service.enable_sync(db, state)

    db.refresh(state)
    return SyncSettingsRead.model_validate(state)


def trigger_sync(
    db: Session,
    user_id: UUID,
    integration_type: IntegrationType,
    mode: SyncMode = SyncMode.INCREMENTAL,
):
    """Queue an immediate sync; returns None when one is already in flight."""
    require_integration(db, user_id, integration_type)
    return sync_scheduler.queue_immediate_sync(db, user_id, integration_type, mode)


# =============================================================================
# Calendar reads
# =============================================================================


async def list_calendars(
    db: Session,
    user_id: UUID,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[dict]:
    integration = require_integration(db, user_id, IntegrationType.CALENDAR_GOOGLE)
    access_token = await token_vault.get_valid_access_token(db, integration, transport=transport)
    client = GoogleCalendarClient(access_token, transport=transport)
    return await client.list_calendars()


def event_window(
    window: Literal["upcoming", "past"],
    start: datetime | None,
    end: datetime | None,
    *,
    now: datetime,
) -> tuple[datetime, datetime]:
    if window == "upcoming":
        start = start or now
        end = end or start + timedelta(days=DEFAULT_EVENT_WINDOW_DAYS)
    else:
        end = end or now
        start = start or end - timedelta(days=DEFAULT_EVENT_WINDOW_DAYS)
    if start >= end:
        raise ValueError("start must be before end")
    return start, end


async def fetch_calendar_items(
    db: Session,
    user_id: UUID,
    start: datetime,
    end: datetime,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> tuple[list[ExternalItem], contact_matcher.ParticipantFilter]:
    """All calendar items in [start, end] across the user's selected calendars."""
    integration = resolve_calendar_integration(db, user_id)
    integration_type = IntegrationType(integration.integration_type)
    state = sync_service.get_or_create_sync_state(db, user_id, integration_type)
    access_token = await token_vault.get_valid_access_token(db, integration, transport=transport)
    client = build_provider_client(integration_type, access_token, transport=transport)

    items: list[ExternalItem] = []
    for source_id in client.resolve_source_ids(state.selected_source_ids):
        fetch = await sync_service.fetch_full_window(client, source_id, start, end)
        items.extend(fetch.items)
    participant_filter = sync_service.build_participant_filter(
        db.get(User, user_id), integration, state
    )
    return sync_service.dedupe_items(items), participant_filter


async def fetch_events(
    db: Session,
    user_id: UUID,
    window: Literal["upcoming", "past"] = "upcoming",
    start: datetime | None = None,
    end: datetime | None = None,
    *,
    now: datetime | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> list[ExternalItem]:
    """
    Events for display. Attendee lists go through the same participant
    policy as sync, so what is shown is what would be imported.
    """
    start, end = event_window(window, start, end, now=now or _now_utc())
    items, participant_filter = await fetch_calendar_items(
        db, user_id, start, end, transport=transport
    )
    events = []
    for item in items:
        if item.deleted:
            continue
        attendees = [
            p for p in item.participants if participant_filter.is_material(p, InteractionType.MEETING)
        ]
        events.append(item.model_copy(update={"participants": attendees}))
    if window == "past":
        events.reverse()
    return events
