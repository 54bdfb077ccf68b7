"""Sync orchestrator: fetch -> match -> persist per user per provider.

One pass reads the user's SyncState, resolves a valid access token, pulls every
page from each selected source (incremental when a cursor exists, time-bounded
otherwise) and persists items one by one. A stale cursor falls back to a full
sync of the look-back window. Steps run sequentially; ordering of upserts is
what keeps ``last_contact_at`` monotonic.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from crm_sync.core.config import settings
from crm_sync.core.errors import (
    AuthExpiredError,
    CursorExpiredError,
    IntegrationNotFoundError,
    ProviderError,
)
from crm_sync.core.structured_logging import build_log_context
from crm_sync.db.enums import (
    ContactSource,
    IntegrationType,
    InteractionType,
    SyncMode,
    SyncPhase,
)
from crm_sync.db.models import Integration, SyncState, User
from crm_sync.providers.base import FetchResult, FetchStatus, ProviderClient
from crm_sync.providers.registry import build_provider_client
from crm_sync.schemas.sync import ExternalItem, SyncOutcome
from crm_sync.services import contact_matcher, interaction_service, token_vault

logger = logging.getLogger(__name__)

# Guard against providers that keep handing back continuation tokens.
MAX_PAGES_PER_SOURCE = 1000
# Calendars also sync upcoming events for display.
UPCOMING_WINDOW_DAYS = 30

PageCall = Callable[[str | None], Awaitable[FetchResult]]


@dataclass
class SyncProgress:
    """Fractions in [0, 1] for the fetch and processing phases."""

    fetched: float = 0.0
    processed: float = 0.0

    @property
    def percent(self) -> int:
        return int(round(50 * self.fetched + 50 * self.processed))


ProgressCallback = Callable[[SyncProgress], None]


@dataclass
class SourceFetch:
    items: list[ExternalItem] = field(default_factory=list)
    cursor: str | None = None
    failed: int = 0
    fell_back: bool = False


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _integration_key(integration_type: IntegrationType | str) -> str:
    return integration_type.value if isinstance(integration_type, IntegrationType) else integration_type


# =============================================================================
# Sync state
# =============================================================================


def get_sync_state(
    db: Session,
    user_id: UUID,
    integration_type: IntegrationType | str,
) -> SyncState | None:
    return (
        db.query(SyncState)
        .filter(
            SyncState.user_id == user_id,
            SyncState.integration_type == _integration_key(integration_type),
        )
        .first()
    )


def get_or_create_sync_state(
    db: Session,
    user_id: UUID,
    integration_type: IntegrationType | str,
) -> SyncState:
    state = get_sync_state(db, user_id, integration_type)
    if state is None:
        state = SyncState(
            user_id=user_id,
            integration_type=_integration_key(integration_type),
            phase=SyncPhase.DISABLED.value,
            sync_enabled=False,
            cursors={},
            selected_source_ids=[],
            lookback_days=settings.DEFAULT_LOOKBACK_DAYS,
            excluded_emails=[],
            excluded_domains=[],
        )
        db.add(state)
        db.flush()
    return state


def enable_sync(db: Session, state: SyncState) -> SyncState:
    state.sync_enabled = True
    state.phase = SyncPhase.INCREMENTAL.value if state.cursors else SyncPhase.FIRST_SYNC.value
    db.commit()
    return state


def disable_sync(db: Session, state: SyncState, *, clear_cursors: bool = False) -> SyncState:
    state.sync_enabled = False
    state.phase = SyncPhase.DISABLED.value
    if clear_cursors:
        state.cursors = {}
    db.commit()
    return state


def clear_cursor(db: Session, state: SyncState, source_id: str | None = None) -> None:
    """Drop one source's cursor (or all of them); the next pass runs a full sync."""
    if source_id is None:
        state.cursors = {}
    else:
        cursors = dict(state.cursors or {})
        cursors.pop(source_id, None)
        state.cursors = cursors
    db.commit()


def _store_cursor(state: SyncState, source_id: str, cursor: str) -> None:
    cursors = dict(state.cursors or {})
    cursors[source_id] = cursor
    state.cursors = cursors


# =============================================================================
# Fetching
# =============================================================================


def raise_for_result(result: FetchResult) -> None:
    """Turn a non-OK typed result into the engine's error taxonomy."""
    if result.ok:
        return
    if result.status == FetchStatus.CURSOR_EXPIRED:
        raise CursorExpiredError(result.error or "Cursor expired")
    if result.status == FetchStatus.AUTH_EXPIRED:
        raise AuthExpiredError()
    raise ProviderError(
        result.error or "Provider request failed",
        retryable=result.status == FetchStatus.RETRYABLE,
        status_code=result.status_code,
        retry_after=result.retry_after,
    )


async def paginate(client: ProviderClient, call: PageCall) -> SourceFetch:
    """
    Follow continuation tokens until none remain.

    Each page goes through the client's backoff policy. The last cursor any
    page reports is the one kept.
    """
    fetch = SourceFetch()
    page_token: str | None = None
    seen_tokens: set[str] = set()
    for _ in range(MAX_PAGES_PER_SOURCE):
        result = await client.policy.run(lambda token=page_token: call(token))
        raise_for_result(result)
        page = result.page
        fetch.items.extend(page.items)
        fetch.failed += len(page.failed_ids)
        if page.next_cursor:
            fetch.cursor = page.next_cursor
        page_token = page.next_page_token
        if not page_token:
            return fetch
        if page_token in seen_tokens:
            logger.warning("%s repeated a page token; stopping pagination", client.display_name)
            return fetch
        seen_tokens.add(page_token)
    logger.warning("%s exceeded %s pages; stopping pagination", client.display_name, MAX_PAGES_PER_SOURCE)
    return fetch


async def fetch_full_window(
    client: ProviderClient,
    source_id: str,
    start: datetime,
    end: datetime,
) -> SourceFetch:
    return await paginate(
        client,
        lambda token: client.fetch_full(start, end, source_id=source_id, page_token=token),
    )


async def fetch_source(
    client: ProviderClient,
    source_id: str,
    *,
    cursor: str | None,
    start: datetime,
    end: datetime,
    on_cursor_expired: Callable[[], None] | None = None,
) -> SourceFetch:
    """Incremental fetch when a cursor exists, with full-window fallback on expiry."""
    if cursor:
        try:
            return await paginate(
                client,
                lambda token: client.fetch_incremental(cursor, source_id=source_id, page_token=token),
            )
        except CursorExpiredError:
            logger.info(
                "%s cursor expired for source; falling back to full sync",
                client.display_name,
            )
            if on_cursor_expired is not None:
                on_cursor_expired()
            fetch = await fetch_full_window(client, source_id, start, end)
            fetch.fell_back = True
            return fetch
    return await fetch_full_window(client, source_id, start, end)


def sync_window(
    integration_type: IntegrationType,
    lookback_days: int,
    now: datetime,
) -> tuple[datetime, datetime]:
    start = now - timedelta(days=lookback_days)
    end = now + timedelta(days=UPCOMING_WINDOW_DAYS) if integration_type.is_calendar else now
    return start, end


def dedupe_items(items: list[ExternalItem]) -> list[ExternalItem]:
    """Keep the last occurrence of each external id, in time order."""
    latest: dict[str, ExternalItem] = {}
    for item in items:
        latest[item.external_id] = item
    return sorted(latest.values(), key=lambda i: i.occurred_at)


# =============================================================================
# Persisting
# =============================================================================


def build_participant_filter(
    user: User | None,
    integration: Integration,
    state: SyncState,
) -> contact_matcher.ParticipantFilter:
    return contact_matcher.ParticipantFilter.build(
        self_emails=[integration.account_email, user.email if user else None],
        excluded_emails=state.excluded_emails or [],
        excluded_domains=state.excluded_domains or [],
    )


def _annotate_direction(item: ExternalItem, participant_filter: contact_matcher.ParticipantFilter) -> None:
    if item.interaction_type != InteractionType.EMAIL:
        return
    sender = item.metadata.get("from_email")
    item.metadata["direction"] = (
        "outbound" if sender and sender in participant_filter.self_emails else "inbound"
    )


def apply_item(
    db: Session,
    user_id: UUID,
    item: ExternalItem,
    participant_filter: contact_matcher.ParticipantFilter,
    *,
    now: datetime,
) -> str:
    """
    Persist one item. Returns ``added``, ``updated`` or ``skipped``; the
    caller commits.

    Order: resolve contacts, upsert the interaction with its links, then
    advance last contact. Upcoming items only link contacts that already
    exist and never touch last contact.
    """
    if item.deleted:
        return "updated" if interaction_service.mark_cancelled(db, user_id, item) else "skipped"

    _annotate_direction(item, participant_filter)
    is_past = item.occurred_at <= now
    material = [p for p in item.participants if participant_filter.is_material(p, item.interaction_type)]
    source = (
        ContactSource.CALENDAR.value
        if item.interaction_type == InteractionType.MEETING
        else ContactSource.EMAIL.value
    )
    matches = contact_matcher.match_participants(
        db,
        user_id,
        material,
        create_missing=is_past,
        source=source,
    )
    _, created = interaction_service.upsert_interaction(db, user_id, item, matches)
    if is_past:
        interaction_service.advance_last_contact(db, (m.contact.id for m in matches), item.occurred_at)
    return "added" if created else "updated"


def persist_items(
    db: Session,
    user_id: UUID,
    items: list[ExternalItem],
    participant_filter: contact_matcher.ParticipantFilter,
    outcome: SyncOutcome,
    *,
    now: datetime,
    on_item: Callable[[int], None] | None = None,
) -> None:
    """Apply items one by one; a failing item is rolled back and skipped."""
    for index, item in enumerate(items, start=1):
        try:
            result = apply_item(db, user_id, item, participant_filter, now=now)
            db.commit()
        except Exception:
            db.rollback()
            logger.exception(
                "Failed to persist %s item; skipping",
                item.external_source,
                extra=build_log_context(user_id=str(user_id)),
            )
            result = "skipped"
        if result == "added":
            outcome.added += 1
        elif result == "updated":
            outcome.updated += 1
        else:
            outcome.skipped += 1
        if on_item is not None:
            on_item(index)
    outcome.synced = outcome.added + outcome.updated


# =============================================================================
# Orchestration
# =============================================================================


async def sync_user(
    db: Session,
    user_id: UUID,
    integration_type: IntegrationType | str,
    *,
    mode: SyncMode = SyncMode.INCREMENTAL,
    now: datetime | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    progress: ProgressCallback | None = None,
) -> SyncOutcome:
    """
    Run one sync pass for a user's integration.

    Raises IntegrationNotFoundError, AuthExpiredError or ProviderError; a
    stale cursor is handled internally. Cursors are written per source only
    after that source's items were persisted.
    """
    integration_type = IntegrationType(_integration_key(integration_type))
    now = now or _now_utc()
    log_context = build_log_context(
        user_id=str(user_id),
        integration_type=integration_type.value,
        sync_mode=mode.value,
    )
    outcome = SyncOutcome(
        user_id=user_id,
        integration_type=integration_type.value,
        mode=mode,
        synced_at=now,
    )

    integration = token_vault.get_integration(db, user_id, integration_type)
    if integration is None:
        raise IntegrationNotFoundError(f"No active {integration_type.value} integration")

    state = get_or_create_sync_state(db, user_id, integration_type)
    # No open write transaction may span the provider round trips below.
    db.commit()
    if not state.sync_enabled:
        logger.info("Sync disabled; nothing to do", extra=log_context)
        return outcome

    access_token = await token_vault.get_valid_access_token(db, integration, now=now, transport=transport)
    client = build_provider_client(integration_type, access_token, transport=transport)
    user = db.get(User, user_id)
    participant_filter = build_participant_filter(user, integration, state)

    if mode == SyncMode.FULL:
        clear_cursor(db, state)
    start, end = sync_window(integration_type, state.lookback_days, now)
    source_ids = client.resolve_source_ids(state.selected_source_ids)
    report = SyncProgress()

    for position, source_id in enumerate(source_ids):
        cursor = (state.cursors or {}).get(source_id)
        if not cursor and state.phase != SyncPhase.FULL_SYNC_FALLBACK.value:
            state.phase = SyncPhase.FIRST_SYNC.value

        def _on_expired(source_id: str = source_id) -> None:
            state.phase = SyncPhase.FULL_SYNC_FALLBACK.value
            clear_cursor(db, state, source_id)

        fetch = await fetch_source(
            client,
            source_id,
            cursor=cursor,
            start=start,
            end=end,
            on_cursor_expired=_on_expired,
        )
        outcome.fell_back_to_full = outcome.fell_back_to_full or fetch.fell_back
        outcome.skipped += fetch.failed

        items = dedupe_items(fetch.items)
        report.fetched = (position + 1) / len(source_ids)
        if progress is not None:
            progress(report)

        def _on_item(index: int, total: int = len(items), position: int = position) -> None:
            if progress is None or index % 25 and index != total:
                return
            report.processed = (position + index / total) / len(source_ids)
            progress(report)

        added_before, updated_before = outcome.added, outcome.updated
        skipped_before = outcome.skipped
        persist_items(db, user_id, items, participant_filter, outcome, now=now, on_item=_on_item)
        logger.info(
            "Synced %s source %s: added=%s updated=%s skipped=%s fallback=%s",
            integration_type.value,
            position + 1,
            outcome.added - added_before,
            outcome.updated - updated_before,
            outcome.skipped - skipped_before,
            fetch.fell_back,
            extra=log_context,
        )

        if fetch.cursor:
            _store_cursor(state, source_id, fetch.cursor)
            outcome.cursors[source_id] = fetch.cursor
        db.commit()

    cursors = state.cursors or {}
    if all(cursors.get(source_id) for source_id in source_ids):
        state.phase = SyncPhase.INCREMENTAL.value
    elif state.phase != SyncPhase.FULL_SYNC_FALLBACK.value:
        state.phase = SyncPhase.FIRST_SYNC.value
    state.last_sync_at = now
    state.last_error = None
    state.total_synced = (state.total_synced or 0) + outcome.synced
    db.commit()

    report.processed = 1.0
    if progress is not None:
        progress(report)
    return outcome


def record_sync_error(
    db: Session,
    user_id: UUID,
    integration_type: IntegrationType | str,
    reason: str,
) -> None:
    """Store a user-safe failure reason on the sync state."""
    state = get_sync_state(db, user_id, integration_type)
    if state is None:
        return
    state.last_error = reason
    db.commit()
