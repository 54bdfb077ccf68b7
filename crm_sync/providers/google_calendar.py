"""Google Calendar provider client (events.list with syncToken)."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from urllib.parse import quote

from crm_sync.core.errors import ProviderError
from crm_sync.db.enums import IntegrationType, InteractionType, ParticipantRole
from crm_sync.providers.base import (
    FetchPage,
    FetchResult,
    FetchStatus,
    ProviderClient,
    format_timestamp,
    parse_timestamp,
)
from crm_sync.schemas.sync import ExternalItem, Participant

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE = "https://www.googleapis.com/calendar/v3"
PAGE_SIZE = 250
READABLE_ACCESS_ROLES = {"reader", "writer", "owner"}


def _event_time(value: dict | None) -> tuple[datetime | None, bool]:
    """Return (timestamp, all_day) for a Google start/end object."""
    if not value:
        return None, False
    if value.get("dateTime"):
        return parse_timestamp(value["dateTime"]), False
    if value.get("date"):
        return parse_timestamp(value["date"]), True
    return None, False


def event_to_item(event: dict, calendar_id: str) -> ExternalItem:
    """Transform a Google event resource into an ExternalItem."""
    start, all_day = _event_time(event.get("start"))
    end, _ = _event_time(event.get("end"))
    cancelled = event.get("status") == "cancelled"
    if start is None and not cancelled:
        raise ValueError("Event has no start time")

    organizer_email = ((event.get("organizer") or {}).get("email") or "").lower()
    participants: list[Participant] = []
    for attendee in event.get("attendees") or []:
        if attendee.get("resource"):
            continue
        email = attendee.get("email")
        is_organizer = bool(attendee.get("organizer")) or (
            bool(email) and email.lower() == organizer_email
        )
        participants.append(
            Participant(
                email=email,
                display_name=attendee.get("displayName"),
                role=ParticipantRole.ORGANIZER if is_organizer else ParticipantRole.ATTENDEE,
                is_organizer=is_organizer,
                is_self=bool(attendee.get("self")),
                response_status=attendee.get("responseStatus"),
            )
        )

    return ExternalItem(
        external_id=event["id"],
        external_source=GoogleCalendarClient.external_source,
        interaction_type=InteractionType.MEETING,
        subject=event.get("summary"),
        body=event.get("description"),
        location=event.get("location"),
        occurred_at=start or parse_timestamp(event.get("updated")) or datetime.now(timezone.utc),
        ends_at=end,
        participants=participants,
        metadata={
            "calendar_id": calendar_id,
            "all_day": all_day,
            "status": event.get("status"),
            "html_link": event.get("htmlLink"),
            "meeting_link": event.get("hangoutLink"),
            "organizer_email": organizer_email or None,
        },
        deleted=cancelled,
    )


class GoogleCalendarClient(ProviderClient):
    integration_type = IntegrationType.CALENDAR_GOOGLE
    external_source = "google_calendar"
    display_name = "Google Calendar"
    default_source_ids = ("primary",)

    def _events_url(self, calendar_id: str) -> str:
        return f"{GOOGLE_CALENDAR_API_BASE}/calendars/{quote(calendar_id, safe='@.')}/events"

    def _to_page(self, payload: dict, calendar_id: str) -> FetchPage:
        page = FetchPage(
            next_page_token=payload.get("nextPageToken"),
            next_cursor=payload.get("nextSyncToken"),
        )
        for event in payload.get("items") or []:
            try:
                page.items.append(event_to_item(event, calendar_id))
            except (KeyError, ValueError):
                logger.warning("Skipping malformed Google event in calendar page")
                page.failed_ids.append(str(event.get("id") or ""))
        return page

    async def fetch_full(
        self,
        start: datetime,
        end: datetime,
        *,
        source_id: str,
        page_token: str | None = None,
    ) -> FetchResult:
        params = {
            "timeMin": format_timestamp(start),
            "timeMax": format_timestamp(end),
            "singleEvents": "true",
            "maxResults": PAGE_SIZE,
        }
        if page_token:
            params["pageToken"] = page_token
        failure, payload = await self._get_json(self._events_url(source_id), params=params)
        if failure:
            return failure
        return FetchResult.success(self._to_page(payload, source_id))

    async def fetch_incremental(
        self,
        cursor: str,
        *,
        source_id: str,
        page_token: str | None = None,
    ) -> FetchResult:
        params = {"syncToken": cursor, "singleEvents": "true", "maxResults": PAGE_SIZE}
        if page_token:
            params["pageToken"] = page_token
        failure, payload = await self._get_json(
            self._events_url(source_id), params=params, cursor_call=True
        )
        if failure:
            return failure
        return FetchResult.success(self._to_page(payload, source_id))

    async def fetch_by_id(self, external_id: str, *, source_id: str) -> FetchResult:
        url = f"{self._events_url(source_id)}/{quote(external_id, safe='')}"
        failure, payload = await self._get_json(url)
        if failure:
            return failure
        return FetchResult.success(FetchPage(items=[event_to_item(payload, source_id)]))

    async def list_calendars(self) -> list[dict]:
        """Readable calendars, primary first then alphabetical."""
        failure, payload = await self._get_json(f"{GOOGLE_CALENDAR_API_BASE}/users/me/calendarList")
        if failure:
            raise ProviderError(
                failure.error or "Calendar list failed",
                retryable=failure.status == FetchStatus.RETRYABLE,
                status_code=failure.status_code,
            )
        calendars = [
            {
                "id": item["id"],
                "name": item.get("summary") or item["id"],
                "primary": bool(item.get("primary")),
                "access_role": item.get("accessRole"),
            }
            for item in payload.get("items") or []
            if item.get("accessRole") in READABLE_ACCESS_ROLES
        ]
        calendars.sort(key=lambda cal: (not cal["primary"], cal["name"].lower()))
        return calendars
