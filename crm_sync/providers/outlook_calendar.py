"""Outlook Calendar provider client (Microsoft Graph calendarView delta)."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from urllib.parse import quote

from crm_sync.db.enums import IntegrationType, InteractionType, ParticipantRole, ResponseStatus
from crm_sync.providers.base import (
    FetchPage,
    FetchResult,
    ProviderClient,
    format_timestamp,
    parse_timestamp,
)
from crm_sync.schemas.sync import ExternalItem, Participant
from crm_sync.utils.normalization import strip_html

logger = logging.getLogger(__name__)

GRAPH_API_BASE = "https://graph.microsoft.com/v1.0"
PAGE_SIZE = 100

# Graph attendee status.response -> Google-style response status
GRAPH_RESPONSE_MAP = {
    "accepted": ResponseStatus.ACCEPTED.value,
    "organizer": ResponseStatus.ACCEPTED.value,
    "tentativelyAccepted": ResponseStatus.TENTATIVE.value,
    "declined": ResponseStatus.DECLINED.value,
    "none": ResponseStatus.NEEDS_ACTION.value,
    "notResponded": ResponseStatus.NEEDS_ACTION.value,
}


def _graph_time(value: dict | None) -> datetime | None:
    # Graph returns UTC wall time unless a Prefer: outlook.timezone header is sent.
    if not value or not value.get("dateTime"):
        return None
    return parse_timestamp(value["dateTime"])


def graph_event_to_item(event: dict, source_id: str) -> ExternalItem:
    """Transform a Graph event resource into an ExternalItem."""
    removed = "@removed" in event or bool(event.get("isCancelled"))
    start = _graph_time(event.get("start"))
    if start is None and not removed:
        raise ValueError("Event has no start time")

    organizer_email = (
        ((event.get("organizer") or {}).get("emailAddress") or {}).get("address") or ""
    ).lower()
    participants: list[Participant] = []
    for attendee in event.get("attendees") or []:
        if attendee.get("type") == "resource":
            continue
        address = attendee.get("emailAddress") or {}
        email = address.get("address")
        response = (attendee.get("status") or {}).get("response")
        is_organizer = response == "organizer" or (
            bool(email) and email.lower() == organizer_email
        )
        participants.append(
            Participant(
                email=email,
                display_name=address.get("name"),
                role=ParticipantRole.ORGANIZER if is_organizer else ParticipantRole.ATTENDEE,
                is_organizer=is_organizer,
                response_status=GRAPH_RESPONSE_MAP.get(response or "", ResponseStatus.NEEDS_ACTION.value),
            )
        )

    body = event.get("body") or {}
    content = body.get("content")
    if content and body.get("contentType") == "html":
        content = strip_html(content)

    return ExternalItem(
        external_id=event["id"],
        external_source=OutlookCalendarClient.external_source,
        interaction_type=InteractionType.MEETING,
        subject=event.get("subject"),
        body=content or event.get("bodyPreview"),
        location=(event.get("location") or {}).get("displayName") or None,
        occurred_at=start or datetime.now(timezone.utc),
        ends_at=_graph_time(event.get("end")),
        participants=participants,
        metadata={
            "calendar_id": source_id,
            "all_day": bool(event.get("isAllDay")),
            "html_link": event.get("webLink"),
            "meeting_link": (event.get("onlineMeeting") or {}).get("joinUrl"),
            "organizer_email": organizer_email or None,
        },
        deleted=removed,
    )


class OutlookCalendarClient(ProviderClient):
    """
    Delta queries on ``calendarView``. The cursor is the full
    ``@odata.deltaLink`` URL and the page token the ``@odata.nextLink`` URL.
    """

    integration_type = IntegrationType.CALENDAR_OUTLOOK
    external_source = "outlook_calendar"
    display_name = "Outlook Calendar"
    default_source_ids = ("calendar",)

    def _page_headers(self) -> dict[str, str]:
        return {"Prefer": f"odata.maxpagesize={PAGE_SIZE}"}

    def _to_page(self, payload: dict, source_id: str) -> FetchPage:
        page = FetchPage(
            next_page_token=payload.get("@odata.nextLink"),
            next_cursor=payload.get("@odata.deltaLink"),
        )
        for event in payload.get("value") or []:
            try:
                page.items.append(graph_event_to_item(event, source_id))
            except (KeyError, ValueError):
                logger.warning("Skipping malformed Outlook event in delta page")
                page.failed_ids.append(str(event.get("id") or ""))
        return page

    def _delta_url(self, source_id: str) -> str:
        if source_id in self.default_source_ids:
            return f"{GRAPH_API_BASE}/me/calendarView/delta"
        return f"{GRAPH_API_BASE}/me/calendars/{quote(source_id, safe='')}/calendarView/delta"

    async def fetch_full(
        self,
        start: datetime,
        end: datetime,
        *,
        source_id: str,
        page_token: str | None = None,
    ) -> FetchResult:
        if page_token:
            failure, payload = await self._get_json(page_token, headers=self._page_headers())
        else:
            failure, payload = await self._get_json(
                self._delta_url(source_id),
                params={
                    "startDateTime": format_timestamp(start),
                    "endDateTime": format_timestamp(end),
                },
                headers=self._page_headers(),
            )
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
        failure, payload = await self._get_json(
            page_token or cursor, headers=self._page_headers(), cursor_call=True
        )
        if failure:
            return failure
        return FetchResult.success(self._to_page(payload, source_id))

    async def fetch_by_id(self, external_id: str, *, source_id: str) -> FetchResult:
        failure, payload = await self._get_json(
            f"{GRAPH_API_BASE}/me/events/{quote(external_id, safe='')}"
        )
        if failure:
            return failure
        return FetchResult.success(FetchPage(items=[graph_event_to_item(payload, source_id)]))
