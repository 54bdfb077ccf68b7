"""Gmail provider client (messages.list + history.list)."""

from __future__ import annotations

import base64
import binascii
import logging
from datetime import datetime, timezone
from email.utils import getaddresses, parsedate_to_datetime
from urllib.parse import quote

from crm_sync.db.enums import IntegrationType, InteractionType, ParticipantRole
from crm_sync.providers.base import FetchPage, FetchResult, FetchStatus, ProviderClient
from crm_sync.schemas.sync import ExternalItem, Participant
from crm_sync.utils.normalization import strip_html

logger = logging.getLogger(__name__)

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"
LIST_PAGE_SIZE = 500
HISTORY_PAGE_SIZE = 500

_ROLE_HEADERS = (
    ("From", ParticipantRole.SENDER),
    ("To", ParticipantRole.TO),
    ("Cc", ParticipantRole.CC),
)


def _decode_base64url(data: str) -> str:
    try:
        return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4)).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return ""


def extract_body(payload: dict) -> str:
    """Prefer the first text/plain part; fall back to stripped text/html."""
    plain: list[str] = []
    html_parts: list[str] = []

    def walk(part: dict) -> None:
        mime = part.get("mimeType") or ""
        data = (part.get("body") or {}).get("data")
        if data and mime == "text/plain":
            plain.append(_decode_base64url(data))
        elif data and mime == "text/html":
            html_parts.append(_decode_base64url(data))
        for child in part.get("parts") or []:
            walk(child)

    walk(payload or {})
    if plain:
        return plain[0].strip()
    if html_parts:
        return strip_html(html_parts[0])
    return ""


def parse_address_header(value: str | None, role: ParticipantRole) -> list[Participant]:
    """Parse ``Name <email>, other@example.com`` style headers."""
    if not value:
        return []
    participants = []
    for name, address in getaddresses([value]):
        if not address or "@" not in address:
            continue
        participants.append(
            Participant(email=address, display_name=name or None, role=role)
        )
    return participants


def message_to_item(message: dict) -> ExternalItem:
    """Transform a Gmail message resource (format=full) into an ExternalItem."""
    payload = message.get("payload") or {}
    headers = {h.get("name", "").lower(): h.get("value") for h in payload.get("headers") or []}

    occurred_at: datetime | None = None
    if message.get("internalDate"):
        occurred_at = datetime.fromtimestamp(int(message["internalDate"]) / 1000, tz=timezone.utc)
    elif headers.get("date"):
        occurred_at = parsedate_to_datetime(headers["date"]).astimezone(timezone.utc)
    if occurred_at is None:
        raise ValueError("Message has no timestamp")

    participants: list[Participant] = []
    for header, role in _ROLE_HEADERS:
        participants.extend(parse_address_header(headers.get(header.lower()), role))

    sender = next((p.email for p in participants if p.role == ParticipantRole.SENDER), None)
    return ExternalItem(
        external_id=message["id"],
        external_source=GmailClient.external_source,
        interaction_type=InteractionType.EMAIL,
        subject=headers.get("subject"),
        body=extract_body(payload) or message.get("snippet"),
        occurred_at=occurred_at,
        participants=participants,
        metadata={
            "thread_id": message.get("threadId"),
            "label_ids": message.get("labelIds") or [],
            "snippet": message.get("snippet"),
            "from_email": sender.lower() if sender else None,
        },
    )


class GmailClient(ProviderClient):
    """
    Full sync lists message ids with a Gmail search query and fetches each
    message. The cursor is a ``historyId``.
    """

    integration_type = IntegrationType.MAIL_GMAIL
    external_source = "gmail"
    display_name = "Gmail"
    default_source_ids = ("mailbox",)
    # history.list answers 404 when startHistoryId is too old
    cursor_expired_statuses = frozenset({404, 410})

    async def _fetch_message(self, message_id: str) -> FetchResult:
        failure, payload = await self._get_json(
            f"{GMAIL_API_BASE}/messages/{quote(message_id, safe='')}", params={"format": "full"}
        )
        if failure:
            return failure
        return FetchResult.success(FetchPage(items=[message_to_item(payload)]))

    async def _fetch_messages(self, message_ids: list[str]) -> FetchResult | FetchPage:
        """Fetch each message with retries; failures are recorded, not raised."""
        page = FetchPage()
        for message_id in message_ids:
            try:
                result = await self.policy.run(lambda mid=message_id: self._fetch_message(mid))
            except (KeyError, ValueError):
                logger.warning("Skipping malformed Gmail message")
                page.failed_ids.append(message_id)
                continue
            if result.ok:
                page.items.extend(result.page.items)
            elif result.status == FetchStatus.AUTH_EXPIRED:
                return result
            elif result.status_code == 404:
                # Deleted between listing and fetching.
                continue
            else:
                page.failed_ids.append(message_id)
        return page

    async def _current_history_id(self) -> FetchResult | str | None:
        failure, payload = await self._get_json(f"{GMAIL_API_BASE}/profile")
        if failure:
            return failure
        history_id = payload.get("historyId")
        return str(history_id) if history_id else None

    async def fetch_full(
        self,
        start: datetime,
        end: datetime,
        *,
        source_id: str,
        page_token: str | None = None,
    ) -> FetchResult:
        cursor = None
        if page_token is None:
            current = await self._current_history_id()
            if isinstance(current, FetchResult):
                return current
            cursor = current

        params = {
            "q": f"after:{int(start.timestamp())} before:{int(end.timestamp())}",
            "maxResults": LIST_PAGE_SIZE,
        }
        if page_token:
            params["pageToken"] = page_token
        failure, payload = await self._get_json(f"{GMAIL_API_BASE}/messages", params=params)
        if failure:
            return failure

        ids = [m["id"] for m in payload.get("messages") or [] if m.get("id")]
        fetched = await self._fetch_messages(ids)
        if isinstance(fetched, FetchResult):
            return fetched
        fetched.next_page_token = payload.get("nextPageToken")
        fetched.next_cursor = cursor
        return FetchResult.success(fetched)

    async def fetch_incremental(
        self,
        cursor: str,
        *,
        source_id: str,
        page_token: str | None = None,
    ) -> FetchResult:
        params = {
            "startHistoryId": cursor,
            "historyTypes": "messageAdded",
            "maxResults": HISTORY_PAGE_SIZE,
        }
        if page_token:
            params["pageToken"] = page_token
        failure, payload = await self._get_json(
            f"{GMAIL_API_BASE}/history", params=params, cursor_call=True
        )
        if failure:
            return failure

        ids: list[str] = []
        seen: set[str] = set()
        for record in payload.get("history") or []:
            for added in record.get("messagesAdded") or []:
                message_id = (added.get("message") or {}).get("id")
                if message_id and message_id not in seen:
                    seen.add(message_id)
                    ids.append(message_id)

        fetched = await self._fetch_messages(ids)
        if isinstance(fetched, FetchResult):
            return fetched
        fetched.next_page_token = payload.get("nextPageToken")
        if not fetched.next_page_token and payload.get("historyId"):
            fetched.next_cursor = str(payload["historyId"])
        return FetchResult.success(fetched)

    async def fetch_by_id(self, external_id: str, *, source_id: str) -> FetchResult:
        return await self._fetch_message(external_id)
