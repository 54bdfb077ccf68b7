"""Outlook Mail provider client (Microsoft Graph message delta per folder)."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from urllib.parse import quote

from crm_sync.db.enums import IntegrationType, InteractionType, ParticipantRole
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
MESSAGE_FIELDS = (
    "id,subject,body,bodyPreview,from,toRecipients,ccRecipients,"
    "receivedDateTime,sentDateTime,conversationId,webLink"
)


def _recipient(entry: dict | None, role: ParticipantRole) -> Participant | None:
    address = (entry or {}).get("emailAddress") or {}
    email = address.get("address")
    if not email:
        return None
    return Participant(email=email, display_name=address.get("name") or None, role=role)


def graph_message_to_item(message: dict, folder: str) -> ExternalItem:
    """Transform a Graph message resource into an ExternalItem."""
    removed = "@removed" in message
    occurred_at = parse_timestamp(message.get("receivedDateTime")) or parse_timestamp(
        message.get("sentDateTime")
    )
    if occurred_at is None:
        if not removed:
            raise ValueError("Message has no timestamp")
        occurred_at = datetime.fromtimestamp(0, tz=timezone.utc)

    participants: list[Participant] = []
    sender = _recipient(message.get("from"), ParticipantRole.SENDER)
    if sender:
        participants.append(sender)
    for key, role in (("toRecipients", ParticipantRole.TO), ("ccRecipients", ParticipantRole.CC)):
        for entry in message.get(key) or []:
            participant = _recipient(entry, role)
            if participant:
                participants.append(participant)

    body = message.get("body") or {}
    content = body.get("content") or ""
    if body.get("contentType") == "html":
        content = strip_html(content)

    return ExternalItem(
        external_id=message["id"],
        external_source=OutlookMailClient.external_source,
        interaction_type=InteractionType.EMAIL,
        subject=message.get("subject"),
        body=content or message.get("bodyPreview"),
        occurred_at=occurred_at,
        participants=participants,
        metadata={
            "folder": folder,
            "thread_id": message.get("conversationId"),
            "web_link": message.get("webLink"),
            "from_email": sender.email.lower() if sender else None,
        },
        deleted=removed,
    )


class OutlookMailClient(ProviderClient):
    """
    Graph ``mailFolders/{folder}/messages/delta``. Each folder has its own
    delta link, so inbox and sent items keep separate cursors.
    """

    integration_type = IntegrationType.MAIL_OUTLOOK
    external_source = "outlook_mail"
    display_name = "Outlook Mail"
    default_source_ids = ("inbox", "sentitems")

    def _page_headers(self) -> dict[str, str]:
        return {"Prefer": f"odata.maxpagesize={PAGE_SIZE}, outlook.body-content-type=\"text\""}

    def _to_page(self, payload: dict, folder: str, end: datetime | None = None) -> FetchPage:
        page = FetchPage(
            next_page_token=payload.get("@odata.nextLink"),
            next_cursor=payload.get("@odata.deltaLink"),
        )
        for message in payload.get("value") or []:
            try:
                item = graph_message_to_item(message, folder)
            except (KeyError, ValueError):
                logger.warning("Skipping malformed Outlook message in delta page")
                page.failed_ids.append(str(message.get("id") or ""))
                continue
            # Delta only filters on the lower bound.
            if end is not None and item.occurred_at > end:
                continue
            page.items.append(item)
        return page

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
                f"{GRAPH_API_BASE}/me/mailFolders/{quote(source_id, safe='')}/messages/delta",
                params={
                    "$select": MESSAGE_FIELDS,
                    "$filter": f"receivedDateTime ge {format_timestamp(start)}",
                },
                headers=self._page_headers(),
            )
        if failure:
            return failure
        return FetchResult.success(self._to_page(payload, source_id, end))

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
            f"{GRAPH_API_BASE}/me/messages/{quote(external_id, safe='')}",
            params={"$select": MESSAGE_FIELDS},
        )
        if failure:
            return failure
        return FetchResult.success(FetchPage(items=[graph_message_to_item(payload, source_id)]))
