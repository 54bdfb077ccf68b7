"""Tests for provider clients: parsing and typed failure classification."""

import base64
from datetime import datetime, timezone

import httpx
import pytest

from crm_sync.core.backoff import BackoffPolicy
from crm_sync.core.errors import ProviderError
from crm_sync.db.enums import IntegrationType, InteractionType, ParticipantRole
from crm_sync.providers.base import FetchStatus, parse_timestamp
from crm_sync.providers.gmail import GmailClient, message_to_item
from crm_sync.providers.google_calendar import GoogleCalendarClient, event_to_item
from crm_sync.providers.outlook_calendar import OutlookCalendarClient, graph_event_to_item
from crm_sync.providers.outlook_mail import OutlookMailClient, graph_message_to_item
from crm_sync.providers.registry import build_provider_client, resolve_provider_client

START = datetime(2026, 9, 1, tzinfo=timezone.utc)
END = datetime(2026, 10, 1, tzinfo=timezone.utc)
NO_RETRY = BackoffPolicy(max_attempts=1, base_delay=0)


def _b64(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


# =============================================================================
# Parsing
# =============================================================================

def test_parse_timestamp_variants():
    assert parse_timestamp("2026-09-01T10:00:00Z") == datetime(2026, 9, 1, 10, tzinfo=timezone.utc)
    # Graph sends 7-digit fractions without an offset.
    assert parse_timestamp("2026-09-01T10:00:00.0000000") == datetime(
        2026, 9, 1, 10, tzinfo=timezone.utc
    )
    assert parse_timestamp("2026-09-01") == datetime(2026, 9, 1, tzinfo=timezone.utc)
    assert parse_timestamp(None) is None


def test_google_event_to_item():
    item = event_to_item(
        {
            "id": "evt1",
            "status": "confirmed",
            "summary": "Quarterly review",
            "start": {"dateTime": "2026-09-10T15:00:00+02:00"},
            "end": {"dateTime": "2026-09-10T16:00:00+02:00"},
            "organizer": {"email": "Boss@Co.com"},
            "attendees": [
                {"email": "boss@co.com", "responseStatus": "accepted"},
                {"email": "jane@co.com", "displayName": "Jane Doe", "responseStatus": "tentative"},
                {"email": "me@example.com", "self": True, "responseStatus": "accepted"},
                {"email": "room@resource.calendar.google.com", "resource": True},
            ],
        },
        "primary",
    )

    assert item.external_source == "google_calendar"
    assert item.interaction_type == InteractionType.MEETING
    assert item.occurred_at == datetime(2026, 9, 10, 13, tzinfo=timezone.utc)
    assert [p.email for p in item.participants] == ["boss@co.com", "jane@co.com", "me@example.com"]
    organizer, jane, me = item.participants
    assert organizer.is_organizer and organizer.role == ParticipantRole.ORGANIZER
    assert jane.response_status == "tentative" and not jane.is_organizer
    assert me.is_self
    assert item.metadata["calendar_id"] == "primary"
    assert item.deleted is False


def test_google_cancelled_event_is_marked_deleted():
    item = event_to_item({"id": "gone", "status": "cancelled"}, "primary")

    assert item.deleted is True


def test_outlook_event_maps_response_statuses():
    item = graph_event_to_item(
        {
            "id": "AAMk1",
            "subject": "Sync",
            "start": {"dateTime": "2026-09-11T09:00:00.0000000", "timeZone": "UTC"},
            "end": {"dateTime": "2026-09-11T09:30:00.0000000", "timeZone": "UTC"},
            "organizer": {"emailAddress": {"address": "lead@co.com"}},
            "body": {"contentType": "html", "content": "<p>Agenda</p><br>Notes"},
            "attendees": [
                {
                    "type": "required",
                    "emailAddress": {"address": "a@co.com", "name": "A Person"},
                    "status": {"response": "tentativelyAccepted"},
                },
                {
                    "type": "optional",
                    "emailAddress": {"address": "b@co.com"},
                    "status": {"response": "declined"},
                },
                {"type": "resource", "emailAddress": {"address": "room@co.com"}},
            ],
        },
        "calendar",
    )

    assert [p.response_status for p in item.participants] == ["tentative", "declined"]
    assert item.body == "Agenda\nNotes"
    assert item.occurred_at == datetime(2026, 9, 11, 9, tzinfo=timezone.utc)


def test_outlook_removed_event_is_deleted():
    item = graph_event_to_item({"id": "AAMk2", "@removed": {"reason": "deleted"}}, "calendar")

    assert item.deleted is True


def test_gmail_message_to_item():
    item = message_to_item(
        {
            "id": "m1",
            "threadId": "t1",
            "internalDate": "1788000000000",
            "snippet": "hi",
            "payload": {
                "mimeType": "multipart/alternative",
                "headers": [
                    {"name": "From", "value": "Jane Doe <Jane@Co.com>"},
                    {"name": "To", "value": "me@example.com, Bob <bob@co.com>"},
                    {"name": "Cc", "value": "undisclosed-recipients:;"},
                    {"name": "Subject", "value": "Hello"},
                ],
                "parts": [
                    {"mimeType": "text/html", "body": {"data": _b64("<b>Hi</b>")}},
                    {"mimeType": "text/plain", "body": {"data": _b64("Hi there")}},
                ],
            },
        }
    )

    assert item.interaction_type == InteractionType.EMAIL
    assert item.body == "Hi there"
    assert [(p.email, p.role) for p in item.participants] == [
        ("Jane@Co.com", ParticipantRole.SENDER),
        ("me@example.com", ParticipantRole.TO),
        ("bob@co.com", ParticipantRole.TO),
    ]
    assert item.metadata["from_email"] == "jane@co.com"
    assert item.occurred_at == datetime.fromtimestamp(1788000000, tz=timezone.utc)


def test_outlook_message_to_item():
    item = graph_message_to_item(
        {
            "id": "msg1",
            "subject": "Proposal",
            "receivedDateTime": "2026-09-12T08:00:00Z",
            "from": {"emailAddress": {"address": "client@co.com", "name": "Client"}},
            "toRecipients": [{"emailAddress": {"address": "me@example.com"}}],
            "ccRecipients": [{"emailAddress": {"address": ""}}],
            "body": {"contentType": "text", "content": "See attached"},
            "conversationId": "conv1",
        },
        "inbox",
    )

    assert item.body == "See attached"
    assert [p.role for p in item.participants] == [ParticipantRole.SENDER, ParticipantRole.TO]
    assert item.metadata["folder"] == "inbox"


# =============================================================================
# Fetch contract
# =============================================================================

@pytest.mark.asyncio
async def test_google_full_fetch_sends_window_and_returns_cursor(mock_transport):
    def handler(request):
        assert request.headers["Authorization"] == "Bearer token"
        assert request.url.params["timeMin"] == "2026-09-01T00:00:00Z"
        assert request.url.params["singleEvents"] == "true"
        return httpx.Response(
            200,
            json={
                "items": [
                    {"id": "e1", "start": {"dateTime": "2026-09-02T10:00:00Z"}},
                    {"id": "broken"},
                ],
                "nextSyncToken": "sync-1",
            },
        )

    client = GoogleCalendarClient("token", transport=mock_transport(handler), policy=NO_RETRY)
    result = await client.fetch_full(START, END, source_id="primary")

    assert result.ok
    assert [i.external_id for i in result.page.items] == ["e1"]
    assert result.page.failed_ids == ["broken"]
    assert result.page.next_cursor == "sync-1"


@pytest.mark.asyncio
async def test_gone_on_incremental_is_cursor_expired(mock_transport):
    client = GoogleCalendarClient(
        "token", transport=mock_transport(lambda r: httpx.Response(410)), policy=NO_RETRY
    )

    incremental = await client.fetch_incremental("stale", source_id="primary")
    full = await client.fetch_full(START, END, source_id="primary")

    assert incremental.status == FetchStatus.CURSOR_EXPIRED
    assert full.status == FetchStatus.TERMINAL


@pytest.mark.asyncio
async def test_rate_limit_is_retryable_with_retry_after(mock_transport):
    transport = mock_transport(
        lambda r: httpx.Response(429, headers={"Retry-After": "2"}, text="quota body")
    )
    client = OutlookCalendarClient("token", transport=transport, policy=NO_RETRY)

    result = await client.fetch_full(START, END, source_id="calendar")

    assert result.status == FetchStatus.RETRYABLE
    assert result.retryable
    assert result.retry_after == 2
    assert "quota body" not in result.error


@pytest.mark.asyncio
async def test_unauthorized_is_auth_expired(mock_transport):
    client = OutlookMailClient(
        "token", transport=mock_transport(lambda r: httpx.Response(401)), policy=NO_RETRY
    )

    result = await client.fetch_incremental("https://graph/delta", source_id="inbox")

    assert result.status == FetchStatus.AUTH_EXPIRED


@pytest.mark.asyncio
async def test_network_error_is_retryable(mock_transport):
    def handler(request):
        raise httpx.ConnectTimeout("slow", request=request)

    client = GoogleCalendarClient("token", transport=mock_transport(handler), policy=NO_RETRY)

    result = await client.fetch_full(START, END, source_id="primary")

    assert result.status == FetchStatus.RETRYABLE


@pytest.mark.asyncio
async def test_outlook_follows_next_link_then_delta_link(mock_transport):
    next_link = "https://graph.microsoft.com/v1.0/me/calendarView/delta?$skiptoken=abc"

    def handler(request):
        assert request.headers["Prefer"].startswith("odata.maxpagesize=")
        if "skiptoken" in str(request.url):
            return httpx.Response(
                200, json={"value": [], "@odata.deltaLink": "https://graph/delta?token=d1"}
            )
        return httpx.Response(
            200,
            json={
                "value": [{"id": "a", "start": {"dateTime": "2026-09-02T10:00:00.0000000"}}],
                "@odata.nextLink": next_link,
            },
        )

    client = OutlookCalendarClient("token", transport=mock_transport(handler), policy=NO_RETRY)

    first = await client.fetch_full(START, END, source_id="calendar")
    second = await client.fetch_full(START, END, source_id="calendar", page_token=first.page.next_page_token)

    assert first.page.next_page_token == next_link
    assert first.page.next_cursor is None
    assert second.page.next_cursor == "https://graph/delta?token=d1"


@pytest.mark.asyncio
async def test_outlook_mail_full_fetch_drops_items_after_window(mock_transport):
    payload = {
        "value": [
            {"id": "in", "receivedDateTime": "2026-09-05T00:00:00Z"},
            {"id": "late", "receivedDateTime": "2026-10-05T00:00:00Z"},
        ],
        "@odata.deltaLink": "https://graph/mail/delta?token=m1",
    }
    client = OutlookMailClient(
        "token", transport=mock_transport(lambda r: httpx.Response(200, json=payload)), policy=NO_RETRY
    )

    result = await client.fetch_full(START, END, source_id="inbox")

    assert [i.external_id for i in result.page.items] == ["in"]


@pytest.mark.asyncio
async def test_gmail_full_fetch_lists_then_fetches_messages(mock_transport):
    message = {
        "id": "m1",
        "internalDate": "1788000000000",
        "payload": {"headers": [{"name": "From", "value": "a@co.com"}]},
    }

    def handler(request):
        path = request.url.path
        if path.endswith("/profile"):
            return httpx.Response(200, json={"historyId": "900"})
        if path.endswith("/messages"):
            assert request.url.params["q"].startswith("after:")
            return httpx.Response(200, json={"messages": [{"id": "m1"}, {"id": "m404"}]})
        if path.endswith("/messages/m1"):
            return httpx.Response(200, json=message)
        return httpx.Response(404)

    client = GmailClient("token", transport=mock_transport(handler), policy=NO_RETRY)
    result = await client.fetch_full(START, END, source_id="mailbox")

    assert result.ok
    assert [i.external_id for i in result.page.items] == ["m1"]
    assert result.page.next_cursor == "900"
    assert result.page.failed_ids == []


@pytest.mark.asyncio
async def test_gmail_history_not_found_is_cursor_expired(mock_transport):
    client = GmailClient(
        "token", transport=mock_transport(lambda r: httpx.Response(404)), policy=NO_RETRY
    )

    result = await client.fetch_incremental("1", source_id="mailbox")

    assert result.status == FetchStatus.CURSOR_EXPIRED


@pytest.mark.asyncio
async def test_gmail_incremental_dedupes_history_and_sets_cursor(mock_transport):
    def handler(request):
        if request.url.path.endswith("/history"):
            assert request.url.params["startHistoryId"] == "100"
            return httpx.Response(
                200,
                json={
                    "history": [
                        {"messagesAdded": [{"message": {"id": "m1"}}]},
                        {"messagesAdded": [{"message": {"id": "m1"}}]},
                    ],
                    "historyId": "150",
                },
            )
        return httpx.Response(
            200,
            json={"id": "m1", "internalDate": "1788000000000", "payload": {"headers": []}},
        )

    client = GmailClient("token", transport=mock_transport(handler), policy=NO_RETRY)
    result = await client.fetch_incremental("100", source_id="mailbox")

    assert [i.external_id for i in result.page.items] == ["m1"]
    assert result.page.next_cursor == "150"


@pytest.mark.asyncio
async def test_list_calendars_filters_and_orders(mock_transport):
    payload = {
        "items": [
            {"id": "zeta", "summary": "Zeta", "accessRole": "reader"},
            {"id": "me@example.com", "summary": "Me", "accessRole": "owner", "primary": True},
            {"id": "busy", "summary": "Alpha busy", "accessRole": "freeBusyReader"},
            {"id": "alpha", "summary": "alpha team", "accessRole": "writer"},
        ]
    }
    client = GoogleCalendarClient(
        "token", transport=mock_transport(lambda r: httpx.Response(200, json=payload))
    )

    calendars = await client.list_calendars()

    assert [c["id"] for c in calendars] == ["me@example.com", "alpha", "zeta"]


@pytest.mark.asyncio
async def test_list_calendars_raises_provider_error(mock_transport):
    client = GoogleCalendarClient("token", transport=mock_transport(lambda r: httpx.Response(403)))

    with pytest.raises(ProviderError) as exc_info:
        await client.list_calendars()

    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_fetch_by_id_returns_single_item(mock_transport):
    def handler(request):
        if request.url.host == "graph.microsoft.com":
            assert request.url.path == "/v1.0/me/events/AAMk="
            return httpx.Response(
                200,
                json={"id": "AAMk=", "start": {"dateTime": "2026-09-11T09:00:00.0000000"}},
            )
        assert request.url.path.endswith("/calendars/primary/events/e1")
        return httpx.Response(200, json={"id": "e1", "start": {"dateTime": "2026-09-02T10:00:00Z"}})

    transport = mock_transport(handler)
    google = await GoogleCalendarClient("token", transport=transport).fetch_by_id(
        "e1", source_id="primary"
    )
    outlook = await OutlookCalendarClient("token", transport=transport).fetch_by_id(
        "AAMk=", source_id="calendar"
    )

    assert [i.external_id for i in google.page.items] == ["e1"]
    assert [i.external_id for i in outlook.page.items] == ["AAMk="]


@pytest.mark.asyncio
async def test_fetch_by_id_missing_item_is_terminal(mock_transport):
    client = GoogleCalendarClient(
        "token", transport=mock_transport(lambda r: httpx.Response(404)), policy=NO_RETRY
    )

    result = await client.fetch_by_id("gone", source_id="primary")

    assert result.status == FetchStatus.TERMINAL
    assert result.status_code == 404


def test_registry_resolves_every_integration_type():
    for integration_type in IntegrationType:
        client = build_provider_client(integration_type, "token")
        assert client.integration_type == integration_type

    with pytest.raises(ValueError):
        resolve_provider_client("fax_machine")
