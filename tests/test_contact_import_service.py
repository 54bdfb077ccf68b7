from datetime import datetime, timedelta, timezone

import httpx
import pytest

from crm_sync.db.enums import ContactSource
from crm_sync.db.models import Contact
from crm_sync.services import contact_import_service

NOW = datetime(2026, 10, 1, 12, tzinfo=timezone.utc)
START = NOW - timedelta(days=30)

EVENTS = [
    {
        "id": "e1",
        "start": {"dateTime": "2026-09-10T09:00:00Z"},
        "organizer": {"email": "boss@co.com"},
        "attendees": [
            {"email": "boss@co.com", "organizer": True, "responseStatus": "accepted"},
            {"email": "me@example.com", "self": True, "responseStatus": "accepted"},
            {"email": "known@co.com", "responseStatus": "accepted"},
            {"email": "jane.smyth@acme.com", "displayName": "Jane Smyth", "responseStatus": "accepted"},
            {"email": "bob@other.org", "displayName": "Bob Jones", "responseStatus": "tentative"},
            {"email": "nope@co.com", "responseStatus": "declined"},
        ],
    },
    {
        "id": "e2",
        "start": {"dateTime": "2026-09-20T09:00:00Z"},
        "attendees": [{"email": "BOB@other.org", "responseStatus": "accepted"}],
    },
]


@pytest.fixture
def calendar(db, test_user, make_integration, mock_transport):
    make_integration()
    db.add_all(
        [
            Contact(user_id=test_user.id, email="known@co.com", first_name="Known"),
            Contact(user_id=test_user.id, first_name="Jane", last_name="Smith", company="Acme"),
        ]
    )
    db.commit()
    return mock_transport(lambda request: httpx.Response(200, json={"items": EVENTS}))


def _contact(db, email):
    db.expire_all()
    return db.query(Contact).filter(Contact.email == email).one_or_none()


@pytest.mark.asyncio
async def test_preview_splits_new_exact_and_fuzzy(db, test_user, calendar):
    preview = await contact_import_service.preview_import(
        db, test_user.id, START, NOW, transport=calendar
    )

    summary = preview.summary
    assert (summary.total_events, summary.total_attendees) == (2, 3)
    assert (summary.new_contacts, summary.exact_duplicates, summary.fuzzy_duplicates) == (1, 1, 1)

    [new] = preview.new_contacts
    assert (new.email, new.first_name, new.last_name, new.company) == (
        "bob@other.org",
        "Bob",
        "Jones",
        "Other",
    )
    assert new.meeting_count == 2
    assert preview.exact_duplicates[0].attendee.email == "known@co.com"
    fuzzy = preview.fuzzy_duplicates[0]
    assert fuzzy.attendee.email == "jane.smyth@acme.com"
    assert fuzzy.match_type == "FUZZY"
    # Preview never writes.
    assert db.query(Contact).count() == 2


@pytest.mark.asyncio
async def test_import_skips_duplicates_by_default(db, test_user, calendar):
    result = await contact_import_service.import_contacts(
        db, test_user.id, START, NOW, now=NOW, transport=calendar
    )

    assert (result.imported, result.updated, result.skipped, result.failed) == (1, 0, 2, 0)
    bob = _contact(db, "bob@other.org")
    assert bob.source == ContactSource.CALENDAR_IMPORT.value
    assert bob.last_contact_at == datetime(2026, 9, 20, 9, tzinfo=timezone.utc)
    assert _contact(db, "jane.smyth@acme.com") is None
    assert _contact(db, "boss@co.com") is None
    assert _contact(db, "nope@co.com") is None


@pytest.mark.asyncio
async def test_import_can_update_existing_and_keep_fuzzy(db, test_user, calendar):
    result = await contact_import_service.import_contacts(
        db,
        test_user.id,
        START,
        NOW,
        skip_duplicates=False,
        update_existing=True,
        now=NOW,
        transport=calendar,
    )

    assert (result.imported, result.updated, result.skipped) == (2, 1, 0)
    known = _contact(db, "known@co.com")
    assert known.first_name == "Known"
    assert known.company == "Co"
    assert known.last_contact_at == datetime(2026, 9, 10, 9, tzinfo=timezone.utc)
    assert _contact(db, "jane.smyth@acme.com").last_name == "Smyth"


@pytest.mark.asyncio
async def test_import_uses_latest_past_meeting_for_last_contact(
    db, test_user, make_integration, mock_transport
):
    make_integration()
    db.add(Contact(user_id=test_user.id, email="known@co.com", first_name="Known"))
    db.commit()
    events = [
        {
            "id": event_id,
            "start": {"dateTime": start},
            "attendees": [
                {"email": "pat@acme.com", "responseStatus": "accepted"},
                {"email": "known@co.com", "responseStatus": "accepted"},
            ],
        }
        for event_id, start in (
            ("p1", "2026-09-01T09:00:00Z"),
            ("p2", "2026-09-25T09:00:00Z"),
            ("f3", "2026-10-10T09:00:00Z"),
        )
    ]
    transport = mock_transport(lambda request: httpx.Response(200, json={"items": events}))

    result = await contact_import_service.import_contacts(
        db,
        test_user.id,
        START,
        NOW + timedelta(days=30),
        update_existing=True,
        now=NOW,
        transport=transport,
    )

    assert (result.imported, result.updated) == (1, 1)
    expected = datetime(2026, 9, 25, 9, tzinfo=timezone.utc)
    assert _contact(db, "pat@acme.com").last_contact_at == expected
    assert _contact(db, "known@co.com").last_contact_at == expected


@pytest.mark.asyncio
async def test_import_only_selected_emails(db, test_user, calendar):
    result = await contact_import_service.import_contacts(
        db,
        test_user.id,
        START,
        NOW,
        selected_emails=[" BOB@other.org "],
        skip_duplicates=False,
        now=NOW,
        transport=calendar,
    )

    assert (result.imported, result.skipped) == (1, 0)
    assert _contact(db, "jane.smyth@acme.com") is None


@pytest.mark.asyncio
async def test_import_counts_failures_and_continues(db, test_user, calendar, monkeypatch):
    original = contact_import_service._create_contact

    def flaky_create(db, user_id, attendee):
        if attendee.email == "bob@other.org":
            raise RuntimeError("boom")
        return original(db, user_id, attendee)

    monkeypatch.setattr(contact_import_service, "_create_contact", flaky_create)

    result = await contact_import_service.import_contacts(
        db, test_user.id, START, NOW, skip_duplicates=False, now=NOW, transport=calendar
    )

    assert (result.imported, result.failed) == (1, 1)
    assert result.errors == ["bob@other.org: RuntimeError"]
    assert _contact(db, "jane.smyth@acme.com") is not None


@pytest.mark.asyncio
async def test_import_rejects_inverted_window(db, test_user, calendar):
    with pytest.raises(ValueError):
        await contact_import_service.preview_import(db, test_user.id, NOW, START, transport=calendar)
