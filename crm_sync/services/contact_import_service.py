"""Contact import from calendar attendees.

Preview and import share one pipeline: fetch events in a window, aggregate
material attendees by email, then split them into exact duplicates (email
already a contact), fuzzy duplicates and genuinely new people.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from crm_sync.core.structured_logging import mask_email
from crm_sync.db.enums import ContactSource
from crm_sync.db.models import Contact
from crm_sync.schemas.contact_import import (
    AggregatedAttendee,
    ExactDuplicate,
    FuzzyDuplicate,
    ImportPreview,
    ImportPreviewSummary,
    ImportResult,
)
from crm_sync.services import contact_matcher, deduplication_service, integration_service
from crm_sync.utils.normalization import normalize_email

logger = logging.getLogger(__name__)


@dataclass
class AttendeeClassification:
    total_events: int = 0
    attendees: list[AggregatedAttendee] = field(default_factory=list)
    new_contacts: list[AggregatedAttendee] = field(default_factory=list)
    exact: list[tuple[AggregatedAttendee, Contact]] = field(default_factory=list)
    fuzzy: list[tuple[AggregatedAttendee, deduplication_service.DuplicateMatch]] = field(
        default_factory=list
    )


def _list_user_contacts(db: Session, user_id: UUID) -> list[Contact]:
    return db.query(Contact).filter(Contact.user_id == user_id).all()


def classify_attendees(
    db: Session,
    user_id: UUID,
    attendees: list[AggregatedAttendee],
) -> AttendeeClassification:
    result = AttendeeClassification(attendees=attendees)
    existing_by_email = contact_matcher.find_contacts_by_email(
        db, user_id, (a.email for a in attendees)
    )
    candidates = _list_user_contacts(db, user_id)
    for attendee in attendees:
        contact = existing_by_email.get(attendee.email)
        if contact is not None:
            result.exact.append((attendee, contact))
            continue
        match = deduplication_service.best_match(attendee, candidates)
        if match is not None:
            result.fuzzy.append((attendee, match))
        else:
            result.new_contacts.append(attendee)
    return result


async def _collect(
    db: Session,
    user_id: UUID,
    start: datetime,
    end: datetime,
    transport: httpx.AsyncBaseTransport | None,
    now: datetime | None = None,
) -> AttendeeClassification:
    if start >= end:
        raise ValueError("start must be before end")
    items, participant_filter = await integration_service.fetch_calendar_items(
        db, user_id, start, end, transport=transport
    )
    events = [item for item in items if not item.deleted]
    attendees = contact_matcher.aggregate_attendees(events, participant_filter, now=now)
    classification = classify_attendees(db, user_id, attendees)
    classification.total_events = len(events)
    return classification


async def preview_import(
    db: Session,
    user_id: UUID,
    start: datetime,
    end: datetime,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ImportPreview:
    """Show what an import of the window would create, without writing."""
    classification = await _collect(db, user_id, start, end, transport)
    return ImportPreview(
        summary=ImportPreviewSummary(
            total_events=classification.total_events,
            total_attendees=len(classification.attendees),
            new_contacts=len(classification.new_contacts),
            exact_duplicates=len(classification.exact),
            fuzzy_duplicates=len(classification.fuzzy),
        ),
        new_contacts=classification.new_contacts,
        exact_duplicates=[
            ExactDuplicate(attendee=attendee, contact_id=contact.id)
            for attendee, contact in classification.exact
        ],
        fuzzy_duplicates=[
            FuzzyDuplicate(
                attendee=attendee,
                contact_id=match.existing.id,
                score=match.similarity,
                match_type=match.match_type.value,
                matched_fields=match.matched_fields,
            )
            for attendee, match in classification.fuzzy
        ],
    )


def _create_contact(db: Session, user_id: UUID, attendee: AggregatedAttendee) -> Contact:
    contact = Contact(
        user_id=user_id,
        email=attendee.email,
        first_name=attendee.first_name,
        last_name=attendee.last_name,
        company=attendee.company,
        source=ContactSource.CALENDAR_IMPORT.value,
        last_contact_at=attendee.last_past_meeting_date,
    )
    db.add(contact)
    db.flush()
    return contact


def _update_contact(contact: Contact, attendee: AggregatedAttendee) -> None:
    """Fill blanks and advance last contact; never overwrites user data."""
    if not contact.last_name and attendee.last_name:
        contact.last_name = attendee.last_name
    if not contact.company and attendee.company:
        contact.company = attendee.company
    met_at = attendee.last_past_meeting_date
    if met_at and (contact.last_contact_at is None or contact.last_contact_at < met_at):
        contact.last_contact_at = met_at


def _selected(attendees: Iterable[AggregatedAttendee], selected_emails: list[str] | None) -> list[AggregatedAttendee]:
    if selected_emails is None:
        return list(attendees)
    wanted = {e for e in (normalize_email(v) for v in selected_emails) if e}
    return [a for a in attendees if a.email in wanted]


async def import_contacts(
    db: Session,
    user_id: UUID,
    start: datetime,
    end: datetime,
    *,
    selected_emails: list[str] | None = None,
    skip_duplicates: bool = True,
    update_existing: bool = False,
    now: datetime | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ImportResult:
    """
    Create contacts for calendar attendees in the window.

    Exact duplicates are updated when ``update_existing`` and skipped
    otherwise. Fuzzy duplicates are skipped when ``skip_duplicates``. A
    failure on one attendee is recorded and the rest continue.
    """
    now = now or datetime.now(timezone.utc)
    classification = await _collect(db, user_id, start, end, transport, now=now)
    exact = {attendee.email: contact for attendee, contact in classification.exact}
    fuzzy = {attendee.email for attendee, _ in classification.fuzzy}
    result = ImportResult()

    for attendee in _selected(classification.attendees, selected_emails):
        try:
            contact = exact.get(attendee.email)
            if contact is not None:
                if update_existing:
                    _update_contact(contact, attendee)
                    db.commit()
                    result.updated += 1
                else:
                    result.skipped += 1
                continue
            if attendee.email in fuzzy and skip_duplicates:
                result.skipped += 1
                continue
            _create_contact(db, user_id, attendee)
            db.commit()
            result.imported += 1
        except Exception as exc:
            db.rollback()
            logger.exception("Failed to import attendee %s", mask_email(attendee.email))
            result.failed += 1
            result.errors.append(f"{attendee.email}: {type(exc).__name__}")

    logger.info(
        "Calendar import for user=%s imported=%s updated=%s skipped=%s failed=%s",
        user_id,
        result.imported,
        result.updated,
        result.skipped,
        result.failed,
    )
    return result
