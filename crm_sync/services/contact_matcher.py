"""Participant to contact resolution.

Matching is one batched, case-insensitive lookup per call; contacts are only
created for material participants that carry an email address.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Sequence
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from crm_sync.db.enums import MATERIAL_RESPONSE_STATUSES, InteractionType
from crm_sync.db.models import Contact
from crm_sync.schemas.contact_import import AggregatedAttendee
from crm_sync.schemas.sync import ExternalItem, Participant
from crm_sync.utils.normalization import extract_email_domain, normalize_email

logger = logging.getLogger(__name__)

UNKNOWN_FIRST_NAME = "Unknown"

WEBMAIL_DOMAINS = frozenset(
    {
        "gmail.com",
        "googlemail.com",
        "yahoo.com",
        "outlook.com",
        "hotmail.com",
        "live.com",
        "msn.com",
        "aol.com",
        "icloud.com",
        "me.com",
        "mac.com",
        "mail.com",
        "gmx.com",
        "protonmail.com",
        "proton.me",
    }
)

_LOCAL_PART_SEPARATORS = re.compile(r"[._\-]+")


@dataclass
class ParsedName:
    first_name: str
    last_name: str | None = None


@dataclass
class ContactMatch:
    participant: Participant
    email: str
    contact: Contact
    created: bool = False


@dataclass(frozen=True)
class ParticipantFilter:
    """Who counts as material for contact side effects."""

    self_emails: frozenset[str] = frozenset()
    excluded_emails: frozenset[str] = frozenset()
    excluded_domains: frozenset[str] = frozenset()

    @classmethod
    def build(
        cls,
        *,
        self_emails: Iterable[str | None] = (),
        excluded_emails: Iterable[str] = (),
        excluded_domains: Iterable[str] = (),
    ) -> "ParticipantFilter":
        return cls(
            self_emails=frozenset(e for e in (normalize_email(v) for v in self_emails) if e),
            excluded_emails=frozenset(e for e in (normalize_email(v) for v in excluded_emails) if e),
            excluded_domains=frozenset(d.strip().lower().lstrip("@") for d in excluded_domains if d),
        )

    def is_material(self, participant: Participant, interaction_type: InteractionType) -> bool:
        email = normalize_email(participant.email)
        if not email:
            return False
        if participant.is_self or email in self.self_emails:
            return False
        if email in self.excluded_emails or extract_email_domain(email) in self.excluded_domains:
            return False
        if interaction_type == InteractionType.MEETING:
            if participant.is_organizer:
                return False
            return participant.response_status in MATERIAL_RESPONSE_STATUSES
        return True


def _capitalize(token: str) -> str:
    return token[:1].upper() + token[1:].lower()


def parse_name(display_name: str | None, email: str | None = None) -> ParsedName:
    """
    Split a display name into first and last name.

    Falls back to the email local part (``jane.doe`` -> Jane Doe) and finally
    to the ``Unknown`` sentinel. Never raises.
    """
    candidate = (display_name or "").strip().strip('"').strip()
    if candidate and "@" not in candidate:
        tokens = candidate.split()
        if tokens:
            return ParsedName(
                first_name=tokens[0],
                last_name=" ".join(tokens[1:]) or None,
            )

    source = candidate if "@" in candidate else (email or "")
    local_part = source.split("@", 1)[0].strip()
    tokens = [t for t in _LOCAL_PART_SEPARATORS.split(local_part) if t]
    if not tokens:
        return ParsedName(first_name=UNKNOWN_FIRST_NAME)
    return ParsedName(
        first_name=_capitalize(tokens[0]),
        last_name=" ".join(_capitalize(t) for t in tokens[1:]) or None,
    )


def infer_company(email: str | None) -> str | None:
    """Company label from the email domain, None for public webmail."""
    domain = extract_email_domain(email)
    if not domain or domain in WEBMAIL_DOMAINS:
        return None
    label = domain.split(".", 1)[0]
    return _capitalize(label) if label else None


def find_contacts_by_email(
    db: Session,
    user_id: UUID,
    emails: Iterable[str],
) -> dict[str, Contact]:
    """One case-insensitive IN query; returns lowercased email -> contact."""
    normalized = sorted({e for e in (normalize_email(v) for v in emails) if e})
    if not normalized:
        return {}
    contacts = (
        db.query(Contact)
        .filter(
            Contact.user_id == user_id,
            func.lower(Contact.email).in_(normalized),
        )
        .order_by(Contact.created_at)
        .all()
    )
    found: dict[str, Contact] = {}
    for contact in contacts:
        key = normalize_email(contact.email)
        if key and key not in found:
            found[key] = contact
    return found


def create_from_participant(
    db: Session,
    user_id: UUID,
    participant: Participant,
    *,
    source: str | None = None,
) -> Contact:
    """Create (flush, not commit) a contact for a participant with an email."""
    email = normalize_email(participant.email)
    if not email:
        raise ValueError("Participant has no email")
    name = parse_name(participant.display_name, email)
    contact = Contact(
        user_id=user_id,
        email=email,
        first_name=name.first_name,
        last_name=name.last_name,
        company=infer_company(email),
        source=source,
    )
    db.add(contact)
    db.flush()
    return contact


def match_participants(
    db: Session,
    user_id: UUID,
    participants: Sequence[Participant],
    *,
    create_missing: bool = True,
    source: str | None = None,
) -> list[ContactMatch]:
    """
    Resolve participants to contacts with a single lookup.

    Participants without an email are dropped. Repeated emails resolve to the
    same contact. Unknown emails create contacts when ``create_missing``.
    """
    by_email: dict[str, Participant] = {}
    for participant in participants:
        email = normalize_email(participant.email)
        if email and email not in by_email:
            by_email[email] = participant

    existing = find_contacts_by_email(db, user_id, by_email.keys())
    matches: list[ContactMatch] = []
    for email, participant in by_email.items():
        contact = existing.get(email)
        if contact is not None:
            matches.append(ContactMatch(participant=participant, email=email, contact=contact))
        elif create_missing:
            contact = create_from_participant(db, user_id, participant, source=source)
            existing[email] = contact
            matches.append(
                ContactMatch(participant=participant, email=email, contact=contact, created=True)
            )
    return matches


def aggregate_attendees(
    events: Iterable[ExternalItem],
    participant_filter: ParticipantFilter | None = None,
    now: datetime | None = None,
) -> list[AggregatedAttendee]:
    """
    Collapse material attendees across events by lowercase email, tracking
    meeting count, first/last meeting dates and the latest meeting at or
    before ``now``. The first non-empty display name seen wins.
    """
    participant_filter = participant_filter or ParticipantFilter()
    now = now or datetime.now(timezone.utc)
    aggregated: dict[str, dict] = {}
    for event in events:
        if event.deleted:
            continue
        occurred: datetime = event.occurred_at
        past = occurred if occurred <= now else None
        seen_in_event: set[str] = set()
        for participant in event.participants:
            if not participant_filter.is_material(participant, InteractionType.MEETING):
                continue
            email = normalize_email(participant.email)
            if email in seen_in_event:
                continue
            seen_in_event.add(email)
            entry = aggregated.get(email)
            if entry is None:
                aggregated[email] = {
                    "email": email,
                    "display_name": participant.display_name or None,
                    "meeting_count": 1,
                    "first_meeting_date": occurred,
                    "last_meeting_date": occurred,
                    "last_past_meeting_date": past,
                }
                continue
            entry["meeting_count"] += 1
            if not entry["display_name"] and participant.display_name:
                entry["display_name"] = participant.display_name
            entry["first_meeting_date"] = min(entry["first_meeting_date"], occurred)
            entry["last_meeting_date"] = max(entry["last_meeting_date"], occurred)
            if past is not None and (
                entry["last_past_meeting_date"] is None or entry["last_past_meeting_date"] < past
            ):
                entry["last_past_meeting_date"] = past

    attendees = []
    for entry in aggregated.values():
        name = parse_name(entry["display_name"], entry["email"])
        attendees.append(
            AggregatedAttendee(
                first_name=name.first_name,
                last_name=name.last_name,
                company=infer_company(entry["email"]),
                **entry,
            )
        )
    attendees.sort(key=lambda a: (-a.meeting_count, a.email))
    return attendees
