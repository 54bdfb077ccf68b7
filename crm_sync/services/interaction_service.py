"""Interaction persistence: natural-key upserts, participant links, last contact."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Sequence
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from crm_sync.core.config import settings
from crm_sync.db.enums import InteractionType
from crm_sync.db.models import Contact, Interaction, InteractionParticipant
from crm_sync.schemas.sync import ExternalItem
from crm_sync.services.contact_matcher import ContactMatch

logger = logging.getLogger(__name__)


def get_interaction_by_external_id(
    db: Session,
    user_id: UUID,
    external_id: str,
    external_source: str,
) -> Interaction | None:
    return (
        db.query(Interaction)
        .filter(
            Interaction.user_id == user_id,
            Interaction.external_id == external_id,
            Interaction.external_source == external_source,
        )
        .first()
    )


def _item_body(item: ExternalItem) -> str | None:
    if item.body and item.interaction_type == InteractionType.EMAIL:
        return item.body[: settings.MAIL_BODY_MAX_CHARS]
    return item.body


def upsert_interaction(
    db: Session,
    user_id: UUID,
    item: ExternalItem,
    matches: Sequence[ContactMatch] = (),
) -> tuple[Interaction, bool]:
    """
    Insert or update the interaction keyed by (user, external id, source).

    Only mutable fields are rewritten on update; ``notes`` added by the user
    are left alone. Participant links are additive. Returns
    ``(interaction, created)``; the caller commits.
    """
    interaction = get_interaction_by_external_id(
        db, user_id, item.external_id, item.external_source
    )
    created = interaction is None
    if created:
        interaction = Interaction(
            user_id=user_id,
            external_id=item.external_id,
            external_source=item.external_source,
            interaction_type=item.interaction_type.value,
        )
        db.add(interaction)

    interaction.subject = item.subject
    interaction.body = _item_body(item)
    interaction.location = item.location
    interaction.occurred_at = item.occurred_at
    interaction.ends_at = item.ends_at
    interaction.item_metadata = dict(item.metadata)

    linked = {link.contact_id for link in interaction.participants}
    for match in matches:
        if match.contact.id in linked:
            continue
        linked.add(match.contact.id)
        interaction.participants.append(
            InteractionParticipant(
                contact_id=match.contact.id,
                role=match.participant.role.value,
                response_status=match.participant.response_status,
            )
        )
    db.flush()
    return interaction, created


def mark_cancelled(db: Session, user_id: UUID, item: ExternalItem) -> Interaction | None:
    """Flag a stored interaction whose source item was cancelled or removed."""
    interaction = get_interaction_by_external_id(
        db, user_id, item.external_id, item.external_source
    )
    if interaction is None:
        return None
    metadata = dict(interaction.item_metadata or {})
    metadata["cancelled"] = True
    interaction.item_metadata = metadata
    db.flush()
    return interaction


def advance_last_contact(
    db: Session,
    contact_ids: Iterable[UUID],
    occurred_at: datetime,
) -> int:
    """
    Move ``last_contact_at`` forward to ``occurred_at`` where it is older or
    unset. Never moves it backwards. Returns the number of rows changed.
    """
    ids = list({cid for cid in contact_ids})
    if not ids:
        return 0
    updated = (
        db.query(Contact)
        .filter(
            Contact.id.in_(ids),
            or_(Contact.last_contact_at.is_(None), Contact.last_contact_at < occurred_at),
        )
        .update({Contact.last_contact_at: occurred_at}, synchronize_session="fetch")
    )
    if updated:
        logger.debug("Advanced last contact for %s contacts", updated)
    return updated


def add_meeting_notes(
    db: Session,
    user_id: UUID,
    interaction_id: UUID,
    notes: str,
    *,
    append: bool = False,
) -> Interaction:
    """Attach free-text notes to a meeting interaction owned by the user."""
    interaction = (
        db.query(Interaction)
        .filter(Interaction.id == interaction_id, Interaction.user_id == user_id)
        .first()
    )
    if interaction is None:
        raise LookupError("Interaction not found")
    if interaction.interaction_type != InteractionType.MEETING.value:
        raise ValueError("Notes can only be added to meetings")

    notes = notes.strip()
    if append and interaction.notes:
        interaction.notes = f"{interaction.notes}\n\n{notes}"
    else:
        interaction.notes = notes
    db.commit()
    db.refresh(interaction)
    return interaction


def count_interactions(db: Session, user_id: UUID, external_source: str) -> int:
    return (
        db.query(Interaction)
        .filter(Interaction.user_id == user_id, Interaction.external_source == external_source)
        .count()
    )
