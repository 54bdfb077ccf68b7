"""
Notification Service - in-app sync notifications.

Notifications are fire-and-forget: a failure here is logged and never
changes the outcome of the sync that triggered it.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from crm_sync.db.enums import IntegrationType, NotificationType
from crm_sync.db.models import Notification

logger = logging.getLogger(__name__)

PROVIDER_LABELS = {
    IntegrationType.CALENDAR_GOOGLE.value: "Google Calendar",
    IntegrationType.CALENDAR_OUTLOOK.value: "Outlook Calendar",
    IntegrationType.MAIL_GMAIL.value: "Gmail",
    IntegrationType.MAIL_OUTLOOK.value: "Outlook Mail",
}


def create_notification(
    db: Session,
    user_id: UUID,
    type: NotificationType,
    title: str,
    body: Optional[str] = None,
    entity_type: Optional[str] = None,
    dedupe_key: Optional[str] = None,
) -> Optional[Notification]:
    """
    Create a notification.

    Dedupes by dedupe_key + user_id within 1 hour window.
    """
    if dedupe_key:
        one_hour_ago = datetime.now(timezone.utc) - timedelta(hours=1)
        existing = db.query(Notification).filter(
            Notification.dedupe_key == dedupe_key,
            Notification.user_id == user_id,
            Notification.created_at > one_hour_ago,
        ).first()
        if existing:
            return None

    notification = Notification(
        user_id=user_id,
        type=type.value,
        title=title,
        body=body,
        entity_type=entity_type,
        dedupe_key=dedupe_key,
    )
    db.add(notification)
    db.commit()
    db.refresh(notification)
    return notification


def _safe_notify(db: Session, **kwargs) -> Optional[Notification]:
    try:
        return create_notification(db, **kwargs)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to record notification type=%s", kwargs.get("type"))
        return None


def notify_sync_completed(
    db: Session,
    user_id: UUID,
    integration_type: str,
    *,
    added: int,
    updated: int,
) -> Optional[Notification]:
    """Only noteworthy passes (something new) produce a notification."""
    if not added:
        return None
    label = PROVIDER_LABELS.get(integration_type, integration_type)
    return _safe_notify(
        db,
        user_id=user_id,
        type=NotificationType.SYNC_COMPLETED,
        title=f"{label} sync complete",
        body=f"{added} new and {updated} updated interactions imported.",
        entity_type=integration_type,
    )


def notify_sync_failed(
    db: Session,
    user_id: UUID,
    integration_type: str,
    *,
    reason: str,
) -> Optional[Notification]:
    """``reason`` must already be user-safe (no tokens, no provider bodies)."""
    label = PROVIDER_LABELS.get(integration_type, integration_type)
    return _safe_notify(
        db,
        user_id=user_id,
        type=NotificationType.SYNC_FAILED,
        title=f"{label} sync failed",
        body=reason,
        entity_type=integration_type,
        dedupe_key=f"sync_failed:{integration_type}:{user_id}",
    )


def notify_reconnect_required(
    db: Session,
    user_id: UUID,
    integration_type: str,
) -> Optional[Notification]:
    label = PROVIDER_LABELS.get(integration_type, integration_type)
    return _safe_notify(
        db,
        user_id=user_id,
        type=NotificationType.RECONNECT_REQUIRED,
        title=f"Reconnect {label}",
        body=f"Access to {label} has expired. Reconnect the account to resume syncing.",
        entity_type=integration_type,
        dedupe_key=f"reconnect_required:{integration_type}:{user_id}",
    )
