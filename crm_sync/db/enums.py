"""Enum definitions for sync engine constants."""

from enum import Enum


class IntegrationType(str, Enum):
    """Connected provider account kinds. At most one per user and type."""
    CALENDAR_GOOGLE = "calendar_google"
    CALENDAR_OUTLOOK = "calendar_outlook"
    MAIL_GMAIL = "mail_gmail"
    MAIL_OUTLOOK = "mail_outlook"

    @property
    def is_calendar(self) -> bool:
        return self in (IntegrationType.CALENDAR_GOOGLE, IntegrationType.CALENDAR_OUTLOOK)

    @property
    def oauth_provider(self) -> "OAuthProvider":
        if self in (IntegrationType.CALENDAR_GOOGLE, IntegrationType.MAIL_GMAIL):
            return OAuthProvider.GOOGLE
        return OAuthProvider.MICROSOFT


class OAuthProvider(str, Enum):
    GOOGLE = "google"
    MICROSOFT = "microsoft"


class SyncPhase(str, Enum):
    """
    Per-user sync domain lifecycle.

    DISABLED -> FIRST_SYNC -> INCREMENTAL
    INCREMENTAL -> FULL_SYNC_FALLBACK -> INCREMENTAL
    any -> DISABLED
    """
    DISABLED = "disabled"
    FIRST_SYNC = "first_sync"
    INCREMENTAL = "incremental"
    FULL_SYNC_FALLBACK = "full_sync_fallback"


class SyncMode(str, Enum):
    INCREMENTAL = "incremental"
    FULL = "full"


class InteractionType(str, Enum):
    MEETING = "meeting"
    EMAIL = "email"


class ParticipantRole(str, Enum):
    ORGANIZER = "organizer"
    ATTENDEE = "attendee"
    SENDER = "from"
    TO = "to"
    CC = "cc"


class ResponseStatus(str, Enum):
    ACCEPTED = "accepted"
    TENTATIVE = "tentative"
    DECLINED = "declined"
    NEEDS_ACTION = "needsAction"


MATERIAL_RESPONSE_STATUSES = frozenset({ResponseStatus.ACCEPTED.value, ResponseStatus.TENTATIVE.value})


class JobType(str, Enum):
    PROVIDER_SYNC = "provider_sync"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class NotificationType(str, Enum):
    SYNC_COMPLETED = "sync_completed"
    SYNC_FAILED = "sync_failed"
    RECONNECT_REQUIRED = "reconnect_required"


class ContactSource(str, Enum):
    CALENDAR = "calendar"
    EMAIL = "email"
    CALENDAR_IMPORT = "calendar_import"
