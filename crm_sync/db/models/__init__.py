"""SQLAlchemy ORM models."""

from crm_sync.db.models.core import Contact, Interaction, InteractionParticipant, User
from crm_sync.db.models.integrations import Integration, OAuthState, SyncState
from crm_sync.db.models.jobs import Job, Notification

__all__ = [
    "Contact",
    "Integration",
    "Interaction",
    "InteractionParticipant",
    "Job",
    "Notification",
    "OAuthState",
    "SyncState",
    "User",
]
