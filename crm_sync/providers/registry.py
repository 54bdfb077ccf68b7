"""Provider client registry keyed by integration type."""

from __future__ import annotations

from typing import Mapping

import httpx

from crm_sync.core.backoff import BackoffPolicy
from crm_sync.db.enums import IntegrationType
from crm_sync.providers.base import ProviderClient
from crm_sync.providers.gmail import GmailClient
from crm_sync.providers.google_calendar import GoogleCalendarClient
from crm_sync.providers.outlook_calendar import OutlookCalendarClient
from crm_sync.providers.outlook_mail import OutlookMailClient

PROVIDER_CLIENTS: Mapping[str, type[ProviderClient]] = {
    IntegrationType.CALENDAR_GOOGLE.value: GoogleCalendarClient,
    IntegrationType.CALENDAR_OUTLOOK.value: OutlookCalendarClient,
    IntegrationType.MAIL_GMAIL.value: GmailClient,
    IntegrationType.MAIL_OUTLOOK.value: OutlookMailClient,
}


def resolve_provider_client(integration_type: str | IntegrationType) -> type[ProviderClient]:
    key = integration_type.value if isinstance(integration_type, IntegrationType) else integration_type
    client_cls = PROVIDER_CLIENTS.get(key)
    if client_cls is None:
        raise ValueError(f"Unsupported integration type: {key}")
    return client_cls


def build_provider_client(
    integration_type: str | IntegrationType,
    access_token: str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
    policy: BackoffPolicy | None = None,
) -> ProviderClient:
    return resolve_provider_client(integration_type)(access_token, transport=transport, policy=policy)
