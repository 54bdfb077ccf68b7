"""Token vault: OAuth credential storage, refresh and revocation.

Tokens are encrypted with AES-256-GCM before they reach the database and are
never logged.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from urllib.parse import urlencode
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from crm_sync.core.backoff import BackoffPolicy
from crm_sync.core.config import settings
from crm_sync.core.encryption import decrypt_token, encrypt_token
from crm_sync.core.errors import AuthExpiredError, ConfigurationError, ProviderError
from crm_sync.db.enums import IntegrationType, OAuthProvider
from crm_sync.db.models import Integration
from crm_sync.services.http_service import request_with_retries

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
MICROSOFT_AUTHORITY = "https://login.microsoftonline.com"
MICROSOFT_ME_URL = "https://graph.microsoft.com/v1.0/me"

SCOPES: dict[IntegrationType, list[str]] = {
    IntegrationType.CALENDAR_GOOGLE: [
        "openid",
        "email",
        "https://www.googleapis.com/auth/calendar.readonly",
    ],
    IntegrationType.MAIL_GMAIL: [
        "openid",
        "email",
        "https://www.googleapis.com/auth/gmail.readonly",
    ],
    IntegrationType.CALENDAR_OUTLOOK: ["offline_access", "User.Read", "Calendars.Read"],
    IntegrationType.MAIL_OUTLOOK: ["offline_access", "User.Read", "Mail.Read"],
}

# Token endpoint errors that mean the grant is gone for good.
TERMINAL_GRANT_ERRORS = {"invalid_grant", "unauthorized_client", "invalid_client"}


@dataclass
class OAuthClientConfig:
    provider: OAuthProvider
    client_id: str
    client_secret: str
    redirect_uri: str
    auth_url: str
    token_url: str
    revoke_url: str | None


@dataclass
class TokenGrant:
    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    scope: str | None = None


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _microsoft_url(path: str) -> str:
    return f"{MICROSOFT_AUTHORITY}/{settings.MICROSOFT_TENANT}/oauth2/v2.0/{path}"


def get_client_config(integration_type: IntegrationType) -> OAuthClientConfig:
    """Resolve OAuth client credentials; raises if they are not configured."""
    if integration_type.oauth_provider == OAuthProvider.GOOGLE:
        if not settings.GOOGLE_CLIENT_ID or not settings.GOOGLE_CLIENT_SECRET:
            raise ConfigurationError("Google OAuth client credentials not configured")
        redirect_uri = (
            settings.GOOGLE_CALENDAR_REDIRECT_URI
            if integration_type.is_calendar
            else settings.GOOGLE_GMAIL_REDIRECT_URI
        )
        return OAuthClientConfig(
            provider=OAuthProvider.GOOGLE,
            client_id=settings.GOOGLE_CLIENT_ID,
            client_secret=settings.GOOGLE_CLIENT_SECRET,
            redirect_uri=redirect_uri,
            auth_url=GOOGLE_AUTH_URL,
            token_url=GOOGLE_TOKEN_URL,
            revoke_url=GOOGLE_REVOKE_URL,
        )

    if not settings.MICROSOFT_CLIENT_ID or not settings.MICROSOFT_CLIENT_SECRET:
        raise ConfigurationError("Microsoft OAuth client credentials not configured")
    redirect_uri = (
        settings.MICROSOFT_CALENDAR_REDIRECT_URI
        if integration_type.is_calendar
        else settings.MICROSOFT_MAIL_REDIRECT_URI
    )
    return OAuthClientConfig(
        provider=OAuthProvider.MICROSOFT,
        client_id=settings.MICROSOFT_CLIENT_ID,
        client_secret=settings.MICROSOFT_CLIENT_SECRET,
        redirect_uri=redirect_uri,
        auth_url=_microsoft_url("authorize"),
        token_url=_microsoft_url("token"),
        # Microsoft identity platform has no token revocation endpoint.
        revoke_url=None,
    )


def generate_pkce_pair() -> tuple[str, str]:
    """Return (code_verifier, S256 code_challenge)."""
    verifier = secrets.token_urlsafe(64)[:96]
    digest = hashlib.sha256(verifier.encode()).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode()
    return verifier, challenge


def build_authorization_url(
    integration_type: IntegrationType,
    *,
    state: str,
    code_challenge: str | None = None,
) -> str:
    config = get_client_config(integration_type)
    params = {
        "client_id": config.client_id,
        "redirect_uri": config.redirect_uri,
        "response_type": "code",
        "scope": " ".join(SCOPES[integration_type]),
        "state": state,
        "prompt": "consent",
    }
    if config.provider == OAuthProvider.GOOGLE:
        params["access_type"] = "offline"
        params["include_granted_scopes"] = "true"
    if code_challenge:
        params["code_challenge"] = code_challenge
        params["code_challenge_method"] = "S256"
    return f"{config.auth_url}?{urlencode(params)}"


async def _post_form(
    url: str,
    data: dict[str, str],
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.Response:
    async with httpx.AsyncClient(timeout=settings.PROVIDER_HTTP_TIMEOUT_SECONDS, transport=transport) as client:
        return await request_with_retries(
            lambda: client.post(url, data=data),
            policy=BackoffPolicy(max_attempts=settings.PROVIDER_MAX_ATTEMPTS),
        )


def _parse_grant(payload: dict[str, Any], previous_refresh_token: str | None = None) -> TokenGrant:
    access_token = payload.get("access_token")
    if not access_token:
        raise ProviderError("Token endpoint returned no access token", retryable=False)
    expires_in = payload.get("expires_in")
    return TokenGrant(
        access_token=access_token,
        refresh_token=payload.get("refresh_token") or previous_refresh_token,
        expires_in=int(expires_in) if expires_in is not None else None,
        scope=payload.get("scope"),
    )


def _raise_for_token_response(response: httpx.Response) -> None:
    if response.is_success:
        return
    error_code = ""
    try:
        error_code = (response.json() or {}).get("error", "")
    except ValueError:
        pass
    if response.status_code in (400, 401) and error_code in TERMINAL_GRANT_ERRORS:
        raise AuthExpiredError()
    raise ProviderError(
        f"Token endpoint returned {response.status_code}",
        retryable=response.status_code >= 500 or response.status_code == 429,
        status_code=response.status_code,
    )


async def exchange_code(
    integration_type: IntegrationType,
    code: str,
    *,
    code_verifier: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> TokenGrant:
    """Exchange an authorization code for tokens."""
    config = get_client_config(integration_type)
    data = {
        "client_id": config.client_id,
        "client_secret": config.client_secret,
        "code": code,
        "grant_type": "authorization_code",
        "redirect_uri": config.redirect_uri,
    }
    if code_verifier:
        data["code_verifier"] = code_verifier
    response = await _post_form(config.token_url, data, transport=transport)
    _raise_for_token_response(response)
    return _parse_grant(response.json())


async def fetch_account_email(
    integration_type: IntegrationType,
    access_token: str,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str | None:
    """Best-effort lookup of the connected mailbox address."""
    url = (
        GOOGLE_USERINFO_URL
        if integration_type.oauth_provider == OAuthProvider.GOOGLE
        else MICROSOFT_ME_URL
    )
    try:
        async with httpx.AsyncClient(timeout=settings.PROVIDER_HTTP_TIMEOUT_SECONDS, transport=transport) as client:
            response = await client.get(url, headers={"Authorization": f"Bearer {access_token}"})
    except httpx.RequestError as exc:
        logger.warning("Account lookup failed for %s: %s", integration_type.value, type(exc).__name__)
        return None
    if not response.is_success:
        logger.warning("Account lookup for %s returned %s", integration_type.value, response.status_code)
        return None
    payload = response.json()
    email = payload.get("email") or payload.get("mail") or payload.get("userPrincipalName")
    return email.lower() if email else None


# =============================================================================
# Integration persistence
# =============================================================================


def get_integration(
    db: Session,
    user_id: UUID,
    integration_type: IntegrationType | str,
    *,
    active_only: bool = True,
) -> Integration | None:
    key = integration_type.value if isinstance(integration_type, IntegrationType) else integration_type
    query = db.query(Integration).filter(
        Integration.user_id == user_id,
        Integration.integration_type == key,
    )
    if active_only:
        query = query.filter(Integration.is_active.is_(True))
    return query.first()


def save_integration(
    db: Session,
    user_id: UUID,
    integration_type: IntegrationType,
    grant: TokenGrant,
    *,
    account_email: str | None = None,
    now: datetime | None = None,
) -> Integration:
    """Create or update the single integration row for (user, type)."""
    now = now or _now_utc()
    expires_at = now + timedelta(seconds=grant.expires_in) if grant.expires_in else None
    integration = get_integration(db, user_id, integration_type, active_only=False)
    if integration:
        integration.access_token_encrypted = encrypt_token(grant.access_token)
        if grant.refresh_token:
            integration.refresh_token_encrypted = encrypt_token(grant.refresh_token)
        integration.token_expires_at = expires_at
        integration.is_active = True
        if account_email:
            integration.account_email = account_email
    else:
        integration = Integration(
            user_id=user_id,
            integration_type=integration_type.value,
            access_token_encrypted=encrypt_token(grant.access_token),
            refresh_token_encrypted=encrypt_token(grant.refresh_token) if grant.refresh_token else None,
            token_expires_at=expires_at,
            account_email=account_email,
            is_active=True,
            provider_metadata={},
        )
        db.add(integration)
    db.commit()
    db.refresh(integration)
    return integration


def delete_integration(db: Session, integration: Integration) -> None:
    """Delete the integration row only; synced records are left in place."""
    db.delete(integration)
    db.commit()


# =============================================================================
# Token lifecycle
# =============================================================================


def needs_refresh(integration: Integration, *, now: datetime | None = None) -> bool:
    """True when the access token is expired or inside the refresh margin."""
    if integration.token_expires_at is None:
        return False
    margin = timedelta(seconds=settings.TOKEN_REFRESH_MARGIN_SECONDS)
    return integration.token_expires_at <= (now or _now_utc()) + margin


async def refresh(
    db: Session,
    integration: Integration,
    *,
    now: datetime | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> TokenGrant:
    """
    Exchange the stored refresh token for a new access token and persist it.

    Raises AuthExpiredError when there is no refresh token or the grant was
    revoked; the integration is deactivated in that case.
    """
    if not integration.refresh_token_encrypted:
        _deactivate(db, integration)
        raise AuthExpiredError()

    integration_type = IntegrationType(integration.integration_type)
    config = get_client_config(integration_type)
    refresh_token = decrypt_token(integration.refresh_token_encrypted)
    data = {
        "client_id": config.client_id,
        "client_secret": config.client_secret,
        "refresh_token": refresh_token,
        "grant_type": "refresh_token",
    }
    if config.provider == OAuthProvider.MICROSOFT:
        data["scope"] = " ".join(SCOPES[integration_type])

    response = await _post_form(config.token_url, data, transport=transport)
    try:
        _raise_for_token_response(response)
    except AuthExpiredError:
        logger.warning(
            "Refresh grant rejected for user=%s type=%s",
            integration.user_id,
            integration.integration_type,
        )
        _deactivate(db, integration)
        raise

    grant = _parse_grant(response.json(), previous_refresh_token=refresh_token)
    now = now or _now_utc()
    integration.access_token_encrypted = encrypt_token(grant.access_token)
    if grant.refresh_token and grant.refresh_token != refresh_token:
        integration.refresh_token_encrypted = encrypt_token(grant.refresh_token)
    integration.token_expires_at = (
        now + timedelta(seconds=grant.expires_in) if grant.expires_in else None
    )
    db.commit()
    logger.info(
        "Refreshed access token for user=%s type=%s",
        integration.user_id,
        integration.integration_type,
    )
    return grant


async def get_valid_access_token(
    db: Session,
    integration: Integration,
    *,
    now: datetime | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> str:
    """Return a plaintext access token, refreshing first when needed."""
    if not integration.is_active:
        raise AuthExpiredError()
    if needs_refresh(integration, now=now):
        grant = await refresh(db, integration, now=now, transport=transport)
        return grant.access_token
    return decrypt_token(integration.access_token_encrypted)


async def revoke(
    token: str,
    provider: OAuthProvider,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> bool:
    """Best-effort token revocation. Never raises; returns False on failure."""
    if provider != OAuthProvider.GOOGLE:
        return False
    try:
        async with httpx.AsyncClient(timeout=settings.PROVIDER_HTTP_TIMEOUT_SECONDS, transport=transport) as client:
            response = await client.post(GOOGLE_REVOKE_URL, data={"token": token})
    except httpx.RequestError as exc:
        logger.warning("Token revocation failed: %s", type(exc).__name__)
        return False
    if not response.is_success:
        logger.warning("Token revocation returned %s", response.status_code)
        return False
    return True


def _deactivate(db: Session, integration: Integration) -> None:
    integration.is_active = False
    db.commit()
