"""OAuth CSRF state store (Redis with TTL, database table fallback).

States are opaque, single use and expire after OAUTH_STATE_TTL_SECONDS.
"""

from __future__ import annotations

import json
import logging
import secrets
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy.orm import Session

from crm_sync.core.config import settings
from crm_sync.core.errors import InvalidOAuthStateError
from crm_sync.core.redis_client import get_async_redis_client
from crm_sync.db.models import OAuthState

logger = logging.getLogger(__name__)

REDIS_KEY_PREFIX = "oauth_state:"


@dataclass
class PendingAuthorization:
    user_id: UUID
    integration_type: str
    code_verifier: str | None = None
    redirect_context: str | None = None


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


async def create_state(
    db: Session,
    *,
    user_id: UUID,
    integration_type: str,
    code_verifier: str | None = None,
    redirect_context: str | None = None,
    now: datetime | None = None,
) -> str:
    """Persist a new pending authorization and return its opaque state value."""
    state = secrets.token_urlsafe(32)
    ttl = settings.OAUTH_STATE_TTL_SECONDS
    pending = PendingAuthorization(
        user_id=user_id,
        integration_type=integration_type,
        code_verifier=code_verifier,
        redirect_context=redirect_context,
    )

    redis = get_async_redis_client()
    if redis is not None:
        data = asdict(pending)
        data["user_id"] = str(user_id)
        await redis.set(f"{REDIS_KEY_PREFIX}{state}", json.dumps(data), ex=ttl)
        return state

    db.add(
        OAuthState(
            state=state,
            user_id=user_id,
            integration_type=integration_type,
            code_verifier=code_verifier,
            redirect_context=redirect_context,
            expires_at=(now or _now_utc()) + timedelta(seconds=ttl),
        )
    )
    db.commit()
    return state


async def consume_state(
    db: Session,
    state: str,
    *,
    now: datetime | None = None,
) -> PendingAuthorization:
    """
    Resolve and delete a state value.

    Raises InvalidOAuthStateError if it is unknown, expired or already used.
    """
    if not state:
        raise InvalidOAuthStateError("Missing OAuth state")

    redis = get_async_redis_client()
    if redis is not None:
        raw = await redis.getdel(f"{REDIS_KEY_PREFIX}{state}")
        if not raw:
            raise InvalidOAuthStateError("Invalid or expired OAuth state")
        data = json.loads(raw)
        data["user_id"] = UUID(data["user_id"])
        return PendingAuthorization(**data)

    row = db.query(OAuthState).filter(OAuthState.state == state).first()
    if row is None:
        raise InvalidOAuthStateError("Invalid or expired OAuth state")
    pending = PendingAuthorization(
        user_id=row.user_id,
        integration_type=row.integration_type,
        code_verifier=row.code_verifier,
        redirect_context=row.redirect_context,
    )
    expired = row.expires_at <= (now or _now_utc())

    deleted = (
        db.query(OAuthState)
        .filter(OAuthState.state == state)
        .delete(synchronize_session=False)
    )
    db.commit()
    if deleted == 0:
        raise InvalidOAuthStateError("OAuth state already used")
    if expired:
        raise InvalidOAuthStateError("Invalid or expired OAuth state")
    return pending


def purge_expired_states(db: Session, *, now: datetime | None = None) -> int:
    """Delete expired rows from the database fallback store."""
    deleted = (
        db.query(OAuthState)
        .filter(OAuthState.expires_at <= (now or _now_utc()))
        .delete(synchronize_session=False)
    )
    db.commit()
    if deleted:
        logger.info("Purged %s expired OAuth states", deleted)
    return deleted
