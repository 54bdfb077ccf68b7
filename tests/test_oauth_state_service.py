"""Tests for the OAuth CSRF state store (database fallback)."""

from datetime import datetime, timedelta, timezone

import pytest

from crm_sync.core.errors import InvalidOAuthStateError
from crm_sync.db.models import OAuthState
from crm_sync.services import oauth_state_service


@pytest.mark.asyncio
async def test_state_is_single_use(db, test_user):
    state = await oauth_state_service.create_state(
        db,
        user_id=test_user.id,
        integration_type="calendar_google",
        code_verifier="verifier",
        redirect_context="/settings/integrations",
    )

    pending = await oauth_state_service.consume_state(db, state)
    assert pending.user_id == test_user.id
    assert pending.integration_type == "calendar_google"
    assert pending.code_verifier == "verifier"
    assert pending.redirect_context == "/settings/integrations"

    with pytest.raises(InvalidOAuthStateError):
        await oauth_state_service.consume_state(db, state)


@pytest.mark.asyncio
async def test_expired_state_is_rejected_and_removed(db, test_user):
    created_at = datetime.now(timezone.utc) - timedelta(minutes=11)
    state = await oauth_state_service.create_state(
        db, user_id=test_user.id, integration_type="mail_gmail", now=created_at
    )

    with pytest.raises(InvalidOAuthStateError):
        await oauth_state_service.consume_state(db, state)

    assert db.query(OAuthState).count() == 0


@pytest.mark.asyncio
async def test_unknown_or_missing_state_is_rejected(db):
    with pytest.raises(InvalidOAuthStateError):
        await oauth_state_service.consume_state(db, "forged")
    with pytest.raises(InvalidOAuthStateError):
        await oauth_state_service.consume_state(db, "")


@pytest.mark.asyncio
async def test_purge_expired_states(db, test_user):
    now = datetime.now(timezone.utc)
    await oauth_state_service.create_state(
        db, user_id=test_user.id, integration_type="mail_gmail", now=now - timedelta(hours=1)
    )
    live = await oauth_state_service.create_state(
        db, user_id=test_user.id, integration_type="mail_gmail", now=now
    )

    assert oauth_state_service.purge_expired_states(db, now=now) == 1
    assert [row.state for row in db.query(OAuthState).all()] == [live]
