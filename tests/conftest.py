"""
Test configuration and fixtures.

Provides:
- In-memory SQLite schema, recreated for every test
- Database session and a seeded user
- Integration/sync-state factory with encrypted tokens
- httpx MockTransport helper for provider and OAuth endpoints
"""
import os
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Generator

# Settings are read at import time; configure before importing the package.
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["TOKEN_ENCRYPTION_KEY"] = "11" * 32
os.environ["REDIS_URL"] = ""
os.environ["GOOGLE_CLIENT_ID"] = "google-client-id"
os.environ["GOOGLE_CLIENT_SECRET"] = "google-client-secret"
os.environ["MICROSOFT_CLIENT_ID"] = "microsoft-client-id"
os.environ["MICROSOFT_CLIENT_SECRET"] = "microsoft-client-secret"

import httpx
import pytest
from sqlalchemy.orm import Session

from crm_sync.core.encryption import encrypt_token
from crm_sync.db.base import Base
from crm_sync.db.enums import IntegrationType, SyncPhase
from crm_sync.db.models import Integration, SyncState, User
from crm_sync.db.session import SessionLocal, engine


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def _schema() -> Generator[None, None, None]:
    """Fresh schema per test; the worker opens its own sessions on the same engine."""
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def db(_schema) -> Generator[Session, None, None]:
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()


@pytest.fixture(scope="function")
def test_user(db: Session) -> User:
    user = User(
        id=uuid.uuid4(),
        email=f"owner-{uuid.uuid4().hex[:8]}@example.com",
        display_name="Test Owner",
    )
    db.add(user)
    db.commit()
    return user


@pytest.fixture(scope="function")
def make_integration(db: Session, test_user: User) -> Callable[..., Integration]:
    """Create an active integration plus an enabled sync state."""

    def _make(
        integration_type: IntegrationType = IntegrationType.CALENDAR_GOOGLE,
        *,
        access_token: str = "access-token",
        refresh_token: str | None = "refresh-token",
        expires_in: timedelta | None = timedelta(hours=1),
        account_email: str = "me@example.com",
        cursors: dict | None = None,
        sync_enabled: bool = True,
        selected_source_ids: list[str] | None = None,
    ) -> Integration:
        integration = Integration(
            user_id=test_user.id,
            integration_type=integration_type.value,
            access_token_encrypted=encrypt_token(access_token),
            refresh_token_encrypted=encrypt_token(refresh_token) if refresh_token else None,
            token_expires_at=(
                datetime.now(timezone.utc) + expires_in if expires_in is not None else None
            ),
            account_email=account_email,
            is_active=True,
            provider_metadata={},
        )
        db.add(integration)
        cursors = cursors or {}
        if sync_enabled:
            phase = SyncPhase.INCREMENTAL if cursors else SyncPhase.FIRST_SYNC
        else:
            phase = SyncPhase.DISABLED
        db.add(
            SyncState(
                user_id=test_user.id,
                integration_type=integration_type.value,
                phase=phase.value,
                sync_enabled=sync_enabled,
                cursors=cursors,
                selected_source_ids=selected_source_ids or [],
                lookback_days=30,
                excluded_emails=[],
                excluded_domains=[],
            )
        )
        db.commit()
        return integration

    return _make


# =============================================================================
# HTTP Fixtures
# =============================================================================

class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request it served."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]) -> None:
        self.requests: list[httpx.Request] = []

        def _record(request: httpx.Request) -> httpx.Response:
            self.requests.append(request)
            return handler(request)

        super().__init__(_record)


@pytest.fixture
def mock_transport() -> Callable[..., RecordingTransport]:
    return RecordingTransport
