"""Uniform provider contract and typed fetch results."""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Sequence

import httpx

from crm_sync.core.backoff import BackoffPolicy
from crm_sync.core.config import settings
from crm_sync.db.enums import IntegrationType
from crm_sync.schemas.sync import ExternalItem
from crm_sync.services.http_service import parse_retry_after

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


class FetchStatus(str, Enum):
    OK = "ok"
    CURSOR_EXPIRED = "cursor_expired"
    RETRYABLE = "retryable"
    AUTH_EXPIRED = "auth_expired"
    TERMINAL = "terminal"


@dataclass
class FetchPage:
    """One page of provider items plus continuation markers."""

    items: list[ExternalItem] = field(default_factory=list)
    next_page_token: str | None = None
    next_cursor: str | None = None
    # Items the provider listed but which could not be fetched or parsed.
    failed_ids: list[str] = field(default_factory=list)


@dataclass
class FetchResult:
    """Typed outcome of a single provider call."""

    status: FetchStatus
    page: FetchPage | None = None
    status_code: int | None = None
    error: str | None = None
    retry_after: float | None = None

    @property
    def ok(self) -> bool:
        return self.status == FetchStatus.OK

    @property
    def retryable(self) -> bool:
        return self.status == FetchStatus.RETRYABLE

    @classmethod
    def success(cls, page: FetchPage) -> "FetchResult":
        return cls(status=FetchStatus.OK, page=page)

    @classmethod
    def failure(
        cls,
        status: FetchStatus,
        error: str,
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> "FetchResult":
        return cls(status=status, error=error, status_code=status_code, retry_after=retry_after)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse provider ISO timestamps (``Z`` suffix, 7-digit fractions, date-only)."""
    if not value:
        return None
    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    value = _FRACTION_RE.sub(r"\1", value)
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class ProviderClient(ABC):
    """
    Provider fetch contract: full (time-bounded), incremental (cursor) and
    single item. Every method performs one HTTP round trip per page and
    returns a ``FetchResult``; retrying is the caller's concern.
    """

    integration_type: IntegrationType
    external_source: str
    display_name: str
    default_source_ids: Sequence[str] = ("primary",)
    cursor_expired_statuses: frozenset[int] = frozenset({410})

    def __init__(
        self,
        access_token: str,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
        policy: BackoffPolicy | None = None,
    ) -> None:
        self._access_token = access_token
        self._transport = transport
        self._timeout = timeout or settings.PROVIDER_HTTP_TIMEOUT_SECONDS
        self.policy = policy or BackoffPolicy(max_attempts=settings.PROVIDER_MAX_ATTEMPTS)

    def resolve_source_ids(self, selected: Sequence[str] | None) -> list[str]:
        return list(selected) if selected else list(self.default_source_ids)

    @abstractmethod
    async def fetch_full(
        self,
        start: datetime,
        end: datetime,
        *,
        source_id: str,
        page_token: str | None = None,
    ) -> FetchResult:
        """List items in [start, end]; the final page may carry a fresh cursor."""

    @abstractmethod
    async def fetch_incremental(
        self,
        cursor: str,
        *,
        source_id: str,
        page_token: str | None = None,
    ) -> FetchResult:
        """List items changed since ``cursor``."""

    @abstractmethod
    async def fetch_by_id(self, external_id: str, *, source_id: str) -> FetchResult:
        """Fetch a single item; the page holds at most one item."""

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self._access_token}"}
        if extra:
            headers.update(extra)
        return headers

    def classify_failure(self, response: httpx.Response, *, cursor_call: bool) -> FetchResult:
        """Map a non-2xx response onto a typed result without leaking its body."""
        code = response.status_code
        if cursor_call and code in self.cursor_expired_statuses:
            return FetchResult.failure(
                FetchStatus.CURSOR_EXPIRED, f"{self.display_name} cursor expired", status_code=code
            )
        if code == 401:
            return FetchResult.failure(
                FetchStatus.AUTH_EXPIRED, f"{self.display_name} rejected credentials", status_code=code
            )
        if code in RETRYABLE_STATUSES:
            return FetchResult.failure(
                FetchStatus.RETRYABLE,
                f"{self.display_name} returned {code}",
                status_code=code,
                retry_after=parse_retry_after(response),
            )
        return FetchResult.failure(
            FetchStatus.TERMINAL, f"{self.display_name} returned {code}", status_code=code
        )

    async def _get_json(
        self,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        cursor_call: bool = False,
    ) -> tuple[FetchResult | None, dict | None]:
        """
        Issue one GET. Returns ``(None, payload)`` on success or
        ``(failure, None)`` otherwise.
        """
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.get(url, params=params, headers=self._headers(headers))
        except httpx.TransportError as exc:
            logger.warning("%s request failed: %s", self.display_name, type(exc).__name__)
            return (
                FetchResult.failure(
                    FetchStatus.RETRYABLE, f"{self.display_name} network error ({type(exc).__name__})"
                ),
                None,
            )

        if response.is_success:
            try:
                return None, response.json()
            except ValueError:
                return (
                    FetchResult.failure(
                        FetchStatus.TERMINAL,
                        f"{self.display_name} returned malformed JSON",
                        status_code=response.status_code,
                    ),
                    None,
                )
        return self.classify_failure(response, cursor_call=cursor_call), None
