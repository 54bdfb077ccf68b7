"""HTTP helpers with retry/backoff for OAuth endpoints."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

import httpx

from crm_sync.core.backoff import BackoffPolicy

logger = logging.getLogger(__name__)

DEFAULT_RETRY_STATUSES = {429, 500, 502, 503, 504}


def parse_retry_after(response: httpx.Response) -> float | None:
    """Return Retry-After seconds when the header carries a number."""
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


async def request_with_retries(
    request_fn: Callable[[], Awaitable[httpx.Response]],
    *,
    policy: BackoffPolicy | None = None,
    retry_statuses: set[int] | None = None,
) -> httpx.Response:
    """Execute an HTTP request with exponential backoff retries."""
    policy = policy or BackoffPolicy()
    statuses = retry_statuses or DEFAULT_RETRY_STATUSES

    for attempt in range(1, policy.max_attempts + 1):
        try:
            response = await request_fn()
        except httpx.RequestError as exc:
            if policy.exhausted(attempt):
                raise
            delay = policy.delay_for(attempt)
            logger.warning("HTTP request failed (%s), retrying", type(exc).__name__)
            if delay:
                await asyncio.sleep(delay)
            continue

        if response.status_code in statuses and not policy.exhausted(attempt):
            delay = policy.delay_for(attempt, parse_retry_after(response))
            logger.warning("HTTP request returned %s, retrying", response.status_code)
            if delay:
                await asyncio.sleep(delay)
            continue

        return response

    return response
