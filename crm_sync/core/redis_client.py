"""Shared async Redis client for short-lived OAuth state.

Redis is optional: with ``REDIS_URL`` unset or ``memory://`` every caller
falls back to its database-backed store.
"""

from __future__ import annotations

import logging

from crm_sync.core.config import settings

logger = logging.getLogger(__name__)

REDIS_DISABLED_URL = "memory://"
CONNECT_TIMEOUT_SECONDS = 2.0
SOCKET_TIMEOUT_SECONDS = 2.0
HEALTH_CHECK_INTERVAL_SECONDS = 30

_async_client = None


def get_redis_url() -> str | None:
    url = (settings.REDIS_URL or "").strip()
    if not url or url.lower() == REDIS_DISABLED_URL:
        return None
    return url


def get_async_redis_client():
    """Lazily build one pooled client per process; None when Redis is disabled."""
    url = get_redis_url()
    if not url:
        return None

    global _async_client
    if _async_client is None:
        import redis.asyncio as redis

        pool = redis.ConnectionPool.from_url(
            url,
            max_connections=max(settings.REDIS_MAX_CONNECTIONS, 1),
            socket_connect_timeout=CONNECT_TIMEOUT_SECONDS,
            socket_timeout=SOCKET_TIMEOUT_SECONDS,
            health_check_interval=HEALTH_CHECK_INTERVAL_SECONDS,
            retry_on_timeout=True,
        )
        _async_client = redis.Redis(connection_pool=pool)
        logger.info("Redis OAuth state store enabled")
    return _async_client


async def close_async_redis_client() -> None:
    global _async_client
    if _async_client is not None:
        await _async_client.aclose()
        _async_client = None
