from __future__ import annotations

import asyncio
from typing import Coroutine, TypeVar

import anyio

T = TypeVar("T")


def run_async(coro: Coroutine[object, object, T], *, timeout: float | None = None) -> T:
    """
    Run a sync coroutine (provider fetch, orchestrator pass) from blocking code.

    Used by the CLI, which has no running loop. Raises when called from inside
    a running loop, where the caller should simply await.
    """

    async def _runner() -> T:
        if timeout is not None:
            with anyio.fail_after(timeout):
                return await coro
        return await coro

    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return anyio.run(_runner)
    coro.close()
    raise RuntimeError("run_async called from async context; use await instead")
