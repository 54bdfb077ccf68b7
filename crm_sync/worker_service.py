"""HTTP service entrypoint for the background worker."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os

from fastapi import FastAPI

from crm_sync.core.redis_client import close_async_redis_client
from crm_sync.db.session import SessionLocal
from crm_sync.services import job_service
from crm_sync.worker import worker_loop

app = FastAPI()
_worker_task: asyncio.Task | None = None


@app.get("/health")
def health() -> dict:
    running = _worker_task is not None and not _worker_task.done()
    return {"status": "ok", "worker_running": running}


@app.get("/queue")
def queue() -> dict:
    with SessionLocal() as db:
        return job_service.get_queue_stats(db).model_dump()


@app.on_event("startup")
async def _startup() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    global _worker_task
    _worker_task = asyncio.create_task(worker_loop())


@app.on_event("shutdown")
async def _shutdown() -> None:
    if _worker_task:
        _worker_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _worker_task
    await close_async_redis_client()


def main() -> None:
    import uvicorn

    port = int(os.getenv("PORT", "8080"))
    host = os.getenv("HOST", "0.0.0.0")
    uvicorn.run("crm_sync.worker_service:app", host=host, port=port)


if __name__ == "__main__":
    main()
