"""Job handler registry."""

from __future__ import annotations

from typing import Awaitable, Callable, Mapping

from crm_sync.db.enums import JobType
from crm_sync.jobs.handlers import sync

JobHandler = Callable[[object, object], Awaitable[None]]

JOB_HANDLERS: Mapping[str, JobHandler] = {
    JobType.PROVIDER_SYNC.value: sync.process_provider_sync,
}


def resolve_job_handler(job_type: str) -> JobHandler:
    handler = JOB_HANDLERS.get(job_type)
    if not handler:
        raise ValueError(f"Unknown job type: {job_type}")
    return handler
