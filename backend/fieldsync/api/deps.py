from typing import Optional

from fastapi import Request

from fieldsync.context import SyncContext
from fieldsync.scheduler import SyncJobScheduler


def get_sync_context(request: Request) -> SyncContext:
    return request.app.state.sync_context


def get_job_scheduler(request: Request) -> Optional[SyncJobScheduler]:
    return getattr(request.app.state, "job_scheduler", None)
