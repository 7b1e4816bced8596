from typing import List, Optional
from datetime import datetime
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import or_

from fieldsync.api.deps import get_job_scheduler, get_sync_context
from fieldsync.context import SyncContext
from fieldsync.database import session_scope
from fieldsync.models.sync_run import SyncRun
from fieldsync.scheduler import SyncJobScheduler
from fieldsync.schemas.metrics import SaveToLocalDbMetrics, SyncCycleMetrics
from fieldsync.schemas.schedule import ScheduleResponse, ScheduleUpdate
from fieldsync.schemas.sync import (
    ConnectivityUpdate,
    FastPushResult,
    NetworkStatus,
    SyncReport,
    SyncResult,
    SyncRunResponse,
)

log = logging.getLogger(__name__)
router = APIRouter()


@router.post("/run", response_model=SyncReport)
async def run_sync(context: SyncContext = Depends(get_sync_context)):
    """Trigger a manual full sync (push, then pull every entity)."""
    log.info("Manual full sync requested")
    return await context.sync_engine.sync_all("manual")


@router.post("/push", response_model=FastPushResult)
async def flush_push(context: SyncContext = Depends(get_sync_context)):
    """Push pending mutations now, bypassing the debounce window."""
    return await context.fast_push.flush_now()


@router.post("/entities/{name}", response_model=SyncResult)
async def sync_entity(name: str, context: SyncContext = Depends(get_sync_context)):
    """Pull and reconcile a single entity."""
    try:
        return await context.sync_engine.sync_entity(name)
    except KeyError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e.args[0]))


@router.get("/status")
async def get_status(context: SyncContext = Depends(get_sync_context)):
    """Engine state, fast push state and queue depth."""
    return {
        "engine": context.sync_engine.get_state().model_dump(mode="json"),
        "fast_push": context.fast_push.get_status().model_dump(mode="json"),
        "pending_mutations": context.queue.count_pending(),
        "network": context.connectivity.current.model_dump(),
        "entities": context.sync_engine.entity_names(),
        "triggers": {
            "pending": context.triggers.pending_keys(),
            "stats": context.triggers.get_stats().model_dump(),
        },
    }


@router.get("/metrics", response_model=List[SyncCycleMetrics])
async def get_metrics(context: SyncContext = Depends(get_sync_context)):
    """Recent full sync cycles, oldest first."""
    return context.metrics.get_history()


@router.get("/metrics/saves", response_model=List[SaveToLocalDbMetrics])
async def get_save_metrics(
    entity: Optional[str] = None,
    context: SyncContext = Depends(get_sync_context),
):
    return context.metrics.get_save_metrics(entity)


@router.post("/metrics/reset", status_code=status.HTTP_204_NO_CONTENT)
async def reset_metrics(context: SyncContext = Depends(get_sync_context)):
    context.fast_push.reset_metrics()
    context.metrics.reset()


@router.post("/connectivity", response_model=NetworkStatus)
async def update_connectivity(
    update: ConnectivityUpdate,
    context: SyncContext = Depends(get_sync_context),
):
    """Platform adapters report online/offline transitions here."""
    return context.connectivity.set_status(update.is_connected, update.type)


@router.get("/runs", response_model=List[SyncRunResponse])
async def get_sync_runs(
    skip: int = 0,
    limit: int = 20,
    status: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    search: Optional[str] = None,
    context: SyncContext = Depends(get_sync_context),
):
    """Retrieve history of full sync runs."""
    with session_scope(context.session_factory) as db:
        q = db.query(SyncRun).order_by(SyncRun.start_time.desc(), SyncRun.id.desc())
        if status and status != "all":
            q = q.filter(SyncRun.status == status)
        if start_date:
            q = q.filter(SyncRun.start_time >= datetime.fromisoformat(start_date))
        if end_date:
            q = q.filter(SyncRun.start_time <= datetime.fromisoformat(end_date + 'T23:59:59'))
        if search:
            q = q.filter(
                or_(
                    SyncRun.correlation_id.like(f"%{search}%"),
                    SyncRun.error_message.like(f"%{search}%")
                )
            )
        sync_runs = q.offset(skip).limit(limit).all()
        return [
            SyncRunResponse(
                id=sr.id,
                trigger_type=sr.trigger_type,
                correlation_id=sr.correlation_id,
                started_at=sr.start_time.isoformat() if sr.start_time else None,
                ended_at=sr.end_time.isoformat() if sr.end_time else None,
                status=sr.status,
                entities_synced=sr.entities_synced,
                entities_failed=sr.entities_failed,
                items_pulled=sr.items_pulled,
                mutations_pushed=sr.mutations_pushed,
                mutations_failed=sr.mutations_failed,
                error_message=sr.error_message,
            )
            for sr in sync_runs
        ]


@router.get("/schedule", response_model=ScheduleResponse)
async def get_schedule(jobs: Optional[SyncJobScheduler] = Depends(get_job_scheduler)):
    if jobs is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Scheduler is not running")
    return jobs.get_schedule()


@router.put("/schedule", response_model=ScheduleResponse)
async def update_schedule(
    update: ScheduleUpdate,
    jobs: Optional[SyncJobScheduler] = Depends(get_job_scheduler),
):
    """Change the periodic full sync interval without a restart."""
    if jobs is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Scheduler is not running")
    jobs.reschedule_sync_job(update.interval_minutes, update.enabled)
    return jobs.get_schedule()
