"""Sync trigger, status, logs, scheduler and pause/resume routes."""
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlmodel import Session, select

from mafia_insight.api.auth import require_admin
from mafia_insight.api.deps import get_scheduler, get_sync_service
from mafia_insight.db.engine import get_session
from mafia_insight.models.sync import SyncLog, SyncType
from mafia_insight.scheduler.jobs import SchedulerHandle
from mafia_insight.sync.service import SyncService

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])


class SyncTriggerRequest(BaseModel):
    type: SyncType = SyncType.INCREMENTAL


class CheckpointResponse(BaseModel):
    sync_type: SyncType
    phase: str
    batch: int
    offset: int
    progress: int


class SyncStatusResponse(BaseModel):
    is_running: bool
    is_paused: bool
    progress: int
    current_operation: Optional[str]
    last_sync_time: Optional[datetime]
    last_sync_type: Optional[SyncType]
    last_error: Optional[str]
    checkpoint: Optional[CheckpointResponse]


@router.post("/trigger")
async def trigger_sync(
    request: SyncTriggerRequest,
    scheduler: SchedulerHandle = Depends(get_scheduler),
):
    """Run a sync now and report its outcome."""
    return await scheduler.trigger_manual_sync(request.type)


@router.get("/status", response_model=SyncStatusResponse)
def sync_status(service: SyncService = Depends(get_sync_service)):
    """Live run state, falling back to the persisted snapshot."""
    tracker = service.status
    row = tracker.snapshot()
    checkpoint = tracker.checkpoint
    return SyncStatusResponse(
        is_running=tracker.is_running,
        is_paused=tracker.pause_requested,
        progress=tracker.progress if tracker.is_running else row.progress,
        current_operation=row.current_operation,
        last_sync_time=row.last_sync_time,
        last_sync_type=row.last_sync_type,
        last_error=row.last_error,
        checkpoint=CheckpointResponse(**vars(checkpoint)) if checkpoint else None,
    )


@router.get("/logs", response_model=List[SyncLog])
def sync_logs(
    limit: int = Query(default=20, ge=1, le=200),
    session: Session = Depends(get_session),
):
    """Most recent sync runs, newest first."""
    return session.exec(
        select(SyncLog).order_by(SyncLog.start_time.desc()).limit(limit)
    ).all()


@router.get("/scheduler")
def scheduler_info(scheduler: SchedulerHandle = Depends(get_scheduler)):
    return {"info": scheduler.schedule_info(), "health": scheduler.health()}


@router.post("/pause")
def pause_sync(service: SyncService = Depends(get_sync_service)):
    """Stop the running sync after its current batch and hold scheduled runs."""
    was_running = service.pause()
    return {
        "success": True,
        "message": "Sync will pause after the current batch" if was_running else "Sync paused",
        "was_running": was_running,
    }


@router.post("/resume")
def resume_sync(
    background_tasks: BackgroundTasks,
    service: SyncService = Depends(get_sync_service),
):
    """
    Lift the pause. A paused run continues from its checkpoint in the
    background; returns immediately.
    """
    if service.status.is_running:
        raise HTTPException(status_code=409, detail="A sync is already running")
    checkpoint = service.status.checkpoint
    background_tasks.add_task(_resume, service)
    if checkpoint is None:
        return {"success": True, "message": "Sync resumed", "resumed_from": None}
    return {
        "success": True,
        "message": f"Resuming {checkpoint.sync_type.value} sync from batch {checkpoint.batch}",
        "resumed_from": vars(checkpoint),
    }


async def _resume(service: SyncService) -> None:
    """Background task: continue the paused run."""
    try:
        await service.resume()
    except Exception as exc:
        logger.error("Resumed sync failed: %s", exc)
