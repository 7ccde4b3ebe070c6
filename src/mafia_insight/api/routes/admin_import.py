"""Admin routes for skipped listing pages and skipped entities."""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlmodel import Session, col, select

from mafia_insight.api.auth import require_admin
from mafia_insight.api.deps import get_scraper_factory, get_skipped_manager, get_sync_service
from mafia_insight.db.engine import get_session
from mafia_insight.models.sync import (
    ImportPhase,
    SkippedEntity,
    SkippedEntityStatus,
    SyncLog,
    SyncLogStatus,
)
from mafia_insight.sync import manual_retry
from mafia_insight.sync.retried_data import SAVERS
from mafia_insight.sync.service import SyncService
from mafia_insight.sync.skipped import SkippedEntitiesManager

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_admin)])

PHASE_TO_ENTITY_TYPE = {
    "PLAYERS": "players",
    "CLUBS": "clubs",
    "TOURNAMENTS": "tournaments",
    "GAMES": "games",
}


class RetryPagesRequest(BaseModel):
    entityType: Optional[str] = None
    pageNumbers: Optional[List[int]] = None
    options: Optional[Dict[str, Any]] = None


def collect_skipped_pages(
    logs: Iterable[SyncLog], entity_type: Optional[str] = None
) -> Dict[str, Dict[str, Any]]:
    """
    Group skipped listing pages from sync logs by entity type.

    Logs are expected newest first; each entity type is attributed to the
    newest log that mentions it, with pages from all logs merged.
    """
    grouped: Dict[str, Dict[str, Any]] = {}

    def add(phase: str, pages: List[int], log: SyncLog) -> None:
        key = PHASE_TO_ENTITY_TYPE.get(phase)
        if key is None or not pages:
            return
        entry = grouped.setdefault(
            key, {"syncLogId": log.id, "pages": [], "timestamp": log.start_time}
        )
        entry["pages"].extend(pages)

    for log in logs:
        if not isinstance(log.errors, dict):
            continue
        for phase, pages in (log.errors.get("skippedPages") or {}).items():
            add(phase, pages, log)
        by_phase = (log.errors.get("errorSummary") or {}).get("skippedPagesByPhase") or {}
        for phase, phase_skipped in by_phase.items():
            add(phase, (phase_skipped or {}).get("skippedPages") or [], log)

    if entity_type:
        return {
            entity_type: grouped.get(
                entity_type, {"syncLogId": None, "pages": [], "timestamp": datetime.utcnow()}
            )
        }
    return grouped


@router.get("/skipped-pages")
def list_skipped_pages(
    entity_type: Optional[str] = Query(default=None, alias="entityType"),
    limit: int = Query(default=10, ge=1, le=100),
    session: Session = Depends(get_session),
):
    """Skipped listing pages reported by the most recent finished syncs."""
    logs = session.exec(
        select(SyncLog)
        .where(col(SyncLog.status).in_([
            SyncLogStatus.COMPLETED, SyncLogStatus.FAILED, SyncLogStatus.PAUSED,
        ]))
        .order_by(SyncLog.start_time.desc())
        .limit(limit)
    ).all()
    return {"success": True, "skippedPages": collect_skipped_pages(logs, entity_type)}


@router.post("/skipped-pages")
async def retry_skipped_pages(
    request: RetryPagesRequest,
    service: SyncService = Depends(get_sync_service),
    scraper_factory: Callable[[], Any] = Depends(get_scraper_factory),
):
    """Re-scrape listing pages on a fresh browser and save what comes back."""
    if not request.entityType or not request.pageNumbers:
        raise HTTPException(status_code=400, detail={
            "error": "Invalid request",
            "message": "entityType and pageNumbers array are required",
        })
    if request.entityType not in SAVERS:
        raise HTTPException(status_code=400, detail={
            "error": "Invalid entity type",
            "message": f"entityType must be one of: {', '.join(SAVERS)}",
        })

    try:
        outcome = await manual_retry.retry_skipped_pages(
            request.entityType,
            request.pageNumbers,
            request.options,
            scraper_factory,
            service.engine,
        )
    except Exception as exc:
        logger.error("Error retrying skipped pages: %s", exc)
        raise HTTPException(status_code=500, detail={
            "error": "Failed to retry skipped pages",
            "message": str(exc),
        })

    return {
        "success": outcome["success"],
        "entityType": outcome["entity_type"],
        "pagesRetried": outcome["pages_retried"],
        "recordsRetrieved": outcome["records_retrieved"],
        "saved": outcome["saved"],
        "skipped": outcome["skipped"],
        "errors": outcome["errors"],
        "failedPages": outcome["failed_pages"],
        "message": outcome["message"],
    }


@router.get("/skipped-entities", response_model=List[SkippedEntity])
def list_skipped_entities(
    phase: Optional[ImportPhase] = None,
    status: Optional[SkippedEntityStatus] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    manager: SkippedEntitiesManager = Depends(get_skipped_manager),
):
    return manager.list_skipped_entities(phase=phase, status=status, limit=limit)


@router.get("/skipped-entities/summary")
def skipped_entities_summary(manager: SkippedEntitiesManager = Depends(get_skipped_manager)):
    return {"success": True, "summary": manager.get_summary()}


@router.post("/skipped-entities/{entity_pk}/retry")
async def retry_skipped_entity(
    entity_pk: int,
    service: SyncService = Depends(get_sync_service),
    manager: SkippedEntitiesManager = Depends(get_skipped_manager),
    scraper_factory: Callable[[], Any] = Depends(get_scraper_factory),
):
    try:
        return await manual_retry.retry_skipped_entity(manager, service, entity_pk, scraper_factory)
    except LookupError:
        raise HTTPException(status_code=404, detail=f"Skipped entity {entity_pk} not found")
