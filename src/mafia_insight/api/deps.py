"""FastAPI dependencies for objects owned by the running app."""
from typing import Any, Callable

from fastapi import Depends, Request

from mafia_insight.scheduler.jobs import SchedulerHandle
from mafia_insight.sync.service import SyncService
from mafia_insight.sync.skipped import SkippedEntitiesManager


def get_sync_service(request: Request) -> SyncService:
    return request.app.state.sync_service


def get_scheduler(request: Request) -> SchedulerHandle:
    return request.app.state.scheduler


def get_skipped_manager(
    service: SyncService = Depends(get_sync_service),
) -> SkippedEntitiesManager:
    return service.skipped


def get_scraper_factory() -> Callable[[], Any]:
    """Builds a fresh GomafiaClient for each manual page retry."""
    from mafia_insight.gomafia.client import GomafiaClient

    return GomafiaClient
