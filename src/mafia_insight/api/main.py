"""FastAPI application factory."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlmodel import SQLModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from mafia_insight.api.routes import admin_import, sync as sync_routes
from mafia_insight.config import get_settings
from mafia_insight.db.engine import get_engine
from mafia_insight.scheduler.jobs import SchedulerHandle, build_scheduler_handle
from mafia_insight.sync.service import SyncService, build_sync_service

logger = logging.getLogger(__name__)


async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    body = exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail}
    return JSONResponse(body, status_code=exc.status_code, headers=getattr(exc, "headers", None))


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        {"error": "Invalid request", "message": str(exc.errors())},
        status_code=400,
    )


def create_app(
    service: Optional[SyncService] = None,
    scheduler: Optional[SchedulerHandle] = None,
) -> FastAPI:
    """
    Build and return the FastAPI app.

    Without arguments the sync service and scheduler are built from settings
    when the app starts, so importing this module never touches the DB.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        sync_service = service or build_sync_service(get_engine())
        handle = scheduler or build_scheduler_handle(sync_service)
        # Create tables on startup (idempotent)
        SQLModel.metadata.create_all(sync_service.engine)
        app.state.sync_service = sync_service
        app.state.scheduler = handle
        if settings.sync_enabled:
            handle.initialize()
        else:
            logger.info("SYNC_ENABLED is false; scheduler not started")
        yield
        handle.stop()

    app = FastAPI(
        title="Mafia Insight API",
        description="gomafia.pro import and sync administration",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.add_exception_handler(StarletteHTTPException, _http_error)
    app.add_exception_handler(RequestValidationError, _validation_error)

    app.include_router(admin_import.router, prefix="/api/admin/import", tags=["import"])
    app.include_router(sync_routes.router, prefix="/api/admin/sync", tags=["sync"])

    return app


# Module-level app instance for uvicorn
app = create_app()
