"""
Main entrypoint: runs the sync scheduler, or a single sync.

FastAPI runs separately under uvicorn (its lifespan starts its own
scheduler unless SYNC_ENABLED=false; run only one of the two).

Usage:
    python -m mafia_insight                      # scheduler, until Ctrl+C
    python -m mafia_insight sync incremental     # one sync through the retry wrapper
    python -m mafia_insight sync full
    uvicorn mafia_insight.api.main:app --host 0.0.0.0 --port 8000  # admin API
"""
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


async def _run_once(sync_type: str) -> int:
    from mafia_insight.db.engine import get_engine
    from mafia_insight.sync.service import build_sync_service

    service = build_sync_service(get_engine())
    result = await service.run_sync_with_retry(sync_type.upper())
    if result.success:
        logger.info(
            "Sync finished: %d records, %d errors, %dms",
            result.records_processed, len(result.errors), result.duration,
        )
        return 0
    logger.error("Sync failed: %s", ", ".join(result.errors))
    return 1


async def _run_scheduler() -> None:
    from mafia_insight.config import get_settings
    from mafia_insight.db.engine import get_engine
    from mafia_insight.scheduler.jobs import build_scheduler_handle
    from mafia_insight.sync.service import build_sync_service

    settings = get_settings()
    if not settings.sync_enabled:
        logger.error("SYNC_ENABLED is false; nothing to run.")
        sys.exit(1)

    service = build_sync_service(get_engine())
    scheduler = build_scheduler_handle(service)
    scheduler.initialize()
    logger.info("Next sync at %s", scheduler.next_run())

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.stop()
        logger.info("Goodbye.")


if __name__ == "__main__":
    # Dispatch on first argument: `python -m mafia_insight sync <type>` or just `python -m mafia_insight`
    if len(sys.argv) > 1 and sys.argv[1] == "sync":
        sync_type = sys.argv[2] if len(sys.argv) > 2 else "incremental"
        if sync_type.lower() not in ("full", "incremental"):
            print("Usage: python -m mafia_insight sync [full|incremental]")
            sys.exit(2)
        sys.exit(asyncio.run(_run_once(sync_type)))
    else:
        asyncio.run(_run_scheduler())
