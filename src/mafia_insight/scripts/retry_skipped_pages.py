"""
Retry script: re-scrape listing pages skipped by earlier syncs.

Usage:
    python -m mafia_insight.scripts.retry_skipped_pages --entity players --pages 3 7 12
    python -m mafia_insight.scripts.retry_skipped_pages --entity tournaments --pages 5 --time-filter past
    python -m mafia_insight.scripts.retry_skipped_pages --pending

--pending walks every PENDING page-level skipped entity (players, clubs,
tournaments, games) and retries it, marking each row COMPLETED or FAILED.
Records already in the DB are skipped (idempotency via gomafia_id).
"""
import argparse
import asyncio
import logging
from typing import Any, Dict, List

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)

SLEEP_BETWEEN_PAGES = 2.0


async def _retry_pages(entity_type: str, pages: List[int], options: Dict[str, Any]) -> None:
    from mafia_insight.db.engine import get_engine
    from mafia_insight.gomafia.client import GomafiaClient
    from mafia_insight.sync.manual_retry import retry_skipped_pages

    outcome = await retry_skipped_pages(entity_type, pages, options, GomafiaClient, get_engine())
    if outcome["success"]:
        logger.info(outcome["message"])
    else:
        logger.warning(outcome["message"])


async def _retry_pending() -> None:
    from mafia_insight.db.engine import get_engine
    from mafia_insight.gomafia.client import GomafiaClient
    from mafia_insight.models.sync import SkippedEntityStatus
    from mafia_insight.sync.manual_retry import PHASE_ENTITY_TYPES, retry_skipped_entity
    from mafia_insight.sync.service import build_sync_service

    engine = get_engine()
    service = build_sync_service(engine)
    manager = service.skipped
    retried = failed = 0

    for phase in PHASE_ENTITY_TYPES:
        pending = [
            e for e in manager.get_skipped_entities_by_phase(phase, SkippedEntityStatus.PENDING)
            if e.page_number is not None
        ]
        if pending:
            logger.info("%s: %d pending pages", phase.value, len(pending))

        for entity in pending:
            outcome = await retry_skipped_entity(manager, service, entity.id, GomafiaClient)
            if outcome["success"]:
                retried += 1
                logger.info("Page %d of %s: %s", entity.page_number, phase.value, outcome["message"])
            else:
                failed += 1
                logger.warning("Page %d of %s failed: %s", entity.page_number, phase.value, outcome["message"])
            await asyncio.sleep(SLEEP_BETWEEN_PAGES)

    logger.info("Retry complete. Retried: %d, Failed: %d", retried, failed)


def main() -> None:
    parser = argparse.ArgumentParser(description="Retry skipped gomafia.pro listing pages")
    parser.add_argument("--entity", choices=["players", "clubs", "tournaments", "games"])
    parser.add_argument("--pages", type=int, nargs="+", help="Page numbers to retry")
    parser.add_argument("--year", type=int, help="Rating year (players/clubs; default: current)")
    parser.add_argument("--region", default="all", help="Region filter (players/clubs)")
    parser.add_argument("--time-filter", default="all", help="Time filter (tournaments)")
    parser.add_argument(
        "--pending",
        action="store_true",
        help="Retry every PENDING page-level skipped entity instead",
    )
    args = parser.parse_args()

    if args.pending:
        asyncio.run(_retry_pending())
        return
    if not args.entity or not args.pages:
        parser.error("--entity and --pages are required unless --pending is given")

    options = {"year": args.year, "region": args.region, "time_filter": args.time_filter}
    asyncio.run(_retry_pages(args.entity, args.pages, options))


if __name__ == "__main__":
    main()
