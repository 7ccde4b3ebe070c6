"""
Manual retry of skipped listing pages and skipped entities (admin surface).

Page retries run on a fresh client from scraper_factory so they never share
a browser with a scheduled sync.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from mafia_insight.gomafia.errors import TransientError
from mafia_insight.models.sync import ImportPhase
from mafia_insight.sync.retried_data import SAVERS
from mafia_insight.sync.skipped import SkippedEntitiesManager

logger = logging.getLogger(__name__)

PHASE_ENTITY_TYPES = {
    ImportPhase.PLAYERS: "players",
    ImportPhase.CLUBS: "clubs",
    ImportPhase.TOURNAMENTS: "tournaments",
    ImportPhase.GAMES: "games",
}


def retry_options(entity_type: str, options: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Fill in the listing filters a page retry must reuse."""
    options = options or {}
    if entity_type == "games":
        return {}
    if entity_type == "tournaments":
        return {"time_filter": options.get("time_filter") or options.get("timeFilter") or "all"}
    return {
        "year": options.get("year") or datetime.utcnow().year,
        "region": options.get("region") or "all",
    }


async def retry_skipped_pages(
    entity_type: str,
    page_numbers: List[int],
    options: Optional[Dict[str, Any]],
    scraper_factory: Callable[[], Any],
    engine,
) -> Dict[str, Any]:
    """
    Re-scrape listing pages and save the records not yet in the DB.

    Pages that fail again are listed in failed_pages and make the outcome
    unsuccessful.

    Raises:
        ValueError: on an unknown entity_type or an empty page list.
    """
    if entity_type not in SAVERS:
        raise ValueError(f"entityType must be one of: {', '.join(SAVERS)}")
    if not page_numbers:
        raise ValueError("pageNumbers must not be empty")

    client = scraper_factory()
    try:
        records, failed_pages = await client.scraper_for(entity_type).retry_skipped_pages(
            page_numbers, retry_options(entity_type, options)
        )
    finally:
        await client.close()

    saved = SAVERS[entity_type](engine, records)
    retried = len(page_numbers) - len(failed_pages)
    message = (
        f"Successfully retried {len(records)} records from {retried} pages. "
        f"Saved: {saved['saved']}, Skipped: {saved['skipped']}, Errors: {saved['errors']}"
    )
    if failed_pages:
        message += f". Pages still failing: {', '.join(str(p) for p in failed_pages)}"
    return {
        "success": not failed_pages,
        "entity_type": entity_type,
        "pages_retried": list(page_numbers),
        "records_retrieved": len(records),
        "saved": saved["saved"],
        "skipped": saved["skipped"],
        "errors": saved["errors"],
        "failed_pages": failed_pages,
        "message": message,
    }


async def retry_skipped_entity(
    manager: SkippedEntitiesManager,
    service,
    entity_pk: int,
    scraper_factory: Callable[[], Any],
) -> Dict[str, Any]:
    """
    Retry one SkippedEntity row: a listing page or a single player/game.

    The row ends COMPLETED or FAILED; failures are reported, not raised.

    Raises:
        LookupError: if the row does not exist.
    """
    entity = manager.get_skipped_entity(entity_pk)
    if entity is None:
        raise LookupError(f"Skipped entity {entity_pk} not found")

    manager.mark_as_retrying(entity_pk)
    try:
        if entity.page_number is not None:
            entity_type = PHASE_ENTITY_TYPES.get(ImportPhase(entity.phase))
            if entity_type is None:
                raise ValueError(f"Pages of phase {entity.phase} cannot be retried")
            outcome = await retry_skipped_pages(
                entity_type,
                [entity.page_number],
                entity.error_details,
                scraper_factory,
                service.engine,
            )
            message = outcome["message"]
            if outcome["failed_pages"]:
                raise TransientError(message)
        else:
            await service.retry_entity(entity.phase, entity.entity_id)
            message = f"Re-imported {entity.entity_type} {entity.entity_id}"
    except Exception as exc:
        logger.warning("Retry of skipped entity %d failed: %s", entity_pk, exc)
        manager.mark_as_failed(entity_pk, str(exc))
        return {"success": False, "id": entity_pk, "message": str(exc)}

    manager.mark_as_completed(entity_pk)
    return {"success": True, "id": entity_pk, "message": message}
