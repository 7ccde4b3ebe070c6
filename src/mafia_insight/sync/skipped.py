"""
SkippedEntitiesManager: bookkeeping for pages and entities set aside during import.

Rows are created by the sync job when a listing page or a single record
could not be imported, and moved through PENDING -> RETRYING ->
COMPLETED/FAILED by the manual retry surface.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlmodel import Session, col, select

from mafia_insight.models.sync import ImportPhase, SkippedEntity, SkippedEntityStatus

logger = logging.getLogger(__name__)


@dataclass
class SkippedEntityData:
    phase: ImportPhase
    entity_type: str
    error_code: str
    error_message: str
    entity_id: Optional[str] = None
    page_number: Optional[int] = None
    error_details: Optional[Dict[str, Any]] = None
    sync_log_id: Optional[int] = None


class SkippedEntitiesManager:
    """CRUD and status transitions for SkippedEntity rows."""

    def __init__(self, engine):
        self.engine = engine

    def record_skipped_entity(self, data: SkippedEntityData) -> int:
        """Insert a PENDING row and return its id."""
        entity = SkippedEntity(
            phase=data.phase,
            entity_type=data.entity_type,
            entity_id=data.entity_id,
            page_number=data.page_number,
            error_code=data.error_code,
            error_message=data.error_message,
            error_details=data.error_details,
            sync_log_id=data.sync_log_id,
        )
        with Session(self.engine) as s:
            s.add(entity)
            s.commit()
            s.refresh(entity)
        logger.info(
            "Recorded skipped %s (phase=%s, id=%s, page=%s): %s",
            data.entity_type, data.phase.value, data.entity_id, data.page_number,
            data.error_message,
        )
        return entity.id

    def get_skipped_entity(self, entity_pk: int) -> Optional[SkippedEntity]:
        with Session(self.engine) as s:
            return s.get(SkippedEntity, entity_pk)

    def get_skipped_entities_by_phase(
        self, phase: ImportPhase, status: Optional[SkippedEntityStatus] = None
    ) -> List[SkippedEntity]:
        query = select(SkippedEntity).where(SkippedEntity.phase == phase)
        if status is not None:
            query = query.where(SkippedEntity.status == status)
        with Session(self.engine) as s:
            return list(s.exec(query.order_by(SkippedEntity.created_at.desc())).all())

    def get_skipped_entities_by_player_id(self, player_id: str) -> List[SkippedEntity]:
        """Entity-level rows for one player across all phases."""
        query = (
            select(SkippedEntity)
            .where(
                SkippedEntity.entity_type == "player",
                SkippedEntity.entity_id == player_id,
            )
            .order_by(SkippedEntity.created_at.desc())
        )
        with Session(self.engine) as s:
            return list(s.exec(query).all())

    def get_skipped_entities_by_page(
        self, phase: ImportPhase, page_number: int
    ) -> List[SkippedEntity]:
        query = select(SkippedEntity).where(
            SkippedEntity.phase == phase,
            SkippedEntity.page_number == page_number,
        )
        with Session(self.engine) as s:
            return list(s.exec(query).all())

    def has_open_page_entry(self, phase: ImportPhase, page_number: int) -> bool:
        """True if the page already has a PENDING or RETRYING row."""
        query = select(SkippedEntity.id).where(
            SkippedEntity.phase == phase,
            SkippedEntity.page_number == page_number,
            col(SkippedEntity.status).in_([
                SkippedEntityStatus.PENDING, SkippedEntityStatus.RETRYING,
            ]),
        )
        with Session(self.engine) as s:
            return s.exec(query).first() is not None

    def list_skipped_entities(
        self,
        phase: Optional[ImportPhase] = None,
        status: Optional[SkippedEntityStatus] = None,
        limit: int = 100,
    ) -> List[SkippedEntity]:
        query = select(SkippedEntity)
        if phase is not None:
            query = query.where(SkippedEntity.phase == phase)
        if status is not None:
            query = query.where(SkippedEntity.status == status)
        query = query.order_by(SkippedEntity.created_at.desc()).limit(limit)
        with Session(self.engine) as s:
            return list(s.exec(query).all())

    # ─── Status transitions ───────────────────────────────────────────────────

    def mark_as_retrying(self, entity_pk: int) -> None:
        """Bump retry_count and stamp last_retry_at, whatever the current status."""
        now = datetime.utcnow()
        self._update(
            entity_pk,
            status=SkippedEntityStatus.RETRYING,
            last_retry_at=now,
            increment_retry=True,
        )

    def mark_as_completed(self, entity_pk: int) -> None:
        self._update(entity_pk, status=SkippedEntityStatus.COMPLETED)

    def mark_as_failed(self, entity_pk: int, error_message: Optional[str] = None) -> None:
        self._update(entity_pk, status=SkippedEntityStatus.FAILED, error_message=error_message)

    def _update(
        self,
        entity_pk: int,
        *,
        status: SkippedEntityStatus,
        last_retry_at: Optional[datetime] = None,
        error_message: Optional[str] = None,
        increment_retry: bool = False,
    ) -> None:
        with Session(self.engine) as s:
            entity = s.get(SkippedEntity, entity_pk)
            if entity is None:
                raise LookupError(f"Skipped entity {entity_pk} not found")
            entity.status = status
            if increment_retry:
                entity.retry_count += 1
            if last_retry_at is not None:
                entity.last_retry_at = last_retry_at
            if error_message is not None:
                entity.error_message = error_message
            entity.updated_at = datetime.utcnow()
            s.add(entity)
            s.commit()

    # ─── Reporting / housekeeping ─────────────────────────────────────────────

    def get_summary(self) -> Dict[str, Dict[str, int]]:
        """
        Per-phase counts by status.

        Only phases with at least one row appear. Example:
            {"PLAYERS": {"total": 4, "pending": 3, "retrying": 0,
                         "completed": 1, "failed": 0}}
        """
        with Session(self.engine) as s:
            rows = s.exec(select(SkippedEntity.phase, SkippedEntity.status)).all()

        summary: Dict[str, Dict[str, int]] = {}
        for phase, status in rows:
            phase_key = ImportPhase(phase).value
            counts = summary.setdefault(phase_key, {
                "total": 0, "pending": 0, "retrying": 0, "completed": 0, "failed": 0,
            })
            counts["total"] += 1
            counts[SkippedEntityStatus(status).value.lower()] += 1
        return summary

    def cleanup_completed_entities(self, older_than_days: int = 30) -> int:
        """Delete COMPLETED rows last updated more than older_than_days ago."""
        cutoff = datetime.utcnow() - timedelta(days=older_than_days)
        with Session(self.engine) as s:
            stale = s.exec(
                select(SkippedEntity).where(
                    SkippedEntity.status == SkippedEntityStatus.COMPLETED,
                    SkippedEntity.updated_at < cutoff,
                )
            ).all()
            for entity in stale:
                s.delete(entity)
            s.commit()
        if stale:
            logger.info("Removed %d completed skipped entities", len(stale))
        return len(stale)
