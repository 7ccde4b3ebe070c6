"""
Live sync status with a durable snapshot.

SyncStatusTracker is the single owner of "is a sync running" for the
process. try_begin() is a synchronous compare-and-swap, so two coroutines
can never both start a run: there is no await between the check and the
claim. Every change is also written to the SyncStatus("current") row, which
is only read back by restore() after a restart.

Pausing is cooperative: request_pause() sets a flag the orchestrator checks
between batches. A paused run stores a Checkpoint; clear_pause() hands it
back so the caller can resume at the saved offset.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlmodel import Session

from mafia_insight.models.sync import SyncStatus, SyncType

logger = logging.getLogger(__name__)

STATUS_ID = "current"


@dataclass
class Checkpoint:
    sync_type: SyncType
    phase: str
    batch: int
    offset: int
    progress: int


class SyncStatusTracker:
    def __init__(self, engine):
        self.engine = engine
        self._running_type: Optional[SyncType] = None
        self._pause_requested = False
        self._checkpoint: Optional[Checkpoint] = None
        self.progress = 0

    # ─── Queries ────────────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._running_type is not None

    @property
    def pause_requested(self) -> bool:
        return self._pause_requested

    @property
    def checkpoint(self) -> Optional[Checkpoint]:
        return self._checkpoint

    def snapshot(self) -> SyncStatus:
        """The persisted status row (a blank one if no sync ever ran)."""
        with Session(self.engine) as s:
            row = s.get(SyncStatus, STATUS_ID)
            return row if row is not None else SyncStatus(id=STATUS_ID)

    # ─── Run lifecycle ──────────────────────────────────────────────────────

    def try_begin(self, sync_type: SyncType, progress: int = 0) -> bool:
        """Claim the single run slot. False if another run holds it."""
        if self._running_type is not None:
            return False
        self._running_type = sync_type
        self.progress = progress
        self._persist(
            is_running=True,
            progress=progress,
            current_operation=f"Starting {sync_type.value} sync",
            last_error=None,
        )
        return True

    def publish_progress(self, progress: int, operation: str) -> None:
        """Report progress; never moves backwards within a run."""
        self.progress = max(self.progress, min(progress, 100))
        self._persist(progress=self.progress, current_operation=operation)

    def complete(self, sync_type: SyncType) -> None:
        self.progress = 100
        self._checkpoint = None
        self._persist(
            is_running=False,
            progress=100,
            current_operation=None,
            last_sync_time=datetime.utcnow(),
            last_sync_type=sync_type,
            last_error=None,
            checkpoint_phase=None,
            checkpoint_batch=None,
            checkpoint_progress=None,
            checkpoint_offset=None,
            checkpoint_type=None,
        )

    def fail(self, error: str) -> None:
        self._persist(is_running=False, current_operation=None, last_error=error)

    def pause_run(self, checkpoint: Checkpoint) -> None:
        """Record where a paused run stopped."""
        self._checkpoint = checkpoint
        self._persist(
            is_running=False,
            is_paused=True,
            current_operation=f"Paused at batch {checkpoint.batch}",
            checkpoint_phase=checkpoint.phase,
            checkpoint_batch=checkpoint.batch,
            checkpoint_progress=checkpoint.progress,
            checkpoint_offset=checkpoint.offset,
            checkpoint_type=checkpoint.sync_type,
        )
        logger.info(
            "%s sync paused at offset %d (%d%%)",
            checkpoint.sync_type.value, checkpoint.offset, checkpoint.progress,
        )

    def release(self) -> None:
        """Free the run slot. Idempotent."""
        self._running_type = None

    # ─── Pause / resume ─────────────────────────────────────────────────────

    def request_pause(self) -> None:
        self._pause_requested = True
        self._persist(is_paused=True)

    def clear_pause(self) -> Optional[Checkpoint]:
        """Lift the pause and return the checkpoint to resume from, if any."""
        checkpoint = self._checkpoint
        self._pause_requested = False
        self._checkpoint = None
        self._persist(
            is_paused=False,
            checkpoint_phase=None,
            checkpoint_batch=None,
            checkpoint_progress=None,
            checkpoint_offset=None,
            checkpoint_type=None,
        )
        return checkpoint

    def restore(self) -> None:
        """Reload pause state and checkpoint after a restart."""
        row = self.snapshot()
        self._pause_requested = row.is_paused
        if row.checkpoint_type is not None and row.checkpoint_offset is not None:
            self._checkpoint = Checkpoint(
                sync_type=SyncType(row.checkpoint_type),
                phase=row.checkpoint_phase or "",
                batch=row.checkpoint_batch or 0,
                offset=row.checkpoint_offset,
                progress=row.checkpoint_progress or 0,
            )
        if row.is_running:
            # The process died mid-run; nothing is running now
            logger.warning("Clearing stale running flag left by a previous process")
            self._persist(is_running=False, last_error="Interrupted by restart")

    # ─── Persistence ────────────────────────────────────────────────────────

    def _persist(self, **fields) -> None:
        with Session(self.engine) as s:
            row = s.get(SyncStatus, STATUS_ID) or SyncStatus(id=STATUS_ID)
            for key, value in fields.items():
                setattr(row, key, value)
            row.updated_at = datetime.utcnow()
            s.add(row)
            s.commit()
