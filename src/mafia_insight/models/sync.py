"""Sync bookkeeping models: run log, live status snapshot, skipped entities."""
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class SyncType(str, Enum):
    FULL = "FULL"
    INCREMENTAL = "INCREMENTAL"


class SyncLogStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    PAUSED = "PAUSED"


class ImportPhase(str, Enum):
    CLUBS = "CLUBS"
    PLAYERS = "PLAYERS"
    CLUB_MEMBERS = "CLUB_MEMBERS"
    PLAYER_YEAR_STATS = "PLAYER_YEAR_STATS"
    TOURNAMENTS = "TOURNAMENTS"
    TOURNAMENT_CHIEF_JUDGE = "TOURNAMENT_CHIEF_JUDGE"
    PLAYER_TOURNAMENT_HISTORY = "PLAYER_TOURNAMENT_HISTORY"
    JUDGES = "JUDGES"
    GAMES = "GAMES"
    STATISTICS = "STATISTICS"


class SkippedEntityStatus(str, Enum):
    PENDING = "PENDING"
    RETRYING = "RETRYING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class SyncLog(SQLModel, table=True):
    """One row per sync run (or per retry-wrapper invocation)."""

    id: Optional[int] = Field(default=None, primary_key=True)
    type: SyncType
    status: SyncLogStatus = SyncLogStatus.RUNNING
    start_time: datetime = Field(default_factory=datetime.utcnow, index=True)
    end_time: Optional[datetime] = None
    records_processed: int = 0

    # list of messages, list of {"attempt", "error"}, or a dict with
    # "errors" / "retryErrors" / "skippedPages" keys
    errors: Optional[Any] = Field(default=None, sa_column=Column(JSON))


class SyncStatus(SQLModel, table=True):
    """
    Durable snapshot of the in-flight sync (single row, id="current").

    The live value is owned by SyncStatusTracker; this row is overwritten on
    every publish and read back only after a restart.
    """

    id: str = Field(default="current", primary_key=True)
    is_running: bool = False
    is_paused: bool = False
    progress: int = 0
    current_operation: Optional[str] = None
    last_sync_time: Optional[datetime] = None
    last_sync_type: Optional[SyncType] = None
    last_error: Optional[str] = None

    # Resume point written when a run is paused
    checkpoint_phase: Optional[str] = None
    checkpoint_batch: Optional[int] = None
    checkpoint_progress: Optional[int] = None
    checkpoint_offset: Optional[int] = None
    checkpoint_type: Optional[SyncType] = None

    updated_at: datetime = Field(default_factory=datetime.utcnow)


class SkippedEntity(SQLModel, table=True):
    """A page or entity set aside during import for later manual retry."""

    id: Optional[int] = Field(default=None, primary_key=True)
    phase: ImportPhase = Field(index=True)
    entity_type: str  # "player", "club", "tournament", "game", "players_page", ...
    entity_id: Optional[str] = Field(default=None, index=True)
    page_number: Optional[int] = None
    error_code: str
    error_message: str
    error_details: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    retry_count: int = 0
    status: SkippedEntityStatus = Field(default=SkippedEntityStatus.PENDING, index=True)
    sync_log_id: Optional[int] = Field(default=None, foreign_key="synclog.id")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    last_retry_at: Optional[datetime] = None
