"""gomafia.pro entities mirrored locally: players, clubs, tournaments, games."""
from datetime import datetime
from enum import Enum
from typing import List, Optional

from sqlmodel import Field, Relationship, SQLModel


class EntitySyncStatus(str, Enum):
    SYNCED = "SYNCED"
    PENDING = "PENDING"
    ERROR = "ERROR"


class Player(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    gomafia_id: str = Field(unique=True, index=True)
    name: str
    elo_rating: int = 1200
    total_games: int = 0
    wins: int = 0
    losses: int = 0
    region: Optional[str] = None
    club_gomafia_id: Optional[str] = None

    sync_status: EntitySyncStatus = Field(default=EntitySyncStatus.PENDING, index=True)
    last_sync_at: Optional[datetime] = None

    participations: List["GameParticipation"] = Relationship(back_populates="player")


class Club(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    gomafia_id: str = Field(unique=True, index=True)
    name: str
    region: Optional[str] = None
    president: Optional[str] = None
    members_count: Optional[int] = None

    sync_status: EntitySyncStatus = Field(default=EntitySyncStatus.PENDING)
    last_sync_at: Optional[datetime] = None


class Tournament(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    gomafia_id: str = Field(unique=True, index=True)
    name: str
    stars: Optional[int] = None
    avg_elo: Optional[float] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    status: Optional[str] = None  # SCHEDULED, IN_PROGRESS, COMPLETED, CANCELLED

    sync_status: EntitySyncStatus = Field(default=EntitySyncStatus.PENDING)
    last_sync_at: Optional[datetime] = None


class Game(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    gomafia_id: str = Field(unique=True, index=True)
    tournament_id: Optional[int] = Field(default=None, foreign_key="tournament.id")
    date: Optional[datetime] = None  # unset until the game page is synced
    duration_minutes: Optional[int] = None
    winner_team: Optional[str] = None  # BLACK, RED, DRAW
    status: str = "COMPLETED"

    sync_status: EntitySyncStatus = Field(default=EntitySyncStatus.PENDING, index=True)
    last_sync_at: Optional[datetime] = None

    participations: List["GameParticipation"] = Relationship(back_populates="game")


class GameParticipation(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    game_id: int = Field(foreign_key="game.id", index=True)
    player_id: int = Field(foreign_key="player.id", index=True)
    role: str
    team: str  # BLACK or RED
    is_winner: bool = False

    game: Optional[Game] = Relationship(back_populates="participations")
    player: Optional[Player] = Relationship(back_populates="participations")
