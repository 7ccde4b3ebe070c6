"""
Persist records recovered by retrying skipped listing pages.

Listing rows carry less than a detail page, so new players and games are
inserted as PENDING and picked up by the next incremental sync. Rows already
in the DB are left alone.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError
from sqlmodel import Session, select

from mafia_insight.models.entities import Club, EntitySyncStatus, Game, Player, Tournament
from mafia_insight.sync.transform import MAX_ELO_RATING

logger = logging.getLogger(__name__)

_DATE_FORMATS = ("%Y-%m-%d", "%d.%m.%Y")


class PlayerListingRow(BaseModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=2, max_length=50)
    region: Optional[str] = None
    clubId: Optional[str] = None
    elo: float = Field(default=1200.0, ge=0, le=MAX_ELO_RATING)


class ClubListingRow(BaseModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    region: Optional[str] = None
    president: Optional[str] = None
    members: Optional[int] = Field(default=None, ge=0)


class GameListingRow(BaseModel):
    id: str = Field(min_length=1)


class TournamentListingRow(BaseModel):
    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    stars: Optional[int] = Field(default=None, ge=1, le=5)
    avgElo: Optional[float] = Field(default=None, ge=0)
    startDate: Optional[str] = None
    endDate: Optional[str] = None
    status: Optional[str] = None


def _parse_listing_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(value.strip(), fmt)
        except ValueError:
            continue
    return None


def _save(engine, records: List[Mapping[str, Any]], schema, model, build) -> Dict[str, int]:
    saved = skipped = errors = 0
    with Session(engine) as s:
        for raw in records:
            try:
                row = schema.model_validate(raw)
            except ValidationError as exc:
                logger.warning("Invalid %s row %s: %s", model.__name__, raw.get("id"), exc)
                errors += 1
                continue
            if s.exec(select(model).where(model.gomafia_id == row.id)).first():
                skipped += 1
                continue
            s.add(build(row))
            saved += 1
        s.commit()
    logger.info(
        "Retried %s rows: %d saved, %d skipped, %d errors",
        model.__name__, saved, skipped, errors,
    )
    return {"saved": saved, "skipped": skipped, "errors": errors}


def save_retried_players(engine, records: List[Mapping[str, Any]]) -> Dict[str, int]:
    return _save(engine, records, PlayerListingRow, Player, lambda row: Player(
        gomafia_id=row.id,
        name=row.name.strip(),
        region=row.region,
        club_gomafia_id=row.clubId,
        elo_rating=round(row.elo),
        sync_status=EntitySyncStatus.PENDING,
    ))


def save_retried_clubs(engine, records: List[Mapping[str, Any]]) -> Dict[str, int]:
    return _save(engine, records, ClubListingRow, Club, lambda row: Club(
        gomafia_id=row.id,
        name=row.name.strip(),
        region=row.region,
        president=row.president,
        members_count=row.members,
        sync_status=EntitySyncStatus.SYNCED,
        last_sync_at=datetime.utcnow(),
    ))


def save_retried_tournaments(engine, records: List[Mapping[str, Any]]) -> Dict[str, int]:
    return _save(engine, records, TournamentListingRow, Tournament, lambda row: Tournament(
        gomafia_id=row.id,
        name=row.name.strip(),
        stars=row.stars,
        avg_elo=row.avgElo,
        start_date=_parse_listing_date(row.startDate),
        end_date=_parse_listing_date(row.endDate),
        status=row.status,
        sync_status=EntitySyncStatus.SYNCED,
        last_sync_at=datetime.utcnow(),
    ))


def save_retried_games(engine, records: List[Mapping[str, Any]]) -> Dict[str, int]:
    return _save(engine, records, GameListingRow, Game, lambda row: Game(
        gomafia_id=row.id,
        sync_status=EntitySyncStatus.PENDING,
    ))


SAVERS = {
    "players": save_retried_players,
    "clubs": save_retried_clubs,
    "tournaments": save_retried_tournaments,
    "games": save_retried_games,
}
