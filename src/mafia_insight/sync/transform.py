"""
Validation and transformation of raw gomafia.pro records.

Raw records are the camelCase dicts produced by the scraper
(mafia_insight.gomafia.client). Transforms return plain dicts whose keys map
directly onto SQLModel columns, validated through pydantic so a shape
mismatch raises instead of writing garbage. No I/O here; callers
(sync.service) handle persistence.

validate_* and has_*_changed never raise; transform_* raise
pydantic.ValidationError (or ValueError for unmapped participants).
"""
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, model_validator

from mafia_insight.models.entities import EntitySyncStatus

MAX_ELO_RATING = 3000
MAX_GAME_DURATION_MINUTES = 1440  # 24 hours
TEAMS = ("BLACK", "RED")
WINNER_TEAMS = ("BLACK", "RED", "DRAW")
GAME_STATUSES = ("SCHEDULED", "IN_PROGRESS", "COMPLETED", "CANCELLED")


# ─── Persistence schemas ─────────────────────────────────────────────────────

class PlayerRecord(BaseModel):
    gomafia_id: str = Field(min_length=1)
    name: str = Field(min_length=2, max_length=50)
    elo_rating: int = Field(ge=0, le=MAX_ELO_RATING)
    total_games: int = Field(ge=0)
    wins: int = Field(ge=0)
    losses: int = Field(ge=0)
    region: Optional[str] = None
    club_gomafia_id: Optional[str] = None
    last_sync_at: datetime
    sync_status: EntitySyncStatus = EntitySyncStatus.SYNCED

    @model_validator(mode="after")
    def _counts_consistent(self):
        if self.wins + self.losses != self.total_games:
            raise ValueError("wins + losses must equal total_games")
        return self


class GameRecord(BaseModel):
    gomafia_id: str = Field(min_length=1)
    tournament_id: Optional[int] = None
    date: datetime
    duration_minutes: Optional[int] = Field(default=None, ge=0, le=MAX_GAME_DURATION_MINUTES)
    winner_team: Optional[str] = None
    status: str
    last_sync_at: datetime
    sync_status: EntitySyncStatus = EntitySyncStatus.SYNCED

    @model_validator(mode="after")
    def _enums(self):
        if self.winner_team is not None and self.winner_team not in WINNER_TEAMS:
            raise ValueError(f"winner_team must be one of {WINNER_TEAMS}")
        if self.status not in GAME_STATUSES:
            raise ValueError(f"status must be one of {GAME_STATUSES}")
        return self


class ParticipationRecord(BaseModel):
    player_id: int
    game_id: int
    role: str = Field(min_length=1)
    team: str
    is_winner: bool

    @model_validator(mode="after")
    def _team(self):
        if self.team not in TEAMS:
            raise ValueError(f"team must be one of {TEAMS}")
        return self


# ─── Helpers ─────────────────────────────────────────────────────────────────

def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def _field(obj: Any, key: str) -> Any:
    """Read a column from either a model instance or a dict."""
    if isinstance(obj, Mapping):
        return obj.get(key)
    return getattr(obj, key, None)


def _whole(value: Any) -> Any:
    """Round float scrapes to the integer columns they are stored in."""
    if isinstance(value, float):
        return round(value)
    return value


def parse_game_date(value: Any) -> Optional[datetime]:
    """Parse a scraped game date (datetime or ISO-8601 string). None if unparseable."""
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    # Stored naive, in UTC
    if parsed.tzinfo is not None:
        parsed = (parsed - parsed.utcoffset()).replace(tzinfo=None)
    return parsed


# ─── Players ─────────────────────────────────────────────────────────────────

def validate_player_data(raw: Mapping[str, Any]) -> bool:
    """Check the structural invariants of a scraped player record."""
    try:
        total_games = raw.get("totalGames")
        wins = raw.get("wins")
        losses = raw.get("losses")
        elo = raw.get("eloRating")

        if not all(_is_count(v) for v in (total_games, wins, losses)):
            return False
        if isinstance(elo, bool) or not isinstance(elo, (int, float)):
            return False
        if elo < 0 or elo > MAX_ELO_RATING:
            return False
        return wins + losses == total_games
    except (AttributeError, TypeError):
        return False


def transform_player_data(
    raw: Mapping[str, Any],
    last_sync_at: Optional[datetime] = None,
    sync_status: EntitySyncStatus = EntitySyncStatus.SYNCED,
) -> Dict[str, Any]:
    """Map a scraped player onto Player columns."""
    record = PlayerRecord(
        gomafia_id=str(raw.get("id") or ""),
        name=(raw.get("name") or "").strip(),
        elo_rating=_whole(raw.get("eloRating")),
        total_games=raw.get("totalGames"),
        wins=raw.get("wins"),
        losses=raw.get("losses"),
        region=raw.get("region"),
        club_gomafia_id=raw.get("clubId"),
        last_sync_at=last_sync_at or datetime.utcnow(),
        sync_status=sync_status,
    )
    return record.model_dump()


def has_player_data_changed(old: Any, new: Mapping[str, Any]) -> bool:
    """
    True if any synced field differs between the stored row and the scrape.

    Only name, rating and the game counts are compared; a missing old row
    always counts as changed.
    """
    if old is None:
        return True
    try:
        return (
            _field(old, "name") != new.get("name")
            or _field(old, "elo_rating") != _whole(new.get("eloRating"))
            or _field(old, "total_games") != new.get("totalGames")
            or _field(old, "wins") != new.get("wins")
            or _field(old, "losses") != new.get("losses")
        )
    except AttributeError:
        return True


# ─── Games ───────────────────────────────────────────────────────────────────

def validate_game_data(raw: Mapping[str, Any]) -> bool:
    """Check date, duration, participants and winner of a scraped game."""
    try:
        if parse_game_date(raw.get("date")) is None:
            return False

        duration = raw.get("duration")
        if duration is not None:
            if isinstance(duration, bool) or not isinstance(duration, (int, float)):
                return False
            if duration < 0 or duration > MAX_GAME_DURATION_MINUTES:
                return False

        for participant in raw.get("participants") or []:
            if not participant.get("playerId") or not participant.get("role"):
                return False
            if participant.get("team") not in TEAMS:
                return False

        winner = raw.get("winnerTeam")
        if winner and winner not in WINNER_TEAMS:
            return False
        return True
    except (AttributeError, TypeError):
        return False


def transform_game_data(
    raw: Mapping[str, Any],
    tournament_id: Optional[int] = None,
    last_sync_at: Optional[datetime] = None,
    sync_status: EntitySyncStatus = EntitySyncStatus.SYNCED,
) -> Dict[str, Any]:
    """Map a scraped game onto Game columns."""
    record = GameRecord(
        gomafia_id=str(raw.get("id") or ""),
        tournament_id=tournament_id,
        date=parse_game_date(raw.get("date")),
        duration_minutes=_whole(raw.get("duration")),
        winner_team=raw.get("winnerTeam") or None,
        status=raw.get("status") or "COMPLETED",
        last_sync_at=last_sync_at or datetime.utcnow(),
        sync_status=sync_status,
    )
    return record.model_dump()


def transform_game_participants(
    raw: Mapping[str, Any],
    game_id: int,
    player_id_map: Mapping[str, int],
) -> List[Dict[str, Any]]:
    """
    Map scraped participants onto GameParticipation columns.

    Args:
        raw: Scraped game record.
        game_id: Local Game primary key.
        player_id_map: gomafia player id -> local Player primary key.

    Raises:
        ValueError: if a participant's player has not been imported yet.
    """
    winner = raw.get("winnerTeam")
    rows = []
    for participant in raw.get("participants") or []:
        gomafia_player_id = str(participant.get("playerId"))
        player_id = player_id_map.get(gomafia_player_id)
        if player_id is None:
            raise ValueError(f"Player ID not found in mapping: {gomafia_player_id}")
        record = ParticipationRecord(
            player_id=player_id,
            game_id=game_id,
            role=participant.get("role") or "",
            team=participant.get("team"),
            is_winner=winner == participant.get("team"),
        )
        rows.append(record.model_dump())
    return rows


def has_game_data_changed(old: Any, new: Mapping[str, Any]) -> bool:
    """
    True if status, winner, duration or date (by more than 1s) changed.

    A row without a date was saved from a listing page and always counts as
    changed.
    """
    if old is None or _field(old, "date") is None:
        return True
    new_date = parse_game_date(new.get("date"))
    old_date = _field(old, "date")
    date_changed = (
        new_date is not None
        and abs((old_date - new_date).total_seconds()) > 1
    )
    return (
        _field(old, "status") != (new.get("status") or "COMPLETED")
        or _field(old, "winner_team") != (new.get("winnerTeam") or None)
        or _field(old, "duration_minutes") != _whole(new.get("duration"))
        or date_changed
    )


def calculate_game_stats(raw: Mapping[str, Any]) -> Dict[str, Any]:
    participants = raw.get("participants") or []
    winner = raw.get("winnerTeam")
    duration = raw.get("duration") or 0
    return {
        "participant_count": len(participants),
        "has_winner": bool(winner) and winner != "DRAW",
        "is_completed": raw.get("status") == "COMPLETED",
        "duration_hours": round(duration / 60, 2),
    }


def game_summary(raw: Mapping[str, Any]) -> str:
    """One-line description of a game for logs."""
    stats = calculate_game_stats(raw)
    game_date = parse_game_date(raw.get("date"))
    date_str = game_date.strftime("%Y-%m-%d") if game_date else "unknown date"
    return (
        f"Game {raw.get('id')} ({date_str}): "
        f"{stats['participant_count']} participants, "
        f"Status: {raw.get('status')}, "
        f"Winner: {raw.get('winnerTeam') or 'None'}, "
        f"Duration: {stats['duration_hours']}h"
    )
