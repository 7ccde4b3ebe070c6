"""
HTML extraction for gomafia.pro pages.

Pure functions over page HTML so they can be tested without a browser.
Every function returns camelCase dicts in the shape sync.transform expects.
"""
import re
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup

from mafia_insight.gomafia.errors import EntityNotFoundError

_EMPTY_MARKERS = {"", "-", "–", "—"}

# Russian status labels on the tournaments page
_TOURNAMENT_STATUS = [
    (("завершён", "завершен"), "COMPLETED"),
    (("в процессе", "идёт", "идет"), "IN_PROGRESS"),
    (("отменён", "отменен"), "CANCELLED"),
]


def _text(node) -> str:
    return node.get_text(strip=True) if node is not None else ""


def _optional_text(node) -> Optional[str]:
    text = _text(node)
    return None if text in _EMPTY_MARKERS else text


def _int(text: str, default: Optional[int] = 0) -> Optional[int]:
    digits = re.sub(r"[^\d-]", "", text or "")
    try:
        return int(digits)
    except ValueError:
        return default


def _float(text: str, default: Optional[float] = None) -> Optional[float]:
    cleaned = (text or "").replace(",", ".").replace("\xa0", "").strip()
    try:
        return float(cleaned)
    except ValueError:
        return default


def _id_from_href(href: Optional[str]) -> str:
    return (href or "").rstrip("/").split("/")[-1]


def has_next_page(html: str, selector: str = ".pagination .next") -> bool:
    """True if the pagination control has an enabled "next" button."""
    soup = BeautifulSoup(html, "html.parser")
    button = soup.select_one(selector)
    if button is None:
        return False
    return "disabled" not in (button.get("class") or [])


# ─── Listing pages ───────────────────────────────────────────────────────────

def extract_player_rows(html: str) -> List[Dict[str, Any]]:
    """Rows of the /rating players table."""
    soup = BeautifulSoup(html, "html.parser")
    players = []
    for row in soup.select("table tbody tr"):
        link = row.select_one('a[href*="/player/"]')
        if link is None:
            continue
        club_link = row.select_one('a[href*="/club/"]')
        players.append({
            "id": _id_from_href(link.get("href")),
            "name": _text(link),
            "region": _optional_text(row.select_one(".region")),
            "club": _optional_text(row.select_one(".club")),
            "clubId": _id_from_href(club_link.get("href")) if club_link else None,
            "tournaments": _int(_text(row.select_one(".tournaments"))),
            "ggPoints": _int(_text(row.select_one(".gg-points"))),
            "elo": _float(_text(row.select_one(".elo")), default=1200.0),
        })
    return players


def extract_club_rows(html: str) -> List[Dict[str, Any]]:
    """Rows of the /rating?tab=clubs table."""
    soup = BeautifulSoup(html, "html.parser")
    clubs = []
    for row in soup.select("table tbody tr"):
        link = row.select_one('a[href*="/club/"]')
        if link is None:
            continue
        clubs.append({
            "id": _id_from_href(link.get("href")),
            "name": _text(link),
            "region": _optional_text(row.select_one(".region")),
            "president": _optional_text(row.select_one(".president")),
            "members": _int(_text(row.select_one(".members")), default=None),
        })
    return clubs


def _tournament_status(text: str) -> Optional[str]:
    lowered = text.lower()
    for markers, status in _TOURNAMENT_STATUS:
        if any(marker in lowered for marker in markers):
            return status
    return "SCHEDULED" if lowered else None


def extract_tournament_rows(html: str) -> List[Dict[str, Any]]:
    """Rows of the /tournaments table."""
    soup = BeautifulSoup(html, "html.parser")
    tournaments = []
    for row in soup.select("table tbody tr"):
        link = row.select_one('a[href*="/tournament/"]')
        if link is None:
            continue
        # The link also contains the star rating; the name is in <b>
        name_node = link.select_one("b") or link
        stars = _int(_text(link.select_one(".stars")), default=None)
        tournaments.append({
            "id": _id_from_href(link.get("href")),
            "name": _text(name_node),
            "stars": stars if stars and stars > 0 else None,
            "avgElo": _float(_text(row.select_one(".avg-elo"))),
            "startDate": _optional_text(row.select_one(".start-date")),
            "endDate": _optional_text(row.select_one(".end-date")),
            "status": _tournament_status(_text(row.select_one(".status"))),
        })
    return tournaments


def extract_game_rows(html: str) -> List[Dict[str, Any]]:
    """Rows of the /games table: just enough to fetch each game page."""
    soup = BeautifulSoup(html, "html.parser")
    games = []
    for row in soup.select("table tbody tr"):
        link = row.select_one('a[href*="/game/"]')
        if link is None:
            continue
        games.append({"id": _id_from_href(link.get("href")), "name": _text(link)})
    return games


# ─── Detail pages ────────────────────────────────────────────────────────────

def parse_player_page(html: str, player_id: str) -> Dict[str, Any]:
    """Player profile page -> raw player record."""
    soup = BeautifulSoup(html, "html.parser")
    name_node = soup.select_one(".player-name")
    if name_node is None:
        raise EntityNotFoundError(f"Player {player_id} not found")
    club_link = soup.select_one('a[href*="/club/"]')
    return {
        "id": str(player_id),
        "name": _text(name_node),
        "eloRating": _float(_text(soup.select_one(".elo-rating")), default=1200.0),
        "totalGames": _int(_text(soup.select_one(".total-games"))),
        "wins": _int(_text(soup.select_one(".wins"))),
        "losses": _int(_text(soup.select_one(".losses"))),
        "region": _optional_text(soup.select_one(".region")),
        "clubId": _id_from_href(club_link.get("href")) if club_link else None,
    }


def parse_game_page(html: str, game_id: str) -> Dict[str, Any]:
    """Game protocol page -> raw game record with participants."""
    soup = BeautifulSoup(html, "html.parser")
    date_node = soup.select_one(".game-date")
    if date_node is None:
        raise EntityNotFoundError(f"Game {game_id} not found")

    participants = []
    for row in soup.select(".participants tbody tr"):
        link = row.select_one('a[href*="/player/"]')
        participants.append({
            "playerId": _id_from_href(link.get("href")) if link else None,
            "role": _optional_text(row.select_one(".role")),
            "team": (_text(row.select_one(".team")) or "").upper() or None,
        })

    tournament_link = soup.select_one('a[href*="/tournament/"]')
    return {
        "id": str(game_id),
        "date": date_node.get("datetime") or _text(date_node),
        "duration": _int(_text(soup.select_one(".duration")), default=None),
        "winnerTeam": (_text(soup.select_one(".winner-team")) or "").upper() or None,
        "status": "COMPLETED",
        "tournamentId": _id_from_href(tournament_link.get("href")) if tournament_link else None,
        "participants": participants,
    }
