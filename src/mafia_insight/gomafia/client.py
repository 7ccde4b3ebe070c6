"""
gomafia.pro data source used by the sync job.

GomafiaClient owns one lazily launched BrowserSession. The sync service
calls close() when a run ends; the next call relaunches the browser, so a
single client can serve many runs.
"""
import logging
from typing import Any, Dict, List, Optional

from mafia_insight.config import get_settings
from mafia_insight.gomafia.parsers import parse_game_page, parse_player_page
from mafia_insight.gomafia.scrapers import (
    BrowserSession,
    ClubsScraper,
    GamesScraper,
    PageSkippedCallback,
    PaginationHandler,
    PlayersScraper,
    RateLimiter,
    TournamentsScraper,
)

logger = logging.getLogger(__name__)

ENTITY_TYPES = ("players", "clubs", "tournaments", "games")


class GomafiaClient:
    """Listing and detail-page access to gomafia.pro."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        headless: Optional[bool] = None,
        rate_limit_ms: Optional[int] = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.gomafia_base_url).rstrip("/")
        self.session = BrowserSession(
            headless=settings.scraper_headless if headless is None else headless
        )
        self.rate_limiter = RateLimiter(
            settings.scraper_rate_limit_ms if rate_limit_ms is None else rate_limit_ms
        )
        self.pagination = PaginationHandler(self.session, self.rate_limiter)
        self.players = PlayersScraper(self.pagination, self.base_url)
        self.clubs = ClubsScraper(self.pagination, self.base_url)
        self.tournaments = TournamentsScraper(self.pagination, self.base_url)
        self.games = GamesScraper(self.pagination, self.base_url)

    def scraper_for(self, entity_type: str):
        """Listing scraper for one of ENTITY_TYPES."""
        scrapers = {
            "players": self.players,
            "clubs": self.clubs,
            "tournaments": self.tournaments,
            "games": self.games,
        }
        if entity_type not in scrapers:
            raise ValueError(
                f"Unknown entity type {entity_type!r}; expected one of {', '.join(ENTITY_TYPES)}"
            )
        return scrapers[entity_type]

    async def parse_player_list(
        self,
        page: int = 1,
        limit: int = 1000,
        on_page_skipped: Optional[PageSkippedCallback] = None,
    ) -> List[Dict[str, Any]]:
        """Up to `limit` player summaries starting at listing page `page`."""
        players, _ = await self.players.scrape_all_players(
            start_page=page, max_records=limit, on_page_skipped=on_page_skipped
        )
        return players

    async def parse_player(self, player_id: str) -> Dict[str, Any]:
        """Fetch a player's profile page."""
        await self.rate_limiter.wait()
        html = await self.session.fetch_html(f"{self.base_url}/stats/{player_id}")
        return parse_player_page(html, player_id)

    async def parse_game_list(
        self,
        page: int = 1,
        limit: int = 1000,
        on_page_skipped: Optional[PageSkippedCallback] = None,
    ) -> List[Dict[str, Any]]:
        """Up to `limit` game summaries starting at listing page `page`."""
        games, _ = await self.games.scrape_all_games(
            start_page=page,
            max_records=limit,
            on_page_skipped=on_page_skipped,
        )
        return games

    async def parse_game(self, game_id: str) -> Dict[str, Any]:
        """Fetch a game's protocol page."""
        await self.rate_limiter.wait()
        html = await self.session.fetch_html(f"{self.base_url}/game/{game_id}")
        return parse_game_page(html, game_id)

    async def close(self) -> None:
        if self.session.is_open:
            await self.session.close()
            logger.info("Browser closed")
