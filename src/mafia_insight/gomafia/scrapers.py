"""
Playwright-based scrapers for gomafia.pro listing pages.

One BrowserSession (headless Chromium + a single page) is shared by all the
scrapers of a sync run and closed by the owner when the run ends. Pages are
fetched sequentially through a RateLimiter; a page that keeps failing is
skipped and reported to the caller instead of aborting the whole listing.
"""
import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from playwright.async_api import Browser, Error as PlaywrightError, Page, Playwright
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from playwright.async_api import async_playwright

from mafia_insight.gomafia.errors import (
    EntityNotFoundError,
    PermanentError,
    ScraperBlockedError,
    TransientError,
)
from mafia_insight.gomafia.parsers import (
    extract_club_rows,
    extract_game_rows,
    extract_player_rows,
    extract_tournament_rows,
    has_next_page,
)
from mafia_insight.sync.retry import retry_operation

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)
PAGE_TIMEOUT_MS = 30_000
HIGH_PAGE_TIMEOUT_MS = 60_000  # deep pagination is slow to render
MAX_CONSECUTIVE_EMPTY_PAGES = 3
MAX_CONSECUTIVE_FAILED_PAGES = 3

# (page_number, error) -> None; awaited for every page given up on
PageSkippedCallback = Callable[[int, Exception], Awaitable[None]]
Extractor = Callable[[str], List[Dict[str, Any]]]


class RateLimiter:
    """Enforces a minimum delay between consecutive requests."""

    def __init__(self, min_delay_ms: int = 2000):
        self.min_delay_ms = min_delay_ms
        self._last_request: Optional[float] = None
        self.total_requests = 0

    async def wait(self) -> None:
        now = time.monotonic()
        if self._last_request is not None:
            remaining = self.min_delay_ms / 1000 - (now - self._last_request)
            if remaining > 0:
                await asyncio.sleep(remaining)
        self._last_request = time.monotonic()
        self.total_requests += 1


class BrowserSession:
    """Lazily launched headless browser; safe to close() more than once."""

    def __init__(self, headless: bool = True):
        self.headless = headless
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._page: Optional[Page] = None

    @property
    def is_open(self) -> bool:
        return self._browser is not None

    async def page(self) -> Page:
        if self._page is None:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(headless=self.headless)
            context = await self._browser.new_context(user_agent=USER_AGENT)
            self._page = await context.new_page()
            logger.info("Browser launched (headless=%s)", self.headless)
        return self._page

    async def close(self) -> None:
        try:
            if self._browser is not None:
                await self._browser.close()
            if self._playwright is not None:
                await self._playwright.stop()
        finally:
            self._page = None
            self._browser = None
            self._playwright = None

    async def fetch_html(self, url: str, timeout_ms: int = PAGE_TIMEOUT_MS) -> str:
        """
        Navigate to url and return the rendered HTML.

        Raises:
            EntityNotFoundError: on 404.
            PermanentError: on 401/403.
            ScraperBlockedError: on 429.
            TransientError: on timeouts, 5xx and browser/network errors.
        """
        page = await self.page()
        try:
            response = await page.goto(url, wait_until="networkidle", timeout=timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise TransientError(f"Timeout loading {url}") from exc
        except PlaywrightError as exc:
            raise TransientError(f"Browser error loading {url}: {exc}") from exc

        if response is not None:
            status = response.status
            if status == 404:
                raise EntityNotFoundError(f"Page not found: {url}")
            if status in (401, 403):
                raise PermanentError(f"Access forbidden ({status}): {url}")
            if status == 429:
                raise ScraperBlockedError(f"Rate limited by gomafia.pro: {url}")
            if status >= 500:
                raise TransientError(f"Server error {status}: {url}")

        return await page.content()


class PaginationHandler:
    """Walks ?page=N style listings, skipping pages that keep failing."""

    def __init__(
        self,
        session: BrowserSession,
        rate_limiter: RateLimiter,
        max_retries: int = 3,
        retry_delay_ms: int = 1000,
    ):
        self.session = session
        self.rate_limiter = rate_limiter
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms

    @staticmethod
    def build_page_url(base_url: str, page_param: str, page_number: int) -> str:
        separator = "&" if "?" in base_url else "?"
        return f"{base_url}{separator}{page_param}={page_number}"

    async def _load(self, url: str, page_number: int) -> str:
        timeout = HIGH_PAGE_TIMEOUT_MS if page_number > 100 else PAGE_TIMEOUT_MS

        async def attempt() -> str:
            await self.rate_limiter.wait()
            return await self.session.fetch_html(url, timeout_ms=timeout)

        return await retry_operation(attempt, self.max_retries, self.retry_delay_ms)

    async def scrape_pages(
        self,
        base_url: str,
        page_param: str,
        extract: Extractor,
        start_page: int = 1,
        max_pages: Optional[int] = None,
        max_records: Optional[int] = None,
        on_page_skipped: Optional[PageSkippedCallback] = None,
    ) -> Tuple[List[Dict[str, Any]], List[int]]:
        """
        Scrape pages from start_page until the listing ends.

        Returns:
            (records, skipped_page_numbers)

        Raises:
            The last page error after MAX_CONSECUTIVE_FAILED_PAGES failures in a
            row; the listing is treated as unavailable rather than empty.
        """
        records: List[Dict[str, Any]] = []
        skipped: List[int] = []
        consecutive_empty = 0
        consecutive_failed = 0
        page_number = start_page

        while max_pages is None or page_number < start_page + max_pages:
            url = self.build_page_url(base_url, page_param, page_number)
            try:
                html = await self._load(url, page_number)
            except Exception as exc:
                consecutive_failed += 1
                logger.warning("Skipping page %d of %s: %s", page_number, base_url, exc)
                if consecutive_failed >= MAX_CONSECUTIVE_FAILED_PAGES:
                    raise
                skipped.append(page_number)
                if on_page_skipped is not None:
                    await on_page_skipped(page_number, exc)
                page_number += 1
                continue

            consecutive_failed = 0
            page_records = extract(html)
            if page_records:
                consecutive_empty = 0
                records.extend(page_records)
                logger.debug(
                    "Page %d: %d records (total: %d)", page_number, len(page_records), len(records)
                )
            else:
                consecutive_empty += 1
                if consecutive_empty >= MAX_CONSECUTIVE_EMPTY_PAGES:
                    break

            if max_records is not None and len(records) >= max_records:
                records = records[:max_records]
                break
            if not has_next_page(html):
                break
            page_number += 1

        logger.info(
            "Scraped %d records from %s (%d pages skipped)", len(records), base_url, len(skipped)
        )
        return records, skipped

    async def retry_pages(
        self,
        base_url: str,
        page_param: str,
        extract: Extractor,
        page_numbers: List[int],
        on_page_skipped: Optional[PageSkippedCallback] = None,
    ) -> Tuple[List[Dict[str, Any]], List[int]]:
        """
        Re-scrape specific pages.

        Returns:
            (records, failed): pages that fail again are reported through
            on_page_skipped and listed in failed instead of raising.
        """
        records: List[Dict[str, Any]] = []
        failed: List[int] = []
        for page_number in sorted(set(page_numbers)):
            url = self.build_page_url(base_url, page_param, page_number)
            try:
                html = await self._load(url, page_number)
            except Exception as exc:
                logger.warning("Retry of page %d failed: %s", page_number, exc)
                if on_page_skipped is not None:
                    await on_page_skipped(page_number, exc)
                failed.append(page_number)
                continue
            records.extend(extract(html))
        return records, failed


class PlayersScraper:
    """Players rating listing (/rating?yearUsers=&regionUsers=&pageUsers=)."""

    page_param = "pageUsers"

    def __init__(self, pagination: PaginationHandler, base_url: str):
        self.pagination = pagination
        self.base_url = base_url

    def listing_url(self, year: Optional[int] = None, region: str = "all") -> str:
        year = year or datetime.utcnow().year
        return f"{self.base_url}/rating?yearUsers={year}&regionUsers={region}"

    async def scrape_all_players(
        self,
        year: Optional[int] = None,
        region: str = "all",
        start_page: int = 1,
        max_pages: Optional[int] = None,
        max_records: Optional[int] = None,
        on_page_skipped: Optional[PageSkippedCallback] = None,
    ) -> Tuple[List[Dict[str, Any]], List[int]]:
        return await self.pagination.scrape_pages(
            self.listing_url(year, region),
            self.page_param,
            extract_player_rows,
            start_page=start_page,
            max_pages=max_pages,
            max_records=max_records,
            on_page_skipped=on_page_skipped,
        )

    async def retry_skipped_pages(
        self, page_numbers: List[int], options: Optional[Dict[str, Any]] = None
    ) -> Tuple[List[Dict[str, Any]], List[int]]:
        """options must match the original scrape: {"year": ..., "region": ...}."""
        options = options or {}
        return await self.pagination.retry_pages(
            self.listing_url(options.get("year"), options.get("region") or "all"),
            self.page_param,
            extract_player_rows,
            page_numbers,
        )


class ClubsScraper:
    """Clubs rating listing (/rating?tab=clubs&yearClubs=&regionClubs=&pageClubs=)."""

    page_param = "pageClubs"

    def __init__(self, pagination: PaginationHandler, base_url: str):
        self.pagination = pagination
        self.base_url = base_url

    def listing_url(self, year: Optional[int] = None, region: str = "all") -> str:
        year = year or datetime.utcnow().year
        return f"{self.base_url}/rating?tab=clubs&yearClubs={year}&regionClubs={region}"

    async def scrape_all_clubs(
        self,
        year: Optional[int] = None,
        region: str = "all",
        max_pages: Optional[int] = None,
        on_page_skipped: Optional[PageSkippedCallback] = None,
    ) -> Tuple[List[Dict[str, Any]], List[int]]:
        return await self.pagination.scrape_pages(
            self.listing_url(year, region),
            self.page_param,
            extract_club_rows,
            max_pages=max_pages,
            on_page_skipped=on_page_skipped,
        )

    async def retry_skipped_pages(
        self, page_numbers: List[int], options: Optional[Dict[str, Any]] = None
    ) -> Tuple[List[Dict[str, Any]], List[int]]:
        options = options or {}
        return await self.pagination.retry_pages(
            self.listing_url(options.get("year"), options.get("region") or "all"),
            self.page_param,
            extract_club_rows,
            page_numbers,
        )


class TournamentsScraper:
    """Tournaments listing (/tournaments?time=&page=)."""

    page_param = "page"

    def __init__(self, pagination: PaginationHandler, base_url: str):
        self.pagination = pagination
        self.base_url = base_url

    def listing_url(self, time_filter: str = "all") -> str:
        return f"{self.base_url}/tournaments?time={time_filter}"

    async def scrape_all_tournaments(
        self,
        time_filter: str = "all",
        max_pages: Optional[int] = None,
        on_page_skipped: Optional[PageSkippedCallback] = None,
    ) -> Tuple[List[Dict[str, Any]], List[int]]:
        return await self.pagination.scrape_pages(
            self.listing_url(time_filter),
            self.page_param,
            extract_tournament_rows,
            max_pages=max_pages,
            on_page_skipped=on_page_skipped,
        )

    async def retry_skipped_pages(
        self, page_numbers: List[int], options: Optional[Dict[str, Any]] = None
    ) -> Tuple[List[Dict[str, Any]], List[int]]:
        """options: {"time_filter": "all" | "upcoming" | "past"}."""
        options = options or {}
        time_filter = options.get("time_filter") or options.get("timeFilter") or "all"
        return await self.pagination.retry_pages(
            self.listing_url(time_filter),
            self.page_param,
            extract_tournament_rows,
            page_numbers,
        )


class GamesScraper:
    """Games listing (/games?page=). Rows carry only the game id and title."""

    page_param = "page"

    def __init__(self, pagination: PaginationHandler, base_url: str):
        self.pagination = pagination
        self.base_url = base_url

    def listing_url(self) -> str:
        return f"{self.base_url}/games"

    async def scrape_all_games(
        self,
        start_page: int = 1,
        max_records: Optional[int] = None,
        on_page_skipped: Optional[PageSkippedCallback] = None,
    ) -> Tuple[List[Dict[str, Any]], List[int]]:
        return await self.pagination.scrape_pages(
            self.listing_url(),
            self.page_param,
            extract_game_rows,
            start_page=start_page,
            max_records=max_records,
            on_page_skipped=on_page_skipped,
        )

    async def retry_skipped_pages(
        self, page_numbers: List[int], options: Optional[Dict[str, Any]] = None
    ) -> Tuple[List[Dict[str, Any]], List[int]]:
        return await self.pagination.retry_pages(
            self.listing_url(),
            self.page_param,
            extract_game_rows,
            page_numbers,
        )
