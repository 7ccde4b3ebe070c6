"""Tests for listing pagination, page retry and rate limiting (browser mocked)."""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from mafia_insight.gomafia.errors import EntityNotFoundError, TransientError
from mafia_insight.gomafia.parsers import extract_player_rows
from mafia_insight.gomafia.scrapers import (
    HIGH_PAGE_TIMEOUT_MS,
    GamesScraper,
    PaginationHandler,
    PlayersScraper,
    RateLimiter,
    TournamentsScraper,
)

BASE = "https://gomafia.pro/rating?yearUsers=2025&regionUsers=all"


def listing_page(ids, last=False) -> str:
    rows = "".join(f'<tr><td><a href="/player/{i}">Player {i}</a></td></tr>' for i in ids)
    next_class = "next disabled" if last else "next"
    return (
        f"<table><tbody>{rows}</tbody></table>"
        f'<div class="pagination"><a class="{next_class}">›</a></div>'
    )


def games_page(ids) -> str:
    rows = "".join(f'<tr><td><a href="/game/{i}">Игра {i}</a></td></tr>' for i in ids)
    return f"<table><tbody>{rows}</tbody></table>"


def pagination_over(pages) -> PaginationHandler:
    """pages: page number -> HTML, or an exception to raise on every attempt."""
    session = MagicMock()

    async def fetch_html(url, timeout_ms=None):
        number = int(url.rsplit("=", 1)[1])
        outcome = pages[number]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    session.fetch_html = AsyncMock(side_effect=fetch_html)
    return PaginationHandler(session, RateLimiter(0), max_retries=2, retry_delay_ms=0)


class TestScrapePages:
    @pytest.mark.asyncio
    async def test_walks_until_last_page(self):
        pagination = pagination_over({
            1: listing_page(["1", "2"]),
            2: listing_page(["3"], last=True),
        })
        records, skipped = await pagination.scrape_pages(BASE, "pageUsers", extract_player_rows)
        assert [r["id"] for r in records] == ["1", "2", "3"]
        assert skipped == []

    @pytest.mark.asyncio
    async def test_failing_page_is_skipped_and_reported(self):
        pagination = pagination_over({
            1: listing_page(["1"]),
            2: TransientError("Timeout loading page 2"),
            3: listing_page(["3"], last=True),
        })
        reported = []

        async def on_skip(page_number, exc):
            reported.append((page_number, str(exc)))

        records, skipped = await pagination.scrape_pages(
            BASE, "pageUsers", extract_player_rows, on_page_skipped=on_skip
        )

        assert [r["id"] for r in records] == ["1", "3"]
        assert skipped == [2]
        assert reported == [(2, "Timeout loading page 2")]
        # two attempts on page 2, one on each of the others
        assert pagination.session.fetch_html.await_count == 4

    @pytest.mark.asyncio
    async def test_not_found_page_not_retried(self):
        pagination = pagination_over({
            1: EntityNotFoundError("Page not found"),
            2: listing_page(["2"], last=True),
        })
        records, skipped = await pagination.scrape_pages(BASE, "pageUsers", extract_player_rows)
        assert skipped == [1]
        assert pagination.session.fetch_html.await_count == 2

    @pytest.mark.asyncio
    async def test_listing_unavailable_raises(self):
        pagination = pagination_over({n: TransientError("down") for n in range(1, 5)})
        with pytest.raises(TransientError):
            await pagination.scrape_pages(BASE, "pageUsers", extract_player_rows)

    @pytest.mark.asyncio
    async def test_stops_after_empty_pages(self):
        pagination = pagination_over({n: listing_page([]) for n in range(1, 10)})
        records, _ = await pagination.scrape_pages(BASE, "pageUsers", extract_player_rows)
        assert records == []
        assert pagination.session.fetch_html.await_count == 3

    @pytest.mark.asyncio
    async def test_max_records(self):
        pagination = pagination_over({
            1: listing_page(["1", "2"]),
            2: listing_page(["3", "4"]),
        })
        records, _ = await pagination.scrape_pages(
            BASE, "pageUsers", extract_player_rows, max_records=3
        )
        assert [r["id"] for r in records] == ["1", "2", "3"]

    @pytest.mark.asyncio
    async def test_deep_pages_get_longer_timeout(self):
        pagination = pagination_over({101: listing_page(["x"], last=True)})
        await pagination.scrape_pages(BASE, "pageUsers", extract_player_rows, start_page=101)
        assert pagination.session.fetch_html.await_args.kwargs["timeout_ms"] == HIGH_PAGE_TIMEOUT_MS


class TestRetryPages:
    @pytest.mark.asyncio
    async def test_retries_given_pages_once_each(self):
        pagination = pagination_over({
            3: listing_page(["30"]),
            7: TransientError("still down"),
        })
        reported = []

        async def on_skip(page_number, exc):
            reported.append(page_number)

        records, failed = await pagination.retry_pages(
            BASE, "pageUsers", extract_player_rows, [7, 3, 3], on_page_skipped=on_skip
        )

        assert [r["id"] for r in records] == ["30"]
        assert failed == [7]
        assert reported == [7]

    @pytest.mark.asyncio
    async def test_games_scraper_retries_listing_pages(self):
        pagination = pagination_over({2: games_page(["9001", "9002"])})
        scraper = GamesScraper(pagination, "https://gomafia.pro")

        records, failed = await scraper.retry_skipped_pages([2])

        assert [r["id"] for r in records] == ["9001", "9002"]
        assert failed == []
        url = pagination.session.fetch_html.await_args.args[0]
        assert url == "https://gomafia.pro/games?page=2"

    @pytest.mark.asyncio
    async def test_players_scraper_reuses_filters(self):
        pagination = pagination_over({4: listing_page(["40"])})
        scraper = PlayersScraper(pagination, "https://gomafia.pro")

        await scraper.retry_skipped_pages([4], {"year": 2023, "region": "Москва"})

        url = pagination.session.fetch_html.await_args.args[0]
        assert url == "https://gomafia.pro/rating?yearUsers=2023&regionUsers=Москва&pageUsers=4"

    def test_tournament_listing_url(self):
        scraper = TournamentsScraper(MagicMock(), "https://gomafia.pro")
        assert scraper.listing_url("past") == "https://gomafia.pro/tournaments?time=past"

    def test_build_page_url(self):
        assert PaginationHandler.build_page_url("https://x/t", "page", 2) == "https://x/t?page=2"
        assert PaginationHandler.build_page_url("https://x/t?a=1", "page", 2) == "https://x/t?a=1&page=2"


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_first_request_does_not_wait(self):
        limiter = RateLimiter(2000)
        with patch("mafia_insight.gomafia.scrapers.asyncio.sleep", new=AsyncMock()) as mock_sleep:
            await limiter.wait()
        mock_sleep.assert_not_awaited()
        assert limiter.total_requests == 1

    @pytest.mark.asyncio
    async def test_back_to_back_requests_wait(self):
        limiter = RateLimiter(2000)
        with patch("mafia_insight.gomafia.scrapers.asyncio.sleep", new=AsyncMock()) as mock_sleep:
            await limiter.wait()
            await limiter.wait()
        delay = mock_sleep.await_args.args[0]
        assert 0 < delay <= 2.0
