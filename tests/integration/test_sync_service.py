"""
Integration tests for SyncService.

Uses AsyncMock for the gomafia.pro client and an in-memory SQLite DB.
No real browser is launched.
"""
import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, call, patch

import pytest
from sqlmodel import Session, select

from mafia_insight.gomafia.errors import EntityNotFoundError, TransientError
from mafia_insight.models.entities import EntitySyncStatus, Game, GameParticipation, Player
from mafia_insight.models.sync import (
    ImportPhase,
    SkippedEntity,
    SyncLog,
    SyncLogStatus,
    SyncStatus,
    SyncType,
)
from mafia_insight.sync.service import SyncAlreadyRunningError, SyncPausedError, SyncResult


# ─── Helpers ──────────────────────────────────────────────────────────────────

def player_raw(gomafia_id: str, elo: float = 1500, total_games: int = 10, wins: int = 6, losses: int = 4) -> dict:
    return {
        "id": gomafia_id,
        "name": f"Player {gomafia_id}",
        "eloRating": elo,
        "totalGames": total_games,
        "wins": wins,
        "losses": losses,
        "region": "Москва",
        "clubId": None,
    }


def game_raw(gomafia_id: str, player_ids=("1", "2"), winner: str = "RED") -> dict:
    teams = ["RED", "BLACK"]
    return {
        "id": gomafia_id,
        "date": "2025-03-01T18:30:00Z",
        "duration": 45,
        "winnerTeam": winner,
        "status": "COMPLETED",
        "tournamentId": None,
        "participants": [
            {"playerId": pid, "role": "CITIZEN", "team": teams[i % 2]}
            for i, pid in enumerate(player_ids)
        ],
    }


def seed_player(engine, gomafia_id: str, **overrides) -> Player:
    fields = dict(
        gomafia_id=gomafia_id,
        name=f"Player {gomafia_id}",
        elo_rating=1500,
        total_games=10,
        wins=6,
        losses=4,
        sync_status=EntitySyncStatus.SYNCED,
        last_sync_at=datetime.utcnow() - timedelta(days=2),
    )
    fields.update(overrides)
    player = Player(**fields)
    with Session(engine) as s:
        s.add(player)
        s.commit()
        s.refresh(player)
    return player


def all_rows(engine, model):
    with Session(engine) as s:
        return s.exec(select(model)).all()


def player_by_id(engine, gomafia_id: str) -> Player:
    with Session(engine) as s:
        return s.exec(select(Player).where(Player.gomafia_id == gomafia_id)).one()


# ─── Full sync ────────────────────────────────────────────────────────────────

class TestFullSync:
    @pytest.mark.asyncio
    async def test_imports_players_then_games(self, service, mock_client, engine):
        mock_client.parse_player_list.return_value = [{"id": "1"}, {"id": "2"}]
        mock_client.parse_game_list.return_value = [{"id": "g1"}]
        mock_client.parse_player.side_effect = lambda pid: player_raw(pid)
        mock_client.parse_game.return_value = game_raw("g1")

        result = await service.run_sync(SyncType.FULL)

        assert result.success
        assert result.records_processed == 3
        assert result.errors == []
        assert not result.paused
        assert {p.gomafia_id for p in all_rows(engine, Player)} == {"1", "2"}
        assert player_by_id(engine, "1").sync_status == EntitySyncStatus.SYNCED

        game = all_rows(engine, Game)[0]
        assert game.gomafia_id == "g1"
        assert game.winner_team == "RED"
        participations = all_rows(engine, GameParticipation)
        assert len(participations) == 2
        assert sorted(p.is_winner for p in participations) == [False, True]

        logs = all_rows(engine, SyncLog)
        assert len(logs) == 1
        assert logs[0].status == SyncLogStatus.COMPLETED
        assert logs[0].records_processed == 3
        assert logs[0].end_time is not None
        assert result.sync_log_id == logs[0].id

        with Session(engine) as s:
            status = s.get(SyncStatus, "current")
        assert not status.is_running
        assert status.progress == 100
        assert status.last_sync_type == SyncType.FULL
        mock_client.close.assert_awaited()

    @pytest.mark.asyncio
    async def test_resync_replaces_participations(self, service, mock_client, engine):
        mock_client.parse_player_list.return_value = [{"id": "1"}, {"id": "2"}]
        mock_client.parse_game_list.return_value = [{"id": "g1"}]
        mock_client.parse_player.side_effect = lambda pid: player_raw(pid)
        mock_client.parse_game.return_value = game_raw("g1")

        await service.run_sync(SyncType.FULL)
        mock_client.parse_game.return_value = game_raw("g1", winner="BLACK")
        await service.run_sync(SyncType.FULL)

        assert len(all_rows(engine, Game)) == 1
        assert all_rows(engine, Game)[0].winner_team == "BLACK"
        assert len(all_rows(engine, GameParticipation)) == 2

    @pytest.mark.asyncio
    async def test_invalid_record_is_reported_and_skipped(self, service, mock_client, engine):
        mock_client.parse_player_list.return_value = [{"id": "1"}, {"id": "2"}]
        mock_client.parse_player.side_effect = lambda pid: (
            player_raw(pid) if pid == "1" else player_raw(pid, wins=5, losses=3)
        )

        result = await service.run_sync(SyncType.FULL)

        assert result.records_processed == 1
        assert result.invalid_count == 1
        assert result.errors == ["Invalid player data for 2"]
        skipped = all_rows(engine, SkippedEntity)
        assert len(skipped) == 1
        assert skipped[0].phase == ImportPhase.PLAYERS
        assert skipped[0].entity_id == "2"
        assert skipped[0].sync_log_id == result.sync_log_id
        assert all_rows(engine, SyncLog)[0].errors == ["Invalid player data for 2"]

    @pytest.mark.asyncio
    async def test_transient_fetch_error_is_retried(self, service, mock_client, engine):
        mock_client.parse_player_list.return_value = [{"id": "1"}]
        mock_client.parse_player.side_effect = [TransientError("Timeout loading /stats/1"), player_raw("1")]

        result = await service.run_sync(SyncType.FULL)

        assert result.records_processed == 1
        assert mock_client.parse_player.await_count == 2

    @pytest.mark.asyncio
    async def test_not_found_is_not_retried(self, service, mock_client, engine):
        mock_client.parse_player_list.return_value = [{"id": "404"}]
        mock_client.parse_player.side_effect = EntityNotFoundError("Player 404 not found")

        result = await service.run_sync(SyncType.FULL)

        assert mock_client.parse_player.await_count == 1
        assert result.errors == ["Failed to sync player 404: Player 404 not found"]
        assert all_rows(engine, SkippedEntity)[0].error_code == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_game_with_unknown_player_is_skipped(self, service, mock_client, engine):
        mock_client.parse_game_list.return_value = [{"id": "g1"}]
        mock_client.parse_game.return_value = game_raw("g1", player_ids=("99",))

        result = await service.run_sync(SyncType.FULL)

        assert result.records_processed == 0
        assert "Player ID not found in mapping: 99" in result.errors[0]
        assert all_rows(engine, Game) == []
        assert all_rows(engine, SkippedEntity)[0].phase == ImportPhase.GAMES

    @pytest.mark.asyncio
    async def test_skipped_listing_pages_are_recorded(self, service, mock_client, engine):
        async def listing(page, limit, on_page_skipped=None):
            await on_page_skipped(4, TransientError("Timeout loading page 4"))
            return [{"id": "1"}]

        mock_client.parse_player_list.side_effect = listing
        mock_client.parse_player.side_effect = lambda pid: player_raw(pid)

        result = await service.run_sync(SyncType.FULL)

        assert result.skipped_pages == {"PLAYERS": [4]}
        assert result.records_processed == 1
        log = all_rows(engine, SyncLog)[0]
        assert log.errors["skippedPages"] == {"PLAYERS": [4]}
        page_rows = all_rows(engine, SkippedEntity)
        assert len(page_rows) == 1
        assert page_rows[0].page_number == 4
        assert page_rows[0].entity_type == "players_page"
        assert page_rows[0].error_code == "TRANSIENT"

    @pytest.mark.asyncio
    async def test_page_skipped_again_keeps_one_open_row(self, service, mock_client, engine):
        async def listing(page, limit, on_page_skipped=None):
            await on_page_skipped(4, TransientError("Timeout loading page 4"))
            return []

        mock_client.parse_player_list.side_effect = listing

        await service.run_sync(SyncType.FULL)
        second = await service.run_sync(SyncType.FULL)

        assert second.skipped_pages == {"PLAYERS": [4]}
        assert len(all_rows(engine, SkippedEntity)) == 1

        service.skipped.mark_as_failed(all_rows(engine, SkippedEntity)[0].id)
        await service.run_sync(SyncType.FULL)
        assert len(all_rows(engine, SkippedEntity)) == 2

    @pytest.mark.asyncio
    async def test_listing_failure_fails_the_run(self, service, mock_client, engine):
        mock_client.parse_player_list.side_effect = TransientError("listing unavailable")

        with pytest.raises(TransientError):
            await service.run_sync(SyncType.FULL)

        log = all_rows(engine, SyncLog)[0]
        assert log.status == SyncLogStatus.FAILED
        assert log.errors == ["listing unavailable"]
        with Session(engine) as s:
            status = s.get(SyncStatus, "current")
        assert status.last_error == "listing unavailable"
        assert not status.is_running
        assert not service.status.is_running
        mock_client.close.assert_awaited()


# ─── Incremental sync ─────────────────────────────────────────────────────────

class TestIncrementalSync:
    @pytest.mark.asyncio
    async def test_mixed_outcomes(self, service, mock_client, engine):
        stale = datetime.utcnow() - timedelta(days=2)
        seed_player(engine, "A", last_sync_at=stale)
        seed_player(engine, "B", last_sync_at=stale)
        seed_player(engine, "C", last_sync_at=stale)

        def fetch(pid):
            if pid == "A":
                raise TransientError("timeout")
            if pid == "C":
                return player_raw(pid, elo=1650)
            return player_raw(pid)

        mock_client.parse_player.side_effect = fetch
        started = datetime.utcnow()

        with patch.object(service, "_upsert_player", wraps=service._upsert_player) as upsert:
            result = await service.run_sync(SyncType.INCREMENTAL)

        assert result.records_processed == 2
        assert len(result.errors) == 1
        assert "timeout" in result.errors[0]

        a, b, c = (player_by_id(engine, pid) for pid in ("A", "B", "C"))
        assert a.sync_status == EntitySyncStatus.ERROR
        assert b.last_sync_at >= started
        assert b.sync_status == EntitySyncStatus.SYNCED
        assert b.elo_rating == 1500
        assert c.elo_rating == 1650
        assert c.sync_status == EntitySyncStatus.SYNCED
        # Only C was written
        assert upsert.call_count == 1
        assert upsert.call_args.args[0]["gomafia_id"] == "C"
        mock_client.parse_player_list.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_fresh_rows_are_left_alone(self, service, mock_client, engine):
        seed_player(engine, "fresh", last_sync_at=datetime.utcnow())
        seed_player(engine, "pending", sync_status=EntitySyncStatus.PENDING, last_sync_at=None)
        mock_client.parse_player.side_effect = lambda pid: player_raw(pid)

        result = await service.run_sync(SyncType.INCREMENTAL)

        assert result.records_processed == 1
        mock_client.parse_player.assert_awaited_once_with("pending")

    @pytest.mark.asyncio
    async def test_failed_rows_are_retried_next_time(self, service, mock_client, engine):
        seed_player(engine, "E", sync_status=EntitySyncStatus.ERROR, last_sync_at=datetime.utcnow())
        mock_client.parse_player.side_effect = lambda pid: player_raw(pid)

        result = await service.run_sync(SyncType.INCREMENTAL)

        assert result.records_processed == 1
        assert player_by_id(engine, "E").sync_status == EntitySyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_no_skipped_entities_recorded(self, service, mock_client, engine):
        seed_player(engine, "A")
        mock_client.parse_player.side_effect = TransientError("timeout")

        await service.run_sync(SyncType.INCREMENTAL)

        assert all_rows(engine, SkippedEntity) == []

    @pytest.mark.asyncio
    async def test_game_saved_from_listing_is_filled_in(self, service, mock_client, engine):
        seed_player(engine, "1", last_sync_at=datetime.utcnow())
        seed_player(engine, "2", last_sync_at=datetime.utcnow())
        with Session(engine) as s:
            s.add(Game(gomafia_id="9001", sync_status=EntitySyncStatus.PENDING))
            s.commit()
        mock_client.parse_game.side_effect = lambda gid: game_raw(gid)

        result = await service.run_sync(SyncType.INCREMENTAL)

        assert result.records_processed == 1
        game = all_rows(engine, Game)[0]
        assert game.date == datetime(2025, 3, 1, 18, 30)
        assert game.sync_status == EntitySyncStatus.SYNCED
        assert len(all_rows(engine, GameParticipation)) == 2


# ─── Single-flight ────────────────────────────────────────────────────────────

class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_rejects_when_slot_taken(self, service, engine):
        service.status.try_begin(SyncType.FULL)
        with pytest.raises(SyncAlreadyRunningError):
            await service.run_sync(SyncType.INCREMENTAL)
        assert all_rows(engine, SyncLog) == []
        # The rejected call must not free the other run's slot
        assert service.status.is_running

    @pytest.mark.asyncio
    async def test_overlapping_runs(self, service, mock_client, engine):
        async def slow_listing(page, limit, on_page_skipped=None):
            await asyncio.sleep(0.01)
            return []

        mock_client.parse_player_list.side_effect = slow_listing

        outcomes = await asyncio.gather(
            service.run_sync(SyncType.FULL),
            service.run_sync(SyncType.FULL),
            return_exceptions=True,
        )

        rejected = [o for o in outcomes if isinstance(o, SyncAlreadyRunningError)]
        completed = [o for o in outcomes if isinstance(o, SyncResult)]
        assert len(rejected) == 1
        assert len(completed) == 1
        assert len(all_rows(engine, SyncLog)) == 1
        assert not service.status.is_running


# ─── Retry wrapper ────────────────────────────────────────────────────────────

class TestRunSyncWithRetry:
    @pytest.mark.asyncio
    async def test_always_failing_orchestrator(self, service, engine):
        service.retry_delay_ms = 1000
        failing = AsyncMock(side_effect=RuntimeError("db down"))

        with patch.object(service, "run_sync", new=failing), \
             patch("mafia_insight.sync.service.asyncio.sleep", new=AsyncMock()) as mock_sleep:
            result = await service.run_sync_with_retry(SyncType.INCREMENTAL, max_retries=3)

        assert result.success is False
        assert result.errors == ["db down"]
        assert failing.await_count == 3
        assert mock_sleep.await_args_list == [call(1.0), call(2.0)]

        logs = all_rows(engine, SyncLog)
        assert len(logs) == 1
        assert logs[0].status == SyncLogStatus.FAILED
        assert len(logs[0].errors) == 3
        assert logs[0].errors[0] == {"attempt": 1, "error": "db down"}

    @pytest.mark.asyncio
    async def test_orchestrator_gets_the_wrapper_log(self, service, engine):
        ok = AsyncMock(return_value=SyncResult(success=True, records_processed=5))

        with patch.object(service, "run_sync", new=ok):
            await service.run_sync_with_retry(SyncType.FULL)

        log = all_rows(engine, SyncLog)[0]
        ok.assert_awaited_once_with(SyncType.FULL, skip_sync_log_creation=True, sync_log_id=log.id)

    @pytest.mark.asyncio
    async def test_success_after_failure_keeps_history(self, service, engine):
        flaky = AsyncMock(side_effect=[
            RuntimeError("connection reset"),
            SyncResult(success=True, records_processed=5),
        ])

        with patch.object(service, "run_sync", new=flaky):
            result = await service.run_sync_with_retry(SyncType.FULL)

        assert result.success
        assert result.retry_count == 1
        log = all_rows(engine, SyncLog)[0]
        assert log.status == SyncLogStatus.COMPLETED
        assert log.records_processed == 5
        assert log.errors == {
            "errors": [],
            "retryErrors": [{"attempt": 1, "error": "connection reset"}],
        }
        assert result.sync_log_id == log.id

    @pytest.mark.asyncio
    async def test_real_run_writes_a_single_log(self, service, mock_client, engine):
        mock_client.parse_player_list.return_value = [{"id": "1"}]
        mock_client.parse_player.side_effect = lambda pid: player_raw(pid)

        result = await service.run_sync_with_retry(SyncType.FULL)

        assert result.success
        logs = all_rows(engine, SyncLog)
        assert len(logs) == 1
        assert logs[0].status == SyncLogStatus.COMPLETED
        assert logs[0].records_processed == 1

    @pytest.mark.asyncio
    async def test_real_failures_close_the_wrapper_log_only(self, service, mock_client, engine):
        mock_client.parse_player_list.side_effect = TransientError("listing unavailable")

        result = await service.run_sync_with_retry(SyncType.FULL, max_retries=2)

        assert not result.success
        assert mock_client.parse_player_list.await_count == 2
        logs = all_rows(engine, SyncLog)
        assert len(logs) == 1
        assert logs[0].status == SyncLogStatus.FAILED
        assert [e["attempt"] for e in logs[0].errors] == [1, 2]

    @pytest.mark.asyncio
    async def test_already_running(self, service, engine):
        service.status.try_begin(SyncType.FULL)

        result = await service.run_sync_with_retry(SyncType.INCREMENTAL)

        assert result.success is False
        assert result.errors == ["A sync is already running"]
        assert all_rows(engine, SyncLog) == []


# ─── Pause / resume ───────────────────────────────────────────────────────────

class TestPauseResume:
    @pytest.mark.asyncio
    async def test_pause_between_batches_then_resume(self, service, mock_client, engine):
        service.batch_size = 1
        mock_client.parse_player_list.return_value = [{"id": "1"}, {"id": "2"}, {"id": "3"}]

        async def fetch(pid):
            if pid == "1":
                service.pause()
            return player_raw(pid)

        mock_client.parse_player.side_effect = fetch

        paused = await service.run_sync(SyncType.FULL)

        assert paused.success
        assert paused.paused
        assert paused.records_processed == 1
        assert {p.gomafia_id for p in all_rows(engine, Player)} == {"1"}
        assert all_rows(engine, SyncLog)[0].status == SyncLogStatus.PAUSED
        with Session(engine) as s:
            status = s.get(SyncStatus, "current")
        assert status.is_paused
        assert not status.is_running
        assert status.checkpoint_offset == 1
        assert status.checkpoint_batch == 2
        assert status.checkpoint_type == SyncType.FULL
        assert status.checkpoint_phase == "PLAYERS"

        resumed = await service.resume()

        assert resumed.success
        assert not resumed.paused
        assert resumed.records_processed == 2
        assert [c.args[0] for c in mock_client.parse_player.await_args_list] == ["1", "2", "3"]
        assert {p.gomafia_id for p in all_rows(engine, Player)} == {"1", "2", "3"}
        with Session(engine) as s:
            status = s.get(SyncStatus, "current")
        assert not status.is_paused
        assert status.checkpoint_offset is None
        assert status.progress == 100
        assert [log.status for log in all_rows(engine, SyncLog)] == [
            SyncLogStatus.PAUSED, SyncLogStatus.COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_resume_without_checkpoint(self, service):
        service.pause()
        assert await service.resume() is None
        assert not service.status.pause_requested

    @pytest.mark.asyncio
    async def test_pause_while_idle_reports_not_running(self, service):
        assert service.pause() is False
        assert service.status.pause_requested

    @pytest.mark.asyncio
    async def test_new_run_refused_while_paused_run_waits(self, service, mock_client, engine):
        service.batch_size = 1
        mock_client.parse_player_list.return_value = [{"id": "1"}, {"id": "2"}]

        async def fetch(pid):
            service.pause()
            return player_raw(pid)

        mock_client.parse_player.side_effect = fetch
        await service.run_sync(SyncType.FULL)
        checkpoint = service.status.checkpoint

        with pytest.raises(SyncPausedError):
            await service.run_sync(SyncType.INCREMENTAL)
        wrapped = await service.run_sync_with_retry(SyncType.FULL)

        assert wrapped.success is False
        assert wrapped.errors == ["A paused sync is waiting to be resumed"]
        assert service.status.checkpoint == checkpoint
        assert not service.status.is_running
        with Session(engine) as s:
            assert s.get(SyncStatus, "current").checkpoint_offset == 1
        assert len(all_rows(engine, SyncLog)) == 1

        resumed = await service.resume()
        assert resumed.records_processed == 1
