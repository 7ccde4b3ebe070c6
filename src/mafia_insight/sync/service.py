"""
SyncService: batched import of gomafia.pro players and games into the DB.

Flow for run_sync():
  1. Claim the single run slot (SyncStatusTracker.try_begin)
  2. Create SyncLog (status=RUNNING) unless the caller already owns one
  3. Dispatch to run_full_sync() or run_incremental_sync()
  4. Close the SyncLog (COMPLETED, or PAUSED if a pause was requested)
  5. Release the browser and the run slot

Records are processed in batches; a failing record is logged into the run's
error list and the batch moves on. Only an exception escaping the dispatch
(DB unavailable, listing unreachable) fails the run: the owned SyncLog is
marked FAILED and the exception re-raised.

run_sync_with_retry() wraps the whole run in a second retry layer with its
own SyncLog and exponential backoff. It never raises.
"""
import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlmodel import Session, col, or_, select

from mafia_insight.config import get_settings
from mafia_insight.gomafia.errors import error_code
from mafia_insight.models.entities import (
    EntitySyncStatus,
    Game,
    GameParticipation,
    Player,
    Tournament,
)
from mafia_insight.models.sync import ImportPhase, SyncLog, SyncLogStatus, SyncType
from mafia_insight.sync.retry import retry_operation
from mafia_insight.sync.skipped import SkippedEntitiesManager, SkippedEntityData
from mafia_insight.sync.status import Checkpoint, SyncStatusTracker
from mafia_insight.sync.transform import (
    game_summary,
    has_game_data_changed,
    has_player_data_changed,
    transform_game_data,
    transform_game_participants,
    transform_player_data,
    validate_game_data,
    validate_player_data,
)

logger = logging.getLogger(__name__)

FULL_SYNC_LIMIT = 1000  # per listing
INCREMENTAL_LIMIT = 1000  # players + games
STALE_AFTER = timedelta(hours=24)


class SyncAlreadyRunningError(RuntimeError):
    """Another sync holds the run slot."""


class SyncPausedError(RuntimeError):
    """A paused run holds a checkpoint; resume it before starting another."""


class InvalidRecordError(ValueError):
    """A scraped record failed validation."""


@dataclass
class SyncResult:
    success: bool
    records_processed: int = 0
    errors: List[str] = field(default_factory=list)
    duration: int = 0  # ms
    valid_count: int = 0
    invalid_count: int = 0
    retry_count: int = 0
    skipped_pages: Dict[str, List[int]] = field(default_factory=dict)
    paused: bool = False
    sync_log_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class WorkItem:
    phase: ImportPhase
    gomafia_id: str
    row: Any = None  # stored Player/Game, incremental only

    @property
    def kind(self) -> str:
        return "player" if self.phase == ImportPhase.PLAYERS else "game"


@dataclass
class RunContext:
    """Accumulator for one run of the batch loop."""

    sync_type: SyncType
    batch_size: int = 100
    max_retries: int = 3
    sync_log_id: Optional[int] = None
    start_offset: int = 0
    records_processed: int = 0
    invalid_count: int = 0
    errors: List[str] = field(default_factory=list)
    skipped_pages: Dict[str, List[int]] = field(default_factory=dict)
    phase: Optional[ImportPhase] = None
    paused_at: Optional[int] = None
    total: int = 0

    @property
    def paused(self) -> bool:
        return self.paused_at is not None


class SyncService:
    """Runs full and incremental syncs against a gomafia.pro client."""

    def __init__(
        self,
        client,
        engine,
        batch_size: int = 100,
        max_retries: int = 3,
        retry_delay_ms: int = 1000,
        record_retry_delay_ms: int = 100,
        status: Optional[SyncStatusTracker] = None,
        skipped: Optional[SkippedEntitiesManager] = None,
    ):
        """
        Args:
            client: GomafiaClient instance (or AsyncMock in tests).
            engine: SQLAlchemy engine (SQLModel create_engine result).
            batch_size: Records per batch; pause is checked between batches.
            max_retries: Attempts for each record and for the whole-run wrapper.
            retry_delay_ms: Base backoff of the whole-run wrapper.
            record_retry_delay_ms: Base backoff of per-record retries.
        """
        self.client = client
        self.engine = engine
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.retry_delay_ms = retry_delay_ms
        self.record_retry_delay_ms = record_retry_delay_ms
        self.status = status or SyncStatusTracker(engine)
        self.skipped = skipped or SkippedEntitiesManager(engine)

    # ─── Orchestrator ─────────────────────────────────────────────────────────

    async def run_sync(
        self,
        sync_type,
        batch_size: Optional[int] = None,
        max_retries: Optional[int] = None,
        skip_sync_log_creation: bool = False,
        sync_log_id: Optional[int] = None,
        resume_from: Optional[Checkpoint] = None,
    ) -> SyncResult:
        """
        Run one sync of the given type.

        Args:
            sync_type: SyncType or its string value.
            skip_sync_log_creation: The caller owns the SyncLog and closes it.
            sync_log_id: The caller's SyncLog, referenced by skipped entities.
            resume_from: Checkpoint of a paused run to continue from.

        Raises:
            SyncAlreadyRunningError: if another run is in progress.
            SyncPausedError: if a paused run is waiting and resume_from is not given.
            Any exception escaping the dispatch, after recording it.
        """
        sync_type = SyncType(sync_type)
        started = time.monotonic()
        start_progress = resume_from.progress if resume_from else 0
        if resume_from is None and self.status.checkpoint is not None:
            raise SyncPausedError("A paused sync is waiting to be resumed")
        if not self.status.try_begin(sync_type, progress=start_progress):
            raise SyncAlreadyRunningError("A sync is already running")

        owns_log = not skip_sync_log_creation
        try:
            if owns_log:
                sync_log_id = self._create_sync_log(sync_type).id

            ctx = RunContext(
                sync_type=sync_type,
                batch_size=batch_size or self.batch_size,
                max_retries=max_retries or self.max_retries,
                sync_log_id=sync_log_id,
            )
            # Incremental re-selects stale rows, so processed ones drop out
            if resume_from is not None and sync_type == SyncType.FULL:
                ctx.start_offset = resume_from.offset
            logger.info(
                "%s sync starting (batch size %d, offset %d)",
                sync_type.value, ctx.batch_size, ctx.start_offset,
            )

            try:
                if sync_type == SyncType.FULL:
                    await self.run_full_sync(ctx)
                else:
                    await self.run_incremental_sync(ctx)
            except Exception as exc:
                logger.error("%s sync failed: %s", sync_type.value, exc)
                if owns_log:
                    self._finish_sync_log(
                        sync_log_id,
                        status=SyncLogStatus.FAILED,
                        records_processed=ctx.records_processed,
                        errors=ctx.errors + [str(exc)],
                    )
                self.status.fail(str(exc))
                raise

            if ctx.paused:
                if owns_log:
                    self._finish_sync_log(
                        sync_log_id,
                        status=SyncLogStatus.PAUSED,
                        records_processed=ctx.records_processed,
                        errors=self._log_errors(ctx.errors, ctx.skipped_pages),
                    )
                self.status.pause_run(Checkpoint(
                    sync_type=sync_type,
                    phase=ctx.phase.value if ctx.phase else "",
                    batch=ctx.paused_at // ctx.batch_size + 1,
                    offset=ctx.paused_at,
                    progress=self.status.progress,
                ))
            else:
                if owns_log:
                    self._finish_sync_log(
                        sync_log_id,
                        status=SyncLogStatus.COMPLETED,
                        records_processed=ctx.records_processed,
                        errors=self._log_errors(ctx.errors, ctx.skipped_pages),
                    )
                self.status.complete(sync_type)
                logger.info(
                    "%s sync completed: %d records, %d errors",
                    sync_type.value, ctx.records_processed, len(ctx.errors),
                )

            return SyncResult(
                success=True,
                records_processed=ctx.records_processed,
                errors=ctx.errors,
                duration=int((time.monotonic() - started) * 1000),
                valid_count=ctx.records_processed,
                invalid_count=ctx.invalid_count,
                skipped_pages=ctx.skipped_pages,
                paused=ctx.paused,
                sync_log_id=sync_log_id,
            )
        finally:
            await self._close_client()
            self.status.release()

    async def run_full_sync(self, ctx: Optional[RunContext] = None) -> RunContext:
        """Import up to FULL_SYNC_LIMIT players and games from the listings."""
        ctx = ctx or RunContext(SyncType.FULL, self.batch_size, self.max_retries)

        players = await self.client.parse_player_list(
            1, FULL_SYNC_LIMIT,
            on_page_skipped=self._page_skip_recorder(ctx, ImportPhase.PLAYERS, "players_page"),
        )
        games = await self.client.parse_game_list(
            1, FULL_SYNC_LIMIT,
            on_page_skipped=self._page_skip_recorder(ctx, ImportPhase.GAMES, "games_page"),
        )
        items = [
            WorkItem(ImportPhase.PLAYERS, str(p["id"])) for p in players if p.get("id")
        ] + [
            WorkItem(ImportPhase.GAMES, str(g["id"])) for g in games if g.get("id")
        ]
        logger.info("Full sync: %d players, %d games listed", len(players), len(games))

        await self._process_batches(ctx, items, self._sync_listed_record, self._record_skipped)
        return ctx

    async def run_incremental_sync(self, ctx: Optional[RunContext] = None) -> RunContext:
        """Re-check stale or failed rows; write only what changed."""
        ctx = ctx or RunContext(SyncType.INCREMENTAL, self.batch_size, self.max_retries)

        items = self._select_stale_records(INCREMENTAL_LIMIT)
        logger.info("Incremental sync: %d stale records", len(items))

        await self._process_batches(ctx, items, self._resync_record, self._mark_record_error)
        return ctx

    # ─── Retry wrapper ────────────────────────────────────────────────────────

    async def run_sync_with_retry(self, sync_type, max_retries: Optional[int] = None) -> SyncResult:
        """
        Run a sync, retrying the whole run with exponential backoff.

        One SyncLog covers all attempts: COMPLETED with the retry history on
        success, FAILED with one {"attempt", "error"} entry per attempt on
        exhaustion. Never raises.
        """
        sync_type = SyncType(sync_type)
        max_retries = max_retries or self.max_retries
        started = time.monotonic()

        if self.status.is_running:
            logger.warning("%s sync skipped: a sync is already running", sync_type.value)
            return SyncResult(success=False, errors=["A sync is already running"])
        if self.status.checkpoint is not None:
            logger.warning(
                "%s sync skipped: a paused sync is waiting to be resumed", sync_type.value
            )
            return SyncResult(success=False, errors=["A paused sync is waiting to be resumed"])

        log = self._create_sync_log(sync_type)
        retry_errors: List[Dict[str, Any]] = []
        last_error: Optional[Exception] = None

        for attempt in range(max_retries):
            try:
                result = await self.run_sync(
                    sync_type, skip_sync_log_creation=True, sync_log_id=log.id
                )
            except Exception as exc:
                last_error = exc
                retry_errors.append({"attempt": attempt + 1, "error": str(exc)})
                logger.warning(
                    "Sync attempt %d/%d failed: %s", attempt + 1, max_retries, exc
                )
                if isinstance(exc, (SyncAlreadyRunningError, SyncPausedError)):
                    break
                if attempt < max_retries - 1:
                    await asyncio.sleep(self.retry_delay_ms * 2 ** attempt / 1000)
                continue

            self._finish_sync_log(
                log.id,
                status=SyncLogStatus.PAUSED if result.paused else SyncLogStatus.COMPLETED,
                records_processed=result.records_processed,
                errors=self._log_errors(result.errors, result.skipped_pages, retry_errors),
            )
            result.retry_count = len(retry_errors)
            result.sync_log_id = log.id
            result.duration = int((time.monotonic() - started) * 1000)
            return result

        self._finish_sync_log(log.id, status=SyncLogStatus.FAILED, errors=retry_errors)
        logger.error("%s sync failed after %d attempts", sync_type.value, len(retry_errors))
        return SyncResult(
            success=False,
            errors=[str(last_error)],
            duration=int((time.monotonic() - started) * 1000),
            retry_count=len(retry_errors),
            sync_log_id=log.id,
        )

    # ─── Pause / resume ───────────────────────────────────────────────────────

    def pause(self) -> bool:
        """Ask the running sync to stop after its current batch. True if one is running."""
        self.status.request_pause()
        logger.info("Sync pause requested")
        return self.status.is_running

    async def resume(self) -> Optional[SyncResult]:
        """Lift the pause; continue the paused run if it left a checkpoint."""
        checkpoint = self.status.clear_pause()
        if checkpoint is None:
            logger.info("Sync resumed; no checkpoint to continue from")
            return None
        logger.info(
            "Resuming %s sync at offset %d", checkpoint.sync_type.value, checkpoint.offset
        )
        return await self.run_sync(checkpoint.sync_type, resume_from=checkpoint)

    async def retry_entity(self, phase, gomafia_id: str) -> None:
        """
        Re-import one player or game skipped by an earlier full sync.

        Raises:
            SyncAlreadyRunningError: if a sync is using the browser.
            ValueError: for phases other than PLAYERS and GAMES.
            Whatever the fetch, validation or write raised.
        """
        phase = ImportPhase(phase)
        if phase not in (ImportPhase.PLAYERS, ImportPhase.GAMES):
            raise ValueError(f"Entities of phase {phase.value} cannot be retried individually")
        if self.status.is_running:
            raise SyncAlreadyRunningError("A sync is already running")

        ctx = RunContext(SyncType.FULL, self.batch_size, self.max_retries)
        try:
            await self._sync_listed_record(ctx, WorkItem(phase, gomafia_id))
        finally:
            await self._close_client()

    # ─── Batch loop ───────────────────────────────────────────────────────────

    async def _process_batches(
        self,
        ctx: RunContext,
        items: List[WorkItem],
        handle: Callable[[RunContext, WorkItem], Awaitable[None]],
        on_failure: Callable[[RunContext, WorkItem, Exception], None],
    ) -> None:
        ctx.total = len(items)
        for batch_start in range(ctx.start_offset, ctx.total, ctx.batch_size):
            if self.status.pause_requested:
                ctx.paused_at = batch_start
                return

            batch = items[batch_start:batch_start + ctx.batch_size]
            ctx.phase = batch[0].phase
            self.status.publish_progress(
                round(100 * batch_start / ctx.total),
                f"Processing {batch[0].kind}s {batch_start + 1}-{batch_start + len(batch)} of {ctx.total}",
            )

            for item in batch:
                try:
                    await handle(ctx, item)
                except Exception as exc:
                    if isinstance(exc, InvalidRecordError):
                        message = str(exc)
                    else:
                        message = f"Failed to sync {item.kind} {item.gomafia_id}: {exc}"
                    logger.warning(message)
                    ctx.errors.append(message)
                    ctx.invalid_count += 1
                    on_failure(ctx, item, exc)

    # ─── Full sync steps ──────────────────────────────────────────────────────

    async def _sync_listed_record(self, ctx: RunContext, item: WorkItem) -> None:
        if item.phase == ImportPhase.PLAYERS:
            raw = await retry_operation(
                lambda: self.client.parse_player(item.gomafia_id),
                ctx.max_retries, self.record_retry_delay_ms,
            )
            if not validate_player_data(raw):
                raise InvalidRecordError(f"Invalid player data for {item.gomafia_id}")
            fields = transform_player_data(raw)

            async def write() -> None:
                self._upsert_player(fields)
        else:
            raw = await retry_operation(
                lambda: self.client.parse_game(item.gomafia_id),
                ctx.max_retries, self.record_retry_delay_ms,
            )
            if not validate_game_data(raw):
                raise InvalidRecordError(f"Invalid game data for {item.gomafia_id}")

            async def write() -> None:
                self._upsert_game(raw)

        await retry_operation(write, ctx.max_retries, self.record_retry_delay_ms)
        ctx.records_processed += 1

    def _page_skip_recorder(self, ctx: RunContext, phase: ImportPhase, entity_type: str):
        async def record(page_number: int, exc: Exception) -> None:
            ctx.skipped_pages.setdefault(phase.value, []).append(page_number)
            ctx.errors.append(f"Skipped {phase.value.lower()} page {page_number}: {exc}")
            if self.skipped.has_open_page_entry(phase, page_number):
                return
            self.skipped.record_skipped_entity(SkippedEntityData(
                phase=phase,
                entity_type=entity_type,
                page_number=page_number,
                error_code=error_code(exc),
                error_message=str(exc),
                sync_log_id=ctx.sync_log_id,
            ))
        return record

    def _record_skipped(self, ctx: RunContext, item: WorkItem, exc: Exception) -> None:
        self.skipped.record_skipped_entity(SkippedEntityData(
            phase=item.phase,
            entity_type=item.kind,
            entity_id=item.gomafia_id,
            error_code=error_code(exc),
            error_message=str(exc),
            sync_log_id=ctx.sync_log_id,
        ))

    # ─── Incremental sync steps ───────────────────────────────────────────────

    def _select_stale_records(self, limit: int) -> List[WorkItem]:
        """Players first, then games, capped at limit rows in total."""
        cutoff = datetime.utcnow() - STALE_AFTER
        retry_statuses = [EntitySyncStatus.PENDING, EntitySyncStatus.ERROR]
        with Session(self.engine) as s:
            players = s.exec(
                select(Player)
                .where(or_(
                    col(Player.sync_status).in_(retry_statuses),
                    col(Player.last_sync_at) < cutoff,
                ))
                .order_by(Player.id)
                .limit(limit)
            ).all()
            games: List[Game] = []
            if len(players) < limit:
                games = s.exec(
                    select(Game)
                    .where(or_(
                        col(Game.sync_status).in_(retry_statuses),
                        col(Game.last_sync_at) < cutoff,
                    ))
                    .order_by(Game.id)
                    .limit(limit - len(players))
                ).all()
        return [
            WorkItem(ImportPhase.PLAYERS, p.gomafia_id, row=p) for p in players
        ] + [
            WorkItem(ImportPhase.GAMES, g.gomafia_id, row=g) for g in games
        ]

    async def _resync_record(self, ctx: RunContext, item: WorkItem) -> None:
        if item.phase == ImportPhase.PLAYERS:
            raw = await self.client.parse_player(item.gomafia_id)
            if not validate_player_data(raw):
                raise InvalidRecordError(f"Invalid player data for {item.gomafia_id}")
            if has_player_data_changed(item.row, raw):
                self._upsert_player(transform_player_data(raw))
            else:
                self._touch(Player, item.row.id)
        else:
            raw = await self.client.parse_game(item.gomafia_id)
            if not validate_game_data(raw):
                raise InvalidRecordError(f"Invalid game data for {item.gomafia_id}")
            if has_game_data_changed(item.row, raw):
                self._upsert_game(raw)
            else:
                self._touch(Game, item.row.id)
        ctx.records_processed += 1

    def _mark_record_error(self, ctx: RunContext, item: WorkItem, exc: Exception) -> None:
        model = Player if item.phase == ImportPhase.PLAYERS else Game
        with Session(self.engine) as s:
            row = s.get(model, item.row.id)
            if row is None:
                return
            row.sync_status = EntitySyncStatus.ERROR
            row.last_sync_at = datetime.utcnow()
            s.add(row)
            s.commit()

    def _touch(self, model, row_id: int) -> None:
        """Mark an unchanged row as freshly synced."""
        with Session(self.engine) as s:
            row = s.get(model, row_id)
            row.last_sync_at = datetime.utcnow()
            row.sync_status = EntitySyncStatus.SYNCED
            s.add(row)
            s.commit()

    # ─── Persistence helpers ──────────────────────────────────────────────────

    def _upsert_player(self, fields: Dict[str, Any]) -> Player:
        with Session(self.engine) as s:
            existing = s.exec(
                select(Player).where(Player.gomafia_id == fields["gomafia_id"])
            ).first()
            if existing:
                for k, v in fields.items():
                    setattr(existing, k, v)
                player = existing
            else:
                player = Player(**fields)
            s.add(player)
            s.commit()
            s.refresh(player)
            return player

    def _upsert_game(self, raw: Dict[str, Any]) -> Game:
        """
        Upsert a game and replace its participations.

        Raises:
            ValueError: if a participant is not in the players table yet.
        """
        with Session(self.engine) as s:
            tournament_id = None
            if raw.get("tournamentId"):
                tournament = s.exec(
                    select(Tournament).where(Tournament.gomafia_id == str(raw["tournamentId"]))
                ).first()
                tournament_id = tournament.id if tournament else None

            fields = transform_game_data(raw, tournament_id=tournament_id)
            game = s.exec(select(Game).where(Game.gomafia_id == fields["gomafia_id"])).first()
            if game:
                for k, v in fields.items():
                    setattr(game, k, v)
            else:
                game = Game(**fields)
            s.add(game)
            s.flush()

            player_ids = [str(p.get("playerId")) for p in raw.get("participants") or []]
            player_id_map: Dict[str, int] = {}
            if player_ids:
                rows = s.exec(
                    select(Player.gomafia_id, Player.id).where(col(Player.gomafia_id).in_(player_ids))
                ).all()
                player_id_map = {gomafia_id: pk for gomafia_id, pk in rows}
            participations = transform_game_participants(raw, game.id, player_id_map)

            # Replace participations wholesale so stale rows never linger
            for old in s.exec(
                select(GameParticipation).where(GameParticipation.game_id == game.id)
            ).all():
                s.delete(old)
            s.flush()
            for p in participations:
                s.add(GameParticipation(**p))

            s.commit()
            s.refresh(game)
            logger.debug("Synced %s", game_summary(raw))
            return game

    def _create_sync_log(self, sync_type: SyncType) -> SyncLog:
        log = SyncLog(type=sync_type, status=SyncLogStatus.RUNNING, start_time=datetime.utcnow())
        with Session(self.engine) as s:
            s.add(log)
            s.commit()
            s.refresh(log)
        return log

    def _finish_sync_log(
        self,
        log_id: int,
        *,
        status: SyncLogStatus,
        records_processed: int = 0,
        errors: Optional[Any] = None,
    ) -> None:
        with Session(self.engine) as s:
            db_log = s.get(SyncLog, log_id)
            db_log.status = status
            db_log.end_time = datetime.utcnow()
            db_log.records_processed = records_processed
            db_log.errors = errors
            s.add(db_log)
            s.commit()

    @staticmethod
    def _log_errors(
        errors: List[str],
        skipped_pages: Dict[str, List[int]],
        retry_errors: Optional[List[Dict[str, Any]]] = None,
    ) -> Optional[Any]:
        """Plain list when there is nothing else to report, else a dict."""
        if not skipped_pages and not retry_errors:
            return list(errors) or None
        payload: Dict[str, Any] = {"errors": list(errors)}
        if retry_errors:
            payload["retryErrors"] = retry_errors
        if skipped_pages:
            payload["skippedPages"] = skipped_pages
        return payload

    async def _close_client(self) -> None:
        try:
            await self.client.close()
        except Exception as exc:
            logger.warning("Failed to close the scraper browser: %s", exc)


def build_sync_service(engine, client=None) -> SyncService:
    """SyncService configured from settings, with pause state restored."""
    from mafia_insight.gomafia.client import GomafiaClient

    settings = get_settings()
    service = SyncService(
        client=client or GomafiaClient(),
        engine=engine,
        batch_size=settings.sync_batch_size,
        max_retries=settings.sync_max_retries,
        retry_delay_ms=settings.sync_retry_delay,
    )
    service.status.restore()
    return service
