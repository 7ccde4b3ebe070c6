"""Shared test fixtures."""
import os

# Must be set before mafia_insight.config is first imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SYNC_ENABLED"] = "false"

from typing import Generator
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from mafia_insight.models.entities import Club, Game, GameParticipation, Player, Tournament  # noqa: F401
from mafia_insight.models.sync import SkippedEntity, SyncLog, SyncStatus  # noqa: F401
from mafia_insight.sync.service import SyncService


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine) -> Generator[Session, None, None]:
    """Provides a DB session connected to in-memory SQLite."""
    with Session(engine) as session:
        yield session


@pytest.fixture(name="mock_client")
def mock_client_fixture():
    """GomafiaClient stand-in with empty listings."""
    client = AsyncMock()
    client.parse_player_list = AsyncMock(return_value=[])
    client.parse_game_list = AsyncMock(return_value=[])
    return client


@pytest.fixture(name="service")
def service_fixture(mock_client, engine) -> SyncService:
    """SyncService with no backoff delays."""
    return SyncService(
        client=mock_client,
        engine=engine,
        batch_size=100,
        max_retries=3,
        retry_delay_ms=0,
        record_retry_delay_ms=0,
    )

