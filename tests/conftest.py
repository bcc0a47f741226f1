"""Pytest configuration and fixtures."""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from pydantic import SecretStr

from gastown.config import Settings
from gastown.db import create_engine, init_town_db, session_factory, utcnow_naive
from gastown.dispatch.container import ContainerAgentStatus, ContainerDispatch, MergeOutcome
from gastown.orchestrator import TownOrchestrator
from gastown.town.agent_events import AgentEventLogs

TOWN_ID = "town-5f2c9a71-0000-4000-8000-000000000001"
MEMORY_URL = "sqlite+aiosqlite://"


@pytest.fixture
def test_settings() -> Settings:
    """Settings isolated from the environment."""
    return Settings(
        _env_file=None,
        agent_token_secret=SecretStr("test-secret-with-enough-length-for-hs256"),
        database_url_template=MEMORY_URL,
        agent_events_url_template=MEMORY_URL,
        container_url_template="http://runtime.test",
    )


@pytest.fixture
async def engine():
    """Fresh in-memory town database."""
    eng = create_engine(MEMORY_URL)
    await init_town_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def sessions(engine):
    """Session factory bound to the test database."""
    return session_factory(engine)


@pytest.fixture
def container():
    """Container runtime double: every call succeeds unless a test says otherwise."""
    mock = MagicMock(spec=ContainerDispatch)
    mock.start_agent = AsyncMock(return_value=True)
    mock.start_merge = AsyncMock(return_value=MergeOutcome(status="merged", commit_sha="c0ffee1"))
    mock.check_agent_status = AsyncMock(return_value=ContainerAgentStatus(status="running"))
    mock.send_message = AsyncMock(return_value=True)
    mock.stop_agent = AsyncMock(return_value=True)
    mock.health = AsyncMock(return_value=True)
    mock.close = AsyncMock()
    return mock


@pytest.fixture
async def town(sessions, container, test_settings):
    """Town orchestrator over the in-memory database and mocked runtime."""
    orchestrator = TownOrchestrator(
        TOWN_ID,
        session_factory=sessions,
        container=container,
        event_logs=AgentEventLogs(lambda agent_id: MEMORY_URL, max_events=100),
        settings=test_settings,
    )
    yield orchestrator
    await orchestrator.drain()
    await orchestrator.event_logs.close()


@pytest.fixture
async def rig(town):
    """A registered rig."""
    return await town.add_rig(name="widgets", git_url="https://git.example.com/acme/widgets.git")


async def backdate(sessions, model, row_id, **fields_ago: timedelta) -> None:
    """Move timestamp columns of one row into the past."""
    async with sessions() as session:
        row = await session.get(model, row_id)
        for field, ago in fields_ago.items():
            setattr(row, field, utcnow_naive() - ago)
        session.add(row)
        await session.commit()
