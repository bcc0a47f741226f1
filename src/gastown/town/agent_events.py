"""Per-agent activity logs.

Every agent gets its own database namespace so no single store grows with the
whole town's activity. The orchestrator only holds agent ids and goes through
``AgentEventLogs`` to reach a log.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import structlog
from sqlalchemy import delete, func
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlmodel import col, select

from gastown.db.connection import create_engine, init_agent_events_db, session_factory
from gastown.db.models import AgentEvent

log = structlog.get_logger()


class AgentEventLog:
    """Bounded, append-only event stream for one agent."""

    def __init__(self, agent_id: str, engine: AsyncEngine, *, max_events: int = 10_000) -> None:
        self.agent_id = agent_id
        self.engine = engine
        self.max_events = max_events
        self._session_factory = session_factory(engine)
        self._initialized = False

    async def _ensure_schema(self) -> None:
        if not self._initialized:
            await init_agent_events_db(self.engine)
            self._initialized = True

    async def append(self, event_type: str, data: dict[str, Any] | None = None) -> int:
        """Append an event and return its id. Oldest events beyond the bound are dropped."""
        await self._ensure_schema()
        async with self._session_factory() as session:
            event = AgentEvent(event_type=event_type, data=data or {})
            session.add(event)
            await session.flush()
            event_id = event.id

            result = await session.execute(select(func.count()).select_from(AgentEvent))
            count = result.scalar_one()
            if count > self.max_events:
                cutoff = event_id - self.max_events
                await session.execute(delete(AgentEvent).where(col(AgentEvent.id) <= cutoff))
            await session.commit()
        return event_id

    async def get_events(self, after_id: int = 0, limit: int = 500) -> list[AgentEvent]:
        await self._ensure_schema()
        async with self._session_factory() as session:
            result = await session.execute(
                select(AgentEvent)
                .where(col(AgentEvent.id) > after_id)
                .order_by(col(AgentEvent.id))
                .limit(limit)
            )
            return list(result.scalars().all())

    async def destroy(self) -> None:
        """Drop every event and release the namespace."""
        if self._initialized:
            async with self._session_factory() as session:
                await session.execute(delete(AgentEvent))
                await session.commit()
        await self.engine.dispose()
        database = make_url(str(self.engine.url)).database
        if self.engine.url.get_backend_name() == "sqlite" and database and database != ":memory:":
            Path(database).unlink(missing_ok=True)
        log.info("agent_event_log_destroyed", agent_id=self.agent_id)


class AgentEventLogs:
    """Owner of the per-agent logs for one town."""

    def __init__(self, url_for: Callable[[str], str], *, max_events: int = 10_000) -> None:
        self._url_for = url_for
        self._max_events = max_events
        self._logs: dict[str, AgentEventLog] = {}

    def get(self, agent_id: str) -> AgentEventLog:
        event_log = self._logs.get(agent_id)
        if event_log is None:
            engine = create_engine(self._url_for(agent_id))
            event_log = AgentEventLog(agent_id, engine, max_events=self._max_events)
            self._logs[agent_id] = event_log
        return event_log

    async def destroy(self, agent_id: str) -> None:
        event_log = self._logs.pop(agent_id, None) or AgentEventLog(
            agent_id, create_engine(self._url_for(agent_id)), max_events=self._max_events
        )
        await event_log.destroy()

    async def close(self) -> None:
        for event_log in self._logs.values():
            await event_log.engine.dispose()
        self._logs.clear()
