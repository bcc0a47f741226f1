"""Process-level owner of town orchestrators.

Creates one orchestrator (engine, container client, agent logs, scheduler loop)
per town on demand, and tears them all down on shutdown.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from gastown.config import Settings, settings as default_settings
from gastown.db.connection import create_engine, init_town_db, session_factory
from gastown.dispatch.container import ContainerDispatch
from gastown.orchestrator import TownOrchestrator
from gastown.town.agent_events import AgentEventLogs

log = structlog.get_logger()


@dataclass
class _TownHandle:
    orchestrator: TownOrchestrator
    engine: AsyncEngine
    stop_event: asyncio.Event = field(default_factory=asyncio.Event)
    loop_task: asyncio.Task[None] | None = None


class TownRegistry:
    """Lazily materialized towns with a start/shutdown lifecycle."""

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or default_settings
        self._towns: dict[str, _TownHandle] = {}
        self._guard = asyncio.Lock()

    @property
    def town_ids(self) -> list[str]:
        return sorted(self._towns)

    async def get(self, town_id: str) -> TownOrchestrator:
        """Return the orchestrator for ``town_id``, creating its storage if needed."""
        async with self._guard:
            handle = self._towns.get(town_id)
            if handle is None:
                handle = await self._open(town_id)
                self._towns[town_id] = handle
            return handle.orchestrator

    async def _open(self, town_id: str) -> _TownHandle:
        engine = create_engine(self.settings.database_url(town_id))
        await init_town_db(engine)
        orchestrator = TownOrchestrator(
            town_id,
            session_factory=session_factory(engine),
            container=ContainerDispatch(town_id, settings=self.settings),
            event_logs=AgentEventLogs(
                lambda agent_id: self.settings.agent_events_url(town_id, agent_id),
                max_events=self.settings.agent_events_max,
            ),
            settings=self.settings,
        )
        log.info("town_opened", town_id=town_id)
        return _TownHandle(orchestrator=orchestrator, engine=engine)

    async def start(self, town_id: str) -> TownOrchestrator:
        """Open ``town_id`` and start its scheduler loop if not already running."""
        orchestrator = await self.get(town_id)
        handle = self._towns[town_id]
        if handle.loop_task is None or handle.loop_task.done():
            handle.stop_event.clear()
            handle.loop_task = asyncio.create_task(
                orchestrator.scheduler.run(handle.stop_event), name=f"scheduler:{town_id}"
            )
        return orchestrator

    async def shutdown(self) -> None:
        """Stop every loop, drain detached work and release resources."""
        async with self._guard:
            handles = list(self._towns.items())
            self._towns.clear()

        for town_id, handle in handles:
            handle.stop_event.set()
            if handle.loop_task is not None:
                try:
                    await handle.loop_task
                except Exception:
                    log.exception("scheduler_loop_crashed", town_id=town_id)
            await handle.orchestrator.close()
            await handle.engine.dispose()
            log.info("town_closed", town_id=town_id)
