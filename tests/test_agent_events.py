"""Tests for per-agent activity logs."""

import pytest

from gastown.errors import NotFoundError
from gastown.town.agent_events import AgentEventLogs

MEMORY_URL = "sqlite+aiosqlite://"


class TestAgentEventLog:
    """Bounded append-only streams."""

    async def test_append_and_read(self):
        logs = AgentEventLogs(lambda agent_id: MEMORY_URL, max_events=100)
        log = logs.get("agent-1")

        first = await log.append("tool_call", {"tool": "gt_prime"})
        second = await log.append("message", {"text": "hello"})

        events = await log.get_events()
        assert [e.id for e in events] == [first, second]
        assert events[0].data == {"tool": "gt_prime"}
        assert [e.id for e in await log.get_events(after_id=first)] == [second]
        await logs.close()

    async def test_oldest_trimmed_past_bound(self):
        """Only the newest max_events survive."""
        logs = AgentEventLogs(lambda agent_id: MEMORY_URL, max_events=3)
        log = logs.get("agent-1")
        ids = [await log.append("tick", {"n": n}) for n in range(5)]

        events = await log.get_events()

        assert [e.id for e in events] == ids[-3:]
        await logs.close()

    async def test_logs_are_isolated_per_agent(self):
        """Each agent gets its own namespace."""
        logs = AgentEventLogs(lambda agent_id: MEMORY_URL)
        await logs.get("a").append("x")

        assert await logs.get("b").get_events() == []
        assert logs.get("a") is logs.get("a")
        await logs.close()

    async def test_file_backed_destroy_removes_database(self, tmp_path):
        """Destroying a file-backed log deletes its database file."""
        logs = AgentEventLogs(lambda agent_id: f"sqlite+aiosqlite:///{tmp_path}/{agent_id}.db")
        await logs.get("agent-1").append("x")
        assert (tmp_path / "agent-1.db").exists()

        await logs.destroy("agent-1")

        assert not (tmp_path / "agent-1.db").exists()


class TestOrchestratorEvents:
    """Agent event operations on the town."""

    async def test_append_and_list(self, town, rig):
        agent = await town.get_or_create_agent("polecat", rig.id)
        event_id = await town.append_agent_event(agent.id, "log", {"line": "building"})

        [event] = await town.get_agent_events(agent.id)
        assert (event.id, event.event_type) == (event_id, "log")

    async def test_unknown_agent(self, town):
        with pytest.raises(NotFoundError):
            await town.append_agent_event("missing", "log")

    async def test_read_unknown_agent_opens_nothing(self, town):
        """Reading events for an unknown agent fails without creating a log."""
        with pytest.raises(NotFoundError):
            await town.get_agent_events("no-such-agent")
        assert "no-such-agent" not in town.event_logs._logs
