"""Tests for the operator CLI."""

import asyncio

import pytest
from typer.testing import CliRunner

from gastown import cli
from gastown.config import Settings
from gastown.registry import TownRegistry

runner = CliRunner()


@pytest.fixture
def file_settings(tmp_path, monkeypatch):
    """Point the CLI at file-backed towns under tmp_path."""
    settings = Settings(
        _env_file=None, data_dir=tmp_path, container_url_template="http://runtime.test"
    )
    monkeypatch.setattr(cli, "settings", settings)
    monkeypatch.setattr(cli, "TownRegistry", lambda: TownRegistry(settings))
    return settings


def _seed(settings: Settings) -> None:
    async def seed() -> None:
        registry = TownRegistry(settings)
        try:
            town = await registry.get("alpha")
            rig = await town.add_rig(name="widgets", git_url="https://git.example.com/w.git")
            await town.get_or_create_agent("polecat", rig.id)
            await town.route_escalation(message="disk almost full", severity="low")
        finally:
            await registry.shutdown()

    asyncio.run(seed())


class TestCli:
    """Typer commands against real town databases."""

    def test_status_lists_agents(self, file_settings):
        _seed(file_settings)

        result = runner.invoke(cli.app, ["status", "alpha"])

        assert result.exit_code == 0, result.output
        assert "Toast" in result.output
        assert "polecat" in result.output
        assert "Review queue: empty" in result.output

    def test_tick_reports_phases(self, file_settings):
        """A tick on a quiet town prints the per-phase table."""
        _seed(file_settings)

        result = runner.invoke(cli.app, ["tick", "alpha"])

        assert result.exit_code == 0, result.output
        assert "dispatched" in result.output
        assert "next alarm" in result.output

    def test_escalations_lists_unacknowledged(self, file_settings):
        _seed(file_settings)

        result = runner.invoke(cli.app, ["escalations", "alpha"])

        assert result.exit_code == 0, result.output
        assert "disk almost full" in result.output

    def test_run_requires_towns(self, file_settings):
        result = runner.invoke(cli.app, ["run"])

        assert result.exit_code == 1
        assert "No towns given" in result.output
