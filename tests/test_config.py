"""Tests for process settings and the error taxonomy."""

from pathlib import Path

import pytest
from pydantic import SecretStr
from pydantic import ValidationError as PydanticValidationError

from gastown.config import Settings
from gastown.errors import ConflictError, GastownError, NotFoundError, ValidationError


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.active_interval_seconds == 30
        assert settings.idle_interval_seconds == 180
        assert settings.max_dispatch_attempts == 5
        assert settings.stale_work_threshold_minutes == 30
        assert settings.escalation_threshold_minutes == 240
        assert settings.max_re_escalations == 3

    def test_env_prefix(self, monkeypatch):
        """Settings read GASTOWN_ variables."""
        monkeypatch.setenv("GASTOWN_MAX_DISPATCH_ATTEMPTS", "7")
        monkeypatch.setenv("GASTOWN_TOWN_IDS", '["a", "b"]')
        settings = Settings(_env_file=None)
        assert settings.max_dispatch_attempts == 7
        assert settings.town_ids == ["a", "b"]

    def test_url_templates(self):
        settings = Settings(
            _env_file=None,
            data_dir=Path("/var/lib/gastown"),
            container_url_template="https://{town_id}.containers.example.com/",
        )
        assert settings.database_url("t1") == "sqlite+aiosqlite:////var/lib/gastown/towns/t1.db"
        assert settings.agent_events_url("t1", "a1") == (
            "sqlite+aiosqlite:////var/lib/gastown/agents/t1/a1.db"
        )
        assert settings.container_url("t1") == "https://t1.containers.example.com"

    def test_production_requires_token_secret(self):
        with pytest.raises(PydanticValidationError):
            Settings(_env_file=None, environment="production")
        Settings(_env_file=None, environment="production", agent_token_secret=SecretStr("s" * 40))


class TestErrors:
    def test_not_found(self):
        error = NotFoundError("Bead", "b-1")
        assert error.status_code == 404
        assert error.to_dict()["details"] == {"entity_type": "Bead", "identifier": "b-1"}

    def test_hierarchy(self):
        """Every domain error is a GastownError with an HTTP-style status."""
        assert issubclass(ConflictError, GastownError)
        assert ConflictError("x").status_code == 409
        assert ValidationError("x").status_code == 400
        assert GastownError("x").to_dict() == {
            "error": "internal_error",
            "message": "x",
            "details": {},
        }
