"""Configuration management for the Gastown town orchestrator."""

from pathlib import Path
from typing import Literal

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process settings loaded from environment variables.

    Tenant-wide runtime configuration (env vars, quality gates, default model)
    lives in each town's database, see ``gastown.town.town_config``.
    """

    model_config = SettingsConfigDict(
        env_prefix="GASTOWN_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Runtime environment (development, staging, production)",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )
    json_logs: bool | None = Field(
        default=None,
        description="Force JSON log output (default: JSON unless stderr is a TTY)",
    )

    # Storage
    data_dir: Path = Field(
        default=Path.home() / ".gastown",
        description="Directory holding per-town and per-agent databases",
    )
    database_url_template: str = Field(
        default="sqlite+aiosqlite:///{data_dir}/towns/{town_id}.db",
        description="Database URL for one town; {town_id} and {data_dir} are substituted",
    )
    agent_events_url_template: str = Field(
        default="sqlite+aiosqlite:///{data_dir}/agents/{town_id}/{agent_id}.db",
        description="Database URL for one agent's activity log",
    )
    agent_events_max: int = Field(
        default=10_000,
        ge=100,
        description="Maximum events retained per agent activity log",
    )

    # Container runtime
    container_url_template: str = Field(
        default="http://localhost:8787",
        description="Base URL of the container runtime for a town; {town_id} is substituted",
    )
    container_request_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        le=300,
        description="Timeout for requests to the container runtime",
    )
    api_url: str = Field(
        default="http://localhost:8080",
        description="Public URL of the inbound API, handed to agents for callbacks",
    )

    # Agent tokens
    agent_token_secret: SecretStr = Field(
        default=SecretStr(""),
        description="Signing secret for agent bearer tokens (tokens are skipped when empty)",
    )
    agent_token_algorithm: str = Field(default="HS256", description="Agent token signing algorithm")
    agent_token_ttl_hours: int = Field(
        default=8, ge=1, le=72, description="Agent token lifetime (hours)"
    )

    default_model: str = Field(
        default="anthropic/claude-sonnet-4.6",
        description="Model used when the town config does not set one",
    )

    # Scheduler policy
    active_interval_seconds: float = Field(
        default=30.0, gt=0, description="Re-arm interval while work is in flight"
    )
    idle_interval_seconds: float = Field(
        default=180.0, gt=0, description="Re-arm interval when the town is quiet"
    )
    arm_delay_seconds: float = Field(
        default=5.0, ge=0, description="Delay before a tick after new work arrives"
    )
    max_dispatch_attempts: int = Field(
        default=5, ge=1, le=50, description="Dispatch attempts before a bead is failed"
    )
    stale_work_threshold_minutes: float = Field(
        default=30.0, gt=0, description="Inactivity before a working agent gets a liveness check"
    )
    review_running_timeout_seconds: float = Field(
        default=300.0, gt=0, description="Age after which an orphaned running review is retried"
    )
    escalation_threshold_minutes: float = Field(
        default=240.0, gt=0, description="Base age for re-escalating unacknowledged escalations"
    )
    max_re_escalations: int = Field(
        default=3, ge=0, le=10, description="Maximum automatic severity bumps per escalation"
    )
    open_beads_context_limit: int = Field(
        default=20, ge=1, le=200, description="Open beads included when an agent primes"
    )

    town_ids: list[str] = Field(
        default_factory=list,
        description="Towns started by `gastown run` when none are given",
    )

    @model_validator(mode="after")
    def validate_security_settings(self) -> "Settings":
        """Prevent insecure settings in production."""
        if self.environment == "production" and not self.agent_token_secret.get_secret_value():
            raise ValueError(
                "CRITICAL: GASTOWN_AGENT_TOKEN_SECRET must be set in production. "
                "Agents cannot authenticate callbacks without it."
            )
        return self

    def database_url(self, town_id: str) -> str:
        return self.database_url_template.format(town_id=town_id, data_dir=self.data_dir)

    def agent_events_url(self, town_id: str, agent_id: str) -> str:
        return self.agent_events_url_template.format(
            town_id=town_id, agent_id=agent_id, data_dir=self.data_dir
        )

    def container_url(self, town_id: str) -> str:
        return self.container_url_template.format(town_id=town_id).rstrip("/")


settings = Settings()
