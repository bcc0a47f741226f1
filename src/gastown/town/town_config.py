"""Tenant-wide town configuration.

Stored as one JSON document per town. Updates follow these rules:
- ``env_vars`` replaces the whole map, except values beginning with ``****``
  (masked values echoed back by a client) keep what is stored.
- ``git_auth`` and ``refinery`` merge key by key.
- Everything else replaces.
"""

from __future__ import annotations

from typing import Any

import structlog
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from gastown.db.models import TownSettingsRecord, utcnow_naive
from gastown.errors import ValidationError
from gastown.schemas import parse_input

log = structlog.get_logger()

MASK_PREFIX = "****"


class GitAuth(BaseModel):
    github_token: str | None = None
    gitlab_token: str | None = None
    gitlab_instance_url: str | None = None


class RefineryConfig(BaseModel):
    gates: list[str] = Field(default_factory=list, description="Quality-gate commands, in order")


class TownConfig(BaseModel):
    """Runtime configuration shared by every rig in a town."""

    env_vars: dict[str, str] = Field(default_factory=dict)
    git_auth: GitAuth = Field(default_factory=GitAuth)
    default_model: str | None = None
    gateway_token: str | None = Field(default=None, description="Model gateway credential")
    refinery: RefineryConfig = Field(default_factory=RefineryConfig)
    max_polecats_per_rig: int = Field(default=5, ge=1, le=100)


def mask_secret(value: str | None) -> str | None:
    if not value:
        return value
    return f"{MASK_PREFIX}{value[-4:]}"


def masked(config: TownConfig) -> TownConfig:
    """Copy of ``config`` with every secret masked, safe for enumeration responses."""
    return config.model_copy(
        update={
            "env_vars": {k: mask_secret(v) or "" for k, v in config.env_vars.items()},
            "gateway_token": mask_secret(config.gateway_token),
            "git_auth": config.git_auth.model_copy(
                update={
                    "github_token": mask_secret(config.git_auth.github_token),
                    "gitlab_token": mask_secret(config.git_auth.gitlab_token),
                }
            ),
        }
    )


def merge_config(current: TownConfig, patch: dict[str, Any]) -> TownConfig:
    merged = current.model_dump()
    for key, value in patch.items():
        if key not in TownConfig.model_fields:
            raise ValidationError(f"Unknown town config field: {key}", details={"field": key})
        if key == "env_vars" and isinstance(value, dict):
            merged[key] = {
                name: current.env_vars.get(name, "")
                if isinstance(v, str) and v.startswith(MASK_PREFIX)
                else v
                for name, v in value.items()
            }
        elif key in {"git_auth", "refinery"} and isinstance(value, dict):
            merged[key] = {**merged[key], **value}
        else:
            merged[key] = value
    return parse_input(TownConfig, merged)


class TownConfigStore:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self) -> TownConfig:
        record = await self.session.get(TownSettingsRecord, 1)
        if record is None:
            return TownConfig()
        return TownConfig.model_validate(record.config)

    async def update(self, patch: dict[str, Any]) -> TownConfig:
        config = merge_config(await self.get(), patch)
        record = await self.session.get(TownSettingsRecord, 1) or TownSettingsRecord(id=1)
        record.config = config.model_dump()
        record.updated_at = utcnow_naive()
        self.session.add(record)
        log.info("town_config_updated", fields=sorted(patch))
        return config
