"""Rig registry and per-rig credential records."""

from __future__ import annotations

import structlog
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from gastown.db.models import Rig, RigConfig, utcnow_naive
from gastown.errors import ConflictError, NotFoundError
from gastown.schemas import AddRigInput, ConfigureRigInput

log = structlog.get_logger()


class RigRegistry:
    """Registered repositories. Credentials stay in RigConfig, out of listings."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def add(self, data: AddRigInput) -> Rig:
        existing = await self.session.execute(select(Rig).where(Rig.name == data.name))
        if existing.scalar_one_or_none() is not None:
            raise ConflictError(
                f"Rig name already registered: {data.name}", details={"name": data.name}
            )
        rig = Rig(name=data.name, git_url=data.git_url, default_branch=data.default_branch)
        self.session.add(rig)
        log.info("rig_added", rig_id=rig.id, name=rig.name)
        return rig

    async def remove(self, rig_id: str) -> None:
        rig = await self.require(rig_id)
        await self.session.execute(delete(RigConfig).where(RigConfig.rig_id == rig_id))
        await self.session.delete(rig)
        log.info("rig_removed", rig_id=rig_id)

    async def get(self, rig_id: str) -> Rig | None:
        return await self.session.get(Rig, rig_id)

    async def require(self, rig_id: str) -> Rig:
        rig = await self.get(rig_id)
        if rig is None:
            raise NotFoundError("Rig", rig_id)
        return rig

    async def list(self) -> list[Rig]:
        result = await self.session.execute(select(Rig).order_by(col(Rig.created_at)))
        return list(result.scalars().all())

    async def configure(self, rig_id: str, data: ConfigureRigInput) -> RigConfig:
        """Merge the provided credential fields into the rig's config."""
        await self.require(rig_id)
        config = await self.get_config(rig_id) or RigConfig(rig_id=rig_id)
        for key, value in data.model_dump(exclude_unset=True).items():
            setattr(config, key, value)
        config.updated_at = utcnow_naive()
        self.session.add(config)
        log.info("rig_configured", rig_id=rig_id, fields=sorted(data.model_fields_set))
        return config

    async def get_config(self, rig_id: str) -> RigConfig | None:
        return await self.session.get(RigConfig, rig_id)
