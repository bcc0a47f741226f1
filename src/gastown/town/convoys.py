"""Convoys: groups of beads that land together."""

from __future__ import annotations

import structlog
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from gastown.db.models import (
    Convoy,
    ConvoyBead,
    ConvoyBeadStatus,
    ConvoyStatus,
    utcnow_naive,
)
from gastown.errors import ConflictError, NotFoundError
from gastown.schemas import CreateConvoyInput

log = structlog.get_logger()


class ConvoyTracker:
    """Convoy rows plus their bead membership table. Callers own the transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(self, data: CreateConvoyInput) -> Convoy:
        bead_ids = [b.bead_id for b in data.beads]
        duplicates = sorted({b for b in bead_ids if bead_ids.count(b) > 1})
        if duplicates:
            raise ConflictError(
                f"Convoy lists bead(s) more than once: {', '.join(duplicates)}",
                details={"bead_ids": duplicates},
            )

        convoy = Convoy(title=data.title, total_beads=len(bead_ids), created_by=data.created_by)
        self.session.add(convoy)
        for item in data.beads:
            self.session.add(
                ConvoyBead(convoy_id=convoy.id, bead_id=item.bead_id, rig_id=item.rig_id)
            )
        log.info("convoy_created", convoy_id=convoy.id, total_beads=convoy.total_beads)
        return convoy

    async def get(self, convoy_id: str) -> Convoy | None:
        return await self.session.get(Convoy, convoy_id)

    async def list(self, status: ConvoyStatus | None = None) -> list[Convoy]:
        query = select(Convoy)
        if status is not None:
            query = query.where(Convoy.status == status.value)
        result = await self.session.execute(query.order_by(col(Convoy.created_at).desc()))
        return list(result.scalars().all())

    async def beads(self, convoy_id: str) -> list[ConvoyBead]:
        result = await self.session.execute(
            select(ConvoyBead).where(ConvoyBead.convoy_id == convoy_id)
        )
        return list(result.scalars().all())

    async def for_bead(self, bead_id: str) -> list[str]:
        result = await self.session.execute(
            select(ConvoyBead.convoy_id).where(ConvoyBead.bead_id == bead_id)
        )
        return list(result.scalars().all())

    async def on_bead_closed(self, convoy_id: str, bead_id: str) -> Convoy:
        """Record that ``bead_id`` closed and land the convoy when all beads are done.

        Idempotent. The closed count is always recounted from the membership
        table, and ``landed_at`` is stamped only on the active to landed step.
        """
        convoy = await self.get(convoy_id)
        if convoy is None:
            raise NotFoundError("Convoy", convoy_id)
        member = await self.session.get(ConvoyBead, (convoy_id, bead_id))
        if member is None:
            raise NotFoundError("ConvoyBead", f"{convoy_id}/{bead_id}")

        if member.status != ConvoyBeadStatus.CLOSED.value:
            member.status = ConvoyBeadStatus.CLOSED.value
            self.session.add(member)
            await self.session.flush()

        result = await self.session.execute(
            select(func.count())
            .select_from(ConvoyBead)
            .where(ConvoyBead.convoy_id == convoy_id)
            .where(ConvoyBead.status == ConvoyBeadStatus.CLOSED.value)
        )
        convoy.closed_beads = result.scalar_one()

        if convoy.status == ConvoyStatus.ACTIVE.value and convoy.closed_beads >= convoy.total_beads:
            convoy.status = ConvoyStatus.LANDED.value
            convoy.landed_at = utcnow_naive()
            log.info("convoy_landed", convoy_id=convoy_id, total_beads=convoy.total_beads)
        self.session.add(convoy)
        return convoy
