"""Work-item (bead) store with an append-only event log."""

from __future__ import annotations

from typing import Any

import structlog
from sqlalchemy import delete, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from gastown.db.models import (
    TERMINAL_BEAD_STATUSES,
    Agent,
    AgentStatus,
    Bead,
    BeadDependency,
    BeadEvent,
    BeadEventType,
    BeadStatus,
    Molecule,
    utcnow_naive,
)
from gastown.errors import ConflictError, NotFoundError, ValidationError
from gastown.schemas import AddDependencyInput, BeadFilter, CreateBeadInput

log = structlog.get_logger()


class BeadStore:
    """CRUD for beads. Callers own the transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def log_event(
        self,
        bead_id: str,
        event_type: BeadEventType,
        *,
        agent_id: str | None = None,
        old_value: str | None = None,
        new_value: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> BeadEvent:
        event = BeadEvent(
            bead_id=bead_id,
            agent_id=agent_id,
            event_type=event_type.value,
            old_value=old_value,
            new_value=new_value,
            meta=metadata or {},
        )
        self.session.add(event)
        return event

    async def create(self, data: CreateBeadInput) -> Bead:
        parent_bead_id = data.parent_bead_id or data.metadata.get("parent_id")
        if parent_bead_id is not None:
            await self.require(parent_bead_id)
        bead = Bead(
            type=data.type.value,
            title=data.title,
            body=data.body,
            rig_id=data.rig_id,
            parent_bead_id=parent_bead_id,
            priority=data.priority.value,
            labels=list(data.labels),
            meta=dict(data.metadata),
            created_by=data.created_by,
        )
        self.session.add(bead)
        await self.log_event(
            bead.id,
            BeadEventType.CREATED,
            new_value=bead.status,
            metadata={"type": bead.type, "title": bead.title},
        )
        log.info("bead_created", bead_id=bead.id, type=bead.type, rig_id=bead.rig_id)
        return bead

    async def get(self, bead_id: str) -> Bead | None:
        return await self.session.get(Bead, bead_id)

    async def require(self, bead_id: str) -> Bead:
        bead = await self.get(bead_id)
        if bead is None:
            raise NotFoundError("Bead", bead_id)
        return bead

    async def list(self, flt: BeadFilter | None = None) -> list[Bead]:
        flt = flt or BeadFilter()
        query = select(Bead)
        if flt.status is not None:
            query = query.where(Bead.status == flt.status.value)
        if flt.type is not None:
            query = query.where(Bead.type == flt.type.value)
        if flt.rig_id is not None:
            query = query.where(Bead.rig_id == flt.rig_id)
        if flt.assignee_id is not None:
            query = query.where(Bead.assignee_id == flt.assignee_id)
        query = query.order_by(col(Bead.created_at).desc()).offset(flt.offset).limit(flt.limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def update_status(
        self, bead_id: str, status: BeadStatus, *, agent_id: str | None = None
    ) -> Bead:
        """Move a bead to ``status``.

        Closed and failed beads are terminal; re-applying the same terminal
        status is a no-op, any other transition out of them is a conflict.
        """
        bead = await self.require(bead_id)
        old = BeadStatus(bead.status)
        if old == status:
            return bead
        if old in TERMINAL_BEAD_STATUSES:
            raise ConflictError(
                f"Bead {bead_id} is {old.value} and cannot move to {status.value}",
                details={"bead_id": bead_id, "status": old.value},
            )

        bead.status = status.value
        bead.updated_at = utcnow_naive()
        if status == BeadStatus.CLOSED:
            bead.closed_at = bead.updated_at
        self.session.add(bead)
        await self.log_event(
            bead_id,
            BeadEventType.STATUS_CHANGED,
            agent_id=agent_id,
            old_value=old.value,
            new_value=status.value,
        )
        log.info("bead_status_changed", bead_id=bead_id, old=old.value, new=status.value)
        return bead

    async def assign(self, bead: Bead, agent_id: str | None) -> None:
        bead.assignee_id = agent_id
        bead.updated_at = utcnow_naive()
        self.session.add(bead)

    async def children(self, bead_id: str) -> list[Bead]:
        result = await self.session.execute(select(Bead).where(Bead.parent_bead_id == bead_id))
        return list(result.scalars().all())

    async def delete(self, bead_id: str) -> list[str]:
        """Delete a bead and its descendants. Returns the deleted ids."""
        await self.require(bead_id)
        doomed: list[str] = []
        stack = [bead_id]
        while stack:
            current = stack.pop()
            if current in doomed:
                continue
            doomed.append(current)
            stack.extend(child.id for child in await self.children(current))

        await self.session.execute(
            update(Agent)
            .where(col(Agent.current_hook_bead_id).in_(doomed))
            .values(current_hook_bead_id=None, status=AgentStatus.IDLE.value)
        )
        await self.session.execute(
            delete(BeadDependency).where(
                or_(
                    col(BeadDependency.bead_id).in_(doomed),
                    col(BeadDependency.depends_on_bead_id).in_(doomed),
                )
            )
        )
        await self.session.execute(delete(Molecule).where(col(Molecule.bead_id).in_(doomed)))
        await self.session.execute(delete(BeadEvent).where(col(BeadEvent.bead_id).in_(doomed)))
        await self.session.execute(delete(Bead).where(col(Bead.id).in_(doomed)))
        log.info("bead_deleted", bead_id=bead_id, deleted=len(doomed))
        return doomed

    async def events(self, bead_id: str, *, limit: int = 100) -> list[BeadEvent]:
        result = await self.session.execute(
            select(BeadEvent)
            .where(BeadEvent.bead_id == bead_id)
            .order_by(col(BeadEvent.created_at))
            .limit(limit)
        )
        return list(result.scalars().all())

    # -------------------------------------------------------------------------
    # Dependencies
    # -------------------------------------------------------------------------

    async def add_dependency(self, data: AddDependencyInput) -> BeadDependency:
        """Record that ``bead_id`` depends on ``depends_on_bead_id``.

        Both beads must exist, a bead cannot depend on itself, and each pair
        holds at most one edge whatever its type.
        """
        if data.bead_id == data.depends_on_bead_id:
            raise ValidationError(
                "A bead cannot depend on itself", details={"bead_id": data.bead_id}
            )
        await self.require(data.bead_id)
        await self.require(data.depends_on_bead_id)
        existing = await self.session.get(BeadDependency, (data.bead_id, data.depends_on_bead_id))
        if existing is not None:
            raise ConflictError(
                f"Bead {data.bead_id} already depends on {data.depends_on_bead_id}",
                details={"dependency_type": existing.dependency_type},
            )

        dependency = BeadDependency(
            bead_id=data.bead_id,
            depends_on_bead_id=data.depends_on_bead_id,
            dependency_type=data.dependency_type.value,
        )
        self.session.add(dependency)
        await self.log_event(
            data.bead_id,
            BeadEventType.DEPENDENCY_ADDED,
            new_value=data.depends_on_bead_id,
            metadata={"dependency_type": dependency.dependency_type},
        )
        log.info(
            "bead_dependency_added",
            bead_id=data.bead_id,
            depends_on_bead_id=data.depends_on_bead_id,
            dependency_type=dependency.dependency_type,
        )
        return dependency

    async def remove_dependency(self, bead_id: str, depends_on_bead_id: str) -> None:
        dependency = await self.session.get(BeadDependency, (bead_id, depends_on_bead_id))
        if dependency is None:
            raise NotFoundError("BeadDependency", f"{bead_id}->{depends_on_bead_id}")
        await self.session.delete(dependency)

    async def dependencies(self, bead_id: str) -> list[BeadDependency]:
        """Edges out of ``bead_id``: the beads it depends on."""
        result = await self.session.execute(
            select(BeadDependency)
            .where(BeadDependency.bead_id == bead_id)
            .order_by(col(BeadDependency.created_at))
        )
        return list(result.scalars().all())

    async def dependents(self, bead_id: str) -> list[BeadDependency]:
        """Edges into ``bead_id``: the beads that depend on it."""
        result = await self.session.execute(
            select(BeadDependency)
            .where(BeadDependency.depends_on_bead_id == bead_id)
            .order_by(col(BeadDependency.created_at))
        )
        return list(result.scalars().all())
