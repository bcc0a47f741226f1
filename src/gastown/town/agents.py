"""Agent lifecycle: registration, role lookup, hooks, checkpoints and prime."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import structlog
from sqlalchemy import delete, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from gastown.db.models import (
    LIVE_AGENT_STATUSES,
    SINGLETON_ROLES,
    Agent,
    AgentRole,
    AgentStatus,
    Bead,
    BeadEventType,
    BeadStatus,
    BeadType,
    Mail,
    ReviewQueueEntry,
    utcnow_naive,
)
from gastown.dispatch.prompts import branch_for_agent
from gastown.errors import ConflictError, NotFoundError
from gastown.schemas import RegisterAgentInput, SubmitReviewInput
from gastown.town.beads import BeadStore
from gastown.town.mail import MailStore
from gastown.town.review_queue import ReviewQueue

log = structlog.get_logger()

POLECAT_NAMES = [
    "Toast",
    "Maple",
    "Birch",
    "Shadow",
    "Clover",
    "Ember",
    "Sage",
    "Dusk",
    "Flint",
    "Coral",
    "Slate",
    "Reed",
    "Thorn",
    "Pike",
    "Moss",
    "Wren",
    "Blaze",
    "Gale",
    "Drift",
    "Lark",
]

SINGLETON_NAMES = {
    AgentRole.MAYOR: "Mayor",
    AgentRole.REFINERY: "Refinery",
    AgentRole.WITNESS: "Witness",
}


def agent_identity(name: str, role: AgentRole | str, rig_id: str | None, town_id: str) -> str:
    """Stable external handle: ``{name}-{role}-{rig[:8]}@{town[:8]}``."""
    rig_part = (rig_id or "town")[:8]
    return f"{name}-{AgentRole(role).value}-{rig_part}@{town_id[:8]}"


def next_polecat_name(used: set[str]) -> str:
    for name in POLECAT_NAMES:
        if name not in used:
            return name
    n = len(used) + 1
    while f"Polecat-{n}" in used:
        n += 1
    return f"Polecat-{n}"


@dataclass
class PrimeContext:
    """Everything an agent needs when it wakes up."""

    agent: Agent
    hooked_bead: Bead | None
    undelivered_mail: list[Mail] = field(default_factory=list)
    open_beads: list[Bead] = field(default_factory=list)


class AgentRegistry:
    """Agent rows and hook bookkeeping. Callers own the transaction."""

    def __init__(self, session: AsyncSession, *, town_id: str) -> None:
        self.session = session
        self.town_id = town_id
        self.beads = BeadStore(session)

    async def register(self, data: RegisterAgentInput) -> Agent:
        if await self.get_by_identity(data.identity) is not None:
            raise ConflictError(
                f"Agent identity already registered: {data.identity}",
                details={"identity": data.identity},
            )
        agent = Agent(
            role=data.role.value,
            name=data.name,
            identity=data.identity,
            rig_id=data.rig_id,
        )
        self.session.add(agent)
        log.info("agent_registered", agent_id=agent.id, role=agent.role, identity=agent.identity)
        return agent

    async def get(self, agent_id: str) -> Agent | None:
        return await self.session.get(Agent, agent_id)

    async def require(self, agent_id: str) -> Agent:
        agent = await self.get(agent_id)
        if agent is None:
            raise NotFoundError("Agent", agent_id)
        return agent

    async def get_by_identity(self, identity: str) -> Agent | None:
        result = await self.session.execute(select(Agent).where(Agent.identity == identity))
        return result.scalar_one_or_none()

    async def list(
        self,
        *,
        role: AgentRole | None = None,
        status: AgentStatus | None = None,
        rig_id: str | None = None,
    ) -> list[Agent]:
        query = select(Agent)
        if role is not None:
            query = query.where(Agent.role == role.value)
        if status is not None:
            query = query.where(Agent.status == status.value)
        if rig_id is not None:
            query = query.where(Agent.rig_id == rig_id)
        result = await self.session.execute(query.order_by(col(Agent.created_at)))
        return list(result.scalars().all())

    async def update_status(self, agent_id: str, status: AgentStatus) -> Agent:
        agent = await self.require(agent_id)
        if agent.status != status.value:
            log.info("agent_status_changed", agent_id=agent_id, old=agent.status, new=status.value)
        agent.status = status.value
        self.session.add(agent)
        return agent

    async def delete(self, agent_id: str) -> None:
        """Delete an agent, returning its beads to the open pool."""
        await self.require(agent_id)
        await self.session.execute(
            update(Bead)
            .where(Bead.assignee_id == agent_id)
            .where(col(Bead.status) == BeadStatus.IN_PROGRESS.value)
            .values(status=BeadStatus.OPEN.value)
        )
        await self.session.execute(
            update(Bead).where(Bead.assignee_id == agent_id).values(assignee_id=None)
        )
        await self.session.execute(delete(Mail).where(Mail.to_agent_id == agent_id))
        await self.session.execute(delete(Agent).where(Agent.id == agent_id))
        log.info("agent_deleted", agent_id=agent_id)

    async def get_or_create(self, role: AgentRole, rig_id: str | None) -> Agent:
        """Find an agent for ``role`` or allocate a new one.

        Singleton roles return the one existing instance. Polecats reuse an idle,
        unhooked polecat from the same rig before allocating a new name; names
        are unique across the whole town, not per rig.
        """
        if role in SINGLETON_ROLES:
            result = await self.session.execute(
                select(Agent).where(Agent.role == role.value).order_by(col(Agent.created_at))
            )
            existing = result.scalars().first()
            if existing is not None:
                return existing
            name = SINGLETON_NAMES[role]
        else:
            result = await self.session.execute(
                select(Agent)
                .where(Agent.role == role.value)
                .where(
                    Agent.rig_id == rig_id if rig_id is not None else col(Agent.rig_id).is_(None)
                )
                .where(Agent.status == AgentStatus.IDLE.value)
                .where(col(Agent.current_hook_bead_id).is_(None))
                .order_by(col(Agent.created_at))
            )
            idle = result.scalars().first()
            if idle is not None:
                return idle
            used = await self.session.execute(
                select(Agent.name).where(Agent.role == AgentRole.POLECAT.value)
            )
            name = next_polecat_name(set(used.scalars().all()))

        return await self.register(
            RegisterAgentInput(
                role=role,
                name=name,
                identity=agent_identity(name, role, rig_id, self.town_id),
                rig_id=rig_id,
            )
        )

    # -------------------------------------------------------------------------
    # Hooks
    # -------------------------------------------------------------------------

    async def hook(self, agent_id: str, bead_id: str) -> Agent:
        """Bind ``agent_id`` to ``bead_id``.

        Re-hooking the same bead is a no-op. Hooking while bound to a different
        bead raises ConflictError without changing anything. A working or
        blocked agent keeps its status.
        """
        agent = await self.require(agent_id)
        bead = await self.beads.require(bead_id)

        if agent.current_hook_bead_id == bead_id:
            return agent
        if agent.current_hook_bead_id is not None:
            raise ConflictError(
                f"Agent {agent_id} is already hooked to bead {agent.current_hook_bead_id}. "
                "Unhook first.",
                details={"agent_id": agent_id, "current_hook_bead_id": agent.current_hook_bead_id},
            )
        if bead.status in {BeadStatus.CLOSED.value, BeadStatus.FAILED.value}:
            raise ConflictError(
                f"Bead {bead_id} is {bead.status} and cannot be hooked",
                details={"bead_id": bead_id, "status": bead.status},
            )

        now = utcnow_naive()
        agent.current_hook_bead_id = bead_id
        if agent.status not in LIVE_AGENT_STATUSES:
            agent.status = AgentStatus.IDLE.value
        agent.dispatch_attempts = 0
        agent.last_activity_at = now
        self.session.add(agent)

        if bead.status == BeadStatus.OPEN.value:
            await self.beads.update_status(bead_id, BeadStatus.IN_PROGRESS, agent_id=agent_id)
        await self.beads.assign(bead, agent_id)
        await self.beads.log_event(
            bead_id, BeadEventType.HOOKED, agent_id=agent_id, new_value=agent_id
        )

        log.info("agent_hooked", agent_id=agent_id, bead_id=bead_id)
        return agent

    async def unhook(self, agent_id: str) -> Agent:
        agent = await self.require(agent_id)
        bead_id = agent.current_hook_bead_id
        agent.current_hook_bead_id = None
        agent.status = AgentStatus.IDLE.value
        self.session.add(agent)
        if bead_id is not None:
            await self.beads.log_event(
                bead_id, BeadEventType.UNHOOKED, agent_id=agent_id, old_value=agent_id
            )
            log.info("agent_unhooked", agent_id=agent_id, bead_id=bead_id)
        return agent

    async def finish_work(
        self,
        agent_id: str,
        *,
        branch: str | None = None,
        summary: str | None = None,
        pr_url: str | None = None,
    ) -> ReviewQueueEntry | None:
        """Hand an agent's hooked bead to the review queue and release the hook.

        Refineries and unhooked agents are only reset; there is nothing of
        theirs to review.
        """
        agent = await self.require(agent_id)
        bead_id = agent.current_hook_bead_id
        entry = None
        if bead_id is not None and agent.role != AgentRole.REFINERY.value:
            entry = await ReviewQueue(self.session).submit(
                SubmitReviewInput(
                    agent_id=agent_id,
                    bead_id=bead_id,
                    branch=branch or branch_for_agent(agent.name, bead_id),
                    summary=summary,
                    pr_url=pr_url,
                )
            )
        await self.unhook(agent_id)
        agent.dispatch_attempts = 0
        agent.last_activity_at = utcnow_naive()
        self.session.add(agent)
        return entry

    async def get_hooked_bead(self, agent_id: str) -> Bead | None:
        agent = await self.get(agent_id)
        if agent is None or agent.current_hook_bead_id is None:
            return None
        return await self.beads.get(agent.current_hook_bead_id)

    # -------------------------------------------------------------------------
    # Checkpoints & heartbeats
    # -------------------------------------------------------------------------

    async def write_checkpoint(self, agent_id: str, data: Any) -> None:
        agent = await self.require(agent_id)
        agent.checkpoint = data
        self.session.add(agent)

    async def read_checkpoint(self, agent_id: str) -> Any | None:
        agent = await self.get(agent_id)
        return agent.checkpoint if agent is not None else None

    async def touch(self, agent_id: str) -> Agent:
        agent = await self.require(agent_id)
        agent.last_activity_at = utcnow_naive()
        self.session.add(agent)
        return agent

    async def prime(self, agent_id: str, *, open_beads_limit: int = 20) -> PrimeContext:
        """Assemble wake-up context and mark undelivered mail as delivered."""
        agent = await self.require(agent_id)
        hooked = await self.get_hooked_bead(agent_id)
        mail = await MailStore(self.session).check(agent_id)

        query = (
            select(Bead)
            .where(col(Bead.status).in_([BeadStatus.OPEN.value, BeadStatus.IN_PROGRESS.value]))
            .where(col(Bead.type).not_in([BeadType.MESSAGE.value, BeadType.AGENT.value]))
        )
        if agent.rig_id is not None:
            query = query.where(or_(col(Bead.rig_id).is_(None), Bead.rig_id == agent.rig_id))
        query = query.order_by(col(Bead.created_at).desc()).limit(open_beads_limit)
        result = await self.session.execute(query)

        return PrimeContext(
            agent=agent,
            hooked_bead=hooked,
            undelivered_mail=mail,
            open_beads=list(result.scalars().all()),
        )
