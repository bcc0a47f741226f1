"""Town orchestrator: the serialized API surface for one town.

Every public operation takes the town lock, runs in one session and commits
before returning, so mutations for a town never interleave. Different towns
share nothing and run in parallel.

Outward calls that must not block or fail the caller (mayor notifications)
run as detached tasks. Their errors are logged; ``drain()`` waits for them.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Coroutine
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from gastown.config import Settings, settings as default_settings
from gastown.db.connection import SessionFactory
from gastown.db.models import (
    LIVE_AGENT_STATUSES,
    TERMINAL_BEAD_STATUSES,
    Agent,
    AgentEvent,
    AgentRole,
    AgentStatus,
    Bead,
    BeadDependency,
    BeadEvent,
    BeadStatus,
    Convoy,
    ConvoyBead,
    ConvoyStatus,
    DependencyType,
    Escalation,
    EscalationSeverity,
    Mail,
    Molecule,
    ReviewQueueEntry,
    ReviewStatus,
    Rig,
    RigConfig,
)
from gastown.dispatch.container import ContainerDispatch
from gastown.dispatch.prompts import branch_for_agent, system_prompt_for_role
from gastown.errors import NotFoundError, ValidationError
from gastown.scheduler import TickReport, TownScheduler, apply_review_result, sync_convoys
from gastown.schemas import (
    AddDependencyInput,
    AddRigInput,
    AdvanceMoleculeInput,
    AgentDoneInput,
    BeadFilter,
    CompleteReviewInput,
    ConfigureRigInput,
    CreateBeadInput,
    CreateConvoyInput,
    CreateMoleculeInput,
    RegisterAgentInput,
    RouteEscalationInput,
    SendMailInput,
    SubmitReviewInput,
    parse_input,
)
from gastown.town.agent_events import AgentEventLogs
from gastown.town.agents import AgentRegistry, PrimeContext
from gastown.town.beads import BeadStore
from gastown.town.convoys import ConvoyTracker
from gastown.town.escalations import EscalationTracker, escalation_notice, notifies_mayor
from gastown.town.mail import MailStore
from gastown.town.molecules import MoleculeAdvance, MoleculeStep, MoleculeStore
from gastown.town.review_queue import ReviewQueue
from gastown.town.rigs import RigRegistry
from gastown.town.town_config import TownConfig, TownConfigStore, masked

log = structlog.get_logger()


@dataclass
class SlingResult:
    bead: Bead
    agent: Agent


class TownOrchestrator:
    """Single-writer actor owning all state for one town."""

    def __init__(
        self,
        town_id: str,
        *,
        session_factory: SessionFactory,
        container: ContainerDispatch,
        event_logs: AgentEventLogs,
        settings: Settings | None = None,
    ) -> None:
        self.town_id = town_id
        self.settings = settings or default_settings
        self._session_factory = session_factory
        self.container = container
        self.event_logs = event_logs
        self._lock = asyncio.Lock()
        self._background: set[asyncio.Task[Any]] = set()
        self.scheduler = TownScheduler(
            town_id,
            session_factory=session_factory,
            container=container,
            settings=self.settings,
            lock=self._lock,
            notify_mayor=self.notify_mayor,
        )

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        async with self._lock, self._session_factory() as session:
            yield session
            await session.commit()

    def _agents(self, session: AsyncSession) -> AgentRegistry:
        return AgentRegistry(session, town_id=self.town_id)

    # -------------------------------------------------------------------------
    # Detached tasks
    # -------------------------------------------------------------------------

    def _spawn(self, name: str, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=f"{self.town_id}:{name}")
        self._background.add(task)
        task.add_done_callback(self._on_background_done)
        return task

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log.warning(
                "background_task_failed",
                town_id=self.town_id,
                task=task.get_name(),
                error=str(error),
            )

    async def drain(self) -> None:
        """Wait for every detached task, including ones spawned while draining."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # -------------------------------------------------------------------------
    # Mayor
    # -------------------------------------------------------------------------

    def notify_mayor(self, message: str) -> asyncio.Task[Any]:
        """Forward ``message`` to the mayor without blocking the caller."""
        return self._spawn("notify_mayor", self._deliver_to_mayor(message))

    async def _deliver_to_mayor(self, message: str) -> bool:
        """Send to the live mayor session, or start one with ``message`` as its prompt."""
        async with self._transaction() as session:
            agents = self._agents(session)
            mayor = await agents.get_or_create(AgentRole.MAYOR, None)

            if mayor.status in LIVE_AGENT_STATUSES:
                if await self.container.send_message(mayor.id, message):
                    await agents.touch(mayor.id)
                    log.info("mayor_notified", town_id=self.town_id, mayor_id=mayor.id)
                    return True
                log.info("mayor_session_lost", town_id=self.town_id, mayor_id=mayor.id)

            rigs = await RigRegistry(session).list()
            rig = rigs[0] if rigs else None
            started = await self.container.start_agent(
                agent=mayor,
                rig=rig,
                rig_config=await RigRegistry(session).get_config(rig.id) if rig else None,
                town_config=await TownConfigStore(session).get(),
                prompt=message,
                system_prompt=system_prompt_for_role(
                    AgentRole.MAYOR,
                    identity=mayor.identity,
                    agent_name=mayor.name,
                    rig_id=rig.id if rig else "",
                    town_id=self.town_id,
                ),
                branch=branch_for_agent(mayor.name),
            )
            await agents.update_status(
                mayor.id, AgentStatus.WORKING if started else AgentStatus.IDLE
            )
            if started:
                await agents.touch(mayor.id)
            log.info("mayor_session_started", town_id=self.town_id, ok=started)
            return started

    # -------------------------------------------------------------------------
    # Beads
    # -------------------------------------------------------------------------

    async def create_bead(self, **data: Any) -> Bead:
        payload = parse_input(CreateBeadInput, data)
        async with self._transaction() as session:
            return await BeadStore(session).create(payload)

    async def get_bead(self, bead_id: str) -> Bead | None:
        async with self._transaction() as session:
            return await BeadStore(session).get(bead_id)

    async def list_beads(self, **filters: Any) -> list[Bead]:
        flt = parse_input(BeadFilter, filters)
        async with self._transaction() as session:
            return await BeadStore(session).list(flt)

    async def update_bead_status(
        self, bead_id: str, status: BeadStatus | str, *, agent_id: str | None = None
    ) -> Bead:
        new_status = _parse_enum(BeadStatus, status, "status")
        async with self._transaction() as session:
            bead = await BeadStore(session).update_status(bead_id, new_status, agent_id=agent_id)
            if new_status == BeadStatus.CLOSED:
                await sync_convoys(session, bead_id)
            return bead

    async def close_bead(self, bead_id: str, *, agent_id: str | None = None) -> Bead:
        return await self.update_bead_status(bead_id, BeadStatus.CLOSED, agent_id=agent_id)

    async def delete_bead(self, bead_id: str) -> list[str]:
        async with self._transaction() as session:
            return await BeadStore(session).delete(bead_id)

    async def list_bead_events(self, bead_id: str, *, limit: int = 100) -> list[BeadEvent]:
        async with self._transaction() as session:
            return await BeadStore(session).events(bead_id, limit=limit)

    async def add_bead_dependency(
        self,
        bead_id: str,
        depends_on_bead_id: str,
        dependency_type: DependencyType | str = DependencyType.BLOCKS,
    ) -> BeadDependency:
        payload = parse_input(
            AddDependencyInput,
            {
                "bead_id": bead_id,
                "depends_on_bead_id": depends_on_bead_id,
                "dependency_type": dependency_type,
            },
        )
        async with self._transaction() as session:
            return await BeadStore(session).add_dependency(payload)

    async def remove_bead_dependency(self, bead_id: str, depends_on_bead_id: str) -> None:
        async with self._transaction() as session:
            await BeadStore(session).remove_dependency(bead_id, depends_on_bead_id)

    async def list_bead_dependencies(self, bead_id: str) -> list[BeadDependency]:
        async with self._transaction() as session:
            return await BeadStore(session).dependencies(bead_id)

    async def list_bead_dependents(self, bead_id: str) -> list[BeadDependency]:
        async with self._transaction() as session:
            return await BeadStore(session).dependents(bead_id)

    # -------------------------------------------------------------------------
    # Molecules
    # -------------------------------------------------------------------------

    async def create_molecule(self, bead_id: str, formula: dict[str, Any]) -> Molecule:
        payload = parse_input(CreateMoleculeInput, {"bead_id": bead_id, "formula": formula})
        async with self._transaction() as session:
            return await MoleculeStore(session).create(payload)

    async def get_molecule(self, molecule_id: str) -> Molecule | None:
        async with self._transaction() as session:
            return await MoleculeStore(session).get(molecule_id)

    async def get_molecule_for_bead(self, bead_id: str) -> Molecule | None:
        async with self._transaction() as session:
            return await MoleculeStore(session).for_bead(bead_id)

    async def molecule_current_step(self, agent_id: str) -> MoleculeStep | None:
        async with self._transaction() as session:
            return await MoleculeStore(session).current_step(agent_id)

    async def advance_molecule_step(self, agent_id: str, summary: str) -> MoleculeAdvance:
        payload = parse_input(AdvanceMoleculeInput, {"summary": summary})
        async with self._transaction() as session:
            return await MoleculeStore(session).advance(agent_id, payload.summary)

    # -------------------------------------------------------------------------
    # Agents
    # -------------------------------------------------------------------------

    async def register_agent(self, **data: Any) -> Agent:
        payload = parse_input(RegisterAgentInput, data)
        async with self._transaction() as session:
            return await self._agents(session).register(payload)

    async def get_agent(self, agent_id: str) -> Agent | None:
        async with self._transaction() as session:
            return await self._agents(session).get(agent_id)

    async def get_agent_by_identity(self, identity: str) -> Agent | None:
        async with self._transaction() as session:
            return await self._agents(session).get_by_identity(identity)

    async def list_agents(
        self,
        *,
        role: AgentRole | str | None = None,
        status: AgentStatus | str | None = None,
        rig_id: str | None = None,
    ) -> list[Agent]:
        role_ = _parse_enum(AgentRole, role, "role") if role is not None else None
        status_ = _parse_enum(AgentStatus, status, "status") if status is not None else None
        async with self._transaction() as session:
            return await self._agents(session).list(role=role_, status=status_, rig_id=rig_id)

    async def update_agent_status(self, agent_id: str, status: AgentStatus | str) -> Agent:
        new_status = _parse_enum(AgentStatus, status, "status")
        async with self._transaction() as session:
            agent = await self._agents(session).update_status(agent_id, new_status)
            if agent.current_hook_bead_id and new_status == AgentStatus.IDLE:
                await self.scheduler.arm_soon(session)
            return agent

    async def delete_agent(self, agent_id: str) -> None:
        async with self._transaction() as session:
            await self._agents(session).delete(agent_id)
        await self.event_logs.destroy(agent_id)

    async def get_or_create_agent(self, role: AgentRole | str, rig_id: str | None = None) -> Agent:
        role_ = _parse_enum(AgentRole, role, "role")
        async with self._transaction() as session:
            if rig_id is not None:
                await RigRegistry(session).require(rig_id)
            return await self._agents(session).get_or_create(role_, rig_id)

    async def hook_bead(self, agent_id: str, bead_id: str) -> Agent:
        async with self._transaction() as session:
            agent = await self._agents(session).hook(agent_id, bead_id)
            await self.scheduler.arm_soon(session)
            return agent

    async def unhook_bead(self, agent_id: str) -> Agent:
        async with self._transaction() as session:
            return await self._agents(session).unhook(agent_id)

    async def get_hooked_bead(self, agent_id: str) -> Bead | None:
        async with self._transaction() as session:
            return await self._agents(session).get_hooked_bead(agent_id)

    async def write_checkpoint(self, agent_id: str, data: Any) -> None:
        async with self._transaction() as session:
            await self._agents(session).write_checkpoint(agent_id, data)

    async def read_checkpoint(self, agent_id: str) -> Any | None:
        async with self._transaction() as session:
            return await self._agents(session).read_checkpoint(agent_id)

    async def touch_heartbeat(self, agent_id: str) -> Agent:
        async with self._transaction() as session:
            return await self._agents(session).touch(agent_id)

    async def prime(self, agent_id: str) -> PrimeContext:
        async with self._transaction() as session:
            return await self._agents(session).prime(
                agent_id, open_beads_limit=self.settings.open_beads_context_limit
            )

    async def agent_done(self, agent_id: str, **data: Any) -> ReviewQueueEntry | None:
        """An agent finished its hooked bead: queue it for review and release the hook."""
        payload = parse_input(AgentDoneInput, data)
        async with self._transaction() as session:
            entry = await self._agents(session).finish_work(
                agent_id, branch=payload.branch, summary=payload.summary, pr_url=payload.pr_url
            )
            if entry is not None:
                await self.scheduler.arm_soon(session)
            return entry

    async def agent_completed(
        self, agent_id: str, status: str, *, reason: str | None = None
    ) -> ReviewQueueEntry | None:
        """Completion callback from the container runtime.

        ``completed`` routes the hooked bead to review; anything else fails the
        bead. Either way the agent is released and goes idle.
        """
        async with self._transaction() as session:
            agents = self._agents(session)
            agent = await agents.require(agent_id)
            if status == "completed":
                entry = await agents.finish_work(agent_id, summary=reason)
                if entry is not None:
                    await self.scheduler.arm_soon(session)
                return entry

            if agent.current_hook_bead_id is not None:
                beads = BeadStore(session)
                bead = await beads.get(agent.current_hook_bead_id)
                if bead is not None and bead.status not in TERMINAL_BEAD_STATUSES:
                    await beads.update_status(bead.id, BeadStatus.FAILED, agent_id=agent_id)
            await agents.unhook(agent_id)
            log.info(
                "agent_completed_with_failure", agent_id=agent_id, status=status, reason=reason
            )
            return None

    async def sling(self, rig_id: str, **data: Any) -> SlingResult:
        """Create a bead on ``rig_id`` and hook it to a polecat in one step."""
        payload = parse_input(CreateBeadInput, {**data, "rig_id": rig_id})
        async with self._transaction() as session:
            await RigRegistry(session).require(rig_id)
            agents = self._agents(session)
            bead = await BeadStore(session).create(payload)
            polecat = await agents.get_or_create(AgentRole.POLECAT, rig_id)
            await agents.hook(polecat.id, bead.id)
            await self.scheduler.arm_soon(session)
            log.info("bead_slung", bead_id=bead.id, agent_id=polecat.id, rig_id=rig_id)
            return SlingResult(bead=bead, agent=polecat)

    # -------------------------------------------------------------------------
    # Agent event logs
    # -------------------------------------------------------------------------

    async def _require_agent(self, agent_id: str) -> None:
        # unknown ids must not open a log namespace
        async with self._session_factory() as session:
            if await session.get(Agent, agent_id) is None:
                raise NotFoundError("Agent", agent_id)

    async def append_agent_event(
        self, agent_id: str, event_type: str, data: dict[str, Any] | None = None
    ) -> int:
        await self._require_agent(agent_id)
        return await self.event_logs.get(agent_id).append(event_type, data)

    async def get_agent_events(
        self, agent_id: str, *, after_id: int = 0, limit: int = 500
    ) -> list[AgentEvent]:
        await self._require_agent(agent_id)
        return await self.event_logs.get(agent_id).get_events(after_id=after_id, limit=limit)

    # -------------------------------------------------------------------------
    # Mail
    # -------------------------------------------------------------------------

    async def send_mail(self, **data: Any) -> Mail:
        payload = parse_input(SendMailInput, data)
        async with self._transaction() as session:
            return await MailStore(session).send(payload)

    async def check_mail(self, agent_id: str) -> list[Mail]:
        async with self._transaction() as session:
            return await MailStore(session).check(agent_id)

    # -------------------------------------------------------------------------
    # Review queue
    # -------------------------------------------------------------------------

    async def submit_review(self, **data: Any) -> ReviewQueueEntry:
        payload = parse_input(SubmitReviewInput, data)
        async with self._transaction() as session:
            entry = await ReviewQueue(session).submit(payload)
            await self.scheduler.arm_soon(session)
            return entry

    async def complete_review(self, **data: Any) -> ReviewQueueEntry | None:
        """Callback from a refinery or merge container with the review outcome."""
        payload = parse_input(CompleteReviewInput, data)
        async with self._transaction() as session:
            queue = ReviewQueue(session)
            entry = await queue.get(payload.entry_id)
            if entry is None:
                raise NotFoundError("ReviewQueueEntry", payload.entry_id)

            result = await apply_review_result(
                session,
                payload.entry_id,
                payload.status,
                commit_sha=payload.commit_sha,
                message=payload.message,
            )

            agents = self._agents(session)
            for refinery in await agents.list(role=AgentRole.REFINERY):
                if refinery.current_hook_bead_id == entry.bead_id:
                    await agents.unhook(refinery.id)

            if payload.status == "conflict":
                bead = await BeadStore(session).get(entry.bead_id)
                escalation = await EscalationTracker(session).route(
                    RouteEscalationInput(
                        message=(
                            f"Merge conflict on branch {entry.branch} for bead {entry.bead_id}"
                            + (f": {payload.message}" if payload.message else "")
                        ),
                        severity=EscalationSeverity.HIGH,
                        category="merge_conflict",
                        source_rig_id=bead.rig_id if bead else None,
                        source_agent_id=entry.agent_id,
                    )
                )
                self.notify_mayor(escalation_notice(escalation))
            await self.scheduler.arm_soon(session)
            return result

    async def list_review_queue(
        self, status: ReviewStatus | str | None = None
    ) -> list[ReviewQueueEntry]:
        status_ = _parse_enum(ReviewStatus, status, "status") if status is not None else None
        async with self._transaction() as session:
            return await ReviewQueue(session).list(status_)

    # -------------------------------------------------------------------------
    # Convoys
    # -------------------------------------------------------------------------

    async def create_convoy(self, **data: Any) -> Convoy:
        payload = parse_input(CreateConvoyInput, data)
        async with self._transaction() as session:
            beads = BeadStore(session)
            for item in payload.beads:
                await beads.require(item.bead_id)
            tracker = ConvoyTracker(session)
            convoy = await tracker.create(payload)
            await session.flush()
            for item in payload.beads:
                bead = await beads.get(item.bead_id)
                if bead is not None and bead.status == BeadStatus.CLOSED:
                    convoy = await tracker.on_bead_closed(convoy.id, item.bead_id)
            await self.scheduler.arm_soon(session)
            return convoy

    async def get_convoy(self, convoy_id: str) -> Convoy | None:
        async with self._transaction() as session:
            return await ConvoyTracker(session).get(convoy_id)

    async def list_convoys(self, status: str | None = None) -> list[Convoy]:
        status_ = _parse_enum(ConvoyStatus, status, "status") if status is not None else None
        async with self._transaction() as session:
            return await ConvoyTracker(session).list(status_)

    async def convoy_beads(self, convoy_id: str) -> list[ConvoyBead]:
        async with self._transaction() as session:
            return await ConvoyTracker(session).beads(convoy_id)

    async def on_bead_closed(self, convoy_id: str, bead_id: str) -> Convoy:
        async with self._transaction() as session:
            return await ConvoyTracker(session).on_bead_closed(convoy_id, bead_id)

    # -------------------------------------------------------------------------
    # Escalations
    # -------------------------------------------------------------------------

    async def route_escalation(self, **data: Any) -> Escalation:
        """Record an escalation. Anything above low is forwarded to the mayor."""
        payload = parse_input(RouteEscalationInput, data)
        async with self._transaction() as session:
            escalation = await EscalationTracker(session).route(payload)
            await self.scheduler.arm_soon(session)
        if notifies_mayor(escalation.severity):
            self.notify_mayor(escalation_notice(escalation))
        return escalation

    async def acknowledge_escalation(self, escalation_id: str) -> Escalation:
        async with self._transaction() as session:
            return await EscalationTracker(session).acknowledge(escalation_id)

    async def list_escalations(self, *, acknowledged: bool | None = None) -> list[Escalation]:
        async with self._transaction() as session:
            return await EscalationTracker(session).list(acknowledged=acknowledged)

    # -------------------------------------------------------------------------
    # Rigs & config
    # -------------------------------------------------------------------------

    async def add_rig(self, **data: Any) -> Rig:
        payload = parse_input(AddRigInput, data)
        async with self._transaction() as session:
            return await RigRegistry(session).add(payload)

    async def remove_rig(self, rig_id: str) -> None:
        async with self._transaction() as session:
            await RigRegistry(session).remove(rig_id)

    async def list_rigs(self) -> list[Rig]:
        async with self._transaction() as session:
            return await RigRegistry(session).list()

    async def get_rig(self, rig_id: str) -> Rig | None:
        async with self._transaction() as session:
            return await RigRegistry(session).get(rig_id)

    async def configure_rig(self, rig_id: str, **data: Any) -> RigConfig:
        payload = parse_input(ConfigureRigInput, data)
        async with self._transaction() as session:
            return await RigRegistry(session).configure(rig_id, payload)

    async def get_rig_config(self, rig_id: str) -> RigConfig | None:
        async with self._transaction() as session:
            return await RigRegistry(session).get_config(rig_id)

    async def get_town_config(self, *, mask_secrets: bool = False) -> TownConfig:
        async with self._transaction() as session:
            config = await TownConfigStore(session).get()
        return masked(config) if mask_secrets else config

    async def update_town_config(self, patch: dict[str, Any]) -> TownConfig:
        async with self._transaction() as session:
            return await TownConfigStore(session).update(patch)

    # -------------------------------------------------------------------------
    # Scheduler
    # -------------------------------------------------------------------------

    async def tick(self) -> TickReport:
        return await self.scheduler.tick()

    async def arm_soon(self) -> None:
        async with self._transaction() as session:
            await self.scheduler.arm_soon(session)

    async def container_health(self) -> bool:
        return await self.container.health()

    async def close(self) -> None:
        await self.drain()
        await self.container.close()
        await self.event_logs.close()


def _parse_enum(enum_cls: Any, value: Any, field: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError as e:
        allowed = ", ".join(member.value for member in enum_cls)
        raise ValidationError(
            f"Invalid {field}: {value!r} (expected one of: {allowed})",
            details={"field": field, "value": str(value)},
        ) from e
