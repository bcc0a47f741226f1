"""Town scheduler: the alarm loop.

Each tick runs four phases in order, each in its own session so a failure in
one is logged and rolled back without blocking the rest:

1. witness patrol   - poll live agents, reset dead ones, nudge stale ones
2. dispatch         - start idle agents that hold a hook (with a circuit breaker)
3. review queue     - recover orphaned reviews, then gate or merge one entry
4. escalation aging - bump unacknowledged escalations and notify the mayor

The next wake time is persisted in ``TownState`` at the end of every tick,
using the active interval while work is in flight and the idle interval
otherwise. Ticks hold the town lock, so they never overlap with each other or
with inbound API calls.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from gastown.config import Settings
from gastown.db.connection import SessionFactory
from gastown.db.models import (
    LIVE_AGENT_STATUSES,
    TERMINAL_BEAD_STATUSES,
    Agent,
    AgentRole,
    AgentStatus,
    BeadStatus,
    ReviewQueueEntry,
    ReviewStatus,
    TownState,
    utcnow_naive,
)
from gastown.dispatch.container import ContainerDispatch, MergeOutcome
from gastown.dispatch.prompts import (
    branch_for_agent,
    build_prompt,
    refinery_system_prompt,
    system_prompt_for_role,
)
from gastown.schemas import SendMailInput
from gastown.town.agents import AgentRegistry
from gastown.town.beads import BeadStore
from gastown.town.convoys import ConvoyTracker
from gastown.town.escalations import EscalationTracker, escalation_notice
from gastown.town.mail import MailStore
from gastown.town.review_queue import ReviewQueue
from gastown.town.rigs import RigRegistry
from gastown.town.town_config import TownConfig, TownConfigStore

log = structlog.get_logger()

GUPP_CHECK_SUBJECT = "GUPP_CHECK"
GUPP_CHECK_BODY = (
    "You have been working for a while with no activity. Are you stuck? "
    "If so, call gt_escalate."
)
REVIEW_FAILED_SUBJECT = "REVIEW_FAILED"
WITNESS_SENDER = "witness"

PHASES = ("witness_patrol", "dispatch", "review_queue", "escalations")


@dataclass
class TickReport:
    """What one tick did. Returned to callers and logged."""

    started_at: datetime
    dispatched: list[str] = field(default_factory=list)
    dispatch_failed: list[str] = field(default_factory=list)
    circuit_broken: list[str] = field(default_factory=list)
    reset_to_idle: list[str] = field(default_factory=list)
    completed: list[str] = field(default_factory=list)
    stale_checks: list[str] = field(default_factory=list)
    review_entry_id: str | None = None
    review_outcome: str | None = None
    requeued_reviews: list[str] = field(default_factory=list)
    escalations_bumped: list[str] = field(default_factory=list)
    errors: dict[str, str] = field(default_factory=dict)
    active: bool = False
    next_alarm_at: datetime | None = None


async def sync_convoys(session: AsyncSession, bead_id: str) -> None:
    """Propagate a bead closure to every convoy that contains it."""
    tracker = ConvoyTracker(session)
    for convoy_id in await tracker.for_bead(bead_id):
        await tracker.on_bead_closed(convoy_id, bead_id)


class TownScheduler:
    """Alarm loop for one town."""

    def __init__(
        self,
        town_id: str,
        *,
        session_factory: SessionFactory,
        container: ContainerDispatch,
        settings: Settings,
        lock: asyncio.Lock,
        notify_mayor: Callable[[str], Any],
    ) -> None:
        self.town_id = town_id
        self._session_factory = session_factory
        self.container = container
        self.settings = settings
        self._lock = lock
        self._notify_mayor = notify_mayor
        self._wake = asyncio.Event()

    # -------------------------------------------------------------------------
    # Alarm state
    # -------------------------------------------------------------------------

    async def _state(self, session: AsyncSession) -> TownState:
        state = await session.get(TownState, 1)
        if state is None:
            state = TownState(id=1)
            session.add(state)
        return state

    async def arm_soon(self, session: AsyncSession) -> datetime:
        """Pull the next wake forward to now + arm delay. Caller commits."""
        state = await self._state(session)
        target = utcnow_naive() + timedelta(seconds=self.settings.arm_delay_seconds)
        if state.next_alarm_at is None or state.next_alarm_at > target:
            state.next_alarm_at = target
            session.add(state)
        self._wake.set()
        return state.next_alarm_at

    async def next_alarm_at(self) -> datetime | None:
        async with self._session_factory() as session:
            state = await session.get(TownState, 1)
            return state.next_alarm_at if state else None

    async def is_active(self, session: AsyncSession) -> bool:
        """True while any work is in flight and the short interval applies."""
        live = await session.execute(
            select(func.count())
            .select_from(Agent)
            .where(col(Agent.status).in_([s.value for s in LIVE_AGENT_STATUSES]))
        )
        if live.scalar_one() > 0:
            return True
        hooked_idle = await session.execute(
            select(func.count())
            .select_from(Agent)
            .where(Agent.status == AgentStatus.IDLE.value)
            .where(col(Agent.current_hook_bead_id).is_not(None))
        )
        if hooked_idle.scalar_one() > 0:
            return True
        return await ReviewQueue(session).has_outstanding()

    # -------------------------------------------------------------------------
    # Tick
    # -------------------------------------------------------------------------

    async def tick(self) -> TickReport:
        """Run every phase once and re-arm. Holds the town lock throughout."""
        async with self._lock:
            report = TickReport(started_at=utcnow_naive())
            phases = {
                "witness_patrol": self._witness_patrol,
                "dispatch": self._dispatch,
                "review_queue": self._process_review_queue,
                "escalations": self._age_escalations,
            }
            for name in PHASES:
                try:
                    async with self._session_factory() as session:
                        await phases[name](session, report)
                        await session.commit()
                except Exception as e:
                    report.errors[name] = str(e)
                    log.exception("tick_phase_failed", town_id=self.town_id, phase=name)

            await self._rearm(report)
            log.info(
                "town_tick_completed",
                town_id=self.town_id,
                dispatched=len(report.dispatched),
                dispatch_failed=len(report.dispatch_failed),
                circuit_broken=len(report.circuit_broken),
                reset=len(report.reset_to_idle),
                review=report.review_outcome,
                bumped=len(report.escalations_bumped),
                errors=list(report.errors),
                active=report.active,
            )
            return report

    async def _rearm(self, report: TickReport) -> None:
        async with self._session_factory() as session:
            report.active = await self.is_active(session)
            interval = (
                self.settings.active_interval_seconds
                if report.active
                else self.settings.idle_interval_seconds
            )
            now = utcnow_naive()
            state = await self._state(session)
            state.next_alarm_at = now + timedelta(seconds=interval)
            state.last_tick_at = now
            state.tick_count += 1
            session.add(state)
            await session.commit()
            report.next_alarm_at = state.next_alarm_at

    # -------------------------------------------------------------------------
    # Phase 1: witness patrol
    # -------------------------------------------------------------------------

    async def _witness_patrol(self, session: AsyncSession, report: TickReport) -> None:
        agents = AgentRegistry(session, town_id=self.town_id)
        result = await session.execute(
            select(Agent).where(col(Agent.status).in_([s.value for s in LIVE_AGENT_STATUSES]))
        )
        live = list(result.scalars().all())
        if not live:
            return

        statuses = await asyncio.gather(
            *(self.container.check_agent_status(agent.id) for agent in live),
            return_exceptions=True,
        )
        now = utcnow_naive()
        stale_after = timedelta(minutes=self.settings.stale_work_threshold_minutes)
        mail = MailStore(session)

        for agent, status in zip(live, statuses, strict=True):
            if isinstance(status, BaseException):
                log.warning("witness_status_error", agent_id=agent.id, error=str(status))
                continue
            if status.completed:
                entry = await agents.finish_work(
                    agent.id, summary="Completed (detected by witness patrol)"
                )
                report.completed.append(agent.id)
                log.info(
                    "witness_agent_completed",
                    agent_id=agent.id,
                    review_entry_id=entry.id if entry else None,
                )
                continue
            if status.gone:
                agent.status = AgentStatus.IDLE.value
                agent.last_activity_at = now
                session.add(agent)
                report.reset_to_idle.append(agent.id)
                log.info(
                    "witness_agent_reset",
                    agent_id=agent.id,
                    status=status.status,
                    exit_reason=status.exit_reason,
                    hooked_bead_id=agent.current_hook_bead_id,
                )
                continue

            if (
                agent.last_activity_at is not None
                and now - agent.last_activity_at > stale_after
                and not await mail.has_pending(agent.id, GUPP_CHECK_SUBJECT)
            ):
                await mail.send(
                    SendMailInput(
                        from_agent_id=WITNESS_SENDER,
                        to_agent_id=agent.id,
                        subject=GUPP_CHECK_SUBJECT,
                        body=GUPP_CHECK_BODY,
                    )
                )
                report.stale_checks.append(agent.id)

    # -------------------------------------------------------------------------
    # Phase 2: dispatch
    # -------------------------------------------------------------------------

    async def _dispatch(self, session: AsyncSession, report: TickReport) -> None:
        agents = AgentRegistry(session, town_id=self.town_id)
        beads = BeadStore(session)
        result = await session.execute(
            select(Agent)
            .where(Agent.status == AgentStatus.IDLE.value)
            .where(col(Agent.current_hook_bead_id).is_not(None))
            .order_by(col(Agent.created_at))
        )
        candidates = list(result.scalars().all())
        if not candidates:
            return

        town_config = await TownConfigStore(session).get()
        plans: list[tuple[Agent, dict[str, Any]]] = []

        for agent in candidates:
            bead_id = agent.current_hook_bead_id
            bead = await beads.get(bead_id) if bead_id else None
            if bead is None or bead.status in TERMINAL_BEAD_STATUSES:
                await agents.unhook(agent.id)
                log.info("dispatch_dropped_stale_hook", agent_id=agent.id, bead_id=bead_id)
                continue

            attempts = agent.dispatch_attempts + 1
            if attempts > self.settings.max_dispatch_attempts:
                await beads.update_status(bead.id, BeadStatus.FAILED, agent_id=agent.id)
                await agents.unhook(agent.id)
                report.circuit_broken.append(agent.id)
                log.warning(
                    "dispatch_circuit_open",
                    agent_id=agent.id,
                    bead_id=bead.id,
                    attempts=agent.dispatch_attempts,
                )
                continue

            agent.dispatch_attempts = attempts
            session.add(agent)
            request = await self._start_request(session, agent, bead.id, town_config)
            if request is None:
                await agents.unhook(agent.id)
                continue
            plans.append((agent, request))

        # attempts are durable before any container call goes out
        await session.commit()
        if not plans:
            return

        outcomes = await asyncio.gather(
            *(self.container.start_agent(**request) for _, request in plans),
            return_exceptions=True,
        )
        now = utcnow_naive()
        for (agent, _), outcome in zip(plans, outcomes, strict=True):
            if outcome is True:
                agent.status = AgentStatus.WORKING.value
                agent.dispatch_attempts = 0
                agent.last_activity_at = now
                session.add(agent)
                report.dispatched.append(agent.id)
            else:
                if isinstance(outcome, BaseException):
                    log.warning("dispatch_error", agent_id=agent.id, error=str(outcome))
                report.dispatch_failed.append(agent.id)
                log.info(
                    "dispatch_failed",
                    agent_id=agent.id,
                    attempts=agent.dispatch_attempts,
                    max_attempts=self.settings.max_dispatch_attempts,
                )

    async def _start_request(
        self,
        session: AsyncSession,
        agent: Agent,
        bead_id: str,
        town_config: TownConfig,
    ) -> dict[str, Any] | None:
        """Build ``ContainerDispatch.start_agent`` arguments for a hooked agent."""
        bead = await BeadStore(session).require(bead_id)
        rigs = RigRegistry(session)
        rig_id = bead.rig_id or agent.rig_id

        if agent.role == AgentRole.REFINERY.value:
            result = await session.execute(
                select(ReviewQueueEntry)
                .where(ReviewQueueEntry.bead_id == bead_id)
                .where(ReviewQueueEntry.status == ReviewStatus.RUNNING.value)
                .order_by(col(ReviewQueueEntry.created_at).desc())
            )
            entry = result.scalars().first()
            if entry is None:
                return None
            return await self._refinery_request(session, agent, entry, rig_id, town_config)

        rig = await rigs.get(rig_id) if rig_id else None
        return {
            "agent": agent,
            "rig": rig,
            "rig_config": await rigs.get_config(rig_id) if rig_id else None,
            "town_config": town_config,
            "prompt": build_prompt(bead.title, bead.body, agent.checkpoint),
            "system_prompt": system_prompt_for_role(
                agent.role,
                identity=agent.identity,
                agent_name=agent.name,
                rig_id=rig_id or "",
                town_id=self.town_id,
            ),
            "branch": branch_for_agent(agent.name, bead.id),
        }

    async def _refinery_request(
        self,
        session: AsyncSession,
        refinery: Agent,
        entry: ReviewQueueEntry,
        rig_id: str | None,
        town_config: TownConfig,
    ) -> dict[str, Any]:
        rigs = RigRegistry(session)
        rig = await rigs.get(rig_id) if rig_id else None
        target = rig.default_branch if rig else "main"
        prompt = f'Review and process merge request for branch "{entry.branch}" into "{target}".'
        if entry.summary:
            prompt += f"\n\nPolecat summary: {entry.summary}"
        prompt += (
            f"\n\nQuality gates: {', '.join(town_config.refinery.gates) or 'none'}"
            f"\nBranch: {entry.branch}\nTarget: {target}\nReview entry: {entry.id}"
        )
        return {
            "agent": refinery,
            "rig": rig,
            "rig_config": await rigs.get_config(rig_id) if rig_id else None,
            "town_config": town_config,
            "prompt": prompt,
            "system_prompt": refinery_system_prompt(
                identity=refinery.identity,
                rig_id=rig_id or "",
                town_id=self.town_id,
                gates=town_config.refinery.gates,
                branch=entry.branch,
                target_branch=target,
                polecat_agent_id=entry.agent_id,
                entry_id=entry.id,
            ),
            "branch": entry.branch,
        }

    # -------------------------------------------------------------------------
    # Phase 3: review queue
    # -------------------------------------------------------------------------

    async def _process_review_queue(self, session: AsyncSession, report: TickReport) -> None:
        queue = ReviewQueue(session)
        agents = AgentRegistry(session, town_id=self.town_id)

        cutoff = utcnow_naive() - timedelta(seconds=self.settings.review_running_timeout_seconds)
        for stuck in await queue.running_before(cutoff):
            reviewer = await session.execute(
                select(Agent.id)
                .where(Agent.current_hook_bead_id == stuck.bead_id)
                .where(col(Agent.status).in_([s.value for s in LIVE_AGENT_STATUSES]))
                .limit(1)
            )
            if reviewer.first() is None:
                await queue.requeue(stuck)
                report.requeued_reviews.append(stuck.id)

        town_config = await TownConfigStore(session).get()
        gates = town_config.refinery.gates
        if gates:
            result = await session.execute(
                select(Agent).where(Agent.role == AgentRole.REFINERY.value)
            )
            refinery = result.scalars().first()
            if refinery is not None and refinery.current_hook_bead_id is not None:
                return

        entry = await queue.pop()
        if entry is None:
            return
        report.review_entry_id = entry.id
        await session.commit()

        bead = await BeadStore(session).get(entry.bead_id)
        if bead is None or bead.status in TERMINAL_BEAD_STATUSES:
            await queue.complete(
                entry.id,
                ReviewStatus.FAILED,
                message="Bead is missing or already finished",
            )
            report.review_outcome = "failed"
            return

        if gates:
            refinery = await agents.get_or_create(AgentRole.REFINERY, None)
            await agents.hook(refinery.id, entry.bead_id)
            request = await self._refinery_request(
                session, refinery, entry, bead.rig_id, town_config
            )
            await session.commit()
            if await self.container.start_agent(**request):
                refinery.status = AgentStatus.WORKING.value
                refinery.last_activity_at = utcnow_naive()
                session.add(refinery)
                report.review_outcome = "gated"
                log.info("review_gated", entry_id=entry.id, refinery_id=refinery.id)
                return
            await agents.unhook(refinery.id)
            log.warning("review_gate_dispatch_failed", entry_id=entry.id, fallback="merge")

        outcome = await self._merge(session, entry, bead.rig_id, town_config)
        report.review_outcome = outcome.status

    async def _merge(
        self,
        session: AsyncSession,
        entry: ReviewQueueEntry,
        rig_id: str | None,
        town_config: TownConfig,
    ) -> MergeOutcome:
        rigs = RigRegistry(session)
        rig = await rigs.get(rig_id) if rig_id else None
        outcome = await self.container.start_merge(
            entry=entry,
            rig=rig,
            rig_config=await rigs.get_config(rig_id) if rig_id else None,
            town_config=town_config,
        )
        await apply_review_result(
            session,
            entry.id,
            outcome.status,
            commit_sha=outcome.commit_sha,
            message=outcome.message,
        )
        return outcome

    # -------------------------------------------------------------------------
    # Phase 4: escalation aging
    # -------------------------------------------------------------------------

    async def _age_escalations(self, session: AsyncSession, report: TickReport) -> None:
        bumped = await EscalationTracker(session).age(
            threshold=timedelta(minutes=self.settings.escalation_threshold_minutes),
            max_re_escalations=self.settings.max_re_escalations,
        )
        await session.commit()
        for escalation in bumped:
            report.escalations_bumped.append(escalation.id)
            self._notify_mayor(escalation_notice(escalation, re_escalation=True))

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    async def _seconds_until_alarm(self) -> float:
        alarm = await self.next_alarm_at()
        if alarm is None:
            return 0.0
        return max(0.0, (alarm - utcnow_naive()).total_seconds())

    async def _sleep(self, delay: float, stop_event: asyncio.Event) -> None:
        waiters = [
            asyncio.create_task(stop_event.wait()),
            asyncio.create_task(self._wake.wait()),
        ]
        try:
            await asyncio.wait(waiters, timeout=delay, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()
        self._wake.clear()

    async def run(self, stop_event: asyncio.Event) -> None:
        """Tick whenever the alarm is due until ``stop_event`` is set."""
        log.info("scheduler_started", town_id=self.town_id)
        while not stop_event.is_set():
            try:
                delay = await self._seconds_until_alarm()
                if delay > 0:
                    await self._sleep(delay, stop_event)
                    continue
                await self.tick()
            except Exception:
                log.exception("scheduler_loop_error", town_id=self.town_id)
                await self._sleep(self.settings.idle_interval_seconds, stop_event)
        log.info("scheduler_stopped", town_id=self.town_id)


async def apply_review_result(
    session: AsyncSession,
    entry_id: str,
    status: str,
    *,
    commit_sha: str | None = None,
    message: str | None = None,
) -> ReviewQueueEntry | None:
    """Record a merge/gate outcome on a review entry.

    ``merged`` closes the bead and updates convoys. ``failed`` (and
    ``conflict``, recorded as failed) mails the submitting agent so it shows up
    in its next prime. ``accepted`` means a callback will follow, so the entry
    stays running. Returns None in that case.
    """
    if status == "accepted":
        log.info("review_merge_accepted", entry_id=entry_id)
        return None

    queue = ReviewQueue(session)
    final = ReviewStatus.MERGED if status == ReviewStatus.MERGED.value else ReviewStatus.FAILED
    entry = await queue.complete(entry_id, final, commit_sha=commit_sha, message=message)

    if final == ReviewStatus.MERGED:
        await sync_convoys(session, entry.bead_id)
        return entry

    submitter = await session.get(Agent, entry.agent_id)
    if submitter is not None:
        await MailStore(session).send(
            SendMailInput(
                from_agent_id=WITNESS_SENDER,
                to_agent_id=submitter.id,
                subject=REVIEW_FAILED_SUBJECT,
                body=(
                    f"Review of branch {entry.branch} for bead {entry.bead_id} failed"
                    f"{' (merge conflict)' if status == 'conflict' else ''}: "
                    f"{message or 'no details'}"
                ),
            )
        )
    return entry
