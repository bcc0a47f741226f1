"""Tests for the scheduler alarm loop: patrol, dispatch, review queue, re-arm."""

import asyncio
from datetime import timedelta

from conftest import backdate

from gastown.db.models import (
    Agent,
    AgentStatus,
    BeadStatus,
    ReviewQueueEntry,
    ReviewStatus,
    utcnow_naive,
)
from gastown.dispatch.container import ContainerAgentStatus, MergeOutcome
from gastown.scheduler import GUPP_CHECK_SUBJECT, REVIEW_FAILED_SUBJECT


async def _working_polecat(town, rig, title="fix bug"):
    """Sling a bead and run one tick so the polecat is working."""
    slung = await town.sling(rig.id, title=title, body="details")
    report = await town.tick()
    assert report.dispatched == [slung.agent.id]
    return slung.bead, slung.agent


async def _two_submissions(town, rig):
    """Two polecats finish work back to back; returns both review entries."""
    one = await town.sling(rig.id, title="one")
    two = await town.sling(rig.id, title="two")
    report = await town.tick()
    assert sorted(report.dispatched) == sorted([one.agent.id, two.agent.id])
    first = await town.agent_done(one.agent.id, branch="gt/toast/one")
    second = await town.agent_done(two.agent.id, branch="gt/maple/two")
    return first, second


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TestDispatch:
    """Starting hooked idle agents."""

    async def test_dispatch_starts_hooked_agent(self, town, rig, container):
        """A hooked idle polecat is started and marked working."""
        slung = await town.sling(rig.id, title="fix bug", body="steps to reproduce")

        report = await town.tick()

        assert report.dispatched == [slung.agent.id]
        agent = await town.get_agent(slung.agent.id)
        assert agent.status == AgentStatus.WORKING
        assert agent.dispatch_attempts == 0
        assert agent.last_activity_at is not None

        kwargs = container.start_agent.await_args.kwargs
        assert kwargs["agent"].id == slung.agent.id
        assert kwargs["rig"].id == rig.id
        assert kwargs["prompt"] == "fix bug\n\nsteps to reproduce"
        assert kwargs["branch"] == f"gt/toast/{slung.bead.id[:8]}"
        assert "GUPP" in kwargs["system_prompt"]

    async def test_resume_prompt_includes_checkpoint(self, town, rig, container):
        """A checkpoint is appended to the prompt on restart."""
        slung = await town.sling(rig.id, title="fix bug")
        await town.write_checkpoint(slung.agent.id, {"step": 2})

        await town.tick()

        prompt = container.start_agent.await_args.kwargs["prompt"]
        assert prompt.startswith("fix bug\n\nResume from checkpoint:")
        assert '"step": 2' in prompt

    async def test_failed_start_keeps_agent_idle(self, town, rig, container):
        """A rejected start leaves the agent idle with one attempt recorded."""
        container.start_agent.return_value = False
        slung = await town.sling(rig.id, title="fix bug")

        report = await town.tick()

        assert report.dispatch_failed == [slung.agent.id]
        agent = await town.get_agent(slung.agent.id)
        assert agent.status == AgentStatus.IDLE
        assert agent.dispatch_attempts == 1
        assert agent.current_hook_bead_id == slung.bead.id

    async def test_start_exception_counts_as_failure(self, town, rig, container):
        """Unexpected errors from the runtime client are a failed attempt."""
        container.start_agent.side_effect = RuntimeError("socket closed")
        slung = await town.sling(rig.id, title="fix bug")

        report = await town.tick()

        assert report.dispatch_failed == [slung.agent.id]
        assert report.errors == {}

    async def test_circuit_breaker_fails_bead(self, town, rig, container):
        """After the attempt budget is spent the bead fails and the agent is released."""
        container.start_agent.return_value = False
        slung = await town.sling(rig.id, title="never starts")

        for attempt in range(1, 6):
            report = await town.tick()
            assert report.dispatch_failed == [slung.agent.id]
            assert (await town.get_agent(slung.agent.id)).dispatch_attempts == attempt

        report = await town.tick()

        assert report.circuit_broken == [slung.agent.id]
        assert container.start_agent.await_count == 5
        assert (await town.get_bead(slung.bead.id)).status == BeadStatus.FAILED
        agent = await town.get_agent(slung.agent.id)
        assert agent.current_hook_bead_id is None
        assert agent.status == AgentStatus.IDLE

        await town.tick()
        assert container.start_agent.await_count == 5

    async def test_success_resets_attempts(self, town, rig, container):
        """A successful start after failures clears the counter."""
        container.start_agent.return_value = False
        slung = await town.sling(rig.id, title="flaky")
        await town.tick()
        await town.tick()

        container.start_agent.return_value = True
        await town.tick()

        agent = await town.get_agent(slung.agent.id)
        assert agent.status == AgentStatus.WORKING
        assert agent.dispatch_attempts == 0

    async def test_mixed_outcomes_applied_per_agent(self, town, rig, container):
        """Each agent gets its own dispatch outcome within one tick."""
        first = await town.sling(rig.id, title="first")
        second = await town.sling(rig.id, title="second")

        async def start(**kwargs):
            return kwargs["agent"].id == first.agent.id

        container.start_agent.side_effect = start
        report = await town.tick()

        assert report.dispatched == [first.agent.id]
        assert report.dispatch_failed == [second.agent.id]
        assert (await town.get_agent(first.agent.id)).status == AgentStatus.WORKING
        loser = await town.get_agent(second.agent.id)
        assert loser.status == AgentStatus.IDLE
        assert loser.dispatch_attempts == 1

    async def test_terminal_hook_is_dropped(self, town, rig, container):
        """An agent hooked to a closed bead is unhooked instead of started."""
        slung = await town.sling(rig.id, title="already done")
        await town.close_bead(slung.bead.id)

        await town.tick()

        container.start_agent.assert_not_awaited()
        assert (await town.get_agent(slung.agent.id)).current_hook_bead_id is None


# ---------------------------------------------------------------------------
# Witness patrol
# ---------------------------------------------------------------------------


class TestWitnessPatrol:
    """Polling live agents against the container runtime."""

    async def test_gone_agent_reset_to_idle(self, town, rig, container):
        """A vanished process puts the agent back to idle with its hook kept."""
        bead, agent = await _working_polecat(town, rig)
        container.check_agent_status.return_value = ContainerAgentStatus(status="not_found")
        container.start_agent.return_value = False

        report = await town.tick()

        assert report.reset_to_idle == [agent.id]
        stored = await town.get_agent(agent.id)
        assert stored.status == AgentStatus.IDLE
        assert stored.current_hook_bead_id == bead.id

    async def test_reset_agent_redispatched_same_tick(self, town, rig, container):
        """Dispatch runs after patrol, so a reset agent restarts immediately."""
        _, agent = await _working_polecat(town, rig)
        container.check_agent_status.return_value = ContainerAgentStatus(
            status="exited", exit_reason="crashed"
        )

        report = await town.tick()

        assert report.reset_to_idle == [agent.id]
        assert report.dispatched == [agent.id]
        assert (await town.get_agent(agent.id)).status == AgentStatus.WORKING

    async def test_completed_agent_goes_to_review(self, town, rig, container):
        """A cleanly exited agent's work is queued and merged in the same tick."""
        bead, agent = await _working_polecat(town, rig)
        container.check_agent_status.return_value = ContainerAgentStatus(
            status="exited", exit_reason="completed"
        )

        report = await town.tick()

        assert report.completed == [agent.id]
        assert report.review_outcome == "merged"
        entry = container.start_merge.await_args.kwargs["entry"]
        assert entry.branch == f"gt/toast/{bead.id[:8]}"
        assert (await town.get_bead(bead.id)).status == BeadStatus.CLOSED
        stored = await town.get_agent(agent.id)
        assert stored.current_hook_bead_id is None
        assert stored.status == AgentStatus.IDLE

    async def test_unknown_status_leaves_agent_alone(self, town, rig, container):
        """An unreachable runtime does not reset anything."""
        _, agent = await _working_polecat(town, rig)
        container.check_agent_status.return_value = ContainerAgentStatus(status="unknown")

        report = await town.tick()

        assert report.reset_to_idle == []
        assert (await town.get_agent(agent.id)).status == AgentStatus.WORKING

    async def test_stale_agent_gets_one_liveness_check(self, town, rig, sessions):
        """A quiet working agent is mailed once until it reads the mail."""
        _, agent = await _working_polecat(town, rig)
        await backdate(sessions, Agent, agent.id, last_activity_at=timedelta(minutes=31))

        first = await town.tick()
        second = await town.tick()

        assert first.stale_checks == [agent.id]
        assert second.stale_checks == []
        mail = await town.check_mail(agent.id)
        assert [m.subject for m in mail] == [GUPP_CHECK_SUBJECT]
        assert mail[0].from_agent_id == "witness"

    async def test_stale_unhooked_agent_checked(self, town, sessions):
        """The liveness check covers working agents with no hook."""
        mayor = await town.get_or_create_agent("mayor")
        await town.update_agent_status(mayor.id, "working")
        await backdate(sessions, Agent, mayor.id, last_activity_at=timedelta(minutes=31))

        report = await town.tick()

        assert report.stale_checks == [mayor.id]
        assert [m.subject for m in await town.check_mail(mayor.id)] == [GUPP_CHECK_SUBJECT]

    async def test_active_agent_not_nudged(self, town, rig):
        """Recent activity means no liveness check."""
        await _working_polecat(town, rig)
        report = await town.tick()
        assert report.stale_checks == []


# ---------------------------------------------------------------------------
# Review queue
# ---------------------------------------------------------------------------


class TestReviewQueue:
    """Deterministic merges, refinery gating and recovery."""

    async def test_merge_without_gates(self, town, rig, container):
        """No gates means a direct merge that closes the bead."""
        bead, agent = await _working_polecat(town, rig)
        entry = await town.agent_done(agent.id, branch="gt/toast/feature")

        report = await town.tick()

        assert report.review_entry_id == entry.id
        assert report.review_outcome == "merged"
        [stored] = await town.list_review_queue()
        assert stored.status == ReviewStatus.MERGED
        assert stored.commit_sha == "c0ffee1"
        assert (await town.get_bead(bead.id)).status == BeadStatus.CLOSED
        assert container.start_merge.await_args.kwargs["rig"].id == rig.id

    async def test_failed_merge_mails_submitter(self, town, rig, container):
        """A failed merge leaves the bead open and tells the polecat why."""
        container.start_merge.return_value = MergeOutcome(status="failed", message="tests red")
        bead, agent = await _working_polecat(town, rig)
        await town.agent_done(agent.id, branch="gt/toast/feature")

        report = await town.tick()

        assert report.review_outcome == "failed"
        [stored] = await town.list_review_queue()
        assert stored.status == ReviewStatus.FAILED
        assert (await town.get_bead(bead.id)).status == BeadStatus.IN_PROGRESS
        mail = await town.check_mail(agent.id)
        assert [m.subject for m in mail] == [REVIEW_FAILED_SUBJECT]
        assert "tests red" in mail[0].body

    async def test_accepted_merge_stays_running(self, town, rig, container):
        """An accepted merge waits for the completion callback."""
        container.start_merge.return_value = MergeOutcome(status="accepted")
        bead, agent = await _working_polecat(town, rig)
        entry = await town.agent_done(agent.id, branch="gt/toast/feature")

        report = await town.tick()

        assert report.review_outcome == "accepted"
        [stored] = await town.list_review_queue()
        assert stored.status == ReviewStatus.RUNNING

        await town.complete_review(entry_id=entry.id, status="merged", commit_sha="abc123")
        assert (await town.get_bead(bead.id)).status == BeadStatus.CLOSED

    async def test_one_entry_per_tick(self, town, rig, container):
        """Entries are processed oldest first, one per tick."""
        first, second = await _two_submissions(town, rig)

        assert (await town.tick()).review_entry_id == first.id
        assert (await town.tick()).review_entry_id == second.id
        assert (await town.tick()).review_entry_id is None

    async def test_missing_bead_fails_entry(self, town, rig, container):
        """An entry whose bead was closed meanwhile is failed without a merge."""
        bead, agent = await _working_polecat(town, rig)
        await town.agent_done(agent.id, branch="gt/toast/feature")
        await town.update_bead_status(bead.id, "failed")

        report = await town.tick()

        assert report.review_outcome == "failed"
        container.start_merge.assert_not_awaited()

    async def test_gates_route_to_refinery(self, town, rig, container):
        """Configured gates hand the entry to the refinery instead of merging."""
        await town.update_town_config({"refinery": {"gates": ["pytest -q", "ruff check"]}})
        bead, agent = await _working_polecat(town, rig)
        entry = await town.agent_done(agent.id, branch="gt/toast/feature")

        report = await town.tick()

        assert report.review_outcome == "gated"
        container.start_merge.assert_not_awaited()
        [refinery] = await town.list_agents(role="refinery")
        assert refinery.status == AgentStatus.WORKING
        assert refinery.current_hook_bead_id == bead.id

        kwargs = container.start_agent.await_args.kwargs
        assert kwargs["agent"].id == refinery.id
        assert kwargs["branch"] == "gt/toast/feature"
        assert "pytest -q" in kwargs["system_prompt"]
        assert entry.id in kwargs["system_prompt"]
        assert "gt_review_complete" in kwargs["system_prompt"]

        await town.complete_review(entry_id=entry.id, status="merged", commit_sha="abc123")
        assert (await town.get_bead(bead.id)).status == BeadStatus.CLOSED
        assert (await town.get_agent(refinery.id)).current_hook_bead_id is None

    async def test_busy_refinery_defers_queue(self, town, rig, container):
        """With gates, nothing is popped while the refinery holds a review."""
        await town.update_town_config({"refinery": {"gates": ["pytest"]}})
        first, second = await _two_submissions(town, rig)
        assert (await town.tick()).review_outcome == "gated"

        report = await town.tick()

        assert report.review_entry_id is None
        assert (await town.list_review_queue("running"))[0].id == first.id
        pending = await town.list_review_queue("pending")
        assert [e.id for e in pending] == [second.id]

    async def test_refinery_start_failure_falls_back_to_merge(self, town, rig, container):
        """If the refinery cannot start, the entry is merged directly."""
        await town.update_town_config({"refinery": {"gates": ["pytest"]}})
        bead, agent = await _working_polecat(town, rig)
        await town.agent_done(agent.id, branch="gt/toast/feature")
        container.start_agent.return_value = False

        report = await town.tick()

        assert report.review_outcome == "merged"
        container.start_merge.assert_awaited_once()
        [refinery] = await town.list_agents(role="refinery")
        assert refinery.current_hook_bead_id is None
        assert (await town.get_bead(bead.id)).status == BeadStatus.CLOSED

    async def test_orphaned_running_entry_requeued(self, town, rig, sessions):
        """A running entry with nobody working on it is retried."""
        bead, agent = await _working_polecat(town, rig)
        entry = await town.agent_done(agent.id, branch="gt/toast/feature")
        async with sessions() as session:
            row = await session.get(ReviewQueueEntry, entry.id)
            row.status = ReviewStatus.RUNNING.value
            row.processed_at = utcnow_naive() - timedelta(minutes=10)
            session.add(row)
            await session.commit()

        report = await town.tick()

        assert report.requeued_reviews == [entry.id]
        assert report.review_outcome == "merged"
        assert (await town.get_bead(bead.id)).status == BeadStatus.CLOSED

    async def test_live_refinery_review_not_requeued(self, town, rig, sessions):
        """A long-running gated review is left alone while the refinery is alive."""
        await town.update_town_config({"refinery": {"gates": ["pytest"]}})
        _, agent = await _working_polecat(town, rig)
        entry = await town.agent_done(agent.id, branch="gt/toast/feature")
        await town.tick()
        await backdate(sessions, ReviewQueueEntry, entry.id, processed_at=timedelta(minutes=10))

        report = await town.tick()

        assert report.requeued_reviews == []
        [stored] = await town.list_review_queue()
        assert stored.status == ReviewStatus.RUNNING


# ---------------------------------------------------------------------------
# Re-arm & isolation
# ---------------------------------------------------------------------------


class TestAlarm:
    """Alarm persistence, intervals and phase isolation."""

    async def test_idle_town_uses_idle_interval(self, town):
        """A quiet town sleeps for the long interval."""
        report = await town.tick()

        assert report.active is False
        delta = report.next_alarm_at - report.started_at
        assert timedelta(seconds=170) < delta <= timedelta(seconds=181)
        assert await town.scheduler.next_alarm_at() == report.next_alarm_at

    async def test_busy_town_uses_active_interval(self, town, rig):
        """Work in flight keeps the short interval."""
        await town.sling(rig.id, title="fix bug")
        report = await town.tick()

        assert report.active is True
        delta = report.next_alarm_at - report.started_at
        assert timedelta(seconds=20) < delta <= timedelta(seconds=31)

    async def test_arm_soon_only_moves_alarm_earlier(self, town):
        """Arming never pushes an earlier alarm back."""
        await town.arm_soon()
        first = await town.scheduler.next_alarm_at()
        assert first - utcnow_naive() <= timedelta(seconds=5)

        await town.tick()
        await town.arm_soon()
        assert await town.scheduler.next_alarm_at() - utcnow_naive() <= timedelta(seconds=5)

    async def test_failing_phase_does_not_block_others(self, town, rig, monkeypatch):
        """One phase raising is recorded and later phases still run."""

        async def explode(session, report):
            raise RuntimeError("patrol exploded")

        monkeypatch.setattr(town.scheduler, "_witness_patrol", explode)
        slung = await town.sling(rig.id, title="fix bug")

        report = await town.tick()

        assert report.errors == {"witness_patrol": "patrol exploded"}
        assert report.dispatched == [slung.agent.id]
        assert report.next_alarm_at is not None

    async def test_run_loop_ticks_when_due(self, town, rig, container, test_settings):
        """The loop ticks once the alarm is due and exits on stop."""
        test_settings.arm_delay_seconds = 0
        await town.sling(rig.id, title="fix bug")
        stop = asyncio.Event()
        loop_task = asyncio.create_task(town.scheduler.run(stop))

        for _ in range(200):
            if container.start_agent.await_count:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(loop_task, timeout=5)

        assert container.start_agent.await_count == 1
