"""Tests for prompt and branch construction."""

from gastown.dispatch.prompts import (
    branch_for_agent,
    build_prompt,
    refinery_system_prompt,
    system_prompt_for_role,
)


class TestBuildPrompt:
    def test_title_only(self):
        assert build_prompt("Fix login") == "Fix login"

    def test_title_and_body(self):
        assert build_prompt("Fix login", "Users see a 500") == "Fix login\n\nUsers see a 500"

    def test_checkpoint_appended(self):
        """Checkpoints are rendered as JSON after the task text."""
        prompt = build_prompt("Fix login", None, {"done": ["step 1"]})
        title, resume = prompt.split("\n\n", 1)
        assert title == "Fix login"
        assert resume.startswith("Resume from checkpoint:\n{")
        assert '"step 1"' in resume


class TestBranches:
    def test_branch_scoped_to_bead(self):
        assert branch_for_agent("Toast", "1a2b3c4d-5e6f") == "gt/toast/1a2b3c4d"

    def test_name_slugged(self):
        assert branch_for_agent("Polecat 21!") == "gt/polecat-21"

    def test_empty_slug(self):
        assert branch_for_agent("???") == "gt/agent"


class TestSystemPrompts:
    """Role-specific system prompts."""

    def test_polecat(self):
        """Polecats are told to act immediately and push often."""
        prompt = system_prompt_for_role(
            "polecat", identity="Toast@t", agent_name="Toast", rig_id="rig-1", town_id="t"
        )
        assert "GUPP" in prompt
        assert "execute immediately" in prompt
        assert "Push after every commit" in prompt
        for tool in ("gt_prime", "gt_done", "gt_escalate", "gt_checkpoint"):
            assert tool in prompt

    def test_mayor(self):
        prompt = system_prompt_for_role(
            "mayor", identity="Mayor@t", agent_name="Mayor", rig_id="", town_id="t"
        )
        assert "Mayor" in prompt
        assert "[Escalation:" in prompt

    def test_witness_fallback(self):
        """Roles without a dedicated prompt get the generic base."""
        prompt = system_prompt_for_role(
            "witness", identity="Witness@t", agent_name="Witness", rig_id="", town_id="t"
        )
        assert prompt.startswith("You are Witness@t, a Gastown witness agent.")
        assert "monitor agent health" in prompt

    def test_refinery_lists_gates_in_order(self):
        prompt = refinery_system_prompt(
            identity="Refinery@t",
            rig_id="rig-1",
            town_id="t",
            gates=["npm test", "npm run lint"],
            branch="gt/toast/x",
            target_branch="main",
            polecat_agent_id="agent-1",
            entry_id="entry-1",
        )
        assert "1. `npm test`\n2. `npm run lint`" in prompt
        assert "git diff main...gt/toast/x" in prompt
        assert "gt_review_complete" in prompt

    def test_refinery_without_gates(self):
        prompt = refinery_system_prompt(
            identity="Refinery@t",
            rig_id="rig-1",
            town_id="t",
            gates=[],
            branch="b",
            target_branch="main",
            polecat_agent_id="a",
            entry_id="e",
        )
        assert "No quality gates configured" in prompt
