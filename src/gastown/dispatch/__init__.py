"""Container dispatch: prompts, agent tokens and the runtime HTTP client."""

from gastown.dispatch.container import ContainerAgentStatus, ContainerDispatch, MergeOutcome
from gastown.dispatch.prompts import branch_for_agent, build_prompt, system_prompt_for_role

__all__ = [
    "ContainerAgentStatus",
    "ContainerDispatch",
    "MergeOutcome",
    "branch_for_agent",
    "build_prompt",
    "system_prompt_for_role",
]
