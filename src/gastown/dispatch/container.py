"""Outbound calls to a town's container runtime.

Every call is bounded by the client timeout and converts transport failures into
a result value: start calls return ``False``, status polls return ``unknown``,
merges return a ``failed`` outcome. Nothing here raises into the scheduler.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from gastown.config import Settings, settings as default_settings
from gastown.db.models import Agent, ReviewQueueEntry, Rig, RigConfig
from gastown.dispatch.tokens import mint_agent_token
from gastown.town.town_config import TownConfig

log = structlog.get_logger()

GONE_STATUSES = {"not_found", "exited"}


@dataclass(frozen=True)
class ContainerAgentStatus:
    """Process status as reported by the runtime."""

    status: str
    exit_reason: str | None = None

    @property
    def gone(self) -> bool:
        return self.status in GONE_STATUSES

    @property
    def completed(self) -> bool:
        return self.gone and self.exit_reason == "completed"


UNKNOWN_STATUS = ContainerAgentStatus(status="unknown")


@dataclass(frozen=True)
class MergeOutcome:
    """Result of a deterministic merge request.

    ``status`` is ``merged``, ``failed`` or ``accepted`` (the runtime will call
    back with the result later).
    """

    status: str
    commit_sha: str | None = None
    message: str | None = None


def build_env_vars(
    town_config: TownConfig,
    rig_config: RigConfig | None,
    *,
    token: str | None = None,
    extra: dict[str, str] | None = None,
) -> dict[str, str]:
    """Environment for an agent or merge container.

    Town ``env_vars`` come first; credentials override them. Rig-level tokens
    win over town-level ones.
    """
    env = dict(town_config.env_vars)

    git_token = (rig_config.git_token if rig_config else None) or town_config.git_auth.github_token
    if git_token:
        env["GIT_TOKEN"] = git_token
    if town_config.git_auth.gitlab_token:
        env["GITLAB_TOKEN"] = town_config.git_auth.gitlab_token
    if town_config.git_auth.gitlab_instance_url:
        env["GITLAB_INSTANCE_URL"] = town_config.git_auth.gitlab_instance_url

    gateway_token = (rig_config.gateway_token if rig_config else None) or town_config.gateway_token
    if gateway_token:
        env["MODEL_GATEWAY_TOKEN"] = gateway_token
    if token:
        env["GASTOWN_SESSION_TOKEN"] = token
    if extra:
        env.update(extra)
    return env


class ContainerDispatch:
    """HTTP client for one town's container runtime."""

    def __init__(
        self,
        town_id: str,
        *,
        base_url: str | None = None,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.town_id = town_id
        self.settings = settings or default_settings
        self.base_url = (base_url or self.settings.container_url(town_id)).rstrip("/")
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.settings.container_request_timeout_seconds),
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, payload: dict[str, Any] | None = None) -> httpx.Response:
        return await self._client.post(
            path, json=payload or {}, headers={"X-Town-Id": self.town_id}
        )

    async def start_agent(
        self,
        *,
        agent: Agent,
        rig: Rig | None,
        rig_config: RigConfig | None,
        town_config: TownConfig,
        prompt: str,
        system_prompt: str,
        branch: str,
        model: str | None = None,
    ) -> bool:
        """Ask the runtime to start ``agent``. Returns True on a 2xx response."""
        token = mint_agent_token(
            agent_id=agent.id,
            rig_id=agent.rig_id,
            town_id=self.town_id,
            user_id=rig_config.user_id if rig_config else None,
            settings=self.settings,
        )
        payload = {
            "agentId": agent.id,
            "rigId": agent.rig_id,
            "townId": self.town_id,
            "role": agent.role,
            "name": agent.name,
            "identity": agent.identity,
            "prompt": prompt,
            "model": model or town_config.default_model or self.settings.default_model,
            "systemPrompt": system_prompt,
            "gitUrl": rig.git_url if rig else None,
            "branch": branch,
            "defaultBranch": rig.default_branch if rig else "main",
            "envVars": build_env_vars(town_config, rig_config, token=token),
        }
        try:
            response = await self._post("/agents/start", payload)
        except httpx.HTTPError as e:
            log.warning("container_start_failed", agent_id=agent.id, error=str(e))
            return False
        if response.is_success:
            log.info("container_agent_started", agent_id=agent.id, role=agent.role, branch=branch)
            return True
        log.warning(
            "container_start_rejected",
            agent_id=agent.id,
            status_code=response.status_code,
            body=response.text[:500],
        )
        return False

    async def start_merge(
        self,
        *,
        entry: ReviewQueueEntry,
        rig: Rig | None,
        rig_config: RigConfig | None,
        town_config: TownConfig,
    ) -> MergeOutcome:
        """Request a deterministic merge of ``entry.branch`` into the rig's default branch."""
        if rig is None:
            return MergeOutcome(status="failed", message="Rig not found for review entry")

        token = mint_agent_token(
            agent_id=entry.agent_id,
            rig_id=rig.id,
            town_id=self.town_id,
            user_id=rig_config.user_id if rig_config else None,
            settings=self.settings,
        )
        payload = {
            "rigId": rig.id,
            "branch": entry.branch,
            "targetBranch": rig.default_branch,
            "gitUrl": rig.git_url,
            "entryId": entry.id,
            "beadId": entry.bead_id,
            "agentId": entry.agent_id,
            "envVars": build_env_vars(
                town_config,
                rig_config,
                token=token,
                extra={"GASTOWN_API_URL": self.settings.api_url},
            ),
        }
        try:
            response = await self._post("/git/merge", payload)
        except httpx.HTTPError as e:
            log.warning("container_merge_failed", entry_id=entry.id, error=str(e))
            return MergeOutcome(status="failed", message=f"Merge request failed: {e}")

        if not response.is_success:
            log.warning(
                "container_merge_rejected", entry_id=entry.id, status_code=response.status_code
            )
            return MergeOutcome(
                status="failed", message=f"Merge rejected ({response.status_code})"
            )
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        status = body.get("status")
        if status not in {"merged", "failed", "accepted"}:
            status = "accepted" if response.status_code == 202 else "failed"
        return MergeOutcome(
            status=status,
            commit_sha=body.get("commitSha"),
            message=body.get("message"),
        )

    async def check_agent_status(self, agent_id: str) -> ContainerAgentStatus:
        try:
            response = await self._client.get(
                f"/agents/{agent_id}/status", headers={"X-Town-Id": self.town_id}
            )
        except httpx.HTTPError as e:
            log.warning("container_status_failed", agent_id=agent_id, error=str(e))
            return UNKNOWN_STATUS
        if response.status_code == 404:
            return ContainerAgentStatus(status="not_found")
        if not response.is_success:
            return UNKNOWN_STATUS
        try:
            body = response.json()
        except ValueError:
            return UNKNOWN_STATUS
        if not isinstance(body, dict):
            return UNKNOWN_STATUS
        return ContainerAgentStatus(
            status=str(body.get("status") or "unknown"),
            exit_reason=body.get("exitReason"),
        )

    async def send_message(self, agent_id: str, prompt: str) -> bool:
        try:
            response = await self._post(f"/agents/{agent_id}/message", {"prompt": prompt})
        except httpx.HTTPError as e:
            log.warning("container_message_failed", agent_id=agent_id, error=str(e))
            return False
        return response.is_success

    async def stop_agent(self, agent_id: str) -> bool:
        try:
            response = await self._post(f"/agents/{agent_id}/stop")
        except httpx.HTTPError as e:
            log.warning("container_stop_failed", agent_id=agent_id, error=str(e))
            return False
        return response.is_success

    async def health(self) -> bool:
        try:
            response = await self._client.get("/health")
        except httpx.HTTPError:
            return False
        return response.is_success
