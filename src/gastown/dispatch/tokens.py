"""Short-lived bearer tokens that agents use to call back into the town API."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import jwt
import structlog

from gastown.config import Settings, settings as default_settings

log = structlog.get_logger()


class TokenError(RuntimeError):
    """Agent token could not be minted or verified."""


@dataclass(frozen=True)
class AgentClaims:
    agent_id: str
    rig_id: str | None
    town_id: str
    user_id: str | None
    expires_at: datetime


def mint_agent_token(
    *,
    agent_id: str,
    rig_id: str | None,
    town_id: str,
    user_id: str | None,
    settings: Settings | None = None,
    ttl: timedelta | None = None,
) -> str | None:
    """Sign a token scoped to one agent. Returns None when no secret is configured."""
    settings = settings or default_settings
    secret = settings.agent_token_secret.get_secret_value()
    if not secret:
        log.debug("agent_token_skipped", agent_id=agent_id, reason="no_secret")
        return None

    now = datetime.now(UTC)
    expires = now + (ttl or timedelta(hours=settings.agent_token_ttl_hours))
    payload = {
        "agentId": agent_id,
        "rigId": rig_id,
        "townId": town_id,
        "userId": user_id,
        "iat": int(now.timestamp()),
        "exp": int(expires.timestamp()),
    }
    return jwt.encode(payload, secret, algorithm=settings.agent_token_algorithm)


def verify_agent_token(token: str, *, settings: Settings | None = None) -> AgentClaims:
    """Validate signature and expiry, returning the embedded scope."""
    settings = settings or default_settings
    secret = settings.agent_token_secret.get_secret_value()
    if not secret:
        raise TokenError("Agent token secret is not configured")
    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[settings.agent_token_algorithm],
            options={"require": ["exp", "iat"]},
        )
    except jwt.ExpiredSignatureError as e:
        raise TokenError("Agent token expired") from e
    except jwt.InvalidTokenError as e:
        raise TokenError(f"Invalid agent token: {e}") from e

    if not payload.get("agentId") or not payload.get("townId"):
        raise TokenError("Agent token is missing agentId or townId")
    return AgentClaims(
        agent_id=payload["agentId"],
        rig_id=payload.get("rigId"),
        town_id=payload["townId"],
        user_id=payload.get("userId"),
        expires_at=datetime.fromtimestamp(payload["exp"], UTC),
    )
