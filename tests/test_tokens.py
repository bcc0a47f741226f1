"""Tests for agent bearer tokens."""

from datetime import timedelta

import jwt
import pytest
from pydantic import SecretStr

from gastown.config import Settings
from gastown.dispatch.tokens import TokenError, mint_agent_token, verify_agent_token


def _mint(settings, **overrides):
    kwargs = {"agent_id": "agent-1", "rig_id": "rig-1", "town_id": "town-1", "user_id": "u-1"}
    kwargs.update(overrides)
    return mint_agent_token(settings=settings, **kwargs)


class TestAgentTokens:
    def test_roundtrip_claims(self, test_settings):
        """Minted tokens verify back to their scope."""
        claims = verify_agent_token(_mint(test_settings), settings=test_settings)
        assert (claims.agent_id, claims.rig_id, claims.town_id, claims.user_id) == (
            "agent-1",
            "rig-1",
            "town-1",
            "u-1",
        )

    def test_wire_claim_names(self, test_settings):
        """Claims use the camelCase names agents expect."""
        payload = jwt.decode(
            _mint(test_settings),
            test_settings.agent_token_secret.get_secret_value(),
            algorithms=["HS256"],
        )
        assert {"agentId", "rigId", "townId", "userId", "iat", "exp"} <= set(payload)

    def test_no_secret_skips_token(self):
        """Without a secret no token is minted."""
        settings = Settings(_env_file=None)
        assert _mint(settings) is None
        with pytest.raises(TokenError):
            verify_agent_token("anything", settings=settings)

    def test_expired(self, test_settings):
        token = _mint(test_settings, ttl=timedelta(seconds=-5))
        with pytest.raises(TokenError, match="expired"):
            verify_agent_token(token, settings=test_settings)

    def test_wrong_secret(self, test_settings):
        token = _mint(test_settings)
        other = test_settings.model_copy(
            update={"agent_token_secret": SecretStr("a-completely-different-secret-value")}
        )
        with pytest.raises(TokenError):
            verify_agent_token(token, settings=other)

    def test_missing_scope(self, test_settings):
        """Tokens must name an agent and a town."""
        token = jwt.encode(
            {"agentId": "a", "iat": 0, "exp": 4_000_000_000},
            test_settings.agent_token_secret.get_secret_value(),
            algorithm="HS256",
        )
        with pytest.raises(TokenError, match="missing"):
            verify_agent_token(token, settings=test_settings)
