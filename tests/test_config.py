"""Tests for startup configuration checks."""

import pytest
from pydantic import ValidationError

from rolegate.config import Settings

SECRETS = {
    "jwt_secret": "a" * 40 + "-access",
    "jwt_refresh_secret": "b" * 40 + "-refresh",
    "bot_api_secret": "c" * 40,
    "admin_api_secret": "d" * 40,
}


def test_defaults_follow_session_policy():
    settings = Settings(**SECRETS)

    assert settings.access_token_ttl_seconds == 3600
    assert settings.refresh_token_ttl_seconds == 7 * 24 * 3600
    assert settings.verification_ttl_seconds == 900
    assert settings.oauth_state_ttl_seconds == 300


@pytest.mark.parametrize("missing", sorted(SECRETS))
def test_missing_secret_fails_fast(missing):
    values = {k: v for k, v in SECRETS.items() if k != missing}

    with pytest.raises(ValidationError):
        Settings(**values)


def test_identical_jwt_secrets_rejected():
    with pytest.raises(ValidationError):
        Settings(**{**SECRETS, "jwt_refresh_secret": SECRETS["jwt_secret"]})


def test_production_rejects_short_secret():
    with pytest.raises(ValidationError):
        Settings(
            **{**SECRETS, "bot_api_secret": "short"},
            environment="production",
            discord_client_id="id",
            discord_client_secret="secret",
        )


def test_production_rejects_placeholder_secret():
    with pytest.raises(ValidationError):
        Settings(
            **{**SECRETS, "jwt_secret": "change_this_to_a_long_random_value_please"},
            environment="production",
            discord_client_id="id",
            discord_client_secret="secret",
        )


def test_production_accepts_strong_secrets():
    settings = Settings(
        **SECRETS,
        environment="production",
        discord_client_id="id",
        discord_client_secret="secret",
    )

    assert settings.is_production


def test_from_env_reads_environment(monkeypatch):
    monkeypatch.setenv("FRONTEND_URL", "https://dash.example/")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("ACCESS_TOKEN_TTL_MINUTES", "15")

    settings = Settings.from_env()

    assert settings.frontend_url == "https://dash.example"
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.access_token_ttl_seconds == 900
    assert settings.discord_redirect_uri.endswith("/v1/auth/discord/callback")
