from __future__ import annotations

import os
import re
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from rolegate.logging import get_logger

logger = get_logger(__name__)

MIN_PRODUCTION_SECRET_LENGTH = 32

# Values that look like they were copied from an example .env file
_PLACEHOLDER_SECRET = re.compile(r"^(change_this|your_|test|secret|password)", re.IGNORECASE)

_SECRET_FIELDS = ("jwt_secret", "jwt_refresh_secret", "bot_api_secret", "admin_api_secret")


class Environment(str, Enum):
    DEVELOPMENT = "development"
    TEST = "test"
    PRODUCTION = "production"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra["env"] = env
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    environment: Environment = env_field(Environment.DEVELOPMENT, "ENVIRONMENT")

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(
        5.0,
        "REDIS_SOCKET_TIMEOUT",
        description="Upper bound in seconds for any single store round trip",
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets and in-process stores for the test suite.",
    )
    key_prefix: str = env_field(
        "",
        "KEY_PREFIX",
        description="Namespace prepended to every store key (e.g. to share one Redis database)",
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    access_token_ttl_minutes: int = env_field(60, "ACCESS_TOKEN_TTL_MINUTES", gt=0)
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", gt=0)
    verification_ttl_seconds: int = env_field(15 * 60, "VERIFICATION_TTL_SECONDS", gt=0)
    oauth_state_ttl_seconds: int = env_field(5 * 60, "OAUTH_STATE_TTL_SECONDS", gt=0)

    bot_api_secret: str | None = env_field(None, "BOT_API_SECRET")
    admin_api_secret: str | None = env_field(None, "ADMIN_API_SECRET")

    discord_client_id: str | None = env_field(None, "DISCORD_CLIENT_ID")
    discord_client_secret: str | None = env_field(None, "DISCORD_CLIENT_SECRET")
    discord_api_base: str = env_field("https://discord.com/api/v10", "DISCORD_API_BASE")
    discord_http_timeout: float = env_field(10.0, "DISCORD_HTTP_TIMEOUT")
    api_url: str = env_field("http://localhost:3001", "API_URL")
    frontend_url: str = env_field("http://localhost:3000", "FRONTEND_URL")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("frontend_url", "api_url", "discord_api_base")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @model_validator(mode="after")
    def _require_secrets(self) -> "Settings":
        missing = [name.upper() for name in _SECRET_FIELDS if not getattr(self, name)]
        if missing:
            raise ValueError(f"missing required secrets: {', '.join(missing)}")
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        if self.environment == Environment.PRODUCTION:
            for name in _SECRET_FIELDS:
                value = getattr(self, name)
                if len(value) < MIN_PRODUCTION_SECRET_LENGTH:
                    raise ValueError(
                        f"{name.upper()} must be at least {MIN_PRODUCTION_SECRET_LENGTH} characters in production"
                    )
                if _PLACEHOLDER_SECRET.match(value):
                    raise ValueError(f"{name.upper()} looks like a placeholder value")
            if not self.discord_client_id or not self.discord_client_secret:
                raise ValueError("DISCORD_CLIENT_ID and DISCORD_CLIENT_SECRET are required in production")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_minutes * 60

    @property
    def discord_redirect_uri(self) -> str:
        return f"{self.api_url}/v1/auth/discord/callback"


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.info(
            "settings_loaded",
            environment=_settings_cache.environment.value,
            use_memory_store=_settings_cache.use_memory_store,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
