from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import urlparse, urlunparse

from rolegate.config import get_settings, reset_settings_cache
from rolegate.logging import get_logger
from rolegate.service.gate import ADMIN, BOT, AccessTokenGate, SharedSecretGuard
from rolegate.service.oauth import DiscordOAuthClient, OAuthStateGuard
from rolegate.service.refresh import RefreshTokenRegistry
from rolegate.service.tokens import TokenCodec
from rolegate.service.verification import VerificationChallenges
from rolegate.storage.errors import StoreUnavailableError
from rolegate.storage.memory import MemoryKeyValueStore, MemoryProjectDirectory
from rolegate.storage.redis_store import RedisKeyValueStore

logger = get_logger(__name__)


@dataclass(frozen=True)
class RateLimitRule:
    scope: str
    limit: int
    window_seconds: int


RATE_LIMIT_RULES = {
    "verification_initiation": RateLimitRule("verify-initiate", 5, 15 * 60),
    "verification_completion": RateLimitRule("verify-complete", 3, 15 * 60),
    "public_api": RateLimitRule("public-api", 20, 60),
    "authenticated_api": RateLimitRule("auth-api", 100, 60),
    "auth_callback": RateLimitRule("auth-callback-ip", 10, 15 * 60),
    "auth_refresh": RateLimitRule("auth-refresh-ip", 30, 15 * 60),
}


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a store URL for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the process-wide service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            environment=self.settings.environment.value,
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        if self.settings.use_memory_store:
            if self.settings.is_production:
                raise RuntimeError("the in-process store cannot be used in production")
            self.store = MemoryKeyValueStore()
        else:
            store = RedisKeyValueStore(
                self.settings.redis_url, socket_timeout=self.settings.redis_socket_timeout
            )
            try:
                store.verify_connection()
            except Exception as exc:
                logger.error(
                    "runtime_store_init_failed",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise RuntimeError(
                    "Redis is required for refresh tokens, verification challenges and OAuth state; "
                    "start Redis or set USE_MEMORY_STORE=true for local development."
                ) from exc
            self.store = store

        prefix = self.settings.key_prefix
        self.codec = TokenCodec(
            self.settings.jwt_secret,
            self.settings.jwt_refresh_secret,
            access_ttl_seconds=self.settings.access_token_ttl_seconds,
            refresh_ttl_seconds=self.settings.refresh_token_ttl_seconds,
        )
        self.refresh_tokens = RefreshTokenRegistry(self.store, self.codec, key_prefix=prefix)
        self.challenges = VerificationChallenges(
            self.store, ttl_seconds=self.settings.verification_ttl_seconds, key_prefix=prefix
        )
        self.oauth_states = OAuthStateGuard(
            self.store, ttl_seconds=self.settings.oauth_state_ttl_seconds, key_prefix=prefix
        )
        self.discord = DiscordOAuthClient(
            self.settings.discord_client_id,
            self.settings.discord_client_secret,
            self.settings.discord_redirect_uri,
            api_base=self.settings.discord_api_base,
            timeout=self.settings.discord_http_timeout,
        )
        self.access_gate = AccessTokenGate(self.codec)
        self.bot_guard = SharedSecretGuard(BOT, self.settings.bot_api_secret, label="bot")
        self.admin_guard = SharedSecretGuard(ADMIN, self.settings.admin_api_secret, label="admin")
        self.projects = MemoryProjectDirectory()
        self.verification_queue = f"{prefix}verification:jobs"

        logger.info(
            "runtime_initialized",
            store_type="memory" if self.settings.use_memory_store else "redis",
            redis_url=None if self.settings.use_memory_store else _mask_url_password(self.settings.redis_url),
        )

    async def open(self) -> None:
        await self.store.open()

    async def close(self) -> None:
        await self.store.close()

    def rate_limit_key(self, rule: RateLimitRule, identifier: str) -> str:
        return f"{self.settings.key_prefix}rl:{rule.scope}:{identifier}"


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and not runtime.settings.use_memory_store:
            try:
                asyncio.get_running_loop().create_task(runtime.close())
            except RuntimeError:
                asyncio.run(runtime.close())
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime


async def check_rate_limit(
    runtime: Runtime, rule: RateLimitRule, identifier: str
) -> Tuple[bool, int]:
    """Record one hit against ``rule`` for ``identifier``.

    Returns ``(allowed, retry_after_seconds)``. Rate limiting fails open: when
    the store is unreachable the request is allowed and a warning is logged.
    """
    key = runtime.rate_limit_key(rule, identifier)
    try:
        allowed, _count, retry_after_ms = await runtime.store.hit_sliding_window(
            key, rule.limit, rule.window_seconds
        )
    except StoreUnavailableError as exc:
        logger.warning("rate_limit_check_failed_open", scope=rule.scope, error=exc.message)
        return True, 0
    if allowed:
        return True, 0
    return False, max(1, -(-retry_after_ms // 1000))
