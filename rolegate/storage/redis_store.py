from __future__ import annotations

import contextlib
import secrets
import time
from typing import Iterator, Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from rolegate.logging import get_logger
from rolegate.storage.errors import StoreUnavailableError

logger = get_logger(__name__)


class RedisKeyValueStore:
    """Redis-backed ephemeral store shared by every API process.

    Atomicity of ``take`` and of the rate-limit window is provided by
    server-side Lua scripts, so it holds across processes and hosts.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    _TAKE_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
  redis.call('DEL', KEYS[1])
end
return value
"""

    _TAKE_AND_ENQUEUE_SCRIPT = """
if redis.call('GET', KEYS[1]) ~= ARGV[1] then
  return 0
end
redis.call('DEL', KEYS[1])
redis.call('RPUSH', KEYS[2], ARGV[2])
return 1
"""

    # Sorted-set sliding window: members are request stamps scored by time in ms
    _SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now_ms = tonumber(ARGV[1])
local window_ms = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local member = ARGV[4]

redis.call('ZREMRANGEBYSCORE', key, 0, now_ms - window_ms)
local current = redis.call('ZCARD', key)

if current >= limit then
  -- the window reopens when its oldest hit ages out
  local retry_ms = window_ms
  local oldest = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
  if oldest[2] then
    retry_ms = tonumber(oldest[2]) + window_ms - now_ms
  end
  if retry_ms < 1 then retry_ms = 1 end
  return {0, current, retry_ms}
end

redis.call('ZADD', key, now_ms, member)
redis.call('PEXPIRE', key, window_ms)
return {1, current + 1, 0}
"""

    def __init__(
        self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT
    ) -> None:
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client: Optional[aioredis.Redis] = None
        self._take = None
        self._take_and_enqueue = None
        self._sliding_window = None

    @contextlib.contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        if self.client is None:
            raise StoreUnavailableError("store is not open", {"operation": operation})
        try:
            yield
        except RedisError as exc:
            logger.error(
                "store_operation_failed",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailableError(
                "ephemeral store unavailable", {"operation": operation}
            ) from exc

    async def open(self) -> None:
        if self.client is not None:
            return
        self.client = aioredis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        self._take = self.client.register_script(self._TAKE_SCRIPT)
        self._take_and_enqueue = self.client.register_script(self._TAKE_AND_ENQUEUE_SCRIPT)
        self._sliding_window = self.client.register_script(self._SLIDING_WINDOW_SCRIPT)
        logger.info("redis_store_opened")

    async def close(self) -> None:
        """Close the connection pool. Safe to call more than once."""
        if self.client is None:
            return
        client, self.client = self.client, None
        self._take = None
        self._take_and_enqueue = None
        self._sliding_window = None
        await client.aclose()
        logger.info("redis_store_closed")

    def verify_connection(self) -> None:
        """Assert Redis connectivity at startup without binding the async pool to a loop."""
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        with self._guard("ping"):
            return bool(await self.client.ping())

    async def get(self, key: str) -> Optional[str]:
        with self._guard("get"):
            return await self.client.get(key)

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._guard("set"):
            await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    async def set_many(self, items: dict[str, str], ttl_seconds: int) -> None:
        ttl = max(1, int(ttl_seconds))
        with self._guard("set_many"):
            pipe = self.client.pipeline(transaction=False)
            for key, value in items.items():
                pipe.set(key, value, ex=ttl)
            await pipe.execute()

    async def delete(self, key: str) -> int:
        with self._guard("delete"):
            return int(await self.client.delete(key))

    async def take(self, key: str) -> Optional[str]:
        with self._guard("take"):
            return await self._take(keys=[key])

    async def enqueue(self, queue: str, value: str) -> int:
        with self._guard("enqueue"):
            return int(await self.client.rpush(queue, value))

    async def take_and_enqueue(self, key: str, expected: str, queue: str, value: str) -> bool:
        with self._guard("take_and_enqueue"):
            claimed = await self._take_and_enqueue(keys=[key, queue], args=[expected, value])
        return bool(int(claimed))

    async def hit_sliding_window(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        now_ms = int(time.time() * 1000)
        member = f"{now_ms}:{secrets.token_hex(6)}"
        with self._guard("hit_sliding_window"):
            allowed, count, retry_after_ms = await self._sliding_window(
                keys=[key],
                args=[now_ms, window_seconds * 1000, limit, member],
            )
        return bool(int(allowed)), int(count), int(retry_after_ms)
