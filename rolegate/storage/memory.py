from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple

from rolegate.storage.models import Project


class MemoryKeyValueStore:
    """In-process ephemeral store for tests and single-process development.

    Entries expire lazily on access. All mutations happen under one lock so
    ``take`` is atomic for every caller sharing this instance; it is not
    shared across processes, which is what ``RedisKeyValueStore`` is for.
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._values: Dict[str, Tuple[str, float]] = {}
        self._queues: Dict[str, List[str]] = {}
        self._windows: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._open = False

    def _live_value(self, key: str, now: float) -> Optional[str]:
        # caller holds the lock
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= now:
            del self._values[key]
            return None
        return value

    async def open(self) -> None:
        self._open = True

    async def close(self) -> None:
        self._open = False

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live_value(key, self._clock())

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._lock:
            self._values[key] = (value, self._clock() + max(1, int(ttl_seconds)))

    async def set_many(self, items: dict[str, str], ttl_seconds: int) -> None:
        with self._lock:
            expires_at = self._clock() + max(1, int(ttl_seconds))
            for key, value in items.items():
                self._values[key] = (value, expires_at)

    async def delete(self, key: str) -> int:
        with self._lock:
            present = self._live_value(key, self._clock()) is not None
            self._values.pop(key, None)
            return 1 if present else 0

    async def take(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._live_value(key, self._clock())
            if value is not None:
                del self._values[key]
            return value

    async def enqueue(self, queue: str, value: str) -> int:
        with self._lock:
            items = self._queues.setdefault(queue, [])
            items.append(value)
            return len(items)

    async def take_and_enqueue(self, key: str, expected: str, queue: str, value: str) -> bool:
        with self._lock:
            if self._live_value(key, self._clock()) != expected:
                return False
            del self._values[key]
            self._queues.setdefault(queue, []).append(value)
            return True

    def drain(self, queue: str) -> List[str]:
        """Remove and return everything pushed onto ``queue`` so far."""
        with self._lock:
            return self._queues.pop(queue, [])

    async def hit_sliding_window(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]:
        with self._lock:
            now = self._clock()
            stamps = self._windows.setdefault(key, deque())
            while stamps and stamps[0] <= now - window_seconds:
                stamps.popleft()
            if len(stamps) >= limit:
                retry_after = stamps[0] + window_seconds - now
                return False, len(stamps), max(1, int(retry_after * 1000))
            stamps.append(now)
            return True, len(stamps), 0


class MemoryProjectDirectory:
    """Seedable project lookup standing in for the relational schema."""

    def __init__(self, projects: Iterable[Project] = ()) -> None:
        self._by_guild: Dict[str, Project] = {}
        self._lock = threading.Lock()
        for project in projects:
            self.add_project(project)

    def add_project(self, project: Project) -> Project:
        with self._lock:
            self._by_guild[project.guild_id] = project
        return project

    def get_project_by_guild(self, guild_id: str) -> Optional[Project]:
        with self._lock:
            return self._by_guild.get(guild_id)
