from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Tuple


@dataclass
class Project:
    id: str
    name: str
    guild_id: str


class ProjectDirectory(Protocol):
    """Read-only view of configured projects, owned by the relational layer."""

    def get_project_by_guild(self, guild_id: str) -> Optional[Project]: ...


class KeyValueStore(Protocol):
    """Primitives every ephemeral store backend provides.

    ``take`` is the atomic check-and-delete: exactly one concurrent caller
    observes a given value, all others observe ``None``.
    """

    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def ping(self) -> bool: ...

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def set_many(self, items: dict[str, str], ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> int: ...

    async def take(self, key: str) -> Optional[str]: ...

    async def enqueue(self, queue: str, value: str) -> int: ...

    async def take_and_enqueue(self, key: str, expected: str, queue: str, value: str) -> bool:
        """Delete ``key`` and push ``value`` onto ``queue`` as one step.

        Nothing changes unless ``key`` still holds ``expected``.
        """
        ...

    async def hit_sliding_window(
        self, key: str, limit: int, window_seconds: int
    ) -> Tuple[bool, int, int]: ...
