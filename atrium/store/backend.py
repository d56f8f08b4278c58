"""Shared key-value store backends.

Sessions, listing-cache pages and bucket-size results all live in one
shared store so that every process in a deployment sees the same TTLs and
locks. Each caller owns its own key prefix under ``atrium:``.
"""

from __future__ import annotations

import time
from typing import Callable, Protocol, runtime_checkable


class StoreError(Exception):
    """The backing store is unreachable or rejected the request."""


@runtime_checkable
class KeyValueStore(Protocol):
    """Protocol for the shared TTL key-value store."""

    async def get(self, key: str) -> str | None:
        """Return the value, or None if missing or expired."""
        ...

    async def set(
        self, key: str, value: str, ttl: float, *, only_if_absent: bool = False
    ) -> bool:
        """Write ``value`` with a TTL in seconds.

        With ``only_if_absent`` the write is an atomic create-if-absent and
        returns False when a live entry already exists.
        """
        ...

    async def expire(self, key: str, ttl: float) -> bool:
        """Reset the TTL of a live key. Returns False if the key is absent."""
        ...

    async def ttl(self, key: str) -> float | None:
        """Remaining lifetime in seconds, or None if absent."""
        ...

    async def delete(self, *keys: str) -> int:
        """Delete keys. Returns how many live keys were removed."""
        ...

    async def delete_if_value(self, key: str, expected: str) -> bool:
        """Delete ``key`` only if its current value equals ``expected``."""
        ...

    async def scan(self, prefix: str) -> list[str]:
        """Return every live key starting with ``prefix``."""
        ...

    async def add_member(self, key: str, member: str, ttl: float) -> None:
        """Add ``member`` to the set stored at ``key`` and reset its TTL."""
        ...

    async def members(self, key: str) -> set[str]:
        """Return the set stored at ``key`` (empty if absent)."""
        ...


class InMemoryStore:
    """In-memory store for development/testing.

    Not suitable for production: entries are lost on restart and not
    shared across processes, so locks only exclude workers in this process.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._values: dict[str, tuple[str | set[str], float]] = {}

    def _live(self, key: str) -> str | set[str] | None:
        entry = self._values.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._values[key]
            return None
        return value

    async def get(self, key: str) -> str | None:
        value = self._live(key)
        if isinstance(value, set):
            raise StoreError(f"{key} holds a set, not a string")
        return value

    async def set(
        self, key: str, value: str, ttl: float, *, only_if_absent: bool = False
    ) -> bool:
        if only_if_absent and self._live(key) is not None:
            return False
        self._values[key] = (value, self._clock() + ttl)
        return True

    async def expire(self, key: str, ttl: float) -> bool:
        value = self._live(key)
        if value is None:
            return False
        self._values[key] = (value, self._clock() + ttl)
        return True

    async def ttl(self, key: str) -> float | None:
        if self._live(key) is None:
            return None
        return self._values[key][1] - self._clock()

    async def delete(self, *keys: str) -> int:
        deleted = 0
        for key in keys:
            if self._live(key) is not None:
                deleted += 1
            self._values.pop(key, None)
        return deleted

    async def delete_if_value(self, key: str, expected: str) -> bool:
        if self._live(key) != expected:
            return False
        del self._values[key]
        return True

    async def scan(self, prefix: str) -> list[str]:
        return [k for k in list(self._values) if k.startswith(prefix) and self._live(k) is not None]

    async def add_member(self, key: str, member: str, ttl: float) -> None:
        current = self._live(key)
        if isinstance(current, str):
            raise StoreError(f"{key} holds a string, not a set")
        members = set(current or ())
        members.add(member)
        self._values[key] = (members, self._clock() + ttl)

    async def members(self, key: str) -> set[str]:
        current = self._live(key)
        if isinstance(current, str):
            raise StoreError(f"{key} holds a string, not a set")
        return set(current or ())
