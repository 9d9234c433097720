"""In-process coordination primitives.

``SharedFutureMap`` lets the first caller for a key run an operation
while everyone else arriving for the same key awaits the same result.
Entries expire on their own: the leader schedules removal after a short
grace window, and every call sweeps entries older than a staleness
threshold so a crashed leader cannot strand followers.

``KeyedMutex`` is a plain per-key ``asyncio.Lock`` used to serialize
signing and finalization on one document.

Both sit behind small protocols so a multi-process deployment can swap
in a distributed implementation.
"""

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, TypeVar

logger = logging.getLogger("signtrail.locks")

T = TypeVar("T")


class LockTable(Protocol):
    async def run_once(self, key: str, operation: Callable[[], Awaitable[T]]) -> T: ...


@dataclass
class _Entry:
    future: asyncio.Future
    created_at: float


class SharedFutureMap:
    """Leader/follower future sharing keyed by string.

    Args:
        grace_seconds: How long a settled result stays available to late
            arrivals after the leader finishes.
        stale_seconds: Entries older than this are dropped on the next
            call, settled or not.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        grace_seconds: float = 5.0,
        stale_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.grace_seconds = grace_seconds
        self.stale_seconds = stale_seconds
        self._clock = clock
        self._entries: dict[str, _Entry] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def sweep(self) -> int:
        """Drop entries older than ``stale_seconds``. Returns how many."""
        now = self._clock()
        stale = [
            key
            for key, entry in self._entries.items()
            if now - entry.created_at > self.stale_seconds
        ]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.warning("Swept %d stale lock entr%s", len(stale), "y" if len(stale) == 1 else "ies")
        return len(stale)

    def _expire(self, key: str, future: asyncio.Future) -> None:
        entry = self._entries.get(key)
        if entry is not None and entry.future is future:
            del self._entries[key]

    async def run_once(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` unless a run for ``key`` is already in flight.

        Followers get exactly the leader's result, or its exception.
        """
        self.sweep()
        entry = self._entries.get(key)
        if entry is not None:
            logger.debug("Joining in-flight operation for key %s", key[:8])
            return await asyncio.shield(entry.future)

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._entries[key] = _Entry(future=future, created_at=self._clock())
        try:
            result = await operation()
        except asyncio.CancelledError:
            future.cancel()
            self._expire(key, future)
            raise
        except Exception as exc:
            future.set_exception(exc)
            # Mark retrieved; followers (if any) re-raise it themselves.
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            if key in self._entries:
                loop.call_later(self.grace_seconds, self._expire, key, future)


class KeyedMutex:
    """One ``asyncio.Lock`` per key, discarded once nobody holds or waits."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


def lock_key(secret: str, prefix: int) -> str:
    """Stable key derived from the head of a secret, never the whole thing."""
    return secret[:prefix]


def describe(table: Any) -> Optional[int]:
    """Size of a lock table when it exposes one (for health output)."""
    try:
        return len(table)
    except TypeError:
        return None
