"""Per-parent locks for read-modify-write sequences.

Some remote APIs host a relationship set on a single parent object and are
not safe under concurrent writers. Sequences that touch such a set hold the
parent's lock for their duration. Locks are keyed by parent identifier and
owned by the registry in the orchestrator context, so unrelated parents never
contend.

This only serializes writers inside one process. Multiple processes managing
the same parent need a distributed lock (e.g. a blob lease).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from .deadline import Deadline
from .errors import TimedOut

logger = logging.getLogger(__name__)

# No cap of its own: a holder keeps the lock through its visibility wait, so
# waiters are bounded by their operation deadline instead.
DEFAULT_LOCK_TIMEOUT_SECONDS: float | None = None


class LockRegistry:
    """Creates and hands out one asyncio.Lock per parent key."""

    def __init__(self, timeout_seconds: float | None = DEFAULT_LOCK_TIMEOUT_SECONDS) -> None:
        self._timeout_seconds = timeout_seconds
        self._locks: dict[str, asyncio.Lock] = {}
        # Holders and waiters per key; the lock is dropped when it reaches zero
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(
        self,
        key: str,
        *,
        deadline: Deadline | None = None,
        operation: str | None = None,
    ) -> AsyncIterator[None]:
        """Hold the lock for `key` for the duration of the block.

        Released on every exit path, including errors and task cancellation.
        The wait ends at the deadline, or earlier when the registry has a cap.
        With neither, it waits until the lock is free.

        Raises:
            TimedOut: If the lock cannot be acquired in time.
            Aborted: If the caller cancelled before the lock was acquired.
        """
        if deadline is not None:
            deadline.check(operation=operation, identifier=key)

        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1

        timeout = self._timeout_seconds
        if deadline is not None:
            remaining = deadline.remaining()
            timeout = remaining if timeout is None else min(timeout, remaining)

        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=timeout)
            except TimeoutError as e:
                raise TimedOut(
                    f"Timeout acquiring lock for parent {key}",
                    operation=operation,
                    identifier=key,
                ) from e

            logger.debug("Acquired parent lock", extra={"parent": key, "operation": operation})
            try:
                yield
            finally:
                lock.release()
                logger.debug(
                    "Released parent lock", extra={"parent": key, "operation": operation}
                )
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]
