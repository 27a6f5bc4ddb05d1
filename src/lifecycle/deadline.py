"""Deadlines and cancellation propagated into every nested wait.

A Deadline is created once by the top-level operation and handed down to
the retry executor, the poller and the lock registry. It combines:
- an absolute expiry on a monotonic clock
- an optional cancellation event owned by the caller

All waiting goes through Clock.wait() so only the calling task is suspended.
Remote calls go through Deadline.run(), which races each call against the
cancellation signal and a time bound taken from the same clock.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

from .errors import Aborted, TransientError

T = TypeVar("T")


class Clock:
    """Monotonic time source and cooperative sleep."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def wait(self, seconds: float, cancel_event: asyncio.Event | None = None) -> bool:
        """Sleep for up to `seconds`.

        Returns:
            True if the cancellation event fired during the wait.
        """
        if cancel_event is None:
            await asyncio.sleep(max(seconds, 0.0))
            return False

        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=max(seconds, 0.0))
        except TimeoutError:
            return False
        return True

    def timeout(self, seconds: float) -> contextlib.AbstractAsyncContextManager[object]:
        """Bound the enclosed awaits to `seconds`, raising TimeoutError past it."""
        return asyncio.timeout(max(seconds, 0.0))


SYSTEM_CLOCK = Clock()


class Deadline:
    """Absolute expiry plus cancellation signal."""

    def __init__(
        self,
        expires_at: float,
        *,
        clock: Clock = SYSTEM_CLOCK,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self._expires_at = expires_at
        self._clock = clock
        self._cancel_event = cancel_event

    @classmethod
    def after(
        cls,
        seconds: float,
        *,
        clock: Clock = SYSTEM_CLOCK,
        cancel_event: asyncio.Event | None = None,
    ) -> Deadline:
        """Create a deadline `seconds` from now."""
        return cls(clock.monotonic() + seconds, clock=clock, cancel_event=cancel_event)

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def expires_at(self) -> float:
        return self._expires_at

    def now(self) -> float:
        return self._clock.monotonic()

    def remaining(self) -> float:
        """Seconds left before expiry, never negative."""
        return max(self._expires_at - self._clock.monotonic(), 0.0)

    @property
    def expired(self) -> bool:
        return self._clock.monotonic() >= self._expires_at

    @property
    def cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()

    def within(self, seconds: float) -> Deadline:
        """Derive a deadline that expires no later than this one."""
        expires_at = min(self._expires_at, self._clock.monotonic() + seconds)
        return Deadline(expires_at, clock=self._clock, cancel_event=self._cancel_event)

    def check(self, *, operation: str | None = None, identifier: str | None = None) -> None:
        """Raise Aborted if the caller cancelled."""
        if self.cancelled:
            raise Aborted("Operation cancelled by caller", operation=operation, identifier=identifier)

    async def sleep(
        self,
        seconds: float,
        *,
        operation: str | None = None,
        identifier: str | None = None,
    ) -> None:
        """Sleep for `seconds`, clamped to the time remaining.

        Raises:
            Aborted: If the cancellation signal fires before or during the sleep.
        """
        self.check(operation=operation, identifier=identifier)
        fired = await self._clock.wait(min(seconds, self.remaining()), self._cancel_event)
        if fired:
            raise Aborted(
                "Operation cancelled by caller", operation=operation, identifier=identifier
            )

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        timeout: float,
        operation: str | None = None,
        identifier: str | None = None,
    ) -> T:
        """Await one call, racing it against cancellation and a time bound.

        The losing side is cancelled, so a hung remote call never outlives
        the caller's interest in it.

        Raises:
            Aborted: If the cancellation signal fires first.
            TransientError: If the call does not finish within `timeout`.
        """
        self.check(operation=operation, identifier=identifier)
        try:
            async with self._clock.timeout(timeout):
                if self._cancel_event is None:
                    return await fn()
                return await self._race_cancel(fn, operation, identifier)
        except TimeoutError as e:
            raise TransientError(
                f"Remote call did not complete within {timeout:.1f}s",
                operation=operation,
                identifier=identifier,
            ) from e

    async def _race_cancel(
        self,
        fn: Callable[[], Awaitable[T]],
        operation: str | None,
        identifier: str | None,
    ) -> T:
        assert self._cancel_event is not None
        call = asyncio.ensure_future(fn())
        cancelled = asyncio.ensure_future(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait({call, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            pending = [task for task in (call, cancelled) if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.wait(pending)

        if call in done:
            return call.result()
        raise Aborted("Operation cancelled by caller", operation=operation, identifier=identifier)
