"""Retry of single remote calls with backoff and a two-phase budget.

Phase 1 (bounded retry): transient failures back off exponentially with
jitter while the next sleep still fits both the policy's maximum elapsed
time and the caller's deadline.

Phase 2 (best effort): once the budget is spent, exactly one more direct
attempt is made before reporting TimedOut. Remote propagation can complete
right at the boundary, and a bare timeout without this last look produces
failures that a second call would have resolved.

Permanent and not-found errors are never retried. Every attempt is raced
against the cancellation signal and the time remaining, so a hung call ends
in Aborted or counts as a transient failure. Cancellation also interrupts
every backoff sleep.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

from .classifier import Classification
from .deadline import Deadline
from .errors import NotFound, PermanentError, TimedOut, TransientError
from .remote import RemoteError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry parameters for one call site."""

    classifier: Callable[[RemoteError], Classification]
    initial_interval: float = 1.0
    multiplier: float = 2.0
    max_interval: float = 30.0
    max_elapsed: float = 120.0
    # Jitter as a fraction of the backoff, added on top of it
    jitter: float = 0.2
    # Time allowed for the final attempt when the deadline has already passed
    final_attempt_timeout: float = 10.0

    def __post_init__(self) -> None:
        if self.initial_interval <= 0:
            raise ValueError("initial_interval must be positive")
        if self.multiplier < 1:
            raise ValueError("multiplier must be at least 1")
        if self.max_elapsed < 0:
            raise ValueError("max_elapsed cannot be negative")
        if not 0 <= self.jitter <= 1:
            raise ValueError("jitter must be between 0 and 1")
        if self.final_attempt_timeout <= 0:
            raise ValueError("final_attempt_timeout must be positive")

    def backoff(self, attempt: int) -> float:
        """Backoff before retry number `attempt` (1-based), with jitter."""
        backoff = min(self.initial_interval * (self.multiplier ** (attempt - 1)), self.max_interval)
        return backoff + random.uniform(0, backoff * self.jitter)


class RetryExecutor:
    """Runs one remote operation under a RetryPolicy."""

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        policy: RetryPolicy,
        deadline: Deadline,
        operation_name: str,
        identifier: str | None = None,
    ) -> T:
        """Invoke `operation`, retrying transient remote errors.

        Raises:
            PermanentError: The error was classified permanent.
            NotFound: The error was classified as resource absence.
            TimedOut: Transient failures outlasted the budget and the final attempt.
            Aborted: The caller's cancellation signal fired.
        """
        started = deadline.now()
        attempt = 0
        last_error: RemoteError | None = None
        last_failure: Exception | None = None

        # Phase 1: bounded retry
        while True:
            attempt += 1
            try:
                return await deadline.run(
                    operation,
                    timeout=deadline.remaining(),
                    operation=operation_name,
                    identifier=identifier,
                )
            except RemoteError as e:
                self._raise_if_final(e, policy, operation_name, identifier)
                last_error, last_failure = e, e
            except TransientError as e:
                # The call outran the deadline; no remote error was observed
                last_error, last_failure = None, e

            wait_time = policy.backoff(attempt)
            elapsed = deadline.now() - started
            if elapsed + wait_time > policy.max_elapsed or wait_time >= deadline.remaining():
                break

            logger.warning(
                "Remote call failed, retrying",
                extra={
                    "operation": operation_name,
                    "identifier": identifier,
                    "attempt": attempt,
                    "wait_seconds": round(wait_time, 3),
                    "error_code": last_error.code if last_error else None,
                },
            )
            await deadline.sleep(wait_time, operation=operation_name, identifier=identifier)

        # Phase 2: exactly one best-effort attempt at the boundary
        deadline.check(operation=operation_name, identifier=identifier)
        logger.info(
            "Retry budget exhausted, making final attempt",
            extra={"operation": operation_name, "identifier": identifier, "attempts": attempt},
        )
        try:
            return await deadline.run(
                operation,
                timeout=max(deadline.remaining(), policy.final_attempt_timeout),
                operation=operation_name,
                identifier=identifier,
            )
        except RemoteError as e:
            self._raise_if_final(e, policy, operation_name, identifier)
            last_error, last_failure = e, e
        except TransientError as e:
            last_failure = e

        raise TimedOut(
            f"Retry budget exhausted after {attempt + 1} attempts",
            operation=operation_name,
            identifier=identifier,
            cause=last_error,
        ) from last_failure

    @staticmethod
    def _raise_if_final(
        error: RemoteError,
        policy: RetryPolicy,
        operation_name: str,
        identifier: str | None,
    ) -> None:
        classification = policy.classifier(error)
        if classification == Classification.TRANSIENT:
            return

        if classification == Classification.NOT_FOUND:
            raise NotFound(
                "Remote resource not found",
                operation=operation_name,
                identifier=identifier,
                cause=error,
            ) from error

        logger.error(
            "Remote call failed permanently",
            extra={
                "operation": operation_name,
                "identifier": identifier,
                "error_code": error.code,
                "error": error.message,
            },
        )
        raise PermanentError(
            "Remote call failed",
            operation=operation_name,
            identifier=identifier,
            cause=error,
        ) from error
