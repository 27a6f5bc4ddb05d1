"""Polling remote status until convergence.

Each poll is one fetch wrapped in the RetryExecutor, so throttling and
not-yet-visible errors on an individual read do not end the wait. Between
polls the interval starts small and grows up to a cap, never sleeping past
the deadline.

On expiry the outcome carries the most recently observed non-terminal state,
so a timeout always says where the resource was stuck.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Collection
from dataclasses import dataclass

from .deadline import Deadline
from .errors import NotFound, TimedOut
from .models import OutcomeStatus, ReconciliationOutcome, RemoteState
from .retry import RetryExecutor, RetryPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PollInterval:
    """Adaptive interval between polls."""

    min_interval: float = 1.0
    max_interval: float = 15.0
    growth: float = 1.5

    def __post_init__(self) -> None:
        if self.min_interval <= 0:
            raise ValueError("min_interval must be positive")
        if self.max_interval < self.min_interval:
            raise ValueError("max_interval must be at least min_interval")
        if self.growth < 1:
            raise ValueError("growth must be at least 1")

    def next(self, current: float) -> float:
        return min(current * self.growth, self.max_interval)


class ConvergencePoller:
    """Waits for a remote resource to reach a target status."""

    def __init__(
        self,
        retry: RetryExecutor,
        fetch_policy: RetryPolicy,
        interval: PollInterval | None = None,
    ) -> None:
        self._retry = retry
        self._fetch_policy = fetch_policy
        self._interval = interval or PollInterval()

    async def wait_for(
        self,
        fetch: Callable[[], Awaitable[RemoteState | None]],
        *,
        target_statuses: Collection[str],
        failure_statuses: Collection[str] = (),
        not_found_means_converged: bool = False,
        deadline: Deadline,
        operation_name: str,
        identifier: str | None = None,
    ) -> ReconciliationOutcome:
        """Poll `fetch` until a terminal status, absence or the deadline.

        Args:
            fetch: Returns the current state, or None if the resource is absent.
            target_statuses: Statuses that mean convergence.
            failure_statuses: Statuses that mean convergence will never happen.
            not_found_means_converged: Treat absence as success (deletion waits).
            deadline: Caller deadline and cancellation signal.
            operation_name: For diagnostics.
            identifier: For diagnostics.

        Returns:
            Outcome with status READY, FAILED, NOT_FOUND or TIMED_OUT.

        Raises:
            Aborted: If the caller's cancellation signal fires.
            PermanentError: If a fetch fails permanently.
        """
        last_state: RemoteState | None = None
        interval = self._interval.min_interval
        polls = 0

        while True:
            polls += 1
            try:
                state = await self._retry.execute(
                    fetch,
                    policy=self._fetch_policy,
                    deadline=deadline,
                    operation_name=operation_name,
                    identifier=identifier,
                )
            except NotFound:
                state = None
            except TimedOut as e:
                logger.warning(
                    "Timed out fetching state while waiting for convergence",
                    extra={"operation": operation_name, "identifier": identifier, "polls": polls},
                )
                return ReconciliationOutcome(
                    status=OutcomeStatus.TIMED_OUT, state=last_state, error=e.cause, polls=polls
                )

            if state is None:
                if not_found_means_converged:
                    return ReconciliationOutcome(status=OutcomeStatus.READY, polls=polls)
                return ReconciliationOutcome(
                    status=OutcomeStatus.NOT_FOUND, state=last_state, polls=polls
                )

            if state.status in target_statuses:
                logger.debug(
                    "Resource converged",
                    extra={
                        "operation": operation_name,
                        "identifier": identifier,
                        "status": state.status,
                        "polls": polls,
                    },
                )
                return ReconciliationOutcome(status=OutcomeStatus.READY, state=state, polls=polls)

            if state.status in failure_statuses:
                logger.error(
                    "Resource reached failure status",
                    extra={
                        "operation": operation_name,
                        "identifier": identifier,
                        "status": state.status,
                    },
                )
                return ReconciliationOutcome(
                    status=OutcomeStatus.FAILED, state=state, error=state.error, polls=polls
                )

            last_state = state
            if deadline.expired:
                logger.warning(
                    "Timed out waiting for convergence",
                    extra={
                        "operation": operation_name,
                        "identifier": identifier,
                        "last_status": state.status,
                        "polls": polls,
                    },
                )
                return ReconciliationOutcome(
                    status=OutcomeStatus.TIMED_OUT, state=last_state, polls=polls
                )

            await deadline.sleep(interval, operation=operation_name, identifier=identifier)
            interval = self._interval.next(interval)
