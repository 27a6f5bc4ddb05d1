"""Error taxonomy for resource lifecycle operations.

Every error raised out of the engine is a LifecycleError carrying enough
context to diagnose a failure without re-running it:
- identifier: the encoded resource identifier (if one exists yet)
- operation: the attempted operation (create, read, delete, ...)
- cause: the underlying remote error, if any

Propagation policy:
- Transient remote errors are absorbed by RetryExecutor and ConvergencePoller
  and re-surface as TimedOut once the budget is spent.
- Permanent and NotFound errors propagate immediately.
- Aborted is raised only when the caller's cancellation signal fires.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .remote import RemoteError


class LifecycleError(Exception):
    """Base class for all lifecycle errors."""

    def __init__(
        self,
        message: str,
        *,
        identifier: str | None = None,
        operation: str | None = None,
        cause: RemoteError | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.identifier = identifier
        self.operation = operation
        self.cause = cause

    def __str__(self) -> str:
        parts = [self.message]
        if self.operation:
            parts.append(f"operation={self.operation}")
        if self.identifier:
            parts.append(f"identifier={self.identifier}")
        if self.cause is not None:
            parts.append(f"cause={self.cause}")
        return " | ".join(parts)


class MalformedIdentifier(LifecycleError):
    """Raised when an identifier cannot be encoded or decoded."""

    pass


class NotFound(LifecycleError):
    """Raised when the remote resource does not exist."""

    pass


class TransientError(LifecycleError):
    """Raised when one remote call outruns its time bound.

    RetryExecutor counts it as a transient failure like a throttled call.
    """

    pass


class PermanentError(LifecycleError):
    """Raised for validation or precondition failures. Never retried."""

    pass


class ValidationFailed(PermanentError):
    """Raised when a request is rejected before any remote mutation."""

    pass


class TimedOut(LifecycleError):
    """Raised when the deadline or retry budget is exhausted.

    Carries the most recently observed state for diagnostics.
    """

    def __init__(self, message: str, *, last_state: Any = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.last_state = last_state

    def __str__(self) -> str:
        base = super().__str__()
        if self.last_state is not None:
            return f"{base} | last_status={getattr(self.last_state, 'status', self.last_state)}"
        return base


class ConvergenceFailed(LifecycleError):
    """Raised when the remote resource reaches a failure status."""

    def __init__(self, message: str, *, last_state: Any = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.last_state = last_state


class Aborted(LifecycleError):
    """Raised when the caller's cancellation signal fires."""

    pass


class CompensationError(LifecycleError):
    """Raised (or reported) when a compensating relationship step fails."""

    pass


class TagReconciliationError(LifecycleError):
    """Raised when one or both tag mutation calls fail.

    Tags applied before the failure remain in effect.
    """

    def __init__(self, message: str, *, errors: list[LifecycleError], **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.errors = errors

    def __str__(self) -> str:
        details = "; ".join(str(e) for e in self.errors)
        return f"{super().__str__()} | errors=[{details}]"
