"""Data model for desired and observed resource state.

Pydantic models validate declared input at the boundary (fail fast, fail
loudly). Observed state and outcomes are plain dataclasses: they are built
by this package, never parsed from user input.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

from .errors import ConvergenceFailed, LifecycleError, NotFound, TimedOut
from .remote import RemoteError

logger = logging.getLogger(__name__)


# =============================================================================
# Desired state
# =============================================================================


class AssociationSpec(BaseModel):
    """Membership of one object in a shared parent's relationship set."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    parent_id: Annotated[str, Field(min_length=1, alias="parentId")]
    member_id: Annotated[str, Field(min_length=1, alias="memberId")]
    # Replace the parent's default member with this one, restoring it on delete
    replace_default: bool = Field(False, alias="replaceDefault")
    # Claimed default member; discovered remotely when omitted
    default_member_id: str | None = Field(None, alias="defaultMemberId")


class ResourceSpec(BaseModel):
    """Declared desired state for one resource."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    kind: Annotated[str, Field(min_length=1)]
    name: str | None = None
    attributes: dict[str, Any] = Field(default_factory=dict)
    tags: dict[str, str] = Field(default_factory=dict)
    association: AssociationSpec | None = None
    # Provider-specific pass-through fields, forwarded untouched
    extra: dict[str, Any] = Field(default_factory=dict)

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: dict[str, str]) -> dict[str, str]:
        for key in v:
            if not key:
                raise ValueError("tag keys cannot be empty")
        return v


# =============================================================================
# Observed state
# =============================================================================


@dataclass(frozen=True)
class RemoteState:
    """One observation of a remote resource. Never cached across polls."""

    status: str
    attributes: dict[str, Any] = field(default_factory=dict)
    error: RemoteError | None = None


class OutcomeStatus(str, Enum):
    """Terminal result of waiting for convergence."""

    READY = "Ready"
    NOT_FOUND = "NotFound"
    TIMED_OUT = "TimedOut"
    FAILED = "Failed"


@dataclass(frozen=True)
class ReconciliationOutcome:
    """Result of a convergence wait, with diagnostics."""

    status: OutcomeStatus
    state: RemoteState | None = None
    error: RemoteError | None = None
    polls: int = 0

    @property
    def ready(self) -> bool:
        return self.status == OutcomeStatus.READY

    def raise_for_status(
        self, *, operation: str | None = None, identifier: str | None = None
    ) -> RemoteState | None:
        """Return the state if READY, otherwise raise the matching error."""
        if self.status == OutcomeStatus.READY:
            return self.state

        if self.status == OutcomeStatus.NOT_FOUND:
            raise NotFound(
                "Resource not found while waiting for convergence",
                operation=operation,
                identifier=identifier,
                cause=self.error,
            )

        if self.status == OutcomeStatus.TIMED_OUT:
            raise TimedOut(
                f"Timed out waiting for convergence after {self.polls} polls",
                last_state=self.state,
                operation=operation,
                identifier=identifier,
                cause=self.error,
            )

        status = self.state.status if self.state else "unknown"
        raise ConvergenceFailed(
            f"Resource reached failure status {status}",
            last_state=self.state,
            operation=operation,
            identifier=identifier,
            cause=self.error,
        )


# =============================================================================
# Updates
# =============================================================================


class ParameterSet(Mapping[str, Any]):
    """Immutable provider parameter map (string or boolean values)."""

    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        self._values: dict[str, Any] = {}
        for key, value in (values or {}).items():
            if not isinstance(key, str) or not key:
                raise ValueError(f"parameter keys must be non-empty strings: {key!r}")
            if not isinstance(value, str | bool):
                raise ValueError(f"parameter {key!r} must be a string or boolean")
            self._values[key] = value

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Mapping):
            return self._values == dict(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(frozenset(self._values.items()))

    def __repr__(self) -> str:
        return f"ParameterSet({self._values!r})"

    def patch_operations(self, previous: Mapping[str, Any], path: str) -> list[PatchOperation]:
        """Operations turning `previous` into this set, one per changed key."""
        ops: list[PatchOperation] = []
        for key in sorted(previous.keys() - self._values.keys()):
            ops.append(PatchOperation(op="remove", path=f"{path}/{_escape_pointer(key)}"))
        for key in sorted(self._values):
            if key not in previous:
                ops.append(
                    PatchOperation(
                        op="add", path=f"{path}/{_escape_pointer(key)}", value=self._values[key]
                    )
                )
            elif previous[key] != self._values[key]:
                ops.append(
                    PatchOperation(
                        op="replace", path=f"{path}/{_escape_pointer(key)}", value=self._values[key]
                    )
                )
        return ops


def _escape_pointer(key: str) -> str:
    """Escape a key for use as a JSON pointer segment."""
    return key.replace("~", "~0").replace("/", "~1")


@dataclass(frozen=True)
class PatchOperation:
    """A single add / replace / remove sent to a remote update call."""

    op: str
    path: str
    value: Any = None


@dataclass(frozen=True)
class FieldChange:
    """Previous and desired value of one field."""

    old: Any
    new: Any

    @property
    def changed(self) -> bool:
        return self.old != self.new


def build_patch_operations(changes: Mapping[str, FieldChange]) -> list[PatchOperation]:
    """Translate changed fields into patch operations.

    Unchanged fields produce nothing, so concurrently-modified unrelated
    fields are never clobbered. Map-valued fields are patched per key.
    """
    ops: list[PatchOperation] = []
    for name in sorted(changes):
        change = changes[name]
        if not change.changed:
            continue

        path = f"/{_escape_pointer(name)}"
        if isinstance(change.new, Mapping) or isinstance(change.old, Mapping):
            desired = ParameterSet(change.new or {})
            ops.extend(desired.patch_operations(change.old or {}, path))
        elif change.new is None:
            ops.append(PatchOperation(op="remove", path=path))
        elif change.old is None:
            ops.append(PatchOperation(op="add", path=path, value=change.new))
        else:
            ops.append(PatchOperation(op="replace", path=path, value=change.new))
    return ops


# =============================================================================
# Lifecycle state machine
# =============================================================================


class LifecycleState(str, Enum):
    """Per-resource lifecycle states."""

    PENDING = "Pending"
    PROPAGATING = "Propagating"
    READY = "Ready"
    UPDATING = "Updating"
    DELETING = "Deleting"
    GONE = "Gone"
    CREATE_FAILED = "CreateFailed"
    DELETE_FAILED = "DeleteFailed"


ALLOWED_TRANSITIONS: dict[LifecycleState, frozenset[LifecycleState]] = {
    # Update, delete and read act on resources adopted by identifier alone
    LifecycleState.PENDING: frozenset(
        {
            LifecycleState.PROPAGATING,
            LifecycleState.CREATE_FAILED,
            LifecycleState.UPDATING,
            LifecycleState.DELETING,
            LifecycleState.GONE,
        }
    ),
    LifecycleState.PROPAGATING: frozenset({LifecycleState.READY, LifecycleState.CREATE_FAILED}),
    LifecycleState.READY: frozenset(
        {LifecycleState.UPDATING, LifecycleState.DELETING, LifecycleState.GONE}
    ),
    LifecycleState.UPDATING: frozenset({LifecycleState.READY, LifecycleState.GONE}),
    LifecycleState.DELETING: frozenset({LifecycleState.GONE, LifecycleState.DELETE_FAILED}),
    # Deleting an already-absent resource is idempotent
    LifecycleState.GONE: frozenset({LifecycleState.DELETING, LifecycleState.PENDING}),
    LifecycleState.CREATE_FAILED: frozenset(
        {LifecycleState.PENDING, LifecycleState.DELETING, LifecycleState.GONE}
    ),
    LifecycleState.DELETE_FAILED: frozenset({LifecycleState.DELETING, LifecycleState.GONE}),
}


class InvalidTransition(LifecycleError):
    """Raised when an operation is not valid in the current lifecycle state."""

    pass


class ResourceLifecycle:
    """Tracks the lifecycle state of one resource."""

    def __init__(self, state: LifecycleState = LifecycleState.PENDING) -> None:
        self._state = state
        self._history: list[LifecycleState] = [state]

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def history(self) -> list[LifecycleState]:
        return self._history.copy()

    def can_transition(self, target: LifecycleState) -> bool:
        return target in ALLOWED_TRANSITIONS[self._state]

    def transition(self, target: LifecycleState, *, identifier: str | None = None) -> None:
        if target == self._state:
            return
        if not self.can_transition(target):
            raise InvalidTransition(
                f"Cannot move from {self._state.value} to {target.value}",
                identifier=identifier,
            )
        logger.debug(
            "Lifecycle transition",
            extra={
                "identifier": identifier,
                "from_state": self._state.value,
                "to_state": target.value,
            },
        )
        self._state = target
        self._history.append(target)
