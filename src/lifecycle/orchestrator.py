"""Per-resource reconciliation: create, read, update and delete.

One ResourceOrchestrator drives one resource through its lifecycle:

    Pending -> Propagating -> Ready -> {Updating -> Ready} -> Deleting -> Gone

with CreateFailed and DeleteFailed as failure states. Many orchestrators run
concurrently and share only the OrchestratorContext (configuration,
classifier, retry executor and the parent lock registry).

Every remote call goes through the RetryExecutor; every asynchronous effect
is awaited with the ConvergencePoller; all waits honor one Deadline created
by the top-level operation.

RELATIONSHIP REPLACEMENT:
When an association replaces a parent's default member, create adds the new
member, waits until it is visible, then removes the default. The parent is
never left with zero members if the removal is interrupted. Delete runs the
reverse: restore the default, then remove the managed member.
"""

from __future__ import annotations

import contextlib
import logging
import uuid
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeVar

from .classifier import ErrorClassifier, Operation, load_classifier_rules
from .config import Config
from .deadline import SYSTEM_CLOCK, Clock, Deadline
from .errors import (
    Aborted,
    CompensationError,
    LifecycleError,
    MalformedIdentifier,
    NotFound,
    PermanentError,
    ValidationFailed,
)
from .identifiers import ResourceIdentifier
from .kinds import ResourceKind
from .locks import LockRegistry
from .models import (
    AssociationSpec,
    FieldChange,
    LifecycleState,
    PatchOperation,
    RemoteState,
    ResourceLifecycle,
    ResourceSpec,
    build_patch_operations,
)
from .poller import ConvergencePoller, PollInterval
from .remote import AssociationClient, RemoteClient
from .retry import RetryExecutor, RetryPolicy
from .tags import TagReconciler

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Synthetic statuses for association membership
ASSOCIATED = "associated"
ASSOCIATION_PENDING = "pending"


@dataclass
class OrchestratorContext:
    """State shared by all orchestrators in a process.

    Holds no per-resource state; the lock registry is the only mutable part.
    """

    config: Config = field(default_factory=Config)
    classifier: ErrorClassifier = field(default_factory=ErrorClassifier)
    clock: Clock = SYSTEM_CLOCK
    retry: RetryExecutor = field(default_factory=RetryExecutor)
    locks: LockRegistry | None = None

    def __post_init__(self) -> None:
        if self.locks is None:
            self.locks = LockRegistry(timeout_seconds=self.config.lock_timeout_seconds)

    @classmethod
    def from_config(cls, config: Config, *, clock: Clock = SYSTEM_CLOCK) -> OrchestratorContext:
        """Build a context, loading extra classification rules if configured."""
        rules = []
        if config.classifier_rules_path is not None:
            rules = load_classifier_rules(config.classifier_rules_path)
        return cls(config=config, classifier=ErrorClassifier(rules), clock=clock)

    def policy(self, operation: Operation) -> RetryPolicy:
        settings = self.config.retry
        return RetryPolicy(
            classifier=self.classifier.for_operation(operation),
            initial_interval=settings.initial_interval_seconds,
            multiplier=settings.multiplier,
            max_interval=settings.max_interval_seconds,
            max_elapsed=settings.max_elapsed_seconds,
        )

    def poller(self) -> ConvergencePoller:
        settings = self.config.poll
        return ConvergencePoller(
            self.retry,
            self.policy(Operation.READ),
            PollInterval(
                min_interval=settings.min_interval_seconds,
                max_interval=settings.max_interval_seconds,
                growth=settings.growth,
            ),
        )

    def deadline(self, seconds: float, cancel_event: Any = None) -> Deadline:
        return Deadline.after(seconds, clock=self.clock, cancel_event=cancel_event)


@dataclass(frozen=True)
class CreateResult:
    """A created resource plus non-fatal problems met on the way."""

    identifier: ResourceIdentifier
    state: RemoteState | None = None
    warnings: tuple[LifecycleError, ...] = ()
    # Default member this association replaced; delete restores it
    replaced_default: str | None = None


class ResourceOrchestrator:
    """Drives one resource of one kind through its lifecycle."""

    def __init__(
        self,
        kind: ResourceKind,
        client: RemoteClient | None,
        context: OrchestratorContext,
        *,
        associations: AssociationClient | None = None,
        initial_state: LifecycleState = LifecycleState.PENDING,
        cancel_event: Any = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            kind: The resource kind being managed.
            client: CRUD and tagging client (standalone kinds).
            context: Shared configuration, classifier and locks.
            associations: Relationship-set client (association kinds).
            initial_state: READY when adopting an existing resource.
            cancel_event: asyncio.Event the caller sets to abort every wait.
        """
        if kind.association and associations is None:
            raise ValueError(f"kind {kind.name} requires an association client")
        if not kind.association and client is None:
            raise ValueError(f"kind {kind.name} requires a remote client")

        self._kind = kind
        self._client = client
        self._associations = associations
        self._context = context
        self._cancel_event = cancel_event
        self._lifecycle = ResourceLifecycle(initial_state)
        self.identifier: ResourceIdentifier | None = None
        self._replaced_default: str | None = None

    @property
    def kind(self) -> ResourceKind:
        return self._kind

    @property
    def state(self) -> LifecycleState:
        return self._lifecycle.state

    @property
    def lifecycle(self) -> ResourceLifecycle:
        return self._lifecycle

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    async def create(
        self, spec: ResourceSpec, *, deadline: Deadline | None = None
    ) -> CreateResult:
        """Create the resource and wait until it is ready.

        Raises:
            ValidationFailed: The request was rejected before any mutation.
            PermanentError: The remote system rejected the request.
            TimedOut: The resource did not converge before the deadline.
            Aborted: The caller cancelled.
        """
        if spec.kind != self._kind.name:
            raise ValidationFailed(
                f"spec kind {spec.kind} does not match {self._kind.name}", operation="create"
            )

        deadline = deadline or self._deadline(self._context.config.create_timeout_seconds)
        self._lifecycle.transition(LifecycleState.PENDING)
        self.identifier = None
        self._replaced_default = None

        logger.info("Creating resource", extra={"kind": self._kind.name, "name": spec.name})

        try:
            if self._kind.association:
                return await self._create_association(spec, deadline)
            return await self._create_resource(spec, deadline)
        except LifecycleError as e:
            identifier = self.identifier.value if self.identifier else None
            if e.identifier is None:
                e.identifier = identifier
            self._lifecycle.transition(LifecycleState.CREATE_FAILED, identifier=identifier)
            raise

    async def _create_resource(self, spec: ResourceSpec, deadline: Deadline) -> CreateResult:
        client = self._require_client()
        # One token per create so retried calls never create a duplicate
        token = str(uuid.uuid4())
        parent = self._parent_from_values(spec.attributes)

        async with self._hold(parent, deadline, "create"):
            response = await self._call(
                lambda: client.create(self._kind.name, spec, token),
                Operation.CREATE,
                deadline,
            )
        identifier = self._identifier_from_response(response, spec)

        self.identifier = identifier
        self._lifecycle.transition(LifecycleState.PROPAGATING, identifier=identifier.value)

        state: RemoteState | None = None
        if self._kind.ready_statuses:
            state = await self._wait_ready(identifier, deadline, "create")

        if self._kind.supports_tags and spec.tags:
            await self._tag_reconciler().reconcile(identifier, spec.tags, deadline=deadline)

        deferred = {
            name: FieldChange(old=None, new=spec.attributes[name])
            for name in sorted(self._kind.update_only_fields)
            if name in spec.attributes
        }
        if deferred:
            await self._send_update(identifier, build_patch_operations(deferred), deadline)
            if self._kind.ready_statuses:
                state = await self._wait_ready(identifier, deadline, "create")

        self._lifecycle.transition(LifecycleState.READY, identifier=identifier.value)
        logger.info(
            "Resource created",
            extra={"kind": self._kind.name, "identifier": identifier.value},
        )
        return CreateResult(identifier=identifier, state=state)

    async def _create_association(self, spec: ResourceSpec, deadline: Deadline) -> CreateResult:
        associations = self._require_associations()
        association = spec.association
        if association is None:
            raise ValidationFailed(
                f"kind {self._kind.name} requires an association block", operation="create"
            )

        parent, member = association.parent_id, association.member_id
        identifier = self._kind.build([parent, member])

        warnings: list[LifecycleError] = []
        default: str | None = None
        async with self._hold(parent, deadline, "create"):
            if association.replace_default:
                default = await self._resolve_default(association, identifier, deadline)

            await self._call(
                lambda: associations.associate(parent, member),
                Operation.CREATE,
                deadline,
                identifier,
                name="create:associate",
            )

            self.identifier = identifier
            self._lifecycle.transition(LifecycleState.PROPAGATING, identifier=identifier.value)

            # The default stays in place until the new member is visible
            state = await self._wait_associated(identifier, deadline)

            if default is not None:
                self._replaced_default = default
                warning = await self._remove_replaced_default(identifier, default, deadline)
                if warning is not None:
                    warnings.append(warning)

        self._lifecycle.transition(LifecycleState.READY, identifier=identifier.value)
        logger.info(
            "Association created",
            extra={
                "kind": self._kind.name,
                "identifier": identifier.value,
                "replaced_default": default,
                "warnings": len(warnings),
            },
        )
        return CreateResult(
            identifier=identifier,
            state=state,
            warnings=tuple(warnings),
            replaced_default=default,
        )

    async def _resolve_default(
        self,
        association: AssociationSpec,
        identifier: ResourceIdentifier,
        deadline: Deadline,
    ) -> str:
        """Find the default member and verify it is currently associated.

        Raises:
            ValidationFailed: The default is missing, unassociated or is the new member.
        """
        associations = self._require_associations()
        parent, member = association.parent_id, association.member_id

        default = association.default_member_id
        if default is None:
            try:
                default = await self._call(
                    lambda: associations.find_default_member(parent),
                    Operation.READ,
                    deadline,
                    identifier,
                    name="create:find_default",
                )
            except NotFound as e:
                raise ValidationFailed(
                    f"no default member found for {parent}",
                    operation="create",
                    identifier=identifier.value,
                    cause=e.cause,
                ) from e

        if default == member:
            raise ValidationFailed(
                f"{member} is the default member of {parent}",
                operation="create",
                identifier=identifier.value,
            )

        members = await self._call(
            lambda: associations.list_members(parent),
            Operation.READ,
            deadline,
            identifier,
            name="create:list_members",
        )
        if default not in members:
            raise ValidationFailed(
                f"no association of default member ({default}) with {parent}",
                operation="create",
                identifier=identifier.value,
            )
        return default

    async def _remove_replaced_default(
        self, identifier: ResourceIdentifier, default: str, deadline: Deadline
    ) -> CompensationError | None:
        """Remove the replaced default member; failures are reported, not raised."""
        associations = self._require_associations()
        parent = identifier.parts[0]
        try:
            await self._call(
                lambda: associations.disassociate(parent, default),
                Operation.DELETE,
                deadline,
                identifier,
                name="create:remove_default",
            )
        except NotFound:
            logger.info(
                "Default member already removed",
                extra={"identifier": identifier.value, "default_member": default},
            )
        except Aborted:
            raise
        except LifecycleError as e:
            warning = CompensationError(
                f"Removing default member {default} from {parent} failed",
                operation="create",
                identifier=identifier.value,
                cause=e.cause,
            )
            warning.__cause__ = e
            logger.warning(
                "Association created but default member was not removed",
                extra={
                    "identifier": identifier.value,
                    "default_member": default,
                    "error": str(e),
                },
            )
            return warning
        return None

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    async def read(
        self,
        identifier: ResourceIdentifier | str,
        *,
        wait_ready: bool = False,
        deadline: Deadline | None = None,
    ) -> RemoteState:
        """Fetch the current remote state.

        Raises:
            NotFound: The resource no longer exists; callers should drop it from state.
            MalformedIdentifier: The stored identifier cannot be parsed.
        """
        identifier = self._coerce(identifier)
        deadline = deadline or self._deadline(self._context.config.read_timeout_seconds)

        try:
            if wait_ready and self._kind.ready_statuses:
                state = await self._wait_ready(identifier, deadline, "read")
            else:
                state = await self._call(
                    self._fetcher(identifier), Operation.READ, deadline, identifier
                )
            if state is None:
                raise NotFound("Resource not found", operation="read", identifier=identifier.value)
        except NotFound:
            logger.warning(
                "Resource not found, removing from state",
                extra={"kind": self._kind.name, "identifier": identifier.value},
            )
            if self._lifecycle.can_transition(LifecycleState.GONE):
                self._lifecycle.transition(LifecycleState.GONE, identifier=identifier.value)
            raise

        self.identifier = identifier
        return state

    # -------------------------------------------------------------------------
    # Update
    # -------------------------------------------------------------------------

    async def update(
        self,
        identifier: ResourceIdentifier | str,
        changes: Mapping[str, FieldChange],
        *,
        deadline: Deadline | None = None,
    ) -> list[PatchOperation]:
        """Send only the fields that changed.

        The "tags" field is reconciled against the remote tag set; map-valued
        fields are patched per key.

        Returns:
            The patch operations sent to the remote update call.
        """
        identifier = self._coerce(identifier)
        effective = {name: change for name, change in changes.items() if change.changed}
        if not effective:
            return []

        if self._kind.association:
            raise ValidationFailed(
                f"kind {self._kind.name} has no updatable fields",
                operation="update",
                identifier=identifier.value,
            )

        tag_change = effective.pop("tags", None)
        if tag_change is not None and not self._kind.supports_tags:
            raise ValidationFailed(
                f"kind {self._kind.name} does not support tags",
                operation="update",
                identifier=identifier.value,
            )

        deadline = deadline or self._deadline(self._context.config.update_timeout_seconds)
        self._lifecycle.transition(LifecycleState.UPDATING, identifier=identifier.value)

        operations = build_patch_operations(effective)
        try:
            if operations:
                await self._send_update(identifier, operations, deadline)
            if tag_change is not None:
                await self._tag_reconciler().reconcile(
                    identifier, tag_change.new or {}, deadline=deadline
                )
            if operations and self._kind.ready_statuses:
                await self._wait_ready(identifier, deadline, "update")
        except NotFound:
            self._lifecycle.transition(LifecycleState.GONE, identifier=identifier.value)
            raise
        except LifecycleError:
            self._lifecycle.transition(LifecycleState.READY, identifier=identifier.value)
            raise

        self._lifecycle.transition(LifecycleState.READY, identifier=identifier.value)
        logger.info(
            "Resource updated",
            extra={
                "identifier": identifier.value,
                "fields": sorted(changes),
                "operations": len(operations),
            },
        )
        return operations

    async def _send_update(
        self,
        identifier: ResourceIdentifier,
        operations: list[PatchOperation],
        deadline: Deadline,
    ) -> None:
        client = self._require_client()
        async with self._hold(self._kind.parent_of(identifier), deadline, "update"):
            await self._call(
                lambda: client.update(identifier, operations),
                Operation.UPDATE,
                deadline,
                identifier,
            )

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    async def delete(
        self,
        identifier: ResourceIdentifier | str,
        *,
        spec: ResourceSpec | None = None,
        deadline: Deadline | None = None,
    ) -> None:
        """Delete the resource. Deleting an absent resource succeeds.

        Args:
            identifier: The resource to delete.
            spec: The declared spec. Without it, a default replaced by this
                orchestrator's own create is still restored.
            deadline: Overrides the configured delete timeout.

        Raises:
            CompensationError: Restoring a replaced default failed; nothing was removed.
        """
        identifier = self._coerce(identifier)
        deadline = deadline or self._deadline(self._context.config.delete_timeout_seconds)
        self._lifecycle.transition(LifecycleState.DELETING, identifier=identifier.value)

        try:
            if self._kind.association:
                await self._delete_association(identifier, spec, deadline)
            else:
                await self._delete_resource(identifier, deadline)
        except LifecycleError:
            self._lifecycle.transition(LifecycleState.DELETE_FAILED, identifier=identifier.value)
            raise

        self._lifecycle.transition(LifecycleState.GONE, identifier=identifier.value)
        logger.info(
            "Resource deleted",
            extra={"kind": self._kind.name, "identifier": identifier.value},
        )

    async def _delete_resource(self, identifier: ResourceIdentifier, deadline: Deadline) -> None:
        client = self._require_client()
        async with self._hold(self._kind.parent_of(identifier), deadline, "delete"):
            try:
                await self._call(
                    lambda: client.delete(identifier), Operation.DELETE, deadline, identifier
                )
            except NotFound:
                logger.info("Resource already absent", extra={"identifier": identifier.value})
                return

        if self._kind.wait_for_deletion:
            outcome = await self._context.poller().wait_for(
                lambda: client.read(identifier),
                target_statuses=self._kind.deleted_statuses,
                failure_statuses=self._kind.failure_statuses,
                not_found_means_converged=True,
                deadline=deadline,
                operation_name="delete",
                identifier=identifier.value,
            )
            outcome.raise_for_status(operation="delete", identifier=identifier.value)

    async def _delete_association(
        self,
        identifier: ResourceIdentifier,
        spec: ResourceSpec | None,
        deadline: Deadline,
    ) -> None:
        associations = self._require_associations()
        parent, member = identifier.parts
        association = spec.association if spec is not None else None
        restore = False
        claimed_default: str | None = None
        if association is not None and association.replace_default:
            restore = True
            claimed_default = association.default_member_id
        elif self._replaced_default is not None and identifier == self.identifier:
            restore = True
            claimed_default = self._replaced_default

        async with self._hold(parent, deadline, "delete"):
            try:
                members = await self._call(
                    lambda: associations.list_members(parent),
                    Operation.READ,
                    deadline,
                    identifier,
                    name="delete:list_members",
                )
            except NotFound:
                logger.info(
                    "Parent already absent", extra={"identifier": identifier.value}
                )
                return

            if restore:
                await self._restore_default(identifier, claimed_default, members, deadline)

            try:
                await self._call(
                    lambda: associations.disassociate(parent, member),
                    Operation.DELETE,
                    deadline,
                    identifier,
                    name="delete:disassociate",
                )
            except NotFound:
                logger.info("Association already absent", extra={"identifier": identifier.value})

    async def _restore_default(
        self,
        identifier: ResourceIdentifier,
        default: str | None,
        members: Any,
        deadline: Deadline,
    ) -> None:
        """Re-add the default member before the managed member is removed.

        The default is looked up remotely when none is known.

        Raises:
            CompensationError: The default could not be restored.
        """
        associations = self._require_associations()
        parent = identifier.parts[0]
        try:
            if default is None:
                default = await self._call(
                    lambda: associations.find_default_member(parent),
                    Operation.READ,
                    deadline,
                    identifier,
                    name="delete:find_default",
                )
            if default in members:
                return
            await self._call(
                lambda: associations.associate(parent, default),
                Operation.CREATE,
                deadline,
                identifier,
                name="delete:restore_default",
            )
        except Aborted:
            raise
        except LifecycleError as e:
            logger.error(
                "Restoring default member failed, managed member left in place",
                extra={"identifier": identifier.value, "error": str(e)},
            )
            raise CompensationError(
                f"Restoring default member of {parent} failed",
                operation="delete",
                identifier=identifier.value,
                cause=e.cause,
            ) from e

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _call(
        self,
        fn: Callable[[], Awaitable[T]],
        operation: Operation,
        deadline: Deadline,
        identifier: ResourceIdentifier | None = None,
        *,
        name: str | None = None,
    ) -> T:
        return await self._context.retry.execute(
            fn,
            policy=self._context.policy(operation),
            deadline=deadline,
            operation_name=name or operation.value,
            identifier=identifier.value if identifier else None,
        )

    async def _wait_ready(
        self, identifier: ResourceIdentifier, deadline: Deadline, operation_name: str
    ) -> RemoteState:
        client = self._require_client()
        outcome = await self._context.poller().wait_for(
            lambda: client.read(identifier),
            target_statuses=self._kind.ready_statuses,
            failure_statuses=self._kind.failure_statuses,
            deadline=deadline,
            operation_name=operation_name,
            identifier=identifier.value,
        )
        state = outcome.raise_for_status(operation=operation_name, identifier=identifier.value)
        assert state is not None
        return state

    async def _wait_associated(
        self, identifier: ResourceIdentifier, deadline: Deadline
    ) -> RemoteState:
        outcome = await self._context.poller().wait_for(
            self._fetcher(identifier, absent_as_pending=True),
            target_statuses={ASSOCIATED},
            deadline=deadline,
            operation_name="create",
            identifier=identifier.value,
        )
        state = outcome.raise_for_status(operation="create", identifier=identifier.value)
        assert state is not None
        return state

    def _fetcher(
        self, identifier: ResourceIdentifier, *, absent_as_pending: bool = False
    ) -> Callable[[], Awaitable[RemoteState | None]]:
        if not self._kind.association:
            client = self._require_client()
            return lambda: client.read(identifier)

        associations = self._require_associations()
        parent, member = identifier.parts

        async def fetch() -> RemoteState | None:
            members = await associations.list_members(parent)
            attributes = {
                self._kind.components[0]: parent,
                self._kind.components[1]: member,
            }
            if member in members:
                return RemoteState(status=ASSOCIATED, attributes=attributes)
            if absent_as_pending:
                return RemoteState(status=ASSOCIATION_PENDING, attributes=attributes)
            return None

        return fetch

    def _identifier_from_response(
        self, response: Mapping[str, Any], spec: ResourceSpec
    ) -> ResourceIdentifier:
        try:
            return self._kind.build_from({**spec.attributes, **response})
        except MalformedIdentifier as e:
            raise PermanentError(
                f"creating {self._kind.name}: empty response ({e.message})",
                operation="create",
            ) from e

    def _parent_from_values(self, values: Mapping[str, Any]) -> str | None:
        if self._kind.parent_component is None:
            return None
        value = values.get(self._kind.parent_component)
        return str(value) if value else None

    def _hold(
        self, parent: str | None, deadline: Deadline, operation: str
    ) -> contextlib.AbstractAsyncContextManager[None]:
        if parent is None:
            return _no_lock()
        assert self._context.locks is not None
        return self._context.locks.hold(parent, deadline=deadline, operation=operation)

    def _coerce(self, identifier: ResourceIdentifier | str) -> ResourceIdentifier:
        if isinstance(identifier, str):
            return self._kind.parse(identifier)
        return identifier

    def _deadline(self, seconds: float) -> Deadline:
        return self._context.deadline(seconds, self._cancel_event)

    def _tag_reconciler(self) -> TagReconciler:
        prefix = self._kind.reserved_tag_prefix or self._context.config.reserved_tag_prefix
        return TagReconciler(
            self._require_client(),
            self._context.retry,
            self._context.policy,
            reserved_prefix=prefix,
        )

    def _require_client(self) -> RemoteClient:
        if self._client is None:
            raise ValueError(f"kind {self._kind.name} has no remote client")
        return self._client

    def _require_associations(self) -> AssociationClient:
        if self._associations is None:
            raise ValueError(f"kind {self._kind.name} has no association client")
        return self._associations


@contextlib.asynccontextmanager
async def _no_lock() -> AsyncIterator[None]:
    yield
