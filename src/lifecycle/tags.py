"""Tag reconciliation between a remote tag set and a desired one.

The diff is computed fresh on every call; nothing is retained between
reconciliations. Keys under the reserved prefix belong to the remote system
and are never scheduled for deletion.

Partial failure is not rolled back: if the "set" call succeeds and the
"remove" call fails, the new tags stay in place and the caller is expected
to reconcile again.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field

from .classifier import Operation
from .deadline import Deadline
from .errors import Aborted, LifecycleError, TagReconciliationError
from .identifiers import ResourceIdentifier
from .remote import RemoteClient
from .retry import RetryExecutor, RetryPolicy

logger = logging.getLogger(__name__)


class TagSet(Mapping[str, str]):
    """Immutable mapping of tag key to value."""

    def __init__(self, tags: Mapping[str, str] | None = None) -> None:
        self._tags: dict[str, str] = {}
        for key, value in (tags or {}).items():
            if not isinstance(key, str) or not key:
                raise ValueError(f"tag keys must be non-empty strings: {key!r}")
            if not isinstance(value, str):
                raise ValueError(f"tag {key!r} must have a string value")
            self._tags[key] = value

    def __getitem__(self, key: str) -> str:
        return self._tags[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tags)

    def __len__(self) -> int:
        return len(self._tags)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, Mapping):
            return self._tags == dict(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(frozenset(self._tags.items()))

    def __repr__(self) -> str:
        return f"TagSet({self._tags!r})"

    def merge(self, other: Mapping[str, str]) -> TagSet:
        return TagSet({**self._tags, **other})


@dataclass(frozen=True)
class TagDiff:
    """Minimal mutation set turning the current tags into the desired ones."""

    to_create: TagSet = field(default_factory=TagSet)
    to_update: TagSet = field(default_factory=TagSet)
    to_delete: TagSet = field(default_factory=TagSet)

    @property
    def is_empty(self) -> bool:
        return not (self.to_create or self.to_update or self.to_delete)

    @property
    def upserts(self) -> TagSet:
        """Creates and updates combined into a single "set" call."""
        return self.to_create.merge(self.to_update)


def diff_tags(
    current: Mapping[str, str],
    desired: Mapping[str, str],
    reserved_prefix: str | None = None,
) -> TagDiff:
    """Compute the tag mutations needed to reach `desired`."""
    to_create = {k: v for k, v in desired.items() if k not in current}
    to_update = {k: v for k, v in desired.items() if k in current and current[k] != v}
    to_delete = {
        k: v
        for k, v in current.items()
        if k not in desired and not (reserved_prefix and k.startswith(reserved_prefix))
    }
    return TagDiff(TagSet(to_create), TagSet(to_update), TagSet(to_delete))


class TagReconciler:
    """Lists, diffs and applies tags for one resource."""

    def __init__(
        self,
        client: RemoteClient,
        retry: RetryExecutor,
        policy_for: Callable[[Operation], RetryPolicy],
        reserved_prefix: str | None = None,
    ) -> None:
        self._client = client
        self._retry = retry
        self._policy_for = policy_for
        self._reserved_prefix = reserved_prefix

    def diff(self, current: Mapping[str, str], desired: Mapping[str, str]) -> TagDiff:
        return diff_tags(current, desired, self._reserved_prefix)

    async def current(self, identifier: ResourceIdentifier, *, deadline: Deadline) -> TagSet:
        tags = await self._retry.execute(
            lambda: self._client.list_tags(identifier),
            policy=self._policy_for(Operation.LIST_TAGS),
            deadline=deadline,
            operation_name=Operation.LIST_TAGS.value,
            identifier=identifier.value,
        )
        return TagSet(tags)

    async def apply(
        self, identifier: ResourceIdentifier, diff: TagDiff, *, deadline: Deadline
    ) -> None:
        """Issue at most one "set" call and one "remove" call.

        Raises:
            TagReconciliationError: If either call failed. Both are attempted.
        """
        if diff.is_empty:
            return

        errors: list[LifecycleError] = []
        upserts = diff.upserts

        if upserts:
            try:
                await self._retry.execute(
                    lambda: self._client.tag_resource(identifier, upserts),
                    policy=self._policy_for(Operation.TAG),
                    deadline=deadline,
                    operation_name=Operation.TAG.value,
                    identifier=identifier.value,
                )
            except Aborted:
                raise
            except LifecycleError as e:
                errors.append(e)

        if diff.to_delete:
            keys = sorted(diff.to_delete)
            try:
                await self._retry.execute(
                    lambda: self._client.untag_resource(identifier, keys),
                    policy=self._policy_for(Operation.UNTAG),
                    deadline=deadline,
                    operation_name=Operation.UNTAG.value,
                    identifier=identifier.value,
                )
            except Aborted:
                raise
            except LifecycleError as e:
                errors.append(e)

        if errors:
            logger.error(
                "Tag reconciliation incomplete",
                extra={
                    "identifier": identifier.value,
                    "failed_calls": len(errors),
                    "tags_set": sorted(upserts),
                    "tags_removed": sorted(diff.to_delete),
                },
            )
            raise TagReconciliationError(
                "Updating tags failed",
                errors=errors,
                operation="update_tags",
                identifier=identifier.value,
                cause=errors[0].cause,
            )

        logger.info(
            "Tags reconciled",
            extra={
                "identifier": identifier.value,
                "created": len(diff.to_create),
                "updated": len(diff.to_update),
                "deleted": len(diff.to_delete),
            },
        )

    async def reconcile(
        self,
        identifier: ResourceIdentifier,
        desired: Mapping[str, str],
        *,
        deadline: Deadline,
    ) -> TagDiff:
        """List the remote tags, diff them against `desired` and apply."""
        current = await self.current(identifier, deadline=deadline)
        diff = self.diff(current, desired)
        await self.apply(identifier, diff, deadline=deadline)
        return diff
