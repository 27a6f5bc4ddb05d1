"""Remote API capabilities consumed by the engine.

The transport and authentication layer is supplied by the caller. Any client
that implements these protocols can be driven by ResourceOrchestrator; see
azure_client.py for the Azure Resource Manager implementation.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from .identifiers import ResourceIdentifier
    from .models import PatchOperation, RemoteState, ResourceSpec


class RemoteError(Exception):
    """An error returned by the remote API, tagged with a provider code."""

    def __init__(self, code: str, message: str = "", *, status_code: int | None = None) -> None:
        super().__init__(f"{code}: {message}" if message else code)
        self.code = code
        self.message = message
        self.status_code = status_code

    def __repr__(self) -> str:
        return f"RemoteError(code={self.code!r}, message={self.message!r})"


class RemoteClient(Protocol):
    """CRUD and tagging calls for one provider."""

    async def create(
        self, kind: str, spec: ResourceSpec, idempotency_token: str
    ) -> Mapping[str, Any]:
        """Create the resource and return the response attributes."""
        ...

    async def read(self, identifier: ResourceIdentifier) -> RemoteState | None:
        """Return the current state, or None if the resource is absent."""
        ...

    async def update(
        self, identifier: ResourceIdentifier, operations: Sequence[PatchOperation]
    ) -> None: ...

    async def delete(self, identifier: ResourceIdentifier) -> None: ...

    async def list_tags(self, identifier: ResourceIdentifier) -> Mapping[str, str]: ...

    async def tag_resource(
        self, identifier: ResourceIdentifier, tags: Mapping[str, str]
    ) -> None: ...

    async def untag_resource(
        self, identifier: ResourceIdentifier, keys: Sequence[str]
    ) -> None: ...


class AssociationClient(Protocol):
    """Relationship-set calls on a shared parent object."""

    async def list_members(self, parent_id: str) -> Sequence[str]: ...

    async def find_default_member(self, parent_id: str) -> str: ...

    async def associate(self, parent_id: str, member_id: str) -> None: ...

    async def disassociate(self, parent_id: str, member_id: str) -> None: ...
