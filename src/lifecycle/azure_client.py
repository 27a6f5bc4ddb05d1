"""Azure Resource Manager implementation of RemoteClient.

Drives generic ARM resources through the resource and tags APIs of
azure-mgmt-resource. The SDK is synchronous; every call runs in the default
executor so the event loop is never blocked.

Long-running operations are started but not awaited here: convergence is
observed by ConvergencePoller through read(), which maps
properties.provisioningState to the remote status.

The ResourceManagementClient (and the credential inside it) is supplied by
the caller.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Callable, Mapping, Sequence
from typing import Any, TypeVar

from azure.core.exceptions import HttpResponseError, ResourceNotFoundError
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import (
    GenericResource,
    Tags,
    TagsPatchResource,
)

from .identifiers import ResourceIdentifier
from .models import PatchOperation, RemoteState, ResourceSpec
from .remote import RemoteError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_API_VERSION = "2021-04-01"

# Resources without a provisioningState are ready once readable
DEFAULT_PROVISIONING_STATE = "Succeeded"

# Fallback codes when the response body carries no ARM error code
STATUS_CODE_ERRORS: dict[int, str] = {
    404: "ResourceNotFound",
    409: "ConflictException",
    429: "TooManyRequests",
}

# Top-level GenericResource fields an update may patch
PATCHABLE_FIELDS = frozenset({"properties", "sku", "kind"})


def translate_azure_error(error: HttpResponseError) -> RemoteError:
    """Map an SDK error to a RemoteError for classification."""
    code = error.error.code if error.error and error.error.code else None
    if code is None:
        code = STATUS_CODE_ERRORS.get(error.status_code or 0, f"Http{error.status_code}")
    message = error.error.message if error.error and error.error.message else str(error.message)
    return RemoteError(code, message, status_code=error.status_code)


def apply_patch(document: dict[str, Any], operations: Sequence[PatchOperation]) -> dict[str, Any]:
    """Apply add/replace/remove operations to a copy of `document`.

    Raises:
        RemoteError: InvalidPatchPath if a path is outside the patchable fields.
    """
    result = copy.deepcopy(document)
    for operation in operations:
        segments = [
            s.replace("~1", "/").replace("~0", "~") for s in operation.path.lstrip("/").split("/")
        ]
        if not segments[0] or segments[0] not in PATCHABLE_FIELDS:
            raise RemoteError("InvalidPatchPath", f"cannot patch {operation.path}")

        parent = result
        for segment in segments[:-1]:
            child = parent.get(segment)
            if not isinstance(child, dict):
                child = {}
                parent[segment] = child
            parent = child

        leaf = segments[-1]
        if operation.op == "remove":
            parent.pop(leaf, None)
        elif operation.op in ("add", "replace"):
            parent[leaf] = operation.value
        else:
            raise RemoteError("InvalidPatchOperation", f"unsupported op {operation.op}")
    return result


class AzureResourceClient:
    """RemoteClient over ARM generic resources."""

    def __init__(
        self,
        resource_client: ResourceManagementClient,
        api_version: str = DEFAULT_API_VERSION,
    ) -> None:
        self._client = resource_client
        self._api_version = api_version

    async def _run(self, fn: Callable[[], T]) -> T:
        loop = asyncio.get_event_loop()
        try:
            return await loop.run_in_executor(None, fn)
        except HttpResponseError as e:
            raise translate_azure_error(e) from e

    async def create(
        self, kind: str, spec: ResourceSpec, idempotency_token: str
    ) -> Mapping[str, Any]:
        """Start a PUT of the resource.

        ARM PUT is idempotent on the resource ID, so the token is only logged
        to correlate retried attempts.
        """
        attributes = spec.attributes
        resource_id = attributes.get("resource_id")
        location = attributes.get("location")
        if not resource_id or not location:
            raise RemoteError("InvalidParameter", "resource_id and location are required")

        parameters = GenericResource(
            location=location,
            properties=attributes.get("properties") or {},
            kind=attributes.get("kind"),
            sku=attributes.get("sku"),
            tags=dict(spec.tags),
        )
        logger.debug(
            "Starting ARM create",
            extra={"resource_id": resource_id, "idempotency_token": idempotency_token},
        )
        await self._run(
            lambda: self._client.resources.begin_create_or_update_by_id(
                resource_id=resource_id,
                api_version=self._api_version,
                parameters=parameters,
            )
        )
        return {"resource_id": resource_id}

    async def read(self, identifier: ResourceIdentifier) -> RemoteState | None:
        resource_id = identifier.parts[0]
        try:
            resource = await self._run(
                lambda: self._client.resources.get_by_id(
                    resource_id=resource_id, api_version=self._api_version
                )
            )
        except RemoteError as e:
            if isinstance(e.__cause__, ResourceNotFoundError) or e.status_code == 404:
                return None
            raise

        properties = dict(resource.properties or {})
        return RemoteState(
            status=properties.get("provisioningState", DEFAULT_PROVISIONING_STATE),
            attributes={
                "resource_id": resource.id,
                "location": resource.location,
                "kind": resource.kind,
                "properties": properties,
                "tags": dict(resource.tags or {}),
            },
        )

    async def update(
        self, identifier: ResourceIdentifier, operations: Sequence[PatchOperation]
    ) -> None:
        """Read-modify-write of the patchable fields."""
        resource_id = identifier.parts[0]
        current = await self._run(
            lambda: self._client.resources.get_by_id(
                resource_id=resource_id, api_version=self._api_version
            )
        )
        document = apply_patch(
            {
                "properties": dict(current.properties or {}),
                "sku": current.sku.as_dict() if current.sku else None,
                "kind": current.kind,
            },
            operations,
        )
        parameters = GenericResource(
            location=current.location,
            properties=document.get("properties"),
            sku=document.get("sku"),
            kind=document.get("kind"),
            tags=current.tags,
        )
        await self._run(
            lambda: self._client.resources.begin_create_or_update_by_id(
                resource_id=resource_id,
                api_version=self._api_version,
                parameters=parameters,
            )
        )

    async def delete(self, identifier: ResourceIdentifier) -> None:
        resource_id = identifier.parts[0]
        await self._run(
            lambda: self._client.resources.begin_delete_by_id(
                resource_id=resource_id, api_version=self._api_version
            )
        )

    async def list_tags(self, identifier: ResourceIdentifier) -> Mapping[str, str]:
        resource_id = identifier.parts[0]
        result = await self._run(lambda: self._client.tags.get_at_scope(scope=resource_id))
        if result.properties is None or result.properties.tags is None:
            return {}
        return dict(result.properties.tags)

    async def tag_resource(self, identifier: ResourceIdentifier, tags: Mapping[str, str]) -> None:
        await self._patch_tags(identifier, "Merge", dict(tags))

    async def untag_resource(self, identifier: ResourceIdentifier, keys: Sequence[str]) -> None:
        # The Delete patch matches on name and value, so send the current values
        current = await self.list_tags(identifier)
        tags = {key: current[key] for key in keys if key in current}
        if tags:
            await self._patch_tags(identifier, "Delete", tags)

    async def _patch_tags(
        self, identifier: ResourceIdentifier, operation: str, tags: dict[str, str]
    ) -> None:
        resource_id = identifier.parts[0]
        patch = TagsPatchResource(operation=operation, properties=Tags(tags=tags))

        def begin_and_wait() -> Any:
            poller = self._client.tags.begin_update_at_scope(scope=resource_id, parameters=patch)
            return poller.result()

        await self._run(begin_and_wait)
