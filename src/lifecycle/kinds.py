"""Resource kinds: how each managed type is identified and observed.

A kind declares its identifier components and codec, which statuses mean
ready / failed / deleted, whether it carries tags, and which identifier
component names a shared parent whose writes must be serialized.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from .errors import MalformedIdentifier
from .identifiers import DelimitedCodec, IdentifierCodec, ResourceIdentifier, VersionedCodec


@dataclass(frozen=True)
class ResourceKind:
    """Static description of one resource type."""

    name: str
    codec: IdentifierCodec
    components: tuple[str, ...]

    # Convergence
    ready_statuses: frozenset[str] = frozenset()
    failure_statuses: frozenset[str] = frozenset()
    deleted_statuses: frozenset[str] = frozenset()
    wait_for_deletion: bool = False

    # Tagging
    supports_tags: bool = False
    # Overrides the configured prefix when set
    reserved_tag_prefix: str | None = None

    # Identifier component naming the parent whose writes are serialized
    parent_component: str | None = None

    # Fields the remote create call does not accept; applied by an update after create
    update_only_fields: frozenset[str] = frozenset()

    # Membership in a parent's relationship set rather than a standalone object
    association: bool = False

    def __post_init__(self) -> None:
        if not self.components:
            raise ValueError(f"kind {self.name} must declare identifier components")
        if self.parent_component and self.parent_component not in self.components:
            raise ValueError(
                f"parent component {self.parent_component} is not an identifier component"
            )
        if self.association and len(self.components) != 2:
            raise ValueError("association kinds are identified by (parent, member)")

    def build(self, parts: list[str] | tuple[str, ...]) -> ResourceIdentifier:
        return ResourceIdentifier.build(self.name, parts, self.codec)

    def build_from(self, values: Mapping[str, Any]) -> ResourceIdentifier:
        """Build an identifier from named values.

        Raises:
            MalformedIdentifier: If a component value is missing or empty.
        """
        parts: list[str] = []
        for component in self.components:
            value = values.get(component)
            if value is None or value == "":
                raise MalformedIdentifier(f"missing identifier component {component!r}")
            parts.append(str(value))
        return self.build(parts)

    def parse(self, value: str) -> ResourceIdentifier:
        return ResourceIdentifier.parse(self.name, value, self.codec, len(self.components))

    def component(self, identifier: ResourceIdentifier, name: str) -> str:
        return identifier.parts[self.components.index(name)]

    def parent_of(self, identifier: ResourceIdentifier) -> str | None:
        if self.parent_component is None:
            return None
        return self.component(identifier, self.parent_component)


# =============================================================================
# Built-in kinds
# =============================================================================

VPC_ENDPOINT_SECURITY_GROUP_ASSOCIATION = ResourceKind(
    name="vpc_endpoint_security_group_association",
    codec=DelimitedCodec("/"),
    components=("vpc_endpoint_id", "security_group_id"),
    parent_component="vpc_endpoint_id",
    association=True,
)

# Older releases stored "agmr-{api}-{resource}-{method}-{status}"
API_METHOD_RESPONSE = ResourceKind(
    name="api_gateway_method_response",
    codec=VersionedCodec(
        DelimitedCodec("/"),
        legacy=(DelimitedCodec("-", prefix="agmr-"),),
    ),
    components=("rest_api_id", "resource_id", "http_method", "status_code"),
    parent_component="rest_api_id",
)

PROVISIONING_ARTIFACT = ResourceKind(
    name="servicecatalog_provisioning_artifact",
    codec=DelimitedCodec(":"),
    components=("artifact_id", "product_id"),
    ready_statuses=frozenset({"AVAILABLE"}),
    failure_statuses=frozenset({"FAILED"}),
    wait_for_deletion=True,
    update_only_fields=frozenset({"active", "guidance"}),
)

# Azure resource IDs contain "/", so the single component is "|"-delimited
AZURE_RESOURCE = ResourceKind(
    name="azure_resource",
    codec=DelimitedCodec("|"),
    components=("resource_id",),
    ready_statuses=frozenset({"Succeeded"}),
    failure_statuses=frozenset({"Failed", "Canceled"}),
    wait_for_deletion=True,
    supports_tags=True,
    reserved_tag_prefix="hidden-",
)

BUILTIN_KINDS: dict[str, ResourceKind] = {
    kind.name: kind
    for kind in (
        VPC_ENDPOINT_SECURITY_GROUP_ASSOCIATION,
        API_METHOD_RESPONSE,
        PROVISIONING_ARTIFACT,
        AZURE_RESOURCE,
    )
}


def get_kind(name: str) -> ResourceKind:
    """Look up a built-in kind by name.

    Raises:
        ValueError: If the kind is not recognized.
    """
    kind = BUILTIN_KINDS.get(name)
    if kind is None:
        raise ValueError(f"Unknown resource kind '{name}'. Valid kinds: {list(BUILTIN_KINDS)}")
    return kind
