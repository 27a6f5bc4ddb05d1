"""Resource spec loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .kinds import BUILTIN_KINDS
from .models import ResourceSpec

logger = logging.getLogger(__name__)

MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024
MAX_DOCUMENTS_PER_FILE = 500

SUPPORTED_API_VERSIONS = frozenset({"lifecycle/v1"})


class SpecLoadError(Exception):
    """Raised when spec loading or validation fails."""

    pass


def parse_document(raw_data: Any, source: str) -> ResourceSpec:
    """Validate one YAML document into a ResourceSpec.

    Two shapes are accepted:

        # Envelope
        apiVersion: lifecycle/v1
        kind: api_gateway_method_response
        metadata:
          name: ok-response
        spec:
          attributes: {...}

        # Flat
        kind: api_gateway_method_response
        name: ok-response
        attributes: {...}

    Raises:
        SpecLoadError: If the document is not a mapping or fails validation.
    """
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Spec document must be a YAML mapping: {source}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        api_version = raw_data["apiVersion"]
        if api_version not in SUPPORTED_API_VERSIONS:
            raise SpecLoadError(
                f"Unsupported apiVersion '{api_version}' in {source}. "
                f"Supported: {sorted(SUPPORTED_API_VERSIONS)}"
            )
        spec_data = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {source}")
        metadata = raw_data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise SpecLoadError(f"Metadata section must be a mapping: {source}")
        spec_data = {"kind": raw_data.get("kind"), "name": metadata.get("name"), **spec_data}
    else:
        spec_data = raw_data

    try:
        spec = ResourceSpec.model_validate(spec_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {source}:\n{error_list}") from e

    if spec.kind not in BUILTIN_KINDS:
        raise SpecLoadError(
            f"Unknown resource kind '{spec.kind}' in {source}. "
            f"Valid kinds: {list(BUILTIN_KINDS)}"
        )

    if BUILTIN_KINDS[spec.kind].association and spec.association is None:
        raise SpecLoadError(f"Kind '{spec.kind}' requires an association block: {source}")

    return spec


def load_specs(spec_path: Path) -> list[ResourceSpec]:
    """Load and validate every resource spec in a YAML file.

    Multiple documents separated by '---' are loaded in order; empty
    documents are skipped.

    Raises:
        SpecLoadError: If the file cannot be loaded or any document is invalid.
    """
    if not spec_path.exists():
        raise SpecLoadError(f"Spec file not found: {spec_path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = spec_path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat spec file {spec_path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Spec file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {spec_path}"
        )

    try:
        content = spec_path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read spec file {spec_path}: {e}") from e

    try:
        documents = [doc for doc in yaml.safe_load_all(content) if doc is not None]
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {spec_path}: {e}") from e

    if len(documents) > MAX_DOCUMENTS_PER_FILE:
        raise SpecLoadError(
            f"Spec file contains more than {MAX_DOCUMENTS_PER_FILE} documents: {spec_path}"
        )

    specs = [
        parse_document(doc, f"{spec_path}[{index}]") for index, doc in enumerate(documents)
    ]

    logger.info("Loaded %d resource specs from %s", len(specs), spec_path)
    return specs
