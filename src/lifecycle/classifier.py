"""Remote error classification.

Mapping (code, message) pairs to Transient / Permanent / NotFound is
configuration data, not logic scattered across call sites. Rules are
evaluated in order and the first match wins; an unmatched error is
Permanent.

Rule file format (YAML):

    rules:
      - code: ConflictException
        classification: transient
        operations: [create, update]
      - code: InvalidParametersException
        messageContains: profile does not exist
        classification: transient
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from enum import Enum
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from .remote import RemoteError

logger = logging.getLogger(__name__)

MAX_RULES_FILE_SIZE_BYTES = 256 * 1024


class Classification(str, Enum):
    """How a remote error is handled."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    NOT_FOUND = "not_found"


class Operation(str, Enum):
    """Remote operations a classification rule can be scoped to."""

    CREATE = "create"
    READ = "read"
    UPDATE = "update"
    DELETE = "delete"
    LIST_TAGS = "list_tags"
    TAG = "tag"
    UNTAG = "untag"


class ClassifierLoadError(Exception):
    """Raised when a classification rule file cannot be loaded."""

    pass


class ClassificationRule(BaseModel):
    """One (code, message) to classification mapping."""

    model_config = {"extra": "forbid", "frozen": True, "populate_by_name": True}

    code: str = Field(min_length=1)
    message_contains: str | None = Field(None, alias="messageContains")
    classification: Classification
    # Empty means the rule applies to every operation
    operations: tuple[Operation, ...] = ()

    def matches(self, error: RemoteError, operation: Operation) -> bool:
        if error.code != self.code:
            return False
        if self.operations and operation not in self.operations:
            return False
        if self.message_contains and self.message_contains not in error.message:
            return False
        return True


def _rule(
    code: str,
    classification: Classification,
    *operations: Operation,
    message_contains: str | None = None,
) -> ClassificationRule:
    return ClassificationRule(
        code=code,
        classification=classification,
        operations=operations,
        message_contains=message_contains,
    )


# Built-in rules for the providers this package ships kinds for.
# Caller-supplied rules are evaluated before these.
DEFAULT_RULES: tuple[ClassificationRule, ...] = (
    # Throttling
    _rule("Throttling", Classification.TRANSIENT),
    _rule("ThrottlingException", Classification.TRANSIENT),
    _rule("RequestLimitExceeded", Classification.TRANSIENT),
    _rule("TooManyRequests", Classification.TRANSIENT),
    # Concurrent modification of a shared parent
    _rule("ConflictException", Classification.TRANSIENT, Operation.CREATE, Operation.UPDATE),
    _rule("AnotherOperationInProgress", Classification.TRANSIENT),
    _rule("RetryableError", Classification.TRANSIENT),
    # Eventual consistency: a just-created dependency is not yet visible
    _rule(
        "InvalidParametersException",
        Classification.TRANSIENT,
        Operation.CREATE,
        Operation.UPDATE,
        message_contains="profile does not exist",
    ),
    # Absence
    _rule("NotFoundException", Classification.NOT_FOUND),
    _rule("ResourceNotFoundException", Classification.NOT_FOUND),
    _rule("ResourceNotFound", Classification.NOT_FOUND),
    _rule("ResourceGroupNotFound", Classification.NOT_FOUND),
    _rule("InvalidVpcEndpointId.NotFound", Classification.NOT_FOUND),
    _rule("InvalidGroup.NotFound", Classification.NOT_FOUND),
    # Removing an association that no longer exists
    _rule("InvalidParameter", Classification.NOT_FOUND, Operation.DELETE),
)


class ErrorClassifier:
    """Ordered rule set mapping remote errors to a Classification."""

    def __init__(
        self,
        rules: Iterable[ClassificationRule] = (),
        *,
        include_defaults: bool = True,
    ) -> None:
        self._rules: tuple[ClassificationRule, ...] = tuple(rules)
        if include_defaults:
            self._rules += DEFAULT_RULES

    @property
    def rules(self) -> Sequence[ClassificationRule]:
        return self._rules

    def classify(self, error: RemoteError, operation: Operation) -> Classification:
        for rule in self._rules:
            if rule.matches(error, operation):
                return rule.classification
        return Classification.PERMANENT

    def for_operation(self, operation: Operation) -> Callable[[RemoteError], Classification]:
        """Bind the classifier to one operation for use in a RetryPolicy."""

        def classify(error: RemoteError) -> Classification:
            return self.classify(error, operation)

        return classify


def load_classifier_rules(path: Path) -> list[ClassificationRule]:
    """Load classification rules from a YAML file.

    Raises:
        ClassifierLoadError: If the file is missing, too large or invalid.
    """
    if not path.exists():
        raise ClassifierLoadError(f"Classifier rules file not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ClassifierLoadError(f"Cannot stat classifier rules file: {e}") from e

    if file_size > MAX_RULES_FILE_SIZE_BYTES:
        raise ClassifierLoadError(
            f"Classifier rules file too large: {file_size} bytes "
            f"(max {MAX_RULES_FILE_SIZE_BYTES})"
        )

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ClassifierLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict) or not isinstance(data.get("rules"), list):
        raise ClassifierLoadError(f"{path} must contain a top-level 'rules' list")

    try:
        rules = [ClassificationRule.model_validate(item) for item in data["rules"]]
    except ValidationError as e:
        raise ClassifierLoadError(f"Invalid classification rule in {path}: {e}") from e

    logger.info(
        "Loaded classification rules",
        extra={"path": str(path), "rule_count": len(rules)},
    )
    return rules
