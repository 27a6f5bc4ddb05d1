"""Configuration management with validation.

All values are validated at construction time. Invalid configurations raise
ConfigurationError listing every problem at once rather than failing
halfway through a reconciliation.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Operation timeouts (seconds)
DEFAULT_CREATE_TIMEOUT_SECONDS = 600
DEFAULT_READ_TIMEOUT_SECONDS = 120
DEFAULT_UPDATE_TIMEOUT_SECONDS = 600
DEFAULT_DELETE_TIMEOUT_SECONDS = 600
MAX_OPERATION_TIMEOUT_SECONDS = 6 * 3600

# Retry of individual remote calls
DEFAULT_RETRY_INITIAL_INTERVAL_SECONDS = 1.0
DEFAULT_RETRY_MULTIPLIER = 2.0
DEFAULT_RETRY_MAX_INTERVAL_SECONDS = 30.0
DEFAULT_RETRY_MAX_ELAPSED_SECONDS = 120.0

# Convergence polling
DEFAULT_POLL_MIN_INTERVAL_SECONDS = 1.0
DEFAULT_POLL_MAX_INTERVAL_SECONDS = 15.0
DEFAULT_POLL_GROWTH = 1.5

# Tag keys with this prefix are managed by the remote system
DEFAULT_RESERVED_TAG_PREFIX = "aws:"

# Parent lock waits are bounded by the operation deadline; LOCK_TIMEOUT adds a
# tighter cap. A holder keeps the lock through its whole visibility wait, so a
# cap shorter than that wait fails the second writer on a busy parent.
DEFAULT_LOCK_TIMEOUT_SECONDS: int | None = None


@dataclass(frozen=True)
class RetrySettings:
    """Backoff parameters for individual remote calls."""

    initial_interval_seconds: float = DEFAULT_RETRY_INITIAL_INTERVAL_SECONDS
    multiplier: float = DEFAULT_RETRY_MULTIPLIER
    max_interval_seconds: float = DEFAULT_RETRY_MAX_INTERVAL_SECONDS
    max_elapsed_seconds: float = DEFAULT_RETRY_MAX_ELAPSED_SECONDS


@dataclass(frozen=True)
class PollSettings:
    """Adaptive interval for convergence polling."""

    min_interval_seconds: float = DEFAULT_POLL_MIN_INTERVAL_SECONDS
    max_interval_seconds: float = DEFAULT_POLL_MAX_INTERVAL_SECONDS
    growth: float = DEFAULT_POLL_GROWTH


@dataclass(frozen=True)
class Config:
    """Engine configuration.

    Defaults are usable as-is; from_env() lets deployments override them.
    """

    # Timing
    create_timeout_seconds: int = DEFAULT_CREATE_TIMEOUT_SECONDS
    read_timeout_seconds: int = DEFAULT_READ_TIMEOUT_SECONDS
    update_timeout_seconds: int = DEFAULT_UPDATE_TIMEOUT_SECONDS
    delete_timeout_seconds: int = DEFAULT_DELETE_TIMEOUT_SECONDS
    lock_timeout_seconds: int | None = DEFAULT_LOCK_TIMEOUT_SECONDS

    retry: RetrySettings = field(default_factory=RetrySettings)
    poll: PollSettings = field(default_factory=PollSettings)

    # Tagging
    reserved_tag_prefix: str = DEFAULT_RESERVED_TAG_PREFIX

    # Extra error classification rules, evaluated before the built-in ones
    classifier_rules_path: Path | None = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        timeouts = {
            "CREATE_TIMEOUT": self.create_timeout_seconds,
            "READ_TIMEOUT": self.read_timeout_seconds,
            "UPDATE_TIMEOUT": self.update_timeout_seconds,
            "DELETE_TIMEOUT": self.delete_timeout_seconds,
        }
        for name, value in timeouts.items():
            if not (1 <= value <= MAX_OPERATION_TIMEOUT_SECONDS):
                errors.append(
                    f"{name} must be between 1 and {MAX_OPERATION_TIMEOUT_SECONDS} seconds"
                )

        if self.lock_timeout_seconds is not None and self.lock_timeout_seconds < 1:
            errors.append("LOCK_TIMEOUT must be at least 1 second")

        # Retry validation
        if self.retry.initial_interval_seconds <= 0:
            errors.append("RETRY_INITIAL_INTERVAL must be positive")
        if self.retry.multiplier < 1:
            errors.append("RETRY_MULTIPLIER must be at least 1")
        if self.retry.max_interval_seconds < self.retry.initial_interval_seconds:
            errors.append("RETRY_MAX_INTERVAL must be at least RETRY_INITIAL_INTERVAL")
        if self.retry.max_elapsed_seconds < 0:
            errors.append("RETRY_MAX_ELAPSED cannot be negative")

        # Poll validation
        if self.poll.min_interval_seconds <= 0:
            errors.append("POLL_MIN_INTERVAL must be positive")
        if self.poll.max_interval_seconds < self.poll.min_interval_seconds:
            errors.append("POLL_MAX_INTERVAL must be at least POLL_MIN_INTERVAL")
        if self.poll.growth < 1:
            errors.append("POLL_GROWTH must be at least 1")

        if not self.reserved_tag_prefix:
            errors.append("RESERVED_TAG_PREFIX cannot be empty")

        if self.classifier_rules_path is not None and not self.classifier_rules_path.exists():
            errors.append(f"Classifier rules file does not exist: {self.classifier_rules_path}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            CREATE_TIMEOUT: Create deadline in seconds (default: 600)
            READ_TIMEOUT: Read deadline in seconds (default: 120)
            UPDATE_TIMEOUT: Update deadline in seconds (default: 600)
            DELETE_TIMEOUT: Delete deadline in seconds (default: 600)
            LOCK_TIMEOUT: Cap on parent lock waits in seconds (default: operation deadline)
            RETRY_INITIAL_INTERVAL: First backoff in seconds (default: 1.0)
            RETRY_MULTIPLIER: Backoff multiplier (default: 2.0)
            RETRY_MAX_INTERVAL: Backoff cap in seconds (default: 30.0)
            RETRY_MAX_ELAPSED: Retry budget per remote call in seconds (default: 120)
            POLL_MIN_INTERVAL: First poll interval in seconds (default: 1.0)
            POLL_MAX_INTERVAL: Poll interval cap in seconds (default: 15.0)
            POLL_GROWTH: Poll interval growth factor (default: 1.5)
            RESERVED_TAG_PREFIX: Remote-managed tag prefix (default: "aws:")
            CLASSIFIER_RULES_PATH: YAML file with extra classification rules
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_optional_int(key: str) -> int | None:
            value = os.environ.get(key)
            if value is None:
                return None
            return get_int(key, 0)

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        rules_path = os.environ.get("CLASSIFIER_RULES_PATH")

        return cls(
            create_timeout_seconds=get_int("CREATE_TIMEOUT", DEFAULT_CREATE_TIMEOUT_SECONDS),
            read_timeout_seconds=get_int("READ_TIMEOUT", DEFAULT_READ_TIMEOUT_SECONDS),
            update_timeout_seconds=get_int("UPDATE_TIMEOUT", DEFAULT_UPDATE_TIMEOUT_SECONDS),
            delete_timeout_seconds=get_int("DELETE_TIMEOUT", DEFAULT_DELETE_TIMEOUT_SECONDS),
            lock_timeout_seconds=get_optional_int("LOCK_TIMEOUT"),
            retry=RetrySettings(
                initial_interval_seconds=get_float(
                    "RETRY_INITIAL_INTERVAL", DEFAULT_RETRY_INITIAL_INTERVAL_SECONDS
                ),
                multiplier=get_float("RETRY_MULTIPLIER", DEFAULT_RETRY_MULTIPLIER),
                max_interval_seconds=get_float(
                    "RETRY_MAX_INTERVAL", DEFAULT_RETRY_MAX_INTERVAL_SECONDS
                ),
                max_elapsed_seconds=get_float(
                    "RETRY_MAX_ELAPSED", DEFAULT_RETRY_MAX_ELAPSED_SECONDS
                ),
            ),
            poll=PollSettings(
                min_interval_seconds=get_float(
                    "POLL_MIN_INTERVAL", DEFAULT_POLL_MIN_INTERVAL_SECONDS
                ),
                max_interval_seconds=get_float(
                    "POLL_MAX_INTERVAL", DEFAULT_POLL_MAX_INTERVAL_SECONDS
                ),
                growth=get_float("POLL_GROWTH", DEFAULT_POLL_GROWTH),
            ),
            reserved_tag_prefix=os.environ.get("RESERVED_TAG_PREFIX", DEFAULT_RESERVED_TAG_PREFIX),
            classifier_rules_path=Path(rules_path) if rules_path else None,
        )
