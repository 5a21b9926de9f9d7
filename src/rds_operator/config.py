"""Handler configuration management with validation.

Backoff and stabilization bounds are enforced at configuration load time so a
misconfigured handler fails before it issues any remote call.
"""

from __future__ import annotations

import os
from dataclasses import dataclass


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_BACKOFF_BASE_SECONDS = 5
DEFAULT_BACKOFF_MAX_SECONDS = 60
MIN_BACKOFF_SECONDS = 1
MAX_BACKOFF_SECONDS = 900  # host scheduler callback delay ceiling (15 minutes)

DEFAULT_MAX_RETRY_ATTEMPTS = 5
MAX_RETRY_ATTEMPTS_LIMIT = 50

DEFAULT_STABILIZATION_TIMEOUT_SECONDS = 3 * 60 * 60
STABILIZATION_TIMEOUT_36H_SECONDS = 36 * 60 * 60
MAX_STABILIZATION_TIMEOUT_SECONDS = 7 * 24 * 60 * 60

ENV_PREFIX = "RDS_OPERATOR_"

# Local driver input bounds
MAX_REQUEST_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max request file
MAX_CONTEXT_FILE_SIZE_BYTES = 256 * 1024  # 256KB max persisted context


@dataclass(frozen=True)
class HandlerConfig:
    """Handler configuration loaded from environment variables or presets.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-pipeline.
    """

    # Exponential backoff used for PENDING stabilization and retryable errors
    backoff_base_seconds: int = DEFAULT_BACKOFF_BASE_SECONDS
    backoff_max_seconds: int = DEFAULT_BACKOFF_MAX_SECONDS

    # Retryable error kinds (Throttling, ServiceInternal, Conflict) are retried
    # up to this many times per step before the step fails
    max_retry_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS

    # Upper bound on how long a single step may keep reporting PENDING
    stabilization_timeout_seconds: int = DEFAULT_STABILIZATION_TIMEOUT_SECONDS

    # Cross-check the event stream for asynchronous failures after modify
    probing_enabled: bool = True

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not (MIN_BACKOFF_SECONDS <= self.backoff_base_seconds <= MAX_BACKOFF_SECONDS):
            errors.append(
                f"BACKOFF_BASE_SECONDS must be between {MIN_BACKOFF_SECONDS} "
                f"and {MAX_BACKOFF_SECONDS} seconds"
            )

        if not (MIN_BACKOFF_SECONDS <= self.backoff_max_seconds <= MAX_BACKOFF_SECONDS):
            errors.append(
                f"BACKOFF_MAX_SECONDS must be between {MIN_BACKOFF_SECONDS} "
                f"and {MAX_BACKOFF_SECONDS} seconds"
            )
        elif self.backoff_max_seconds < self.backoff_base_seconds:
            errors.append("BACKOFF_MAX_SECONDS must not be lower than BACKOFF_BASE_SECONDS")

        if not (0 <= self.max_retry_attempts <= MAX_RETRY_ATTEMPTS_LIMIT):
            errors.append(f"MAX_RETRY_ATTEMPTS must be between 0 and {MAX_RETRY_ATTEMPTS_LIMIT}")

        if not (0 < self.stabilization_timeout_seconds <= MAX_STABILIZATION_TIMEOUT_SECONDS):
            errors.append(
                "STABILIZATION_TIMEOUT_SECONDS must be positive and at most "
                f"{MAX_STABILIZATION_TIMEOUT_SECONDS} seconds"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def max_stabilization_attempts(self) -> int:
        """Number of PENDING polls a step may report before it is failed.

        Every PENDING poll after the backoff ramp waits backoff_max_seconds,
        so the timeout divided by that delay bounds the attempt count.
        """
        return max(1, self.stabilization_timeout_seconds // self.backoff_max_seconds)

    @classmethod
    def from_env(cls) -> HandlerConfig:
        """Load configuration from environment variables.

        Environment Variables:
            RDS_OPERATOR_BACKOFF_BASE_SECONDS: First backoff delay (default: 5)
            RDS_OPERATOR_BACKOFF_MAX_SECONDS: Backoff ceiling (default: 60)
            RDS_OPERATOR_MAX_RETRY_ATTEMPTS: Retries per step for retryable errors (default: 5)
            RDS_OPERATOR_STABILIZATION_TIMEOUT_SECONDS: Per-step stabilization bound
                (default: 10800)
            RDS_OPERATOR_PROBING_ENABLED: If "false", skip the event-stream failure check
                (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(ENV_PREFIX + key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{ENV_PREFIX}{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(ENV_PREFIX + key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            backoff_base_seconds=get_int("BACKOFF_BASE_SECONDS", DEFAULT_BACKOFF_BASE_SECONDS),
            backoff_max_seconds=get_int("BACKOFF_MAX_SECONDS", DEFAULT_BACKOFF_MAX_SECONDS),
            max_retry_attempts=get_int("MAX_RETRY_ATTEMPTS", DEFAULT_MAX_RETRY_ATTEMPTS),
            stabilization_timeout_seconds=get_int(
                "STABILIZATION_TIMEOUT_SECONDS", DEFAULT_STABILIZATION_TIMEOUT_SECONDS
            ),
            probing_enabled=get_bool("PROBING_ENABLED", True),
        )


DEFAULT_HANDLER_CONFIG = HandlerConfig()

# DB instance modifications (storage, engine upgrades) can take well over a day
DB_INSTANCE_HANDLER_CONFIG_36H = HandlerConfig(
    stabilization_timeout_seconds=STABILIZATION_TIMEOUT_36H_SECONDS,
)
