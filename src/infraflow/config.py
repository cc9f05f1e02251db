"""Configuration management with validation.

Invalid settings are rejected at load time, listing every problem at once.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Task timeouts: lightweight resources vs. NAT/public IP/subnet, which the
# cloud API retries internally
DEFAULT_TASK_TIMEOUT_SECONDS = 120
DEFAULT_LONG_TASK_TIMEOUT_SECONDS = 240
DEFAULT_MIGRATION_TIMEOUT_SECONDS = 600
MIN_TIMEOUT_SECONDS = 1
MAX_TIMEOUT_SECONDS = 3600

DEFAULT_SCALE_DOWN_TIMEOUT_SECONDS = 300
DEFAULT_SCALE_DOWN_POLL_INTERVAL_SECONDS = 5

DEFAULT_MAX_PARALLEL_IP_UPGRADES = 4
MAX_PARALLEL_IP_UPGRADES = 32

# Security constraints
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max manifest
MAX_STATE_FILE_SIZE_BYTES = 10 * 1024 * 1024  # 10MB max persisted state

VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"


@dataclass(frozen=True)
class Config:
    """Reconciler configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-reconcile.
    """

    subscription_id: str

    # User-assigned managed identity used for Azure calls
    client_id: str | None = None

    # Timing
    default_task_timeout_seconds: int = DEFAULT_TASK_TIMEOUT_SECONDS
    long_task_timeout_seconds: int = DEFAULT_LONG_TASK_TIMEOUT_SECONDS
    migration_task_timeout_seconds: int = DEFAULT_MIGRATION_TIMEOUT_SECONDS
    scale_down_timeout_seconds: int = DEFAULT_SCALE_DOWN_TIMEOUT_SECONDS
    scale_down_poll_interval_seconds: int = DEFAULT_SCALE_DOWN_POLL_INTERVAL_SECONDS

    # Behavior
    max_parallel_ip_upgrades: int = DEFAULT_MAX_PARALLEL_IP_UPGRADES
    fail_fast: bool = False

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        timeouts = {
            "TASK_TIMEOUT": self.default_task_timeout_seconds,
            "LONG_TASK_TIMEOUT": self.long_task_timeout_seconds,
            "MIGRATION_TIMEOUT": self.migration_task_timeout_seconds,
            "SCALE_DOWN_TIMEOUT": self.scale_down_timeout_seconds,
        }
        for name, value in timeouts.items():
            if not (MIN_TIMEOUT_SECONDS <= value <= MAX_TIMEOUT_SECONDS):
                errors.append(
                    f"{name} must be between {MIN_TIMEOUT_SECONDS} "
                    f"and {MAX_TIMEOUT_SECONDS} seconds"
                )

        if self.scale_down_poll_interval_seconds < 1:
            errors.append("SCALE_DOWN_POLL_INTERVAL must be at least 1 second")
        elif self.scale_down_poll_interval_seconds > self.scale_down_timeout_seconds:
            errors.append("SCALE_DOWN_POLL_INTERVAL cannot exceed SCALE_DOWN_TIMEOUT")

        if not (1 <= self.max_parallel_ip_upgrades <= MAX_PARALLEL_IP_UPGRADES):
            errors.append(
                f"MAX_PARALLEL_IP_UPGRADES must be between 1 and {MAX_PARALLEL_IP_UPGRADES}"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Subscription holding the cluster resources
            AZURE_CLIENT_ID: Client ID of a user-assigned managed identity (optional)
            TASK_TIMEOUT: Timeout of lightweight tasks in seconds (default: 120)
            LONG_TASK_TIMEOUT: Timeout of NAT, public IP and subnet tasks (default: 240)
            MIGRATION_TIMEOUT: Timeout of the availability set migration (default: 600)
            SCALE_DOWN_TIMEOUT: How long to retry scaling deployments (default: 300)
            SCALE_DOWN_POLL_INTERVAL: Seconds between scale retries (default: 5)
            MAX_PARALLEL_IP_UPGRADES: Concurrent public IP SKU upgrades (default: 4)
            FAIL_FAST: If "true", the first failed task cancels the rest (default: false)

        Returns:
            Validated Config instance.

        Raises:
            ConfigurationError: If validation fails.
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None or value == "":
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        return cls(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            client_id=os.environ.get("AZURE_CLIENT_ID") or None,
            default_task_timeout_seconds=get_int("TASK_TIMEOUT", DEFAULT_TASK_TIMEOUT_SECONDS),
            long_task_timeout_seconds=get_int(
                "LONG_TASK_TIMEOUT", DEFAULT_LONG_TASK_TIMEOUT_SECONDS
            ),
            migration_task_timeout_seconds=get_int(
                "MIGRATION_TIMEOUT", DEFAULT_MIGRATION_TIMEOUT_SECONDS
            ),
            scale_down_timeout_seconds=get_int(
                "SCALE_DOWN_TIMEOUT", DEFAULT_SCALE_DOWN_TIMEOUT_SECONDS
            ),
            scale_down_poll_interval_seconds=get_int(
                "SCALE_DOWN_POLL_INTERVAL", DEFAULT_SCALE_DOWN_POLL_INTERVAL_SECONDS
            ),
            max_parallel_ip_upgrades=get_int(
                "MAX_PARALLEL_IP_UPGRADES", DEFAULT_MAX_PARALLEL_IP_UPGRADES
            ),
            fail_fast=os.environ.get("FAIL_FAST", "false").lower() == "true",
        )
