"""Configuration management with validation.

All settings are validated at construction time so that a bad environment
fails before the first remote call rather than halfway through a pass.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class ReconciliationMode(str, Enum):
    """What a reconciliation pass is allowed to do."""

    PLAN = "plan"  # Report drift and intended actions, never mutate
    APPLY = "apply"  # Converge remote state to desired state


class BackoffStrategy(str, Enum):
    """Wait policy between poll ticks."""

    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_ENDPOINT = "https://api.confluent.cloud"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30.0

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_POLL_MAX_INTERVAL_SECONDS = 60.0
DEFAULT_PROVISIONING_TIMEOUT_SECONDS = 1800
MAX_PROVISIONING_TIMEOUT_SECONDS = 6 * 3600

DEFAULT_RECONCILE_INTERVAL_SECONDS = 30
DEFAULT_MAX_PASSES = 20
DEFAULT_MAX_PARALLEL_OPERATIONS = 8

MAX_TRANSIENT_RETRIES = 3
RETRY_BACKOFF_BASE_SECONDS = 1.0

# Security constraints
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max desired-state document
MAX_STATE_FILE_SIZE_BYTES = 16 * 1024 * 1024

VALID_ENDPOINT_PATTERN = r"^https?://[^\s/]+(:\d+)?(/[^\s]*)?$"


@dataclass(frozen=True)
class ProviderContext:
    """Connection settings shared by every remote client.

    Injected into the adapter at construction so reconciliation logic never
    reads process-wide credentials.
    """

    endpoint: str = DEFAULT_ENDPOINT
    api_key: str = ""
    api_secret: str = field(default="", repr=False)
    request_timeout_seconds: float = DEFAULT_REQUEST_TIMEOUT_SECONDS

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not re.match(VALID_ENDPOINT_PATTERN, self.endpoint):
            errors.append(f"CONFLUENT_CLOUD_ENDPOINT must be an http(s) URL: {self.endpoint}")
        if bool(self.api_key) != bool(self.api_secret):
            errors.append(
                "CONFLUENT_CLOUD_API_KEY and CONFLUENT_CLOUD_API_SECRET must be set together"
            )
        if self.request_timeout_seconds <= 0:
            errors.append("REQUEST_TIMEOUT_SECONDS must be positive")

        if errors:
            raise ConfigurationError(
                "Provider configuration invalid:\n  - " + "\n  - ".join(errors)
            )

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)


@dataclass(frozen=True)
class Config:
    """Reconciler configuration loaded from environment variables."""

    context: ProviderContext = field(default_factory=ProviderContext)

    # Paths
    specs_path: Path = field(default_factory=lambda: Path("resources.yaml"))
    state_path: Path = field(default_factory=lambda: Path("state.yaml"))

    # Behavior
    mode: ReconciliationMode = ReconciliationMode.APPLY
    refresh_before_diff: bool = False

    # Polling
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    poll_max_interval_seconds: float = DEFAULT_POLL_MAX_INTERVAL_SECONDS
    poll_backoff: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    provisioning_timeout_seconds: float = DEFAULT_PROVISIONING_TIMEOUT_SECONDS

    # How many consecutive passes may end in ProvisioningTimeout for one
    # instance before it is marked errored. None means unbounded.
    max_provisioning_timeouts: int | None = None

    # Retries for transient API failures
    max_transient_retries: int = MAX_TRANSIENT_RETRIES
    retry_backoff_base_seconds: float = RETRY_BACKOFF_BASE_SECONDS

    # Run loop
    reconcile_interval_seconds: float = DEFAULT_RECONCILE_INTERVAL_SECONDS
    max_passes: int = DEFAULT_MAX_PASSES
    max_parallel_operations: int = DEFAULT_MAX_PARALLEL_OPERATIONS

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if self.poll_interval_seconds < 0:
            errors.append("POLL_INTERVAL_SECONDS cannot be negative")
        if self.poll_max_interval_seconds < self.poll_interval_seconds:
            errors.append("POLL_MAX_INTERVAL_SECONDS must be >= POLL_INTERVAL_SECONDS")

        if not 0 < self.provisioning_timeout_seconds <= MAX_PROVISIONING_TIMEOUT_SECONDS:
            errors.append(
                "PROVISIONING_TIMEOUT_SECONDS must be between 0 and "
                f"{MAX_PROVISIONING_TIMEOUT_SECONDS}"
            )

        if self.max_provisioning_timeouts is not None and self.max_provisioning_timeouts < 1:
            errors.append("MAX_PROVISIONING_TIMEOUTS must be at least 1 when set")

        if self.max_transient_retries < 1:
            errors.append("MAX_TRANSIENT_RETRIES must be at least 1")
        if self.retry_backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE_SECONDS cannot be negative")

        if self.reconcile_interval_seconds < 0:
            errors.append("RECONCILE_INTERVAL_SECONDS cannot be negative")
        if self.max_passes < 1:
            errors.append("MAX_PASSES must be at least 1")
        if self.max_parallel_operations < 1:
            errors.append("MAX_PARALLEL_OPERATIONS must be at least 1")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            CONFLUENT_CLOUD_ENDPOINT: Control-plane base URL
            CONFLUENT_CLOUD_API_KEY / CONFLUENT_CLOUD_API_SECRET: Cloud API key pair
            REQUEST_TIMEOUT_SECONDS: Per-request HTTP timeout (default: 30)
            SPECS_PATH: Desired-state document (default: resources.yaml)
            STATE_PATH: Persisted state file (default: state.yaml)
            RECONCILE_MODE: plan or apply (default: apply)
            REFRESH_BEFORE_DIFF: Read each instance before diffing (default: false)
            POLL_INTERVAL_SECONDS: First wait between poll reads (default: 5)
            POLL_MAX_INTERVAL_SECONDS: Cap for exponential backoff (default: 60)
            POLL_BACKOFF: fixed or exponential (default: exponential)
            PROVISIONING_TIMEOUT_SECONDS: Per-attempt poll timeout (default: 1800)
            MAX_PROVISIONING_TIMEOUTS: Consecutive timed-out passes tolerated (default: unbounded)
            MAX_TRANSIENT_RETRIES: Attempts per API request (default: 3)
            RETRY_BACKOFF_BASE_SECONDS: Base of request retry backoff (default: 1)
            RECONCILE_INTERVAL_SECONDS: Wait between passes (default: 30)
            MAX_PASSES: Passes before giving up on convergence (default: 20)
            MAX_PARALLEL_OPERATIONS: Concurrent instance operations (default: 8)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None or value == "":
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_optional_int(key: str) -> int | None:
            value = os.environ.get(key)
            if value is None or value == "":
                return None
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None or value == "":
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        def get_enum(key: str, enum_cls: type[Enum], default: Enum) -> Enum:
            value = os.environ.get(key)
            if not value:
                return default
            try:
                return enum_cls(value.lower())
            except ValueError as e:
                valid = [m.value for m in enum_cls]
                raise ConfigurationError(f"{key} must be one of {valid}: {value}") from e

        context = ProviderContext(
            endpoint=os.environ.get("CONFLUENT_CLOUD_ENDPOINT", DEFAULT_ENDPOINT),
            api_key=os.environ.get("CONFLUENT_CLOUD_API_KEY", ""),
            api_secret=os.environ.get("CONFLUENT_CLOUD_API_SECRET", ""),
            request_timeout_seconds=get_float(
                "REQUEST_TIMEOUT_SECONDS", DEFAULT_REQUEST_TIMEOUT_SECONDS
            ),
        )

        return cls(
            context=context,
            specs_path=Path(os.environ.get("SPECS_PATH", "resources.yaml")),
            state_path=Path(os.environ.get("STATE_PATH", "state.yaml")),
            mode=get_enum("RECONCILE_MODE", ReconciliationMode, ReconciliationMode.APPLY),
            refresh_before_diff=get_bool("REFRESH_BEFORE_DIFF", False),
            poll_interval_seconds=get_float(
                "POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS
            ),
            poll_max_interval_seconds=get_float(
                "POLL_MAX_INTERVAL_SECONDS", DEFAULT_POLL_MAX_INTERVAL_SECONDS
            ),
            poll_backoff=get_enum("POLL_BACKOFF", BackoffStrategy, BackoffStrategy.EXPONENTIAL),
            provisioning_timeout_seconds=get_float(
                "PROVISIONING_TIMEOUT_SECONDS", DEFAULT_PROVISIONING_TIMEOUT_SECONDS
            ),
            max_provisioning_timeouts=get_optional_int("MAX_PROVISIONING_TIMEOUTS"),
            max_transient_retries=get_int("MAX_TRANSIENT_RETRIES", MAX_TRANSIENT_RETRIES),
            retry_backoff_base_seconds=get_float(
                "RETRY_BACKOFF_BASE_SECONDS", RETRY_BACKOFF_BASE_SECONDS
            ),
            reconcile_interval_seconds=get_float(
                "RECONCILE_INTERVAL_SECONDS", DEFAULT_RECONCILE_INTERVAL_SECONDS
            ),
            max_passes=get_int("MAX_PASSES", DEFAULT_MAX_PASSES),
            max_parallel_operations=get_int(
                "MAX_PARALLEL_OPERATIONS", DEFAULT_MAX_PARALLEL_OPERATIONS
            ),
        )
