"""Configuration management with validation.

Limits are enforced at configuration load time so the engine runs with
bounded parallelism, bounded timeouts and bounded declaration sizes.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class ProviderBackend(str, Enum):
    """Provider backends the engine can be wired to."""

    SIMULATED = "simulated"
    AZURE = "azure"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_MAX_PARALLEL_APPLIES = 10
MIN_MAX_PARALLEL_APPLIES = 1
MAX_MAX_PARALLEL_APPLIES = 64

DEFAULT_APPLY_TIMEOUT_SECONDS = 1800
MIN_APPLY_TIMEOUT_SECONDS = 1
MAX_APPLY_TIMEOUT_SECONDS = 7200

DEFAULT_APPLY_RETRIES = 3
MAX_APPLY_RETRIES = 10
DEFAULT_RETRY_BACKOFF_BASE_SECONDS = 5.0

DEFAULT_DECLARATION_FILE = "stack.yaml"
DEFAULT_STATE_FILE = ".stackgraph/state.json"

# Security constraints - enforced limits to prevent abuse
MAX_DECLARATION_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max stack file
MAX_STATE_FILE_SIZE_BYTES = 10 * 1024 * 1024  # 10MB max state file
DEFAULT_MAX_RESOURCES_PER_DEPLOYMENT = 200
MAX_RESOURCES_PER_DEPLOYMENT = 800  # ARM limit per deployment

# Input validation patterns
VALID_STACK_NAME_PATTERN = r"^[a-z][a-z0-9-]{0,62}[a-z0-9]$"
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"


@dataclass(frozen=True)
class SecurityConfig:
    """Security-related configuration with safe defaults.

    SECURITY: All flags are enforced at runtime:
    - max_resources_per_deployment: Enforced in DeploymentRunner before planning
    - enable_audit_logging: Enforced in main.setup_logging()
    """

    # Maximum resources per stack to prevent runaway changes
    max_resources_per_deployment: int = DEFAULT_MAX_RESOURCES_PER_DEPLOYMENT

    # Enable structured audit logging (JSON format to stdout)
    enable_audit_logging: bool = True


@dataclass(frozen=True)
class EngineConfig:
    """Engine configuration loaded from environment variables.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Paths
    declaration_file: Path = field(default_factory=lambda: Path(DEFAULT_DECLARATION_FILE))
    state_file: Path = field(default_factory=lambda: Path(DEFAULT_STATE_FILE))

    # Provider wiring
    provider: ProviderBackend = ProviderBackend.SIMULATED
    subscription_id: str | None = None
    managed_identity_client_id: str | None = None

    # Execution
    max_parallel_applies: int = DEFAULT_MAX_PARALLEL_APPLIES
    default_apply_timeout_seconds: int = DEFAULT_APPLY_TIMEOUT_SECONDS
    max_apply_retries: int = DEFAULT_APPLY_RETRIES
    retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS

    # Behavior
    dry_run: bool = False

    # Security configuration
    security: SecurityConfig = field(default_factory=SecurityConfig)

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        SECURITY: All inputs are validated at the boundary (fail-fast).
        """
        errors: list[str] = []

        if not str(self.declaration_file):
            errors.append("STACKGRAPH_DECLARATION_FILE is required")

        if not str(self.state_file):
            errors.append("STACKGRAPH_STATE_FILE is required")

        if self.provider == ProviderBackend.AZURE:
            if not self.subscription_id:
                errors.append("AZURE_SUBSCRIPTION_ID is required when provider is azure")
            elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
                errors.append(
                    f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}"
                )

        if not (
            MIN_MAX_PARALLEL_APPLIES <= self.max_parallel_applies <= MAX_MAX_PARALLEL_APPLIES
        ):
            errors.append(
                f"MAX_PARALLEL_APPLIES must be between {MIN_MAX_PARALLEL_APPLIES} "
                f"and {MAX_MAX_PARALLEL_APPLIES}"
            )

        if not (
            MIN_APPLY_TIMEOUT_SECONDS
            <= self.default_apply_timeout_seconds
            <= MAX_APPLY_TIMEOUT_SECONDS
        ):
            errors.append(
                f"APPLY_TIMEOUT must be between {MIN_APPLY_TIMEOUT_SECONDS} "
                f"and {MAX_APPLY_TIMEOUT_SECONDS} seconds"
            )

        if not (0 <= self.max_apply_retries <= MAX_APPLY_RETRIES):
            errors.append(f"MAX_APPLY_RETRIES must be between 0 and {MAX_APPLY_RETRIES}")

        if self.retry_backoff_base_seconds < 0:
            errors.append("RETRY_BACKOFF_BASE must not be negative")

        if self.security.max_resources_per_deployment < 1:
            errors.append("max_resources_per_deployment must be at least 1")
        elif self.security.max_resources_per_deployment > MAX_RESOURCES_PER_DEPLOYMENT:
            errors.append(
                f"max_resources_per_deployment cannot exceed {MAX_RESOURCES_PER_DEPLOYMENT}"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from environment variables.

        Environment Variables:
            STACKGRAPH_DECLARATION_FILE: Stack YAML file (default: stack.yaml)
            STACKGRAPH_STATE_FILE: Persisted state JSON (default: .stackgraph/state.json)
            STACKGRAPH_PROVIDER: One of simulated, azure (default: simulated)
            AZURE_SUBSCRIPTION_ID: Target subscription, required for azure
            AZURE_MANAGED_IDENTITY_CLIENT_ID: Optional user-assigned identity
            STACKGRAPH_MAX_PARALLEL_APPLIES: Concurrent node applies (default: 10)
            STACKGRAPH_APPLY_TIMEOUT: Default per-operation timeout (default: 1800)
            STACKGRAPH_MAX_APPLY_RETRIES: Retries for retry-safe kinds (default: 3)
            STACKGRAPH_RETRY_BACKOFF_BASE: Backoff base in seconds (default: 5)
            STACKGRAPH_DRY_RUN: If "true", plan only (default: false)

        Security Variables:
            STACKGRAPH_MAX_RESOURCES: Max resources per stack (default: 200)
            ENABLE_AUDIT_LOGGING: Enable JSON audit logs (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
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

        def get_provider(value: str | None) -> ProviderBackend:
            if not value:
                return ProviderBackend.SIMULATED
            try:
                return ProviderBackend(value)
            except ValueError as e:
                valid = [p.value for p in ProviderBackend]
                raise ConfigurationError(
                    f"STACKGRAPH_PROVIDER must be one of {valid}: {value}"
                ) from e

        return cls(
            declaration_file=Path(
                os.environ.get("STACKGRAPH_DECLARATION_FILE", DEFAULT_DECLARATION_FILE)
            ),
            state_file=Path(os.environ.get("STACKGRAPH_STATE_FILE", DEFAULT_STATE_FILE)),
            provider=get_provider(os.environ.get("STACKGRAPH_PROVIDER")),
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID") or None,
            managed_identity_client_id=(
                os.environ.get("AZURE_MANAGED_IDENTITY_CLIENT_ID") or None
            ),
            max_parallel_applies=get_int(
                "STACKGRAPH_MAX_PARALLEL_APPLIES", DEFAULT_MAX_PARALLEL_APPLIES
            ),
            default_apply_timeout_seconds=get_int(
                "STACKGRAPH_APPLY_TIMEOUT", DEFAULT_APPLY_TIMEOUT_SECONDS
            ),
            max_apply_retries=get_int("STACKGRAPH_MAX_APPLY_RETRIES", DEFAULT_APPLY_RETRIES),
            retry_backoff_base_seconds=get_float(
                "STACKGRAPH_RETRY_BACKOFF_BASE", DEFAULT_RETRY_BACKOFF_BASE_SECONDS
            ),
            dry_run=get_bool("STACKGRAPH_DRY_RUN", False),
            security=SecurityConfig(
                max_resources_per_deployment=get_int(
                    "STACKGRAPH_MAX_RESOURCES", DEFAULT_MAX_RESOURCES_PER_DEPLOYMENT
                ),
                enable_audit_logging=get_bool("ENABLE_AUDIT_LOGGING", True),
            ),
        )
