"""Secret handling and secretless credential enforcement.

Two concerns live here:

1. Deployment secrets (e.g. a VM administrator password) declared as secret
   stack parameters. They are wrapped in ``Secret`` so they never show up in
   logs, exports or the state file. Providers call ``reveal()`` at the very
   last moment when building their API payload.
2. Provider authentication. The Azure provider only ever authenticates with a
   Managed Identity; service principal secrets in the environment abort startup.

SECURITY INVARIANTS:
1. A ``Secret`` never renders its value through str()/repr()/format().
2. The state file stores salted HMAC fingerprints of secrets, never plaintext.
3. AZURE_CLIENT_SECRET (and friends) must never be present in the environment.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
from typing import Any

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"

# Prefix used for secret fingerprints in persisted state
SECRET_FINGERPRINT_PREFIX = "hmac-sha256:"

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)


class SecretlessViolationError(Exception):
    """Raised when credential secrets are found in the environment.

    This is a fatal security error; the Azure provider must not be created.
    """

    pass


class Secret:
    """Opaque wrapper for a secret value."""

    __slots__ = ("_value",)

    def __init__(self, value: str) -> None:
        if isinstance(value, Secret):
            value = value.reveal()
        self._value = str(value)

    def reveal(self) -> str:
        """Return the plaintext value. Only providers should call this."""
        return self._value

    def fingerprint(self, salt: str) -> str:
        """Salted HMAC of the value, stable for a given salt."""
        digest = hmac.new(
            salt.encode("utf-8"), self._value.encode("utf-8"), hashlib.sha256
        ).hexdigest()
        return f"{SECRET_FINGERPRINT_PREFIX}{digest}"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Secret):
            return NotImplemented
        return hmac.compare_digest(self._value, other._value)

    def __hash__(self) -> int:
        return hash(("Secret", self._value))

    def __repr__(self) -> str:
        return f"Secret({REDACTED!r})"

    def __str__(self) -> str:
        return REDACTED


def redact(value: Any) -> Any:
    """Return a copy of ``value`` with every Secret replaced by REDACTED."""
    if isinstance(value, Secret):
        return REDACTED
    if isinstance(value, dict):
        return {k: redact(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [redact(v) for v in value]
    return value


def reveal_secrets(value: Any) -> Any:
    """Return a copy of ``value`` with every Secret replaced by its plaintext.

    Used by providers right before serializing a request payload.
    """
    if isinstance(value, Secret):
        return value.reveal()
    if isinstance(value, dict):
        return {k: reveal_secrets(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [reveal_secrets(v) for v in value]
    return value


def contains_secret(value: Any) -> bool:
    """Check whether a (possibly nested) value embeds a Secret."""
    if isinstance(value, Secret):
        return True
    if isinstance(value, dict):
        return any(contains_secret(v) for v in value.values())
    if isinstance(value, list | tuple):
        return any(contains_secret(v) for v in value)
    return False


def enforce_secretless_architecture() -> None:
    """Enforce that no credential secrets are present in the environment.

    Raises:
        SecretlessViolationError: If any credential environment variables detected.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(
                f"{env_var} is set. Only managed identity authentication is allowed; "
                "remove credential variables from the environment."
            )

    logger.info(
        "Secretless architecture verified",
        extra={
            "security_event": "secretless_verified",
            "credential_type": "ManagedIdentity",
        },
    )


def get_managed_identity_credential(
    client_id: str | None = None,
) -> ManagedIdentityCredential:
    """Get a ManagedIdentityCredential after verifying secretless architecture.

    Args:
        client_id: Optional client ID for user-assigned managed identity.
                   If None, uses system-assigned managed identity.

    Raises:
        SecretlessViolationError: If credential environment variables detected.
    """
    enforce_secretless_architecture()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()
