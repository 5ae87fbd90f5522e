"""Persisted deployment state.

The state file records, per node, what was last applied:

    {
      "schema_version": 1,
      "stack": "asr-cmk-poc",
      "serial": 7,
      "updated_at": "2026-10-18T12:00:00+00:00",
      "secret_salt": "9f2c...",
      "resources": {
        "sourceKeyVault": {
          "id": "sourceKeyVault",
          "kind": "key-vault",
          "outputs": {...},
          "properties": {...},
          "dependencies": ["sourceResourceGroup", "client"]
        }
      }
    }

``properties`` are the resolved properties in state form: secrets are stored
as salted HMAC fingerprints, never in plaintext.

SECURITY: The file is rewritten atomically (temp file + os.replace). A file
that cannot be parsed is never overwritten: StateCorruptionError requires
manual intervention.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import secrets
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import MAX_STATE_FILE_SIZE_BYTES
from .nodes import UNKNOWN
from .security import Secret

logger = logging.getLogger(__name__)

STATE_SCHEMA_VERSION = 1
SUPPORTED_SCHEMA_VERSIONS = frozenset({STATE_SCHEMA_VERSION})


class StateCorruptionError(Exception):
    """Raised when the state file cannot be read or has an unknown schema.

    Fatal: the engine refuses to run until the file is repaired or removed.
    """

    pass


class ResourceRecord(BaseModel):
    """Last known state of one node."""

    model_config = ConfigDict(extra="forbid")

    id: str
    kind: str
    outputs: dict[str, Any] = Field(default_factory=dict)
    properties: dict[str, Any] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)


class DeploymentState(BaseModel):
    """Last known resolved state of all nodes of a stack."""

    model_config = ConfigDict(extra="forbid")

    schema_version: int = STATE_SCHEMA_VERSION
    stack: str = ""
    serial: int = 0
    updated_at: datetime | None = None
    secret_salt: str = Field(default_factory=lambda: secrets.token_hex(16))
    resources: dict[str, ResourceRecord] = Field(default_factory=dict)

    def get(self, node_id: str) -> ResourceRecord | None:
        return self.resources.get(node_id)

    def to_state_form(self, value: Any) -> Any:
        """Convert resolved properties to their persisted form.

        Secrets become fingerprints; tuples become lists.
        """
        if isinstance(value, Secret):
            return value.fingerprint(self.secret_salt)
        if value is UNKNOWN:
            return UNKNOWN
        if isinstance(value, dict):
            return {str(k): self.to_state_form(v) for k, v in value.items()}
        if isinstance(value, list | tuple):
            return [self.to_state_form(v) for v in value]
        return copy.deepcopy(value)

    def snapshot(self) -> DeploymentState:
        return self.model_copy(deep=True)


class StateStore:
    """Reads and atomically writes the state file."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def load(self, stack: str = "") -> DeploymentState:
        """Load state; a missing file yields an empty state.

        Raises:
            StateCorruptionError: If the file cannot be read, parsed or validated,
                if its schema version is unknown, or if it belongs to another stack.
        """
        if not self._path.exists():
            logger.info("No state file, starting from empty state", extra={"path": str(self._path)})
            return DeploymentState(stack=stack)

        try:
            file_size = self._path.stat().st_size
        except OSError as e:
            raise StateCorruptionError(f"Failed to stat state file {self._path}: {e}") from e

        if file_size > MAX_STATE_FILE_SIZE_BYTES:
            raise StateCorruptionError(
                f"State file exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes: "
                f"{self._path}"
            )

        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StateCorruptionError(f"Failed to read state file {self._path}: {e}") from e
        except json.JSONDecodeError as e:
            raise StateCorruptionError(f"Invalid JSON in state file {self._path}: {e}") from e

        if not isinstance(raw, dict):
            raise StateCorruptionError(f"State file must contain a JSON object: {self._path}")

        version = raw.get("schema_version")
        if version not in SUPPORTED_SCHEMA_VERSIONS:
            raise StateCorruptionError(
                f"Unsupported state schema version {version!r} in {self._path}; "
                f"supported: {sorted(SUPPORTED_SCHEMA_VERSIONS)}"
            )

        try:
            state = DeploymentState.model_validate(raw)
        except ValidationError as e:
            errors = "\n".join(
                f"  - {'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise StateCorruptionError(f"Invalid state file {self._path}:\n{errors}") from e

        for node_id, record in state.resources.items():
            if record.id != node_id:
                raise StateCorruptionError(
                    f"State record key '{node_id}' does not match record id '{record.id}'"
                )

        if stack and state.stack and state.stack != stack:
            raise StateCorruptionError(
                f"State file {self._path} belongs to stack '{state.stack}', not '{stack}'"
            )

        logger.info(
            "Loaded state",
            extra={
                "path": str(self._path),
                "serial": state.serial,
                "resource_count": len(state.resources),
            },
        )
        return state

    def save(self, state: DeploymentState) -> None:
        """Atomically rewrite the state file and bump its serial."""
        state.serial += 1
        state.updated_at = datetime.now(UTC)
        payload = state.model_dump(mode="json")

        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.info(
            "Saved state",
            extra={
                "path": str(self._path),
                "serial": state.serial,
                "resource_count": len(state.resources),
            },
        )
