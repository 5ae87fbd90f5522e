"""Opaque shell-command resources.

Some resources have no declarative API surface (the ASR protection
containers are created with ``az site-recovery`` commands). The ``command``
kind wraps them as ordinary graph nodes:

    - id: sourceContainer
      kind: command
      properties:
        create: az site-recovery protection-container create ...
        delete: az site-recovery protection-container remove ...
        environment: {AZURE_CORE_OUTPUT: json}
        triggers: {fabric: {$ref: sourceFabric.id}}

``create`` (and ``update``, defaulting to ``create``) run with a timeout;
stdout is captured as the ``stdout`` output and, when it is a JSON
document, parsed into ``result``. ``delete`` is remembered in the outputs
so teardown can run it; it must not contain secrets.

Commands are not retry-safe: a half-run command is not assumed idempotent.
"""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
from typing import Any

from .providers import Operation, Provider, ProviderError
from .security import contains_secret, reveal_secrets

logger = logging.getLogger(__name__)

# Timeout constants (seconds)
COMMAND_TIMEOUT_SECONDS = 300

_ALLOWED_PROPERTIES = frozenset(
    {"create", "update", "delete", "environment", "triggers", "shell", "workingDir"}
)


def run_command(
    command: str | list[str],
    *,
    shell: bool = False,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
    timeout: int = COMMAND_TIMEOUT_SECONDS,
) -> subprocess.CompletedProcess[str]:
    """Run a command and capture its output.

    Args:
        command: Command line (split with shlex unless ``shell``) or argv list.
        shell: Run through the system shell.
        cwd: Working directory.
        env: Environment variables (merged with current env).
        timeout: Command timeout in seconds.

    Raises:
        ProviderError: If the command fails, times out or is not found.
    """
    full_env = os.environ.copy()
    if env:
        full_env.update(env)

    if shell:
        args: str | list[str] = command if isinstance(command, str) else shlex.join(command)
    else:
        args = shlex.split(command) if isinstance(command, str) else list(command)
    display = args if isinstance(args, str) else " ".join(args)

    try:
        result = subprocess.run(
            args,
            shell=shell,
            cwd=cwd,
            env=full_env,
            timeout=timeout,
            capture_output=True,
            text=True,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise ProviderError(f"Command timed out after {timeout}s: {display}") from e
    except FileNotFoundError as e:
        raise ProviderError(f"Command not found: {display}") from e

    if result.returncode != 0:
        stderr = result.stderr.strip()
        raise ProviderError(
            f"Command failed with exit code {result.returncode}"
            + (f": {stderr}" if stderr else "")
        )
    return result


class CommandProvider(Provider):
    """Runs declared shell commands as a resource's lifecycle."""

    kind = "command"
    retry_safe = False
    replace_on_changes = frozenset({"create"})

    def __init__(self, timeout_seconds: int = COMMAND_TIMEOUT_SECONDS) -> None:
        self._timeout_seconds = timeout_seconds
        self.timeouts = {op.value: timeout_seconds + 30 for op in Operation}

    def create(self, properties: dict[str, Any]) -> dict[str, Any]:
        return self._run(properties, "create")

    def update(
        self, properties: dict[str, Any], prior_outputs: dict[str, Any]
    ) -> dict[str, Any]:
        return self._run(properties, "update" if properties.get("update") else "create")

    def delete(self, prior_outputs: dict[str, Any]) -> None:
        command = prior_outputs.get("delete")
        if not command:
            logger.info("Command resource has no delete command")
            return
        run_command(
            command,
            shell=bool(prior_outputs.get("shell")),
            cwd=prior_outputs.get("workingDir"),
            env=prior_outputs.get("environment") or None,
            timeout=self._timeout_seconds,
        )

    def _run(self, properties: dict[str, Any], which: str) -> dict[str, Any]:
        unknown = sorted(set(properties) - _ALLOWED_PROPERTIES)
        if unknown:
            raise ProviderError(f"command does not accept properties {unknown}")
        if not properties.get("create"):
            raise ProviderError("command requires property 'create'")
        if contains_secret(properties.get("delete")):
            raise ProviderError("command 'delete' must not contain secrets")

        environment = properties.get("environment") or {}
        plain_env = {str(k): str(v) for k, v in reveal_secrets(environment).items()}
        shell = bool(properties.get("shell", False))
        cwd = properties.get("workingDir")

        logger.info("Running command resource", extra={"operation": which})
        result = run_command(
            reveal_secrets(properties[which]),
            shell=shell,
            cwd=cwd,
            env=plain_env,
            timeout=self._timeout_seconds,
        )

        stdout = result.stdout.strip()
        outputs: dict[str, Any] = {"stdout": stdout, "shell": shell}
        try:
            outputs["result"] = json.loads(stdout) if stdout else None
        except json.JSONDecodeError:
            outputs["result"] = None
        if properties.get("delete"):
            outputs["delete"] = properties["delete"]
            outputs["environment"] = {
                str(k): str(v) for k, v in environment.items() if not contains_secret(v)
            }
            if cwd:
                outputs["workingDir"] = cwd
        return outputs
