"""Main entry point for the stackgraph engine.

SECRETLESS ARCHITECTURE:
When the Azure provider is selected, the engine enforces a secretless model:
- ALL authentication uses a Managed Identity
- NO service principal secrets or passwords are allowed in the environment
- Deployment secrets (stack parameters) never reach logs, exports or state

Exit codes:
    0  success
    1  a node FAILED or was BLOCKED, or the run could not start
    2  security violation (credentials in the environment)
    3  state file is corrupt or unreadable
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
from collections.abc import Callable
from datetime import UTC, datetime

from .command_provider import CommandProvider
from .config import ConfigurationError, EngineConfig, ProviderBackend
from .dependency import GraphError
from .deployment import DeploymentRunner, ResourceLimitError, RunOutcome
from .loader import DeclarationLoadError
from .providers import ProviderNotFoundError, ProviderRegistry
from .security import SecretlessViolationError
from .simulated_provider import build_simulated_registry
from .state import StateCorruptionError

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_SECURITY_VIOLATION = 2
EXIT_STATE_CORRUPTION = 3

COMMANDS = ("preview", "up", "destroy")

_STANDARD_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _STANDARD_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_format: str = "json", level: int = logging.INFO) -> None:
    """Configure logging: JSON to stdout for audit, or plain text to stderr."""
    if log_format == "json":
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JsonFormatter())
    else:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_registry(config: EngineConfig) -> ProviderRegistry:
    """Provider registry for the configured backend, plus the command kind.

    Raises:
        SecretlessViolationError: If the Azure backend finds credential secrets.
    """
    if config.provider == ProviderBackend.AZURE:
        from .azure_provider import build_azure_registry

        # SAFETY: subscription_id is validated non-None in EngineConfig.__post_init__()
        # when provider == ProviderBackend.AZURE
        assert config.subscription_id is not None
        registry = build_azure_registry(config.subscription_id, config.managed_identity_client_id)
    else:
        registry = build_simulated_registry()
    registry.register(CommandProvider())
    return registry


def exit_code_for(outcome: RunOutcome) -> int:
    return EXIT_OK if outcome.success else EXIT_FAILURE


async def run_command(
    command: str,
    config: EngineConfig,
    registry: ProviderRegistry | None = None,
    on_outcome: Callable[[RunOutcome], None] | None = None,
) -> int:
    """Run one engine command and map the result to an exit code.

    Args:
        command: One of preview, up, destroy.
        config: Validated engine configuration.
        registry: Provider registry (built from config when omitted).
        on_outcome: Called with the run outcome before returning.
    """
    if command not in COMMANDS:
        logger.error("Unknown command", extra={"command": command})
        return EXIT_FAILURE

    try:
        registry = registry or build_registry(config)
        runner = DeploymentRunner(config, registry)
    except SecretlessViolationError as e:
        # SECURITY: Credential detected in environment - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return EXIT_SECURITY_VIOLATION

    # Set up signal handlers for graceful cancellation
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        runner.cancel()

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Not supported outside the main thread or on this platform
            logger.debug("Signal handler not installed", extra={"signal": sig.name})

    try:
        if command == "preview":
            outcome = runner.preview()
        elif command == "up":
            outcome = await runner.up()
        else:
            outcome = await runner.destroy()
    except StateCorruptionError as e:
        logger.critical(
            "State file is corrupt; refusing to run",
            extra={"error": str(e), "state_file": str(config.state_file)},
        )
        return EXIT_STATE_CORRUPTION
    except (DeclarationLoadError, GraphError, ProviderNotFoundError, ResourceLimitError) as e:
        # Declaration or graph error - user configuration error, nothing was applied
        logger.error(
            "Stack validation failed",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        return EXIT_FAILURE
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)

    if on_outcome is not None:
        on_outcome(outcome)
    return exit_code_for(outcome)


async def main() -> int:
    """Run the engine from environment configuration.

    The command is taken from STACKGRAPH_COMMAND (default: up).
    """
    setup_logging()

    try:
        config = EngineConfig.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_FAILURE

    command = os.environ.get("STACKGRAPH_COMMAND", "up")
    logger.info(
        "Starting stackgraph",
        extra={
            "command": command,
            "declaration_file": str(config.declaration_file),
            "state_file": str(config.state_file),
            "provider": config.provider.value,
            "dry_run": config.dry_run,
        },
    )

    try:
        return await run_command(command, config)
    except Exception as e:
        # Unexpected error - log with full traceback for debugging
        logger.exception("Unhandled exception", extra={"error": str(e)})
        return EXIT_FAILURE


def run() -> None:
    """Entry point for container runs."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
