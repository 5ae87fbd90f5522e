"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for provider_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

STACKS_DIR = Path(__file__).parent.parent / "stacks"

# Environment variables read by EngineConfig.from_env() and the loader
_ENGINE_ENV_VARS = (
    "STACKGRAPH_DECLARATION_FILE",
    "STACKGRAPH_STATE_FILE",
    "STACKGRAPH_PROVIDER",
    "STACKGRAPH_MAX_PARALLEL_APPLIES",
    "STACKGRAPH_APPLY_TIMEOUT",
    "STACKGRAPH_MAX_APPLY_RETRIES",
    "STACKGRAPH_RETRY_BACKOFF_BASE",
    "STACKGRAPH_DRY_RUN",
    "STACKGRAPH_MAX_RESOURCES",
    "STACKGRAPH_COMMAND",
    "AZURE_SUBSCRIPTION_ID",
    "AZURE_MANAGED_IDENTITY_CLIENT_ID",
    "AZURE_CLIENT_SECRET",
    "ENABLE_DEFAULT_NORMALIZATION_RULES",
    "LOG_NORMALIZATIONS",
)


@pytest.fixture(autouse=True)
def clean_engine_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Isolate tests from engine settings in the developer's environment."""
    for name in _ENGINE_ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def asr_stack_file() -> Path:
    return STACKS_DIR / "asr-cmk-poc.yaml"


@pytest.fixture
def asr_env() -> dict[str, str]:
    """Environment for the ASR stack: secret password and a harmless CLI."""
    return {"VM_ADMIN_PASSWORD": "S3cret-Passw0rd!", "ASR_CLI": "echo"}
