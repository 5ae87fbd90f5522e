"""Provider mocks for engine and integration testing.

- RecordingProvider / CallLog: in-memory provider recording every call, with
  failure, delay and hang injection, for executor and reconciler tests.
- MockAzureContext: patches the Azure SDK so the ARM providers run against an
  in-memory ARM (MockArmState) with a fake managed identity.
- apply_nodes / destroy_all: plan and execute node sets with the reconciler
  committing results, the way DeploymentRunner does.

Usage:
    from provider_mock import RecordingProvider, apply_nodes, build_node

    provider = RecordingProvider("thing")
    registry = ProviderRegistry([provider])
    run = await apply_nodes(registry, [build_node("a"), build_node("b", depends_on=["a"])])
    assert provider.log.finished_before("create", "a", "create", "b")
"""

from .arm import MockArmState, MockResourceClient
from .context import MockAzureContext
from .credential import MOCK_OBJECT_ID, MOCK_TENANT_ID, MockManagedIdentityCredential
from .harness import RunResult, apply_nodes, build_node, destroy_all, execute_plan, ref
from .recording import CallLog, ProviderCall, RecordingProvider

__all__ = [
    "MOCK_OBJECT_ID",
    "MOCK_TENANT_ID",
    "CallLog",
    "MockArmState",
    "MockAzureContext",
    "MockManagedIdentityCredential",
    "MockResourceClient",
    "ProviderCall",
    "RecordingProvider",
    "RunResult",
    "apply_nodes",
    "build_node",
    "destroy_all",
    "execute_plan",
    "ref",
]
