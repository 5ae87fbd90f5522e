"""Azure resource kinds known to the engine.

Each kind maps a short tag used in stack files to an ARM resource type:

- ``path``: resource path below ``/subscriptions/{subscriptionId}/``, with
  ``{placeholders}`` taken from the node's properties. Path properties are
  immutable: changing one replaces the resource.
- ``body``: top-level ARM body fields taken from the node's properties
  (everything else in the properties is either a path property or rejected).
- ``outputs``: output name -> dotted path into the ARM response body.

The same table drives the Azure provider and the simulated cloud, so a stack
that plans cleanly against the simulator produces the same resource ids
against ARM.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

DEFAULT_BODY_FIELDS: frozenset[str] = frozenset(
    {"location", "tags", "sku", "kind", "identity", "properties", "zones", "plan"}
)

_PLACEHOLDER = re.compile(r"\{([A-Za-z]+)\}")


class KindError(ValueError):
    """Raised when a node's properties don't fit its kind."""

    pass


@dataclass(frozen=True)
class ArmKind:
    """ARM mapping for one resource kind."""

    kind: str
    arm_type: str
    path: str
    api_version: str
    outputs: dict[str, str] = field(default_factory=dict)
    body_fields: frozenset[str] = DEFAULT_BODY_FIELDS
    extra_immutable: frozenset[str] = frozenset()
    # Child "actions" such as vaults/accessPolicies/add are removed by a PUT
    # to a sibling path instead of a DELETE.
    remove_path: str | None = None

    @property
    def path_params(self) -> list[str]:
        return _PLACEHOLDER.findall(self.path)

    @property
    def immutable_paths(self) -> frozenset[str]:
        return frozenset(self.path_params) | self.extra_immutable

    def resource_id(self, subscription_id: str, properties: dict[str, Any]) -> str:
        return f"/subscriptions/{subscription_id}/{self._format(self.path, properties)}"

    def remove_id(self, resource_id: str) -> str:
        """Swap the trailing action segment of ``resource_id`` for the remove action."""
        assert self.remove_path is not None
        base = resource_id.split("#", 1)[0].rsplit("/", 1)[0]
        return f"{base}/{self.remove_path.rsplit('/', 1)[-1]}"

    def body(self, properties: dict[str, Any]) -> dict[str, Any]:
        """Split the ARM body out of the node properties.

        Raises:
            KindError: On properties that are neither path nor body fields.
        """
        allowed = set(self.path_params) | self.body_fields
        unknown = sorted(set(properties) - allowed)
        if unknown:
            raise KindError(
                f"Kind '{self.kind}' does not accept properties {unknown}; "
                f"allowed: {sorted(allowed)}"
            )
        return {k: v for k, v in properties.items() if k in self.body_fields}

    def extract_outputs(self, response: dict[str, Any]) -> dict[str, Any]:
        """Pick outputs out of an ARM response body; missing paths are skipped."""
        outputs: dict[str, Any] = {}
        for name, dotted in self.outputs.items():
            current: Any = response
            for segment in dotted.split("."):
                if not isinstance(current, dict) or segment not in current:
                    current = None
                    break
                current = current[segment]
            if current is not None:
                outputs[name] = current
        return outputs

    def _format(self, template: str, properties: dict[str, Any]) -> str:
        missing = [p for p in self.path_params if not properties.get(p)]
        if missing:
            raise KindError(f"Kind '{self.kind}' requires properties {missing}")
        return template.format(**{p: properties[p] for p in self.path_params})


_COMMON_OUTPUTS = {"id": "id", "name": "name"}
_LOCATED_OUTPUTS = {**_COMMON_OUTPUTS, "location": "location"}

_RSV = "resourceGroups/{resourceGroupName}/providers/Microsoft.RecoveryServices/vaults/{vaultName}"

ARM_KINDS: dict[str, ArmKind] = {
    kind.kind: kind
    for kind in (
        ArmKind(
            kind="resource-group",
            arm_type="Microsoft.Resources/resourceGroups",
            path="resourceGroups/{name}",
            api_version="2022-09-01",
            outputs=_LOCATED_OUTPUTS,
            body_fields=frozenset({"location", "tags"}),
            extra_immutable=frozenset({"location"}),
        ),
        ArmKind(
            kind="virtual-network",
            arm_type="Microsoft.Network/virtualNetworks",
            path="resourceGroups/{resourceGroupName}/providers/Microsoft.Network/virtualNetworks/{name}",
            api_version="2023-09-01",
            outputs=_LOCATED_OUTPUTS,
            extra_immutable=frozenset({"location"}),
        ),
        ArmKind(
            kind="subnet",
            arm_type="Microsoft.Network/virtualNetworks/subnets",
            path=(
                "resourceGroups/{resourceGroupName}/providers/Microsoft.Network/"
                "virtualNetworks/{virtualNetworkName}/subnets/{name}"
            ),
            api_version="2023-09-01",
            outputs=_COMMON_OUTPUTS,
            body_fields=frozenset({"properties"}),
        ),
        ArmKind(
            kind="key-vault",
            arm_type="Microsoft.KeyVault/vaults",
            path="resourceGroups/{resourceGroupName}/providers/Microsoft.KeyVault/vaults/{name}",
            api_version="2023-07-01",
            outputs={**_LOCATED_OUTPUTS, "vaultUri": "properties.vaultUri"},
            extra_immutable=frozenset({"location"}),
        ),
        ArmKind(
            kind="key",
            arm_type="Microsoft.KeyVault/vaults/keys",
            path=(
                "resourceGroups/{resourceGroupName}/providers/Microsoft.KeyVault/"
                "vaults/{vaultName}/keys/{name}"
            ),
            api_version="2023-07-01",
            outputs={
                **_COMMON_OUTPUTS,
                "keyUri": "properties.keyUri",
                "keyUriWithVersion": "properties.keyUriWithVersion",
            },
            body_fields=frozenset({"tags", "properties"}),
            extra_immutable=frozenset({"properties.kty", "properties.keySize"}),
        ),
        ArmKind(
            kind="disk-encryption-set",
            arm_type="Microsoft.Compute/diskEncryptionSets",
            path=(
                "resourceGroups/{resourceGroupName}/providers/Microsoft.Compute/"
                "diskEncryptionSets/{name}"
            ),
            api_version="2023-04-02",
            outputs={**_LOCATED_OUTPUTS, "principalId": "identity.principalId"},
            extra_immutable=frozenset({"location"}),
        ),
        ArmKind(
            kind="access-policy",
            arm_type="Microsoft.KeyVault/vaults/accessPolicies",
            path=(
                "resourceGroups/{resourceGroupName}/providers/Microsoft.KeyVault/"
                "vaults/{vaultName}/accessPolicies/add"
            ),
            remove_path=(
                "resourceGroups/{resourceGroupName}/providers/Microsoft.KeyVault/"
                "vaults/{vaultName}/accessPolicies/remove"
            ),
            api_version="2023-07-01",
            outputs={**_COMMON_OUTPUTS, "accessPolicies": "properties.accessPolicies"},
            body_fields=frozenset({"properties"}),
        ),
        ArmKind(
            kind="recovery-vault",
            arm_type="Microsoft.RecoveryServices/vaults",
            path=(
                "resourceGroups/{resourceGroupName}/providers/Microsoft.RecoveryServices/"
                "vaults/{name}"
            ),
            api_version="2023-04-01",
            outputs=_LOCATED_OUTPUTS,
            extra_immutable=frozenset({"location"}),
        ),
        ArmKind(
            kind="storage-account",
            arm_type="Microsoft.Storage/storageAccounts",
            path=(
                "resourceGroups/{resourceGroupName}/providers/Microsoft.Storage/"
                "storageAccounts/{name}"
            ),
            api_version="2023-01-01",
            outputs={
                **_LOCATED_OUTPUTS,
                "primaryBlobEndpoint": "properties.primaryEndpoints.blob",
            },
            extra_immutable=frozenset({"location"}),
        ),
        ArmKind(
            kind="replication-policy",
            arm_type="Microsoft.RecoveryServices/vaults/replicationPolicies",
            path=f"{_RSV}/replicationPolicies/{{name}}",
            api_version="2023-08-01",
            outputs=_COMMON_OUTPUTS,
            body_fields=frozenset({"properties"}),
            extra_immutable=frozenset({"properties.providerSpecificInput.instanceType"}),
        ),
        ArmKind(
            kind="replication-fabric",
            arm_type="Microsoft.RecoveryServices/vaults/replicationFabrics",
            path=f"{_RSV}/replicationFabrics/{{name}}",
            api_version="2023-08-01",
            outputs=_COMMON_OUTPUTS,
            body_fields=frozenset({"properties"}),
            extra_immutable=frozenset({"properties.customDetails.location"}),
        ),
        ArmKind(
            kind="protection-container-mapping",
            arm_type=(
                "Microsoft.RecoveryServices/vaults/replicationFabrics/"
                "replicationProtectionContainers/replicationProtectionContainerMappings"
            ),
            path=(
                f"{_RSV}/replicationFabrics/{{fabricName}}/replicationProtectionContainers/"
                "{protectionContainerName}/replicationProtectionContainerMappings/{name}"
            ),
            api_version="2023-08-01",
            outputs=_COMMON_OUTPUTS,
            body_fields=frozenset({"properties"}),
            extra_immutable=frozenset(
                {"properties.targetProtectionContainerId", "properties.policyId"}
            ),
        ),
        ArmKind(
            kind="network-interface",
            arm_type="Microsoft.Network/networkInterfaces",
            path=(
                "resourceGroups/{resourceGroupName}/providers/Microsoft.Network/"
                "networkInterfaces/{name}"
            ),
            api_version="2023-09-01",
            outputs=_LOCATED_OUTPUTS,
            extra_immutable=frozenset({"location"}),
        ),
        ArmKind(
            kind="virtual-machine",
            arm_type="Microsoft.Compute/virtualMachines",
            path=(
                "resourceGroups/{resourceGroupName}/providers/Microsoft.Compute/"
                "virtualMachines/{name}"
            ),
            api_version="2023-09-01",
            outputs=_LOCATED_OUTPUTS,
            extra_immutable=frozenset(
                {"location", "properties.osProfile", "properties.storageProfile.osDisk"}
            ),
        ),
    )
}


def get_arm_kind(kind: str) -> ArmKind:
    try:
        return ARM_KINDS[kind]
    except KeyError:
        raise KindError(f"Unknown ARM kind '{kind}'. Known kinds: {sorted(ARM_KINDS)}") from None
