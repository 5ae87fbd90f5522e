"""Deterministic in-memory cloud for local runs and tests.

The simulator stores ARM-shaped resource bodies keyed by ARM id and fills in
the fields ARM computes server-side (identity principal ids, key URIs with
versions, vault URIs, blob endpoints). Values are derived from the resource
id and a per-id generation counter, so:

- re-running ``create`` after a delete yields *new* versioned values
  (a replaced key gets a new ``keyUriWithVersion``, a replaced disk
  encryption set a new ``principalId``);
- two fresh simulators produce identical outputs for identical stacks.
"""

from __future__ import annotations

import copy
import hashlib
import logging
import threading
import uuid
from typing import Any

from .kinds import ARM_KINDS, ArmKind
from .providers import Provider, ProviderError, ProviderRegistry
from .security import reveal_secrets

logger = logging.getLogger(__name__)

SIMULATED_SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000000"
SIMULATED_TENANT_ID = "11111111-1111-1111-1111-111111111111"
SIMULATED_OBJECT_ID = "22222222-2222-2222-2222-222222222222"

_NAMESPACE = uuid.UUID("6f0d3c5e-8f6b-4d2a-9b7e-3c1f0a2d4e5b")


class SimulatedCloud:
    """Thread-safe store of simulated ARM resources."""

    def __init__(self, subscription_id: str = SIMULATED_SUBSCRIPTION_ID) -> None:
        self.subscription_id = subscription_id
        self.tenant_id = SIMULATED_TENANT_ID
        self.object_id = SIMULATED_OBJECT_ID
        self._resources: dict[str, dict[str, Any]] = {}
        self._generations: dict[str, int] = {}
        self._lock = threading.Lock()

    def put(self, resource_id: str, body: dict[str, Any], *, create: bool) -> dict[str, Any]:
        with self._lock:
            if create and resource_id in self._resources:
                raise ProviderError(f"Resource already exists: {resource_id}")
            if not create and resource_id not in self._resources:
                raise ProviderError(f"Resource not found: {resource_id}")
            if create:
                self._generations[resource_id] = self._generations.get(resource_id, 0) + 1
            stored = copy.deepcopy(body)
            self._resources[resource_id] = stored
            return copy.deepcopy(stored)

    def delete(self, resource_id: str) -> None:
        with self._lock:
            if self._resources.pop(resource_id, None) is None:
                raise ProviderError(f"Resource not found: {resource_id}")

    def get(self, resource_id: str) -> dict[str, Any] | None:
        with self._lock:
            body = self._resources.get(resource_id)
            return copy.deepcopy(body) if body is not None else None

    def exists(self, resource_id: str) -> bool:
        with self._lock:
            return resource_id in self._resources

    def ids(self) -> list[str]:
        with self._lock:
            return sorted(self._resources)

    def generation(self, resource_id: str) -> int:
        with self._lock:
            return self._generations.get(resource_id, 0)

    def derive(self, resource_id: str, purpose: str) -> str:
        """Stable pseudo-random token for (id, generation, purpose)."""
        seed = f"{resource_id}#{self.generation(resource_id)}#{purpose}"
        return hashlib.sha256(seed.encode("utf-8")).hexdigest()[:32]

    def derive_uuid(self, resource_id: str, purpose: str) -> str:
        return str(uuid.uuid5(_NAMESPACE, f"{resource_id}#{self.generation(resource_id)}#{purpose}"))


class SimulatedArmProvider(Provider):
    """Simulated provider for one ARM kind."""

    retry_safe = True

    def __init__(self, cloud: SimulatedCloud, arm_kind: ArmKind) -> None:
        self._cloud = cloud
        self._arm_kind = arm_kind
        self.kind = arm_kind.kind
        self.replace_on_changes = arm_kind.immutable_paths

    def create(self, properties: dict[str, Any]) -> dict[str, Any]:
        return self._put(properties, create=True)

    def update(
        self, properties: dict[str, Any], prior_outputs: dict[str, Any]
    ) -> dict[str, Any]:
        resource_id = self._storage_id(reveal_secrets(properties))
        if prior_outputs.get("id") not in (None, resource_id):
            raise ProviderError(
                f"Update would move {prior_outputs['id']} to {resource_id}; replace instead"
            )
        return self._put(properties, create=False)

    def delete(self, prior_outputs: dict[str, Any]) -> None:
        resource_id = prior_outputs.get("id")
        if not resource_id:
            raise ProviderError(f"Cannot delete {self.kind}: no recorded id")
        self._cloud.delete(resource_id)
        logger.debug("Simulated delete", extra={"kind": self.kind, "resource_id": resource_id})

    def _storage_id(self, properties: dict[str, Any]) -> str:
        """ARM id, made unique per principal for access-policy style kinds."""
        resource_id = self._arm_kind.resource_id(self._cloud.subscription_id, properties)
        if self._arm_kind.remove_path is None:
            return resource_id
        policies = properties.get("properties", {}).get("accessPolicies", [])
        principals = sorted(str(p.get("objectId")) for p in policies if isinstance(p, dict))
        return f"{resource_id}#{','.join(principals)}"

    def _put(self, properties: dict[str, Any], *, create: bool) -> dict[str, Any]:
        plain = reveal_secrets(properties)
        resource_id = self._storage_id(plain)
        body = self._arm_kind.body(plain)
        body["id"] = resource_id
        body["name"] = plain.get("name") or self._arm_kind.path.rsplit("/", 1)[-1]
        body["type"] = self._arm_kind.arm_type

        if create:
            # Reserve the generation first so computed fields reflect it.
            self._cloud.put(resource_id, body, create=True)
        self._compute_fields(resource_id, plain, body)
        stored = self._cloud.put(resource_id, body, create=False)

        logger.debug(
            "Simulated put",
            extra={"kind": self.kind, "resource_id": resource_id, "create": create},
        )
        return self._arm_kind.extract_outputs(stored)

    def _compute_fields(
        self, resource_id: str, properties: dict[str, Any], body: dict[str, Any]
    ) -> None:
        """Fill in fields that ARM computes server-side."""
        if self.kind == "key-vault":
            props = body.setdefault("properties", {})
            props["vaultUri"] = f"https://{body['name']}.vault.azure.net/"
        elif self.kind == "key":
            props = body.setdefault("properties", {})
            key_uri = f"https://{properties['vaultName']}.vault.azure.net/keys/{body['name']}"
            props["keyUri"] = key_uri
            props["keyUriWithVersion"] = f"{key_uri}/{self._cloud.derive(resource_id, 'version')}"
        elif self.kind == "storage-account":
            props = body.setdefault("properties", {})
            props["primaryEndpoints"] = {"blob": f"https://{body['name']}.blob.core.windows.net/"}

        identity = body.get("identity")
        if isinstance(identity, dict) and "SystemAssigned" in str(identity.get("type", "")):
            identity["principalId"] = self._cloud.derive_uuid(resource_id, "principal")
            identity["tenantId"] = self._cloud.tenant_id


class SimulatedClientConfigProvider(Provider):
    """Data source returning the caller's tenant, object and subscription ids."""

    kind = "client-config"
    retry_safe = True

    def __init__(self, cloud: SimulatedCloud) -> None:
        self._cloud = cloud

    def _outputs(self) -> dict[str, Any]:
        return {
            "tenantId": self._cloud.tenant_id,
            "objectId": self._cloud.object_id,
            "subscriptionId": self._cloud.subscription_id,
        }

    def create(self, properties: dict[str, Any]) -> dict[str, Any]:
        return self._outputs()

    def update(
        self, properties: dict[str, Any], prior_outputs: dict[str, Any]
    ) -> dict[str, Any]:
        return self._outputs()

    def delete(self, prior_outputs: dict[str, Any]) -> None:
        return None


def build_simulated_registry(cloud: SimulatedCloud | None = None) -> ProviderRegistry:
    """Registry with a simulated provider for every known ARM kind."""
    cloud = cloud or SimulatedCloud()
    registry = ProviderRegistry()
    registry.register(SimulatedClientConfigProvider(cloud))
    for arm_kind in ARM_KINDS.values():
        registry.register(SimulatedArmProvider(cloud, arm_kind))
    return registry
