"""Azure Resource Manager providers.

Resources are written as ARM generic resources by id, so one provider class
covers every kind in ``kinds.ARM_KINDS``. Resource groups go through the
resource group operations.

SECRETLESS ARCHITECTURE:
The ARM client is created with a ManagedIdentityCredential obtained through
``security.get_managed_identity_credential``, which refuses to start when
service principal secrets are present in the environment.

All calls here are blocking (LRO pollers are waited on); the executor runs
them in worker threads with per-operation timeouts.
"""

from __future__ import annotations

import base64
import json
import logging
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

from azure.core.exceptions import AzureError, HttpResponseError, ResourceNotFoundError
from azure.mgmt.resource import ResourceManagementClient, SubscriptionClient
from azure.mgmt.resource.resources.models import GenericResource, ResourceGroup

from .kinds import ARM_KINDS, ArmKind
from .providers import Operation, Provider, ProviderError, ProviderRegistry
from .security import get_managed_identity_credential, reveal_secrets

logger = logging.getLogger(__name__)

ARM_SCOPE = "https://management.azure.com/.default"

# Long-running ARM operations (VMs, recovery vaults) need more than the
# engine default on create.
ARM_TIMEOUTS: Mapping[str, int] = MappingProxyType({
    Operation.CREATE.value: 3600,
    Operation.UPDATE.value: 3600,
    Operation.DELETE.value: 3600,
})


def _translate(error: AzureError, operation: str, resource_id: str) -> ProviderError:
    """Turn an Azure SDK error into a ProviderError carrying status and code."""
    if isinstance(error, HttpResponseError):
        error_code = error.error.code if error.error else None
        logger.error(
            "Azure API error",
            extra={
                "operation": operation,
                "resource_id": resource_id,
                "status_code": error.status_code,
                "error_code": error_code,
            },
        )
        return ProviderError(
            f"Azure API error ({error.status_code}, {error_code}) during {operation} "
            f"of {resource_id}: {error.message}"
        )
    logger.error(
        "Azure error",
        extra={"operation": operation, "resource_id": resource_id, "error": str(error)},
    )
    return ProviderError(f"Azure error during {operation} of {resource_id}: {error}")


class ArmResourceProvider(Provider):
    """Generic ARM provider for one resource kind."""

    retry_safe = True
    timeouts = ARM_TIMEOUTS

    def __init__(
        self,
        client: ResourceManagementClient,
        subscription_id: str,
        arm_kind: ArmKind,
    ) -> None:
        self._client = client
        self._subscription_id = subscription_id
        self._arm_kind = arm_kind
        self.kind = arm_kind.kind
        self.replace_on_changes = arm_kind.immutable_paths

    def create(self, properties: dict[str, Any]) -> dict[str, Any]:
        return self._put(properties)

    def update(
        self, properties: dict[str, Any], prior_outputs: dict[str, Any]
    ) -> dict[str, Any]:
        return self._put(properties)

    def delete(self, prior_outputs: dict[str, Any]) -> None:
        resource_id = prior_outputs.get("id")
        if not resource_id:
            raise ProviderError(f"Cannot delete {self.kind}: no recorded id")

        if self._arm_kind.remove_path is not None:
            self._remove(resource_id, prior_outputs)
            return

        try:
            self._client.resources.begin_delete_by_id(
                resource_id, self._arm_kind.api_version
            ).result()
        except ResourceNotFoundError:
            logger.warning(
                "Resource already absent",
                extra={"kind": self.kind, "resource_id": resource_id},
            )
        except AzureError as e:
            raise _translate(e, "delete", resource_id) from e

    def _put(self, properties: dict[str, Any]) -> dict[str, Any]:
        plain = reveal_secrets(properties)
        resource_id = self._arm_kind.resource_id(self._subscription_id, plain)
        body = self._arm_kind.body(plain)
        try:
            result = self._client.resources.begin_create_or_update_by_id(
                resource_id,
                self._arm_kind.api_version,
                GenericResource.from_dict(body),
            ).result()
        except AzureError as e:
            raise _translate(e, "put", resource_id) from e

        response = result.serialize(keep_readonly=True)
        response.setdefault("id", resource_id)
        response.setdefault("name", plain.get("name"))
        if self._arm_kind.remove_path is not None:
            response["properties"] = body.get("properties", {})
        return self._arm_kind.extract_outputs(response)

    def _remove(self, resource_id: str, prior_outputs: dict[str, Any]) -> None:
        remove_id = self._arm_kind.remove_id(resource_id)
        body = {"properties": {"accessPolicies": prior_outputs.get("accessPolicies", [])}}
        try:
            self._client.resources.begin_create_or_update_by_id(
                remove_id,
                self._arm_kind.api_version,
                GenericResource.from_dict(body),
            ).result()
        except AzureError as e:
            raise _translate(e, "remove", remove_id) from e


class ArmResourceGroupProvider(Provider):
    """Resource groups via the resource group operations."""

    kind = "resource-group"
    retry_safe = True
    replace_on_changes = ARM_KINDS["resource-group"].immutable_paths
    timeouts = ARM_TIMEOUTS

    def __init__(self, client: ResourceManagementClient) -> None:
        self._client = client

    def create(self, properties: dict[str, Any]) -> dict[str, Any]:
        return self._put(properties)

    def update(
        self, properties: dict[str, Any], prior_outputs: dict[str, Any]
    ) -> dict[str, Any]:
        return self._put(properties)

    def delete(self, prior_outputs: dict[str, Any]) -> None:
        name = prior_outputs.get("name")
        if not name:
            raise ProviderError("Cannot delete resource group: no recorded name")
        try:
            self._client.resource_groups.begin_delete(name).result()
        except ResourceNotFoundError:
            logger.warning("Resource group already absent", extra={"resource_group": name})
        except AzureError as e:
            raise _translate(e, "delete", name) from e

    def _put(self, properties: dict[str, Any]) -> dict[str, Any]:
        plain = reveal_secrets(properties)
        ARM_KINDS["resource-group"].body(plain)
        name = plain.get("name")
        if not name:
            raise ProviderError("resource-group requires property 'name'")
        try:
            rg = self._client.resource_groups.create_or_update(
                resource_group_name=name,
                parameters=ResourceGroup(location=plain.get("location"), tags=plain.get("tags")),
            )
        except AzureError as e:
            raise _translate(e, "put", name) from e
        logger.info("Resource group ensured", extra={"resource_group": name})
        return {"id": rg.id, "name": rg.name, "location": rg.location}


class ArmClientConfigProvider(Provider):
    """Data source for the caller's tenant, object and subscription ids.

    The object id is read from the ``oid`` claim of a management token.
    """

    kind = "client-config"
    retry_safe = True

    def __init__(self, credential: Any, subscription_id: str) -> None:
        self._credential = credential
        self._subscription_id = subscription_id

    def create(self, properties: dict[str, Any]) -> dict[str, Any]:
        return self._read()

    def update(
        self, properties: dict[str, Any], prior_outputs: dict[str, Any]
    ) -> dict[str, Any]:
        return self._read()

    def delete(self, prior_outputs: dict[str, Any]) -> None:
        return None

    def _read(self) -> dict[str, Any]:
        try:
            subscription = SubscriptionClient(self._credential).subscriptions.get(
                self._subscription_id
            )
            token = self._credential.get_token(ARM_SCOPE)
        except AzureError as e:
            raise _translate(e, "read", f"/subscriptions/{self._subscription_id}") from e

        claims = _token_claims(token.token)
        return {
            "tenantId": subscription.tenant_id or claims.get("tid"),
            "objectId": claims.get("oid"),
            "subscriptionId": self._subscription_id,
        }


def _token_claims(token: str) -> dict[str, Any]:
    """Decode the (unverified) payload of a JWT access token."""
    try:
        payload = token.split(".")[1]
        padded = payload + "=" * (-len(payload) % 4)
        return json.loads(base64.urlsafe_b64decode(padded))
    except (IndexError, ValueError) as e:
        raise ProviderError(f"Cannot read claims from access token: {e}") from e


def build_azure_registry(
    subscription_id: str, managed_identity_client_id: str | None = None
) -> ProviderRegistry:
    """Registry backed by ARM, authenticated with a managed identity.

    Raises:
        SecretlessViolationError: If credential secrets are in the environment.
    """
    credential = get_managed_identity_credential(managed_identity_client_id)
    client = ResourceManagementClient(credential=credential, subscription_id=subscription_id)

    registry = ProviderRegistry()
    registry.register(ArmClientConfigProvider(credential, subscription_id))
    registry.register(ArmResourceGroupProvider(client))
    for arm_kind in ARM_KINDS.values():
        if arm_kind.kind == "resource-group":
            continue
        registry.register(ArmResourceProvider(client, subscription_id, arm_kind))

    logger.info(
        "Azure provider registry ready",
        extra={"subscription_id": subscription_id, "kinds": registry.kinds()},
    )
    return registry
