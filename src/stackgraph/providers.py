"""Provider collaborator interface and registry.

A provider knows how to create, update and delete resources of one kind.
The engine never talks to a cloud API directly: each node's apply is a
single blocking call into the provider registered for its kind.

Provider contract:
    create(properties) -> outputs
    update(properties, prior_outputs) -> outputs
    delete(prior_outputs) -> None

Properties arrive fully resolved (no references); secret values arrive as
``security.Secret`` and must be revealed by the provider only when building
its request payload.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from enum import Enum
from types import MappingProxyType
from typing import Any

logger = logging.getLogger(__name__)


class Operation(str, Enum):
    """Provider operations."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ProviderError(Exception):
    """Raised by providers when the backing API rejects an operation."""

    pass


class ProviderNotFoundError(Exception):
    """Raised when a node's kind has no registered provider."""

    pass


class Provider(ABC):
    """Base class for resource providers.

    Attributes (class-level defaults, instances may override):
        kind: Resource kind tag handled by this provider.
        retry_safe: Whether failed operations may be retried blindly.
        replace_on_changes: Property paths that cannot be updated in place;
            changing any of them destroys and recreates the resource.
        timeouts: Per-operation timeouts in seconds (override the engine default).
    """

    kind: str = ""
    retry_safe: bool = False
    replace_on_changes: frozenset[str] = frozenset()
    timeouts: Mapping[str, int] = MappingProxyType({})

    @abstractmethod
    def create(self, properties: dict[str, Any]) -> dict[str, Any]:
        """Create the resource and return its outputs."""

    @abstractmethod
    def update(
        self, properties: dict[str, Any], prior_outputs: dict[str, Any]
    ) -> dict[str, Any]:
        """Update the resource in place and return its outputs."""

    @abstractmethod
    def delete(self, prior_outputs: dict[str, Any]) -> None:
        """Delete the resource."""

    def timeout_for(self, operation: Operation) -> int | None:
        return self.timeouts.get(operation.value)


class ProviderRegistry:
    """Maps resource kinds to provider instances."""

    def __init__(self, providers: Iterable[Provider] = ()) -> None:
        self._providers: dict[str, Provider] = {}
        for provider in providers:
            self.register(provider)

    def register(self, provider: Provider, kind: str | None = None) -> None:
        kind = kind or provider.kind
        if not kind:
            raise ValueError(f"Provider {type(provider).__name__} declares no kind")
        if kind in self._providers:
            logger.warning("Replacing provider for kind", extra={"kind": kind})
        self._providers[kind] = provider

    def get(self, kind: str) -> Provider:
        try:
            return self._providers[kind]
        except KeyError:
            raise ProviderNotFoundError(
                f"No provider registered for kind '{kind}'. "
                f"Known kinds: {sorted(self._providers)}"
            ) from None

    def check_kinds(self, kinds: Iterable[str]) -> None:
        """Fail before any provider call if a kind has no provider.

        Raises:
            ProviderNotFoundError: Listing every unknown kind.
        """
        missing = sorted({kind for kind in kinds if kind not in self._providers})
        if missing:
            raise ProviderNotFoundError(
                f"No provider registered for kinds {missing}. "
                f"Known kinds: {sorted(self._providers)}"
            )

    def __contains__(self, kind: object) -> bool:
        return kind in self._providers

    def kinds(self) -> list[str]:
        return sorted(self._providers)
