"""Output exporter: surfaces resolved values after a run.

Exports are a flat mapping of name to value, where the value may be a
reference, a join, a literal or a nested mapping/list of these. A value is
only ever read from nodes that are APPLIED at read time; an export bound to
a node that failed, was blocked or was never applied raises
UnresolvedExportError instead of yielding a stale or default value.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from .dependency import InvalidReferenceError
from .nodes import NodeStatus, Reference, ResourceNode, iter_references, lookup_output, resolve_value
from .security import redact

logger = logging.getLogger(__name__)


class UnresolvedExportError(Exception):
    """Raised when an export references a node that is not APPLIED."""

    def __init__(self, name: str, node_id: str, reason: str) -> None:
        self.name = name
        self.node_id = node_id
        self.reason = reason
        super().__init__(f"Export '{name}' is unresolved: node '{node_id}' {reason}")


class OutputExporter:
    """Resolves export declarations against node outputs."""

    def __init__(
        self, exports: Mapping[str, Any], nodes: Mapping[str, ResourceNode]
    ) -> None:
        self._exports = dict(exports)
        self._nodes = nodes

    @property
    def names(self) -> list[str]:
        return sorted(self._exports)

    def validate(self, node_ids: Iterable[str]) -> None:
        """Check every export reference names a declared node.

        Raises:
            InvalidReferenceError: For the first dangling reference.
        """
        known = set(node_ids)
        for name in self.names:
            for path, ref in iter_references(self._exports[name]):
                if ref.node_id not in known:
                    where = f"exports.{name}.{path}" if path else f"exports.{name}"
                    raise InvalidReferenceError("<exports>", ref.node_id, where)

    def get(self, name: str) -> Any:
        """Resolve one export.

        Raises:
            KeyError: If no export has this name.
            UnresolvedExportError: If a referenced node is not APPLIED or lacks
                the referenced output.
        """
        value = self._exports[name]

        def lookup(ref: Reference) -> Any:
            node = self._nodes.get(ref.node_id)
            if node is None:
                raise UnresolvedExportError(name, ref.node_id, "is not declared")
            if node.status != NodeStatus.APPLIED:
                raise UnresolvedExportError(name, ref.node_id, f"is {node.status.value}")
            try:
                return lookup_output(node.resolved_outputs, ref.output)
            except KeyError:
                raise UnresolvedExportError(
                    name, ref.node_id, f"has no output '{ref.output}'"
                ) from None

        return redact(resolve_value(value, lookup))

    def collect(self) -> tuple[dict[str, Any], dict[str, UnresolvedExportError]]:
        """Resolve every export, separating values from errors."""
        values: dict[str, Any] = {}
        errors: dict[str, UnresolvedExportError] = {}
        for name in self.names:
            try:
                values[name] = self.get(name)
            except UnresolvedExportError as e:
                errors[name] = e

        if errors:
            logger.warning(
                "Some exports are unresolved",
                extra={"unresolved": sorted(errors), "resolved_count": len(values)},
            )
        return values, errors
