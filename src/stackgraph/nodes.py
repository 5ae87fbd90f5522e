"""Resource node model.

A ResourceNode is one declared infrastructure object: a kind, a logical id,
desired properties and explicit ordering hints. Properties may embed typed
references to other nodes' outputs instead of literal values:

    Reference("sourceKeyVault", "id")
    Join(["/subscriptions/", Reference("client", "subscriptionId"), "/..."])

References are resolved at exactly one point, right before the node is
applied, from the resolved outputs of nodes that are already APPLIED.
"""

from __future__ import annotations

import copy
import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .security import Secret

# Node ids: segments separated by "/" (template instances). "." is reserved
# for output paths in references.
VALID_NODE_ID_PATTERN = r"^[A-Za-z][A-Za-z0-9_-]*(/[A-Za-z][A-Za-z0-9_-]*)*$"
MAX_NODE_ID_LENGTH = 128


class NodeStatus(str, Enum):
    """Lifecycle status of a node within one run."""

    PENDING = "pending"
    PLANNED = "planned"
    APPLYING = "applying"
    APPLIED = "applied"
    FAILED = "failed"
    BLOCKED = "blocked"  # A prerequisite failed or the run was cancelled
    DESTROYING = "destroying"
    DESTROYED = "destroyed"


_ALLOWED_TRANSITIONS: dict[NodeStatus, frozenset[NodeStatus]] = {
    NodeStatus.PENDING: frozenset({NodeStatus.PLANNED}),
    NodeStatus.PLANNED: frozenset(
        {NodeStatus.APPLYING, NodeStatus.APPLIED, NodeStatus.BLOCKED}
    ),
    NodeStatus.APPLYING: frozenset({NodeStatus.APPLIED, NodeStatus.FAILED}),
    NodeStatus.APPLIED: frozenset({NodeStatus.DESTROYING, NodeStatus.BLOCKED}),
    NodeStatus.DESTROYING: frozenset({NodeStatus.DESTROYED, NodeStatus.FAILED}),
    NodeStatus.FAILED: frozenset(),
    NodeStatus.BLOCKED: frozenset(),
    NodeStatus.DESTROYED: frozenset(),
}


class InvalidTransitionError(ValueError):
    """Raised on an illegal node status transition."""

    pass


@dataclass(frozen=True)
class Reference:
    """Pointer to another node's resolved output.

    ``output`` may be a dotted path into nested outputs
    (e.g. ``identity.principalId``).
    """

    node_id: str
    output: str

    @classmethod
    def parse(cls, value: str) -> Reference:
        """Parse ``"nodeId.output.path"``."""
        node_id, sep, output = value.partition(".")
        if not sep or not node_id or not output:
            raise ValueError(f"Reference must look like 'node.output': {value!r}")
        return cls(node_id=node_id, output=output)

    def __str__(self) -> str:
        return f"{self.node_id}.{self.output}"


@dataclass(frozen=True)
class Join:
    """String concatenation of literals and references."""

    parts: tuple[Any, ...]

    def references(self) -> list[Reference]:
        return [p for p in self.parts if isinstance(p, Reference)]


class _Unknown:
    """Marker for a value that will only be known after a dependency applies."""

    _instance: _Unknown | None = None

    def __new__(cls) -> _Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "<unknown>"


UNKNOWN = _Unknown()


@dataclass
class ResourceNode:
    """One declared infrastructure object."""

    id: str
    kind: str
    desired_properties: dict[str, Any] = field(default_factory=dict)
    explicit_dependencies: set[str] = field(default_factory=set)
    replace_on_changes: tuple[str, ...] = ()
    timeouts: dict[str, int] = field(default_factory=dict)
    status: NodeStatus = NodeStatus.PENDING
    resolved_outputs: dict[str, Any] = field(default_factory=dict)
    error: Exception | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Node id cannot be empty")
        if len(self.id) > MAX_NODE_ID_LENGTH or not re.match(VALID_NODE_ID_PATTERN, self.id):
            raise ValueError(f"Invalid node id {self.id!r}: must match {VALID_NODE_ID_PATTERN}")
        if not self.kind:
            raise ValueError(f"Node {self.id!r}: kind cannot be empty")
        self.explicit_dependencies = set(self.explicit_dependencies)

    def references(self) -> list[tuple[str, Reference]]:
        """All references embedded in desired properties, with their property path."""
        return list(iter_references(self.desired_properties))

    def dependency_ids(self) -> set[str]:
        """Explicit dependencies plus the nodes referenced by properties."""
        return set(self.explicit_dependencies) | {ref.node_id for _, ref in self.references()}

    # Status transitions. Outputs are populated iff status is APPLIED.

    def transition(self, new_status: NodeStatus) -> None:
        allowed = _ALLOWED_TRANSITIONS[self.status]
        if new_status not in allowed:
            raise InvalidTransitionError(
                f"Node {self.id!r}: cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        if new_status != NodeStatus.APPLIED:
            self.resolved_outputs = {}

    def mark_planned(self) -> None:
        self.transition(NodeStatus.PLANNED)

    def mark_applying(self) -> None:
        self.transition(NodeStatus.APPLYING)

    def mark_applied(self, outputs: dict[str, Any]) -> None:
        self.transition(NodeStatus.APPLIED)
        self.resolved_outputs = dict(outputs)
        self.error = None

    def mark_failed(self, error: Exception) -> None:
        self.transition(NodeStatus.FAILED)
        self.error = error

    def mark_blocked(self, error: Exception) -> None:
        self.transition(NodeStatus.BLOCKED)
        self.error = error

    def mark_destroying(self) -> None:
        self.transition(NodeStatus.DESTROYING)

    def mark_destroyed(self) -> None:
        self.transition(NodeStatus.DESTROYED)


def iter_references(value: Any, path: str = "") -> Iterator[tuple[str, Reference]]:
    """Yield ``(property_path, Reference)`` for every reference in ``value``."""
    if isinstance(value, Reference):
        yield path, value
    elif isinstance(value, Join):
        for part in value.parts:
            if isinstance(part, Reference):
                yield path, part
    elif isinstance(value, dict):
        for key, item in value.items():
            yield from iter_references(item, f"{path}.{key}" if path else str(key))
    elif isinstance(value, list | tuple):
        for index, item in enumerate(value):
            yield from iter_references(item, f"{path}[{index}]")


def lookup_output(outputs: dict[str, Any], output_path: str) -> Any:
    """Walk a dotted output path. Raises KeyError if any segment is missing."""
    current: Any = outputs
    for segment in output_path.split("."):
        if isinstance(current, dict) and segment in current:
            current = current[segment]
        else:
            raise KeyError(output_path)
    return current


def resolve_value(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Replace every Reference/Join in ``value`` using ``lookup``.

    ``lookup`` may return UNKNOWN; a Join with an unknown part is UNKNOWN.
    Secrets inside a Join make the whole result a Secret.
    """
    if isinstance(value, Reference):
        return lookup(value)
    if isinstance(value, Join):
        parts = [resolve_value(part, lookup) for part in value.parts]
        if any(part is UNKNOWN for part in parts):
            return UNKNOWN
        if any(isinstance(part, Secret) for part in parts):
            return Secret(
                "".join(p.reveal() if isinstance(p, Secret) else str(p) for p in parts)
            )
        return "".join(str(part) for part in parts)
    if isinstance(value, dict):
        return {k: resolve_value(v, lookup) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [resolve_value(v, lookup) for v in value]
    if isinstance(value, Secret):
        return value
    return copy.deepcopy(value)


def contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(contains_unknown(v) for v in value.values())
    if isinstance(value, list | tuple):
        return any(contains_unknown(v) for v in value)
    return False
