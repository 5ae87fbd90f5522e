"""Plan data model shared by the reconciler and the executor."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .dependency import DependencyGraph
from .diff_normalizer import PropertyChange
from .nodes import NodeStatus
from .security import redact
from .state import ResourceRecord


class Action(str, Enum):
    """What a run does to one node."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NOOP = "noop"


@dataclass
class PlannedChange:
    """Planned action for one node.

    Attributes:
        cascade: Update planned only because a dependency changes; the node
            is re-diffed after its references are resolved.
        forced: A dependency is replaced; the node is re-applied even when
            its resolved properties look unchanged.
    """

    node_id: str
    kind: str
    action: Action
    changes: list[PropertyChange] = field(default_factory=list)
    prior: ResourceRecord | None = None
    reason: str = ""
    immutable_paths: frozenset[str] = frozenset()
    cascade: bool = False
    forced: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.node_id,
            "kind": self.kind,
            "action": self.action.value,
            "reason": self.reason,
            "changes": [
                {
                    "path": change.path,
                    "before": redact(change.before),
                    "after": "<computed>" if change.computed else redact(change.after),
                }
                for change in self.changes
            ],
        }


@dataclass
class Plan:
    """Ordered set of planned changes for one run.

    ``graph`` holds the desired nodes; ``teardown`` holds nodes that exist
    only in state and are deleted after the apply phase. ``removed_dependents``
    maps a desired node to the teardown nodes that depend on it, directly or
    through other teardown nodes; they are deleted before that node is
    replaced.
    """

    stack: str
    graph: DependencyGraph
    changes: dict[str, PlannedChange] = field(default_factory=dict)
    teardown: DependencyGraph = field(default_factory=DependencyGraph)
    removed_dependents: dict[str, frozenset[str]] = field(default_factory=dict)

    def apply_order(self) -> list[str]:
        return self.graph.topological_order()

    def delete_order(self) -> list[str]:
        return self.teardown.reverse_order()

    def counts(self) -> dict[str, int]:
        counts = {action.value: 0 for action in Action}
        for change in self.changes.values():
            counts[change.action.value] += 1
        return counts

    @property
    def has_changes(self) -> bool:
        return any(change.action != Action.NOOP for change in self.changes.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "stack": self.stack,
            "counts": self.counts(),
            "changes": [
                self.changes[node_id].to_dict()
                for node_id in [*self.apply_order(), *self.delete_order()]
            ],
        }


@dataclass
class NodeResult:
    """Outcome of one node, pushed by the executor to the result channel.

    ``properties`` are in state form. ``prior_deleted`` is set when a
    replacement deleted the old resource before its create failed.
    """

    node_id: str
    kind: str
    action: Action
    status: NodeStatus
    outputs: dict[str, Any] = field(default_factory=dict)
    properties: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    error: Exception | None = None
    prior_deleted: bool = False
    provider_called: bool = False
    attempts: int = 0
    duration_seconds: float = 0.0


def path_is_immutable(path: str, immutable_paths: Iterable[str]) -> bool:
    """A changed path is immutable if it equals, nests under or contains one."""
    for immutable in immutable_paths:
        if path == immutable:
            return True
        if path.startswith(f"{immutable}.") or path.startswith(f"{immutable}["):
            return True
        if immutable.startswith(f"{path}.") or immutable.startswith(f"{path}["):
            return True
    return False


def requires_replacement(
    changes: Iterable[PropertyChange], immutable_paths: Iterable[str]
) -> list[str]:
    """Return changed paths that cannot be updated in place."""
    immutable = list(immutable_paths)
    return [change.path for change in changes if path_is_immutable(change.path, immutable)]
