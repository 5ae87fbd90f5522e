"""Resource dependency graph construction and validation.

This module turns a set of ResourceNodes into a directed acyclic graph:
1. Duplicate id detection
2. Edge derivation from explicit ``dependsOn`` hints and embedded references
3. Dangling reference detection
4. Cycle detection (DFS with recursion-stack marking, reports the cycle path)
5. Topological ordering for apply, reverse ordering for teardown

EDGE SEMANTICS:
    edges["policy"] == {"vault", "keySet"}
means "vault and keySet must be applied before policy".

A node may depend on an output that only exists after a *different* node,
itself dependent on the first, has been applied:

    vault -> keySet (uses vault.id) -> policy (uses keySet.principalId,
                                              writes into vault.name)

policy depends on both vault and keySet; there is no cycle back into vault.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from .nodes import ResourceNode

logger = logging.getLogger(__name__)


class GraphError(Exception):
    """Raised when the declared resource graph is invalid.

    Graph errors are fatal: they are raised before any provider call.
    """

    pass


class DuplicateIdError(GraphError):
    """Raised when two nodes share an id."""

    pass


class InvalidReferenceError(GraphError):
    """Raised when a reference or dependency names a node absent from the graph."""

    def __init__(self, node_id: str, missing_id: str, path: str | None = None) -> None:
        self.node_id = node_id
        self.missing_id = missing_id
        self.path = path
        where = f" (property '{path}')" if path else " (dependsOn)"
        super().__init__(
            f"Node '{node_id}' references unknown node '{missing_id}'{where}"
        )


class CyclicDependencyError(GraphError):
    """Raised when a dependency cycle is detected."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = cycle
        super().__init__(f"Circular dependency detected: {' -> '.join(cycle)}")


@dataclass
class DependencyGraph:
    """Directed acyclic graph of resource nodes."""

    nodes: dict[str, ResourceNode] = field(default_factory=dict)
    edges: dict[str, set[str]] = field(default_factory=dict)
    dependents: dict[str, set[str]] = field(default_factory=dict)

    @classmethod
    def build(cls, nodes: Iterable[ResourceNode]) -> DependencyGraph:
        """Build and validate a graph.

        Raises:
            DuplicateIdError: If two nodes share an id.
            InvalidReferenceError: If a reference or dependency is dangling.
            CyclicDependencyError: If a cycle is detected.
        """
        graph = cls()
        for node in nodes:
            graph.add_node(node)
        graph.link()
        graph.validate()
        logger.debug(
            "Dependency graph built",
            extra={
                "node_count": len(graph.nodes),
                "edge_count": sum(len(deps) for deps in graph.edges.values()),
            },
        )
        return graph

    def add_node(self, node: ResourceNode) -> None:
        if node.id in self.nodes:
            raise DuplicateIdError(f"Duplicate node id: '{node.id}'")
        self.nodes[node.id] = node

    def link(self) -> None:
        """Derive edges from explicit dependencies and property references."""
        self.edges = {node_id: set() for node_id in self.nodes}
        self.dependents = {node_id: set() for node_id in self.nodes}

        for node in self.nodes.values():
            for dep in sorted(node.explicit_dependencies):
                if dep not in self.nodes:
                    raise InvalidReferenceError(node.id, dep)
                self._add_edge(node.id, dep)

            for path, ref in node.references():
                if ref.node_id not in self.nodes:
                    raise InvalidReferenceError(node.id, ref.node_id, path)
                self._add_edge(node.id, ref.node_id)

    def _add_edge(self, node_id: str, depends_on: str) -> None:
        self.edges[node_id].add(depends_on)
        self.dependents[depends_on].add(node_id)

    def validate(self) -> None:
        """Validate the graph for cycles.

        Raises:
            CyclicDependencyError: With the cycle's node ids in order.
        """
        white, grey, black = 0, 1, 2
        color = {node_id: white for node_id in self.nodes}
        stack: list[str] = []

        def visit(node_id: str) -> None:
            color[node_id] = grey
            stack.append(node_id)
            for dep in sorted(self.edges[node_id]):
                if color[dep] == grey:
                    start = stack.index(dep)
                    raise CyclicDependencyError([*stack[start:], dep])
                if color[dep] == white:
                    visit(dep)
            stack.pop()
            color[node_id] = black

        for node_id in sorted(self.nodes):
            if color[node_id] == white:
                visit(node_id)

    def topological_order(self) -> list[str]:
        """Return node ids in apply order (dependencies first).

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.validate()

        in_degree = {node_id: len(deps) for node_id, deps in self.edges.items()}
        queue = [node_id for node_id, degree in in_degree.items() if degree == 0]
        result: list[str] = []

        while queue:
            # Sort for deterministic ordering among nodes with same in_degree
            queue.sort()
            current = queue.pop(0)
            result.append(current)

            for dependent in self.dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        return result

    def reverse_order(self) -> list[str]:
        """Return node ids in teardown order (dependents first)."""
        return list(reversed(self.topological_order()))

    def ready(self, satisfied: set[str]) -> list[str]:
        """Get nodes whose dependencies are all satisfied.

        Args:
            satisfied: Node ids already applied.
        """
        ready = [
            node_id
            for node_id, deps in self.edges.items()
            if node_id not in satisfied and deps <= satisfied
        ]
        return sorted(ready)

    def transitive_dependents(self, node_id: str) -> set[str]:
        """All nodes that (directly or indirectly) depend on ``node_id``."""
        seen: set[str] = set()
        pending = list(self.dependents.get(node_id, ()))
        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            pending.extend(self.dependents.get(current, ()))
        return seen
