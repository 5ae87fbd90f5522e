"""State reconciliation: plan against prior state, then commit results.

The reconciler is the only component that reads *and* writes
DeploymentState:

1. ``plan()`` walks the desired graph in topological order and compares each
   node with the state record of the same id:
   - absent                          -> CREATE
   - resolved properties differ      -> UPDATE, or REPLACE when an immutable
                                        path changed or the kind changed
   - present in state, not desired   -> DELETE
   - no difference                   -> NOOP
2. ``consume()`` drains the executor's result channel and commits each
   result sequentially (single writer).

REFERENCES DURING PLANNING:
A reference to a dependency whose action is NOOP resolves against that
dependency's recorded outputs. A reference to a dependency that will change
resolves to UNKNOWN, which turns the dependent into a cascade UPDATE: it is
re-diffed by the executor once the real value exists.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .dependency import DependencyGraph
from .diff_normalizer import PropertyDiffer
from .nodes import UNKNOWN, NodeStatus, Reference, ResourceNode, lookup_output, resolve_value
from .plan import Action, NodeResult, Plan, PlannedChange, requires_replacement
from .providers import ProviderRegistry
from .state import DeploymentState, ResourceRecord

logger = logging.getLogger(__name__)


class Reconciler:
    """Plans runs against, and commits results into, a DeploymentState."""

    def __init__(
        self,
        registry: ProviderRegistry,
        state: DeploymentState,
        differ: PropertyDiffer | None = None,
    ) -> None:
        self._registry = registry
        self._state = state
        self._differ = differ or PropertyDiffer()
        self._committed: list[NodeResult] = []

    @property
    def state(self) -> DeploymentState:
        return self._state

    @property
    def differ(self) -> PropertyDiffer:
        return self._differ

    @property
    def committed(self) -> list[NodeResult]:
        return list(self._committed)

    def immutable_paths(self, node: ResourceNode) -> frozenset[str]:
        provider = self._registry.get(node.kind)
        return frozenset(provider.replace_on_changes) | frozenset(node.replace_on_changes)

    def plan(self, stack: str, graph: DependencyGraph) -> Plan:
        """Compute the change set for the desired graph.

        Raises:
            ProviderNotFoundError: If a desired or recorded kind has no provider.
            CyclicDependencyError: If the graph has a cycle.
        """
        # Recorded kinds too: a kind change deletes through the old provider.
        self._registry.check_kinds(
            [node.kind for node in graph.nodes.values()]
            + [record.kind for record in self._state.resources.values()]
        )

        plan = Plan(stack=stack, graph=graph)
        for node_id in graph.topological_order():
            node = graph.nodes[node_id]
            plan.changes[node_id] = self._plan_node(node, graph, plan.changes)

        removed = [
            record for node_id, record in self._state.resources.items()
            if node_id not in graph.nodes
        ]
        plan.teardown = self._teardown_graph(removed)
        plan.removed_dependents = self._removed_dependents(removed, plan.teardown, graph)
        for record in removed:
            plan.changes[record.id] = PlannedChange(
                node_id=record.id,
                kind=record.kind,
                action=Action.DELETE,
                prior=record,
                reason="no longer declared",
            )

        logger.info("Plan computed", extra={"stack": stack, "counts": plan.counts()})
        return plan

    def plan_destroy(self, stack: str) -> Plan:
        """Plan the deletion of every recorded node."""
        records = list(self._state.resources.values())
        plan = Plan(stack=stack, graph=DependencyGraph())
        plan.teardown = self._teardown_graph(records)
        for record in records:
            plan.changes[record.id] = PlannedChange(
                node_id=record.id,
                kind=record.kind,
                action=Action.DELETE,
                prior=record,
                reason="destroy",
            )
        logger.info("Destroy plan computed", extra={"stack": stack, "counts": plan.counts()})
        return plan

    def _teardown_graph(self, records: list[ResourceRecord]) -> DependencyGraph:
        """Graph of recorded nodes, linked by their recorded dependencies."""
        self._registry.check_kinds(record.kind for record in records)
        ids = {record.id for record in records}
        return DependencyGraph.build(
            ResourceNode(
                id=record.id,
                kind=record.kind,
                explicit_dependencies={dep for dep in record.dependencies if dep in ids},
            )
            for record in records
        )

    def _removed_dependents(
        self,
        removed: list[ResourceRecord],
        teardown: DependencyGraph,
        graph: DependencyGraph,
    ) -> dict[str, frozenset[str]]:
        """Map desired nodes to the undeclared records that still depend on them.

        Any desired node may be replaced (planned, or escalated at apply
        time), so every one with undeclared dependents is mapped.
        """
        found: dict[str, set[str]] = {}
        for record in removed:
            for dep in record.dependencies:
                if dep in graph.nodes:
                    found.setdefault(dep, set()).update(
                        {record.id, *teardown.transitive_dependents(record.id)}
                    )
        return {node_id: frozenset(ids) for node_id, ids in sorted(found.items())}

    def _plan_node(
        self,
        node: ResourceNode,
        graph: DependencyGraph,
        planned: dict[str, PlannedChange],
    ) -> PlannedChange:
        prior = self._state.get(node.id)
        immutable = self.immutable_paths(node)

        def lookup(ref: Reference) -> Any:
            dep = planned[ref.node_id]
            if dep.action != Action.NOOP or dep.prior is None:
                return UNKNOWN
            try:
                return lookup_output(dep.prior.outputs, ref.output)
            except KeyError:
                return UNKNOWN

        desired = self._state.to_state_form(resolve_value(node.desired_properties, lookup))
        change = PlannedChange(
            node_id=node.id, kind=node.kind, action=Action.NOOP,
            prior=prior, immutable_paths=immutable,
        )

        if prior is None:
            change.action = Action.CREATE
            change.changes = self._differ.diff(node.kind, {}, desired)
            change.reason = "not in state"
            return change

        if prior.kind != node.kind:
            change.action = Action.REPLACE
            change.changes = self._differ.diff(node.kind, prior.properties, desired)
            change.reason = f"kind changed from {prior.kind}"
            return change

        change.changes = self._differ.diff(node.kind, prior.properties, desired)
        replaced_deps = sorted(
            dep for dep in graph.edges[node.id] if planned[dep].action == Action.REPLACE
        )

        known = [c for c in change.changes if not c.computed]
        immutable_hits = requires_replacement(known, immutable)
        if immutable_hits:
            change.action = Action.REPLACE
            change.reason = f"immutable properties changed: {', '.join(immutable_hits)}"
        elif known:
            change.action = Action.UPDATE
            change.reason = f"{len(known)} properties changed"
        elif change.changes:
            change.action = Action.UPDATE
            change.cascade = True
            change.reason = "depends on changing outputs"

        if replaced_deps:
            change.forced = True
            if change.action == Action.NOOP:
                change.action = Action.UPDATE
                change.reason = f"dependency replaced: {', '.join(replaced_deps)}"
        return change

    async def consume(self, results: asyncio.Queue[NodeResult | None]) -> None:
        """Commit results from the executor until the end-of-run sentinel."""
        while True:
            result = await results.get()
            try:
                if result is None:
                    return
                self.commit(result)
            finally:
                results.task_done()

    def commit(self, result: NodeResult) -> None:
        """Apply one node result to the state.

        Applied -> upsert; Destroyed -> remove; Failed after the old resource
        was deleted -> remove; anything else keeps the prior record.
        """
        self._committed.append(result)
        resources = self._state.resources

        if result.status == NodeStatus.APPLIED:
            resources[result.node_id] = ResourceRecord(
                id=result.node_id,
                kind=result.kind,
                outputs=result.outputs,
                properties=result.properties,
                dependencies=sorted(result.dependencies),
            )
            outcome = "upserted"
        elif result.status == NodeStatus.DESTROYED:
            resources.pop(result.node_id, None)
            outcome = "removed"
        elif result.status == NodeStatus.FAILED and result.prior_deleted:
            resources.pop(result.node_id, None)
            outcome = "removed"
        else:
            outcome = "kept"

        logger.debug(
            "Committed node result",
            extra={
                "node_id": result.node_id,
                "status": result.status.value,
                "action": result.action.value,
                "outcome": outcome,
            },
        )
