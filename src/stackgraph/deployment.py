"""Deployment runner: wires loader, graph, reconciler, executor and exporter.

    stack file --load--> nodes --build--> DependencyGraph
        --plan (against state)--> Plan
        --execute--> result channel --commit--> DeploymentState --save--> state file
        --collect--> exports

Fatal errors (declaration, graph, provider lookup, state corruption, limits)
are raised before any provider call. Per-node failures are recorded in the
run outcome and never abort independent branches.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .config import EngineConfig
from .dependency import DependencyGraph
from .diff_normalizer import PropertyDiffer
from .executor import ExecutionReport, PlanExecutor
from .exports import OutputExporter, UnresolvedExportError
from .loader import LoadedStack, load_stack
from .plan import NodeResult, Plan
from .provenance import RunProvenance, create_provenance, log_provenance
from .providers import ProviderRegistry
from .reconciler import Reconciler
from .state import DeploymentState, StateStore

logger = logging.getLogger(__name__)


class ResourceLimitError(Exception):
    """Raised when a stack declares more resources than allowed."""

    pass


@dataclass
class RunOutcome:
    """Everything a command needs to report on a run."""

    provenance: RunProvenance
    plan: Plan | None = None
    report: ExecutionReport | None = None
    exports: dict[str, Any] = field(default_factory=dict)
    export_errors: dict[str, UnresolvedExportError] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.provenance.success


class DeploymentRunner:
    """Runs preview, up, destroy and outputs for one stack."""

    def __init__(
        self,
        config: EngineConfig,
        registry: ProviderRegistry,
        env: Mapping[str, str] | None = None,
        differ: PropertyDiffer | None = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self._env = env
        self._differ = differ or PropertyDiffer()
        self._store = StateStore(config.state_file)
        self._executor: PlanExecutor | None = None
        self._cancel_requested = False

    @property
    def store(self) -> StateStore:
        return self._store

    def cancel(self) -> None:
        """Stop starting new applies; in-flight applies complete."""
        self._cancel_requested = True
        if self._executor is not None:
            self._executor.cancel()

    def load(self) -> LoadedStack:
        return load_stack(self._config.declaration_file, self._env)

    def build_graph(self, stack: LoadedStack) -> DependencyGraph:
        """Build the desired graph and validate exports and limits.

        Raises:
            ResourceLimitError: If the stack exceeds the resource limit.
            GraphError: On duplicate ids, dangling references or cycles.
        """
        limit = self._config.security.max_resources_per_deployment
        if len(stack.nodes) > limit:
            raise ResourceLimitError(
                f"Stack '{stack.name}' declares {len(stack.nodes)} resources; "
                f"the limit is {limit}"
            )
        graph = DependencyGraph.build(stack.nodes)
        OutputExporter(stack.exports, graph.nodes).validate(graph.nodes)
        return graph

    def _prepare(self, command: str) -> tuple[RunProvenance, LoadedStack, DeploymentState]:
        provenance = create_provenance(
            command, self._config.declaration_file, self._config.dry_run
        )
        stack = self.load()
        provenance.stack = stack.name
        state = self._store.load(stack.name)
        state.stack = stack.name
        return provenance, stack, state

    def preview(self) -> RunOutcome:
        """Plan without applying."""
        started = time.monotonic()
        provenance, stack, state = self._prepare("preview")
        graph = self.build_graph(stack)
        plan = Reconciler(self._registry, state, self._differ).plan(stack.name, graph)
        provenance.record_plan(plan)
        provenance.state_serial = state.serial
        provenance.duration_seconds = round(time.monotonic() - started, 3)
        log_provenance(provenance)
        return RunOutcome(provenance=provenance, plan=plan)

    async def up(self) -> RunOutcome:
        """Plan, apply, commit and export."""
        if self._config.dry_run:
            logger.info("Dry run: planning only")
            return self.preview()

        started = time.monotonic()
        provenance, stack, state = self._prepare("up")
        graph = self.build_graph(stack)
        reconciler = Reconciler(self._registry, state, self._differ)
        plan = reconciler.plan(stack.name, graph)
        provenance.record_plan(plan)

        report = await self._execute(plan, reconciler, state)
        provenance.record_execution(plan, report)
        provenance.state_serial = state.serial

        values, errors = OutputExporter(stack.exports, graph.nodes).collect()
        provenance.duration_seconds = round(time.monotonic() - started, 3)
        log_provenance(provenance)
        return RunOutcome(
            provenance=provenance,
            plan=plan,
            report=report,
            exports=values,
            export_errors=errors,
        )

    async def destroy(self) -> RunOutcome:
        """Delete every recorded resource in reverse dependency order."""
        started = time.monotonic()
        provenance, stack, state = self._prepare("destroy")
        reconciler = Reconciler(self._registry, state, self._differ)
        plan = reconciler.plan_destroy(stack.name)
        provenance.record_plan(plan)

        if self._config.dry_run:
            log_provenance(provenance)
            return RunOutcome(provenance=provenance, plan=plan)

        report = await self._execute(plan, reconciler, state)
        provenance.record_execution(plan, report)
        provenance.state_serial = state.serial
        provenance.duration_seconds = round(time.monotonic() - started, 3)
        log_provenance(provenance)
        return RunOutcome(provenance=provenance, plan=plan, report=report)

    def outputs(self) -> tuple[dict[str, Any], dict[str, UnresolvedExportError]]:
        """Resolve exports from recorded state without applying anything."""
        _, stack, state = self._prepare("outputs")
        graph = self.build_graph(stack)
        for node_id, node in graph.nodes.items():
            record = state.get(node_id)
            node.mark_planned()
            if record is not None and record.kind == node.kind:
                node.mark_applied(record.outputs)
        return OutputExporter(stack.exports, graph.nodes).collect()

    async def _execute(
        self, plan: Plan, reconciler: Reconciler, state: DeploymentState
    ) -> ExecutionReport:
        """Run the executor with the reconciler draining results, then save."""
        executor = PlanExecutor(
            self._registry,
            state,
            differ=self._differ,
            max_parallel_applies=self._config.max_parallel_applies,
            default_timeout_seconds=self._config.default_apply_timeout_seconds,
            max_retries=self._config.max_apply_retries,
            retry_backoff_base_seconds=self._config.retry_backoff_base_seconds,
        )
        self._executor = executor
        if self._cancel_requested:
            executor.cancel()

        results: asyncio.Queue[NodeResult | None] = asyncio.Queue()
        consumer = asyncio.create_task(reconciler.consume(results), name="commit")
        try:
            report = await executor.execute(plan, results)
        finally:
            await results.put(None)
            await consumer
            # Partial progress is persisted too.
            self._store.save(state)
            self._executor = None
        return report
