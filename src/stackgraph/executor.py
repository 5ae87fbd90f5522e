"""Plan execution: apply nodes in dependency order, concurrently.

Each node runs as its own asyncio task:

1. Wait (suspended, no polling) for the completion events of its
   prerequisites.
2. If any prerequisite ended FAILED or BLOCKED, or the run was cancelled,
   end BLOCKED without calling the provider.
3. Resolve references from the prerequisites' resolved outputs. This is the
   only place references are resolved.
4. Call the provider in a worker thread, bounded by a semaphore and a
   per-operation timeout.
5. Publish a NodeResult on the result channel.

Nodes that exist only in state are deleted in reverse dependency order once
the apply phase ends. Before a node's old resource is deleted for a
replacement, undeclared nodes that depend on it are destroyed first.

The executor never writes DeploymentState; the reconciler drains the
result channel and commits.

SECURITY: Timeouts are enforced on all provider calls. A timed-out call is
not interrupted; its outcome is discarded and the node is FAILED.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .config import (
    DEFAULT_APPLY_RETRIES,
    DEFAULT_APPLY_TIMEOUT_SECONDS,
    DEFAULT_MAX_PARALLEL_APPLIES,
    DEFAULT_RETRY_BACKOFF_BASE_SECONDS,
)
from .diff_normalizer import PropertyDiffer
from .nodes import NodeStatus, Reference, ResourceNode, lookup_output, resolve_value
from .plan import Action, NodeResult, Plan, PlannedChange, requires_replacement
from .providers import Operation, Provider, ProviderRegistry
from .state import DeploymentState, ResourceRecord

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "run cancelled"

_DONE_STATUSES = frozenset({NodeStatus.APPLIED, NodeStatus.DESTROYED})


class ApplyError(Exception):
    """Base class for per-node apply errors. Local to the node."""

    def __init__(self, node_id: str, message: str) -> None:
        self.node_id = node_id
        super().__init__(message)


class ApplyFailureError(ApplyError):
    """The provider rejected the operation."""

    pass


class ApplyTimeoutError(ApplyError):
    """The provider call exceeded its timeout."""

    def __init__(self, node_id: str, operation: Operation, timeout_seconds: float) -> None:
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(
            node_id,
            f"Node '{node_id}': {operation.value} timed out after {timeout_seconds}s",
        )


class BlockedError(Exception):
    """Why a node was not attempted."""

    def __init__(self, node_id: str, reason: str) -> None:
        self.node_id = node_id
        self.reason = reason
        super().__init__(f"Node '{node_id}' blocked: {reason}")


@dataclass
class ExecutionReport:
    """Final status of every node touched by a run."""

    results: dict[str, NodeResult] = field(default_factory=dict)
    cancelled: bool = False

    def by_status(self, status: NodeStatus) -> list[str]:
        return sorted(
            node_id for node_id, result in self.results.items() if result.status == status
        )

    @property
    def failed(self) -> list[str]:
        return self.by_status(NodeStatus.FAILED)

    @property
    def blocked(self) -> list[str]:
        return self.by_status(NodeStatus.BLOCKED)

    @property
    def success(self) -> bool:
        return not self.failed and not self.blocked

    @property
    def provider_calls(self) -> int:
        return sum(result.attempts for result in self.results.values())


class PlanExecutor:
    """Executes a Plan against a provider registry."""

    def __init__(
        self,
        registry: ProviderRegistry,
        state: DeploymentState,
        differ: PropertyDiffer | None = None,
        max_parallel_applies: int = DEFAULT_MAX_PARALLEL_APPLIES,
        default_timeout_seconds: float = DEFAULT_APPLY_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_APPLY_RETRIES,
        retry_backoff_base_seconds: float = DEFAULT_RETRY_BACKOFF_BASE_SECONDS,
    ) -> None:
        self._registry = registry
        self._state = state
        self._differ = differ or PropertyDiffer()
        self._max_parallel_applies = max_parallel_applies
        self._default_timeout_seconds = default_timeout_seconds
        self._max_retries = max_retries
        self._retry_backoff_base_seconds = retry_backoff_base_seconds
        self._cancel_event = asyncio.Event()
        self._semaphore: asyncio.Semaphore | None = None
        self._done: dict[str, asyncio.Event] = {}
        self._teardown_done: dict[str, asyncio.Event] = {}
        self._released: dict[str, asyncio.Event] = {}
        self._replaced: set[str] = set()

    def cancel(self) -> None:
        """Stop starting new applies; in-flight provider calls complete."""
        if not self._cancel_event.is_set():
            logger.warning("Run cancellation requested")
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    async def execute(
        self, plan: Plan, results: asyncio.Queue[NodeResult | None]
    ) -> ExecutionReport:
        """Run the apply and delete phases, publishing every result."""
        report = ExecutionReport()
        self._semaphore = asyncio.Semaphore(self._max_parallel_applies)

        start = time.monotonic()
        self._prepare_teardown(plan)
        deletes = asyncio.create_task(
            self._delete_phase(plan, results, report), name="delete-phase"
        )
        try:
            await self._apply_phase(plan, results, report)
        except BaseException:
            deletes.cancel()
            raise
        for event in self._released.values():
            event.set()
        await deletes
        report.cancelled = self.cancelled

        logger.info(
            "Plan executed",
            extra={
                "stack": plan.stack,
                "applied": len(report.by_status(NodeStatus.APPLIED)),
                "destroyed": len(report.by_status(NodeStatus.DESTROYED)),
                "failed": report.failed,
                "blocked": report.blocked,
                "cancelled": report.cancelled,
                "duration_seconds": round(time.monotonic() - start, 3),
            },
        )
        return report

    # Apply phase

    async def _apply_phase(
        self,
        plan: Plan,
        results: asyncio.Queue[NodeResult | None],
        report: ExecutionReport,
    ) -> None:
        graph = plan.graph
        order = graph.topological_order()
        if not order:
            return

        for node in graph.nodes.values():
            node.mark_planned()
        self._done = {node_id: asyncio.Event() for node_id in order}

        tasks = [
            asyncio.create_task(
                self._run_node(graph.nodes[node_id], plan, results, report),
                name=f"apply:{node_id}",
            )
            for node_id in order
        ]
        await asyncio.gather(*tasks)

    async def _run_node(
        self,
        node: ResourceNode,
        plan: Plan,
        results: asyncio.Queue[NodeResult | None],
        report: ExecutionReport,
    ) -> None:
        change = plan.changes[node.id]
        deps = sorted(plan.graph.edges[node.id])
        try:
            for dep in deps:
                await self._done[dep].wait()

            not_done = [d for d in deps if plan.graph.nodes[d].status not in _DONE_STATUSES]
            if not_done:
                node.mark_blocked(
                    BlockedError(node.id, f"prerequisite {not_done[0]} did not apply")
                )
                result = self._result(node, change, deps)
            elif (
                change.action == Action.NOOP
                and not self.cancelled
                and not any(dep in self._replaced for dep in deps)
            ):
                result = self._apply_noop(node, change, deps)
            elif self.cancelled:
                node.mark_blocked(BlockedError(node.id, CANCELLED_MESSAGE))
                result = self._result(node, change, deps)
            else:
                result = await self._apply_node(node, change, plan, deps)
        finally:
            self._done[node.id].set()

        report.results[node.id] = result
        await results.put(result)

    def _result(self, node: ResourceNode, change: PlannedChange, deps: list[str]) -> NodeResult:
        return NodeResult(
            node_id=node.id,
            kind=node.kind,
            action=change.action,
            status=node.status,
            outputs=dict(node.resolved_outputs),
            dependencies=list(deps),
            error=node.error,
        )

    def _apply_noop(
        self, node: ResourceNode, change: PlannedChange, deps: list[str]
    ) -> NodeResult:
        """No provider call; outputs are copied from state."""
        prior = change.prior
        assert prior is not None
        node.mark_applied(prior.outputs)
        result = self._result(node, change, deps)
        result.properties = dict(prior.properties)
        return result

    async def _apply_node(
        self,
        node: ResourceNode,
        change: PlannedChange,
        plan: Plan,
        deps: list[str],
    ) -> NodeResult:
        result = self._result(node, change, deps)
        prior = change.prior

        def lookup(ref: Reference) -> Any:
            return lookup_output(plan.graph.nodes[ref.node_id].resolved_outputs, ref.output)

        try:
            properties = resolve_value(node.desired_properties, lookup)
        except KeyError as e:
            node.mark_applying()
            node.mark_failed(
                ApplyFailureError(node.id, f"Node '{node.id}': unresolved output {e.args[0]!r}")
            )
            result.status = node.status
            result.error = node.error
            return result

        result.properties = self._state.to_state_form(properties)
        # A NOOP reaching here has a dependency replaced during this run.
        action = Action.UPDATE if change.action == Action.NOOP else change.action
        forced = change.forced or any(dep in self._replaced for dep in deps)

        if action == Action.UPDATE and prior is not None:
            changes = self._differ.diff(node.kind, prior.properties, result.properties)
            if requires_replacement(changes, change.immutable_paths):
                action = Action.REPLACE
            elif not changes and not forced:
                logger.info(
                    "Resolved properties unchanged, skipping provider call",
                    extra={"node_id": node.id, "kind": node.kind},
                )
                node.mark_applied(prior.outputs)
                result.status = node.status
                result.outputs = dict(prior.outputs)
                return result
        result.action = action

        if action == Action.REPLACE:
            # Undeclared nodes still depending on the old resource go first.
            remaining = await self._teardown_removed_dependents(node.id, plan)
            if remaining:
                node.mark_blocked(
                    BlockedError(node.id, f"dependent {remaining[0]} was not destroyed")
                )
                result.status = node.status
                result.error = node.error
                return result

        assert self._semaphore is not None
        async with self._semaphore:
            if self.cancelled:
                node.mark_blocked(BlockedError(node.id, CANCELLED_MESSAGE))
                result.status = node.status
                result.error = node.error
                return result
            return await self._apply_with_provider(node, action, prior, properties, result)

    async def _apply_with_provider(
        self,
        node: ResourceNode,
        action: Action,
        prior: ResourceRecord | None,
        properties: dict[str, Any],
        result: NodeResult,
    ) -> NodeResult:
        provider = self._registry.get(node.kind)
        started = time.monotonic()
        node.mark_applying()
        logger.info(
            "Applying node",
            extra={"node_id": node.id, "kind": node.kind, "action": action.value},
        )

        try:
            if action == Action.REPLACE:
                assert prior is not None
                # The old resource belongs to the recorded kind's provider.
                old_provider = self._registry.get(prior.kind)
                await self._call(node, old_provider, Operation.DELETE, result, prior.outputs)
                result.prior_deleted = True
                outputs = await self._call(node, provider, Operation.CREATE, result, properties)
                self._replaced.add(node.id)
            elif action == Action.UPDATE:
                assert prior is not None
                outputs = await self._call(
                    node, provider, Operation.UPDATE, result, properties, prior.outputs
                )
            else:
                outputs = await self._call(node, provider, Operation.CREATE, result, properties)
        except ApplyError as e:
            node.mark_failed(e)
            result.status = node.status
            result.error = e
            result.duration_seconds = time.monotonic() - started
            logger.error(
                "Node apply failed",
                extra={
                    "node_id": node.id,
                    "kind": node.kind,
                    "action": action.value,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            return result

        node.mark_applied(outputs or {})
        result.status = node.status
        result.outputs = dict(node.resolved_outputs)
        result.duration_seconds = time.monotonic() - started
        logger.info(
            "Node applied",
            extra={
                "node_id": node.id,
                "kind": node.kind,
                "action": action.value,
                "duration_seconds": round(result.duration_seconds, 3),
            },
        )
        return result

    # Delete phase

    def _prepare_teardown(self, plan: Plan) -> None:
        """Seed undeclared nodes with their recorded outputs.

        Their deletes start once released: after the apply phase, or earlier
        when a node they depend on is about to be replaced.
        """
        for node_id, node in plan.teardown.nodes.items():
            prior = plan.changes[node_id].prior
            node.mark_planned()
            node.mark_applied(prior.outputs if prior else {})
        self._teardown_done = {node_id: asyncio.Event() for node_id in plan.teardown.nodes}
        self._released = {node_id: asyncio.Event() for node_id in plan.teardown.nodes}

    async def _teardown_removed_dependents(self, node_id: str, plan: Plan) -> list[str]:
        """Destroy undeclared nodes depending on ``node_id``; return those left."""
        removed = sorted(plan.removed_dependents.get(node_id, ()))
        if not removed:
            return []

        logger.info(
            "Deleting undeclared dependents before replacement",
            extra={"node_id": node_id, "dependents": removed},
        )
        for dependent in removed:
            self._released[dependent].set()
        for dependent in removed:
            await self._teardown_done[dependent].wait()
        return [
            dependent for dependent in removed
            if plan.teardown.nodes[dependent].status != NodeStatus.DESTROYED
        ]

    async def _delete_phase(
        self,
        plan: Plan,
        results: asyncio.Queue[NodeResult | None],
        report: ExecutionReport,
    ) -> None:
        teardown = plan.teardown
        if not teardown.nodes:
            return
        done = self._teardown_done

        async def run(node: ResourceNode) -> None:
            change = plan.changes[node.id]
            dependents = sorted(teardown.dependents[node.id])
            try:
                await self._released[node.id].wait()
                for dependent in dependents:
                    await done[dependent].wait()

                remaining = [
                    d for d in dependents
                    if teardown.nodes[d].status != NodeStatus.DESTROYED
                ]
                if remaining:
                    node.mark_blocked(
                        BlockedError(node.id, f"dependent {remaining[0]} was not destroyed")
                    )
                    result = self._result(node, change, sorted(teardown.edges[node.id]))
                else:
                    assert self._semaphore is not None
                    async with self._semaphore:
                        if self.cancelled:
                            node.mark_blocked(BlockedError(node.id, CANCELLED_MESSAGE))
                            result = self._result(node, change, sorted(teardown.edges[node.id]))
                        else:
                            result = await self._delete_node(node, change)
            finally:
                done[node.id].set()

            report.results[node.id] = result
            await results.put(result)

        await asyncio.gather(
            *(
                asyncio.create_task(run(teardown.nodes[node_id]), name=f"delete:{node_id}")
                for node_id in teardown.reverse_order()
            )
        )

    async def _delete_node(self, node: ResourceNode, change: PlannedChange) -> NodeResult:
        prior_outputs = dict(node.resolved_outputs)
        result = NodeResult(
            node_id=node.id,
            kind=node.kind,
            action=Action.DELETE,
            status=node.status,
            dependencies=sorted(change.prior.dependencies) if change.prior else [],
        )
        provider = self._registry.get(node.kind)
        started = time.monotonic()
        node.mark_destroying()
        logger.info("Deleting node", extra={"node_id": node.id, "kind": node.kind})

        try:
            await self._call(node, provider, Operation.DELETE, result, prior_outputs)
        except ApplyError as e:
            node.mark_failed(e)
            result.status = node.status
            result.error = e
            logger.error(
                "Node delete failed",
                extra={"node_id": node.id, "kind": node.kind, "error": str(e)},
            )
        else:
            node.mark_destroyed()
            result.status = node.status
        result.duration_seconds = time.monotonic() - started
        return result

    # Provider calls

    def timeout_for(self, node: ResourceNode, provider: Provider, operation: Operation) -> float:
        """Node override, then provider default, then engine default."""
        if operation.value in node.timeouts:
            return node.timeouts[operation.value]
        provider_timeout = provider.timeout_for(operation)
        if provider_timeout is not None:
            return provider_timeout
        return self._default_timeout_seconds

    async def _call(
        self,
        node: ResourceNode,
        provider: Provider,
        operation: Operation,
        result: NodeResult,
        *args: Any,
    ) -> Any:
        """Call the provider with retry for retry-safe kinds.

        Raises:
            ApplyTimeoutError: If the call exceeds its timeout (never retried).
            ApplyFailureError: If the provider raised, after all retries.
        """
        method: Callable[..., Any] = getattr(provider, operation.value)
        timeout_seconds = self.timeout_for(node, provider, operation)
        max_attempts = 1 + (self._max_retries if provider.retry_safe else 0)

        for attempt in range(1, max_attempts + 1):
            result.attempts += 1
            result.provider_called = True
            try:
                return await self._execute_with_timeout(
                    lambda: method(*args), timeout_seconds, node.id, operation
                )
            except ApplyTimeoutError:
                raise
            except Exception as e:
                if attempt >= max_attempts:
                    raise ApplyFailureError(
                        node.id,
                        f"Node '{node.id}': {operation.value} failed: "
                        f"{type(e).__name__}: {e}",
                    ) from e

                # Exponential backoff with jitter
                backoff = self._retry_backoff_base_seconds * (2 ** (attempt - 1))
                jitter = random.uniform(0, backoff * 0.2)
                wait_time = backoff + jitter
                logger.warning(
                    "Provider call failed, retrying",
                    extra={
                        "node_id": node.id,
                        "operation": operation.value,
                        "attempt": attempt,
                        "max_attempts": max_attempts,
                        "wait_seconds": wait_time,
                        "error": str(e),
                    },
                )
                await asyncio.sleep(wait_time)

        raise AssertionError("retry loop exited without result")

    async def _execute_with_timeout(
        self,
        call: Callable[[], Any],
        timeout_seconds: float,
        node_id: str,
        operation: Operation,
    ) -> Any:
        """Run a blocking provider call in a worker thread with a timeout."""
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(None, call), timeout=timeout_seconds
            )
        except TimeoutError:
            logger.error(
                "Provider call timed out",
                extra={
                    "node_id": node_id,
                    "operation": operation.value,
                    "timeout_seconds": timeout_seconds,
                },
            )
            raise ApplyTimeoutError(node_id, operation, timeout_seconds) from None
