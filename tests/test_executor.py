"""Tests for concurrent plan execution against recording providers."""

from __future__ import annotations

import asyncio

import pytest
from provider_mock import (
    CallLog,
    RecordingProvider,
    apply_nodes,
    build_node,
    destroy_all,
    ref,
)

from stackgraph.dependency import CyclicDependencyError, InvalidReferenceError
from stackgraph.executor import (
    CANCELLED_MESSAGE,
    ApplyFailureError,
    ApplyTimeoutError,
    BlockedError,
    PlanExecutor,
)
from stackgraph.nodes import NodeStatus
from stackgraph.plan import Action
from stackgraph.providers import ProviderRegistry
from stackgraph.security import SECRET_FINGERPRINT_PREFIX, Secret


@pytest.fixture
def log() -> CallLog:
    return CallLog()


@pytest.fixture
def things(log: CallLog) -> RecordingProvider:
    return RecordingProvider("thing", log=log)


@pytest.fixture
def keys(log: CallLog) -> RecordingProvider:
    return RecordingProvider(
        "key", log=log, replace_on_changes=["properties.kty"], computed=["principalId"]
    )


@pytest.fixture
def registry(things: RecordingProvider, keys: RecordingProvider) -> ProviderRegistry:
    return ProviderRegistry([things, keys])


def _diamond() -> list:
    return [
        build_node("rg"),
        build_node("vnet", group=ref("rg.name")),
        build_node("vault", group=ref("rg.name")),
        build_node("subnet", vnet=ref("vnet.id")),
        build_node("key", "key", vault=ref("vault.id"), properties={"kty": "RSA"}),
        build_node("vm", subnet=ref("subnet.id"), key=ref("key.principalId")),
    ]


class TestOrdering:
    """Tests for dependency ordering under concurrency."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("attempt", range(3))
    async def test_prerequisites_finish_first_with_random_delays(
        self,
        registry: ProviderRegistry,
        things: RecordingProvider,
        keys: RecordingProvider,
        log: CallLog,
        attempt: int,
    ) -> None:
        things.random_delays(0.02)
        keys.random_delays(0.02)

        run = await apply_nodes(registry, _diamond(), max_parallel_applies=8)

        assert run.report.success
        for node_id, deps in run.graph.edges.items():
            for dep in deps:
                assert log.finished_before("create", dep, "create", node_id)

    @pytest.mark.asyncio
    async def test_references_resolved_from_prerequisite_outputs(
        self, registry: ProviderRegistry, log: CallLog
    ) -> None:
        run = await apply_nodes(registry, _diamond())

        vm_call = next(c for c in log.calls if c.name == "vm")
        assert vm_call.properties["subnet"] == "/thing/subnet"
        assert vm_call.properties["key"] == "key-principalId-1"
        assert run.state.get("vm").properties["key"] == "key-principalId-1"

    @pytest.mark.asyncio
    async def test_policy_receives_generated_principal_as_literal(
        self, registry: ProviderRegistry, log: CallLog
    ) -> None:
        """Vault, then key set, then an access policy granting the key set's identity."""
        nodes = [
            build_node("policy", objectId=ref("keySet.principalId"), vault=ref("vault.name")),
            build_node("keySet", "key", vaultId=ref("vault.id"), properties={"kty": "RSA"}),
            build_node("vault"),
        ]

        run = await apply_nodes(registry, nodes)

        assert run.report.success
        assert log.names("create") == ["vault", "keySet", "policy"]
        policy_call = next(c for c in log.calls if c.name == "policy")
        assert policy_call.properties == {
            "name": "policy",
            "objectId": "keySet-principalId-1",
            "vault": "vault",
        }

    @pytest.mark.asyncio
    async def test_reference_cycle_makes_no_provider_calls(
        self, registry: ProviderRegistry, log: CallLog
    ) -> None:
        with pytest.raises(CyclicDependencyError):
            await apply_nodes(
                registry,
                [build_node("a", peer=ref("b.id")), build_node("b", peer=ref("a.id"))],
            )
        assert log.count() == 0

    @pytest.mark.asyncio
    async def test_removing_referenced_node_makes_no_provider_calls(
        self, registry: ProviderRegistry, log: CallLog
    ) -> None:
        first = await apply_nodes(registry, [build_node("a"), build_node("b", source=ref("a.id"))])
        log.clear()

        with pytest.raises(InvalidReferenceError, match="a"):
            await apply_nodes(registry, [build_node("b", source=ref("a.id"))], first.state)

        assert log.count() == 0
        assert sorted(first.state.resources) == ["a", "b"]

    @pytest.mark.asyncio
    async def test_parallelism_bound(
        self, registry: ProviderRegistry, things: RecordingProvider, log: CallLog
    ) -> None:
        nodes = [build_node(f"n{i}") for i in range(4)]
        for node in nodes:
            things.delay(node.id, 0.02)

        await apply_nodes(registry, nodes, max_parallel_applies=1)

        kinds = [event[0] for event in log.events]
        assert kinds == ["start", "end"] * 4

    @pytest.mark.asyncio
    async def test_independent_nodes_overlap(
        self, registry: ProviderRegistry, things: RecordingProvider, log: CallLog
    ) -> None:
        nodes = [build_node("a"), build_node("b")]
        things.delay("a", 0.1)
        things.delay("b", 0.1)

        await apply_nodes(registry, nodes, max_parallel_applies=4)

        assert [event[0] for event in log.events][:2] == ["start", "start"]


class TestFailureIsolation:
    """Tests for failures staying local to their subgraph."""

    @pytest.mark.asyncio
    async def test_failure_blocks_dependents_only(
        self, registry: ProviderRegistry, things: RecordingProvider, log: CallLog
    ) -> None:
        things.fail("a")
        nodes = [
            build_node("a"),
            build_node("b", source=ref("a.id")),
            build_node("c", source=ref("b.id")),
            build_node("other"),
        ]

        run = await apply_nodes(registry, nodes)

        assert run.status("a") == "failed"
        assert run.status("b") == "blocked"
        assert run.status("c") == "blocked"
        assert run.status("other") == "applied"
        assert run.report.failed == ["a"]
        assert run.report.blocked == ["b", "c"]
        assert not run.report.success
        assert set(log.names()) == {"a", "other"}
        assert sorted(run.state.resources) == ["other"]

    @pytest.mark.asyncio
    async def test_blocked_reason_names_prerequisite(
        self, registry: ProviderRegistry, things: RecordingProvider
    ) -> None:
        things.fail("a")
        run = await apply_nodes(registry, [build_node("a"), build_node("b", depends_on=["a"])])

        error = run.result("b").error
        assert isinstance(error, BlockedError)
        assert error.reason == "prerequisite a did not apply"

    @pytest.mark.asyncio
    async def test_failure_error_carries_provider_message(
        self, registry: ProviderRegistry, things: RecordingProvider
    ) -> None:
        things.fail("a")
        run = await apply_nodes(registry, [build_node("a")])

        error = run.result("a").error
        assert isinstance(error, ApplyFailureError)
        assert "Node 'a': create failed: ProviderError" in str(error)

    @pytest.mark.asyncio
    async def test_noop_dependent_of_failed_update_is_blocked(
        self, registry: ProviderRegistry, things: RecordingProvider
    ) -> None:
        first = await apply_nodes(
            registry, [build_node("a", size=1), build_node("b", depends_on=["a"])]
        )
        things.fail("a", operation="update")

        second = await apply_nodes(
            registry,
            [build_node("a", size=2), build_node("b", depends_on=["a"])],
            first.state,
        )

        assert second.plan.changes["b"].action == Action.NOOP
        assert second.status("a") == "failed"
        assert second.status("b") == "blocked"
        # Prior records are kept.
        assert second.state.get("a").properties["size"] == 1
        assert second.state.get("b") is not None

    @pytest.mark.asyncio
    async def test_unresolvable_output_fails_node(self, registry: ProviderRegistry) -> None:
        run = await apply_nodes(
            registry, [build_node("a"), build_node("b", x=ref("a.missing"))]
        )

        assert run.status("b") == "failed"
        assert "unresolved output" in str(run.result("b").error)
        assert run.result("b").provider_called is False


class TestRetriesAndTimeouts:
    """Tests for retry policy and per-operation timeouts."""

    @pytest.mark.asyncio
    async def test_retry_safe_provider_is_retried(self, log: CallLog) -> None:
        provider = RecordingProvider("thing", log=log, retry_safe=True)
        provider.fail("a", times=2)

        run = await apply_nodes(ProviderRegistry([provider]), [build_node("a")], max_retries=3)

        assert run.status("a") == "applied"
        assert run.result("a").attempts == 3
        assert run.report.provider_calls == 3

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, log: CallLog) -> None:
        provider = RecordingProvider("thing", log=log, retry_safe=True)
        provider.fail("a", times=5)

        run = await apply_nodes(ProviderRegistry([provider]), [build_node("a")], max_retries=2)

        assert run.status("a") == "failed"
        assert run.result("a").attempts == 3

    @pytest.mark.asyncio
    async def test_unsafe_provider_not_retried(
        self, registry: ProviderRegistry, things: RecordingProvider
    ) -> None:
        things.fail("a")

        run = await apply_nodes(registry, [build_node("a")], max_retries=3)

        assert run.status("a") == "failed"
        assert run.result("a").attempts == 1

    @pytest.mark.asyncio
    async def test_timeout_fails_node_without_retry(self, log: CallLog) -> None:
        provider = RecordingProvider("thing", log=log, retry_safe=True)
        provider.delay("slow", 0.3)

        run = await apply_nodes(
            ProviderRegistry([provider]),
            [build_node("slow", timeouts={"create": 0.05}), build_node("after", depends_on=["slow"])],
            max_retries=3,
        )

        error = run.result("slow").error
        assert isinstance(error, ApplyTimeoutError)
        assert error.timeout_seconds == 0.05
        assert run.result("slow").attempts == 1
        assert run.status("after") == "blocked"

    def test_timeout_precedence(self, registry: ProviderRegistry) -> None:
        from stackgraph.providers import Operation
        from stackgraph.state import DeploymentState

        provider = RecordingProvider("thing", timeouts={"create": 30})
        executor = PlanExecutor(registry, DeploymentState(), default_timeout_seconds=600)

        assert executor.timeout_for(build_node("a"), provider, Operation.CREATE) == 30
        assert executor.timeout_for(build_node("a"), provider, Operation.DELETE) == 600
        node = build_node("a", timeouts={"create": 5})
        assert executor.timeout_for(node, provider, Operation.CREATE) == 5


class TestCancellation:
    """Tests for cooperative cancellation."""

    @pytest.mark.asyncio
    async def test_cancel_before_start_blocks_everything(
        self, registry: ProviderRegistry, log: CallLog
    ) -> None:
        from stackgraph.state import DeploymentState

        state = DeploymentState(stack="test")
        executor = PlanExecutor(registry, state)
        executor.cancel()

        run = await apply_nodes(registry, _diamond(), state, executor=executor)

        assert run.report.cancelled is True
        assert run.report.blocked == sorted(n.id for n in _diamond())
        assert log.count() == 0
        assert state.resources == {}

    @pytest.mark.asyncio
    async def test_in_flight_call_completes(
        self, registry: ProviderRegistry, things: RecordingProvider
    ) -> None:
        from stackgraph.state import DeploymentState

        things.delay("a", 0.2)
        state = DeploymentState(stack="test")
        executor = PlanExecutor(registry, state)

        task = asyncio.create_task(
            apply_nodes(
                registry,
                [build_node("a"), build_node("b", depends_on=["a"])],
                state,
                executor=executor,
            )
        )
        await asyncio.sleep(0.05)
        executor.cancel()
        run = await task

        assert run.status("a") == "applied"
        assert run.status("b") == "blocked"
        assert run.result("b").error.reason == CANCELLED_MESSAGE
        assert sorted(state.resources) == ["a"]


class TestIdempotence:
    """Tests for second runs and in-place changes."""

    @pytest.mark.asyncio
    async def test_second_run_makes_no_provider_calls(
        self, registry: ProviderRegistry, log: CallLog
    ) -> None:
        first = await apply_nodes(registry, _diamond())
        calls = log.count()
        recorded = first.state.model_dump()["resources"]

        second = await apply_nodes(registry, _diamond(), first.state)

        assert not second.plan.has_changes
        assert second.report.provider_calls == 0
        assert log.count() == calls
        assert second.state.model_dump()["resources"] == recorded

    @pytest.mark.asyncio
    async def test_update_in_place(
        self, registry: ProviderRegistry, log: CallLog
    ) -> None:
        first = await apply_nodes(registry, [build_node("a", size=1)])

        second = await apply_nodes(registry, [build_node("a", size=2)], first.state)

        assert second.plan.changes["a"].action == Action.UPDATE
        assert log.operations("a") == ["create", "update"]
        assert second.state.get("a").properties["size"] == 2

    @pytest.mark.asyncio
    async def test_cascade_without_effective_change_skips_call(
        self, registry: ProviderRegistry, log: CallLog
    ) -> None:
        first = await apply_nodes(
            registry, [build_node("a", size=1), build_node("b", source=ref("a.id"))]
        )

        second = await apply_nodes(
            registry, [build_node("a", size=2), build_node("b", source=ref("a.id"))], first.state
        )

        assert second.plan.changes["b"].cascade is True
        assert second.status("b") == "applied"
        assert log.operations("b") == ["create"]

    @pytest.mark.asyncio
    async def test_secrets_revealed_only_to_provider(
        self, registry: ProviderRegistry, things: RecordingProvider
    ) -> None:
        run = await apply_nodes(registry, [build_node("a", password=Secret("hunter2"))])

        assert things.resources["a"]["password"] == "hunter2"
        stored = run.state.get("a").properties["password"]
        assert stored.startswith(SECRET_FINGERPRINT_PREFIX)


class TestReplacement:
    """Tests for replace-on-change semantics."""

    def _nodes(self, kty: str) -> list:
        return [
            build_node("k", "key", properties={"kty": kty}),
            build_node("user", key=ref("k.id")),
        ]

    @pytest.mark.asyncio
    async def test_replace_deletes_then_creates_and_forces_dependents(
        self, registry: ProviderRegistry, log: CallLog
    ) -> None:
        first = await apply_nodes(registry, self._nodes("RSA"))

        second = await apply_nodes(registry, self._nodes("EC"), first.state)

        assert second.result("k").action == Action.REPLACE
        assert log.operations("k") == ["create", "delete", "create"]
        assert log.operations("user") == ["create", "update"]
        assert second.state.get("k").outputs["generation"] == 2

    @pytest.mark.asyncio
    async def test_dependent_escalates_to_replace_at_apply_time(
        self, registry: ProviderRegistry, log: CallLog
    ) -> None:
        def nodes(kty: str) -> list:
            return [
                build_node("k", "key", properties={"kty": kty}),
                build_node("user", replace_on_changes=["owner"], owner=ref("k.principalId")),
            ]

        first = await apply_nodes(registry, nodes("RSA"))
        second = await apply_nodes(registry, nodes("EC"), first.state)

        assert second.plan.changes["user"].action == Action.UPDATE
        assert second.result("user").action == Action.REPLACE
        assert log.operations("user") == ["create", "delete", "create"]
        assert second.state.get("user").properties["owner"] == "k-principalId-2"

    @pytest.mark.asyncio
    async def test_failed_create_after_replace_delete_drops_record(
        self, registry: ProviderRegistry, keys: RecordingProvider
    ) -> None:
        first = await apply_nodes(registry, self._nodes("RSA"))
        keys.fail("k", operation="create")

        second = await apply_nodes(registry, self._nodes("EC"), first.state)

        assert second.status("k") == "failed"
        assert second.result("k").prior_deleted is True
        assert second.state.get("k") is None
        assert second.status("user") == "blocked"
        assert second.state.get("user") is not None

    @pytest.mark.asyncio
    async def test_kind_change_deletes_through_recorded_kind(self, log: CallLog) -> None:
        old = RecordingProvider("old", log=log)
        new = RecordingProvider("new", log=log)
        registry = ProviderRegistry([old, new])
        first = await apply_nodes(registry, [build_node("x", "old")])

        second = await apply_nodes(registry, [build_node("x", "new")], first.state)

        assert second.result("x").action == Action.REPLACE
        assert second.status("x") == "applied"
        assert [(c.kind, c.operation) for c in log.calls] == [
            ("old", "create"),
            ("old", "delete"),
            ("new", "create"),
        ]
        assert old.resources == {}
        assert "x" in new.resources
        assert second.state.get("x").kind == "new"


class TestTeardown:
    """Tests for the delete phase."""

    def _chain(self) -> list:
        return [
            build_node("vault"),
            build_node("keySet", vaultId=ref("vault.id")),
            build_node("policy", objectId=ref("keySet.name"), vault=ref("vault.name")),
        ]

    @pytest.mark.asyncio
    async def test_destroy_in_reverse_order(
        self, registry: ProviderRegistry, log: CallLog
    ) -> None:
        applied = await apply_nodes(registry, self._chain())
        log.clear()

        run = await destroy_all(registry, applied.state)

        assert run.report.success
        assert log.finished_before("delete", "policy", "delete", "keySet")
        assert log.finished_before("delete", "keySet", "delete", "vault")
        assert run.state.resources == {}
        assert {r.status for r in run.report.results.values()} == {NodeStatus.DESTROYED}

    @pytest.mark.asyncio
    async def test_delete_failure_blocks_prerequisite_deletes(
        self, registry: ProviderRegistry, things: RecordingProvider
    ) -> None:
        applied = await apply_nodes(registry, self._chain())
        things.fail("policy", operation="delete")

        run = await destroy_all(registry, applied.state)

        assert run.status("policy") == "failed"
        assert run.status("keySet") == "blocked"
        assert run.result("keySet").error.reason == "dependent policy was not destroyed"
        assert sorted(run.state.resources) == ["keySet", "policy", "vault"]

    @pytest.mark.asyncio
    async def test_undeclared_nodes_deleted_after_apply(
        self, registry: ProviderRegistry, log: CallLog
    ) -> None:
        first = await apply_nodes(registry, [build_node("a"), build_node("b")])

        second = await apply_nodes(registry, [build_node("a"), build_node("c")], first.state)

        assert second.plan.changes["b"].action == Action.DELETE
        assert sorted(second.state.resources) == ["a", "c"]
        assert log.names("delete") == ["b"]
        assert log.finished_before("create", "c", "delete", "b")

    @pytest.mark.asyncio
    async def test_undeclared_dependent_deleted_before_replacement(self, log: CallLog) -> None:
        registry = ProviderRegistry([RecordingProvider("thing", log=log, replace_on_changes=["size"])])
        first = await apply_nodes(
            registry, [build_node("y", size=1), build_node("x", parent=ref("y.id"))]
        )
        log.clear()

        second = await apply_nodes(registry, [build_node("y", size=2)], first.state)

        assert second.result("y").action == Action.REPLACE
        assert second.plan.removed_dependents == {"y": frozenset({"x"})}
        assert log.events == [
            ("start", "delete", "x"),
            ("end", "delete", "x"),
            ("start", "delete", "y"),
            ("end", "delete", "y"),
            ("start", "create", "y"),
            ("end", "create", "y"),
        ]
        assert second.status("x") == "destroyed"
        assert sorted(second.state.resources) == ["y"]

    @pytest.mark.asyncio
    async def test_chain_of_undeclared_dependents_deleted_first(self, log: CallLog) -> None:
        registry = ProviderRegistry([RecordingProvider("thing", log=log, replace_on_changes=["size"])])
        first = await apply_nodes(
            registry,
            [
                build_node("y", size=1),
                build_node("x", parent=ref("y.id")),
                build_node("w", parent=ref("x.id")),
            ],
        )

        second = await apply_nodes(
            registry, [build_node("y", size=2)], first.state, max_parallel_applies=1
        )

        assert second.report.success
        assert log.finished_before("delete", "w", "delete", "x")
        assert log.finished_before("delete", "x", "delete", "y")

    @pytest.mark.asyncio
    async def test_escalated_replacement_waits_for_undeclared_dependents(
        self, registry: ProviderRegistry, log: CallLog
    ) -> None:
        def nodes(kty: str) -> list:
            return [
                build_node("k", "key", properties={"kty": kty}),
                build_node("user", replace_on_changes=["owner"], owner=ref("k.principalId")),
            ]

        first = await apply_nodes(registry, [*nodes("RSA"), build_node("x", user=ref("user.id"))])
        second = await apply_nodes(registry, nodes("EC"), first.state)

        assert second.plan.changes["user"].action == Action.UPDATE
        assert second.result("user").action == Action.REPLACE
        assert log.finished_before("delete", "x", "delete", "user")
        assert sorted(second.state.resources) == ["k", "user"]

    @pytest.mark.asyncio
    async def test_failed_undeclared_dependent_blocks_replacement(self, log: CallLog) -> None:
        things = RecordingProvider("thing", log=log, replace_on_changes=["size"])
        registry = ProviderRegistry([things])
        first = await apply_nodes(
            registry, [build_node("y", size=1), build_node("x", parent=ref("y.id"))]
        )
        things.fail("x", operation="delete")

        second = await apply_nodes(registry, [build_node("y", size=2)], first.state)

        assert second.status("x") == "failed"
        assert second.status("y") == "blocked"
        assert second.result("y").error.reason == "dependent x was not destroyed"
        assert log.operations("y") == ["create"]
        assert second.state.get("y").properties["size"] == 1
        assert sorted(second.state.resources) == ["x", "y"]
