"""Tests for the resource node model."""

from __future__ import annotations

import pytest

from stackgraph.nodes import (
    UNKNOWN,
    InvalidTransitionError,
    Join,
    NodeStatus,
    Reference,
    ResourceNode,
    contains_unknown,
    iter_references,
    lookup_output,
    resolve_value,
)
from stackgraph.security import Secret


class TestReference:
    """Tests for Reference parsing."""

    def test_parse_simple(self) -> None:
        ref = Reference.parse("vault.id")
        assert ref == Reference("vault", "id")
        assert str(ref) == "vault.id"

    def test_parse_nested_output_path(self) -> None:
        ref = Reference.parse("keySet.identity.principalId")
        assert ref.node_id == "keySet"
        assert ref.output == "identity.principalId"

    def test_parse_template_qualified_id(self) -> None:
        ref = Reference.parse("source/keyVault.vaultUri")
        assert ref.node_id == "source/keyVault"

    @pytest.mark.parametrize("value", ["vault", "vault.", ".id", ""])
    def test_parse_rejects_malformed(self, value: str) -> None:
        with pytest.raises(ValueError, match="node.output"):
            Reference.parse(value)


class TestResourceNode:
    """Tests for ResourceNode construction and dependency discovery."""

    def test_defaults(self) -> None:
        node = ResourceNode(id="vault", kind="key-vault")
        assert node.status == NodeStatus.PENDING
        assert node.resolved_outputs == {}
        assert node.dependency_ids() == set()

    @pytest.mark.parametrize("node_id", ["", "1abc", "a.b", "a//b", "a b"])
    def test_invalid_ids_rejected(self, node_id: str) -> None:
        with pytest.raises(ValueError):
            ResourceNode(id=node_id, kind="thing")

    def test_empty_kind_rejected(self) -> None:
        with pytest.raises(ValueError, match="kind"):
            ResourceNode(id="a", kind="")

    def test_dependencies_from_references_and_hints(self) -> None:
        node = ResourceNode(
            id="policy",
            kind="access-policy",
            desired_properties={
                "vaultName": Reference("vault", "name"),
                "properties": {
                    "accessPolicies": [
                        {"objectId": Reference("keySet", "principalId")},
                    ]
                },
                "uri": Join(("https://", Reference("vault", "name"), ".vault.azure.net")),
            },
            explicit_dependencies={"network"},
        )
        assert node.dependency_ids() == {"vault", "keySet", "network"}

    def test_references_carry_property_paths(self) -> None:
        node = ResourceNode(
            id="vm",
            kind="virtual-machine",
            desired_properties={"nics": [{"id": Reference("nic", "id")}]},
        )
        assert node.references() == [("nics[0].id", Reference("nic", "id"))]


class TestTransitions:
    """Tests for node status transitions."""

    def test_happy_path(self) -> None:
        node = ResourceNode(id="a", kind="thing")
        node.mark_planned()
        node.mark_applying()
        node.mark_applied({"id": "/a"})
        assert node.status == NodeStatus.APPLIED
        assert node.resolved_outputs == {"id": "/a"}

    def test_outputs_cleared_when_leaving_applied(self) -> None:
        node = ResourceNode(id="a", kind="thing")
        node.mark_planned()
        node.mark_applied({"id": "/a"})
        node.mark_destroying()
        assert node.resolved_outputs == {}
        node.mark_destroyed()
        assert node.status == NodeStatus.DESTROYED

    def test_failed_records_error(self) -> None:
        node = ResourceNode(id="a", kind="thing")
        node.mark_planned()
        node.mark_applying()
        error = RuntimeError("boom")
        node.mark_failed(error)
        assert node.status == NodeStatus.FAILED
        assert node.error is error
        assert node.resolved_outputs == {}

    def test_blocked_from_planned(self) -> None:
        node = ResourceNode(id="a", kind="thing")
        node.mark_planned()
        node.mark_blocked(RuntimeError("prerequisite failed"))
        assert node.status == NodeStatus.BLOCKED

    def test_cannot_apply_without_planning(self) -> None:
        node = ResourceNode(id="a", kind="thing")
        with pytest.raises(InvalidTransitionError, match="pending to applying"):
            node.mark_applying()

    def test_terminal_states_are_final(self) -> None:
        node = ResourceNode(id="a", kind="thing")
        node.mark_planned()
        node.mark_blocked(RuntimeError("x"))
        with pytest.raises(InvalidTransitionError):
            node.mark_applying()


class TestValueResolution:
    """Tests for resolving references inside property values."""

    def test_iter_references_walks_joins(self) -> None:
        value = {"a": Join(("x", Reference("n", "o"), "y"))}
        assert list(iter_references(value)) == [("a", Reference("n", "o"))]

    def test_lookup_output_nested(self) -> None:
        outputs = {"identity": {"principalId": "p-1"}}
        assert lookup_output(outputs, "identity.principalId") == "p-1"

    def test_lookup_output_missing_raises(self) -> None:
        with pytest.raises(KeyError):
            lookup_output({"identity": {}}, "identity.principalId")

    def test_resolve_value(self) -> None:
        outputs = {"vault": {"id": "/v", "name": "kv"}}

        def lookup(ref: Reference) -> object:
            return outputs[ref.node_id][ref.output]

        value = {
            "id": Reference("vault", "id"),
            "uri": Join(("https://", Reference("vault", "name"), ".vault.azure.net/")),
            "list": [Reference("vault", "name"), 3],
        }
        assert resolve_value(value, lookup) == {
            "id": "/v",
            "uri": "https://kv.vault.azure.net/",
            "list": ["kv", 3],
        }

    def test_join_with_unknown_part_is_unknown(self) -> None:
        value = Join(("a", Reference("n", "o")))
        assert resolve_value(value, lambda ref: UNKNOWN) is UNKNOWN
        assert contains_unknown({"x": [resolve_value(value, lambda ref: UNKNOWN)]})

    def test_join_with_secret_stays_secret(self) -> None:
        value = Join(("user:", Secret("pw")))
        resolved = resolve_value(value, lambda ref: None)
        assert isinstance(resolved, Secret)
        assert resolved.reveal() == "user:pw"

    def test_resolve_does_not_alias_input(self) -> None:
        value = {"tags": {"env": "dev"}}
        resolved = resolve_value(value, lambda ref: None)
        resolved["tags"]["env"] = "prod"
        assert value["tags"]["env"] == "dev"
