"""Tests for property diffing and normalization rules."""

from __future__ import annotations

import pytest

from stackgraph.diff_normalizer import (
    DEFAULT_NORMALIZATION_RULES,
    DiffNormalizer,
    NormalizationConfig,
    NormalizationRule,
    NormalizationType,
    PropertyChange,
    PropertyDiffer,
)
from stackgraph.nodes import UNKNOWN


class TestNormalizationRule:
    """Tests for NormalizationRule matching."""

    def test_matches_exact_kind(self) -> None:
        rule = NormalizationRule(
            kind="virtual-network",
            path_pattern="*",
            normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        )
        assert rule.matches("virtual-network", "tags") is True
        assert rule.matches("subnet", "tags") is False

    def test_matches_wildcard_kind(self) -> None:
        rule = NormalizationRule(
            kind="*",
            path_pattern="tags",
            normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        )
        assert rule.matches("key-vault", "tags") is True
        assert rule.matches("virtual-machine", "tags") is True

    def test_matches_path_pattern(self) -> None:
        """** spans segments, * stays within one."""
        rule = NormalizationRule(
            kind="*",
            path_pattern="**.enabled",
            normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        )
        assert rule.matches("key-vault", "properties.enabled") is True
        assert rule.matches("key-vault", "properties.logging.retention.enabled") is True
        assert rule.matches("key-vault", "properties.name") is False

    def test_matches_case_insensitive(self) -> None:
        rule = NormalizationRule(
            kind="Key-Vault",
            path_pattern="Properties.Sku.Name",
            normalization_type=NormalizationType.CASE_INSENSITIVE,
        )
        assert rule.matches("key-vault", "properties.sku.name") is True


class TestDiffNormalizer:
    """Tests for DiffNormalizer equivalence."""

    @pytest.fixture
    def normalizer(self) -> DiffNormalizer:
        return DiffNormalizer()

    def test_default_rules_loaded(self, normalizer: DiffNormalizer) -> None:
        assert len(DEFAULT_NORMALIZATION_RULES) > 0
        assert normalizer.are_equivalent({}, None, "key-vault", "tags")

    def test_location_case(self, normalizer: DiffNormalizer) -> None:
        assert normalizer.are_equivalent("EastUS", "eastus", "key-vault", "location")

    def test_boolean_flags(self, normalizer: DiffNormalizer) -> None:
        assert normalizer.are_equivalent(
            "true", True, "key-vault", "properties.enableSoftDelete"
        )
        assert not normalizer.are_equivalent(
            "false", True, "key-vault", "properties.enableSoftDelete"
        )

    def test_key_size_numeric_string(self, normalizer: DiffNormalizer) -> None:
        assert normalizer.are_equivalent("2048", 2048, "key", "properties.keySize")

    def test_address_prefix_order(self, normalizer: DiffNormalizer) -> None:
        assert normalizer.are_equivalent(
            ["10.0.0.0/16", "10.2.0.0/16"],
            ["10.2.0.0/16", "10.0.0.0/16"],
            "virtual-network",
            "properties.addressSpace.addressPrefixes",
        )

    def test_unknown_never_equivalent(self, normalizer: DiffNormalizer) -> None:
        assert not normalizer.are_equivalent("x", UNKNOWN, "key", "name")

    def test_defaults_can_be_disabled(self) -> None:
        normalizer = DiffNormalizer(enable_default_rules=False)
        assert not normalizer.are_equivalent("EastUS", "eastus", "key-vault", "location")

    def test_custom_rule(self) -> None:
        normalizer = DiffNormalizer(
            rules=[
                NormalizationRule(
                    kind="recovery-vault",
                    path_pattern="properties.publicNetworkAccess",
                    normalization_type=NormalizationType.CASE_INSENSITIVE,
                )
            ],
            enable_default_rules=False,
        )
        assert normalizer.are_equivalent(
            "enabled", "Enabled", "recovery-vault", "properties.publicNetworkAccess"
        )
        assert not normalizer.are_equivalent(
            "enabled", "Enabled", "recovery-vault", "properties.sku"
        )


class TestPropertyDiffer:
    """Tests for PropertyDiffer.diff."""

    @pytest.fixture
    def differ(self) -> PropertyDiffer:
        return PropertyDiffer(config=NormalizationConfig())

    def test_no_changes(self, differ: PropertyDiffer) -> None:
        props = {"name": "kv", "properties": {"sku": {"name": "standard"}}}
        assert differ.diff("key-vault", props, dict(props)) == []

    def test_nested_change_has_dotted_path(self, differ: PropertyDiffer) -> None:
        before = {"properties": {"keySize": 2048, "kty": "RSA"}}
        after = {"properties": {"keySize": 4096, "kty": "RSA"}}
        assert differ.diff("key", before, after) == [
            PropertyChange("properties.keySize", 2048, 4096)
        ]

    def test_list_elements_diffed_by_index(self, differ: PropertyDiffer) -> None:
        before = {"rules": [{"port": 22}, {"port": 443}]}
        after = {"rules": [{"port": 22}, {"port": 8443}]}
        changes = differ.diff("thing", before, after)
        assert [c.path for c in changes] == ["rules[1].port"]

    def test_list_length_change_is_one_change(self, differ: PropertyDiffer) -> None:
        changes = differ.diff("thing", {"xs": [1]}, {"xs": [1, 2]})
        assert changes == [PropertyChange("xs", [1], [1, 2])]

    def test_added_and_removed_keys(self, differ: PropertyDiffer) -> None:
        changes = differ.diff("thing", {"a": 1}, {"b": 2})
        assert {c.path for c in changes} == {"a", "b"}

    def test_semantic_noise_ignored(self, differ: PropertyDiffer) -> None:
        before = {"location": "EastUS", "tags": {}}
        after = {"location": "eastus"}
        assert differ.diff("key-vault", before, after) == []

    def test_unordered_list_reordering_ignored(self, differ: PropertyDiffer) -> None:
        before = {"properties": {"keyOps": ["encrypt", "decrypt"]}}
        after = {"properties": {"keyOps": ["decrypt", "encrypt"]}}
        assert differ.diff("key", before, after) == []

    def test_unknown_value_is_computed_change(self, differ: PropertyDiffer) -> None:
        before = {"vaultId": "/v/1"}
        after = {"vaultId": UNKNOWN}
        changes = differ.diff("key", before, after)
        assert len(changes) == 1
        assert changes[0].computed is True
        assert differ.diff("key", before, before) == []

    def test_config_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ENABLE_DEFAULT_NORMALIZATION_RULES", "false")
        differ = PropertyDiffer()
        assert differ.diff("key-vault", {"location": "EastUS"}, {"location": "eastus"}) != []
