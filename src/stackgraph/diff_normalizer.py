"""Property diffing with semantic normalization.

The reconciler compares the desired (resolved) properties of a node with the
properties recorded at its last apply. Values that are syntactically
different but semantically equal must not trigger an update.

DESIGN PHILOSOPHY:
- Semantic equivalence: empty array ≡ null ≡ missing for many properties
- Type coercion: "true" vs true
- Case differences in enum-like values ("Standard" vs "standard")
- Order independence for unordered collections (address prefixes, key ops)

Rules are matched by resource kind and property path glob:
    "*" matches one path segment, "**" matches any number of segments.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .nodes import UNKNOWN

logger = logging.getLogger(__name__)


class NormalizationType(str, Enum):
    """Types of normalization operations."""

    # Empty equivalence: [], {}, "", null, missing are equivalent
    EMPTY_EQUIVALENCE = "empty_equivalence"

    # Boolean normalization: "true", "True", True, 1 are equivalent
    BOOLEAN_NORMALIZE = "boolean_normalize"

    # Numeric string normalization: "100" == 100
    NUMERIC_STRING = "numeric_string"

    # Case normalization for enums/strings
    CASE_INSENSITIVE = "case_insensitive"

    # Array order independence
    ARRAY_UNORDERED = "array_unordered"


@dataclass(frozen=True)
class NormalizationRule:
    """A single normalization rule.

    Attributes:
        kind: Resource kind to match (supports wildcards)
        path_pattern: Property path pattern to match (supports wildcards)
        normalization_type: Type of normalization to apply
        reason: Human-readable explanation
    """

    kind: str
    path_pattern: str
    normalization_type: NormalizationType
    reason: str = ""

    def matches(self, kind: str, path: str) -> bool:
        if self.kind != "*" and not _glob_match(kind.lower(), self.kind.lower()):
            return False
        return self.path_pattern == "*" or _glob_match(path.lower(), self.path_pattern.lower())


def _glob_match(value: str, pattern: str) -> bool:
    """Simple glob matching with * and ** support."""
    regex_pattern = "^"
    i = 0
    while i < len(pattern):
        if pattern[i:i + 2] == "**":
            regex_pattern += ".*"
            i += 2
        elif pattern[i] == "*":
            regex_pattern += "[^.]*"
            i += 1
        elif pattern[i] in r"\.[]{}()+^$|?":
            regex_pattern += "\\" + pattern[i]
            i += 1
        else:
            regex_pattern += pattern[i]
            i += 1
    regex_pattern += "$"

    return bool(re.match(regex_pattern, value))


# Default normalization rules for the kinds used in the ASR + CMK stacks
DEFAULT_NORMALIZATION_RULES: list[NormalizationRule] = [
    NormalizationRule(
        kind="*",
        path_pattern="tags",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty tags object equals null/missing",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.dnsServers",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty DNS servers equals platform DNS",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.enable*",
        normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        reason="Boolean enable flags may be string or bool",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.enabled*",
        normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        reason="Boolean enabled flags may be string or bool",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.sku.name",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="SKU names may have case variations",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="location",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Region names are case-insensitive",
    ),
    NormalizationRule(
        kind="virtual-network",
        path_pattern="**.addressPrefixes",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Address prefix order doesn't matter",
    ),
    NormalizationRule(
        kind="key",
        path_pattern="**.keyOps",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Key operation order doesn't matter",
    ),
    NormalizationRule(
        kind="key",
        path_pattern="**.keySize",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="Key size may be given as string",
    ),
    NormalizationRule(
        kind="access-policy",
        path_pattern="**.permissions.*",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Permission order doesn't matter",
    ),
]


@dataclass(frozen=True)
class PropertyChange:
    """A single property-level difference."""

    path: str
    before: Any
    after: Any

    @property
    def computed(self) -> bool:
        """True when the new value is only known after a dependency applies."""
        return _contains_unknown(self.after)


def _contains_unknown(value: Any) -> bool:
    if value is UNKNOWN:
        return True
    if isinstance(value, dict):
        return any(_contains_unknown(v) for v in value.values())
    if isinstance(value, list | tuple):
        return any(_contains_unknown(v) for v in value)
    return False


class DiffNormalizer:
    """Normalizes values to detect purely syntactic differences."""

    def __init__(
        self,
        rules: list[NormalizationRule] | None = None,
        enable_default_rules: bool = True,
    ) -> None:
        self._rules: list[NormalizationRule] = []
        if enable_default_rules:
            self._rules.extend(DEFAULT_NORMALIZATION_RULES)
        if rules:
            self._rules.extend(rules)

    def normalize_value(self, value: Any, kind: str, path: str) -> Any:
        """Normalize a value based on applicable rules."""
        normalized = value
        for rule in self._rules:
            if rule.matches(kind, path):
                normalized = self._apply_normalization(normalized, rule)
        return normalized

    def is_unordered(self, kind: str, path: str) -> bool:
        return any(
            rule.normalization_type == NormalizationType.ARRAY_UNORDERED
            and rule.matches(kind, path)
            for rule in self._rules
        )

    def _apply_normalization(self, value: Any, rule: NormalizationRule) -> Any:
        match rule.normalization_type:
            case NormalizationType.EMPTY_EQUIVALENCE:
                return self._normalize_empty(value)
            case NormalizationType.BOOLEAN_NORMALIZE:
                return self._normalize_boolean(value)
            case NormalizationType.NUMERIC_STRING:
                return self._normalize_numeric_string(value)
            case NormalizationType.CASE_INSENSITIVE:
                return self._normalize_case(value)
            case NormalizationType.ARRAY_UNORDERED:
                return self._normalize_array_order(value)
            case _:
                return value

    def _normalize_empty(self, value: Any) -> Any:
        """[], {}, "", null all become None for comparison."""
        if value in ("", [], {}):
            return None
        return value

    def _normalize_boolean(self, value: Any) -> bool | Any:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            if value.lower() in ("true", "yes", "1", "on"):
                return True
            if value.lower() in ("false", "no", "0", "off"):
                return False
        if isinstance(value, int):
            if value == 1:
                return True
            if value == 0:
                return False
        return value

    def _normalize_numeric_string(self, value: Any) -> int | float | Any:
        if isinstance(value, str):
            try:
                if "." in value:
                    return float(value)
                return int(value)
            except ValueError:
                pass
        return value

    def _normalize_case(self, value: Any) -> str | Any:
        if isinstance(value, str):
            return value.lower()
        return value

    def _normalize_array_order(self, value: Any) -> tuple | Any:
        """Sort arrays to make order irrelevant; tuples for hashability."""
        if isinstance(value, list):
            try:
                return tuple(sorted(value, key=lambda x: str(x)))
            except TypeError:
                return value
        return value

    def are_equivalent(self, before: Any, after: Any, kind: str, path: str) -> bool:
        if before is UNKNOWN or after is UNKNOWN:
            return False
        return self.normalize_value(before, kind, path) == self.normalize_value(
            after, kind, path
        )


@dataclass
class NormalizationConfig:
    """Configuration for diff normalization."""

    rules: list[NormalizationRule] = field(default_factory=list)
    enable_default_rules: bool = True
    log_normalizations: bool = False

    @classmethod
    def from_env(cls) -> NormalizationConfig:
        """Load configuration from environment.

        Environment Variables:
            ENABLE_DEFAULT_NORMALIZATION_RULES: If "false", disable defaults
            LOG_NORMALIZATIONS: If "true", log when differences are normalized away
        """
        return cls(
            enable_default_rules=os.environ.get(
                "ENABLE_DEFAULT_NORMALIZATION_RULES", "true"
            ).lower() in ("true", "1", "yes"),
            log_normalizations=os.environ.get(
                "LOG_NORMALIZATIONS", "false"
            ).lower() in ("true", "1", "yes"),
        )


class PropertyDiffer:
    """Computes property-level changes between recorded and desired state."""

    def __init__(
        self,
        normalizer: DiffNormalizer | None = None,
        config: NormalizationConfig | None = None,
    ) -> None:
        self._config = config or NormalizationConfig.from_env()
        self._normalizer = normalizer or DiffNormalizer(
            rules=self._config.rules,
            enable_default_rules=self._config.enable_default_rules,
        )

    @property
    def normalizer(self) -> DiffNormalizer:
        return self._normalizer

    def diff(
        self, kind: str, before: dict[str, Any], after: dict[str, Any]
    ) -> list[PropertyChange]:
        """Return the significant changes from ``before`` to ``after``.

        Missing keys compare as None. Nested mappings are walked key by key;
        ordered lists of equal length element by element.
        """
        changes: list[PropertyChange] = []
        self._diff(kind, "", before, after, changes)
        return changes

    def _diff(
        self,
        kind: str,
        path: str,
        before: Any,
        after: Any,
        changes: list[PropertyChange],
    ) -> None:
        if path and self._normalizer.are_equivalent(before, after, kind, path):
            if before != after and self._config.log_normalizations:
                logger.debug(
                    "Change normalized away",
                    extra={"kind": kind, "path": path},
                )
            return

        if isinstance(before, dict) and isinstance(after, dict):
            for key in sorted(set(before) | set(after), key=str):
                child = f"{path}.{key}" if path else str(key)
                self._diff(kind, child, before.get(key), after.get(key), changes)
            return

        if (
            isinstance(before, list)
            and isinstance(after, list)
            and len(before) == len(after)
            and not self._normalizer.is_unordered(kind, path)
        ):
            for index, (old, new) in enumerate(zip(before, after, strict=True)):
                self._diff(kind, f"{path}[{index}]", old, new, changes)
            return

        if before == after and not _contains_unknown(after):
            return

        changes.append(PropertyChange(path=path, before=before, after=after))
