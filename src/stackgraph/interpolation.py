"""Compilation of declaration value forms into node property values.

Value forms accepted in stack files:

    {"$ref": "node.output.path"}   -> Reference
    {"$join": [part, ...]}         -> Join
    {"$secret": "param"}           -> Secret (param must be declared secret)
    "${param}"                     -> the parameter value, whatever its type
    "prefix-${param}"              -> string, or Join when a part is a reference
    "$${literal}"                  -> "${literal}"

Inside a template instance, ``$ref`` targets and ``dependsOn`` entries that
name a template-local resource are prefixed with ``<instance>/``.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from typing import Any

from .nodes import Join, Reference
from .security import Secret

_PLACEHOLDER = re.compile(r"\$\$\{|\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_EXACT_PLACEHOLDER = re.compile(r"^\$\{([A-Za-z_][A-Za-z0-9_]*)\}$")

_SPECIAL_KEYS = frozenset({"$ref", "$join", "$secret"})


class InterpolationError(ValueError):
    """Raised when a value form is malformed or names an unknown parameter."""

    pass


@dataclass
class ValueContext:
    """Names visible while compiling one resource's values."""

    params: dict[str, Any] = field(default_factory=dict)
    prefix: str = ""
    local_ids: frozenset[str] = frozenset()

    def qualify(self, node_id: str) -> str:
        """Prefix template-local ids with the instance id."""
        if self.prefix and node_id in self.local_ids:
            return f"{self.prefix}/{node_id}"
        return node_id

    def child(
        self, params: dict[str, Any], prefix: str, local_ids: frozenset[str]
    ) -> ValueContext:
        merged = dict(self.params)
        merged.update(params)
        return ValueContext(params=merged, prefix=prefix, local_ids=local_ids)


def compile_value(value: Any, ctx: ValueContext, path: str = "") -> Any:
    """Compile a raw YAML value into literals, References, Joins and Secrets."""
    if isinstance(value, dict):
        special = _SPECIAL_KEYS & set(value)
        if special:
            if len(value) != 1:
                raise InterpolationError(
                    f"{path or '<root>'}: '{sorted(special)[0]}' cannot be combined "
                    "with other keys"
                )
            return _compile_special(value, ctx, path)
        return {
            key: compile_value(item, ctx, f"{path}.{key}" if path else str(key))
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [compile_value(item, ctx, f"{path}[{i}]") for i, item in enumerate(value)]
    if isinstance(value, str):
        return interpolate(value, ctx, path)
    return value


def _compile_special(value: dict[str, Any], ctx: ValueContext, path: str) -> Any:
    if "$ref" in value:
        raw = value["$ref"]
        if not isinstance(raw, str):
            raise InterpolationError(f"{path}: $ref must be a string")
        target = interpolate(raw, ctx, path)
        if not isinstance(target, str):
            raise InterpolationError(f"{path}: $ref must interpolate to a literal string")
        try:
            ref = Reference.parse(target)
        except ValueError as e:
            raise InterpolationError(f"{path}: {e}") from e
        return Reference(node_id=ctx.qualify(ref.node_id), output=ref.output)

    if "$join" in value:
        parts = value["$join"]
        if not isinstance(parts, list):
            raise InterpolationError(f"{path}: $join must be a list")
        compiled = [compile_value(part, ctx, f"{path}[{i}]") for i, part in enumerate(parts)]
        for part in compiled:
            if isinstance(part, dict | list):
                raise InterpolationError(f"{path}: $join parts must be scalars or references")
        return _join(compiled)

    name = value["$secret"]
    if name not in ctx.params:
        raise InterpolationError(f"{path}: unknown parameter '{name}'")
    secret = ctx.params[name]
    if not isinstance(secret, Secret):
        raise InterpolationError(f"{path}: parameter '{name}' is not declared secret")
    return secret


def _join(parts: list[Any]) -> Any:
    """Flatten nested joins; fold to a plain string when nothing is deferred."""
    flat: list[Any] = []
    for part in parts:
        if isinstance(part, Join):
            flat.extend(part.parts)
        else:
            flat.append(part)
    if any(isinstance(p, Reference | Secret) for p in flat):
        return Join(parts=tuple(flat))
    return "".join("" if p is None else str(p) for p in flat)


def interpolate(text: str, ctx: ValueContext, path: str = "") -> Any:
    """Substitute ``${param}`` placeholders in ``text``.

    Raises:
        InterpolationError: For unknown parameters or partial use of a secret.
    """
    exact = _EXACT_PLACEHOLDER.match(text)
    if exact:
        return copy.deepcopy(_param(exact.group(1), ctx, path))

    parts: list[Any] = []
    pos = 0
    for match in _PLACEHOLDER.finditer(text):
        parts.append(text[pos:match.start()])
        if match.group(0) == "$${":
            parts.append("${")
        else:
            param = _param(match.group(1), ctx, path)
            if isinstance(param, Secret):
                raise InterpolationError(
                    f"{path}: secret parameter '{match.group(1)}' cannot be interpolated "
                    "into a string; use $secret or $join"
                )
            if isinstance(param, dict | list):
                raise InterpolationError(
                    f"{path}: structured parameter '{match.group(1)}' cannot be "
                    "interpolated into a string"
                )
            parts.append(param)
        pos = match.end()
    if not parts:
        return text
    parts.append(text[pos:])
    return _join([p for p in parts if p != ""])


def _param(name: str, ctx: ValueContext, path: str) -> Any:
    if name not in ctx.params:
        raise InterpolationError(f"{path or '<root>'}: unknown parameter '{name}'")
    return ctx.params[name]
