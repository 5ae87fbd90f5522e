"""Stack file loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary. Secret
parameters are read from the environment and wrapped in Secret immediately.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_DECLARATION_FILE_SIZE_BYTES
from .interpolation import InterpolationError, ValueContext, compile_value
from .models import StackDeclaration
from .nodes import ResourceNode
from .security import Secret
from .templates import TemplateError, expand_resources

logger = logging.getLogger(__name__)


class DeclarationLoadError(Exception):
    """Raised when a stack file cannot be loaded or fails validation."""

    pass


@dataclass
class LoadedStack:
    """A validated stack: nodes ready for graph building, plus exports."""

    name: str
    nodes: list[ResourceNode] = field(default_factory=list)
    exports: dict[str, Any] = field(default_factory=dict)
    parameters: dict[str, Any] = field(default_factory=dict)


def read_declaration(path: Path) -> StackDeclaration:
    """Read and validate a stack file.

    Raises:
        DeclarationLoadError: If the file cannot be read or fails validation.
    """
    if not path.exists():
        raise DeclarationLoadError(f"Stack file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise DeclarationLoadError(f"Failed to stat stack file {path}: {e}") from e

    if file_size > MAX_DECLARATION_FILE_SIZE_BYTES:
        raise DeclarationLoadError(
            f"Stack file exceeds maximum size of {MAX_DECLARATION_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise DeclarationLoadError(f"Failed to read stack file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise DeclarationLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise DeclarationLoadError(f"Stack file must contain a YAML mapping: {path}")

    try:
        declaration = StackDeclaration.model_validate(raw_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise DeclarationLoadError(f"Validation failed for {path}:\n{error_list}") from e

    return declaration


def resolve_parameters(
    declaration: StackDeclaration, env: Mapping[str, str] | None = None
) -> dict[str, Any]:
    """Resolve config parameters from value, environment or default.

    Raises:
        DeclarationLoadError: Listing every parameter without a value.
    """
    env = os.environ if env is None else env
    params: dict[str, Any] = {}
    missing: list[str] = []

    for name, param in declaration.spec.config.items():
        if param.value is not None:
            value = param.value
        elif param.env and param.env in env:
            value = env[param.env]
        elif param.default is not None:
            value = param.default
        else:
            source = f" (environment variable {param.env})" if param.env else ""
            missing.append(f"{name}{source}")
            continue
        params[name] = Secret(value) if param.secret else value

    if missing:
        raise DeclarationLoadError(
            "Missing values for config parameters:\n  - " + "\n  - ".join(missing)
        )
    return params


def build_stack(
    declaration: StackDeclaration, env: Mapping[str, str] | None = None
) -> LoadedStack:
    """Turn a validated declaration into ResourceNodes and compiled exports.

    Raises:
        DeclarationLoadError: On unknown parameters, template errors or
            invalid node definitions.
    """
    params = resolve_parameters(declaration, env)
    root = ValueContext(params=params)
    stack = LoadedStack(name=declaration.name, parameters=params)

    try:
        for item in expand_resources(declaration.spec, root):
            decl = item.declaration
            stack.nodes.append(
                ResourceNode(
                    id=item.node_id,
                    kind=decl.kind,
                    desired_properties=compile_value(
                        decl.properties, item.context, item.node_id
                    ),
                    explicit_dependencies=item.qualified_dependencies(),
                    replace_on_changes=tuple(decl.replace_on_changes),
                    timeouts=dict(decl.timeouts),
                )
            )

        stack.exports = {
            name: compile_value(value, root, f"exports.{name}")
            for name, value in declaration.spec.exports.items()
        }
    except (InterpolationError, TemplateError) as e:
        raise DeclarationLoadError(f"Stack '{declaration.name}': {e}") from e
    except ValueError as e:
        raise DeclarationLoadError(f"Stack '{declaration.name}': invalid node: {e}") from e

    logger.info(
        "Loaded stack",
        extra={
            "stack": stack.name,
            "node_count": len(stack.nodes),
            "export_count": len(stack.exports),
        },
    )
    return stack


def load_stack(path: Path, env: Mapping[str, str] | None = None) -> LoadedStack:
    """Load, validate and compile a stack file."""
    return build_stack(read_declaration(path), env)
