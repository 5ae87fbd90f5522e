"""Pydantic models for stack declarations.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Clean transformation to ResourceNodes (see loader.py)

A stack file looks like:

```yaml
apiVersion: stackgraph/v1
kind: Stack
metadata:
  name: asr-cmk-poc
spec:
  config:
    location: {value: eastus}
    vmAdminPassword: {env: VM_ADMIN_PASSWORD, secret: true}
  templates:
    region-network:
      parameters: [prefix, location]
      resources:
        - id: vnet
          kind: virtual-network
          properties: {name: "${prefix}-vnet", location: "${location}"}
  resources:
    - use: region-network
      id: source
      with: {prefix: source, location: "${location}"}
    - id: nic
      kind: network-interface
      properties:
        subnetId: {$ref: source/subnet.id}
  exports:
    sourceVNetId: {$ref: source/vnet.id}
```
"""

from __future__ import annotations

import re
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .nodes import VALID_NODE_ID_PATTERN

API_VERSION = "stackgraph/v1"

VALID_KIND_PATTERN = r"^[a-z][a-z0-9-]{0,62}$"
VALID_PARAMETER_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]*$"
VALID_OPERATIONS = frozenset({"create", "update", "delete"})


class ParameterDeclaration(BaseModel):
    """A stack configuration parameter.

    Exactly one source is used, in order: ``value``, then the environment
    variable ``env``, then ``default``. Secret parameters must come from the
    environment so they never live in the stack file.
    """

    model_config = ConfigDict(extra="forbid")

    value: Any = None
    env: str | None = None
    default: Any = None
    secret: bool = False
    description: str | None = None

    @model_validator(mode="after")
    def validate_secret_source(self) -> ParameterDeclaration:
        if self.secret and self.value is not None:
            raise ValueError("secret parameters must be read from 'env', not 'value'")
        return self


class ResourceDeclaration(BaseModel):
    """A single resource declaration."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: Annotated[str, Field(min_length=1, max_length=128)]
    kind: str
    properties: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    replace_on_changes: list[str] = Field(default_factory=list, alias="replaceOnChanges")
    timeouts: dict[str, Annotated[int, Field(ge=1, le=7200)]] = Field(default_factory=dict)

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not re.match(VALID_NODE_ID_PATTERN, v):
            raise ValueError(f"id must match {VALID_NODE_ID_PATTERN}")
        return v

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        if not re.match(VALID_KIND_PATTERN, v):
            raise ValueError(f"kind must match {VALID_KIND_PATTERN}")
        return v

    @field_validator("timeouts")
    @classmethod
    def validate_timeouts(cls, v: dict[str, int]) -> dict[str, int]:
        unknown = set(v) - VALID_OPERATIONS
        if unknown:
            raise ValueError(f"unknown timeout operations {sorted(unknown)}")
        return v


class TemplateInstance(BaseModel):
    """Instantiation of a reusable subgraph template."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    use: Annotated[str, Field(min_length=1)]
    id: Annotated[str, Field(min_length=1, max_length=64)]
    with_: dict[str, Any] = Field(default_factory=dict, alias="with")
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not re.match(VALID_NODE_ID_PATTERN, v):
            raise ValueError(f"id must match {VALID_NODE_ID_PATTERN}")
        return v


class TemplateDeclaration(BaseModel):
    """A reusable subgraph (e.g. a region networking stack)."""

    model_config = ConfigDict(extra="forbid")

    description: str | None = None
    parameters: list[str] = Field(default_factory=list)
    resources: list[ResourceDeclaration] = Field(min_length=1)

    @field_validator("parameters")
    @classmethod
    def validate_parameters(cls, v: list[str]) -> list[str]:
        for name in v:
            if not re.match(VALID_PARAMETER_PATTERN, name):
                raise ValueError(f"parameter name must match {VALID_PARAMETER_PATTERN}: {name}")
        if len(set(v)) != len(v):
            raise ValueError("parameter names must be unique")
        return v


class StackSpec(BaseModel):
    """The ``spec`` section of a stack file."""

    model_config = ConfigDict(extra="forbid")

    config: dict[str, ParameterDeclaration] = Field(default_factory=dict)
    templates: dict[str, TemplateDeclaration] = Field(default_factory=dict)
    resources: list[ResourceDeclaration | TemplateInstance] = Field(default_factory=list)
    exports: dict[str, Any] = Field(default_factory=dict)

    @field_validator("config")
    @classmethod
    def validate_config_names(
        cls, v: dict[str, ParameterDeclaration]
    ) -> dict[str, ParameterDeclaration]:
        for name in v:
            if not re.match(VALID_PARAMETER_PATTERN, name):
                raise ValueError(f"config name must match {VALID_PARAMETER_PATTERN}: {name}")
        return v


class StackMetadata(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Annotated[str, Field(min_length=1, max_length=64)]
    description: str | None = None


class StackDeclaration(BaseModel):
    """A complete stack file."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    api_version: Literal["stackgraph/v1"] = Field(alias="apiVersion")
    kind: Literal["Stack"] = "Stack"
    metadata: StackMetadata
    spec: StackSpec

    @property
    def name(self) -> str:
        return self.metadata.name
