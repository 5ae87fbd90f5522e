"""Reusable subgraph templates.

A template declares a list of resources once; each ``use`` of it in the
stack instantiates the whole subgraph under a prefix:

    - use: region-cmk
      id: source
      with: {location: eastus, prefix: asr-src}

produces ``source/keyVault``, ``source/key``, ... Template-local references
are rewritten to the prefixed ids; references to anything else (stack-level
nodes or other instances, e.g. ``client.tenantId``) are left as written.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .interpolation import InterpolationError, ValueContext, compile_value
from .models import ResourceDeclaration, StackSpec, TemplateInstance

logger = logging.getLogger(__name__)


class TemplateError(ValueError):
    """Raised when a template instance cannot be expanded."""

    pass


@dataclass
class ExpandedResource:
    """A resource declaration bound to its final id and value context."""

    node_id: str
    declaration: ResourceDeclaration
    context: ValueContext
    extra_dependencies: set[str] = field(default_factory=set)

    def qualified_dependencies(self) -> set[str]:
        deps = {self.context.qualify(dep) for dep in self.declaration.depends_on}
        return deps | self.extra_dependencies


def expand_resources(spec: StackSpec, root: ValueContext) -> list[ExpandedResource]:
    """Flatten plain resources and template instances, in declaration order.

    Raises:
        TemplateError: On unknown templates or mismatched parameters.
    """
    expanded: list[ExpandedResource] = []
    for item in spec.resources:
        if isinstance(item, TemplateInstance):
            expanded.extend(_expand_instance(item, spec, root))
        else:
            expanded.append(ExpandedResource(node_id=item.id, declaration=item, context=root))
    return expanded


def _expand_instance(
    instance: TemplateInstance, spec: StackSpec, root: ValueContext
) -> list[ExpandedResource]:
    template = spec.templates.get(instance.use)
    if template is None:
        raise TemplateError(
            f"Instance '{instance.id}' uses unknown template '{instance.use}'. "
            f"Known templates: {sorted(spec.templates)}"
        )

    declared = set(template.parameters)
    given = set(instance.with_)
    unknown = sorted(given - declared)
    if unknown:
        raise TemplateError(
            f"Instance '{instance.id}' passes unknown parameters {unknown} "
            f"to template '{instance.use}'"
        )
    missing = sorted(declared - given)
    if missing:
        raise TemplateError(
            f"Instance '{instance.id}' is missing parameters {missing} "
            f"for template '{instance.use}'"
        )

    try:
        arguments = {
            name: compile_value(value, root, f"{instance.id}.with.{name}")
            for name, value in instance.with_.items()
        }
    except InterpolationError as e:
        raise TemplateError(str(e)) from e

    local_ids = frozenset(resource.id for resource in template.resources)
    ctx = root.child(arguments, prefix=instance.id, local_ids=local_ids)
    instance_deps = {root.qualify(dep) for dep in instance.depends_on}

    logger.debug(
        "Expanding template instance",
        extra={
            "instance": instance.id,
            "template": instance.use,
            "resource_count": len(template.resources),
        },
    )
    return [
        ExpandedResource(
            node_id=f"{instance.id}/{resource.id}",
            declaration=resource,
            context=ctx,
            extra_dependencies=set(instance_deps),
        )
        for resource in template.resources
    ]
