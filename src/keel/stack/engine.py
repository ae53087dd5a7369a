"""
keel.stack.engine — Deployment file loader.

Merges the deployment file with its overlays, applies --set,
parses, and builds the resource graph with its stacks folded in.

    keel plan -f deployment.yaml -f deployment.prod.yaml --set ...
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from keel.core.graph import ResourceGraph
from keel.core.node import ResourceNode
from keel.stack.composer import Stack, StackComposer, StackError
from keel.stack.merger import apply_set_to_parameters, merge_deployment_files
from keel.stack.parser import (
    DeploymentFileError,
    DeploymentSpec,
    StackDecl,
    parse_deployment_dict,
)
from keel.stack.template import include_template


@dataclass
class Composition:
    """A resource graph together with the stacks folded into it."""
    graph: ResourceGraph
    stacks: list[Stack] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.graph.name


def load_deployment(
    file_paths: list[str | Path],
    set_args: list[str] | None = None,
) -> Composition:
    """Load deployment files.

    Args:
        file_paths: deployment.yaml + overlay files
        set_args: --set Name=value list (top-level parameters)
    """
    merged = merge_deployment_files(file_paths)
    if set_args:
        merged = apply_set_to_parameters(merged, set_args)

    try:
        spec = parse_deployment_dict(merged, base_dir=Path(file_paths[0]).parent)
    except DeploymentFileError as e:
        raise StackError(f"Deployment parse error: {e}") from e

    return build_deployment(spec)


def build_deployment(spec: DeploymentSpec) -> Composition:
    """Build the graph described by a parsed deployment."""
    graph = ResourceGraph(spec.name)
    composer = StackComposer(spec.name, spec.parameters)

    for decl in _parent_first(spec.name, spec.stacks):
        parent = decl.parent or spec.name
        composer.declare(
            decl.name,
            parameters=composer.bind(decl.parameters, parent),
            parent=parent,
            depends_on=decl.depends_on,
        )

    declared = {s.name for s in composer.stacks()}
    for res in spec.resources:
        stack = res.stack or spec.name
        if stack not in declared:
            raise StackError(
                f"Resource '{res.id}' is in unknown stack '{stack}'. "
                f"Declare it under 'stacks'."
            )

        if res.template:
            template_path = spec.base_dir / str(composer.bind(res.template, stack))
            node = include_template(
                template_path,
                composer.bind(res.parameters, stack),
                id=res.id,
                name=res.name,
                stack=res.stack,
            )
        else:
            node = ResourceNode(
                id=res.id,
                kind=res.kind,
                inputs=composer.bind(res.inputs, stack),
                name=res.name,
                stack=res.stack,
            )
        graph.add_node(node)

    stacks = composer.compose(graph)

    for res in spec.resources:
        for dep in res.depends_on:
            if dep in graph:
                target = dep
            elif dep in declared:
                target = composer.exit_of(dep)
            else:
                raise StackError(
                    f"Resource '{res.id}' depends on unknown node or stack '{dep}'"
                )
            graph.add_edge(res.id, target, soft=True)

    return Composition(graph=graph, stacks=stacks)


def _parent_first(root: str, decls: list[StackDecl]) -> list[StackDecl]:
    """Order stack declarations so every parent precedes its children."""
    remaining = list(decls)
    known = {root}
    ordered: list[StackDecl] = []
    while remaining:
        ready = [d for d in remaining if (d.parent or root) in known]
        if not ready:
            names = ", ".join(d.name for d in remaining)
            raise StackError(f"Stacks with unknown or cyclic parents: {names}")
        for decl in ready:
            ordered.append(decl)
            known.add(decl.name)
            remaining.remove(decl)
    return ordered
