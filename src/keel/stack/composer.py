"""
keel.stack.composer — Stack grouping.

A stack is an ownership boundary: a named group of nodes with its own
parameters, versioned and torn down as a unit. Stacks nest; a child
stack inherits its parent's parameters when it is declared, and its
lifecycle is bound to the parent's.

Stacks are folded into the same resource graph as the nodes they own,
through two pseudo-nodes per stack:

    <stack>:entry   every member depends on it; realized first
    <stack>:exit    depends on every member; realized last

A stack that reads another stack's output gets the edge
entry(dependent) → exit(dependency), so the planner orders stacks
exactly like it orders nodes.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from keel.values import deep_merge
from keel.core.graph import ResourceGraph
from keel.core.node import NodeKind, ResourceNode

_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")

# ${param:Name}
_PARAM_PATTERN = re.compile(r"\$\{param:([A-Za-z0-9_-]+)\}")


class StackError(Exception):
    """Stack composition error."""
    pass


@dataclass
class Stack:
    """A group of nodes deployed as a unit."""
    name: str
    parent: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    nodes: list[str] = field(default_factory=list)
    children: list[str] = field(default_factory=list)
    depends_on: list[str] = field(default_factory=list)

    @property
    def entry_id(self) -> str:
        return entry_id(self.name)

    @property
    def exit_id(self) -> str:
        return exit_id(self.name)


def entry_id(stack: str) -> str:
    return f"{stack}:entry"


def exit_id(stack: str) -> str:
    return f"{stack}:exit"


def by_stack_tag(node: ResourceNode) -> str | None:
    """Default boundary rule: the node's own stack tag."""
    return node.stack


class StackComposer:
    """Declares stacks and folds them into a resource graph.

    Usage::

        composer = StackComposer("karpenter-test")
        composer.declare("karpenter-resources", {"ClusterName": cluster.ref("name")})
        params = composer.parameters("karpenter-resources")
        ...
        stacks = composer.compose(graph)
    """

    def __init__(self, root: str, parameters: dict[str, Any] | None = None):
        _check_name(root)
        self.root = root
        self._declared: dict[str, Stack] = {
            root: Stack(name=root, parameters=copy.deepcopy(parameters or {})),
        }

    def declare(
        self,
        name: str,
        parameters: dict[str, Any] | None = None,
        parent: str | None = None,
        depends_on: Iterable[str] = (),
    ) -> Stack:
        """Declare a nested stack.

        Parameters are merged over the parent's effective parameters now;
        later changes to the parent do not reach the child.
        """
        _check_name(name)
        parent = parent or self.root
        if name in self._declared:
            raise StackError(f"Duplicate stack name: '{name}'")
        if parent not in self._declared:
            raise StackError(f"Unknown parent stack '{parent}' for stack '{name}'")

        merged = deep_merge(self._declared[parent].parameters, parameters or {})
        stack = Stack(
            name=name,
            parent=parent,
            parameters=merged,
            depends_on=list(depends_on),
        )
        self._declared[name] = stack
        self._declared[parent].children.append(name)
        return stack

    def parameters(self, name: str) -> dict[str, Any]:
        """Effective construction-time parameters of a stack."""
        if name not in self._declared:
            raise StackError(f"Unknown stack: '{name}'")
        return copy.deepcopy(self._declared[name].parameters)

    def bind(self, value: Any, stack: str | None = None) -> Any:
        """Substitute ${param:Name} markers with the stack's parameters."""
        return bind_parameters(value, self.parameters(stack or self.root))

    def exit_of(self, name: str) -> str:
        if name not in self._declared:
            raise StackError(f"Unknown stack: '{name}'")
        return exit_id(name)

    def stacks(self) -> list[Stack]:
        return [copy.deepcopy(s) for s in self._declared.values()]

    # ─────────────────────────────────────────────
    # grouping
    # ─────────────────────────────────────────────
    def group(
        self,
        nodes: Iterable[ResourceNode],
        boundary_rule: Callable[[ResourceNode], str | None] = by_stack_tag,
    ) -> list[Stack]:
        """Partition nodes into stacks.

        Untagged nodes belong to the root stack. A tag that was never
        declared becomes a child of the root with the root's parameters.
        """
        stacks: dict[str, Stack] = {}
        for name, declared in self._declared.items():
            stacks[name] = Stack(
                name=name,
                parent=declared.parent,
                parameters=copy.deepcopy(declared.parameters),
                children=list(declared.children),
                depends_on=list(declared.depends_on),
            )

        for node in nodes:
            if node.is_boundary:
                continue
            tag = boundary_rule(node) or self.root
            if tag not in stacks:
                _check_name(tag)
                stacks[tag] = Stack(
                    name=tag,
                    parent=self.root,
                    parameters=copy.deepcopy(stacks[self.root].parameters),
                )
                stacks[self.root].children.append(tag)
            stacks[tag].nodes.append(node.id)

        return list(stacks.values())

    def fold(self, graph: ResourceGraph, stacks: list[Stack]) -> None:
        """Add stack pseudo-nodes and stack-level edges to the graph."""
        by_name = {s.name: s for s in stacks}
        member_of = {node_id: s.name for s in stacks for node_id in s.nodes}

        cross: list[tuple[str, str]] = []
        for edge in graph.edges():
            a = member_of.get(edge.dependent)
            b = member_of.get(edge.dependency)
            if a is None or b is None or a == b:
                continue
            if _is_ancestor(by_name, a, b) or _is_ancestor(by_name, b, a):
                continue
            cross.append((a, b))
        for stack in stacks:
            for dep in stack.depends_on:
                if dep not in by_name:
                    raise StackError(
                        f"Stack '{stack.name}' depends on unknown stack '{dep}'"
                    )
                cross.append((stack.name, dep))

        for stack in stacks:
            graph.add_node(ResourceNode(
                id=stack.entry_id,
                kind=NodeKind.NESTED_STACK,
                inputs={"stack": stack.name, "parameters": stack.parameters},
                stack=stack.name,
            ))
            graph.add_node(ResourceNode(
                id=stack.exit_id,
                kind=NodeKind.NESTED_STACK,
                inputs={"stack": stack.name},
                stack=stack.name,
            ))

        for stack in stacks:
            graph.add_edge(stack.exit_id, stack.entry_id, soft=True)
            for node_id in stack.nodes:
                graph.add_edge(node_id, stack.entry_id, soft=True)
                graph.add_edge(stack.exit_id, node_id, soft=True)

        for stack in stacks:
            if stack.parent is not None and stack.parent in by_name:
                graph.add_edge(stack.entry_id, entry_id(stack.parent), soft=True)
                graph.add_edge(exit_id(stack.parent), stack.exit_id, soft=True)

        for dependent, dependency in cross:
            if dependency not in by_name[dependent].depends_on:
                by_name[dependent].depends_on.append(dependency)
            graph.add_edge(entry_id(dependent), exit_id(dependency), soft=True)

    def compose(
        self,
        graph: ResourceGraph,
        boundary_rule: Callable[[ResourceNode], str | None] = by_stack_tag,
    ) -> list[Stack]:
        """Group the graph's nodes and fold the stacks back into it."""
        stacks = self.group(graph.nodes(), boundary_rule)
        self.fold(graph, stacks)
        return stacks


def bind_parameters(value: Any, params: dict[str, Any]) -> Any:
    """Replace ${param:Name} markers in value.

    A string that is exactly one marker takes the parameter's value as
    is (which may be a token); markers inside longer strings are
    replaced by the parameter's text form.
    """
    if isinstance(value, str):
        return _bind_string(value, params)
    if isinstance(value, dict):
        return {
            bind_parameters(k, params): bind_parameters(v, params)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [bind_parameters(item, params) for item in value]
    if isinstance(value, tuple):
        return tuple(bind_parameters(item, params) for item in value)
    return value


def _bind_string(value: str, params: dict[str, Any]) -> Any:
    whole = _PARAM_PATTERN.fullmatch(value)
    if whole:
        return _param(whole.group(1), params)

    def replacer(match: re.Match) -> str:
        return str(_param(match.group(1), params))

    return _PARAM_PATTERN.sub(replacer, value)


def _param(name: str, params: dict[str, Any]) -> Any:
    if name not in params:
        raise StackError(
            f"Unknown parameter '${{param:{name}}}'. "
            f"Available parameters: {sorted(params)}"
        )
    return copy.deepcopy(params[name])


def _is_ancestor(stacks: dict[str, Stack], ancestor: str, name: str) -> bool:
    current = stacks[name].parent
    while current is not None:
        if current == ancestor:
            return True
        current = stacks[current].parent if current in stacks else None
    return False


def _check_name(name: str) -> None:
    if not _NAME_PATTERN.match(name or ""):
        raise StackError(
            f"Invalid stack name '{name}': use letters, digits, '-' and '_'"
        )
