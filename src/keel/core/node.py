"""
keel.core.node — Resource nodes and dependency edges.

A node is one provisionable unit: its kind selects the backend that
realizes it, its inputs are literals and tokens. Nodes carry no
reference to a parent; every relationship is an edge in the graph.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from keel.core.token import Token

_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_:-]*$")


class NodeKind(str, Enum):
    """Resource kinds understood by provisioning backends."""

    NETWORK = "network"
    CLUSTER = "cluster"
    IDENTITY_BINDING = "identity-binding"
    CHART_RELEASE = "chart-release"
    MANIFEST = "manifest"
    TEMPLATE = "template"
    NESTED_STACK = "nested-stack"

    @classmethod
    def parse(cls, value: str | NodeKind) -> NodeKind:
        if isinstance(value, NodeKind):
            return value
        try:
            return cls(value)
        except ValueError:
            known = ", ".join(k.value for k in cls)
            raise ValueError(f"Unknown node kind '{value}'. Known kinds: {known}") from None


@dataclass
class ResourceNode:
    """A single node of the resource graph.

    Attributes:
        id: Stable identifier, unique in the graph
        kind: Resource kind
        inputs: Input parameters; values may contain tokens
        name: Human readable name (defaults to id)
        stack: Stack boundary tag (None = root stack)
        handle: Backend handle, set once realized
        attributes: Attributes reported by the backend
    """

    id: str
    kind: NodeKind
    inputs: dict[str, Any] = field(default_factory=dict)
    name: str = ""
    stack: str | None = None
    handle: Any = None
    attributes: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not _ID_PATTERN.match(self.id or ""):
            raise ValueError(
                f"Invalid node id '{self.id}': use letters, digits, '-', '_' and ':'"
            )
        self.kind = NodeKind.parse(self.kind)
        if not self.name:
            self.name = self.id

    @property
    def realized(self) -> bool:
        return self.handle is not None

    @property
    def is_boundary(self) -> bool:
        """Stack boundary pseudo-nodes are never sent to a backend."""
        return self.kind is NodeKind.NESTED_STACK

    def ref(self, path: str) -> Token:
        """Token for one of this node's reported attributes."""
        return Token(self.id, path)


@dataclass(frozen=True)
class DependencyEdge:
    """`dependency` must be realized before `dependent`.

    Soft edges only order the two nodes; no value flows along them.
    """

    dependent: str
    dependency: str
    soft: bool = False
