"""keel.core — Graph, nodes and tokens."""

from keel.core.node import ResourceNode, NodeKind, DependencyEdge
from keel.core.graph import ResourceGraph, GraphError, CycleError
from keel.core.token import (
    Token, Join, TokenResolver, ResolveContext, references, encode,
    TokenError, UnresolvedDependencyError, AttributeNotFoundError,
)

__all__ = [
    "ResourceNode",
    "NodeKind",
    "DependencyEdge",
    "ResourceGraph",
    "GraphError",
    "CycleError",
    "Token",
    "Join",
    "TokenResolver",
    "ResolveContext",
    "references",
    "encode",
    "TokenError",
    "UnresolvedDependencyError",
    "AttributeNotFoundError",
]
