"""
keel — Dependency-ordered infrastructure deployment.

Declare resources as a graph, pass values between them as tokens,
and let the planner realize them in layers.
"""

from keel.core import (
    ResourceNode,
    NodeKind,
    DependencyEdge,
    ResourceGraph,
    GraphError,
    CycleError,
    Token,
    Join,
    TokenResolver,
    ResolveContext,
    TokenError,
    UnresolvedDependencyError,
    AttributeNotFoundError,
)
from keel.stack import StackComposer, Stack, StackError, include_template, Composition
from keel.deploy import (
    BackendError,
    ProvisioningBackend,
    KindRouter,
    LocalBackend,
    DeploymentPlan,
    DeploymentPlanner,
    DeploymentReport,
    PartialDeploymentError,
    plan,
    plan_destroy,
)
from keel.blueprint import Blueprint

__version__ = "0.1.0"

__all__ = [
    # graph
    "ResourceNode",
    "NodeKind",
    "DependencyEdge",
    "ResourceGraph",
    "GraphError",
    "CycleError",
    # tokens
    "Token",
    "Join",
    "TokenResolver",
    "ResolveContext",
    "TokenError",
    "UnresolvedDependencyError",
    "AttributeNotFoundError",
    # stacks
    "StackComposer",
    "Stack",
    "StackError",
    "include_template",
    "Composition",
    # deploy
    "BackendError",
    "ProvisioningBackend",
    "KindRouter",
    "LocalBackend",
    "DeploymentPlan",
    "DeploymentPlanner",
    "DeploymentReport",
    "PartialDeploymentError",
    "plan",
    "plan_destroy",
    # blueprints
    "Blueprint",
]
