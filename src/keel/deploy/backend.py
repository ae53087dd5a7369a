"""
keel.deploy.backend — Provisioning backend interface and discovery.

A backend realizes nodes of one or more kinds on the target platform:

    realize(kind, inputs)  → reported attributes   (create or update)
    destroy(kind, handle)
    describe(kind, handle) → current attributes

realize must be safe to retry: the backend identifies the resource by
its inputs (names), not by how often it was called.

Backends are discovered from entry points:

1. Built-in backends (local)
2. entry_points(group="keel.backends") from installed plugins
3. Runtime register (for testing)
"""

from __future__ import annotations

import abc
from typing import Any, Callable

from keel.config import Settings
from keel.core.node import NodeKind


class BackendError(Exception):
    """Failure reported by a provisioning backend.

    Attributes:
        transient: True for failures worth retrying (network, throttling)
        code: Backend-specific error code, e.g. "NotFound"
    """

    def __init__(self, message: str, *, transient: bool = False, code: str | None = None):
        super().__init__(message)
        self.transient = transient
        self.code = code

    @property
    def not_found(self) -> bool:
        return self.code == "NotFound"


class ProvisioningBackend(abc.ABC):
    """Base class for provisioning backends."""

    name: str = ""

    @abc.abstractmethod
    def realize(self, kind: NodeKind, inputs: dict[str, Any]) -> dict[str, Any]:
        """Create or update a resource and return its attributes."""

    @abc.abstractmethod
    def destroy(self, kind: NodeKind, handle: Any) -> None:
        """Delete a resource. Deleting a missing resource succeeds."""

    @abc.abstractmethod
    def describe(self, kind: NodeKind, handle: Any) -> dict[str, Any]:
        """Current attributes of a resource; BackendError(code="NotFound") if gone."""


class KindRouter(ProvisioningBackend):
    """Dispatches each node kind to the backend registered for it.

    Usage::

        router = KindRouter({
            NodeKind.NETWORK: vpc_backend,
            NodeKind.CLUSTER: eks_backend,
        }, default=local)
    """

    name = "router"

    def __init__(
        self,
        routes: dict[NodeKind | str, ProvisioningBackend] | None = None,
        default: ProvisioningBackend | None = None,
    ):
        self._routes: dict[NodeKind, ProvisioningBackend] = {}
        self._default = default
        for kind, backend in (routes or {}).items():
            self.route(kind, backend)

    def route(self, kind: NodeKind | str, backend: ProvisioningBackend) -> None:
        self._routes[NodeKind.parse(kind)] = backend

    def backend_for(self, kind: NodeKind) -> ProvisioningBackend:
        backend = self._routes.get(NodeKind.parse(kind), self._default)
        if backend is None:
            raise BackendError(f"No backend registered for kind '{kind.value}'")
        return backend

    def realize(self, kind: NodeKind, inputs: dict[str, Any]) -> dict[str, Any]:
        return self.backend_for(kind).realize(kind, inputs)

    def destroy(self, kind: NodeKind, handle: Any) -> None:
        self.backend_for(kind).destroy(kind, handle)

    def describe(self, kind: NodeKind, handle: Any) -> dict[str, Any]:
        return self.backend_for(kind).describe(kind, handle)


# Runtime registry
_registry: dict[str, Callable[[Settings], ProvisioningBackend]] = {}
_discovered = False


def _discover_backends() -> None:
    """Discover backends from entry_points."""
    global _discovered
    if _discovered:
        return
    _discovered = True

    from keel.deploy.local import LocalBackend
    _registry.setdefault("local", LocalBackend.from_settings)

    from importlib.metadata import entry_points
    for ep in entry_points(group="keel.backends"):
        if ep.name in _registry:
            continue
        _registry[ep.name] = ep.load()


def register_backend(name: str, factory: Callable[[Settings], ProvisioningBackend]) -> None:
    """Manually register a backend factory (for testing/dev).

    The factory is called with the active Settings.
    """
    _registry[name] = factory


def get_backend(name: str, settings: Settings | None = None) -> ProvisioningBackend | None:
    """Create a backend instance by name."""
    _discover_backends()
    factory = _registry.get(name)
    if factory is None:
        return None
    return factory(settings or Settings())


def list_backends() -> list[str]:
    _discover_backends()
    return sorted(_registry)


def reset_registry() -> None:
    """Reset the registry. For testing."""
    global _discovered
    _registry.clear()
    _discovered = False
