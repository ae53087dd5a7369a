"""
keel.blueprint.registry — Blueprint discovery.

Blueprints are pip packages that declare an entry point:

    [project.entry-points."keel.blueprints"]
    karpenter = "keel.blueprints.karpenter:KarpenterBlueprint"

Discovery from two sources:

1. entry_points(group="keel.blueprints") of installed packages
2. Runtime register (for testing)
"""

from __future__ import annotations

from importlib.metadata import entry_points
from typing import TYPE_CHECKING

from keel.log import get_logger

if TYPE_CHECKING:
    from keel.blueprint.base import Blueprint

logger = get_logger("blueprints")

# Runtime registry
_registry: dict[str, type[Blueprint]] = {}
_discovered = False


def _discover_blueprints() -> None:
    """Discover blueprints from entry_points."""
    global _discovered
    if _discovered:
        return
    _discovered = True

    for ep in entry_points(group="keel.blueprints"):
        if ep.name in _registry:
            continue
        try:
            _registry[ep.name] = ep.load()
        except ImportError as e:
            logger.warning("blueprint_load_failed", blueprint=ep.name, error=str(e))


def register_blueprint(blueprint_cls: type[Blueprint]) -> None:
    """Manually register a blueprint class (for testing/dev)."""
    _registry[blueprint_cls.name] = blueprint_cls


def get_blueprint(name: str) -> Blueprint | None:
    """Create an instance from a blueprint name."""
    _discover_blueprints()
    cls = _registry.get(name)
    if cls is None:
        return None
    return cls()


def list_blueprints() -> dict[str, type[Blueprint]]:
    """Return all registered blueprints."""
    _discover_blueprints()
    return dict(_registry)


def reset_registry() -> None:
    """Reset the registry. For testing."""
    global _discovered
    _registry.clear()
    _discovered = False
