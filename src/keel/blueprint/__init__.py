"""keel.blueprint — Programmatic graph definitions."""

from keel.blueprint.base import Blueprint, BlueprintError
from keel.blueprint.registry import (
    register_blueprint, get_blueprint, list_blueprints,
)

__all__ = [
    "Blueprint",
    "BlueprintError",
    "register_blueprint",
    "get_blueprint",
    "list_blueprints",
]
