"""
keel.blueprint.base — Blueprint base class.

A blueprint is a graph definition written in Python and shipped as a
pip package. Values (defaults.yaml → -f files → --set) parameterize it;
build() declares nodes, stacks and edges and returns the composition.
"""

from __future__ import annotations

import importlib
from pathlib import Path
from typing import Any, ClassVar

import yaml

from keel.values import merge_all_values
from keel.stack.engine import Composition


class BlueprintError(Exception):
    """Blueprint lookup or build error."""
    pass


class Blueprint:
    """keel blueprint base class.

    Subclasses must define:

    - ``name``: Blueprint name (must match the entry_points key)
    - ``version``: Semver string
    - ``build(values)``: Method that builds the graph

    Optional:
    - defaults.yaml next to the blueprint module
    - ``default_values()``: Default values as a Python dict

    Usage::

        class KarpenterBlueprint(Blueprint):
            name = "karpenter"
            version = "0.32.0"

            def build(self, values):
                graph = ResourceGraph(values["name"])
                vpc = graph.add(ResourceNode("vpc", NodeKind.NETWORK, {...}))
                ...
                return Composition(graph, composer.compose(graph))
    """

    name: ClassVar[str] = ""
    version: ClassVar[str] = "0.0.0"
    description: ClassVar[str] = ""

    def module_dir(self) -> Path | None:
        """Directory of the module defining the blueprint."""
        mod = importlib.import_module(self.__class__.__module__)
        if getattr(mod, "__file__", None):
            return Path(mod.__file__).parent
        return None

    def default_values(self) -> dict[str, Any]:
        """Return default values.

        Reads defaults.yaml next to the blueprint module, returns an
        empty dict if not found. Subclass may override.
        """
        base = self.module_dir()
        if base is not None:
            defaults_path = base / "defaults.yaml"
            if defaults_path.exists():
                with open(defaults_path) as f:
                    data = yaml.safe_load(f)
                return data if isinstance(data, dict) else {}
        return {}

    def build(self, values: dict[str, Any]) -> Composition:
        """Build the graph. Subclass MUST implement."""
        raise NotImplementedError(f"{self.__class__.__name__}.build()")

    def compose(
        self,
        value_files: list[str | Path] | None = None,
        set_args: list[str] | None = None,
    ) -> Composition:
        """Merge values and build the composition (without deploying)."""
        values = merge_all_values(
            self.default_values(),
            value_files or [],
            set_args or [],
        )
        return self.build(values)

    def info(self) -> dict[str, Any]:
        """Return blueprint information (for keel list)."""
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "defaults": self.default_values(),
        }
