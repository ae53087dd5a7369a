"""
keel.stack.merger — Deployment overlay merger.

Deep merges multiple -f files:
  keel deploy -f deployment.yaml -f deployment.prod.yaml --set ...

Merge strategy:
  - First file must be the base deployment (apiVersion, kind, metadata, resources)
  - Subsequent files are overlays
  - --set is applied last, to the top-level parameters

Overlay format:
    parameters:
      KarpenterVersion: v0.33.0
    resources:
      cluster:              # matches by resource id
        inputs:
          default_capacity: 4
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from keel.values import deep_merge, parse_set_values


def merge_deployment_files(file_paths: list[str | Path]) -> dict[str, Any]:
    """Merge a base deployment file with its overlays.

    Args:
        file_paths: File paths list (in precedence order)

    Returns:
        Merged deployment dict
    """
    if not file_paths:
        raise ValueError("At least one file is required")

    base = _load_yaml(file_paths[0])
    for fp in file_paths[1:]:
        overlay = _load_yaml(fp)
        base = _merge_overlay(base, overlay)
    return base


def apply_set_to_parameters(
    data: dict[str, Any],
    set_args: list[str],
) -> dict[str, Any]:
    """Apply --set Name=value arguments to the top-level parameters.

    Example:
      --set KarpenterVersion=v0.33.0
      --set Cluster.capacity=3
    """
    if not set_args:
        return data

    result = dict(data)
    overrides = parse_set_values(set_args)
    result["parameters"] = deep_merge(result.get("parameters", {}) or {}, overrides)
    return result


def _load_yaml(path: str | Path) -> dict[str, Any]:
    """Read a YAML file."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"File not found: {p}")
    with open(p) as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected YAML mapping in {p}")
    return data


def _merge_overlay(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Apply an overlay to the base deployment.

    Resources (and stacks) are matched by id (name); an overlay can give
    them either as a list or as an id → overrides mapping.
    """
    result = dict(base)

    if "parameters" in overlay:
        result["parameters"] = deep_merge(
            result.get("parameters", {}) or {},
            overlay["parameters"] or {},
        )

    if "metadata" in overlay:
        result["metadata"] = deep_merge(
            result.get("metadata", {}),
            overlay["metadata"],
        )

    for section, key in (("resources", "id"), ("stacks", "name")):
        if section not in overlay:
            continue
        entries = overlay[section]
        if isinstance(entries, dict):
            entries = [dict(v or {}, **{key: k}) for k, v in entries.items()]
        if isinstance(entries, list):
            result[section] = _merge_by_key(result.get(section, []) or [], entries, key)

    return result


def _merge_by_key(
    base_entries: list[dict],
    overlay_entries: list[dict],
    key: str,
) -> list[dict]:
    """Match entries by key and merge; keep base order, append new ones."""
    merged: dict[str, dict] = {}
    order: list[str] = []
    for entry in base_entries:
        name = entry.get(key, "")
        merged[name] = entry
        order.append(name)

    for entry in overlay_entries:
        name = entry.get(key, "")
        if name in merged:
            merged[name] = deep_merge(merged[name], entry)
        else:
            merged[name] = entry
            order.append(name)

    return [merged[name] for name in order]
