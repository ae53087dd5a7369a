"""
keel.values — Parameter values: merging and --set parsing.

Value precedence:
  blueprint defaults → -f values.yaml → -f values2.yaml → --set key=val

Deep merge: nested dicts are merged, scalars and lists are replaced.

--set syntax:

    cluster.capacity=3                      → {"cluster": {"capacity": 3}}
    cluster.version=1.27                    → "1.27" (versions stay strings)
    nodePool.capacityTypes=[spot,on-demand] → list
    annotations.eks\\.amazonaws\\.com/role-arn=arn:...   (escaped dots)
"""

from __future__ import annotations

import copy
import re
from pathlib import Path
from typing import Any

import yaml

# Split on dots not preceded by a backslash
_KEY_SEPARATOR = re.compile(r"(?<!\\)\.")
_INT = re.compile(r"^-?\d+$")


def deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dicts. Override wins; neither input is modified.

    >>> deep_merge({"vpc": {"cidr": "10.0.0.0/16", "maxAzs": 2}}, {"vpc": {"maxAzs": 3}})
    {'vpc': {'cidr': '10.0.0.0/16', 'maxAzs': 3}}
    """
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(result.get(key), dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def load_values_file(path: str | Path) -> dict:
    """Read a YAML values file. An empty file means no values."""
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Values file not found: {p}")
    with open(p) as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Values file must be a YAML mapping: {p}")
    return data


def parse_set_values(set_args: list[str]) -> dict:
    """Convert --set key=value arguments to a nested dict.

    >>> parse_set_values(["cluster.capacity=3", "karpenterVersion=v0.32.0"])
    {'cluster': {'capacity': 3}, 'karpenterVersion': 'v0.32.0'}
    """
    result: dict = {}
    for arg in set_args:
        if "=" not in arg:
            raise ValueError(f"Invalid --set format: '{arg}' (expected key=value)")
        key, value = arg.split("=", 1)
        parts = [p.replace("\\.", ".") for p in _KEY_SEPARATOR.split(key)]
        if not all(parts):
            raise ValueError(f"Invalid --set key: '{key}'")

        current = result
        for part in parts[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]
        current[parts[-1]] = coerce_value(value)
    return result


def coerce_value(value: str) -> Any:
    """Convert a --set string to a bool, int, None or list.

    Decimal-looking strings are kept as text: "1.27" is a Kubernetes
    version, not a number.

    >>> coerce_value("3")
    3
    >>> coerce_value("1.27")
    '1.27'
    >>> coerce_value("[spot, on-demand]")
    ['spot', 'on-demand']
    """
    text = value.strip()
    if text.startswith("[") and text.endswith("]"):
        inner = text[1:-1].strip()
        if not inner:
            return []
        return [coerce_value(item) for item in inner.split(",")]

    lowered = text.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if lowered in ("null", "none", "~"):
        return None
    if _INT.match(text):
        return int(text)
    return text


def merge_all_values(
    defaults: dict,
    value_files: list[str | Path],
    set_args: list[str],
) -> dict:
    """Merge all value sources.

    Precedence (low to high):
      defaults → value_files (in order) → set_args
    """
    result = copy.deepcopy(defaults)
    for vf in value_files:
        result = deep_merge(result, load_values_file(vf))
    if set_args:
        result = deep_merge(result, parse_set_values(set_args))
    return result
