"""
keel.stack.template — Declarative template include.

Imports an externally maintained template (a CloudFormation-style
resource manifest with a Parameters section) as one composite node.
The template body is opaque to keel; only its declared parameters are
interpreted, and they become the node's token-bearing inputs.

    node = include_template(
        "karpenter_v0.32.0.yaml",
        {"ClusterName": cluster.ref("name")},
        id="karpenter-resources-template",
        stack="karpenter-resources",
    )

Short-form intrinsic tags are accepted and kept in their long form:

    !Ref ClusterName            → {"Ref": "ClusterName"}
    !Sub "arn:${AWS::Partition}" → {"Fn::Sub": "arn:${AWS::Partition}"}
    !GetAtt Queue.Arn           → {"Fn::GetAtt": ["Queue", "Arn"]}
"""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any

import yaml

from keel.core.node import NodeKind, ResourceNode


class TemplateError(Exception):
    """Template load or parameter error."""
    pass


class _TemplateLoader(yaml.SafeLoader):
    """SafeLoader that understands CloudFormation short-form tags."""
    pass


def _construct_intrinsic(loader: yaml.SafeLoader, tag_suffix: str, node: yaml.Node) -> dict:
    if isinstance(node, yaml.ScalarNode):
        value: Any = loader.construct_scalar(node)
    elif isinstance(node, yaml.SequenceNode):
        value = loader.construct_sequence(node, deep=True)
    else:
        value = loader.construct_mapping(node, deep=True)

    if tag_suffix == "Ref":
        return {"Ref": value}
    if tag_suffix == "Condition":
        return {"Condition": value}
    if tag_suffix == "GetAtt" and isinstance(value, str):
        return {"Fn::GetAtt": value.split(".", 1)}
    return {f"Fn::{tag_suffix}": value}


_TemplateLoader.add_multi_constructor("!", _construct_intrinsic)


def load_template(path: str | Path) -> dict[str, Any]:
    """Read a template file."""
    p = Path(path)
    if not p.exists():
        raise TemplateError(f"Template file not found: {p}")

    with open(p) as f:
        try:
            data = yaml.load(f, Loader=_TemplateLoader)
        except yaml.YAMLError as e:
            raise TemplateError(f"Invalid template {p}: {e}") from e

    if not isinstance(data, dict):
        raise TemplateError(f"Template must be a YAML mapping, got {type(data).__name__}")

    declared = data.get("Parameters", {})
    if not isinstance(declared, dict):
        raise TemplateError(f"Parameters must be a mapping in {p}")

    return data


def template_parameters(
    template: dict[str, Any],
    supplied: dict[str, Any],
) -> dict[str, Any]:
    """Validate supplied parameters against the template's declarations.

    Declared defaults fill in missing values.

    Raises:
        TemplateError: unknown parameter, or required parameter missing
    """
    declared: dict[str, Any] = template.get("Parameters", {}) or {}

    unknown = sorted(set(supplied) - set(declared))
    if unknown:
        raise TemplateError(
            f"Unknown template parameter(s): {unknown}. "
            f"Declared: {sorted(declared)}"
        )

    result: dict[str, Any] = {}
    for name, spec in declared.items():
        if name in supplied:
            result[name] = copy.deepcopy(supplied[name])
        elif isinstance(spec, dict) and "Default" in spec:
            result[name] = spec["Default"]
        else:
            raise TemplateError(f"Missing required template parameter: '{name}'")
    return result


def include_template(
    path: str | Path,
    parameters: dict[str, Any] | None = None,
    *,
    id: str,
    name: str = "",
    stack: str | None = None,
) -> ResourceNode:
    """Create the composite node for a template file."""
    template = load_template(path)
    params = template_parameters(template, parameters or {})

    body = {k: v for k, v in template.items() if k != "Parameters"}
    return ResourceNode(
        id=id,
        kind=NodeKind.TEMPLATE,
        name=name or Path(path).stem,
        stack=stack,
        inputs={
            "template": Path(path).name,
            "body": body,
            "parameters": params,
        },
    )
