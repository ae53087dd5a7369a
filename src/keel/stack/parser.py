"""
keel.stack.parser — Deployment file parser.

deployment.yaml format:

    apiVersion: keel.io/v1
    kind: Deployment
    metadata:
      name: karpenter-test
    parameters:
      KarpenterVersion: v0.32.0
    stacks:
      - name: karpenter-resources
        parameters:
          ClusterName: ${keel:cluster.name}
    resources:
      - id: vpc
        kind: network
        inputs:
          cidr: 10.18.0.0/18
      - id: cluster
        kind: cluster
        inputs:
          vpc_id: ${keel:vpc.id}
      - id: karpenter-template
        kind: template
        stack: karpenter-resources
        template: karpenter_${param:KarpenterVersion}.yaml
        parameters:
          ClusterName: ${param:ClusterName}
      - id: controller-role
        kind: identity-binding
        dependsOn: [karpenter-resources]

Strings of the form ${keel:<node>.<attribute>} are tokens. dependsOn
adds ordering-only edges and may name a node or a stack.

Parser reads the file, validates it, and converts it to a
DeploymentSpec object.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from keel.core.node import NodeKind

API_VERSION = "keel.io/v1"


@dataclass
class ResourceSpec:
    """A single resource declaration."""
    id: str
    kind: NodeKind
    name: str = ""
    stack: str | None = None
    inputs: dict[str, Any] = field(default_factory=dict)
    template: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)


@dataclass
class StackDecl:
    """A nested stack declaration."""
    name: str
    parent: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)


@dataclass
class DeploymentSpec:
    """Parsed deployment definition."""
    name: str
    parameters: dict[str, Any] = field(default_factory=dict)
    stacks: list[StackDecl] = field(default_factory=list)
    resources: list[ResourceSpec] = field(default_factory=list)
    base_dir: Path = field(default_factory=Path)
    raw: dict[str, Any] = field(default_factory=dict)


class DeploymentFileError(Exception):
    """Deployment file parse error."""
    pass


def parse_deployment_file(path: str | Path) -> DeploymentSpec:
    """Parse a deployment.yaml file.

    Raises:
        DeploymentFileError: Format error
        FileNotFoundError: File not found
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Deployment file not found: {p}")

    with open(p) as f:
        data = yaml.safe_load(f)

    if not isinstance(data, dict):
        raise DeploymentFileError(
            f"Deployment file must be a YAML mapping, got {type(data).__name__}"
        )

    return parse_deployment_dict(data, base_dir=p.parent)


def parse_deployment_dict(
    data: dict[str, Any],
    base_dir: str | Path | None = None,
) -> DeploymentSpec:
    """Create a DeploymentSpec from a dict.

    Args:
        data: deployment.yaml content (as dict)
        base_dir: Directory that relative template paths start from
    """
    api_version = data.get("apiVersion", "")
    if api_version and api_version != API_VERSION:
        raise DeploymentFileError(
            f"Unsupported apiVersion: '{api_version}'. Expected '{API_VERSION}'"
        )

    kind = data.get("kind", "")
    if kind and kind != "Deployment":
        raise DeploymentFileError(
            f"Unsupported kind: '{kind}'. Expected 'Deployment'"
        )

    metadata = data.get("metadata", {})
    if not isinstance(metadata, dict):
        raise DeploymentFileError("metadata must be a mapping")

    name = metadata.get("name", "")
    if not name:
        raise DeploymentFileError("metadata.name is required")

    parameters = data.get("parameters", {}) or {}
    if not isinstance(parameters, dict):
        raise DeploymentFileError("parameters must be a mapping")

    return DeploymentSpec(
        name=name,
        parameters=parameters,
        stacks=_parse_stacks(data.get("stacks", []) or []),
        resources=_parse_resources(data.get("resources", []) or []),
        base_dir=Path(base_dir or "."),
        raw=data,
    )


def _parse_stacks(stacks_raw: Any) -> list[StackDecl]:
    if not isinstance(stacks_raw, list):
        raise DeploymentFileError("stacks must be a list")

    stacks: list[StackDecl] = []
    seen: set[str] = set()
    for i, entry in enumerate(stacks_raw):
        if not isinstance(entry, dict):
            raise DeploymentFileError(f"stacks[{i}] must be a mapping")
        name = entry.get("name")
        if not name:
            raise DeploymentFileError(f"stacks[{i}].name is required")
        if name in seen:
            raise DeploymentFileError(f"Duplicate stack name: '{name}'")
        seen.add(name)

        params = entry.get("parameters", {}) or {}
        if not isinstance(params, dict):
            raise DeploymentFileError(f"stacks[{i}].parameters must be a mapping")

        stacks.append(StackDecl(
            name=name,
            parent=entry.get("parent"),
            parameters=params,
            depends_on=_string_list(entry.get("dependsOn"), f"stacks[{i}].dependsOn"),
        ))
    return stacks


def _parse_resources(resources_raw: Any) -> list[ResourceSpec]:
    if not isinstance(resources_raw, list):
        raise DeploymentFileError("resources must be a list")

    resources: list[ResourceSpec] = []
    seen: set[str] = set()
    for i, entry in enumerate(resources_raw):
        if not isinstance(entry, dict):
            raise DeploymentFileError(f"resources[{i}] must be a mapping")

        res_id = entry.get("id")
        if not res_id:
            raise DeploymentFileError(f"resources[{i}].id is required")
        if res_id in seen:
            raise DeploymentFileError(f"Duplicate resource id: '{res_id}'")
        seen.add(res_id)

        try:
            kind = NodeKind.parse(entry.get("kind", ""))
        except ValueError as e:
            raise DeploymentFileError(f"resources[{i}]: {e}") from e

        inputs = entry.get("inputs", {}) or {}
        if not isinstance(inputs, dict):
            raise DeploymentFileError(f"resources[{i}].inputs must be a mapping")

        template = entry.get("template")
        if kind is NodeKind.TEMPLATE and not template:
            raise DeploymentFileError(
                f"resources[{i}].template is required for kind 'template'"
            )
        if kind is NodeKind.NESTED_STACK:
            raise DeploymentFileError(
                f"resources[{i}]: nested stacks are declared under 'stacks'"
            )

        params = entry.get("parameters", {}) or {}
        if not isinstance(params, dict):
            raise DeploymentFileError(f"resources[{i}].parameters must be a mapping")

        resources.append(ResourceSpec(
            id=res_id,
            kind=kind,
            name=entry.get("name", ""),
            stack=entry.get("stack"),
            inputs=inputs,
            template=template,
            parameters=params,
            depends_on=_string_list(entry.get("dependsOn"), f"resources[{i}].dependsOn"),
        ))
    return resources


def _string_list(value: Any, where: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise DeploymentFileError(f"{where} must be a list of names")
    return list(value)
