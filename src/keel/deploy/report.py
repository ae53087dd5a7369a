"""
keel.deploy.report — Deployment report persistence.

<state_dir>/<stack>.report.yaml:

    apiVersion: keel.io/v1
    kind: DeploymentReport
    stack: karpenter-test
    checksum: sha256:abc123...        # graph checksum at deploy time
    nodes:
      vpc:
        kind: network
        stack: karpenter-test
        status: realized              # realized | failed | destroyed
        fingerprint: sha256:...
        inputs: {...}                 # resolved, secrets redacted
        attributes: {...}             # as reported by the backend

A later deploy of the same graph reuses realized records instead of
calling the backend again.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

REALIZED = "realized"
FAILED = "failed"
DESTROYED = "destroyed"


@dataclass
class NodeRecord:
    """Outcome of one node in a deploy."""
    id: str
    kind: str
    status: str
    stack: str | None = None
    fingerprint: str | None = None
    inputs: dict[str, Any] = field(default_factory=dict)
    attributes: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @property
    def realized(self) -> bool:
        return self.status == REALIZED

    @property
    def handle(self) -> Any:
        return self.attributes.get("id", self.id)


@dataclass
class DeploymentReport:
    """Per-node record of a deploy."""
    stack: str
    checksum: str | None = None
    records: dict[str, NodeRecord] = field(default_factory=dict)

    def record(self, rec: NodeRecord) -> None:
        self.records[rec.id] = rec

    def get(self, node_id: str) -> NodeRecord | None:
        return self.records.get(node_id)

    def ids_with_status(self, status: str) -> list[str]:
        return [r.id for r in self.records.values() if r.status == status]

    @property
    def realized(self) -> list[str]:
        return self.ids_with_status(REALIZED)

    @property
    def failed(self) -> list[str]:
        return self.ids_with_status(FAILED)

    def copy(self) -> DeploymentReport:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        nodes: dict[str, Any] = {}
        for rec in self.records.values():
            entry: dict[str, Any] = {"kind": rec.kind, "status": rec.status}
            if rec.stack:
                entry["stack"] = rec.stack
            if rec.fingerprint:
                entry["fingerprint"] = rec.fingerprint
            entry["inputs"] = _plain(rec.inputs)
            entry["attributes"] = _plain(rec.attributes)
            if rec.error:
                entry["error"] = rec.error
            nodes[rec.id] = entry
        data: dict[str, Any] = {
            "apiVersion": "keel.io/v1",
            "kind": "DeploymentReport",
            "stack": self.stack,
        }
        if self.checksum:
            data["checksum"] = self.checksum
        data["nodes"] = nodes
        return data


def _plain(value: Any) -> Any:
    """Lists and dicts only, so the report stays safe_dump-able."""
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value


class ReportError(Exception):
    """Report file error."""
    pass


def parse_report(data: dict[str, Any]) -> DeploymentReport:
    """Create a DeploymentReport from a dict."""
    if data.get("kind", "DeploymentReport") != "DeploymentReport":
        raise ReportError(f"Not a deployment report: kind={data.get('kind')!r}")

    stack = data.get("stack")
    if not stack:
        raise ReportError("Report must specify 'stack'")

    nodes = data.get("nodes", {}) or {}
    if not isinstance(nodes, dict):
        raise ReportError("Report 'nodes' must be a mapping")

    report = DeploymentReport(stack=stack, checksum=data.get("checksum"))
    for node_id, entry in nodes.items():
        if not isinstance(entry, dict) or "status" not in entry:
            raise ReportError(f"Invalid record for node '{node_id}'")
        report.record(NodeRecord(
            id=node_id,
            kind=entry.get("kind", ""),
            status=entry["status"],
            stack=entry.get("stack"),
            fingerprint=entry.get("fingerprint"),
            inputs=entry.get("inputs", {}) or {},
            attributes=entry.get("attributes", {}) or {},
            error=entry.get("error"),
        ))
    return report


def load_report(path: str | Path) -> DeploymentReport:
    """Read a report file."""
    p = Path(path)
    if not p.exists():
        raise ReportError(f"Report file not found: {p}")

    with open(p) as f:
        data = yaml.safe_load(f)

    if not isinstance(data, dict):
        raise ReportError(f"Report file must be a YAML mapping: {p}")

    return parse_report(data)


def save_report(report: DeploymentReport, path: str | Path) -> None:
    """Write a report file, replacing any previous one atomically."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_name(p.name + ".tmp")
    with open(tmp, "w") as f:
        yaml.safe_dump(report.to_dict(), f, default_flow_style=False, sort_keys=False)
    tmp.replace(p)
