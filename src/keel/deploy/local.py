"""
keel.deploy.local — Local simulation backend.

Realizes every node kind in memory, reporting the attributes a cloud
backend would report: ids, ARNs, the cluster's OIDC issuer, subnet ids.
Identifiers are derived from a sha256 of the resource identity, so the
same inputs always produce the same attributes and realize is
idempotent.

With a state file, separate CLI runs share the simulated resources:

    keel deploy -f deployment.yaml --backend local
    keel status --drift
    keel destroy -f deployment.yaml
"""

from __future__ import annotations

import copy
import hashlib
import json
import threading
from pathlib import Path
from typing import Any

import yaml

from keel.config import Settings
from keel.core.node import NodeKind
from keel.core.token import encode
from keel.deploy.backend import BackendError, ProvisioningBackend


class LocalBackend(ProvisioningBackend):
    """Deterministic in-memory provisioning."""

    name = "local"

    def __init__(
        self,
        account: str = "000000000000",
        region: str = "us-east-1",
        state_file: str | Path | None = None,
    ):
        self.account = account
        self.region = region
        self.state_file = Path(state_file) if state_file else None
        self._resources: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._load()

    @classmethod
    def from_settings(cls, settings: Settings) -> LocalBackend:
        return cls(
            account=settings.account,
            region=settings.region,
            state_file=settings.state_dir / "local-backend.yaml",
        )

    # ─────────────────────────────────────────────
    # interface
    # ─────────────────────────────────────────────
    def realize(self, kind: NodeKind, inputs: dict[str, Any]) -> dict[str, Any]:
        kind = NodeKind.parse(kind)
        builder = _BUILDERS.get(kind)
        if builder is None:
            raise BackendError(f"Kind '{kind.value}' is not provisioned by a backend")

        attributes = builder(self, inputs)
        with self._lock:
            self._resources[attributes["id"]] = {
                "kind": kind.value,
                "attributes": copy.deepcopy(attributes),
            }
            self._save()
        return attributes

    def destroy(self, kind: NodeKind, handle: Any) -> None:
        with self._lock:
            self._resources.pop(str(handle), None)
            self._save()

    def describe(self, kind: NodeKind, handle: Any) -> dict[str, Any]:
        with self._lock:
            entry = self._resources.get(str(handle))
        if entry is None:
            raise BackendError(
                f"{NodeKind.parse(kind).value} '{handle}' not found", code="NotFound",
            )
        return copy.deepcopy(entry["attributes"])

    def resources(self) -> dict[str, dict[str, Any]]:
        """Everything currently provisioned, keyed by handle."""
        with self._lock:
            return copy.deepcopy(self._resources)

    # ─────────────────────────────────────────────
    # state file
    # ─────────────────────────────────────────────
    def _load(self) -> None:
        if self.state_file is None or not self.state_file.exists():
            return
        with open(self.state_file) as f:
            data = yaml.safe_load(f) or {}
        self._resources = dict(data.get("resources", {}) or {})

    def _save(self) -> None:
        if self.state_file is None:
            return
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.state_file, "w") as f:
            yaml.safe_dump(
                {"resources": self._resources}, f,
                default_flow_style=False, sort_keys=True,
            )

    # ─────────────────────────────────────────────
    # helpers
    # ─────────────────────────────────────────────
    def iam_arn(self, resource: str) -> str:
        return f"arn:aws:iam::{self.account}:{resource}"

    def zones(self, count: int) -> list[str]:
        return [f"{self.region}{chr(ord('a') + i)}" for i in range(count)]


def _digest(*parts: Any) -> str:
    data = json.dumps(encode(list(parts)), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(data.encode()).hexdigest()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# KIND BUILDERS
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
def _network(backend: LocalBackend, inputs: dict[str, Any]) -> dict[str, Any]:
    name = inputs.get("name") or f"vpc-{_digest(inputs)[:8]}"
    zones = backend.zones(int(inputs.get("max_azs", 2)))
    subnets: dict[str, list[str]] = {"public": [], "private": []}
    for subnet in inputs.get("subnets", []) or []:
        group = "public" if subnet.get("type", "public") == "public" else "private"
        for zone in zones:
            sid = _digest(name, subnet.get("name", group), zone)[:17]
            subnets[group].append(f"subnet-{sid}")
    return {
        "id": f"vpc-{_digest(name)[:17]}",
        "name": name,
        "cidr": inputs.get("cidr", "10.0.0.0/16"),
        "availability_zones": zones,
        "public_subnets": subnets["public"],
        "private_subnets": subnets["private"],
    }


def _cluster(backend: LocalBackend, inputs: dict[str, Any]) -> dict[str, Any]:
    name = inputs.get("name") or f"cluster-{_digest(inputs)[:8]}"
    oidc_id = _digest(backend.account, backend.region, name)[:32].upper()
    issuer = f"oidc.eks.{backend.region}.amazonaws.com/id/{oidc_id}"
    return {
        "id": name,
        "name": name,
        "arn": f"arn:aws:eks:{backend.region}:{backend.account}:cluster/{name}",
        "endpoint": f"https://{oidc_id}.gr7.{backend.region}.eks.amazonaws.com",
        "version": str(inputs.get("version", "")),
        "oidc_issuer": issuer,
        "oidc_provider_arn": backend.iam_arn(f"oidc-provider/{issuer}"),
        "security_group_id": f"sg-{_digest(name, 'cluster-sg')[:17]}",
        "account": backend.account,
        "region": backend.region,
    }


def _identity_binding(backend: LocalBackend, inputs: dict[str, Any]) -> dict[str, Any]:
    name = (
        inputs.get("role_name")
        or inputs.get("name")
        or f"binding-{_digest(inputs)[:12]}"
    )
    path = inputs.get("path", "/")
    return {
        "id": name,
        "name": name,
        "arn": backend.iam_arn(f"role{path}{name}"),
        "unique_id": f"AROA{_digest(name)[:17].upper()}",
    }


def _chart_release(backend: LocalBackend, inputs: dict[str, Any]) -> dict[str, Any]:
    release = inputs.get("release") or inputs.get("chart") or "release"
    namespace = inputs.get("namespace", "default")
    return {
        "id": f"{namespace}/{release}",
        "release": release,
        "namespace": namespace,
        "chart": inputs.get("chart", release),
        "version": str(inputs.get("version", "")),
        "status": "deployed",
        "values_digest": f"sha256:{_digest(inputs.get('values', {}))}",
    }


def _manifest(backend: LocalBackend, inputs: dict[str, Any]) -> dict[str, Any]:
    objects = []
    for doc in inputs.get("documents", []) or []:
        meta = doc.get("metadata", {}) or {}
        objects.append(f"{doc.get('kind', 'Unknown')}/{meta.get('name', '')}")
    name = inputs.get("name") or f"manifest-{_digest(objects)[:12]}"
    return {
        "id": name,
        "objects": objects,
        "count": len(objects),
    }


def _template(backend: LocalBackend, inputs: dict[str, Any]) -> dict[str, Any]:
    name = inputs.get("stack_name") or inputs.get("template", "template").rsplit(".", 1)[0]
    name = name.replace("_", "-").replace(".", "-")
    body = inputs.get("body", {}) or {}
    return {
        "id": name,
        "stack_id": (
            f"arn:aws:cloudformation:{backend.region}:{backend.account}:"
            f"stack/{name}/{_digest(name)[:8]}"
        ),
        "parameters": copy.deepcopy(inputs.get("parameters", {}) or {}),
        "resources": sorted((body.get("Resources", {}) or {}).keys()),
    }


_BUILDERS = {
    NodeKind.NETWORK: _network,
    NodeKind.CLUSTER: _cluster,
    NodeKind.IDENTITY_BINDING: _identity_binding,
    NodeKind.CHART_RELEASE: _chart_release,
    NodeKind.MANIFEST: _manifest,
    NodeKind.TEMPLATE: _template,
}
