"""
keel.deploy.drift — Compare a deployment report with the backend.

A resource has drifted when the backend no longer knows it or reports
attributes that differ from those recorded at deploy time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from keel.core.node import NodeKind
from keel.deploy.backend import BackendError, ProvisioningBackend
from keel.deploy.report import DeploymentReport
from keel.log import get_logger

logger = get_logger("drift")

MISSING = "missing"
CHANGED = "changed"


@dataclass
class DriftItem:
    """One drifted resource."""
    node_id: str
    kind: str
    status: str
    changed: dict[str, tuple[Any, Any]] = field(default_factory=dict)

    def __str__(self) -> str:
        if self.status == MISSING:
            return f"{self.node_id} ({self.kind}): missing"
        keys = ", ".join(sorted(self.changed))
        return f"{self.node_id} ({self.kind}): changed {keys}"


def detect_drift(report: DeploymentReport, backend: ProvisioningBackend) -> list[DriftItem]:
    """Describe every realized resource of the report.

    Stack boundary records have no backend resource and are skipped.

    Raises:
        BackendError: describe failed for a reason other than NotFound
    """
    items: list[DriftItem] = []
    for rec in report.records.values():
        if not rec.realized:
            continue
        kind = NodeKind.parse(rec.kind)
        if kind is NodeKind.NESTED_STACK:
            continue

        try:
            current = backend.describe(kind, rec.handle)
        except BackendError as e:
            if not e.not_found:
                raise
            items.append(DriftItem(rec.id, rec.kind, MISSING))
            logger.warning("drift_missing", node=rec.id, kind=rec.kind)
            continue

        changed = _changed(rec.attributes, current)
        if changed:
            items.append(DriftItem(rec.id, rec.kind, CHANGED, changed))
            logger.warning("drift_changed", node=rec.id, kind=rec.kind, keys=sorted(changed))

    return items


def _changed(recorded: dict[str, Any], current: dict[str, Any]) -> dict[str, tuple[Any, Any]]:
    """Top-level keys whose value differs: key → (recorded, current)."""
    changed: dict[str, tuple[Any, Any]] = {}
    for key in sorted(set(recorded) | set(current)):
        before = _plain(recorded.get(key))
        after = _plain(current.get(key))
        if before != after:
            changed[key] = (before, after)
    return changed


def _plain(value: Any) -> Any:
    # Reports round-trip through YAML, which turns tuples into lists.
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(v) for v in value]
    return value
