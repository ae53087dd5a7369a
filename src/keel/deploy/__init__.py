"""keel.deploy — Planning, execution and deployment state."""

from keel.deploy.backend import (
    BackendError, ProvisioningBackend, KindRouter,
    register_backend, get_backend, list_backends,
)
from keel.deploy.local import LocalBackend
from keel.deploy.lock import DeployLock, DeployLockedError, break_lock, read_lock
from keel.deploy.report import (
    DeploymentReport, NodeRecord, ReportError,
    load_report, save_report, parse_report,
)
from keel.deploy.planner import (
    DeploymentPlan, DeploymentPlanner, NodeFailure, PartialDeploymentError,
    plan, plan_destroy, apply,
)
from keel.deploy.drift import DriftItem, detect_drift

__all__ = [
    "BackendError",
    "ProvisioningBackend",
    "KindRouter",
    "register_backend",
    "get_backend",
    "list_backends",
    "LocalBackend",
    "DeployLock",
    "DeployLockedError",
    "break_lock",
    "read_lock",
    "DeploymentReport",
    "NodeRecord",
    "ReportError",
    "load_report",
    "save_report",
    "parse_report",
    "DeploymentPlan",
    "DeploymentPlanner",
    "NodeFailure",
    "PartialDeploymentError",
    "plan",
    "plan_destroy",
    "apply",
    "detect_drift",
    "DriftItem",
]
