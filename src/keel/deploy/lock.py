"""
keel.deploy.lock — Exclusive deploy lock.

Only one deploy (or destroy) of a stack may touch the backend at a
time. The lock is a file created with O_EXCL under the state dir:

    .keel/locks/<stack>.lock

    pid: 4242
    host: build-07
    stack: karpenter-test

A crashed deploy leaves its lock behind; `keel unlock` removes it.
"""

from __future__ import annotations

import os
import socket
from pathlib import Path
from typing import Any

import yaml


class DeployLockedError(Exception):
    """Another deploy holds the lock for this stack."""

    def __init__(self, stack: str, path: Path, holder: dict[str, Any] | None = None):
        self.stack = stack
        self.path = path
        self.holder = holder or {}
        who = ""
        if self.holder:
            who = f" (pid {self.holder.get('pid')} on {self.holder.get('host')})"
        super().__init__(
            f"Stack '{stack}' is locked by another deploy{who}. "
            f"Run 'keel unlock {stack}' if that deploy is gone."
        )


class DeployLock:
    """Context manager holding the deploy lock of one stack."""

    def __init__(self, stack: str, path: str | Path):
        self.stack = stack
        self.path = Path(path)
        self._held = False

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise DeployLockedError(self.stack, self.path, read_lock(self.path)) from None
        with os.fdopen(fd, "w") as f:
            yaml.safe_dump(
                {"pid": os.getpid(), "host": socket.gethostname(), "stack": self.stack},
                f, default_flow_style=False,
            )
        self._held = True

    def release(self) -> None:
        if self._held:
            self.path.unlink(missing_ok=True)
            self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def __enter__(self) -> DeployLock:
        self.acquire()
        return self

    def __exit__(self, *exc: Any) -> bool:
        self.release()
        return False


def read_lock(path: str | Path) -> dict[str, Any]:
    """Holder information of an existing lock file ({} if unreadable)."""
    p = Path(path)
    try:
        with open(p) as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError):
        return {}
    return data if isinstance(data, dict) else {}


def break_lock(path: str | Path) -> bool:
    """Remove a stale lock. Returns False if there was none."""
    p = Path(path)
    if not p.exists():
        return False
    p.unlink()
    return True
