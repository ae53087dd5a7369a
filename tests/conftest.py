"""
tests/conftest.py — Shared fixtures.

RecordingBackend identifies nodes by their "name" input, records every
call and can be told to fail.
"""

import os
import sys
import threading
import time

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from keel.config import Settings
from keel.core.node import NodeKind, ResourceNode
from keel.deploy.backend import BackendError, ProvisioningBackend
from keel.log import setup_logging


class RecordingBackend(ProvisioningBackend):
    """In-memory backend for planner tests.

    Args:
        attributes: name → extra attributes reported on realize
        fail: name → exception raised on every realize
        transient: name → number of transient failures before success
        destroy_fail: name → exception raised on destroy
        delay: seconds each realize sleeps (to observe parallelism)
    """

    name = "recording"

    def __init__(self, attributes=None, fail=None, transient=None,
                 destroy_fail=None, delay=0.0):
        self.attributes = attributes or {}
        self.fail = dict(fail or {})
        self.transient = dict(transient or {})
        self.destroy_fail = dict(destroy_fail or {})
        self.delay = delay

        self.realized = []
        self.destroyed = []
        self.inputs = {}
        self.attempts = {}
        self.resources = {}

        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    def realize(self, kind, inputs):
        name = inputs["name"]
        with self._lock:
            self.attempts[name] = self.attempts.get(name, 0) + 1
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                time.sleep(self.delay)
            if name in self.fail:
                raise self.fail[name]
            with self._lock:
                if self.transient.get(name, 0) > 0:
                    self.transient[name] -= 1
                    raise BackendError(f"{name}: throttled", transient=True)

            attributes = {"id": f"h-{name}", "name": name}
            attributes.update(self.attributes.get(name, {}))
            with self._lock:
                self.realized.append(name)
                self.inputs[name] = inputs
                self.resources[attributes["id"]] = dict(attributes)
            return attributes
        finally:
            with self._lock:
                self.active -= 1

    def destroy(self, kind, handle):
        name = str(handle)[2:] if str(handle).startswith("h-") else str(handle)
        if name in self.destroy_fail:
            raise self.destroy_fail[name]
        with self._lock:
            self.destroyed.append(name)
            self.resources.pop(handle, None)

    def describe(self, kind, handle):
        with self._lock:
            if handle not in self.resources:
                raise BackendError(f"{handle} not found", code="NotFound")
            return dict(self.resources[handle])


def make_node(node_id, inputs=None, kind=NodeKind.MANIFEST, stack=None):
    """A node whose "name" input is its id."""
    data = {"name": node_id}
    data.update(inputs or {})
    return ResourceNode(node_id, kind, data, stack=stack)


@pytest.fixture(autouse=True, scope="session")
def quiet_logging():
    setup_logging("warning")


@pytest.fixture
def settings(tmp_path):
    """Settings with a private state dir and no retry backoff."""
    return Settings(
        concurrency=4,
        max_attempts=3,
        backoff_multiplier=0,
        backoff_min=0,
        backoff_max=0,
        state_dir=tmp_path / ".keel",
    )


@pytest.fixture
def backend():
    return RecordingBackend()
