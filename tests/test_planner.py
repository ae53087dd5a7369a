"""
tests/test_planner.py — Deployment planner tests.

Layering, apply, partial failure, retry, resume, cancellation,
concurrency, locking, destroy and drift.
"""

import dataclasses
import os
import random
import sys
import threading

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from keel.core.graph import ResourceGraph, CycleError
from keel.core.node import NodeKind, ResourceNode
from keel.core.token import Token, AttributeNotFoundError
from keel.deploy.backend import BackendError
from keel.deploy.drift import detect_drift, MISSING, CHANGED
from keel.deploy.lock import DeployLock, DeployLockedError
from keel.deploy.planner import (
    DeploymentPlanner, PartialDeploymentError, plan, plan_destroy, apply,
)
from keel.deploy.report import load_report
from keel.redact import REDACTED

from conftest import RecordingBackend, make_node


def _abc():
    """B → A, C → A."""
    g = ResourceGraph("abc")
    for node_id in "ABC":
        g.add_node(make_node(node_id))
    g.add_edge("B", "A")
    g.add_edge("C", "A")
    return g


def _three_layers(a_cidr="10.0.0.0/16"):
    """[A] → [B, C] → [D, E]; B reads A's id."""
    g = ResourceGraph("three")
    a = g.add(make_node("A", {"cidr": a_cidr}))
    b = g.add(make_node("B", {"parent": a.ref("id")}))
    c = g.add(make_node("C"))
    g.add_edge("C", "A")
    g.add(make_node("D", {"parent": b.ref("id")}))
    g.add(make_node("E"))
    g.add_edge("E", c.id)
    return g


def _random_dag(rng, size):
    g = ResourceGraph("random")
    ids = [f"n{i}" for i in range(size)]
    for node_id in ids:
        g.add_node(make_node(node_id))
    for i in range(size):
        for j in range(i):
            if rng.random() < 0.3:
                g.add_edge(ids[i], ids[j], soft=rng.random() < 0.5)
    return g


# ─────────────────────────────────────────────
# PLAN
# ─────────────────────────────────────────────
class TestPlan:
    def test_layers(self):
        result = plan(_abc())
        assert result.layers == [["A"], ["B", "C"]]
        assert result.stack == "abc"
        assert result.destroy is False

    def test_layer_order_follows_insertion(self):
        g = ResourceGraph()
        for node_id in ["z", "m", "a"]:
            g.add_node(make_node(node_id))
        assert plan(g).layers == [["z", "m", "a"]]

    def test_three_layers(self):
        assert plan(_three_layers()).layers == [["A"], ["B", "C"], ["D", "E"]]

    def test_checksum(self):
        assert plan(_abc()).checksum == _abc().checksum()

    def test_empty_graph(self):
        assert plan(ResourceGraph()).layers == []

    def test_cycle(self, backend):
        g = ResourceGraph()
        g.add(make_node("a"))
        g.add(make_node("b", {"a": Token("a", "id")}))
        # Bypass the incremental check to plant a cycle
        g._link("a", "b", soft=False)
        planner = DeploymentPlanner(backend)
        with pytest.raises(CycleError):
            planner.plan(g)
        assert backend.realized == []

    def test_destroy_layers(self):
        result = plan_destroy(_abc())
        assert result.layers == [["B", "C"], ["A"]]
        assert result.destroy is True

    def test_layer_of(self):
        result = plan(_abc())
        assert result.layer_of("A") == 0
        assert result.layer_of("C") == 1
        with pytest.raises(KeyError):
            result.layer_of("ghost")

    def test_to_dict(self):
        data = plan(_abc()).to_dict()
        assert data["stack"] == "abc"
        assert data["layers"][1] == [
            {"id": "B", "kind": "manifest"},
            {"id": "C", "kind": "manifest"},
        ]

    def test_random_dags_respect_edges(self):
        rng = random.Random(1234)
        for _ in range(25):
            g = _random_dag(rng, rng.randint(1, 30))
            result = plan(g)

            assert sorted(result.node_ids) == sorted(g.node_ids())
            for edge in g.edges():
                assert result.layer_of(edge.dependency) < result.layer_of(edge.dependent)
            # Every node sits in the earliest layer its dependencies allow
            for index, layer in enumerate(result.layers):
                for node_id in layer:
                    deps = g.dependencies(node_id)
                    if index == 0:
                        assert deps == []
                    else:
                        assert max(result.layer_of(d) for d in deps) == index - 1

    def test_random_dags_destroy_reverses(self):
        rng = random.Random(99)
        for _ in range(10):
            g = _random_dag(rng, rng.randint(2, 20))
            result = plan_destroy(g)
            for edge in g.edges():
                assert result.layer_of(edge.dependent) < result.layer_of(edge.dependency)


# ─────────────────────────────────────────────
# APPLY
# ─────────────────────────────────────────────
class TestApply:
    def test_resolves_tokens(self, backend, settings):
        g = ResourceGraph("tokens")
        backend.attributes["Y"] = {"arn": "arn:aws:iam::123:role/foo"}
        y = g.add(make_node("Y"))
        g.add(make_node("X", {"role-arn": y.ref("arn")}))

        report = DeploymentPlanner(backend, settings).apply(plan(g))

        assert backend.realized == ["Y", "X"]
        assert backend.inputs["X"]["role-arn"] == "arn:aws:iam::123:role/foo"
        assert report.realized == ["Y", "X"]
        assert report.get("X").attributes["id"] == "h-X"
        assert g.node("X").handle == "h-X"
        assert g.node("X").realized

    def test_report_records(self, backend, settings):
        g = _abc()
        report = DeploymentPlanner(backend, settings).apply(plan(g))
        rec = report.get("B")
        assert rec.status == "realized"
        assert rec.kind == "manifest"
        assert rec.fingerprint == g.fingerprint("B")
        assert report.checksum == g.checksum()

    def test_random_dags_realize_in_order(self, settings):
        rng = random.Random(7)
        for _ in range(5):
            g = _random_dag(rng, rng.randint(5, 25))
            backend = RecordingBackend()
            DeploymentPlanner(backend, settings).apply(plan(g))
            order = {name: i for i, name in enumerate(backend.realized)}
            assert len(order) == len(g)
            for edge in g.edges():
                assert order[edge.dependency] < order[edge.dependent]

    def test_saves_report(self, backend, settings, tmp_path):
        store = tmp_path / "abc.report.yaml"
        DeploymentPlanner(backend, settings).apply(plan(_abc()), store=store)
        saved = load_report(store)
        assert saved.stack == "abc"
        assert saved.realized == ["A", "B", "C"]

    def test_apply_shorthand(self, backend, settings):
        report = apply(plan(_abc()), backend, settings)
        assert sorted(report.realized) == ["A", "B", "C"]

    def test_rejects_destroy_plan(self, backend, settings):
        with pytest.raises(ValueError):
            DeploymentPlanner(backend, settings).apply(plan_destroy(_abc()))

    def test_boundary_nodes_skip_backend(self, backend, settings):
        g = ResourceGraph("stacks")
        c = g.add(make_node("c"))
        g.add(ResourceNode("s:entry", NodeKind.NESTED_STACK, {
            "stack": "s",
            "parameters": {"ClusterName": c.ref("name")},
        }))

        report = DeploymentPlanner(backend, settings).apply(plan(g))

        assert backend.realized == ["c"]
        rec = report.get("s:entry")
        assert rec.status == "realized"
        assert rec.attributes["parameters"] == {"ClusterName": "c"}

    def test_missing_attribute_aborts(self, backend, settings):
        g = ResourceGraph("broken")
        y = g.add(make_node("y"))
        g.add(make_node("x", {"arn": y.ref("arn")}))
        with pytest.raises(AttributeNotFoundError):
            DeploymentPlanner(backend, settings).apply(plan(g))
        assert backend.realized == ["y"]
        assert not settings.lock_path("broken").exists()

    def test_missing_attribute_keeps_sibling_records(self, backend, settings, tmp_path):
        g = ResourceGraph("broken")
        y = g.add(make_node("y"))
        g.add(make_node("x", {"arn": y.ref("arn")}))
        g.add(make_node("z"))
        g.add_edge("z", "y")
        store = tmp_path / "broken.report.yaml"

        with pytest.raises(AttributeNotFoundError):
            DeploymentPlanner(backend, settings).apply(plan(g), store=store)

        assert sorted(backend.realized) == ["y", "z"]
        saved = load_report(store)
        assert sorted(saved.realized) == ["y", "z"]
        assert saved.get("x") is None

    def test_boundary_parameters_redacted(self, settings, tmp_path):
        def build():
            g = ResourceGraph("stacks")
            c = g.add(make_node("c"))
            entry = g.add(ResourceNode("s:entry", NodeKind.NESTED_STACK, {
                "stack": "s",
                "parameters": {"db_password": c.ref("name")},
            }))
            g.add(make_node("db", {"master": entry.ref("parameters.db_password")}))
            return g

        store = tmp_path / "stacks.report.yaml"
        first = RecordingBackend(fail={"db": BackendError("boom")})
        with pytest.raises(PartialDeploymentError):
            DeploymentPlanner(first, settings).apply(plan(build()), store=store)

        saved = load_report(store)
        assert saved.get("s:entry").attributes["parameters"] == {"db_password": REDACTED}

        # Resumed boundaries hand the real value on, not the mask
        second = RecordingBackend()
        DeploymentPlanner(second, settings).apply(plan(build()), previous=saved)
        assert second.realized == ["db"]
        assert second.inputs["db"]["master"] == "c"


# ─────────────────────────────────────────────
# FAILURES
# ─────────────────────────────────────────────
class TestPartialFailure:
    def test_terminal_failure_stops_later_layers(self, settings, tmp_path):
        backend = RecordingBackend(fail={"B": BackendError("access denied")})
        store = tmp_path / "three.report.yaml"

        with pytest.raises(PartialDeploymentError) as exc:
            DeploymentPlanner(backend, settings).apply(plan(_three_layers()), store=store)

        e = exc.value
        assert e.failed_node == "B"
        assert e.failed == ["B"]
        assert "A" in e.succeeded
        assert "C" in e.succeeded
        assert e.pending == ["D", "E"]
        assert e.cancelled is False
        assert "D" not in backend.attempts
        assert "E" not in backend.attempts
        # Terminal errors are not retried
        assert backend.attempts["B"] == 1

        saved = load_report(store)
        assert saved.get("B").status == "failed"
        assert "access denied" in saved.get("B").error
        assert saved.get("D") is None

    def test_failure_message(self, settings):
        backend = RecordingBackend(fail={"B": BackendError("access denied")})
        with pytest.raises(PartialDeploymentError) as exc:
            DeploymentPlanner(backend, settings).apply(plan(_three_layers()))
        message = str(exc.value)
        assert "B (manifest)" in message
        assert "access denied" in message
        assert "h-A" in message  # resolved inputs

    def test_secrets_redacted(self, settings):
        g = ResourceGraph("secret")
        g.add(make_node("db", {"db_password": "hunter2"}))
        backend = RecordingBackend(fail={"db": BackendError("nope")})

        with pytest.raises(PartialDeploymentError) as exc:
            DeploymentPlanner(backend, settings).apply(plan(g))

        assert "hunter2" not in str(exc.value)
        assert exc.value.failures[0].inputs["db_password"] == REDACTED
        assert exc.value.report.get("db").inputs["db_password"] == REDACTED

    def test_unexpected_exception_is_wrapped(self, settings):
        backend = RecordingBackend(fail={"A": RuntimeError("kaput")})
        with pytest.raises(PartialDeploymentError) as exc:
            DeploymentPlanner(backend, settings).apply(plan(_abc()))
        error = exc.value.failures[0].error
        assert isinstance(error, BackendError)
        assert not error.transient
        assert isinstance(error.__cause__, RuntimeError)
        assert "RuntimeError: kaput" in str(exc.value)

    def test_all_failures_of_a_layer(self, settings):
        backend = RecordingBackend(fail={
            "B": BackendError("b failed"),
            "C": BackendError("c failed"),
        })
        with pytest.raises(PartialDeploymentError) as exc:
            DeploymentPlanner(backend, settings).apply(plan(_abc()))
        assert exc.value.failed == ["B", "C"]
        assert exc.value.succeeded == ["A"]


class TestRetry:
    def test_transient_errors_retried(self, settings):
        backend = RecordingBackend(transient={"A": 2})
        report = DeploymentPlanner(backend, settings).apply(plan(_abc()))
        assert backend.attempts["A"] == 3
        assert "A" in report.realized

    def test_retries_exhausted(self, settings):
        backend = RecordingBackend(transient={"A": 10})
        with pytest.raises(PartialDeploymentError) as exc:
            DeploymentPlanner(backend, settings).apply(plan(_abc()))
        assert backend.attempts["A"] == settings.max_attempts
        assert exc.value.failures[0].transient is True
        assert exc.value.pending == ["B", "C"]


# ─────────────────────────────────────────────
# RESUME
# ─────────────────────────────────────────────
class TestResume:
    def test_resume_after_failure(self, settings):
        g = _three_layers()
        first = RecordingBackend(fail={"B": BackendError("boom")})
        with pytest.raises(PartialDeploymentError) as exc:
            DeploymentPlanner(first, settings).apply(plan(g))

        second = RecordingBackend()
        report = DeploymentPlanner(second, settings).apply(plan(g), previous=exc.value.report)

        assert sorted(second.realized) == ["B", "D", "E"]
        # B read A's id from the resumed record
        assert second.inputs["B"]["parent"] == "h-A"
        assert sorted(report.realized) == ["A", "B", "C", "D", "E"]

    def test_unchanged_graph_is_not_realized_again(self, settings):
        first = RecordingBackend()
        report = DeploymentPlanner(first, settings).apply(plan(_three_layers()))

        second = RecordingBackend()
        DeploymentPlanner(second, settings).apply(plan(_three_layers()), previous=report)
        assert second.realized == []

    def test_changed_node_and_dependents_realized_again(self, settings):
        report = DeploymentPlanner(RecordingBackend(), settings).apply(plan(_three_layers()))

        second = RecordingBackend()
        DeploymentPlanner(second, settings).apply(
            plan(_three_layers(a_cidr="10.9.0.0/16")), previous=report,
        )
        assert sorted(second.realized) == ["A", "B", "C", "D", "E"]

    def test_report_of_other_stack_ignored(self, settings):
        report = DeploymentPlanner(RecordingBackend(), settings).apply(plan(_abc()))
        report.stack = "other"
        second = RecordingBackend()
        DeploymentPlanner(second, settings).apply(plan(_abc()), previous=report)
        assert sorted(second.realized) == ["A", "B", "C"]


# ─────────────────────────────────────────────
# CANCELLATION & CONCURRENCY
# ─────────────────────────────────────────────
class _CancellingBackend(RecordingBackend):
    """Sets the cancel event while realizing one node."""

    def __init__(self, trigger, cancel):
        super().__init__()
        self.trigger = trigger
        self.cancel = cancel

    def realize(self, kind, inputs):
        result = super().realize(kind, inputs)
        if inputs["name"] == self.trigger:
            self.cancel.set()
        return result


class TestCancellation:
    def test_cancelled_before_start(self, backend, settings):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(PartialDeploymentError) as exc:
            DeploymentPlanner(backend, settings).apply(plan(_abc()), cancel=cancel)
        assert exc.value.cancelled is True
        assert exc.value.failed_node is None
        assert exc.value.pending == ["A", "B", "C"]
        assert backend.realized == []

    def test_current_layer_finishes(self, settings):
        cancel = threading.Event()
        backend = _CancellingBackend("A", cancel)
        with pytest.raises(PartialDeploymentError) as exc:
            DeploymentPlanner(backend, settings).apply(plan(_three_layers()), cancel=cancel)
        assert backend.realized == ["A"]
        assert exc.value.succeeded == ["A"]
        assert exc.value.pending == ["B", "C", "D", "E"]
        assert "cancelled" in str(exc.value)


class TestConcurrency:
    def test_bounded_workers(self, settings):
        g = ResourceGraph("wide")
        for i in range(8):
            g.add_node(make_node(f"n{i}"))
        backend = RecordingBackend(delay=0.05)
        narrow = dataclasses.replace(settings, concurrency=2)

        DeploymentPlanner(backend, narrow).apply(plan(g))

        assert len(backend.realized) == 8
        assert backend.max_active <= 2

    def test_serial(self, settings):
        backend = RecordingBackend(delay=0.01)
        serial = dataclasses.replace(settings, concurrency=1)
        DeploymentPlanner(backend, serial).apply(plan(_three_layers()))
        assert backend.max_active == 1

    def test_layer_barrier(self, settings):
        g = ResourceGraph("barrier")
        g.add_node(make_node("slow"))
        g.add_node(make_node("fast"))
        g.add_node(make_node("next"))
        g.add_edge("next", "fast")
        backend = RecordingBackend(delay=0.02)

        DeploymentPlanner(backend, settings).apply(plan(g))

        assert backend.realized.index("next") > backend.realized.index("slow")


# ─────────────────────────────────────────────
# LOCKING
# ─────────────────────────────────────────────
class TestLocking:
    def test_locked_stack(self, backend, settings):
        with DeployLock("abc", settings.lock_path("abc")):
            with pytest.raises(DeployLockedError, match="keel unlock abc"):
                DeploymentPlanner(backend, settings).apply(plan(_abc()))
        assert backend.realized == []

    def test_lock_released(self, backend, settings):
        DeploymentPlanner(backend, settings).apply(plan(_abc()))
        assert not settings.lock_path("abc").exists()

    def test_lock_released_after_failure(self, settings):
        backend = RecordingBackend(fail={"A": BackendError("no")})
        with pytest.raises(PartialDeploymentError):
            DeploymentPlanner(backend, settings).apply(plan(_abc()))
        assert not settings.lock_path("abc").exists()


# ─────────────────────────────────────────────
# DESTROY
# ─────────────────────────────────────────────
class TestDestroy:
    def test_reverse_order(self, backend, settings):
        g = _three_layers()
        planner = DeploymentPlanner(backend, settings)
        report = planner.apply(plan(g))

        result = planner.destroy(plan_destroy(g), report)

        order = {name: i for i, name in enumerate(backend.destroyed)}
        assert sorted(order) == ["A", "B", "C", "D", "E"]
        for edge in g.edges():
            assert order[edge.dependent] < order[edge.dependency]
        assert result.ids_with_status("destroyed") == ["A", "B", "C", "D", "E"]
        # The input report is left alone
        assert report.get("A").status == "realized"

    def test_only_realized_nodes(self, settings):
        g = _three_layers()
        backend = RecordingBackend(fail={"B": BackendError("boom")})
        planner = DeploymentPlanner(backend, settings)
        with pytest.raises(PartialDeploymentError) as exc:
            planner.apply(plan(g))

        result = planner.destroy(plan_destroy(g), exc.value.report)

        assert sorted(backend.destroyed) == ["A", "C"]
        assert result.get("B").status == "failed"

    def test_boundary_nodes_not_sent(self, backend, settings):
        g = ResourceGraph("stacks")
        g.add(make_node("c"))
        g.add(ResourceNode("s:entry", NodeKind.NESTED_STACK, {"stack": "s"}))
        planner = DeploymentPlanner(backend, settings)
        report = planner.apply(plan(g))

        result = planner.destroy(plan_destroy(g), report)

        assert backend.destroyed == ["c"]
        assert result.get("s:entry").status == "destroyed"

    def test_orphans_destroyed_first(self, backend, settings):
        g1 = ResourceGraph("shrink")
        g1.add(make_node("a"))
        g1.add(make_node("b"))
        planner = DeploymentPlanner(backend, settings)
        report = planner.apply(plan(g1))

        g2 = ResourceGraph("shrink")
        g2.add(make_node("a"))
        planner.destroy(plan_destroy(g2), report)

        assert backend.destroyed == ["b", "a"]

    def test_destroy_failure(self, settings):
        backend = RecordingBackend(destroy_fail={"A": BackendError("in use")})
        planner = DeploymentPlanner(backend, settings)
        g = _abc()
        report = planner.apply(plan(g))

        with pytest.raises(PartialDeploymentError) as exc:
            planner.destroy(plan_destroy(g), report)

        assert exc.value.failed == ["A"]
        assert sorted(exc.value.succeeded) == ["B", "C"]
        assert exc.value.report.get("A").status == "realized"
        assert "in use" in exc.value.report.get("A").error

    def test_rejects_apply_plan(self, backend, settings):
        g = _abc()
        planner = DeploymentPlanner(backend, settings)
        report = planner.apply(plan(g))
        with pytest.raises(ValueError):
            planner.destroy(plan(g), report)


# ─────────────────────────────────────────────
# DRIFT
# ─────────────────────────────────────────────
class TestDrift:
    def test_no_drift(self, backend, settings):
        report = DeploymentPlanner(backend, settings).apply(plan(_abc()))
        assert detect_drift(report, backend) == []

    def test_missing_and_changed(self, backend, settings):
        report = DeploymentPlanner(backend, settings).apply(plan(_abc()))
        del backend.resources["h-B"]
        backend.resources["h-C"]["name"] = "renamed"

        items = {item.node_id: item for item in detect_drift(report, backend)}

        assert items["B"].status == MISSING
        assert items["C"].status == CHANGED
        assert items["C"].changed == {"name": ("C", "renamed")}
        assert "A" not in items
        assert str(items["C"]) == "C (manifest): changed name"

    def test_describe_errors_propagate(self, settings):
        class Broken(RecordingBackend):
            def describe(self, kind, handle):
                raise BackendError("throttled", transient=True)

        backend = Broken()
        report = DeploymentPlanner(backend, settings).apply(plan(_abc()))
        with pytest.raises(BackendError, match="throttled"):
            detect_drift(report, backend)
