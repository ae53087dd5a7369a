"""
keel.deploy.planner — Deployment planning and execution.

plan() orders the graph into layers: every node in a layer depends
only on nodes of earlier layers, so the nodes of one layer can be
realized in parallel.

    graph: B → A, C → A          plan: [[A], [B, C]]

apply() walks the layers in order. For each node it resolves the
node's tokens against the attributes of already-realized nodes, calls
the backend, and records what the backend reported. Layer k+1 never
starts before layer k has finished. When a node fails the remaining
layers are abandoned; nodes realized so far are left in place and the
report lets a later apply resume from them.

destroy() walks the reversed layering: nodes nothing depends on go
first.
"""

from __future__ import annotations

import copy
import json
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from keel.config import Settings
from keel.core.graph import CycleError, ResourceGraph
from keel.core.node import NodeKind, ResourceNode
from keel.core.token import ResolveContext, TokenResolver, UnresolvedDependencyError
from keel.deploy.backend import BackendError, ProvisioningBackend
from keel.deploy.lock import DeployLock
from keel.deploy.report import (
    DESTROYED, FAILED, REALIZED, DeploymentReport, NodeRecord, save_report,
)
from keel.log import get_logger
from keel.redact import redact

logger = get_logger("planner")


@dataclass
class DeploymentPlan:
    """Ordered layers of node ids."""
    stack: str
    layers: list[list[str]]
    checksum: str
    graph: ResourceGraph = field(repr=False, compare=False)
    destroy: bool = False

    @property
    def node_ids(self) -> list[str]:
        return [node_id for layer in self.layers for node_id in layer]

    def layer_of(self, node_id: str) -> int:
        for index, layer in enumerate(self.layers):
            if node_id in layer:
                return index
        raise KeyError(node_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stack": self.stack,
            "checksum": self.checksum,
            "destroy": self.destroy,
            "layers": [
                [
                    {"id": node_id, "kind": self.graph.node(node_id).kind.value}
                    for node_id in layer
                ]
                for layer in self.layers
            ],
        }


def plan(graph: ResourceGraph) -> DeploymentPlan:
    """Order the graph for apply.

    Raises:
        CycleError: the graph has a cycle; nothing is planned
    """
    graph.validate()
    return DeploymentPlan(
        stack=graph.name,
        layers=_layers(graph, reverse=False),
        checksum=graph.checksum(),
        graph=graph,
    )


def plan_destroy(graph: ResourceGraph) -> DeploymentPlan:
    """Order the graph for teardown: terminal nodes first."""
    graph.validate()
    return DeploymentPlan(
        stack=graph.name,
        layers=_layers(graph, reverse=True),
        checksum=graph.checksum(),
        graph=graph,
        destroy=True,
    )


def _layers(graph: ResourceGraph, reverse: bool) -> list[list[str]]:
    """Kahn layering; within a layer nodes keep graph insertion order."""
    order = graph.node_ids()
    position = {node_id: i for i, node_id in enumerate(order)}

    if reverse:
        waits_on = {n: graph.dependents(n) for n in order}
    else:
        waits_on = {n: graph.dependencies(n) for n in order}

    unblocks: dict[str, list[str]] = {n: [] for n in order}
    in_degree: dict[str, int] = {}
    for node_id, blockers in waits_on.items():
        in_degree[node_id] = len(blockers)
        for blocker in blockers:
            unblocks[blocker].append(node_id)

    layers: list[list[str]] = []
    current = [n for n in order if in_degree[n] == 0]
    placed = 0
    while current:
        layers.append(current)
        placed += len(current)
        ready: list[str] = []
        for node_id in current:
            for waiting in unblocks[node_id]:
                in_degree[waiting] -= 1
                if in_degree[waiting] == 0:
                    ready.append(waiting)
        current = sorted(ready, key=position.__getitem__)

    if placed != len(order):
        residual = [n for n in order if in_degree[n] > 0]
        raise CycleError(residual)
    return layers


@dataclass
class NodeFailure:
    """A node that could not be realized (or destroyed)."""
    node_id: str
    kind: NodeKind
    inputs: dict[str, Any]
    error: Exception

    @property
    def transient(self) -> bool:
        return isinstance(self.error, BackendError) and self.error.transient

    def __str__(self) -> str:
        inputs = json.dumps(self.inputs, sort_keys=True, default=str)
        return f"{self.node_id} ({self.kind.value}): {self.error}; inputs={inputs}"


class PartialDeploymentError(Exception):
    """Some nodes were realized, then a node failed or the deploy was cancelled.

    Nothing is rolled back: fix the cause and apply again with the
    report to resume.
    """

    def __init__(
        self,
        stack: str,
        succeeded: list[str],
        failures: list[NodeFailure],
        pending: list[str],
        report: DeploymentReport,
        cancelled: bool = False,
    ):
        self.stack = stack
        self.succeeded = succeeded
        self.failures = failures
        self.pending = pending
        self.report = report
        self.cancelled = cancelled

        if cancelled:
            head = f"Deployment of '{stack}' cancelled"
        else:
            head = f"Deployment of '{stack}' failed"
        lines = [
            f"{head}: {len(succeeded)} done, "
            f"{len(failures)} failed, {len(pending)} pending",
        ]
        lines.extend(f"  {failure}" for failure in failures)
        super().__init__("\n".join(lines))

    @property
    def failed(self) -> list[str]:
        return [f.node_id for f in self.failures]

    @property
    def failed_node(self) -> str | None:
        return self.failures[0].node_id if self.failures else None


class _NodeFailed(Exception):
    def __init__(self, failure: NodeFailure):
        super().__init__(str(failure))
        self.failure = failure


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, BackendError) and error.transient


class DeploymentPlanner:
    """Drives a plan through a provisioning backend.

    Usage::

        planner = DeploymentPlanner(LocalBackend(), Settings(concurrency=2))
        report = planner.apply(planner.plan(graph))
    """

    def __init__(self, backend: ProvisioningBackend, settings: Settings | None = None):
        self.backend = backend
        self.settings = settings or Settings()

    def plan(self, graph: ResourceGraph) -> DeploymentPlan:
        return plan(graph)

    # ─────────────────────────────────────────────
    # apply
    # ─────────────────────────────────────────────
    def apply(
        self,
        deployment_plan: DeploymentPlan,
        previous: DeploymentReport | None = None,
        cancel: threading.Event | None = None,
        store: str | Path | None = None,
    ) -> DeploymentReport:
        """Realize every node of the plan.

        Args:
            deployment_plan: Result of plan()
            previous: Report of an earlier deploy to resume from
            cancel: Set to stop before the next layer
            store: Path the report is saved to after every layer

        Raises:
            PartialDeploymentError: a node failed or the deploy was cancelled
            DeployLockedError: another deploy of the stack is running
        """
        if deployment_plan.destroy:
            raise ValueError("apply() needs a deploy plan, got a destroy plan")

        lock = DeployLock(deployment_plan.stack, self.settings.lock_path(deployment_plan.stack))
        with lock:
            return self._apply(deployment_plan, previous, cancel, store)

    def _apply(
        self,
        deployment_plan: DeploymentPlan,
        previous: DeploymentReport | None,
        cancel: threading.Event | None,
        store: str | Path | None,
    ) -> DeploymentReport:
        graph = deployment_plan.graph
        log = logger.bind(stack=deployment_plan.stack)
        resolver = TokenResolver()
        context = ResolveContext()
        report = DeploymentReport(stack=deployment_plan.stack, checksum=deployment_plan.checksum)

        reused = self._reusable(deployment_plan, previous)
        if previous is not None and previous.stack == deployment_plan.stack:
            # Realized nodes the graph no longer has stay on record for destroy.
            for rec in previous.records.values():
                if rec.id not in graph and rec.realized:
                    log.warning("orphaned_node", node=rec.id, kind=rec.kind)
                    report.record(copy.deepcopy(rec))

        log.info(
            "deploy_started",
            layers=len(deployment_plan.layers),
            nodes=len(deployment_plan.node_ids),
            resumed=len(reused),
        )

        for index, layer in enumerate(deployment_plan.layers):
            for node_id in layer:
                if node_id in reused:
                    node = graph.node(node_id)
                    rec = copy.deepcopy(previous.records[node_id])  # type: ignore[union-attr]
                    report.record(rec)
                    attributes = rec.attributes
                    if node.is_boundary:
                        # Stack parameters are stored redacted
                        attributes = resolver.resolve(node.inputs, context)
                    context.record(node_id, attributes)
                    _mark_realized(node, attributes)
                    log.debug("node_reused", node=node_id)

            pending = [n for n in layer if n not in reused]
            if not pending:
                continue
            if cancel is not None and cancel.is_set():
                log.warning("deploy_cancelled", layer=index)
                self._save(report, store)
                raise self._partial(deployment_plan, report, [], cancelled=True)

            log.info("layer_started", layer=index, nodes=pending)
            try:
                failures = self._run_layer(graph, pending, resolver, context, report, index)
            finally:
                self._save(report, store)
            if failures:
                raise self._partial(deployment_plan, report, failures)

        log.info("deploy_finished", realized=len(report.realized))
        return report

    def _reusable(
        self,
        deployment_plan: DeploymentPlan,
        previous: DeploymentReport | None,
    ) -> set[str]:
        """Nodes whose recorded realization is still valid."""
        if previous is None:
            return set()
        if previous.stack != deployment_plan.stack:
            logger.warning(
                "report_stack_mismatch",
                stack=deployment_plan.stack, report_stack=previous.stack,
            )
            return set()

        graph = deployment_plan.graph
        reused: set[str] = set()
        for node_id in deployment_plan.node_ids:
            rec = previous.get(node_id)
            if rec is None or not rec.realized:
                continue
            if rec.fingerprint != graph.fingerprint(node_id):
                continue
            if all(dep in reused for dep in graph.dependencies(node_id)):
                reused.add(node_id)
        return reused

    def _run_layer(
        self,
        graph: ResourceGraph,
        pending: list[str],
        resolver: TokenResolver,
        context: ResolveContext,
        report: DeploymentReport,
        index: int,
    ) -> list[NodeFailure]:
        outcomes: dict[str, Any] = {}
        workers = min(self.settings.concurrency, len(pending))

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="keel") as pool:
            futures = {
                pool.submit(self._realize_node, graph.node(node_id), resolver, context): node_id
                for node_id in pending
            }
            for future in as_completed(futures):
                node = graph.node(futures[future])
                try:
                    outcomes[node.id] = future.result()
                except UnresolvedDependencyError as e:
                    outcomes[node.id] = e
                    logger.error("node_unresolvable", node=node.id, layer=index, error=str(e))
                except _NodeFailed as e:
                    outcomes[node.id] = e.failure
                    logger.error(
                        "node_failed",
                        node=node.id, kind=node.kind.value, layer=index,
                        transient=e.failure.transient, error=str(e.failure.error),
                    )
                else:
                    logger.info("node_realized", node=node.id, kind=node.kind.value, layer=index)

        # Recorded in plan order so reports do not depend on timing
        failures: list[NodeFailure] = []
        unresolvable: list[UnresolvedDependencyError] = []
        for node_id in pending:
            node = graph.node(node_id)
            outcome = outcomes[node_id]
            if isinstance(outcome, UnresolvedDependencyError):
                unresolvable.append(outcome)
                continue
            if isinstance(outcome, NodeFailure):
                failures.append(outcome)
                report.record(NodeRecord(
                    id=node.id,
                    kind=node.kind.value,
                    status=FAILED,
                    stack=node.stack,
                    fingerprint=graph.fingerprint(node.id),
                    inputs=outcome.inputs,
                    error=str(outcome.error),
                ))
                continue

            inputs, attributes = outcome
            context.record(node.id, attributes)
            _mark_realized(node, attributes)
            report.record(NodeRecord(
                id=node.id,
                kind=node.kind.value,
                status=REALIZED,
                stack=node.stack,
                fingerprint=graph.fingerprint(node.id),
                inputs=redact(inputs),
                attributes=redact(attributes) if node.is_boundary else attributes,
            ))

        # Siblings that reached the backend are on record; the graph itself is wrong.
        if unresolvable:
            raise unresolvable[0]
        return failures

    def _realize_node(
        self,
        node: ResourceNode,
        resolver: TokenResolver,
        context: ResolveContext,
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        """Resolve a node's inputs and realize it. Runs on a worker thread."""
        try:
            inputs = resolver.resolve(node.inputs, context)
        except UnresolvedDependencyError:
            raise
        except Exception as e:
            raise _NodeFailed(NodeFailure(node.id, node.kind, {}, e)) from e

        if node.is_boundary:
            return inputs, dict(inputs)

        try:
            attributes = self._retrying(node, "realize")(self.backend.realize, node.kind, inputs)
        except BackendError as e:
            raise _NodeFailed(NodeFailure(node.id, node.kind, redact(inputs), e)) from e
        except Exception as e:
            error = BackendError(f"{type(e).__name__}: {e}")
            error.__cause__ = e
            raise _NodeFailed(NodeFailure(node.id, node.kind, redact(inputs), error)) from e

        if not isinstance(attributes, dict):
            error = BackendError(
                f"Backend returned {type(attributes).__name__} instead of an attribute mapping"
            )
            raise _NodeFailed(NodeFailure(node.id, node.kind, redact(inputs), error))
        return inputs, attributes

    # ─────────────────────────────────────────────
    # destroy
    # ─────────────────────────────────────────────
    def destroy(
        self,
        deployment_plan: DeploymentPlan,
        report: DeploymentReport,
        cancel: threading.Event | None = None,
        store: str | Path | None = None,
    ) -> DeploymentReport:
        """Destroy every realized node of a report, dependents first.

        Raises:
            PartialDeploymentError: a node could not be destroyed or cancelled
        """
        if not deployment_plan.destroy:
            raise ValueError("destroy() needs a destroy plan, see plan_destroy()")

        lock = DeployLock(deployment_plan.stack, self.settings.lock_path(deployment_plan.stack))
        with lock:
            return self._destroy(deployment_plan, report, cancel, store)

    def _destroy(
        self,
        deployment_plan: DeploymentPlan,
        report: DeploymentReport,
        cancel: threading.Event | None,
        store: str | Path | None,
    ) -> DeploymentReport:
        graph = deployment_plan.graph
        result = report.copy()
        log = logger.bind(stack=deployment_plan.stack)

        # Records the graph no longer knows about go first.
        orphans = [
            rec.id for rec in reversed(list(result.records.values()))
            if rec.realized and rec.id not in graph
        ]
        layers = [[o] for o in orphans] + deployment_plan.layers

        log.info("destroy_started", layers=len(layers), orphans=len(orphans))
        for index, layer in enumerate(layers):
            targets = [n for n in layer if (rec := result.get(n)) is not None and rec.realized]
            if not targets:
                continue
            if cancel is not None and cancel.is_set():
                log.warning("destroy_cancelled", layer=index)
                self._save(result, store)
                raise self._partial(
                    deployment_plan, result, [], cancelled=True, done_status=DESTROYED,
                )

            failures = self._destroy_layer(targets, result, index)
            self._save(result, store)
            if failures:
                raise self._partial(deployment_plan, result, failures, done_status=DESTROYED)

        log.info("destroy_finished", destroyed=len(result.ids_with_status(DESTROYED)))
        return result

    def _destroy_layer(
        self,
        targets: list[str],
        result: DeploymentReport,
        index: int,
    ) -> list[NodeFailure]:
        failures: list[NodeFailure] = []
        workers = min(self.settings.concurrency, len(targets))

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="keel") as pool:
            futures = {
                pool.submit(self._destroy_node, result.records[node_id]): node_id
                for node_id in targets
            }
            for future in as_completed(futures):
                rec = result.records[futures[future]]
                try:
                    future.result()
                except _NodeFailed as e:
                    failures.append(e.failure)
                    rec.error = str(e.failure.error)
                    logger.error(
                        "node_destroy_failed",
                        node=rec.id, kind=rec.kind, layer=index, error=rec.error,
                    )
                    continue
                rec.status = DESTROYED
                rec.error = None
                logger.info("node_destroyed", node=rec.id, kind=rec.kind, layer=index)

        order = {node_id: i for i, node_id in enumerate(targets)}
        failures.sort(key=lambda f: order[f.node_id])
        return failures

    def _destroy_node(self, rec: NodeRecord) -> None:
        kind = NodeKind.parse(rec.kind)
        if kind is NodeKind.NESTED_STACK:
            return
        stub = ResourceNode(id=rec.id, kind=kind)
        try:
            self._retrying(stub, "destroy")(self.backend.destroy, kind, rec.handle)
        except BackendError as e:
            raise _NodeFailed(NodeFailure(rec.id, kind, rec.inputs, e)) from e
        except Exception as e:
            error = BackendError(f"{type(e).__name__}: {e}")
            error.__cause__ = e
            raise _NodeFailed(NodeFailure(rec.id, kind, rec.inputs, error)) from e

    # ─────────────────────────────────────────────
    # helpers
    # ─────────────────────────────────────────────
    def _retrying(self, node: ResourceNode, action: str) -> Retrying:
        """Retry policy for transient backend errors on one node."""

        def before_sleep(state: Any) -> None:
            logger.warning(
                "backend_retry",
                node=node.id, kind=node.kind.value, action=action,
                attempt=state.attempt_number,
                error=str(state.outcome.exception()),
            )

        return Retrying(
            retry=retry_if_exception(_is_transient),
            stop=stop_after_attempt(self.settings.max_attempts),
            wait=wait_exponential(
                multiplier=self.settings.backoff_multiplier,
                min=self.settings.backoff_min,
                max=self.settings.backoff_max,
            ),
            before_sleep=before_sleep,
            reraise=True,
        )

    def _partial(
        self,
        deployment_plan: DeploymentPlan,
        report: DeploymentReport,
        failures: list[NodeFailure],
        cancelled: bool = False,
        done_status: str = REALIZED,
    ) -> PartialDeploymentError:
        failed = {f.node_id for f in failures}
        succeeded = [
            n for n in deployment_plan.node_ids
            if (rec := report.get(n)) is not None and rec.status == done_status
        ]
        done = set(succeeded)
        pending = [
            n for n in deployment_plan.node_ids
            if n not in done and n not in failed
        ]
        return PartialDeploymentError(
            stack=deployment_plan.stack,
            succeeded=succeeded,
            failures=failures,
            pending=pending,
            report=report,
            cancelled=cancelled,
        )

    def _save(self, report: DeploymentReport, store: str | Path | None) -> None:
        if store is not None:
            save_report(report, store)


def apply(
    deployment_plan: DeploymentPlan,
    backend: ProvisioningBackend,
    settings: Settings | None = None,
    **kwargs: Any,
) -> DeploymentReport:
    """Shorthand for DeploymentPlanner(backend, settings).apply(plan, ...)."""
    return DeploymentPlanner(backend, settings).apply(deployment_plan, **kwargs)


def _mark_realized(node: ResourceNode, attributes: dict[str, Any]) -> None:
    node.attributes = dict(attributes)
    node.handle = attributes.get("id", node.id)
