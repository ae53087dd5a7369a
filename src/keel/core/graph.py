"""
keel.core.graph — Resource dependency graph.

Nodes and edges are added explicitly. An edge (a, b) means b must be
realized before a. Tokens found in a node's inputs add the matching
edges automatically, so value dependencies never have to be declared
twice; ordering-only constraints are added with add_edge(soft=True).

    graph = ResourceGraph("karpenter-test")
    vpc = graph.add(ResourceNode("vpc", NodeKind.NETWORK, {...}))
    cluster = graph.add(ResourceNode("cluster", NodeKind.CLUSTER, {
        "vpc_id": vpc.ref("id"),
    }))
    graph.validate()
"""

from __future__ import annotations

import hashlib
import json
from typing import Iterator

from keel.core.node import DependencyEdge, ResourceNode
from keel.core.token import UnresolvedDependencyError, encode, references


class GraphError(Exception):
    """Graph construction error."""
    pass


class CycleError(GraphError):
    """The edge set contains (or would contain) a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle: {' -> '.join(self.cycle)}")


class ResourceGraph:
    """In-memory DAG of resource nodes."""

    def __init__(self, name: str = "default"):
        self.name = name
        self._nodes: dict[str, ResourceNode] = {}
        # dependent → {dependency: edge}
        self._out: dict[str, dict[str, DependencyEdge]] = {}
        # dependency → {dependent}
        self._in: dict[str, set[str]] = {}
        # source node id → consumers waiting for it to be added
        self._pending: dict[str, set[str]] = {}

    # ─────────────────────────────────────────────
    # construction
    # ─────────────────────────────────────────────
    def add_node(self, node: ResourceNode) -> str:
        """Add a node and link it to the nodes its tokens read from."""
        if node.id in self._nodes:
            raise GraphError(f"Duplicate node id: '{node.id}'")

        tokens = references(node.inputs)
        if any(token.node_id == node.id for token in tokens):
            raise CycleError([node.id, node.id])

        self._nodes[node.id] = node
        self._out[node.id] = {}
        self._in[node.id] = set()

        for token in tokens:
            if token.node_id in self._nodes:
                self._link(node.id, token.node_id, soft=False)
            else:
                self._pending.setdefault(token.node_id, set()).add(node.id)

        # Consumers waiting on this node may already be among its own
        # dependencies.
        consumers = sorted(self._pending.get(node.id, set()))
        for consumer in consumers:
            path = self._path(node.id, consumer)
            if path is not None:
                self._discard(node.id)
                raise CycleError([consumer] + path)

        self._pending.pop(node.id, None)
        for consumer in consumers:
            self._link(consumer, node.id, soft=False)

        return node.id

    def add(self, node: ResourceNode) -> ResourceNode:
        """Same as add_node, returning the node for chaining."""
        self.add_node(node)
        return node

    def add_edge(self, from_id: str, to_id: str, soft: bool = False) -> DependencyEdge:
        """Declare that `to_id` must be realized before `from_id`.

        Raises:
            GraphError: unknown node
            CycleError: the edge would close a cycle; graph is unchanged
        """
        for node_id in (from_id, to_id):
            if node_id not in self._nodes:
                raise GraphError(f"Unknown node: '{node_id}'")

        existing = self._out[from_id].get(to_id)
        if existing is not None:
            return existing

        path = self._path(to_id, from_id)
        if path is not None:
            raise CycleError([from_id] + path)

        return self._link(from_id, to_id, soft)

    def _link(self, from_id: str, to_id: str, soft: bool) -> DependencyEdge:
        existing = self._out[from_id].get(to_id)
        if existing is not None:
            if existing.soft and not soft:
                existing = DependencyEdge(from_id, to_id, soft=False)
                self._out[from_id][to_id] = existing
            return existing
        edge = DependencyEdge(from_id, to_id, soft)
        self._out[from_id][to_id] = edge
        self._in[to_id].add(from_id)
        return edge

    def _discard(self, node_id: str) -> None:
        """Undo a node insertion that has not been linked to consumers yet."""
        for dep in self._out.pop(node_id):
            self._in[dep].discard(node_id)
        del self._in[node_id]
        del self._nodes[node_id]
        for source in list(self._pending):
            self._pending[source].discard(node_id)
            if not self._pending[source]:
                del self._pending[source]

    def _path(self, start: str, goal: str) -> list[str] | None:
        """Dependency path start → ... → goal, if one exists."""
        parents: dict[str, str | None] = {start: None}
        stack = [start]
        while stack:
            current = stack.pop()
            if current == goal:
                path = [current]
                while parents[path[-1]] is not None:
                    path.append(parents[path[-1]])  # type: ignore[arg-type]
                return list(reversed(path))
            for dep in self._out[current]:
                if dep not in parents:
                    parents[dep] = current
                    stack.append(dep)
        return None

    # ─────────────────────────────────────────────
    # validation
    # ─────────────────────────────────────────────
    def validate(self) -> None:
        """Full check before any deploy.

        Raises:
            UnresolvedDependencyError: a token reads from a node never added
            CycleError: the graph contains a cycle
        """
        for source in sorted(self._pending):
            consumers = ", ".join(sorted(self._pending[source]))
            raise UnresolvedDependencyError(
                source, "*",
                f"Node(s) {consumers} reference unknown node '{source}'",
            )

        white, grey, black = 0, 1, 2
        color = {node_id: white for node_id in self._nodes}

        for root in self._nodes:
            if color[root] != white:
                continue
            color[root] = grey
            trail = [root]
            iters = [iter(self._out[root])]
            while iters:
                try:
                    dep = next(iters[-1])
                except StopIteration:
                    color[trail.pop()] = black
                    iters.pop()
                    continue
                if color[dep] == grey:
                    start = trail.index(dep)
                    raise CycleError(trail[start:] + [dep])
                if color[dep] == white:
                    color[dep] = grey
                    trail.append(dep)
                    iters.append(iter(self._out[dep]))

    # ─────────────────────────────────────────────
    # accessors
    # ─────────────────────────────────────────────
    def node(self, node_id: str) -> ResourceNode:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise GraphError(f"Unknown node: '{node_id}'") from None

    def nodes(self) -> list[ResourceNode]:
        """All nodes, in insertion order."""
        return list(self._nodes.values())

    def node_ids(self) -> list[str]:
        return list(self._nodes)

    def edges(self) -> list[DependencyEdge]:
        return [edge for deps in self._out.values() for edge in deps.values()]

    def dependencies(self, node_id: str) -> list[str]:
        """Nodes that must be realized before node_id."""
        self.node(node_id)
        return list(self._out[node_id])

    def dependents(self, node_id: str) -> list[str]:
        """Nodes that wait for node_id, in insertion order."""
        self.node(node_id)
        waiting = self._in[node_id]
        return [n for n in self._nodes if n in waiting]

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[ResourceNode]:
        return iter(list(self._nodes.values()))

    # ─────────────────────────────────────────────
    # hashing
    # ─────────────────────────────────────────────
    def fingerprint(self, node_id: str) -> str:
        """Hash of a node's definition: kind, inputs and dependencies."""
        node = self.node(node_id)
        payload = {
            "id": node.id,
            "kind": node.kind.value,
            "stack": node.stack,
            "inputs": encode(node.inputs),
            "dependencies": sorted(self._out[node_id]),
        }
        return _sha256(payload)

    def checksum(self) -> str:
        """Hash of the whole graph definition."""
        payload = {
            "name": self.name,
            "nodes": [self.fingerprint(n) for n in sorted(self._nodes)],
            "edges": sorted(
                [e.dependent, e.dependency, e.soft] for e in self.edges()
            ),
        }
        return _sha256(payload)


def _sha256(payload: object) -> str:
    data = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return f"sha256:{hashlib.sha256(data.encode()).hexdigest()}"
