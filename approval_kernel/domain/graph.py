"""
Template graph types (``approval_kernel.domain.graph``).

Responsibility
--------------
Pure value objects for approval flow templates: a typed directed graph of
start -> approver* -> end nodes, its structural validation, the linear
traversal order used for step counting, and the codec between the typed
graph and its persisted JSON node/edge representation.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.  No imports
from ``db/``, ``models/``, ``services/`` or outer layers.

Invariants enforced
-------------------
* Exactly one start node, at least one end node, at least one approver.
* Node ids are unique and every edge names existing nodes.
* Every approver node is reachable from start.
* Every node except end nodes has at least one outgoing edge.
* No cycle is reachable from start.

Traversal semantics
-------------------
Runtime traversal is a linear chain: from any node the engine follows the
FIRST outgoing edge (edge list order).  Decision nodes are accepted
structurally and passed through along their first edge; their
``condition`` is carried but never evaluated.  Branching is undefined.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from approval_kernel.exceptions import (
    CycleDetectedError,
    DanglingEdgeError,
    DeadEndNodeError,
    DuplicateNodeError,
    GraphDecodeError,
    MissingEndError,
    MissingStartError,
    MultipleStartError,
    NoApproversError,
    UnreachableNodeError,
)


class NodeKind(str, Enum):
    """Node kinds of a template graph."""

    START = "start"
    APPROVER = "approver"
    DECISION = "decision"
    END = "end"


@dataclass(frozen=True)
class GraphNode:
    """One node of a template graph.

    ``approver_ids`` is empty when any approver may decide the node.
    ``position`` is opaque layout data kept only so the editor's JSON
    round-trips unchanged.
    """

    node_id: str
    kind: NodeKind
    label: str = ""
    approver_ids: frozenset[str] = frozenset()
    approver_name: str | None = None
    condition: str | None = None
    description: str | None = None
    position: tuple[float, float] | None = None

    @property
    def restricts_approvers(self) -> bool:
        return bool(self.approver_ids)

    @property
    def assigned_approver(self) -> str | None:
        """The single named approver, or None when zero or several are named."""
        if len(self.approver_ids) == 1:
            return next(iter(self.approver_ids))
        return None

    def allows(self, approver_id: Any) -> bool:
        """Whether ``approver_id`` may decide this node."""
        if not self.approver_ids:
            return True
        return str(approver_id) in self.approver_ids


@dataclass(frozen=True)
class GraphEdge:
    """A directed edge ``source -> target``."""

    source: str
    target: str
    edge_id: str | None = None


@dataclass(frozen=True)
class TemplateGraph:
    """Typed template graph.  Construct via ``decode_graph`` + ``validate``."""

    nodes: tuple[GraphNode, ...]
    edges: tuple[GraphEdge, ...] = ()
    _index: dict[str, GraphNode] = field(
        default_factory=dict, init=False, repr=False, compare=False,
    )

    def __post_init__(self) -> None:
        index: dict[str, GraphNode] = {}
        for node in self.nodes:
            index.setdefault(node.node_id, node)
        object.__setattr__(self, "_index", index)

    def node(self, node_id: str) -> GraphNode:
        try:
            return self._index[node_id]
        except KeyError:
            raise KeyError(f"Node {node_id} not in graph") from None

    def nodes_of(self, kind: NodeKind) -> tuple[GraphNode, ...]:
        return tuple(n for n in self.nodes if n.kind == kind)

    def outgoing(self, node_id: str) -> tuple[GraphEdge, ...]:
        return tuple(e for e in self.edges if e.source == node_id)

    @property
    def start_node(self) -> GraphNode:
        starts = self.nodes_of(NodeKind.START)
        if not starts:
            raise MissingStartError()
        return starts[0]


# =========================================================================
# Validation
# =========================================================================


def validate(graph: TemplateGraph) -> TemplateGraph:
    """Check every structural invariant and return the graph unchanged.

    Raises the first ``GraphError`` subclass encountered, checked in the
    order: duplicate ids, dangling edges, start, end, approvers,
    reachability, dead ends, cycles, approvers on the first-edge path.
    """
    seen: set[str] = set()
    for node in graph.nodes:
        if node.node_id in seen:
            raise DuplicateNodeError(node.node_id)
        seen.add(node.node_id)

    for edge in graph.edges:
        for end in (edge.source, edge.target):
            if end not in seen:
                raise DanglingEdgeError(edge.source, edge.target, end)

    starts = graph.nodes_of(NodeKind.START)
    if not starts:
        raise MissingStartError()
    if len(starts) > 1:
        raise MultipleStartError([n.node_id for n in starts])
    if not graph.nodes_of(NodeKind.END):
        raise MissingEndError()
    approvers = graph.nodes_of(NodeKind.APPROVER)
    if not approvers:
        raise NoApproversError()

    reachable = _reachable_from(graph, starts[0].node_id)
    for node in approvers:
        if node.node_id not in reachable:
            raise UnreachableNodeError(node.node_id)

    for node in graph.nodes:
        if node.kind != NodeKind.END and not graph.outgoing(node.node_id):
            raise DeadEndNodeError(node.node_id, node.kind.value)

    cycle = _find_cycle(graph, starts[0].node_id)
    if cycle is not None:
        raise CycleDetectedError(cycle)

    # Requests follow first edges only; that path must reach an approver
    if not approver_sequence(graph):
        raise NoApproversError()

    return graph


def _reachable_from(graph: TemplateGraph, root: str) -> set[str]:
    reachable = {root}
    frontier = [root]
    while frontier:
        current = frontier.pop()
        for edge in graph.outgoing(current):
            if edge.target not in reachable:
                reachable.add(edge.target)
                frontier.append(edge.target)
    return reachable


def _find_cycle(graph: TemplateGraph, root: str) -> list[str] | None:
    """Iterative three-colour DFS; returns the cycle path if one exists."""
    on_path: list[str] = []
    on_path_set: set[str] = set()
    done: set[str] = set()
    stack: list[tuple[str, int]] = [(root, 0)]

    while stack:
        node_id, edge_pos = stack.pop()
        if edge_pos == 0:
            on_path.append(node_id)
            on_path_set.add(node_id)
        edges = graph.outgoing(node_id)
        if edge_pos < len(edges):
            stack.append((node_id, edge_pos + 1))
            target = edges[edge_pos].target
            if target in on_path_set:
                return on_path[on_path.index(target):] + [target]
            if target not in done:
                stack.append((target, 0))
        else:
            on_path.pop()
            on_path_set.discard(node_id)
            done.add(node_id)
    return None


# =========================================================================
# Linear traversal
# =========================================================================


def _first_target(graph: TemplateGraph, node_id: str) -> GraphNode:
    edges = graph.outgoing(node_id)
    if not edges:
        node = graph.node(node_id)
        raise DeadEndNodeError(node_id, node.kind.value)
    return graph.node(edges[0].target)


def successor(graph: TemplateGraph, node_id: str) -> GraphNode:
    """Next approver or end node after ``node_id`` along first edges.

    Decision (and stray start) nodes are passed through.
    """
    node = _first_target(graph, node_id)
    hops = 0
    while node.kind not in (NodeKind.APPROVER, NodeKind.END):
        hops += 1
        if hops > len(graph.nodes):
            raise CycleDetectedError([node_id, node.node_id])
        node = _first_target(graph, node.node_id)
    return node


def approver_sequence(graph: TemplateGraph) -> tuple[str, ...]:
    """Approver node ids in traversal order from start to end."""
    sequence: list[str] = []
    node = successor(graph, graph.start_node.node_id)
    while node.kind != NodeKind.END:
        sequence.append(node.node_id)
        node = successor(graph, node.node_id)
    return tuple(sequence)


def first_approver(graph: TemplateGraph) -> GraphNode:
    """The node a new instance is placed on."""
    node = successor(graph, graph.start_node.node_id)
    if node.kind != NodeKind.APPROVER:
        raise NoApproversError()
    return node


def count_approvers(graph: TemplateGraph) -> int:
    """Number of approver steps a request bound to ``graph`` will take."""
    return len(approver_sequence(graph))


def step_position(graph: TemplateGraph, node_id: str) -> int:
    """1-based position of an approver node in the traversal order."""
    sequence = approver_sequence(graph)
    try:
        return sequence.index(node_id) + 1
    except ValueError:
        raise KeyError(f"Node {node_id} is not on the approver path") from None


# =========================================================================
# JSON codec
# =========================================================================


def _load_list(raw: Any, what: str) -> list[Mapping[str, Any]]:
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise GraphDecodeError(f"{what} is not valid JSON: {exc}") from exc
    if not isinstance(raw, Iterable) or isinstance(raw, Mapping):
        raise GraphDecodeError(f"{what} must be a list")
    items = list(raw)
    for item in items:
        if not isinstance(item, Mapping):
            raise GraphDecodeError(f"{what} entries must be objects")
    return items


def _decode_node(raw: Mapping[str, Any]) -> GraphNode:
    data = raw.get("data") or {}
    if "id" not in raw:
        raise GraphDecodeError("node without id")
    kind_value = raw.get("type") or data.get("type")
    try:
        kind = NodeKind(kind_value)
    except ValueError:
        raise GraphDecodeError(
            f"node {raw['id']} has unknown type {kind_value!r}"
        ) from None

    position = None
    pos = raw.get("position")
    if isinstance(pos, Mapping) and "x" in pos and "y" in pos:
        position = (float(pos["x"]), float(pos["y"]))

    return GraphNode(
        node_id=str(raw["id"]),
        kind=kind,
        label=str(data.get("label", "")),
        approver_ids=frozenset(str(a) for a in data.get("approverIds") or ()),
        approver_name=data.get("approverName"),
        condition=data.get("condition"),
        description=data.get("description"),
        position=position,
    )


def _decode_edge(raw: Mapping[str, Any]) -> GraphEdge:
    if "source" not in raw or "target" not in raw:
        raise GraphDecodeError("edge without source/target")
    edge_id = raw.get("id")
    return GraphEdge(
        source=str(raw["source"]),
        target=str(raw["target"]),
        edge_id=str(edge_id) if edge_id is not None else None,
    )


def decode_graph(nodes: Any, edges: Any) -> TemplateGraph:
    """Decode persisted node/edge JSON (lists or JSON strings) into a graph.

    Does not validate; call ``validate`` (or ``build_graph``) before binding
    the graph to anything.
    """
    return TemplateGraph(
        nodes=tuple(_decode_node(n) for n in _load_list(nodes, "nodes")),
        edges=tuple(_decode_edge(e) for e in _load_list(edges, "edges")),
    )


def build_graph(nodes: Any, edges: Any) -> TemplateGraph:
    """Decode and validate in one step."""
    return validate(decode_graph(nodes, edges))


def encode_graph(graph: TemplateGraph) -> tuple[list[dict], list[dict]]:
    """Encode a graph back into the editor's node/edge JSON shape."""
    nodes: list[dict] = []
    for node in graph.nodes:
        data: dict[str, Any] = {"label": node.label, "type": node.kind.value}
        if node.approver_ids:
            data["approverIds"] = sorted(node.approver_ids)
        if node.approver_name is not None:
            data["approverName"] = node.approver_name
        if node.condition is not None:
            data["condition"] = node.condition
        if node.description is not None:
            data["description"] = node.description
        encoded: dict[str, Any] = {
            "id": node.node_id,
            "type": node.kind.value,
            "data": data,
        }
        if node.position is not None:
            encoded["position"] = {"x": node.position[0], "y": node.position[1]}
        nodes.append(encoded)

    edges: list[dict] = []
    for edge in graph.edges:
        encoded_edge: dict[str, Any] = {"source": edge.source, "target": edge.target}
        encoded_edge["id"] = edge.edge_id or f"e{edge.source}-{edge.target}"
        edges.append(encoded_edge)
    return nodes, edges


def linear_graph(*approvers: Iterable[str] | None, names: Iterable[str] | None = None) -> TemplateGraph:
    """Build a validated ``start -> A1 -> ... -> An -> end`` chain.

    Each positional argument is the approver-id set of one approver node
    (``None`` or empty for "anyone").  Used by scripts and tests.
    """
    labels = list(names or ())
    nodes = [GraphNode(node_id="start", kind=NodeKind.START, label="Start")]
    for i, ids in enumerate(approvers, start=1):
        nodes.append(GraphNode(
            node_id=f"approver-{i}",
            kind=NodeKind.APPROVER,
            label=labels[i - 1] if i <= len(labels) else f"Approver {i}",
            approver_ids=frozenset(str(a) for a in ids or ()),
        ))
    nodes.append(GraphNode(node_id="end", kind=NodeKind.END, label="End"))
    edges = tuple(
        GraphEdge(source=a.node_id, target=b.node_id)
        for a, b in zip(nodes, nodes[1:])
    )
    return validate(TemplateGraph(nodes=tuple(nodes), edges=edges))
