"""
Immutable directed graph with named node groups.

Design Pattern: Value Object
Every mutation returns a new Graph; the receiver is never modified. This
lets a workflow definition hand its graph to many executions without any
of them observing another's changes.

Storage layout:
    - nodes: node id -> data (insertion ordered)
    - edges: source -> {target: edge data} (insertion ordered)
    - reverse edges: target -> {source: edge data}, derived on construction
    - groups: group name -> frozenset of node ids

Invariant: every edge endpoint exists in ``nodes``. ``add_edge`` creates
missing endpoints with ``None`` data. Cycles are representable, but
``validate`` rejects them.

Accessors come in pairs: a "maybe" form returning None (``get_node``,
``try_topological_sort``) and a raising twin (``node``,
``topological_sort``) that raises one of the errors in
``pytaxis.graph.errors``.

Example:
    ```python
    g = Graph().add_edge("a", "b").add_edge("a", "c").add_edge("b", "d").add_edge("c", "d")
    g.topological_sort()      # ["a", "b", "c", "d"]
    g.critical_path()         # (2, ["a", "b", "d"])
    ```
"""

from __future__ import annotations

from collections.abc import Callable, Hashable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from pytaxis.graph import algorithms
from pytaxis.graph.errors import (
    CycleDetected,
    EdgeNotFound,
    GraphError,
    MissingNodes,
    NodeNotFound,
)

NodeId = Hashable
EdgeWeight = Callable[[Any], float]


def _unit_weight(_data: Any) -> float:
    return 1


class Graph:
    """Immutable DAG value."""

    __slots__ = ("_nodes", "_edges", "_reverse", "_groups")

    def __init__(self) -> None:
        self._nodes: dict[NodeId, Any] = {}
        self._edges: dict[NodeId, dict[NodeId, Any]] = {}
        self._reverse: dict[NodeId, dict[NodeId, Any]] = {}
        self._groups: dict[str, frozenset[NodeId]] = {}

    @classmethod
    def _build(
        cls,
        nodes: dict[NodeId, Any],
        edges: dict[NodeId, dict[NodeId, Any]],
        groups: dict[str, frozenset[NodeId]],
    ) -> Graph:
        graph = cls.__new__(cls)
        graph._nodes = nodes
        graph._edges = {src: targets for src, targets in edges.items() if targets}
        graph._groups = {name: members for name, members in groups.items() if members}

        reverse: dict[NodeId, dict[NodeId, Any]] = {}
        for src, targets in graph._edges.items():
            for dst, data in targets.items():
                reverse.setdefault(dst, {})[src] = data
        graph._reverse = reverse
        return graph

    def _copy_edges(self) -> dict[NodeId, dict[NodeId, Any]]:
        return {src: dict(targets) for src, targets in self._edges.items()}

    # =========================================================================
    # Construction (every method returns a new Graph)
    # =========================================================================

    def add_node(self, node: NodeId, data: Any = None) -> Graph:
        nodes = dict(self._nodes)
        nodes[node] = data
        return Graph._build(nodes, self._copy_edges(), dict(self._groups))

    def add_nodes(self, nodes: Iterable[NodeId] | Mapping[NodeId, Any]) -> Graph:
        new_nodes = dict(self._nodes)
        if isinstance(nodes, Mapping):
            new_nodes.update(nodes)
        else:
            for node in nodes:
                new_nodes.setdefault(node, None)
        return Graph._build(new_nodes, self._copy_edges(), dict(self._groups))

    def update_node(self, node: NodeId, fn: Callable[[Any], Any]) -> Graph:
        """Replace a node's data with ``fn(data)``. Raises NodeNotFound."""
        if node not in self._nodes:
            raise NodeNotFound(node)
        return self.add_node(node, fn(self._nodes[node]))

    def remove_node(self, node: NodeId) -> Graph:
        """Remove a node with its incident edges and group memberships."""
        if node not in self._nodes:
            return self
        nodes = {n: d for n, d in self._nodes.items() if n != node}
        edges = {
            src: {dst: d for dst, d in targets.items() if dst != node}
            for src, targets in self._edges.items()
            if src != node
        }
        groups = {name: members - {node} for name, members in self._groups.items()}
        return Graph._build(nodes, edges, groups)

    def add_edge(self, source: NodeId, target: NodeId, data: Any = None) -> Graph:
        """Add ``source -> target``, creating missing endpoints with None data."""
        nodes = dict(self._nodes)
        nodes.setdefault(source, None)
        nodes.setdefault(target, None)
        edges = self._copy_edges()
        edges.setdefault(source, {})[target] = data
        return Graph._build(nodes, edges, dict(self._groups))

    def add_edges(self, edges: Iterable[tuple]) -> Graph:
        """Add many edges given as ``(source, target)`` or ``(source, target, data)``."""
        nodes = dict(self._nodes)
        new_edges = self._copy_edges()
        for edge in edges:
            source, target = edge[0], edge[1]
            data = edge[2] if len(edge) > 2 else None
            nodes.setdefault(source, None)
            nodes.setdefault(target, None)
            new_edges.setdefault(source, {})[target] = data
        return Graph._build(nodes, new_edges, dict(self._groups))

    def update_edge(self, source: NodeId, target: NodeId, fn: Callable[[Any], Any]) -> Graph:
        """Replace an edge's data with ``fn(data)``. Raises EdgeNotFound."""
        if not self.has_edge(source, target):
            raise EdgeNotFound(source, target)
        edges = self._copy_edges()
        edges[source][target] = fn(edges[source][target])
        return Graph._build(dict(self._nodes), edges, dict(self._groups))

    def remove_edge(self, source: NodeId, target: NodeId) -> Graph:
        if not self.has_edge(source, target):
            return self
        edges = self._copy_edges()
        del edges[source][target]
        return Graph._build(dict(self._nodes), edges, dict(self._groups))

    def add_to_group(self, group: str, node: NodeId) -> Graph:
        """Add ``node`` to ``group``, creating the node if needed."""
        nodes = dict(self._nodes)
        nodes.setdefault(node, None)
        groups = dict(self._groups)
        groups[group] = groups.get(group, frozenset()) | {node}
        return Graph._build(nodes, self._copy_edges(), groups)

    def remove_from_group(self, group: str, node: NodeId) -> Graph:
        if node not in self._groups.get(group, frozenset()):
            return self
        groups = dict(self._groups)
        groups[group] = groups[group] - {node}
        return Graph._build(dict(self._nodes), self._copy_edges(), groups)

    # =========================================================================
    # Queries
    # =========================================================================

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node: object) -> bool:
        return node in self._nodes

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Graph):
            return NotImplemented
        return (
            self._nodes == other._nodes
            and self._edges == other._edges
            and self._groups == other._groups
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        edge_count = sum(len(t) for t in self._edges.values())
        return f"Graph(nodes={len(self._nodes)}, edges={edge_count}, groups={len(self._groups)})"

    def nodes(self) -> list[NodeId]:
        return list(self._nodes)

    def edges(self) -> list[tuple[NodeId, NodeId, Any]]:
        """All edges as ``(source, target, data)`` in insertion order."""
        return [
            (src, dst, data) for src, targets in self._edges.items() for dst, data in targets.items()
        ]

    @property
    def groups(self) -> dict[str, frozenset[NodeId]]:
        return dict(self._groups)

    def group_members(self, group: str) -> frozenset[NodeId]:
        return self._groups.get(group, frozenset())

    def has_node(self, node: NodeId) -> bool:
        return node in self._nodes

    def has_edge(self, source: NodeId, target: NodeId) -> bool:
        return target in self._edges.get(source, {})

    def get_node(self, node: NodeId, default: Any = None) -> Any:
        return self._nodes.get(node, default)

    def node(self, node: NodeId) -> Any:
        """Node data, raising NodeNotFound if absent."""
        if node not in self._nodes:
            raise NodeNotFound(node)
        return self._nodes[node]

    def get_edge(self, source: NodeId, target: NodeId, default: Any = None) -> Any:
        return self._edges.get(source, {}).get(target, default)

    def edge(self, source: NodeId, target: NodeId) -> Any:
        """Edge data, raising EdgeNotFound if absent."""
        if not self.has_edge(source, target):
            raise EdgeNotFound(source, target)
        return self._edges[source][target]

    def successors(self, node: NodeId) -> list[NodeId]:
        return list(self._edges.get(node, {}))

    def predecessors(self, node: NodeId) -> list[NodeId]:
        return list(self._reverse.get(node, {}))

    def out_degree(self, node: NodeId) -> int:
        return len(self._edges.get(node, {}))

    def in_degree(self, node: NodeId) -> int:
        return len(self._reverse.get(node, {}))

    def roots(self) -> list[NodeId]:
        """Nodes with no incoming edges."""
        return [n for n in self._nodes if not self._reverse.get(n)]

    def leaves(self) -> list[NodeId]:
        """Nodes with no outgoing edges."""
        return [n for n in self._nodes if not self._edges.get(n)]

    def ancestors(self, node: NodeId) -> set[NodeId]:
        return algorithms.reachable(self._reverse, node)

    def descendants(self, node: NodeId) -> set[NodeId]:
        return algorithms.reachable(self._edges, node)

    # =========================================================================
    # Validation and ordering
    # =========================================================================

    def detect_cycle(self) -> list[NodeId] | None:
        """First cycle found by DFS, or None for an acyclic graph."""
        return algorithms.detect_cycle(self)

    def validate(self) -> None:
        """Raise CycleDetected or MissingNodes if the graph is not a valid DAG."""
        cycle = self.detect_cycle()
        if cycle is not None:
            raise CycleDetected(cycle)

        missing: list[NodeId] = []
        for src, dst, _ in self.edges():
            for endpoint in (src, dst):
                if endpoint not in self._nodes and endpoint not in missing:
                    missing.append(endpoint)
        for members in self._groups.values():
            for member in members:
                if member not in self._nodes and member not in missing:
                    missing.append(member)
        if missing:
            raise MissingNodes(missing)

    def is_valid(self) -> bool:
        try:
            self.validate()
        except GraphError:
            return False
        return True

    def topological_sort(self) -> list[NodeId]:
        """Kahn's algorithm. Raises CycleDetected carrying the offending cycle."""
        return algorithms.topological_sort(self)

    def try_topological_sort(self) -> list[NodeId] | None:
        try:
            return algorithms.topological_sort(self)
        except CycleDetected:
            return None

    # =========================================================================
    # Paths
    # =========================================================================

    def shortest_path(self, source: NodeId, target: NodeId) -> list[NodeId]:
        """Fewest-hops path via BFS. Raises NodeNotFound or NoPath."""
        return algorithms.shortest_path(self, source, target)

    def try_shortest_path(self, source: NodeId, target: NodeId) -> list[NodeId] | None:
        try:
            return algorithms.shortest_path(self, source, target)
        except GraphError:
            return None

    def distance(self, source: NodeId, target: NodeId) -> int:
        return len(self.shortest_path(source, target)) - 1

    def try_distance(self, source: NodeId, target: NodeId) -> int | None:
        path = self.try_shortest_path(source, target)
        return None if path is None else len(path) - 1

    def has_path(self, source: NodeId, target: NodeId) -> bool:
        return self.try_shortest_path(source, target) is not None

    def all_paths(self, source: NodeId, target: NodeId) -> list[list[NodeId]]:
        """Every simple path from source to target.

        Enumeration is exponential in the worst case; prefer shortest_path
        on large graphs.
        """
        return algorithms.all_paths(self, source, target)

    def critical_path(self, weight: EdgeWeight = _unit_weight) -> tuple[float, list[NodeId]]:
        """Longest weighted path as ``(total, path)``.

        ``weight`` receives edge data and returns a number; the default
        counts hops. Raises CycleDetected on a cyclic graph.
        """
        return algorithms.critical_path(self, weight)

    def shortest_weighted_path(
        self, source: NodeId, target: NodeId, weight: EdgeWeight = _unit_weight
    ) -> tuple[float, list[NodeId]]:
        """Dijkstra over non-negative weights. Raises NodeNotFound or NoPath."""
        return algorithms.shortest_weighted_path(self, source, target, weight)

    def try_shortest_weighted_path(
        self, source: NodeId, target: NodeId, weight: EdgeWeight = _unit_weight
    ) -> tuple[float, list[NodeId]] | None:
        try:
            return algorithms.shortest_weighted_path(self, source, target, weight)
        except GraphError:
            return None

    def longest_paths(self) -> dict[NodeId, int]:
        """Depth of every node: length of the longest path from any root."""
        return algorithms.longest_paths(self)

    def levels(self) -> dict[int, list[NodeId]]:
        """Nodes grouped by depth. Nodes at one level have no ordering between them."""
        grouped: dict[int, list[NodeId]] = {}
        for node, depth in self.longest_paths().items():
            grouped.setdefault(depth, []).append(node)
        return dict(sorted(grouped.items()))

    def max_depth(self) -> int:
        depths = self.longest_paths()
        return max(depths.values()) if depths else 0

    # =========================================================================
    # Transformations
    # =========================================================================

    def transitive_reduction(self) -> Graph:
        """Drop every edge implied by a longer path between the same endpoints."""
        redundant = algorithms.redundant_edges(self)
        edges = {
            src: {dst: d for dst, d in targets.items() if (src, dst) not in redundant}
            for src, targets in self._edges.items()
        }
        return Graph._build(dict(self._nodes), edges, dict(self._groups))

    def reverse(self) -> Graph:
        edges: dict[NodeId, dict[NodeId, Any]] = {}
        for src, dst, data in self.edges():
            edges.setdefault(dst, {})[src] = data
        return Graph._build(dict(self._nodes), edges, dict(self._groups))

    def subgraph(self, keep: Iterable[NodeId]) -> Graph:
        """Graph induced by ``keep``. Unknown ids are ignored."""
        kept = set(keep)
        nodes = {n: d for n, d in self._nodes.items() if n in kept}
        edges = {
            src: {dst: d for dst, d in targets.items() if dst in kept}
            for src, targets in self._edges.items()
            if src in kept
        }
        groups = {name: members & kept for name, members in self._groups.items()}
        return Graph._build(nodes, edges, groups)

    def filter_nodes(self, predicate: Callable[[NodeId, Any], bool]) -> Graph:
        return self.subgraph(n for n, d in self._nodes.items() if predicate(n, d))

    def merge(self, other: Graph) -> Graph:
        """Union of two graphs. Data from ``other`` wins on conflicts."""
        nodes = dict(self._nodes)
        nodes.update(other._nodes)
        edges = self._copy_edges()
        for src, dst, data in other.edges():
            edges.setdefault(src, {})[dst] = data
        groups = dict(self._groups)
        for name, members in other._groups.items():
            groups[name] = groups.get(name, frozenset()) | members
        return Graph._build(nodes, edges, groups)

    # =========================================================================
    # Shape
    # =========================================================================

    def is_forest(self) -> bool:
        """True iff every node has at most one parent."""
        return all(len(preds) <= 1 for preds in self._reverse.values())

    def is_tree(self) -> bool:
        """A forest with exactly one root."""
        return self.is_forest() and len(self.roots()) == 1

    def connected_components(self) -> list[set[NodeId]]:
        """Weakly connected components, ordered by their first node."""
        return algorithms.connected_components(self)

    def summary(self) -> GraphSummary:
        roots = self.roots()
        leaves = self.leaves()
        return GraphSummary(
            total_nodes=len(self._nodes),
            total_edges=sum(len(t) for t in self._edges.values()),
            root_count=len(roots),
            leaf_count=len(leaves),
            max_depth=self.max_depth() if self.is_valid() else -1,
            roots=roots,
            leaves=leaves,
        )

    # =========================================================================
    # Serialization
    # =========================================================================

    def to_map(self) -> dict[str, Any]:
        """Plain-data form accepted by ``from_map``."""
        return {
            "nodes": dict(self._nodes),
            "edges": [list(edge) for edge in self.edges()],
            "groups": {name: list(members) for name, members in self._groups.items()},
        }

    @classmethod
    def from_map(cls, data: Mapping[str, Any]) -> Graph:
        """Rebuild a graph from ``to_map`` output and validate it.

        Raises:
            MissingNodes: An edge or group references an unknown node
            CycleDetected: The edges form a cycle
        """
        nodes = dict(data.get("nodes", {}))
        edges: dict[NodeId, dict[NodeId, Any]] = {}
        missing: list[NodeId] = []
        for edge in data.get("edges", []):
            source, target = edge[0], edge[1]
            for endpoint in (source, target):
                if endpoint not in nodes and endpoint not in missing:
                    missing.append(endpoint)
            edges.setdefault(source, {})[target] = edge[2] if len(edge) > 2 else None

        groups: dict[str, frozenset[NodeId]] = {}
        for name, members in data.get("groups", {}).items():
            for member in members:
                if member not in nodes and member not in missing:
                    missing.append(member)
            groups[name] = frozenset(members)

        if missing:
            raise MissingNodes(missing)

        graph = cls._build(nodes, edges, groups)
        graph.validate()
        return graph

    def to_mermaid(self, **options: Any) -> str:
        from pytaxis.graph.render import to_mermaid

        return to_mermaid(self, **options)

    def to_dot(self, **options: Any) -> str:
        from pytaxis.graph.render import to_dot

        return to_dot(self, **options)


@dataclass
class GraphSummary:
    """
    Summary information about a graph.

    **Attributes**:
        total_nodes: Number of nodes
        total_edges: Number of edges
        root_count: Number of nodes with no incoming edges
        leaf_count: Number of nodes with no outgoing edges
        max_depth: Length of the longest root-to-leaf path (-1 when cyclic)
        roots: Root node ids
        leaves: Leaf node ids
    """

    total_nodes: int
    total_edges: int
    root_count: int
    leaf_count: int
    max_depth: int
    roots: list[NodeId]
    leaves: list[NodeId]
