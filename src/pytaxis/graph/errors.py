"""
Structured errors for graph operations.

Each error carries the offending node ids as attributes so callers can
handle them programmatically instead of parsing messages:

    try:
        order = graph.topological_sort()
    except CycleDetected as e:
        logger.error(f"cycle: {e.path}")

Structural errors indicate a definition bug and are never retried.
"""

from collections.abc import Hashable, Sequence

from pytaxis.errors import PytaxisError

__all__ = [
    "GraphError",
    "CycleDetected",
    "NoPath",
    "NodeNotFound",
    "EdgeNotFound",
    "MissingNodes",
]


class GraphError(PytaxisError):
    """Base class for structural graph errors."""

    pass


class CycleDetected(GraphError):
    """The graph contains a cycle.

    Attributes:
        path: The cycle as an ordered node list closing on its first node,
            e.g. ``["a", "b", "a"]``. Self-loops are ``[n, n]``.
    """

    def __init__(self, path: Sequence[Hashable]):
        self.path = list(path)
        formatted = " -> ".join(str(n) for n in self.path) if self.path else "(empty)"
        super().__init__(f"Cycle detected in DAG: {formatted}")


class NoPath(GraphError):
    """No path exists between two nodes."""

    def __init__(self, source: Hashable, target: Hashable):
        self.source = source
        self.target = target
        super().__init__(f"No path exists from {source!r} to {target!r}")


class NodeNotFound(GraphError):
    def __init__(self, node: Hashable):
        self.node = node
        super().__init__(f"Node {node!r} not found in DAG")


class EdgeNotFound(GraphError):
    def __init__(self, source: Hashable, target: Hashable):
        self.source = source
        self.target = target
        super().__init__(f"Edge {source!r} -> {target!r} not found in DAG")


class MissingNodes(GraphError):
    """Edges or groups reference nodes that are not in the graph."""

    def __init__(self, nodes: Sequence[Hashable]):
        self.nodes = list(nodes)
        super().__init__(f"Referenced nodes missing from DAG: {self.nodes!r}")
