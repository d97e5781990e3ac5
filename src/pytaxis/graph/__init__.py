"""Generic immutable DAG and its algorithms.

The graph knows nothing about jobs or workflows; pytaxis.workflow builds
on top of it.
"""

from pytaxis.graph.dag import Graph, GraphSummary
from pytaxis.graph.errors import (
    CycleDetected,
    EdgeNotFound,
    GraphError,
    MissingNodes,
    NodeNotFound,
    NoPath,
)
from pytaxis.graph.render import level_graph, to_dot, to_mermaid

__all__ = [
    "Graph",
    "GraphSummary",
    "GraphError",
    "CycleDetected",
    "NoPath",
    "NodeNotFound",
    "EdgeNotFound",
    "MissingNodes",
    "level_graph",
    "to_dot",
    "to_mermaid",
]
