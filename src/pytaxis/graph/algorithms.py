"""
Graph algorithms behind the Graph value.

Functions here read the graph's internal adjacency directly and never
mutate it. They are exposed through Graph methods; import this module
directly only when you need a helper that has no method form.

Complexities (V nodes, E edges):
    - topological_sort, detect_cycle, longest_paths: O(V + E)
    - shortest_path: O(V + E)
    - shortest_weighted_path: O((V + E) log V)
    - critical_path: O(V + E)
    - redundant_edges: O(V * (V + E))
    - all_paths: exponential in the worst case
"""

from __future__ import annotations

import heapq
import itertools
from collections import deque
from collections.abc import Callable, Hashable, Mapping
from typing import TYPE_CHECKING, Any

from pytaxis.graph.errors import CycleDetected, NodeNotFound, NoPath

if TYPE_CHECKING:
    from pytaxis.graph.dag import Graph

NodeId = Hashable


def reachable(adjacency: Mapping[NodeId, Mapping[NodeId, Any]], start: NodeId) -> set[NodeId]:
    """Nodes reachable from ``start`` (excluding start unless on a cycle)."""
    seen: set[NodeId] = set()
    frontier = deque(adjacency.get(start, {}))
    while frontier:
        node = frontier.popleft()
        if node in seen:
            continue
        seen.add(node)
        frontier.extend(adjacency.get(node, {}))
    return seen


def topological_sort(graph: Graph) -> list[NodeId]:
    """Kahn's algorithm, ties broken by node insertion order."""
    in_degree = {node: len(graph._reverse.get(node, {})) for node in graph._nodes}
    ready = deque(node for node, degree in in_degree.items() if degree == 0)
    order: list[NodeId] = []

    while ready:
        node = ready.popleft()
        order.append(node)
        for successor in graph._edges.get(node, {}):
            in_degree[successor] -= 1
            if in_degree[successor] == 0:
                ready.append(successor)

    if len(order) < len(graph._nodes):
        cycle = detect_cycle(graph)
        if cycle is None:
            cycle = [node for node, degree in in_degree.items() if degree > 0]
        raise CycleDetected(cycle)

    return order


def detect_cycle(graph: Graph) -> list[NodeId] | None:
    """DFS with a recursion-stack set. Returns the first cycle found.

    Iterative, with one ``(node, successor iterator)`` frame per level, so
    long chains do not hit the interpreter's recursion limit.
    """
    visited: set[NodeId] = set()
    on_stack: set[NodeId] = set()
    stack: list[NodeId] = []

    for root in graph._nodes:
        if root in visited:
            continue
        visited.add(root)
        on_stack.add(root)
        stack.append(root)
        frames = [(root, iter(graph._edges.get(root, {})))]

        while frames:
            node, successors = frames[-1]
            for successor in successors:
                if successor in on_stack:
                    start = stack.index(successor)
                    return stack[start:] + [successor]
                if successor not in visited:
                    visited.add(successor)
                    on_stack.add(successor)
                    stack.append(successor)
                    frames.append((successor, iter(graph._edges.get(successor, {}))))
                    break
            else:
                frames.pop()
                on_stack.discard(node)
                stack.pop()
    return None


def _require_nodes(graph: Graph, *nodes: NodeId) -> None:
    for node in nodes:
        if node not in graph._nodes:
            raise NodeNotFound(node)


def shortest_path(graph: Graph, source: NodeId, target: NodeId) -> list[NodeId]:
    _require_nodes(graph, source, target)
    if source == target:
        return [source]

    parents: dict[NodeId, NodeId] = {}
    frontier = deque([source])
    seen = {source}
    while frontier:
        node = frontier.popleft()
        for successor in graph._edges.get(node, {}):
            if successor in seen:
                continue
            seen.add(successor)
            parents[successor] = node
            if successor == target:
                return _unwind(parents, source, target)
            frontier.append(successor)

    raise NoPath(source, target)


def _unwind(parents: Mapping[NodeId, NodeId], source: NodeId, target: NodeId) -> list[NodeId]:
    path = [target]
    while path[-1] != source:
        path.append(parents[path[-1]])
    path.reverse()
    return path


def all_paths(graph: Graph, source: NodeId, target: NodeId) -> list[list[NodeId]]:
    _require_nodes(graph, source, target)
    if source == target:
        return [[source]]

    paths: list[list[NodeId]] = []
    path = [source]
    on_path = {source}
    frames = [iter(graph._edges.get(source, {}))]

    while frames:
        for successor in frames[-1]:
            if successor in on_path:
                continue
            if successor == target:
                paths.append(path + [successor])
                continue
            path.append(successor)
            on_path.add(successor)
            frames.append(iter(graph._edges.get(successor, {})))
            break
        else:
            frames.pop()
            on_path.discard(path.pop())
    return paths


def longest_paths(graph: Graph) -> dict[NodeId, int]:
    depths: dict[NodeId, int] = {}
    for node in topological_sort(graph):
        preds = graph._reverse.get(node, {})
        depths[node] = max((depths[p] + 1 for p in preds), default=0)
    return depths


def critical_path(graph: Graph, weight: Callable[[Any], float]) -> tuple[float, list[NodeId]]:
    order = topological_sort(graph)
    if not order:
        return 0, []

    distance: dict[NodeId, float] = {node: 0 for node in order}
    parent: dict[NodeId, NodeId] = {}
    for node in order:
        for successor, data in graph._edges.get(node, {}).items():
            candidate = distance[node] + weight(data)
            if successor not in parent or candidate > distance[successor]:
                distance[successor] = candidate
                parent[successor] = node

    end = max(order, key=lambda n: distance[n])
    path = [end]
    while path[-1] in parent:
        path.append(parent[path[-1]])
    path.reverse()
    return distance[end], path


def shortest_weighted_path(
    graph: Graph, source: NodeId, target: NodeId, weight: Callable[[Any], float]
) -> tuple[float, list[NodeId]]:
    _require_nodes(graph, source, target)
    if source == target:
        return 0, [source]

    counter = itertools.count()
    best: dict[NodeId, float] = {source: 0}
    parents: dict[NodeId, NodeId] = {}
    done: set[NodeId] = set()
    heap: list[tuple[float, int, NodeId]] = [(0, next(counter), source)]

    while heap:
        dist, _, node = heapq.heappop(heap)
        if node in done:
            continue
        if node == target:
            return dist, _unwind(parents, source, target)
        done.add(node)
        for successor, data in graph._edges.get(node, {}).items():
            candidate = dist + weight(data)
            if successor not in best or candidate < best[successor]:
                best[successor] = candidate
                parents[successor] = node
                heapq.heappush(heap, (candidate, next(counter), successor))

    raise NoPath(source, target)


def redundant_edges(graph: Graph) -> set[tuple[NodeId, NodeId]]:
    """Edges ``(a, c)`` for which another path ``a -> b -> ... -> c`` exists."""
    order = topological_sort(graph)

    descendants: dict[NodeId, set[NodeId]] = {}
    for node in reversed(order):
        reach: set[NodeId] = set()
        for successor in graph._edges.get(node, {}):
            reach.add(successor)
            reach |= descendants[successor]
        descendants[node] = reach

    redundant: set[tuple[NodeId, NodeId]] = set()
    for node, targets in graph._edges.items():
        for target in targets:
            if any(other != target and target in descendants[other] for other in targets):
                redundant.add((node, target))
    return redundant


def connected_components(graph: Graph) -> list[set[NodeId]]:
    components: list[set[NodeId]] = []
    assigned: set[NodeId] = set()
    for start in graph._nodes:
        if start in assigned:
            continue
        component = {start}
        frontier = deque([start])
        while frontier:
            node = frontier.popleft()
            neighbours = itertools.chain(graph._edges.get(node, {}), graph._reverse.get(node, {}))
            for neighbour in neighbours:
                if neighbour not in component:
                    component.add(neighbour)
                    frontier.append(neighbour)
        assigned |= component
        components.append(component)
    return components
