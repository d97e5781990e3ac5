"""
Property-based tests for Graph using Hypothesis.

Random DAGs are generated by only allowing edges from a lower to a higher
integer, which makes every generated graph acyclic by construction.
"""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from pytaxis.graph import CycleDetected, Graph


@st.composite
def dags(draw, max_nodes: int = 12) -> Graph:
    size = draw(st.integers(min_value=1, max_value=max_nodes))
    pairs = draw(
        st.lists(
            st.tuples(
                st.integers(min_value=0, max_value=size - 1),
                st.integers(min_value=0, max_value=size - 1),
            ),
            max_size=size * 3,
        )
    )
    graph = Graph().add_nodes(range(size))
    return graph.add_edges((a, b) for a, b in pairs if a < b)


# ==============================================================================
# PROPERTY 1: Topological order respects every edge
# ==============================================================================


@pytest.mark.property
@given(graph=dags())
@settings(max_examples=100, deadline=None)
def test_topological_order_respects_edges(graph):
    order = graph.topological_sort()
    position = {node: i for i, node in enumerate(order)}

    assert sorted(order) == sorted(graph.nodes())
    for src, dst, _ in graph.edges():
        assert position[src] < position[dst]


# ==============================================================================
# PROPERTY 2: Cycle detection agrees with validity
# ==============================================================================


@pytest.mark.property
@given(graph=dags(), back=st.data())
@settings(max_examples=100, deadline=None)
def test_cycle_detection_agrees_with_validity(graph, back):
    assert graph.detect_cycle() is None
    assert graph.is_valid()

    if graph.edges():
        src, dst, _ = back.draw(st.sampled_from(graph.edges()))
        cyclic = graph.add_edge(dst, src)

        cycle = cyclic.detect_cycle()
        assert cycle is not None
        assert cycle[0] == cycle[-1]
        assert not cyclic.is_valid()
        with pytest.raises(CycleDetected):
            cyclic.topological_sort()


# ==============================================================================
# PROPERTY 3: Map form preserves the graph
# ==============================================================================


@pytest.mark.property
@given(graph=dags(), grouped=st.lists(st.integers(min_value=0, max_value=11), max_size=4))
@settings(max_examples=50, deadline=None)
def test_map_form_preserves_graph(graph, grouped):
    for node in grouped:
        if graph.has_node(node):
            graph = graph.add_to_group("g", node)

    rebuilt = Graph.from_map(graph.to_map())

    assert set(rebuilt.nodes()) == set(graph.nodes())
    assert set(rebuilt.edges()) == set(graph.edges())
    assert rebuilt.groups == graph.groups


# ==============================================================================
# PROPERTY 4: Transitive reduction keeps reachability and drops redundancy
# ==============================================================================


@pytest.mark.property
@given(graph=dags())
@settings(max_examples=100, deadline=None)
def test_transitive_reduction_preserves_reachability(graph):
    reduced = graph.transitive_reduction()

    for node in graph.nodes():
        assert reduced.descendants(node) == graph.descendants(node)

    for src, dst, _ in reduced.edges():
        # Without this edge, dst must no longer be reachable from src
        assert not reduced.remove_edge(src, dst).has_path(src, dst)


# ==============================================================================
# PROPERTY 5: Levels partition the nodes along edges
# ==============================================================================


@pytest.mark.property
@given(graph=dags())
@settings(max_examples=50, deadline=None)
def test_levels_increase_along_edges(graph):
    depth = {node: level for level, nodes in graph.levels().items() for node in nodes}

    assert set(depth) == set(graph.nodes())
    for src, dst, _ in graph.edges():
        assert depth[src] < depth[dst]
    assert graph.max_depth() == max(depth.values())
