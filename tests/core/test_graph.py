"""
Unit Tests for WorkflowGraph

Tests cover:
- Canvas parsing and validation
- Predecessors / successors / ancestors
- Deterministic topological order
- Cycle detection
"""

import pytest

from alpaka_engine.core.exceptions import GraphCycleError, GraphValidationError
from alpaka_engine.core.graph import Edge, WorkflowGraph
from alpaka_engine.core.nodes import InputNode, TransformNode


def _graph(node_ids, edges):
    nodes = [TransformNode(id=node_id) for node_id in node_ids]
    return WorkflowGraph(nodes, [Edge(source=s, target=t) for s, t in edges])


# ============================================================================
# PARSING
# ============================================================================

@pytest.mark.unit
def test_from_canvas_parses_nodes_and_edges(missing_branch_canvas):
    graph = WorkflowGraph.from_canvas(missing_branch_canvas)

    assert len(graph) == 3
    assert "A" in graph
    assert isinstance(graph.node("A"), InputNode)
    assert isinstance(graph.node("C"), TransformNode)
    assert len(graph.edges) == 2


@pytest.mark.unit
def test_from_canvas_empty():
    graph = WorkflowGraph.from_canvas(None)

    assert len(graph) == 0
    assert graph.topological_order() == []


@pytest.mark.unit
def test_from_canvas_unknown_node_type(build_node):
    canvas = {"nodes": [build_node("x", "python")], "edges": []}

    with pytest.raises(GraphValidationError, match="Unknown node type"):
        WorkflowGraph.from_canvas(canvas)


@pytest.mark.unit
@pytest.mark.parametrize("canvas, message", [
    ("not a canvas", "Canvas must be an object"),
    ({"nodes": {"a": {}}, "edges": []}, "must be lists"),
    ({"nodes": ["a"], "edges": []}, "node #0"),
    ({"nodes": [{"id": "a", "type": "input", "data": "oops"}], "edges": []}, "node 'a'"),
    ({"nodes": [{"id": "a", "type": ["input"]}], "edges": []}, "node 'a'"),
    ({"nodes": [], "edges": [42]}, "edge #0"),
    ({"nodes": [], "edges": [{"id": "e1", "source": 1, "target": None}]}, "edge 'e1'"),
])
def test_from_canvas_malformed_items(canvas, message):
    with pytest.raises(GraphValidationError, match=message):
        WorkflowGraph.from_canvas(canvas)


@pytest.mark.unit
def test_edge_to_unknown_node_rejected():
    with pytest.raises(GraphValidationError, match="unknown target node 'ghost'"):
        _graph(["a"], [("a", "ghost")])


@pytest.mark.unit
def test_duplicate_node_id_rejected():
    with pytest.raises(GraphValidationError, match="Duplicate node id"):
        _graph(["a", "a"], [])


@pytest.mark.unit
def test_edge_accepts_camel_case_handles():
    edge = Edge(**{"source": "r", "target": "x", "sourceHandle": "yes"})

    assert edge.source_handle == "yes"


# ============================================================================
# NEIGHBOURHOOD
# ============================================================================

@pytest.mark.unit
def test_predecessors_and_successors():
    graph = _graph(["a", "b", "c", "d"], [("a", "c"), ("b", "c"), ("c", "d"), ("a", "c")])

    assert graph.predecessors("c") == ["a", "b"]
    assert graph.successors("a") == ["c"]
    assert graph.successors("d") == []


@pytest.mark.unit
def test_ancestors_nearest_first():
    graph = _graph(["a", "b", "c", "d"], [("a", "b"), ("b", "c"), ("c", "d")])

    assert graph.ancestors("d") == ["c", "b", "a"]
    assert graph.ancestors("a") == []
    assert graph.descendants("a") == ["b", "c", "d"]


@pytest.mark.unit
def test_has_path_is_directional():
    graph = _graph(["a", "b", "c"], [("a", "b"), ("a", "c")])

    assert graph.has_path("a", "c")
    assert not graph.has_path("c", "a")
    # Siblings are not connected
    assert not graph.has_path("b", "c")


# ============================================================================
# TOPOLOGICAL ORDER
# ============================================================================

@pytest.mark.unit
def test_topological_order_respects_every_edge():
    edges = [("a", "d"), ("b", "d"), ("d", "e"), ("c", "e")]
    graph = _graph(["e", "d", "c", "b", "a"], edges)

    order = graph.topological_order()

    assert sorted(order) == ["a", "b", "c", "d", "e"]
    for source, target in edges:
        assert order.index(source) < order.index(target)


@pytest.mark.unit
def test_topological_order_is_deterministic():
    """Ready nodes come out in canvas order, every time."""
    node_ids = ["start", "x", "y", "z"]
    edges = [("start", "z"), ("start", "y"), ("start", "x")]

    orders = {tuple(_graph(node_ids, edges).topological_order()) for _ in range(5)}

    assert orders == {("start", "x", "y", "z")}


@pytest.mark.unit
def test_cycle_raises_with_cycle_path():
    with pytest.raises(GraphCycleError) as exc_info:
        _graph(["X", "Y"], [("X", "Y"), ("Y", "X")])

    assert exc_info.value.cycle in (["X", "Y", "X"], ["Y", "X", "Y"])
    assert "cycle" in exc_info.value.message


@pytest.mark.unit
def test_self_loop_is_a_cycle():
    with pytest.raises(GraphCycleError) as exc_info:
        _graph(["a", "b"], [("a", "b"), ("b", "b")])

    assert exc_info.value.cycle == ["b", "b"]


@pytest.mark.unit
def test_cycle_error_is_validation_error():
    with pytest.raises(GraphValidationError):
        _graph(["a", "b", "c"], [("a", "b"), ("b", "c"), ("c", "b")])


# ============================================================================
# LOOKUPS
# ============================================================================

@pytest.mark.unit
def test_find_by_label_and_model_provider(chain_canvas):
    graph = WorkflowGraph.from_canvas(chain_canvas)

    assert graph.find_by_label("session").id == "input"
    assert graph.find_by_label("nobody") is None
    assert graph.find_model_provider("main").id == "model"
    assert graph.find_model_provider("other") is None
