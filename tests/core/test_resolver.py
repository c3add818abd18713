"""
Unit Tests for VariableResolver

Tests cover:
- Priority: Global > Direct > Transitive > Pending > Missing
- No cross-talk between nodes without an edge path
- Template helpers (extract / interpolate / render)
"""

import pytest

from alpaka_engine.core.graph import Edge, WorkflowGraph
from alpaka_engine.core.nodes import InputNode, LLMChainNode, TransformNode
from alpaka_engine.core.resolver import (
    ResolutionKind,
    VariableResolver,
    extract_placeholders,
    interpolate,
    render_value,
)


@pytest.fixture
def diamond_graph():
    """
    src -> mid -> sink
    src -> sink
    lone (no edges)
    """
    nodes = [
        InputNode(id="src", label="source", fields={"topic": "x"}),
        TransformNode(id="mid", label="middle", template="{{topic}}", output_key="summary"),
        TransformNode(id="sink", template="{{summary}}"),
        TransformNode(id="lone", output_key="summary"),
    ]
    edges = [Edge(source="src", target="mid"), Edge(source="mid", target="sink"), Edge(source="src", target="sink")]
    return WorkflowGraph(nodes, edges)


# ============================================================================
# PRIORITY
# ============================================================================

@pytest.mark.unit
def test_global_wins_over_upstream(diamond_graph):
    resolver = VariableResolver(
        diamond_graph,
        globals={"topic": "from-global"},
        results={"src": {"topic": "from-node"}},
    )

    resolution = resolver.resolve("topic", "mid")

    assert resolution.kind == ResolutionKind.GLOBAL
    assert resolution.value == "from-global"
    assert resolution.resolved


@pytest.mark.unit
def test_direct_predecessor(diamond_graph):
    resolver = VariableResolver(diamond_graph, globals={}, results={"src": {"topic": "pricing"}})

    resolution = resolver.resolve("topic", "mid")

    assert resolution.kind == ResolutionKind.DIRECT
    assert resolution.value == "pricing"
    assert resolution.source_node_id == "src"


@pytest.mark.unit
def test_transitive_ancestor():
    nodes = [
        InputNode(id="a", fields={"company": "Acme"}),
        TransformNode(id="b", template="x"),
        TransformNode(id="c", template="{{company}}"),
    ]
    graph = WorkflowGraph(nodes, [Edge(source="a", target="b"), Edge(source="b", target="c")])
    resolver = VariableResolver(graph, globals={}, results={"a": {"company": "Acme"}, "b": {"text": "x"}})

    resolution = resolver.resolve("company", "c")

    assert resolution.kind == ResolutionKind.TRANSITIVE
    assert resolution.value == "Acme"


@pytest.mark.unit
def test_nearest_ancestor_wins(diamond_graph):
    results = {"src": {"summary": "far"}, "mid": {"summary": "near", "text": "near"}}
    resolver = VariableResolver(diamond_graph, globals={}, results=results)

    resolution = resolver.resolve("summary", "sink")

    assert resolution.value == "near"
    assert resolution.source_node_id == "mid"


@pytest.mark.unit
def test_pending_when_upstream_has_not_run(diamond_graph):
    resolver = VariableResolver(diamond_graph, globals={}, results={"src": {"topic": "x"}})

    resolution = resolver.resolve("summary", "sink")

    assert resolution.kind == ResolutionKind.PENDING
    assert resolution.source_node_id == "mid"
    assert not resolution.resolved


@pytest.mark.unit
def test_missing_when_nobody_provides_it(diamond_graph):
    resolver = VariableResolver(diamond_graph, globals={}, results={"src": {"topic": "x"}})

    resolution = resolver.resolve("budget", "mid")

    assert resolution.kind == ResolutionKind.MISSING
    assert "no global or upstream node" in resolution.reason


@pytest.mark.unit
def test_missing_when_upstream_failed(diamond_graph):
    resolver = VariableResolver(
        diamond_graph, globals={},
        results={"src": {"topic": "x"}},
        settled={"src": "completed", "mid": "failed"},
    )

    resolution = resolver.resolve("summary", "sink")

    assert resolution.kind == ResolutionKind.MISSING
    assert "failed" in resolution.reason


# ============================================================================
# DOTTED REFERENCES
# ============================================================================

@pytest.mark.unit
def test_reference_by_id_and_label(diamond_graph):
    resolver = VariableResolver(diamond_graph, globals={}, results={"src": {"topic": "pricing"}})

    by_id = resolver.resolve("src.topic", "mid")
    by_label = resolver.resolve("source.topic", "mid")

    assert by_id.value == by_label.value == "pricing"
    assert by_id.kind == ResolutionKind.DIRECT


@pytest.mark.unit
def test_reference_nested_path():
    nodes = [InputNode(id="a", fields={}), TransformNode(id="b")]
    graph = WorkflowGraph(nodes, [Edge(source="a", target="b")])
    resolver = VariableResolver(graph, globals={}, results={"a": {"data": {"items": ["x", "y"]}}})

    assert resolver.resolve("a.data.items.1", "b").value == "y"
    assert resolver.resolve("a.data.nope", "b").kind == ResolutionKind.MISSING


@pytest.mark.unit
def test_reference_to_unconnected_node_is_missing(diamond_graph):
    """No cross-talk: 'lone' exports summary but has no path to sink."""
    resolver = VariableResolver(
        diamond_graph, globals={},
        results={"lone": {"summary": "leak"}, "src": {"topic": "x"}},
    )

    reference = resolver.resolve("lone.summary", "sink")
    bare = resolver.resolve("summary", "sink")

    assert reference.kind == ResolutionKind.MISSING
    assert "has no path" in reference.reason
    assert bare.value != "leak"


@pytest.mark.unit
def test_bare_label_returns_primary_value():
    nodes = [
        LLMChainNode(id="n1", label="analysis", messages=[{"role": "user", "content": "hi"}]),
        TransformNode(id="n2", template="{{analysis}}"),
    ]
    graph = WorkflowGraph(nodes, [Edge(source="n1", target="n2")])
    resolver = VariableResolver(graph, globals={}, results={"n1": {"text": "t", "response": "r"}})

    assert resolver.resolve("analysis", "n2").value == "r"


@pytest.mark.unit
def test_globals_are_frozen(diamond_graph):
    source = {"topic": "a"}
    resolver = VariableResolver(diamond_graph, globals=source)

    source["topic"] = "b"

    assert resolver.resolve("topic", "mid").value == "a"
    with pytest.raises(TypeError):
        resolver.globals["topic"] = "c"


@pytest.mark.unit
def test_resolve_node_collects_every_placeholder(diamond_graph):
    resolver = VariableResolver(diamond_graph, globals={"topic": "t"}, results={})

    resolutions = resolver.resolve_node(diamond_graph.node("mid"))

    assert list(resolutions) == ["topic"]
    assert resolutions["topic"].kind == ResolutionKind.GLOBAL


# ============================================================================
# TEMPLATE HELPERS
# ============================================================================

@pytest.mark.unit
def test_extract_placeholders_nested():
    value = {"a": "{{x}} and {{ y }}", "b": ["{{x}}", {"c": "{{z.w}}"}], "d": 3}

    assert extract_placeholders(value) == ["x", "y", "z.w"]


@pytest.mark.unit
def test_interpolate_keeps_unknown_and_encodes_structures():
    text = interpolate("{{name}} has {{items}} and {{unknown}}", {"name": "Ana", "items": [1, 2]})

    assert text == "Ana has [1, 2] and {{unknown}}"


@pytest.mark.unit
def test_render_value_single_placeholder_keeps_type():
    values = {"items": [1, 2], "n": 3}

    assert render_value("{{items}}", values) == [1, 2]
    assert render_value({"count": "{{n}}", "label": "n={{n}}"}, values) == {"count": 3, "label": "n=3"}
