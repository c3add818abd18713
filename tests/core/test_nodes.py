"""
Unit Tests for Node variants

Tests cover:
- Canvas node parsing (nested data, camelCase keys)
- Per-variant validation
- Declared outputs
- Router matching
"""

import pytest
from pydantic import ValidationError

from alpaka_engine.core.nodes import (
    InputNode,
    LLMChainNode,
    ModelProviderNode,
    NoteNode,
    OutputNode,
    RouterNode,
    TransformNode,
    create_node_from_dict,
)


# ============================================================================
# FACTORY
# ============================================================================

@pytest.mark.unit
def test_create_from_canvas_node_flattens_data(build_node):
    node = create_node_from_dict(build_node(
        "summary", "llm_chain",
        label="Summary",
        modelGroup="main",
        responseFormat="json",
        outputVariable="summary_text",
        messages=[{"role": "user", "content": "{{text}}"}],
    ))

    assert isinstance(node, LLMChainNode)
    assert node.model_group == "main"
    assert node.response_format == "json"
    assert node.output_variable == "summary_text"
    assert node.messages[0].content == "{{text}}"


@pytest.mark.unit
def test_create_from_flat_dict():
    node = create_node_from_dict({"id": "t", "type": "transform", "template": "x", "output_key": "out"})

    assert isinstance(node, TransformNode)
    assert node.output_key == "out"


@pytest.mark.unit
def test_create_unknown_type():
    with pytest.raises(ValueError, match="Unknown node type"):
        create_node_from_dict({"id": "x", "type": "code"})


@pytest.mark.unit
def test_create_llm_chain_without_messages(build_node):
    with pytest.raises(ValueError, match="at least one message"):
        create_node_from_dict(build_node("c", "llm_chain", modelGroup="main"))


@pytest.mark.unit
def test_create_invalid_field_wrapped_as_value_error(build_node):
    with pytest.raises(ValueError, match="Failed to create model_provider node"):
        create_node_from_dict(build_node("m", "model_provider", provider="openai", model="x", temperature=5))


@pytest.mark.unit
def test_router_requires_routes_or_default(build_node):
    with pytest.raises(ValueError, match="needs routes or a default_handle"):
        create_node_from_dict(build_node("r", "router", value="{{x}}"))


# ============================================================================
# NODE PROPERTIES
# ============================================================================

@pytest.mark.unit
def test_nodes_are_immutable():
    node = TransformNode(id="t", template="x")

    with pytest.raises(ValidationError):
        node.template = "y"


@pytest.mark.unit
def test_empty_id_rejected():
    with pytest.raises(ValidationError):
        NoteNode(id="   ")


@pytest.mark.unit
def test_timeout_must_be_positive():
    with pytest.raises(ValidationError):
        TransformNode(id="t", timeout=0)


@pytest.mark.unit
def test_declared_outputs():
    chain = LLMChainNode(
        id="c", messages=[{"content": "hi"}], response_format="json", output_variable="answer"
    )

    assert InputNode(id="i", fields={"a": 1, "b": 2}).declared_outputs() == ["a", "b"]
    assert chain.declared_outputs() == ["text", "response", "model", "usage", "data", "answer"]
    assert TransformNode(id="t", output_key="summary").declared_outputs() == ["text", "summary"]
    assert OutputNode(id="o", fields={"x": "1"}).declared_outputs() == ["report", "x"]
    assert NoteNode(id="n").declared_outputs() == []


@pytest.mark.unit
def test_model_provider_public_config_hides_credentials():
    node = ModelProviderNode(id="m", model="gpt-4o-mini", api_key="{{KEY}}", base_url="http://x")

    public = node.public_config()

    assert "api_key" not in public
    assert "base_url" not in public
    assert node.provider_config()["api_key"] == "{{KEY}}"


@pytest.mark.unit
def test_output_node_key_fallbacks():
    assert OutputNode(id="o", report_key="final", label="L").key == "final"
    assert OutputNode(id="o", label="L").key == "L"
    assert OutputNode(id="o").key == "o"


# ============================================================================
# ROUTER
# ============================================================================

@pytest.mark.unit
def test_router_select_route():
    router = RouterNode(
        id="r",
        value="{{x}}",
        routes=[{"handle": "yes", "equals": "Yes"}, {"handle": "urgent", "contains": "urgent"}],
        default_handle="other",
    )

    assert router.select_route("  YES ") == "yes"
    assert router.select_route("This is URGENT") == "urgent"
    assert router.select_route("maybe") == "other"


@pytest.mark.unit
def test_router_without_default_returns_none():
    router = RouterNode(id="r", routes=[{"handle": "a", "equals": "a"}])

    assert router.select_route("b") is None
