"""
Unit Tests for NodeExecutor

Tests cover:
- Dispatch per node variant
- Timeout -> failed with kind Timeout
- Provider failures -> ProviderError, circuit breaker
- Configuration failures -> ConfigError
- Message merging and JSON responses
"""

import pytest

from alpaka_engine.core.circuit_breaker import get_circuit_breaker
from alpaka_engine.core.exceptions import NodeConfigError, ProviderError
from alpaka_engine.core.executors import ExecutionContext, NodeExecutor, merge_user_messages
from alpaka_engine.core.graph import WorkflowGraph
from alpaka_engine.core.nodes import (
    InputNode,
    LLMChainNode,
    ModelProviderNode,
    NoteNode,
    OutputNode,
    RouterNode,
    TransformNode,
)


def _context(nodes, globals=None, on_stream=None):
    graph = WorkflowGraph(nodes, [])
    return ExecutionContext(graph=graph, globals=globals or {}, results={}, on_stream=on_stream)


def _provider_node(**kwargs):
    defaults = {"id": "model", "model": "gpt-4o-mini", "model_group": "main", "api_key": "{{KEY}}"}
    defaults.update(kwargs)
    return ModelProviderNode(**defaults)


def _chain(**kwargs):
    defaults = {"id": "chain", "model_group": "main", "messages": [{"role": "user", "content": "Hi {{name}}"}]}
    defaults.update(kwargs)
    return LLMChainNode(**defaults)


# ============================================================================
# SIMPLE VARIANTS
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_input_node_renders_fields(executor):
    node = InputNode(id="in", fields={"answers": "{{job_responses}}", "fixed": 1})

    result = await executor.execute(node, {"job_responses": {"q1": "yes"}}, _context([node]))

    assert result.completed
    assert result.output == {"answers": {"q1": "yes"}, "fixed": 1}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_transform_node(executor):
    node = TransformNode(id="t", template="Hello {{name}}", output_key="greeting")

    result = await executor.execute(node, {"name": "Ana"}, _context([node]))

    assert result.output == {"text": "Hello Ana", "greeting": "Hello Ana"}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_transform_invalid_json_is_config_error(executor):
    node = TransformNode(id="t", template="{not json", parse_json=True)

    result = await executor.execute(node, {}, _context([node]))

    assert result.status == "failed"
    assert result.error_kind == "ConfigError"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_router_node_picks_route(executor):
    node = RouterNode(id="r", value="{{answer}}", routes=[{"handle": "yes", "equals": "yes"}])

    matched = await executor.execute(node, {"answer": "Yes"}, _context([node]))
    unmatched = await executor.execute(node, {"answer": "no"}, _context([node]))

    assert matched.output == {"route": "yes", "value": "Yes"}
    assert unmatched.status == "failed"
    assert unmatched.error_kind == "ConfigError"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_output_and_note_nodes(executor):
    output = OutputNode(id="o", fields={"summary": "{{s}}"})
    note = NoteNode(id="n", text="{{ignored}}")

    output_result = await executor.execute(output, {"s": "done"}, _context([output, note]))
    note_result = await executor.execute(note, {}, _context([output, note]))

    assert output_result.output == {"report": {"summary": "done"}, "summary": "done"}
    assert note_result.completed
    assert note_result.output == {}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_model_provider_node_outputs_public_config(executor):
    node = _provider_node()

    result = await executor.execute(node, {}, _context([node]))

    assert result.output["model"] == "gpt-4o-mini"
    assert "api_key" not in result.output


# ============================================================================
# LLM CHAIN
# ============================================================================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_llm_chain_calls_provider(executor, fake_provider, provider_configs):
    chain = _chain(temperature=0.7)
    context = _context([_provider_node(temperature=0.1, max_tokens=50), chain], globals={"KEY": "sk-test"})

    result = await executor.execute(chain, {"name": "Ana"}, context)

    assert result.completed
    assert result.output["text"] == "fake response"
    assert result.output["response"] == "fake response"
    assert result.usage == {"input_tokens": 10, "output_tokens": 2}
    # Credentials rendered from globals
    assert provider_configs[0]["api_key"] == "sk-test"
    call = fake_provider.calls[0]
    assert call["messages"] == [{"role": "user", "content": "Hi Ana"}]
    assert call["params"]["temperature"] == 0.7
    assert call["params"]["max_tokens"] == 50


@pytest.mark.unit
@pytest.mark.asyncio
async def test_llm_chain_without_provider_node(executor):
    chain = _chain()

    result = await executor.execute(chain, {"name": "x"}, _context([chain]))

    assert result.status == "failed"
    assert result.error_kind == "ConfigError"
    assert "No model_provider node" in result.error


@pytest.mark.unit
@pytest.mark.asyncio
async def test_llm_chain_timeout(make_provider):
    provider = make_provider(delay=1.0)
    executor = NodeExecutor(provider_factory=lambda config: provider, default_timeout=5)
    chain = _chain(timeout=0.05)

    result = await executor.execute(chain, {"name": "x"}, _context([_provider_node(), chain]))

    assert result.status == "failed"
    assert result.error_kind == "Timeout"
    assert "timeout" in result.error


@pytest.mark.unit
@pytest.mark.asyncio
async def test_llm_chain_timeouts_open_breaker(make_provider):
    provider = make_provider(delay=1.0)
    executor = NodeExecutor(provider_factory=lambda config: provider, default_timeout=5)
    chain = _chain(timeout=0.05)
    context = _context([_provider_node(), chain])
    breaker = get_circuit_breaker("openai")

    for _ in range(breaker.failure_threshold):
        result = await executor.execute(chain, {"name": "x"}, context)
        assert result.error_kind == "Timeout"

    assert breaker.is_open()
    calls_before = len(provider.calls)
    blocked = await executor.execute(chain, {"name": "x"}, context)

    assert "circuit breaker is OPEN" in blocked.error
    assert len(provider.calls) == calls_before


@pytest.mark.unit
@pytest.mark.asyncio
async def test_llm_chain_provider_error_opens_breaker(make_provider):
    provider = make_provider(error=ProviderError("rate limited", provider="openai"))
    executor = NodeExecutor(provider_factory=lambda config: provider)
    chain = _chain()
    context = _context([_provider_node(), chain])
    breaker = get_circuit_breaker("openai")

    for _ in range(breaker.failure_threshold):
        result = await executor.execute(chain, {"name": "x"}, context)
        assert result.error_kind == "ProviderError"

    calls_before = len(provider.calls)
    blocked = await executor.execute(chain, {"name": "x"}, context)

    assert blocked.error_kind == "ProviderError"
    assert "circuit breaker is OPEN" in blocked.error
    assert len(provider.calls) == calls_before


@pytest.mark.unit
@pytest.mark.asyncio
async def test_llm_chain_unexpected_exception_is_provider_error(make_provider):
    provider = make_provider(error=RuntimeError("connection reset"))
    executor = NodeExecutor(provider_factory=lambda config: provider)
    chain = _chain()

    result = await executor.execute(chain, {"name": "x"}, _context([_provider_node(), chain]))

    assert result.error_kind == "ProviderError"
    assert "connection reset" in result.error


@pytest.mark.unit
@pytest.mark.asyncio
async def test_llm_chain_factory_config_error():
    def factory(config):
        raise NodeConfigError("OPENAI_API_KEY environment variable is required.")

    executor = NodeExecutor(provider_factory=factory)
    chain = _chain()

    result = await executor.execute(chain, {"name": "x"}, _context([_provider_node(), chain]))

    assert result.error_kind == "ConfigError"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_llm_chain_json_response(make_provider):
    provider = make_provider(responses=['```json\n{"items": [1, 2]}\n```'])
    executor = NodeExecutor(provider_factory=lambda config: provider)
    chain = _chain(response_format="json", output_variable="raw")

    result = await executor.execute(chain, {"name": "x"}, _context([_provider_node(), chain]))

    assert result.output["data"] == {"items": [1, 2]}
    assert result.output["raw"] == result.output["text"]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_llm_chain_invalid_json_response(make_provider):
    provider = make_provider(responses=["not json at all"])
    executor = NodeExecutor(provider_factory=lambda config: provider)
    chain = _chain(response_format="json")

    result = await executor.execute(chain, {"name": "x"}, _context([_provider_node(), chain]))

    assert result.error_kind == "ProviderError"
    assert "invalid JSON" in result.error


@pytest.mark.unit
@pytest.mark.asyncio
async def test_llm_chain_streaming_forwards_chunks(make_provider):
    provider = make_provider(responses=["one two three"])
    executor = NodeExecutor(provider_factory=lambda config: provider)
    chain = _chain(stream=True)
    chunks = []

    context = _context([_provider_node(), chain], on_stream=lambda node_id, chunk: chunks.append((node_id, chunk)))
    result = await executor.execute(chain, {"name": "x"}, context)

    assert result.output["text"] == "one two three"
    assert [chunk.accumulated for _, chunk in chunks] == ["one", "one two", "one two three", "one two three"]
    assert chunks[-1][1].done
    assert all(node_id == "chain" for node_id, _ in chunks)


# ============================================================================
# HELPERS
# ============================================================================

@pytest.mark.unit
def test_merge_user_messages():
    merged = merge_user_messages([
        {"role": "system", "content": "s"},
        {"role": "user", "content": "a"},
        {"role": "user", "content": "b"},
        {"role": "assistant", "content": "c"},
        {"role": "user", "content": "d"},
    ])

    assert merged == [
        {"role": "system", "content": "s"},
        {"role": "user", "content": "a\n\nb"},
        {"role": "assistant", "content": "c"},
        {"role": "user", "content": "d"},
    ]
