"""
Node Executor for the Alpaka Workflow Engine

NodeExecutor runs a single node with its placeholders already resolved and
returns a NodeResult. It dispatches on the node variant, bounds every run
by the node timeout and turns failures into a result with an error kind:

- Timeout        node.timeout (or the default) expired
- ProviderError  the model backend failed, or its circuit breaker is open
- ConfigError    the node cannot run as configured

The executor never writes results or globals; the runner owns both.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from .circuit_breaker import get_circuit_breaker
from .exceptions import NodeConfigError, NodeExecutionError, ProviderError
from .graph import WorkflowGraph
from .nodes import (
    InputNode,
    LLMChainNode,
    ModelProviderNode,
    NodeType,
    NoteNode,
    OutputNode,
    RouterNode,
    TransformNode,
)
from .resolver import interpolate, render_value, stringify
from ..providers.base import ModelProvider, StreamChunk
from ..providers.registry import ProviderPool

logger = logging.getLogger(__name__)

DEFAULT_NODE_TIMEOUT = 120.0


@dataclass
class NodeResult:
    status: str  # completed | failed
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_kind: Optional[str] = None
    duration_ms: int = 0
    usage: Optional[Dict[str, int]] = None

    @property
    def completed(self) -> bool:
        return self.status == "completed"


@dataclass
class ExecutionContext:
    """Read-only view of the run handed to each node."""
    graph: WorkflowGraph
    globals: Mapping[str, Any]
    results: Mapping[str, Dict[str, Any]]
    instance_id: Optional[str] = None
    job_id: Optional[str] = None
    on_stream: Optional[Callable[[str, StreamChunk], None]] = None


ProviderFactory = Callable[[Dict[str, Any]], ModelProvider]


class NodeExecutor:
    """
    Executes nodes of any variant.

    Args:
        provider_factory: Builds a ModelProvider from a rendered
            model_provider configuration (defaults to a ProviderPool owned
            by this executor)
        default_timeout: Seconds allowed when a node sets no timeout
    """

    def __init__(
        self,
        provider_factory: Optional[ProviderFactory] = None,
        default_timeout: float = DEFAULT_NODE_TIMEOUT,
    ):
        self.provider_factory = provider_factory or ProviderPool()
        self.default_timeout = default_timeout

    async def execute(self, node: NodeType, values: Mapping[str, Any], context: ExecutionContext) -> NodeResult:
        """
        Run one node.

        Args:
            node: Node to run
            values: Resolved placeholder values {name: value}
            context: Graph, global snapshot and results so far

        Returns:
            NodeResult (never raises for node-level failures)
        """
        timeout = node.timeout or self.default_timeout
        start_time = time.time()

        try:
            output = await asyncio.wait_for(self._dispatch(node, values, context), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Node {node.id} timed out after {timeout}s")
            return NodeResult(
                status="failed",
                error=f"Node '{node.id}' exceeded timeout of {timeout}s",
                error_kind=NodeExecutionError.TIMEOUT,
                duration_ms=_elapsed_ms(start_time),
            )
        except NodeExecutionError as e:
            logger.warning(f"Node {node.id} failed ({e.kind}): {e.message}")
            return NodeResult(
                status="failed",
                error=e.message,
                error_kind=e.kind,
                duration_ms=_elapsed_ms(start_time),
            )
        except Exception as e:
            logger.exception(f"Node {node.id} raised an unexpected error")
            return NodeResult(
                status="failed",
                error=f"{type(e).__name__}: {e}",
                error_kind=NodeExecutionError.PROVIDER_ERROR if isinstance(node, LLMChainNode) else NodeExecutionError.CONFIG_ERROR,
                duration_ms=_elapsed_ms(start_time),
            )

        return NodeResult(
            status="completed",
            output=output,
            duration_ms=_elapsed_ms(start_time),
            usage=output.get("usage") if isinstance(output.get("usage"), dict) else None,
        )

    async def _dispatch(self, node: NodeType, values: Mapping[str, Any], context: ExecutionContext) -> Dict[str, Any]:
        if isinstance(node, InputNode):
            return render_value(dict(node.fields), values)

        if isinstance(node, ModelProviderNode):
            return node.public_config()

        if isinstance(node, LLMChainNode):
            return await self._run_llm_chain(node, values, context)

        if isinstance(node, TransformNode):
            return self._run_transform(node, values)

        if isinstance(node, RouterNode):
            rendered = stringify(render_value(node.value, values))
            handle = node.select_route(rendered)
            if handle is None:
                raise NodeConfigError(f"Router '{node.id}' matched no route for value '{rendered[:100]}'", node_id=node.id)
            return {"route": handle, "value": rendered}

        if isinstance(node, OutputNode):
            report = render_value(dict(node.fields), values)
            return {"report": report, **report}

        if isinstance(node, NoteNode):
            return {}

        raise NodeConfigError(f"No executor for node type '{node.type}'", node_id=node.id)

    # ------------------------------------------------------------------
    # Variants
    # ------------------------------------------------------------------

    def _run_transform(self, node: TransformNode, values: Mapping[str, Any]) -> Dict[str, Any]:
        text = interpolate(node.template, values)
        value: Any = text
        if node.parse_json:
            try:
                value = json.loads(text)
            except json.JSONDecodeError as e:
                raise NodeConfigError(f"Transform '{node.id}' produced invalid JSON: {e}", node_id=node.id)
        return {"text": text, node.output_key: value}

    async def _run_llm_chain(self, node: LLMChainNode, values: Mapping[str, Any], context: ExecutionContext) -> Dict[str, Any]:
        provider_node = context.graph.find_model_provider(node.model_group)
        if provider_node is None:
            raise NodeConfigError(
                f"No model_provider node for model group '{node.model_group}'",
                node_id=node.id
            )

        # Credentials come from the run's global snapshot
        config = render_value(provider_node.provider_config(), context.globals)
        provider = self.provider_factory(config)

        breaker = get_circuit_breaker(config["provider"])
        if breaker.is_open():
            raise ProviderError(
                f"{config['provider']} circuit breaker is OPEN, skipping call",
                node_id=node.id,
                provider=config["provider"]
            )

        messages = merge_user_messages([
            {"role": message.role, "content": interpolate(message.content, values)}
            for message in node.messages
        ])
        params = {
            "temperature": node.temperature if node.temperature is not None else config.get("temperature"),
            "top_p": config.get("top_p"),
            "max_tokens": node.max_tokens or config.get("max_tokens"),
        }

        logger.info(
            f"Calling {config['provider']}/{config['model']} for node {node.id}",
            extra={"node_id": node.id, "messages": len(messages), "stream": node.stream}
        )

        try:
            if node.stream:
                text, usage = await self._consume_stream(node, provider, messages, params, context)
                model = provider.get_model_name()
            else:
                result = await provider.generate(messages, **params)
                text, usage, model = result.text, result.usage, result.model
            breaker.record_success()
        except asyncio.CancelledError:
            # Node timeout cancels the call mid-flight; a hung provider counts against it
            breaker.record_failure()
            raise
        except ProviderError as e:
            breaker.record_failure()
            e.node_id = node.id
            raise
        except NodeExecutionError:
            raise
        except Exception as e:
            breaker.record_failure()
            raise ProviderError(f"{config['provider']} call failed: {e}", node_id=node.id, provider=config["provider"])

        output: Dict[str, Any] = {
            "text": text,
            "response": text,
            "model": model,
            "usage": usage or {},
        }
        if node.response_format == "json":
            try:
                output["data"] = json.loads(_strip_code_fence(text))
            except json.JSONDecodeError as e:
                raise ProviderError(f"Model returned invalid JSON for node '{node.id}': {e}", node_id=node.id)
        if node.output_variable:
            output[node.output_variable] = text
        return output

    async def _consume_stream(self, node, provider, messages, params, context):
        text = ""
        usage = None
        async for chunk in provider.stream(messages, **params):
            text = chunk.accumulated
            if chunk.done:
                usage = chunk.usage
            if context.on_stream:
                context.on_stream(node.id, chunk)
        return text, usage


def merge_user_messages(messages: List[Dict[str, str]]) -> List[Dict[str, str]]:
    """Join consecutive user messages; some backends reject two in a row."""
    merged: List[Dict[str, str]] = []
    for message in messages:
        if merged and message["role"] == "user" and merged[-1]["role"] == "user":
            merged[-1] = {"role": "user", "content": merged[-1]["content"] + "\n\n" + message["content"]}
        else:
            merged.append(dict(message))
    return merged


def _strip_code_fence(text: str) -> str:
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = stripped.split("\n", 1)[1] if "\n" in stripped else ""
        if stripped.rstrip().endswith("```"):
            stripped = stripped.rstrip()[:-3]
    return stripped.strip()


def _elapsed_ms(start_time: float) -> int:
    return int((time.time() - start_time) * 1000)
