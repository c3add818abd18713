"""
Node System for the Alpaka Workflow Engine

This module defines the node variants that compose a project graph:
- InputNode: Exposes static fields and job values to downstream nodes
- ModelProviderNode: Declares a model configuration for a model group
- LLMChainNode: Renders a message chain and calls its group's provider
- TransformNode: Renders a template, optionally parsing JSON
- RouterNode: Picks one output handle by comparing a rendered value
- OutputNode: Collects rendered fields into a report
- NoteNode: Canvas annotation, does nothing when executed

All nodes are immutable (frozen) Pydantic models tagged by their `type`
literal. Canvas nodes arrive as {"id", "type", "position", "data": {...}};
create_node_from_dict flattens `data` and accepts camelCase keys.
"""

import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


class BaseNode(BaseModel, ABC):
    """
    Base class for all graph nodes.

    All nodes have:
    - id: Unique identifier within the project
    - type: Variant tag
    - label: Optional human-readable label (also usable as a variable name)
    - timeout: Per-node timeout in seconds (None = executor default)
    - required: If True, failure of this node aborts the run
    """

    id: str = Field(..., min_length=1, description="Unique node identifier")
    type: str
    label: Optional[str] = Field(None, description="Human-readable label")
    timeout: Optional[float] = Field(None, gt=0, le=3600, description="Timeout in seconds")
    required: bool = Field(False, description="Abort the run if this node does not complete")

    class Config:
        frozen = True  # Immutable
        extra = "ignore"  # Canvas nodes carry UI-only fields
        protected_namespaces = ()  # model_group is a real field

    @field_validator("id")
    @classmethod
    def validate_id_not_empty(cls, v: str) -> str:
        """Ensure ID is not empty or whitespace"""
        if not v.strip():
            raise ValueError("Node ID cannot be empty")
        return v

    def template_values(self) -> Dict[str, Any]:
        """Configuration values that may contain {{placeholders}}."""
        return {}

    @abstractmethod
    def declared_outputs(self) -> List[str]:
        """Output field names this node produces when it completes."""
        pass

    def validate_node(self) -> None:
        """Additional validation specific to each node type."""
        pass


class InputNode(BaseNode):
    """
    Entry node that exposes values to the graph.

    Each field value is rendered against the resolved placeholders, so an
    input node can surface job data:

        {"type": "input", "fields": {"responses": "{{job_responses}}"}}
    """

    type: Literal["input"] = "input"
    fields: Dict[str, Any] = Field(default_factory=dict)

    def template_values(self) -> Dict[str, Any]:
        return {"fields": self.fields}

    def declared_outputs(self) -> List[str]:
        return list(self.fields.keys())


class ModelProviderNode(BaseNode):
    """
    Model configuration shared by every llm_chain node of the same model_group.

    api_key and base_url usually reference globals, e.g. "{{OPENAI_API_KEY}}".
    They are rendered from the run's global snapshot when a chain uses them
    and are never written to outputs.
    """

    type: Literal["model_provider"] = "model_provider"
    provider: Literal["openai", "anthropic", "ollama", "lmstudio"] = "openai"
    model: str = Field(..., min_length=1)
    model_group: str = Field("default", min_length=1)
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    temperature: Optional[float] = Field(None, ge=0, le=2)
    top_p: Optional[float] = Field(None, ge=0, le=1)
    max_tokens: Optional[int] = Field(None, ge=1)

    def provider_config(self) -> Dict[str, Any]:
        """Full configuration, including credentials."""
        return {
            "provider": self.provider,
            "model": self.model,
            "api_key": self.api_key,
            "base_url": self.base_url,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "max_tokens": self.max_tokens,
        }

    def public_config(self) -> Dict[str, Any]:
        return {
            "provider": self.provider,
            "model": self.model,
            "model_group": self.model_group,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "max_tokens": self.max_tokens,
        }

    def declared_outputs(self) -> List[str]:
        return list(self.public_config().keys())


class ChainMessage(BaseModel):
    """One message of an llm_chain; content may contain placeholders."""

    role: Literal["system", "user", "assistant"] = "user"
    content: str = ""

    class Config:
        frozen = True
        extra = "ignore"


class LLMChainNode(BaseNode):
    """
    Calls the provider of its model_group with a rendered message chain.

    Outputs:
        text / response: generated text
        model: model that answered
        usage: token usage reported by the provider
        data: parsed JSON (response_format="json" only)
        <output_variable>: the text again, under a name downstream nodes can use
    """

    type: Literal["llm_chain"] = "llm_chain"
    model_group: str = Field("default", min_length=1)
    messages: List[ChainMessage] = Field(default_factory=list)
    stream: bool = False
    response_format: Literal["text", "json"] = "text"
    output_variable: Optional[str] = None

    # Per-node overrides of the provider parameters
    temperature: Optional[float] = Field(None, ge=0, le=2)
    max_tokens: Optional[int] = Field(None, ge=1)

    def template_values(self) -> Dict[str, Any]:
        return {"messages": [m.content for m in self.messages]}

    def declared_outputs(self) -> List[str]:
        outputs = ["text", "response", "model", "usage"]
        if self.response_format == "json":
            outputs.append("data")
        if self.output_variable:
            outputs.append(self.output_variable)
        return outputs

    def validate_node(self) -> None:
        if not self.messages:
            raise ValueError(f"LLMChainNode '{self.id}' must have at least one message")


class TransformNode(BaseNode):
    """
    Renders `template` and exposes it as `text` and under `output_key`.
    With parse_json=True the rendered text must be valid JSON.
    """

    type: Literal["transform"] = "transform"
    template: str = ""
    output_key: str = Field("text", min_length=1)
    parse_json: bool = False

    def template_values(self) -> Dict[str, Any]:
        return {"template": self.template}

    def declared_outputs(self) -> List[str]:
        return ["text", self.output_key]


class Route(BaseModel):
    """Router branch: matched when the rendered value equals or contains a string."""

    handle: str = Field(..., min_length=1)
    equals: Optional[str] = None
    contains: Optional[str] = None

    class Config:
        frozen = True
        extra = "ignore"

    def matches(self, value: str) -> bool:
        normalized = value.strip().lower()
        if self.equals is not None and normalized == self.equals.strip().lower():
            return True
        if self.contains is not None and self.contains.strip().lower() in normalized:
            return True
        return False


class RouterNode(BaseNode):
    """
    Selects one outgoing handle. Successors wired only through other
    handles are skipped as branch_not_taken.
    """

    type: Literal["router"] = "router"
    value: str = ""
    routes: List[Route] = Field(default_factory=list)
    default_handle: Optional[str] = None

    def template_values(self) -> Dict[str, Any]:
        return {"value": self.value}

    def declared_outputs(self) -> List[str]:
        return ["route", "value"]

    def select_route(self, rendered: str) -> Optional[str]:
        for route in self.routes:
            if route.matches(rendered):
                return route.handle
        return self.default_handle

    def validate_node(self) -> None:
        if not self.routes and not self.default_handle:
            raise ValueError(f"RouterNode '{self.id}' needs routes or a default_handle")


class OutputNode(BaseNode):
    """
    Collects rendered fields into a report.

    The worker gathers reports of all completed output nodes into the
    job's `reports`, keyed by report_key (or label, or node id).
    """

    type: Literal["output"] = "output"
    fields: Dict[str, Any] = Field(default_factory=dict)
    report_key: Optional[str] = None

    def template_values(self) -> Dict[str, Any]:
        return {"fields": self.fields}

    def declared_outputs(self) -> List[str]:
        return ["report"] + list(self.fields.keys())

    @property
    def key(self) -> str:
        return self.report_key or self.label or self.id


class NoteNode(BaseNode):
    """Canvas annotation. Its text is never interpolated."""

    type: Literal["note"] = "note"
    text: str = ""

    def declared_outputs(self) -> List[str]:
        return []


# Type alias for any node type
NodeType = Union[InputNode, ModelProviderNode, LLMChainNode, TransformNode, RouterNode, OutputNode, NoteNode]

NODE_CLASSES = {
    "input": InputNode,
    "model_provider": ModelProviderNode,
    "llm_chain": LLMChainNode,
    "transform": TransformNode,
    "router": RouterNode,
    "output": OutputNode,
    "note": NoteNode,
}

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")


def _snake_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    return {_CAMEL_RE.sub("_", key).lower(): value for key, value in data.items()}


def create_node_from_dict(node_data: Dict[str, Any]) -> NodeType:
    """
    Factory function: Creates the appropriate node variant from a dictionary.

    Accepts flat dicts and canvas nodes with a nested `data` object.

    Raises:
        ValueError: If node type is unknown or validation fails

    Example:
        >>> node = create_node_from_dict({
        ...     "id": "summary",
        ...     "type": "llm_chain",
        ...     "data": {"modelGroup": "main", "messages": [{"role": "user", "content": "{{text}}"}]}
        ... })
        >>> isinstance(node, LLMChainNode)
        True
    """
    if not isinstance(node_data, dict):
        raise ValueError(f"Node must be an object, got {type(node_data).__name__}")
    data = node_data.get("data") or {}
    if not isinstance(data, dict):
        raise ValueError(f"Node data must be an object, got {type(data).__name__}")

    node_type = node_data.get("type")

    node_class = NODE_CLASSES.get(node_type)
    if not node_class:
        raise ValueError(
            f"Unknown node type: '{node_type}'. "
            f"Valid types: {list(NODE_CLASSES.keys())}"
        )

    flat = _snake_keys(data)
    flat.update({k: v for k, v in node_data.items() if k not in ("data", "position")})

    try:
        node = node_class(**flat)
    except Exception as e:
        raise ValueError(f"Failed to create {node_type} node: {e}")

    node.validate_node()

    return node
