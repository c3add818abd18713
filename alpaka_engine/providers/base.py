"""
Model Provider Abstract Interface

Defines the contract for all LLM providers (OpenAI, Anthropic, Ollama,
LM Studio). The engine only ever needs three capabilities:
1. list_models() - Models the backend can serve
2. generate() - One blocking completion for a message list
3. stream() - The same completion delivered incrementally
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional
import logging

logger = logging.getLogger(__name__)

Message = Dict[str, str]


@dataclass
class StreamChunk:
    """
    One increment of a streamed completion.

    `accumulated` is the full text so far. The last chunk has done=True and
    carries usage when the backend reports it.
    """
    delta: str
    accumulated: str
    done: bool = False
    usage: Optional[Dict[str, int]] = None


@dataclass
class GenerationResult:
    text: str
    model: str
    usage: Dict[str, int] = field(default_factory=dict)
    finish_reason: Optional[str] = None


class ModelProvider(ABC):
    """
    Abstract interface for LLM providers.

    `params` accepted by generate/stream: temperature, top_p, max_tokens.
    Providers ignore parameters that are None.
    """

    name = "base"

    def __init__(self, model_name: str):
        self.model_name = model_name

    @abstractmethod
    async def list_models(self) -> List[str]:
        """Model identifiers available from this backend."""
        pass

    @abstractmethod
    async def generate(self, messages: List[Message], **params: Any) -> GenerationResult:
        """
        Run one completion.

        Raises:
            ProviderError: If the backend call fails
        """
        pass

    @abstractmethod
    def stream(self, messages: List[Message], **params: Any) -> AsyncIterator[StreamChunk]:
        """Async iterator over StreamChunk, ending with a done=True chunk."""
        pass

    def get_model_name(self) -> str:
        return self.model_name

    def estimate_tokens(self, text: str) -> int:
        """
        Estimate token count for text.

        Default implementation: ~4 characters per token (rough approximation).
        """
        return len(text) // 4


def clean_params(params: Dict[str, Any]) -> Dict[str, Any]:
    """Drop unset generation parameters."""
    return {key: value for key, value in params.items() if value is not None}
