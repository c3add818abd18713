"""
Anthropic Model Provider

Implements ModelProvider for Anthropic Claude models (Messages API).
System messages are passed through the `system` parameter.
"""

import logging
import os
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import anthropic

from .base import GenerationResult, Message, ModelProvider, StreamChunk, clean_params
from ..core.exceptions import NodeConfigError, ProviderError

logger = logging.getLogger(__name__)

DEFAULT_MAX_TOKENS = 4096


def split_system(messages: List[Message]) -> Tuple[Optional[str], List[Message]]:
    """Separate system messages (joined) from the conversation."""
    system_parts = [m["content"] for m in messages if m.get("role") == "system"]
    conversation = [m for m in messages if m.get("role") != "system"]
    return ("\n\n".join(system_parts) if system_parts else None), conversation


class AnthropicProvider(ModelProvider):
    """Anthropic provider implementation."""

    name = "anthropic"

    def __init__(self, model_name: str, api_key: Optional[str] = None, base_url: Optional[str] = None):
        """
        Initialize Anthropic provider.

        Args:
            model_name: Model to use (e.g., "claude-sonnet-4-5")
            api_key: Optional Anthropic API key (or use ANTHROPIC_API_KEY env var)
        """
        super().__init__(model_name)
        api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        if not api_key:
            raise NodeConfigError(
                "ANTHROPIC_API_KEY environment variable is required. "
                "Get API key at: https://console.anthropic.com/"
            )

        self.client = anthropic.AsyncAnthropic(api_key=api_key, base_url=base_url)
        logger.info(f"AnthropicProvider initialized with model: {model_name}")

    def _request(self, messages: List[Message], params: Dict[str, Any]) -> Dict[str, Any]:
        system, conversation = split_system(messages)
        request = {
            "model": self.model_name,
            "messages": conversation,
            "max_tokens": params.get("max_tokens") or DEFAULT_MAX_TOKENS,
            **clean_params({
                "temperature": params.get("temperature"),
                "top_p": params.get("top_p"),
                "system": system,
            }),
        }
        return request

    async def list_models(self) -> List[str]:
        try:
            page = await self.client.models.list()
        except anthropic.AnthropicError as e:
            raise ProviderError(f"Failed to list models: {e}", provider=self.name)
        return sorted(model.id for model in page.data)

    async def generate(self, messages: List[Message], **params: Any) -> GenerationResult:
        try:
            response = await self.client.messages.create(**self._request(messages, params))
        except anthropic.AnthropicError as e:
            raise ProviderError(f"anthropic request failed: {e}", provider=self.name)

        text = "".join(block.text for block in response.content if getattr(block, "type", None) == "text")
        return GenerationResult(
            text=text,
            model=response.model or self.model_name,
            usage={
                "input_tokens": response.usage.input_tokens,
                "output_tokens": response.usage.output_tokens,
            },
            finish_reason=response.stop_reason,
        )

    async def stream(self, messages: List[Message], **params: Any) -> AsyncIterator[StreamChunk]:
        accumulated = ""
        try:
            async with self.client.messages.stream(**self._request(messages, params)) as stream:
                async for delta in stream.text_stream:
                    if delta:
                        accumulated += delta
                        yield StreamChunk(delta=delta, accumulated=accumulated)
                final = await stream.get_final_message()
        except anthropic.AnthropicError as e:
            raise ProviderError(f"anthropic stream failed: {e}", provider=self.name)

        yield StreamChunk(
            delta="",
            accumulated=accumulated,
            done=True,
            usage={
                "input_tokens": final.usage.input_tokens,
                "output_tokens": final.usage.output_tokens,
            },
        )
