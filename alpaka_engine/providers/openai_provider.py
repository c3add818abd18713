"""
OpenAI Model Provider

Implements ModelProvider for the OpenAI chat completions API. Also serves
OpenAI-compatible local servers (LM Studio) through base_url.
"""

import logging
import os
from typing import Any, AsyncIterator, Dict, List, Optional

import openai

from .base import GenerationResult, Message, ModelProvider, StreamChunk, clean_params
from ..core.exceptions import NodeConfigError, ProviderError

logger = logging.getLogger(__name__)

LMSTUDIO_DEFAULT_URL = "http://localhost:1234/v1"


class OpenAIProvider(ModelProvider):
    """OpenAI provider implementation."""

    name = "openai"

    def __init__(self, model_name: str, api_key: Optional[str] = None, base_url: Optional[str] = None):
        """
        Initialize OpenAI provider.

        Args:
            model_name: Model to use (e.g., "gpt-4o-mini")
            api_key: Optional OpenAI API key (or use OPENAI_API_KEY env var)
            base_url: Optional API root for OpenAI-compatible servers
        """
        super().__init__(model_name)
        api_key = api_key or os.getenv("OPENAI_API_KEY")
        if not api_key and not base_url:
            raise NodeConfigError(
                "OPENAI_API_KEY environment variable is required. "
                "Get API key at: https://platform.openai.com/api-keys"
            )

        # Local servers accept any key
        self.client = openai.AsyncOpenAI(api_key=api_key or "not-needed", base_url=base_url)
        logger.info(f"{type(self).__name__} initialized with model: {model_name}")

    def _request(self, messages: List[Message], params: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "model": self.model_name,
            "messages": messages,
            **clean_params({
                "temperature": params.get("temperature"),
                "top_p": params.get("top_p"),
                "max_tokens": params.get("max_tokens"),
            }),
        }

    async def list_models(self) -> List[str]:
        try:
            page = await self.client.models.list()
        except openai.OpenAIError as e:
            raise ProviderError(f"Failed to list models: {e}", provider=self.name)
        return sorted(model.id for model in page.data)

    async def generate(self, messages: List[Message], **params: Any) -> GenerationResult:
        try:
            response = await self.client.chat.completions.create(**self._request(messages, params))
        except openai.OpenAIError as e:
            raise ProviderError(f"{self.name} request failed: {e}", provider=self.name)

        choice = response.choices[0]
        usage = {}
        if response.usage:
            usage = {
                "input_tokens": response.usage.prompt_tokens,
                "output_tokens": response.usage.completion_tokens,
            }

        return GenerationResult(
            text=choice.message.content or "",
            model=response.model or self.model_name,
            usage=usage,
            finish_reason=choice.finish_reason,
        )

    async def stream(self, messages: List[Message], **params: Any) -> AsyncIterator[StreamChunk]:
        request = self._request(messages, params)
        request["stream"] = True
        request["stream_options"] = {"include_usage": True}

        accumulated = ""
        usage: Optional[Dict[str, int]] = None
        try:
            response = await self.client.chat.completions.create(**request)
            async for chunk in response:
                if chunk.usage:
                    usage = {
                        "input_tokens": chunk.usage.prompt_tokens,
                        "output_tokens": chunk.usage.completion_tokens,
                    }
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content or ""
                if delta:
                    accumulated += delta
                    yield StreamChunk(delta=delta, accumulated=accumulated)
        except openai.OpenAIError as e:
            raise ProviderError(f"{self.name} stream failed: {e}", provider=self.name)

        yield StreamChunk(delta="", accumulated=accumulated, done=True, usage=usage)


class LMStudioProvider(OpenAIProvider):
    """LM Studio local server (OpenAI-compatible API)."""

    name = "lmstudio"

    def __init__(self, model_name: str, api_key: Optional[str] = None, base_url: Optional[str] = None):
        super().__init__(
            model_name,
            api_key=api_key,
            base_url=base_url or os.getenv("LMSTUDIO_BASE_URL", LMSTUDIO_DEFAULT_URL)
        )
