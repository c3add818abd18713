"""
Ollama Model Provider

Talks to a local Ollama server over its HTTP API with httpx.
"""

import json
import logging
import os
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from .base import GenerationResult, Message, ModelProvider, StreamChunk, clean_params
from ..core.exceptions import ProviderError

logger = logging.getLogger(__name__)

OLLAMA_DEFAULT_URL = "http://localhost:11434"


class OllamaProvider(ModelProvider):
    """Ollama provider implementation (/api/tags, /api/chat)."""

    name = "ollama"

    def __init__(
        self,
        model_name: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(model_name)
        self.base_url = (base_url or os.getenv("OLLAMA_BASE_URL", OLLAMA_DEFAULT_URL)).rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport)

    def _request(self, messages: List[Message], params: Dict[str, Any], stream: bool) -> Dict[str, Any]:
        options = clean_params({
            "temperature": params.get("temperature"),
            "top_p": params.get("top_p"),
            "num_predict": params.get("max_tokens"),
        })
        request = {"model": self.model_name, "messages": messages, "stream": stream}
        if options:
            request["options"] = options
        return request

    @staticmethod
    def _usage(body: Dict[str, Any]) -> Dict[str, int]:
        return {
            "input_tokens": body.get("prompt_eval_count", 0),
            "output_tokens": body.get("eval_count", 0),
        }

    async def list_models(self) -> List[str]:
        try:
            async with self._client() as client:
                response = await client.get("/api/tags")
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise ProviderError(f"Failed to list models: {e}", provider=self.name)
        return sorted(model["name"] for model in response.json().get("models", []))

    async def generate(self, messages: List[Message], **params: Any) -> GenerationResult:
        try:
            async with self._client() as client:
                response = await client.post("/api/chat", json=self._request(messages, params, stream=False))
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise ProviderError(f"ollama request failed: {e}", provider=self.name)

        body = response.json()
        return GenerationResult(
            text=body.get("message", {}).get("content", ""),
            model=body.get("model", self.model_name),
            usage=self._usage(body),
            finish_reason=body.get("done_reason"),
        )

    async def stream(self, messages: List[Message], **params: Any) -> AsyncIterator[StreamChunk]:
        accumulated = ""
        usage: Optional[Dict[str, int]] = None
        try:
            async with self._client() as client:
                async with client.stream("POST", "/api/chat", json=self._request(messages, params, stream=True)) as response:
                    response.raise_for_status()
                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue
                        body = json.loads(line)
                        delta = body.get("message", {}).get("content", "")
                        if delta:
                            accumulated += delta
                            yield StreamChunk(delta=delta, accumulated=accumulated)
                        if body.get("done"):
                            usage = self._usage(body)
        except httpx.HTTPError as e:
            raise ProviderError(f"ollama stream failed: {e}", provider=self.name)

        yield StreamChunk(delta="", accumulated=accumulated, done=True, usage=usage)
