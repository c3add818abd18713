"""
Provider Registry

Maps provider names used by model_provider nodes to ModelProvider classes.

ProviderRegistry builds a fresh instance on every call. ProviderPool reuses
one client per (provider, model, credentials, base_url) for the lifetime of
a single run: SDK clients hold connections bound to the event loop they were
first used on, and each worker job runs on its own loop.

Example:
    provider = ProviderRegistry.create_provider("openai", "gpt-4o-mini", api_key="sk-...")
    result = await provider.generate([{"role": "user", "content": "Hi"}])
"""

import hashlib
import logging
from typing import Any, Dict, List, Optional, Type

from .base import ModelProvider
from .openai_provider import OpenAIProvider, LMStudioProvider
from .anthropic_provider import AnthropicProvider
from .ollama_provider import OllamaProvider
from ..core.exceptions import NodeConfigError

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Central registry of provider backends."""

    _REGISTRY: Dict[str, Type[ModelProvider]] = {
        "openai": OpenAIProvider,
        "lmstudio": LMStudioProvider,
        "anthropic": AnthropicProvider,
        "ollama": OllamaProvider,
    }

    @classmethod
    def create_provider(
        cls,
        provider: str,
        model: str,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
    ) -> ModelProvider:
        """
        Create a new provider instance.

        Raises:
            NodeConfigError: If the provider name is not registered or the
                model name is empty
        """
        if provider not in cls._REGISTRY:
            raise NodeConfigError(
                f"Unknown provider: '{provider}'. "
                f"Available providers: {', '.join(cls.list_providers())}"
            )
        if not model:
            raise NodeConfigError(f"Provider '{provider}' needs a model name")

        logger.info(f"Creating provider {provider} for model {model}")
        return cls._REGISTRY[provider](model, api_key=api_key, base_url=base_url)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> ModelProvider:
        """Build from a rendered model_provider configuration."""
        return cls.create_provider(*_config_args(config))

    @classmethod
    def list_providers(cls) -> List[str]:
        return sorted(cls._REGISTRY.keys())

    @classmethod
    def register(cls, name: str, provider_class: Type[ModelProvider]) -> None:
        cls._REGISTRY[name] = provider_class


class ProviderPool:
    """
    Provider instances shared by the llm_chain nodes of one run.

    Callable with a rendered model_provider configuration, so it can be
    passed as NodeExecutor's provider_factory.
    """

    def __init__(self):
        self._providers: Dict[str, ModelProvider] = {}

    def __call__(self, config: Dict[str, Any]) -> ModelProvider:
        provider, model, api_key, base_url = _config_args(config)
        # Never keep raw keys in cache keys
        key_digest = hashlib.sha256((api_key or "").encode()).hexdigest()[:16]
        cache_key = f"{provider}:{model}:{base_url or ''}:{key_digest}"
        if cache_key not in self._providers:
            self._providers[cache_key] = ProviderRegistry.create_provider(
                provider, model, api_key=api_key, base_url=base_url
            )
        return self._providers[cache_key]

    def __len__(self) -> int:
        return len(self._providers)


def _config_args(config: Dict[str, Any]):
    return (
        config.get("provider") or "openai",
        config.get("model"),
        config.get("api_key") or None,
        config.get("base_url") or None,
    )
