"""
Model providers - uniform list/generate/stream over LLM backends
"""

from .base import ModelProvider, StreamChunk, GenerationResult
from .registry import ProviderPool, ProviderRegistry

__all__ = ["ModelProvider", "StreamChunk", "GenerationResult", "ProviderPool", "ProviderRegistry"]
