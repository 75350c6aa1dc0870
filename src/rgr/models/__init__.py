"""Convenience exports for the generation backend clients."""

from .factory import build_client
from .gemini import GeminiClient
from .llm_client import (
    GenerationRequest,
    LLMClient,
    LLMClientError,
    LLMResponseFormatError,
    LLMRetryError,
    LLMTransportError,
)
from .offline import OfflineClient
from .openai import OpenAIClient

__all__ = [
    "GeminiClient",
    "GenerationRequest",
    "LLMClient",
    "LLMClientError",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
    "OfflineClient",
    "OpenAIClient",
    "build_client",
]
