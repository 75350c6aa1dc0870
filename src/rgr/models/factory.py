"""Build the client a role's provider configuration asks for."""

from __future__ import annotations

from ..config import ConfigurationError, ProviderConfig, ProviderKind
from .gemini import GeminiClient
from .llm_client import LLMClient, Transport
from .offline import OfflineClient
from .openai import OpenAIClient

__all__ = ["build_client"]


def build_client(provider: ProviderConfig, *, transport: Transport | None = None) -> LLMClient:
    """Return a ready client or raise :class:`ConfigurationError`.

    Missing credentials are reported here, before any cycle starts.
    """
    kind = ProviderKind(provider.kind)
    try:
        if kind is ProviderKind.MOCK:
            return OfflineClient(model=provider.model)
        if kind is ProviderKind.OPENAI:
            return OpenAIClient(
                model=provider.model,
                api_key_env=provider.api_key_env,
                base_url=provider.base_url,
                organization=provider.organization,
                api_key_header=provider.api_key_header,
                api_key_prefix=provider.api_key_prefix,
                transport=transport,
                timeout=provider.timeout,
                temperature=provider.temperature,
                max_attempts=provider.max_attempts,
                retry_delay=provider.retry_delay,
            )
        return GeminiClient(
            model=provider.model,
            api_key_env=provider.api_key_env,
            base_url=provider.base_url,
            transport=transport,
            timeout=provider.timeout,
            temperature=provider.temperature,
            max_attempts=provider.max_attempts,
            retry_delay=provider.retry_delay,
        )
    except ValueError as error:
        raise ConfigurationError(f"{kind.value} provider for model {provider.model!r}: {error}") from error
