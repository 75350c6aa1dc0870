"""Client for OpenAI-compatible chat completion endpoints."""

from __future__ import annotations

import json
import os
from typing import Any, Dict, Optional

from .llm_client import (
    GenerationRequest,
    LLMClient,
    LLMResponseFormatError,
    LLMTransportError,
    Transport,
    post_json,
)

__all__ = ["DEFAULT_OPENAI_BASE_URL", "OpenAIClient"]

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"


class OpenAIClient(LLMClient):
    """Thin adapter around ``POST {base_url}/chat/completions``."""

    def __init__(
        self,
        *,
        model: str,
        api_key: Optional[str] = None,
        api_key_env: Optional[str] = None,
        base_url: Optional[str] = None,
        organization: Optional[str] = None,
        api_key_header: Optional[str] = None,
        api_key_prefix: Optional[str] = None,
        transport: Optional[Transport] = None,
        timeout: float = 120.0,
        temperature: float = 0.2,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        super().__init__(model=model, max_attempts=max_attempts, retry_delay=retry_delay)
        self._api_key = api_key or os.getenv(api_key_env or "OPENAI_API_KEY")
        self._base_url = (base_url or DEFAULT_OPENAI_BASE_URL).rstrip("/")
        self._organization = organization
        self._api_key_header = api_key_header or "Authorization"
        self._api_key_prefix = "Bearer " if api_key_prefix is None else api_key_prefix
        self._timeout = timeout
        self._temperature = temperature
        self._transport = transport or self._http_transport

        if transport is None and not self._api_key:
            raise ValueError(
                f"An API key is required; set {api_key_env or 'OPENAI_API_KEY'} in the environment."
            )

    @property
    def endpoint(self) -> str:
        return f"{self._base_url}/chat/completions"

    def build_payload(self, request: GenerationRequest) -> Dict[str, Any]:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})
        temperature = self._temperature if request.temperature is None else request.temperature
        return {"model": self.model, "messages": messages, "temperature": temperature}

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        try:
            raw_response = self._transport(payload)
        except LLMTransportError:
            raise
        except Exception as error:
            raise LLMTransportError(f"Transport rejected the request: {error!r}") from error
        return self._extract_message_text(raw_response)

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        headers = {self._api_key_header: f"{self._api_key_prefix}{self._api_key}"}
        if self._organization:
            headers["OpenAI-Organization"] = self._organization
        return post_json(self.endpoint, payload, headers=headers, timeout=self._timeout, label="OpenAI")

    @staticmethod
    def _extract_message_text(raw_response: str) -> str:
        """Return ``choices[0].message.content`` from a chat completion body."""
        try:
            data = json.loads(raw_response)
        except json.JSONDecodeError as error:
            raise LLMResponseFormatError("OpenAI response body is not JSON.") from error

        choices = data.get("choices") if isinstance(data, dict) else None
        if not isinstance(choices, list) or not choices:
            raise LLMResponseFormatError("OpenAI response contained no choices.")
        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, list):
            # Some compatible servers return content as a list of typed parts.
            content = "".join(
                part.get("text", "") for part in content if isinstance(part, dict)
            )
        if not isinstance(content, str) or not content.strip():
            raise LLMResponseFormatError("OpenAI response message had no text content.")
        return content
