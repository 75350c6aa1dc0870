"""Client for the Gemini ``generateContent`` REST endpoint."""

from __future__ import annotations

import json
import os
from typing import Any, Dict, Optional
from urllib.parse import quote

from .llm_client import (
    GenerationRequest,
    LLMClient,
    LLMResponseFormatError,
    LLMTransportError,
    Transport,
    post_json,
)

__all__ = ["DEFAULT_GEMINI_BASE_URL", "GeminiClient"]

DEFAULT_GEMINI_BASE_URL = "https://generativelanguage.googleapis.com"


class GeminiClient(LLMClient):
    """Send the system and user prompts as two text parts of one user turn."""

    def __init__(
        self,
        *,
        model: str,
        api_key: Optional[str] = None,
        api_key_env: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[Transport] = None,
        timeout: float = 120.0,
        temperature: float = 0.2,
        max_attempts: int = 3,
        retry_delay: float = 0.5,
    ) -> None:
        super().__init__(model=model, max_attempts=max_attempts, retry_delay=retry_delay)
        self._api_key = api_key or os.getenv(api_key_env or "GEMINI_API_KEY")
        self._base_url = (base_url or DEFAULT_GEMINI_BASE_URL).rstrip("/")
        self._timeout = timeout
        self._temperature = temperature
        self._transport = transport or self._http_transport

        if transport is None and not self._api_key:
            raise ValueError(
                f"An API key is required; set {api_key_env or 'GEMINI_API_KEY'} in the environment."
            )

    @property
    def endpoint(self) -> str:
        return f"{self._base_url}/v1beta/models/{quote(self.model, safe='-._')}:generateContent"

    def build_payload(self, request: GenerationRequest) -> Dict[str, Any]:
        parts = []
        if request.system_prompt:
            parts.append({"text": request.system_prompt})
        parts.append({"text": request.prompt})
        temperature = self._temperature if request.temperature is None else request.temperature
        return {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {"temperature": temperature},
        }

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        try:
            raw_response = self._transport(payload)
        except LLMTransportError:
            raise
        except Exception as error:
            raise LLMTransportError(f"Transport rejected the request: {error!r}") from error
        return self._extract_candidate_text(raw_response)

    def _http_transport(self, payload: Dict[str, Any]) -> str:
        url = f"{self.endpoint}?key={quote(self._api_key or '', safe='')}"
        return post_json(url, payload, headers={}, timeout=self._timeout, label="Gemini")

    @staticmethod
    def _extract_candidate_text(raw_response: str) -> str:
        """Return the first non-empty text part among the response candidates."""
        try:
            data = json.loads(raw_response)
        except json.JSONDecodeError as error:
            raise LLMResponseFormatError("Gemini response body is not JSON.") from error

        candidates = data.get("candidates") if isinstance(data, dict) else None
        for candidate in candidates or []:
            content = candidate.get("content") if isinstance(candidate, dict) else None
            parts = content.get("parts") if isinstance(content, dict) else None
            for part in parts or []:
                text = part.get("text") if isinstance(part, dict) else None
                if isinstance(text, str) and text.strip():
                    return text
        feedback = data.get("promptFeedback") if isinstance(data, dict) else None
        if feedback:
            raise LLMResponseFormatError(f"Gemini returned no candidates: {json.dumps(feedback)[:300]}")
        raise LLMResponseFormatError("Gemini response contained no text parts.")
