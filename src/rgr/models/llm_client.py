"""Client base class shared by all generation backends."""

from __future__ import annotations

import http.client
import json
import logging
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

__all__ = [
    "GenerationRequest",
    "LLMClient",
    "LLMClientError",
    "LLMResponseFormatError",
    "LLMRetryError",
    "LLMTransportError",
    "Transport",
    "post_json",
]

LOGGER = logging.getLogger(__name__)

Transport = Callable[[Dict[str, Any]], str]


class LLMClientError(RuntimeError):
    """Base error raised for generation backend failures."""


class LLMTransportError(LLMClientError):
    """Raised when the underlying transport fails to return a response."""


class LLMResponseFormatError(LLMClientError):
    """Raised when the backend answers with an envelope we cannot read."""


class LLMRetryError(LLMClientError):
    """Raised after exhausting retries due to repeated transport failures."""


@dataclass(slots=True)
class GenerationRequest:
    """One role turn: the rendered prompts plus bookkeeping metadata."""

    role: str
    prompt: str
    system_prompt: Optional[str] = None
    temperature: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class LLMClient:
    """Turn a :class:`GenerationRequest` into the backend's raw text answer.

    Subclasses build the wire payload and perform the call; this class owns
    the retry loop.  Transport failures are retried up to ``max_attempts``
    times with ``retry_delay`` seconds between tries.  Malformed envelopes
    are not retried.  The returned text is not interpreted here; turning it
    into a patch proposal is the caller's job.
    """

    def __init__(self, model: str, *, max_attempts: int = 3, retry_delay: float = 0.5) -> None:
        self._model = model
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay

    @property
    def model(self) -> str:
        """Return the model name configured for this client."""
        return self._model

    def generate(self, request: GenerationRequest) -> str:
        """Invoke the backend and return the text it produced."""
        attempts = self._max_attempts
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            payload = self.build_payload(request)
            try:
                raw = self._raw_invoke(payload)
            except LLMTransportError as error:
                last_error = error
                LOGGER.warning(
                    "%s transport failure for %s (attempt %d/%d): %s",
                    type(self).__name__,
                    request.role,
                    attempt,
                    attempts,
                    error,
                )
                if attempt >= attempts:
                    break
                time.sleep(self._retry_delay)
                continue

            if not raw or not raw.strip():
                raise LLMResponseFormatError(f"{self._model} returned no text for the {request.role} turn.")
            return raw

        raise LLMRetryError(
            f"{self._model} did not respond after {attempts} attempt(s) for the {request.role} turn"
        ) from last_error

    def build_payload(self, request: GenerationRequest) -> Dict[str, Any]:
        """Render the wire payload for ``request``. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement build_payload().")

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        """Perform the transport call. Subclasses must implement."""
        raise NotImplementedError("Subclasses must implement _raw_invoke().")


def post_json(
    url: str,
    payload: Mapping[str, Any],
    *,
    headers: Mapping[str, str],
    timeout: float,
    label: str,
) -> str:
    """POST ``payload`` as JSON and return the decoded response body."""
    data = json.dumps(payload).encode("utf-8")
    request = urllib.request.Request(
        url,
        data=data,
        headers={"Content-Type": "application/json", **headers},
        method="POST",
    )
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read()
            status = getattr(response, "status", 200)
    except TimeoutError as error:  # pragma: no cover - network-dependent
        raise LLMTransportError(f"{label} request timed out after {timeout}s.") from error
    except urllib.error.HTTPError as error:  # pragma: no cover - network-dependent
        message = error.read().decode("utf-8", errors="ignore")
        raise LLMTransportError(f"{label} HTTP {error.code}: {message[:500]}") from error
    except urllib.error.URLError as error:  # pragma: no cover - network-dependent
        raise LLMTransportError(f"Failed to reach {label} endpoint: {error.reason}") from error
    except (http.client.HTTPException, OSError) as error:
        raise LLMTransportError(f"{label} connection failed: {error!r}") from error

    if status >= 400:
        raise LLMTransportError(f"{label} returned unexpected HTTP status {status}")
    return raw.decode("utf-8", errors="replace")
