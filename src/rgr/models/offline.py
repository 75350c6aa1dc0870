"""Deterministic backend for dry runs without network access or credentials."""

from __future__ import annotations

import json
from typing import Any, Dict

from .llm_client import GenerationRequest, LLMClient

__all__ = ["MOCK_LOG_PATH", "OfflineClient"]

MOCK_LOG_PATH = "red-green-refactor-mock.log"

_MOCK_LINES = {
    "tester": "# TODO: add a failing test\n",
    "implementor": "# TODO: implement feature to make tests pass\n",
}
_DEFAULT_LINE = "# TODO: refactor without changing behavior\n"


class OfflineClient(LLMClient):
    """Append a role-specific line to :data:`MOCK_LOG_PATH` on every turn.

    The proposal never touches tests, so a real suite keeps its state and the
    tester turn is rejected. It exists to exercise wiring, checkpoints and
    configuration end to end.
    """

    def __init__(self, model: str = "mock") -> None:
        super().__init__(model=model, max_attempts=1, retry_delay=0.0)

    def build_payload(self, request: GenerationRequest) -> Dict[str, Any]:
        return {"role": request.role, "model": self.model}

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        role = str(payload.get("role", ""))
        proposal = {
            "files": [
                {
                    "path": MOCK_LOG_PATH,
                    "mode": "append",
                    "content": _MOCK_LINES.get(role, _DEFAULT_LINE),
                }
            ],
            "commit_message": f"chore({role}): mock patch",
        }
        return json.dumps(proposal)
