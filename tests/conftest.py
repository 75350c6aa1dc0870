from __future__ import annotations

import json
import shlex
import subprocess
import sys
import textwrap
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Sequence

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from rgr.config import OrchestratorConfig  # noqa: E402
from rgr.models.llm_client import GenerationRequest, LLMClient  # noqa: E402
from rgr.tools.vcs import GitRepository  # noqa: E402

CHECK_SCRIPT = textwrap.dedent(
    """
    import pathlib
    import sys

    root = pathlib.Path(__file__).resolve().parent
    failing = [
        path.name
        for path in sorted((root / "checks").glob("*.txt"))
        if path.read_text(encoding="utf-8").strip() != "ok"
    ]
    print("checks failing:", ", ".join(failing) or "none")
    sys.exit(1 if failing else 0)
    """
).lstrip()


def run_git(root: Path, *args: str) -> str:
    result = subprocess.run(["git", *args], cwd=root, check=True, capture_output=True, text=True)
    return result.stdout


def init_git(root: Path) -> None:
    run_git(root, "init")
    run_git(root, "config", "user.email", "agent@example.com")
    run_git(root, "config", "user.name", "Test Agent")


class ScriptedClient(LLMClient):
    """Backend double that replays canned answers and records every prompt.

    Entries may be strings (returned verbatim), mappings (JSON-encoded) or
    exceptions (raised from the transport).  The last entry repeats once the
    script runs out.
    """

    def __init__(self, responses: Sequence[Any], *, max_attempts: int = 1) -> None:
        super().__init__("scripted", max_attempts=max_attempts, retry_delay=0.0)
        self._responses = list(responses)
        self.requests: list[Dict[str, Any]] = []

    def build_payload(self, request: GenerationRequest) -> Dict[str, Any]:
        return {"role": request.role, "system": request.system_prompt, "prompt": request.prompt}

    def _raw_invoke(self, payload: Dict[str, Any]) -> str:
        self.requests.append(payload)
        item = self._responses.pop(0) if len(self._responses) > 1 else self._responses[0]
        if isinstance(item, Exception):
            raise item
        if isinstance(item, str):
            return item
        return json.dumps(item)

    @property
    def calls(self) -> int:
        return len(self.requests)


def proposal(*files: tuple[str, str, str], message: str | None = None) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "files": [{"path": path, "mode": mode, "content": content} for path, mode, content in files]
    }
    if message is not None:
        payload["commit_message"] = message
    return payload


@dataclass(slots=True)
class CheckProject:
    """Project whose suite fails while any ``checks/*.txt`` file is not ``ok``."""

    root: Path
    config: OrchestratorConfig

    def git(self, *args: str) -> str:
        return run_git(self.root, *args)

    def head(self) -> str:
        return self.git("rev-parse", "HEAD").strip()

    def subjects(self) -> list[str]:
        return [line for line in self.git("log", "--format=%s").splitlines() if line]

    def branches(self) -> list[str]:
        output = self.git("branch", "--format=%(refname:short)")
        return [line.strip() for line in output.splitlines() if line.strip()]


@pytest.fixture()
def git_repo(tmp_path: Path) -> GitRepository:
    """Repository with a single committed ``tracked.txt``."""

    root = tmp_path / "repo"
    root.mkdir()
    init_git(root)
    (root / "tracked.txt").write_text("alpha\n", encoding="utf-8")
    run_git(root, "add", "tracked.txt")
    run_git(root, "commit", "-m", "init")
    return GitRepository(root)


@pytest.fixture()
def check_project(tmp_path: Path) -> CheckProject:
    root = tmp_path / "project"
    (root / "checks").mkdir(parents=True)
    (root / "run_checks.py").write_text(CHECK_SCRIPT, encoding="utf-8")
    (root / "checks" / "base.txt").write_text("ok\n", encoding="utf-8")
    (root / "README.md").write_text("# Check project\n", encoding="utf-8")
    init_git(root)
    run_git(root, "add", "--all")
    run_git(root, "commit", "-m", "initial project")

    config = replace(
        OrchestratorConfig.example(),
        test_cmd=f"{shlex.quote(sys.executable)} run_checks.py",
        context_globs=["run_checks.py", "checks/*.txt", "src/**/*", "README*"],
    )
    return CheckProject(root=root, config=config)

