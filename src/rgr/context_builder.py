"""Collect a bounded snapshot of the project and package it into prompts."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from . import prompts
from .config import DEFAULT_CONTEXT_GLOBS, DEFAULT_MAX_CONTEXT_BYTES, OrchestratorConfig, RoleConfig
from .phases import Phase

LOGGER = logging.getLogger(__name__)

FILE_HEADER = "\n===== FILE: {path} =====\n"

EXCLUDED_DIRS = frozenset(
    {
        ".git",
        "target",
        "node_modules",
        "__pycache__",
        ".pytest_cache",
        ".mypy_cache",
        ".ruff_cache",
        ".venv",
        "venv",
        ".idea",
        ".vscode",
    }
)


@dataclass(frozen=True, slots=True)
class ContextFile:
    """One file as it appears in the snapshot (possibly cut short)."""

    path: str
    content: str


@dataclass(slots=True)
class ProjectContext:
    """Concatenated file blocks plus what was left out."""

    files: tuple[ContextFile, ...] = ()
    text: str = ""
    max_bytes: int = 0
    truncated: bool = False
    skipped: tuple[str, ...] = ()

    @property
    def size(self) -> int:
        return len(self.text.encode("utf-8"))

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(item.path for item in self.files)


@dataclass(slots=True)
class ContextPackage:
    """Container for the system and user prompts supplied to a backend."""

    system_prompt: str
    user_prompt: str
    metadata: dict[str, Any] = field(default_factory=dict)
    context: ProjectContext | None = None


def collect_context(
    project_root: Path | str,
    patterns: Sequence[str] = DEFAULT_CONTEXT_GLOBS,
    max_bytes: int = DEFAULT_MAX_CONTEXT_BYTES,
) -> ProjectContext:
    """Snapshot the files matching ``patterns`` in sorted path order.

    Each file contributes ``FILE_HEADER`` followed by its text.  Files are
    added whole until the next one would exceed ``max_bytes``; that file and
    everything after it is dropped.  Only a first file that cannot fit on its
    own is cut, at a UTF-8 character boundary, so the snapshot is never empty
    while something matched.  Binary and non-UTF-8 files are skipped.
    """
    root = Path(project_root).resolve()
    if max_bytes <= 0:
        return ProjectContext(max_bytes=max(max_bytes, 0), truncated=bool(_matching_files(root, patterns)))

    blocks: list[str] = []
    files: list[ContextFile] = []
    skipped: list[str] = []
    used = 0
    truncated = False

    for relative in _matching_files(root, patterns):
        content = _read_text(root / relative)
        if content is None:
            skipped.append(relative)
            continue
        header = FILE_HEADER.format(path=relative)
        encoded = f"{header}{content}".encode("utf-8")
        remaining = max_bytes - used
        if len(encoded) <= remaining:
            blocks.append(f"{header}{content}")
            files.append(ContextFile(path=relative, content=content))
            used += len(encoded)
            continue

        truncated = True
        if not blocks:
            cut = encoded[:remaining].decode("utf-8", errors="ignore")
            blocks.append(cut)
            files.append(ContextFile(path=relative, content=cut[len(header):] if len(cut) > len(header) else ""))
        break

    if skipped:
        LOGGER.debug("Skipped %d unreadable or binary file(s) while collecting context", len(skipped))
    return ProjectContext(
        files=tuple(files),
        text="".join(blocks),
        max_bytes=max_bytes,
        truncated=truncated,
        skipped=tuple(skipped),
    )


def _matching_files(root: Path, patterns: Sequence[str]) -> list[str]:
    matches: set[str] = set()
    for pattern in patterns:
        text = (pattern or "").strip().replace("\\", "/").lstrip("/")
        while text.startswith("./"):
            text = text[2:]
        if not text:
            continue
        for location in root.glob(text):
            try:
                location.resolve().relative_to(root)
            except (OSError, ValueError):
                continue
            if not location.is_file():
                continue
            relative = location.relative_to(root)
            if any(part in EXCLUDED_DIRS or part == ".." for part in relative.parts[:-1]):
                continue
            matches.add(relative.as_posix())
    return sorted(matches)


def _read_text(path: Path) -> str | None:
    try:
        data = path.read_bytes()
    except OSError as error:
        LOGGER.debug("Unable to read %s: %s", path, error)
        return None
    if b"\0" in data:
        return None
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return None


class ContextBuilder:
    """Assemble the system and user prompts for one role turn."""

    def __init__(
        self,
        project_root: Path | str,
        *,
        patterns: Sequence[str] = DEFAULT_CONTEXT_GLOBS,
        max_bytes: int = DEFAULT_MAX_CONTEXT_BYTES,
    ) -> None:
        self.project_root = Path(project_root).resolve()
        self.patterns = tuple(patterns)
        self.max_bytes = max_bytes

    @classmethod
    def from_config(cls, config: OrchestratorConfig, project_root: Path | str) -> "ContextBuilder":
        return cls(project_root, patterns=config.context_globs, max_bytes=config.max_context_bytes)

    def collect(self) -> ProjectContext:
        return collect_context(self.project_root, self.patterns, self.max_bytes)

    def build(
        self,
        phase: Phase,
        role: RoleConfig,
        *,
        failure_output: str | None = None,
    ) -> ContextPackage:
        """Snapshot the project now and render the prompts for ``phase``."""
        context = self.collect()
        system_prompt = prompts.render_system_prompt(role.system_prompt or prompts.DEFAULT_ROLE_PROMPTS[phase])
        user_prompt = prompts.render_user_prompt(
            phase,
            context_text=context.text,
            failure_output=failure_output,
        )
        metadata = {
            "phase": phase.value,
            "context_files": list(context.paths),
            "context_bytes": context.size,
            "context_truncated": context.truncated,
        }
        if context.skipped:
            metadata["context_skipped"] = list(context.skipped)
        if failure_output:
            metadata["failure_output_chars"] = len(failure_output)
        return ContextPackage(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            metadata=metadata,
            context=context,
        )


__all__ = [
    "EXCLUDED_DIRS",
    "FILE_HEADER",
    "ContextBuilder",
    "ContextFile",
    "ContextPackage",
    "ProjectContext",
    "collect_context",
]
