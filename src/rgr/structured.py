"""Typed payloads that describe the file edits a generation backend proposes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

EditMode = Literal["rewrite", "append"]
EDIT_MODES: tuple[str, ...] = ("rewrite", "append")


@dataclass(slots=True)
class FileEdit:
    """Whole-file edit: ``rewrite`` replaces the content, ``append`` adds to the end."""

    path: str
    mode: EditMode
    content: str


@dataclass(slots=True)
class PatchProposal:
    """Complete response of one role turn."""

    files: list[FileEdit]
    commit_message: str | None = None
    notes: str | None = None

    @property
    def paths(self) -> tuple[str, ...]:
        return tuple(dict.fromkeys(edit.path for edit in self.files))

    def summary(self, fallback: str) -> str:
        """Return the first non-empty line of the commit message or ``fallback``."""
        for line in (self.commit_message or "").splitlines():
            text = line.strip()
            if text:
                return text
        return fallback

    def message_body(self) -> str:
        """Return whatever follows the summary line of the commit message."""
        lines = (self.commit_message or "").strip().splitlines()
        return "\n".join(lines[1:]).strip()


__all__ = ["EDIT_MODES", "EditMode", "FileEdit", "PatchProposal"]
