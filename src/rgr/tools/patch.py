"""Whole-file patch protocol: parse backend output, validate paths, apply edits.

Backends answer with one JSON object shaped like :class:`PatchProposal`.
Parsing is strict: the only tolerated decoration is surrounding whitespace or
a single Markdown code fence around the whole object.  Every path must stay
inside the project root, and application is staged so a proposal that names
an unusable target is rejected before any file is written.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Any, Mapping, Tuple

from pydantic import ValidationError
from pydantic.type_adapter import TypeAdapter

from ..structured import EDIT_MODES, FileEdit, PatchProposal

TELEMETRY_LOGGER = logging.getLogger("rgr.telemetry")
_PROPOSAL_ADAPTER = TypeAdapter(PatchProposal)
_FENCE_HEADER = re.compile(r"^```[A-Za-z0-9_+-]*[ \t]*\n")
_SEPARATORS = re.compile(r"[\\/]+")
_SNIPPET_LIMIT = 200


class ProtocolError(RuntimeError):
    """Raised when backend output is not a usable patch proposal."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


class PatchError(RuntimeError):
    """Raised when a validated proposal cannot be written to disk."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})


@dataclass(slots=True)
class PatchResult:
    """Outcome of applying a proposal to the project."""

    paths: Tuple[Path, ...]
    edits: int
    bytes_written: int


# ------------------------------------------------------------------ telemetry
def _serialise_event_value(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Path):
        return value.as_posix()
    if isinstance(value, (list, tuple, set)):
        return [_serialise_event_value(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): _serialise_event_value(child) for key, child in value.items()}
    return str(value)


def _emit_patch_event(event: str, **fields: Any) -> None:
    """Log one compact JSON line on the telemetry logger."""
    payload = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    for key, value in fields.items():
        payload[key] = _serialise_event_value(value)
    TELEMETRY_LOGGER.info(json.dumps(payload, separators=(",", ":"), ensure_ascii=True))


# ------------------------------------------------------------------- protocol
def parse_proposal(raw: str | None, *, project_root: Path | str) -> PatchProposal:
    """Decode raw backend text into a validated :class:`PatchProposal`."""
    text = (raw or "").strip().lstrip("\ufeff")
    if not text:
        raise ProtocolError("Backend returned an empty response.")

    text = _strip_code_fence(text)
    if not (text.startswith("{") and text.endswith("}")):
        raise ProtocolError(
            "Backend output must be a single JSON object with no surrounding prose.",
            details={"snippet": text[:_SNIPPET_LIMIT]},
        )
    try:
        data = json.loads(text)
    except json.JSONDecodeError as error:
        raise ProtocolError(
            f"Backend output is not valid JSON: {error.msg} (line {error.lineno}, column {error.colno})",
            details={"snippet": text[:_SNIPPET_LIMIT]},
        ) from error
    return validate_proposal(data, project_root=project_root)


def validate_proposal(data: Any, *, project_root: Path | str) -> PatchProposal:
    """Validate decoded JSON and normalise every edit path."""
    if not isinstance(data, Mapping):
        raise ProtocolError(f"Backend output must be a JSON object, got {type(data).__name__}.")
    try:
        proposal = _PROPOSAL_ADAPTER.validate_python(dict(data))
    except ValidationError as error:
        problems = [
            f"{'.'.join(str(part) for part in item.get('loc', ())) or '<root>'}: {item.get('msg', 'invalid')}"
            for item in error.errors()
        ]
        raise ProtocolError(
            "Patch proposal failed validation: " + "; ".join(problems),
            details={"errors": problems},
        ) from error

    if not proposal.files:
        raise ProtocolError("Patch proposal contains no file edits.")

    edits = [
        FileEdit(path=normalise_edit_path(edit.path, project_root), mode=edit.mode, content=edit.content)
        for edit in proposal.files
    ]
    commit_message = (proposal.commit_message or "").strip() or None
    return PatchProposal(files=edits, commit_message=commit_message, notes=proposal.notes)


def normalise_edit_path(raw: str, project_root: Path | str) -> str:
    """Return ``raw`` as a clean project-relative POSIX path or raise :class:`ProtocolError`."""
    candidate = raw.strip() if isinstance(raw, str) else ""
    if not candidate:
        raise ProtocolError("File edit path must be a non-empty string.")
    if "\0" in candidate:
        raise ProtocolError(f"File edit path contains a NUL byte: {candidate!r}")
    windows = PureWindowsPath(candidate)
    if PurePosixPath(candidate).is_absolute() or windows.is_absolute() or windows.drive:
        raise ProtocolError(f"Absolute paths are not permitted: {candidate}")

    segments = [segment for segment in _SEPARATORS.split(candidate) if segment not in ("", ".")]
    if any(segment == ".." for segment in segments):
        raise ProtocolError(f"Path escaping detected: {candidate}")
    if not segments:
        raise ProtocolError(f"Path names the project root itself: {candidate}")
    if segments[0].lower() == ".git":
        raise ProtocolError(f"Edits may not target the .git directory: {candidate}")

    relative = PurePosixPath(*segments)
    root = Path(project_root).resolve()
    resolved = (root / relative).resolve()
    if resolved == root or root not in resolved.parents:
        raise ProtocolError(f"Path resolves outside the project root: {candidate}")
    return relative.as_posix()


def _strip_code_fence(payload: str) -> str:
    """Remove one Markdown fence that wraps the whole payload."""
    if not payload.startswith("```") or not payload.endswith("```") or len(payload) < 6:
        return payload
    header = _FENCE_HEADER.match(payload)
    if not header:
        return payload
    return payload[header.end() : -3].strip()


# ---------------------------------------------------------------- application
def apply_patch(project_root: Path | str, proposal: PatchProposal) -> PatchResult:
    """Write every edit of ``proposal`` in order.

    All targets are checked first; a single unusable target rejects the whole
    proposal with nothing written.  An I/O failure part-way through raises
    :class:`PatchError` with the already-applied paths in ``details`` so the
    caller can restore its checkpoint.
    """
    root = Path(project_root).resolve()
    if not proposal.files:
        raise PatchError("Patch proposal contains no file edits.")

    staged: list[tuple[FileEdit, Path, bytes]] = []
    for edit in proposal.files:
        target, data = _stage_edit(root, edit)
        staged.append((edit, target, data))

    applied: list[str] = []
    written = 0
    for edit, target, data in staged:
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            if edit.mode == "rewrite":
                target.write_bytes(data)
            else:
                with target.open("ab") as handle:
                    handle.write(data)
        except OSError as error:
            _emit_patch_event("patch_apply_failed", path=edit.path, applied=applied, error=str(error))
            raise PatchError(
                f"Failed to {edit.mode} {edit.path}: {error}",
                details={"path": edit.path, "applied": list(applied)},
            ) from error
        applied.append(edit.path)
        written += len(data)

    paths = tuple(Path(path) for path in dict.fromkeys(applied))
    _emit_patch_event("patch_apply_succeeded", paths=paths, edits=len(staged), bytes=written)
    return PatchResult(paths=paths, edits=len(staged), bytes_written=written)


def _stage_edit(root: Path, edit: FileEdit) -> tuple[Path, bytes]:
    try:
        relative = normalise_edit_path(edit.path, root)
    except ProtocolError as error:
        _emit_patch_event("patch_validation_failed", path=edit.path, reason=str(error))
        raise PatchError(str(error), details={"path": edit.path}) from error
    if edit.mode not in EDIT_MODES:
        raise PatchError(f"Unsupported edit mode {edit.mode!r} for {relative}", details={"path": relative})

    target = root / relative
    if target.is_dir():
        raise PatchError(f"Edit target is an existing directory: {relative}", details={"path": relative})
    for ancestor in PurePosixPath(relative).parents:
        if ancestor == PurePosixPath("."):
            continue
        location = root / ancestor
        if location.exists() and not location.is_dir():
            raise PatchError(
                f"Cannot create {relative}: {ancestor.as_posix()} is a file",
                details={"path": relative},
            )
    try:
        data = edit.content.encode("utf-8")
    except UnicodeEncodeError as error:
        raise PatchError(f"Content for {relative} is not encodable as UTF-8", details={"path": relative}) from error
    return target, data


__all__ = [
    "PatchError",
    "PatchResult",
    "ProtocolError",
    "apply_patch",
    "normalise_edit_path",
    "parse_proposal",
    "validate_proposal",
]
