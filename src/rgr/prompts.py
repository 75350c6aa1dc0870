"""Prompt templates shared by the tester, implementor and refactorer roles."""

from __future__ import annotations

from .phases import Phase

PATCH_RESPONSE_INSTRUCTION = (
    "You are a code-modifying agent. Respond ONLY with a valid JSON object matching schema "
    "PatchProposal { files: [{path, mode: 'rewrite'|'append', content}], commit_message?, notes? }. "
    "Paths are relative to the project root. No prose, no markdown fences."
)

DEFAULT_ROLE_PROMPTS: dict[Phase, str] = {
    Phase.TESTER: (
        "You are the Tester. Add a single failing test expressing a new behavior. "
        "Only output a JSON PatchProposal."
    ),
    Phase.IMPLEMENTOR: (
        "You are the Implementor. Make tests pass with minimal changes. "
        "Only output a JSON PatchProposal."
    ),
    Phase.REFACTORER: (
        "You are the Refactorer. Improve code without changing behavior. Keep tests passing. "
        "Only output a JSON PatchProposal."
    ),
}

TASK_INSTRUCTIONS: dict[Phase, str] = {
    Phase.TESTER: (
        "Task: Add exactly one failing unit test (red) for the next small behavior in the project. "
        "Do not modify implementation code. Output ONLY JSON of schema PatchProposal."
    ),
    Phase.IMPLEMENTOR: (
        "Task: Make the test suite pass with the simplest change. Keep edits minimal and focused. "
        "Use baby steps. Output ONLY JSON (PatchProposal)."
    ),
    Phase.REFACTORER: (
        "Task: Refactor to improve clarity, remove duplication, and prepare for change. "
        "Don't change behavior. After edits, all tests must still pass. Keep steps small. "
        "Output ONLY JSON (PatchProposal)."
    ),
}

FAILURE_OUTPUT_LIMIT = 8_000


def render_system_prompt(role_prompt: str | None = None) -> str:
    """Combine the patch-format contract with the role's configured persona."""
    persona = (role_prompt or "").strip()
    if not persona:
        return PATCH_RESPONSE_INSTRUCTION
    return f"{PATCH_RESPONSE_INSTRUCTION}\n\n{persona}"


def render_task(phase: Phase, failure_output: str | None = None) -> str:
    """Return the per-turn task line, with failing output appended for the implementor."""
    task = TASK_INSTRUCTIONS[phase]
    failures = _tail(failure_output or "", FAILURE_OUTPUT_LIMIT).strip()
    if phase is Phase.IMPLEMENTOR and failures:
        return f"{task}\n\nTest failures to fix:\n{failures}"
    return task


def render_user_prompt(
    phase: Phase,
    *,
    context_text: str,
    failure_output: str | None = None,
) -> str:
    """Render the user message: task first, project snapshot after it."""
    sections = [render_task(phase, failure_output)]
    snapshot = context_text.strip("\n")
    if snapshot:
        sections.append(f"## Project Context\n{snapshot}")
    else:
        sections.append("## Project Context\n(no files matched the context globs)")
    return "\n\n".join(sections)


def _tail(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"[... {len(text) - limit} earlier characters omitted ...]\n{text[-limit:]}"


__all__ = [
    "DEFAULT_ROLE_PROMPTS",
    "FAILURE_OUTPUT_LIMIT",
    "PATCH_RESPONSE_INSTRUCTION",
    "TASK_INSTRUCTIONS",
    "render_system_prompt",
    "render_task",
    "render_user_prompt",
]
