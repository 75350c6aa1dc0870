"""Run the project's test command through the platform shell."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Literal, Mapping

from ..config import ConfigurationError

LOGGER = logging.getLogger(__name__)

TestStatus = Literal["passed", "failed"]

# Leading words the shell resolves itself; they never appear on PATH.
_SHELL_WORDS = frozenset(
    {
        ".",
        ":",
        "!",
        "[[",
        "builtin",
        "case",
        "cd",
        "command",
        "eval",
        "exec",
        "export",
        "for",
        "if",
        "set",
        "source",
        "time",
        "while",
    }
)


class TestCommandError(ConfigurationError):
    """Raised when the configured test command cannot be launched at all."""

    __test__ = False


@dataclass(slots=True)
class TestResult:
    """Exit status and combined output of one test run."""

    __test__ = False

    command: str
    cwd: Path
    exit_code: int
    status: TestStatus
    output: str
    duration: float
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.status == "passed"

    def tail(self, limit: int = 4_000) -> str:
        """Return at most ``limit`` trailing characters of the output."""
        if len(self.output) <= limit:
            return self.output
        return self.output[-limit:]


def _merge_env(extra: Mapping[str, str] | None) -> Dict[str, str]:
    env: Dict[str, str] = os.environ.copy()
    if extra:
        env.update({str(key): str(value) for key, value in extra.items()})
    return env


def _decode(payload: bytes | str | None) -> str:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    return payload.decode("utf-8", errors="replace")


def _ensure_launchable(command: str, workdir: Path, env: Mapping[str, str]) -> None:
    """Raise :class:`TestCommandError` when the first word of ``command`` names no program."""
    try:
        words = shlex.split(command)
    except ValueError as error:
        raise TestCommandError(f"Test command {command!r} cannot be parsed: {error}") from error
    if not words:
        raise TestCommandError("No test command configured.")
    program = words[0]
    if program in _SHELL_WORDS or program[:1] in ("(", "{") or any(mark in program for mark in "=$`"):
        return
    if "/" in program:
        location = Path(program).expanduser()
        if not location.is_absolute():
            location = workdir / location
        if location.exists():
            return
    elif shutil.which(program, path=env.get("PATH")):
        return
    raise TestCommandError(f"Test command {command!r} was not found: no program named {program!r}.")


def run_tests(
    test_cmd: str,
    *,
    cwd: Path | str,
    env: Mapping[str, str] | None = None,
    timeout: float | None = None,
) -> TestResult:
    """Execute ``test_cmd`` in ``cwd`` and classify the run.

    Exit code ``0`` is a pass and anything else a failure.  A run that exceeds
    ``timeout`` is reported as a failure with ``timed_out`` set.  Raises
    :class:`TestCommandError` when the command is empty or its program cannot
    be found before the run.  Once the command has started, every non-zero
    exit (126 and 127 from inside a test script included) is a failed run.
    """
    command = (test_cmd or "").strip()
    if not command:
        raise TestCommandError("No test command configured.")

    workdir = Path(cwd).resolve()
    merged_env = _merge_env(env)
    _ensure_launchable(command, workdir, merged_env)
    LOGGER.debug("Running tests: %s (cwd=%s)", command, workdir)
    started = time.monotonic()
    try:
        process = subprocess.run(
            command,
            shell=True,
            cwd=workdir,
            env=merged_env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            check=False,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as error:
        duration = time.monotonic() - started
        output = _decode(error.output)
        LOGGER.warning("Test command timed out after %.1fs: %s", duration, command)
        return TestResult(
            command=command,
            cwd=workdir,
            exit_code=-1,
            status="failed",
            output=f"{output}\n[test command timed out after {timeout}s]".lstrip("\n"),
            duration=duration,
            timed_out=True,
        )
    except OSError as error:
        raise TestCommandError(f"Unable to launch test command {command!r}: {error}") from error

    duration = time.monotonic() - started
    output = _decode(process.stdout)
    status: TestStatus = "passed" if process.returncode == 0 else "failed"
    LOGGER.info("Tests %s (exit code %d, %.1fs)", status, process.returncode, duration)
    return TestResult(
        command=command,
        cwd=workdir,
        exit_code=process.returncode,
        status=status,
        output=output,
        duration=duration,
        timed_out=False,
    )


__all__ = ["TestCommandError", "TestResult", "TestStatus", "run_tests"]
