"""CLI entry point for running red-green-refactor cycles."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import typer

from .config import DEFAULT_CONFIG_NAME, ConfigurationError, load_config, write_sample_config
from .orchestrator import CheckpointError, CycleResult, Orchestrator, PhaseOutcome
from .tools.vcs import GitError

APP_HELP = "Drive tester, implementor and refactorer roles through red-green-refactor cycles."
LOG_ENV_VAR = "RGR_LOG"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

app = typer.Typer(help=APP_HELP)


@dataclass(slots=True)
class CliState:
    """Options shared by every command."""

    project: Path
    config_path: Optional[Path]


def _configure_logging(verbose: int) -> None:
    """Apply ``-v`` counts, letting ``RGR_LOG`` override the level."""
    level: int | str = logging.INFO if verbose == 0 else logging.DEBUG
    override = os.getenv(LOG_ENV_VAR, "").strip().upper()
    if override:
        resolved = logging.getLevelName(override)
        if isinstance(resolved, int):
            level = resolved
    logging.basicConfig(format=LOG_FORMAT)
    logging.getLogger("rgr").setLevel(level)
    # Raw telemetry lines are only useful when debugging.
    logging.getLogger("rgr.telemetry").setLevel(logging.DEBUG if verbose > 1 else logging.WARNING)


def _describe_outcome(outcome: PhaseOutcome) -> str:
    name = outcome.phase.value
    if outcome.ok:
        if outcome.committed and outcome.checkpoint is not None:
            detail = f"committed {outcome.checkpoint.short} {outcome.checkpoint.label}"
        else:
            detail = "accepted without changes"
        if outcome.attempts > 1:
            detail += f" after {outcome.attempts} attempts"
        return f"- {name}: {detail}"
    line = f"- {name}: failed"
    if outcome.attempts > 1:
        line += f" after {outcome.attempts} attempts"
    if outcome.reason:
        line += f" :: {outcome.reason}"
    if outcome.parked is not None:
        line += f" (last attempt parked on {outcome.parked.branch})"
    return line


def _render_cycle_result(result: CycleResult) -> None:
    """Display a concise summary of one cycle."""
    typer.echo(f"Cycle {result.index}: {result.status.replace('_', ' ')}")
    for outcome in result.outcomes:
        typer.echo(_describe_outcome(outcome))
    typer.echo(f"Checkpoint: {result.final_checkpoint.short}")


def _run_cycles(state: CliState, *, continuous: bool, max_cycles: Optional[int], reset_dirty: bool) -> None:
    try:
        config = load_config(state.config_path)
        orchestrator = Orchestrator.from_config(state.project, config, reset_dirty=reset_dirty)
    except ConfigurationError as error:
        typer.echo(f"Configuration error: {error}")
        raise typer.Exit(code=1) from error

    try:
        for result in orchestrator.iter_cycles(continuous=continuous, max_cycles=max_cycles):
            _render_cycle_result(result)
    except KeyboardInterrupt:
        typer.echo(
            "Interrupted. Re-run to resume from the last commit; "
            "pass --reset-dirty to discard a partially applied turn."
        )
        raise typer.Exit(code=130)
    except ConfigurationError as error:
        typer.echo(f"Configuration error: {error}")
        raise typer.Exit(code=1) from error
    except CheckpointError as error:
        typer.echo(f"Checkpoint error: {error}")
        raise typer.Exit(code=1) from error
    except GitError as error:
        typer.echo(f"Git error: {error}")
        typer.echo("Inspect the repository with `git status` before re-running.")
        raise typer.Exit(code=1) from error


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    project: str = typer.Option(
        ".",
        "--project",
        "-p",
        help="Project directory to work in (initialised as a git repository if needed).",
    ),
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="YAML or JSON configuration file. Defaults to the offline example configuration.",
    ),
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase log verbosity (-v debug, -vv adds patch telemetry).",
    ),
) -> None:
    """Run one cycle when no command is given."""
    _configure_logging(verbose)
    ctx.obj = CliState(project=Path(project), config_path=Path(config) if config else None)
    if ctx.invoked_subcommand is None:
        _run_cycles(ctx.obj, continuous=False, max_cycles=None, reset_dirty=False)


@app.command("run-once")
def run_once(
    ctx: typer.Context,
    reset_dirty: bool = typer.Option(
        False,
        "--reset-dirty",
        help="Discard uncommitted edits and untracked, non-ignored files instead of refusing to start.",
    ),
) -> None:
    """Run a single red-green-refactor cycle."""
    _run_cycles(ctx.obj, continuous=False, max_cycles=None, reset_dirty=reset_dirty)


@app.command("run")
def run(
    ctx: typer.Context,
    max_cycles: Optional[int] = typer.Option(
        None,
        "--max-cycles",
        min=1,
        help="Stop after this many cycles (default: run until interrupted).",
    ),
    reset_dirty: bool = typer.Option(
        False,
        "--reset-dirty",
        help="Discard uncommitted edits and untracked, non-ignored files instead of refusing to start.",
    ),
) -> None:
    """Run cycles continuously."""
    _run_cycles(ctx.obj, continuous=True, max_cycles=max_cycles, reset_dirty=reset_dirty)


@app.command("init-config")
def init_config(
    out: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--out",
        "-o",
        help="File or directory to write the sample configuration to.",
    ),
) -> None:
    """Write a sample configuration file."""
    try:
        path = write_sample_config(Path(out))
    except OSError as error:
        typer.echo(f"Failed to write config: {error}")
        raise typer.Exit(code=1) from error
    typer.echo(f"Wrote sample configuration to {path.as_posix()}")


if __name__ == "__main__":
    app()
