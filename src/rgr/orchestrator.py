"""Red-green-refactor cycle driver.

A cycle gives each role one turn in a fixed order:

* the tester must leave the suite failing (red),
* the implementor must make it pass again (green), with a bounded number of
  attempts that all restart from the tester's checkpoint,
* the refactorer must keep it passing.

Every accepted turn is committed and becomes the next checkpoint.  A rejected
turn is rolled back, so between turns the project always sits on a commit the
orchestrator created or started from.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from itertools import count
from pathlib import Path
from typing import Iterator, Literal, Mapping

from .config import ConfigurationError, OrchestratorConfig
from .context_builder import ContextBuilder
from .models import GenerationRequest, LLMClient, LLMClientError, build_client
from .phases import PHASE_SEQUENCE, PHASE_SPECS, Phase
from .structured import PatchProposal
from .tools.patch import PatchError, PatchResult, ProtocolError, apply_patch, parse_proposal
from .tools.test_runner import TestCommandError, TestResult, run_tests
from .tools.vcs import GitCheckpoint, GitError, GitRepository, NothingToCommit, ParkedAttempt

LOGGER = logging.getLogger(__name__)

PARK_BRANCH_HINT = "attempts/implementor"

CycleStatus = Literal["completed", "completed_without_refactor", "aborted"]


class CheckpointError(GitError):
    """Raised when the repository is not in a state a cycle can start from."""


@dataclass(slots=True)
class AttemptRecord:
    """Attempt budget for one implementor phase."""

    max_attempts: int
    consumed: int = 0

    def consume(self) -> int:
        self.consumed += 1
        return self.consumed

    @property
    def exhausted(self) -> bool:
        return self.consumed >= self.max_attempts


@dataclass(slots=True)
class TurnResult:
    """One backend call followed by patch application and a test run."""

    phase: Phase
    number: int
    proposal: PatchProposal | None = None
    patch: PatchResult | None = None
    tests: TestResult | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(slots=True)
class PhaseOutcome:
    """How a role's turn ended and where it left the repository."""

    phase: Phase
    ok: bool
    attempts: int = 1
    reason: str | None = None
    checkpoint: GitCheckpoint | None = None
    committed: bool = False
    parked: ParkedAttempt | None = None
    tests: TestResult | None = None


@dataclass(slots=True)
class CycleResult:
    """Outcome of one red-green-refactor cycle."""

    index: int
    start: GitCheckpoint
    status: CycleStatus = "aborted"
    outcomes: list[PhaseOutcome] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status != "aborted"

    def outcome(self, phase: Phase) -> PhaseOutcome | None:
        for item in self.outcomes:
            if item.phase is phase:
                return item
        return None

    @property
    def final_checkpoint(self) -> GitCheckpoint:
        for item in reversed(self.outcomes):
            if item.ok and item.checkpoint is not None:
                return item.checkpoint
        return self.start


class Orchestrator:
    """Run red-green-refactor cycles against a project directory."""

    def __init__(
        self,
        project_root: Path | str,
        config: OrchestratorConfig,
        *,
        clients: Mapping[Phase, LLMClient],
        repo: GitRepository | None = None,
        reset_dirty: bool = False,
    ) -> None:
        root = Path(project_root)
        if not root.is_dir():
            raise ConfigurationError(f"Project root is not a directory: {root}")
        missing = [phase.value for phase in PHASE_SEQUENCE if phase not in clients]
        if missing:
            raise ConfigurationError(f"No client configured for role(s): {', '.join(missing)}")

        self._root = root.resolve()
        self._config = config
        self._clients = dict(clients)
        self._repo = repo
        self._reset_dirty = reset_dirty
        self._context_builder = ContextBuilder.from_config(config, self._root)
        self._cycle_counter = count(1)

    @classmethod
    def from_config(
        cls,
        project_root: Path | str,
        config: OrchestratorConfig,
        *,
        reset_dirty: bool = False,
    ) -> "Orchestrator":
        """Build one client per role from ``config``; fails fast on bad credentials."""
        clients = {phase: build_client(config.role(phase).provider) for phase in PHASE_SEQUENCE}
        return cls(project_root, config, clients=clients, reset_dirty=reset_dirty)

    @property
    def project_root(self) -> Path:
        return self._root

    @property
    def repo(self) -> GitRepository:
        if self._repo is None:
            self._repo = GitRepository.ensure_initialized(self._root)
        return self._repo

    # ------------------------------------------------------------------ loops
    def iter_cycles(self, *, continuous: bool = False, max_cycles: int | None = None) -> Iterator[CycleResult]:
        """Yield one :class:`CycleResult` per cycle.

        Without ``continuous`` a single cycle runs.  With it, cycles repeat
        until ``max_cycles`` is reached or the caller stops iterating.
        """
        limit = 1 if not continuous else max_cycles
        produced = 0
        while limit is None or produced < limit:
            yield self.run_cycle()
            produced += 1

    def run(self, *, continuous: bool = False, max_cycles: int | None = None) -> list[CycleResult]:
        """Run cycles to completion and return their results.

        ``continuous`` without ``max_cycles`` never returns; use
        :meth:`iter_cycles` to consume an unbounded run.
        """
        return list(self.iter_cycles(continuous=continuous, max_cycles=max_cycles))

    def run_cycle(self) -> CycleResult:
        """Run tester, implementor and refactorer once."""
        index = next(self._cycle_counter)
        start = self._prepare_cycle_start(index)
        result = CycleResult(index=index, start=start)
        LOGGER.info("Cycle %d starting at %s", index, start.short)

        tester = self._run_tester(start)
        result.outcomes.append(tester)
        if not tester.ok:
            LOGGER.warning("Cycle %d aborted in tester phase: %s", index, tester.reason)
            return result

        red = tester.checkpoint or start
        implementor = self._run_implementor(red, tester.tests.output if tester.tests else None)
        result.outcomes.append(implementor)
        if not implementor.ok:
            LOGGER.warning("Cycle %d aborted in implementor phase: %s", index, implementor.reason)
            return result

        refactorer = self._run_refactorer(implementor.checkpoint or red)
        result.outcomes.append(refactorer)
        result.status = "completed" if refactorer.ok else "completed_without_refactor"
        LOGGER.info("Cycle %d %s at %s", index, result.status.replace("_", " "), result.final_checkpoint.short)
        return result

    def _prepare_cycle_start(self, index: int) -> GitCheckpoint:
        repo = self.repo
        dirty = repo.working_tree_changes(include_untracked=self._reset_dirty)
        if dirty:
            listed = ", ".join(path.as_posix() for path in dirty[:5])
            if len(dirty) > 5:
                listed += f", ... ({len(dirty)} files)"
            if not self._reset_dirty:
                raise CheckpointError(
                    f"Working tree has uncommitted changes to tracked files ({listed}). "
                    "Commit or stash them, or re-run with --reset-dirty to discard them."
                )
            LOGGER.warning("Discarding uncommitted changes before cycle %d: %s", index, listed)
            repo.discard_changes()
        return repo.create_checkpoint(f"cycle-{index}-start")

    # ----------------------------------------------------------------- phases
    def _run_tester(self, start: GitCheckpoint) -> PhaseOutcome:
        turn = self._take_turn(Phase.TESTER, 1, restore_to=start)
        outcome = PhaseOutcome(phase=Phase.TESTER, ok=False, tests=turn.tests)
        if turn.ok:
            checkpoint = self._commit_turn(turn, restore_to=start)
            if checkpoint is not None:
                outcome.ok = True
                outcome.checkpoint = checkpoint
                outcome.committed = True
                LOGGER.info("Tester committed %s (suite is red)", checkpoint.short)
                return outcome
            turn.error = "proposal left every tracked file unchanged"

        outcome.reason = turn.error
        self.repo.restore_checkpoint(start)
        return outcome

    def _run_implementor(self, reset_point: GitCheckpoint, failure_output: str | None) -> PhaseOutcome:
        record = AttemptRecord(max_attempts=max(1, self._config.implementor_attempts))
        last_error = "no attempt was made"
        last_tests: TestResult | None = None
        last_paths: tuple[Path, ...] = ()

        while not record.exhausted:
            number = record.consume()
            turn = self._take_turn(Phase.IMPLEMENTOR, number, restore_to=reset_point, failure_output=failure_output)
            if turn.ok:
                checkpoint = self._commit_turn(turn, restore_to=reset_point, suffix=f" (attempt {number})")
                if checkpoint is None:
                    LOGGER.warning("Implementor attempt %d passed without changing tracked files", number)
                LOGGER.info("Implementor succeeded on attempt %d/%d", number, record.max_attempts)
                return PhaseOutcome(
                    phase=Phase.IMPLEMENTOR,
                    ok=True,
                    attempts=number,
                    checkpoint=checkpoint or reset_point,
                    committed=checkpoint is not None,
                    tests=turn.tests,
                )

            LOGGER.warning("Implementor attempt %d/%d failed: %s", number, record.max_attempts, turn.error)
            if turn.tests is not None and not turn.tests.ok:
                failure_output = turn.tests.output
            last_error = turn.error or last_error
            last_tests = turn.tests
            last_paths = turn.patch.paths if turn.patch is not None else ()
            if not record.exhausted:
                self.repo.restore_checkpoint(reset_point)

        parked = self.repo.park_on_branch(
            PARK_BRANCH_HINT,
            reset_to=reset_point,
            paths=last_paths,
            message=f"implementor: failed after {record.consumed} attempt(s)\n\n{last_error}",
        )
        LOGGER.warning(
            "Implementor exhausted %d attempt(s); last attempt parked on %s, back at %s",
            record.consumed,
            parked.branch,
            reset_point.short,
        )
        return PhaseOutcome(
            phase=Phase.IMPLEMENTOR,
            ok=False,
            attempts=record.consumed,
            reason=last_error,
            parked=parked,
            tests=last_tests,
        )

    def _run_refactorer(self, reset_point: GitCheckpoint) -> PhaseOutcome:
        turn = self._take_turn(Phase.REFACTORER, 1, restore_to=reset_point)
        if turn.ok:
            checkpoint = self._commit_turn(turn, restore_to=reset_point)
            if checkpoint is None:
                LOGGER.info("Refactorer proposed no effective change")
            return PhaseOutcome(
                phase=Phase.REFACTORER,
                ok=True,
                checkpoint=checkpoint or reset_point,
                committed=checkpoint is not None,
                tests=turn.tests,
            )

        self.repo.restore_checkpoint(reset_point)
        LOGGER.warning("Refactor discarded (%s); keeping %s", turn.error, reset_point.short)
        return PhaseOutcome(phase=Phase.REFACTORER, ok=False, reason=turn.error, tests=turn.tests)

    # ------------------------------------------------------------------ turns
    def _take_turn(
        self,
        phase: Phase,
        number: int,
        *,
        restore_to: GitCheckpoint,
        failure_output: str | None = None,
    ) -> TurnResult:
        turn = TurnResult(phase=phase, number=number)
        package = self._context_builder.build(phase, self._config.role(phase), failure_output=failure_output)
        request = GenerationRequest(
            role=phase.value,
            prompt=package.user_prompt,
            system_prompt=package.system_prompt,
            metadata=package.metadata,
        )
        LOGGER.info(
            "%s turn %d: requesting proposal (%d context bytes)",
            phase.value,
            number,
            package.metadata.get("context_bytes", 0),
        )

        try:
            raw = self._clients[phase].generate(request)
        except LLMClientError as error:
            turn.error = f"backend call failed: {error}"
            return turn
        try:
            turn.proposal = parse_proposal(raw, project_root=self._root)
        except ProtocolError as error:
            turn.error = f"invalid patch proposal: {error}"
            return turn
        try:
            turn.patch = apply_patch(self._root, turn.proposal)
        except PatchError as error:
            turn.error = f"patch could not be applied: {error}"
            return turn
        LOGGER.debug("%s turn %d wrote %s", phase.value, number, ", ".join(turn.proposal.paths))

        try:
            turn.tests = run_tests(self._config.test_cmd, cwd=self._root, timeout=self._config.test_timeout)
        except TestCommandError:
            self.repo.restore_checkpoint(restore_to)
            raise

        if PHASE_SPECS[phase].expects_failure:
            if turn.tests.ok:
                turn.error = "tests still pass; the new test must fail"
        elif not turn.tests.ok:
            turn.error = "tests timed out" if turn.tests.timed_out else f"tests failed (exit code {turn.tests.exit_code})"
        return turn

    def _commit_turn(self, turn: TurnResult, *, restore_to: GitCheckpoint, suffix: str = "") -> GitCheckpoint | None:
        proposal = turn.proposal or PatchProposal(files=[])
        summary = proposal.summary(PHASE_SPECS[turn.phase].default_summary)
        message = f"{turn.phase.value}: {summary}{suffix}"
        body = proposal.message_body()
        if body:
            message = f"{message}\n\n{body}"
        paths = turn.patch.paths if turn.patch is not None else ()
        try:
            return self.repo.commit_all(message, paths=paths)
        except NothingToCommit:
            return None
        except GitError as error:
            self.repo.restore_checkpoint(restore_to)
            raise CheckpointError(f"Could not commit {turn.phase.value} changes: {error}") from error


__all__ = [
    "AttemptRecord",
    "CheckpointError",
    "CycleResult",
    "CycleStatus",
    "Orchestrator",
    "PARK_BRANCH_HINT",
    "PhaseOutcome",
    "TurnResult",
]
