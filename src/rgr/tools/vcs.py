"""Git checkpoints for the red-green-refactor loop.

Every successful role turn becomes a commit; a failed turn is discarded by
restoring the last checkpoint.  Restoring resets tracked files to the recorded
commit and removes only the untracked files that appeared after the checkpoint
was taken, so scratch files that predate a run are left alone.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Sequence, Set

from ..utils.slug import branch_slug

LOGGER = logging.getLogger(__name__)

AGENT_EMAIL = "rgr@example.com"
AGENT_NAME = "red-green-refactor"
INITIAL_COMMIT_MESSAGE = "rgr: initial checkpoint"


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


class NothingToCommit(GitError):
    """Raised by :meth:`GitRepository.commit_all` when the index matches ``HEAD``."""


@dataclass(frozen=True, slots=True)
class GitCheckpoint:
    """Commit plus the untracked files that existed when it was recorded."""

    label: str
    head: str
    baseline_untracked: tuple[str, ...] = ()
    created_at: float = 0.0

    @property
    def short(self) -> str:
        return self.head[:7]


@dataclass(frozen=True, slots=True)
class ParkedAttempt:
    """Side branch that keeps a failed attempt for later inspection."""

    branch: str
    commit: str
    preserved_changes: bool


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    @classmethod
    def ensure_initialized(cls, root: Path | str) -> "GitRepository":
        """Open the repository at ``root``, creating it when necessary.

        Missing ``user.email``/``user.name`` settings are filled in locally and
        a repository without commits receives an initial commit of the current
        tree so every later checkpoint has a parent to reset to.  Calling this
        on a ready repository changes nothing.
        """
        path = Path(root).resolve()
        if not path.is_dir():
            raise GitError(f"Project root is not a directory: {path}")
        if not (path / ".git").exists():
            LOGGER.info("Initialising git repository at %s", path)
            _run(path, ["init"])

        repo = cls(path)
        repo._ensure_identity()
        if repo._current_head() is None:
            repo._run_git(["add", "--all"])
            repo._run_git(["commit", "--allow-empty", "--no-verify", "-m", INITIAL_COMMIT_MESSAGE])
            LOGGER.info("Created initial commit %s", repo.head()[:7])
        return repo

    def _ensure_identity(self) -> None:
        for key, value in (("user.email", AGENT_EMAIL), ("user.name", AGENT_NAME)):
            probe = self._run_git(["config", "--get", key], check=False)
            if probe.returncode != 0 or not probe.stdout.strip():
                self._run_git(["config", key, value])

    # ------------------------------------------------------------------ git IO
    def _run_git(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        return _run(self.root, args, check=check)

    def git(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Execute ``git`` with ``args`` relative to the repository root."""

        return self._run_git(list(args), check=check)

    # -------------------------------------------------------------- branches
    def branch_exists(self, name: str) -> bool:
        result = self._run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{name}"], check=False)
        return result.returncode == 0

    def unique_branch_name(self, hint: str, *, now: datetime | None = None) -> str:
        """Return ``<hint>-<UTC timestamp>``, suffixed ``-2``, ``-3``... on collision."""

        stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%d%H%M%S")
        base = f"{branch_slug(hint)}-{stamp}"
        candidate = base
        counter = 2
        while self.branch_exists(candidate):
            candidate = f"{base}-{counter}"
            counter += 1
        return candidate

    def log_subjects(self, rev: str = "HEAD", *, max_count: int | None = None) -> List[str]:
        """Return commit subjects reachable from ``rev``, newest first."""

        args: List[str] = ["log", "--format=%s"]
        if max_count is not None:
            args.append(f"--max-count={max_count}")
        args.append(rev)
        result = self._run_git(args)
        return [line for line in result.stdout.splitlines() if line]

    # ------------------------------------------------------------- repo status
    def _status_entries(self) -> List[tuple[str, Path]]:
        result = self._run_git(["status", "--porcelain", "-z", "--untracked-files=all"])
        tokens = result.stdout.split("\0")
        entries: List[tuple[str, Path]] = []
        index = 0
        while index < len(tokens):
            entry = tokens[index]
            index += 1
            if len(entry) < 4:
                continue
            status = entry[:2]
            if status[0] in {"R", "C"}:
                # The source path of a rename follows as its own token.
                index += 1
            entries.append((status.strip() or status, Path(entry[3:])))
        return entries

    def working_tree_changes(self, *, include_untracked: bool = True) -> List[Path]:
        """Return the set of paths with pending modifications."""

        paths: Set[Path] = set()
        for status, path in self._status_entries():
            if status == "??" and not include_untracked:
                continue
            paths.add(path)
        return sorted(paths, key=lambda item: item.as_posix())

    def untracked_files(self) -> List[Path]:
        """Return untracked files, listed individually."""

        return [path for status, path in self._status_entries() if status == "??"]

    def has_changes(self, *, include_untracked: bool = True) -> bool:
        """Return ``True`` when there are working tree changes."""

        return bool(self.working_tree_changes(include_untracked=include_untracked))

    def is_clean(self, *, include_untracked: bool = True) -> bool:
        """Return ``True`` when the working tree has no pending changes."""

        return not self.working_tree_changes(include_untracked=include_untracked)

    def ensure_clean(self, *, include_untracked: bool = True) -> None:
        """Raise :class:`GitError` if the working tree is not clean."""

        if not self.is_clean(include_untracked=include_untracked):
            raise GitError("Working tree has pending changes.")

    # ------------------------------------------------------------- checkpoints
    def _current_head(self) -> str | None:
        result = self._run_git(["rev-parse", "--verify", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        head = result.stdout.strip()
        return head or None

    def head(self) -> str:
        """Return the full sha of ``HEAD``."""

        head = self._current_head()
        if head is None:
            raise GitError(f"Repository at {self.root} has no commits yet.")
        return head

    def create_checkpoint(self, label: str | None = None) -> GitCheckpoint:
        """Record the current ``HEAD`` and untracked files."""

        head = self.head()
        baseline_untracked = tuple(sorted(path.as_posix() for path in self.untracked_files()))
        return GitCheckpoint(
            label=label or head[:7],
            head=head,
            baseline_untracked=baseline_untracked,
            created_at=time.time(),
        )

    def restore_checkpoint(self, checkpoint: GitCheckpoint) -> None:
        """Make the working tree match ``checkpoint`` exactly."""

        self._run_git(["reset", "--hard", "--quiet", checkpoint.head])
        baseline = {Path(entry) for entry in checkpoint.baseline_untracked}
        extra = sorted(
            (path for path in self.untracked_files() if path not in baseline),
            key=lambda item: len(item.parts),
            reverse=True,
        )
        for relative in extra:
            target = self.root / relative
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target, ignore_errors=True)
            else:
                target.unlink(missing_ok=True)
            self._prune_empty_parents(target.parent)
        LOGGER.debug("Restored checkpoint %s (%s); removed %d new file(s)", checkpoint.label, checkpoint.short, len(extra))

    def discard_changes(self) -> None:
        """Revert tracked edits and delete every untracked, non-ignored file."""

        self.restore_checkpoint(GitCheckpoint(label="discard", head=self.head()))

    def _prune_empty_parents(self, directory: Path) -> None:
        while directory != self.root and self.root in directory.parents:
            try:
                directory.rmdir()
            except OSError:
                return
            directory = directory.parent

    def commit_all(self, message: str, *, paths: Iterable[str | Path] = ()) -> GitCheckpoint:
        """Commit tracked changes plus ``paths`` and return the new checkpoint.

        Only modifications to tracked files and the explicitly listed paths are
        staged, so build output that appeared while tests ran stays out of the
        history.  Raises :class:`NothingToCommit` when nothing was staged.
        """

        self._run_git(["add", "--update"])
        self._stage_paths(paths)
        staged = self._run_git(["diff", "--cached", "--quiet"], check=False)
        if staged.returncode == 0:
            raise NothingToCommit("Nothing to commit; the working tree matches HEAD.")

        commit = self._run_git(["commit", "--no-verify", "-m", message], check=False)
        if commit.returncode != 0:
            output = commit.stderr.strip() or commit.stdout.strip() or "unknown git error"
            raise GitError(f"git commit failed: {output}")
        checkpoint = self.create_checkpoint(label=message.splitlines()[0] if message else None)
        LOGGER.debug("Committed %s: %s", checkpoint.short, checkpoint.label)
        return checkpoint

    def _stage_paths(self, paths: Iterable[str | Path]) -> None:
        specs = [Path(path).as_posix() for path in paths]
        if not specs:
            return
        result = self._run_git(["add", "--all", "--", *specs], check=False)
        if result.returncode == 0:
            return
        output = result.stderr.strip() or result.stdout.strip() or "unknown git error"
        if "ignored by one of your .gitignore" in output:
            LOGGER.warning("Some edited paths are ignored by git and were not committed: %s", output)
            return
        raise GitError(f"git add failed: {output}")

    def hard_reset_last(self) -> GitCheckpoint:
        """Drop the most recent commit and every tracked change made since its parent."""

        parent = self._run_git(["rev-parse", "--verify", "HEAD~1"], check=False)
        if parent.returncode != 0:
            raise GitError("No earlier checkpoint to reset to.")
        self._run_git(["reset", "--hard", "--quiet", parent.stdout.strip()])
        return self.create_checkpoint()

    def park_on_branch(
        self,
        name_hint: str,
        *,
        reset_to: GitCheckpoint,
        paths: Iterable[str | Path] = (),
        message: str | None = None,
    ) -> ParkedAttempt:
        """Preserve the current state on a new branch, then restore ``reset_to``.

        Tracked changes and the listed ``paths`` are committed onto the side
        branch only; the working branch never sees that commit.  Other new
        files (caches, build output) are not preserved.
        """

        branch = self.unique_branch_name(name_hint)
        commit = self.head()
        preserved = False

        self._run_git(["add", "--update"])
        self._stage_paths(paths)
        staged = self._run_git(["diff", "--cached", "--quiet"], check=False)
        if staged.returncode != 0:
            tree = self._run_git(["write-tree"]).stdout.strip()
            summary = message or f"park: {branch}"
            commit = self._run_git(["commit-tree", tree, "-p", commit, "-m", summary]).stdout.strip()
            preserved = True

        self._run_git(["branch", branch, commit])
        self.restore_checkpoint(reset_to)
        LOGGER.info("Parked attempt on %s (%s)", branch, commit[:7])
        return ParkedAttempt(branch=branch, commit=commit, preserved_changes=preserved)


def _run(cwd: Path, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
    try:
        process = subprocess.run(
            ["git", *args],
            cwd=cwd,
            capture_output=True,
            text=False,
            check=False,
        )
    except FileNotFoundError as error:
        raise GitError("git executable not found on PATH") from error
    stdout = process.stdout.decode("utf-8", errors="replace") if process.stdout else ""
    stderr = process.stderr.decode("utf-8", errors="replace") if process.stderr else ""
    result = subprocess.CompletedProcess(process.args, process.returncode, stdout, stderr)
    if check and result.returncode != 0:
        message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
        raise GitError(f"git {' '.join(args)} failed: {message}")
    return result


__all__ = ["GitCheckpoint", "GitError", "GitRepository", "NothingToCommit", "ParkedAttempt"]
