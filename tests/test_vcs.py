from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from conftest import run_git
from rgr.tools.vcs import GitError, GitRepository, NothingToCommit


def _subjects(repo: GitRepository) -> list[str]:
    return repo.log_subjects()


def test_ensure_initialized_creates_repo_with_initial_commit(tmp_path: Path) -> None:
    (tmp_path / "existing.txt").write_text("keep\n", encoding="utf-8")

    repo = GitRepository.ensure_initialized(tmp_path)

    assert (tmp_path / ".git").is_dir()
    assert _subjects(repo) == ["rgr: initial checkpoint"]
    assert "existing.txt" in run_git(tmp_path, "ls-files")
    assert repo.is_clean()


def test_ensure_initialized_is_idempotent(git_repo: GitRepository) -> None:
    head = git_repo.head()

    again = GitRepository.ensure_initialized(git_repo.root)

    assert again.head() == head
    assert _subjects(again) == ["init"]


def test_ensure_initialized_rejects_missing_directory(tmp_path: Path) -> None:
    with pytest.raises(GitError):
        GitRepository.ensure_initialized(tmp_path / "missing")


def test_constructor_requires_git_directory(tmp_path: Path) -> None:
    with pytest.raises(GitError, match="Not a git repository"):
        GitRepository(tmp_path)


def test_commit_all_records_checkpoint_with_new_paths(git_repo: GitRepository) -> None:
    root = git_repo.root
    (root / "tracked.txt").write_text("beta\n", encoding="utf-8")
    (root / "tests").mkdir()
    (root / "tests" / "test_new.py").write_text("def test_x():\n    assert False\n", encoding="utf-8")
    (root / "scratch.log").write_text("junk\n", encoding="utf-8")

    checkpoint = git_repo.commit_all("tester: add failing test", paths=["tests/test_new.py"])

    assert checkpoint.head == git_repo.head()
    assert checkpoint.label == "tester: add failing test"
    assert checkpoint.baseline_untracked == ("scratch.log",)
    committed = run_git(root, "ls-files").split()
    assert "tests/test_new.py" in committed
    assert "scratch.log" not in committed
    assert _subjects(git_repo)[0] == "tester: add failing test"


def test_commit_all_without_changes_raises(git_repo: GitRepository) -> None:
    with pytest.raises(NothingToCommit):
        git_repo.commit_all("nothing")


def test_restore_checkpoint_removes_only_new_untracked_files(git_repo: GitRepository) -> None:
    root = git_repo.root
    (root / "preexisting.tmp").write_text("mine\n", encoding="utf-8")
    checkpoint = git_repo.create_checkpoint("start")

    (root / "tracked.txt").write_text("changed\n", encoding="utf-8")
    (root / "pkg" / "nested").mkdir(parents=True)
    (root / "pkg" / "nested" / "module.py").write_text("x = 1\n", encoding="utf-8")

    git_repo.restore_checkpoint(checkpoint)

    assert (root / "tracked.txt").read_text(encoding="utf-8") == "alpha\n"
    assert (root / "preexisting.tmp").exists()
    assert not (root / "pkg").exists()
    assert git_repo.working_tree_changes(include_untracked=False) == []


def test_discard_changes_removes_untracked_but_not_ignored_files(git_repo: GitRepository) -> None:
    root = git_repo.root
    (root / ".gitignore").write_text("*.log\n", encoding="utf-8")
    git_repo.commit_all("ignore logs", paths=[".gitignore"])
    (root / "tracked.txt").write_text("changed\n", encoding="utf-8")
    (root / "leftover").mkdir()
    (root / "leftover" / "partial.py").write_text("x = 1\n", encoding="utf-8")
    (root / "run.log").write_text("ignored\n", encoding="utf-8")

    git_repo.discard_changes()

    assert (root / "tracked.txt").read_text(encoding="utf-8") == "alpha\n"
    assert not (root / "leftover").exists()
    assert (root / "run.log").exists()
    assert git_repo.is_clean()


def test_hard_reset_last_drops_latest_commit(git_repo: GitRepository) -> None:
    first = git_repo.head()
    (git_repo.root / "tracked.txt").write_text("beta\n", encoding="utf-8")
    git_repo.commit_all("second")

    checkpoint = git_repo.hard_reset_last()

    assert checkpoint.head == first
    assert (git_repo.root / "tracked.txt").read_text(encoding="utf-8") == "alpha\n"


def test_hard_reset_last_without_parent_raises(git_repo: GitRepository) -> None:
    with pytest.raises(GitError, match="No earlier checkpoint"):
        git_repo.hard_reset_last()


def test_park_on_branch_preserves_attempt_and_restores(git_repo: GitRepository) -> None:
    root = git_repo.root
    checkpoint = git_repo.create_checkpoint("red")
    (root / "tracked.txt").write_text("attempt\n", encoding="utf-8")
    (root / "impl.py").write_text("def add(a, b):\n    return a - b\n", encoding="utf-8")
    (root / "cache").mkdir()
    (root / "cache" / "output.log").write_text("noise\n", encoding="utf-8")

    parked = git_repo.park_on_branch(
        "attempts/implementor",
        reset_to=checkpoint,
        paths=["impl.py"],
        message="implementor: attempt 3",
    )

    assert parked.preserved_changes
    assert parked.branch.startswith("attempts/implementor-")
    assert git_repo.branch_exists(parked.branch)
    assert git_repo.head() == checkpoint.head
    assert not (root / "impl.py").exists()
    assert (root / "tracked.txt").read_text(encoding="utf-8") == "alpha\n"
    assert run_git(root, "show", f"{parked.branch}:impl.py").startswith("def add")
    assert git_repo.log_subjects(parked.branch, max_count=1) == ["implementor: attempt 3"]
    assert run_git(root, "ls-tree", "-r", "--name-only", parked.branch).split() == ["impl.py", "tracked.txt"]
    assert not (root / "cache").exists()


def test_park_on_branch_without_changes_points_at_head(git_repo: GitRepository) -> None:
    checkpoint = git_repo.create_checkpoint("red")

    parked = git_repo.park_on_branch("attempts/implementor", reset_to=checkpoint)

    assert not parked.preserved_changes
    assert parked.commit == checkpoint.head


def test_unique_branch_name_suffixes_collisions(git_repo: GitRepository) -> None:
    moment = datetime(2024, 5, 1, 12, 30, 0, tzinfo=timezone.utc)
    first = git_repo.unique_branch_name("attempts/implementor", now=moment)
    git_repo.git("branch", first)

    second = git_repo.unique_branch_name("attempts/implementor", now=moment)

    assert first == "attempts/implementor-20240501123000"
    assert second == f"{first}-2"


def test_status_helpers_report_changes(git_repo: GitRepository) -> None:
    assert git_repo.is_clean()
    (git_repo.root / "new.txt").write_text("n\n", encoding="utf-8")

    assert git_repo.has_changes()
    assert git_repo.is_clean(include_untracked=False)
    assert git_repo.untracked_files() == [Path("new.txt")]
    with pytest.raises(GitError):
        git_repo.ensure_clean()
