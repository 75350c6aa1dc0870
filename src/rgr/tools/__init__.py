"""Patch application, git checkpoints and test execution."""

from .patch import PatchError, PatchResult, ProtocolError, apply_patch, parse_proposal, validate_proposal
from .test_runner import TestCommandError, TestResult, TestStatus, run_tests
from .vcs import GitCheckpoint, GitError, GitRepository, NothingToCommit, ParkedAttempt

__all__ = [
    "GitCheckpoint",
    "GitError",
    "GitRepository",
    "NothingToCommit",
    "ParkedAttempt",
    "PatchError",
    "PatchResult",
    "ProtocolError",
    "TestCommandError",
    "TestResult",
    "TestStatus",
    "apply_patch",
    "parse_proposal",
    "run_tests",
    "validate_proposal",
]
