"""Sandboxed file and command tooling exposed to the engine."""

from .commands import CommandResult, CommandRunner, TestRunResult, TestStatus
from .executor import ActionExecutor, ActionOutcome, ExecutionReport
from .files import EditOutcome, FileSandbox, PatchReport
from .vcs import GitCommitHook, GitError, GitRepository

__all__ = [
    "ActionExecutor",
    "ActionOutcome",
    "CommandResult",
    "CommandRunner",
    "EditOutcome",
    "ExecutionReport",
    "FileSandbox",
    "GitCommitHook",
    "GitError",
    "GitRepository",
    "PatchReport",
    "TestRunResult",
    "TestStatus",
]
