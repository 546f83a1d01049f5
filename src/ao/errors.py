"""Error taxonomy shared by the orchestrator runtime."""

from __future__ import annotations

from typing import Optional


class OrchestratorError(RuntimeError):
    """Base error for orchestrator failures."""


class PathTraversalError(OrchestratorError):
    """Raised when a path resolves outside the workspace root."""

    def __init__(self, path: str, root: str) -> None:
        super().__init__(f"Path escapes workspace root {root}: {path!r}")
        self.path = path
        self.root = root


class SandboxIOError(OrchestratorError):
    """Raised when a sandboxed filesystem operation cannot complete."""


class CommandSyntaxRejectedError(OrchestratorError):
    """Raised when a command string contains shell chaining syntax."""

    def __init__(self, command: str, token: str) -> None:
        super().__init__(f"Command rejected, contains {token!r}: {command}")
        self.command = command
        self.token = token


class CommandNotAllowedError(OrchestratorError):
    """Raised when the base command is missing from the allow-list."""

    def __init__(self, command: str, base: str) -> None:
        super().__init__(f"Command '{base}' is not in the allow-list: {command}")
        self.command = command
        self.base = base


class WorkingDirectoryError(OrchestratorError):
    """Raised when a command working directory is outside the allowed roots."""


class PlanParseFailed(OrchestratorError):
    """Raised when no milestones or actions can be recovered from model text."""


class InvalidTransitionError(OrchestratorError):
    """Raised when a status change is not permitted by the state machine."""

    def __init__(self, entity: str, source: str, target: str) -> None:
        super().__init__(f"Illegal {entity} transition {source} -> {target}")
        self.entity = entity
        self.source = source
        self.target = target


class DuplicateSequenceError(OrchestratorError):
    """Raised when a milestone sequence number is already used for a task."""


class TaskNotFoundError(OrchestratorError):
    """Raised when a task identifier does not exist in the store."""


class LockContention(OrchestratorError):
    """Raised when a lock is already held by another worker."""


class MilestoneExecutionFailed(OrchestratorError):
    """Raised when a milestone handler fails; aborts the remaining sequence."""

    def __init__(self, milestone_id: str, message: str, *, cause: Optional[BaseException] = None) -> None:
        super().__init__(f"Milestone {milestone_id} failed: {message}")
        self.milestone_id = milestone_id
        self.cause = cause


class TaskTimeoutError(OrchestratorError):
    """Raised when a task runs past the time budget of its type."""


class ValidationFailed(OrchestratorError):
    """Raised when the post-execution test run does not succeed."""

    def __init__(self, message: str, *, output: str = "") -> None:
        super().__init__(message)
        self.output = output


__all__ = [
    "CommandNotAllowedError",
    "CommandSyntaxRejectedError",
    "DuplicateSequenceError",
    "InvalidTransitionError",
    "LockContention",
    "MilestoneExecutionFailed",
    "OrchestratorError",
    "PathTraversalError",
    "PlanParseFailed",
    "SandboxIOError",
    "TaskNotFoundError",
    "TaskTimeoutError",
    "ValidationFailed",
    "WorkingDirectoryError",
]
