"""Apply parsed agent actions through the file sandbox and command runner."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Literal, Optional

from ..planning.actions import (
    Action,
    AddToFile,
    CreateFile,
    CreateFolder,
    DeleteFile,
    FileEdit,
    MoveFile,
    PatchFile,
    RemoveFromFile,
    ReplaceFile,
    RunCommand,
    UnsupportedAction,
    UpdateFile,
    action_to_dict,
)
from ..result import Result
from .commands import CommandRunner
from .files import FileSandbox

LOGGER = logging.getLogger(__name__)

OutcomeStatus = Literal["applied", "skipped", "failed"]


@dataclass(slots=True)
class ActionOutcome:
    action: Action
    status: OutcomeStatus
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": action_to_dict(self.action),
            "status": self.status,
            "message": self.message,
            "details": self.details,
        }


@dataclass(slots=True)
class ExecutionReport:
    outcomes: List[ActionOutcome] = field(default_factory=list)

    @property
    def applied(self) -> List[ActionOutcome]:
        return [item for item in self.outcomes if item.status == "applied"]

    @property
    def failed(self) -> List[ActionOutcome]:
        return [item for item in self.outcomes if item.status == "failed"]

    @property
    def touched_paths(self) -> List[str]:
        paths: List[str] = []
        for item in self.applied:
            for attribute in ("path", "destination"):
                path = getattr(item.action, attribute, None)
                if path and path not in paths:
                    paths.append(path)
        return paths

    def to_dict(self) -> Dict[str, Any]:
        return {
            "applied": len(self.applied),
            "failed": len(self.failed),
            "skipped": len(self.outcomes) - len(self.applied) - len(self.failed),
            "outcomes": [item.to_dict() for item in self.outcomes],
        }


class ActionExecutor:
    """Materialise actions one by one; a failing action never stops the rest."""

    def __init__(self, files: FileSandbox, commands: Optional[CommandRunner] = None) -> None:
        self.files = files
        self.commands = commands

    def execute(self, actions: Iterable[Action]) -> ExecutionReport:
        report = ExecutionReport()
        for action in actions:
            outcome = self.apply(action)
            if outcome.status == "failed":
                LOGGER.warning("Action %s failed: %s", action.kind, outcome.message)
            report.outcomes.append(outcome)
        LOGGER.info(
            "Executed %d action(s): %d applied, %d failed",
            len(report.outcomes),
            len(report.applied),
            len(report.failed),
        )
        return report

    def apply(self, action: Action) -> ActionOutcome:
        if isinstance(action, CreateFolder):
            return _from_result(action, self.files.make_dir(action.path))
        if isinstance(action, CreateFile):
            if self.files.exists(action.path):
                return ActionOutcome(action, "skipped", "file already exists")
            return _from_result(action, self.files.write(action.path, action.content))
        if isinstance(action, UpdateFile):
            if not self.files.exists(action.path):
                return ActionOutcome(action, "failed", f"file does not exist: {action.path}")
            return _from_result(action, self.files.write(action.path, action.content))
        if isinstance(action, ReplaceFile):
            return _from_result(action, self.files.write(action.path, action.content))
        if isinstance(action, MoveFile):
            return _from_result(action, self.files.move(action.path, action.destination))
        if isinstance(action, DeleteFile):
            return _from_result(action, self.files.delete(action.path))
        if isinstance(action, PatchFile):
            return self._patch(action, list(action.edits))
        if isinstance(action, AddToFile):
            return self._add(action)
        if isinstance(action, RemoveFromFile):
            edit = FileEdit(kind="replace", search=action.content, content="")
            return self._patch(action, [edit])
        if isinstance(action, RunCommand):
            return self._run(action)
        if isinstance(action, UnsupportedAction):
            return ActionOutcome(action, "skipped", f"unsupported action kind: {action.name}")
        raise TypeError(f"Unknown action type: {type(action).__name__}")

    def _add(self, action: AddToFile) -> ActionOutcome:
        if not self.files.exists(action.path):
            if action.position == "after":
                return ActionOutcome(action, "failed", f"file does not exist: {action.path}")
            return _from_result(action, self.files.write(action.path, action.content + "\n"))
        if action.position == "start":
            edit = FileEdit(kind="prepend", content=action.content)
        elif action.position == "after":
            edit = FileEdit(kind="insert", content=action.content, after=action.after)
        else:
            edit = FileEdit(kind="append", content=action.content)
        return self._patch(action, [edit])

    def _patch(self, action: Action, edits: List[FileEdit]) -> ActionOutcome:
        if not edits:
            return ActionOutcome(action, "skipped", "no edits supplied")
        result = self.files.patch(action.path, edits)
        if not result.ok:
            return ActionOutcome(action, "failed", str(result.error))
        report = result.value
        details = {
            "written": report.written,
            "edits": [
                {"index": edit.index, "kind": edit.kind, "applied": edit.applied, "message": edit.message}
                for edit in report.edits
            ],
        }
        if not report.applied_count:
            return ActionOutcome(action, "failed", "no edit applied", details)
        message = f"{report.applied_count}/{len(report.edits)} edit(s) applied"
        return ActionOutcome(action, "applied", message, details)

    def _run(self, action: RunCommand) -> ActionOutcome:
        if self.commands is None:
            return ActionOutcome(action, "skipped", "command execution disabled")
        cwd = None
        if action.cwd:
            resolved = self.files.resolve(action.cwd)
            if not resolved.ok:
                return ActionOutcome(action, "failed", str(resolved.error))
            cwd = resolved.value
        result = self.commands.run(action.command, cwd=cwd)
        if not result.ok:
            return ActionOutcome(action, "failed", str(result.error))
        command_result = result.value
        status: OutcomeStatus = "applied" if command_result.ok else "failed"
        return ActionOutcome(
            action,
            status,
            f"exit code {command_result.exit_code}",
            command_result.to_dict(),
        )


def _from_result(action: Action, result: Result) -> ActionOutcome:
    if result.ok:
        return ActionOutcome(action, "applied")
    return ActionOutcome(action, "failed", str(result.error))


__all__ = ["ActionExecutor", "ActionOutcome", "ExecutionReport"]
