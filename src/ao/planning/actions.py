"""Typed payloads that describe file and command actions emitted by agents."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, ClassVar, Dict, List, Literal, Mapping, Optional, Sequence, Tuple, Union

EditKind = Literal["replace", "insert", "append", "prepend"]
AddPosition = Literal["end", "start", "after"]

_EDIT_KINDS = ("replace", "insert", "append", "prepend")


@dataclass(slots=True, frozen=True)
class FileEdit:
    """Single in-memory edit applied by the sandbox patcher.

    ``replace`` swaps every occurrence of ``search``; ``insert`` places
    ``content`` on a new line after the first occurrence of ``after``;
    ``append``/``prepend`` add ``content`` as a whole line at either end.
    """

    kind: EditKind
    content: str = ""
    search: Optional[str] = None
    after: Optional[str] = None

    def describe(self) -> str:
        if self.kind == "replace":
            return f"replace {self.search!r}"
        if self.kind == "insert":
            return f"insert after {self.after!r}"
        return self.kind


@dataclass(slots=True, frozen=True)
class CreateFolder:
    kind: ClassVar[str] = "create_folder"
    path: str


@dataclass(slots=True, frozen=True)
class CreateFile:
    """Create a new file; an existing file is left untouched."""

    kind: ClassVar[str] = "create_file"
    path: str
    content: str = ""


@dataclass(slots=True, frozen=True)
class UpdateFile:
    """Overwrite a file that must already exist."""

    kind: ClassVar[str] = "update_file"
    path: str
    content: str = ""


@dataclass(slots=True, frozen=True)
class ReplaceFile:
    """Write a file whether or not it exists."""

    kind: ClassVar[str] = "replace_file"
    path: str
    content: str = ""


@dataclass(slots=True, frozen=True)
class MoveFile:
    kind: ClassVar[str] = "move_file"
    path: str
    destination: str


@dataclass(slots=True, frozen=True)
class DeleteFile:
    kind: ClassVar[str] = "delete_file"
    path: str


@dataclass(slots=True, frozen=True)
class PatchFile:
    kind: ClassVar[str] = "patch_file"
    path: str
    edits: Tuple[FileEdit, ...] = ()


@dataclass(slots=True, frozen=True)
class AddToFile:
    kind: ClassVar[str] = "add_to_file"
    path: str
    content: str
    position: AddPosition = "end"
    after: Optional[str] = None


@dataclass(slots=True, frozen=True)
class RemoveFromFile:
    kind: ClassVar[str] = "remove_from_file"
    path: str
    content: str


@dataclass(slots=True, frozen=True)
class RunCommand:
    kind: ClassVar[str] = "run_command"
    command: str
    cwd: Optional[str] = None


@dataclass(slots=True, frozen=True)
class UnsupportedAction:
    """Action whose kind is not understood; reported, never executed."""

    kind: ClassVar[str] = "unsupported"
    name: str
    payload: Dict[str, Any] = field(default_factory=dict)


Action = Union[
    CreateFolder,
    CreateFile,
    UpdateFile,
    ReplaceFile,
    MoveFile,
    DeleteFile,
    PatchFile,
    AddToFile,
    RemoveFromFile,
    RunCommand,
    UnsupportedAction,
]

_KIND_ALIASES: Dict[str, str] = {
    "create_directory": "create_folder",
    "mkdir": "create_folder",
    "create": "create_file",
    "update": "update_file",
    "write_file": "replace_file",
    "overwrite_file": "replace_file",
    "create_or_update": "replace_file",
    "rename_file": "move_file",
    "remove_file": "delete_file",
    "modify_file": "patch_file",
    "edit_file": "patch_file",
    "patch": "patch_file",
    "append_to_file": "add_to_file",
    "command": "run_command",
    "shell": "run_command",
}


def action_to_dict(action: Action) -> Dict[str, Any]:
    """Serialise an action for milestone output payloads."""
    payload = asdict(action)
    if isinstance(action, PatchFile):
        payload["edits"] = [asdict(edit) for edit in action.edits]
    payload["kind"] = action.kind if not isinstance(action, UnsupportedAction) else action.name
    return payload


def _text(mapping: Mapping[str, Any], *keys: str, default: str = "") -> str:
    for key in keys:
        value = mapping.get(key)
        if isinstance(value, str):
            return value
    return default


def edit_from_mapping(raw: Mapping[str, Any]) -> Optional[FileEdit]:
    """Convert a loosely shaped edit mapping into a ``FileEdit``."""
    kind = str(raw.get("type") or raw.get("kind") or raw.get("action") or "").strip().lower()
    if not kind:
        if "search" in raw or "find" in raw:
            kind = "replace"
        elif "after" in raw:
            kind = "insert"
        else:
            kind = "append"
    if kind not in _EDIT_KINDS:
        return None
    return FileEdit(
        kind=kind,  # type: ignore[arg-type]
        content=_text(raw, "content", "replace", "replacement", "text"),
        search=_text(raw, "search", "find", "old") or None,
        after=_text(raw, "after", "anchor") or None,
    )


def _edits(raw: Any) -> Tuple[FileEdit, ...]:
    if not isinstance(raw, Sequence) or isinstance(raw, str):
        return ()
    edits = []
    for item in raw:
        if isinstance(item, Mapping):
            edit = edit_from_mapping(item)
            if edit is not None:
                edits.append(edit)
    return tuple(edits)


def action_from_mapping(raw: Mapping[str, Any]) -> Action:
    """Build the tagged action for one decoded JSON object."""
    name = str(raw.get("type") or raw.get("action") or raw.get("kind") or "").strip().lower()
    kind = _KIND_ALIASES.get(name, name)
    path = _text(raw, "path", "file", "file_path", "target")
    content = _text(raw, "content", "code", "text")

    if kind == "create_folder" and path:
        return CreateFolder(path=path)
    if kind == "create_file" and path:
        return CreateFile(path=path, content=content)
    if kind == "update_file" and path:
        if raw.get("patches") or raw.get("edits"):
            return PatchFile(path=path, edits=_edits(raw.get("patches") or raw.get("edits")))
        return UpdateFile(path=path, content=content)
    if kind == "replace_file" and path:
        return ReplaceFile(path=path, content=content)
    if kind == "move_file" and path:
        destination = _text(raw, "destination", "to", "new_path")
        if destination:
            return MoveFile(path=path, destination=destination)
    if kind == "delete_file" and path:
        return DeleteFile(path=path)
    if kind == "patch_file" and path:
        return PatchFile(path=path, edits=_edits(raw.get("patches") or raw.get("edits")))
    if kind == "add_to_file" and path:
        position = str(raw.get("position") or "end").lower()
        if position not in ("end", "start", "after"):
            position = "end"
        return AddToFile(
            path=path,
            content=content,
            position=position,  # type: ignore[arg-type]
            after=_text(raw, "after", "anchor") or None,
        )
    if kind == "remove_from_file" and path:
        return RemoveFromFile(path=path, content=content or _text(raw, "search", "find"))
    if kind == "run_command":
        command = _text(raw, "command", "cmd")
        if command:
            return RunCommand(command=command, cwd=_text(raw, "cwd", "working_directory") or None)
    return UnsupportedAction(name=name or "unknown", payload=dict(raw))


def actions_from_file_changes(changes: Sequence[Any]) -> List[Action]:
    """Translate ``file_changes`` entries into actions.

    Entries look like ``{"path", "content", "type", "patches"}`` where
    ``type`` is ``create``, ``update``, ``create_or_update`` or ``patch``.
    """
    actions: List[Action] = []
    for raw in changes:
        if not isinstance(raw, Mapping):
            continue
        path = _text(raw, "path", "file", "file_path")
        if not path:
            continue
        change_type = str(raw.get("type") or "create_or_update").strip().lower()
        content = _text(raw, "content", "code")
        patches = raw.get("patches") or raw.get("edits")
        if change_type == "patch" or (change_type == "update" and patches):
            actions.append(PatchFile(path=path, edits=_edits(patches)))
        elif change_type == "create":
            actions.append(CreateFile(path=path, content=content))
        elif change_type == "update":
            actions.append(UpdateFile(path=path, content=content))
        else:
            actions.append(ReplaceFile(path=path, content=content))
    return actions


__all__ = [
    "Action",
    "AddToFile",
    "CreateFile",
    "CreateFolder",
    "DeleteFile",
    "FileEdit",
    "MoveFile",
    "PatchFile",
    "RemoveFromFile",
    "ReplaceFile",
    "RunCommand",
    "UnsupportedAction",
    "UpdateFile",
    "action_from_mapping",
    "action_to_dict",
    "actions_from_file_changes",
    "edit_from_mapping",
]
