"""Workspace-confined file operations used to materialise agent output."""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Iterable, List, Optional, Sequence, Tuple

from ..config import DEFAULT_ALLOWED_EXTENSIONS
from ..errors import PathTraversalError, SandboxIOError
from ..planning.actions import FileEdit
from ..result import Err, Ok, Result

LOGGER = logging.getLogger(__name__)

_SKIPPED_DIRS = frozenset({".git", "node_modules", "vendor", "__pycache__", ".venv"})


@dataclass(slots=True)
class EditOutcome:
    """Per-edit report produced by ``FileSandbox.patch``."""

    index: int
    kind: str
    applied: bool
    message: str = ""


@dataclass(slots=True)
class PatchReport:
    path: str
    written: bool
    edits: List[EditOutcome] = field(default_factory=list)

    @property
    def applied_count(self) -> int:
        return sum(1 for edit in self.edits if edit.applied)

    @property
    def failed(self) -> List[EditOutcome]:
        return [edit for edit in self.edits if not edit.applied]


class FileSandbox:
    """Read, write and patch files strictly beneath a workspace root.

    Every public operation returns ``Ok``/``Err``; a path that would resolve
    outside the root yields ``Err(PathTraversalError)`` before any disk
    access happens.
    """

    def __init__(
        self,
        root: Path | str,
        *,
        allowed_extensions: Sequence[str] = DEFAULT_ALLOWED_EXTENSIONS,
        encoding: str = "utf-8",
    ) -> None:
        self.root = Path(root).resolve()
        self.allowed_extensions: Tuple[str, ...] = tuple(
            ext.lower().lstrip(".") for ext in allowed_extensions
        )
        self.encoding = encoding

    @classmethod
    def from_config(cls, config) -> "FileSandbox":
        return cls(
            config.workspace.project_root,
            allowed_extensions=config.sandbox.allowed_extensions,
        )

    # Path handling -------------------------------------------------------------------
    def resolve(self, relative: str | os.PathLike[str]) -> Result:
        """Map a workspace-relative path to an absolute path under the root."""
        raw = os.fspath(relative)
        root_text = self.root.as_posix()
        if not raw or "\x00" in raw:
            return Err(PathTraversalError(raw, root_text))
        normalised = raw.replace("\\", "/")
        pure = PurePosixPath(normalised)
        if pure.is_absolute() or normalised.startswith("~") or _has_drive(normalised):
            return Err(PathTraversalError(raw, root_text))
        if any(part == ".." for part in pure.parts):
            return Err(PathTraversalError(raw, root_text))
        candidate = (self.root / Path(*pure.parts)).resolve() if pure.parts else self.root
        if candidate != self.root and not candidate.is_relative_to(self.root):
            return Err(PathTraversalError(raw, root_text))
        return Ok(candidate)

    def relative(self, absolute: Path) -> str:
        return absolute.resolve().relative_to(self.root).as_posix()

    # Primitives ----------------------------------------------------------------------
    def exists(self, relative: str) -> bool:
        resolved = self.resolve(relative)
        return resolved.ok and resolved.value.exists()

    def read(self, relative: str) -> Result:
        resolved = self.resolve(relative)
        if not resolved.ok:
            return resolved
        path: Path = resolved.value
        if not path.is_file():
            return Err(SandboxIOError(f"File not found: {relative}"))
        try:
            return Ok(path.read_text(encoding=self.encoding))
        except (OSError, UnicodeDecodeError) as error:
            return Err(SandboxIOError(f"Unable to read {relative}: {error}"))

    def write(self, relative: str, content: str) -> Result:
        """Write ``content``, creating parent directories as needed."""
        resolved = self.resolve(relative)
        if not resolved.ok:
            return resolved
        path: Path = resolved.value
        if path == self.root or path.is_dir():
            return Err(SandboxIOError(f"Refusing to overwrite directory: {relative}"))
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding=self.encoding)
        except OSError as error:
            return Err(SandboxIOError(f"Unable to write {relative}: {error}"))
        LOGGER.debug("Wrote %s (%d bytes)", relative, len(content))
        return Ok(path)

    def make_dir(self, relative: str) -> Result:
        resolved = self.resolve(relative)
        if not resolved.ok:
            return resolved
        try:
            resolved.value.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            return Err(SandboxIOError(f"Unable to create directory {relative}: {error}"))
        return Ok(resolved.value)

    def delete(self, relative: str) -> Result:
        resolved = self.resolve(relative)
        if not resolved.ok:
            return resolved
        path: Path = resolved.value
        if path == self.root:
            return Err(SandboxIOError("Refusing to delete the workspace root"))
        if not path.exists():
            return Err(SandboxIOError(f"File not found: {relative}"))
        try:
            if path.is_dir():
                shutil.rmtree(path)
            else:
                path.unlink()
        except OSError as error:
            return Err(SandboxIOError(f"Unable to delete {relative}: {error}"))
        return Ok(path)

    def move(self, source: str, destination: str) -> Result:
        resolved_source = self.resolve(source)
        if not resolved_source.ok:
            return resolved_source
        resolved_destination = self.resolve(destination)
        if not resolved_destination.ok:
            return resolved_destination
        if not resolved_source.value.exists():
            return Err(SandboxIOError(f"File not found: {source}"))
        try:
            resolved_destination.value.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(resolved_source.value), str(resolved_destination.value))
        except OSError as error:
            return Err(SandboxIOError(f"Unable to move {source} -> {destination}: {error}"))
        return Ok(resolved_destination.value)

    def list_files(self, relative: str = ".", *, extensions: Optional[Iterable[str]] = None) -> Result:
        """Enumerate files whose extension is on the allow-list, sorted."""
        resolved = self.resolve(relative) if relative not in ("", ".") else Ok(self.root)
        if not resolved.ok:
            return resolved
        base: Path = resolved.value
        if not base.is_dir():
            return Err(SandboxIOError(f"Not a directory: {relative}"))
        allowed = tuple(ext.lower().lstrip(".") for ext in (extensions or self.allowed_extensions))
        found: List[str] = []
        for current, dirnames, filenames in os.walk(base):
            dirnames[:] = sorted(name for name in dirnames if name not in _SKIPPED_DIRS)
            for name in filenames:
                path = Path(current) / name
                if not self._matches_extension(name, allowed):
                    continue
                if path.is_symlink() and not path.resolve().is_relative_to(self.root):
                    continue
                found.append(path.relative_to(self.root).as_posix())
        return Ok(sorted(found))

    @staticmethod
    def _matches_extension(name: str, allowed: Sequence[str]) -> bool:
        lowered = name.lower()
        return any(lowered.endswith(f".{ext}") for ext in allowed)

    # Patching ------------------------------------------------------------------------
    def patch(self, relative: str, edits: Sequence[FileEdit]) -> Result:
        """Apply ``edits`` in order to the file contents held in memory.

        Each edit is reported independently. The file is rewritten only when
        at least one edit applied and the content changed.
        """
        current = self.read(relative)
        if not current.ok:
            return current
        content: str = current.value
        original = content
        outcomes: List[EditOutcome] = []
        for index, edit in enumerate(edits):
            content, outcome = _apply_edit(content, edit, index)
            outcomes.append(outcome)
            if not outcome.applied:
                LOGGER.warning("Edit %d (%s) on %s failed: %s", index, edit.kind, relative, outcome.message)

        report = PatchReport(path=relative, written=False, edits=outcomes)
        if report.applied_count and content != original:
            written = self.write(relative, content)
            if not written.ok:
                return written
            report.written = True
        return Ok(report)


def _has_drive(path: str) -> bool:
    """Drive-anchored paths (``C:/x``) escape everywhere; ``a:b`` only names a drive on Windows."""
    windows = PureWindowsPath(path)
    return bool(windows.drive) and (bool(windows.root) or os.name == "nt")


def _apply_edit(content: str, edit: FileEdit, index: int) -> Tuple[str, EditOutcome]:
    if edit.kind == "replace":
        if not edit.search:
            return content, EditOutcome(index, edit.kind, False, "empty search text")
        if edit.search not in content:
            return content, EditOutcome(index, edit.kind, False, "search text not found")
        count = content.count(edit.search)
        updated = content.replace(edit.search, edit.content)
        return updated, EditOutcome(index, edit.kind, True, f"replaced {count} occurrence(s)")
    if edit.kind == "insert":
        if not edit.after:
            return content, EditOutcome(index, edit.kind, False, "missing anchor text")
        position = content.find(edit.after)
        if position == -1:
            return content, EditOutcome(index, edit.kind, False, "anchor text not found")
        cut = position + len(edit.after)
        updated = content[:cut] + "\n" + edit.content + content[cut:]
        return updated, EditOutcome(index, edit.kind, True)
    if edit.kind == "append":
        separator = "" if not content or content.endswith("\n") else "\n"
        return content + separator + edit.content + "\n", EditOutcome(index, edit.kind, True)
    if edit.kind == "prepend":
        return edit.content + "\n" + content, EditOutcome(index, edit.kind, True)
    return content, EditOutcome(index, str(edit.kind), False, "unknown edit kind")


__all__ = ["EditOutcome", "FileSandbox", "PatchReport"]
