"""Minimal git helpers used to record milestone output as commits."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from ..memory.schema import Milestone, Task
from ..utils.slug import slugify

LOGGER = logging.getLogger(__name__)


class GitError(RuntimeError):
    """Raised when a git command fails or the repository cannot be used."""


class GitRepository:
    """Lightweight wrapper around ``git`` commands."""

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()
        if not (self.root / ".git").exists():
            raise GitError(f"Not a git repository: {self.root}")

    def _run_git(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        result = subprocess.run(
            ["git", *args],
            cwd=self.root,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
            check=False,
        )
        if check and result.returncode != 0:
            message = result.stderr.strip() or result.stdout.strip() or "unknown git error"
            raise GitError(f"git {' '.join(args)} failed: {message}")
        return result

    def current_branch(self) -> str | None:
        """Return the current branch name or ``None`` when detached."""

        result = self._run_git(["rev-parse", "--abbrev-ref", "HEAD"], check=False)
        if result.returncode != 0:
            return None
        branch = result.stdout.strip()
        if not branch or branch == "HEAD":
            return None
        return branch

    def checkout_branch(self, name: str) -> None:
        """Switch to ``name``, creating it from the current ``HEAD`` if needed."""

        existing = self._run_git(["rev-parse", "--verify", "--quiet", f"refs/heads/{name}"], check=False)
        if existing.returncode == 0:
            self._run_git(["checkout", name])
        else:
            self._run_git(["checkout", "-b", name])

    def commit_all(self, message: str) -> str | None:
        """Stage everything and commit; returns the SHA or ``None`` when clean."""

        self._run_git(["add", "--all"])
        commit = self._run_git(["commit", "-m", message], check=False)
        if commit.returncode != 0:
            output = commit.stderr.strip() or commit.stdout.strip() or ""
            if "nothing to commit" in output.lower():
                return None
            raise GitError(f"git commit failed: {output}")
        rev = self._run_git(["rev-parse", "HEAD"])
        return rev.stdout.strip()

    def push(self, remote: str, branch: str, *, set_upstream: bool = False) -> None:
        args: List[str] = ["push"]
        if set_upstream:
            args.append("-u")
        args.extend([remote, branch])
        self._run_git(args)


class GitCommitHook:
    """Milestone-completed hook that commits workspace changes per milestone.

    Each task gets its own branch (``ao/<task-slug>``); failures are logged
    and never fail the milestone.
    """

    def __init__(
        self,
        repository: GitRepository,
        *,
        message_template: str = "ao: {task_slug} milestone {sequence} ({role})",
        remote: Optional[str] = None,
    ) -> None:
        self.repository = repository
        self.message_template = message_template
        self.remote = remote

    def branch_name(self, task: Task) -> str:
        return f"ao/{slugify(task.title, fallback=task.id, max_length=48)}-{task.id[:8]}"

    def __call__(self, task: Task, milestone: Milestone) -> Dict[str, Any]:
        branch = self.branch_name(task)
        message = self.message_template.format(
            task_slug=slugify(task.title, fallback=task.id, max_length=48),
            task_id=task.id,
            sequence=milestone.sequence,
            role=milestone.role.value,
            title=milestone.title,
        )
        try:
            if self.repository.current_branch() != branch:
                self.repository.checkout_branch(branch)
            sha = self.repository.commit_all(message)
            if sha and self.remote:
                self.repository.push(self.remote, branch, set_upstream=True)
        except GitError as error:
            LOGGER.warning("Git hook failed for milestone %s: %s", milestone.id, error)
            return {"git_error": str(error)}
        if sha:
            LOGGER.info("Committed milestone %s as %s on %s", milestone.id, sha[:7], branch)
        return {"git_branch": branch, "git_commit": sha}


__all__ = ["GitCommitHook", "GitError", "GitRepository"]
