"""Allow-listed subprocess execution confined to the workspace roots."""

from __future__ import annotations

import json
import logging
import os
import shlex
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Literal, Mapping, Optional, Sequence, Tuple

from ..config import DEFAULT_ALLOWED_COMMANDS
from ..errors import CommandNotAllowedError, CommandSyntaxRejectedError, WorkingDirectoryError
from ..result import Err, Ok, Result

LOGGER = logging.getLogger(__name__)

TestStatus = Literal["passed", "failed", "skipped", "error"]

# Anything that lets a shell chain, pipe, background or substitute commands.
_FORBIDDEN_TOKENS: Tuple[str, ...] = (";", "|", "&", "`", "$(", "\n", "\r")
_NPM_PLACEHOLDER = 'echo "Error: no test specified" && exit 1'
_OUTPUT_LIMIT = 20_000


@dataclass(slots=True)
class CommandResult:
    """Structured summary of a sandboxed command invocation."""

    command: Tuple[str, ...]
    cwd: Path
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def display(self) -> str:
        return shlex.join(self.command)

    def to_dict(self) -> Dict[str, object]:
        return {
            "command": self.display,
            "cwd": self.cwd.as_posix(),
            "exit_code": self.exit_code,
            "stdout": self.stdout[-_OUTPUT_LIMIT:],
            "stderr": self.stderr[-_OUTPUT_LIMIT:],
            "duration_ms": self.duration_ms,
            "timed_out": self.timed_out,
        }


@dataclass(slots=True)
class TestRunResult:
    """Outcome of test runner detection and invocation."""

    __test__ = False

    status: TestStatus
    runner: Optional[str]
    message: str = ""
    result: Optional[CommandResult] = None

    @property
    def ok(self) -> bool:
        return self.status in ("passed", "skipped")

    @property
    def output(self) -> str:
        if self.result is None:
            return self.message
        return "\n".join(part for part in (self.result.stdout, self.result.stderr) if part)

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "status": self.status,
            "runner": self.runner,
            "message": self.message,
        }
        if self.result is not None:
            payload["result"] = self.result.to_dict()
        return payload


def _merge_env(extra: Mapping[str, str] | None) -> Dict[str, str]:
    """Merge provided environment overrides with the current process state."""
    env: Dict[str, str] = os.environ.copy()
    if extra:
        env.update({str(key): str(value) for key, value in extra.items()})
    return env


class CommandRunner:
    """Run allow-listed commands without a shell.

    Command strings are screened for chaining syntax before tokenising and
    the base command name must be on the allow-list. Arguments always reach
    the child process as a discrete argv list.
    """

    def __init__(
        self,
        allowed_roots: Sequence[Path | str],
        *,
        allowed_commands: Sequence[str] = DEFAULT_ALLOWED_COMMANDS,
        timeout: float = 300.0,
        test_timeout: float = 900.0,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if not allowed_roots:
            raise ValueError("At least one allowed root is required.")
        self.allowed_roots: Tuple[Path, ...] = tuple(Path(root).resolve() for root in allowed_roots)
        self.allowed_commands = frozenset(allowed_commands)
        self.timeout = timeout
        self.test_timeout = test_timeout
        self._env = dict(env or {})

    @classmethod
    def from_config(cls, config) -> "CommandRunner":
        project_root = config.workspace.project_root
        roots = [project_root, *(root for root in config.workspace.allowed_roots if root != project_root)]
        return cls(
            roots,
            allowed_commands=config.sandbox.allowed_commands,
            timeout=config.sandbox.command_timeout,
            test_timeout=config.sandbox.test_timeout,
        )

    @property
    def default_cwd(self) -> Path:
        return self.allowed_roots[0]

    # Validation ----------------------------------------------------------------------
    def check_command(self, command: str) -> Result:
        """Validate a command string and return its argv on success."""
        for token in _FORBIDDEN_TOKENS:
            if token in command:
                return Err(CommandSyntaxRejectedError(command, token))
        try:
            argv = shlex.split(command)
        except ValueError as error:
            return Err(CommandSyntaxRejectedError(command, str(error)))
        if not argv:
            return Err(CommandNotAllowedError(command, ""))
        return self.check_argv(argv)

    def check_argv(self, argv: Sequence[str]) -> Result:
        if not argv:
            return Err(CommandNotAllowedError("", ""))
        base = os.path.basename(argv[0])
        if base not in self.allowed_commands:
            return Err(CommandNotAllowedError(shlex.join(argv), base))
        return Ok(list(argv))

    def is_command_allowed(self, command: str) -> bool:
        return self.check_command(command).ok

    def check_cwd(self, cwd: Path | str | None) -> Result:
        if cwd is None:
            return Ok(self.default_cwd)
        candidate = Path(cwd)
        if not candidate.is_absolute():
            candidate = self.default_cwd / candidate
        candidate = candidate.resolve()
        for root in self.allowed_roots:
            if candidate == root or candidate.is_relative_to(root):
                if not candidate.is_dir():
                    return Err(WorkingDirectoryError(f"Working directory does not exist: {candidate}"))
                return Ok(candidate)
        return Err(WorkingDirectoryError(f"Working directory outside allowed roots: {candidate}"))

    # Execution -----------------------------------------------------------------------
    def run(
        self,
        command: str | Sequence[str],
        *,
        cwd: Path | str | None = None,
        timeout: float | None = None,
    ) -> Result:
        """Run ``command`` (string or argv) and return ``Ok(CommandResult)``.

        A non-zero exit is still ``Ok``; ``Err`` is reserved for commands that
        were refused before execution.
        """
        checked = self.check_command(command) if isinstance(command, str) else self.check_argv(command)
        if not checked.ok:
            LOGGER.warning("Refused command: %s", checked.error)
            return checked
        workdir = self.check_cwd(cwd)
        if not workdir.ok:
            return workdir
        return Ok(self._execute(checked.value, workdir.value, timeout or self.timeout))

    def _execute(self, argv: List[str], cwd: Path, timeout: float) -> CommandResult:
        LOGGER.info("Running %s in %s", shlex.join(argv), cwd)
        started = time.monotonic()
        try:
            process = subprocess.run(  # noqa: S603 - argv validated against the allow-list
                argv,
                cwd=cwd,
                env=_merge_env(self._env),
                capture_output=True,
                text=True,
                timeout=timeout,
                check=False,
                shell=False,
            )
        except subprocess.TimeoutExpired as error:
            elapsed = int((time.monotonic() - started) * 1000)
            LOGGER.warning("Command timed out after %.0fs: %s", timeout, shlex.join(argv))
            return CommandResult(
                command=tuple(argv),
                cwd=cwd,
                exit_code=124,
                stdout=_as_text(error.stdout),
                stderr=_as_text(error.stderr) or f"Timed out after {timeout:.0f}s",
                duration_ms=elapsed,
                timed_out=True,
            )
        except FileNotFoundError as error:
            return CommandResult(
                command=tuple(argv),
                cwd=cwd,
                exit_code=127,
                stdout="",
                stderr=str(error),
                duration_ms=int((time.monotonic() - started) * 1000),
            )
        return CommandResult(
            command=tuple(argv),
            cwd=cwd,
            exit_code=process.returncode,
            stdout=process.stdout or "",
            stderr=process.stderr or "",
            duration_ms=int((time.monotonic() - started) * 1000),
        )

    # Project tests -------------------------------------------------------------------
    def detect_test_runner(self, project_root: Path | str | None = None) -> Optional[Tuple[str, List[str]]]:
        """Return ``(runner, argv)`` for the project's test suite, if any."""
        root = Path(project_root).resolve() if project_root else self.default_cwd

        if (root / "composer.json").is_file() and (root / "vendor" / "bin" / "phpunit").is_file():
            return "phpunit", ["php", "vendor/bin/phpunit"]

        package_json = root / "package.json"
        if package_json.is_file():
            try:
                package = json.loads(package_json.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError):
                package = {}
            scripts = package.get("scripts") if isinstance(package, dict) else None
            script = scripts.get("test") if isinstance(scripts, dict) else None
            if isinstance(script, str) and script.strip() and script.strip() != _NPM_PLACEHOLDER:
                return "npm", ["npm", "test"]

        if _has_pytest_markers(root):
            return "pytest", [sys.executable, "-m", "pytest", "-q"]
        return None

    def run_tests(self, project_root: Path | str | None = None) -> TestRunResult:
        """Run the detected test suite; absence of a runner is ``skipped``."""
        workdir = self.check_cwd(project_root)
        if not workdir.ok:
            return TestRunResult(status="error", runner=None, message=str(workdir.error))
        detected = self.detect_test_runner(workdir.value)
        if detected is None:
            LOGGER.info("No test runner detected under %s; skipping tests", workdir.value)
            return TestRunResult(status="skipped", runner=None, message="No test runner detected")

        runner, argv = detected
        gate = runner if runner == "pytest" else argv[0]
        if gate not in self.allowed_commands:
            return TestRunResult(
                status="error",
                runner=runner,
                message=f"Test runner '{gate}' is not in the allow-list",
            )
        result = self._execute(argv, workdir.value, self.test_timeout)
        return TestRunResult(
            status=_status_from_exit_code(runner, result),
            runner=runner,
            message=f"{runner} exited with {result.exit_code}",
            result=result,
        )


def _has_pytest_markers(root: Path) -> bool:
    if (root / "pytest.ini").is_file() or (root / "conftest.py").is_file():
        return True
    pyproject = root / "pyproject.toml"
    if pyproject.is_file():
        try:
            if "[tool.pytest" in pyproject.read_text(encoding="utf-8"):
                return True
        except OSError:
            pass
    tests_dir = root / "tests"
    return tests_dir.is_dir() and any(tests_dir.rglob("test_*.py"))


def _status_from_exit_code(runner: str, result: CommandResult) -> TestStatus:
    if result.timed_out:
        return "error"
    if result.exit_code == 0:
        return "passed"
    if runner == "pytest" and result.exit_code == 5:
        return "skipped"
    if result.exit_code in (126, 127):
        return "error"
    return "failed"


def _as_text(value: bytes | str | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


__all__ = ["CommandResult", "CommandRunner", "TestRunResult", "TestStatus"]
