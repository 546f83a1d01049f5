"""Explicit configuration objects passed to the runtime at construction."""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIG_NAME = "config.yaml"
DEFAULT_MODEL = "claude-sonnet-4-20250514"
DEFAULT_BASE_URL = "https://api.anthropic.com"
DEFAULT_COMMIT_TEMPLATE = "ao: {task_slug} milestone {sequence} ({role})"

DEFAULT_ALLOWED_EXTENSIONS: Tuple[str, ...] = (
    "php",
    "js",
    "ts",
    "vue",
    "blade.php",
    "json",
    "yaml",
    "yml",
    "md",
    "txt",
    "css",
    "scss",
    "sql",
    "env.example",
    "py",
)

DEFAULT_ALLOWED_COMMANDS: Tuple[str, ...] = (
    "php",
    "composer",
    "npm",
    "npx",
    "node",
    "git",
    "python",
    "pytest",
    "ls",
    "cat",
    "echo",
    "mkdir",
)

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "workspace": {
        "root": "workspace",
        "product_path": "",
        "extra_roots": [],
    },
    "sandbox": {
        "allowed_extensions": list(DEFAULT_ALLOWED_EXTENSIONS),
        "allowed_commands": list(DEFAULT_ALLOWED_COMMANDS),
        "command_timeout": 300,
        "test_timeout": 900,
    },
    "llm": {
        "provider": "anthropic",
        "model": "claude-sonnet-4-20250514",
        "base_url": "https://api.anthropic.com",
        "max_tokens": 4096,
        "temperature": 0.2,
        "timeout": 120,
        "max_attempts": 3,
        "cache_ttl": 3600,
        "templates": "",
    },
    "locks": {
        "task_ttl": 3600,
        "milestone_ttl": 10,
    },
    "dispatch": {
        "limit": 1,
        "max_workers": 2,
    },
    "retention": {
        "days": 30,
    },
    "git": {
        "commit_milestones": False,
        "message_template": DEFAULT_COMMIT_TEMPLATE,
    },
    "paths": {
        "data": "data",
        "db_path": "data/ao.sqlite",
        "logs": "data/logs",
    },
}


def _tuple_of_str(value: Any, default: Tuple[str, ...]) -> Tuple[str, ...]:
    if not value:
        return default
    if isinstance(value, str):
        value = [part.strip() for part in value.split(",")]
    return tuple(str(item).strip().lstrip(".") for item in value if str(item).strip())


def _resolve(base: Path, value: Any, default: str) -> Path:
    raw = str(value).strip() if value not in (None, "") else default
    candidate = Path(raw).expanduser()
    if not candidate.is_absolute():
        candidate = base / candidate
    return candidate.resolve()


@dataclass(slots=True)
class WorkspaceConfig:
    """Filesystem roots the sandbox is allowed to touch."""

    root: Path
    product_path: Optional[Path] = None
    extra_roots: Tuple[Path, ...] = ()

    @property
    def allowed_roots(self) -> Tuple[Path, ...]:
        roots = [self.root]
        if self.product_path is not None:
            roots.append(self.product_path)
        roots.extend(self.extra_roots)
        return tuple(roots)

    @property
    def project_root(self) -> Path:
        return self.product_path or self.root


@dataclass(slots=True)
class SandboxConfig:
    allowed_extensions: Tuple[str, ...] = DEFAULT_ALLOWED_EXTENSIONS
    allowed_commands: Tuple[str, ...] = DEFAULT_ALLOWED_COMMANDS
    command_timeout: float = 300.0
    test_timeout: float = 900.0


@dataclass(slots=True)
class LLMConfig:
    provider: str = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    base_url: str = "https://api.anthropic.com"
    api_key: Optional[str] = None
    max_tokens: int = 4096
    temperature: float = 0.2
    timeout: float = 120.0
    max_attempts: int = 3
    cache_ttl: float = 3600.0
    templates: Optional[Path] = None


@dataclass(slots=True)
class LockConfig:
    task_ttl: int = 3600
    milestone_ttl: int = 10


@dataclass(slots=True)
class DispatchConfig:
    limit: int = 1
    max_workers: int = 2


@dataclass(slots=True)
class GitConfig:
    commit_milestones: bool = False
    message_template: str = DEFAULT_COMMIT_TEMPLATE


@dataclass(slots=True)
class PathsConfig:
    data: Path
    db_path: Path
    logs: Path


@dataclass(slots=True)
class OrchestratorConfig:
    """Complete runtime configuration resolved against a base directory."""

    workspace: WorkspaceConfig
    paths: PathsConfig
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    locks: LockConfig = field(default_factory=LockConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    git: GitConfig = field(default_factory=GitConfig)
    retention_days: int = 30

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, base_dir: Path | str = ".") -> "OrchestratorConfig":
        """Build a configuration from a parsed YAML mapping.

        Relative paths are resolved against ``base_dir`` (normally the
        directory holding the config file).
        """
        base = Path(base_dir).resolve()

        workspace_cfg = data.get("workspace") or {}
        root = _resolve(base, workspace_cfg.get("root"), "workspace")
        product_value = workspace_cfg.get("product_path")
        product_path = _resolve(base, product_value, "") if product_value else None
        extra_roots = tuple(
            _resolve(base, entry, ".") for entry in (workspace_cfg.get("extra_roots") or [])
        )
        workspace = WorkspaceConfig(root=root, product_path=product_path, extra_roots=extra_roots)

        paths_cfg = data.get("paths") or {}
        data_root = _resolve(base, paths_cfg.get("data"), "data")
        paths = PathsConfig(
            data=data_root,
            db_path=_resolve(base, paths_cfg.get("db_path"), str(data_root / "ao.sqlite")),
            logs=_resolve(base, paths_cfg.get("logs"), str(data_root / "logs")),
        )

        sandbox_cfg = data.get("sandbox") or {}
        sandbox = SandboxConfig(
            allowed_extensions=_tuple_of_str(
                sandbox_cfg.get("allowed_extensions"), DEFAULT_ALLOWED_EXTENSIONS
            ),
            allowed_commands=_tuple_of_str(
                sandbox_cfg.get("allowed_commands"), DEFAULT_ALLOWED_COMMANDS
            ),
            command_timeout=float(sandbox_cfg.get("command_timeout", 300)),
            test_timeout=float(sandbox_cfg.get("test_timeout", 900)),
        )

        llm_cfg = data.get("llm") or {}
        timeout = float(llm_cfg.get("timeout", 120))
        timeout_override = os.getenv("AO_LLM_TIMEOUT")
        if timeout_override:
            try:
                parsed = float(timeout_override)
                if parsed > 0:
                    timeout = parsed
            except ValueError:
                LOGGER.warning("Ignoring non-numeric AO_LLM_TIMEOUT=%r", timeout_override)
        templates_value = llm_cfg.get("templates")
        llm = LLMConfig(
            provider=str(llm_cfg.get("provider", "anthropic")),
            model=str(llm_cfg.get("model", DEFAULT_MODEL)),
            base_url=str(llm_cfg.get("base_url", DEFAULT_BASE_URL)),
            api_key=llm_cfg.get("api_key") or os.getenv("ANTHROPIC_API_KEY"),
            max_tokens=int(llm_cfg.get("max_tokens", 4096)),
            temperature=float(llm_cfg.get("temperature", 0.2)),
            timeout=timeout,
            max_attempts=int(llm_cfg.get("max_attempts", 3)),
            cache_ttl=float(llm_cfg.get("cache_ttl", 3600)),
            templates=_resolve(base, templates_value, "") if templates_value else None,
        )

        locks_cfg = data.get("locks") or {}
        locks = LockConfig(
            task_ttl=int(locks_cfg.get("task_ttl", 3600)),
            milestone_ttl=int(locks_cfg.get("milestone_ttl", 10)),
        )

        dispatch_cfg = data.get("dispatch") or {}
        dispatch = DispatchConfig(
            limit=int(dispatch_cfg.get("limit", 1)),
            max_workers=int(dispatch_cfg.get("max_workers", 2)),
        )

        git_cfg = data.get("git") or {}
        git = GitConfig(
            commit_milestones=bool(git_cfg.get("commit_milestones", False)),
            message_template=str(git_cfg.get("message_template", DEFAULT_COMMIT_TEMPLATE)),
        )

        retention_cfg = data.get("retention") or {}
        return cls(
            workspace=workspace,
            paths=paths,
            sandbox=sandbox,
            llm=llm,
            locks=locks,
            dispatch=dispatch,
            git=git,
            retention_days=int(retention_cfg.get("days", 30)),
        )

    @classmethod
    def for_workspace(cls, root: Path | str, *, data_dir: Path | str | None = None) -> "OrchestratorConfig":
        """Return defaults rooted at ``root``; handy for tests and embedding."""
        root_path = Path(root).resolve()
        data_root = Path(data_dir).resolve() if data_dir else root_path.parent / "data"
        mapping = copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)
        mapping["workspace"]["root"] = str(root_path)
        mapping["paths"] = {
            "data": str(data_root),
            "db_path": str(data_root / "ao.sqlite"),
            "logs": str(data_root / "logs"),
        }
        return cls.from_mapping(mapping, base_dir=root_path)


def load_config_file(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration from disk and return it as a dictionary."""
    with config_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError("Configuration must be a mapping at the top level.")
    return data


def write_config_file(config_path: Path, config_data: Mapping[str, Any]) -> None:
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


def default_config_template() -> Dict[str, Any]:
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


__all__ = [
    "DEFAULT_ALLOWED_COMMANDS",
    "DEFAULT_ALLOWED_EXTENSIONS",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "DispatchConfig",
    "GitConfig",
    "LLMConfig",
    "LockConfig",
    "OrchestratorConfig",
    "PathsConfig",
    "SandboxConfig",
    "WorkspaceConfig",
    "default_config_template",
    "load_config_file",
    "write_config_file",
]
