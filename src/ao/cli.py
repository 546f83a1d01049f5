"""CLI commands for seeding, dispatching and inspecting orchestrated tasks."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer
import yaml

from .config import (
    DEFAULT_CONFIG_NAME,
    OrchestratorConfig,
    default_config_template,
    load_config_file,
    write_config_file,
)
from .dispatcher import TaskDispatcher, default_worker_id
from .engine import MilestoneEngine
from .errors import OrchestratorError
from .memory.schema import Task, TaskStatus, TaskType
from .memory.store import MemoryStore
from .models import AnthropicClient, LLMClient
from .retention import sweep
from .tools.vcs import GitCommitHook, GitError, GitRepository

APP_HELP = "Agentic orchestrator CLI entry point."
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

app = typer.Typer(help=APP_HELP)


def load_config(config_path: Path) -> OrchestratorConfig:
    """Load YAML configuration from disk into an ``OrchestratorConfig``."""
    if not config_path.exists():
        raise typer.BadParameter(f"Config file not found: {config_path}")
    try:
        data = load_config_file(config_path)
    except yaml.YAMLError as error:
        typer.echo(f"Failed to parse config: {error}")
        raise typer.Exit(code=1) from error
    except ValueError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error
    return OrchestratorConfig.from_mapping(data, base_dir=config_path.resolve().parent)


def _configure_logging(config: OrchestratorConfig, level: str) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    try:
        config.paths.logs.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(config.paths.logs / "orchestrator.log", mode="a"))
    except OSError as error:
        typer.echo(f"Warning: file logging disabled ({error})")
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, handlers=handlers, force=True)


def _build_client(config: OrchestratorConfig) -> LLMClient:
    provider = config.llm.provider.lower()
    if provider != "anthropic":
        typer.echo(f"Unsupported LLM provider '{config.llm.provider}'.")
        raise typer.Exit(code=1)
    try:
        return AnthropicClient.from_config(config.llm)
    except ValueError as error:
        typer.echo(f"Failed to initialise Anthropic client: {error}")
        raise typer.Exit(code=1) from error


def _build_hooks(config: OrchestratorConfig) -> list:
    if not config.git.commit_milestones:
        return []
    try:
        repository = GitRepository(config.workspace.project_root)
    except GitError as error:
        typer.echo(f"Warning: milestone commits disabled ({error})")
        return []
    return [GitCommitHook(repository, message_template=config.git.message_template)]


def _build_dispatcher(config: OrchestratorConfig, store: MemoryStore) -> TaskDispatcher:
    client = _build_client(config)
    hooks = _build_hooks(config)
    worker_id = default_worker_id()

    def engine_factory() -> MilestoneEngine:
        return MilestoneEngine.from_config(config, store, client, worker_id=worker_id, hooks=hooks)

    return TaskDispatcher(
        store,
        engine_factory,
        worker_id=worker_id,
        lock_ttl=config.locks.task_ttl,
        max_workers=config.dispatch.max_workers,
    )


ConfigOption = typer.Option(
    DEFAULT_CONFIG_NAME,
    "--config",
    "-c",
    help="Path to the orchestrator configuration file.",
)
LogLevelOption = typer.Option("INFO", "--log-level", help="Logging level for console and file output.")


@app.command()
def init(
    config: str = ConfigOption,
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
) -> None:
    """Write a default configuration file and create the data directories."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Config already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=1)
    write_config_file(config_path, default_config_template())
    settings = load_config(config_path)
    settings.workspace.root.mkdir(parents=True, exist_ok=True)
    settings.paths.logs.mkdir(parents=True, exist_ok=True)
    with MemoryStore(settings.paths.db_path):
        pass
    typer.echo(f"Wrote {config_path} and initialised {settings.paths.db_path}.")


@app.command("add-task")
def add_task(
    title: str = typer.Argument(..., help="Short task title."),
    description: str = typer.Option("", "--description", "-d", help="Task description."),
    task_type: TaskType = typer.Option(TaskType.FEATURE, "--type", "-t", help="Task type."),
    priority: int = typer.Option(3, "--priority", "-p", min=1, help="Priority (1 is most urgent)."),
    content: Optional[str] = typer.Option(None, "--content", help="JSON payload attached to the task."),
    config: str = ConfigOption,
) -> None:
    """Queue a new pending task."""
    settings = load_config(Path(config))
    payload: Dict[str, Any] = {}
    if content:
        try:
            payload = json.loads(content)
        except json.JSONDecodeError as error:
            raise typer.BadParameter(f"--content must be JSON: {error}") from error
        if not isinstance(payload, dict):
            raise typer.BadParameter("--content must be a JSON object")
    task = Task(type=task_type, title=title, description=description, priority=priority, content=payload)
    with MemoryStore(settings.paths.db_path) as store:
        store.save_task(task)
    typer.echo(f"Queued task {task.id} [{task.type.value}] {task.title}")


@app.command()
def dispatch(
    limit: Optional[int] = typer.Option(None, "--limit", "-n", min=1, help="Maximum tasks to claim."),
    force: bool = typer.Option(False, "--force", help="Ignore lock expiry when selecting tasks."),
    steal_locks: bool = typer.Option(False, "--steal-locks", help="Override locks that are still valid."),
    config: str = ConfigOption,
    log_level: str = LogLevelOption,
) -> None:
    """Claim eligible tasks and execute them (intended for a once-a-minute cron)."""
    settings = load_config(Path(config))
    _configure_logging(settings, log_level)
    with MemoryStore(settings.paths.db_path) as store:
        dispatcher = _build_dispatcher(settings, store)
        with dispatcher:
            report = dispatcher.dispatch(limit or settings.dispatch.limit, force=force, steal_locks=steal_locks)
            outcomes = report.wait()
    typer.echo(
        f"Selected {len(report.selected)}, claimed {len(report.claimed)}, skipped {len(report.skipped)}."
    )
    for task_id, outcome in zip(report.claimed, outcomes):
        label = "failed" if outcome is None else ("deferred" if outcome.deferred else outcome.status.value)
        typer.echo(f"- {task_id}: {label}")


@app.command("run-task")
def run_task(
    task_id: str = typer.Argument(..., help="Identifier of the task to run."),
    steal_locks: bool = typer.Option(False, "--steal-locks", help="Override a lock that is still valid."),
    config: str = ConfigOption,
    log_level: str = LogLevelOption,
) -> None:
    """Run a single task synchronously."""
    settings = load_config(Path(config))
    _configure_logging(settings, log_level)
    with MemoryStore(settings.paths.db_path) as store:
        dispatcher = _build_dispatcher(settings, store)
        with dispatcher:
            try:
                outcome = dispatcher.run_task(task_id, steal_locks=steal_locks)
            except OrchestratorError as error:
                typer.echo(str(error))
                raise typer.Exit(code=1) from error
        task = store.require_task(task_id)
    if outcome is None:
        typer.echo(f"Task {task_id} did not complete: {task.status.value} {task.last_error or ''}".rstrip())
        raise typer.Exit(code=1)
    typer.echo(f"Task {task_id}: {'deferred' if outcome.deferred else task.status.value}")


@app.command()
def status(
    task_id: Optional[str] = typer.Argument(None, help="Show milestones for this task."),
    config: str = ConfigOption,
) -> None:
    """List tasks, or show one task with its milestones."""
    settings = load_config(Path(config))
    with MemoryStore(settings.paths.db_path) as store:
        if task_id is None:
            tasks = store.list_tasks()
            if not tasks:
                typer.echo("No tasks queued.")
            for task in tasks:
                lock = f" locked by {task.locked_by}" if task.is_locked() else ""
                typer.echo(f"[{task.status.value}] p{task.priority} {task.id}: {task.title}{lock}")
            return
        task = store.get_task(task_id)
        if task is None:
            typer.echo(f"Unknown task: {task_id}")
            raise typer.Exit(code=1)
        typer.echo(f"Task {task.id} [{task.status.value}] {task.title} (attempts {task.attempts})")
        if task.last_error:
            typer.echo(f"  error: {task.last_error}")
        if task.failed_milestone_id:
            typer.echo(f"  failed milestone: {task.failed_milestone_id}")
        for milestone in store.list_milestones(task.id):
            typer.echo(
                f"  {milestone.sequence:>2}. [{milestone.status.value}] {milestone.role.value}: {milestone.title}"
            )
            if milestone.error:
                typer.echo(f"      ! {milestone.error}")


@app.command("cleanup-logs")
def cleanup_logs(
    days: Optional[int] = typer.Option(None, "--days", min=0, help="Delete entries older than this many days."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Only report what would be deleted."),
    config: str = ConfigOption,
    log_level: str = LogLevelOption,
) -> None:
    """Delete old interaction logs and log files (intended for a daily cron)."""
    settings = load_config(Path(config))
    _configure_logging(settings, log_level)
    retention_days = settings.retention_days if days is None else days
    with MemoryStore(settings.paths.db_path) as store:
        report = sweep(store, settings.paths.logs, days=retention_days, dry_run=dry_run)
    verb = "Would delete" if dry_run else "Deleted"
    typer.echo(f"{verb} {report.interactions} interaction log(s) and {len(report.files)} file(s).")


@app.command("set-status")
def set_status(
    task_id: str = typer.Argument(..., help="Task identifier."),
    target: TaskStatus = typer.Argument(..., help="New status (e.g. cancelled, pending)."),
    config: str = ConfigOption,
) -> None:
    """Apply a manual status change, such as cancelling or requeueing a task."""
    settings = load_config(Path(config))
    with MemoryStore(settings.paths.db_path) as store:
        try:
            task = store.transition_task(task_id, target)
        except OrchestratorError as error:
            typer.echo(f"Cannot change status: {error}")
            raise typer.Exit(code=1) from error
    typer.echo(f"Task {task.id} is now {task.status.value}")


if __name__ == "__main__":
    app()
