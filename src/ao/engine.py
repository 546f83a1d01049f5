"""Sequential milestone execution for a single claimed task."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Sequence

from .agents.gateway import AgentGateway, AgentResult, ResponseCache
from .config import OrchestratorConfig
from .errors import (
    InvalidTransitionError,
    MilestoneExecutionFailed,
    PlanParseFailed,
    SandboxIOError,
    TaskTimeoutError,
    ValidationFailed,
)
from .memory.schema import (
    AgentRole,
    Milestone,
    MilestoneStatus,
    Task,
    TaskStatus,
    TaskType,
    new_id,
)
from .memory.store import MemoryStore
from .models.llm_client import LLMClient, LLMEmptyResponseError
from .planning.actions import actions_from_file_changes
from .planning.flows import FlowStep, bug_fix_flow, flow_step, upgrade_flow, uses_planner
from .planning.parser import (
    MilestoneDraft,
    actions_from_payload,
    decode_json,
    default_milestone_plan,
    extract_structured,
    parse_actions,
    parse_milestone_plan,
)
from .prompts import UPGRADE_STEPS_FORMAT
from .result import Err
from .tools.commands import CommandRunner, TestRunResult
from .tools.executor import ActionExecutor
from .tools.files import FileSandbox

LOGGER = logging.getLogger(__name__)

MilestoneHook = Callable[[Task, Milestone], Optional[Mapping[str, Any]]]
RunStatus = Literal["completed", "failed", "deferred"]

_MANIFESTS = ("composer.json", "package.json", "pyproject.toml", "requirements.txt")


def milestone_lock_key(milestone_id: str) -> str:
    return f"milestone_{milestone_id}_lock"


@dataclass(slots=True)
class MilestoneRun:
    milestone_id: str
    sequence: int
    role: AgentRole
    status: RunStatus
    error: Optional[str] = None


@dataclass(slots=True)
class EngineOutcome:
    """Summary of one engine pass over a task."""

    task_id: str
    status: TaskStatus
    runs: List[MilestoneRun] = field(default_factory=list)
    validation: Optional[TestRunResult] = None
    deferred: bool = False


class MilestoneEngine:
    """Plan, then execute milestones strictly in sequence order.

    Each milestone is guarded by a try-once lease; a lease held elsewhere
    ends the pass (the task stays ``in_progress`` for a later pass) instead
    of waiting. Any failure marks the task ``failed``; the task lock is
    released on every exit path.
    """

    def __init__(
        self,
        store: MemoryStore,
        gateway: AgentGateway,
        files: FileSandbox,
        commands: CommandRunner,
        *,
        worker_id: str,
        milestone_lock_ttl: float = 10.0,
        hooks: Sequence[MilestoneHook] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.files = files
        self.commands = commands
        self.executor = ActionExecutor(files, commands)
        self.worker_id = worker_id
        self.milestone_lock_ttl = milestone_lock_ttl
        self.hooks = tuple(hooks)
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config: OrchestratorConfig,
        store: MemoryStore,
        client: LLMClient,
        *,
        worker_id: str,
        hooks: Sequence[MilestoneHook] = (),
    ) -> "MilestoneEngine":
        """Wire the sandbox, runner and gateway from one configuration object."""
        gateway = AgentGateway(
            client,
            store,
            cache=ResponseCache(config.llm.cache_ttl),
            templates_dir=config.llm.templates,
            logs_dir=config.paths.logs,
        )
        return cls(
            store,
            gateway,
            FileSandbox.from_config(config),
            CommandRunner.from_config(config),
            worker_id=worker_id,
            milestone_lock_ttl=config.locks.milestone_ttl,
            hooks=hooks,
        )

    # Entry point ---------------------------------------------------------------------
    def run(self, task_id: str, *, owner: Optional[str] = None) -> EngineOutcome:
        """Drive ``task_id`` to a terminal state (or defer it).

        ``owner`` is the lock holder to release at the end; when omitted the
        lock is cleared unconditionally.
        """
        run_id = new_id()
        task = self.store.require_task(task_id)
        deadline = self._clock() + task.type.timeout_seconds
        LOGGER.info("Starting task %s (%s, attempt %d, run %s)", task.id, task.type.value, task.attempts, run_id)
        try:
            if task.status == TaskStatus.PENDING:
                task = self.store.transition_task(task.id, TaskStatus.IN_PROGRESS)
            elif task.status != TaskStatus.IN_PROGRESS:
                raise InvalidTransitionError("task", task.status.value, TaskStatus.IN_PROGRESS.value)

            milestones = self._materialise(task, run_id)
            outcome = EngineOutcome(task_id=task.id, status=TaskStatus.IN_PROGRESS)
            for milestone in milestones:
                if milestone.status != MilestoneStatus.PENDING:
                    continue
                if self._clock() > deadline:
                    raise TaskTimeoutError(
                        f"Task {task.id} exceeded its {task.type.timeout_seconds}s budget"
                    )
                run = self._execute_milestone(task, milestone, run_id)
                outcome.runs.append(run)
                if run.status == "deferred":
                    outcome.deferred = True
                    LOGGER.info("Task %s deferred at milestone %d", task.id, milestone.sequence)
                    return outcome

            outcome.validation = self._final_validation(task)
            task = self.store.transition_task(task.id, TaskStatus.COMPLETED)
            outcome.status = task.status
            LOGGER.info("Task %s completed (%d milestone run(s))", task.id, len(outcome.runs))
            return outcome
        except Exception as error:
            self._fail_task(task_id, error)
            raise
        finally:
            self.store.release_task_lock(task_id, owner)

    # Planning ------------------------------------------------------------------------
    def _materialise(self, task: Task, run_id: str) -> List[Milestone]:
        existing = self.store.list_milestones(task.id)
        if not existing:
            drafts = self._initial_drafts(task, run_id)
            records = [
                Milestone(
                    task_id=task.id,
                    sequence=index + 1,
                    title=draft.title,
                    description=draft.description,
                    role=draft.role,
                    input_data=draft.input_data,
                    metadata=draft.metadata,
                )
                for index, draft in enumerate(drafts)
            ]
            self.store.create_milestones(records)
            LOGGER.info("Created %d milestone(s) for task %s", len(records), task.id)
            return self.store.list_milestones(task.id)

        for milestone in existing:
            if milestone.status != MilestoneStatus.IN_PROGRESS:
                continue
            if self.store.lease_owner(milestone_lock_key(milestone.id)) is not None:
                continue
            LOGGER.warning("Milestone %s was left in progress; marking it failed", milestone.id)
            self.store.update_milestone(
                milestone.id,
                MilestoneStatus.FAILED,
                error="Interrupted before completion",
            )

        refreshed = self.store.list_milestones(task.id)
        if not any(item.status in (MilestoneStatus.PENDING, MilestoneStatus.IN_PROGRESS) for item in refreshed):
            self._requeue_unfinished(task, refreshed)
            refreshed = self.store.list_milestones(task.id)
        return refreshed

    def _initial_drafts(self, task: Task, run_id: str) -> List[MilestoneDraft]:
        if uses_planner(task.type):
            return self._plan(task, run_id)
        if task.type == TaskType.BUG:
            baseline = self.commands.run_tests()
            LOGGER.info("Baseline tests for bug %s: %s", task.id, baseline.status)
            return bug_fix_flow(task.description, baseline.to_dict())
        return upgrade_flow(task.content, self._manifests())

    def _manifests(self) -> Dict[str, Any]:
        """Dependency manifests found at the workspace root."""
        found: Dict[str, Any] = {}
        for name in _MANIFESTS:
            if not self.files.exists(name):
                continue
            text = self.files.read(name)
            if not text.ok:
                LOGGER.warning("Could not read %s: %s", name, text.error)
                continue
            decoded = decode_json(text.value) if name.endswith(".json") else None
            found[name] = decoded if decoded is not None else text.value
        if "composer.json" in found and self.commands.is_command_allowed("composer"):
            shown = self.commands.run(["composer", "show", "--format=json"])
            if shown.ok and shown.value.ok:
                found["composer_packages"] = decode_json(shown.value.stdout)
        return found

    def _plan(self, task: Task, run_id: str) -> List[MilestoneDraft]:
        try:
            result = self.gateway.plan_task(task, run_id=run_id)
        except LLMEmptyResponseError as error:
            parsed = Err(PlanParseFailed(f"Planner returned no content: {error}"))
        else:
            parsed = parse_milestone_plan(result.raw_text)
        if parsed.ok:
            return parsed.value
        LOGGER.warning("Falling back to the default plan for task %s: %s", task.id, parsed.error)
        return default_milestone_plan()

    def _requeue_unfinished(self, task: Task, milestones: List[Milestone]) -> None:
        """Append pending copies of failed/skipped milestones for a retry attempt."""
        superseded = {item.metadata["retry_of"] for item in milestones if item.metadata.get("retry_of")}
        unfinished = [
            item
            for item in milestones
            if item.status in (MilestoneStatus.FAILED, MilestoneStatus.SKIPPED) and item.id not in superseded
        ]
        if not unfinished:
            return
        sequence = self.store.next_sequence(task.id)
        copies = []
        for offset, item in enumerate(unfinished):
            copies.append(
                Milestone(
                    task_id=task.id,
                    sequence=sequence + offset,
                    title=item.title,
                    description=item.description,
                    role=item.role,
                    input_data=item.input_data,
                    metadata={**item.metadata, "retry_of": item.id},
                )
            )
        self.store.create_milestones(copies)
        LOGGER.info("Requeued %d milestone(s) for task %s", len(copies), task.id)

    # Milestones ----------------------------------------------------------------------
    def _execute_milestone(self, task: Task, milestone: Milestone, run_id: str) -> MilestoneRun:
        key = milestone_lock_key(milestone.id)
        if not self.store.acquire_lease(key, self.worker_id, self.milestone_lock_ttl):
            LOGGER.warning(
                "Milestone %s (task %s) is locked by another worker; skipping this pass",
                milestone.id,
                task.id,
            )
            return MilestoneRun(milestone.id, milestone.sequence, milestone.role, "deferred")
        try:
            try:
                milestone = self.store.update_milestone(milestone.id, MilestoneStatus.IN_PROGRESS)
            except InvalidTransitionError as error:
                LOGGER.warning("Milestone %s changed state concurrently: %s", milestone.id, error)
                return MilestoneRun(milestone.id, milestone.sequence, milestone.role, "deferred")

            LOGGER.info(
                "Executing milestone %d/%s '%s' for task %s",
                milestone.sequence,
                milestone.role.value,
                milestone.title,
                task.id,
            )
            try:
                output = self._dispatch(task, milestone, run_id)
                self._run_hooks(task, milestone, output)
                self.store.update_milestone(milestone.id, MilestoneStatus.COMPLETED, output_data=output)
            except Exception as error:
                self.store.update_milestone(milestone.id, MilestoneStatus.FAILED, error=str(error))
                self._skip_remaining(task.id, milestone.sequence)
                raise MilestoneExecutionFailed(milestone.id, str(error), cause=error) from error
            return MilestoneRun(milestone.id, milestone.sequence, milestone.role, "completed")
        finally:
            self.store.release_lease(key, self.worker_id)

    def _run_hooks(self, task: Task, milestone: Milestone, output: Dict[str, Any]) -> None:
        """Hooks are best effort: a raising hook is recorded, not fatal."""
        for hook in self.hooks:
            name = getattr(hook, "__name__", type(hook).__name__)
            try:
                extra = hook(task, milestone)
            except Exception as error:
                LOGGER.warning("Hook %s failed for milestone %s: %s", name, milestone.id, error)
                output.setdefault("hook_errors", []).append({"hook": name, "error": str(error)})
                continue
            if extra:
                output.setdefault("hooks", {}).update(dict(extra))

    def _skip_remaining(self, task_id: str, after_sequence: int) -> None:
        for item in self.store.list_milestones(task_id):
            if item.sequence > after_sequence and item.status == MilestoneStatus.PENDING:
                self.store.update_milestone(
                    item.id,
                    MilestoneStatus.SKIPPED,
                    error=f"Skipped after milestone {after_sequence} failed",
                )

    def _dispatch(self, task: Task, milestone: Milestone, run_id: str) -> Dict[str, Any]:
        step = flow_step(milestone.metadata)
        if step == FlowStep.BUG_ANALYSIS:
            return self._handle_bug_analysis(task, milestone, run_id)
        elif step == FlowStep.UPGRADE_PLANNING:
            return self._handle_upgrade_planning(task, milestone, run_id)
        elif step == FlowStep.UPGRADE_BACKUP:
            return self._handle_backup(task)
        elif step == FlowStep.UPGRADE_EXECUTION:
            return self._handle_upgrade_execution(task, milestone, run_id)

        role = milestone.role
        if role == AgentRole.PM:
            result = self.gateway.consult(AgentRole.PM, task, milestone, {}, run_id=run_id)
            return {"response": result.data}
        elif role == AgentRole.BA:
            result = self.gateway.analyze_requirements(task, milestone, run_id=run_id)
            return {"analysis": result.data}
        elif role == AgentRole.UX:
            result = self.gateway.design_ux(task, milestone, run_id=run_id)
            return {"design": result.data}
        elif role == AgentRole.ARCH:
            return self._handle_architecture(task, milestone, run_id)
        elif role == AgentRole.DEV:
            return self._handle_development(task, milestone, run_id)
        elif role == AgentRole.QA:
            return self._handle_quality(task, milestone, run_id)
        elif role == AgentRole.DOC:
            return self._handle_documentation(task, milestone, run_id)
        raise ValueError(f"No handler registered for role {role!r}")

    def _previous_outputs(self, task: Task, milestone: Milestone) -> Dict[str, Any]:
        return {
            f"{item.sequence}:{item.role.value}:{item.title}": item.output_data
            for item in self.store.list_milestones(task.id)
            if item.status == MilestoneStatus.COMPLETED and item.sequence < milestone.sequence
        }

    def _handle_architecture(self, task: Task, milestone: Milestone, run_id: str) -> Dict[str, Any]:
        files = self.files.list_files().unwrap()
        result = self.gateway.design_architecture(task, milestone, files, run_id=run_id)
        return {"architecture": result.data, "files": files}

    def _handle_development(self, task: Task, milestone: Milestone, run_id: str) -> Dict[str, Any]:
        files = self.files.list_files().unwrap_or([])
        previous = self._previous_outputs(task, milestone)
        result = self.gateway.generate_code(task, milestone, previous, files, run_id=run_id)
        actions = self._actions_from(result)
        if not actions:
            LOGGER.info("Developer output for milestone %s had no actions; asking for a restructure", milestone.id)
            retry = self.gateway.restructure_actions(task, milestone, result.raw_text, run_id=run_id)
            actions = self._actions_from(retry)
        if not actions:
            raise PlanParseFailed("Developer response contained no executable actions")

        report = self.executor.execute(actions)
        if not report.applied:
            first = report.failed[0].message if report.failed else "all actions skipped"
            raise SandboxIOError(f"None of the {len(actions)} action(s) applied: {first}")
        return {"execution": report.to_dict(), "touched_paths": report.touched_paths}

    @staticmethod
    def _actions_from(result: AgentResult) -> list:
        if result.structured:
            return actions_from_payload(result.data)
        return parse_actions(result.raw_text)

    def _handle_quality(self, task: Task, milestone: Milestone, run_id: str) -> Dict[str, Any]:
        tests = self.commands.run_tests()
        review = self.gateway.review_tests(task, milestone, tests.to_dict(), run_id=run_id)
        output = {"tests": tests.to_dict(), "review": review.data}
        if not tests.ok:
            raise ValidationFailed(f"Tests {tests.status}: {tests.message}", output=tests.output)
        return output

    # Bug and upgrade flows -----------------------------------------------------------
    def _handle_bug_analysis(self, task: Task, milestone: Milestone, run_id: str) -> Dict[str, Any]:
        report = milestone.input_data.get("test_results") or {}
        review = self.gateway.review_tests(task, milestone, report, run_id=run_id)
        return {"analysis": review.data, "tests": report}

    def _handle_upgrade_planning(self, task: Task, milestone: Milestone, run_id: str) -> Dict[str, Any]:
        extra = {
            "previous_milestones": self._previous_outputs(task, milestone),
            "response_format": UPGRADE_STEPS_FORMAT,
        }
        result = self.gateway.consult(AgentRole.PM, task, milestone, extra, run_id=run_id)
        plan = extract_structured(result.raw_text, ("upgrade_steps",)) or result.data
        return {"plan": plan}

    def _handle_backup(self, task: Task) -> Dict[str, Any]:
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d-%H-%M-%S")
        branch = f"backup/upgrade-{task.id[:8]}-{stamp}"
        result = self.commands.run(["git", "branch", branch]).unwrap()
        if not result.ok:
            raise SandboxIOError(f"Failed to create backup branch: {result.stderr.strip() or result.exit_code}")
        LOGGER.info("Created backup branch %s for task %s", branch, task.id)
        return {"backup_branch": branch, "git": result.to_dict()}

    def _upgrade_steps(self, task: Task) -> List[Mapping[str, Any]]:
        for item in reversed(self.store.list_milestones(task.id)):
            if item.status != MilestoneStatus.COMPLETED or flow_step(item.metadata) != FlowStep.UPGRADE_PLANNING:
                continue
            plan = item.output_data.get("plan")
            steps = plan.get("upgrade_steps") if isinstance(plan, Mapping) else None
            if isinstance(steps, list):
                return [step for step in steps if isinstance(step, Mapping)]
        return []

    def _handle_upgrade_execution(self, task: Task, milestone: Milestone, run_id: str) -> Dict[str, Any]:
        steps = self._upgrade_steps(task)
        if not steps:
            LOGGER.info("No upgrade steps planned for task %s; asking the developer agent", task.id)
            return self._handle_development(task, milestone, run_id)

        results: List[Dict[str, Any]] = []
        for step in steps:
            title = str(step.get("title") or "untitled step")
            entry: Dict[str, Any] = {"step": title}
            command = step.get("command")
            if isinstance(command, str) and command.strip():
                args = step.get("args")
                argv = [command.strip(), *map(str, args)] if isinstance(args, list) else command
                result = self.commands.run(argv).unwrap()
                entry["command"] = result.to_dict()
                if not result.ok:
                    raise SandboxIOError(f"Upgrade step failed: {title} - {result.stderr.strip() or result.exit_code}")
            changes = step.get("file_changes")
            if isinstance(changes, list) and changes:
                report = self.executor.execute(actions_from_file_changes(changes))
                entry["execution"] = report.to_dict()
                if report.failed:
                    raise SandboxIOError(f"Upgrade step failed: {title} - {report.failed[0].message}")
            results.append(entry)
        return {"upgrade_results": results}

    def _handle_documentation(self, task: Task, milestone: Milestone, run_id: str) -> Dict[str, Any]:
        previous = self._previous_outputs(task, milestone)
        result = self.gateway.generate_documentation(task, milestone, previous, run_id=run_id)
        written: List[str] = []
        for entry in result.data.get("documentation") or []:
            if not isinstance(entry, Mapping):
                continue
            path, content = entry.get("path"), entry.get("content")
            if isinstance(path, str) and isinstance(content, str):
                self.files.write(path, content).unwrap()
                written.append(path)
        output: Dict[str, Any] = {"documentation": written}
        if not written and result.structured:
            report = self.executor.execute(actions_from_payload(result.data))
            output["execution"] = report.to_dict()
        if not written and "execution" not in output:
            output["response"] = result.data
        return output

    # Completion ----------------------------------------------------------------------
    def _final_validation(self, task: Task) -> TestRunResult:
        tests = self.commands.run_tests()
        LOGGER.info("Final validation for task %s: %s", task.id, tests.status)
        if not tests.ok:
            raise ValidationFailed(f"Final validation {tests.status}: {tests.message}", output=tests.output)
        return tests

    def _fail_task(self, task_id: str, error: BaseException) -> None:
        failed_milestone = getattr(error, "milestone_id", None)
        current = self.store.get_task(task_id)
        if current is None or current.status.is_terminal:
            return
        if current.status == TaskStatus.PENDING:
            self.store.transition_task(task_id, TaskStatus.IN_PROGRESS)
        self.store.transition_task(
            task_id,
            TaskStatus.FAILED,
            error=str(error),
            failed_milestone_id=failed_milestone,
        )
        LOGGER.error("Task %s failed: %s", task_id, error)


__all__ = [
    "EngineOutcome",
    "MilestoneEngine",
    "MilestoneHook",
    "MilestoneRun",
    "milestone_lock_key",
]
