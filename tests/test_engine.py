from __future__ import annotations

import itertools
import json
import shutil
import subprocess
from unittest.mock import MagicMock

import pytest
from conftest import ScriptedLLMClient, Workspace, file_changes, milestone_plan

from ao.engine import milestone_lock_key
from ao.errors import MilestoneExecutionFailed, TaskTimeoutError, ValidationFailed
from ao.memory.schema import AgentRole, Milestone, MilestoneStatus, Task, TaskStatus, TaskType
from ao.tools.commands import CommandResult, TestRunResult

WORKER = "worker-test"


def _claimed_task(workspace: Workspace, **fields) -> Task:
    task = workspace.store.save_task(Task(title=fields.pop("title", "Add greeting"), **fields))
    claimed = workspace.store.claim_task(task.id, WORKER, 3600)
    assert claimed is not None
    return claimed


def _seed_milestones(workspace: Workspace, task: Task, *specs) -> list:
    records = [
        Milestone(task_id=task.id, sequence=index + 1, title=title, role=role, status=status)
        for index, (title, role, status) in enumerate(specs)
    ]
    workspace.store.create_milestones(records)
    return workspace.store.list_milestones(task.id)


def test_single_developer_milestone_completes(workspace: Workspace) -> None:
    client = ScriptedLLMClient(
        {
            "pm": [milestone_plan({"title": "Implement greeting", "agent_type": "dev"})],
            "dev": [file_changes({"path": "hello.txt", "content": "hi\n", "type": "create"})],
        }
    )
    task = _claimed_task(workspace)

    outcome = workspace.engine(client).run(task.id, owner=WORKER)

    assert outcome.status == TaskStatus.COMPLETED
    assert outcome.validation is not None and outcome.validation.status == "skipped"
    assert (workspace.root / "hello.txt").read_text(encoding="utf-8") == "hi\n"
    stored = workspace.store.require_task(task.id)
    assert stored.status == TaskStatus.COMPLETED
    assert stored.completed_at is not None
    assert stored.locked_by is None and stored.lock_expires_at is None

    (milestone,) = workspace.store.list_milestones(task.id)
    assert milestone.status == MilestoneStatus.COMPLETED
    assert milestone.output_data["touched_paths"] == ["hello.txt"]
    assert client.roles_called() == ["pm", "dev"]
    assert workspace.store.lease_owner(milestone_lock_key(milestone.id)) is None


def test_unusable_plan_falls_back_to_default_milestones(workspace: Workspace) -> None:
    client = ScriptedLLMClient(
        {
            "pm": ["I am not sure how to split this up."],
            "ba": ["The greeting must say hello."],
            "dev": [file_changes({"path": "greeting.md", "content": "Hello\n"})],
            "qa": ['{"verdict": "pass"}'],
        }
    )
    task = _claimed_task(workspace)

    outcome = workspace.engine(client).run(task.id, owner=WORKER)

    assert outcome.status == TaskStatus.COMPLETED
    milestones = workspace.store.list_milestones(task.id)
    assert [(m.sequence, m.role) for m in milestones] == [
        (1, AgentRole.BA),
        (2, AgentRole.DEV),
        (3, AgentRole.QA),
    ]
    assert all(m.metadata.get("default_plan") for m in milestones)
    assert milestones[0].output_data == {"analysis": {"response": "The greeting must say hello."}}
    assert milestones[2].output_data["review"] == {"verdict": "pass"}


def test_previous_outputs_reach_the_developer(workspace: Workspace) -> None:
    seen = {}

    def developer(messages):
        seen["prompt"] = messages[1]["content"]
        return file_changes({"path": "a.txt", "content": "a"})

    client = ScriptedLLMClient({"ba": ["Use uppercase."], "dev": [developer]})
    task = _claimed_task(workspace)
    _seed_milestones(
        workspace,
        task,
        ("Analyse", AgentRole.BA, MilestoneStatus.PENDING),
        ("Build", AgentRole.DEV, MilestoneStatus.PENDING),
    )

    workspace.engine(client).run(task.id, owner=WORKER)

    assert "Use uppercase." in seen["prompt"]


def test_failed_milestone_skips_the_rest_and_fails_task(workspace: Workspace) -> None:
    client = ScriptedLLMClient({"dev": ["I would refactor the module but will not say how."]})
    task = _claimed_task(workspace)
    seeded = _seed_milestones(
        workspace,
        task,
        ("Build", AgentRole.DEV, MilestoneStatus.PENDING),
        ("Document", AgentRole.DOC, MilestoneStatus.PENDING),
    )

    with pytest.raises(MilestoneExecutionFailed):
        workspace.engine(client).run(task.id, owner=WORKER)

    first, second = workspace.store.list_milestones(task.id)
    assert first.status == MilestoneStatus.FAILED
    assert "no executable actions" in first.error
    assert second.status == MilestoneStatus.SKIPPED
    stored = workspace.store.require_task(task.id)
    assert stored.status == TaskStatus.FAILED
    assert stored.failed_milestone_id == seeded[0].id
    assert stored.locked_by is None
    # One original attempt plus one restructure request.
    assert client.roles_called() == ["dev", "dev"]


def test_held_milestone_lease_defers_the_task(workspace: Workspace) -> None:
    client = ScriptedLLMClient()
    task = _claimed_task(workspace)
    (milestone,) = _seed_milestones(workspace, task, ("Build", AgentRole.DEV, MilestoneStatus.PENDING))
    assert workspace.store.acquire_lease(milestone_lock_key(milestone.id), "worker-other", 10)

    outcome = workspace.engine(client).run(task.id, owner=WORKER)

    assert outcome.deferred
    assert [run.status for run in outcome.runs] == ["deferred"]
    assert workspace.store.get_milestone(milestone.id).status == MilestoneStatus.PENDING
    stored = workspace.store.require_task(task.id)
    assert stored.status == TaskStatus.IN_PROGRESS
    assert stored.locked_by is None
    assert client.calls == []


def test_retry_requeues_unfinished_milestones(workspace: Workspace) -> None:
    client = ScriptedLLMClient(
        {
            "dev": [file_changes({"path": "fixed.txt", "content": "ok"})],
            "doc": [json.dumps({"documentation": [{"path": "docs/CHANGES.md", "content": "# Changes\n"}]})],
        }
    )
    task = workspace.store.save_task(Task(title="Retry me"))
    workspace.store.transition_task(task.id, TaskStatus.IN_PROGRESS)
    seeded = _seed_milestones(
        workspace,
        task,
        ("Analyse", AgentRole.BA, MilestoneStatus.COMPLETED),
        ("Build", AgentRole.DEV, MilestoneStatus.FAILED),
        ("Document", AgentRole.DOC, MilestoneStatus.SKIPPED),
    )
    workspace.store.transition_task(task.id, TaskStatus.FAILED, error="boom")
    workspace.store.transition_task(task.id, TaskStatus.PENDING)
    workspace.store.claim_task(task.id, WORKER, 3600)

    outcome = workspace.engine(client).run(task.id, owner=WORKER)

    assert outcome.status == TaskStatus.COMPLETED
    milestones = workspace.store.list_milestones(task.id)
    assert [m.sequence for m in milestones] == [1, 2, 3, 4, 5]
    assert [m.metadata.get("retry_of") for m in milestones[3:]] == [seeded[1].id, seeded[2].id]
    assert [m.status for m in milestones[3:]] == [MilestoneStatus.COMPLETED, MilestoneStatus.COMPLETED]
    assert milestones[1].status == MilestoneStatus.FAILED
    assert (workspace.root / "docs" / "CHANGES.md").read_text(encoding="utf-8") == "# Changes\n"
    assert milestones[4].output_data["documentation"] == ["docs/CHANGES.md"]


def test_interrupted_milestone_is_marked_failed(workspace: Workspace) -> None:
    client = ScriptedLLMClient({"dev": [file_changes({"path": "again.txt", "content": "1"})]})
    task = _claimed_task(workspace)
    (milestone,) = _seed_milestones(workspace, task, ("Build", AgentRole.DEV, MilestoneStatus.PENDING))
    workspace.store.transition_task(task.id, TaskStatus.IN_PROGRESS)
    workspace.store.update_milestone(milestone.id, MilestoneStatus.IN_PROGRESS)

    outcome = workspace.engine(client).run(task.id, owner=WORKER)

    assert outcome.status == TaskStatus.COMPLETED
    original, retry = workspace.store.list_milestones(task.id)
    assert original.status == MilestoneStatus.FAILED
    assert original.error == "Interrupted before completion"
    assert retry.metadata["retry_of"] == original.id
    assert retry.status == MilestoneStatus.COMPLETED


def test_qa_failure_fails_the_task(workspace: Workspace) -> None:
    client = ScriptedLLMClient({"qa": ["Two tests fail."]})
    task = _claimed_task(workspace)
    _seed_milestones(workspace, task, ("Test", AgentRole.QA, MilestoneStatus.PENDING))
    engine = workspace.engine(client)
    engine.commands.run_tests = MagicMock(
        return_value=TestRunResult(status="failed", runner="pytest", message="pytest exited with 1")
    )

    with pytest.raises(MilestoneExecutionFailed) as excinfo:
        engine.run(task.id, owner=WORKER)

    assert isinstance(excinfo.value.cause, ValidationFailed)
    assert workspace.store.require_task(task.id).status == TaskStatus.FAILED


def test_final_validation_failure_fails_the_task(workspace: Workspace) -> None:
    client = ScriptedLLMClient({"ba": ["Fine."]})
    task = _claimed_task(workspace)
    _seed_milestones(workspace, task, ("Analyse", AgentRole.BA, MilestoneStatus.PENDING))
    engine = workspace.engine(client)
    engine.commands.run_tests = MagicMock(
        return_value=TestRunResult(status="error", runner="npm", message="npm exited with 127")
    )

    with pytest.raises(ValidationFailed):
        engine.run(task.id, owner=WORKER)

    stored = workspace.store.require_task(task.id)
    assert stored.status == TaskStatus.FAILED
    assert "npm exited with 127" in stored.last_error
    assert workspace.store.list_milestones(task.id)[0].status == MilestoneStatus.COMPLETED


def test_time_budget_is_enforced(workspace: Workspace) -> None:
    ticks = itertools.chain([0.0], itertools.repeat(1e9))
    task = _claimed_task(workspace, type=TaskType.BUG)
    _seed_milestones(workspace, task, ("Build", AgentRole.DEV, MilestoneStatus.PENDING))

    engine = workspace.engine(ScriptedLLMClient(), clock=lambda: next(ticks))
    with pytest.raises(TaskTimeoutError):
        engine.run(task.id, owner=WORKER)

    assert workspace.store.require_task(task.id).status == TaskStatus.FAILED
    assert workspace.store.list_milestones(task.id)[0].status == MilestoneStatus.PENDING


def test_completion_hooks_annotate_output(workspace: Workspace) -> None:
    client = ScriptedLLMClient({"ux": ["Use a blue button."]})
    task = _claimed_task(workspace)
    _seed_milestones(workspace, task, ("Design", AgentRole.UX, MilestoneStatus.PENDING))
    hook = MagicMock(return_value={"git_commit": "abc123"})

    workspace.engine(client, hooks=[hook]).run(task.id, owner=WORKER)

    (milestone,) = workspace.store.list_milestones(task.id)
    assert milestone.output_data["hooks"] == {"git_commit": "abc123"}
    assert hook.call_count == 1


def test_empty_planner_reply_falls_back_to_default_milestones(workspace: Workspace) -> None:
    client = ScriptedLLMClient(
        {
            "pm": [""],
            "ba": ["Needs a greeting."],
            "dev": [file_changes({"path": "greeting.md", "content": "Hello\n"})],
            "qa": ['{"passed": true}'],
        }
    )
    task = _claimed_task(workspace)

    outcome = workspace.engine(client).run(task.id, owner=WORKER)

    assert outcome.status == TaskStatus.COMPLETED
    roles = [m.role for m in workspace.store.list_milestones(task.id)]
    assert roles == [AgentRole.BA, AgentRole.DEV, AgentRole.QA]


def test_raising_hook_is_recorded_and_milestone_completes(workspace: Workspace) -> None:
    client = ScriptedLLMClient({"ux": ["Use a blue button."]})
    task = _claimed_task(workspace)
    _seed_milestones(workspace, task, ("Design", AgentRole.UX, MilestoneStatus.PENDING))

    def commit_hook(task, milestone):
        raise OSError("disk full")

    outcome = workspace.engine(client, hooks=[commit_hook]).run(task.id, owner=WORKER)

    assert outcome.status == TaskStatus.COMPLETED
    (milestone,) = workspace.store.list_milestones(task.id)
    assert milestone.status == MilestoneStatus.COMPLETED
    assert milestone.output_data["hook_errors"] == [{"hook": "commit_hook", "error": "disk full"}]
    stored = workspace.store.require_task(task.id)
    assert stored.failed_milestone_id is None
    assert workspace.store.lease_owner(milestone_lock_key(milestone.id)) is None


def test_unsaveable_output_fails_the_milestone_not_just_the_task(
    workspace: Workspace, monkeypatch: pytest.MonkeyPatch
) -> None:
    client = ScriptedLLMClient({"ux": ["Use a blue button."]})
    task = _claimed_task(workspace)
    _seed_milestones(workspace, task, ("Design", AgentRole.UX, MilestoneStatus.PENDING))
    engine = workspace.engine(client)
    update = workspace.store.update_milestone

    def refuse_completion(milestone_id, status, **fields):
        if status == MilestoneStatus.COMPLETED:
            raise OSError("database is locked")
        return update(milestone_id, status, **fields)

    monkeypatch.setattr(workspace.store, "update_milestone", refuse_completion)

    with pytest.raises(MilestoneExecutionFailed):
        engine.run(task.id, owner=WORKER)

    (milestone,) = workspace.store.list_milestones(task.id)
    assert milestone.status == MilestoneStatus.FAILED
    assert workspace.store.require_task(task.id).failed_milestone_id == milestone.id


def test_bug_tasks_follow_the_analysis_fix_verification_flow(workspace: Workspace) -> None:
    client = ScriptedLLMClient(
        {
            "qa": ['{"passed": false, "issues": ["greeting is missing"]}', '{"passed": true}'],
            "dev": [file_changes({"path": "greeting.md", "content": "Hello\n"})],
        }
    )
    task = _claimed_task(workspace, title="Greeting missing", type=TaskType.BUG, description="No greeting shown")
    engine = workspace.engine(client)
    engine.commands.run_tests = MagicMock(
        side_effect=[
            TestRunResult(status="failed", runner="pytest", message="pytest exited with 1"),
            TestRunResult(status="passed", runner="pytest", message="pytest exited with 0"),
            TestRunResult(status="passed", runner="pytest", message="pytest exited with 0"),
        ]
    )

    outcome = engine.run(task.id, owner=WORKER)

    assert outcome.status == TaskStatus.COMPLETED
    assert "pm" not in client.roles_called()
    analysis, fix, verification = workspace.store.list_milestones(task.id)
    assert [analysis.role, fix.role, verification.role] == [AgentRole.QA, AgentRole.DEV, AgentRole.QA]
    assert analysis.input_data["test_results"]["status"] == "failed"
    assert analysis.input_data["bug_description"] == "No greeting shown"
    assert analysis.status == MilestoneStatus.COMPLETED
    assert analysis.output_data["analysis"]["issues"] == ["greeting is missing"]
    assert verification.output_data["tests"]["status"] == "passed"
    assert (workspace.root / "greeting.md").is_file()


def _git(root, *args: str) -> str:
    completed = subprocess.run(["git", *args], cwd=root, check=True, capture_output=True, text=True)
    return completed.stdout


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_upgrade_tasks_back_up_then_apply_planned_steps(workspace: Workspace) -> None:
    root = workspace.root
    (root / "package.json").write_text('{"dependencies": {"left-pad": "1.0.0"}}\n', encoding="utf-8")
    _git(root, "init")
    _git(root, "config", "user.email", "agent@example.com")
    _git(root, "config", "user.name", "Orchestrator")
    _git(root, "add", "package.json")
    _git(root, "commit", "-m", "initial")

    steps = {
        "upgrade_steps": [
            {"title": "Check git", "command": "git", "args": ["--version"]},
            {
                "title": "Bump left-pad",
                "file_changes": [
                    {"path": "package.json", "content": '{"dependencies": {"left-pad": "1.3.0"}}\n'}
                ],
            },
        ]
    }
    client = ScriptedLLMClient(
        {
            "arch": ['{"components": ["package.json"]}'],
            "pm": [json.dumps(steps)],
            "qa": ['{"passed": true}'],
        }
    )
    task = _claimed_task(workspace, title="Upgrade left-pad", type=TaskType.UPGRADE, content={"left-pad": "1.3.0"})

    outcome = workspace.engine(client).run(task.id, owner=WORKER)

    assert outcome.status == TaskStatus.COMPLETED
    milestones = workspace.store.list_milestones(task.id)
    assert [m.title for m in milestones] == [
        "Upgrade Analysis",
        "Upgrade Planning",
        "Backup Creation",
        "Upgrade Execution",
        "Upgrade Validation",
    ]
    assert [m.role for m in milestones] == [
        AgentRole.ARCH,
        AgentRole.PM,
        AgentRole.DEV,
        AgentRole.DEV,
        AgentRole.QA,
    ]
    analysis, planning, backup, execution, _ = milestones
    assert analysis.input_data["manifests"]["package.json"] == {"dependencies": {"left-pad": "1.0.0"}}
    assert analysis.input_data["upgrade_target"] == {"left-pad": "1.3.0"}
    assert planning.output_data["plan"] == steps

    branch = backup.output_data["backup_branch"]
    assert branch.startswith(f"backup/upgrade-{task.id[:8]}-")
    assert branch in _git(root, "branch", "--list", branch)

    results = execution.output_data["upgrade_results"]
    assert [entry["step"] for entry in results] == ["Check git", "Bump left-pad"]
    assert results[0]["command"]["exit_code"] == 0
    assert "1.3.0" in (root / "package.json").read_text(encoding="utf-8")
    assert "dev" not in client.roles_called()


def test_failing_upgrade_command_fails_the_execution_step(workspace: Workspace) -> None:
    steps = {"upgrade_steps": [{"title": "Broken step", "command": "git", "args": ["no-such-subcommand"]}]}
    client = ScriptedLLMClient({"pm": [json.dumps(steps)]})
    task = _claimed_task(workspace, type=TaskType.UPGRADE)
    workspace.store.create_milestones(
        [
            Milestone(
                task_id=task.id,
                sequence=1,
                title="Upgrade Planning",
                role=AgentRole.PM,
                metadata={"step": "upgrade_planning"},
            ),
            Milestone(
                task_id=task.id,
                sequence=2,
                title="Upgrade Execution",
                role=AgentRole.DEV,
                metadata={"step": "upgrade_execution"},
            ),
        ]
    )
    engine = workspace.engine(client)
    engine.commands._execute = MagicMock(
        return_value=CommandResult(
            command=("git", "no-such-subcommand"),
            cwd=workspace.root,
            exit_code=1,
            stdout="",
            stderr="unknown command",
            duration_ms=1,
        )
    )

    with pytest.raises(MilestoneExecutionFailed, match="Upgrade step failed: Broken step - unknown command"):
        engine.run(task.id, owner=WORKER)

    planning, execution = workspace.store.list_milestones(task.id)
    assert planning.status == MilestoneStatus.COMPLETED
    assert execution.status == MilestoneStatus.FAILED
