from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from conftest import ScriptedLLMClient, Workspace, file_changes

from ao.dispatcher import TaskDispatcher, default_worker_id
from ao.engine import milestone_lock_key
from ao.errors import LockContention
from ao.memory.schema import AgentRole, Milestone, Task, TaskStatus, TaskType

WORKER = "worker-dispatch"


def _dispatcher(workspace: Workspace, client: ScriptedLLMClient, **kwargs) -> TaskDispatcher:
    return TaskDispatcher(
        workspace.store,
        lambda: workspace.engine(client, worker_id=WORKER),
        worker_id=WORKER,
        max_workers=1,
        **kwargs,
    )


def _with_dev_milestone(workspace: Workspace, **fields) -> Task:
    task = workspace.store.save_task(Task(**fields))
    workspace.store.create_milestone(
        Milestone(task_id=task.id, sequence=1, title="Build", role=AgentRole.DEV)
    )
    return task


def test_default_worker_id_shape() -> None:
    worker = default_worker_id()
    assert worker.startswith("worker-")
    assert worker.rsplit("-", 1)[1].isdigit()


def test_dispatch_runs_highest_priority_first(workspace: Workspace) -> None:
    client = ScriptedLLMClient({"dev": [file_changes({"path": "out.txt", "content": "x"})]})
    urgent = _with_dev_milestone(workspace, title="Urgent", priority=1)
    later = _with_dev_milestone(workspace, title="Later", priority=4)

    with _dispatcher(workspace, client) as dispatcher:
        report = dispatcher.dispatch(limit=1)
        outcomes = report.wait()

    assert report.claimed == [urgent.id]
    assert outcomes[0].status == TaskStatus.COMPLETED
    assert workspace.store.require_task(urgent.id).status == TaskStatus.COMPLETED
    assert workspace.store.require_task(later.id).status == TaskStatus.PENDING


def test_locked_task_is_skipped_not_waited_on(workspace: Workspace) -> None:
    task = _with_dev_milestone(workspace, title="Busy")
    workspace.store.claim_task(task.id, "worker-other", 3600)
    factory = MagicMock()

    dispatcher = TaskDispatcher(workspace.store, factory, worker_id=WORKER, max_workers=1)
    with dispatcher:
        assert dispatcher.dispatch(limit=5).selected == []
        forced = dispatcher.dispatch(limit=5, force=True)
        claim = dispatcher.claim(task)

    assert forced.skipped == [task.id]
    assert not claim.ok and isinstance(claim.error, LockContention)
    factory.assert_not_called()
    assert workspace.store.require_task(task.id).locked_by == "worker-other"


def test_steal_locks_takes_over(workspace: Workspace) -> None:
    client = ScriptedLLMClient({"dev": [file_changes({"path": "out.txt", "content": "x"})]})
    task = _with_dev_milestone(workspace, title="Stuck")
    workspace.store.claim_task(task.id, "worker-gone", 3600)

    with _dispatcher(workspace, client) as dispatcher:
        assert dispatcher.run_task(task.id) is None
        outcome = dispatcher.run_task(task.id, steal_locks=True)

    assert outcome is not None and outcome.status == TaskStatus.COMPLETED


def test_failed_task_is_requeued_until_attempts_run_out(workspace: Workspace) -> None:
    client = ScriptedLLMClient({"dev": ["No idea, sorry."]})
    task = _with_dev_milestone(workspace, title="Hard bug", type=TaskType.BUG)

    with _dispatcher(workspace, client) as dispatcher:
        assert dispatcher.run_task(task.id) is None
        first = workspace.store.require_task(task.id)
        assert first.status == TaskStatus.PENDING
        assert first.attempts == 1
        assert first.locked_by is None

        assert dispatcher.run_task(task.id) is None

    final = workspace.store.require_task(task.id)
    assert final.status == TaskStatus.FAILED
    assert final.attempts == TaskType.BUG.max_attempts
    assert "no executable actions" in final.last_error


def test_deferred_pass_does_not_use_up_an_attempt(workspace: Workspace) -> None:
    client = ScriptedLLMClient({"dev": ["No idea, sorry."]})
    task = _with_dev_milestone(workspace, title="Flaky feature", type=TaskType.FEATURE)
    milestone = workspace.store.list_milestones(task.id)[0]
    lease = milestone_lock_key(milestone.id)
    workspace.store.acquire_lease(lease, "worker-other", 60)

    with _dispatcher(workspace, client) as dispatcher:
        deferred = dispatcher.run_task(task.id)
        assert deferred is not None and deferred.deferred
        assert workspace.store.require_task(task.id).status == TaskStatus.IN_PROGRESS

        workspace.store.release_lease(lease, "worker-other")
        assert dispatcher.run_task(task.id) is None

    requeued = workspace.store.require_task(task.id)
    assert requeued.attempts == 1
    assert requeued.status == TaskStatus.PENDING


def test_upgrade_tasks_are_not_retried(workspace: Workspace) -> None:
    client = ScriptedLLMClient({"dev": ["Nothing to do."]})
    task = _with_dev_milestone(workspace, title="Upgrade framework", type=TaskType.UPGRADE)

    with _dispatcher(workspace, client) as dispatcher:
        dispatcher.run_task(task.id)

    assert workspace.store.require_task(task.id).status == TaskStatus.FAILED


@pytest.mark.parametrize(
    ("task_type", "expected"),
    [(TaskType.BUG, 3600), (TaskType.FEATURE, 7200), (TaskType.UPGRADE, 10800)],
)
def test_lock_ttl_covers_the_task_budget(workspace: Workspace, task_type: TaskType, expected: int) -> None:
    dispatcher = TaskDispatcher(workspace.store, MagicMock(), worker_id=WORKER, lock_ttl=3600, max_workers=1)
    with dispatcher:
        assert dispatcher.lock_ttl_for(Task(title="t", type=task_type)) == expected
