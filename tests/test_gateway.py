from __future__ import annotations

import json
from pathlib import Path

import pytest
from conftest import ScriptedLLMClient

from ao.agents import AgentGateway, ResponseCache, classify_response, extract_file_blocks
from ao.memory.schema import AgentRole, InteractionStatus, Task
from ao.memory.store import MemoryStore
from ao.models import ChatResponse, LLMTimeoutError, LLMTransportError


@pytest.fixture()
def task(store: MemoryStore) -> Task:
    return store.save_task(Task(title="Add health endpoint", description="Return 200 on /health"))


def test_repeated_request_is_served_from_cache(store: MemoryStore, task: Task, tmp_path: Path) -> None:
    client = ScriptedLLMClient({"ba": ["Requirements: return 200."]})
    gateway = AgentGateway(client, store, cache=ResponseCache(60), logs_dir=tmp_path / "logs")
    context = {"task_title": task.title}

    first = gateway.execute(AgentRole.BA, context, task_id=task.id)
    second = gateway.execute(AgentRole.BA, context, task_id=task.id)

    assert not first.cached and second.cached
    assert second.data == {"response": "Requirements: return 200."}
    assert len(client.calls) == 1
    statuses = [entry.status for entry in store.list_interactions(task_id=task.id)]
    assert statuses == [InteractionStatus.SUCCESS, InteractionStatus.CACHE_HIT]
    assert len(list((tmp_path / "logs" / "interactions").glob("*.json"))) == 2


def test_success_log_carries_tokens_and_prompt(store: MemoryStore, task: Task) -> None:
    client = ScriptedLLMClient({"pm": ['{"milestones": [{"title": "Implement", "agent_type": "dev"}]}']})
    gateway = AgentGateway(client, store, cache=ResponseCache(0))

    result = gateway.plan_task(task, run_id="run-1")

    assert result.success and result.structured
    entry = store.list_interactions(task_id=task.id)[0]
    assert entry.tokens_used == 18
    assert entry.run_id == "run-1"
    assert entry.prompt[0]["role"] == "system"
    assert "Add health endpoint" in entry.prompt[1]["content"]
    assert entry.response["data"]["milestones"][0]["title"] == "Implement"


@pytest.mark.parametrize(
    ("error", "status"),
    [
        (LLMTransportError("bad request", status=400), InteractionStatus.ERROR),
        (LLMTimeoutError("too slow"), InteractionStatus.TIMEOUT),
    ],
)
def test_failures_are_logged_then_raised(store: MemoryStore, task: Task, error, status) -> None:
    gateway = AgentGateway(ScriptedLLMClient({"dev": [error]}), store, cache=ResponseCache(0))

    with pytest.raises(LLMTransportError):
        gateway.execute(AgentRole.DEV, {"task_title": task.title}, task_id=task.id)

    entry = store.list_interactions(task_id=task.id)[0]
    assert entry.status == status
    assert entry.error_message == str(error)
    assert entry.response is None


def test_unexpected_client_errors_are_logged_then_raised(store: MemoryStore, task: Task, tmp_path: Path) -> None:
    client = ScriptedLLMClient({"dev": [ConnectionResetError("peer reset")]})
    gateway = AgentGateway(client, store, cache=ResponseCache(0), logs_dir=tmp_path / "logs")

    with pytest.raises(ConnectionResetError):
        gateway.execute(AgentRole.DEV, {"task_title": task.title}, task_id=task.id)

    entries = store.list_interactions(task_id=task.id)
    assert [entry.status for entry in entries] == [InteractionStatus.ERROR]
    assert entries[0].error_message == "peer reset"
    assert entries[0].metadata["exception"] == "ConnectionResetError"
    assert len(list((tmp_path / "logs" / "interactions").glob("*.json"))) == 1


def test_cache_entries_expire() -> None:
    now = [0.0]
    cache = ResponseCache(10, clock=lambda: now[0])
    key = ResponseCache.key(AgentRole.DEV, [{"role": "user", "content": "x"}], "m", 0.2)

    cache.put(key, ChatResponse(content="cached"))
    assert cache.get(key).content == "cached"
    now[0] = 11.0
    assert cache.get(key) is None


def test_cache_key_depends_on_role_and_temperature() -> None:
    messages = [{"role": "user", "content": "x"}]
    base = ResponseCache.key(AgentRole.DEV, messages, "m", 0.2)
    assert base != ResponseCache.key(AgentRole.QA, messages, "m", 0.2)
    assert base != ResponseCache.key(AgentRole.DEV, messages, "m", 0.7)


def test_developer_file_blocks_become_file_changes() -> None:
    text = (
        "I'll add the route.\n\n"
        "File: routes/health.php\n"
        "```php\n<?php return 'ok';\n```\n\n"
        "**Path:** `tests/HealthTest.php`\n"
        "```php\n<?php // test\n```\n"
    )
    data = classify_response(AgentRole.DEV, text)
    assert [change["path"] for change in data["file_changes"]] == ["routes/health.php", "tests/HealthTest.php"]
    assert extract_file_blocks(text)[0]["content"] == "<?php return 'ok';\n"


def test_structured_keys_win_over_other_shapes() -> None:
    payload = {"file_changes": [{"path": "a.txt", "content": "x"}], "notes": "hi"}
    text = "Result:\n```json\n" + json.dumps(payload) + "\n```\nFile: b.txt\n```\ny\n```\n"
    assert classify_response(AgentRole.DEV, text) == payload


def test_plain_json_and_prose_classification() -> None:
    assert classify_response(AgentRole.BA, '{"requirements": ["fast"]}') == {"requirements": ["fast"]}
    assert classify_response(AgentRole.QA, "All good.") == {"response": "All good."}
    doc = classify_response(AgentRole.DOC, "Docs:\n```markdown\n# Health\n```")
    assert doc["files"] == [{"language": "markdown", "content": "# Health\n"}]
