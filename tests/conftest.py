from __future__ import annotations

import json
import logging
import sys
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional, Union

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from ao.agents.gateway import AgentGateway, ResponseCache  # noqa: E402
from ao.config import OrchestratorConfig  # noqa: E402
from ao.engine import MilestoneEngine  # noqa: E402
from ao.memory.store import MemoryStore  # noqa: E402
from ao.models.llm_client import ChatResponse, LLMClient  # noqa: E402
from ao.tools.commands import CommandRunner  # noqa: E402
from ao.tools.files import FileSandbox  # noqa: E402

Reply = Union[str, Exception, Callable[[List[Dict[str, str]]], str]]


class ScriptedLLMClient(LLMClient):
    """LLM double that answers from a per-role queue of canned replies.

    The last reply queued for a role is reused once the queue drains, so a
    single entry answers every call for that role.
    """

    def __init__(self, replies: Optional[Dict[str, List[Reply]]] = None, *, model: str = "scripted-model") -> None:
        super().__init__(model, max_attempts=1, retry_delay=0)
        self._replies: Dict[str, Deque[Reply]] = {
            role: deque(items) for role, items in (replies or {}).items()
        }
        self.calls: List[Dict[str, Any]] = []

    def queue(self, role: str, *replies: Reply) -> None:
        self._replies.setdefault(role, deque()).extend(replies)

    def _raw_chat(self, messages, *, role, correlation) -> ChatResponse:
        self.calls.append({"role": role, "messages": messages, "correlation": correlation})
        queue = self._replies.get(role or "")
        if not queue:
            raise AssertionError(f"No scripted reply for role {role!r}")
        reply = queue.popleft() if len(queue) > 1 else queue[0]
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(messages)
        return ChatResponse(
            content=reply,
            usage={"input_tokens": 11, "output_tokens": 7},
            model=self.model,
        )

    def roles_called(self) -> List[str]:
        return [call["role"] for call in self.calls]


@dataclass(slots=True)
class Workspace:
    """Fixture payload bundling an isolated project root with its store."""

    root: Path
    config: OrchestratorConfig
    store: MemoryStore

    def engine(self, client: LLMClient, *, worker_id: str = "worker-test", **kwargs: Any) -> MilestoneEngine:
        gateway = AgentGateway(
            client,
            self.store,
            cache=ResponseCache(0),
            logs_dir=self.config.paths.logs,
        )
        return MilestoneEngine(
            self.store,
            gateway,
            FileSandbox(self.root),
            CommandRunner([self.root]),
            worker_id=worker_id,
            **kwargs,
        )


@pytest.fixture(autouse=True)
def _restore_root_logging():
    """CLI commands install root handlers bound to the runner's streams; undo that."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)


@pytest.fixture()
def workspace(tmp_path: Path) -> Workspace:
    root = tmp_path / "project"
    root.mkdir()
    config = OrchestratorConfig.for_workspace(root, data_dir=tmp_path / "data")
    store = MemoryStore(config.paths.db_path)
    try:
        yield Workspace(root=root, config=config, store=store)
    finally:
        store.close()


@pytest.fixture()
def store(tmp_path: Path) -> MemoryStore:
    with MemoryStore(tmp_path / "ao.sqlite") as memory_store:
        yield memory_store


def milestone_plan(*items: Dict[str, str]) -> str:
    """Render a planner reply the way the model usually answers: prose plus fenced JSON."""
    body = json.dumps({"milestones": list(items)}, indent=2)
    return f"Here is the plan for this task.\n\n```json\n{body}\n```\n"


def file_changes(*changes: Dict[str, Any]) -> str:
    return json.dumps({"file_changes": list(changes)})
