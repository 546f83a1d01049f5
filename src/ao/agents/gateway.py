"""Role-specific prompting, response classification and interaction logging."""

from __future__ import annotations

import hashlib
import json
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..memory.schema import AgentRole, InteractionLog, InteractionStatus, Milestone, Task
from ..memory.store import MemoryStore
from ..models.llm_client import (
    ChatResponse,
    LLMClient,
    LLMClientError,
    LLMTimeoutError,
    Message,
)
from ..planning.parser import decode_json, extract_structured, iter_fenced_blocks
from ..prompts import render_system_prompt, render_user_message
from ..utils.slug import slugify

LOGGER = logging.getLogger(__name__)

STRUCTURED_KEYS: Tuple[str, ...] = ("file_changes", "milestones", "actions")
_CODE_ROLES = (AgentRole.DEV, AgentRole.DOC)
_FILE_HEADER_RE = re.compile(
    r"^[ \t]*(?:[#*]+[ \t]*)?(?:File|Path|Update|Create)[ \t]*:[`* \t]*([^\s`*]+)[`*]*[ \t]*\r?\n"
    r"[ \t]*```[ \t]*([A-Za-z0-9_+-]*)[ \t]*\r?\n(.*?)```",
    re.IGNORECASE | re.MULTILINE | re.DOTALL,
)


@dataclass(slots=True)
class AgentResult:
    """Normalised outcome of one agent call."""

    success: bool
    data: Dict[str, Any]
    raw_text: str
    cached: bool = False
    error: Optional[str] = None
    tokens_used: int = 0

    @property
    def structured(self) -> bool:
        return any(key in self.data for key in STRUCTURED_KEYS)


class ResponseCache:
    """In-memory TTL cache of model replies keyed by the full request."""

    def __init__(self, ttl_seconds: float = 3600.0, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, ChatResponse]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def key(role: AgentRole, messages: Sequence[Message], model: str, temperature: float) -> str:
        payload = json.dumps(
            {"role": role.value, "messages": list(messages), "model": model, "temperature": temperature},
            sort_keys=True,
            separators=(",", ":"),
        )
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    def get(self, key: str) -> Optional[ChatResponse]:
        if self.ttl_seconds <= 0:
            return None
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, response = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return response

    def put(self, key: str, response: ChatResponse) -> None:
        if self.ttl_seconds <= 0:
            return
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl_seconds, response)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def extract_file_blocks(text: str) -> List[Dict[str, Any]]:
    """Collect ``File: path`` headers followed by a fenced code block."""
    changes: List[Dict[str, Any]] = []
    for match in _FILE_HEADER_RE.finditer(text):
        path = match.group(1).strip().strip(":")
        content = match.group(3)
        if path:
            changes.append({"path": path, "content": content, "type": "create_or_update"})
    return changes


def classify_response(role: AgentRole, text: str) -> Dict[str, Any]:
    """Turn raw model text into the data payload for ``role``.

    Structured JSON carrying ``file_changes``/``milestones``/``actions``
    wins; code roles then fall back to named file blocks and bare code
    fences; any other JSON object is kept as-is; everything else is
    wrapped as ``{"response": text}``.
    """
    payload = extract_structured(text, STRUCTURED_KEYS)
    if payload is not None:
        return payload

    if role == AgentRole.DEV:
        changes = extract_file_blocks(text)
        if changes:
            return {"file_changes": changes}

    whole = decode_json(text)
    if isinstance(whole, dict) and whole:
        return whole
    for language, body in iter_fenced_blocks(text):
        if language in ("", "json"):
            candidate = decode_json(body)
            if isinstance(candidate, dict) and candidate:
                return candidate

    if role in _CODE_ROLES:
        files = [
            {"language": language or "text", "content": body}
            for language, body in iter_fenced_blocks(text)
            if body.strip()
        ]
        if files:
            return {"files": files, "response": text}
    return {"response": text}


class AgentGateway:
    """Render role prompts, call the model, classify and log every exchange."""

    def __init__(
        self,
        client: LLMClient,
        store: MemoryStore,
        *,
        cache: Optional[ResponseCache] = None,
        templates_dir: Optional[Path] = None,
        logs_dir: Optional[Path] = None,
        stream: bool = False,
    ) -> None:
        self.client = client
        self.store = store
        self.cache = cache if cache is not None else ResponseCache()
        self.templates_dir = templates_dir
        self.logs_dir = logs_dir
        self.stream = stream

    def build_messages(self, role: AgentRole, context: Mapping[str, Any]) -> List[Message]:
        return [
            {"role": "system", "content": render_system_prompt(role, self.templates_dir)},
            {"role": "user", "content": render_user_message(context)},
        ]

    def execute(
        self,
        role: AgentRole,
        context: Mapping[str, Any],
        *,
        task_id: Optional[str] = None,
        milestone_id: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> AgentResult:
        """Run one agent exchange.

        Every failure (transport, timeout, empty reply or anything else the
        client raises) is logged and then re-raised so the caller can fail
        the current milestone.
        """
        role = AgentRole(role)
        messages = self.build_messages(role, context)
        cache_key = ResponseCache.key(role, messages, self.client.model, self.client.temperature)
        correlation = {"task_id": task_id, "milestone_id": milestone_id, "run_id": run_id}

        cached = self.cache.get(cache_key)
        if cached is not None:
            data = classify_response(role, cached.content)
            self._log(
                role,
                messages,
                correlation,
                status=InteractionStatus.CACHE_HIT,
                response={"content": cached.content},
                metadata={"cache_key": cache_key},
            )
            LOGGER.info("Agent %s served from cache (task=%s)", role.value, task_id)
            return AgentResult(success=True, data=data, raw_text=cached.content, cached=True)

        started = time.monotonic()
        try:
            if self.stream:
                response = self.client.chat_streaming(messages, role=role.value, correlation=correlation)
            else:
                response = self.client.chat(messages, role=role.value, correlation=correlation)
        except LLMClientError as error:
            status = InteractionStatus.TIMEOUT if isinstance(error, LLMTimeoutError) else InteractionStatus.ERROR
            self._log(
                role,
                messages,
                correlation,
                status=status,
                error=error,
                elapsed_ms=int((time.monotonic() - started) * 1000),
            )
            LOGGER.error("Agent %s call failed (task=%s): %s", role.value, task_id, error)
            raise
        except Exception as error:
            self._log(
                role,
                messages,
                correlation,
                status=InteractionStatus.ERROR,
                error=error,
                elapsed_ms=int((time.monotonic() - started) * 1000),
                metadata={"exception": type(error).__name__},
            )
            LOGGER.exception("Agent %s call raised unexpectedly (task=%s)", role.value, task_id)
            raise

        elapsed_ms = int((time.monotonic() - started) * 1000)
        self.cache.put(cache_key, response)
        data = classify_response(role, response.content)
        self._log(
            role,
            messages,
            correlation,
            status=InteractionStatus.SUCCESS,
            response={"content": response.content, "data": data},
            tokens=response.tokens_used,
            elapsed_ms=elapsed_ms,
            model=response.model,
        )
        LOGGER.info(
            "Agent %s responded in %dms (%d tokens, task=%s)",
            role.value,
            elapsed_ms,
            response.tokens_used,
            task_id,
        )
        return AgentResult(
            success=bool(data),
            data=data,
            raw_text=response.content,
            tokens_used=response.tokens_used,
        )

    # Role helpers --------------------------------------------------------------------
    def plan_task(self, task: Task, **ids: Any) -> AgentResult:
        return self.execute(AgentRole.PM, _task_context(task), task_id=task.id, **ids)

    def analyze_requirements(self, task: Task, milestone: Milestone, **ids: Any) -> AgentResult:
        return self.consult(AgentRole.BA, task, milestone, {}, **ids)

    def design_ux(self, task: Task, milestone: Milestone, **ids: Any) -> AgentResult:
        return self.consult(AgentRole.UX, task, milestone, {}, **ids)

    def design_architecture(self, task: Task, milestone: Milestone, files: Sequence[str], **ids: Any) -> AgentResult:
        return self.consult(AgentRole.ARCH, task, milestone, {"project_files": list(files)}, **ids)

    def generate_code(
        self,
        task: Task,
        milestone: Milestone,
        previous: Mapping[str, Any],
        files: Sequence[str] = (),
        **ids: Any,
    ) -> AgentResult:
        extra = {"previous_milestones": dict(previous), "project_files": list(files)}
        return self.consult(AgentRole.DEV, task, milestone, extra, **ids)

    def restructure_actions(self, task: Task, milestone: Milestone, raw_text: str, **ids: Any) -> AgentResult:
        """Ask the developer role to restate a free-form answer as JSON actions."""
        extra = {
            "instruction": "Convert the previous answer into file_changes/actions JSON only.",
            "previous_answer": raw_text,
        }
        return self.consult(AgentRole.DEV, task, milestone, extra, **ids)

    def review_tests(self, task: Task, milestone: Milestone, test_report: Mapping[str, Any], **ids: Any) -> AgentResult:
        return self.consult(AgentRole.QA, task, milestone, {"test_results": dict(test_report)}, **ids)

    def generate_documentation(
        self,
        task: Task,
        milestone: Milestone,
        previous: Mapping[str, Any],
        **ids: Any,
    ) -> AgentResult:
        return self.consult(
            AgentRole.DOC, task, milestone, {"previous_milestones": dict(previous)}, **ids
        )

    def consult(
        self,
        role: AgentRole,
        task: Task,
        milestone: Milestone,
        extra: Mapping[str, Any],
        **ids: Any,
    ) -> AgentResult:
        context = _task_context(task)
        context.update(
            {
                "milestone": milestone.title,
                "milestone_description": milestone.description,
                "milestone_input": milestone.input_data,
            }
        )
        context.update(extra)
        return self.execute(role, context, task_id=task.id, milestone_id=milestone.id, **ids)

    # Logging -------------------------------------------------------------------------
    def _log(
        self,
        role: AgentRole,
        messages: List[Message],
        correlation: Mapping[str, Any],
        *,
        status: InteractionStatus,
        response: Optional[Dict[str, Any]] = None,
        error: Optional[BaseException] = None,
        tokens: int = 0,
        elapsed_ms: int = 0,
        model: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        entry = InteractionLog(
            run_id=correlation.get("run_id"),
            task_id=correlation.get("task_id"),
            milestone_id=correlation.get("milestone_id"),
            role=role,
            prompt=list(messages),
            response=response,
            model=model or self.client.model,
            tokens_used=tokens,
            execution_time_ms=elapsed_ms,
            status=status,
            error_message=str(error) if error is not None else None,
            metadata=metadata or {},
        )
        self.store.record_interaction(entry)
        self._write_artifact(entry)

    def _write_artifact(self, entry: InteractionLog) -> None:
        """Persist a JSON copy of the exchange for later debugging."""
        if self.logs_dir is None:
            return
        logs_root = Path(self.logs_dir) / "interactions"
        try:
            logs_root.mkdir(parents=True, exist_ok=True)
        except OSError:
            return
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        parts = [timestamp, entry.role.value, entry.status.value]
        if entry.task_id:
            parts.append(slugify(entry.task_id, max_length=12))
        path = logs_root / ("-".join(parts) + ".json")
        try:
            path.write_text(entry.model_dump_json(indent=2), encoding="utf-8")
        except OSError as error:
            LOGGER.debug("Unable to write interaction artifact %s: %s", path, error)


def _task_context(task: Task) -> Dict[str, Any]:
    return {
        "task_title": task.title,
        "task_type": task.type.value,
        "task_description": task.description,
        "task_content": task.content,
    }


__all__ = [
    "AgentGateway",
    "AgentResult",
    "ResponseCache",
    "STRUCTURED_KEYS",
    "classify_response",
    "extract_file_blocks",
]
