"""Recover milestone plans and action lists from free-form model output.

Model replies arrive as clean JSON, JSON wrapped in prose or Markdown
fences, JSON cut off mid-stream, or plain Markdown headings. The helpers
below try a fixed cascade of strategies and return the first one that
yields usable items.
"""

from __future__ import annotations

import ast
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..errors import PlanParseFailed
from ..memory.schema import AgentRole
from ..result import Err, Ok, Result
from .actions import Action, action_from_mapping, actions_from_file_changes

LOGGER = logging.getLogger(__name__)

WRAPPER_KEYS: Tuple[str, ...] = ("raw_content", "response", "content", "message", "text")
MILESTONE_KEY = "milestones"
ACTION_KEYS: Tuple[str, ...] = ("actions", "file_changes")

_ZERO_WIDTH = {
    0x200B: None,
    0x200C: None,
    0x200D: None,
    0x2060: None,
    0xFEFF: None,
    0x201C: '"',
    0x201D: '"',
    0x2018: "'",
    0x2019: "'",
    0x00A0: " ",
}
_FENCE_RE = re.compile(r"```[ \t]*([A-Za-z0-9_+-]*)[ \t]*\r?\n(.*?)```", re.DOTALL)
_TRAILING_COMMA_RE = re.compile(r",(\s*[}\]])")
_LAST_RESORT_RE = re.compile(r'"milestones"\s*:\s*(\[.*?\])\s*\}', re.DOTALL)
_HEADING_RE = re.compile(
    r"^\s*#+\s*(?:milestone|step)(?![a-z])\s*\d*\s*(?:[:.)\-]\s*)?(.*?)\s*#*\s*$",
    re.IGNORECASE,
)
_ROLE_LINE_RE = re.compile(
    r"^\s*[*_-]*\s*(?:agent(?:[ _]type)?|role)\s*[*_]*\s*[:=]\s*[*_`]*([A-Za-z ]+?)[*_`]*\s*$",
    re.IGNORECASE,
)

_ROLE_KEYWORDS: Tuple[Tuple[AgentRole, re.Pattern[str]], ...] = (
    (AgentRole.PM, re.compile(r"\b(?:plan\w*|manag\w*)\b", re.IGNORECASE)),
    (AgentRole.BA, re.compile(r"\b(?:requirement\w*|analy[sz]\w*)\b", re.IGNORECASE)),
    (AgentRole.UX, re.compile(r"\b(?:design\w*|ui|ux)\b", re.IGNORECASE)),
    (AgentRole.ARCH, re.compile(r"\barchitect\w*\b", re.IGNORECASE)),
    (AgentRole.DEV, re.compile(r"\b(?:code|coding|implement\w*|develop\w*)\b", re.IGNORECASE)),
    (AgentRole.QA, re.compile(r"\b(?:test\w*|qa|quality)\b", re.IGNORECASE)),
    (AgentRole.DOC, re.compile(r"\b(?:doc|docs|document\w*)\b", re.IGNORECASE)),
)


@dataclass(slots=True)
class MilestoneDraft:
    """Milestone descriptor recovered from a plan, before it is persisted."""

    title: str
    description: str = ""
    role: AgentRole = AgentRole.DEV
    input_data: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "agent_type": self.role.value,
            "input_data": dict(self.input_data),
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> Optional["MilestoneDraft"]:
        title = raw.get("title") or raw.get("name") or raw.get("milestone")
        if not isinstance(title, str) or not title.strip():
            return None
        title = title.strip()
        description = raw.get("description") or raw.get("summary") or ""
        if not isinstance(description, str):
            description = json.dumps(description)
        role: Optional[AgentRole] = None
        for key in ("agent_type", "agent", "role"):
            value = raw.get(key)
            if isinstance(value, str):
                role = AgentRole.from_label(value)
                if role is not None:
                    break
        if role is None:
            role = infer_role(title)
        input_data = raw.get("input_data") or raw.get("inputs") or {}
        metadata = raw.get("metadata") or {}
        return cls(
            title=title,
            description=description.strip(),
            role=role,
            input_data=dict(input_data) if isinstance(input_data, Mapping) else {"value": input_data},
            metadata=dict(metadata) if isinstance(metadata, Mapping) else {"value": metadata},
        )


def default_milestone_plan() -> List[MilestoneDraft]:
    """Three-step plan used when the planner output yields nothing."""
    return [
        MilestoneDraft(
            title="Requirements Analysis",
            description="Analyze and clarify the task requirements",
            role=AgentRole.BA,
            metadata={"default_plan": True},
        ),
        MilestoneDraft(
            title="Implementation",
            description="Implement the required functionality",
            role=AgentRole.DEV,
            metadata={"default_plan": True},
        ),
        MilestoneDraft(
            title="Testing",
            description="Test the implemented functionality",
            role=AgentRole.QA,
            metadata={"default_plan": True},
        ),
    ]


def infer_role(title: str) -> AgentRole:
    """Guess the agent role from keywords in a milestone title."""
    for role, pattern in _ROLE_KEYWORDS:
        if pattern.search(title or ""):
            return role
    return AgentRole.DEV


# Text and JSON primitives ------------------------------------------------------------
def clean_model_text(text: str | None) -> str:
    """Drop zero-width/BOM characters and normalise typographic quotes."""
    if not text:
        return ""
    return text.translate(_ZERO_WIDTH).strip()


def strip_trailing_commas(payload: str) -> str:
    return _TRAILING_COMMA_RE.sub(r"\1", payload)


def decode_json(candidate: str) -> Any | None:
    """Decode JSON leniently; returns ``None`` when nothing parses."""
    candidate = candidate.strip()
    if not candidate:
        return None
    for attempt in (candidate, strip_trailing_commas(candidate)):
        try:
            return json.loads(attempt, strict=False)
        except json.JSONDecodeError:
            continue
    return _coerce_python_literal(candidate)


def _coerce_python_literal(candidate: str) -> Any | None:
    """Fall back to Python literal parsing (single quotes, True/None)."""
    if candidate[:1] not in "{[":
        return None
    try:
        literal = ast.literal_eval(candidate)
    except (SyntaxError, ValueError, MemoryError, RecursionError):
        return None
    return _normalise_literal(literal)


def _normalise_literal(value: Any) -> Any:
    if isinstance(value, dict):
        return {str(key): _normalise_literal(sub) for key, sub in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_normalise_literal(item) for item in value]
    return value


def iter_fenced_blocks(text: str) -> List[Tuple[str, str]]:
    """Return ``(language, body)`` pairs for every Markdown code fence."""
    return [(match.group(1).lower(), match.group(2)) for match in _FENCE_RE.finditer(text)]


def scan_balanced(text: str, opener: str = "{") -> List[Tuple[int, int]]:
    """Locate top-level balanced ``{}`` or ``[]`` spans.

    Brackets inside string literals are ignored and backslash escapes are
    honoured. Returned spans are ``(start, end)`` with ``end`` exclusive.
    """
    closer = "}" if opener == "{" else "]"
    spans: List[Tuple[int, int]] = []
    depth = 0
    start = -1
    in_string = False
    escaped = False
    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"' and depth > 0:
            in_string = True
        elif char == opener:
            if depth == 0:
                start = index
            depth += 1
        elif char == closer and depth > 0:
            depth -= 1
            if depth == 0:
                spans.append((start, index + 1))
    return spans


def repair_truncated_json(text: str) -> str | None:
    """Close a JSON document that was cut off before its final brackets.

    Scans from the first ``{`` or ``[`` tracking string state and the stack
    of open containers. When the document is balanced it is trimmed to the
    end of the outermost value; otherwise an open string is closed, a
    dangling comma dropped, and the missing closers appended. If that still
    does not decode, the tail is cut back to the last complete element.
    """
    starts = [pos for pos in (text.find("{"), text.find("[")) if pos != -1]
    if not starts:
        return None
    begin = min(starts)
    body = text[begin:]

    stack: List[str] = []
    commas: List[Tuple[int, Tuple[str, ...]]] = []
    in_string = False
    escaped = False
    for index, char in enumerate(body):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "{[":
            stack.append("}" if char == "{" else "]")
        elif char in "}]":
            if not stack or stack[-1] != char:
                return None
            stack.pop()
            if not stack:
                return body[: index + 1]
        elif char == ",":
            commas.append((index, tuple(stack)))

    tail = body.rstrip()
    if in_string:
        if escaped:
            tail = tail[:-1]
        tail += '"'
    tail = tail.rstrip()
    if tail.endswith(","):
        tail = tail[:-1]
    candidate = tail + "".join(reversed(stack))
    if decode_json(candidate) is not None:
        return candidate

    for position, open_stack in reversed(commas[-50:]):
        candidate = body[:position].rstrip() + "".join(reversed(open_stack))
        if decode_json(candidate) is not None:
            return candidate
    return None


# Structured extraction ---------------------------------------------------------------
def _unwrap(data: Any, keys: Sequence[str], depth: int = 0) -> Optional[Dict[str, Any]]:
    """Return the first mapping holding one of ``keys``, following wrapper keys."""
    if depth > 4:
        return None
    if isinstance(data, Mapping):
        if any(key in data for key in keys):
            return dict(data)
        for wrapper in WRAPPER_KEYS + ("plan", "data", "result"):
            inner = data.get(wrapper)
            if isinstance(inner, str):
                nested = extract_structured(inner, keys, _depth=depth + 1)
                if nested is not None:
                    return nested
            elif isinstance(inner, (Mapping, list)):
                nested = _unwrap(inner, keys, depth + 1)
                if nested is not None:
                    return nested
    return None


def extract_structured(
    text: str,
    keys: Sequence[str],
    *,
    _depth: int = 0,
) -> Optional[Dict[str, Any]]:
    """Find a JSON object carrying any of ``keys`` inside arbitrary text.

    Tries, in order: the whole text, fenced code blocks, balanced-brace
    objects mentioning one of the keys, and finally brace repair of a
    truncated object.
    """
    cleaned = clean_model_text(text)
    if not cleaned:
        return None

    found = _unwrap(decode_json(cleaned), keys, _depth)
    if found is not None:
        return found

    for language, body in iter_fenced_blocks(cleaned):
        if language not in ("", "json", "javascript", "js"):
            continue
        found = _unwrap(decode_json(body), keys, _depth)
        if found is not None:
            return found

    markers = [f'"{key}"' for key in keys]
    for start, end in scan_balanced(cleaned, "{"):
        span = cleaned[start:end]
        if not any(marker in span for marker in markers):
            continue
        found = _unwrap(decode_json(span), keys, _depth)
        if found is not None:
            return found

    marker_positions = [cleaned.find(marker) for marker in markers if marker in cleaned]
    if marker_positions:
        opening = cleaned.rfind("{", 0, min(marker_positions))
        if opening != -1:
            repaired = repair_truncated_json(cleaned[opening:])
            if repaired is not None:
                found = _unwrap(decode_json(repaired), keys, _depth)
                if found is not None:
                    LOGGER.debug("Recovered truncated JSON payload (%d chars)", len(repaired))
                    return found
    return None


def _drafts(items: Any) -> List[MilestoneDraft]:
    if not isinstance(items, list):
        return []
    drafts: List[MilestoneDraft] = []
    for item in items:
        if isinstance(item, Mapping):
            draft = MilestoneDraft.from_mapping(item)
            if draft is not None:
                drafts.append(draft)
        elif isinstance(item, str) and item.strip():
            drafts.append(MilestoneDraft(title=item.strip(), role=infer_role(item)))
    return drafts


def _from_structured(cleaned: str) -> List[MilestoneDraft]:
    payload = extract_structured(cleaned, (MILESTONE_KEY,))
    if payload is None:
        return []
    return _drafts(payload.get(MILESTONE_KEY))


def _from_arrays(cleaned: str) -> List[MilestoneDraft]:
    whole = decode_json(cleaned)
    if isinstance(whole, list):
        drafts = _drafts(whole)
        if drafts:
            return drafts
    for language, body in iter_fenced_blocks(cleaned):
        if language not in ("", "json"):
            continue
        data = decode_json(body)
        if isinstance(data, list):
            drafts = _drafts(data)
            if drafts:
                return drafts
    for start, end in scan_balanced(cleaned, "["):
        data = decode_json(cleaned[start:end])
        drafts = _drafts(data)
        if drafts:
            return drafts
    return []


def _from_last_resort(cleaned: str) -> List[MilestoneDraft]:
    match = _LAST_RESORT_RE.search(cleaned)
    if not match:
        return []
    return _drafts(decode_json(match.group(1)))


def _from_headings(cleaned: str) -> List[MilestoneDraft]:
    drafts: List[MilestoneDraft] = []
    current: Optional[Dict[str, Any]] = None

    def _flush() -> None:
        if current is None or not current["title"]:
            return
        description = "\n".join(current["lines"]).strip()
        role = current["role"] or infer_role(current["title"])
        drafts.append(MilestoneDraft(title=current["title"], description=description, role=role))

    for line in cleaned.splitlines():
        heading = _HEADING_RE.match(line)
        if heading:
            _flush()
            current = {"title": heading.group(1).strip(" *_`"), "lines": [], "role": None}
            continue
        if current is None:
            continue
        role_line = _ROLE_LINE_RE.match(line)
        if role_line and current["role"] is None:
            role = AgentRole.from_label(role_line.group(1))
            if role is not None:
                current["role"] = role
                continue
        current["lines"].append(line)
    _flush()
    return drafts


_MILESTONE_STRATEGIES: Tuple[Tuple[str, Callable[[str], List[MilestoneDraft]]], ...] = (
    ("structured", _from_structured),
    ("array", _from_arrays),
    ("regex", _from_last_resort),
    ("headings", _from_headings),
)


def parse_milestones(text: str | None) -> List[MilestoneDraft]:
    """Return the milestones found in ``text`` or an empty list."""
    cleaned = clean_model_text(text)
    if not cleaned:
        return []
    for name, strategy in _MILESTONE_STRATEGIES:
        drafts = strategy(cleaned)
        if drafts:
            LOGGER.debug("Parsed %d milestone(s) using %s strategy", len(drafts), name)
            return drafts
    return []


def parse_milestone_plan(text: str | None) -> Result:
    """Result-returning variant of ``parse_milestones``."""
    drafts = parse_milestones(text)
    if not drafts:
        snippet = clean_model_text(text)[:200]
        return Err(PlanParseFailed(f"No milestones recovered from model output: {snippet!r}"))
    return Ok(drafts)


def actions_from_payload(payload: Mapping[str, Any]) -> List[Action]:
    actions: List[Action] = []
    raw_actions = payload.get("actions")
    if isinstance(raw_actions, list):
        actions.extend(action_from_mapping(item) for item in raw_actions if isinstance(item, Mapping))
    raw_changes = payload.get("file_changes")
    if isinstance(raw_changes, list):
        actions.extend(actions_from_file_changes(raw_changes))
    return actions


def parse_actions(text: str | None) -> List[Action]:
    """Return the file/command actions found in ``text`` or an empty list."""
    cleaned = clean_model_text(text)
    if not cleaned:
        return []
    payload = extract_structured(cleaned, ACTION_KEYS)
    if payload is not None:
        return actions_from_payload(payload)
    whole = decode_json(cleaned)
    if isinstance(whole, list):
        return [action_from_mapping(item) for item in whole if isinstance(item, Mapping)]
    for start, end in scan_balanced(cleaned, "["):
        data = decode_json(cleaned[start:end])
        if isinstance(data, list) and data and all(isinstance(item, Mapping) for item in data):
            return [action_from_mapping(item) for item in data]
    return []


def parse_action_plan(text: str | None) -> Result:
    actions = parse_actions(text)
    if not actions:
        return Err(PlanParseFailed("No actions recovered from model output"))
    return Ok(actions)


def serialise_milestones(drafts: Iterable[MilestoneDraft]) -> str:
    return json.dumps({MILESTONE_KEY: [draft.to_dict() for draft in drafts]})


__all__ = [
    "MilestoneDraft",
    "actions_from_payload",
    "clean_model_text",
    "decode_json",
    "default_milestone_plan",
    "extract_structured",
    "infer_role",
    "iter_fenced_blocks",
    "parse_action_plan",
    "parse_actions",
    "parse_milestone_plan",
    "parse_milestones",
    "repair_truncated_json",
    "scan_balanced",
    "serialise_milestones",
    "strip_trailing_commas",
]
