"""Prompt templates and helpers shared across agent roles."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .memory.schema import AgentRole

LOGGER = logging.getLogger(__name__)

JSON_RESPONSE_INSTRUCTION = (
    "Return only JSON. Emit a single JSON object matching the response format below. "
    "Do not include explanations or trailing text. "
    "Use double-quoted keys and strings."
)

_RESPONSE_FORMATS: Dict[AgentRole, str] = {
    AgentRole.PM: (
        '{"milestones": [{"title": str, "description": str, '
        '"agent_type": "ba|ux|arch|dev|qa|doc", "input_data": {}}]}'
    ),
    AgentRole.BA: '{"requirements": [str], "acceptance_criteria": [str], "notes": str}',
    AgentRole.UX: '{"screens": [str], "interactions": [str], "notes": str}',
    AgentRole.ARCH: '{"components": [str], "files_to_touch": [str], "decisions": [str]}',
    AgentRole.DEV: (
        '{"file_changes": [{"path": str, "type": "create|update|create_or_update|patch", '
        '"content": str, "patches": [{"type": "replace|insert|append|prepend", '
        '"search": str, "after": str, "content": str}]}], '
        '"actions": [{"type": "create_folder|move_file|delete_file|run_command", ...}]}'
    ),
    AgentRole.QA: '{"passed": bool, "issues": [str], "recommendations": [str]}',
    AgentRole.DOC: '{"documentation": [{"path": str, "content": str}]}',
}

UPGRADE_STEPS_FORMAT = (
    '{"upgrade_steps": [{"title": str, "command": str, "args": [str], '
    '"file_changes": [{"path": str, "content": str}]}]}'
)

_ROLE_BRIEFS: Dict[AgentRole, str] = {
    AgentRole.PM: (
        "Break the task into a short ordered list of milestones. Assign each milestone "
        "to the single role best suited to it. Keep the plan minimal."
    ),
    AgentRole.BA: "Clarify the task requirements and list testable acceptance criteria.",
    AgentRole.UX: "Describe the user-facing flow and interface changes the task needs.",
    AgentRole.ARCH: (
        "Review the listed project files and decide which components and files the "
        "implementation should touch."
    ),
    AgentRole.DEV: (
        "Implement the milestone. Express every change as file_changes or actions with "
        "workspace-relative paths. Prefer patches for small edits to existing files."
    ),
    AgentRole.QA: "Review the test run output and report whether the work meets the requirements.",
    AgentRole.DOC: "Write or update project documentation for the delivered change.",
}


def render_role_brief(role: AgentRole) -> str:
    """Return the canonical brief for ``role``."""
    return (
        f"# {role.label}\n"
        f"You are the {role.label} agent in an automated software delivery pipeline.\n\n"
        f"{_ROLE_BRIEFS[role]}"
    )


def load_role_template(role: AgentRole, templates_dir: Optional[Path] = None) -> str:
    """Load ``{role}.md`` from ``templates_dir`` or fall back to the built-in brief."""
    if templates_dir is not None:
        candidate = Path(templates_dir) / role.template_name
        if candidate.is_file():
            try:
                return candidate.read_text(encoding="utf-8").strip()
            except OSError as error:
                LOGGER.warning("Unable to read prompt template %s: %s", candidate, error)
    return render_role_brief(role)


def render_system_prompt(role: AgentRole, templates_dir: Optional[Path] = None) -> str:
    template = load_role_template(role, templates_dir)
    return (
        f"{template}\n\n## Response Format\n{JSON_RESPONSE_INSTRUCTION}\n"
        f"{_RESPONSE_FORMATS[role]}"
    )


def _render_value(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    return json.dumps(value, indent=2, sort_keys=True, default=str)


def render_user_message(context: Mapping[str, Any]) -> str:
    """Serialise context as ``KEY:`` blocks in a stable order."""
    blocks = []
    for key in sorted(context):
        value = context[key]
        if value in (None, "", [], {}):
            continue
        blocks.append(f"{key.upper()}:\n{_render_value(value)}")
    return "\n\n".join(blocks)


__all__ = [
    "JSON_RESPONSE_INSTRUCTION",
    "UPGRADE_STEPS_FORMAT",
    "load_role_template",
    "render_role_brief",
    "render_system_prompt",
    "render_user_message",
]
