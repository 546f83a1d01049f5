from __future__ import annotations

import json

import pytest

from ao.errors import PlanParseFailed
from ao.memory.schema import AgentRole
from ao.planning import (
    MilestoneDraft,
    default_milestone_plan,
    infer_role,
    parse_action_plan,
    parse_actions,
    parse_milestone_plan,
    parse_milestones,
    repair_truncated_json,
)
from ao.planning.actions import CreateFile, PatchFile, ReplaceFile, RunCommand, UnsupportedAction, UpdateFile
from ao.planning.parser import serialise_milestones

PLAN = {
    "milestones": [
        {"title": "Gather requirements", "description": "Clarify scope", "agent_type": "ba"},
        {"title": "Build the endpoint", "description": "Write the handler", "agent_type": "dev"},
        {"title": "Verify behaviour", "description": "Run the suite", "agent_type": "qa"},
    ]
}


def _titles(drafts):
    return [draft.title for draft in drafts]


def test_serialised_plan_parses_back() -> None:
    drafts = [
        MilestoneDraft(title="Gather requirements", description="Clarify scope", role=AgentRole.BA),
        MilestoneDraft(title="Build it", description="Code", role=AgentRole.DEV, input_data={"files": ["a.py"]}),
    ]
    parsed = parse_milestones(serialise_milestones(drafts))
    assert [(d.title, d.description, d.role, d.input_data) for d in parsed] == [
        (d.title, d.description, d.role, d.input_data) for d in drafts
    ]


@pytest.mark.parametrize("cut", [1, 2, 3])
def test_truncated_plan_is_repaired(cut: int) -> None:
    text = json.dumps(PLAN)
    assert text.endswith('"}]}')
    truncated = text[:-cut]

    drafts = parse_milestones(truncated)

    assert _titles(drafts) == [item["title"] for item in PLAN["milestones"]]
    assert [draft.role for draft in drafts] == [AgentRole.BA, AgentRole.DEV, AgentRole.QA]


def test_truncation_inside_string_closes_the_string() -> None:
    text = json.dumps(PLAN)
    cut_at = text.index("Run the suite") + 3
    drafts = parse_milestones(text[:cut_at])
    assert _titles(drafts) == ["Gather requirements", "Build the endpoint", "Verify behaviour"]
    assert drafts[2].description == "Run"


def test_repair_trims_trailing_prose() -> None:
    repaired = repair_truncated_json('{"milestones": []} and that is all')
    assert repaired == '{"milestones": []}'


def test_plan_inside_fence_with_prose() -> None:
    text = "Sure! Here is my plan:\n```json\n" + json.dumps(PLAN, indent=2) + "\n```\nLet me know."
    assert len(parse_milestones(text)) == 3


def test_plan_with_bom_zero_width_and_trailing_commas() -> None:
    text = '\ufeff{"milestones": [\u200b{"title": "Write docs", "agent_type": "Documentation",},],}'
    drafts = parse_milestones(text)
    assert _titles(drafts) == ["Write docs"]
    assert drafts[0].role == AgentRole.DOC


def test_plan_nested_in_wrapper_string() -> None:
    wrapped = json.dumps({"response": "Plan follows " + json.dumps(PLAN)})
    assert len(parse_milestones(wrapped)) == 3


def test_bare_array_plan() -> None:
    text = "Steps:\n" + json.dumps(PLAN["milestones"]) + "\nDone."
    assert _titles(parse_milestones(text)) == [item["title"] for item in PLAN["milestones"]]


def test_python_literal_plan() -> None:
    text = "{'milestones': [{'title': 'Implement parser', 'agent_type': None}]}"
    drafts = parse_milestones(text)
    assert _titles(drafts) == ["Implement parser"]
    assert drafts[0].role == AgentRole.DEV


def test_markdown_headings_plan() -> None:
    text = (
        "# Milestones\n"
        "## Milestone 1: Requirements analysis\n"
        "Role: Business Analyst\n"
        "Understand what the user needs.\n"
        "## Milestone 2: Write tests\n"
        "Cover the new behaviour.\n"
    )
    drafts = parse_milestones(text)
    assert _titles(drafts) == ["Requirements analysis", "Write tests"]
    assert drafts[0].role == AgentRole.BA
    assert drafts[0].description == "Understand what the user needs."
    assert drafts[1].role == AgentRole.QA


def test_unknown_role_falls_back_to_title_keywords() -> None:
    text = json.dumps({"milestones": [{"title": "Design the settings UI", "agent_type": "wizard"}]})
    assert parse_milestones(text)[0].role == AgentRole.UX


@pytest.mark.parametrize(
    ("title", "role"),
    [
        ("Project planning", AgentRole.PM),
        ("Requirements analysis", AgentRole.BA),
        ("UI design", AgentRole.UX),
        ("System architecture", AgentRole.ARCH),
        ("Implement feature", AgentRole.DEV),
        ("Run tests", AgentRole.QA),
        ("Update documentation", AgentRole.DOC),
        ("Something else", AgentRole.DEV),
    ],
)
def test_infer_role(title: str, role: AgentRole) -> None:
    assert infer_role(title) == role


def test_unparseable_plan_is_an_error_value() -> None:
    result = parse_milestone_plan("I could not come up with anything useful.")
    assert not result.ok
    assert isinstance(result.error, PlanParseFailed)
    assert parse_milestones("") == []
    assert parse_milestones(None) == []


def test_default_plan_shape() -> None:
    plan = default_milestone_plan()
    assert [(d.title, d.role) for d in plan] == [
        ("Requirements Analysis", AgentRole.BA),
        ("Implementation", AgentRole.DEV),
        ("Testing", AgentRole.QA),
    ]


def test_parse_actions_from_file_changes_and_actions() -> None:
    text = "```json\n" + json.dumps(
        {
            "file_changes": [
                {"path": "src/app.py", "content": "print('hi')\n", "type": "create"},
                {"path": "README.md", "content": "# Demo\n", "type": "update"},
                {"path": "setup.cfg", "type": "update", "patches": [{"search": "a", "replace": "b"}]},
                {"path": "notes.txt", "content": "x"},
            ]
        }
    ) + "\n```"
    actions = parse_actions(text)
    assert [type(action) for action in actions] == [CreateFile, UpdateFile, PatchFile, ReplaceFile]
    assert actions[2].edits[0].kind == "replace"
    assert actions[2].edits[0].search == "a"
    assert actions[2].edits[0].content == "b"


def test_parse_actions_accepts_aliases_and_keeps_unknown_kinds() -> None:
    text = json.dumps(
        {
            "actions": [
                {"type": "shell", "command": "npm test", "cwd": "web"},
                {"type": "teleport", "path": "x"},
            ]
        }
    )
    actions = parse_actions(text)
    assert actions[0] == RunCommand(command="npm test", cwd="web")
    assert isinstance(actions[1], UnsupportedAction)
    assert actions[1].name == "teleport"


def test_parse_action_plan_reads_a_bare_action_array_from_prose() -> None:
    text = 'Apply these:\n[{"type": "create_folder", "path": "app/Coupons"}, {"type": "run_command", "command": "ls"}]\nDone.'
    plan = parse_action_plan(text)
    assert plan.ok
    assert [type(action).__name__ for action in plan.value] == ["CreateFolder", "RunCommand"]


def test_parse_action_plan_reports_missing_actions() -> None:
    plan = parse_action_plan("I could not decide what to change.")
    assert not plan.ok
    assert isinstance(plan.error, PlanParseFailed)
