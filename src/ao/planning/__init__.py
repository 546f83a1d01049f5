"""Plan and action recovery helpers."""

from .actions import Action, FileEdit, action_from_mapping, action_to_dict, actions_from_file_changes
from .flows import FlowStep, bug_fix_flow, flow_step, upgrade_flow, uses_planner
from .parser import (
    MilestoneDraft,
    default_milestone_plan,
    extract_structured,
    infer_role,
    parse_action_plan,
    parse_actions,
    parse_milestone_plan,
    parse_milestones,
    repair_truncated_json,
)

__all__ = [
    "Action",
    "FileEdit",
    "FlowStep",
    "MilestoneDraft",
    "action_from_mapping",
    "action_to_dict",
    "actions_from_file_changes",
    "bug_fix_flow",
    "default_milestone_plan",
    "extract_structured",
    "flow_step",
    "infer_role",
    "parse_action_plan",
    "parse_actions",
    "parse_milestone_plan",
    "parse_milestones",
    "repair_truncated_json",
    "upgrade_flow",
    "uses_planner",
]
