"""Fixed milestone flows for task types that skip the planner.

Bug and upgrade tasks follow a known sequence of steps; feature and
maintenance tasks are planned by the ``pm`` agent instead. Each templated
milestone records its step under ``metadata["step"]`` so the engine can
pick the step-specific handler.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, List, Mapping, Optional

from ..memory.schema import AgentRole, TaskType
from .parser import MilestoneDraft

STEP_KEY = "step"


class FlowStep(str, Enum):
    BUG_ANALYSIS = "bug_analysis"
    BUG_FIX = "bug_fix"
    BUG_VERIFICATION = "bug_verification"
    UPGRADE_ANALYSIS = "upgrade_analysis"
    UPGRADE_PLANNING = "upgrade_planning"
    UPGRADE_BACKUP = "upgrade_backup"
    UPGRADE_EXECUTION = "upgrade_execution"
    UPGRADE_VALIDATION = "upgrade_validation"


def uses_planner(task_type: TaskType) -> bool:
    """Feature and maintenance work is planned; bugs and upgrades use templates."""
    if task_type in (TaskType.FEATURE, TaskType.MAINTENANCE):
        return True
    if task_type in (TaskType.BUG, TaskType.UPGRADE):
        return False
    raise ValueError(f"Unknown task type {task_type!r}")


def flow_step(metadata: Mapping[str, Any]) -> Optional[FlowStep]:
    value = metadata.get(STEP_KEY)
    if not isinstance(value, str):
        return None
    try:
        return FlowStep(value)
    except ValueError:
        return None


def _draft(step: FlowStep, title: str, description: str, role: AgentRole, **input_data: Any) -> MilestoneDraft:
    return MilestoneDraft(
        title=title,
        description=description,
        role=role,
        input_data={key: value for key, value in input_data.items() if value is not None},
        metadata={STEP_KEY: step.value},
    )


def bug_fix_flow(bug_description: str, test_report: Mapping[str, Any]) -> List[MilestoneDraft]:
    """Analysis (qa) -> fix (dev) -> verification (qa).

    ``test_report`` is the test run taken before any change, so the analysis
    sees the failures the bug currently causes.
    """
    return [
        _draft(
            FlowStep.BUG_ANALYSIS,
            "Bug Analysis",
            "Analyze the bug and identify root cause",
            AgentRole.QA,
            test_results=dict(test_report),
            bug_description=bug_description or None,
        ),
        _draft(
            FlowStep.BUG_FIX,
            "Bug Fix Implementation",
            "Generate and apply code fix for the bug",
            AgentRole.DEV,
        ),
        _draft(
            FlowStep.BUG_VERIFICATION,
            "Bug Fix Verification",
            "Verify that the bug fix works correctly",
            AgentRole.QA,
        ),
    ]


def upgrade_flow(upgrade_target: Mapping[str, Any], manifests: Mapping[str, Any]) -> List[MilestoneDraft]:
    """Analysis (arch) -> planning (pm) -> backup (dev) -> execution (dev) -> validation (qa)."""
    return [
        _draft(
            FlowStep.UPGRADE_ANALYSIS,
            "Upgrade Analysis",
            "Analyze current versions and upgrade requirements",
            AgentRole.ARCH,
            manifests=dict(manifests) or None,
            upgrade_target=dict(upgrade_target) or None,
        ),
        _draft(
            FlowStep.UPGRADE_PLANNING,
            "Upgrade Planning",
            "Create detailed upgrade execution plan",
            AgentRole.PM,
        ),
        _draft(
            FlowStep.UPGRADE_BACKUP,
            "Backup Creation",
            "Create backup of current state before upgrade",
            AgentRole.DEV,
        ),
        _draft(
            FlowStep.UPGRADE_EXECUTION,
            "Upgrade Execution",
            "Execute the planned upgrade steps",
            AgentRole.DEV,
        ),
        _draft(
            FlowStep.UPGRADE_VALIDATION,
            "Upgrade Validation",
            "Validate that upgrade completed successfully",
            AgentRole.QA,
        ),
    ]


__all__ = [
    "STEP_KEY",
    "FlowStep",
    "bug_fix_flow",
    "flow_step",
    "upgrade_flow",
    "uses_planner",
]
