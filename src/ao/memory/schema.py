"""Typed records tracked by the orchestrator memory store."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class TaskStatus(str, Enum):
    """Lifecycle states for a task."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    def can_transition_to(self, target: "TaskStatus") -> bool:
        return TaskStatus(target) in _TASK_TRANSITIONS[self]

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


_TASK_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING, TaskStatus.CANCELLED}),
    TaskStatus.CANCELLED: frozenset({TaskStatus.PENDING}),
}


class TaskType(str, Enum):
    """Kinds of work; each carries its own retry budget and time limit."""

    BUG = "bug"
    FEATURE = "feature"
    UPGRADE = "upgrade"
    MAINTENANCE = "maintenance"

    @property
    def max_attempts(self) -> int:
        return {"bug": 2, "feature": 2, "upgrade": 1, "maintenance": 2}[self.value]

    @property
    def timeout_seconds(self) -> int:
        return {"bug": 3600, "feature": 7200, "upgrade": 10800, "maintenance": 7200}[self.value]


class AgentRole(str, Enum):
    """Closed set of milestone specialisations."""

    PM = "pm"
    BA = "ba"
    UX = "ux"
    ARCH = "arch"
    DEV = "dev"
    QA = "qa"
    DOC = "doc"

    @property
    def label(self) -> str:
        return _ROLE_LABELS[self]

    @property
    def template_name(self) -> str:
        return f"{self.value}.md"

    @classmethod
    def from_label(cls, value: str) -> Optional["AgentRole"]:
        """Resolve a role code or display label; returns ``None`` when unknown."""
        cleaned = (value or "").strip().lower()
        if not cleaned:
            return None
        for role in cls:
            if cleaned in (role.value, role.label.lower()):
                return role
        return None


_ROLE_LABELS: Dict[AgentRole, str] = {
    AgentRole.PM: "Project Manager",
    AgentRole.BA: "Business Analyst",
    AgentRole.UX: "UX Designer",
    AgentRole.ARCH: "Architect",
    AgentRole.DEV: "Developer",
    AgentRole.QA: "Quality Assurance",
    AgentRole.DOC: "Documentation",
}


class MilestoneStatus(str, Enum):
    """Lifecycle states for a milestone."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    def can_transition_to(self, target: "MilestoneStatus") -> bool:
        return MilestoneStatus(target) in _MILESTONE_TRANSITIONS[self]


_MILESTONE_TRANSITIONS: Dict[MilestoneStatus, FrozenSet[MilestoneStatus]] = {
    MilestoneStatus.PENDING: frozenset({MilestoneStatus.IN_PROGRESS, MilestoneStatus.SKIPPED}),
    MilestoneStatus.IN_PROGRESS: frozenset({MilestoneStatus.COMPLETED, MilestoneStatus.FAILED}),
    MilestoneStatus.COMPLETED: frozenset(),
    MilestoneStatus.FAILED: frozenset(),
    MilestoneStatus.SKIPPED: frozenset(),
}


class InteractionStatus(str, Enum):
    """Outcome recorded for one exchange with the language model."""

    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    CACHE_HIT = "cache_hit"


class Task(RecordModel):
    """Top-level unit of orchestrated work."""

    id: str = Field(default_factory=new_id)
    type: TaskType = TaskType.FEATURE
    title: str
    description: str = ""
    content: Dict[str, Any] = Field(default_factory=dict)
    status: TaskStatus = TaskStatus.PENDING
    priority: int = 3
    locked_by: Optional[str] = None
    lock_expires_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    attempts: int = 0
    last_error: Optional[str] = None
    failed_milestone_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if not self.locked_by or self.lock_expires_at is None:
            return False
        return self.lock_expires_at > (now or utc_now())


class Milestone(RecordModel):
    """One ordered, role-scoped step within a task."""

    id: str = Field(default_factory=new_id)
    task_id: str
    sequence: int
    title: str
    description: str = ""
    role: AgentRole = AgentRole.DEV
    status: MilestoneStatus = MilestoneStatus.PENDING
    input_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class InteractionLog(RecordModel):
    """Write-once record of a single model request/response exchange."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(default_factory=new_id)
    run_id: Optional[str] = None
    task_id: Optional[str] = None
    milestone_id: Optional[str] = None
    role: AgentRole
    prompt: List[Dict[str, Any]] = Field(default_factory=list)
    response: Optional[Dict[str, Any]] = None
    model: str = ""
    tokens_used: int = 0
    execution_time_ms: int = 0
    status: InteractionStatus = InteractionStatus.SUCCESS
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


__all__ = [
    "AgentRole",
    "InteractionLog",
    "InteractionStatus",
    "Milestone",
    "MilestoneStatus",
    "RecordModel",
    "Task",
    "TaskStatus",
    "TaskType",
    "new_id",
    "utc_now",
]
