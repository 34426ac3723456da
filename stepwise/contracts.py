"""Core data contracts for the stepwise progression engine."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Set

from pydantic import BaseModel, Field, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class InstanceStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    COMPLETED = "completed"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class AssignmentStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({AssignmentStatus.COMPLETED, AssignmentStatus.SKIPPED})


class AssigneeRule(BaseModel):
    """How the assignee of a step is chosen when the step is materialized.

    ``static`` always assigns ``user_id``. ``starter`` assigns whoever started
    the instance. ``predecessor`` reuses the assignee of the assignment for
    ``step_id`` in the same instance, so the choice can follow earlier work.
    """

    kind: Literal["static", "starter", "predecessor"] = "starter"
    user_id: Optional[str] = None
    step_id: Optional[str] = None

    @model_validator(mode="after")
    def _check_arguments(self) -> "AssigneeRule":
        if self.kind == "static" and not self.user_id:
            raise ValueError("static assignee rule requires user_id")
        if self.kind == "predecessor" and not self.step_id:
            raise ValueError("predecessor assignee rule requires step_id")
        return self


class StepTemplate(BaseModel):
    """A single node of a workflow definition's dependency graph."""

    id: str
    name: str
    description: Optional[str] = None
    estimated_hours: Optional[float] = None
    assignee_rule: AssigneeRule = Field(default_factory=AssigneeRule)
    depends_on: Set[str] = Field(default_factory=set)
    due_after_hours: Optional[float] = None


class WorkflowDefinition(BaseModel):
    """Static template describing the steps of a workflow."""

    id: str = Field(default_factory=new_id)
    name: str
    description: Optional[str] = None
    steps: List[StepTemplate] = Field(default_factory=list)
    is_reusable: bool = True

    def step(self, step_id: str) -> StepTemplate:
        for template in self.steps:
            if template.id == step_id:
                return template
        raise KeyError(step_id)

    @property
    def step_ids(self) -> list[str]:
        return [template.id for template in self.steps]


class WorkflowInstance(BaseModel):
    """One running execution of a workflow definition.

    ``definition`` is a frozen snapshot taken at start so that later edits to
    the stored definition do not alter the running instance.
    """

    id: str = Field(default_factory=new_id)
    definition_id: str
    definition: WorkflowDefinition
    status: InstanceStatus = InstanceStatus.ACTIVE
    started_by: Optional[str] = None
    assignee_overrides: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class Assignment(BaseModel):
    """Materialized per-instance, per-step work item."""

    id: str = Field(default_factory=new_id)
    instance_id: str
    step_id: str
    assignee_user_id: str
    assigned_by: Optional[str] = None
    status: AssignmentStatus = AssignmentStatus.PENDING
    notes: Optional[str] = None
    actual_hours: Optional[float] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    due_date: Optional[datetime] = None
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class AssignmentFilter(BaseModel):
    """Narrow query over assignments; unset fields do not constrain."""

    instance_id: Optional[str] = None
    assignee_user_id: Optional[str] = None
    step_id: Optional[str] = None
    statuses: Optional[Set[AssignmentStatus]] = None

    def matches(self, assignment: Assignment) -> bool:
        if self.instance_id is not None and assignment.instance_id != self.instance_id:
            return False
        if (
            self.assignee_user_id is not None
            and assignment.assignee_user_id != self.assignee_user_id
        ):
            return False
        if self.step_id is not None and assignment.step_id != self.step_id:
            return False
        if self.statuses is not None and assignment.status not in self.statuses:
            return False
        return True


class ActivityEntry(BaseModel):
    """Human readable log line attached to an instance."""

    id: str = Field(default_factory=new_id)
    instance_id: str
    user_id: Optional[str] = None
    message: str
    created_at: datetime = Field(default_factory=utcnow)


class ChangeEvent(BaseModel):
    """Raw row-level change observed on the persistence change feed."""

    event_id: str = Field(default_factory=new_id)
    table: Literal["assignments", "instances"]
    kind: Literal["insert", "update"]
    record: Dict[str, Any]
    old_record: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utcnow)

    def to_json(self) -> str:
        """Serialize event to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "ChangeEvent":
        """Deserialize event from JSON."""
        return cls.model_validate_json(data)
