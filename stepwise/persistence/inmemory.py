"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, Optional

from ..contracts import (
    ActivityEntry,
    Assignment,
    AssignmentFilter,
    AssignmentStatus,
    InstanceStatus,
    WorkflowDefinition,
    WorkflowInstance,
    utcnow,
)
from ..errors import DuplicateAssignment
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never hold a reference to stored state.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, WorkflowDefinition] = {}
        self._instances: Dict[str, WorkflowInstance] = {}
        self._assignments: Dict[str, Assignment] = {}
        # (instance_id, step_id) -> assignment id; the unique constraint
        self._by_step: Dict[tuple[str, str], str] = {}
        self._activity: Dict[str, list[ActivityEntry]] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        self._definitions[definition.id] = definition.model_copy(deep=True)

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        definition = self._definitions.get(definition_id)
        return definition.model_copy(deep=True) if definition else None

    async def list_definitions(self) -> list[WorkflowDefinition]:
        return [d.model_copy(deep=True) for d in self._definitions.values()]

    # ------------------------------------------------------------------
    async def create_instance(self, instance: WorkflowInstance) -> None:
        self._instances[instance.id] = instance.model_copy(deep=True)

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def list_instances(
        self, status: Optional[InstanceStatus] = None
    ) -> list[WorkflowInstance]:
        return [
            i.model_copy(deep=True)
            for i in self._instances.values()
            if status is None or i.status == status
        ]

    async def update_instance_status(
        self,
        instance_id: str,
        expected: InstanceStatus,
        status: InstanceStatus,
        completed_at: Optional[datetime] = None,
    ) -> WorkflowInstance | None:
        async with self._lock:
            instance = self._instances.get(instance_id)
            if instance is None or instance.status != expected:
                return None
            instance.status = status
            instance.updated_at = utcnow()
            if completed_at is not None:
                instance.completed_at = completed_at
            return instance.model_copy(deep=True)

    # ------------------------------------------------------------------
    async def create_assignment(self, assignment: Assignment) -> None:
        key = (assignment.instance_id, assignment.step_id)
        async with self._lock:
            if key in self._by_step:
                raise DuplicateAssignment(
                    f"Assignment for step {assignment.step_id!r} already exists "
                    f"in instance {assignment.instance_id}",
                    details={
                        "instance_id": assignment.instance_id,
                        "step_id": assignment.step_id,
                        "existing_id": self._by_step[key],
                    },
                )
            self._by_step[key] = assignment.id
            self._assignments[assignment.id] = assignment.model_copy(deep=True)

    async def get_assignment(self, assignment_id: str) -> Assignment | None:
        assignment = self._assignments.get(assignment_id)
        return assignment.model_copy(deep=True) if assignment else None

    async def list_assignments(
        self, filter: Optional[AssignmentFilter] = None
    ) -> list[Assignment]:
        filter = filter or AssignmentFilter()
        matches = [a for a in self._assignments.values() if filter.matches(a)]
        matches.sort(key=lambda a: a.created_at)
        return [a.model_copy(deep=True) for a in matches]

    async def update_assignment_status(
        self,
        assignment_id: str,
        expected: AssignmentStatus,
        status: AssignmentStatus,
        notes: Optional[str] = None,
        completed_at: Optional[datetime] = None,
        actual_hours: Optional[float] = None,
    ) -> Assignment | None:
        async with self._lock:
            assignment = self._assignments.get(assignment_id)
            if assignment is None or assignment.status != expected:
                return None
            assignment.status = status
            assignment.version += 1
            if notes is not None:
                assignment.notes = notes
            if completed_at is not None:
                assignment.completed_at = completed_at
            if actual_hours is not None:
                assignment.actual_hours = actual_hours
            return assignment.model_copy(deep=True)

    # ------------------------------------------------------------------
    async def add_activity(self, entry: ActivityEntry) -> None:
        self._activity.setdefault(entry.instance_id, []).append(
            entry.model_copy(deep=True)
        )

    async def list_activity(self, instance_id: str) -> list[ActivityEntry]:
        return [e.model_copy(deep=True) for e in self._activity.get(instance_id, [])]
