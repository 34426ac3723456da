"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from ..contracts import (
    ActivityEntry,
    Assignment,
    AssignmentFilter,
    AssignmentStatus,
    InstanceStatus,
    WorkflowDefinition,
    WorkflowInstance,
)


class WorkflowRepository(Protocol):
    """Protocol for persistence backends.

    Writes that change status are compare-and-set: they only apply when the
    stored status equals ``expected`` and return ``None`` otherwise. Creating a
    second assignment for the same ``(instance_id, step_id)`` raises
    :class:`~stepwise.errors.DuplicateAssignment`. Transient backend failures
    surface as :class:`~stepwise.errors.PersistenceUnavailable`.
    """

    async def save_definition(self, definition: WorkflowDefinition) -> None:
        """Insert or replace a workflow definition."""

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        """Retrieve a workflow definition by id."""

    async def list_definitions(self) -> list[WorkflowDefinition]:
        """Return all stored definitions."""

    async def create_instance(self, instance: WorkflowInstance) -> None:
        """Persist a new workflow instance."""

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        """Retrieve the workflow instance by id."""

    async def list_instances(
        self, status: Optional[InstanceStatus] = None
    ) -> list[WorkflowInstance]:
        """Return persisted instances, optionally filtered by status."""

    async def update_instance_status(
        self,
        instance_id: str,
        expected: InstanceStatus,
        status: InstanceStatus,
        completed_at: Optional[datetime] = None,
    ) -> WorkflowInstance | None:
        """Compare-and-set the instance status."""

    async def create_assignment(self, assignment: Assignment) -> None:
        """Persist a new assignment, enforcing one per instance step."""

    async def get_assignment(self, assignment_id: str) -> Assignment | None:
        """Retrieve an assignment by id."""

    async def list_assignments(
        self, filter: Optional[AssignmentFilter] = None
    ) -> list[Assignment]:
        """Return assignments matching ``filter`` ordered by creation time."""

    async def update_assignment_status(
        self,
        assignment_id: str,
        expected: AssignmentStatus,
        status: AssignmentStatus,
        notes: Optional[str] = None,
        completed_at: Optional[datetime] = None,
        actual_hours: Optional[float] = None,
    ) -> Assignment | None:
        """Compare-and-set the assignment status and bump its version.

        ``notes`` and ``actual_hours`` keep their stored value when ``None``.
        """

    async def add_activity(self, entry: ActivityEntry) -> None:
        """Append an entry to the instance activity log."""

    async def list_activity(self, instance_id: str) -> list[ActivityEntry]:
        """Return the activity log of an instance, oldest first."""
