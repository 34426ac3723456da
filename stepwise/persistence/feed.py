"""Repository wrapper that publishes row changes to the change feed."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from ..contracts import (
    ActivityEntry,
    Assignment,
    AssignmentFilter,
    AssignmentStatus,
    ChangeEvent,
    InstanceStatus,
    WorkflowDefinition,
    WorkflowInstance,
)
from ..errors import ChangeFeedUnavailable
from ..transports import CHANGES_TOPIC, BaseTransport
from .repository import WorkflowRepository

logger = logging.getLogger(__name__)


class ChangeFeedRepository(WorkflowRepository):
    """Decorate a repository so committed writes appear on a transport.

    Events are published only after the wrapped write returned, so an event
    never describes state that was not durably stored. Insert and update of
    one record go through the same topic, which keeps them ordered.
    """

    def __init__(
        self,
        inner: WorkflowRepository,
        transport: BaseTransport,
        topic: str = CHANGES_TOPIC,
    ) -> None:
        self.inner = inner
        self.transport = transport
        self.topic = topic

    async def _publish(
        self,
        table: str,
        kind: str,
        committed: Any,
        record: Dict[str, Any],
        old_record: Optional[Dict[str, Any]] = None,
    ) -> None:
        event = ChangeEvent(table=table, kind=kind, record=record, old_record=old_record)
        try:
            await self.transport.publish(self.topic, event)
        except Exception as e:
            logger.error(
                f"Failed to publish {kind} on {table} for {record.get('id')}: {e}. "
                "The write is committed; subscribers will not see it until they resync."
            )
            raise ChangeFeedUnavailable(
                f"Committed {kind} on {table} {record.get('id')} was not published: {e}",
                details={"table": table, "kind": kind, "id": record.get("id")},
                committed=committed,
            ) from e

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        await self.inner.save_definition(definition)

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        return await self.inner.get_definition(definition_id)

    async def list_definitions(self) -> list[WorkflowDefinition]:
        return await self.inner.list_definitions()

    # ------------------------------------------------------------------
    async def create_instance(self, instance: WorkflowInstance) -> None:
        await self.inner.create_instance(instance)
        await self._publish("instances", "insert", instance, _instance_record(instance))

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        return await self.inner.get_instance(instance_id)

    async def list_instances(
        self, status: Optional[InstanceStatus] = None
    ) -> list[WorkflowInstance]:
        return await self.inner.list_instances(status)

    async def update_instance_status(
        self,
        instance_id: str,
        expected: InstanceStatus,
        status: InstanceStatus,
        completed_at: Optional[datetime] = None,
    ) -> WorkflowInstance | None:
        updated = await self.inner.update_instance_status(
            instance_id, expected, status, completed_at
        )
        if updated is not None:
            await self._publish(
                "instances",
                "update",
                updated,
                _instance_record(updated),
                old_record={"id": instance_id, "status": expected.value},
            )
        return updated

    # ------------------------------------------------------------------
    async def create_assignment(self, assignment: Assignment) -> None:
        await self.inner.create_assignment(assignment)
        await self._publish(
            "assignments", "insert", assignment, assignment.model_dump(mode="json")
        )

    async def get_assignment(self, assignment_id: str) -> Assignment | None:
        return await self.inner.get_assignment(assignment_id)

    async def list_assignments(
        self, filter: Optional[AssignmentFilter] = None
    ) -> list[Assignment]:
        return await self.inner.list_assignments(filter)

    async def update_assignment_status(
        self,
        assignment_id: str,
        expected: AssignmentStatus,
        status: AssignmentStatus,
        notes: Optional[str] = None,
        completed_at: Optional[datetime] = None,
        actual_hours: Optional[float] = None,
    ) -> Assignment | None:
        updated = await self.inner.update_assignment_status(
            assignment_id, expected, status, notes, completed_at, actual_hours
        )
        if updated is not None:
            await self._publish(
                "assignments",
                "update",
                updated,
                updated.model_dump(mode="json"),
                old_record={
                    "id": assignment_id,
                    "status": expected.value,
                    "version": updated.version - 1,
                },
            )
        return updated

    # ------------------------------------------------------------------
    async def add_activity(self, entry: ActivityEntry) -> None:
        await self.inner.add_activity(entry)

    async def list_activity(self, instance_id: str) -> list[ActivityEntry]:
        return await self.inner.list_activity(instance_id)


def _instance_record(instance: WorkflowInstance) -> Dict[str, Any]:
    # the definition snapshot stays out of the feed; consumers look it up
    return instance.model_dump(mode="json", exclude={"definition"})
