"""Realtime fan-out of change feed events as typed notifications."""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict

from .contracts import (
    Assignment,
    ChangeEvent,
    InstanceStatus,
    WorkflowInstance,
)
from .persistence import WorkflowRepository
from .transports import CHANGES_TOPIC, BaseTransport

logger = logging.getLogger(__name__)


class NotificationType(str, Enum):
    ASSIGNMENT_CREATED = "assignment_created"
    ASSIGNMENT_STATUS_CHANGED = "assignment_status_changed"
    INSTANCE_COMPLETED = "instance_completed"


class InstanceSummary(BaseModel):
    """Instance fields carried on the change feed (no definition snapshot)."""

    model_config = ConfigDict(extra="ignore")

    id: str
    definition_id: str
    status: InstanceStatus
    started_by: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_instance(cls, instance: WorkflowInstance) -> "InstanceSummary":
        return cls.model_validate(instance.model_dump(exclude={"definition"}))


class Notification(BaseModel):
    """What subscribers receive: ``{type, assignment, instance}``."""

    type: NotificationType
    assignment: Optional[Assignment] = None
    instance: Optional[InstanceSummary] = None
    previous_status: Optional[str] = None

    @property
    def instance_id(self) -> Optional[str]:
        if self.assignment is not None:
            return self.assignment.instance_id
        return self.instance.id if self.instance else None

    @property
    def dedup_key(self) -> tuple[str, str, str]:
        """Identity for idempotent consumers: subject id plus resulting status."""
        if self.assignment is not None:
            return (self.type.value, self.assignment.id, self.assignment.status.value)
        return (self.type.value, self.instance_id or "", self.instance.status.value)


Callback = Callable[[Notification], Union[None, Awaitable[None]]]


class Subscription:
    """Handle for one consumer of notifications.

    Pass a ``callback`` to be called per notification, or iterate the handle
    with ``async for``. Either way call :meth:`unsubscribe` (or use the handle
    as an async context manager) on teardown.
    """

    def __init__(
        self,
        notifier: "RealtimeNotifier",
        callback: Optional[Callback] = None,
        user_id: Optional[str] = None,
        instance_id: Optional[str] = None,
    ) -> None:
        self.id = str(uuid.uuid4())
        self.user_id = user_id
        self.instance_id = instance_id
        self._notifier = notifier
        self._callback = callback
        self._queue: asyncio.Queue[Optional[Notification]] = asyncio.Queue()
        self.active = True

    def matches(self, notification: Notification) -> bool:
        if self.instance_id is not None and notification.instance_id != self.instance_id:
            return False
        if self.user_id is not None:
            if notification.assignment is not None:
                return notification.assignment.assignee_user_id == self.user_id
            return self._notifier.is_participant(notification.instance_id, self.user_id)
        return True

    async def deliver(self, notification: Notification) -> None:
        if not self.active:
            return
        if self._callback is None:
            self._queue.put_nowait(notification)
            return
        result = self._callback(notification)
        if inspect.isawaitable(result):
            await result

    def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        self._notifier._remove(self)
        self._queue.put_nowait(None)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        self.unsubscribe()

    async def __aiter__(self) -> AsyncIterator[Notification]:
        while True:
            item = await self._queue.get()
            if item is None:
                return
            yield item


class RealtimeNotifier:
    """Turns raw change events into notifications for subscribers.

    Instance rows seen on the feed are cached so assignment notifications can
    carry their instance; an instance insert always precedes the inserts of
    its assignments on the same stream. A repository, if given, fills gaps
    when the notifier attaches to a feed mid-stream. Cached state of an
    instance is dropped once it completes or is cancelled.
    """

    def __init__(
        self,
        transport: BaseTransport,
        topic: str = CHANGES_TOPIC,
        repository: Optional[WorkflowRepository] = None,
    ) -> None:
        self.transport = transport
        self.topic = topic
        self.repository = repository
        self._subscriptions: Dict[str, Subscription] = {}
        self._instances: Dict[str, InstanceSummary] = {}
        self._participants: Dict[str, set[str]] = {}

    # ------------------------------------------------------------------
    def subscribe(
        self,
        callback: Optional[Callback] = None,
        *,
        user_id: Optional[str] = None,
        instance_id: Optional[str] = None,
    ) -> Subscription:
        """Register a consumer.

        ``user_id`` limits delivery to that assignee's work, ``instance_id`` to
        one instance; with neither, every notification is delivered.
        """
        subscription = Subscription(self, callback, user_id=user_id, instance_id=instance_id)
        self._subscriptions[subscription.id] = subscription
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        self._subscriptions.pop(subscription.id, None)

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions.values())

    def is_participant(self, instance_id: Optional[str], user_id: str) -> bool:
        return user_id in self._participants.get(instance_id or "", set())

    # ------------------------------------------------------------------
    async def run(self, lifespan: Optional[float] = None) -> None:
        """Consume the change feed and dispatch until ``lifespan`` expires."""
        async for raw_message, event in self.transport.subscribe(
            self.topic, lifespan=lifespan
        ):
            await self.handle(event)
            await self.transport.ack(raw_message)

    async def handle(self, event: ChangeEvent) -> Optional[Notification]:
        notification = await self.to_notification(event)
        if notification is None:
            return None
        for subscription in self.subscriptions:
            if not subscription.matches(notification):
                continue
            try:
                await subscription.deliver(notification)
            except Exception:
                # one failing consumer must not starve the others
                logger.exception(
                    f"Subscriber {subscription.id} failed on {notification.type.value}"
                )
        if notification.type == NotificationType.INSTANCE_COMPLETED:
            self._forget(notification.instance_id)
        return notification

    def _forget(self, instance_id: Optional[str]) -> None:
        # a closed instance produces no further events
        self._instances.pop(instance_id or "", None)
        self._participants.pop(instance_id or "", None)

    async def to_notification(self, event: ChangeEvent) -> Optional[Notification]:
        """Map a raw change event; ``None`` when it is not user visible."""
        if event.table == "instances":
            summary = InstanceSummary.model_validate(event.record)
            if summary.status == InstanceStatus.CANCELLED:
                self._forget(summary.id)
                return None
            self._instances[summary.id] = summary

            previous = (event.old_record or {}).get("status")
            if (
                event.kind == "update"
                and summary.status == InstanceStatus.COMPLETED
                and previous != InstanceStatus.COMPLETED.value
            ):
                return Notification(
                    type=NotificationType.INSTANCE_COMPLETED,
                    instance=summary,
                    previous_status=previous,
                )
            return None

        assignment = Assignment.model_validate(event.record)
        self._participants.setdefault(assignment.instance_id, set()).add(
            assignment.assignee_user_id
        )
        instance = await self._instance_for(assignment.instance_id)
        if event.kind == "insert":
            return Notification(
                type=NotificationType.ASSIGNMENT_CREATED,
                assignment=assignment,
                instance=instance,
            )

        previous = (event.old_record or {}).get("status")
        if previous == assignment.status.value:
            logger.debug(f"Ignoring non-status update of assignment {assignment.id}")
            return None
        return Notification(
            type=NotificationType.ASSIGNMENT_STATUS_CHANGED,
            assignment=assignment,
            instance=instance,
            previous_status=previous,
        )

    async def _instance_for(self, instance_id: str) -> Optional[InstanceSummary]:
        summary = self._instances.get(instance_id)
        if summary is None and self.repository is not None:
            instance = await self.repository.get_instance(instance_id)
            if instance is not None:
                summary = InstanceSummary.from_instance(instance)
                self._instances[instance_id] = summary
        return summary


class AssignmentReadModel:
    """In-memory view of assignments and instances fed by notifications.

    Applying the same notification twice, or an older version after a newer
    one, leaves the model unchanged.
    """

    def __init__(self) -> None:
        self.assignments: Dict[str, Assignment] = {}
        self.instances: Dict[str, InstanceSummary] = {}

    def attach(
        self,
        notifier: RealtimeNotifier,
        *,
        user_id: Optional[str] = None,
        instance_id: Optional[str] = None,
    ) -> Subscription:
        return notifier.subscribe(self.apply, user_id=user_id, instance_id=instance_id)

    def apply(self, notification: Notification) -> bool:
        """Return ``True`` when the notification changed the model."""
        changed = False
        if notification.instance is not None:
            known = self.instances.get(notification.instance.id)
            if known != notification.instance and not (
                known is not None
                and known.status == InstanceStatus.COMPLETED
                and notification.instance.status != InstanceStatus.COMPLETED
            ):
                self.instances[notification.instance.id] = notification.instance
                changed = True
        assignment = notification.assignment
        if assignment is not None:
            current = self.assignments.get(assignment.id)
            if current is None or assignment.version > current.version:
                self.assignments[assignment.id] = assignment
                changed = True
        return changed

    def for_user(self, user_id: str) -> list[Assignment]:
        return sorted(
            (a for a in self.assignments.values() if a.assignee_user_id == user_id),
            key=lambda a: a.created_at,
        )

    def for_instance(self, instance_id: str) -> list[Assignment]:
        return sorted(
            (a for a in self.assignments.values() if a.instance_id == instance_id),
            key=lambda a: a.created_at,
        )
