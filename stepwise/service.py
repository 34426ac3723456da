"""UI-facing entry points of the progression engine."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Dict, Iterable, Optional, TypeVar

from .completion import InstanceCompletionEvaluator
from .config import StepwiseConfig, load_config
from .contracts import (
    ActivityEntry,
    Assignment,
    AssignmentFilter,
    AssignmentStatus,
    InstanceStatus,
    WorkflowDefinition,
    WorkflowInstance,
)
from .errors import (
    ChangeFeedUnavailable,
    DefinitionNotFound,
    InstanceNotFound,
    InvalidTransition,
    PersistenceUnavailable,
    Unauthorized,
)
from .graph import validate_definition
from .notifier import RealtimeNotifier
from .persistence import ChangeFeedRepository, WorkflowRepository, get_repository
from .progression import ProgressionEngine
from .security.context import Actor
from .security.policy import AuthorizationPolicy, RolePolicy
from .state_machine import AssignmentStateMachine
from .transports import BaseTransport, get_transport
from .utils.retry import with_retries

logger = logging.getLogger(__name__)

T = TypeVar("T")

INSTANCE_TRANSITIONS: dict[InstanceStatus, set[InstanceStatus]] = {
    InstanceStatus.DRAFT: {InstanceStatus.ACTIVE, InstanceStatus.CANCELLED},
    InstanceStatus.ACTIVE: {InstanceStatus.PAUSED, InstanceStatus.CANCELLED},
    InstanceStatus.PAUSED: {InstanceStatus.ACTIVE, InstanceStatus.CANCELLED},
    InstanceStatus.COMPLETED: set(),
    InstanceStatus.CANCELLED: set(),
}


async def _durable(operation: Awaitable[T]) -> T:
    """Await ``operation`` so that cancelling the caller does not abort it.

    The caller still sees ``CancelledError``; the write and its side effects
    run to completion in the background.
    """
    return await asyncio.shield(operation)


class WorkflowService:
    """Facade used by UIs and the CLI.

    When a transport is given, the repository is wrapped so that every
    committed write is published on the change feed and :meth:`notifier`
    can fan it out.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        transport: Optional[BaseTransport] = None,
        config: Optional[StepwiseConfig] = None,
        policy: Optional[AuthorizationPolicy] = None,
    ) -> None:
        self.config = config or load_config()
        if transport is not None:
            repository = ChangeFeedRepository(repository, transport)
        self.repository = repository
        self.transport = transport
        self.policy = policy or RolePolicy(self.config.engine.manage_roles)
        self.evaluator = InstanceCompletionEvaluator(repository, self.config)
        self.engine = ProgressionEngine(repository, self.config, self.evaluator)
        self.state_machine = AssignmentStateMachine(
            repository, self.engine, self.policy, self.config
        )

    @classmethod
    def from_config(cls, config: Optional[StepwiseConfig] = None) -> "WorkflowService":
        config = config or load_config()
        return cls(
            get_repository(config=config),
            transport=get_transport(config=config),
            config=config,
        )

    def notifier(self) -> RealtimeNotifier:
        if self.transport is None:
            raise RuntimeError("WorkflowService was created without a change feed transport")
        return RealtimeNotifier(self.transport, repository=self.repository)

    # ------------------------------------------------------------------
    # Definitions
    async def register_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Validate and store a definition. Running instances keep their snapshot."""
        validate_definition(definition)
        await self.repository.save_definition(definition)
        logger.info(f"Registered workflow definition {definition.id} ({definition.name})")
        return definition

    async def get_definition(self, definition_id: str) -> WorkflowDefinition:
        definition = await with_retries(
            lambda: self.repository.get_definition(definition_id),
            f"load definition {definition_id}",
            self.config.retry,
        )
        if definition is None:
            raise DefinitionNotFound(
                f"Workflow definition {definition_id} not found",
                details={"definition_id": definition_id},
            )
        return definition

    async def list_definitions(self) -> list[WorkflowDefinition]:
        return await with_retries(
            self.repository.list_definitions, "list definitions", self.config.retry
        )

    # ------------------------------------------------------------------
    # Instances
    async def start_workflow(
        self,
        definition_id: str,
        overrides: Optional[Dict[str, str]] = None,
        actor: Optional[Actor] = None,
    ) -> str:
        """Start an instance of a stored definition and return its id."""
        definition = await self.get_definition(definition_id)
        instance = await _durable(
            self.engine.start_instance(
                definition,
                initial_assignees=overrides,
                started_by=actor.user_id if actor else None,
            )
        )
        return instance.id

    async def get_instance(self, instance_id: str) -> WorkflowInstance:
        instance = await with_retries(
            lambda: self.repository.get_instance(instance_id),
            f"load instance {instance_id}",
            self.config.retry,
        )
        if instance is None:
            raise InstanceNotFound(
                f"Workflow instance {instance_id} not found",
                details={"instance_id": instance_id},
            )
        return instance

    async def list_instances(
        self, status: Optional[InstanceStatus] = None
    ) -> list[WorkflowInstance]:
        return await with_retries(
            lambda: self.repository.list_instances(status),
            "list instances",
            self.config.retry,
        )

    async def list_activity(self, instance_id: str) -> list[ActivityEntry]:
        return await with_retries(
            lambda: self.repository.list_activity(instance_id),
            f"list activity of {instance_id}",
            self.config.retry,
        )

    async def pause_instance(self, instance_id: str, actor: Actor) -> WorkflowInstance:
        return await self._change_instance_status(instance_id, InstanceStatus.PAUSED, actor)

    async def resume_instance(self, instance_id: str, actor: Actor) -> WorkflowInstance:
        """Reactivate a paused instance and materialize anything that became eligible."""
        feed_error = None
        try:
            await self._change_instance_status(instance_id, InstanceStatus.ACTIVE, actor)
        except ChangeFeedUnavailable as exc:
            feed_error = exc
        await _durable(self.engine.catch_up(instance_id, triggered_by=actor.user_id))
        if feed_error is not None:
            raise feed_error
        return await self.get_instance(instance_id)

    async def cancel_instance(self, instance_id: str, actor: Actor) -> WorkflowInstance:
        return await self._change_instance_status(
            instance_id, InstanceStatus.CANCELLED, actor
        )

    async def _change_instance_status(
        self, instance_id: str, to: InstanceStatus, actor: Actor
    ) -> WorkflowInstance:
        instance = await self.get_instance(instance_id)
        if not await self.policy.evaluate(actor, "manage", instance):
            raise Unauthorized(
                f"User {actor.user_id} may not manage instance {instance_id}",
                details={"instance_id": instance_id, "user_id": actor.user_id},
            )
        if to not in INSTANCE_TRANSITIONS[instance.status]:
            raise InvalidTransition(
                f"Cannot move instance {instance_id} from {instance.status.value} to {to.value}",
                details={
                    "instance_id": instance_id,
                    "from": instance.status.value,
                    "to": to.value,
                    "stale": instance.status
                    in (InstanceStatus.COMPLETED, InstanceStatus.CANCELLED),
                },
            )
        feed_error = None
        try:
            updated = await _durable(
                self.repository.update_instance_status(instance_id, instance.status, to)
            )
        except ChangeFeedUnavailable as exc:
            updated, feed_error = exc.committed, exc
        if updated is None:
            current = await self.get_instance(instance_id)
            raise InvalidTransition(
                f"Instance {instance_id} changed concurrently and is now {current.status.value}",
                details={
                    "instance_id": instance_id,
                    "from": current.status.value,
                    "to": to.value,
                    "stale": True,
                },
            )
        try:
            await self.repository.add_activity(
                ActivityEntry(
                    instance_id=instance_id,
                    user_id=actor.user_id,
                    message=f"Workflow {instance.status.value} -> {to.value}",
                )
            )
        except PersistenceUnavailable as exc:
            logger.error(f"Could not record status change of instance {instance_id}: {exc}")
        logger.info(
            f"Instance {instance_id}: {instance.status.value} -> {to.value} by {actor.user_id}"
        )
        if feed_error is not None:
            raise feed_error
        return updated

    # ------------------------------------------------------------------
    # Assignments
    async def start_step(self, assignment_id: str, actor: Actor) -> Assignment:
        return await _durable(self.state_machine.start(assignment_id, actor))

    async def complete_step(
        self,
        assignment_id: str,
        actor: Actor,
        notes: Optional[str] = None,
        actual_hours: Optional[float] = None,
    ) -> Assignment:
        """Complete a step; dependents are materialized once the write is durable."""
        return await _durable(
            self.state_machine.complete(
                assignment_id, actor, notes=notes, actual_hours=actual_hours
            )
        )

    async def skip_step(
        self, assignment_id: str, actor: Actor, notes: Optional[str] = None
    ) -> Assignment:
        return await _durable(self.state_machine.skip(assignment_id, actor, notes=notes))

    async def update_assignment_status(
        self,
        assignment_id: str,
        status: AssignmentStatus | str,
        actor: Actor,
        notes: Optional[str] = None,
    ) -> Assignment:
        return await _durable(
            self.state_machine.transition(
                assignment_id, AssignmentStatus(status), actor, notes=notes
            )
        )

    async def get_assignments_for_user(
        self,
        user_id: str,
        statuses: Optional[Iterable[AssignmentStatus]] = None,
    ) -> list[Assignment]:
        filter = AssignmentFilter(
            assignee_user_id=user_id,
            statuses=set(statuses) if statuses is not None else None,
        )
        return await with_retries(
            lambda: self.repository.list_assignments(filter),
            f"list assignments for {user_id}",
            self.config.retry,
        )

    async def get_assignments_for_instance(self, instance_id: str) -> list[Assignment]:
        return await with_retries(
            lambda: self.repository.list_assignments(
                AssignmentFilter(instance_id=instance_id)
            ),
            f"list assignments of {instance_id}",
            self.config.retry,
        )
