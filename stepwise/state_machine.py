"""Per-assignment lifecycle with validated transitions."""

from __future__ import annotations

import logging
from typing import Optional

from .config import StepwiseConfig, load_config
from .contracts import (
    ActivityEntry,
    Assignment,
    AssignmentStatus,
    InstanceStatus,
    WorkflowInstance,
    utcnow,
)
from .errors import (
    AssignmentNotFound,
    ChangeFeedUnavailable,
    InstanceNotFound,
    InvalidTransition,
    PersistenceUnavailable,
    Unauthorized,
)
from .persistence import WorkflowRepository
from .progression import ProgressionEngine
from .security.context import Actor
from .security.policy import AuthorizationPolicy, RolePolicy
from .utils.retry import schedule_retry, with_retries

logger = logging.getLogger(__name__)


ALLOWED_TRANSITIONS: dict[AssignmentStatus, set[AssignmentStatus]] = {
    AssignmentStatus.PENDING: {
        AssignmentStatus.IN_PROGRESS,
        AssignmentStatus.COMPLETED,
        AssignmentStatus.SKIPPED,
    },
    AssignmentStatus.IN_PROGRESS: {
        AssignmentStatus.COMPLETED,
        AssignmentStatus.SKIPPED,
    },
    AssignmentStatus.COMPLETED: set(),
    AssignmentStatus.SKIPPED: set(),
}


def check_transition(assignment: Assignment, to: AssignmentStatus) -> None:
    """Raise ``InvalidTransition`` unless ``assignment`` may move to ``to``."""
    allowed = ALLOWED_TRANSITIONS.get(assignment.status, set())
    if to in allowed:
        return
    if assignment.is_terminal:
        reason = f"assignment is already {assignment.status.value}"
    else:
        reason = "illegal status change"
    raise InvalidTransition(
        f"Cannot move assignment {assignment.id} from {assignment.status.value} "
        f"to {to.value}: {reason}",
        details={
            "assignment_id": assignment.id,
            "from": assignment.status.value,
            "to": to.value,
            "stale": assignment.is_terminal,
        },
    )


class AssignmentStateMachine:
    """Applies status changes to assignments.

    Every write is a compare-and-set against the status that was read. Side
    effects of entering a terminal status (activity log, progression) run
    only after that write returned.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        engine: ProgressionEngine,
        policy: Optional[AuthorizationPolicy] = None,
        config: Optional[StepwiseConfig] = None,
    ) -> None:
        self.repository = repository
        self.engine = engine
        self.config = config or load_config()
        self.policy = policy or RolePolicy(self.config.engine.manage_roles)

    async def start(self, assignment_id: str, actor: Actor) -> Assignment:
        return await self.transition(assignment_id, AssignmentStatus.IN_PROGRESS, actor)

    async def complete(
        self,
        assignment_id: str,
        actor: Actor,
        notes: Optional[str] = None,
        actual_hours: Optional[float] = None,
    ) -> Assignment:
        return await self.transition(
            assignment_id,
            AssignmentStatus.COMPLETED,
            actor,
            notes=notes,
            actual_hours=actual_hours,
        )

    async def skip(
        self, assignment_id: str, actor: Actor, notes: Optional[str] = None
    ) -> Assignment:
        return await self.transition(
            assignment_id, AssignmentStatus.SKIPPED, actor, notes=notes
        )

    async def transition(
        self,
        assignment_id: str,
        to: AssignmentStatus,
        actor: Actor,
        notes: Optional[str] = None,
        actual_hours: Optional[float] = None,
    ) -> Assignment:
        """Move an assignment to ``to`` and run the resulting side effects.

        Raises:
            AssignmentNotFound: ``assignment_id`` does not resolve.
            InvalidTransition: the stored status does not allow ``to`` or the
                instance is not active.
            Unauthorized: ``actor`` may not perform the change.
            ChangeFeedUnavailable: the change was stored and its side effects
                ran, but it could not be published.
        """
        assignment = await self._load(assignment_id)
        instance = await self._load_instance(assignment)
        check_transition(assignment, to)
        if instance.status != InstanceStatus.ACTIVE:
            raise InvalidTransition(
                f"Instance {instance.id} is {instance.status.value}; "
                f"assignment {assignment.id} cannot change",
                details={
                    "assignment_id": assignment.id,
                    "instance_id": instance.id,
                    "from": assignment.status.value,
                    "to": to.value,
                    "instance_status": instance.status.value,
                },
            )
        await self._authorize(actor, to, instance, assignment)

        if to == AssignmentStatus.COMPLETED and actual_hours is None:
            actual_hours = instance.definition.step(assignment.step_id).estimated_hours

        feed_error = None
        try:
            updated = await self._write(assignment, to, notes, actual_hours)
        except ChangeFeedUnavailable as exc:
            updated, feed_error = exc.committed, exc
        logger.info(
            f"Assignment {assignment.id} ({assignment.step_id}) of instance "
            f"{instance.id}: {assignment.status.value} -> {to.value} by {actor.user_id}"
        )

        if to.is_terminal:
            # the status is stored; dependents must be materialized regardless
            verb = "completed" if to == AssignmentStatus.COMPLETED else "skipped"
            await self._record_activity(
                ActivityEntry(
                    instance_id=instance.id,
                    user_id=actor.user_id,
                    message=f"Step {verb}: {notes or 'No additional notes'}",
                )
            )
            await self.engine.on_assignment_completed(
                instance.id, assignment.step_id, completed_by=actor.user_id
            )
        if feed_error is not None:
            raise feed_error
        return updated

    # ------------------------------------------------------------------
    async def _record_activity(self, entry: ActivityEntry) -> None:
        try:
            await self.repository.add_activity(entry)
        except PersistenceUnavailable as exc:
            logger.error(
                f"Could not record activity for instance {entry.instance_id} "
                f"({entry.message}): {exc}"
            )

    async def _load(self, assignment_id: str) -> Assignment:
        assignment = await with_retries(
            lambda: self.repository.get_assignment(assignment_id),
            f"load assignment {assignment_id}",
            self.config.retry,
        )
        if assignment is None:
            raise AssignmentNotFound(
                f"Assignment {assignment_id} not found",
                details={"assignment_id": assignment_id},
            )
        return assignment

    async def _load_instance(self, assignment: Assignment) -> WorkflowInstance:
        instance = await with_retries(
            lambda: self.repository.get_instance(assignment.instance_id),
            f"load instance {assignment.instance_id}",
            self.config.retry,
        )
        if instance is None:
            raise InstanceNotFound(
                f"Workflow instance {assignment.instance_id} not found",
                details={
                    "instance_id": assignment.instance_id,
                    "assignment_id": assignment.id,
                },
            )
        return instance

    async def _authorize(
        self,
        actor: Actor,
        to: AssignmentStatus,
        instance: WorkflowInstance,
        assignment: Assignment,
    ) -> None:
        action = "skip" if to == AssignmentStatus.SKIPPED else "act"
        if await self.policy.evaluate(actor, action, instance, assignment):
            return
        raise Unauthorized(
            f"User {actor.user_id} may not {action} assignment {assignment.id}",
            details={
                "assignment_id": assignment.id,
                "instance_id": instance.id,
                "user_id": actor.user_id,
                "assignee_user_id": assignment.assignee_user_id,
                "to": to.value,
            },
        )

    async def _write(
        self,
        assignment: Assignment,
        to: AssignmentStatus,
        notes: Optional[str],
        actual_hours: Optional[float],
    ) -> Assignment:
        """Compare-and-set write.

        A transient failure is never retried blindly: the stored record is
        re-read first. If it already shows ``to`` at a newer version the write
        landed and is returned; if it still shows the expected status the
        write is attempted again; anything else is a lost race.
        """
        completed_at = utcnow() if to.is_terminal else None
        attempt = 0
        while True:
            try:
                updated = await self.repository.update_assignment_status(
                    assignment.id,
                    assignment.status,
                    to,
                    notes=notes,
                    completed_at=completed_at,
                    actual_hours=actual_hours,
                )
            except PersistenceUnavailable as exc:
                attempt += 1
                if attempt >= self.config.retry.attempts:
                    logger.error(
                        f"Giving up on {assignment.status.value} -> {to.value} for "
                        f"assignment {assignment.id} after {attempt} attempts: {exc}"
                    )
                    raise
                logger.warning(
                    f"Transient failure writing assignment {assignment.id} "
                    f"(attempt {attempt}/{self.config.retry.attempts}): {exc}"
                )
                await schedule_retry(
                    attempt, base=self.config.retry.base, jitter=self.config.retry.jitter
                )
                current = await self._load(assignment.id)
                if current.status == to and current.version > assignment.version:
                    return current
                if current.status == assignment.status:
                    continue
                raise self._lost_race(current, to)

            if updated is not None:
                return updated
            current = await self._load(assignment.id)
            raise self._lost_race(current, to)

    @staticmethod
    def _lost_race(current: Assignment, to: AssignmentStatus) -> InvalidTransition:
        return InvalidTransition(
            f"Assignment {current.id} changed concurrently and is now "
            f"{current.status.value}; cannot move to {to.value}",
            details={
                "assignment_id": current.id,
                "from": current.status.value,
                "to": to.value,
                "stale": True,
            },
        )
