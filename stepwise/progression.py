"""Progression engine: materializes assignments as dependencies are met."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, Iterable, Mapping, Optional

from .completion import InstanceCompletionEvaluator
from .config import StepwiseConfig, load_config
from .contracts import (
    Assignment,
    AssignmentFilter,
    InstanceStatus,
    StepTemplate,
    WorkflowDefinition,
    WorkflowInstance,
    utcnow,
)
from .errors import (
    ChangeFeedUnavailable,
    DuplicateAssignment,
    InstanceNotFound,
    InvalidDefinition,
)
from .graph import (
    SkipPolicy,
    direct_dependents,
    eligible_steps,
    root_steps,
    status_by_step,
    validate_definition,
)
from .persistence import WorkflowRepository
from .utils.retry import with_retries

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Planning: pure functions returning the assignments that should exist
def resolve_assignee(
    template: StepTemplate,
    instance: WorkflowInstance,
    existing: Mapping[str, Assignment],
) -> str:
    """Pick the assignee for ``template`` at materialization time."""
    override = instance.assignee_overrides.get(template.id)
    if override:
        return override

    rule = template.assignee_rule
    if rule.kind == "static" and rule.user_id:
        return rule.user_id
    if rule.kind == "predecessor":
        prior = existing.get(rule.step_id or "")
        if prior is not None:
            return prior.assignee_user_id
        logger.warning(
            f"Step {template.id} takes its assignee from {rule.step_id}, which has no "
            f"assignment in instance {instance.id}; falling back to the starter"
        )
    if instance.started_by is None:
        raise InvalidDefinition(
            f"No assignee can be resolved for step {template.id!r}",
            details={"instance_id": instance.id, "step_id": template.id},
        )
    return instance.started_by


def build_assignment(
    template: StepTemplate,
    instance: WorkflowInstance,
    existing: Mapping[str, Assignment],
    assigned_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Assignment:
    now = now or utcnow()
    due_date = None
    if template.due_after_hours is not None:
        due_date = now + timedelta(hours=template.due_after_hours)
    return Assignment(
        instance_id=instance.id,
        step_id=template.id,
        assignee_user_id=resolve_assignee(template, instance, existing),
        assigned_by=assigned_by or instance.started_by,
        created_at=now,
        due_date=due_date,
    )


def plan_initial_assignments(
    instance: WorkflowInstance, now: Optional[datetime] = None
) -> list[Assignment]:
    """One pending assignment per step without dependencies."""
    definition = instance.definition
    return [
        build_assignment(definition.step(step_id), instance, {}, now=now)
        for step_id in root_steps(definition)
    ]


def plan_successor_assignments(
    instance: WorkflowInstance,
    assignments: Iterable[Assignment],
    finished_step_id: str,
    skip_policy: SkipPolicy = "pass_through",
    assigned_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> list[Assignment]:
    """Assignments for direct dependents of ``finished_step_id`` that just became eligible."""
    definition = instance.definition
    existing = {a.step_id: a for a in assignments}
    statuses = status_by_step(existing.values())
    ready = eligible_steps(
        definition,
        statuses,
        skip_policy,
        candidates=direct_dependents(definition, finished_step_id),
    )
    return [
        build_assignment(definition.step(step_id), instance, existing, assigned_by, now)
        for step_id in ready
    ]


def plan_catch_up(
    instance: WorkflowInstance,
    assignments: Iterable[Assignment],
    skip_policy: SkipPolicy = "pass_through",
    assigned_by: Optional[str] = None,
) -> list[Assignment]:
    """Assignments for every step currently eligible anywhere in the instance."""
    definition = instance.definition
    existing = {a.step_id: a for a in assignments}
    ready = eligible_steps(definition, status_by_step(existing.values()), skip_policy)
    return [
        build_assignment(definition.step(step_id), instance, existing, assigned_by)
        for step_id in ready
    ]


# ----------------------------------------------------------------------
class ProgressionEngine:
    """Keeps exactly one assignment per eligible step of each active instance.

    Decisions come from the planning functions above; this class only reads
    state, executes the planned creations and hands over to the completion
    evaluator. Creation is guarded by the repository's unique constraint, so
    concurrent completions of sibling steps cannot produce duplicates.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        config: Optional[StepwiseConfig] = None,
        evaluator: Optional[InstanceCompletionEvaluator] = None,
    ) -> None:
        self.repository = repository
        self.config = config or load_config()
        self.evaluator = evaluator or InstanceCompletionEvaluator(repository, self.config)

    @property
    def skip_policy(self) -> SkipPolicy:
        return self.config.engine.skip_policy

    async def start_instance(
        self,
        definition: WorkflowDefinition,
        initial_assignees: Optional[Dict[str, str]] = None,
        started_by: Optional[str] = None,
    ) -> WorkflowInstance:
        """Create an active instance and its root assignments.

        Raises:
            InvalidDefinition: the definition is malformed or cyclic. Nothing
                is persisted in that case.
            ChangeFeedUnavailable: the instance row was stored but not
                published. Its root assignments are still created.
        """
        validate_definition(definition)
        overrides = dict(initial_assignees or {})
        unknown = sorted(set(overrides) - set(definition.step_ids))
        if unknown:
            raise InvalidDefinition(
                f"Assignee overrides reference unknown steps: {', '.join(unknown)}",
                details={"definition_id": definition.id, "unknown": unknown},
            )

        instance = WorkflowInstance(
            definition_id=definition.id,
            definition=definition.model_copy(deep=True),
            status=InstanceStatus.ACTIVE,
            started_by=started_by,
            assignee_overrides=overrides,
        )
        drafts = plan_initial_assignments(instance)

        feed_error = None
        try:
            await self.repository.create_instance(instance)
        except ChangeFeedUnavailable as exc:
            feed_error = exc
        logger.info(
            f"Started instance {instance.id} of workflow {definition.id} "
            f"({definition.name}) by {started_by}"
        )
        for draft in drafts:
            await self._materialize(draft)
        if feed_error is not None:
            raise feed_error
        return instance


    async def on_assignment_completed(
        self,
        instance_id: str,
        step_id: str,
        completed_by: Optional[str] = None,
    ) -> list[Assignment]:
        """Materialize dependents of ``step_id`` that are now eligible.

        Must only be called once the terminal status of ``step_id`` is
        durably stored. Returns the assignments this call created.
        """
        instance = await self._load_instance(instance_id)
        if instance.status != InstanceStatus.ACTIVE:
            logger.debug(
                f"Instance {instance_id} is {instance.status.value}; not advancing past {step_id}"
            )
            return []

        assignments = await self._load_assignments(instance_id)
        drafts = plan_successor_assignments(
            instance, assignments, step_id, self.skip_policy, assigned_by=completed_by
        )
        created = [a for a in [await self._materialize(d) for d in drafts] if a]
        await self.evaluator.evaluate(instance_id, completed_by=completed_by)
        return created

    async def catch_up(
        self, instance_id: str, triggered_by: Optional[str] = None
    ) -> list[Assignment]:
        """Materialize every eligible step, e.g. after an instance resumes."""
        instance = await self._load_instance(instance_id)
        if instance.status != InstanceStatus.ACTIVE:
            return []
        assignments = await self._load_assignments(instance_id)
        drafts = plan_catch_up(instance, assignments, self.skip_policy, triggered_by)
        created = [a for a in [await self._materialize(d) for d in drafts] if a]
        await self.evaluator.evaluate(instance_id, completed_by=triggered_by)
        return created

    # ------------------------------------------------------------------
    async def _load_instance(self, instance_id: str) -> WorkflowInstance:
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

    async def _load_assignments(self, instance_id: str) -> list[Assignment]:
        return await with_retries(
            lambda: self.repository.list_assignments(
                AssignmentFilter(instance_id=instance_id)
            ),
            f"list assignments of {instance_id}",
            self.config.retry,
        )

    async def _materialize(self, draft: Assignment) -> Assignment | None:
        try:
            await with_retries(
                lambda: self.repository.create_assignment(draft),
                f"create assignment for {draft.step_id} in {draft.instance_id}",
                self.config.retry,
            )
        except DuplicateAssignment:
            logger.warning(
                f"Step {draft.step_id} of instance {draft.instance_id} was already "
                "materialized by a concurrent completion"
            )
            return None
        except ChangeFeedUnavailable:
            # stored but unannounced; later steps still have to be created
            logger.warning(
                f"Step {draft.step_id} of instance {draft.instance_id} is missing "
                "from the change feed"
            )
        logger.info(
            f"Materialized step {draft.step_id} of instance {draft.instance_id} "
            f"for {draft.assignee_user_id}"
        )
        return draft
