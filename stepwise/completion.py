"""Decides when a workflow instance is finished."""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from .config import StepwiseConfig, load_config
from .contracts import (
    ActivityEntry,
    Assignment,
    AssignmentFilter,
    InstanceStatus,
    WorkflowDefinition,
    utcnow,
)
from .errors import ChangeFeedUnavailable, PersistenceUnavailable
from .graph import SkipPolicy, classify
from .persistence import WorkflowRepository
from .utils.retry import with_retries

logger = logging.getLogger(__name__)


def should_complete(
    definition: WorkflowDefinition,
    assignments: Iterable[Assignment],
    skip_policy: SkipPolicy = "pass_through",
) -> bool:
    """``True`` when every reachable step has a terminal assignment.

    Steps blocked by a skipped predecessor under the ``block`` policy are not
    reachable and do not hold the instance open.
    """
    return classify(definition, assignments, skip_policy).is_complete


class InstanceCompletionEvaluator:
    """Closes an instance at the earliest correct moment.

    Run after every individual terminal transition. The close itself is a
    compare-and-set from ``active``, so concurrent evaluators close an
    instance once.
    """

    def __init__(
        self, repository: WorkflowRepository, config: Optional[StepwiseConfig] = None
    ) -> None:
        self.repository = repository
        self.config = config or load_config()

    async def evaluate(self, instance_id: str, completed_by: Optional[str] = None) -> bool:
        """Return ``True`` if this call moved the instance to ``completed``."""
        instance = await with_retries(
            lambda: self.repository.get_instance(instance_id),
            f"load instance {instance_id}",
            self.config.retry,
        )
        if instance is None or instance.status != InstanceStatus.ACTIVE:
            return False

        assignments = await with_retries(
            lambda: self.repository.list_assignments(
                AssignmentFilter(instance_id=instance_id)
            ),
            f"list assignments of {instance_id}",
            self.config.retry,
        )
        if not should_complete(
            instance.definition, assignments, self.config.engine.skip_policy
        ):
            logger.debug(f"Instance {instance_id} still has open steps")
            return False

        try:
            closed = await self.repository.update_instance_status(
                instance_id,
                InstanceStatus.ACTIVE,
                InstanceStatus.COMPLETED,
                completed_at=utcnow(),
            )
        except ChangeFeedUnavailable as exc:
            closed = exc.committed
        if closed is None:
            logger.debug(f"Instance {instance_id} was closed or paused concurrently")
            return False

        try:
            await self.repository.add_activity(
                ActivityEntry(
                    instance_id=instance_id,
                    user_id=completed_by,
                    message="Workflow completed - all steps finished",
                )
            )
        except PersistenceUnavailable as exc:
            logger.error(f"Could not log completion of instance {instance_id}: {exc}")
        logger.info(f"Workflow instance {instance_id} completed")
        return True

