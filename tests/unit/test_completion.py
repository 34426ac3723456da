import pytest

from stepwise.completion import InstanceCompletionEvaluator, should_complete
from stepwise.config import EngineConfig, RetryConfig, StepwiseConfig
from stepwise.contracts import (
    Assignment,
    AssignmentStatus,
    InstanceStatus,
    StepTemplate,
    WorkflowDefinition,
    WorkflowInstance,
)
from stepwise.persistence import InMemoryWorkflowRepository


def _definition() -> WorkflowDefinition:
    return WorkflowDefinition(
        id="pipeline",
        name="Pipeline",
        steps=[
            StepTemplate(id="collect", name="Collect"),
            StepTemplate(id="check", name="Check", depends_on={"collect"}),
            StepTemplate(id="publish", name="Publish", depends_on={"check"}),
        ],
    )


def _assignments(instance_id: str, **statuses: AssignmentStatus) -> list[Assignment]:
    return [
        Assignment(instance_id=instance_id, step_id=step, assignee_user_id="u1", status=status)
        for step, status in statuses.items()
    ]


def test_should_complete_requires_every_step_under_pass_through():
    definition = _definition()
    partial = _assignments(
        "i", collect=AssignmentStatus.COMPLETED, check=AssignmentStatus.SKIPPED
    )
    assert not should_complete(definition, partial)

    full = _assignments(
        "i",
        collect=AssignmentStatus.COMPLETED,
        check=AssignmentStatus.SKIPPED,
        publish=AssignmentStatus.COMPLETED,
    )
    assert should_complete(definition, full)


def test_should_complete_ignores_blocked_steps():
    definition = _definition()
    assignments = _assignments(
        "i", collect=AssignmentStatus.COMPLETED, check=AssignmentStatus.SKIPPED
    )
    assert should_complete(definition, assignments, "block")


def test_open_assignment_keeps_instance_open():
    definition = _definition()
    assignments = _assignments("i", collect=AssignmentStatus.IN_PROGRESS)
    assert not should_complete(definition, assignments, "block")


async def _instance_with(repo, status=InstanceStatus.ACTIVE, **statuses):
    instance = WorkflowInstance(
        definition_id="pipeline", definition=_definition(), status=status, started_by="alice"
    )
    await repo.create_instance(instance)
    for assignment in _assignments(instance.id, **statuses):
        await repo.create_assignment(assignment)
    return instance


@pytest.mark.asyncio
async def test_evaluator_closes_instance_once():
    repo = InMemoryWorkflowRepository()
    config = StepwiseConfig(retry=RetryConfig(base=0, jitter=0))
    evaluator = InstanceCompletionEvaluator(repo, config)
    instance = await _instance_with(
        repo,
        collect=AssignmentStatus.COMPLETED,
        check=AssignmentStatus.COMPLETED,
        publish=AssignmentStatus.SKIPPED,
    )

    assert await evaluator.evaluate(instance.id, completed_by="bob") is True
    assert await evaluator.evaluate(instance.id, completed_by="bob") is False

    stored = await repo.get_instance(instance.id)
    assert stored.status == InstanceStatus.COMPLETED
    assert stored.completed_at is not None
    activity = await repo.list_activity(instance.id)
    assert [(e.user_id, e.message) for e in activity] == [
        ("bob", "Workflow completed - all steps finished")
    ]


@pytest.mark.asyncio
async def test_evaluator_leaves_paused_and_open_instances():
    repo = InMemoryWorkflowRepository()
    evaluator = InstanceCompletionEvaluator(
        repo, StepwiseConfig(engine=EngineConfig(skip_policy="block"))
    )
    paused = await _instance_with(
        repo, status=InstanceStatus.PAUSED, collect=AssignmentStatus.SKIPPED
    )
    open_ = await _instance_with(repo, collect=AssignmentStatus.PENDING)

    assert await evaluator.evaluate(paused.id) is False
    assert await evaluator.evaluate(open_.id) is False
    assert await evaluator.evaluate("missing") is False
    assert (await repo.get_instance(paused.id)).status == InstanceStatus.PAUSED
