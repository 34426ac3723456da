import asyncio
from datetime import timedelta

import pytest

from stepwise.config import EngineConfig, RetryConfig, StepwiseConfig
from stepwise.contracts import (
    AssigneeRule,
    AssignmentFilter,
    AssignmentStatus,
    InstanceStatus,
    StepTemplate,
    WorkflowDefinition,
    WorkflowInstance,
)
from stepwise.errors import InvalidDefinition
from stepwise.persistence import InMemoryWorkflowRepository
from stepwise.progression import (
    ProgressionEngine,
    plan_initial_assignments,
    plan_successor_assignments,
    resolve_assignee,
)


def _config(skip_policy: str = "pass_through") -> StepwiseConfig:
    return StepwiseConfig(
        engine=EngineConfig(skip_policy=skip_policy),
        retry=RetryConfig(attempts=3, base=0, jitter=0),
    )


def _diamond() -> WorkflowDefinition:
    return WorkflowDefinition(
        id="diamond",
        name="Diamond",
        steps=[
            StepTemplate(id="A", name="Kickoff", due_after_hours=24),
            StepTemplate(id="B", name="Design", depends_on={"A"}),
            StepTemplate(id="C", name="Budget", depends_on={"A"}),
            StepTemplate(id="D", name="Sign-off", depends_on={"B", "C"}),
        ],
    )


async def _finish(repo, instance_id, step_id, status=AssignmentStatus.COMPLETED):
    [assignment] = await repo.list_assignments(
        AssignmentFilter(instance_id=instance_id, step_id=step_id)
    )
    return await repo.update_assignment_status(assignment.id, assignment.status, status)


async def _steps(repo, instance_id) -> list[str]:
    assignments = await repo.list_assignments(AssignmentFilter(instance_id=instance_id))
    return sorted(a.step_id for a in assignments)


def test_plan_initial_assignments_only_roots():
    instance = WorkflowInstance(
        definition_id="diamond", definition=_diamond(), started_by="alice"
    )
    drafts = plan_initial_assignments(instance)
    assert [d.step_id for d in drafts] == ["A"]
    assert drafts[0].assignee_user_id == "alice"
    assert drafts[0].status == AssignmentStatus.PENDING
    assert drafts[0].due_date - drafts[0].created_at == timedelta(hours=24)


def test_plan_successors_waits_for_all_dependencies():
    instance = WorkflowInstance(
        definition_id="diamond", definition=_diamond(), started_by="alice"
    )
    [a] = plan_initial_assignments(instance)
    a.status = AssignmentStatus.COMPLETED
    drafts = plan_successor_assignments(instance, [a], "A")
    assert sorted(d.step_id for d in drafts) == ["B", "C"]

    b, c = sorted(drafts, key=lambda d: d.step_id)
    b.status = AssignmentStatus.COMPLETED
    assert plan_successor_assignments(instance, [a, b, c], "B") == []


def test_resolve_assignee_rules():
    definition = WorkflowDefinition(
        name="rules",
        steps=[
            StepTemplate(
                id="write", name="Write", assignee_rule=AssigneeRule(kind="static", user_id="carol")
            ),
            StepTemplate(
                id="revise",
                name="Revise",
                depends_on={"write"},
                assignee_rule=AssigneeRule(kind="predecessor", step_id="write"),
            ),
            StepTemplate(id="approve", name="Approve", depends_on={"revise"}),
        ],
    )
    instance = WorkflowInstance(
        definition_id=definition.id,
        definition=definition,
        started_by="alice",
        assignee_overrides={"approve": "dave"},
    )
    [write] = plan_initial_assignments(instance)
    assert write.assignee_user_id == "carol"
    assert resolve_assignee(definition.step("revise"), instance, {"write": write}) == "carol"
    # predecessor not materialized yet falls back to the starter
    assert resolve_assignee(definition.step("revise"), instance, {}) == "alice"
    assert resolve_assignee(definition.step("approve"), instance, {}) == "dave"


def test_resolve_assignee_without_starter_fails():
    instance = WorkflowInstance(definition_id="diamond", definition=_diamond())
    with pytest.raises(InvalidDefinition):
        plan_initial_assignments(instance)


@pytest.mark.asyncio
async def test_start_instance_materializes_roots_only():
    repo = InMemoryWorkflowRepository()
    engine = ProgressionEngine(repo, _config())

    instance = await engine.start_instance(_diamond(), started_by="alice")

    stored = await repo.get_instance(instance.id)
    assert stored.status == InstanceStatus.ACTIVE
    assert await _steps(repo, instance.id) == ["A"]


@pytest.mark.asyncio
async def test_diamond_progression_and_completion():
    repo = InMemoryWorkflowRepository()
    engine = ProgressionEngine(repo, _config())
    instance = await engine.start_instance(_diamond(), started_by="alice")

    await _finish(repo, instance.id, "A")
    created = await engine.on_assignment_completed(instance.id, "A")
    assert sorted(a.step_id for a in created) == ["B", "C"]

    await _finish(repo, instance.id, "B")
    assert await engine.on_assignment_completed(instance.id, "B") == []
    assert await _steps(repo, instance.id) == ["A", "B", "C"]

    await _finish(repo, instance.id, "C")
    [d] = await engine.on_assignment_completed(instance.id, "C")
    assert d.step_id == "D"

    await _finish(repo, instance.id, "D")
    await engine.on_assignment_completed(instance.id, "D")
    stored = await repo.get_instance(instance.id)
    assert stored.status == InstanceStatus.COMPLETED
    assert stored.completed_at is not None


@pytest.mark.asyncio
async def test_cyclic_definition_creates_nothing():
    repo = InMemoryWorkflowRepository()
    engine = ProgressionEngine(repo, _config())
    definition = WorkflowDefinition(
        name="cycle",
        steps=[
            StepTemplate(id="A", name="A", depends_on={"C"}),
            StepTemplate(id="B", name="B", depends_on={"A"}),
            StepTemplate(id="C", name="C", depends_on={"B"}),
        ],
    )

    with pytest.raises(InvalidDefinition):
        await engine.start_instance(definition, started_by="alice")
    assert await repo.list_instances() == []
    assert await repo.list_assignments() == []


@pytest.mark.asyncio
async def test_unknown_override_step_rejected():
    repo = InMemoryWorkflowRepository()
    engine = ProgressionEngine(repo, _config())
    with pytest.raises(InvalidDefinition, match="unknown steps"):
        await engine.start_instance(
            _diamond(), initial_assignees={"Z": "bob"}, started_by="alice"
        )
    assert await repo.list_instances() == []


@pytest.mark.asyncio
async def test_overrides_apply_to_materialized_steps():
    repo = InMemoryWorkflowRepository()
    engine = ProgressionEngine(repo, _config())
    instance = await engine.start_instance(
        _diamond(), initial_assignees={"A": "bob", "C": "carol"}, started_by="alice"
    )
    await _finish(repo, instance.id, "A")
    await engine.on_assignment_completed(instance.id, "A", completed_by="bob")

    assignments = {
        a.step_id: a
        for a in await repo.list_assignments(AssignmentFilter(instance_id=instance.id))
    }
    assert assignments["A"].assignee_user_id == "bob"
    assert assignments["B"].assignee_user_id == "alice"
    assert assignments["C"].assignee_user_id == "carol"
    assert assignments["C"].assigned_by == "bob"


@pytest.mark.asyncio
async def test_paused_instance_does_not_advance():
    repo = InMemoryWorkflowRepository()
    engine = ProgressionEngine(repo, _config())
    instance = await engine.start_instance(_diamond(), started_by="alice")
    await _finish(repo, instance.id, "A")
    await repo.update_instance_status(
        instance.id, InstanceStatus.ACTIVE, InstanceStatus.PAUSED
    )

    assert await engine.on_assignment_completed(instance.id, "A") == []
    assert await _steps(repo, instance.id) == ["A"]

    await repo.update_instance_status(
        instance.id, InstanceStatus.PAUSED, InstanceStatus.ACTIVE
    )
    created = await engine.catch_up(instance.id)
    assert sorted(a.step_id for a in created) == ["B", "C"]


class StaleReadRepository(InMemoryWorkflowRepository):
    """Returns the assignment snapshot taken before yielding to other tasks."""

    async def list_assignments(self, filter=None):
        snapshot = await super().list_assignments(filter)
        await asyncio.sleep(0.01)
        return snapshot


@pytest.mark.asyncio
async def test_concurrent_sibling_completions_create_one_successor():
    repo = StaleReadRepository()
    engine = ProgressionEngine(repo, _config())
    instance = await engine.start_instance(_diamond(), started_by="alice")
    await _finish(repo, instance.id, "A")
    await engine.on_assignment_completed(instance.id, "A")

    await _finish(repo, instance.id, "B")
    await _finish(repo, instance.id, "C")
    results = await asyncio.gather(
        engine.on_assignment_completed(instance.id, "B"),
        engine.on_assignment_completed(instance.id, "C"),
    )

    assert sorted(len(created) for created in results) == [0, 1]
    assert await _steps(repo, instance.id) == ["A", "B", "C", "D"]


@pytest.mark.asyncio
async def test_block_policy_completes_around_skipped_branch():
    repo = InMemoryWorkflowRepository()
    engine = ProgressionEngine(repo, _config("block"))
    instance = await engine.start_instance(_diamond(), started_by="alice")
    await _finish(repo, instance.id, "A")
    await engine.on_assignment_completed(instance.id, "A")

    await _finish(repo, instance.id, "B", AssignmentStatus.SKIPPED)
    assert await engine.on_assignment_completed(instance.id, "B") == []
    await _finish(repo, instance.id, "C")
    assert await engine.on_assignment_completed(instance.id, "C") == []

    assert await _steps(repo, instance.id) == ["A", "B", "C"]
    assert (await repo.get_instance(instance.id)).status == InstanceStatus.COMPLETED
