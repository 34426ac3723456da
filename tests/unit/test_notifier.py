import pytest

from stepwise.config import RetryConfig, StepwiseConfig
from stepwise.contracts import (
    AssignmentStatus,
    ChangeEvent,
    InstanceStatus,
    StepTemplate,
    WorkflowDefinition,
)
from stepwise.errors import ChangeFeedUnavailable
from stepwise.graph import classify
from stepwise.notifier import AssignmentReadModel, NotificationType, RealtimeNotifier
from stepwise.persistence import ChangeFeedRepository, InMemoryWorkflowRepository
from stepwise.security.context import Actor
from stepwise.service import WorkflowService
from stepwise.transports import CHANGES_TOPIC
from stepwise.transports.inmemory import InMemoryTransport

CONFIG = StepwiseConfig(retry=RetryConfig(base=0, jitter=0))


def _definition() -> WorkflowDefinition:
    return WorkflowDefinition(
        id="launch",
        name="Product launch",
        steps=[
            StepTemplate(id="plan", name="Plan"),
            StepTemplate(id="copy", name="Write copy", depends_on={"plan"}),
            StepTemplate(id="assets", name="Design assets", depends_on={"plan"}),
            StepTemplate(id="ship", name="Ship", depends_on={"copy", "assets"}),
        ],
    )


async def _run_workflow(service: WorkflowService) -> str:
    await service.register_definition(_definition())
    instance_id = await service.start_workflow(
        "launch", {"copy": "bob", "assets": "carol"}, Actor(user_id="alice")
    )
    for step_id, user in (("plan", "alice"), ("copy", "bob"), ("assets", "carol"), ("ship", "alice")):
        [assignment] = [
            a
            for a in await service.get_assignments_for_instance(instance_id)
            if a.step_id == step_id
        ]
        await service.complete_step(assignment.id, Actor(user_id=user))
    return instance_id


@pytest.mark.asyncio
async def test_change_feed_publishes_committed_writes():
    transport = InMemoryTransport()
    repo = ChangeFeedRepository(InMemoryWorkflowRepository(), transport)
    service = WorkflowService(repo, config=CONFIG)

    await _run_workflow(service)

    events = transport.events(CHANGES_TOPIC)
    assert events[0].table == "instances"
    assert events[0].kind == "insert"
    assert "definition" not in events[0].record
    inserts = [e for e in events if e.table == "assignments" and e.kind == "insert"]
    assert [e.record["step_id"] for e in inserts] == ["plan", "copy", "assets", "ship"]
    assert events[-1].table == "instances"
    assert events[-1].record["status"] == "completed"
    assert events[-1].old_record["status"] == "active"


@pytest.mark.asyncio
async def test_notifications_rebuild_assignment_view():
    transport = InMemoryTransport()
    service = WorkflowService(InMemoryWorkflowRepository(), transport, config=CONFIG)
    notifier = service.notifier()

    everything = AssignmentReadModel()
    everything.attach(notifier)
    bobs = AssignmentReadModel()
    bobs.attach(notifier, user_id="bob")
    received = []
    notifier.subscribe(received.append)

    instance_id = await _run_workflow(service)
    await notifier.run(lifespan=0.1)

    stored = await service.get_assignments_for_instance(instance_id)
    definition = _definition()
    assert classify(definition, everything.for_instance(instance_id)) == classify(
        definition, stored
    )
    assert {a.id: a.version for a in everything.for_instance(instance_id)} == {
        a.id: a.version for a in stored
    }
    assert [a.step_id for a in bobs.for_user("bob")] == ["copy"]
    assert bobs.for_user("alice") == []
    assert everything.instances[instance_id].status == InstanceStatus.COMPLETED

    types = [n.type for n in received]
    assert types.count(NotificationType.ASSIGNMENT_CREATED) == 4
    assert types.count(NotificationType.ASSIGNMENT_STATUS_CHANGED) == 4
    assert types[-1] == NotificationType.INSTANCE_COMPLETED
    created = next(n for n in received if n.type == NotificationType.ASSIGNMENT_CREATED)
    assert created.instance is not None
    assert created.instance.id == instance_id


@pytest.mark.asyncio
async def test_read_model_apply_is_idempotent():
    transport = InMemoryTransport()
    service = WorkflowService(InMemoryWorkflowRepository(), transport, config=CONFIG)
    notifier = service.notifier()
    received = []
    notifier.subscribe(received.append)
    await _run_workflow(service)
    await notifier.run(lifespan=0.1)

    model = AssignmentReadModel()
    for notification in received:
        model.apply(notification)
    snapshot = dict(model.assignments)

    assert not any(model.apply(n) for n in received)
    # an older version after a newer one changes nothing
    assert not any(model.apply(n) for n in reversed(received))
    assert model.assignments == snapshot
    assert all(a.status == AssignmentStatus.COMPLETED for a in snapshot.values())


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_block_others():
    transport = InMemoryTransport()
    notifier = RealtimeNotifier(transport)

    def broken(notification):
        raise RuntimeError("consumer bug")

    received = []
    notifier.subscribe(broken)
    notifier.subscribe(received.append)

    await transport.publish(
        CHANGES_TOPIC,
        ChangeEvent(
            table="assignments",
            kind="insert",
            record={
                "id": "a1",
                "instance_id": "i1",
                "step_id": "plan",
                "assignee_user_id": "alice",
            },
        ),
    )
    await notifier.run(lifespan=0.05)
    assert [n.assignment.id for n in received] == ["a1"]


@pytest.mark.asyncio
async def test_queue_subscription_and_instance_filter():
    transport = InMemoryTransport()
    service = WorkflowService(InMemoryWorkflowRepository(), transport, config=CONFIG)
    notifier = service.notifier()

    first = await _run_workflow(service)
    second = await _run_workflow(service)

    subscription = notifier.subscribe(instance_id=second)
    await notifier.run(lifespan=0.1)
    subscription.unsubscribe()

    seen = [n async for n in subscription]
    assert seen
    assert {n.instance_id for n in seen} == {second}
    assert first != second
    assert notifier.subscriptions == []


@pytest.mark.asyncio
async def test_non_status_update_is_not_a_notification():
    notifier = RealtimeNotifier(InMemoryTransport())
    record = {
        "id": "a1",
        "instance_id": "i1",
        "step_id": "plan",
        "assignee_user_id": "alice",
        "status": "in_progress",
        "version": 3,
    }
    event = ChangeEvent(
        table="assignments",
        kind="update",
        record=record,
        old_record={"id": "a1", "status": "in_progress", "version": 2},
    )
    assert await notifier.to_notification(event) is None


class DroppingTransport(InMemoryTransport):
    """Rejects assignment updates while ``drop_updates`` is set."""

    drop_updates = False

    async def publish(self, topic, event):
        if self.drop_updates and event.table == "assignments" and event.kind == "update":
            raise ConnectionError("stream unavailable")
        await super().publish(topic, event)


@pytest.mark.asyncio
async def test_publish_failure_still_advances_workflow():
    transport = DroppingTransport()
    service = WorkflowService(InMemoryWorkflowRepository(), transport, config=CONFIG)
    await service.register_definition(_definition())
    alice = Actor(user_id="alice")
    instance_id = await service.start_workflow("launch", actor=alice)
    [plan] = await service.get_assignments_for_instance(instance_id)

    transport.drop_updates = True
    with pytest.raises(ChangeFeedUnavailable) as exc_info:
        await service.complete_step(plan.id, alice)
    assert exc_info.value.committed.status == AssignmentStatus.COMPLETED

    assignments = await service.get_assignments_for_instance(instance_id)
    stored = {a.step_id: a.status for a in assignments}
    assert stored == {
        "plan": AssignmentStatus.COMPLETED,
        "copy": AssignmentStatus.PENDING,
        "assets": AssignmentStatus.PENDING,
    }
    # the new assignments still reached the feed
    inserts = [
        e.record["step_id"]
        for e in transport.events(CHANGES_TOPIC)
        if e.table == "assignments" and e.kind == "insert"
    ]
    assert inserts == ["plan", "copy", "assets"]


@pytest.mark.asyncio
async def test_notifier_forgets_closed_instances():
    transport = InMemoryTransport()
    service = WorkflowService(InMemoryWorkflowRepository(), transport, config=CONFIG)
    notifier = service.notifier()
    bobs_feed = []
    notifier.subscribe(bobs_feed.append, user_id="bob")

    finished = await _run_workflow(service)
    cancelled = await service.start_workflow(
        "launch", {"plan": "bob"}, Actor(user_id="alice")
    )
    await service.cancel_instance(cancelled, Actor(user_id="alice"))
    running = await service.start_workflow("launch", actor=Actor(user_id="alice"))
    await notifier.run(lifespan=0.1)

    # bob took part in the finished instance, so he heard about its completion
    closed = [n for n in bobs_feed if n.type == NotificationType.INSTANCE_COMPLETED]
    assert [n.instance_id for n in closed] == [finished]
    assert any(n.instance_id == cancelled for n in bobs_feed)
    assert set(notifier._instances) == {running}
    assert set(notifier._participants) == {running}
    assert not notifier.is_participant(finished, "bob")
