import asyncio
from pathlib import Path

from typer.testing import CliRunner

import stepwise.persistence as persistence
import stepwise.transports as transports
from stepwise.cli import app
from stepwise.contracts import AssignmentFilter, InstanceStatus
from stepwise.persistence import InMemoryWorkflowRepository
from stepwise.transports import CHANGES_TOPIC, InMemoryTransport

FIXTURES = Path(__file__).parent.parent / "fixtures"


def _setup_repo() -> InMemoryWorkflowRepository:
    repo = InMemoryWorkflowRepository()
    persistence._repository_instance = repo
    transports._transport_instance = InMemoryTransport()
    return repo


def _register(runner: CliRunner) -> None:
    result = runner.invoke(app, ["definition", "register", str(FIXTURES / "onboarding.yaml")])
    assert result.exit_code == 0, f"Register failed: {result.stdout}"


def _only_instance(repo: InMemoryWorkflowRepository) -> str:
    [instance] = asyncio.run(repo.list_instances())
    return instance.id


def test_definition_validate_prints_order():
    runner = CliRunner()
    result = runner.invoke(app, ["definition", "validate", str(FIXTURES / "onboarding.yaml")])
    assert result.exit_code == 0, f"Output: {result.stdout}"
    lines = result.stdout.splitlines()
    assert "is valid (4 steps)" in lines[0]
    assert lines[-1].startswith("- welcome <- accounts, laptop")


def test_definition_validate_reports_cycle():
    runner = CliRunner()
    result = runner.invoke(app, ["definition", "validate", str(FIXTURES / "cyclic.json")])
    assert result.exit_code == 1
    assert "INVALID_DEFINITION" in result.stdout
    assert "Cycle through: a, b, c" in result.stdout


def test_register_list_and_start():
    repo = _setup_repo()
    runner = CliRunner()
    _register(runner)

    listed = runner.invoke(app, ["definition", "list"])
    assert "onboarding\tEmployee onboarding\t4 steps" in listed.stdout

    started = runner.invoke(
        app, ["instance", "start", "onboarding", "--as", "carol", "--assign", "paperwork=dan"]
    )
    assert started.exit_code == 0, f"Output: {started.stdout}"
    instance_id = _only_instance(repo)
    assert instance_id in started.stdout

    [paperwork] = asyncio.run(repo.list_assignments(AssignmentFilter(instance_id=instance_id)))
    assert paperwork.step_id == "paperwork"
    assert paperwork.assignee_user_id == "dan"

    shown = runner.invoke(app, ["instance", "show", instance_id])
    assert shown.exit_code == 0
    assert f"Instance {instance_id}: active (onboarding)" in shown.stdout
    assert "- paperwork: pending -> dan" in shown.stdout


def test_start_unknown_definition():
    _setup_repo()
    runner = CliRunner()
    result = runner.invoke(app, ["instance", "start", "missing", "--as", "carol"])
    assert result.exit_code == 1
    assert "DEFINITION_NOT_FOUND" in result.stdout


def test_assignment_commands_drive_workflow():
    repo = _setup_repo()
    runner = CliRunner()
    _register(runner)
    runner.invoke(app, ["instance", "start", "onboarding", "--as", "carol"])
    instance_id = _only_instance(repo)

    mine = runner.invoke(app, ["assignment", "list", "--user", "hr-alice"])
    assert "paperwork\tpending\thr-alice" in mine.stdout
    [paperwork] = asyncio.run(repo.list_assignments(AssignmentFilter(step_id="paperwork")))

    denied = runner.invoke(app, ["assignment", "complete", paperwork.id, "--as", "it-bob"])
    assert denied.exit_code == 1
    assert "UNAUTHORIZED" in denied.stdout

    done = runner.invoke(
        app,
        ["assignment", "complete", paperwork.id, "--as", "hr-alice", "--notes", "signed", "--hours", "2"],
    )
    assert done.exit_code == 0, f"Output: {done.stdout}"
    assert "completed" in done.stdout

    again = runner.invoke(app, ["assignment", "complete", paperwork.id, "--as", "hr-alice"])
    assert again.exit_code == 1
    assert "INVALID_TRANSITION" in again.stdout

    assignments = {
        a.step_id: a
        for a in asyncio.run(repo.list_assignments(AssignmentFilter(instance_id=instance_id)))
    }
    assert set(assignments) == {"paperwork", "laptop", "accounts"}
    assert assignments["paperwork"].actual_hours == 2
    assert assignments["accounts"].assignee_user_id == "hr-alice"

    skipped = runner.invoke(
        app, ["assignment", "skip", assignments["accounts"].id, "--as", "carol"]
    )
    assert skipped.exit_code == 0, f"Output: {skipped.stdout}"
    pending = runner.invoke(
        app, ["assignment", "list", "--instance", instance_id, "--status", "pending"]
    )
    assert "laptop" in pending.stdout
    assert "accounts" not in pending.stdout


def test_pause_resume_cancel():
    repo = _setup_repo()
    runner = CliRunner()
    _register(runner)
    runner.invoke(app, ["instance", "start", "onboarding", "--as", "carol"])
    instance_id = _only_instance(repo)

    denied = runner.invoke(app, ["instance", "pause", instance_id, "--as", "it-bob"])
    assert denied.exit_code == 1

    paused = runner.invoke(
        app, ["instance", "pause", instance_id, "--as", "erin", "--role", "admin"]
    )
    assert paused.exit_code == 0, f"Output: {paused.stdout}"
    assert "paused" in paused.stdout
    listed = runner.invoke(app, ["instance", "list", "--status", "paused"])
    assert instance_id in listed.stdout

    resumed = runner.invoke(app, ["instance", "resume", instance_id, "--as", "carol"])
    assert resumed.exit_code == 0, f"Output: {resumed.stdout}"
    cancelled = runner.invoke(app, ["instance", "cancel", instance_id, "--as", "carol"])
    assert cancelled.exit_code == 0
    assert asyncio.run(repo.get_instance(instance_id)).status == InstanceStatus.CANCELLED

    again = runner.invoke(app, ["instance", "resume", instance_id, "--as", "carol"])
    assert again.exit_code == 1
    assert "INVALID_TRANSITION" in again.stdout


def test_show_missing_instance():
    _setup_repo()
    runner = CliRunner()
    result = runner.invoke(app, ["instance", "show", "missing-id"])
    assert result.exit_code == 1
    assert "INSTANCE_NOT_FOUND" in result.stdout


def test_commands_publish_to_change_feed_and_watch_prints_them():
    repo = _setup_repo()
    runner = CliRunner()
    _register(runner)
    runner.invoke(app, ["instance", "start", "onboarding", "--as", "carol"])
    instance_id = _only_instance(repo)
    [paperwork] = asyncio.run(repo.list_assignments(AssignmentFilter(step_id="paperwork")))

    done = runner.invoke(app, ["assignment", "complete", paperwork.id, "--as", "hr-alice"])
    assert done.exit_code == 0, f"Output: {done.stdout}"

    events = transports._transport_instance.events(CHANGES_TOPIC)
    updates = [e for e in events if e.table == "assignments" and e.kind == "update"]
    assert [e.record["status"] for e in updates] == ["completed"]
    assert events[0].table == "instances"
    assert events[0].record["id"] == instance_id
    created = [e for e in events if e.table == "assignments" and e.kind == "insert"]
    assert [e.record["step_id"] for e in created] == ["paperwork", "laptop", "accounts"]

    watched = runner.invoke(app, ["instance", "watch", instance_id, "--lifespan", "0.2"])
    assert watched.exit_code == 0, f"Output: {watched.stdout}"
    lines = watched.stdout.splitlines()
    assert f"assignment_created\t{instance_id}\tpaperwork\tpending\thr-alice" in lines
    assert f"assignment_status_changed\t{instance_id}\tpaperwork\tcompleted\thr-alice" in lines
    assert f"assignment_created\t{instance_id}\taccounts\tpending\thr-alice" in lines

    mine = runner.invoke(app, ["instance", "watch", "--user", "it-bob", "--lifespan", "0.2"])
    assert mine.stdout.splitlines() == [
        f"assignment_created\t{instance_id}\tlaptop\tpending\tit-bob"
    ]
