"""Command line interface for stepwise workflows."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Coroutine, List, Optional, TypeVar

import typer

from .config import load_config
from .contracts import AssignmentFilter, AssignmentStatus, InstanceStatus
from .definitions import load_definition
from .errors import StepwiseError
from .graph import topological_order
from .notifier import Notification
from .persistence import get_repository
from .security.context import Actor
from .service import WorkflowService
from .transports import get_transport

T = TypeVar("T")

app = typer.Typer(help="CLI for stepwise workflows")

# Command groups
definition_app = typer.Typer(help="Commands for managing workflow definitions")
instance_app = typer.Typer(help="Commands for managing workflow instances")
assignment_app = typer.Typer(help="Commands for working on assignments")

app.add_typer(definition_app, name="definition")
app.add_typer(instance_app, name="instance")
app.add_typer(assignment_app, name="assignment")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Python logging level"),
) -> None:
    """Stepwise CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _service() -> WorkflowService:
    config = load_config()
    return WorkflowService(get_repository(), transport=get_transport(config=config), config=config)


def _run(coro: Coroutine[None, None, T]) -> T:
    """Run ``coro`` and turn domain errors into a red message and exit code 1."""
    try:
        return asyncio.run(coro)
    except StepwiseError as exc:
        typer.secho(f"{exc.error_code}: {exc.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _actor(user: str, roles: Optional[List[str]]) -> Actor:
    return Actor(user_id=user, roles=set(roles or []))


def _parse_overrides(values: Optional[List[str]]) -> dict[str, str]:
    overrides = {}
    for value in values or []:
        step_id, sep, user_id = value.partition("=")
        if not sep or not step_id or not user_id:
            typer.secho(f"Invalid assignment '{value}', expected STEP=USER", fg=typer.colors.RED)
            raise typer.Exit(code=2)
        overrides[step_id] = user_id
    return overrides


# ----------------------------------------------------------------------
# definitions
@definition_app.command("validate")
def definition_validate(path: Path) -> None:
    """
    Check a definition file without storing it.

    Prints the steps in an order that respects their dependencies.

    Example:
        stepwise definition validate ./onboarding.yaml
    """
    try:
        definition = load_definition(path)
    except StepwiseError as exc:
        typer.secho(f"{exc.error_code}: {exc.message}", fg=typer.colors.RED)
        if exc.details.get("cycle"):
            typer.echo(f"Cycle through: {', '.join(exc.details['cycle'])}")
        raise typer.Exit(code=1)
    except FileNotFoundError:
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    typer.echo(f"Definition {definition.id} is valid ({len(definition.steps)} steps)")
    for step_id in topological_order(definition):
        deps = sorted(definition.step(step_id).depends_on)
        typer.echo(f"- {step_id}" + (f" <- {', '.join(deps)}" if deps else ""))


@definition_app.command("register")
def definition_register(path: Path) -> None:
    """Validate a definition file and store it."""
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    async def _register():
        return await _service().register_definition(load_definition(path))

    definition = _run(_register())
    typer.echo(f"Registered {definition.id}: {definition.name}")


@definition_app.command("list")
def definition_list() -> None:
    """List stored workflow definitions."""
    definitions = _run(_service().list_definitions())
    if not definitions:
        typer.echo("No definitions found")
        return
    for definition in definitions:
        typer.echo(f"{definition.id}\t{definition.name}\t{len(definition.steps)} steps")


# ----------------------------------------------------------------------
# instances
@instance_app.command("start")
def instance_start(
    definition_id: str,
    user: str = typer.Option(..., "--as", help="User starting the workflow"),
    assign: Optional[List[str]] = typer.Option(
        None, "--assign", help="Assignee override as STEP=USER; repeatable"
    ),
) -> None:
    """
    Start a workflow instance from a stored definition.

    Example:
        stepwise instance start onboarding --as alice --assign laptop=bob
    """
    overrides = _parse_overrides(assign)
    instance_id = _run(
        _service().start_workflow(definition_id, overrides, _actor(user, None))
    )
    typer.echo(f"Started instance {instance_id}")


@instance_app.command("list")
def instance_list(
    status: Optional[InstanceStatus] = typer.Option(None, help="Only this status"),
) -> None:
    """List workflow instances with their status."""
    instances = _run(_service().list_instances(status))
    if not instances:
        typer.echo("No instances found")
        return
    for instance in instances:
        typer.echo(f"{instance.id}\t{instance.definition_id}\t{instance.status.value}")


@instance_app.command("show")
def instance_show(instance_id: str) -> None:
    """
    Show an instance with its assignments and activity log.

    Example:
        stepwise instance show 0b7c...
        # Output: Instance 0b7c...: active (onboarding)
        #         - paperwork: completed -> hr-alice
        #         - laptop: pending -> bob
    """
    service = _service()

    async def _load():
        instance = await service.get_instance(instance_id)
        assignments = await service.get_assignments_for_instance(instance_id)
        activity = await service.list_activity(instance_id)
        return instance, assignments, activity

    instance, assignments, activity = _run(_load())
    typer.echo(f"Instance {instance.id}: {instance.status.value} ({instance.definition_id})")
    if instance.started_by:
        typer.echo(f"Started by: {instance.started_by}")
    for assignment in assignments:
        typer.echo(
            f"- {assignment.step_id}: {assignment.status.value} -> "
            f"{assignment.assignee_user_id} [{assignment.id}]"
        )
    if activity:
        typer.echo("Activity:")
        for entry in activity:
            typer.echo(f"  {entry.created_at:%Y-%m-%d %H:%M} {entry.user_id or '-'}: {entry.message}")


def _manage(action: str, instance_id: str, user: str, roles: Optional[List[str]]) -> None:
    service = _service()
    handler = getattr(service, f"{action}_instance")
    instance = _run(handler(instance_id, _actor(user, roles)))
    typer.echo(f"Instance {instance.id}: {instance.status.value}")


@instance_app.command("pause")
def instance_pause(
    instance_id: str,
    user: str = typer.Option(..., "--as"),
    role: Optional[List[str]] = typer.Option(None, "--role"),
) -> None:
    """Pause an active instance; its assignments are frozen until resumed."""
    _manage("pause", instance_id, user, role)


@instance_app.command("resume")
def instance_resume(
    instance_id: str,
    user: str = typer.Option(..., "--as"),
    role: Optional[List[str]] = typer.Option(None, "--role"),
) -> None:
    """Resume a paused instance."""
    _manage("resume", instance_id, user, role)


@instance_app.command("cancel")
def instance_cancel(
    instance_id: str,
    user: str = typer.Option(..., "--as"),
    role: Optional[List[str]] = typer.Option(None, "--role"),
) -> None:
    _manage("cancel", instance_id, user, role)


@instance_app.command("watch")
def instance_watch(
    instance_id: Optional[str] = typer.Argument(None),
    user: Optional[str] = typer.Option(None, "--user", help="Only this assignee's work"),
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
) -> None:
    """Print assignment notifications from the change feed as they arrive."""
    notifier = _service().notifier()

    def _print(notification: Notification) -> None:
        assignment = notification.assignment
        if assignment is not None:
            typer.echo(
                f"{notification.type.value}\t{assignment.instance_id}\t"
                f"{assignment.step_id}\t{assignment.status.value}\t{assignment.assignee_user_id}"
            )
        else:
            typer.echo(f"{notification.type.value}\t{notification.instance_id}")

    notifier.subscribe(_print, user_id=user, instance_id=instance_id)
    asyncio.run(notifier.run(lifespan=lifespan))


# ----------------------------------------------------------------------
# assignments
@assignment_app.command("list")
def assignment_list(
    user: Optional[str] = typer.Option(None, "--user"),
    instance_id: Optional[str] = typer.Option(None, "--instance"),
    status: Optional[List[AssignmentStatus]] = typer.Option(None, "--status"),
) -> None:
    """List assignments for a user or an instance."""
    if user is None and instance_id is None:
        typer.secho("Pass --user or --instance", fg=typer.colors.RED)
        raise typer.Exit(code=2)
    service = _service()
    filter = AssignmentFilter(
        instance_id=instance_id,
        assignee_user_id=user,
        statuses=set(status) if status else None,
    )
    assignments = _run(service.repository.list_assignments(filter))
    if not assignments:
        typer.echo("No assignments found")
        return
    for assignment in assignments:
        due = f"\tdue {assignment.due_date:%Y-%m-%d}" if assignment.due_date else ""
        typer.echo(
            f"{assignment.id}\t{assignment.instance_id}\t{assignment.step_id}\t"
            f"{assignment.status.value}\t{assignment.assignee_user_id}{due}"
        )


@assignment_app.command("start")
def assignment_start(
    assignment_id: str,
    user: str = typer.Option(..., "--as"),
    role: Optional[List[str]] = typer.Option(None, "--role"),
) -> None:
    """Mark an assignment as in progress."""
    assignment = _run(_service().start_step(assignment_id, _actor(user, role)))
    typer.echo(f"Assignment {assignment.id}: {assignment.status.value}")


@assignment_app.command("complete")
def assignment_complete(
    assignment_id: str,
    user: str = typer.Option(..., "--as"),
    role: Optional[List[str]] = typer.Option(None, "--role"),
    notes: Optional[str] = typer.Option(None, "--notes"),
    hours: Optional[float] = typer.Option(None, "--hours", help="Actual hours spent"),
) -> None:
    """
    Complete an assignment and advance the workflow.

    Example:
        stepwise assignment complete 5d1e... --as bob --notes "shipped" --hours 2
    """
    assignment = _run(
        _service().complete_step(
            assignment_id, _actor(user, role), notes=notes, actual_hours=hours
        )
    )
    typer.echo(f"Assignment {assignment.id}: {assignment.status.value}")


@assignment_app.command("skip")
def assignment_skip(
    assignment_id: str,
    user: str = typer.Option(..., "--as"),
    role: Optional[List[str]] = typer.Option(None, "--role"),
    notes: Optional[str] = typer.Option(None, "--notes"),
) -> None:
    """Skip an assignment. Requires manage rights on the instance."""
    assignment = _run(_service().skip_step(assignment_id, _actor(user, role), notes=notes))
    typer.echo(f"Assignment {assignment.id}: {assignment.status.value}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
