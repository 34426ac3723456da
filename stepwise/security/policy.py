"""Authorization decisions for assignment and instance actions."""

from __future__ import annotations

from typing import Iterable, Literal, Protocol

from ..contracts import Assignment, WorkflowInstance
from .context import Actor

Action = Literal["act", "skip", "manage"]


class AuthorizationPolicy(Protocol):
    """Decides whether ``actor`` may perform ``action``.

    ``act`` covers start/complete of an assignment, ``skip`` the explicit skip
    action and ``manage`` instance level changes (pause, resume, cancel).
    """

    async def evaluate(
        self,
        actor: Actor,
        action: Action,
        instance: WorkflowInstance,
        assignment: Assignment | None = None,
    ) -> bool:
        """Return ``True`` if the action is permitted."""


class RolePolicy:
    """Default policy: assignees act on their own work, managers on anything.

    A manager is whoever started the instance or holds one of
    ``manage_roles``.
    """

    def __init__(self, manage_roles: Iterable[str] = ("admin", "manager")) -> None:
        self.manage_roles = frozenset(manage_roles)

    def can_manage(self, actor: Actor, instance: WorkflowInstance) -> bool:
        if instance.started_by is not None and actor.user_id == instance.started_by:
            return True
        return bool(self.manage_roles & actor.roles)

    async def evaluate(
        self,
        actor: Actor,
        action: Action,
        instance: WorkflowInstance,
        assignment: Assignment | None = None,
    ) -> bool:
        if action == "act" and assignment is not None:
            if assignment.assignee_user_id == actor.user_id:
                return True
        return self.can_manage(actor, instance)
