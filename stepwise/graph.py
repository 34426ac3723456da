"""Pure functions over a workflow definition's dependency graph.

Nothing in this module touches persistence. Every function takes an explicit
definition plus, where relevant, the assignments that exist for an instance,
and returns a derived view. The progression engine and the completion
evaluator are thin executors around these results.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, Literal, Mapping

from .contracts import Assignment, AssignmentStatus, WorkflowDefinition
from .errors import InvalidDefinition

SkipPolicy = Literal["pass_through", "block"]


def validate_definition(definition: WorkflowDefinition) -> list[str]:
    """Validate ``definition`` and return its step ids in topological order.

    Raises:
        InvalidDefinition: duplicate or unknown step ids, self dependencies, or
            a dependency cycle.
    """
    if not definition.steps:
        raise InvalidDefinition(
            f"Workflow definition {definition.id} has no steps",
            details={"definition_id": definition.id},
        )

    seen: set[str] = set()
    for template in definition.steps:
        if template.id in seen:
            raise InvalidDefinition(
                f"Duplicate step id {template.id!r}",
                details={"definition_id": definition.id, "step_id": template.id},
            )
        seen.add(template.id)

    for template in definition.steps:
        if template.id in template.depends_on:
            raise InvalidDefinition(
                f"Step {template.id!r} depends on itself",
                details={"definition_id": definition.id, "step_id": template.id},
            )
        unknown = sorted(template.depends_on - seen)
        if unknown:
            raise InvalidDefinition(
                f"Step {template.id!r} depends on unknown steps: {', '.join(unknown)}",
                details={
                    "definition_id": definition.id,
                    "step_id": template.id,
                    "unknown": unknown,
                },
            )
        rule = template.assignee_rule
        if rule.kind == "predecessor" and rule.step_id not in seen:
            raise InvalidDefinition(
                f"Step {template.id!r} takes its assignee from unknown step {rule.step_id!r}",
                details={"definition_id": definition.id, "step_id": template.id},
            )

    return topological_order(definition)


def topological_order(definition: WorkflowDefinition) -> list[str]:
    """Kahn's algorithm; definition order breaks ties between ready steps."""
    in_degree = {t.id: len(t.depends_on) for t in definition.steps}
    children = dependents_map(definition)
    ready = deque(t.id for t in definition.steps if in_degree[t.id] == 0)
    order: list[str] = []
    while ready:
        step_id = ready.popleft()
        order.append(step_id)
        for child in children[step_id]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                ready.append(child)

    if len(order) != len(definition.steps):
        cyclic = sorted(step_id for step_id, degree in in_degree.items() if degree > 0)
        raise InvalidDefinition(
            f"Workflow definition {definition.id} has a dependency cycle through: "
            f"{', '.join(cyclic)}",
            details={"definition_id": definition.id, "cycle": cyclic},
        )
    return order


def dependents_map(definition: WorkflowDefinition) -> Dict[str, list[str]]:
    """Map each step id to the ids of the steps that directly depend on it."""
    children: Dict[str, list[str]] = {t.id: [] for t in definition.steps}
    for template in definition.steps:
        for parent in template.depends_on:
            if parent in children:
                children[parent].append(template.id)
    return children


def root_steps(definition: WorkflowDefinition) -> list[str]:
    return [t.id for t in definition.steps if not t.depends_on]


def direct_dependents(definition: WorkflowDefinition, step_id: str) -> list[str]:
    return dependents_map(definition).get(step_id, [])


def status_by_step(assignments: Iterable[Assignment]) -> Dict[str, AssignmentStatus]:
    return {a.step_id: a.status for a in assignments}


def blocked_steps(
    definition: WorkflowDefinition,
    statuses: Mapping[str, AssignmentStatus],
    skip_policy: SkipPolicy = "pass_through",
) -> set[str]:
    """Steps that can never become eligible under ``skip_policy``.

    With ``pass_through`` a skipped step satisfies its dependents and nothing is
    blocked. With ``block`` every unmaterialized step downstream of a skipped
    step is blocked, transitively.
    """
    if skip_policy == "pass_through":
        return set()

    children = dependents_map(definition)
    blocked: set[str] = set()
    frontier = deque(
        step_id
        for step_id, status in statuses.items()
        if status == AssignmentStatus.SKIPPED
    )
    while frontier:
        step_id = frontier.popleft()
        for child in children.get(step_id, []):
            if child in blocked or child in statuses:
                continue
            blocked.add(child)
            frontier.append(child)
    return blocked


def is_satisfied(
    definition: WorkflowDefinition,
    step_id: str,
    statuses: Mapping[str, AssignmentStatus],
) -> bool:
    """``True`` when every dependency of ``step_id`` has a terminal assignment."""
    template = definition.step(step_id)
    return all(
        dep in statuses and statuses[dep].is_terminal for dep in template.depends_on
    )


def eligible_steps(
    definition: WorkflowDefinition,
    statuses: Mapping[str, AssignmentStatus],
    skip_policy: SkipPolicy = "pass_through",
    candidates: Iterable[str] | None = None,
) -> list[str]:
    """Unmaterialized, unblocked steps whose dependencies are all terminal."""
    blocked = blocked_steps(definition, statuses, skip_policy)
    pool = list(candidates) if candidates is not None else definition.step_ids
    return [
        step_id
        for step_id in pool
        if step_id not in statuses
        and step_id not in blocked
        and is_satisfied(definition, step_id, statuses)
    ]


@dataclass
class StepClassification:
    """Where every step of an instance stands."""

    materialized: set[str] = field(default_factory=set)
    terminal: set[str] = field(default_factory=set)
    eligible: set[str] = field(default_factory=set)
    blocked: set[str] = field(default_factory=set)
    waiting: set[str] = field(default_factory=set)

    @property
    def is_complete(self) -> bool:
        return (
            not self.eligible
            and not self.waiting
            and self.materialized == self.terminal
        )


def classify(
    definition: WorkflowDefinition,
    assignments: Iterable[Assignment],
    skip_policy: SkipPolicy = "pass_through",
) -> StepClassification:
    statuses = status_by_step(assignments)
    blocked = blocked_steps(definition, statuses, skip_policy)
    eligible = set(eligible_steps(definition, statuses, skip_policy))
    known = set(definition.step_ids)
    materialized = set(statuses) & known
    return StepClassification(
        materialized=materialized,
        terminal={s for s in materialized if statuses[s].is_terminal},
        eligible=eligible,
        blocked=blocked,
        waiting=known - materialized - eligible - blocked,
    )


__all__ = [
    "SkipPolicy",
    "StepClassification",
    "blocked_steps",
    "classify",
    "dependents_map",
    "direct_dependents",
    "eligible_steps",
    "is_satisfied",
    "root_steps",
    "status_by_step",
    "topological_order",
    "validate_definition",
]
