"""Stepwise: dependency-driven step assignments for human workflows."""

from .contracts import (
    ActivityEntry,
    Assignment,
    AssignmentStatus,
    InstanceStatus,
    StepTemplate,
    WorkflowDefinition,
    WorkflowInstance,
)
from .definitions import definition_from_dict, load_definition
from .errors import StepwiseError
from .notifier import AssignmentReadModel, Notification, RealtimeNotifier
from .persistence import get_repository
from .progression import ProgressionEngine
from .security.context import Actor
from .service import WorkflowService
from .state_machine import AssignmentStateMachine
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "ActivityEntry",
    "Actor",
    "Assignment",
    "AssignmentReadModel",
    "AssignmentStateMachine",
    "AssignmentStatus",
    "InstanceStatus",
    "Notification",
    "ProgressionEngine",
    "RealtimeNotifier",
    "StepTemplate",
    "StepwiseError",
    "WorkflowDefinition",
    "WorkflowInstance",
    "WorkflowService",
    "definition_from_dict",
    "get_repository",
    "get_transport",
    "load_definition",
]
