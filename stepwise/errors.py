"""Exception hierarchy for stepwise."""

from __future__ import annotations

from typing import Any, Dict, Optional


class StepwiseError(Exception):
    """Base error carrying a machine readable code and context details."""

    error_code: str = "STEPWISE_ERROR"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if error_code:
            self.error_code = error_code

    def to_dict(self) -> Dict[str, Any]:
        """Render the error for an API or UI response."""
        return {
            "error": {
                "code": self.error_code,
                "message": self.message,
                "details": self.details,
            }
        }


class InvalidDefinition(StepwiseError):
    """Workflow definition is malformed or its dependency graph has a cycle."""

    error_code = "INVALID_DEFINITION"


class DefinitionNotFound(StepwiseError):
    error_code = "DEFINITION_NOT_FOUND"


class InstanceNotFound(StepwiseError):
    error_code = "INSTANCE_NOT_FOUND"


class AssignmentNotFound(StepwiseError):
    error_code = "ASSIGNMENT_NOT_FOUND"


class InvalidTransition(StepwiseError):
    """Attempted status change is not allowed from the stored state."""

    error_code = "INVALID_TRANSITION"

    @property
    def is_stale(self) -> bool:
        """``True`` when the caller most likely acted on outdated data."""
        return bool(self.details.get("stale"))


class Unauthorized(StepwiseError):
    error_code = "UNAUTHORIZED"


class PersistenceUnavailable(StepwiseError):
    """Transient failure talking to the backing data service."""

    error_code = "PERSISTENCE_UNAVAILABLE"


class DuplicateAssignment(StepwiseError):
    """An assignment already exists for the ``(instance, step)`` pair."""

    error_code = "DUPLICATE_ASSIGNMENT"


class ChangeFeedUnavailable(StepwiseError):
    """A committed write could not be published on the change feed.

    ``committed`` holds the record as stored, so callers can finish the work
    that depends on the write before reporting the failure.
    """

    error_code = "CHANGE_FEED_UNAVAILABLE"

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        committed: Any = None,
    ) -> None:
        super().__init__(message, details)
        self.committed = committed


__all__ = [
    "StepwiseError",
    "InvalidDefinition",
    "DefinitionNotFound",
    "InstanceNotFound",
    "AssignmentNotFound",
    "InvalidTransition",
    "Unauthorized",
    "PersistenceUnavailable",
    "DuplicateAssignment",
    "ChangeFeedUnavailable",
]
