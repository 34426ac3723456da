"""Caller identity passed into engine operations."""

from __future__ import annotations

from typing import Set

from pydantic import BaseModel, Field


class Actor(BaseModel):
    """The authenticated user on whose behalf an operation runs.

    Authentication itself happens elsewhere; the engine only needs the user id
    and the roles the session was granted.
    """

    user_id: str
    roles: Set[str] = Field(default_factory=set, description="Granted role names")
