"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional

import asyncpg

from ..contracts import (
    ActivityEntry,
    Assignment,
    AssignmentFilter,
    AssignmentStatus,
    InstanceStatus,
    WorkflowDefinition,
    WorkflowInstance,
    utcnow,
)
from ..errors import DuplicateAssignment, PersistenceUnavailable
from .repository import WorkflowRepository

_TRANSIENT_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.CannotConnectNowError,
    asyncpg.exceptions.TooManyConnectionsError,
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
)

_ASSIGNMENT_COLUMNS = (
    "id, instance_id, step_id, assignee_user_id, assigned_by, status, notes, "
    "actual_hours, created_at, completed_at, due_date, version"
)
_INSTANCE_COLUMNS = (
    "id, definition_id, definition, status, started_by, assignee_overrides, "
    "created_at, updated_at, completed_at"
)


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        try:
            conn = await self._connect()
        except _TRANSIENT_ERRORS as exc:
            raise PersistenceUnavailable(
                f"PostgreSQL unavailable: {exc}", details={"backend": "postgres"}
            ) from exc
        try:
            yield conn
        except _TRANSIENT_ERRORS as exc:
            raise PersistenceUnavailable(
                f"PostgreSQL operation failed: {exc}", details={"backend": "postgres"}
            ) from exc
        finally:
            await conn.close()

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS definitions (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                document JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS instances (
                id TEXT PRIMARY KEY,
                definition_id TEXT NOT NULL,
                definition JSONB NOT NULL,
                status TEXT NOT NULL,
                started_by TEXT,
                assignee_overrides JSONB,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS assignments (
                id TEXT PRIMARY KEY,
                instance_id TEXT NOT NULL REFERENCES instances(id) ON DELETE CASCADE,
                step_id TEXT NOT NULL,
                assignee_user_id TEXT NOT NULL,
                assigned_by TEXT,
                status TEXT NOT NULL,
                notes TEXT,
                actual_hours DOUBLE PRECISION,
                created_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                due_date TIMESTAMPTZ,
                version INTEGER NOT NULL DEFAULT 1,
                UNIQUE (instance_id, step_id)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS activity (
                id TEXT PRIMARY KEY,
                instance_id TEXT NOT NULL REFERENCES instances(id) ON DELETE CASCADE,
                user_id TEXT,
                message TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )

    @staticmethod
    def _to_assignment(row: Any) -> Assignment:
        return Assignment(
            id=row["id"],
            instance_id=row["instance_id"],
            step_id=row["step_id"],
            assignee_user_id=row["assignee_user_id"],
            assigned_by=row["assigned_by"],
            status=AssignmentStatus(row["status"]),
            notes=row["notes"],
            actual_hours=row["actual_hours"],
            created_at=row["created_at"],
            completed_at=row["completed_at"],
            due_date=row["due_date"],
            version=row["version"],
        )

    @staticmethod
    def _to_instance(row: Any) -> WorkflowInstance:
        return WorkflowInstance(
            id=row["id"],
            definition_id=row["definition_id"],
            definition=WorkflowDefinition.model_validate_json(row["definition"]),
            status=InstanceStatus(row["status"]),
            started_by=row["started_by"],
            assignee_overrides=json.loads(row["assignee_overrides"] or "{}"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
        )

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO definitions (id, name, document) VALUES ($1, $2, $3)
                ON CONFLICT (id) DO UPDATE SET name = EXCLUDED.name, document = EXCLUDED.document
                """,
                definition.id,
                definition.name,
                definition.model_dump_json(),
            )

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                "SELECT document FROM definitions WHERE id = $1", definition_id
            )
        if not row:
            return None
        return WorkflowDefinition.model_validate_json(row["document"])

    async def list_definitions(self) -> list[WorkflowDefinition]:
        async with self._connection() as conn:
            rows = await conn.fetch("SELECT document FROM definitions ORDER BY name")
        return [WorkflowDefinition.model_validate_json(r["document"]) for r in rows]

    # ------------------------------------------------------------------
    async def create_instance(self, instance: WorkflowInstance) -> None:
        async with self._connection() as conn:
            await conn.execute(
                f"INSERT INTO instances ({_INSTANCE_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)",
                instance.id,
                instance.definition_id,
                instance.definition.model_dump_json(),
                instance.status.value,
                instance.started_by,
                json.dumps(instance.assignee_overrides),
                instance.created_at,
                instance.updated_at,
                instance.completed_at,
            )

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_INSTANCE_COLUMNS} FROM instances WHERE id = $1", instance_id
            )
        return self._to_instance(row) if row else None

    async def list_instances(
        self, status: Optional[InstanceStatus] = None
    ) -> list[WorkflowInstance]:
        async with self._connection() as conn:
            if status is None:
                rows = await conn.fetch(
                    f"SELECT {_INSTANCE_COLUMNS} FROM instances ORDER BY created_at"
                )
            else:
                rows = await conn.fetch(
                    f"SELECT {_INSTANCE_COLUMNS} FROM instances WHERE status = $1 ORDER BY created_at",
                    status.value,
                )
        return [self._to_instance(r) for r in rows]

    async def update_instance_status(
        self,
        instance_id: str,
        expected: InstanceStatus,
        status: InstanceStatus,
        completed_at: Optional[datetime] = None,
    ) -> WorkflowInstance | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE instances
                SET status = $1, updated_at = $2, completed_at = COALESCE($3, completed_at)
                WHERE id = $4 AND status = $5
                RETURNING {_INSTANCE_COLUMNS}
                """,
                status.value,
                utcnow(),
                completed_at,
                instance_id,
                expected.value,
            )
        return self._to_instance(row) if row else None

    # ------------------------------------------------------------------
    async def create_assignment(self, assignment: Assignment) -> None:
        async with self._connection() as conn:
            try:
                await conn.execute(
                    f"INSERT INTO assignments ({_ASSIGNMENT_COLUMNS}) "
                    "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)",
                    assignment.id,
                    assignment.instance_id,
                    assignment.step_id,
                    assignment.assignee_user_id,
                    assignment.assigned_by,
                    assignment.status.value,
                    assignment.notes,
                    assignment.actual_hours,
                    assignment.created_at,
                    assignment.completed_at,
                    assignment.due_date,
                    assignment.version,
                )
            except asyncpg.exceptions.UniqueViolationError as exc:
                raise DuplicateAssignment(
                    f"Assignment for step {assignment.step_id!r} already exists "
                    f"in instance {assignment.instance_id}",
                    details={
                        "instance_id": assignment.instance_id,
                        "step_id": assignment.step_id,
                    },
                ) from exc

    async def get_assignment(self, assignment_id: str) -> Assignment | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_ASSIGNMENT_COLUMNS} FROM assignments WHERE id = $1",
                assignment_id,
            )
        return self._to_assignment(row) if row else None

    async def list_assignments(
        self, filter: Optional[AssignmentFilter] = None
    ) -> list[Assignment]:
        filter = filter or AssignmentFilter()
        clauses: list[str] = []
        params: list[Any] = []
        if filter.instance_id is not None:
            params.append(filter.instance_id)
            clauses.append(f"instance_id = ${len(params)}")
        if filter.assignee_user_id is not None:
            params.append(filter.assignee_user_id)
            clauses.append(f"assignee_user_id = ${len(params)}")
        if filter.step_id is not None:
            params.append(filter.step_id)
            clauses.append(f"step_id = ${len(params)}")
        if filter.statuses is not None:
            params.append([s.value for s in filter.statuses])
            clauses.append(f"status = ANY(${len(params)}::text[])")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"SELECT {_ASSIGNMENT_COLUMNS} FROM assignments{where} ORDER BY created_at",
                *params,
            )
        return [self._to_assignment(r) for r in rows]

    async def update_assignment_status(
        self,
        assignment_id: str,
        expected: AssignmentStatus,
        status: AssignmentStatus,
        notes: Optional[str] = None,
        completed_at: Optional[datetime] = None,
        actual_hours: Optional[float] = None,
    ) -> Assignment | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"""
                UPDATE assignments
                SET status = $1,
                    notes = COALESCE($2, notes),
                    completed_at = COALESCE($3, completed_at),
                    actual_hours = COALESCE($4, actual_hours),
                    version = version + 1
                WHERE id = $5 AND status = $6
                RETURNING {_ASSIGNMENT_COLUMNS}
                """,
                status.value,
                notes,
                completed_at,
                actual_hours,
                assignment_id,
                expected.value,
            )
        return self._to_assignment(row) if row else None

    # ------------------------------------------------------------------
    async def add_activity(self, entry: ActivityEntry) -> None:
        async with self._connection() as conn:
            await conn.execute(
                "INSERT INTO activity (id, instance_id, user_id, message, created_at) VALUES ($1, $2, $3, $4, $5)",
                entry.id,
                entry.instance_id,
                entry.user_id,
                entry.message,
                entry.created_at,
            )

    async def list_activity(self, instance_id: str) -> list[ActivityEntry]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT id, instance_id, user_id, message, created_at FROM activity "
                "WHERE instance_id = $1 ORDER BY created_at",
                instance_id,
            )
        return [
            ActivityEntry(
                id=r["id"],
                instance_id=r["instance_id"],
                user_id=r["user_id"],
                message=r["message"],
                created_at=r["created_at"],
            )
            for r in rows
        ]
