"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

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

T = TypeVar("T")

_ASSIGNMENT_COLUMNS = (
    "id, instance_id, step_id, assignee_user_id, assigned_by, status, notes, "
    "actual_hours, created_at, completed_at, due_date, version"
)
_INSTANCE_COLUMNS = (
    "id, definition_id, definition, status, started_by, assignee_overrides, "
    "created_at, updated_at, completed_at"
)


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS definitions (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                document TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS instances (
                id TEXT PRIMARY KEY,
                definition_id TEXT NOT NULL,
                definition TEXT NOT NULL,
                status TEXT NOT NULL,
                started_by TEXT,
                assignee_overrides TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                completed_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS assignments (
                id TEXT PRIMARY KEY,
                instance_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                assignee_user_id TEXT NOT NULL,
                assigned_by TEXT,
                status TEXT NOT NULL,
                notes TEXT,
                actual_hours REAL,
                created_at TEXT NOT NULL,
                completed_at TEXT,
                due_date TEXT,
                version INTEGER NOT NULL DEFAULT 1,
                UNIQUE (instance_id, step_id)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS activity (
                id TEXT PRIMARY KEY,
                instance_id TEXT NOT NULL,
                user_id TEXT,
                message TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(self._locked, func, *args)
        except sqlite3.IntegrityError:
            raise
        except sqlite3.OperationalError as exc:
            raise PersistenceUnavailable(
                f"SQLite operation failed: {exc}", details={"db_path": self.db_path}
            ) from exc

    def _locked(self, func: Callable[..., T], *args: Any) -> T:
        # one connection shared by worker threads
        with self._lock:
            return func(*args)

    def _execute(self, query: str, *params: Any) -> int:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()
        return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    def _update_and_fetch(
        self, update: str, update_params: tuple, select: str, key: str
    ) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(update, update_params)
        self._conn.commit()
        if cur.rowcount == 0:
            return None
        cur.execute(select, (key,))
        return cur.fetchone()

    @staticmethod
    def _to_assignment(row: sqlite3.Row) -> Assignment:
        return Assignment(
            id=row["id"],
            instance_id=row["instance_id"],
            step_id=row["step_id"],
            assignee_user_id=row["assignee_user_id"],
            assigned_by=row["assigned_by"],
            status=AssignmentStatus(row["status"]),
            notes=row["notes"],
            actual_hours=row["actual_hours"],
            created_at=_dt(row["created_at"]),
            completed_at=_dt(row["completed_at"]),
            due_date=_dt(row["due_date"]),
            version=row["version"],
        )

    @staticmethod
    def _to_instance(row: sqlite3.Row) -> WorkflowInstance:
        return WorkflowInstance(
            id=row["id"],
            definition_id=row["definition_id"],
            definition=WorkflowDefinition.model_validate_json(row["definition"]),
            status=InstanceStatus(row["status"]),
            started_by=row["started_by"],
            assignee_overrides=json.loads(row["assignee_overrides"] or "{}"),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
            completed_at=_dt(row["completed_at"]),
        )

    # ------------------------------------------------------------------
    # Definitions
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        await self._run(
            self._execute,
            "INSERT OR REPLACE INTO definitions (id, name, document) VALUES (?, ?, ?)",
            definition.id,
            definition.name,
            definition.model_dump_json(),
        )

    async def get_definition(self, definition_id: str) -> WorkflowDefinition | None:
        row = await self._run(
            self._fetchone, "SELECT document FROM definitions WHERE id = ?", definition_id
        )
        if not row:
            return None
        return WorkflowDefinition.model_validate_json(row["document"])

    async def list_definitions(self) -> list[WorkflowDefinition]:
        rows = await self._run(
            self._fetchall, "SELECT document FROM definitions ORDER BY name"
        )
        return [WorkflowDefinition.model_validate_json(r["document"]) for r in rows]

    # ------------------------------------------------------------------
    # Instances
    async def create_instance(self, instance: WorkflowInstance) -> None:
        await self._run(
            self._execute,
            f"INSERT INTO instances ({_INSTANCE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            instance.id,
            instance.definition_id,
            instance.definition.model_dump_json(),
            instance.status.value,
            instance.started_by,
            json.dumps(instance.assignee_overrides),
            _iso(instance.created_at),
            _iso(instance.updated_at),
            _iso(instance.completed_at),
        )

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        row = await self._run(
            self._fetchone,
            f"SELECT {_INSTANCE_COLUMNS} FROM instances WHERE id = ?",
            instance_id,
        )
        return self._to_instance(row) if row else None

    async def list_instances(
        self, status: Optional[InstanceStatus] = None
    ) -> list[WorkflowInstance]:
        if status is None:
            rows = await self._run(
                self._fetchall,
                f"SELECT {_INSTANCE_COLUMNS} FROM instances ORDER BY created_at",
            )
        else:
            rows = await self._run(
                self._fetchall,
                f"SELECT {_INSTANCE_COLUMNS} FROM instances WHERE status = ? ORDER BY created_at",
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
        row = await self._run(
            self._update_and_fetch,
            """
            UPDATE instances
            SET status = ?, updated_at = ?, completed_at = COALESCE(?, completed_at)
            WHERE id = ? AND status = ?
            """,
            (status.value, _iso(utcnow()), _iso(completed_at), instance_id, expected.value),
            f"SELECT {_INSTANCE_COLUMNS} FROM instances WHERE id = ?",
            instance_id,
        )
        return self._to_instance(row) if row else None

    # ------------------------------------------------------------------
    # Assignments
    async def create_assignment(self, assignment: Assignment) -> None:
        try:
            await self._run(
                self._execute,
                f"INSERT INTO assignments ({_ASSIGNMENT_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                assignment.id,
                assignment.instance_id,
                assignment.step_id,
                assignment.assignee_user_id,
                assignment.assigned_by,
                assignment.status.value,
                assignment.notes,
                assignment.actual_hours,
                _iso(assignment.created_at),
                _iso(assignment.completed_at),
                _iso(assignment.due_date),
                assignment.version,
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateAssignment(
                f"Assignment for step {assignment.step_id!r} already exists "
                f"in instance {assignment.instance_id}",
                details={
                    "instance_id": assignment.instance_id,
                    "step_id": assignment.step_id,
                },
            ) from exc

    async def get_assignment(self, assignment_id: str) -> Assignment | None:
        row = await self._run(
            self._fetchone,
            f"SELECT {_ASSIGNMENT_COLUMNS} FROM assignments WHERE id = ?",
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
            clauses.append("instance_id = ?")
            params.append(filter.instance_id)
        if filter.assignee_user_id is not None:
            clauses.append("assignee_user_id = ?")
            params.append(filter.assignee_user_id)
        if filter.step_id is not None:
            clauses.append("step_id = ?")
            params.append(filter.step_id)
        if filter.statuses is not None:
            if not filter.statuses:
                return []
            placeholders = ", ".join("?" for _ in filter.statuses)
            clauses.append(f"status IN ({placeholders})")
            params.extend(s.value for s in filter.statuses)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._run(
            self._fetchall,
            f"SELECT {_ASSIGNMENT_COLUMNS} FROM assignments{where} ORDER BY created_at, rowid",
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
        row = await self._run(
            self._update_and_fetch,
            """
            UPDATE assignments
            SET status = ?,
                notes = COALESCE(?, notes),
                completed_at = COALESCE(?, completed_at),
                actual_hours = COALESCE(?, actual_hours),
                version = version + 1
            WHERE id = ? AND status = ?
            """,
            (
                status.value,
                notes,
                _iso(completed_at),
                actual_hours,
                assignment_id,
                expected.value,
            ),
            f"SELECT {_ASSIGNMENT_COLUMNS} FROM assignments WHERE id = ?",
            assignment_id,
        )
        return self._to_assignment(row) if row else None

    # ------------------------------------------------------------------
    # Activity log
    async def add_activity(self, entry: ActivityEntry) -> None:
        await self._run(
            self._execute,
            "INSERT INTO activity (id, instance_id, user_id, message, created_at) VALUES (?, ?, ?, ?, ?)",
            entry.id,
            entry.instance_id,
            entry.user_id,
            entry.message,
            _iso(entry.created_at),
        )

    async def list_activity(self, instance_id: str) -> list[ActivityEntry]:
        rows = await self._run(
            self._fetchall,
            "SELECT id, instance_id, user_id, message, created_at FROM activity "
            "WHERE instance_id = ? ORDER BY created_at, rowid",
            instance_id,
        )
        return [
            ActivityEntry(
                id=r["id"],
                instance_id=r["instance_id"],
                user_id=r["user_id"],
                message=r["message"],
                created_at=_dt(r["created_at"]),
            )
            for r in rows
        ]
