"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from ..analytics import ExecutionStats
from ..contracts import DefinitionStatus, WorkflowDefinition, utcnow
from ..models import (
    ApprovalRequest,
    ApprovalStatus,
    ExecutionStatus,
    ScheduledTask,
    StepRecord,
    WorkflowExecution,
)
from .repository import WorkflowRepository


def _ts(value: Optional[datetime]) -> Optional[float]:
    return value.timestamp() if value is not None else None


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite.

    Records are stored as JSON bodies next to the columns used for
    filtering and ordering. Timestamps used in comparisons are stored as
    epoch seconds.
    """

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
            CREATE TABLE IF NOT EXISTS workflow_definitions (
                id TEXT NOT NULL,
                version INTEGER NOT NULL,
                status TEXT NOT NULL,
                created_ts REAL NOT NULL,
                body TEXT NOT NULL,
                PRIMARY KEY (id, version)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                started_ts REAL NOT NULL,
                completed_ts REAL,
                body TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                execution_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                attempt INTEGER NOT NULL DEFAULT 1,
                started_at TEXT,
                completed_at TEXT,
                status TEXT,
                output TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS approval_requests (
                id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL,
                approver_id TEXT NOT NULL,
                status TEXT NOT NULL,
                requested_ts REAL NOT NULL,
                body TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS scheduled_tasks (
                id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL,
                wake_ts REAL NOT NULL,
                body TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_executions_workflow ON workflow_executions (workflow_id, started_ts)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS ix_tasks_wake ON scheduled_tasks (wake_ts)"
        )
        self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _claim(self, now_ts: float) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "SELECT id, body FROM scheduled_tasks WHERE wake_ts <= ? ORDER BY wake_ts",
                (now_ts,),
            )
            rows = cur.fetchall()
            cur.executemany(
                "DELETE FROM scheduled_tasks WHERE id = ?", [(r["id"],) for r in rows]
            )
            self._conn.commit()
            return rows

    # ------------------------------------------------------------------
    # Definitions
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT OR REPLACE INTO workflow_definitions (id, version, status, created_ts, body)
            VALUES (?, ?, ?, ?, ?)
            """,
            definition.id,
            definition.version,
            definition.status.value,
            _ts(definition.created_at),
            definition.to_json(),
        )

    async def get_definition(
        self, workflow_id: str, version: Optional[int] = None
    ) -> WorkflowDefinition | None:
        if version is None:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT body FROM workflow_definitions WHERE id = ? ORDER BY version DESC LIMIT 1",
                workflow_id,
            )
        else:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT body FROM workflow_definitions WHERE id = ? AND version = ?",
                workflow_id,
                version,
            )
        return WorkflowDefinition.from_json(row["body"]) if row else None

    async def list_definitions(
        self, status: Optional[DefinitionStatus] = None
    ) -> list[WorkflowDefinition]:
        query = """
            SELECT d.body FROM workflow_definitions d
            JOIN (
                SELECT id, MAX(version) AS version FROM workflow_definitions GROUP BY id
            ) latest ON d.id = latest.id AND d.version = latest.version
        """
        params: list[Any] = []
        if status is not None:
            query += " WHERE d.status = ?"
            params.append(status.value)
        query += " ORDER BY d.created_ts DESC"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [WorkflowDefinition.from_json(r["body"]) for r in rows]

    async def delete_definition(self, workflow_id: str) -> bool:
        count = await asyncio.to_thread(
            self._execute, "DELETE FROM workflow_definitions WHERE id = ?", workflow_id
        )
        return count > 0

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(self, execution: WorkflowExecution) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflow_executions (id, workflow_id, status, started_ts, completed_ts, body)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            execution.id,
            execution.workflow_id,
            execution.status.value,
            _ts(execution.started_at),
            _ts(execution.completed_at),
            execution.model_dump_json(),
        )

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT body FROM workflow_executions WHERE id = ?",
            execution_id,
        )
        return WorkflowExecution.model_validate_json(row["body"]) if row else None

    async def update_execution(
        self,
        execution: WorkflowExecution,
        expected_status: Optional[ExecutionStatus] = None,
    ) -> bool:
        query = """
            UPDATE workflow_executions
            SET status = ?, completed_ts = ?, body = ?
            WHERE id = ?
        """
        params: list[Any] = [
            execution.status.value,
            _ts(execution.completed_at),
            execution.model_dump_json(),
            execution.id,
        ]
        if expected_status is not None:
            query += " AND status = ?"
            params.append(expected_status.value)
        count = await asyncio.to_thread(self._execute, query, *params)
        return count == 1

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> list[WorkflowExecution]:
        clauses: list[str] = []
        params: list[Any] = []
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        query = "SELECT body FROM workflow_executions"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY started_ts DESC"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [WorkflowExecution.model_validate_json(r["body"]) for r in rows]

    async def execution_stats(self, workflow_id: Optional[str] = None) -> ExecutionStats:
        query = """
            SELECT
                COUNT(*) AS total_executions,
                SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS successful_executions,
                SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed_executions,
                AVG(completed_ts - started_ts) AS avg_execution_time
            FROM workflow_executions
        """
        params: list[Any] = []
        if workflow_id is not None:
            query += " WHERE workflow_id = ?"
            params.append(workflow_id)
        row = await asyncio.to_thread(self._fetchone, query, *params)
        return ExecutionStats.from_counts(
            int(row["total_executions"] or 0),
            int(row["successful_executions"] or 0),
            int(row["failed_executions"] or 0),
            row["avg_execution_time"],
        )

    # ------------------------------------------------------------------
    # Step history
    async def mark_step_started(
        self, execution_id: str, step_id: str, attempt: int = 1
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO step_history (execution_id, step_id, attempt, started_at)
            SELECT ?, ?, ?, ?
            WHERE NOT EXISTS (
                SELECT 1 FROM step_history
                WHERE execution_id = ? AND step_id = ? AND attempt = ?
            )
            """,
            execution_id,
            step_id,
            attempt,
            utcnow().isoformat(),
            execution_id,
            step_id,
            attempt,
        )

    async def mark_step_completed(
        self,
        execution_id: str,
        step_id: str,
        status: str,
        output: dict | None = None,
        attempt: int = 1,
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE step_history
            SET completed_at = ?, status = ?, output = ?
            WHERE execution_id = ? AND step_id = ? AND attempt = ? AND completed_at IS NULL
            """,
            utcnow().isoformat(),
            status,
            json.dumps(output or {}, default=str),
            execution_id,
            step_id,
            attempt,
        )

    async def list_step_records(self, execution_id: str) -> list[StepRecord]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT id, execution_id, step_id, attempt, started_at, completed_at, status, output
            FROM step_history WHERE execution_id = ? ORDER BY id
            """,
            execution_id,
        )
        return [
            StepRecord(
                id=r["id"],
                execution_id=r["execution_id"],
                step_id=r["step_id"],
                attempt=r["attempt"],
                started_at=datetime.fromisoformat(r["started_at"]) if r["started_at"] else None,
                completed_at=datetime.fromisoformat(r["completed_at"]) if r["completed_at"] else None,
                status=r["status"],
                output=json.loads(r["output"]) if r["output"] else None,
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Approvals
    async def save_approval(self, request: ApprovalRequest) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO approval_requests (id, execution_id, approver_id, status, requested_ts, body)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            request.id,
            request.execution_id,
            request.approver_id,
            request.status.value,
            _ts(request.requested_at),
            request.model_dump_json(),
        )

    async def get_approval(self, request_id: str) -> ApprovalRequest | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT body FROM approval_requests WHERE id = ?", request_id
        )
        return ApprovalRequest.model_validate_json(row["body"]) if row else None

    async def update_approval(
        self,
        request: ApprovalRequest,
        expected_status: Optional[ApprovalStatus] = None,
    ) -> bool:
        query = "UPDATE approval_requests SET status = ?, body = ? WHERE id = ?"
        params: list[Any] = [request.status.value, request.model_dump_json(), request.id]
        if expected_status is not None:
            query += " AND status = ?"
            params.append(expected_status.value)
        count = await asyncio.to_thread(self._execute, query, *params)
        return count == 1

    async def list_approvals(
        self,
        execution_id: Optional[str] = None,
        status: Optional[ApprovalStatus] = None,
        approver_id: Optional[str] = None,
    ) -> list[ApprovalRequest]:
        clauses: list[str] = []
        params: list[Any] = []
        if execution_id is not None:
            clauses.append("execution_id = ?")
            params.append(execution_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if approver_id is not None:
            clauses.append("approver_id = ?")
            params.append(approver_id)
        query = "SELECT body FROM approval_requests"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY requested_ts"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [ApprovalRequest.model_validate_json(r["body"]) for r in rows]

    # ------------------------------------------------------------------
    # Scheduled continuations
    async def schedule_task(self, task: ScheduledTask) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO scheduled_tasks (id, execution_id, wake_ts, body) VALUES (?, ?, ?, ?)",
            task.id,
            task.execution_id,
            _ts(task.wake_at),
            task.model_dump_json(),
        )

    async def claim_due_tasks(self, now: datetime) -> list[ScheduledTask]:
        rows = await asyncio.to_thread(self._claim, now.timestamp())
        return [ScheduledTask.model_validate_json(r["body"]) for r in rows]

    async def delete_tasks(self, execution_id: str) -> int:
        return await asyncio.to_thread(
            self._execute, "DELETE FROM scheduled_tasks WHERE execution_id = ?", execution_id
        )

    async def list_tasks(self, execution_id: Optional[str] = None) -> list[ScheduledTask]:
        if execution_id is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT body FROM scheduled_tasks ORDER BY wake_ts"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT body FROM scheduled_tasks WHERE execution_id = ? ORDER BY wake_ts",
                execution_id,
            )
        return [ScheduledTask.model_validate_json(r["body"]) for r in rows]

    async def next_wake_at(self) -> datetime | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT MIN(wake_ts) AS wake_ts FROM scheduled_tasks"
        )
        if row is None or row["wake_ts"] is None:
            return None
        return datetime.fromtimestamp(row["wake_ts"], tz=timezone.utc)
