"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional

import asyncpg

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


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag such as ``UPDATE 1``."""
    try:
        return int(status.split()[-1])
    except (ValueError, IndexError):
        return 0


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

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_definitions (
                id TEXT NOT NULL,
                version INTEGER NOT NULL,
                status TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                body JSONB NOT NULL,
                PRIMARY KEY (id, version)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_executions (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                body JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_history (
                id SERIAL PRIMARY KEY,
                execution_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                attempt INTEGER NOT NULL DEFAULT 1,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                status TEXT,
                output JSONB
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS approval_requests (
                id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL,
                approver_id TEXT NOT NULL,
                status TEXT NOT NULL,
                requested_at TIMESTAMPTZ NOT NULL,
                body JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS scheduled_tasks (
                id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL,
                wake_at TIMESTAMPTZ NOT NULL,
                body JSONB NOT NULL
            )
            """
        )

    async def _execute(self, query: str, *params: Any) -> int:
        conn = await self._connect()
        try:
            return _affected(await conn.execute(query, *params))
        finally:
            await conn.close()

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        conn = await self._connect()
        try:
            return await conn.fetchrow(query, *params)
        finally:
            await conn.close()

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> None:
        await self._execute(
            """
            INSERT INTO workflow_definitions (id, version, status, created_at, body)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (id, version) DO UPDATE SET
                status = EXCLUDED.status,
                body = EXCLUDED.body
            """,
            definition.id,
            definition.version,
            definition.status.value,
            definition.created_at,
            definition.to_json(),
        )

    async def get_definition(
        self, workflow_id: str, version: Optional[int] = None
    ) -> WorkflowDefinition | None:
        if version is None:
            row = await self._fetchrow(
                "SELECT body FROM workflow_definitions WHERE id = $1 ORDER BY version DESC LIMIT 1",
                workflow_id,
            )
        else:
            row = await self._fetchrow(
                "SELECT body FROM workflow_definitions WHERE id = $1 AND version = $2",
                workflow_id,
                version,
            )
        return WorkflowDefinition.from_json(row["body"]) if row else None

    async def list_definitions(
        self, status: Optional[DefinitionStatus] = None
    ) -> list[WorkflowDefinition]:
        query = """
            SELECT DISTINCT ON (id) body, created_at FROM workflow_definitions
            ORDER BY id, version DESC
        """
        rows = await self._fetch(
            f"SELECT body FROM ({query}) latest ORDER BY created_at DESC"
        )
        definitions = [WorkflowDefinition.from_json(r["body"]) for r in rows]
        if status is not None:
            definitions = [d for d in definitions if d.status == status]
        return definitions

    async def delete_definition(self, workflow_id: str) -> bool:
        count = await self._execute(
            "DELETE FROM workflow_definitions WHERE id = $1", workflow_id
        )
        return count > 0

    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> None:
        await self._execute(
            """
            INSERT INTO workflow_executions (id, workflow_id, status, started_at, completed_at, body)
            VALUES ($1, $2, $3, $4, $5, $6)
            """,
            execution.id,
            execution.workflow_id,
            execution.status.value,
            execution.started_at,
            execution.completed_at,
            execution.model_dump_json(),
        )

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        row = await self._fetchrow(
            "SELECT body FROM workflow_executions WHERE id = $1", execution_id
        )
        return WorkflowExecution.model_validate_json(row["body"]) if row else None

    async def update_execution(
        self,
        execution: WorkflowExecution,
        expected_status: Optional[ExecutionStatus] = None,
    ) -> bool:
        query = """
            UPDATE workflow_executions
            SET status = $1, completed_at = $2, body = $3
            WHERE id = $4
        """
        params: list[Any] = [
            execution.status.value,
            execution.completed_at,
            execution.model_dump_json(),
            execution.id,
        ]
        if expected_status is not None:
            query += " AND status = $5"
            params.append(expected_status.value)
        return await self._execute(query, *params) == 1

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
    ) -> list[WorkflowExecution]:
        clauses: list[str] = []
        params: list[Any] = []
        if workflow_id is not None:
            params.append(workflow_id)
            clauses.append(f"workflow_id = ${len(params)}")
        if status is not None:
            params.append(status.value)
            clauses.append(f"status = ${len(params)}")
        query = "SELECT body FROM workflow_executions"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY started_at DESC"
        rows = await self._fetch(query, *params)
        return [WorkflowExecution.model_validate_json(r["body"]) for r in rows]

    async def execution_stats(self, workflow_id: Optional[str] = None) -> ExecutionStats:
        query = """
            SELECT
                COUNT(*) AS total_executions,
                SUM(CASE WHEN status = 'completed' THEN 1 ELSE 0 END) AS successful_executions,
                SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END) AS failed_executions,
                AVG(EXTRACT(EPOCH FROM (completed_at - started_at))) AS avg_execution_time
            FROM workflow_executions
        """
        params: list[Any] = []
        if workflow_id is not None:
            query += " WHERE workflow_id = $1"
            params.append(workflow_id)
        row = await self._fetchrow(query, *params)
        avg = row["avg_execution_time"]
        return ExecutionStats.from_counts(
            int(row["total_executions"] or 0),
            int(row["successful_executions"] or 0),
            int(row["failed_executions"] or 0),
            float(avg) if avg is not None else None,
        )

    # ------------------------------------------------------------------
    async def mark_step_started(
        self, execution_id: str, step_id: str, attempt: int = 1
    ) -> None:
        await self._execute(
            """
            INSERT INTO step_history (execution_id, step_id, attempt, started_at)
            SELECT $1, $2, $3, $4
            WHERE NOT EXISTS (
                SELECT 1 FROM step_history
                WHERE execution_id = $1 AND step_id = $2 AND attempt = $3
            )
            """,
            execution_id,
            step_id,
            attempt,
            utcnow(),
        )

    async def mark_step_completed(
        self,
        execution_id: str,
        step_id: str,
        status: str,
        output: dict | None = None,
        attempt: int = 1,
    ) -> None:
        await self._execute(
            """
            UPDATE step_history
            SET completed_at = $1, status = $2, output = $3
            WHERE execution_id = $4 AND step_id = $5 AND attempt = $6 AND completed_at IS NULL
            """,
            utcnow(),
            status,
            json.dumps(output or {}, default=str),
            execution_id,
            step_id,
            attempt,
        )

    async def list_step_records(self, execution_id: str) -> list[StepRecord]:
        rows = await self._fetch(
            """
            SELECT id, execution_id, step_id, attempt, started_at, completed_at, status, output
            FROM step_history WHERE execution_id = $1 ORDER BY id
            """,
            execution_id,
        )
        return [
            StepRecord(
                id=r["id"],
                execution_id=r["execution_id"],
                step_id=r["step_id"],
                attempt=r["attempt"],
                started_at=r["started_at"],
                completed_at=r["completed_at"],
                status=r["status"],
                output=json.loads(r["output"]) if r["output"] else None,
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    async def save_approval(self, request: ApprovalRequest) -> None:
        await self._execute(
            """
            INSERT INTO approval_requests (id, execution_id, approver_id, status, requested_at, body)
            VALUES ($1, $2, $3, $4, $5, $6)
            """,
            request.id,
            request.execution_id,
            request.approver_id,
            request.status.value,
            request.requested_at,
            request.model_dump_json(),
        )

    async def get_approval(self, request_id: str) -> ApprovalRequest | None:
        row = await self._fetchrow(
            "SELECT body FROM approval_requests WHERE id = $1", request_id
        )
        return ApprovalRequest.model_validate_json(row["body"]) if row else None

    async def update_approval(
        self,
        request: ApprovalRequest,
        expected_status: Optional[ApprovalStatus] = None,
    ) -> bool:
        query = "UPDATE approval_requests SET status = $1, body = $2 WHERE id = $3"
        params: list[Any] = [request.status.value, request.model_dump_json(), request.id]
        if expected_status is not None:
            query += " AND status = $4"
            params.append(expected_status.value)
        return await self._execute(query, *params) == 1

    async def list_approvals(
        self,
        execution_id: Optional[str] = None,
        status: Optional[ApprovalStatus] = None,
        approver_id: Optional[str] = None,
    ) -> list[ApprovalRequest]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("execution_id", execution_id),
            ("status", status.value if status is not None else None),
            ("approver_id", approver_id),
        ):
            if value is not None:
                params.append(value)
                clauses.append(f"{column} = ${len(params)}")
        query = "SELECT body FROM approval_requests"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY requested_at"
        rows = await self._fetch(query, *params)
        return [ApprovalRequest.model_validate_json(r["body"]) for r in rows]

    # ------------------------------------------------------------------
    async def schedule_task(self, task: ScheduledTask) -> None:
        await self._execute(
            """
            INSERT INTO scheduled_tasks (id, execution_id, wake_at, body)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (id) DO UPDATE SET wake_at = EXCLUDED.wake_at, body = EXCLUDED.body
            """,
            task.id,
            task.execution_id,
            task.wake_at,
            task.model_dump_json(),
        )

    async def claim_due_tasks(self, now: datetime) -> list[ScheduledTask]:
        rows = await self._fetch(
            "DELETE FROM scheduled_tasks WHERE wake_at <= $1 RETURNING body, wake_at",
            now,
        )
        tasks = [ScheduledTask.model_validate_json(r["body"]) for r in rows]
        tasks.sort(key=lambda t: t.wake_at)
        return tasks

    async def delete_tasks(self, execution_id: str) -> int:
        return await self._execute(
            "DELETE FROM scheduled_tasks WHERE execution_id = $1", execution_id
        )

    async def list_tasks(self, execution_id: Optional[str] = None) -> list[ScheduledTask]:
        if execution_id is None:
            rows = await self._fetch("SELECT body FROM scheduled_tasks ORDER BY wake_at")
        else:
            rows = await self._fetch(
                "SELECT body FROM scheduled_tasks WHERE execution_id = $1 ORDER BY wake_at",
                execution_id,
            )
        return [ScheduledTask.model_validate_json(r["body"]) for r in rows]

    async def next_wake_at(self) -> datetime | None:
        row = await self._fetchrow("SELECT MIN(wake_at) AS wake_at FROM scheduled_tasks")
        return row["wake_at"] if row else None
