"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

import asyncpg

from ..contracts import WorkflowDefinition
from ..errors import DuplicateInstanceError
from ..utils.clock import utcnow
from .inmemory import apply_patch
from .models import (
    ExecutionLogEntry,
    ScheduledTask,
    TaskStatus,
    WorkflowInstance,
    WorkflowStatus,
)
from .repository import WorkflowRepository
from .sqlite import INSTANCE_COLUMNS, JSON_COLUMNS, TASK_COLUMNS

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS workflow_definitions (
        type TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        body JSONB NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_instances (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL,
        workflow_type TEXT NOT NULL,
        status TEXT NOT NULL,
        current_step_index INTEGER NOT NULL,
        total_steps INTEGER NOT NULL,
        account_data JSONB,
        execution_context JSONB,
        retry_count INTEGER NOT NULL DEFAULT 0,
        max_retries INTEGER NOT NULL DEFAULT 3,
        next_action_at TIMESTAMPTZ,
        next_task_id TEXT,
        started_at TIMESTAMPTZ NOT NULL,
        last_activity_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        failed_at TIMESTAMPTZ,
        stopped_at TIMESTAMPTZ,
        paused_at TIMESTAMPTZ,
        recovered_at TIMESTAMPTZ,
        last_error TEXT,
        final_error TEXT
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_workflow_instances_live_account
    ON workflow_instances (account_id)
    WHERE status IN ('active', 'paused', 'recovering')
    """,
    """
    CREATE TABLE IF NOT EXISTS scheduled_tasks (
        task_id TEXT PRIMARY KEY,
        workflow_instance_id TEXT NOT NULL,
        account_id TEXT NOT NULL,
        step_id TEXT NOT NULL,
        step_index INTEGER NOT NULL,
        action TEXT NOT NULL,
        kind TEXT NOT NULL,
        scheduled_for TIMESTAMPTZ NOT NULL,
        status TEXT NOT NULL,
        payload JSONB,
        attempt INTEGER NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_scheduled_tasks_due
    ON scheduled_tasks (status, scheduled_for)
    """,
    """
    CREATE TABLE IF NOT EXISTS execution_log (
        id SERIAL PRIMARY KEY,
        workflow_instance_id TEXT NOT NULL,
        account_id TEXT NOT NULL,
        step_id TEXT NOT NULL,
        step_index INTEGER NOT NULL,
        action TEXT NOT NULL,
        success BOOLEAN NOT NULL,
        result JSONB,
        error_message TEXT,
        duration_ms INTEGER NOT NULL DEFAULT 0,
        attempt INTEGER NOT NULL DEFAULT 1,
        executed_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_locks (
        key TEXT PRIMARY KEY,
        holder TEXT NOT NULL,
        acquired_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
)


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag such as ``UPDATE 3``."""
    try:
        return int(status.split()[-1])
    except (ValueError, IndexError):
        return 0


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 10):
        self._dsn = dsn
        self._min_size = min_size
        self._max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            self._pool = await asyncpg.create_pool(
                self._dsn, min_size=self._min_size, max_size=self._max_size
            )
            async with self._pool.acquire() as conn:
                await self._ensure_schema(conn)
        return self._pool

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        for statement in SCHEMA:
            await conn.execute(statement)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # ------------------------------------------------------------------
    @staticmethod
    def _instance_values(instance: WorkflowInstance) -> list[Any]:
        data = instance.model_dump(mode="python")
        values = []
        for column in INSTANCE_COLUMNS:
            value = data[column]
            if column in JSON_COLUMNS:
                value = json.dumps(value or {})
            elif column == "status":
                value = WorkflowStatus(value).value
            values.append(value)
        return values

    @staticmethod
    def _record_to_instance(record: asyncpg.Record) -> WorkflowInstance:
        data = {column: record[column] for column in INSTANCE_COLUMNS}
        for column in JSON_COLUMNS:
            data[column] = json.loads(data[column]) if data[column] else {}
        return WorkflowInstance.model_validate(data)

    @staticmethod
    def _record_to_task(record: asyncpg.Record) -> ScheduledTask:
        data = {column: record[column] for column in TASK_COLUMNS}
        data["payload"] = json.loads(data["payload"]) if data["payload"] else {}
        return ScheduledTask.model_validate(data)

    # ------------------------------------------------------------------
    async def get_definition(self, workflow_type: str) -> WorkflowDefinition | None:
        pool = await self._get_pool()
        body = await pool.fetchval(
            "SELECT body FROM workflow_definitions WHERE type = $1", workflow_type
        )
        return WorkflowDefinition.model_validate_json(body) if body else None

    async def list_definitions(self) -> list[WorkflowDefinition]:
        pool = await self._get_pool()
        rows = await pool.fetch("SELECT body FROM workflow_definitions ORDER BY type")
        return [WorkflowDefinition.model_validate_json(r["body"]) for r in rows]

    async def save_definition(self, definition: WorkflowDefinition) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            INSERT INTO workflow_definitions (type, name, body) VALUES ($1, $2, $3::jsonb)
            ON CONFLICT (type) DO UPDATE SET name = EXCLUDED.name, body = EXCLUDED.body
            """,
            definition.type,
            definition.name,
            definition.model_dump_json(),
        )

    # ------------------------------------------------------------------
    async def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        pool = await self._get_pool()
        marks = ", ".join(
            f"${i}::jsonb" if column in JSON_COLUMNS else f"${i}"
            for i, column in enumerate(INSTANCE_COLUMNS, start=1)
        )
        try:
            await pool.execute(
                f"INSERT INTO workflow_instances ({', '.join(INSTANCE_COLUMNS)}) VALUES ({marks})",
                *self._instance_values(instance),
            )
        except asyncpg.UniqueViolationError as e:
            raise DuplicateInstanceError(
                f"Account {instance.account_id} already has a live workflow"
            ) from e
        return instance

    async def update_instance(
        self, instance_id: str, patch: dict[str, Any]
    ) -> WorkflowInstance | None:
        pool = await self._get_pool()
        columns = INSTANCE_COLUMNS[1:]
        assignments = ", ".join(
            f"{column} = ${i}::jsonb" if column in JSON_COLUMNS else f"{column} = ${i}"
            for i, column in enumerate(columns, start=2)
        )
        async with pool.acquire() as conn:
            async with conn.transaction():
                record = await conn.fetchrow(
                    f"SELECT {', '.join(INSTANCE_COLUMNS)} FROM workflow_instances "
                    "WHERE id = $1 FOR UPDATE",
                    instance_id,
                )
                if record is None:
                    return None
                updated = apply_patch(self._record_to_instance(record), patch)
                try:
                    await conn.execute(
                        f"UPDATE workflow_instances SET {assignments} WHERE id = $1",
                        instance_id,
                        *self._instance_values(updated)[1:],
                    )
                except asyncpg.UniqueViolationError as e:
                    raise DuplicateInstanceError(str(e)) from e
        return updated

    async def get_instance(self, account_id: str) -> WorkflowInstance | None:
        pool = await self._get_pool()
        record = await pool.fetchrow(
            f"""
            SELECT {', '.join(INSTANCE_COLUMNS)} FROM workflow_instances
            WHERE account_id = $1 ORDER BY started_at DESC LIMIT 1
            """,
            account_id,
        )
        return self._record_to_instance(record) if record else None

    async def get_instance_by_id(self, instance_id: str) -> WorkflowInstance | None:
        pool = await self._get_pool()
        record = await pool.fetchrow(
            f"SELECT {', '.join(INSTANCE_COLUMNS)} FROM workflow_instances WHERE id = $1",
            instance_id,
        )
        return self._record_to_instance(record) if record else None

    async def list_instances(
        self, statuses: Iterable[str] | None = None
    ) -> list[WorkflowInstance]:
        pool = await self._get_pool()
        query = f"SELECT {', '.join(INSTANCE_COLUMNS)} FROM workflow_instances"
        if statuses is None:
            rows = await pool.fetch(query + " ORDER BY started_at")
        else:
            wanted = [WorkflowStatus(s).value for s in statuses]
            rows = await pool.fetch(
                query + " WHERE status = ANY($1::text[]) ORDER BY started_at", wanted
            )
        return [self._record_to_instance(r) for r in rows]

    async def list_recoverable(self) -> list[WorkflowInstance]:
        return await self.list_instances(
            [WorkflowStatus.ACTIVE.value, WorkflowStatus.RECOVERING.value]
        )

    # ------------------------------------------------------------------
    async def create_scheduled_task(self, task: ScheduledTask) -> ScheduledTask:
        pool = await self._get_pool()
        await pool.execute(
            f"""
            INSERT INTO scheduled_tasks ({', '.join(TASK_COLUMNS)})
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb, $11, $12, $13)
            """,
            task.task_id,
            task.workflow_instance_id,
            task.account_id,
            task.step_id,
            task.step_index,
            task.action,
            task.kind.value,
            task.scheduled_for,
            task.status.value,
            json.dumps(task.payload),
            task.attempt,
            task.created_at,
            task.updated_at,
        )
        return task

    async def get_scheduled_task(self, task_id: str) -> ScheduledTask | None:
        pool = await self._get_pool()
        record = await pool.fetchrow(
            f"SELECT {', '.join(TASK_COLUMNS)} FROM scheduled_tasks WHERE task_id = $1",
            task_id,
        )
        return self._record_to_task(record) if record else None

    async def get_due_tasks(self, now: datetime, limit: int = 100) -> list[ScheduledTask]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            SELECT {', '.join(TASK_COLUMNS)} FROM scheduled_tasks
            WHERE status = $1 AND scheduled_for <= $2
            ORDER BY scheduled_for LIMIT $3
            """,
            TaskStatus.PENDING.value,
            now,
            limit,
        )
        return [self._record_to_task(r) for r in rows]

    async def list_tasks(
        self, instance_id: str, statuses: Iterable[TaskStatus] | None = None
    ) -> list[ScheduledTask]:
        pool = await self._get_pool()
        query = (
            f"SELECT {', '.join(TASK_COLUMNS)} FROM scheduled_tasks "
            "WHERE workflow_instance_id = $1"
        )
        params: list[Any] = [instance_id]
        if statuses is not None:
            query += " AND status = ANY($2::text[])"
            params.append([TaskStatus(s).value for s in statuses])
        rows = await pool.fetch(query + " ORDER BY scheduled_for", *params)
        return [self._record_to_task(r) for r in rows]

    async def claim_scheduled_task(self, task_id: str) -> bool:
        pool = await self._get_pool()
        claimed = await pool.fetchval(
            """
            UPDATE scheduled_tasks SET status = $1, updated_at = $2
            WHERE task_id = $3 AND status = $4
            RETURNING task_id
            """,
            TaskStatus.RUNNING.value,
            utcnow(),
            task_id,
            TaskStatus.PENDING.value,
        )
        return claimed is not None

    async def update_scheduled_task(self, task_id: str, status: TaskStatus) -> None:
        pool = await self._get_pool()
        await pool.execute(
            "UPDATE scheduled_tasks SET status = $1, updated_at = $2 WHERE task_id = $3",
            TaskStatus(status).value,
            utcnow(),
            task_id,
        )

    async def cancel_pending_tasks(
        self, instance_id: str, include_running: bool = False
    ) -> int:
        pool = await self._get_pool()
        statuses = [TaskStatus.PENDING.value]
        if include_running:
            statuses.append(TaskStatus.RUNNING.value)
        result = await pool.execute(
            """
            UPDATE scheduled_tasks SET status = $1, updated_at = $2
            WHERE workflow_instance_id = $3 AND status = ANY($4::text[])
            """,
            TaskStatus.CANCELLED.value,
            utcnow(),
            instance_id,
            statuses,
        )
        return _affected(result)

    async def count_tasks(self, status: TaskStatus | None = None) -> int:
        pool = await self._get_pool()
        if status is None:
            return await pool.fetchval("SELECT COUNT(*) FROM scheduled_tasks")
        return await pool.fetchval(
            "SELECT COUNT(*) FROM scheduled_tasks WHERE status = $1",
            TaskStatus(status).value,
        )

    async def delete_finished_tasks(self, before: datetime) -> int:
        pool = await self._get_pool()
        result = await pool.execute(
            """
            DELETE FROM scheduled_tasks
            WHERE status = ANY($1::text[]) AND created_at < $2
            """,
            [
                TaskStatus.COMPLETED.value,
                TaskStatus.FAILED.value,
                TaskStatus.CANCELLED.value,
            ],
            before,
        )
        return _affected(result)

    # ------------------------------------------------------------------
    async def append_execution_log(self, entry: ExecutionLogEntry) -> ExecutionLogEntry:
        pool = await self._get_pool()
        row_id = await pool.fetchval(
            """
            INSERT INTO execution_log (
                workflow_instance_id, account_id, step_id, step_index, action,
                success, result, error_message, duration_ms, attempt, executed_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9, $10, $11)
            RETURNING id
            """,
            entry.workflow_instance_id,
            entry.account_id,
            entry.step_id,
            entry.step_index,
            entry.action,
            entry.success,
            json.dumps(entry.result) if entry.result is not None else None,
            entry.error_message,
            entry.duration_ms,
            entry.attempt,
            entry.executed_at,
        )
        return entry.model_copy(update={"id": row_id})

    async def list_execution_log(self, instance_id: str) -> list[ExecutionLogEntry]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            SELECT id, workflow_instance_id, account_id, step_id, step_index, action,
                   success, result, error_message, duration_ms, attempt, executed_at
            FROM execution_log WHERE workflow_instance_id = $1 ORDER BY id
            """,
            instance_id,
        )
        entries = []
        for r in rows:
            data = dict(r)
            data["result"] = json.loads(data["result"]) if data["result"] else None
            entries.append(ExecutionLogEntry.model_validate(data))
        return entries

    # ------------------------------------------------------------------
    async def acquire_lock(self, key: str, holder: str, ttl_seconds: float) -> bool:
        pool = await self._get_pool()
        now = utcnow()
        winner = await pool.fetchval(
            """
            INSERT INTO workflow_locks (key, holder, acquired_at, expires_at)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (key) DO UPDATE SET
                holder = EXCLUDED.holder,
                acquired_at = EXCLUDED.acquired_at,
                expires_at = EXCLUDED.expires_at
            WHERE workflow_locks.expires_at <= $3
            RETURNING holder
            """,
            key,
            holder,
            now,
            now + timedelta(seconds=ttl_seconds),
        )
        return winner == holder

    async def release_lock(self, key: str, holder: str) -> bool:
        pool = await self._get_pool()
        result = await pool.execute(
            "DELETE FROM workflow_locks WHERE key = $1 AND holder = $2", key, holder
        )
        return _affected(result) == 1

    async def get_lock_holder(self, key: str) -> str | None:
        pool = await self._get_pool()
        return await pool.fetchval(
            "SELECT holder FROM workflow_locks WHERE key = $1 AND expires_at > $2",
            key,
            utcnow(),
        )

    async def release_locks_by_holder(self, holder: str) -> int:
        pool = await self._get_pool()
        result = await pool.execute("DELETE FROM workflow_locks WHERE holder = $1", holder)
        return _affected(result)

    async def cleanup_expired_locks(self) -> int:
        pool = await self._get_pool()
        result = await pool.execute(
            "DELETE FROM workflow_locks WHERE expires_at <= $1", utcnow()
        )
        return _affected(result)

    async def ping(self) -> bool:
        pool = await self._get_pool()
        return await pool.fetchval("SELECT 1") == 1
