"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterable

from ..contracts import WorkflowDefinition
from ..errors import DuplicateInstanceError
from ..utils.clock import ensure_utc, utcnow
from .inmemory import apply_patch
from .models import (
    ExecutionLogEntry,
    ScheduledTask,
    TaskStatus,
    WorkflowInstance,
    WorkflowStatus,
)
from .repository import WorkflowRepository

INSTANCE_COLUMNS = (
    "id",
    "account_id",
    "workflow_type",
    "status",
    "current_step_index",
    "total_steps",
    "account_data",
    "execution_context",
    "retry_count",
    "max_retries",
    "next_action_at",
    "next_task_id",
    "started_at",
    "last_activity_at",
    "completed_at",
    "failed_at",
    "stopped_at",
    "paused_at",
    "recovered_at",
    "last_error",
    "final_error",
)
JSON_COLUMNS = {"account_data", "execution_context"}
DATETIME_COLUMNS = {
    "next_action_at",
    "started_at",
    "last_activity_at",
    "completed_at",
    "failed_at",
    "stopped_at",
    "paused_at",
    "recovered_at",
}
TASK_COLUMNS = (
    "task_id",
    "workflow_instance_id",
    "account_id",
    "step_id",
    "step_index",
    "action",
    "kind",
    "scheduled_for",
    "status",
    "payload",
    "attempt",
    "created_at",
    "updated_at",
)


def _dt(value: datetime | None) -> str | None:
    """Fixed-width ISO text so that string comparison orders correctly."""
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def _parse_dt(value: str | None) -> datetime | None:
    return ensure_utc(datetime.fromisoformat(value)) if value else None


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
            CREATE TABLE IF NOT EXISTS workflow_definitions (
                type TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                body TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_instances (
                id TEXT PRIMARY KEY,
                account_id TEXT NOT NULL,
                workflow_type TEXT NOT NULL,
                status TEXT NOT NULL,
                current_step_index INTEGER NOT NULL,
                total_steps INTEGER NOT NULL,
                account_data TEXT,
                execution_context TEXT,
                retry_count INTEGER NOT NULL DEFAULT 0,
                max_retries INTEGER NOT NULL DEFAULT 3,
                next_action_at TEXT,
                next_task_id TEXT,
                started_at TEXT NOT NULL,
                last_activity_at TEXT,
                completed_at TEXT,
                failed_at TEXT,
                stopped_at TEXT,
                paused_at TEXT,
                recovered_at TEXT,
                last_error TEXT,
                final_error TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS ux_workflow_instances_live_account
            ON workflow_instances (account_id)
            WHERE status IN ('active', 'paused', 'recovering')
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS scheduled_tasks (
                task_id TEXT PRIMARY KEY,
                workflow_instance_id TEXT NOT NULL,
                account_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                action TEXT NOT NULL,
                kind TEXT NOT NULL,
                scheduled_for TEXT NOT NULL,
                status TEXT NOT NULL,
                payload TEXT,
                attempt INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL,
                updated_at TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE INDEX IF NOT EXISTS ix_scheduled_tasks_due
            ON scheduled_tasks (status, scheduled_for)
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS execution_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                workflow_instance_id TEXT NOT NULL,
                account_id TEXT NOT NULL,
                step_id TEXT NOT NULL,
                step_index INTEGER NOT NULL,
                action TEXT NOT NULL,
                success INTEGER NOT NULL,
                result TEXT,
                error_message TEXT,
                duration_ms INTEGER NOT NULL DEFAULT 0,
                attempt INTEGER NOT NULL DEFAULT 1,
                executed_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_locks (
                key TEXT PRIMARY KEY,
                holder TEXT NOT NULL,
                acquired_at TEXT NOT NULL,
                expires_at TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute(query, params)
            except sqlite3.Error:
                self._conn.rollback()
                raise
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

    @staticmethod
    def _instance_values(instance: WorkflowInstance) -> list[Any]:
        data = instance.model_dump(mode="python")
        values = []
        for column in INSTANCE_COLUMNS:
            value = data[column]
            if column in JSON_COLUMNS:
                value = json.dumps(value or {})
            elif column in DATETIME_COLUMNS:
                value = _dt(value)
            elif column == "status":
                value = WorkflowStatus(value).value
            values.append(value)
        return values

    @staticmethod
    def _row_to_instance(row: sqlite3.Row) -> WorkflowInstance:
        data: dict[str, Any] = {}
        for column in INSTANCE_COLUMNS:
            value = row[column]
            if column in JSON_COLUMNS:
                value = json.loads(value) if value else {}
            elif column in DATETIME_COLUMNS:
                value = _parse_dt(value)
            data[column] = value
        return WorkflowInstance.model_validate(data)

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> ScheduledTask:
        return ScheduledTask(
            task_id=row["task_id"],
            workflow_instance_id=row["workflow_instance_id"],
            account_id=row["account_id"],
            step_id=row["step_id"],
            step_index=row["step_index"],
            action=row["action"],
            kind=row["kind"],
            scheduled_for=_parse_dt(row["scheduled_for"]),
            status=row["status"],
            payload=json.loads(row["payload"]) if row["payload"] else {},
            attempt=row["attempt"],
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )

    def _update_instance_sync(
        self, instance_id: str, patch: dict[str, Any]
    ) -> WorkflowInstance | None:
        placeholders = ", ".join(f"{c} = ?" for c in INSTANCE_COLUMNS[1:])
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                f"SELECT {', '.join(INSTANCE_COLUMNS)} FROM workflow_instances WHERE id = ?",
                (instance_id,),
            )
            row = cur.fetchone()
            if row is None:
                return None
            updated = apply_patch(self._row_to_instance(row), patch)
            values = self._instance_values(updated)
            try:
                cur.execute(
                    f"UPDATE workflow_instances SET {placeholders} WHERE id = ?",
                    (*values[1:], instance_id),
                )
            except sqlite3.IntegrityError as e:
                self._conn.rollback()
                raise DuplicateInstanceError(str(e)) from e
            self._conn.commit()
            return updated

    # ------------------------------------------------------------------
    # Repository API: definitions
    async def get_definition(self, workflow_type: str) -> WorkflowDefinition | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT body FROM workflow_definitions WHERE type = ?",
            workflow_type,
        )
        if not row:
            return None
        return WorkflowDefinition.model_validate_json(row["body"])

    async def list_definitions(self) -> list[WorkflowDefinition]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT body FROM workflow_definitions ORDER BY type"
        )
        return [WorkflowDefinition.model_validate_json(r["body"]) for r in rows]

    async def save_definition(self, definition: WorkflowDefinition) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflow_definitions (type, name, body) VALUES (?, ?, ?)
            ON CONFLICT(type) DO UPDATE SET name = excluded.name, body = excluded.body
            """,
            definition.type,
            definition.name,
            definition.model_dump_json(),
        )

    # ------------------------------------------------------------------
    # Repository API: instances
    async def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        columns = ", ".join(INSTANCE_COLUMNS)
        marks = ", ".join("?" for _ in INSTANCE_COLUMNS)
        try:
            await asyncio.to_thread(
                self._execute,
                f"INSERT INTO workflow_instances ({columns}) VALUES ({marks})",
                *self._instance_values(instance),
            )
        except sqlite3.IntegrityError as e:
            raise DuplicateInstanceError(
                f"Account {instance.account_id} already has a live workflow"
            ) from e
        return instance

    async def update_instance(
        self, instance_id: str, patch: dict[str, Any]
    ) -> WorkflowInstance | None:
        return await asyncio.to_thread(self._update_instance_sync, instance_id, patch)

    async def get_instance(self, account_id: str) -> WorkflowInstance | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"""
            SELECT {', '.join(INSTANCE_COLUMNS)} FROM workflow_instances
            WHERE account_id = ? ORDER BY started_at DESC LIMIT 1
            """,
            account_id,
        )
        return self._row_to_instance(row) if row else None

    async def get_instance_by_id(self, instance_id: str) -> WorkflowInstance | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {', '.join(INSTANCE_COLUMNS)} FROM workflow_instances WHERE id = ?",
            instance_id,
        )
        return self._row_to_instance(row) if row else None

    async def list_instances(
        self, statuses: Iterable[str] | None = None
    ) -> list[WorkflowInstance]:
        query = f"SELECT {', '.join(INSTANCE_COLUMNS)} FROM workflow_instances"
        params: list[str] = []
        if statuses is not None:
            params = [WorkflowStatus(s).value for s in statuses]
            if not params:
                return []
            query += f" WHERE status IN ({', '.join('?' for _ in params)})"
        query += " ORDER BY started_at"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._row_to_instance(r) for r in rows]

    async def list_recoverable(self) -> list[WorkflowInstance]:
        return await self.list_instances(
            [WorkflowStatus.ACTIVE.value, WorkflowStatus.RECOVERING.value]
        )

    # ------------------------------------------------------------------
    # Repository API: scheduled tasks
    async def create_scheduled_task(self, task: ScheduledTask) -> ScheduledTask:
        await asyncio.to_thread(
            self._execute,
            f"""
            INSERT INTO scheduled_tasks ({', '.join(TASK_COLUMNS)})
            VALUES ({', '.join('?' for _ in TASK_COLUMNS)})
            """,
            task.task_id,
            task.workflow_instance_id,
            task.account_id,
            task.step_id,
            task.step_index,
            task.action,
            task.kind.value,
            _dt(task.scheduled_for),
            task.status.value,
            json.dumps(task.payload),
            task.attempt,
            _dt(task.created_at),
            _dt(task.updated_at),
        )
        return task

    async def get_scheduled_task(self, task_id: str) -> ScheduledTask | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {', '.join(TASK_COLUMNS)} FROM scheduled_tasks WHERE task_id = ?",
            task_id,
        )
        return self._row_to_task(row) if row else None

    async def get_due_tasks(self, now: datetime, limit: int = 100) -> list[ScheduledTask]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"""
            SELECT {', '.join(TASK_COLUMNS)} FROM scheduled_tasks
            WHERE status = ? AND scheduled_for <= ?
            ORDER BY scheduled_for LIMIT ?
            """,
            TaskStatus.PENDING.value,
            _dt(now),
            limit,
        )
        return [self._row_to_task(r) for r in rows]

    async def list_tasks(
        self, instance_id: str, statuses: Iterable[TaskStatus] | None = None
    ) -> list[ScheduledTask]:
        query = (
            f"SELECT {', '.join(TASK_COLUMNS)} FROM scheduled_tasks "
            "WHERE workflow_instance_id = ?"
        )
        params: list[Any] = [instance_id]
        if statuses is not None:
            values = [TaskStatus(s).value for s in statuses]
            query += f" AND status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        rows = await asyncio.to_thread(
            self._fetchall, query + " ORDER BY scheduled_for", *params
        )
        return [self._row_to_task(r) for r in rows]

    async def claim_scheduled_task(self, task_id: str) -> bool:
        changed = await asyncio.to_thread(
            self._execute,
            "UPDATE scheduled_tasks SET status = ?, updated_at = ? WHERE task_id = ? AND status = ?",
            TaskStatus.RUNNING.value,
            _dt(utcnow()),
            task_id,
            TaskStatus.PENDING.value,
        )
        return changed == 1

    async def update_scheduled_task(self, task_id: str, status: TaskStatus) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE scheduled_tasks SET status = ?, updated_at = ? WHERE task_id = ?",
            TaskStatus(status).value,
            _dt(utcnow()),
            task_id,
        )

    async def cancel_pending_tasks(
        self, instance_id: str, include_running: bool = False
    ) -> int:
        statuses = [TaskStatus.PENDING.value]
        if include_running:
            statuses.append(TaskStatus.RUNNING.value)
        return await asyncio.to_thread(
            self._execute,
            f"""
            UPDATE scheduled_tasks SET status = ?, updated_at = ?
            WHERE workflow_instance_id = ? AND status IN ({', '.join('?' for _ in statuses)})
            """,
            TaskStatus.CANCELLED.value,
            _dt(utcnow()),
            instance_id,
            *statuses,
        )

    async def count_tasks(self, status: TaskStatus | None = None) -> int:
        if status is None:
            row = await asyncio.to_thread(
                self._fetchone, "SELECT COUNT(*) AS n FROM scheduled_tasks"
            )
        else:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT COUNT(*) AS n FROM scheduled_tasks WHERE status = ?",
                TaskStatus(status).value,
            )
        return int(row["n"]) if row else 0

    async def delete_finished_tasks(self, before: datetime) -> int:
        return await asyncio.to_thread(
            self._execute,
            "DELETE FROM scheduled_tasks WHERE status IN (?, ?, ?) AND created_at < ?",
            TaskStatus.COMPLETED.value,
            TaskStatus.FAILED.value,
            TaskStatus.CANCELLED.value,
            _dt(before),
        )

    # ------------------------------------------------------------------
    # Repository API: execution log
    def _insert_log_sync(self, entry: ExecutionLogEntry) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                """
                INSERT INTO execution_log (
                    workflow_instance_id, account_id, step_id, step_index, action,
                    success, result, error_message, duration_ms, attempt, executed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.workflow_instance_id,
                    entry.account_id,
                    entry.step_id,
                    entry.step_index,
                    entry.action,
                    int(entry.success),
                    json.dumps(entry.result) if entry.result is not None else None,
                    entry.error_message,
                    entry.duration_ms,
                    entry.attempt,
                    _dt(entry.executed_at),
                ),
            )
            self._conn.commit()
            return cur.lastrowid

    async def append_execution_log(self, entry: ExecutionLogEntry) -> ExecutionLogEntry:
        row_id = await asyncio.to_thread(self._insert_log_sync, entry)
        return entry.model_copy(update={"id": row_id})

    async def list_execution_log(self, instance_id: str) -> list[ExecutionLogEntry]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT id, workflow_instance_id, account_id, step_id, step_index, action,
                   success, result, error_message, duration_ms, attempt, executed_at
            FROM execution_log WHERE workflow_instance_id = ? ORDER BY id
            """,
            instance_id,
        )
        return [
            ExecutionLogEntry(
                id=r["id"],
                workflow_instance_id=r["workflow_instance_id"],
                account_id=r["account_id"],
                step_id=r["step_id"],
                step_index=r["step_index"],
                action=r["action"],
                success=bool(r["success"]),
                result=json.loads(r["result"]) if r["result"] else None,
                error_message=r["error_message"],
                duration_ms=r["duration_ms"],
                attempt=r["attempt"],
                executed_at=_parse_dt(r["executed_at"]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Repository API: locks
    async def acquire_lock(self, key: str, holder: str, ttl_seconds: float) -> bool:
        now = utcnow()
        changed = await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflow_locks (key, holder, acquired_at, expires_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                holder = excluded.holder,
                acquired_at = excluded.acquired_at,
                expires_at = excluded.expires_at
            WHERE workflow_locks.expires_at <= ?
            """,
            key,
            holder,
            _dt(now),
            _dt(now + timedelta(seconds=ttl_seconds)),
            _dt(now),
        )
        return changed == 1

    async def release_lock(self, key: str, holder: str) -> bool:
        changed = await asyncio.to_thread(
            self._execute,
            "DELETE FROM workflow_locks WHERE key = ? AND holder = ?",
            key,
            holder,
        )
        return changed == 1

    async def get_lock_holder(self, key: str) -> str | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT holder FROM workflow_locks WHERE key = ? AND expires_at > ?",
            key,
            _dt(utcnow()),
        )
        return row["holder"] if row else None

    async def release_locks_by_holder(self, holder: str) -> int:
        return await asyncio.to_thread(
            self._execute, "DELETE FROM workflow_locks WHERE holder = ?", holder
        )

    async def cleanup_expired_locks(self) -> int:
        return await asyncio.to_thread(
            self._execute,
            "DELETE FROM workflow_locks WHERE expires_at <= ?",
            _dt(utcnow()),
        )

    async def ping(self) -> bool:
        row = await asyncio.to_thread(self._fetchone, "SELECT 1 AS ok")
        return bool(row and row["ok"] == 1)

    def close(self) -> None:
        with self._lock:
            self._conn.close()
