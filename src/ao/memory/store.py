"""Durable storage layer for tasks, milestones, and interaction logs."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator, List, Mapping, Optional, Sequence

from ..errors import DuplicateSequenceError, InvalidTransitionError, TaskNotFoundError
from .schema import (
    InteractionLog,
    Milestone,
    MilestoneStatus,
    Task,
    TaskStatus,
    utc_now,
)

DEFAULT_DB_PATH = Path("data/ao.sqlite")
LOGGER = logging.getLogger(__name__)


def _as_iso(timestamp: Optional[datetime]) -> Optional[str]:
    """Serialise a timestamp to a sortable UTC ISO 8601 string."""
    if timestamp is None:
        return None
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp produced by `_as_iso`."""
    if not value:
        return None
    return datetime.fromisoformat(value)


def _dump_json(data: Any, *, default: Any) -> str:
    """Convert arbitrary JSON-like payloads into a persisted string."""
    serialisable = default if data is None else data
    return json.dumps(serialisable, default=str)


def _load_json(value: Optional[str], *, default: Any) -> Any:
    """Decode JSON columns while falling back to the provided default."""
    if not value:
        return default
    data = json.loads(value)
    if data is None:
        return default
    return data


class MemoryStore:
    """SQLite-backed persistence shared by dispatcher and engine workers.

    Several ``MemoryStore`` instances may point at one database file; the
    lock columns are only ever changed through conditional ``UPDATE``
    statements so the database itself arbitrates between workers.
    """

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH, *, timeout: float = 30.0) -> None:
        self.db_path = Path(db_path).resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._timeout = timeout
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = self._open_connection()
        self._bootstrap()

    def close(self) -> None:
        if getattr(self, "_conn", None) is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def __enter__(self) -> "MemoryStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _open_connection(self) -> sqlite3.Connection:
        connection = sqlite3.connect(
            str(self.db_path),
            timeout=self._timeout,
            check_same_thread=False,
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        connection.execute("PRAGMA journal_mode = WAL")
        return connection

    @classmethod
    def from_config(cls, config: Any) -> "MemoryStore":
        return cls(config.paths.db_path)

    def _bootstrap(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    type TEXT NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL,
                    content TEXT NOT NULL,
                    status TEXT NOT NULL,
                    priority INTEGER NOT NULL DEFAULT 3,
                    locked_by TEXT,
                    lock_expires_at TEXT,
                    completed_at TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    failed_milestone_id TEXT,
                    metadata TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_tasks_status_priority
                    ON tasks(status, priority, created_at);

                CREATE TABLE IF NOT EXISTS milestones (
                    id TEXT PRIMARY KEY,
                    task_id TEXT NOT NULL,
                    sequence INTEGER NOT NULL,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL,
                    role TEXT NOT NULL,
                    status TEXT NOT NULL,
                    input_data TEXT NOT NULL,
                    output_data TEXT NOT NULL,
                    error TEXT,
                    metadata TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    UNIQUE(task_id, sequence),
                    FOREIGN KEY(task_id) REFERENCES tasks(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS interaction_logs (
                    id TEXT PRIMARY KEY,
                    run_id TEXT,
                    task_id TEXT,
                    milestone_id TEXT,
                    role TEXT NOT NULL,
                    prompt TEXT NOT NULL,
                    response TEXT,
                    model TEXT NOT NULL,
                    tokens_used INTEGER NOT NULL DEFAULT 0,
                    execution_time_ms INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    error_message TEXT,
                    metadata TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_interactions_created
                    ON interaction_logs(created_at);
                CREATE INDEX IF NOT EXISTS idx_interactions_task
                    ON interaction_logs(task_id, created_at);

                CREATE TABLE IF NOT EXISTS locks (
                    key TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                );
                """
            )
            self._conn.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise

    # Task operations -----------------------------------------------------------------
    def save_task(self, task: Task) -> Task:
        record = task.model_copy(update={"updated_at": utc_now()})
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO tasks (
                    id, type, title, description, content, status, priority,
                    locked_by, lock_expires_at, completed_at, attempts, last_error,
                    failed_milestone_id, metadata, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    type = excluded.type,
                    title = excluded.title,
                    description = excluded.description,
                    content = excluded.content,
                    status = excluded.status,
                    priority = excluded.priority,
                    completed_at = excluded.completed_at,
                    last_error = excluded.last_error,
                    failed_milestone_id = excluded.failed_milestone_id,
                    metadata = excluded.metadata,
                    updated_at = excluded.updated_at
                """,
                (
                    record.id,
                    record.type.value,
                    record.title,
                    record.description,
                    _dump_json(record.content, default={}),
                    record.status.value,
                    record.priority,
                    record.locked_by,
                    _as_iso(record.lock_expires_at),
                    _as_iso(record.completed_at),
                    record.attempts,
                    record.last_error,
                    record.failed_milestone_id,
                    _dump_json(record.metadata, default={}),
                    _as_iso(record.created_at),
                    _as_iso(record.updated_at),
                ),
            )
        return record

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if not row:
            return None
        return self._row_to_task(row)

    def require_task(self, task_id: str) -> Task:
        task = self.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(f"Unknown task: {task_id}")
        return task

    def list_tasks(
        self,
        *,
        statuses: Optional[Sequence[TaskStatus]] = None,
        limit: Optional[int] = None,
    ) -> List[Task]:
        """Return tasks ordered by priority (lowest number first) then age."""
        query = "SELECT * FROM tasks"
        params: List[Any] = []
        if statuses:
            placeholders = ",".join("?" for _ in statuses)
            query += f" WHERE status IN ({placeholders})"
            params.extend(TaskStatus(status).value for status in statuses)
        query += " ORDER BY priority ASC, created_at ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    def transition_task(
        self,
        task_id: str,
        target: TaskStatus,
        *,
        error: Optional[str] = None,
        failed_milestone_id: Optional[str] = None,
    ) -> Task:
        """Move a task to ``target`` when the state machine allows it.

        Illegal transitions raise ``InvalidTransitionError`` and leave the
        stored row untouched.
        """
        target = TaskStatus(target)
        with self._transaction():
            row = self._conn.execute(
                "SELECT status FROM tasks WHERE id = ?", (task_id,)
            ).fetchone()
            if not row:
                raise TaskNotFoundError(f"Unknown task: {task_id}")
            current = TaskStatus(row["status"])
            if not current.can_transition_to(target):
                raise InvalidTransitionError("task", current.value, target.value)
            now = utc_now()
            completed_at = _as_iso(now) if target == TaskStatus.COMPLETED else None
            assignments = ["status = ?", "updated_at = ?", "completed_at = ?"]
            params: List[Any] = [target.value, _as_iso(now), completed_at]
            if target == TaskStatus.FAILED:
                assignments.extend(["last_error = ?", "failed_milestone_id = ?"])
                params.extend([error, failed_milestone_id])
            elif target == TaskStatus.PENDING:
                assignments.append("failed_milestone_id = NULL")
            cursor = self._conn.execute(
                f"UPDATE tasks SET {', '.join(assignments)} WHERE id = ? AND status = ?",
                (*params, task_id, current.value),
            )
            if cursor.rowcount != 1:
                raise InvalidTransitionError("task", current.value, target.value)
        LOGGER.debug("Task %s transitioned %s -> %s", task_id, current.value, target.value)
        return self.require_task(task_id)

    def claim_task(
        self,
        task_id: str,
        owner: str,
        ttl_seconds: int,
        *,
        steal: bool = False,
    ) -> Optional[Task]:
        """Atomically lock a task for ``owner``.

        Returns the locked task, or ``None`` when another worker holds an
        unexpired lock (or the task is no longer dispatchable). The claim is a
        single conditional ``UPDATE`` so concurrent workers cannot both win.
        Only claiming a ``pending`` task starts a new attempt; resuming an
        ``in_progress`` task (deferred or abandoned) keeps the attempt count.
        """
        now = utc_now()
        expires = now + timedelta(seconds=ttl_seconds)
        conditions = ["id = ?", "status IN (?, ?)"]
        params: List[Any] = [task_id, TaskStatus.PENDING.value, TaskStatus.IN_PROGRESS.value]
        if not steal:
            conditions.append("(locked_by IS NULL OR lock_expires_at IS NULL OR lock_expires_at <= ?)")
            params.append(_as_iso(now))
        with self._transaction():
            cursor = self._conn.execute(
                f"""
                UPDATE tasks
                SET locked_by = ?, lock_expires_at = ?, updated_at = ?,
                    attempts = attempts + CASE WHEN status = ? THEN 1 ELSE 0 END
                WHERE {' AND '.join(conditions)}
                """,
                (owner, _as_iso(expires), _as_iso(now), TaskStatus.PENDING.value, *params),
            )
            claimed = cursor.rowcount == 1
        if not claimed:
            LOGGER.debug("Task %s already locked; %s skipped it", task_id, owner)
            return None
        return self.get_task(task_id)

    def release_task_lock(self, task_id: str, owner: Optional[str] = None) -> bool:
        """Clear the lock columns; when ``owner`` is given only its own lock is released."""
        query = "UPDATE tasks SET locked_by = NULL, lock_expires_at = NULL, updated_at = ? WHERE id = ?"
        params: List[Any] = [_as_iso(utc_now()), task_id]
        if owner is not None:
            query += " AND locked_by = ?"
            params.append(owner)
        with self._transaction():
            cursor = self._conn.execute(query, params)
            return cursor.rowcount == 1

    def select_dispatchable(
        self,
        limit: int,
        *,
        force: bool = False,
        include_stale: bool = True,
    ) -> List[Task]:
        """Return pending tasks whose lock is absent or expired.

        ``force`` drops the lock filter from the query (claiming still honours
        valid locks). ``include_stale`` also returns ``in_progress`` tasks that
        no worker holds: released after a deferred pass, or abandoned by a
        crashed worker whose lock expired.
        """
        now_iso = _as_iso(utc_now())
        lock_clause = "(locked_by IS NULL OR lock_expires_at IS NULL OR lock_expires_at <= ?)"
        params: List[Any] = []
        if force:
            where = "status = ?"
            params.append(TaskStatus.PENDING.value)
        else:
            where = f"(status = ? AND {lock_clause})"
            params.extend([TaskStatus.PENDING.value, now_iso])
        if include_stale:
            where += f" OR (status = ? AND {lock_clause})"
            params.extend([TaskStatus.IN_PROGRESS.value, now_iso])
        query = f"SELECT * FROM tasks WHERE {where} ORDER BY priority ASC, created_at ASC LIMIT ?"
        params.append(int(limit))
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    def _row_to_task(self, row: sqlite3.Row) -> Task:
        return Task(
            id=row["id"],
            type=row["type"],
            title=row["title"],
            description=row["description"],
            content=_load_json(row["content"], default={}),
            status=row["status"],
            priority=row["priority"],
            locked_by=row["locked_by"],
            lock_expires_at=_from_iso(row["lock_expires_at"]),
            completed_at=_from_iso(row["completed_at"]),
            attempts=row["attempts"],
            last_error=row["last_error"],
            failed_milestone_id=row["failed_milestone_id"],
            metadata=_load_json(row["metadata"], default={}),
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )

    # Milestone operations ------------------------------------------------------------
    def create_milestone(self, milestone: Milestone) -> Milestone:
        """Insert a new milestone; a reused ``(task_id, sequence)`` pair is rejected."""
        record = milestone.model_copy(update={"updated_at": utc_now()})
        try:
            with self._transaction():
                self._conn.execute(
                    """
                    INSERT INTO milestones (
                        id, task_id, sequence, title, description, role, status,
                        input_data, output_data, error, metadata, started_at,
                        completed_at, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    self._milestone_params(record),
                )
        except sqlite3.IntegrityError as error:
            if "UNIQUE" in str(error) and "sequence" in str(error):
                raise DuplicateSequenceError(
                    f"Task {record.task_id} already has a milestone with sequence {record.sequence}"
                ) from error
            raise
        return record

    def create_milestones(self, milestones: Sequence[Milestone]) -> List[Milestone]:
        """Insert a batch of milestones in one transaction."""
        records = [item.model_copy(update={"updated_at": utc_now()}) for item in milestones]
        try:
            with self._transaction():
                self._conn.executemany(
                    """
                    INSERT INTO milestones (
                        id, task_id, sequence, title, description, role, status,
                        input_data, output_data, error, metadata, started_at,
                        completed_at, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [self._milestone_params(record) for record in records],
                )
        except sqlite3.IntegrityError as error:
            raise DuplicateSequenceError(f"Duplicate milestone sequence: {error}") from error
        return records

    def get_milestone(self, milestone_id: str) -> Optional[Milestone]:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM milestones WHERE id = ?", (milestone_id,)
            ).fetchone()
        return self._row_to_milestone(row) if row else None

    def list_milestones(self, task_id: str) -> List[Milestone]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM milestones WHERE task_id = ? ORDER BY sequence ASC",
                (task_id,),
            ).fetchall()
        return [self._row_to_milestone(row) for row in rows]

    def next_sequence(self, task_id: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COALESCE(MAX(sequence), 0) AS top FROM milestones WHERE task_id = ?",
                (task_id,),
            ).fetchone()
        return int(row["top"]) + 1

    def update_milestone(
        self,
        milestone_id: str,
        status: MilestoneStatus,
        *,
        output_data: Optional[Mapping[str, Any]] = None,
        error: Optional[str] = None,
    ) -> Milestone:
        """Apply a status change; completed (or otherwise final) milestones are immutable."""
        target = MilestoneStatus(status)
        with self._transaction():
            row = self._conn.execute(
                "SELECT status FROM milestones WHERE id = ?", (milestone_id,)
            ).fetchone()
            if not row:
                raise KeyError(milestone_id)
            current = MilestoneStatus(row["status"])
            if not current.can_transition_to(target):
                raise InvalidTransitionError("milestone", current.value, target.value)
            now = _as_iso(utc_now())
            assignments = ["status = ?", "updated_at = ?", "error = ?"]
            params: List[Any] = [target.value, now, error]
            if target == MilestoneStatus.IN_PROGRESS:
                assignments.append("started_at = ?")
                params.append(now)
            if target in (MilestoneStatus.COMPLETED, MilestoneStatus.FAILED):
                assignments.append("completed_at = ?")
                params.append(now)
            if output_data is not None:
                assignments.append("output_data = ?")
                params.append(_dump_json(dict(output_data), default={}))
            cursor = self._conn.execute(
                f"UPDATE milestones SET {', '.join(assignments)} WHERE id = ? AND status = ?",
                (*params, milestone_id, current.value),
            )
            if cursor.rowcount != 1:
                raise InvalidTransitionError("milestone", current.value, target.value)
        return self.get_milestone(milestone_id)

    @staticmethod
    def _milestone_params(record: Milestone) -> tuple:
        return (
            record.id,
            record.task_id,
            record.sequence,
            record.title,
            record.description,
            record.role.value,
            record.status.value,
            _dump_json(record.input_data, default={}),
            _dump_json(record.output_data, default={}),
            record.error,
            _dump_json(record.metadata, default={}),
            _as_iso(record.started_at),
            _as_iso(record.completed_at),
            _as_iso(record.created_at),
            _as_iso(record.updated_at),
        )

    def _row_to_milestone(self, row: sqlite3.Row) -> Milestone:
        return Milestone(
            id=row["id"],
            task_id=row["task_id"],
            sequence=row["sequence"],
            title=row["title"],
            description=row["description"],
            role=row["role"],
            status=row["status"],
            input_data=_load_json(row["input_data"], default={}),
            output_data=_load_json(row["output_data"], default={}),
            error=row["error"],
            metadata=_load_json(row["metadata"], default={}),
            started_at=_from_iso(row["started_at"]),
            completed_at=_from_iso(row["completed_at"]),
            created_at=_from_iso(row["created_at"]),
            updated_at=_from_iso(row["updated_at"]),
        )

    # Interaction log operations ------------------------------------------------------
    def record_interaction(self, entry: InteractionLog) -> None:
        """Append an interaction record; existing ids are never overwritten."""
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO interaction_logs (
                    id, run_id, task_id, milestone_id, role, prompt, response, model,
                    tokens_used, execution_time_ms, status, error_message, metadata, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.run_id,
                    entry.task_id,
                    entry.milestone_id,
                    entry.role.value,
                    _dump_json(entry.prompt, default=[]),
                    json.dumps(entry.response, default=str) if entry.response is not None else None,
                    entry.model,
                    entry.tokens_used,
                    entry.execution_time_ms,
                    entry.status.value,
                    entry.error_message,
                    _dump_json(entry.metadata, default={}),
                    _as_iso(entry.created_at),
                ),
            )

    def list_interactions(
        self,
        *,
        task_id: Optional[str] = None,
        milestone_id: Optional[str] = None,
    ) -> List[InteractionLog]:
        query = "SELECT * FROM interaction_logs"
        clauses = []
        params: List[Any] = []
        if task_id:
            clauses.append("task_id = ?")
            params.append(task_id)
        if milestone_id:
            clauses.append("milestone_id = ?")
            params.append(milestone_id)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at ASC"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [
            InteractionLog(
                id=row["id"],
                run_id=row["run_id"],
                task_id=row["task_id"],
                milestone_id=row["milestone_id"],
                role=row["role"],
                prompt=_load_json(row["prompt"], default=[]),
                response=_load_json(row["response"], default=None),
                model=row["model"],
                tokens_used=row["tokens_used"],
                execution_time_ms=row["execution_time_ms"],
                status=row["status"],
                error_message=row["error_message"],
                metadata=_load_json(row["metadata"], default={}),
                created_at=_from_iso(row["created_at"]),
            )
            for row in rows
        ]

    def count_interactions_before(self, cutoff: datetime) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS total FROM interaction_logs WHERE created_at < ?",
                (_as_iso(cutoff),),
            ).fetchone()
        return int(row["total"])

    def delete_interactions_before(self, cutoff: datetime) -> int:
        with self._transaction():
            cursor = self._conn.execute(
                "DELETE FROM interaction_logs WHERE created_at < ?", (_as_iso(cutoff),)
            )
            return cursor.rowcount

    # Lease locks ----------------------------------------------------------------------
    def acquire_lease(self, key: str, owner: str, ttl_seconds: float) -> bool:
        """Try once to take the named lease; never waits.

        A lease whose expiry has passed is taken over in the same statement.
        """
        now = utc_now()
        expires = _as_iso(now + timedelta(seconds=ttl_seconds))
        with self._transaction():
            cursor = self._conn.execute(
                """
                INSERT INTO locks (key, owner, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    owner = excluded.owner,
                    expires_at = excluded.expires_at
                WHERE locks.expires_at <= ?
                """,
                (key, owner, expires, _as_iso(now)),
            )
            return cursor.rowcount == 1

    def release_lease(self, key: str, owner: str) -> bool:
        with self._transaction():
            cursor = self._conn.execute(
                "DELETE FROM locks WHERE key = ? AND owner = ?", (key, owner)
            )
            return cursor.rowcount == 1

    def lease_owner(self, key: str) -> Optional[str]:
        with self._lock:
            row = self._conn.execute(
                "SELECT owner, expires_at FROM locks WHERE key = ?", (key,)
            ).fetchone()
        if not row:
            return None
        if _from_iso(row["expires_at"]) <= utc_now():
            return None
        return row["owner"]


__all__ = ["DEFAULT_DB_PATH", "MemoryStore"]
