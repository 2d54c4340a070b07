"""
SQLite store backend.

One connection per operation, run on a worker thread via ``asyncio.to_thread``.
Multi-statement sections use ``BEGIN IMMEDIATE`` so the write lock is taken up
front; the unique lock is a single conditional upsert. Several processes may
share one database file (WAL mode, busy timeout).
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Optional, Union

from loguru import logger

from ..clock import ensure_aware, parse_dt
from ..exceptions import AlreadyExistsError, NotFoundError, StoreError, UniqueConflictError
from ..models import (
    MAX_ERROR_CHARS,
    TERMINAL_EXECUTION_STATES,
    Execution,
    ExecutionState,
    Job,
    truncate,
)
from ..unique import lock_key
from .base import UNSET, Store, advance_next_run
from .migrations import ensure_scheduler_tables


_TERMINAL = tuple(s.value for s in TERMINAL_EXECUTION_STATES)


def _ts(dt: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC timestamp so that text comparison orders correctly."""
    if dt is None:
        return None
    return ensure_aware(dt).astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def _placeholders(n: int) -> str:
    return ",".join("?" for _ in range(n))


class SQLiteStore(Store):
    """Relational store on a SQLite file."""

    def __init__(self, db_path: Union[str, Path], clock=None):
        super().__init__(clock)
        if str(db_path) in {"", ":memory:"}:
            raise ValueError("SQLiteStore needs a file path; use MemoryStore for in-memory storage")
        self.db_path = Path(db_path)
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return
        await asyncio.to_thread(ensure_scheduler_tables, self.db_path)
        self._initialized = True

    def _connect(self) -> sqlite3.Connection:
        # isolation_level=None: transactions are opened explicitly
        conn = sqlite3.connect(self.db_path, timeout=5.0, isolation_level=None)
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
        except sqlite3.Error:
            pass
        try:
            conn.execute("PRAGMA synchronous=NORMAL;")
            conn.execute("PRAGMA busy_timeout=5000;")
        except sqlite3.Error:
            pass
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    async def _run(self, fn, *args):
        if not self._initialized:
            await self.initialize()
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as e:
            logger.error(f"SQLite store operation {getattr(fn, '__name__', fn)} failed: {e}")
            raise StoreError(f"SQLite store error: {e}", cause=e) from e

    # ------------------------------------------------------------------ jobs

    @staticmethod
    def _load_job(row) -> Job:
        return Job.from_dict(json.loads(row["data"]))

    def _get_job(self, conn: sqlite3.Connection, name: str) -> Job:
        row = conn.execute("SELECT data FROM scheduler_jobs WHERE name = ?", (name,)).fetchone()
        if row is None:
            raise NotFoundError("job", name)
        return self._load_job(row)

    @staticmethod
    def _job_values(job: Job):
        return (
            job.queue, job.state.value, int(job.enabled), int(job.paused), int(job.priority),
            _ts(job.next_run_at), _dumps(job.tags), _dumps(job.to_dict()),
            _ts(job.created_at), _ts(job.updated_at),
        )

    def _write_job(self, conn: sqlite3.Connection, job: Job) -> None:
        conn.execute(
            "UPDATE scheduler_jobs SET queue = ?, state = ?, enabled = ?, paused = ?, priority = ?, "
            "next_run_at = ?, tags = ?, data = ?, created_at = ?, updated_at = ? WHERE name = ?",
            self._job_values(job) + (job.name,),
        )

    def _register_job_sync(self, job: Job) -> Job:
        with self._tx() as conn:
            if conn.execute("SELECT 1 FROM scheduler_jobs WHERE name = ?", (job.name,)).fetchone():
                raise AlreadyExistsError("job", job.name)
            now = self.now()
            job.created_at = job.created_at or now
            job.updated_at = now
            conn.execute(
                "INSERT INTO scheduler_jobs(queue, state, enabled, paused, priority, next_run_at, tags, data, "
                "created_at, updated_at, name) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._job_values(job) + (job.name,),
            )
            return job

    async def register_job(self, job: Job) -> Job:
        return await self._run(self._register_job_sync, Job.from_dict(job.to_dict()))

    def _get_job_sync(self, name: str) -> Job:
        with self._read() as conn:
            return self._get_job(conn, name)

    async def get_job(self, name: str) -> Job:
        return await self._run(self._get_job_sync, name)

    def _list_jobs_sync(self, queue, state, tags, limit, offset) -> List[Job]:
        sql = "SELECT data, tags FROM scheduler_jobs WHERE 1=1"
        params: List[Any] = []
        if queue is not None:
            sql += " AND queue = ?"
            params.append(queue)
        if state is not None:
            sql += " AND state = ?"
            params.append(str(getattr(state, "value", state)))
        sql += " ORDER BY name ASC"
        with self._read() as conn:
            rows = conn.execute(sql, params).fetchall()
        wanted = set(tags or [])
        jobs = [self._load_job(r) for r in rows if wanted.issubset(json.loads(r["tags"] or "[]"))]
        end = None if limit is None else offset + limit
        return jobs[offset:end]

    async def list_jobs(self, queue=None, state=None, tags=None, limit=None, offset=0) -> List[Job]:
        return await self._run(self._list_jobs_sync, queue, state, list(tags or []), limit, offset)

    def _update_job_sync(self, job: Job) -> Job:
        with self._tx() as conn:
            current = self._get_job(conn, job.name)
            job.created_at = current.created_at
            job.updated_at = self.now()
            self._write_job(conn, job)
            return job

    async def update_job(self, job: Job) -> Job:
        return await self._run(self._update_job_sync, Job.from_dict(job.to_dict()))

    def _delete_job_sync(self, name: str) -> None:
        with self._tx() as conn:
            cur = conn.execute("DELETE FROM scheduler_jobs WHERE name = ?", (name,))
            if cur.rowcount == 0:
                raise NotFoundError("job", name)

    async def delete_job(self, name: str) -> None:
        await self._run(self._delete_job_sync, name)

    def _due_sync(self, now: datetime, queue: Optional[str], limit: int) -> List[Job]:
        sql = (
            "SELECT data FROM scheduler_jobs WHERE state = 'active' AND enabled = 1 AND paused = 0 "
            "AND next_run_at IS NOT NULL AND next_run_at <= ?"
        )
        params: List[Any] = [_ts(now)]
        if queue is not None:
            sql += " AND queue = ?"
            params.append(queue)
        sql += " ORDER BY priority ASC, next_run_at ASC LIMIT ?"
        params.append(int(limit))
        with self._read() as conn:
            return [self._load_job(r) for r in conn.execute(sql, params).fetchall()]

    async def get_due_jobs(self, now: datetime, queue: Optional[str] = None, limit: int = 100) -> List[Job]:
        return await self._run(self._due_sync, now, queue, limit)

    def _mark_running_sync(self, name: str, node: str, next_run_at: Any, owner: Optional[str]) -> Job:
        with self._tx() as conn:
            job = self._get_job(conn, name)
            now = self.now()
            if job.is_unique:
                key = lock_key(job)
                if not self._try_lock(conn, key, owner or node, job.lock_ttl, now):
                    raise UniqueConflictError(key)
            job.last_run_at = now
            job.next_run_at = advance_next_run(job.next_run_at, next_run_at)
            job.updated_at = now
            self._write_job(conn, job)
            return job

    async def mark_running(self, name: str, node: str, next_run_at: Any = UNSET, owner: Optional[str] = None) -> Job:
        return await self._run(self._mark_running_sync, name, node, next_run_at, owner)

    def _finish_sync(self, name: str, ok: bool, payload: Any, next_run_at: Any, owner: Optional[str]) -> Job:
        with self._tx() as conn:
            job = self._get_job(conn, name)
            job.run_count += 1
            if ok:
                job.last_result = payload
            else:
                job.error_count += 1
                job.last_error = truncate(str(payload), MAX_ERROR_CHARS)
            job.next_run_at = advance_next_run(job.next_run_at, next_run_at)
            job.updated_at = self.now()
            self._write_job(conn, job)
            self._delete_lock(conn, lock_key(job), owner)
            return job

    async def mark_completed(self, name: str, result: Any = None, next_run_at: Any = UNSET, owner: Optional[str] = None) -> Job:
        return await self._run(self._finish_sync, name, True, result, next_run_at, owner)

    async def mark_failed(self, name: str, error: Any, next_run_at: Any = UNSET, owner: Optional[str] = None) -> Job:
        return await self._run(self._finish_sync, name, False, error, next_run_at, owner)

    def _mark_cancelled_sync(self, name: str, reason: str, owner: Optional[str]) -> Job:
        with self._tx() as conn:
            job = self._get_job(conn, name)
            job.last_error = truncate(f"Cancelled: {reason}", MAX_ERROR_CHARS)
            job.updated_at = self.now()
            self._write_job(conn, job)
            self._delete_lock(conn, lock_key(job), owner)
            return job

    async def mark_cancelled(self, name: str, reason: str, owner: Optional[str] = None) -> Job:
        return await self._run(self._mark_cancelled_sync, name, reason, owner)

    def _release_lock_sync(self, name: str, owner: Optional[str]) -> bool:
        with self._tx() as conn:
            return self._delete_lock(conn, lock_key(self._get_job(conn, name)), owner)

    async def release_lock(self, name: str, owner: Optional[str] = None) -> bool:
        return await self._run(self._release_lock_sync, name, owner)

    # ------------------------------------------------------------- workflows

    @staticmethod
    def _load_workflow(row):
        from taskmill.core.Workflows.models import Workflow
        return Workflow.from_dict(json.loads(row["data"]))

    def _register_workflow_sync(self, data: dict):
        with self._tx() as conn:
            if conn.execute("SELECT 1 FROM scheduler_workflows WHERE name = ?", (data["name"],)).fetchone():
                raise AlreadyExistsError("workflow", data["name"])
            conn.execute(
                "INSERT INTO scheduler_workflows(name, trigger_type, tags, data, updated_at) VALUES (?, ?, ?, ?, ?)",
                (data["name"], data["trigger_type"], _dumps(data.get("tags") or []), _dumps(data), _ts(self.now())),
            )

    async def register_workflow(self, workflow):
        await self._run(self._register_workflow_sync, workflow.to_dict())
        return workflow

    def _get_workflow_sync(self, name: str):
        with self._read() as conn:
            row = conn.execute("SELECT data FROM scheduler_workflows WHERE name = ?", (name,)).fetchone()
        if row is None:
            raise NotFoundError("workflow", name)
        return self._load_workflow(row)

    async def get_workflow(self, name: str):
        return await self._run(self._get_workflow_sync, name)

    def _list_workflows_sync(self, tags, trigger_type):
        sql = "SELECT data, tags FROM scheduler_workflows"
        params: List[Any] = []
        if trigger_type is not None:
            sql += " WHERE trigger_type = ?"
            params.append(trigger_type)
        sql += " ORDER BY name ASC"
        with self._read() as conn:
            rows = conn.execute(sql, params).fetchall()
        wanted = set(tags or [])
        return [self._load_workflow(r) for r in rows if wanted.issubset(json.loads(r["tags"] or "[]"))]

    async def list_workflows(self, tags: Optional[Iterable[str]] = None, trigger_type: Optional[str] = None):
        return await self._run(self._list_workflows_sync, list(tags or []), trigger_type)

    def _update_workflow_sync(self, data: dict):
        with self._tx() as conn:
            cur = conn.execute(
                "UPDATE scheduler_workflows SET trigger_type = ?, tags = ?, data = ?, updated_at = ? WHERE name = ?",
                (data["trigger_type"], _dumps(data.get("tags") or []), _dumps(data), _ts(self.now()), data["name"]),
            )
            if cur.rowcount == 0:
                raise NotFoundError("workflow", data["name"])

    async def update_workflow(self, workflow):
        await self._run(self._update_workflow_sync, workflow.to_dict())
        return workflow

    def _delete_workflow_sync(self, name: str) -> None:
        with self._tx() as conn:
            cur = conn.execute("DELETE FROM scheduler_workflows WHERE name = ?", (name,))
            if cur.rowcount == 0:
                raise NotFoundError("workflow", name)

    async def delete_workflow(self, name: str) -> None:
        await self._run(self._delete_workflow_sync, name)

    # ---------------------------------------------------------------- locks

    @staticmethod
    def _try_lock(conn: sqlite3.Connection, key: str, owner: str, ttl: float, now: datetime) -> bool:
        before = conn.total_changes
        conn.execute(
            "INSERT INTO scheduler_locks(key, owner, expires_at) VALUES (?, ?, ?) "
            "ON CONFLICT(key) DO UPDATE SET owner = excluded.owner, expires_at = excluded.expires_at "
            "WHERE scheduler_locks.expires_at <= ?",
            (key, owner, _ts(now + timedelta(seconds=ttl)), _ts(now)),
        )
        return conn.total_changes > before

    @staticmethod
    def _delete_lock(conn: sqlite3.Connection, key: str, owner: Optional[str]) -> bool:
        if owner is None:
            cur = conn.execute("DELETE FROM scheduler_locks WHERE key = ?", (key,))
        else:
            cur = conn.execute("DELETE FROM scheduler_locks WHERE key = ? AND owner = ?", (key, owner))
        return cur.rowcount > 0

    def _acquire_sync(self, key: str, owner: str, ttl: float) -> bool:
        with self._tx() as conn:
            return self._try_lock(conn, key, owner, ttl, self.now())

    async def acquire_unique_lock(self, key: str, owner: str, ttl: float) -> bool:
        return await self._run(self._acquire_sync, key, owner, ttl)

    def _renew_sync(self, key: str, owner: str, ttl: float) -> bool:
        now = self.now()
        with self._tx() as conn:
            cur = conn.execute(
                "UPDATE scheduler_locks SET expires_at = ? WHERE key = ? AND owner = ? AND expires_at > ?",
                (_ts(now + timedelta(seconds=ttl)), key, owner, _ts(now)),
            )
            return cur.rowcount > 0

    async def renew_unique_lock(self, key: str, owner: str, ttl: float) -> bool:
        return await self._run(self._renew_sync, key, owner, ttl)

    def _release_unique_sync(self, key: str, owner: str) -> bool:
        with self._tx() as conn:
            return self._delete_lock(conn, key, owner)

    async def release_unique_lock(self, key: str, owner: str) -> bool:
        return await self._run(self._release_unique_sync, key, owner)

    def _cleanup_sync(self) -> int:
        with self._tx() as conn:
            cur = conn.execute("DELETE FROM scheduler_locks WHERE expires_at <= ?", (_ts(self.now()),))
            return cur.rowcount

    async def cleanup_expired_locks(self) -> int:
        count = await self._run(self._cleanup_sync)
        if count:
            logger.debug(f"Removed {count} expired unique locks")
        return count

    def _conflict_sync(self, key: str, states: List[str], cutoff: Optional[datetime]) -> bool:
        sql = f"SELECT 1 FROM scheduler_executions WHERE unique_key = ? AND state IN ({_placeholders(len(states))})"
        params: List[Any] = [key, *states]
        if cutoff is not None:
            sql += " AND started_at >= ?"
            params.append(_ts(cutoff))
        with self._read() as conn:
            return conn.execute(sql + " LIMIT 1", params).fetchone() is not None

    async def check_unique_conflict(self, key: str, states: Iterable[str], cutoff: Optional[datetime] = None) -> bool:
        wanted = [str(getattr(s, "value", s)) for s in states]
        if not wanted:
            return False
        return await self._run(self._conflict_sync, key, wanted, cutoff)

    # ----------------------------------------------------------- executions

    @staticmethod
    def _load_execution(row) -> Execution:
        return Execution(
            id=row["id"],
            job_name=row["job_name"],
            queue=row["queue"] or "default",
            node=row["node"],
            attempt=row["attempt"],
            state=row["state"],
            result=row["result"],
            started_at=row["started_at"] and datetime.fromisoformat(row["started_at"]),
            completed_at=row["completed_at"] and datetime.fromisoformat(row["completed_at"]),
            duration_ms=row["duration_ms"],
            heartbeat_at=row["heartbeat_at"] and datetime.fromisoformat(row["heartbeat_at"]),
            error=row["error"],
            stacktrace=row["stacktrace"],
            meta=json.loads(row["meta"] or "{}"),
        )

    @staticmethod
    def _execution_values(ex: Execution):
        return (
            ex.job_name, ex.queue, ex.node, ex.attempt, ex.state.value,
            ex.result.value if ex.result else None,
            _ts(ex.started_at), _ts(ex.completed_at), ex.duration_ms, _ts(ex.heartbeat_at),
            ex.error, ex.stacktrace, ex.meta.get("unique_key"), _dumps(ex.meta),
        )

    def _record_start_sync(self, ex: Execution) -> Execution:
        with self._tx() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO scheduler_executions(job_name, queue, node, attempt, state, result, "
                "started_at, completed_at, duration_ms, heartbeat_at, error, stacktrace, unique_key, meta, id) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._execution_values(ex) + (ex.id,),
            )
        return ex

    async def record_execution_start(self, execution: Execution) -> Execution:
        return await self._run(self._record_start_sync, execution)

    def _record_complete_sync(self, ex: Execution) -> Execution:
        with self._tx() as conn:
            cur = conn.execute(
                "UPDATE scheduler_executions SET job_name = ?, queue = ?, node = ?, attempt = ?, state = ?, "
                "result = ?, started_at = ?, completed_at = ?, duration_ms = ?, heartbeat_at = ?, error = ?, "
                f"stacktrace = ?, unique_key = ?, meta = ? WHERE id = ? AND state NOT IN ({_placeholders(len(_TERMINAL))})",
                self._execution_values(ex) + (ex.id, *_TERMINAL),
            )
            if cur.rowcount:
                return ex
            row = conn.execute("SELECT * FROM scheduler_executions WHERE id = ?", (ex.id,)).fetchone()
            if row is not None:
                # A rescued execution stays rescued even if the worker reports late
                return self._load_execution(row)
            conn.execute(
                "INSERT INTO scheduler_executions(job_name, queue, node, attempt, state, result, started_at, "
                "completed_at, duration_ms, heartbeat_at, error, stacktrace, unique_key, meta, id) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._execution_values(ex) + (ex.id,),
            )
            return ex

    async def record_execution_complete(self, execution: Execution) -> Execution:
        return await self._run(self._record_complete_sync, execution)

    def _get_executions_sync(self, job_name, limit, since, state) -> List[Execution]:
        sql = "SELECT * FROM scheduler_executions WHERE 1=1"
        params: List[Any] = []
        if job_name is not None:
            sql += " AND job_name = ?"
            params.append(job_name)
        if since is not None:
            sql += " AND started_at >= ?"
            params.append(_ts(since))
        if state is not None:
            sql += " AND state = ?"
            params.append(str(getattr(state, "value", state)))
        sql += " ORDER BY started_at DESC LIMIT ?"
        params.append(int(limit))
        with self._read() as conn:
            return [self._load_execution(r) for r in conn.execute(sql, params).fetchall()]

    async def get_executions(self, job_name=None, limit=100, since=None, state=None) -> List[Execution]:
        return await self._run(self._get_executions_sync, job_name, limit, since, state)

    def _get_execution_sync(self, execution_id: str) -> Execution:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM scheduler_executions WHERE id = ?", (execution_id,)).fetchone()
        if row is None:
            raise NotFoundError("execution", execution_id)
        return self._load_execution(row)

    async def get_execution(self, execution_id: str) -> Execution:
        return await self._run(self._get_execution_sync, execution_id)

    def _prune_sync(self, before: datetime, limit: int) -> int:
        with self._tx() as conn:
            cur = conn.execute(
                "DELETE FROM scheduler_executions WHERE id IN ("
                f"SELECT id FROM scheduler_executions WHERE state IN ({_placeholders(len(_TERMINAL))}) "
                "AND started_at < ? ORDER BY started_at ASC LIMIT ?)",
                (*_TERMINAL, _ts(before), int(limit)),
            )
            return cur.rowcount

    async def prune_executions(self, before: Optional[datetime] = None, limit: int = 10000) -> int:
        cutoff = before or (self.now() - timedelta(days=7))
        return await self._run(self._prune_sync, cutoff, limit)

    def _heartbeat_sync(self, job_name: str, node: str) -> bool:
        with self._tx() as conn:
            cur = conn.execute(
                "UPDATE scheduler_executions SET heartbeat_at = ? WHERE job_name = ? AND node = ? AND state = 'running'",
                (_ts(self.now()), job_name, node),
            )
            return cur.rowcount > 0

    async def record_heartbeat(self, job_name: str, node: str) -> bool:
        return await self._run(self._heartbeat_sync, job_name, node)

    def _stuck_sync(self, cutoff: datetime) -> List[Execution]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM scheduler_executions WHERE state = 'running' "
                "AND COALESCE(heartbeat_at, started_at) < ? ORDER BY started_at ASC",
                (_ts(cutoff),),
            ).fetchall()
        return [self._load_execution(r) for r in rows]

    async def get_stuck_executions(self, cutoff: datetime) -> List[Execution]:
        return await self._run(self._stuck_sync, cutoff)

    def _rescue_sync(self, execution_id: str) -> bool:
        with self._tx() as conn:
            row = conn.execute("SELECT * FROM scheduler_executions WHERE id = ?", (execution_id,)).fetchone()
            if row is None or row["state"] != ExecutionState.RUNNING.value:
                return False
            ex = self._load_execution(row).mark_rescued(self.now())
            cur = conn.execute(
                "UPDATE scheduler_executions SET state = ?, result = ?, completed_at = ?, duration_ms = ?, error = ? "
                "WHERE id = ? AND state = 'running'",
                (ex.state.value, ex.result.value, _ts(ex.completed_at), ex.duration_ms, ex.error, ex.id),
            )
            return cur.rowcount > 0

    async def mark_execution_rescued(self, execution_id: str) -> bool:
        return await self._run(self._rescue_sync, execution_id)

    def _count_sync(self, state: str) -> int:
        with self._read() as conn:
            return conn.execute("SELECT COUNT(*) FROM scheduler_executions WHERE state = ?", (state,)).fetchone()[0]

    async def execution_count(self, state: str = ExecutionState.RUNNING.value) -> int:
        return await self._run(self._count_sync, str(getattr(state, "value", state)))

    # ---------------------------------------------------------- dead letters

    @staticmethod
    def _load_dead_letter(row):
        from ..dead_letter import DeadLetterEntry
        return DeadLetterEntry.from_dict(json.loads(row["data"]))

    def _insert_dl_sync(self, entry):
        with self._tx() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO scheduler_dead_letters(id, job_name, queue, last_failed_at, data) VALUES (?, ?, ?, ?, ?)",
                (entry.id, entry.job_name, entry.queue, _ts(entry.last_failed_at), _dumps(entry.to_dict())),
            )
        return entry

    async def insert_dead_letter(self, entry):
        return await self._run(self._insert_dl_sync, entry)

    def _list_dl_sync(self, queue, since, limit):
        sql = "SELECT data FROM scheduler_dead_letters WHERE 1=1"
        params: List[Any] = []
        if queue is not None:
            sql += " AND queue = ?"
            params.append(queue)
        if since is not None:
            sql += " AND last_failed_at >= ?"
            params.append(_ts(since))
        sql += " ORDER BY last_failed_at DESC LIMIT ?"
        params.append(int(limit))
        with self._read() as conn:
            return [self._load_dead_letter(r) for r in conn.execute(sql, params).fetchall()]

    async def list_dead_letters(self, queue=None, since=None, limit=100):
        return await self._run(self._list_dl_sync, queue, since, limit)

    def _get_dl_sync(self, entry_id: str):
        with self._read() as conn:
            row = conn.execute("SELECT data FROM scheduler_dead_letters WHERE id = ?", (entry_id,)).fetchone()
        if row is None:
            raise NotFoundError("dead_letter", entry_id)
        return self._load_dead_letter(row)

    async def get_dead_letter(self, entry_id: str):
        return await self._run(self._get_dl_sync, entry_id)

    def _delete_dl_sync(self, entry_id: str) -> bool:
        with self._tx() as conn:
            return conn.execute("DELETE FROM scheduler_dead_letters WHERE id = ?", (entry_id,)).rowcount > 0

    async def delete_dead_letter(self, entry_id: str) -> bool:
        return await self._run(self._delete_dl_sync, entry_id)

    def _prune_dl_sync(self, before: datetime) -> int:
        with self._tx() as conn:
            return conn.execute("DELETE FROM scheduler_dead_letters WHERE last_failed_at < ?", (_ts(before),)).rowcount

    async def prune_dead_letters(self, before: datetime) -> int:
        return await self._run(self._prune_dl_sync, before)

    # --------------------------------------------------- workflow executions

    @staticmethod
    def _load_wfx(row):
        from taskmill.core.Workflows.execution import WorkflowExecution
        return WorkflowExecution.from_dict(json.loads(row["data"]))

    def _save_wfx_sync(self, data: dict) -> None:
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO scheduler_workflow_executions(id, workflow_name, state, created_at, updated_at, data) "
                "VALUES (?, ?, ?, ?, ?, ?) ON CONFLICT(id) DO UPDATE SET state = excluded.state, "
                "updated_at = excluded.updated_at, data = excluded.data",
                (data["id"], data["workflow_name"], data["state"], _ts(parse_dt(data.get("created_at"))), _ts(self.now()), _dumps(data)),
            )

    async def save_workflow_execution(self, execution) -> None:
        await self._run(self._save_wfx_sync, execution.to_dict())

    def _get_wfx_sync(self, execution_id: str):
        with self._read() as conn:
            row = conn.execute("SELECT data FROM scheduler_workflow_executions WHERE id = ?", (execution_id,)).fetchone()
        if row is None:
            raise NotFoundError("workflow_execution", execution_id)
        return self._load_wfx(row)

    async def get_workflow_execution(self, execution_id: str):
        return await self._run(self._get_wfx_sync, execution_id)

    def _list_wfx_sync(self, workflow_name, state, limit):
        sql = "SELECT data FROM scheduler_workflow_executions WHERE 1=1"
        params: List[Any] = []
        if workflow_name is not None:
            sql += " AND workflow_name = ?"
            params.append(workflow_name)
        if state is not None:
            sql += " AND state = ?"
            params.append(str(getattr(state, "value", state)))
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(int(limit))
        with self._read() as conn:
            return [self._load_wfx(r) for r in conn.execute(sql, params).fetchall()]

    async def list_workflow_executions(self, workflow_name=None, state=None, limit=100):
        return await self._run(self._list_wfx_sync, workflow_name, state, limit)
