"""
In-process store backend.

All tables live in dictionaries guarded by one re-entrant lock, so every
method is atomic with respect to other tasks and threads of this process.
Objects are copied on the way in and out; callers never share state with the
store.
"""

from __future__ import annotations

import copy
import threading
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from loguru import logger

from ..exceptions import AlreadyExistsError, NotFoundError, UniqueConflictError
from ..models import (
    MAX_ERROR_CHARS,
    Execution,
    ExecutionState,
    Job,
    truncate,
)
from ..unique import lock_key
from .base import UNSET, Store, advance_next_run


class MemoryStore(Store):
    """Dictionary-backed store for tests and single-process deployments."""

    def __init__(self, clock=None):
        super().__init__(clock)
        self._lock = threading.RLock()
        self._jobs: Dict[str, Job] = {}
        self._workflows: Dict[str, Any] = {}
        self._locks: Dict[str, Tuple[str, datetime]] = {}
        self._executions: Dict[str, Execution] = {}
        self._dead_letters: Dict[str, Any] = {}
        self._workflow_executions: Dict[str, Any] = {}

    # ------------------------------------------------------------------ jobs

    async def register_job(self, job: Job) -> Job:
        with self._lock:
            if job.name in self._jobs:
                raise AlreadyExistsError("job", job.name)
            stored = copy.deepcopy(job)
            now = self.now()
            stored.created_at = stored.created_at or now
            stored.updated_at = now
            self._jobs[job.name] = stored
            return copy.deepcopy(stored)

    def _get(self, name: str) -> Job:
        try:
            return self._jobs[name]
        except KeyError:
            raise NotFoundError("job", name)

    async def get_job(self, name: str) -> Job:
        with self._lock:
            return copy.deepcopy(self._get(name))

    async def list_jobs(self, queue=None, state=None, tags=None, limit=None, offset=0) -> List[Job]:
        wanted = set(tags or [])
        with self._lock:
            jobs = [
                j for j in self._jobs.values()
                if (queue is None or j.queue == queue)
                and (state is None or j.state.value == str(getattr(state, "value", state)))
                and wanted.issubset(j.tags)
            ]
            jobs.sort(key=lambda j: j.name)
            end = None if limit is None else offset + limit
            return [copy.deepcopy(j) for j in jobs[offset:end]]

    async def update_job(self, job: Job) -> Job:
        with self._lock:
            current = self._get(job.name)
            stored = copy.deepcopy(job)
            stored.created_at = current.created_at
            stored.updated_at = self.now()
            self._jobs[job.name] = stored
            return copy.deepcopy(stored)

    async def delete_job(self, name: str) -> None:
        with self._lock:
            self._get(name)
            del self._jobs[name]

    async def get_due_jobs(self, now: datetime, queue: Optional[str] = None, limit: int = 100) -> List[Job]:
        with self._lock:
            due = [j for j in self._jobs.values() if j.is_due(now) and (queue is None or j.queue == queue)]
            due.sort(key=lambda j: (j.priority, j.next_run_at))
            return [copy.deepcopy(j) for j in due[:limit]]

    async def mark_running(self, name: str, node: str, next_run_at: Any = UNSET, owner: Optional[str] = None) -> Job:
        with self._lock:
            job = self._get(name)
            now = self.now()
            if job.is_unique:
                key = lock_key(job)
                if not self._try_lock(key, owner or node, job.lock_ttl, now):
                    raise UniqueConflictError(key)
            job.last_run_at = now
            job.next_run_at = advance_next_run(job.next_run_at, next_run_at)
            job.updated_at = now
            return copy.deepcopy(job)

    async def mark_completed(self, name: str, result: Any = None, next_run_at: Any = UNSET, owner: Optional[str] = None) -> Job:
        with self._lock:
            job = self._get(name)
            job.run_count += 1
            job.last_result = result
            job.next_run_at = advance_next_run(job.next_run_at, next_run_at)
            job.updated_at = self.now()
            self._release_job_lock(job, owner)
            return copy.deepcopy(job)

    async def mark_failed(self, name: str, error: Any, next_run_at: Any = UNSET, owner: Optional[str] = None) -> Job:
        with self._lock:
            job = self._get(name)
            job.run_count += 1
            job.error_count += 1
            job.last_error = truncate(str(error), MAX_ERROR_CHARS)
            job.next_run_at = advance_next_run(job.next_run_at, next_run_at)
            job.updated_at = self.now()
            self._release_job_lock(job, owner)
            return copy.deepcopy(job)

    async def mark_cancelled(self, name: str, reason: str, owner: Optional[str] = None) -> Job:
        with self._lock:
            job = self._get(name)
            job.last_error = truncate(f"Cancelled: {reason}", MAX_ERROR_CHARS)
            job.updated_at = self.now()
            self._release_job_lock(job, owner)
            return copy.deepcopy(job)

    async def release_lock(self, name: str, owner: Optional[str] = None) -> bool:
        with self._lock:
            return self._release_job_lock(self._get(name), owner)

    def _release_job_lock(self, job: Job, owner: Optional[str]) -> bool:
        key = lock_key(job)
        held = self._locks.get(key)
        if held is None:
            return False
        if owner is not None and held[0] != owner:
            return False
        del self._locks[key]
        return True

    # ------------------------------------------------------------- workflows

    async def register_workflow(self, workflow):
        with self._lock:
            if workflow.name in self._workflows:
                raise AlreadyExistsError("workflow", workflow.name)
            self._workflows[workflow.name] = copy.deepcopy(workflow)
            return copy.deepcopy(workflow)

    async def get_workflow(self, name: str):
        with self._lock:
            try:
                return copy.deepcopy(self._workflows[name])
            except KeyError:
                raise NotFoundError("workflow", name)

    async def list_workflows(self, tags: Optional[Iterable[str]] = None, trigger_type: Optional[str] = None):
        wanted = set(tags or [])
        with self._lock:
            items = [
                w for w in self._workflows.values()
                if wanted.issubset(w.tags) and (trigger_type is None or w.trigger_type == trigger_type)
            ]
            items.sort(key=lambda w: w.name)
            return [copy.deepcopy(w) for w in items]

    async def update_workflow(self, workflow):
        with self._lock:
            if workflow.name not in self._workflows:
                raise NotFoundError("workflow", workflow.name)
            self._workflows[workflow.name] = copy.deepcopy(workflow)
            return copy.deepcopy(workflow)

    async def delete_workflow(self, name: str) -> None:
        with self._lock:
            if name not in self._workflows:
                raise NotFoundError("workflow", name)
            del self._workflows[name]

    # ---------------------------------------------------------------- locks

    def _try_lock(self, key: str, owner: str, ttl: float, now: datetime) -> bool:
        held = self._locks.get(key)
        if held is not None and held[1] > now:
            return False
        self._locks[key] = (owner, now + timedelta(seconds=ttl))
        return True

    async def acquire_unique_lock(self, key: str, owner: str, ttl: float) -> bool:
        with self._lock:
            return self._try_lock(key, owner, ttl, self.now())

    async def release_unique_lock(self, key: str, owner: str) -> bool:
        with self._lock:
            held = self._locks.get(key)
            if held is None or held[0] != owner:
                return False
            del self._locks[key]
            return True

    async def renew_unique_lock(self, key: str, owner: str, ttl: float) -> bool:
        with self._lock:
            now = self.now()
            held = self._locks.get(key)
            if held is None or held[0] != owner or held[1] <= now:
                return False
            self._locks[key] = (owner, now + timedelta(seconds=ttl))
            return True

    async def cleanup_expired_locks(self) -> int:
        with self._lock:
            now = self.now()
            expired = [k for k, (_, exp) in self._locks.items() if exp <= now]
            for k in expired:
                del self._locks[k]
            if expired:
                logger.debug(f"Removed {len(expired)} expired unique locks")
            return len(expired)

    async def check_unique_conflict(self, key: str, states: Iterable[str], cutoff: Optional[datetime] = None) -> bool:
        wanted = {str(getattr(s, "value", s)) for s in states}
        with self._lock:
            for ex in self._executions.values():
                if ex.meta.get("unique_key") != key or ex.state.value not in wanted:
                    continue
                if cutoff is not None and (ex.started_at is None or ex.started_at < cutoff):
                    continue
                return True
            return False

    # ----------------------------------------------------------- executions

    async def record_execution_start(self, execution: Execution) -> Execution:
        with self._lock:
            self._executions[execution.id] = copy.deepcopy(execution)
            return copy.deepcopy(execution)

    async def record_execution_complete(self, execution: Execution) -> Execution:
        with self._lock:
            current = self._executions.get(execution.id)
            # A rescued execution stays rescued even if the worker reports late
            if current is not None and current.is_terminal:
                return copy.deepcopy(current)
            self._executions[execution.id] = copy.deepcopy(execution)
            return copy.deepcopy(execution)

    async def get_executions(self, job_name=None, limit=100, since=None, state=None) -> List[Execution]:
        with self._lock:
            rows = [
                e for e in self._executions.values()
                if (job_name is None or e.job_name == job_name)
                and (state is None or e.state.value == str(getattr(state, "value", state)))
                and (since is None or (e.started_at is not None and e.started_at >= since))
            ]
            rows.sort(key=lambda e: e.started_at or datetime.min.replace(tzinfo=self.now().tzinfo), reverse=True)
            return [copy.deepcopy(e) for e in rows[:limit]]

    async def get_execution(self, execution_id: str) -> Execution:
        with self._lock:
            try:
                return copy.deepcopy(self._executions[execution_id])
            except KeyError:
                raise NotFoundError("execution", execution_id)

    async def prune_executions(self, before: Optional[datetime] = None, limit: int = 10000) -> int:
        cutoff = before or (self.now() - timedelta(days=7))
        with self._lock:
            old = [
                e for e in self._executions.values()
                if e.is_terminal and e.started_at is not None and e.started_at < cutoff
            ]
            old.sort(key=lambda e: e.started_at)
            for e in old[:limit]:
                del self._executions[e.id]
            return min(len(old), limit)

    async def record_heartbeat(self, job_name: str, node: str) -> bool:
        with self._lock:
            now = self.now()
            touched = False
            for e in self._executions.values():
                if e.job_name == job_name and e.node == node and e.state == ExecutionState.RUNNING:
                    e.heartbeat_at = now
                    touched = True
            return touched

    async def get_stuck_executions(self, cutoff: datetime) -> List[Execution]:
        with self._lock:
            rows = [
                e for e in self._executions.values()
                if e.state == ExecutionState.RUNNING
                and (e.heartbeat_at or e.started_at) is not None
                and (e.heartbeat_at or e.started_at) < cutoff
            ]
            return [copy.deepcopy(e) for e in rows]

    async def mark_execution_rescued(self, execution_id: str) -> bool:
        with self._lock:
            e = self._executions.get(execution_id)
            if e is None or e.state != ExecutionState.RUNNING:
                return False
            e.mark_rescued(self.now())
            return True

    async def execution_count(self, state: str = ExecutionState.RUNNING.value) -> int:
        wanted = str(getattr(state, "value", state))
        with self._lock:
            return sum(1 for e in self._executions.values() if e.state.value == wanted)

    # ---------------------------------------------------------- dead letters

    async def insert_dead_letter(self, entry):
        with self._lock:
            self._dead_letters[entry.id] = copy.deepcopy(entry)
            return copy.deepcopy(entry)

    async def list_dead_letters(self, queue=None, since=None, limit=100):
        with self._lock:
            rows = [
                d for d in self._dead_letters.values()
                if (queue is None or d.queue == queue)
                and (since is None or (d.last_failed_at is not None and d.last_failed_at >= since))
            ]
            rows.sort(key=lambda d: d.last_failed_at, reverse=True)
            return [copy.deepcopy(d) for d in rows[:limit]]

    async def get_dead_letter(self, entry_id: str):
        with self._lock:
            try:
                return copy.deepcopy(self._dead_letters[entry_id])
            except KeyError:
                raise NotFoundError("dead_letter", entry_id)

    async def delete_dead_letter(self, entry_id: str) -> bool:
        with self._lock:
            return self._dead_letters.pop(entry_id, None) is not None

    async def prune_dead_letters(self, before: datetime) -> int:
        with self._lock:
            old = [k for k, d in self._dead_letters.items() if d.last_failed_at is not None and d.last_failed_at < before]
            for k in old:
                del self._dead_letters[k]
            return len(old)

    # --------------------------------------------------- workflow executions

    async def save_workflow_execution(self, execution) -> None:
        with self._lock:
            self._workflow_executions[execution.id] = copy.deepcopy(execution)

    async def get_workflow_execution(self, execution_id: str):
        with self._lock:
            try:
                return copy.deepcopy(self._workflow_executions[execution_id])
            except KeyError:
                raise NotFoundError("workflow_execution", execution_id)

    async def list_workflow_executions(self, workflow_name=None, state=None, limit=100):
        with self._lock:
            rows = [
                w for w in self._workflow_executions.values()
                if (workflow_name is None or w.workflow_name == workflow_name)
                and (state is None or w.state.value == str(getattr(state, "value", state)))
            ]
            rows.sort(key=lambda w: w.created_at, reverse=True)
            return [copy.deepcopy(w) for w in rows[:limit]]
