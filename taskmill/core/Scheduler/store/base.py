"""
Persistence contract for the scheduler engine.

Every component talks to a ``Store``; nothing depends on a concrete backend.
All methods are coroutines. Each backend must keep the following atomic within
one call, across every process sharing the same store:

* ``acquire_unique_lock``: a single "insert, or take over only if expired" step.
* ``mark_running``: lock acquisition (for unique jobs) together with the
  ``last_run_at``/``next_run_at`` claim. If the lock is held nothing is written.
* ``mark_completed`` / ``mark_failed``: counters, last result/error and
  ``next_run_at`` are written together; the lock is released afterwards.
* ``mark_execution_rescued``: transitions only a still-running execution, so a
  second call for the same id returns False and changes nothing.

``next_run_at`` only moves forward through these calls. The one sanctioned
reset is an explicit ``update_job`` (lifeline "run now", dead-letter retry,
manual ``run_now``).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterable, List, Optional

from ..clock import Clock, ensure_aware
from ..models import Execution, ExecutionState, Job

if TYPE_CHECKING:  # pragma: no cover
    from ..dead_letter import DeadLetterEntry
    from ...Workflows.execution import WorkflowExecution
    from ...Workflows.models import Workflow


class _Unset:
    """Marker for "leave next_run_at as it is"."""

    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


def advance_next_run(current: Optional[datetime], proposed: Any) -> Optional[datetime]:
    """Forward-only update of ``next_run_at``.

    UNSET keeps the current value, None ends the schedule (one-shot jobs),
    and a datetime is taken only if it is later than the current slot.
    """
    if proposed is UNSET:
        return current
    if proposed is None:
        return None
    proposed = ensure_aware(proposed)
    if current is None or proposed > current:
        return proposed
    return current


class Store(ABC):
    """Abstract base class for scheduler stores."""

    def __init__(self, clock: Optional[Clock] = None):
        self.clock = clock or Clock()

    def now(self) -> datetime:
        return self.clock.now()

    async def initialize(self) -> None:
        """Prepare the backend (create tables, open pools)."""
        return None

    async def close(self) -> None:
        """Release backend resources."""
        return None

    # ------------------------------------------------------------------ jobs

    @abstractmethod
    async def register_job(self, job: Job) -> Job:
        """Insert a job. Raises AlreadyExistsError if the name is taken."""

    @abstractmethod
    async def get_job(self, name: str) -> Job:
        """Return a job. Raises NotFoundError."""

    @abstractmethod
    async def list_jobs(
        self,
        queue: Optional[str] = None,
        state: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Job]:
        """List jobs ordered by name. ``tags`` matches jobs carrying all of them."""

    @abstractmethod
    async def update_job(self, job: Job) -> Job:
        """Replace a stored job. Raises NotFoundError."""

    @abstractmethod
    async def delete_job(self, name: str) -> None:
        """Delete a job. Raises NotFoundError."""

    @abstractmethod
    async def get_due_jobs(self, now: datetime, queue: Optional[str] = None, limit: int = 100) -> List[Job]:
        """Runnable jobs with ``next_run_at <= now`` ordered by (priority, next_run_at)."""

    @abstractmethod
    async def mark_running(self, name: str, node: str, next_run_at: Any = UNSET, owner: Optional[str] = None) -> Job:
        """Claim a run of ``name``.

        Unique jobs acquire their lock (TTL = policy period or job timeout) and
        UniqueConflictError is raised when another owner holds it. On success
        ``last_run_at`` is set and ``next_run_at`` advanced (forward only).
        """

    @abstractmethod
    async def mark_completed(self, name: str, result: Any = None, next_run_at: Any = UNSET, owner: Optional[str] = None) -> Job:
        """Record a successful run and release the job lock."""

    @abstractmethod
    async def mark_failed(self, name: str, error: Any, next_run_at: Any = UNSET, owner: Optional[str] = None) -> Job:
        """Record a failed run and release the job lock."""

    @abstractmethod
    async def mark_cancelled(self, name: str, reason: str, owner: Optional[str] = None) -> Job:
        """Record a cancellation (``last_error = "Cancelled: <reason>"``) and release the lock."""

    @abstractmethod
    async def release_lock(self, name: str, owner: Optional[str] = None) -> bool:
        """Release the unique lock of job ``name``; with ``owner`` only if it matches."""

    # ------------------------------------------------------------- workflows

    @abstractmethod
    async def register_workflow(self, workflow: "Workflow") -> "Workflow":
        """Insert a workflow. Raises AlreadyExistsError."""

    @abstractmethod
    async def get_workflow(self, name: str) -> "Workflow":
        """Raises NotFoundError."""

    @abstractmethod
    async def list_workflows(self, tags: Optional[Iterable[str]] = None, trigger_type: Optional[str] = None) -> List["Workflow"]:
        ...

    @abstractmethod
    async def update_workflow(self, workflow: "Workflow") -> "Workflow":
        """Raises NotFoundError."""

    @abstractmethod
    async def delete_workflow(self, name: str) -> None:
        """Raises NotFoundError."""

    # ---------------------------------------------------------------- locks

    @abstractmethod
    async def acquire_unique_lock(self, key: str, owner: str, ttl: float) -> bool:
        """Insert the lock, or take it over only when the current one has expired."""

    @abstractmethod
    async def release_unique_lock(self, key: str, owner: str) -> bool:
        """Delete the lock only when ``owner`` holds it."""

    @abstractmethod
    async def renew_unique_lock(self, key: str, owner: str, ttl: float) -> bool:
        """Extend the lock to now + ``ttl`` only while ``owner`` still holds it unexpired."""

    @abstractmethod
    async def cleanup_expired_locks(self) -> int:
        """Delete expired locks and return how many were removed."""

    async def check_unique_conflict(self, key: str, states: Iterable[str], cutoff: Optional[datetime] = None) -> bool:
        """True if an execution with ``key`` is in one of ``states`` (started after ``cutoff``).

        Backends that cannot answer cheaply leave this unimplemented; callers
        then rely on the lock alone.
        """
        raise NotImplementedError

    # ----------------------------------------------------------- executions

    @abstractmethod
    async def record_execution_start(self, execution: Execution) -> Execution:
        ...

    @abstractmethod
    async def record_execution_complete(self, execution: Execution) -> Execution:
        ...

    @abstractmethod
    async def get_executions(
        self,
        job_name: Optional[str] = None,
        limit: int = 100,
        since: Optional[datetime] = None,
        state: Optional[str] = None,
    ) -> List[Execution]:
        """Newest first."""

    @abstractmethod
    async def get_execution(self, execution_id: str) -> Execution:
        """Raises NotFoundError."""

    @abstractmethod
    async def prune_executions(self, before: Optional[datetime] = None, limit: int = 10000) -> int:
        """Delete terminal executions started before ``before`` (default 7 days ago)."""

    @abstractmethod
    async def record_heartbeat(self, job_name: str, node: str) -> bool:
        """Refresh ``heartbeat_at`` of the running executions of ``job_name`` on ``node``."""

    @abstractmethod
    async def get_stuck_executions(self, cutoff: datetime) -> List[Execution]:
        """Running executions whose heartbeat is older than ``cutoff``."""

    @abstractmethod
    async def mark_execution_rescued(self, execution_id: str) -> bool:
        """Running → rescued. False when the execution is already terminal or unknown."""

    @abstractmethod
    async def execution_count(self, state: str = ExecutionState.RUNNING.value) -> int:
        ...

    # ---------------------------------------------------------- dead letters

    @abstractmethod
    async def insert_dead_letter(self, entry: "DeadLetterEntry") -> "DeadLetterEntry":
        ...

    @abstractmethod
    async def list_dead_letters(self, queue: Optional[str] = None, since: Optional[datetime] = None, limit: int = 100) -> List["DeadLetterEntry"]:
        """Newest first."""

    @abstractmethod
    async def get_dead_letter(self, entry_id: str) -> "DeadLetterEntry":
        """Raises NotFoundError."""

    @abstractmethod
    async def delete_dead_letter(self, entry_id: str) -> bool:
        ...

    @abstractmethod
    async def prune_dead_letters(self, before: datetime) -> int:
        ...

    # --------------------------------------------------- workflow executions

    @abstractmethod
    async def save_workflow_execution(self, execution: "WorkflowExecution") -> None:
        """Insert or replace the snapshot of a workflow execution."""

    @abstractmethod
    async def get_workflow_execution(self, execution_id: str) -> "WorkflowExecution":
        """Raises NotFoundError."""

    @abstractmethod
    async def list_workflow_executions(
        self,
        workflow_name: Optional[str] = None,
        state: Optional[str] = None,
        limit: int = 100,
    ) -> List["WorkflowExecution"]:
        """Newest first."""
