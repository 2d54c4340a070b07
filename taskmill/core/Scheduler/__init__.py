"""
Distributed job scheduler for taskmill.

Jobs live in a durable store; one leader node detects due work and hands it to
per-queue producers, which run it through the executor with timeouts,
heartbeats, retry classification, circuit breaking and middleware.

Features:
- Interval, cron, one-shot and reboot schedules
- Memory and SQLite stores behind one async contract
- Leadership from a peer (local, store lease or PostgreSQL advisory lock)
- Unique jobs guarded by TTL locks
- Token bucket rate limits per worker, queue and globally
- Dead letter queue and stalled-execution rescue
- Chunked, resumable batch jobs with progress kept in job meta

Quick Start:
    from taskmill.core.Scheduler import Scheduler

    async with Scheduler() as scheduler:
        await scheduler.register_job({
            "name": "nightly_report",
            "module": "app.jobs",
            "function": "nightly_report",
            "cron": "0 6 * * *",
        })
"""

from .scheduler import Scheduler, create_scheduler, get_global_scheduler, stop_global_scheduler
from .config import SchedulerConfig, get_config, set_config, reset_config
from .clock import Clock, ManualClock
from .models import Job, Execution, JobState, ScheduleType, ExecutionState, UniquePolicy
from .schemas import JobSpec, coerce_job
from .middleware import Middleware, Continue, Halt, Ok, Fail, Retry, Ignore
from .peer import Peer, LocalPeer, StoreLeasePeer, PostgresAdvisoryPeer, create_peer
from .store import Store, MemoryStore, SQLiteStore, create_store
from .telemetry import emit_event, add_listener, remove_listener
from .batch import BatchWorker, BatchConfig, BatchResult, run_batch
from .exceptions import (
    SchedulerError,
    StoreError,
    AlreadyExistsError,
    NotFoundError,
    UniqueConflictError,
    InvalidTransitionError,
    InvalidCronExpressionError,
    WorkflowValidationError,
    RateLimitedError,
    CircuitOpenError,
    JobError,
    BatchError,
)

__version__ = "1.0.0"

__all__ = [
    # Main interfaces
    'Scheduler',
    'create_scheduler',
    'get_global_scheduler',
    'stop_global_scheduler',

    # Configuration
    'SchedulerConfig',
    'get_config',
    'set_config',
    'reset_config',

    # Core types
    'Clock',
    'ManualClock',
    'Job',
    'Execution',
    'JobState',
    'ScheduleType',
    'ExecutionState',
    'UniquePolicy',
    'JobSpec',
    'coerce_job',

    # Extension points
    'Middleware',
    'Continue',
    'Halt',
    'Ok',
    'Fail',
    'Retry',
    'Ignore',
    'Peer',
    'LocalPeer',
    'StoreLeasePeer',
    'PostgresAdvisoryPeer',
    'create_peer',
    'emit_event',
    'add_listener',
    'remove_listener',
    'BatchWorker',
    'BatchConfig',
    'BatchResult',
    'run_batch',

    # Stores
    'Store',
    'MemoryStore',
    'SQLiteStore',
    'create_store',

    # Exceptions
    'SchedulerError',
    'StoreError',
    'AlreadyExistsError',
    'NotFoundError',
    'UniqueConflictError',
    'InvalidTransitionError',
    'InvalidCronExpressionError',
    'WorkflowValidationError',
    'RateLimitedError',
    'CircuitOpenError',
    'JobError',
    'BatchError',
]
