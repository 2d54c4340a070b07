"""
Job and Execution models.

A ``Job`` is a named, schedulable reference to a Python callable plus its
schedule and retry policy. An ``Execution`` is the record of one run attempt.
Both carry explicit transition tables; every state change goes through a single
validating ``transition`` method.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple, Union

from .clock import ensure_aware, parse_dt, utcnow
from .cron import get_timezone, next_cron_run, parse_cron
from .exceptions import InvalidCronExpressionError, InvalidTransitionError


JOB_NAME_RE = re.compile(r"^[a-z][a-z0-9_]*$")

MAX_ERROR_CHARS = 1000
MAX_STACK_CHARS = 2000


class JobState(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    DISABLED = "disabled"


class ScheduleType(str, Enum):
    INTERVAL = "interval"
    CRON = "cron"
    AT = "at"
    REBOOT = "reboot"


class ExecutionState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    RESCUED = "rescued"


class ExecutionResult(str, Enum):
    OK = "ok"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    DISCARD = "discard"
    RESCUED = "rescued"


JOB_TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.ACTIVE: frozenset({JobState.PAUSED, JobState.DISABLED}),
    JobState.PAUSED: frozenset({JobState.ACTIVE, JobState.DISABLED}),
    JobState.DISABLED: frozenset({JobState.ACTIVE}),
}

EXECUTION_TRANSITIONS: Dict[ExecutionState, FrozenSet[ExecutionState]] = {
    ExecutionState.PENDING: frozenset({ExecutionState.RUNNING, ExecutionState.CANCELLED}),
    ExecutionState.RUNNING: frozenset({
        ExecutionState.COMPLETED,
        ExecutionState.FAILED,
        ExecutionState.TIMEOUT,
        ExecutionState.CANCELLED,
        ExecutionState.RESCUED,
    }),
    ExecutionState.COMPLETED: frozenset(),
    ExecutionState.FAILED: frozenset(),
    ExecutionState.TIMEOUT: frozenset(),
    ExecutionState.CANCELLED: frozenset(),
    ExecutionState.RESCUED: frozenset(),
}

TERMINAL_EXECUTION_STATES = frozenset(s for s, nxt in EXECUTION_TRANSITIONS.items() if not nxt)


def truncate(text: Optional[str], limit: int) -> Optional[str]:
    if text is None:
        return None
    text = str(text)
    return text if len(text) <= limit else text[:limit]


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


@dataclass
class UniquePolicy:
    """Which fields make two jobs "the same", and for how long.

    ``by``     fields of the job composing the key (name, queue, worker, args)
    ``states`` execution states that count as a conflict
    ``period`` explicit lock TTL in seconds (defaults to the job timeout)
    ``keys``   restrict the args hash to these argument keys
    """

    by: Tuple[str, ...] = ("name",)
    states: Tuple[str, ...] = ("running",)
    period: Optional[float] = None
    keys: Optional[List[str]] = None

    VALID_FIELDS = frozenset({"name", "queue", "worker", "args"})

    def __post_init__(self):
        self.by = tuple(self.by)
        self.states = tuple(str(getattr(s, "value", s)) for s in self.states)
        errors = []
        unknown = [f for f in self.by if f not in self.VALID_FIELDS]
        if unknown:
            errors.append(f"unique.by has unknown fields: {unknown}")
        if not self.by:
            errors.append("unique.by cannot be empty")
        if self.period is not None and self.period <= 0:
            errors.append(f"unique.period must be > 0, got {self.period}")
        if errors:
            raise ValueError("Unique policy validation failed:\n" + "\n".join(f"  - {e}" for e in errors))

    @classmethod
    def coerce(cls, value: Any) -> Optional["UniquePolicy"]:
        if value is None or value is False:
            return None
        if value is True:
            return cls()
        if isinstance(value, UniquePolicy):
            return value
        if isinstance(value, dict):
            data = dict(value)
            if "period" in data and data["period"] is not None:
                data["period"] = float(data["period"])
            return cls(**data)
        raise ValueError(f"unique must be a bool, dict or UniquePolicy, got {type(value).__name__}")

    def ttl(self, timeout: float) -> float:
        return float(self.period) if self.period else float(timeout)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "by": list(self.by),
            "states": list(self.states),
            "period": self.period,
            "keys": list(self.keys) if self.keys is not None else None,
        }


@dataclass
class Job:
    """A schedulable unit of work."""

    name: str
    module: str
    function: str
    args: Union[Dict[str, Any], List[Any]] = field(default_factory=dict)
    schedule_type: ScheduleType = ScheduleType.INTERVAL
    schedule: Dict[str, Any] = field(default_factory=dict)
    timezone: str = "UTC"
    enabled: bool = True
    paused: bool = False
    state: JobState = JobState.ACTIVE
    queue: str = "default"
    worker: Optional[str] = None
    priority: int = 0
    max_retries: int = 3
    retry_delay: float = 5.0
    timeout: float = 60.0
    unique: Optional[UniquePolicy] = None
    circuit_breaker: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)

    # Runtime fields
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    last_result: Any = None
    last_error: Optional[str] = None
    run_count: int = 0
    error_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.schedule_type = ScheduleType(getattr(self.schedule_type, "value", self.schedule_type))
        self.state = JobState(getattr(self.state, "value", self.state))
        self.unique = UniquePolicy.coerce(self.unique)
        self.schedule = self._normalize_schedule(dict(self.schedule or {}))
        self.args = self.args if self.args is not None else {}
        self.tags = list(self.tags or [])
        self.meta = dict(self.meta or {})
        self.last_run_at = ensure_aware(self.last_run_at)
        self.next_run_at = ensure_aware(self.next_run_at)
        # Flags and state must agree; an explicit flag wins over the default state
        if self.state == JobState.ACTIVE:
            if not self.enabled:
                self.state = JobState.DISABLED
            elif self.paused:
                self.state = JobState.PAUSED
        self._sync_flags()
        self._validate()

    def _normalize_schedule(self, schedule: Dict[str, Any]) -> Dict[str, Any]:
        if self.schedule_type == ScheduleType.CRON:
            exprs = schedule.get("expressions")
            if exprs is None:
                single = schedule.get("expression") or schedule.get("cron")
                exprs = [single] if single else []
            if isinstance(exprs, str):
                exprs = [exprs]
            return {"expressions": list(exprs)}
        if self.schedule_type == ScheduleType.INTERVAL:
            every = schedule.get("every", schedule.get("seconds"))
            return {"every": float(every) if every is not None else None}
        if self.schedule_type == ScheduleType.AT:
            return {"at": parse_dt(schedule.get("at"))}
        return {}

    def _sync_flags(self) -> None:
        self.enabled = self.state != JobState.DISABLED
        self.paused = self.state == JobState.PAUSED

    def _validate(self):
        errors = []
        if not isinstance(self.name, str) or not JOB_NAME_RE.match(self.name):
            errors.append(f"name must match {JOB_NAME_RE.pattern}, got {self.name!r}")
        if not self.module:
            errors.append("module cannot be empty")
        if not self.function:
            errors.append("function cannot be empty")
        if not isinstance(self.args, (dict, list, tuple)):
            errors.append(f"args must be a dict or list, got {type(self.args).__name__}")
        if not self.queue:
            errors.append("queue cannot be empty")
        if not 0 <= int(self.priority) <= 9:
            errors.append(f"priority must be within 0..9, got {self.priority}")
        if self.max_retries < 0:
            errors.append(f"max_retries must be >= 0, got {self.max_retries}")
        if self.retry_delay < 0:
            errors.append(f"retry_delay must be >= 0, got {self.retry_delay}")
        if self.timeout <= 0:
            errors.append(f"timeout must be > 0, got {self.timeout}")
        try:
            get_timezone(self.timezone)
        except InvalidCronExpressionError as e:
            errors.append(str(e))

        if self.schedule_type == ScheduleType.INTERVAL:
            every = self.schedule.get("every")
            if every is None or every <= 0:
                errors.append(f"interval schedule needs every > 0, got {every}")
        elif self.schedule_type == ScheduleType.CRON:
            exprs = self.schedule.get("expressions") or []
            if not exprs:
                errors.append("cron schedule needs at least one expression")
            for expr in exprs:
                try:
                    parse_cron(expr, self.timezone)
                except InvalidCronExpressionError as e:
                    errors.append(str(e))
        elif self.schedule_type == ScheduleType.AT:
            if self.schedule.get("at") is None:
                errors.append("at schedule needs an 'at' datetime")

        if errors:
            raise ValueError("Job validation failed:\n" + "\n".join(f"  - {e}" for e in errors))

    @property
    def is_unique(self) -> bool:
        return self.unique is not None

    @property
    def lock_ttl(self) -> float:
        if self.unique is None:
            return float(self.timeout)
        return self.unique.ttl(self.timeout)

    def is_runnable(self) -> bool:
        return self.enabled and not self.paused and self.state == JobState.ACTIVE

    def is_due(self, now: datetime) -> bool:
        return self.is_runnable() and self.next_run_at is not None and self.next_run_at <= ensure_aware(now)

    def calculate_next_run(self, from_time: Optional[datetime] = None) -> Optional[datetime]:
        """Next firing strictly after ``from_time``; None when the job never fires again."""
        base = ensure_aware(from_time) or utcnow()
        if self.schedule_type == ScheduleType.INTERVAL:
            return base + timedelta(seconds=float(self.schedule["every"]))
        if self.schedule_type == ScheduleType.CRON:
            return next_cron_run(self.schedule["expressions"], base, self.timezone)
        if self.schedule_type == ScheduleType.AT:
            at = self.schedule.get("at")
            return at if at is not None and at > base else None
        return None

    def initial_run(self, now: datetime) -> Optional[datetime]:
        """First ``next_run_at`` for a freshly registered job."""
        if self.schedule_type == ScheduleType.AT:
            return self.schedule.get("at")
        if self.schedule_type == ScheduleType.REBOOT:
            return None
        return self.calculate_next_run(now)

    def transition(self, target: Union[JobState, str]) -> "Job":
        target = JobState(getattr(target, "value", target))
        if target not in JOB_TRANSITIONS[self.state]:
            raise InvalidTransitionError("job", self.state.value, target.value)
        self.state = target
        self._sync_flags()
        return self

    def import_path(self) -> str:
        return f"{self.module}:{self.function}"

    def to_dict(self) -> Dict[str, Any]:
        schedule = dict(self.schedule)
        if "at" in schedule:
            schedule["at"] = _iso(schedule["at"])
        return {
            "name": self.name,
            "module": self.module,
            "function": self.function,
            "args": self.args if isinstance(self.args, dict) else list(self.args),
            "schedule_type": self.schedule_type.value,
            "schedule": schedule,
            "timezone": self.timezone,
            "enabled": self.enabled,
            "paused": self.paused,
            "state": self.state.value,
            "queue": self.queue,
            "worker": self.worker,
            "priority": self.priority,
            "max_retries": self.max_retries,
            "retry_delay": self.retry_delay,
            "timeout": self.timeout,
            "unique": self.unique.to_dict() if self.unique else None,
            "circuit_breaker": self.circuit_breaker,
            "tags": list(self.tags),
            "meta": dict(self.meta),
            "last_run_at": _iso(self.last_run_at),
            "next_run_at": _iso(self.next_run_at),
            "last_result": self.last_result,
            "last_error": self.last_error,
            "run_count": self.run_count,
            "error_count": self.error_count,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        d = dict(data)
        for k in ("last_run_at", "next_run_at", "created_at", "updated_at"):
            d[k] = parse_dt(d.get(k))
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in d.items() if k in known})


@dataclass
class Execution:
    """The record of one run attempt of a job."""

    job_name: str
    queue: str = "default"
    node: Optional[str] = None
    attempt: int = 1
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: ExecutionState = ExecutionState.PENDING
    result: Optional[ExecutionResult] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    heartbeat_at: Optional[datetime] = None
    error: Optional[str] = None
    stacktrace: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.state = ExecutionState(getattr(self.state, "value", self.state))
        if self.result is not None:
            self.result = ExecutionResult(getattr(self.result, "value", self.result))
        self.started_at = ensure_aware(self.started_at)
        self.completed_at = ensure_aware(self.completed_at)
        self.heartbeat_at = ensure_aware(self.heartbeat_at)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_EXECUTION_STATES

    def transition(self, target: Union[ExecutionState, str]) -> "Execution":
        target = ExecutionState(getattr(target, "value", target))
        if target not in EXECUTION_TRANSITIONS[self.state]:
            raise InvalidTransitionError("execution", self.state.value, target.value)
        self.state = target
        return self

    def _finish(self, state: ExecutionState, result: ExecutionResult, now: Optional[datetime]) -> "Execution":
        self.transition(state)
        self.result = result
        self.completed_at = ensure_aware(now) or utcnow()
        if self.started_at is not None:
            self.duration_ms = max(0, int((self.completed_at - self.started_at).total_seconds() * 1000))
        return self

    def start(self, now: Optional[datetime] = None) -> "Execution":
        self.transition(ExecutionState.RUNNING)
        self.started_at = ensure_aware(now) or utcnow()
        self.heartbeat_at = self.started_at
        return self

    def complete(self, now: Optional[datetime] = None) -> "Execution":
        return self._finish(ExecutionState.COMPLETED, ExecutionResult.OK, now)

    def fail(self, error: Any, stacktrace: Optional[str] = None, now: Optional[datetime] = None) -> "Execution":
        self._finish(ExecutionState.FAILED, ExecutionResult.ERROR, now)
        self.error = truncate(str(error), MAX_ERROR_CHARS)
        self.stacktrace = truncate(stacktrace, MAX_STACK_CHARS)
        return self

    def timeout(self, seconds: Optional[float] = None, now: Optional[datetime] = None) -> "Execution":
        self._finish(ExecutionState.TIMEOUT, ExecutionResult.TIMEOUT, now)
        self.error = f"Execution timed out after {seconds}s" if seconds is not None else "Execution timed out"
        return self

    def cancel(self, reason: str = "cancelled", now: Optional[datetime] = None) -> "Execution":
        self._finish(ExecutionState.CANCELLED, ExecutionResult.CANCELLED, now)
        self.error = truncate(reason, MAX_ERROR_CHARS)
        return self

    def discard(self, reason: str, now: Optional[datetime] = None) -> "Execution":
        self._finish(ExecutionState.FAILED, ExecutionResult.DISCARD, now)
        self.error = truncate(reason, MAX_ERROR_CHARS)
        return self

    def mark_rescued(self, now: Optional[datetime] = None) -> "Execution":
        self._finish(ExecutionState.RESCUED, ExecutionResult.RESCUED, now)
        self.error = "Rescued by lifeline (stuck)"
        return self

    def heartbeat(self, now: Optional[datetime] = None) -> "Execution":
        self.heartbeat_at = ensure_aware(now) or utcnow()
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_name": self.job_name,
            "queue": self.queue,
            "node": self.node,
            "attempt": self.attempt,
            "state": self.state.value,
            "result": self.result.value if self.result else None,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration_ms": self.duration_ms,
            "heartbeat_at": _iso(self.heartbeat_at),
            "error": self.error,
            "stacktrace": self.stacktrace,
            "meta": dict(self.meta),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Execution":
        d = dict(data)
        for k in ("started_at", "completed_at", "heartbeat_at"):
            d[k] = parse_dt(d.get(k))
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in d.items() if k in known})
