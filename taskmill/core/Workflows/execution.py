# execution.py
# Description: Run-time snapshot of one workflow run. Every step and workflow state change goes through
#              the transition tables in models.py.
#
# Imports
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from taskmill.core.Scheduler.clock import parse_dt, utcnow
from taskmill.core.Scheduler.exceptions import InvalidTransitionError
from taskmill.core.Scheduler.models import MAX_ERROR_CHARS, MAX_STACK_CHARS, truncate

from .models import (
    STEP_TRANSITIONS,
    TERMINAL_WORKFLOW_STATES,
    WORKFLOW_TRANSITIONS,
    StepState,
    WorkflowState,
)

#######################################################################################################################
#
# Helpers:

def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None


def _ms(start: Optional[datetime], end: datetime) -> Optional[int]:
    if start is None:
        return None
    return int((end - start).total_seconds() * 1000)


def _error_text(error: Any) -> Optional[str]:
    if error is None:
        return None
    if isinstance(error, BaseException):
        return truncate(f"{type(error).__name__}: {error}", MAX_ERROR_CHARS)
    return truncate(str(error), MAX_ERROR_CHARS)


def _drop(items: List[str], name: str) -> List[str]:
    return [n for n in items if n != name]

#######################################################################################################################
#
# Classes:

@dataclass
class WorkflowExecution:
    """State of one workflow run: step states, accumulated context and timeline."""

    workflow_name: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    workflow_version: int = 1
    state: WorkflowState = WorkflowState.PENDING
    context: Dict[str, Any] = field(default_factory=dict)
    initial_context: Dict[str, Any] = field(default_factory=dict)
    step_states: Dict[str, StepState] = field(default_factory=dict)
    step_results: Dict[str, Any] = field(default_factory=dict)
    step_errors: Dict[str, str] = field(default_factory=dict)
    step_attempts: Dict[str, int] = field(default_factory=dict)
    completed_steps: List[str] = field(default_factory=list)
    running_steps: List[str] = field(default_factory=list)
    pending_steps: List[str] = field(default_factory=list)
    skipped_steps: List[str] = field(default_factory=list)
    cancelled_steps: List[str] = field(default_factory=list)
    awaiting: Dict[str, str] = field(default_factory=dict)
    approved_steps: List[str] = field(default_factory=list)
    current_step: Optional[str] = None
    trigger: Dict[str, Any] = field(default_factory=lambda: {"type": "manual", "source": None})
    scheduled_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    attempt: int = 1
    max_attempts: int = 1
    timeline: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None
    error_step: Optional[str] = None
    stacktrace: Optional[str] = None
    cancellation_reason: Optional[str] = None
    parent_execution_id: Optional[str] = None
    child_executions: List[str] = field(default_factory=list)
    graft_expansions: Dict[str, List[str]] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    node: Optional[str] = None

    def __post_init__(self):
        self.state = WorkflowState(getattr(self.state, "value", self.state))
        self.step_states = {k: StepState(getattr(v, "value", v)) for k, v in (self.step_states or {}).items()}
        if not self.initial_context:
            self.initial_context = dict(self.context)

    # ------------------------------------------------------------------
    # Transitions

    def _to(self, target: WorkflowState) -> None:
        if target not in WORKFLOW_TRANSITIONS[self.state]:
            raise InvalidTransitionError("workflow", self.state.value, target.value)
        self.state = target

    def _step_to(self, name: str, target: StepState) -> None:
        current = self.step_states.get(name, StepState.PENDING)
        if target not in STEP_TRANSITIONS[current]:
            raise InvalidTransitionError("step", current.value, target.value)
        self.step_states[name] = target

    def _entry(self, name: str) -> Optional[Dict[str, Any]]:
        for entry in reversed(self.timeline):
            if entry["name"] == name:
                return entry
        return None

    def _close_entry(self, name: str, state: StepState, now: datetime, error: Optional[str] = None) -> Optional[int]:
        entry = self._entry(name)
        if entry is None:
            return None
        started = parse_dt(entry.get("started_at"))
        entry.update(state=state.value, completed_at=now.isoformat(), duration_ms=_ms(started, now))
        if error is not None:
            entry["error"] = error
        return entry["duration_ms"]

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_WORKFLOW_STATES

    # ------------------------------------------------------------------
    # Workflow lifecycle

    def start(self, step_names: List[str], now: Optional[datetime] = None) -> "WorkflowExecution":
        self._to(WorkflowState.RUNNING)
        self.started_at = now or utcnow()
        for name in step_names:
            self.step_states.setdefault(name, StepState.PENDING)
            self.step_attempts.setdefault(name, 0)
        self.pending_steps = [n for n in step_names if self.step_states[n] == StepState.PENDING]
        return self

    def _finish(self, now: Optional[datetime]) -> datetime:
        now = now or utcnow()
        self.completed_at = now
        self.duration_ms = _ms(self.started_at, now) if self.started_at else 0
        self.current_step = None
        return now

    def complete(self, now: Optional[datetime] = None) -> "WorkflowExecution":
        self._to(WorkflowState.COMPLETED)
        self._finish(now)
        return self

    def fail(self, error: Any, error_step: Optional[str] = None, now: Optional[datetime] = None) -> "WorkflowExecution":
        """Fail the run; steps still running are recorded as cancelled."""
        self._to(WorkflowState.FAILED)
        self._finish(now)
        self.error = _error_text(error) or self.error
        self.error_step = error_step or self.error_step
        for name in list(self.running_steps):
            self.step_states[name] = StepState.CANCELLED
            self.cancelled_steps.append(name)
        self.running_steps = []
        return self

    def cancel(self, reason: str = "user_requested", now: Optional[datetime] = None) -> "WorkflowExecution":
        """Cancel the run; running, pending and awaiting steps become cancelled."""
        self._to(WorkflowState.CANCELLED)
        self._finish(now)
        self.cancellation_reason = reason
        to_cancel = list(self.running_steps) + list(self.pending_steps) + list(self.awaiting)
        for name in to_cancel:
            if name not in self.cancelled_steps:
                self.step_states[name] = StepState.CANCELLED
                self.cancelled_steps.append(name)
        self.running_steps = []
        self.pending_steps = []
        self.awaiting = {}
        return self

    def pause(self, now: Optional[datetime] = None) -> "WorkflowExecution":
        self._to(WorkflowState.PAUSED)
        self.paused_at = now or utcnow()
        return self

    def resume(self, extra_context: Optional[Dict[str, Any]] = None) -> List[Tuple[str, str]]:
        """Resume a paused run and merge ``extra_context``.

        Returns the ``(step, kind)`` pairs that were awaiting. Steps awaiting
        approval go back to pending and are approved; steps that returned
        ``Await`` are left for the engine to complete.
        """
        self._to(WorkflowState.RUNNING)
        self.context.update(extra_context or {})
        self.paused_at = None
        released = list(self.awaiting.items())
        for name, kind in released:
            if kind == "approval":
                self._step_to(name, StepState.PENDING)
                self.pending_steps.append(name)
                self.approved_steps.append(name)
                del self.awaiting[name]
        return released

    # ------------------------------------------------------------------
    # Step lifecycle

    def step_started(self, name: str, now: Optional[datetime] = None) -> int:
        """Record an attempt of ``name``; returns the attempt number."""
        now = now or utcnow()
        if self.step_states.get(name, StepState.PENDING) != StepState.RUNNING:
            self._step_to(name, StepState.RUNNING)
        attempt = self.step_attempts.get(name, 0) + 1
        self.step_attempts[name] = attempt
        self.current_step = name
        self.pending_steps = _drop(self.pending_steps, name)
        if name not in self.running_steps:
            self.running_steps.insert(0, name)
        self.timeline.append({
            "name": name,
            "state": StepState.RUNNING.value,
            "started_at": now.isoformat(),
            "completed_at": None,
            "duration_ms": None,
            "attempt": attempt,
            "error": None,
        })
        return attempt

    def step_completed(self, name: str, result: Any = None, context_key: Optional[str] = None,
                       now: Optional[datetime] = None) -> Optional[int]:
        """Mark ``name`` completed. Dict results merge into the context, other values land under ``context_key``."""
        now = now or utcnow()
        self._step_to(name, StepState.COMPLETED)
        self.step_results[name] = result
        if isinstance(result, dict):
            self.context.update(result)
        elif result is not None:
            self.context[context_key or name] = result
        self.completed_steps.append(name)
        self.running_steps = _drop(self.running_steps, name)
        if self.current_step == name:
            self.current_step = None
        return self._close_entry(name, StepState.COMPLETED, now)

    def step_retrying(self, name: str, error: Any, now: Optional[datetime] = None) -> None:
        """Close the current attempt with ``error``; the step stays running."""
        text = _error_text(error)
        self.step_errors[name] = text
        self._close_entry(name, StepState.FAILED, now or utcnow(), error=text)

    def step_failed(self, name: str, error: Any, stacktrace: Optional[str] = None,
                    now: Optional[datetime] = None, record_error: bool = True) -> Optional[int]:
        """Mark ``name`` failed. With ``record_error`` the first such failure becomes the run error."""
        now = now or utcnow()
        text = _error_text(error)
        self._step_to(name, StepState.FAILED)
        self.step_errors[name] = text
        self.running_steps = _drop(self.running_steps, name)
        if self.current_step == name:
            self.current_step = None
        if record_error and self.error is None:
            self.error = text
            self.error_step = name
            self.stacktrace = truncate(stacktrace, MAX_STACK_CHARS)
        return self._close_entry(name, StepState.FAILED, now, error=text)

    def step_reset(self, name: str) -> None:
        """Return a failed step to pending so it can run again."""
        self._step_to(name, StepState.PENDING)
        self.step_errors.pop(name, None)
        self.pending_steps.append(name)

    def step_skipped(self, name: str, reason: Optional[str] = None, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        was_running = self.step_states.get(name) == StepState.RUNNING
        self._step_to(name, StepState.SKIPPED)
        self.step_results[name] = {"skipped": reason}
        self.skipped_steps.append(name)
        self.pending_steps = _drop(self.pending_steps, name)
        self.running_steps = _drop(self.running_steps, name)
        if was_running:
            self._close_entry(name, StepState.SKIPPED, now, error=reason)
        else:
            self.timeline.append({
                "name": name,
                "state": StepState.SKIPPED.value,
                "started_at": now.isoformat(),
                "completed_at": now.isoformat(),
                "duration_ms": 0,
                "attempt": 0,
                "error": reason,
            })

    def step_awaiting(self, name: str, kind: str = "result", reason: Optional[str] = None,
                      now: Optional[datetime] = None) -> None:
        """Park ``name`` until resume and pause the run.

        ``kind`` is ``approval`` (the step has not run yet) or ``result`` (the
        step returned ``Await``).
        """
        now = now or utcnow()
        if self.step_states.get(name, StepState.PENDING) == StepState.PENDING:
            self._step_to(name, StepState.RUNNING)
            self.pending_steps = _drop(self.pending_steps, name)
        self._step_to(name, StepState.AWAITING)
        self.awaiting[name] = kind
        self.running_steps = _drop(self.running_steps, name)
        entry = self._entry(name)
        if entry is not None and entry["state"] == StepState.RUNNING.value:
            entry["state"] = StepState.AWAITING.value
        if reason is not None:
            self.metadata.setdefault("await_reasons", {})[name] = reason
        if self.state == WorkflowState.RUNNING:
            self.pause(now)

    def step_resumed(self, name: str) -> None:
        """Take ``name`` out of awaiting so the engine can complete it."""
        self._step_to(name, StepState.RUNNING)
        self.awaiting.pop(name, None)
        if name not in self.running_steps:
            self.running_steps.insert(0, name)

    def step_cancelled(self, name: str) -> None:
        self._step_to(name, StepState.CANCELLED)
        self.cancelled_steps.append(name)
        self.running_steps = _drop(self.running_steps, name)
        self.pending_steps = _drop(self.pending_steps, name)
        self.awaiting.pop(name, None)

    def record_graft_expansion(self, graft: str, step_names: List[str]) -> None:
        self.graft_expansions[graft] = list(step_names)
        for name in step_names:
            self.step_states[name] = StepState.PENDING
            self.step_attempts[name] = 0
            self.pending_steps.append(name)

    def add_child_execution(self, child_id: str) -> None:
        self.child_executions.insert(0, child_id)

    # ------------------------------------------------------------------
    # Introspection

    def progress(self) -> Tuple[int, int]:
        return len(self.completed_steps) + len(self.skipped_steps), len(self.step_states)

    def error_context(self) -> Dict[str, Any]:
        """Context handed to failure handlers."""
        ctx = dict(self.context)
        ctx.update({
            "__error__": self.error,
            "__error_step__": self.error_step,
            "__attempts__": self.step_attempts.get(self.error_step, 0) if self.error_step else 0,
            "__stacktrace__": self.stacktrace,
        })
        return ctx

    def get_timeline(self) -> List[Dict[str, Any]]:
        return [dict(e) for e in self.timeline]

    # ------------------------------------------------------------------
    # Serialization

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_name": self.workflow_name,
            "workflow_version": self.workflow_version,
            "state": self.state.value,
            "context": self.context,
            "initial_context": self.initial_context,
            "step_states": {k: v.value for k, v in self.step_states.items()},
            "step_results": self.step_results,
            "step_errors": dict(self.step_errors),
            "step_attempts": dict(self.step_attempts),
            "completed_steps": list(self.completed_steps),
            "running_steps": list(self.running_steps),
            "pending_steps": list(self.pending_steps),
            "skipped_steps": list(self.skipped_steps),
            "cancelled_steps": list(self.cancelled_steps),
            "awaiting": dict(self.awaiting),
            "approved_steps": list(self.approved_steps),
            "current_step": self.current_step,
            "trigger": dict(self.trigger),
            "scheduled_at": _iso(self.scheduled_at),
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "paused_at": _iso(self.paused_at),
            "duration_ms": self.duration_ms,
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
            "timeline": self.get_timeline(),
            "error": self.error,
            "error_step": self.error_step,
            "stacktrace": self.stacktrace,
            "cancellation_reason": self.cancellation_reason,
            "parent_execution_id": self.parent_execution_id,
            "child_executions": list(self.child_executions),
            "graft_expansions": {k: list(v) for k, v in self.graft_expansions.items()},
            "metadata": dict(self.metadata),
            "node": self.node,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowExecution":
        d = dict(data)
        for k in ("scheduled_at", "created_at", "started_at", "completed_at", "paused_at"):
            d[k] = parse_dt(d.get(k))
        if d.get("created_at") is None:
            d.pop("created_at", None)
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in d.items() if k in known})

#
# End of execution.py
#######################################################################################################################
