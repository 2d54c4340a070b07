"""
Workflow definitions.

A ``Workflow`` is a DAG of named ``Step`` objects assembled with a fluent
builder and validated by ``build()``:

    wf = (
        Workflow("nightly_report")
        .step("fetch", fetch)
        .parallel("fetch", [("to_csv", to_csv), ("to_pdf", to_pdf)])
        .fan_in(["to_csv", "to_pdf"], "notify", notify)
        .schedule(cron="0 6 * * *")
        .build()
    )

Step jobs are callables taking the workflow context, ``"module:function"``
references resolved at run time, or ``("workflow", name)`` for a nested
workflow. A step may return:

* a dict, merged into the context
* ``Skip(reason)`` to record the step as skipped-by-itself
* ``Await(reason)`` to pause the workflow until ``resume``
* ``Expand([...])`` (graft steps only) to inject new steps
"""

from __future__ import annotations

import copy
import importlib
import random
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple, Union

from taskmill.core.Scheduler.clock import parse_dt
from taskmill.core.Scheduler.cron import is_valid_cron
from taskmill.core.Scheduler.exceptions import UNDEFINED_FUNCTION, JobError, WorkflowValidationError


class StepState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"
    AWAITING = "awaiting"


class WorkflowState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OnError(str, Enum):
    FAIL = "fail"
    SKIP = "skip"
    CONTINUE = "continue"


class Backoff(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"


STEP_TRANSITIONS: Dict[StepState, FrozenSet[StepState]] = {
    StepState.PENDING: frozenset({StepState.READY, StepState.RUNNING, StepState.SKIPPED, StepState.CANCELLED}),
    StepState.READY: frozenset({StepState.RUNNING, StepState.SKIPPED, StepState.CANCELLED}),
    StepState.RUNNING: frozenset({
        StepState.COMPLETED, StepState.FAILED, StepState.SKIPPED, StepState.CANCELLED, StepState.AWAITING,
    }),
    StepState.AWAITING: frozenset({StepState.RUNNING, StepState.CANCELLED, StepState.PENDING}),
    StepState.COMPLETED: frozenset(),
    StepState.FAILED: frozenset({StepState.PENDING}),
    StepState.SKIPPED: frozenset(),
    StepState.CANCELLED: frozenset(),
}

WORKFLOW_TRANSITIONS: Dict[WorkflowState, FrozenSet[WorkflowState]] = {
    WorkflowState.PENDING: frozenset({WorkflowState.RUNNING, WorkflowState.CANCELLED}),
    WorkflowState.RUNNING: frozenset({
        WorkflowState.COMPLETED, WorkflowState.FAILED, WorkflowState.CANCELLED, WorkflowState.PAUSED,
    }),
    WorkflowState.PAUSED: frozenset({WorkflowState.RUNNING, WorkflowState.CANCELLED}),
    WorkflowState.COMPLETED: frozenset(),
    WorkflowState.FAILED: frozenset(),
    WorkflowState.CANCELLED: frozenset(),
}

TERMINAL_STEP_STATES = frozenset({StepState.COMPLETED, StepState.FAILED, StepState.SKIPPED, StepState.CANCELLED})
TERMINAL_WORKFLOW_STATES = frozenset({WorkflowState.COMPLETED, WorkflowState.FAILED, WorkflowState.CANCELLED})

NESTED = "workflow"


# --------------------------------------------------------------------------------------------------
# Step results


@dataclass
class Skip:
    reason: Optional[str] = None


@dataclass
class Await:
    reason: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Expand:
    """Steps injected by a graft. Items are ``Step`` objects or ``(name, job)`` pairs."""

    steps: List[Any] = field(default_factory=list)


# --------------------------------------------------------------------------------------------------
# Callable references


def resolve_ref(ref: Any) -> Callable:
    """Return the callable behind ``ref`` (a callable or ``"module:function"``)."""
    if callable(ref):
        return ref
    if not isinstance(ref, str) or ":" not in ref:
        raise JobError(UNDEFINED_FUNCTION, f"Not a callable reference: {ref!r}")
    module, _, attr = ref.partition(":")
    try:
        target = importlib.import_module(module)
    except ImportError as e:
        raise JobError(UNDEFINED_FUNCTION, f"Cannot import {module}: {e}") from e
    for part in attr.split("."):
        target = getattr(target, part, None)
        if target is None:
            raise JobError(UNDEFINED_FUNCTION, f"{ref} is not defined")
    if not callable(target):
        raise JobError(UNDEFINED_FUNCTION, f"{ref} is not callable")
    return target


def ref_name(ref: Any) -> Optional[str]:
    """Importable ``"module:qualname"`` for ``ref``; None for lambdas and closures."""
    if ref is None or isinstance(ref, str):
        return ref
    module = getattr(ref, "__module__", None)
    qualname = getattr(ref, "__qualname__", None)
    if not module or not qualname or "<" in qualname:
        return None
    return f"{module}:{qualname}"


def _as_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


def _dep_key(dep: Any) -> Any:
    if isinstance(dep, (list, tuple)):
        return (dep[0], dep[1])
    return dep


# --------------------------------------------------------------------------------------------------
# Step


@dataclass
class Step:
    """One node of a workflow DAG."""

    name: str
    job: Any = None
    depends_on: List[str] = field(default_factory=list)
    depends_on_any: List[str] = field(default_factory=list)
    depends_on_group: Optional[str] = None
    depends_on_graft: Optional[str] = None
    group: Optional[str] = None
    condition: Any = None
    timeout: Any = 300.0
    max_retries: int = 3
    retry_delay: float = 1.0
    retry_backoff: Union[Backoff, str] = Backoff.EXPONENTIAL
    retry_max_delay: Optional[float] = None
    retry_jitter: bool = False
    retry_on: Optional[List[Any]] = None
    no_retry_on: Optional[List[Any]] = None
    on_error: Union[OnError, str] = OnError.FAIL
    rollback: Any = None
    context_key: Optional[str] = None
    await_approval: bool = False
    cancellable: bool = True
    graft: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.depends_on = _as_list(self.depends_on)
        self.depends_on_any = _as_list(self.depends_on_any)
        self.retry_backoff = Backoff(getattr(self.retry_backoff, "value", self.retry_backoff))
        self.on_error = OnError(getattr(self.on_error, "value", self.on_error))
        if isinstance(self.job, list):
            self.job = tuple(self.job)
        if self.context_key is None:
            self.context_key = self.name
        self.metadata = dict(self.metadata or {})

    @property
    def is_nested(self) -> bool:
        return isinstance(self.job, tuple) and len(self.job) == 2 and self.job[0] == NESTED

    @property
    def nested_workflow(self) -> Optional[str]:
        return self.job[1] if self.is_nested else None

    def has_rollback(self) -> bool:
        return self.rollback is not None

    def get_timeout(self, context: Dict[str, Any]) -> Optional[float]:
        """Timeout in seconds; a callable timeout is evaluated against the context."""
        value = self.timeout(context) if callable(self.timeout) else self.timeout
        return float(value) if value is not None else None

    def can_retry(self, attempt: int) -> bool:
        return attempt < self.max_retries

    def should_retry_error(self, error: Any) -> bool:
        if self.no_retry_on and _matches_error(error, self.no_retry_on):
            return False
        if self.retry_on is None:
            return True
        return _matches_error(error, self.retry_on)

    def retry_delay_for(self, attempt: int) -> float:
        base = float(self.retry_delay)
        if self.retry_backoff == Backoff.FIXED:
            delay = base
        elif self.retry_backoff == Backoff.LINEAR:
            delay = base * attempt
        else:
            delay = base * (2 ** max(0, attempt - 1))
        if self.retry_max_delay is not None:
            delay = min(delay, float(self.retry_max_delay))
        if self.retry_jitter:
            delay += random.uniform(0, delay * 0.1)
        return delay

    def to_dict(self) -> Dict[str, Any]:
        job = list(self.job) if self.is_nested else ref_name(self.job)
        return {
            "name": self.name,
            "job": job,
            "depends_on": list(self.depends_on),
            "depends_on_any": list(self.depends_on_any),
            "depends_on_group": self.depends_on_group,
            "depends_on_graft": self.depends_on_graft,
            "group": self.group,
            "condition": ref_name(self.condition),
            "timeout": None if callable(self.timeout) else self.timeout,
            "max_retries": self.max_retries,
            "retry_delay": self.retry_delay,
            "retry_backoff": self.retry_backoff.value,
            "retry_max_delay": self.retry_max_delay,
            "retry_jitter": self.retry_jitter,
            "retry_on": _error_patterns_out(self.retry_on),
            "no_retry_on": _error_patterns_out(self.no_retry_on),
            "on_error": self.on_error.value,
            "rollback": ref_name(self.rollback),
            "context_key": self.context_key,
            "await_approval": self.await_approval,
            "cancellable": self.cancellable,
            "graft": self.graft,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Step":
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in data.items() if k in known})


def _error_patterns_out(patterns: Optional[Sequence[Any]]) -> Optional[List[str]]:
    if patterns is None:
        return None
    return [p.__name__ if isinstance(p, type) else str(p) for p in patterns]


def _matches_error(error: Any, patterns: Iterable[Any]) -> bool:
    """Match by exception class, class name, ``JobError`` code or exact value."""
    names = set()
    if isinstance(error, BaseException):
        names = {cls.__name__ for cls in type(error).__mro__}
        code = getattr(error, "code", None)
        if isinstance(code, str):
            names.add(code)
    for pattern in patterns:
        if isinstance(pattern, type) and isinstance(error, pattern):
            return True
        if isinstance(pattern, str) and (pattern in names or error == pattern):
            return True
        if error == pattern:
            return True
    return False


# --------------------------------------------------------------------------------------------------
# Workflow


class Workflow:
    """A named step DAG plus its trigger configuration and default policies."""

    def __init__(
        self,
        name: str,
        *,
        timeout: Optional[float] = None,
        max_retries: int = 0,
        step_timeout: float = 300.0,
        step_max_retries: int = 3,
        step_retry_delay: float = 1.0,
        on_success: Any = None,
        on_failure: Any = None,
        on_cancel: Any = None,
        on_step_error: Any = None,
        tags: Optional[Iterable[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        version: int = 1,
        description: Optional[str] = None,
    ):
        if not name or not isinstance(name, str):
            raise WorkflowValidationError(f"workflow name must be a non-empty string, got {name!r}")
        self.name = name
        self.timeout = timeout
        self.max_retries = max_retries
        self.step_timeout = step_timeout
        self.step_max_retries = step_max_retries
        self.step_retry_delay = step_retry_delay
        self.on_success_handler = on_success
        self.on_failure_handler = on_failure
        self.on_cancel_handler = on_cancel
        self.on_step_error = on_step_error
        self.tags: List[str] = list(tags or [])
        self.metadata: Dict[str, Any] = dict(metadata or {})
        self.version = version
        self.description = description

        self.steps: Dict[str, Step] = {}
        self.groups: Dict[str, List[str]] = {}
        self.grafts: Dict[str, Dict[str, Any]] = {}
        self.adjacency: Dict[str, List[Any]] = {}
        self.nested_workflows: Dict[str, str] = {}
        self.schedule_config: Dict[str, Any] = {}
        self.event_triggers: List[str] = []
        self.trigger_type = "manual"
        self.execution_order: List[str] = []
        self.built = False

    def __repr__(self) -> str:
        return f"Workflow({self.name!r}, steps={list(self.steps)})"

    # ------------------------------------------------------------------
    # Builder

    def step(
        self,
        name: str,
        job: Any,
        *,
        after: Union[str, Sequence[str], None] = None,
        after_any: Union[str, Sequence[str], None] = None,
        after_group: Optional[str] = None,
        after_graft: Optional[str] = None,
        group: Optional[str] = None,
        when: Any = None,
        **opts: Any,
    ) -> "Workflow":
        """Add a step. ``after`` needs all, ``after_any`` needs one of the listed steps."""
        if name in self.steps:
            raise WorkflowValidationError(f"workflow {self.name}: duplicate step {name!r}")
        opts.setdefault("timeout", self.step_timeout)
        opts.setdefault("max_retries", self.step_max_retries)
        opts.setdefault("retry_delay", self.step_retry_delay)
        step = Step(
            name=name,
            job=job,
            depends_on=_as_list(after),
            depends_on_any=_as_list(after_any),
            depends_on_group=after_group,
            depends_on_graft=after_graft,
            group=group,
            condition=when,
            **opts,
        )
        return self._add(step)

    def _add(self, step: Step) -> "Workflow":
        self.steps[step.name] = step
        deps: List[Any] = list(step.depends_on)
        if step.depends_on_group:
            deps.append(("group", step.depends_on_group))
        if step.depends_on_graft:
            deps.append(("graft", step.depends_on_graft))
        self._add_dependencies(step.name, deps)
        if step.group:
            self.groups.setdefault(step.group, [])
            if step.name not in self.groups[step.group]:
                self.groups[step.group].append(step.name)
        self.built = False
        return self

    def _add_dependencies(self, name: str, deps: Iterable[Any]) -> None:
        current = self.adjacency.setdefault(name, [])
        for dep in deps:
            if dep not in current:
                current.append(dep)

    def parallel(self, after_step: str, steps: Sequence[Tuple[str, Any]], *, group: Optional[str] = None,
                 **opts: Any) -> "Workflow":
        """Add ``steps`` running side by side after ``after_step``, in one group."""
        group = group or f"parallel_{after_step}"
        for name, job in steps:
            self.step(name, job, after=after_step, group=group, **opts)
        return self

    def fan_out(self, from_step: str, to_steps: Sequence[Tuple[str, Any]], **opts: Any) -> "Workflow":
        return self.parallel(from_step, to_steps, **opts)

    def fan_in(self, from_steps: Sequence[str], to_step: str, job: Any, **opts: Any) -> "Workflow":
        return self.step(to_step, job, after=list(from_steps), **opts)

    def branch(self, from_step: str, branches: Union[Dict[str, Dict[str, Any]], Sequence[Tuple[str, Dict[str, Any]]]]) -> "Workflow":
        """Conditional successors of ``from_step``; each branch needs ``condition`` and ``job``."""
        items = branches.items() if isinstance(branches, dict) else branches
        for name, spec in items:
            spec = dict(spec)
            try:
                condition = spec.pop("condition")
                job = spec.pop("job")
            except KeyError as e:
                raise WorkflowValidationError(f"branch {name!r} needs {e.args[0]!r}") from e
            self.step(name, job, after=from_step, when=condition, **spec)
        return self

    def add_graft(self, name: str, job: Any, *, deps: Union[str, Sequence[str], None] = None,
                  **opts: Any) -> "Workflow":
        """Add a graft step; its job returns ``Expand([...])`` with the steps to inject."""
        deps = _as_list(deps)
        self.grafts[name] = {"name": name, "deps": deps}
        return self.step(name, job, after=deps, graft=True, **opts)

    def add_workflow(self, name: str, workflow_name: str, **opts: Any) -> "Workflow":
        """Run the registered workflow ``workflow_name`` as a step."""
        self.nested_workflows[name] = workflow_name
        return self.step(name, (NESTED, workflow_name), **opts)

    def on_success(self, handler: Any) -> "Workflow":
        self.on_success_handler = handler
        return self

    def on_failure(self, handler: Any) -> "Workflow":
        self.on_failure_handler = handler
        return self

    def on_cancel(self, handler: Any) -> "Workflow":
        self.on_cancel_handler = handler
        return self

    def schedule(
        self,
        *,
        cron: Union[str, Sequence[str], None] = None,
        every: Optional[float] = None,
        at: Optional[datetime] = None,
        start_at: Optional[datetime] = None,
        end_at: Optional[datetime] = None,
        on_event: Union[str, Sequence[str], None] = None,
    ) -> "Workflow":
        """Configure triggers. ``every`` is in seconds."""
        config: Dict[str, Any] = {}
        if cron is not None:
            exprs = _as_list(cron)
            bad = [e for e in exprs if not is_valid_cron(e)]
            if bad:
                raise WorkflowValidationError(f"workflow {self.name}: invalid cron expression(s) {bad}")
            config["cron"] = exprs
        if every is not None:
            if float(every) <= 0:
                raise WorkflowValidationError(f"workflow {self.name}: every must be > 0, got {every}")
            config["every"] = float(every)
        if at is not None:
            config["at"] = parse_dt(at)
        if start_at is not None:
            config["start_at"] = parse_dt(start_at)
        if end_at is not None:
            config["end_at"] = parse_dt(end_at)
        if on_event is not None:
            for event in _as_list(on_event):
                if event not in self.event_triggers:
                    self.event_triggers.append(event)

        if self.event_triggers and not config:
            self.trigger_type = "event"
        elif any(k in config for k in ("cron", "every", "at")):
            self.trigger_type = "scheduled"
        self.schedule_config = config
        return self

    # ------------------------------------------------------------------
    # Validation

    def build(self) -> "Workflow":
        """Validate the DAG and compute ``execution_order``.

        Raises:
            WorkflowValidationError: missing dependencies or a cycle
        """
        problems = self._missing_dependencies()
        if problems:
            raise WorkflowValidationError(
                f"workflow {self.name}: missing dependencies: {', '.join(sorted(problems))}"
            )
        cycle = self._find_cycle()
        if cycle:
            raise WorkflowValidationError(f"workflow {self.name}: cycle detected: {' -> '.join(cycle)}")
        self.execution_order = self._topological_order()
        self.built = True
        return self

    def _edges(self, name: str) -> List[str]:
        """Plain step names ``name`` waits on; groups and grafts resolved to their steps."""
        step = self.steps[name]
        out: List[str] = []
        for dep in self.adjacency.get(name, []):
            dep = _dep_key(dep)
            if isinstance(dep, tuple):
                kind, target = dep
                if kind == "group":
                    out.extend(m for m in self.groups.get(target, []) if m != name)
                elif kind == "graft":
                    out.append(target)
            else:
                out.append(dep)
        out.extend(step.depends_on_any)
        seen: List[str] = []
        for dep in out:
            if dep in self.steps and dep not in seen:
                seen.append(dep)
        return seen

    def _missing_dependencies(self) -> List[str]:
        missing = set()
        for name, deps in self.adjacency.items():
            for dep in deps:
                dep = _dep_key(dep)
                if isinstance(dep, tuple):
                    kind, target = dep
                    if kind == "group" and target not in self.groups:
                        missing.add(f"group:{target}")
                    elif kind == "graft" and target not in self.grafts:
                        missing.add(f"graft:{target}")
                elif dep not in self.steps:
                    missing.add(dep)
        for step in self.steps.values():
            missing.update(d for d in step.depends_on_any if d not in self.steps)
        return sorted(missing)

    def _find_cycle(self) -> Optional[List[str]]:
        visiting: List[str] = []
        done = set()

        def visit(node: str) -> Optional[List[str]]:
            if node in visiting:
                return visiting[visiting.index(node):] + [node]
            if node in done:
                return None
            visiting.append(node)
            for dep in self._edges(node):
                found = visit(dep)
                if found:
                    return found
            visiting.pop()
            done.add(node)
            return None

        for name in self.steps:
            found = visit(name)
            if found:
                return found
        return None

    def _topological_order(self) -> List[str]:
        # Kahn's algorithm, ties broken by declaration order
        deps = {name: set(self._edges(name)) for name in self.steps}
        order: List[str] = []
        ready = [n for n in self.steps if not deps[n]]
        while ready:
            node = ready.pop(0)
            order.append(node)
            for other in self.steps:
                if node in deps[other]:
                    deps[other].discard(node)
                    if not deps[other] and other not in order and other not in ready:
                        ready.append(other)
        return order

    def with_expansion(self, graft: str, steps: Sequence[Step]) -> "Workflow":
        """Copy of this workflow with ``steps`` injected after graft ``graft``."""
        clone = copy.copy(self)
        clone.steps = dict(self.steps)
        clone.adjacency = {k: list(v) for k, v in self.adjacency.items()}
        clone.groups = {k: list(v) for k, v in self.groups.items()}
        for step in steps:
            if step.name in clone.steps:
                raise WorkflowValidationError(f"graft {graft}: step {step.name!r} already exists")
            if graft not in step.depends_on:
                step.depends_on.insert(0, graft)
            clone._add(step)
        clone.execution_order = list(self.execution_order) + [s.name for s in steps]
        clone.built = True
        return clone

    # ------------------------------------------------------------------
    # Serialization

    def to_dict(self) -> Dict[str, Any]:
        schedule = dict(self.schedule_config)
        for key in ("at", "start_at", "end_at"):
            if schedule.get(key) is not None:
                schedule[key] = schedule[key].isoformat()
        return {
            "name": self.name,
            "version": self.version,
            "description": self.description,
            "timeout": self.timeout,
            "max_retries": self.max_retries,
            "step_timeout": self.step_timeout,
            "step_max_retries": self.step_max_retries,
            "step_retry_delay": self.step_retry_delay,
            "on_success": ref_name(self.on_success_handler),
            "on_failure": ref_name(self.on_failure_handler),
            "on_cancel": ref_name(self.on_cancel_handler),
            "on_step_error": ref_name(self.on_step_error),
            "tags": list(self.tags),
            "metadata": dict(self.metadata),
            "steps": [s.to_dict() for s in self.steps.values()],
            "grafts": {k: dict(v) for k, v in self.grafts.items()},
            "nested_workflows": dict(self.nested_workflows),
            "schedule": schedule,
            "event_triggers": list(self.event_triggers),
            "trigger_type": self.trigger_type,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Workflow":
        wf = cls(
            data["name"],
            timeout=data.get("timeout"),
            max_retries=data.get("max_retries", 0),
            step_timeout=data.get("step_timeout", 300.0),
            step_max_retries=data.get("step_max_retries", 3),
            step_retry_delay=data.get("step_retry_delay", 1.0),
            on_success=data.get("on_success"),
            on_failure=data.get("on_failure"),
            on_cancel=data.get("on_cancel"),
            on_step_error=data.get("on_step_error"),
            tags=data.get("tags"),
            metadata=data.get("metadata"),
            version=data.get("version", 1),
            description=data.get("description"),
        )
        for raw in data.get("steps", []):
            wf._add(Step.from_dict(raw))
        wf.grafts = {k: dict(v) for k, v in (data.get("grafts") or {}).items()}
        wf.nested_workflows = dict(data.get("nested_workflows") or {})
        schedule = dict(data.get("schedule") or {})
        for key in ("at", "start_at", "end_at"):
            if schedule.get(key) is not None:
                schedule[key] = parse_dt(schedule[key])
        wf.schedule_config = schedule
        wf.event_triggers = list(data.get("event_triggers") or [])
        wf.trigger_type = data.get("trigger_type", "manual")
        return wf.build()
