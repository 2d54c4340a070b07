# executor.py
# Description: Runs one attempt of a job: circuit gate, middleware, bounded-time work, heartbeat, classification
#
# Imports
import asyncio
import functools
import importlib
import inspect
import random
import time
import traceback
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Tuple, Union

from loguru import logger

from taskmill.core.Logging import log_context
from taskmill.core.Metrics import (
    increment_job_finished,
    increment_job_skipped,
    increment_job_started,
    observe_job_duration,
)

from .circuit_breaker import CircuitBreakerRegistry
from .clock import Clock
from .config import get_config
from .dead_letter import DeadLetterQueue
from .error_classifier import ErrorClassifier, NextAction
from .exceptions import (
    CIRCUIT_OPEN,
    EXCEPTION,
    MIDDLEWARE_HALT,
    TIMEOUT,
    UNDEFINED_FUNCTION,
    JobError,
)
from .middleware import Fail, Halt, Ignore, Middleware, MiddlewareChain, Retry
from .models import MAX_STACK_CHARS, Execution, Job, truncate
from .telemetry import emit_event, job_span
from .unique import build_key

#######################################################################################################################
#
# Helpers:

CANCELLED = "cancelled"


def resolve_callable(module: str, function: str) -> Callable:
    """Import ``module`` and return its attribute ``function``.

    Raises:
        JobError: code ``undefined_function`` when either part is missing
    """
    try:
        mod = importlib.import_module(module)
    except ImportError as e:
        raise JobError(UNDEFINED_FUNCTION, f"Cannot import {module}: {e}") from e
    fn = getattr(mod, function, None)
    if fn is None or not callable(fn):
        raise JobError(UNDEFINED_FUNCTION, f"{module}:{function} is not defined")
    return fn


def _split_args(args: Any) -> Tuple[tuple, dict]:
    if not args:
        return (), {}
    if isinstance(args, dict):
        return (), dict(args)
    return tuple(args), {}


async def _run_sync(fn: Callable, a: tuple, kw: dict) -> Any:
    res = await asyncio.to_thread(functools.partial(fn, *a, **kw))
    if inspect.isawaitable(res):
        res = await res
    return res


def invoke(fn: Callable, args: Any = None):
    """Coroutine calling ``fn`` with ``args`` (dict -> kwargs, list -> positional).

    Coroutine functions are awaited on the loop; plain functions run on a
    worker thread. A timed-out thread cannot be killed and is abandoned.
    """
    a, kw = _split_args(args)
    if inspect.iscoroutinefunction(fn):
        return fn(*a, **kw)
    return _run_sync(fn, a, kw)


@dataclass
class ExecutionOutcome:
    """Result of ``Executor.execute``.

    ``status`` is ``ok``, ``error`` or ``retry``; ``reason`` is a taxonomy code
    for anything but ``ok``; ``action`` is the classifier decision
    (``retry``, ``dead_letter`` or ``discard``).
    """

    status: str
    value: Any = None
    reason: Optional[str] = None
    error: Any = None
    delay: float = 0.0
    action: Optional[str] = None
    execution: Optional[Execution] = None
    ignored: bool = False

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @property
    def is_retry(self) -> bool:
        return self.status == "retry"

    @property
    def error_message(self) -> Optional[str]:
        if self.error is None:
            return self.reason
        return str(self.error)

#######################################################################################################################
#
# Executor:

class Executor:
    """Executes a single job attempt."""

    def __init__(
        self,
        store=None,
        middleware: Optional[Union[MiddlewareChain, Iterable[Middleware]]] = None,
        classifier: Optional[ErrorClassifier] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        dead_letter: Optional[DeadLetterQueue] = None,
        node: Optional[str] = None,
        heartbeat_interval: float = 30.0,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.chain = middleware if isinstance(middleware, MiddlewareChain) else MiddlewareChain(middleware)
        self.classifier = classifier or ErrorClassifier()
        self.breakers = breakers or CircuitBreakerRegistry()
        self.dead_letter = dead_letter
        self.node = node or get_config().node
        self.heartbeat_interval = heartbeat_interval
        self.clock = clock or (store.clock if store is not None else Clock())

        # execution id -> (job name, work task)
        self._tasks: Dict[str, Tuple[str, asyncio.Task]] = {}
        self._cancel_requests: Dict[str, str] = {}

    @property
    def running_count(self) -> int:
        return len(self._tasks)

    def cancel(self, job_name: str, reason: str = "cancelled") -> int:
        """Cancel the running work of ``job_name``; returns how many tasks were cancelled."""
        count = 0
        for exec_id, (name, task) in list(self._tasks.items()):
            if name == job_name and not task.done():
                self._cancel_requests[exec_id] = reason
                task.cancel()
                count += 1
        return count

    @staticmethod
    def retry_delay(job: Job, attempt: int) -> float:
        """Exponential backoff from the job's base delay with up to 10% jitter."""
        base = float(job.retry_delay) * (2 ** max(attempt - 1, 0))
        return base + random.random() * base * 0.1

    async def execute(self, job: Job, attempt: int = 1) -> ExecutionOutcome:
        if not self.breakers.allow(job.circuit_breaker):
            logger.info(f"Job {job.name} skipped: circuit '{job.circuit_breaker}' is open")
            emit_event("job.skip", job=job, attrs={"reason": CIRCUIT_OPEN, "circuit": job.circuit_breaker})
            try:
                increment_job_skipped(job.queue, CIRCUIT_OPEN)
            except Exception:
                pass
            return ExecutionOutcome("error", reason=CIRCUIT_OPEN, error=CIRCUIT_OPEN)

        execution = Execution(job_name=job.name, queue=job.queue, node=self.node, attempt=attempt)
        if job.is_unique:
            execution.meta["unique_key"] = build_key(job)
        ctx: Dict[str, Any] = {
            "job_name": job.name,
            "attempt": attempt,
            "execution_id": execution.id,
            "node": self.node,
        }

        with log_context(job_name=job.name, queue=job.queue, execution_id=execution.id,
                         attempt=attempt, node=self.node) as log:
            before = await self.chain.run_before(job, ctx)
            if isinstance(before, Halt):
                emit_event("job.skip", job=job, attrs={"reason": MIDDLEWARE_HALT, "detail": str(before.reason)})
                try:
                    increment_job_skipped(job.queue, MIDDLEWARE_HALT)
                except Exception:
                    pass
                return ExecutionOutcome("error", reason=MIDDLEWARE_HALT, error=before.reason, action="discard")
            ctx = before.ctx

            outcome = await self._run(job, attempt, execution, ctx, log)
            await self.chain.run_complete(job, outcome, ctx)

        self._record_circuit(job, outcome)
        return outcome

    async def _run(self, job: Job, attempt: int, execution: Execution, ctx: Dict[str, Any], log) -> ExecutionOutcome:
        execution.start(self.clock.now())
        await self._record(self._store_call("record_execution_start"), execution)
        emit_event("job.start", job=job, attrs={"attempt": attempt, "execution_id": execution.id, "node": self.node})
        try:
            increment_job_started(job.queue, job.name)
        except Exception:
            pass

        started = time.monotonic()
        value: Any = None
        error: Any = None
        reason: Optional[str] = None
        stacktrace: Optional[str] = None

        heartbeat = self._start_heartbeat(job.name)
        try:
            with job_span("job.execute", job=job, attrs={"attempt": attempt}):
                try:
                    fn = resolve_callable(job.module, job.function)
                except JobError as e:
                    reason, error = UNDEFINED_FUNCTION, e
                else:
                    task = asyncio.ensure_future(invoke(fn, job.args))
                    self._tasks[execution.id] = (job.name, task)
                    try:
                        value = await asyncio.wait_for(task, timeout=job.timeout)
                    except asyncio.TimeoutError:
                        reason, error = TIMEOUT, TIMEOUT
                    except asyncio.CancelledError:
                        if execution.id not in self._cancel_requests:
                            raise
                        reason, error = CANCELLED, self._cancel_requests.pop(execution.id)
                    except Exception as e:
                        reason, error = EXCEPTION, e
                        stacktrace = traceback.format_exc()
        finally:
            self._tasks.pop(execution.id, None)
            self._cancel_requests.pop(execution.id, None)
            if heartbeat is not None:
                heartbeat.cancel()
                try:
                    await heartbeat
                except asyncio.CancelledError:
                    pass

        duration = time.monotonic() - started
        if reason is None:
            outcome = await self._on_success(job, value, execution, ctx, log)
        elif reason == CANCELLED:
            outcome = self._on_cancel(job, str(error), execution, log)
        else:
            outcome = await self._on_failure(job, attempt, reason, error, stacktrace, execution, ctx, log)

        outcome.execution = execution
        await self._record(self._store_call("record_execution_complete"), execution)
        try:
            increment_job_finished(job.queue, job.name, outcome.status if outcome.reason != TIMEOUT else TIMEOUT)
            observe_job_duration(job.queue, duration)
        except Exception:
            pass
        return outcome

    async def _on_success(self, job: Job, value: Any, execution: Execution, ctx, log) -> ExecutionOutcome:
        after = await self.chain.run_after(job, value, ctx)
        now = self.clock.now()
        if isinstance(after, Fail):
            execution.discard(str(after.reason), now=now)
            log.warning(f"Job {job.name} result rejected by middleware: {after.reason}")
            emit_event("job.discard", job=job, attrs={"reason": "middleware", "error": str(after.reason)})
            return ExecutionOutcome("error", reason=EXCEPTION, error=after.reason, action="discard")
        execution.complete(now=now)
        log.debug(f"Job {job.name} completed in {execution.duration_ms}ms")
        emit_event("job.stop", job=job, attrs={"result": "ok", "execution_id": execution.id,
                                              "duration_ms": execution.duration_ms})
        return ExecutionOutcome("ok", value=after.value)

    def _on_cancel(self, job: Job, why: str, execution: Execution, log) -> ExecutionOutcome:
        execution.cancel(why, now=self.clock.now())
        log.info(f"Job {job.name} cancelled: {why}")
        emit_event("job.cancel", job=job, attrs={"reason": why, "execution_id": execution.id})
        return ExecutionOutcome("error", reason=CANCELLED, error=why, action="discard")

    async def _on_failure(
        self,
        job: Job,
        attempt: int,
        reason: str,
        error: Any,
        stacktrace: Optional[str],
        execution: Execution,
        ctx: Dict[str, Any],
        log,
    ) -> ExecutionOutcome:
        action: NextAction = self.classifier.next_action(error, attempt)
        error_class = self.classifier.get_class(error)

        handled = await self.chain.run_error(job, error, ctx)
        if isinstance(handled, Ignore):
            self._finish_failed(job, reason, error, stacktrace, execution, "discard")
            log.info(f"Job {job.name} error ignored by middleware: {handled.reason}")
            emit_event("job.stop", job=job, attrs={"result": "ignored", "reason": str(handled.reason)})
            return ExecutionOutcome("ok", error=error, reason=reason, ignored=True)
        if isinstance(handled, Retry):
            action = NextAction("retry", self.retry_delay(job, attempt))
        else:
            error = handled.value

        self._finish_failed(job, reason, error, stacktrace, execution, action.action)
        log.warning(f"Job {job.name} attempt {attempt} failed ({reason}, {error_class}): {error}; next: {action.action}")
        emit_event("job.exception", job=job, attrs={
            "reason": reason,
            "error": str(error),
            "error_class": error_class,
            "attempt": attempt,
            "action": action.action,
            "execution_id": execution.id,
        })

        if action.is_retry:
            return ExecutionOutcome("retry", reason=reason, error=error, delay=action.delay, action="retry")

        emit_event("job.discard", job=job, attrs={"reason": reason, "error": str(error), "action": action.action})
        if action.action == "dead_letter":
            await self.send_to_dead_letter(job, error, attempt, stacktrace=stacktrace, error_class=error_class)
        return ExecutionOutcome("error", reason=reason, error=error, action=action.action)

    def _finish_failed(self, job: Job, reason: str, error: Any, stacktrace: Optional[str],
                       execution: Execution, action: str) -> None:
        now = self.clock.now()
        if reason == TIMEOUT:
            execution.timeout(job.timeout, now=now)
        elif action in ("discard", "dead_letter"):
            execution.discard(str(error), now=now)
            execution.stacktrace = truncate(stacktrace, MAX_STACK_CHARS)
        else:
            execution.fail(error, stacktrace, now=now)

    async def send_to_dead_letter(self, job: Job, error: Any, attempts: int, *,
                                  stacktrace: Optional[str] = None, error_class: Optional[str] = None) -> None:
        if self.dead_letter is None:
            return
        try:
            await self.dead_letter.insert(
                job,
                error,
                error_class=error_class or self.classifier.get_class(error),
                attempts=attempts,
                stacktrace=stacktrace,
            )
        except Exception as e:
            logger.error(f"Failed to dead-letter job {job.name}: {e}")

    def _record_circuit(self, job: Job, outcome: ExecutionOutcome) -> None:
        name = job.circuit_breaker
        if not name:
            return
        if outcome.ok:
            self.breakers.record_success(name)
        elif outcome.reason not in (CIRCUIT_OPEN, MIDDLEWARE_HALT, CANCELLED) and self.classifier.trips_circuit(outcome.error):
            self.breakers.record_failure(name)

    #
    # Store plumbing

    def _store_call(self, name: str):
        return getattr(self.store, name) if self.store is not None else None

    async def _record(self, method, execution: Execution) -> None:
        if method is None:
            return
        try:
            await method(execution)
        except Exception as e:
            logger.warning(f"Could not persist execution {execution.id} of {execution.job_name}: {e}")

    def _start_heartbeat(self, job_name: str) -> Optional[asyncio.Task]:
        if self.store is None:
            return None
        return asyncio.create_task(self._heartbeat_loop(job_name), name=f"heartbeat:{job_name}")

    async def _heartbeat_loop(self, job_name: str) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.store.record_heartbeat(job_name, self.node)
            except Exception as e:
                logger.warning(f"Heartbeat for {job_name} failed: {e}")

#
# End of executor.py
#######################################################################################################################
