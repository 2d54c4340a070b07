import asyncio

import pytest

from taskmill.core.Scheduler.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from taskmill.core.Scheduler.dead_letter import DeadLetterQueue
from taskmill.core.Scheduler.error_classifier import ErrorClassifier
from taskmill.core.Scheduler.exceptions import JobError
from taskmill.core.Scheduler.executor import Executor, invoke, resolve_callable
from taskmill.core.Scheduler.middleware import Fail, Halt, Ignore, Middleware, Retry
from taskmill.core.Scheduler.models import ExecutionState, Job


CALLS = []


async def add(a, b):
    CALLS.append("add")
    return a + b


def blocking_add(a, b):
    return a + b


async def slow():
    await asyncio.sleep(5)


async def explode():
    raise RuntimeError("db down")


def reject_input():
    raise JobError("terminal", "bad input")


def busy():
    raise JobError("transient")


@pytest.fixture(autouse=True)
def _reset_calls():
    CALLS.clear()


def _job(function, **kw):
    base = dict(name=f"job_{function}", module=__name__, function=function, schedule={"every": 60})
    base.update(kw)
    return Job(**base)


@pytest.fixture()
def executor(memory_store):
    return Executor(store=memory_store, node="n1", classifier=ErrorClassifier(jitter=False))


@pytest.mark.asyncio
async def test_successful_run_records_execution(executor, memory_store, events):
    outcome = await executor.execute(_job("add", args={"a": 2, "b": 3}))
    assert outcome.ok
    assert outcome.value == 5
    assert outcome.execution.state == ExecutionState.COMPLETED
    stored = await memory_store.get_execution(outcome.execution.id)
    assert stored.state == ExecutionState.COMPLETED
    assert stored.node == "n1"
    names = [e for e, _ in events]
    assert names.index("job.start") < names.index("job.stop")


@pytest.mark.asyncio
async def test_sync_function_and_positional_args(executor):
    outcome = await executor.execute(_job("blocking_add", args=[4, 5]))
    assert outcome.ok and outcome.value == 9


@pytest.mark.asyncio
async def test_invoke_dispatches_by_args_shape():
    assert await invoke(blocking_add, {"a": 1, "b": 1}) == 2
    assert await invoke(add, [1, 2]) == 3


def test_resolve_callable_errors():
    with pytest.raises(JobError) as err:
        resolve_callable("no.such.module", "fn")
    assert err.value.code == "undefined_function"
    with pytest.raises(JobError):
        resolve_callable(__name__, "missing_function")
    assert resolve_callable(__name__, "add") is add


@pytest.mark.asyncio
async def test_undefined_function_is_discarded(executor):
    outcome = await executor.execute(_job("missing_function"))
    assert outcome.reason == "undefined_function"
    assert outcome.action == "discard"
    assert not outcome.is_retry


@pytest.mark.asyncio
async def test_timeout_is_retryable(executor):
    outcome = await executor.execute(_job("slow", timeout=0.05))
    assert outcome.is_retry
    assert outcome.reason == "timeout"
    assert outcome.delay == 1.0
    assert outcome.execution.state == ExecutionState.TIMEOUT


@pytest.mark.asyncio
async def test_terminal_error_is_discarded_without_dead_letter(memory_store):
    dlq = DeadLetterQueue(memory_store)
    executor = Executor(store=memory_store, node="n1", dead_letter=dlq)
    outcome = await executor.execute(_job("reject_input"))
    assert outcome.status == "error"
    assert outcome.action == "discard"
    assert await dlq.list() == []


@pytest.mark.asyncio
async def test_exhausted_retries_go_to_dead_letter(memory_store):
    dlq = DeadLetterQueue(memory_store)
    executor = Executor(store=memory_store, node="n1", dead_letter=dlq)
    outcome = await executor.execute(_job("busy"), attempt=3)
    assert outcome.action == "dead_letter"
    [entry] = await dlq.list()
    assert entry.job_name == "job_busy"
    assert entry.error_class == "transient"
    assert entry.attempts == 3


@pytest.mark.asyncio
async def test_cancel_running_job(executor):
    job = _job("slow", timeout=10)
    task = asyncio.create_task(executor.execute(job))
    await asyncio.sleep(0.05)
    assert executor.running_count == 1
    assert executor.cancel(job.name, "operator request") == 1

    outcome = await task
    assert outcome.reason == "cancelled"
    assert outcome.error == "operator request"
    assert outcome.execution.state == ExecutionState.CANCELLED
    assert executor.running_count == 0


@pytest.mark.asyncio
async def test_halt_skips_the_job(memory_store):
    class Gate(Middleware):
        def before(self, job, ctx):
            return Halt("maintenance")

    executor = Executor(store=memory_store, node="n1", middleware=[Gate()])
    outcome = await executor.execute(_job("add", args={"a": 1, "b": 1}))
    assert outcome.reason == "middleware_halt"
    assert outcome.action == "discard"
    assert CALLS == []
    assert await memory_store.get_executions() == []


@pytest.mark.asyncio
async def test_ignore_turns_error_into_success(memory_store):
    class Swallow(Middleware):
        def on_error(self, job, error, ctx):
            return Ignore("known flake")

    executor = Executor(store=memory_store, node="n1", middleware=[Swallow()])
    outcome = await executor.execute(_job("explode"))
    assert outcome.ok
    assert outcome.ignored


@pytest.mark.asyncio
async def test_retry_middleware_uses_job_backoff(memory_store):
    class AlwaysRetry(Middleware):
        def on_error(self, job, error, ctx):
            return Retry("again")

    executor = Executor(store=memory_store, node="n1", middleware=[AlwaysRetry()])
    outcome = await executor.execute(_job("reject_input", retry_delay=2.0), attempt=2)
    assert outcome.is_retry
    # 2.0 * 2 ** (2 - 1) plus at most 10% jitter
    assert 4.0 <= outcome.delay <= 4.4


@pytest.mark.asyncio
async def test_failing_after_hook_discards_result(memory_store):
    class Validate(Middleware):
        def after(self, job, result, ctx):
            return Fail("result out of range")

    executor = Executor(store=memory_store, node="n1", middleware=[Validate()])
    outcome = await executor.execute(_job("add", args={"a": 1, "b": 1}))
    assert not outcome.ok
    assert outcome.action == "discard"


@pytest.mark.asyncio
async def test_open_circuit_skips_execution(memory_store):
    breakers = CircuitBreakerRegistry()
    breakers.register("billing_api", CircuitBreakerConfig(failure_threshold=1, reset_timeout=600))
    executor = Executor(store=memory_store, node="n1", breakers=breakers)
    job = _job("explode", circuit_breaker="billing_api")

    first = await executor.execute(job)
    assert first.is_retry

    second = await executor.execute(job)
    assert second.reason == "circuit_open"
    assert len(await memory_store.get_executions()) == 1
