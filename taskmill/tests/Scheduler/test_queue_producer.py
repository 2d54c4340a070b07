import asyncio

import pytest
from loguru import logger

from taskmill.core.Scheduler.dead_letter import DeadLetterQueue
from taskmill.core.Scheduler.error_classifier import ErrorClassifier
from taskmill.core.Scheduler.executor import Executor
from taskmill.core.Scheduler.middleware import Middleware, Retry
from taskmill.core.Scheduler.models import Job
from taskmill.core.Scheduler.queue import QueueProducer
from taskmill.core.Scheduler.rate_limiter import RateLimiter, RateLimitRule


ACTIVE = {"now": 0, "peak": 0}
ORDER = []
ATTEMPTS = {"flaky": 0}


async def tracked():
    ACTIVE["now"] += 1
    ACTIVE["peak"] = max(ACTIVE["peak"], ACTIVE["now"])
    await asyncio.sleep(0.05)
    ACTIVE["now"] -= 1


async def record(label):
    ORDER.append(label)
    await asyncio.sleep(0.01)


async def flaky():
    ATTEMPTS["flaky"] += 1
    if ATTEMPTS["flaky"] < 3:
        raise RuntimeError("upstream hiccup")
    return "ok"


async def always_fails():
    raise RuntimeError("still broken")


async def slow():
    await asyncio.sleep(5)


@pytest.fixture(autouse=True)
def _reset_state():
    ACTIVE.update(now=0, peak=0)
    ORDER.clear()
    ATTEMPTS["flaky"] = 0


class RetryFast(Middleware):
    def on_error(self, job, error, ctx):
        return Retry(str(error))


def _job(name, function, **kw):
    base = dict(name=name, module=__name__, function=function, schedule={"every": 60}, queue="work")
    base.update(kw)
    return Job(**base)


async def settle(producer, timeout=5.0):
    """Wait until nothing is running, pending or waiting on a delay."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while producer.running_count or producer.pending_count or producer.stats()["delayed"]:
        if loop.time() > deadline:
            raise AssertionError(f"queue did not settle: {producer.stats()}")
        await asyncio.sleep(0.01)


@pytest.fixture()
def executor(memory_store):
    return Executor(store=memory_store, node="n1", classifier=ErrorClassifier(jitter=False),
                    middleware=[RetryFast()])


@pytest.mark.asyncio
async def test_concurrency_limit_is_respected(executor):
    producer = QueueProducer("work", executor, concurrency=2)
    for i in range(5):
        assert await producer.push(_job(f"tracked_{i}", "tracked"))
    assert producer.running_count == 2
    assert producer.pending_count == 3

    await settle(producer)
    assert ACTIVE["peak"] == 2


@pytest.mark.asyncio
async def test_pending_jobs_run_by_priority(executor):
    producer = QueueProducer("work", executor, concurrency=1)
    await producer.push(_job("blocker", "record", args={"label": "blocker"}, priority=5))
    await producer.push(_job("low", "record", args={"label": "low"}, priority=9))
    await producer.push(_job("high", "record", args={"label": "high"}, priority=0))

    await settle(producer)
    assert ORDER == ["blocker", "high", "low"]


@pytest.mark.asyncio
async def test_paused_queue_refuses_pushes(executor, events):
    producer = QueueProducer("work", executor, concurrency=1)
    producer.pause()
    assert not await producer.push(_job("tracked_0", "tracked"))
    assert producer.stats()["paused"]
    assert any(e == "job.skip" and p.get("reason") == "paused" for e, p in events)

    await producer.resume()
    assert await producer.push(_job("tracked_0", "tracked"))
    await settle(producer)


@pytest.mark.asyncio
async def test_rate_limited_jobs_are_delayed_not_dropped(executor):
    limiter = RateLimiter(queue_limits={"work": RateLimitRule(1, 0.2)})
    producer = QueueProducer("work", executor, concurrency=5, rate_limiter=limiter)
    await producer.push(_job("first", "record", args={"label": "first"}))
    await producer.push(_job("second", "record", args={"label": "second"}))
    assert producer.stats()["delayed"] == 1

    await settle(producer)
    assert ORDER == ["first", "second"]


@pytest.mark.asyncio
async def test_retries_until_success_then_records_completion(executor, memory_store):
    job = _job("flaky_job", "flaky", retry_delay=0.01, max_retries=3)
    await memory_store.register_job(job)
    producer = QueueProducer("work", executor, store=memory_store, concurrency=1)
    await producer.push(job)

    await settle(producer)
    assert ATTEMPTS["flaky"] == 3
    stored = await memory_store.get_job("flaky_job")
    assert stored.run_count == 1
    assert stored.error_count == 0
    assert stored.last_result == "ok"


@pytest.mark.asyncio
async def test_spent_retry_budget_dead_letters_and_marks_failed(memory_store):
    dlq = DeadLetterQueue(memory_store)
    executor = Executor(store=memory_store, node="n1", middleware=[RetryFast()], dead_letter=dlq)
    job = _job("broken_job", "always_fails", retry_delay=0.01, max_retries=2)
    await memory_store.register_job(job)
    producer = QueueProducer("work", executor, store=memory_store)
    await producer.push(job)

    await settle(producer)
    stored = await memory_store.get_job("broken_job")
    assert stored.error_count == 1
    assert "still broken" in stored.last_error
    [entry] = await dlq.list()
    assert entry.attempts == 2


@pytest.mark.asyncio
async def test_cancel_and_drain(executor, memory_store):
    job = _job("slow_job", "slow", timeout=10)
    await memory_store.register_job(job)
    producer = QueueProducer("work", executor, store=memory_store)
    await producer.push(job)
    await asyncio.sleep(0.05)
    assert producer.running_jobs() == ["slow_job"]

    assert not await producer.drain(timeout=0.05)
    assert producer.cancel("slow_job", "shutdown")
    assert await producer.drain(timeout=2)
    await asyncio.sleep(0)
    assert (await memory_store.get_job("slow_job")).last_error == "Cancelled: shutdown"


@pytest.mark.asyncio
async def test_scale_admits_waiting_jobs(executor):
    producer = QueueProducer("work", executor, concurrency=1)
    for i in range(3):
        await producer.push(_job(f"tracked_{i}", "tracked"))
    assert producer.running_count == 1
    await producer.scale(3)
    assert producer.running_count == 3
    assert producer.stats()["available"] == 0
    await settle(producer)

    with pytest.raises(ValueError):
        QueueProducer("work", executor, concurrency=0)


@pytest.mark.asyncio
async def test_stop_drops_pending_work(executor):
    producer = QueueProducer("work", executor, concurrency=1)
    await producer.push(_job("slow_0", "slow", timeout=10))
    await producer.push(_job("slow_1", "slow", timeout=10))
    await producer.stop()
    assert producer.pending_count == 0
    await asyncio.sleep(0)
    assert producer.running_count == 0


class FailingAfterFirst(RateLimiter):
    """Admits the first job, then its backend goes away."""

    def __init__(self):
        super().__init__()
        self.calls = 0

    async def acquire_job(self, job):
        self.calls += 1
        if self.calls > 1:
            raise RuntimeError("limiter backend down")
        return await super().acquire_job(job)


@pytest.mark.asyncio
async def test_follow_up_dispatch_errors_are_logged(executor):
    messages = []
    sink_id = logger.add(lambda m: messages.append(str(m)), level="ERROR", format="{message}")
    try:
        producer = QueueProducer("work", executor, concurrency=1, rate_limiter=FailingAfterFirst())
        await producer.push(_job("first", "record", args={"label": "first"}))
        await producer.push(_job("second", "record", args={"label": "second"}))
        assert producer.pending_count == 1

        await producer.drain(timeout=2)
        for _ in range(100):
            if not producer._dispatchers:
                break
            await asyncio.sleep(0.01)
    finally:
        logger.remove(sink_id)

    assert producer._dispatchers == set()
    assert ORDER == ["first"]
    assert any("dispatch failed: limiter backend down" in m for m in messages)
