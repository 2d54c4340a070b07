import pytest

from taskmill.core.Scheduler.middleware import (
    Continue,
    Fail,
    Halt,
    Ignore,
    Middleware,
    MiddlewareChain,
    Ok,
    Retry,
)
from taskmill.core.Scheduler.models import Job


pytestmark = pytest.mark.unit


JOB = Job(name="resize_images", module="app.jobs", function="resize", schedule={"every": 60})


class Recorder(Middleware):
    def __init__(self, name, log):
        self.name = name
        self.log = log

    def before(self, job, ctx):
        self.log.append(f"before:{self.name}")
        ctx = dict(ctx)
        ctx.setdefault("seen", []).append(self.name)
        return Continue(ctx)

    async def after(self, job, result, ctx):
        self.log.append(f"after:{self.name}")
        return Ok(f"{result}+{self.name}")

    def on_complete(self, job, result, ctx):
        self.log.append(f"complete:{self.name}")


@pytest.mark.asyncio
async def test_before_runs_forward_and_after_in_reverse():
    log = []
    chain = MiddlewareChain([Recorder("a", log), Recorder("b", log)])

    cont = await chain.run_before(JOB, {})
    assert isinstance(cont, Continue)
    assert cont.ctx["seen"] == ["a", "b"]

    res = await chain.run_after(JOB, "r", cont.ctx)
    assert res == Ok("r+b+a")

    await chain.run_complete(JOB, "r", cont.ctx)
    assert log == ["before:a", "before:b", "after:b", "after:a", "complete:a", "complete:b"]


@pytest.mark.asyncio
async def test_halt_stops_the_chain():
    log = []

    class Gate(Middleware):
        def before(self, job, ctx):
            return Halt("maintenance window")

    chain = MiddlewareChain([Gate(), Recorder("late", log)])
    res = await chain.run_before(JOB, {})
    assert res == Halt("maintenance window")
    assert log == []


@pytest.mark.asyncio
async def test_fail_in_after_wins():
    class Reject(Middleware):
        def after(self, job, result, ctx):
            return Fail("result rejected")

    chain = MiddlewareChain([Reject()])
    assert await chain.run_after(JOB, 1, {}) == Fail("result rejected")


@pytest.mark.asyncio
async def test_error_hooks_first_retry_or_ignore_wins():
    class Rewrap(Middleware):
        def on_error(self, job, error, ctx):
            return Ok(f"wrapped:{error}")

    class Retrier(Middleware):
        def on_error(self, job, error, ctx):
            return Retry(f"retry {error}")

    class Ignorer(Middleware):
        def on_error(self, job, error, ctx):
            return Ignore("never reached")

    chain = MiddlewareChain([Rewrap(), Retrier(), Ignorer()])
    assert await chain.run_error(JOB, "boom", {}) == Retry("retry wrapped:boom")

    only_rewrap = MiddlewareChain([Rewrap()])
    assert await only_rewrap.run_error(JOB, "boom", {}) == Ok("wrapped:boom")


@pytest.mark.asyncio
async def test_raising_hook_is_treated_as_no_opinion():
    class Broken(Middleware):
        def before(self, job, ctx):
            raise RuntimeError("bug in middleware")

    chain = MiddlewareChain().add(Broken())
    res = await chain.run_before(JOB, {"attempt": 1})
    assert res == Continue({"attempt": 1})


def test_empty_chain_is_falsy():
    assert not MiddlewareChain()
    assert len(MiddlewareChain([Middleware()])) == 1
