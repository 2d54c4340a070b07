"""WorkflowEngine runs against the in-memory store. Steps are module-level so they resolve by reference."""

import asyncio

import pytest

from taskmill.core.Scheduler.store import MemoryStore
from taskmill.core.Workflows import Await, Expand, Skip, StepState, Workflow, WorkflowEngine, WorkflowState


ROLLED = []
HANDLED = []
CALLS = {}
ACTIVE = {"now": 0, "peak": 0}


@pytest.fixture(autouse=True)
def _reset_step_state():
    ROLLED.clear()
    HANDLED.clear()
    CALLS.clear()
    ACTIVE.update(now=0, peak=0)


# Steps


def fetch(ctx):
    return {"rows": ctx.get("rows", 500)}


def to_csv(ctx):
    return {"csv": f"{ctx['rows']} rows"}


def to_pdf(ctx):
    return {"pdf": True}


def notify(ctx):
    return {"notified": sorted(k for k in ("csv", "pdf") if k in ctx)}


def reserve(ctx):
    return {"reserved": True}


def charge(ctx):
    return {"charged": True}


def ship(ctx):
    raise RuntimeError("carrier unavailable")


def unreserve(ctx):
    ROLLED.append("reserve")


def refund(ctx):
    ROLLED.append("charge")


def record_failure(ctx):
    HANDLED.append(("failure", ctx["__error_step__"], ctx["__error__"]))


def record_cancel(ctx):
    HANDLED.append(("cancel", dict(ctx)))


def flaky(ctx):
    CALLS["flaky"] = CALLS.get("flaky", 0) + 1
    if CALLS["flaky"] < 3:
        raise ConnectionError("reset by peer")
    return {"flaky": CALLS["flaky"]}


def invalid(ctx):
    CALLS["invalid"] = CALLS.get("invalid", 0) + 1
    raise ValueError("malformed payload")


def boom(ctx):
    raise RuntimeError("boom")


def is_big(ctx):
    return ctx["rows"] > 100


def is_small(ctx):
    return ctx["rows"] <= 100


def big_path(ctx):
    return {"path": "big"}


def small_path(ctx):
    return {"path": "small"}


def nothing_new(ctx):
    return Skip("nothing new")


def publish(ctx):
    return {"published": True}


def ask_operator(ctx):
    return Await("need input")


def use_answer(ctx):
    return {"doubled": ctx["answer"] * 2}


def deploy(ctx):
    return {"deployed_by": ctx.get("approved_by")}


def plan(ctx):
    return Expand([("shard_a", shard_a), ("shard_b", shard_b)])


def shard_a(ctx):
    return {"shard_a": 1}


def shard_b(ctx):
    return {"shard_b": 2}


def merge(ctx):
    return {"merged": sorted(k for k in ctx if k.startswith("shard_"))}


def bad_expand(ctx):
    return Expand([("x", fetch)])


def child_step(ctx):
    return {"child_saw": ctx.get("order_id"), "child_done": True}


def prep(ctx):
    return {"order_id": 7}


def finish(ctx):
    return {"finished": ctx.get("child_done", False)}


async def slow(ctx):
    await asyncio.sleep(5)
    return {"slow": True}


async def brief(ctx):
    await asyncio.sleep(0.1)
    return {"brief": True}


async def tracked(ctx):
    ACTIVE["now"] += 1
    ACTIVE["peak"] = max(ACTIVE["peak"], ACTIVE["now"])
    await asyncio.sleep(0.02)
    ACTIVE["now"] -= 1


def counted(ctx):
    CALLS["counted"] = CALLS.get("counted", 0) + 1
    return {"counted": CALLS["counted"]}


async def short_wait(ctx):
    await asyncio.sleep(0.02)


def never(ctx):
    return False


class SlowSaveStore(MemoryStore):
    """Store whose execution saves suspend the caller."""

    async def save_workflow_execution(self, execution) -> None:
        await asyncio.sleep(0.05)
        await super().save_workflow_execution(execution)


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


async def _state(engine, execution_id):
    return (await engine.get_execution(execution_id)).state


# Tests


@pytest.mark.asyncio
async def test_pipeline_merges_context_and_completes(engine, store, events):
    wf = (
        Workflow("report")
        .step("fetch", fetch)
        .parallel("fetch", [("to_csv", to_csv), ("to_pdf", to_pdf)])
        .fan_in(["to_csv", "to_pdf"], "notify", notify)
    )
    await engine.register_workflow(wf)

    execution = await engine.run_workflow("report", {"rows": 12}, timeout=5)
    assert execution.state == WorkflowState.COMPLETED
    assert execution.context == {"rows": 12, "csv": "12 rows", "pdf": True, "notified": ["csv", "pdf"]}
    assert execution.completed_steps[0] == "fetch"
    assert execution.completed_steps[-1] == "notify"
    assert execution.node == "wf-node"

    state = await engine.get_state(execution.id)
    assert state["percent"] == 100.0
    assert state["progress"] == (4, 4)

    stored = await store.get_workflow_execution(execution.id)
    assert stored.state == WorkflowState.COMPLETED
    names = [e for e, _ in events]
    assert names[0] == "workflow.start"
    assert names[-1] == "workflow.stop"
    assert names.count("step.stop") == 4


@pytest.mark.asyncio
async def test_fresh_engine_loads_workflow_and_execution_from_store(engine, store):
    await engine.register_workflow(Workflow("report").step("fetch", fetch))
    execution = await engine.run_workflow("report", timeout=5)

    other = WorkflowEngine(store=store)
    assert (await other.get_workflow("report")).execution_order == ["fetch"]
    loaded = await other.get_execution(execution.id)
    assert loaded.context == {"rows": 500}
    await other.stop()


@pytest.mark.asyncio
async def test_failure_rolls_back_completed_steps_in_reverse(engine):
    wf = (
        Workflow("checkout", step_max_retries=1, on_failure=record_failure)
        .step("reserve", reserve, rollback=unreserve)
        .step("charge", charge, after="reserve", rollback=refund)
        .step("ship", ship, after="charge")
    )
    await engine.register_workflow(wf)

    execution = await engine.run_workflow("checkout", timeout=5)
    assert execution.state == WorkflowState.FAILED
    assert execution.error_step == "ship"
    assert execution.error == "RuntimeError: carrier unavailable"
    assert ROLLED == ["charge", "reserve"]
    assert execution.metadata["rolled_back"] == ["charge", "reserve"]
    assert HANDLED == [("failure", "ship", "RuntimeError: carrier unavailable")]
    assert "retried_as" not in execution.metadata


@pytest.mark.asyncio
async def test_step_retries_until_success(engine, events):
    await engine.register_workflow(Workflow("retrying").step("flaky", flaky, max_retries=3, retry_delay=0.01))

    execution = await engine.run_workflow("retrying", timeout=5)
    assert execution.state == WorkflowState.COMPLETED
    assert execution.step_attempts["flaky"] == 3
    assert [e["state"] for e in execution.get_timeline()] == ["failed", "failed", "completed"]
    assert execution.context["flaky"] == 3
    assert [p["attempt"] for e, p in events if e == "step.retry"] == [1, 2]


@pytest.mark.asyncio
async def test_no_retry_on_fails_first_time(engine):
    wf = Workflow("strict").step("invalid", invalid, max_retries=5, retry_delay=0.01, no_retry_on=[ValueError])
    await engine.register_workflow(wf)

    execution = await engine.run_workflow("strict", timeout=5)
    assert execution.state == WorkflowState.FAILED
    assert CALLS["invalid"] == 1
    assert execution.step_attempts["invalid"] == 1


@pytest.mark.asyncio
async def test_workflow_retry_starts_new_attempt(engine):
    await engine.register_workflow(Workflow("again", max_retries=1, step_max_retries=1).step("boom", boom))

    first = await engine.run_workflow("again", timeout=5)
    assert first.state == WorkflowState.FAILED
    assert first.max_attempts == 2
    retry_id = first.metadata["retried_as"]

    second = await engine.wait(retry_id, timeout=5)
    assert second.state == WorkflowState.FAILED
    assert second.attempt == 2
    assert second.trigger == {"type": "retry", "source": first.id}
    assert "retried_as" not in second.metadata


@pytest.mark.asyncio
async def test_branch_conditions_skip_the_other_path(engine):
    wf = (
        Workflow("branching")
        .step("fetch", fetch)
        .branch("fetch", {
            "big": {"condition": is_big, "job": big_path},
            "small": {"condition": is_small, "job": small_path},
        })
    )
    await engine.register_workflow(wf)

    execution = await engine.run_workflow("branching", timeout=5)
    assert execution.state == WorkflowState.COMPLETED
    assert execution.context["path"] == "big"
    assert execution.step_states["small"] == StepState.SKIPPED
    assert execution.step_results["small"] == {"skipped": "condition_not_met"}


@pytest.mark.asyncio
async def test_skip_result_skips_dependents(engine, events):
    await engine.register_workflow(Workflow("feed").step("check", nothing_new).step("publish", publish, after="check"))

    execution = await engine.run_workflow("feed", timeout=5)
    assert execution.state == WorkflowState.COMPLETED
    assert execution.skipped_steps == ["check", "publish"]
    assert execution.step_results["check"] == {"skipped": "nothing new"}
    assert execution.step_results["publish"] == {"skipped": "dependencies_not_met"}
    assert ("step.skip", "dependencies_not_met") in [(e, p.get("reason")) for e, p in events]


@pytest.mark.asyncio
async def test_on_error_skip_and_continue(engine):
    skip_wf = Workflow("lenient", step_max_retries=1).step("boom", boom, on_error="skip").step("next", publish, after="boom")
    await engine.register_workflow(skip_wf)
    execution = await engine.run_workflow("lenient", timeout=5)
    assert execution.state == WorkflowState.COMPLETED
    assert execution.step_results["boom"] == {"skipped": "error: boom"}
    assert execution.step_states["next"] == StepState.SKIPPED

    cont_wf = (
        Workflow("tolerant", step_max_retries=1)
        .step("boom", boom, on_error="continue")
        .step("side", publish)
        .step("after_boom", publish, after="boom")
    )
    await engine.register_workflow(cont_wf)
    execution = await engine.run_workflow("tolerant", timeout=5)
    assert execution.state == WorkflowState.COMPLETED
    assert execution.step_states["boom"] == StepState.FAILED
    assert execution.step_states["side"] == StepState.COMPLETED
    assert execution.step_states["after_boom"] == StepState.SKIPPED
    assert execution.error is None


@pytest.mark.asyncio
async def test_step_timeout(engine):
    await engine.register_workflow(Workflow("stuck").step("slow", slow, timeout=0.05, max_retries=1))

    execution = await engine.run_workflow("stuck", timeout=5)
    assert execution.state == WorkflowState.FAILED
    assert execution.error_step == "slow"
    assert "timed out after 0.05s" in execution.error


@pytest.mark.asyncio
async def test_workflow_timeout_cancels_running_step(engine):
    await engine.register_workflow(Workflow("bounded", timeout=0.1).step("slow", slow))

    execution = await engine.run_workflow("bounded", timeout=5)
    assert execution.state == WorkflowState.FAILED
    assert "workflow exceeded 0.1s" in execution.error
    assert execution.step_states["slow"] == StepState.CANCELLED


@pytest.mark.asyncio
async def test_approval_pauses_until_resume(engine, events):
    wf = Workflow("release").step("build", reserve).step("deploy", deploy, after="build", await_approval=True)
    await engine.register_workflow(wf)

    execution_id = await engine.start_workflow("release")
    await wait_until(lambda: engine.list_running("release")[0].state == WorkflowState.PAUSED)
    execution = await engine.get_execution(execution_id)
    assert execution.awaiting == {"deploy": "approval"}
    assert execution.step_states["deploy"] == StepState.AWAITING
    assert ("workflow.pause", "await_approval") in [(e, p.get("reason")) for e, p in events]

    assert await engine.resume(execution_id, {"approved_by": "ops"})
    execution = await engine.wait(execution_id, timeout=5)
    assert execution.state == WorkflowState.COMPLETED
    assert execution.context["deployed_by"] == "ops"
    assert execution.approved_steps == ["deploy"]


@pytest.mark.asyncio
async def test_await_result_completes_on_resume(engine):
    wf = Workflow("interactive").step("ask", ask_operator).step("use", use_answer, after="ask")
    await engine.register_workflow(wf)

    execution_id = await engine.start_workflow("interactive")
    await wait_until(lambda: engine.list_running("interactive")[0].state == WorkflowState.PAUSED)
    assert (await engine.get_execution(execution_id)).awaiting == {"ask": "result"}
    assert (await engine.get_execution(execution_id)).metadata["await_reasons"] == {"ask": "need input"}

    assert await engine.resume(execution_id, {"answer": 21})
    execution = await engine.wait(execution_id, timeout=5)
    assert execution.state == WorkflowState.COMPLETED
    assert execution.context["doubled"] == 42
    assert not await engine.resume(execution_id)


@pytest.mark.asyncio
async def test_manual_pause_holds_next_step(engine):
    await engine.register_workflow(Workflow("pausable").step("brief", brief).step("after", publish, after="brief"))

    execution_id = await engine.start_workflow("pausable")
    await wait_until(lambda: engine.list_running("pausable")[0].running_steps == ["brief"])
    assert await engine.pause(execution_id)
    assert not await engine.pause(execution_id)

    await wait_until(lambda: engine.list_running("pausable")[0].step_states["brief"] == StepState.COMPLETED)
    await asyncio.sleep(0.05)
    execution = await engine.get_execution(execution_id)
    assert execution.state == WorkflowState.PAUSED
    assert execution.step_states["after"] == StepState.PENDING

    assert await engine.resume(execution_id)
    assert (await engine.wait(execution_id, timeout=5)).state == WorkflowState.COMPLETED


@pytest.mark.asyncio
async def test_cancel_with_rollback(engine):
    wf = (
        Workflow("cancellable", on_cancel=record_cancel)
        .step("reserve", reserve, rollback=unreserve)
        .step("slow", slow, after="reserve")
    )
    await engine.register_workflow(wf)

    execution_id = await engine.start_workflow("cancellable")
    await wait_until(lambda: engine.list_running("cancellable")[0].running_steps == ["slow"])
    assert await engine.cancel(execution_id, reason="operator", rollback=True)
    assert not await engine.cancel(execution_id)

    execution = await engine.wait(execution_id, timeout=5)
    assert execution.state == WorkflowState.CANCELLED
    assert execution.cancellation_reason == "operator"
    assert "slow" in execution.cancelled_steps
    assert ROLLED == ["reserve"]
    assert HANDLED == [("cancel", {"reserved": True})]


@pytest.mark.asyncio
async def test_cancel_all_and_list_running(engine):
    await engine.register_workflow(Workflow("sleepy").step("slow", slow))
    ids = [await engine.start_workflow("sleepy") for _ in range(3)]
    await wait_until(lambda: all(e.running_steps for e in engine.list_running("sleepy")))

    assert len(engine.list_running("sleepy")) == 3
    assert await engine.cancel_all("sleepy", reason="shutdown") == 3
    for execution_id in ids:
        assert await _state(engine, execution_id) == WorkflowState.CANCELLED


@pytest.mark.asyncio
async def test_nested_workflow_returns_child_context(engine):
    await engine.register_workflow(Workflow("child").step("child_step", child_step))
    parent = (
        Workflow("parent")
        .step("prep", prep)
        .add_workflow("sub", "child", after="prep")
        .step("finish", finish, after="sub")
    )
    await engine.register_workflow(parent)

    execution = await engine.run_workflow("parent", timeout=5)
    assert execution.state == WorkflowState.COMPLETED
    assert execution.context["child_saw"] == 7
    assert execution.context["finished"] is True

    [child_id] = execution.child_executions
    child = await engine.get_execution(child_id)
    assert child.parent_execution_id == execution.id
    assert child.trigger == {"type": "parent", "source": execution.id}


@pytest.mark.asyncio
async def test_graft_expands_steps_before_dependents(engine, events):
    wf = Workflow("sharded").add_graft("plan", plan).step("merge", merge, after_graft="plan")
    await engine.register_workflow(wf)

    execution = await engine.run_workflow("sharded", timeout=5)
    assert execution.state == WorkflowState.COMPLETED
    assert execution.graft_expansions == {"plan": ["shard_a", "shard_b"]}
    assert execution.completed_steps[0] == "plan"
    assert execution.completed_steps[-1] == "merge"
    assert execution.context["merged"] == ["shard_a", "shard_b"]
    assert ("graft.expand", ["shard_a", "shard_b"]) in [(e, p.get("steps")) for e, p in events]


@pytest.mark.asyncio
async def test_expand_outside_graft_fails_step(engine):
    await engine.register_workflow(Workflow("misuse", step_max_retries=1).step("oops", bad_expand))

    execution = await engine.run_workflow("misuse", timeout=5)
    assert execution.state == WorkflowState.FAILED
    assert "not a graft" in execution.error


@pytest.mark.asyncio
async def test_undefined_step_reference(engine):
    await engine.register_workflow(Workflow("broken", step_max_retries=1).step("x", "nowhere_pkg.steps:run"))

    execution = await engine.run_workflow("broken", timeout=5)
    assert execution.state == WorkflowState.FAILED
    assert execution.error_step == "x"
    assert "nowhere_pkg" in execution.error


@pytest.mark.asyncio
async def test_step_concurrency_limit():
    engine = WorkflowEngine(step_concurrency=1)
    wf = Workflow("fan").step("a", tracked).step("b", tracked).step("c", tracked)
    await engine.register_workflow(wf)

    execution = await engine.run_workflow("fan", timeout=5)
    assert execution.state == WorkflowState.COMPLETED
    assert ACTIVE["peak"] == 1
    await engine.stop()

    with pytest.raises(ValueError):
        WorkflowEngine(step_concurrency=0)


@pytest.mark.asyncio
async def test_schedule_workflow_delays_start(bare_engine):
    await bare_engine.register_workflow(Workflow("later").step("fetch", fetch))

    execution_id = await bare_engine.schedule_workflow("later", delay=0.05)
    execution = await bare_engine.get_execution(execution_id)
    assert execution.state == WorkflowState.PENDING
    assert execution.trigger["type"] == "scheduled"
    assert execution.scheduled_at is not None

    execution = await bare_engine.wait(execution_id, timeout=5)
    assert execution.state == WorkflowState.COMPLETED


@pytest.mark.asyncio
async def test_launched_step_runs_once_while_driver_persists(clock):
    # The driver is suspended in a save when a sibling finishes and wakes it
    engine = WorkflowEngine(store=SlowSaveStore(clock=clock), step_concurrency=5)
    wf = (
        Workflow("guarded")
        .step("x", fetch)
        .step("y", short_wait)
        .step("s", publish, after="x", when=never)
        .step("b", counted, after="x")
    )
    await engine.register_workflow(wf)

    execution = await engine.run_workflow("guarded", timeout=5)
    await engine.stop()

    assert execution.state == WorkflowState.COMPLETED
    assert CALLS["counted"] == 1
    assert execution.step_attempts["b"] == 1
    assert execution.step_states["s"] == StepState.SKIPPED
