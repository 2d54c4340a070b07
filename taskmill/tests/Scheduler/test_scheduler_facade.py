"""End to end through the Scheduler facade on an in-memory store with a manual clock."""

from datetime import timedelta

import pytest
import pytest_asyncio

from taskmill.core.Scheduler import Scheduler, SchedulerConfig
from taskmill.core.Scheduler.exceptions import InvalidTransitionError, NotFoundError, SchedulerError
from taskmill.core.Scheduler.models import JobState
from taskmill.core.Workflows import Workflow, WorkflowState


RUNS = []


async def build_report(region="eu"):
    RUNS.append(region)
    return {"region": region}


def tag_context(context):
    return {"tagged": True}


@pytest.fixture(autouse=True)
def _reset_runs():
    RUNS.clear()


@pytest_asyncio.fixture()
async def scheduler(clock):
    config = SchedulerConfig(node="node-1", database_url="memory://")
    sched = Scheduler(config, clock=clock)
    await sched.start(run_loops=False)
    yield sched
    await sched.stop()


def _spec(**kw):
    spec = {"name": "daily_report", "ref": f"{__name__}:build_report", "every": 300, "args": {"region": "us"}}
    spec.update(kw)
    return spec


@pytest.mark.asyncio
async def test_calls_before_start_are_refused(clock):
    sched = Scheduler(SchedulerConfig(node="node-1"), clock=clock)
    with pytest.raises(SchedulerError, match="not started"):
        await sched.register_job(_spec())


@pytest.mark.asyncio
async def test_register_schedules_first_run(scheduler, clock):
    job = await scheduler.register_job(_spec())
    assert job.next_run_at == clock.now() + timedelta(seconds=300)
    assert [j.name for j in await scheduler.list_jobs()] == ["daily_report"]
    assert (await scheduler.get_job("daily_report")).module == __name__


@pytest.mark.asyncio
async def test_due_job_runs_through_its_queue(scheduler, clock):
    await scheduler.register_job(_spec())
    clock.advance(300)

    counts = await scheduler.cron.tick()
    assert counts["dispatched"] == 1
    assert await scheduler.get_producer("default").drain(timeout=2)

    assert RUNS == ["us"]
    job = await scheduler.get_job("daily_report")
    assert job.run_count == 1
    assert job.last_result == {"region": "us"}
    assert job.next_run_at == clock.now() + timedelta(seconds=300)
    [execution] = await scheduler.get_executions("daily_report")
    assert execution.node == "node-1"


@pytest.mark.asyncio
async def test_run_now_leaves_schedule_alone(scheduler):
    registered = await scheduler.register_job(_spec())
    assert await scheduler.run_now("daily_report")
    assert await scheduler.get_producer("default").drain(timeout=2)
    assert RUNS == ["us"]
    assert (await scheduler.get_job("daily_report")).next_run_at == registered.next_run_at


@pytest.mark.asyncio
async def test_pause_and_resume(scheduler, clock):
    await scheduler.register_job(_spec())
    paused = await scheduler.pause_job("daily_report")
    assert paused.state == JobState.PAUSED
    with pytest.raises(InvalidTransitionError):
        await scheduler.pause_job("daily_report")

    clock.advance(300)
    assert (await scheduler.cron.tick())["due"] == 0

    resumed = await scheduler.resume_job("daily_report")
    assert resumed.state == JobState.ACTIVE
    assert (await scheduler.cron.tick())["dispatched"] == 1
    assert await scheduler.get_producer("default").drain(timeout=2)


@pytest.mark.asyncio
async def test_cancel_and_delete(scheduler):
    await scheduler.register_job(_spec())
    assert not await scheduler.cancel_job("daily_report")
    await scheduler.delete_job("daily_report")
    with pytest.raises(NotFoundError):
        await scheduler.get_job("daily_report")


@pytest.mark.asyncio
async def test_status_snapshot(scheduler):
    await scheduler.register_job(_spec(queue="reports"))
    assert await scheduler.run_now("daily_report")
    await scheduler.get_producer("reports").drain(timeout=2)

    status = await scheduler.get_status()
    assert status["node"] == "node-1"
    assert status["started"] is True
    assert status["leader"] is True
    assert "reports" in status["queues"]
    assert status["running_executions"] == 0


@pytest.mark.asyncio
async def test_workflows_through_the_facade(scheduler):
    wf = Workflow("tagging").step("tag", tag_context).schedule(on_event="order.created")
    registered = await scheduler.register_workflow(wf)
    assert registered.trigger_type == "event"

    [execution_id] = await scheduler.trigger_event("order.created", {"order_id": 7})
    execution = await scheduler.workflows.wait(execution_id, timeout=5)
    assert execution.state == WorkflowState.COMPLETED
    assert execution.context == {"order_id": 7, "tagged": True}

    execution_id = await scheduler.start_workflow("tagging", {"order_id": 8})
    execution = await scheduler.workflows.wait(execution_id, timeout=5)
    assert execution.trigger["type"] == "manual"
