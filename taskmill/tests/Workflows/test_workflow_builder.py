from datetime import datetime, timezone

import pytest

from taskmill.core.Scheduler.exceptions import AlreadyExistsError, JobError, NotFoundError, WorkflowValidationError
from taskmill.core.Workflows import Backoff, OnError, Step, Workflow, WorkflowRegistry
from taskmill.core.Workflows.models import resolve_ref


pytestmark = pytest.mark.unit


def fetch(ctx):
    return {"rows": 3}


def to_csv(ctx):
    return {"csv": True}


def to_pdf(ctx):
    return {"pdf": True}


def notify(ctx):
    return None


def undo_fetch(ctx):
    return None


def is_big(ctx):
    return ctx.get("rows", 0) > 100


def _report():
    return (
        Workflow("nightly_report", step_max_retries=2, tags=["reports"])
        .step("fetch", fetch, rollback=undo_fetch)
        .parallel("fetch", [("to_csv", to_csv), ("to_pdf", to_pdf)])
        .fan_in(["to_csv", "to_pdf"], "notify", notify)
    )


def test_build_orders_steps_topologically():
    wf = _report().build()
    assert wf.built
    assert wf.execution_order == ["fetch", "to_csv", "to_pdf", "notify"]
    assert wf.groups == {"parallel_fetch": ["to_csv", "to_pdf"]}
    assert wf.steps["notify"].depends_on == ["to_csv", "to_pdf"]
    # Workflow defaults flow into steps
    assert wf.steps["to_pdf"].max_retries == 2


def test_duplicate_step_rejected():
    with pytest.raises(WorkflowValidationError, match="duplicate"):
        Workflow("w").step("a", fetch).step("a", fetch)


def test_missing_dependency_rejected():
    wf = Workflow("w").step("b", fetch, after="a").step("c", fetch, after_group="nope")
    with pytest.raises(WorkflowValidationError, match="missing dependencies") as err:
        wf.build()
    assert "group:nope" in str(err.value)
    assert "a" in str(err.value)


def test_cycle_rejected():
    wf = Workflow("w").step("a", fetch, after="c").step("b", fetch, after="a").step("c", fetch, after="b")
    with pytest.raises(WorkflowValidationError, match="cycle detected"):
        wf.build()


def test_branch_needs_condition_and_job():
    wf = Workflow("w").step("fetch", fetch)
    wf.branch("fetch", {"big": {"condition": is_big, "job": to_pdf}})
    assert wf.steps["big"].condition is is_big
    with pytest.raises(WorkflowValidationError, match="condition"):
        wf.branch("fetch", {"small": {"job": to_csv}})


def test_group_and_any_dependencies_resolve_in_order():
    wf = (
        Workflow("w")
        .step("a", fetch)
        .step("b", fetch, group="g")
        .step("c", fetch, group="g")
        .step("d", notify, after_group="g")
        .step("e", notify, after_any=["b", "c"])
        .build()
    )
    order = wf.execution_order
    assert order.index("d") > order.index("b")
    assert order.index("d") > order.index("c")
    assert order.index("e") > min(order.index("b"), order.index("c"))


def test_schedule_sets_trigger_type():
    scheduled = Workflow("w").step("a", fetch).schedule(cron="0 6 * * *", every=600)
    assert scheduled.trigger_type == "scheduled"
    assert scheduled.schedule_config == {"cron": ["0 6 * * *"], "every": 600.0}

    evented = Workflow("e").step("a", fetch).schedule(on_event=["order.created", "order.updated"])
    assert evented.trigger_type == "event"
    assert evented.event_triggers == ["order.created", "order.updated"]

    with pytest.raises(WorkflowValidationError, match="invalid cron"):
        Workflow("x").schedule(cron="61 * * * *")
    with pytest.raises(WorkflowValidationError):
        Workflow("x").schedule(every=0)


def test_round_trip_through_dict():
    start = datetime(2026, 1, 1, tzinfo=timezone.utc)
    wf = _report().schedule(every=3600, start_at=start).build()
    data = wf.to_dict()
    assert data["steps"][0]["job"] == f"{__name__}:fetch"
    assert data["steps"][0]["rollback"] == f"{__name__}:undo_fetch"
    assert data["schedule"]["start_at"] == start.isoformat()

    clone = Workflow.from_dict(data)
    assert clone.execution_order == wf.execution_order
    assert clone.schedule_config["start_at"] == start
    assert resolve_ref(clone.steps["fetch"].job) is fetch
    assert clone.tags == ["reports"]


def test_lambdas_do_not_serialize():
    wf = Workflow("w").step("a", lambda ctx: None, when=lambda ctx: True).build()
    step = wf.to_dict()["steps"][0]
    assert step["job"] is None
    assert step["condition"] is None


def test_nested_and_graft_steps():
    wf = (
        Workflow("parent")
        .add_graft("plan", fetch)
        .step("merge", notify, after_graft="plan")
        .add_workflow("child", "child_flow", after="merge")
        .build()
    )
    assert wf.steps["plan"].graft
    assert wf.steps["child"].is_nested
    assert wf.steps["child"].nested_workflow == "child_flow"
    assert wf.nested_workflows == {"child": "child_flow"}
    assert wf.to_dict()["steps"][2]["job"] == ["workflow", "child_flow"]

    expanded = wf.with_expansion("plan", [Step("shard_0", to_csv), Step("shard_1", to_pdf)])
    assert expanded.steps["shard_0"].depends_on == ["plan"]
    assert "shard_0" not in wf.steps
    with pytest.raises(WorkflowValidationError):
        wf.with_expansion("plan", [Step("merge", notify)])


@pytest.mark.parametrize("backoff,attempt,expected", [
    (Backoff.FIXED, 3, 2.0),
    (Backoff.LINEAR, 3, 6.0),
    (Backoff.EXPONENTIAL, 3, 8.0),
    (Backoff.EXPONENTIAL, 10, 30.0),
])
def test_step_retry_delays(backoff, attempt, expected):
    step = Step("s", fetch, retry_delay=2.0, retry_backoff=backoff, retry_max_delay=30.0)
    assert step.retry_delay_for(attempt) == expected


def test_step_retry_filters():
    step = Step("s", fetch, max_retries=3, retry_on=[ConnectionError, "busy"], no_retry_on=["invalid"])
    assert step.can_retry(2) and not step.can_retry(3)
    assert step.should_retry_error(ConnectionResetError())
    assert step.should_retry_error(JobError("busy"))
    assert not step.should_retry_error(ValueError("nope"))
    assert not step.should_retry_error(JobError("invalid"))
    assert Step("t", fetch, on_error="skip").on_error == OnError.SKIP


def test_resolve_ref():
    assert resolve_ref(f"{__name__}:fetch") is fetch
    assert resolve_ref(fetch) is fetch
    with pytest.raises(JobError):
        resolve_ref("not-a-ref")
    with pytest.raises(JobError):
        resolve_ref(f"{__name__}:missing")


@pytest.mark.asyncio
async def test_registry_contract():
    registry = WorkflowRegistry()
    await registry.register_workflow(_report())
    assert "nightly_report" in registry
    with pytest.raises(AlreadyExistsError):
        await registry.register_workflow(_report())
    with pytest.raises(NotFoundError):
        await registry.get_workflow("missing")

    got = await registry.get_workflow("nightly_report")
    assert got.built
    assert [w.name for w in await registry.list_workflows(tags=["reports"])] == ["nightly_report"]
    assert await registry.list_workflows(trigger_type="scheduled") == []

    await registry.upsert(Workflow("other").step("a", fetch))
    assert len(registry) == 2
    await registry.delete_workflow("other")
    with pytest.raises(NotFoundError):
        await registry.delete_workflow("other")
