from typing import List

import pytest
from hypothesis import HealthCheck, given, settings, strategies as st

from taskmill.core.Scheduler.exceptions import InvalidTransitionError
from taskmill.core.Workflows import Step, StepState, Workflow, WorkflowExecution, WorkflowState
from taskmill.core.Workflows import state_machine as sm


pytestmark = pytest.mark.unit


def noop(ctx):
    return None


def undo(ctx):
    return None


def has_rows(ctx):
    return bool(ctx.get("rows"))


def _diamond(on_error="fail"):
    return (
        Workflow("diamond")
        .step("a", noop)
        .step("b", noop, after="a", on_error=on_error)
        .step("c", noop, after="a")
        .step("d", noop, after=["b", "c"])
        .build()
    )


def _started(wf):
    return WorkflowExecution(wf.name).start(wf.execution_order)


def _run(execution, name, result=None):
    execution.step_started(name)
    execution.step_completed(name, result)


def test_diamond_releases_steps_in_dependency_order():
    wf = _diamond()
    ex = _started(wf)
    assert sm.get_ready_steps(wf, ex) == ["a"]

    _run(ex, "a", {"rows": 3})
    assert sm.get_ready_steps(wf, ex) == ["b", "c"]
    _run(ex, "b")
    assert sm.get_ready_steps(wf, ex) == ["c"]
    assert not sm.workflow_complete(wf, ex)
    _run(ex, "c")
    assert sm.get_ready_steps(wf, ex) == ["d"]
    _run(ex, "d")

    assert sm.get_ready_steps(wf, ex) == []
    assert sm.workflow_complete(wf, ex)
    assert ex.context == {"rows": 3}
    assert sm.progress(wf, ex) == 100.0


def test_failed_branch_blocks_join_and_fails_run():
    wf = _diamond()
    ex = _started(wf)
    _run(ex, "a")
    ex.step_started("b")
    ex.step_failed("b", RuntimeError("disk full"))

    assert ex.error == "RuntimeError: disk full"
    assert ex.error_step == "b"
    assert sm.failed_steps(ex) == ["b"]
    assert sm.should_fail(wf, ex)
    assert not sm.can_proceed(wf, ex)

    _run(ex, "c")
    assert "d" not in sm.get_ready_steps(wf, ex)


def test_continue_policy_does_not_fail_run():
    wf = _diamond(on_error="continue")
    ex = _started(wf)
    _run(ex, "a")
    ex.step_started("b")
    ex.step_failed("b", "boom", record_error=False)
    assert sm.has_failures(ex)
    assert not sm.should_fail(wf, ex)
    assert ex.error is None
    assert sm.can_proceed(wf, ex)


def test_any_and_group_dependencies():
    wf = (
        Workflow("w")
        .step("a", noop)
        .step("b", noop, group="g")
        .step("c", noop, group="g")
        .step("first", noop, after_any=["b", "c"])
        .step("all", noop, after_group="g")
        .build()
    )
    ex = _started(wf)
    assert sm.get_ready_steps(wf, ex) == ["a", "b", "c"]

    _run(ex, "c")
    ready = sm.get_ready_steps(wf, ex)
    assert "first" in ready
    assert "all" not in ready

    # Group members only need to be terminal, skipped counts
    ex.step_skipped("b", "condition_not_met")
    assert sm.completed_groups(wf, ex) == {"g": True}
    assert "all" in sm.get_ready_steps(wf, ex)


def test_graft_completion_tracks_expanded_steps():
    wf = Workflow("w").add_graft("plan", noop).step("merge", noop, after_graft="plan").build()
    ex = _started(wf)
    assert not sm.graft_completed("plan", wf, ex)

    _run(ex, "plan")
    assert sm.graft_completed("plan", wf, ex)

    expanded = wf.with_expansion("plan", [Step("shard_0", noop), Step("shard_1", noop)])
    ex.record_graft_expansion("plan", ["shard_0", "shard_1"])
    assert not sm.graft_completed("plan", expanded, ex)
    assert sm.get_ready_steps(expanded, ex) == ["shard_0", "shard_1"]
    assert sm.all_step_names(wf, ex) == ["plan", "merge", "shard_0", "shard_1"]

    _run(ex, "shard_0")
    _run(ex, "shard_1")
    assert sm.graft_completed("plan", expanded, ex)
    assert sm.get_ready_steps(expanded, ex) == ["merge"]


def test_rollback_order_stops_at_step_without_rollback():
    wf = (
        Workflow("w")
        .step("a", noop, rollback=undo)
        .step("b", noop, after="a")
        .step("c", noop, after="b", rollback=undo)
        .step("d", noop, after="c", rollback=undo)
        .build()
    )
    ex = _started(wf)
    for name in ("a", "b", "c", "d"):
        _run(ex, name)
    assert sm.get_rollback_order(wf, ex) == ["d", "c"]


def test_conditions():
    assert sm.evaluate_condition(Step("s", noop), {})
    assert sm.evaluate_condition(Step("s", noop, condition=has_rows), {"rows": [1]})
    assert not sm.evaluate_condition(Step("s", noop, condition=f"{__name__}:has_rows"), {})
    assert not sm.evaluate_condition(Step("s", noop, condition=lambda ctx: ctx["missing"]), {})

    wf = Workflow("w").step("a", noop).step("b", noop, when=has_rows).build()
    ex = _started(wf)
    assert sm.get_skippable_steps(wf, ex) == ["b"]


def test_progress_and_current_step():
    wf = _diamond()
    ex = _started(wf)
    _run(ex, "a")
    ex.step_skipped("b", "condition_not_met")
    ex.step_started("c")
    assert sm.progress(wf, ex) == 50.0
    assert ex.progress() == (2, 4)
    assert sm.current_step(ex) == "c"
    assert ex.current_step == "c"


@pytest.mark.parametrize("current,target", [
    ("completed", "running"),
    ("skipped", "pending"),
    ("pending", "completed"),
])
def test_invalid_step_transitions(current, target):
    with pytest.raises(InvalidTransitionError):
        sm.validate_step_transition(current, target)


def test_valid_transitions():
    assert sm.validate_step_transition("failed", "pending") == StepState.PENDING
    assert sm.validate_step_transition("awaiting", "pending") == StepState.PENDING
    assert sm.validate_workflow_transition("paused", "running") == WorkflowState.RUNNING
    with pytest.raises(InvalidTransitionError):
        sm.validate_workflow_transition("completed", "running")


def test_approval_pauses_and_resume_releases():
    wf = Workflow("w").step("a", noop).step("approve", noop, after="a", await_approval=True).build()
    ex = _started(wf)
    _run(ex, "a")
    ex.step_awaiting("approve", kind="approval", reason="needs sign-off")

    assert ex.state == WorkflowState.PAUSED
    assert sm.is_awaiting(ex)
    assert sm.get_awaiting_steps(ex) == ["approve"]
    assert ex.metadata["await_reasons"] == {"approve": "needs sign-off"}

    released = ex.resume({"approved_by": "ops"})
    assert released == [("approve", "approval")]
    assert ex.state == WorkflowState.RUNNING
    assert ex.step_states["approve"] == StepState.PENDING
    assert ex.approved_steps == ["approve"]
    assert ex.context["approved_by"] == "ops"
    assert sm.get_ready_steps(wf, ex) == ["approve"]


def test_error_context_and_round_trip():
    wf = _diamond()
    ex = _started(wf)
    _run(ex, "a", 7)
    ex.step_started("b")
    ex.step_failed("b", ValueError("bad"), stacktrace="Traceback ...")
    ex.fail(None)

    ctx = ex.error_context()
    assert ctx["a"] == 7
    assert ctx["__error__"] == "ValueError: bad"
    assert ctx["__error_step__"] == "b"
    assert ctx["__attempts__"] == 1
    assert ctx["__stacktrace__"] == "Traceback ..."

    clone = WorkflowExecution.from_dict(ex.to_dict())
    assert clone.state == WorkflowState.FAILED
    assert clone.step_states["b"] == StepState.FAILED
    assert clone.get_timeline() == ex.get_timeline()


@st.composite
def dags(draw):
    """Random DAGs: step i may only depend on steps declared before it."""
    n = draw(st.integers(min_value=1, max_value=8))
    deps: List[List[int]] = []
    for i in range(n):
        deps.append(sorted(draw(st.sets(st.integers(min_value=0, max_value=i - 1), max_size=i))) if i else [])
    return deps


@pytest.mark.property
@settings(max_examples=60, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
@given(dags())
def test_random_dags_always_run_to_completion(deps):
    wf = Workflow("fuzz")
    for i, parents in enumerate(deps):
        wf.step(f"s{i}", noop, after=[f"s{p}" for p in parents])
    wf.build()
    ex = _started(wf)

    rounds = 0
    while not sm.workflow_complete(wf, ex):
        ready = sm.get_ready_steps(wf, ex)
        assert ready, "stalled with pending steps"
        first, rest = ready[0], ready[1:]
        for parent in wf.steps[first].depends_on:
            assert parent in ex.completed_steps
        _run(ex, first)
        # Completing one step never takes readiness away from another
        assert set(rest) <= set(sm.get_ready_steps(wf, ex))
        rounds += 1
        assert rounds <= len(deps)

    assert sorted(ex.completed_steps) == sorted(wf.steps)
    for name in ex.completed_steps:
        position = ex.completed_steps.index(name)
        assert all(ex.completed_steps.index(p) < position for p in wf.steps[name].depends_on)
