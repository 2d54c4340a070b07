"""
Pure functions over a ``Workflow`` definition and a ``WorkflowExecution`` snapshot.

Nothing here mutates its arguments or performs I/O; the engine calls these
after every step outcome to decide what runs next.

Dependency kinds checked for a pending step:

* ``depends_on``       every listed step completed
* ``depends_on_any``   at least one listed step completed
* ``depends_on_group`` every member of the group terminal
* ``depends_on_graft`` before expansion the graft step completed; after
  expansion every expanded step terminal
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Set, Union

from loguru import logger

from taskmill.core.Scheduler.exceptions import InvalidTransitionError

from .execution import WorkflowExecution
from .models import (
    STEP_TRANSITIONS,
    TERMINAL_STEP_STATES,
    WORKFLOW_TRANSITIONS,
    OnError,
    Step,
    StepState,
    Workflow,
    WorkflowState,
    resolve_ref,
)


def validate_workflow_transition(current: Union[WorkflowState, str], target: Union[WorkflowState, str]) -> WorkflowState:
    current, target = WorkflowState(current), WorkflowState(target)
    if target not in WORKFLOW_TRANSITIONS[current]:
        raise InvalidTransitionError("workflow", current.value, target.value)
    return target


def validate_step_transition(current: Union[StepState, str], target: Union[StepState, str]) -> StepState:
    current, target = StepState(current), StepState(target)
    if target not in STEP_TRANSITIONS[current]:
        raise InvalidTransitionError("step", current.value, target.value)
    return target


# ------------------------------------------------------------------------------------------------
# Dependencies


def _terminal_names(execution: WorkflowExecution) -> Set[str]:
    return {name for name, state in execution.step_states.items() if state in TERMINAL_STEP_STATES}


def completed_groups(workflow: Workflow, execution: WorkflowExecution) -> Dict[str, bool]:
    terminal = _terminal_names(execution)
    return {group: all(m in terminal for m in members) for group, members in workflow.groups.items()}


def graft_completed(graft: str, workflow: Workflow, execution: WorkflowExecution) -> bool:
    if graft not in workflow.grafts:
        return True
    expanded = execution.graft_expansions.get(graft)
    if expanded is None:
        return graft in execution.completed_steps
    terminal = _terminal_names(execution)
    return graft in execution.completed_steps and all(name in terminal for name in expanded)


def dependencies_satisfied(
    step: Step,
    workflow: Workflow,
    execution: WorkflowExecution,
    completed: Optional[Set[str]] = None,
    groups: Optional[Dict[str, bool]] = None,
) -> bool:
    completed = set(execution.completed_steps) if completed is None else completed
    groups = completed_groups(workflow, execution) if groups is None else groups

    if not all(dep in completed for dep in step.depends_on):
        return False
    if step.depends_on_any and not any(dep in completed for dep in step.depends_on_any):
        return False
    if step.depends_on_group is not None and not groups.get(step.depends_on_group, False):
        return False
    if step.depends_on_graft is not None and not graft_completed(step.depends_on_graft, workflow, execution):
        return False

    for dep in workflow.adjacency.get(step.name, []):
        if isinstance(dep, (list, tuple)):
            kind, target = dep[0], dep[1]
            if kind == "group" and not groups.get(target, False):
                return False
            if kind == "graft" and not graft_completed(target, workflow, execution):
                return False
        elif dep not in completed:
            return False
    return True


def get_ready_steps(workflow: Workflow, execution: WorkflowExecution) -> List[str]:
    """Pending steps whose dependencies are satisfied, in execution order."""
    completed = set(execution.completed_steps)
    groups = completed_groups(workflow, execution)
    order = workflow.execution_order or list(workflow.steps)
    ready = []
    for name in order:
        step = workflow.steps.get(name)
        if step is None or execution.step_states.get(name) != StepState.PENDING:
            continue
        if dependencies_satisfied(step, workflow, execution, completed, groups):
            ready.append(name)
    return ready


# ------------------------------------------------------------------------------------------------
# Completion and failure


def all_step_names(workflow: Workflow, execution: WorkflowExecution) -> List[str]:
    names = list(workflow.steps)
    for expanded in execution.graft_expansions.values():
        names.extend(n for n in expanded if n not in names)
    return names


def workflow_complete(workflow: Workflow, execution: WorkflowExecution) -> bool:
    """True when every declared and graft-expanded step is terminal."""
    terminal = _terminal_names(execution)
    return all(name in terminal for name in all_step_names(workflow, execution))


def failed_steps(execution: WorkflowExecution) -> List[str]:
    return [name for name, state in execution.step_states.items() if state == StepState.FAILED]


def has_failures(execution: WorkflowExecution) -> bool:
    return bool(failed_steps(execution))


def should_fail(workflow: Workflow, execution: WorkflowExecution) -> bool:
    """A failed step fails the workflow unless its policy is ``skip`` or ``continue``."""
    for name in failed_steps(execution):
        step = workflow.steps.get(name)
        if step is None or step.on_error == OnError.FAIL:
            return True
    return False


def is_awaiting(execution: WorkflowExecution) -> bool:
    return execution.state == WorkflowState.PAUSED or bool(get_awaiting_steps(execution))


def get_awaiting_steps(execution: WorkflowExecution) -> List[str]:
    return [name for name, state in execution.step_states.items() if state == StepState.AWAITING]


def get_rollback_order(workflow: Workflow, execution: WorkflowExecution) -> List[str]:
    """Completed steps to compensate, most recent first.

    Walking back through completion order stops at the first step without a
    rollback.
    """
    order = []
    for name in reversed(execution.completed_steps):
        step = workflow.steps.get(name)
        if step is None or not step.has_rollback():
            break
        order.append(name)
    return order


# ------------------------------------------------------------------------------------------------
# Conditions


def evaluate_condition(step: Step, context: Dict[str, Any]) -> bool:
    """A missing condition passes; a raising condition counts as false."""
    if step.condition is None:
        return True
    try:
        return bool(resolve_ref(step.condition)(context))
    except Exception as e:
        logger.debug(f"Condition of step {step.name} raised {type(e).__name__}: {e}; treating as false")
        return False


def get_skippable_steps(workflow: Workflow, execution: WorkflowExecution) -> List[str]:
    return [
        name for name in get_ready_steps(workflow, execution)
        if not evaluate_condition(workflow.steps[name], execution.context)
    ]


# ------------------------------------------------------------------------------------------------
# Progress


def progress(workflow: Workflow, execution: WorkflowExecution) -> float:
    total = len(all_step_names(workflow, execution))
    if total == 0:
        return 100.0
    done = len(execution.completed_steps) + len(execution.skipped_steps)
    return done / total * 100.0


def current_step(execution: WorkflowExecution) -> Optional[str]:
    return execution.running_steps[0] if execution.running_steps else None


def can_proceed(workflow: Workflow, execution: WorkflowExecution) -> bool:
    if execution.state != WorkflowState.RUNNING:
        return False
    if is_awaiting(execution) or workflow_complete(workflow, execution) or should_fail(workflow, execution):
        return False
    return bool(get_ready_steps(workflow, execution)) or bool(execution.running_steps)
