# engine.py
# Description: Runs workflow executions as asyncio tasks. After every step outcome the state machine picks
#              the next ready steps; the run ends completed, failed (with saga rollback) or cancelled.
#
# Imports
import asyncio
import time
import traceback
from collections import OrderedDict
from datetime import datetime
from typing import Any, Dict, List, Optional

from loguru import logger

from taskmill.core.Logging import log_context
from taskmill.core.Metrics import increment_workflow_runs, increment_workflow_steps, observe_step_duration
from taskmill.core.Scheduler.clock import Clock
from taskmill.core.Scheduler.exceptions import (
    EXCEPTION,
    TIMEOUT,
    AlreadyExistsError,
    JobError,
    NotFoundError,
    WorkflowValidationError,
)
from taskmill.core.Scheduler.executor import invoke
from taskmill.core.Scheduler.telemetry import emit_event

from . import state_machine as sm
from .execution import WorkflowExecution
from .models import Await, Expand, OnError, Skip, Step, StepState, Workflow, WorkflowState, resolve_ref
from .registry import WorkflowRegistry

# Finished runs kept in memory for wait()/get_state() when no store is configured
MAX_FINISHED_RUNS = 1000

#######################################################################################################################
#
# Classes:

class _Run:
    """Live state of one execution: its (possibly graft-expanded) workflow and its step tasks."""

    def __init__(self, workflow: Workflow, execution: WorkflowExecution):
        self.workflow = workflow
        self.execution = execution
        self.task: Optional[asyncio.Task] = None
        self.steps: Dict[str, asyncio.Task] = {}
        self.wake = asyncio.Event()
        self.done = asyncio.Event()


class WorkflowEngine:
    """
    Starts and supervises workflow executions.

    Each execution is driven by its own task. The driver launches ready steps
    (at most ``step_concurrency`` at a time), skips steps whose condition is
    false, and sleeps until a step finishes or the run is paused, resumed or
    cancelled. Every state change is persisted through ``store`` when one is
    configured.
    """

    def __init__(
        self,
        registry: Optional[WorkflowRegistry] = None,
        store=None,
        step_concurrency: int = 5,
        node: Optional[str] = None,
        clock: Optional[Clock] = None,
    ):
        if step_concurrency < 1:
            raise ValueError(f"step_concurrency must be >= 1, got {step_concurrency}")
        self.registry = registry or WorkflowRegistry()
        self.store = store
        self.step_concurrency = step_concurrency
        self.node = node
        self.clock = clock or (store.clock if store is not None else Clock())
        self._runs: Dict[str, _Run] = {}
        self._finished: "OrderedDict[str, _Run]" = OrderedDict()

    # ------------------------------------------------------------------
    # Public API

    async def register_workflow(self, workflow: Workflow) -> Workflow:
        """Register in the in-process registry and, when configured, the store."""
        workflow = await self.registry.upsert(workflow)
        if self.store is not None:
            try:
                await self.store.register_workflow(workflow)
            except AlreadyExistsError:
                await self.store.update_workflow(workflow)
        return workflow

    async def get_workflow(self, name: str) -> Workflow:
        try:
            return await self.registry.get_workflow(name)
        except NotFoundError:
            if self.store is None:
                raise
        workflow = await self.store.get_workflow(name)
        return await self.registry.upsert(workflow)

    async def start_workflow(
        self,
        name: str,
        context: Optional[Dict[str, Any]] = None,
        *,
        trigger: str = "manual",
        source: Any = None,
        parent_execution_id: Optional[str] = None,
        delay: Optional[float] = None,
        attempt: int = 1,
    ) -> str:
        """Start ``name`` and return the execution id. ``delay`` postpones the first step."""
        workflow = await self.get_workflow(name)
        now = self.clock.now()
        execution = WorkflowExecution(
            workflow_name=workflow.name,
            workflow_version=workflow.version,
            context=dict(context or {}),
            trigger={"type": trigger, "source": source},
            parent_execution_id=parent_execution_id,
            node=self.node,
            created_at=now,
            attempt=attempt,
            max_attempts=workflow.max_retries + 1,
        )
        if delay:
            execution.scheduled_at = datetime.fromtimestamp(now.timestamp() + delay, tz=now.tzinfo)
        run = _Run(workflow, execution)
        self._runs[execution.id] = run
        await self._persist(run)
        run.task = asyncio.create_task(self._drive(run, delay), name=f"workflow:{workflow.name}:{execution.id}")
        return execution.id

    async def schedule_workflow(self, name: str, context: Optional[Dict[str, Any]] = None, *,
                                at: Optional[datetime] = None, delay: Optional[float] = None) -> str:
        """Start ``name`` at ``at`` (or after ``delay`` seconds)."""
        if at is not None:
            delay = max(0.0, (at - self.clock.now()).total_seconds())
        return await self.start_workflow(name, context, trigger="scheduled", delay=delay or 0.0)

    async def run_workflow(self, name: str, context: Optional[Dict[str, Any]] = None,
                           timeout: Optional[float] = None) -> WorkflowExecution:
        """Start ``name`` and wait for it to finish."""
        execution_id = await self.start_workflow(name, context)
        return await self.wait(execution_id, timeout=timeout)

    async def wait(self, execution_id: str, timeout: Optional[float] = None) -> WorkflowExecution:
        run = self._runs.get(execution_id) or self._finished.get(execution_id)
        if run is None:
            return await self.get_execution(execution_id)
        await asyncio.wait_for(run.done.wait(), timeout=timeout)
        return run.execution

    async def get_execution(self, execution_id: str) -> WorkflowExecution:
        run = self._runs.get(execution_id) or self._finished.get(execution_id)
        if run is not None:
            return run.execution
        if self.store is None:
            raise NotFoundError("workflow_execution", execution_id)
        return await self.store.get_workflow_execution(execution_id)

    async def get_state(self, execution_id: str) -> Dict[str, Any]:
        run = self._runs.get(execution_id) or self._finished.get(execution_id)
        execution = await self.get_execution(execution_id)
        done, total = execution.progress()
        percent = sm.progress(run.workflow, execution) if run is not None else (done / total * 100.0 if total else 100.0)
        return {
            "id": execution.id,
            "workflow": execution.workflow_name,
            "state": execution.state.value,
            "current_step": sm.current_step(execution),
            "progress": (done, total),
            "percent": percent,
            "context": dict(execution.context),
            "started_at": execution.started_at,
            "duration_ms": execution.duration_ms,
            "error": execution.error,
            "error_step": execution.error_step,
        }

    def list_running(self, workflow_name: Optional[str] = None) -> List[WorkflowExecution]:
        return [
            r.execution for r in self._runs.values()
            if not r.execution.is_terminal and (workflow_name is None or r.execution.workflow_name == workflow_name)
        ]

    async def pause(self, execution_id: str) -> bool:
        run = self._runs.get(execution_id)
        if run is None or run.execution.state != WorkflowState.RUNNING:
            return False
        run.execution.pause(self.clock.now())
        self._emit(run, "workflow.pause", step=run.execution.current_step)
        await self._persist(run)
        return True

    async def resume(self, execution_id: str, context: Optional[Dict[str, Any]] = None) -> bool:
        """Resume a paused run, merging ``context``. Steps that returned ``Await`` complete now."""
        run = self._runs.get(execution_id)
        if run is None or run.execution.state != WorkflowState.PAUSED:
            return False
        execution = run.execution
        for name, kind in execution.resume(context):
            if kind == "result":
                execution.step_resumed(name)
                execution.step_completed(name, None, now=self.clock.now())
        self._emit(run, "workflow.resume")
        await self._persist(run)
        run.wake.set()
        return True

    async def cancel(self, execution_id: str, reason: str = "user_requested", rollback: bool = False) -> bool:
        run = self._runs.get(execution_id)
        if run is None or run.execution.is_terminal:
            return False
        execution = run.execution
        execution.cancel(reason, self.clock.now())
        await self._cancel_steps(run)
        for child_id in list(execution.child_executions):
            await self.cancel(child_id, reason="parent_cancelled", rollback=rollback)
        logger.info(f"Workflow {execution.workflow_name} [{execution.id}] cancelled: {reason}")
        self._emit(run, "workflow.cancel", reason=reason)
        self._count_run(run, "cancelled")
        if rollback:
            await self._rollback(run)
        await self._call_handler(run.workflow.on_cancel_handler, dict(execution.context))
        await self._persist(run)
        run.wake.set()
        return True

    async def cancel_all(self, workflow_name: str, reason: str = "user_requested") -> int:
        count = 0
        for execution in self.list_running(workflow_name):
            if await self.cancel(execution.id, reason=reason):
                count += 1
        return count

    async def stop(self) -> None:
        """Cancel every driver and step task (executions keep their last persisted state)."""
        runs = list(self._runs.values())
        tasks = []
        for run in runs:
            tasks.extend(run.steps.values())
            if run.task is not None:
                tasks.append(run.task)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Driver

    async def _drive(self, run: _Run, delay: Optional[float] = None) -> None:
        workflow, execution = run.workflow, run.execution
        try:
            with log_context(workflow=workflow.name, workflow_execution_id=execution.id):
                if delay:
                    await asyncio.sleep(delay)
                if execution.state != WorkflowState.PENDING:
                    return
                execution.start(list(workflow.steps), self.clock.now())
                logger.info(f"Workflow {workflow.name} [{execution.id}] started ({len(workflow.steps)} steps)")
                self._emit(run, "workflow.start", trigger=execution.trigger.get("type"))
                self._count_run(run, "started")
                await self._persist(run)
                try:
                    if workflow.timeout:
                        await asyncio.wait_for(self._loop(run), timeout=workflow.timeout)
                    else:
                        await self._loop(run)
                except asyncio.TimeoutError:
                    await self._fail(run, JobError(TIMEOUT, f"workflow exceeded {workflow.timeout}s"),
                                     execution.current_step)
                except Exception as e:
                    logger.exception(f"Workflow {workflow.name} [{execution.id}] driver crashed: {e}")
                    if not execution.is_terminal:
                        await self._fail(run, e, execution.current_step)
        finally:
            run.done.set()
            self._retire(run)

    async def _loop(self, run: _Run) -> None:
        execution = run.execution
        while not execution.is_terminal:
            workflow = run.workflow
            if execution.state == WorkflowState.PAUSED:
                await self._sleep(run)
                continue
            if sm.should_fail(workflow, execution):
                await self._fail(run, execution.error, execution.error_step)
                return

            # A launched task stays PENDING until it first runs
            ready = [n for n in sm.get_ready_steps(workflow, execution) if n not in run.steps]
            to_skip = [n for n in ready if not sm.evaluate_condition(workflow.steps[n], execution.context)]
            if to_skip:
                for name in to_skip:
                    execution.step_skipped(name, "condition_not_met", self.clock.now())
                    self._emit(run, "step.skip", step=name, reason="condition_not_met")
                    self._count_step(run, "skipped")
                await self._persist(run)
                continue

            for name in ready:
                if len(run.steps) >= self.step_concurrency:
                    break
                step = workflow.steps[name]
                if step.await_approval and name not in execution.approved_steps:
                    execution.step_awaiting(name, "approval", now=self.clock.now())
                    logger.info(f"Workflow {workflow.name} [{execution.id}] awaiting approval for {name}")
                    self._emit(run, "workflow.pause", step=name, reason="await_approval")
                    await self._persist(run)
                    break
                self._launch_step(run, name)

            if execution.state == WorkflowState.PAUSED:
                continue
            if sm.workflow_complete(workflow, execution):
                await self._complete(run)
                return
            if not run.steps and not sm.get_ready_steps(workflow, execution):
                # Nothing running and nothing ready: the remaining steps depend on failed ones
                for name in sm.all_step_names(workflow, execution):
                    if execution.step_states.get(name) == StepState.PENDING:
                        execution.step_skipped(name, "dependencies_not_met", self.clock.now())
                        self._emit(run, "step.skip", step=name, reason="dependencies_not_met")
                await self._persist(run)
                continue
            await self._sleep(run)

    @staticmethod
    async def _sleep(run: _Run) -> None:
        await run.wake.wait()
        run.wake.clear()

    def _retire(self, run: _Run) -> None:
        self._runs.pop(run.execution.id, None)
        self._finished[run.execution.id] = run
        while len(self._finished) > MAX_FINISHED_RUNS:
            self._finished.popitem(last=False)

    # ------------------------------------------------------------------
    # Steps

    def _launch_step(self, run: _Run, name: str) -> None:
        task = asyncio.create_task(self._run_step(run, name), name=f"step:{run.workflow.name}:{name}")
        run.steps[name] = task

        def _done(t: asyncio.Task) -> None:
            run.steps.pop(name, None)
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"Step task {name} crashed: {t.exception()}")
            run.wake.set()

        task.add_done_callback(_done)

    async def _run_step(self, run: _Run, name: str) -> None:
        execution = run.execution
        step = run.workflow.steps[name]
        while True:
            attempt = execution.step_started(name, self.clock.now())
            self._emit(run, "step.start", step=name, attempt=attempt)
            started = time.monotonic()
            error: Optional[BaseException] = None
            stack: Optional[str] = None
            timeout = None
            try:
                timeout = step.get_timeout(execution.context)
                result = await asyncio.wait_for(self._call_step(run, step), timeout=timeout)
                if execution.is_terminal:
                    return
                self._apply_result(run, step, result, time.monotonic() - started)
                await self._persist(run)
                return
            except asyncio.CancelledError:
                raise
            except asyncio.TimeoutError:
                error = JobError(TIMEOUT, f"step {name} timed out after {timeout}s")
            except Exception as e:
                error = e
                stack = traceback.format_exc()

            if execution.is_terminal:
                return
            if step.can_retry(attempt) and step.should_retry_error(error):
                delay = step.retry_delay_for(attempt)
                execution.step_retrying(name, error, self.clock.now())
                logger.warning(f"Step {name} failed (attempt {attempt}/{step.max_retries}): {error}; retrying in {delay:.2f}s")
                self._emit(run, "step.retry", step=name, attempt=attempt, delay=delay, error=str(error))
                await self._persist(run)
                await asyncio.sleep(delay)
                if execution.is_terminal:
                    return
                continue
            await self._step_error(run, step, error, stack, attempt, time.monotonic() - started)
            return

    async def _call_step(self, run: _Run, step: Step) -> Any:
        execution = run.execution
        if step.is_nested:
            child_id = await self.start_workflow(
                step.nested_workflow, dict(execution.context),
                trigger="parent", source=execution.id, parent_execution_id=execution.id,
            )
            execution.add_child_execution(child_id)
            try:
                child = await self.wait(child_id)
            except asyncio.CancelledError:
                await self.cancel(child_id, reason="parent_cancelled")
                raise
            if child.state == WorkflowState.COMPLETED:
                return dict(child.context)
            raise JobError(EXCEPTION, f"nested workflow {step.nested_workflow} {child.state.value}: {child.error}")
        fn = resolve_ref(step.job)
        return await invoke(fn, [dict(execution.context)])

    def _coerce_expansion(self, workflow: Workflow, item: Any) -> Step:
        if isinstance(item, Step):
            return item
        if isinstance(item, dict):
            return Step(**item)
        if isinstance(item, (list, tuple)) and len(item) == 2:
            return Step(name=item[0], job=item[1], timeout=workflow.step_timeout,
                        max_retries=workflow.step_max_retries, retry_delay=workflow.step_retry_delay)
        raise WorkflowValidationError(f"cannot expand {item!r} into a step")

    def _apply_result(self, run: _Run, step: Step, result: Any, duration: float) -> None:
        execution, name = run.execution, step.name
        now = self.clock.now()
        if isinstance(result, Skip):
            execution.step_skipped(name, result.reason or "skipped", now)
            self._emit(run, "step.skip", step=name, reason=result.reason)
            self._count_step(run, "skipped", duration)
        elif isinstance(result, Await):
            execution.step_awaiting(name, "result", result.reason, now)
            logger.info(f"Workflow {run.workflow.name} [{execution.id}] paused by step {name}")
            self._emit(run, "workflow.pause", step=name, reason=result.reason)
        elif isinstance(result, Expand):
            if not step.graft:
                raise WorkflowValidationError(f"step {name} returned Expand but is not a graft")
            steps = [self._coerce_expansion(run.workflow, item) for item in result.steps]
            run.workflow = run.workflow.with_expansion(name, steps)
            execution.record_graft_expansion(name, [s.name for s in steps])
            execution.step_completed(name, None, now=now)
            logger.info(f"Graft {name} expanded into {len(steps)} step(s)")
            self._emit(run, "graft.expand", step=name, steps=[s.name for s in steps])
            self._count_step(run, "completed", duration)
        else:
            execution.step_completed(name, result, step.context_key, now)
            self._emit(run, "step.stop", step=name, duration=duration)
            self._count_step(run, "completed", duration)

    async def _step_error(self, run: _Run, step: Step, error: BaseException, stack: Optional[str],
                          attempt: int, duration: float) -> None:
        execution, name = run.execution, step.name
        logger.error(f"Step {name} failed after {attempt} attempt(s): {error}")
        self._emit(run, "step.exception", step=name, attempt=attempt, error=str(error), on_error=step.on_error.value)
        if step.on_error == OnError.SKIP:
            execution.step_skipped(name, f"error: {error}", self.clock.now())
            self._count_step(run, "skipped", duration)
        else:
            execution.step_failed(name, error, stack, now=self.clock.now(),
                                  record_error=step.on_error == OnError.FAIL)
            self._count_step(run, "failed", duration)
        await self._call_handler(run.workflow.on_step_error, dict(execution.context), name, error, attempt)
        await self._persist(run)

    async def _cancel_steps(self, run: _Run) -> None:
        tasks = []
        for name, task in list(run.steps.items()):
            step = run.workflow.steps.get(name)
            if step is None or step.cancellable:
                task.cancel()
                tasks.append(task)
        current = asyncio.current_task()
        tasks = [t for t in tasks if t is not current]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Outcomes

    async def _complete(self, run: _Run) -> None:
        execution = run.execution
        execution.complete(self.clock.now())
        logger.info(f"Workflow {execution.workflow_name} [{execution.id}] completed in {execution.duration_ms}ms")
        self._emit(run, "workflow.stop", state=execution.state.value, duration_ms=execution.duration_ms)
        self._count_run(run, "completed")
        await self._call_handler(run.workflow.on_success_handler, dict(execution.context))
        await self._persist(run)

    async def _fail(self, run: _Run, error: Any, error_step: Optional[str]) -> None:
        execution = run.execution
        if execution.is_terminal:
            return
        execution.fail(error, error_step, self.clock.now())
        await self._cancel_steps(run)
        logger.error(f"Workflow {execution.workflow_name} [{execution.id}] failed at {execution.error_step}: {execution.error}")
        self._emit(run, "workflow.fail", error=execution.error, error_step=execution.error_step)
        self._count_run(run, "failed")
        await self._rollback(run)
        await self._call_handler(run.workflow.on_failure_handler, execution.error_context())
        await self._persist(run)
        if execution.attempt < execution.max_attempts:
            retry_id = await self.start_workflow(
                execution.workflow_name, dict(execution.initial_context),
                trigger="retry", source=execution.id,
                parent_execution_id=execution.parent_execution_id, attempt=execution.attempt + 1,
            )
            execution.metadata["retried_as"] = retry_id
            logger.info(f"Workflow {execution.workflow_name} retrying as {retry_id} "
                        f"(attempt {execution.attempt + 1}/{execution.max_attempts})")
            await self._persist(run)

    async def _rollback(self, run: _Run) -> List[str]:
        order = sm.get_rollback_order(run.workflow, run.execution)
        if not order:
            return []
        self._emit(run, "workflow.rollback", steps=order)
        done = []
        for name in order:
            step = run.workflow.steps[name]
            try:
                await invoke(resolve_ref(step.rollback), [dict(run.execution.context)])
                done.append(name)
            except Exception as e:
                logger.error(f"Rollback failed for step {name}: {e}")
        run.execution.metadata["rolled_back"] = done
        return done

    async def _call_handler(self, handler: Any, *args: Any) -> None:
        if handler is None:
            return
        try:
            await invoke(resolve_ref(handler), list(args))
        except Exception as e:
            logger.error(f"Workflow handler {handler!r} failed: {e}")

    # ------------------------------------------------------------------
    # Side effects

    async def _persist(self, run: _Run) -> None:
        if self.store is None:
            return
        try:
            await self.store.save_workflow_execution(run.execution)
        except Exception as e:
            logger.warning(f"Failed to persist workflow execution {run.execution.id}: {e}")

    def _emit(self, run: _Run, event: str, **attrs: Any) -> None:
        payload = {"workflow": run.workflow.name, "execution_id": run.execution.id}
        payload.update(attrs)
        emit_event(event, attrs=payload)

    def _count_run(self, run: _Run, state: str) -> None:
        try:
            increment_workflow_runs(run.workflow.name, state)
        except Exception:
            pass

    def _count_step(self, run: _Run, state: str, duration: Optional[float] = None) -> None:
        try:
            increment_workflow_steps(run.workflow.name, state)
            if duration is not None:
                observe_step_duration(run.workflow.name, duration)
        except Exception:
            pass

#
# End of engine.py
#######################################################################################################################
