"""
Multi-step workflows: a dependency graph of steps run by the WorkflowEngine.

    from taskmill.core.Workflows import Workflow, WorkflowEngine

    wf = (
        Workflow("ingest")
        .step("fetch", "app.steps:fetch")
        .parallel("fetch", [("parse", "app.steps:parse"), ("thumbs", "app.steps:thumbs")])
        .step("store", "app.steps:store", after_group="parallel_fetch")
    )
    engine = WorkflowEngine()
    await engine.register_workflow(wf)
    execution = await engine.run_workflow("ingest", {"url": "..."})
"""

from .models import (
    Await,
    Backoff,
    Expand,
    OnError,
    Skip,
    Step,
    StepState,
    Workflow,
    WorkflowState,
)
from .execution import WorkflowExecution
from .registry import WorkflowRegistry
from .engine import WorkflowEngine
from .scheduler import WorkflowScheduler
from . import state_machine

__all__ = [
    "Await",
    "Backoff",
    "Expand",
    "OnError",
    "Skip",
    "Step",
    "StepState",
    "Workflow",
    "WorkflowState",
    "WorkflowExecution",
    "WorkflowRegistry",
    "WorkflowEngine",
    "WorkflowScheduler",
    "state_machine",
]
