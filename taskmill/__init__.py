"""
taskmill: a store-backed job and workflow scheduling engine.

    from taskmill import Scheduler, Workflow

Jobs and the background loops live in ``taskmill.core.Scheduler``; multi-step
workflows in ``taskmill.core.Workflows``.
"""

from taskmill.core.Scheduler import Scheduler, SchedulerConfig, create_scheduler, get_global_scheduler
from taskmill.core.Workflows import Workflow, WorkflowEngine

__version__ = "1.0.0"

__all__ = [
    "Scheduler",
    "SchedulerConfig",
    "create_scheduler",
    "get_global_scheduler",
    "Workflow",
    "WorkflowEngine",
]
