from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional

from loguru import logger

from taskmill.core.Scheduler.exceptions import AlreadyExistsError, NotFoundError, WorkflowValidationError

from .models import Workflow


class _ReadWriteLock:
    """Many readers or one writer; writers are not starved by new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._waiting_writers = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._waiting_writers:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._waiting_writers += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._waiting_writers -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class WorkflowRegistry:
    """In-process workflow table with the same contract as the store's workflow methods.

    Workflows are built on registration. Reads share the lock, writes take it
    exclusively, so the registry can be read from worker threads as well.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._lock = _ReadWriteLock()

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._workflows)

    def __contains__(self, name: str) -> bool:
        with self._lock.read():
            return name in self._workflows

    @staticmethod
    def _built(workflow: Workflow) -> Workflow:
        if not isinstance(workflow, Workflow):
            raise WorkflowValidationError(f"expected a Workflow, got {type(workflow).__name__}")
        return workflow if workflow.built else workflow.build()

    async def register_workflow(self, workflow: Workflow) -> Workflow:
        workflow = self._built(workflow)
        with self._lock.write():
            if workflow.name in self._workflows:
                raise AlreadyExistsError("workflow", workflow.name)
            self._workflows[workflow.name] = workflow
        logger.debug(f"Workflow registered: {workflow.name} ({len(workflow.steps)} steps)")
        return workflow

    async def get_workflow(self, name: str) -> Workflow:
        with self._lock.read():
            try:
                return self._workflows[name]
            except KeyError:
                raise NotFoundError("workflow", name)

    async def list_workflows(self, tags: Optional[Iterable[str]] = None,
                             trigger_type: Optional[str] = None) -> List[Workflow]:
        wanted = set(tags or [])
        with self._lock.read():
            items = [
                w for w in self._workflows.values()
                if wanted.issubset(w.tags) and (trigger_type is None or w.trigger_type == trigger_type)
            ]
        return sorted(items, key=lambda w: w.name)

    async def update_workflow(self, workflow: Workflow) -> Workflow:
        workflow = self._built(workflow)
        with self._lock.write():
            if workflow.name not in self._workflows:
                raise NotFoundError("workflow", workflow.name)
            self._workflows[workflow.name] = workflow
        return workflow

    async def delete_workflow(self, name: str) -> None:
        with self._lock.write():
            if name not in self._workflows:
                raise NotFoundError("workflow", name)
            del self._workflows[name]

    async def upsert(self, workflow: Workflow) -> Workflow:
        """Register or replace ``workflow``."""
        workflow = self._built(workflow)
        with self._lock.write():
            self._workflows[workflow.name] = workflow
        return workflow
