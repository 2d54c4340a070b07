# scheduler.py
# Description: Leader-only loop starting workflows whose cron, interval or one-shot schedule is due,
#              plus event-triggered starts.
#
# Imports
import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from loguru import logger

from taskmill.core.Metrics import increment_ticks
from taskmill.core.Scheduler.clock import Clock, ensure_aware
from taskmill.core.Scheduler.cron import cron_matches
from taskmill.core.Scheduler.peer import LocalPeer, Peer
from taskmill.core.Scheduler.telemetry import emit_event

from .engine import WorkflowEngine
from .models import Workflow

# A cron or one-shot schedule fires at most once inside this window
FIRE_WINDOW = timedelta(seconds=60)

#######################################################################################################################
#
# Classes:

class WorkflowScheduler:
    """
    Every ``interval`` seconds the leader checks the scheduled workflows of the
    registry and the store:

    * ``cron``   any expression matches the current minute, at most once a minute
    * ``every``  at least ``every`` seconds since the last start
    * ``at``     once, within a minute after ``at``

    ``start_at`` and ``end_at`` bound all three.
    """

    def __init__(
        self,
        engine: WorkflowEngine,
        store=None,
        peer: Optional[Peer] = None,
        interval: float = 60.0,
        batch_size: int = 50,
        clock: Optional[Clock] = None,
    ):
        self.engine = engine
        self.registry = engine.registry
        self.store = store if store is not None else engine.store
        self.peer = peer or LocalPeer()
        self.interval = interval
        self.batch_size = batch_size
        self.clock = clock or engine.clock
        self._last_run: Dict[str, datetime] = {}
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0
        self.started = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="workflow_scheduler")
        logger.info(f"Workflow scheduler started (interval={self.interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Workflow scheduler stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Workflow scheduler tick failed: {e}")
            await asyncio.sleep(self.interval)

    async def scheduled_workflows(self) -> List[Workflow]:
        merged = {w.name: w for w in await self.registry.list_workflows(trigger_type="scheduled")}
        if self.store is not None:
            for w in await self.store.list_workflows(trigger_type="scheduled"):
                merged.setdefault(w.name, w)
        return [merged[name] for name in sorted(merged)]

    def is_due(self, workflow: Workflow, now: datetime) -> bool:
        config = workflow.schedule_config
        start_at, end_at = ensure_aware(config.get("start_at")), ensure_aware(config.get("end_at"))
        if start_at is not None and now < start_at:
            return False
        if end_at is not None and now > end_at:
            return False
        last = self._last_run.get(workflow.name)

        if config.get("cron") and cron_matches(config["cron"], now):
            if last is None or now - last >= FIRE_WINDOW:
                return True
        every = config.get("every")
        if every and (last is None or (now - last).total_seconds() >= every):
            return True
        at = ensure_aware(config.get("at"))
        if at is not None and at <= now < at + FIRE_WINDOW and (last is None or last < at):
            return True
        return False

    async def tick(self, now: Optional[datetime] = None) -> Dict[str, int]:
        if not self.peer.is_leader():
            return {"due": 0, "started": 0, "failed": 0, "leader": 0}
        now = now or self.clock.now()
        counts = {"due": 0, "started": 0, "failed": 0, "leader": 1}
        due = [w for w in await self.scheduled_workflows() if self.is_due(w, now)][: self.batch_size]
        counts["due"] = len(due)
        for workflow in due:
            self._last_run[workflow.name] = now
            try:
                execution_id = await self.engine.start_workflow(workflow.name, trigger="scheduled", source="schedule")
                logger.debug(f"Scheduled run of {workflow.name} started: {execution_id}")
                counts["started"] += 1
            except Exception as e:
                logger.error(f"Failed to start scheduled workflow {workflow.name}: {e}")
                counts["failed"] += 1
        self.ticks += 1
        self.started += counts["started"]
        try:
            increment_ticks("workflow")
        except Exception:
            pass
        emit_event("scheduler.tick", attrs={"loop": "workflow", **counts})
        return counts

    async def trigger_event(self, event: str, payload: Optional[Dict[str, Any]] = None) -> List[str]:
        """Start every workflow subscribed to ``event`` with ``payload`` as its context."""
        workflows = {w.name: w for w in await self.registry.list_workflows()}
        if self.store is not None:
            for w in await self.store.list_workflows():
                workflows.setdefault(w.name, w)
        started = []
        for name in sorted(workflows):
            if event not in workflows[name].event_triggers:
                continue
            started.append(await self.engine.start_workflow(name, dict(payload or {}), trigger="event", source=event))
        if started:
            logger.info(f"Event {event} started {len(started)} workflow(s)")
        return started

    def stats(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "leader": self.peer.is_leader(),
            "ticks": self.ticks,
            "started": self.started,
            "last_run": {name: dt.isoformat() for name, dt in self._last_run.items()},
        }

#
# End of scheduler.py
#######################################################################################################################
