"""
Main Scheduler class that wires every component together.
"""

import asyncio
from typing import Any, Dict, Iterable, List, Optional, Union

from loguru import logger

from taskmill.core.Metrics import ensure_scheduler_metrics_registered

from .circuit_breaker import CircuitBreakerRegistry
from .clock import Clock
from .config import SchedulerConfig, get_config
from .cron_scheduler import CronScheduler
from .dead_letter import DeadLetterQueue
from .error_classifier import ErrorClassifier
from .exceptions import SchedulerError
from .executor import Executor
from .lifeline import Lifeline
from .middleware import Middleware
from .models import Execution, Job, JobState
from .peer import Peer, create_peer
from .queue import QueueProducer
from .rate_limiter import RateLimiter
from .schemas import JobSpec, coerce_job
from .store import Store, create_store


class Scheduler:
    """
    Single entry point: jobs, queues, workflows and the background loops.

    Loops started by ``start()``:
    - cron scheduler (leader only) dispatching due jobs to queue producers
    - workflow scheduler (leader only) starting scheduled workflows
    - lifeline (leader only) rescuing stalled executions

    Usage:
        async with Scheduler(config) as scheduler:
            await scheduler.register_job({"name": "report", "module": "app.jobs",
                                          "function": "report", "every": 300})
    """

    def __init__(
        self,
        config: Optional[SchedulerConfig] = None,
        *,
        store: Optional[Store] = None,
        peer: Optional[Peer] = None,
        clock: Optional[Clock] = None,
        middleware: Optional[Iterable[Middleware]] = None,
        classifier: Optional[ErrorClassifier] = None,
        rate_limiter: Optional[RateLimiter] = None,
        on_dead_letter=None,
    ):
        # Imported here: Workflows depends on Scheduler modules
        from taskmill.core.Workflows.engine import WorkflowEngine
        from taskmill.core.Workflows.registry import WorkflowRegistry
        from taskmill.core.Workflows.scheduler import WorkflowScheduler

        self.config = config or get_config()
        self.node = self.config.node
        self.store = store or create_store(self.config.database_url, clock=clock)
        self.clock = clock or self.store.clock
        self.peer = peer or create_peer(self.config, self.store)

        self.breakers = CircuitBreakerRegistry()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.dead_letter = DeadLetterQueue(
            self.store, on_dead_letter=on_dead_letter, retention_days=self.config.dead_letter_retention_days
        )
        self.executor = Executor(
            store=self.store,
            middleware=middleware,
            classifier=classifier,
            breakers=self.breakers,
            dead_letter=self.dead_letter,
            node=self.node,
            heartbeat_interval=self.config.heartbeat_interval,
            clock=self.clock,
        )
        self.producers: Dict[str, QueueProducer] = {}

        self.cron = CronScheduler(
            self.store, self.peer, self.get_producer, self.node,
            tick_interval=self.config.tick_interval, batch_size=self.config.batch_size, clock=self.clock,
        )
        self.workflow_registry = WorkflowRegistry()
        self.workflows = WorkflowEngine(
            self.workflow_registry, store=self.store, step_concurrency=self.config.step_concurrency,
            node=self.node, clock=self.clock,
        )
        self.workflow_scheduler = WorkflowScheduler(
            self.workflows, store=self.store, peer=self.peer,
            interval=self.config.workflow_tick_interval, batch_size=self.config.workflow_batch_size,
            clock=self.clock,
        )
        self.lifeline = Lifeline(
            self.store, self.peer,
            interval=self.config.lifeline_interval, rescue_after=self.config.rescue_after, clock=self.clock,
            execution_retention_days=self.config.execution_retention_days, prune_limit=self.config.prune_limit,
        )

        self._started = False
        self._stopping = False
        logger.info(f"Scheduler initialized on node {self.node} with store: {self.config.database_url}")

    # ------------------------------------------------------------------
    # Lifecycle

    @property
    def started(self) -> bool:
        return self._started

    async def start(self, run_loops: bool = True) -> None:
        """
        Start the scheduler.

        Args:
            run_loops: Start the cron, workflow and lifeline loops. With False only
                the store and peer are opened (API-only node).
        """
        if self._started:
            logger.warning("Scheduler already started")
            return

        logger.info("Starting scheduler...")
        try:
            if self.config.metrics_enabled:
                ensure_scheduler_metrics_registered()
            await self.store.initialize()
            await self.peer.start()
            if run_loops:
                await self.cron.start()
                await self.workflow_scheduler.start()
                if self.config.lifeline_enabled:
                    await self.lifeline.start()
            self._started = True
            logger.info("Scheduler started successfully")
        except Exception as e:
            logger.error(f"Failed to start scheduler: {e}")
            await self.stop()
            raise SchedulerError(f"Scheduler start failed: {e}")

    async def stop(self) -> None:
        """Stop loops, running work and the store."""
        if self._stopping:
            return
        self._stopping = True
        logger.info("Stopping scheduler...")
        try:
            await self.lifeline.stop()
            await self.workflow_scheduler.stop()
            await self.cron.stop()
            for producer in list(self.producers.values()):
                await producer.stop()
            await self.workflows.stop()
            await self.peer.stop()
            await self.store.close()
        finally:
            self._started = False
            self._stopping = False
        logger.info("Scheduler stopped")

    async def __aenter__(self) -> "Scheduler":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    def _require_started(self) -> None:
        if not self._started:
            raise SchedulerError("Scheduler not started")

    # ------------------------------------------------------------------
    # Queues

    def get_producer(self, queue: str) -> QueueProducer:
        producer = self.producers.get(queue)
        if producer is None:
            producer = QueueProducer(
                queue, self.executor, store=self.store,
                concurrency=self.config.concurrency_for(queue), rate_limiter=self.rate_limiter,
            )
            self.producers[queue] = producer
            logger.debug(f"Queue producer created: {queue} (concurrency={producer.concurrency})")
        return producer

    def queue_stats(self) -> Dict[str, Dict[str, Any]]:
        return {name: producer.stats() for name, producer in sorted(self.producers.items())}

    # ------------------------------------------------------------------
    # Jobs

    async def register_job(self, spec: Union[Job, JobSpec, Dict[str, Any]]) -> Job:
        """Register a job from a Job, a JobSpec or a dict and schedule its first run."""
        self._require_started()
        job = coerce_job(spec)
        if job.next_run_at is None:
            job.next_run_at = job.initial_run(self.clock.now())
        job = await self.store.register_job(job)
        logger.info(f"Job registered: {job.name} ({job.schedule_type.value}, queue={job.queue}, next={job.next_run_at})")
        return job

    async def get_job(self, name: str) -> Job:
        self._require_started()
        return await self.store.get_job(name)

    async def list_jobs(self, queue: Optional[str] = None, state: Optional[str] = None,
                        tags: Optional[Iterable[str]] = None, limit: Optional[int] = None) -> List[Job]:
        self._require_started()
        return await self.store.list_jobs(queue=queue, state=state, tags=tags, limit=limit)

    async def run_now(self, name: str) -> bool:
        """Dispatch ``name`` immediately, outside its schedule. The schedule itself is untouched."""
        self._require_started()
        job = await self.store.get_job(name)
        claimed = await self.store.mark_running(job.name, self.node, owner=self.node)
        producer = self.get_producer(claimed.queue)
        if not await producer.push(claimed):
            await self.store.release_lock(claimed.name, owner=self.node)
            return False
        logger.info(f"Job {name} dispatched on demand")
        return True

    async def _set_job_state(self, name: str, target: JobState) -> Job:
        self._require_started()
        job = await self.store.get_job(name)
        job.transition(target)
        if target == JobState.ACTIVE and job.next_run_at is None:
            job.next_run_at = job.initial_run(self.clock.now())
        return await self.store.update_job(job)

    async def pause_job(self, name: str) -> Job:
        job = await self._set_job_state(name, JobState.PAUSED)
        logger.info(f"Job {name} paused")
        return job

    async def resume_job(self, name: str) -> Job:
        job = await self._set_job_state(name, JobState.ACTIVE)
        logger.info(f"Job {name} resumed")
        return job

    async def cancel_job(self, name: str, reason: str = "user_requested") -> bool:
        """Cancel the running work of ``name``. False when nothing was running."""
        self._require_started()
        job = await self.store.get_job(name)
        producer = self.producers.get(job.queue)
        cancelled = producer.cancel(name, reason) if producer is not None else False
        if cancelled:
            logger.info(f"Job {name} cancelled: {reason}")
        else:
            logger.debug(f"Job {name} has no running work to cancel")
        return cancelled

    async def delete_job(self, name: str) -> None:
        await self.cancel_job(name, reason="deleted")
        await self.store.delete_job(name)
        logger.info(f"Job {name} deleted")

    async def get_executions(self, job_name: Optional[str] = None, limit: int = 100,
                             state: Optional[str] = None) -> List[Execution]:
        self._require_started()
        return await self.store.get_executions(job_name=job_name, limit=limit, state=state)

    async def execution_count(self, state: str = "running") -> int:
        self._require_started()
        return await self.store.execution_count(state)

    # ------------------------------------------------------------------
    # Workflows

    async def register_workflow(self, workflow):
        self._require_started()
        workflow = await self.workflows.register_workflow(workflow)
        logger.info(f"Workflow registered: {workflow.name} ({len(workflow.steps)} steps, trigger={workflow.trigger_type})")
        return workflow

    async def start_workflow(self, name: str, context: Optional[Dict[str, Any]] = None, **kwargs: Any) -> str:
        self._require_started()
        return await self.workflows.start_workflow(name, context, **kwargs)

    async def trigger_event(self, event: str, payload: Optional[Dict[str, Any]] = None) -> List[str]:
        self._require_started()
        return await self.workflow_scheduler.trigger_event(event, payload)

    # ------------------------------------------------------------------
    # Monitoring

    async def get_status(self) -> Dict[str, Any]:
        return {
            "node": self.node,
            "started": self._started,
            "leader": self.peer.is_leader(),
            "queues": self.queue_stats(),
            "circuits": self.breakers.status(),
            "rate_limits": self.rate_limiter.status(),
            "cron_ticks": self.cron.ticks,
            "workflows": self.workflow_scheduler.stats(),
            "running_workflows": len(self.workflows.list_running()),
            "running_executions": await self.store.execution_count("running") if self._started else 0,
        }


# Convenience functions
async def create_scheduler(config: Optional[SchedulerConfig] = None, **kwargs: Any) -> Scheduler:
    """Create and start a scheduler."""
    scheduler = Scheduler(config, **kwargs)
    await scheduler.start()
    return scheduler


# Global scheduler singleton helper
_GLOBAL_SCHEDULER: Optional[Scheduler] = None
_GLOBAL_SCHEDULER_LOCK = asyncio.Lock()


async def get_global_scheduler(config: Optional[SchedulerConfig] = None) -> Scheduler:
    """Return the process-global Scheduler, creating and starting it if needed."""
    global _GLOBAL_SCHEDULER
    async with _GLOBAL_SCHEDULER_LOCK:
        if _GLOBAL_SCHEDULER is None:
            _GLOBAL_SCHEDULER = Scheduler(config or get_config())
        if not _GLOBAL_SCHEDULER.started:
            await _GLOBAL_SCHEDULER.start()
        return _GLOBAL_SCHEDULER


async def stop_global_scheduler() -> None:
    """Stop and forget the process-global Scheduler."""
    global _GLOBAL_SCHEDULER
    async with _GLOBAL_SCHEDULER_LOCK:
        if _GLOBAL_SCHEDULER is not None:
            try:
                await _GLOBAL_SCHEDULER.stop()
            finally:
                _GLOBAL_SCHEDULER = None
