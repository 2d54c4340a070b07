# queue.py
# Description: Per-queue producer. Admits due jobs under a concurrency limit and the rate limiter,
#              runs them through the executor and writes the outcome back to the store.
#
# Imports
import asyncio
import heapq
import itertools
from typing import Any, Dict, List, Optional, Set, Tuple

from loguru import logger

from taskmill.core.Metrics import increment_job_skipped

from .exceptions import CIRCUIT_OPEN, RATE_LIMITED
from .executor import CANCELLED, ExecutionOutcome, Executor
from .models import Job, ScheduleType
from .rate_limiter import RateLimiter
from .telemetry import emit_event

#######################################################################################################################
#
# Classes:

class QueueProducer:
    """
    Runs the jobs of one queue.

    Jobs pushed while the queue is at capacity wait in a priority heap (lower
    ``priority`` first, then arrival order). A job rejected by the rate limiter
    is re-admitted after the limiter's ``retry_after``. A ``retry`` outcome is
    re-run with ``attempt + 1`` after the outcome delay while
    ``attempt < job.max_retries``; after that the job is dead-lettered and
    marked failed.
    """

    def __init__(
        self,
        queue: str,
        executor: Executor,
        store=None,
        concurrency: int = 10,
        rate_limiter: Optional[RateLimiter] = None,
    ):
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self.queue = queue
        self.executor = executor
        self.store = store
        self.concurrency = concurrency
        self.rate_limiter = rate_limiter
        self.paused = False

        self._pending: List[Tuple[int, int, Job, int]] = []
        self._seq = itertools.count()
        self._running: Dict[asyncio.Task, Tuple[str, int]] = {}
        self._delayed: Set[asyncio.Task] = set()
        self._dispatchers: Set[asyncio.Task] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def owner(self) -> str:
        return self.executor.node

    @property
    def running_count(self) -> int:
        return len(self._running)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def running_jobs(self) -> List[str]:
        return sorted({name for name, _ in self._running.values()})

    # ------------------------------------------------------------------
    # Admission

    async def push(self, job: Job, attempt: int = 1) -> bool:
        """Queue a job for execution. Returns False when the queue is paused."""
        if self.paused:
            emit_event("job.skip", job=job, attrs={"reason": "paused"})
            try:
                increment_job_skipped(self.queue, "paused")
            except Exception:
                pass
            return False
        heapq.heappush(self._pending, (int(job.priority), next(self._seq), job, attempt))
        await self._dispatch()
        return True

    async def _dispatch(self) -> None:
        while not self.paused and self._pending and len(self._running) < self.concurrency:
            _, _, job, attempt = heapq.heappop(self._pending)
            if self.rate_limiter is not None:
                res = await self.rate_limiter.acquire_job(job)
                if not res.allowed:
                    logger.debug(f"Rate limited job={job.name} bucket={res.bucket} retry_after={res.retry_after:.2f}s")
                    emit_event("job.skip", job=job, attrs={"reason": RATE_LIMITED, "retry_after": res.retry_after})
                    try:
                        increment_job_skipped(self.queue, RATE_LIMITED)
                    except Exception:
                        pass
                    self._schedule(job, attempt, max(res.retry_after, 0.001))
                    continue
            task = asyncio.create_task(self._run(job, attempt), name=f"job:{job.name}:{attempt}")
            self._running[task] = (job.name, attempt)
            self._idle.clear()
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._running.pop(task, None)
        if not self._running:
            self._idle.set()
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Queue {self.queue}: job task crashed: {task.exception()}")
        if self._pending and not self.paused:
            try:
                kick = asyncio.get_running_loop().create_task(self._dispatch())
            except RuntimeError:
                # Loop already closed
                return
            self._dispatchers.add(kick)
            kick.add_done_callback(self._on_dispatch_done)

    def _on_dispatch_done(self, task: asyncio.Task) -> None:
        self._dispatchers.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Queue {self.queue}: dispatch failed: {task.exception()}")

    def _schedule(self, job: Job, attempt: int, delay: float) -> None:
        task = asyncio.create_task(self._delayed_push(job, attempt, delay))
        self._delayed.add(task)
        task.add_done_callback(self._delayed.discard)

    async def _delayed_push(self, job: Job, attempt: int, delay: float) -> None:
        await asyncio.sleep(delay)
        while self.paused:
            await asyncio.sleep(max(delay, 1.0))
        heapq.heappush(self._pending, (int(job.priority), next(self._seq), job, attempt))
        await self._dispatch()

    # ------------------------------------------------------------------
    # Execution

    async def _run(self, job: Job, attempt: int) -> None:
        try:
            outcome = await self.executor.execute(job, attempt)
        except Exception as e:
            logger.exception(f"Executor crashed for job {job.name}: {e}")
            outcome = ExecutionOutcome("retry", reason="exit", error=e, delay=self.executor.retry_delay(job, attempt))
        await self._handle(job, attempt, outcome)

    def _next_run(self, job: Job) -> Optional[Any]:
        if job.schedule_type == ScheduleType.REBOOT:
            return None
        return job.calculate_next_run(self.executor.clock.now())

    async def _handle(self, job: Job, attempt: int, outcome: ExecutionOutcome) -> None:
        if outcome.is_retry and attempt < job.max_retries:
            logger.info(f"Retrying job {job.name} (attempt {attempt + 1}/{job.max_retries}) in {outcome.delay:.2f}s")
            emit_event("job.retry", job=job, attrs={"attempt": attempt + 1, "delay": outcome.delay, "reason": outcome.reason})
            self._schedule(job, attempt + 1, outcome.delay)
            return

        if self.store is None:
            return
        try:
            if outcome.ok:
                await self.store.mark_completed(job.name, result=outcome.value,
                                                next_run_at=self._next_run(job), owner=self.owner)
            elif outcome.reason == CANCELLED:
                await self.store.mark_cancelled(job.name, str(outcome.error), owner=self.owner)
            else:
                if outcome.is_retry:
                    # Classifier still wanted to retry but the job's budget is spent
                    await self.executor.send_to_dead_letter(job, outcome.error, attempt)
                if outcome.reason == CIRCUIT_OPEN:
                    error = CIRCUIT_OPEN
                else:
                    error = f"{outcome.reason}: {outcome.error_message}" if outcome.reason else outcome.error_message
                await self.store.mark_failed(job.name, error, next_run_at=self._next_run(job), owner=self.owner)
        except Exception as e:
            logger.error(f"Queue {self.queue}: could not record outcome of {job.name}: {e}")

    # ------------------------------------------------------------------
    # Control

    def pause(self) -> None:
        self.paused = True
        emit_event("queue.pause", attrs={"queue": self.queue})
        logger.info(f"Queue {self.queue} paused")

    async def resume(self) -> None:
        self.paused = False
        emit_event("queue.resume", attrs={"queue": self.queue})
        logger.info(f"Queue {self.queue} resumed")
        await self._dispatch()

    async def scale(self, concurrency: int) -> None:
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        old, self.concurrency = self.concurrency, concurrency
        emit_event("queue.scale", attrs={"queue": self.queue, "old_concurrency": old, "new_concurrency": concurrency})
        await self._dispatch()

    def cancel(self, job_name: str, reason: str = "cancelled") -> bool:
        """Cancel a running job; the store is updated when its task unwinds."""
        return self.executor.cancel(job_name, reason) > 0

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until no job of this queue is running. False on timeout."""
        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def stop(self) -> None:
        """Drop pending work and cancel delayed retries and running tasks."""
        self._pending.clear()
        tasks = list(self._dispatchers) + list(self._delayed) + list(self._running)
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._delayed.clear()
        self._dispatchers.clear()

    def stats(self) -> Dict[str, Any]:
        return {
            "queue": self.queue,
            "running": self.running_count,
            "running_jobs": self.running_jobs(),
            "pending": self.pending_count,
            "delayed": len(self._delayed),
            "concurrency": self.concurrency,
            "paused": self.paused,
            "available": max(0, self.concurrency - self.running_count),
        }

#
# End of queue.py
#######################################################################################################################
