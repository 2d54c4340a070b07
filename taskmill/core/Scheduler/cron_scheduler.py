# cron_scheduler.py
# Description: Leader-only loop dispatching due jobs to their queue producers
#
# Imports
import asyncio
from datetime import datetime
from typing import Callable, Dict, List, Optional

from loguru import logger

from taskmill.core.Metrics import increment_job_skipped, increment_ticks

from .clock import Clock
from .exceptions import UNIQUE_CONFLICT, NotFoundError, UniqueConflictError
from .lifeline import RESCUE_ATTEMPT
from .models import Job, ScheduleType
from .peer import Peer
from .queue import QueueProducer
from .telemetry import emit_event

#######################################################################################################################
#
# Classes:

class CronScheduler:
    """
    Every ``tick_interval`` seconds, on the leader only:

    1. fetch up to ``batch_size`` due jobs
    2. ``mark_running`` each one, claiming its next slot (unique jobs take their lock here)
    3. push it to the producer of its queue

    A held unique lock is reported as a ``job.skip`` event with reason
    ``unique_conflict``. A failing tick is logged and the loop carries on.
    """

    def __init__(
        self,
        store,
        peer: Peer,
        get_producer: Callable[[str], QueueProducer],
        node: str,
        tick_interval: float = 1.0,
        batch_size: int = 100,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.peer = peer
        self.get_producer = get_producer
        self.node = node
        self.tick_interval = tick_interval
        self.batch_size = batch_size
        self.clock = clock or store.clock
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        if self.peer.is_leader():
            await self.schedule_reboot_jobs()
        self._task = asyncio.create_task(self._loop(), name=f"cron_scheduler:{self.node}")
        logger.info(f"Cron scheduler started on {self.node} (tick={self.tick_interval}s, batch={self.batch_size})")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"Cron scheduler stopped on {self.node}")

    async def _loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Cron scheduler tick failed: {e}")
            await asyncio.sleep(self.tick_interval)

    async def schedule_reboot_jobs(self) -> int:
        """Make every runnable ``reboot`` job due now (once per start)."""
        now = self.clock.now()
        count = 0
        for job in await self.store.list_jobs(state="active"):
            if job.schedule_type != ScheduleType.REBOOT or not job.is_runnable():
                continue
            job.next_run_at = now
            await self.store.update_job(job)
            count += 1
        if count:
            logger.info(f"Scheduled {count} reboot job(s)")
        return count

    async def fetch_due(self, now: Optional[datetime] = None) -> List[Job]:
        return await self.store.get_due_jobs(now or self.clock.now(), limit=self.batch_size)

    async def dispatch(self, job: Job, now: Optional[datetime] = None) -> str:
        """Claim and push one job. Returns ``dispatched``, ``conflict``, ``rejected`` or ``missing``."""
        now = now or self.clock.now()
        try:
            claimed = await self.store.mark_running(
                job.name, self.node, next_run_at=job.calculate_next_run(now), owner=self.node
            )
        except UniqueConflictError as e:
            logger.debug(f"Job {job.name} skipped: unique lock {e.key} held")
            emit_event("job.skip", job=job, attrs={"reason": UNIQUE_CONFLICT, "node": self.node})
            try:
                increment_job_skipped(job.queue, UNIQUE_CONFLICT)
            except Exception:
                pass
            return "conflict"
        except NotFoundError:
            logger.debug(f"Job {job.name} vanished before dispatch")
            return "missing"

        attempt = int(claimed.meta.pop(RESCUE_ATTEMPT, 1))
        if attempt > 1:
            # Consumed here; the next scheduled run starts with a fresh budget
            claimed = await self.store.update_job(claimed)

        producer = self.get_producer(claimed.queue)
        if not await producer.push(claimed, attempt=attempt):
            if attempt > 1:
                claimed.meta[RESCUE_ATTEMPT] = attempt
                await self.store.update_job(claimed)
            await self.store.release_lock(claimed.name, owner=self.node)
            return "rejected"
        return "dispatched"

    async def tick(self, now: Optional[datetime] = None) -> Dict[str, int]:
        if not self.peer.is_leader():
            return {"due": 0, "dispatched": 0, "conflicts": 0, "rejected": 0, "leader": 0}
        now = now or self.clock.now()
        counts = {"due": 0, "dispatched": 0, "conflicts": 0, "rejected": 0, "leader": 1}
        jobs = await self.fetch_due(now)
        counts["due"] = len(jobs)
        for job in jobs:
            result = await self.dispatch(job, now)
            if result == "dispatched":
                counts["dispatched"] += 1
            elif result == "conflict":
                counts["conflicts"] += 1
            elif result == "rejected":
                counts["rejected"] += 1
        self.ticks += 1
        try:
            increment_ticks("cron")
        except Exception:
            pass
        emit_event("scheduler.tick", attrs={"loop": "cron", "node": self.node, **counts})
        return counts

#
# End of cron_scheduler.py
#######################################################################################################################
