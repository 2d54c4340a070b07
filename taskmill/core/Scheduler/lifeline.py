# lifeline.py
# Description: Periodic sweep rescuing executions whose heartbeat went stale
#
# Imports
import asyncio
from datetime import datetime, timedelta
from typing import Dict, Optional

from loguru import logger

from taskmill.core.Metrics import increment_job_rescued

from .clock import Clock
from .exceptions import RESCUED, NotFoundError
from .models import Execution
from .peer import Peer
from .telemetry import emit_event

# Job meta key carrying the attempt number of the run that replaces a rescued one
RESCUE_ATTEMPT = "rescue_attempt"

#######################################################################################################################
#
# Classes:

class Lifeline:
    """
    Rescues work left behind by dead workers.

    On every sweep (leader only) a running execution whose ``heartbeat_at`` is
    older than ``rescue_after`` seconds is marked ``rescued`` and the unique
    lock it held is released. Its job is made due immediately when
    ``attempt < max_retries``, otherwise the run is recorded as a failure.
    The replacement run is dispatched as ``attempt + 1`` so a job whose
    workers keep dying runs out of retries.

    ``mark_execution_rescued`` only succeeds for a still-running execution, so
    sweeping the same execution twice changes nothing the second time.

    Each sweep also removes expired locks and prunes old terminal executions.
    """

    def __init__(
        self,
        store,
        peer: Peer,
        interval: float = 60.0,
        rescue_after: float = 300.0,
        clock: Optional[Clock] = None,
        execution_retention_days: Optional[int] = 7,
        prune_limit: int = 10000,
    ):
        self.store = store
        self.peer = peer
        self.interval = interval
        self.rescue_after = rescue_after
        self.clock = clock or store.clock
        self.execution_retention_days = execution_retention_days
        self.prune_limit = prune_limit
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._loop(), name="lifeline")
        logger.info(f"Lifeline started (interval={self.interval}s, rescue_after={self.rescue_after}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Lifeline sweep failed: {e}")

    async def sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        counts = {"stuck": 0, "rescued": 0, "rescheduled": 0, "discarded": 0, "locks_expired": 0, "pruned": 0}
        if not self.peer.is_leader():
            return counts
        now = now or self.clock.now()
        stuck = await self.store.get_stuck_executions(now - timedelta(seconds=self.rescue_after))
        counts["stuck"] = len(stuck)
        for execution in stuck:
            outcome = await self.rescue(execution, now)
            if outcome is not None:
                counts["rescued"] += 1
                counts[outcome] += 1

        counts["locks_expired"] = await self.store.cleanup_expired_locks()
        if self.execution_retention_days:
            cutoff = now - timedelta(days=self.execution_retention_days)
            counts["pruned"] = await self.store.prune_executions(before=cutoff, limit=self.prune_limit)
        if counts["rescued"]:
            logger.warning(
                f"Lifeline rescued {counts['rescued']} execution(s): "
                f"{counts['rescheduled']} rescheduled, {counts['discarded']} discarded"
            )
        return counts

    async def rescue(self, execution: Execution, now: datetime) -> Optional[str]:
        """Rescue one execution. Returns ``rescheduled``, ``discarded`` or None if already handled."""
        if not await self.store.mark_execution_rescued(execution.id):
            return None
        try:
            job = await self.store.get_job(execution.job_name)
        except NotFoundError:
            logger.warning(f"Rescued execution {execution.id} of deleted job {execution.job_name}")
            return "discarded"

        # The lock owner is the node that ran the execution
        await self.store.release_lock(job.name, owner=execution.node)

        if execution.attempt < job.max_retries:
            job.next_run_at = now
            job.meta[RESCUE_ATTEMPT] = execution.attempt + 1
            await self.store.update_job(job)
            outcome = "rescheduled"
            logger.info(f"Job {job.name} rescued (attempt {execution.attempt}/{job.max_retries}); due now")
        else:
            if job.meta.pop(RESCUE_ATTEMPT, None) is not None:
                await self.store.update_job(job)
            await self.store.mark_failed(
                job.name,
                f"{RESCUED}: stuck execution {execution.id} on {execution.node} (no retries left)",
                owner=execution.node,
            )
            outcome = "discarded"
            logger.warning(f"Job {job.name} rescued with no retries left; discarded")

        emit_event("job.rescue", job=job, attrs={
            "execution_id": execution.id,
            "node": execution.node,
            "attempt": execution.attempt,
            "outcome": outcome,
        })
        try:
            increment_job_rescued(job.queue)
        except Exception:
            pass
        return outcome

#
# End of lifeline.py
#######################################################################################################################
