"""
Dead letter queue.

Failures the error classifier will not retry again are persisted here for
manual inspection. An entry keeps enough of the job (module, function, args)
to understand what ran; ``retry`` puts the job back on schedule immediately.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from loguru import logger

from taskmill.core.Metrics import increment_dead_letter

from .clock import parse_dt
from .models import MAX_ERROR_CHARS, MAX_STACK_CHARS, Job, truncate
from .telemetry import emit_event


DeadLetterCallback = Callable[["DeadLetterEntry"], Union[None, Awaitable[None]]]


@dataclass
class DeadLetterEntry:
    job_name: str
    queue: str
    module: str
    function: str
    args: Any = field(default_factory=dict)
    error: Optional[str] = None
    error_class: Optional[str] = None
    attempts: int = 1
    first_failed_at: Optional[datetime] = None
    last_failed_at: Optional[datetime] = None
    stacktrace: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        self.error = truncate(self.error, MAX_ERROR_CHARS)
        self.stacktrace = truncate(self.stacktrace, MAX_STACK_CHARS)
        self.first_failed_at = parse_dt(self.first_failed_at)
        self.last_failed_at = parse_dt(self.last_failed_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "job_name": self.job_name,
            "queue": self.queue,
            "module": self.module,
            "function": self.function,
            "args": self.args,
            "error": self.error,
            "error_class": self.error_class,
            "attempts": self.attempts,
            "first_failed_at": self.first_failed_at.isoformat() if self.first_failed_at else None,
            "last_failed_at": self.last_failed_at.isoformat() if self.last_failed_at else None,
            "stacktrace": self.stacktrace,
            "meta": dict(self.meta),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeadLetterEntry":
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in data.items() if k in known})


class DeadLetterQueue:
    """Store-backed dead letter queue with an optional insert callback."""

    def __init__(self, store, on_dead_letter: Optional[DeadLetterCallback] = None, retention_days: int = 30):
        self.store = store
        self.on_dead_letter = on_dead_letter
        self.retention_days = retention_days

    async def insert(
        self,
        job: Job,
        error: Any,
        *,
        error_class: Optional[str] = None,
        attempts: int = 1,
        stacktrace: Optional[str] = None,
        first_failed_at: Optional[datetime] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> DeadLetterEntry:
        now = self.store.now()
        entry = DeadLetterEntry(
            job_name=job.name,
            queue=job.queue,
            module=job.module,
            function=job.function,
            args=job.args,
            error=str(error),
            error_class=error_class,
            attempts=attempts,
            first_failed_at=first_failed_at or now,
            last_failed_at=now,
            stacktrace=stacktrace,
            meta=dict(meta or {}),
        )
        await self.store.insert_dead_letter(entry)
        logger.warning(f"Job {job.name} moved to dead letter queue after {attempts} attempt(s): {entry.error}")
        emit_event("dead_letter.insert", job=job, attrs={"entry_id": entry.id, "error_class": error_class, "attempts": attempts})
        try:
            increment_dead_letter(job.queue)
        except Exception:
            pass
        if self.on_dead_letter is not None:
            try:
                res = self.on_dead_letter(entry)
                if asyncio.iscoroutine(res):
                    await res
            except Exception as e:
                logger.error(f"on_dead_letter callback failed for {job.name}: {e}")
        return entry

    async def list(self, queue: Optional[str] = None, since: Optional[datetime] = None, limit: int = 100) -> List[DeadLetterEntry]:
        return await self.store.list_dead_letters(queue=queue, since=since, limit=limit)

    async def get(self, entry_id: str) -> DeadLetterEntry:
        return await self.store.get_dead_letter(entry_id)

    async def retry(self, entry_id: str) -> Job:
        """Make the job due now and drop the entry."""
        entry = await self.store.get_dead_letter(entry_id)
        job = await self.store.get_job(entry.job_name)
        job.next_run_at = self.store.now()
        job = await self.store.update_job(job)
        await self.store.delete_dead_letter(entry_id)
        logger.info(f"Dead letter {entry_id} retried; job {job.name} due now")
        emit_event("dead_letter.retry", job=job, attrs={"entry_id": entry_id})
        return job

    async def delete(self, entry_id: str) -> bool:
        deleted = await self.store.delete_dead_letter(entry_id)
        if deleted:
            emit_event("dead_letter.delete", attrs={"entry_id": entry_id})
        return deleted

    async def prune(self, before: Optional[datetime] = None) -> int:
        cutoff = before or (self.store.now() - timedelta(days=self.retention_days))
        count = await self.store.prune_dead_letters(cutoff)
        if count:
            logger.info(f"Pruned {count} dead letter entries older than {cutoff.isoformat()}")
        emit_event("dead_letter.prune", attrs={"count": count, "before": cutoff.isoformat()})
        return count
