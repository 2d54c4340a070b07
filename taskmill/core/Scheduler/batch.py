# batch.py
# Description: Chunked, resumable batch processing inside a job, with progress kept in job meta
#
# Imports
import asyncio
import time
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Callable, Dict, List, Optional, Tuple

from loguru import logger

from .exceptions import BatchError
from .executor import invoke
from .telemetry import emit_event

#######################################################################################################################
#
# Types:

# Job meta key holding the progress of the current pass over the data set
BATCH_META_KEY = "batch"

ON_ERROR_POLICIES = ("continue", "stop", "retry")
MAX_KEPT_ERRORS = 10


@dataclass
class BatchConfig:
    """
    ``on_error``: ``continue`` counts the failure and moves on, ``stop`` fails
    the run at the end of the chunk, ``retry`` tries the item up to
    ``item_retries`` times before counting it as failed.
    ``max_items`` bounds one run; the next run picks up where it stopped.
    """
    batch_size: int = 100
    max_items: Optional[int] = None
    concurrency: int = 1
    on_error: str = "continue"
    item_retries: int = 3
    checkpoint_interval: int = 100

    def __post_init__(self):
        if self.on_error not in ON_ERROR_POLICIES:
            raise ValueError(f"on_error must be one of {ON_ERROR_POLICIES}, got {self.on_error!r}")
        for name in ("batch_size", "concurrency", "item_retries", "checkpoint_interval"):
            if int(getattr(self, name)) < 1:
                raise ValueError(f"{name} must be >= 1")
        if self.max_items is not None and self.max_items < 1:
            raise ValueError("max_items must be >= 1")


@dataclass
class BatchProgress:
    # running | partial | completed | failed
    status: str = "running"
    cursor: Any = None
    processed: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    runs: int = 0
    started_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def resumable(self) -> bool:
        return self.status != "completed"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "BatchProgress":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in d.items() if k in known})


@dataclass
class BatchResult:
    status: str
    processed: int
    failed: int
    cursor: Any
    errors: List[str]
    resumed: bool
    duration_ms: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

#######################################################################################################################
#
# Worker:

class BatchWorker:
    """
    Walks a data set chunk by chunk from inside a job.

        async def import_orders():
            store = get_global_scheduler().store
            worker = BatchWorker(store, "import_orders", fetch_orders, import_order,
                                 BatchConfig(batch_size=500, on_error="retry"))
            return (await worker.run()).to_dict()

    ``fetch_items(cursor, batch_size)`` returns ``(items, next_cursor)``, where
    a ``next_cursor`` of None marks the last chunk. ``process_item(item)``
    succeeds unless it raises. Both may be sync or async.

    Progress (cursor, counts, last errors) is written to ``job.meta["batch"]``
    every ``checkpoint_interval`` items, at chunk boundaries only. A run that
    dies mid-chunk (worker crash, lifeline rescue, timeout) resumes from the
    last checkpoint on its next attempt, so items are processed at least once.
    A pass that completed starts over from a None cursor.
    """

    def __init__(
        self,
        store,
        job_name: str,
        fetch_items: Callable[[Any, int], Any],
        process_item: Callable[[Any], Any],
        config: Optional[BatchConfig] = None,
    ):
        self.store = store
        self.job_name = job_name
        self.fetch_items = fetch_items
        self.process_item = process_item
        self.config = config or BatchConfig()
        self.clock = store.clock
        self.progress = BatchProgress()
        self._since_checkpoint = 0

    async def load(self) -> bool:
        """Pick up saved progress; returns True when resuming an unfinished pass."""
        job = await self.store.get_job(self.job_name)
        saved = job.meta.get(BATCH_META_KEY)
        resumed = False
        if saved:
            previous = BatchProgress.from_dict(saved)
            if previous.resumable:
                self.progress = previous
                resumed = True
        if not resumed:
            self.progress = BatchProgress(started_at=self.clock.now().isoformat())
        self.progress.status = "running"
        self.progress.runs += 1
        return resumed

    async def checkpoint(self) -> None:
        self.progress.updated_at = self.clock.now().isoformat()
        job = await self.store.get_job(self.job_name)
        job.meta[BATCH_META_KEY] = self.progress.to_dict()
        await self.store.update_job(job)
        self._since_checkpoint = 0

    async def run(self) -> BatchResult:
        started = time.monotonic()
        resumed = await self.load()
        cfg = self.config
        logger.info(
            f"Batch {self.job_name} {'resumed at cursor ' + repr(self.progress.cursor) if resumed else 'started'} "
            f"(batch_size={cfg.batch_size}, concurrency={cfg.concurrency}, on_error={cfg.on_error})"
        )
        emit_event("batch.start", attrs={"job_name": self.job_name, "resumed": resumed,
                                         "cursor": self.progress.cursor, "batch_size": cfg.batch_size})

        run_items = 0
        while True:
            try:
                items, next_cursor = await self._fetch()
            except Exception as e:
                await self._fail(f"fetch failed: {e}")
                raise BatchError(self.job_name, f"fetch failed: {e}", self.progress.cursor) from e

            ok, failed, errors = await self._process_chunk(items)
            if errors and cfg.on_error == "stop":
                # The chunk is not committed; the next attempt redoes it
                await self._fail(errors[0])
                raise BatchError(self.job_name, errors[0], self.progress.cursor)

            self.progress.processed += ok
            self.progress.failed += failed
            self.progress.errors = (self.progress.errors + errors)[-MAX_KEPT_ERRORS:]
            self._since_checkpoint += len(items)
            run_items += len(items)

            if next_cursor is None:
                status = "completed"
                break
            self.progress.cursor = next_cursor
            if cfg.max_items is not None and run_items >= cfg.max_items:
                status = "partial"
                break
            if self._since_checkpoint >= cfg.checkpoint_interval:
                await self.checkpoint()
                emit_event("batch.progress", attrs={"job_name": self.job_name, "cursor": next_cursor,
                                                    "processed": self.progress.processed,
                                                    "failed": self.progress.failed})

        self.progress.status = status
        await self.checkpoint()
        result = self._result(status, resumed, started)
        logger.info(f"Batch {self.job_name} {status}: {result.processed} processed, {result.failed} failed "
                    f"in {result.duration_ms}ms")
        emit_event("batch.stop", attrs={"job_name": self.job_name, "status": status,
                                        "processed": result.processed, "failed": result.failed,
                                        "duration_ms": result.duration_ms})
        return result

    async def _fetch(self) -> Tuple[List[Any], Any]:
        fetched = await invoke(self.fetch_items, [self.progress.cursor, self.config.batch_size])
        if not isinstance(fetched, (tuple, list)) or len(fetched) != 2:
            raise TypeError(f"fetch_items must return (items, next_cursor), got {type(fetched).__name__}")
        items, next_cursor = fetched
        return list(items or []), next_cursor

    async def _process_chunk(self, items: List[Any]) -> Tuple[int, int, List[str]]:
        if self.config.concurrency == 1:
            outcomes = []
            for item in items:
                outcomes.append(await self._process(item))
                if outcomes[-1] is not None and self.config.on_error == "stop":
                    break
        else:
            sem = asyncio.Semaphore(self.config.concurrency)

            async def _bounded(item):
                async with sem:
                    return await self._process(item)

            outcomes = await asyncio.gather(*(_bounded(i) for i in items))
        errors = [o for o in outcomes if o is not None]
        return len(outcomes) - len(errors), len(errors), errors

    async def _process(self, item: Any) -> Optional[str]:
        """None on success, else a short error description."""
        attempts = self.config.item_retries if self.config.on_error == "retry" else 1
        error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                await invoke(self.process_item, [item])
                return None
            except Exception as e:
                error = e
                logger.debug(f"Batch {self.job_name} item failed (attempt {attempt}/{attempts}): {e}")
        return f"{type(error).__name__}: {error}"

    async def _fail(self, error: str) -> None:
        self.progress.status = "failed"
        self.progress.errors = (self.progress.errors + [error])[-MAX_KEPT_ERRORS:]
        await self.checkpoint()
        logger.warning(f"Batch {self.job_name} stopped at cursor {self.progress.cursor!r}: {error}")
        emit_event("batch.stop", attrs={"job_name": self.job_name, "status": "failed", "error": error})

    def _result(self, status: str, resumed: bool, started: float) -> BatchResult:
        return BatchResult(
            status=status,
            processed=self.progress.processed,
            failed=self.progress.failed,
            cursor=self.progress.cursor,
            errors=list(self.progress.errors),
            resumed=resumed,
            duration_ms=int((time.monotonic() - started) * 1000),
        )


async def run_batch(store, job_name: str, fetch_items, process_item, **options: Any) -> BatchResult:
    """Shortcut for ``BatchWorker(store, job_name, ..., BatchConfig(**options)).run()``."""
    return await BatchWorker(store, job_name, fetch_items, process_item, BatchConfig(**options)).run()

#
# End of batch.py
#######################################################################################################################
