"""
Structured logging context for job and workflow runs.

    with log_context(job_name=job.name, execution_id=execution.id, queue=job.queue) as log:
        log.info("Running")

Fields are attached through ``logger.contextualize``, which lives in a
contextvar: every log line emitted inside the block carries them, including
lines from user job code and from tasks spawned inside the block.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator

from loguru import logger


@contextmanager
def log_context(**fields: Any) -> Iterator[Any]:
    """Contextualize the logger with ``fields`` (None values dropped) and yield a bound logger."""
    present = {k: v for k, v in fields.items() if v is not None}
    with logger.contextualize(**present):
        yield logger.bind(**present)
