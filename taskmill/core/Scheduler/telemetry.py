from __future__ import annotations

import os
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from .clock import utcnow


EventListener = Callable[[str, Dict[str, Any]], None]

_listeners: List[EventListener] = []

# Job fields copied onto every event payload
_JOB_KEYS = ("name", "queue", "worker", "priority")


def _truthy(key: str) -> bool:
    return str(os.getenv(key, "")).lower() in {"1", "true", "yes", "y", "on"}


def _events_enabled() -> bool:
    return _truthy("SCHEDULER_EVENTS_ENABLED")


def _tracing_enabled() -> bool:
    return _truthy("SCHEDULER_TRACING")


def add_listener(listener: EventListener) -> None:
    if listener not in _listeners:
        _listeners.append(listener)


def remove_listener(listener: EventListener) -> None:
    try:
        _listeners.remove(listener)
    except ValueError:
        pass


def clear_listeners() -> None:
    _listeners.clear()


def _job_meta(job: Any) -> Dict[str, Any]:
    if job is None:
        return {}
    if isinstance(job, dict):
        return {k: job.get(k) for k in _JOB_KEYS if k in job}
    return {k: getattr(job, k) for k in _JOB_KEYS if hasattr(job, k)}


def emit_event(event: str, *, job: Any = None, attrs: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Best-effort event emitter.

    Every event is delivered to registered listeners. When
    ``SCHEDULER_EVENTS_ENABLED=true`` a compact line is also logged.
    Listener failures are logged and never reach the caller.
    """
    payload: Dict[str, Any] = {"event": event, "at": utcnow().isoformat()}
    payload.update(_job_meta(job))
    if attrs:
        payload.update(attrs)
    if _events_enabled():
        try:
            logger.bind(scheduler_event=True).info(f"scheduler_event event={event} attrs={payload}")
        except Exception:
            pass
    for listener in list(_listeners):
        try:
            listener(event, payload)
        except Exception as e:
            logger.warning(f"Event listener failed for {event}: {e}")
    return payload


@contextmanager
def job_span(event: str, *, job: Any = None, attrs: Optional[Dict[str, Any]] = None):
    if not _tracing_enabled():
        yield
        return
    ts = time.time()
    meta = _job_meta(job)
    if attrs:
        meta.update(attrs)
    try:
        logger.bind(job_trace=True).info(f"job_span.start event={event} attrs={meta}")
        yield
    except Exception as e:
        logger.bind(job_trace=True).warning(f"job_span.error event={event} attrs={meta} err={e}")
        raise
    finally:
        meta2 = dict(meta)
        meta2["duration_ms"] = int((time.time() - ts) * 1000)
        logger.bind(job_trace=True).info(f"job_span.end event={event} attrs={meta2}")
