"""
Scheduler and workflow metrics (Prometheus).

Instruments are created lazily on first use against the default prometheus
registry. Creating the same instrument twice (tests re-importing, several
Scheduler instances in one process) reuses the collector already registered.
Recording is best-effort: metrics must never break a job run.
"""

from __future__ import annotations

import os
from typing import Dict, List, Optional

from loguru import logger
from prometheus_client import Counter, Gauge, Histogram, REGISTRY, generate_latest


def _parse_buckets(env_key: str, default: List[float]) -> List[float]:
    try:
        raw = os.getenv(env_key, "")
        if not raw:
            return default
        vals = []
        for part in raw.split(","):
            s = part.strip()
            if not s:
                continue
            vals.append(float(s))
        return vals or default
    except Exception:
        return default


def _enabled() -> bool:
    return str(os.getenv("SCHEDULER_METRICS_ENABLED", "true")).strip().lower() in {"1", "true", "yes", "y", "on"}


_METRICS: Dict[str, object] = {}
SCHEDULER_METRICS_REGISTERED = False


def _existing(name: str):
    # prometheus_client registers counters under both `name` and `name_total`
    names = getattr(REGISTRY, "_names_to_collectors", {})
    return names.get(name) or names.get(f"{name}_total")


def _make(kind, name: str, doc: str, labels: List[str], **kwargs):
    try:
        return kind(name, doc, labels, **kwargs)
    except ValueError:
        collector = _existing(name)
        if collector is None:
            raise
        return collector


def ensure_scheduler_metrics_registered() -> None:
    """Create the scheduler instruments once per process."""
    global SCHEDULER_METRICS_REGISTERED
    if SCHEDULER_METRICS_REGISTERED:
        return
    duration_buckets = _parse_buckets(
        "SCHEDULER_DURATION_BUCKETS", [0.01, 0.05, 0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 300]
    )
    try:
        _METRICS["jobs_started"] = _make(
            Counter, "scheduler_jobs_started_total", "Job executions started", ["queue", "job"]
        )
        _METRICS["jobs_finished"] = _make(
            Counter, "scheduler_jobs_finished_total", "Job executions finished by outcome",
            ["queue", "job", "outcome"],
        )
        _METRICS["job_duration"] = _make(
            Histogram, "scheduler_job_duration_seconds", "Job execution duration in seconds",
            ["queue"], buckets=duration_buckets,
        )
        _METRICS["jobs_skipped"] = _make(
            Counter, "scheduler_jobs_skipped_total", "Due jobs skipped at dispatch", ["queue", "reason"]
        )
        _METRICS["jobs_rescued"] = _make(
            Counter, "scheduler_jobs_rescued_total", "Stuck executions rescued by the lifeline", ["queue"]
        )
        _METRICS["dead_letters"] = _make(
            Counter, "scheduler_dead_letters_total", "Jobs moved to the dead letter queue", ["queue"]
        )
        _METRICS["rate_limited"] = _make(
            Counter, "scheduler_rate_limited_total", "Rate limit rejections", ["bucket"]
        )
        _METRICS["ticks"] = _make(
            Counter, "scheduler_ticks_total", "Scheduler loop ticks", ["loop"]
        )
        _METRICS["circuit_state"] = _make(
            Gauge, "scheduler_circuit_state", "Circuit breaker state (0=closed, 1=open, 2=half_open)", ["circuit"]
        )
        _METRICS["circuit_trips"] = _make(
            Counter, "scheduler_circuit_trips_total", "Circuit breaker trips", ["circuit"]
        )
        _METRICS["leader"] = _make(
            Gauge, "scheduler_is_leader", "1 when this node holds scheduler leadership", ["peer"]
        )
        _METRICS["workflow_runs"] = _make(
            Counter, "scheduler_workflow_runs_total", "Workflow executions by final state", ["workflow", "state"]
        )
        _METRICS["workflow_steps"] = _make(
            Counter, "scheduler_workflow_steps_total", "Workflow steps by final state", ["workflow", "state"]
        )
        _METRICS["step_duration"] = _make(
            Histogram, "scheduler_workflow_step_duration_seconds", "Workflow step duration in seconds",
            ["workflow"], buckets=duration_buckets,
        )
    except Exception as e:  # pragma: no cover
        logger.debug(f"Scheduler metrics registration skipped: {e}")
    SCHEDULER_METRICS_REGISTERED = True


def _metric(key: str):
    if not _enabled():
        return None
    ensure_scheduler_metrics_registered()
    return _METRICS.get(key)


def increment_job_started(queue: str, job: str) -> None:
    m = _metric("jobs_started")
    if m is not None:
        m.labels(queue=queue, job=job).inc()


def increment_job_finished(queue: str, job: str, outcome: str) -> None:
    m = _metric("jobs_finished")
    if m is not None:
        m.labels(queue=queue, job=job, outcome=outcome).inc()


def observe_job_duration(queue: str, seconds: float) -> None:
    m = _metric("job_duration")
    if m is not None:
        m.labels(queue=queue).observe(max(0.0, float(seconds)))


def increment_job_skipped(queue: str, reason: str) -> None:
    m = _metric("jobs_skipped")
    if m is not None:
        m.labels(queue=queue, reason=reason).inc()


def increment_job_rescued(queue: str) -> None:
    m = _metric("jobs_rescued")
    if m is not None:
        m.labels(queue=queue).inc()


def increment_dead_letter(queue: str) -> None:
    m = _metric("dead_letters")
    if m is not None:
        m.labels(queue=queue).inc()


def increment_rate_limited(bucket: str) -> None:
    m = _metric("rate_limited")
    if m is not None:
        m.labels(bucket=bucket).inc()


def increment_ticks(loop: str) -> None:
    m = _metric("ticks")
    if m is not None:
        m.labels(loop=loop).inc()


def set_circuit_state(circuit: str, value: int) -> None:
    m = _metric("circuit_state")
    if m is not None:
        m.labels(circuit=circuit).set(value)


def increment_circuit_trips(circuit: str) -> None:
    m = _metric("circuit_trips")
    if m is not None:
        m.labels(circuit=circuit).inc()


def set_leader(peer: str, is_leader: bool) -> None:
    m = _metric("leader")
    if m is not None:
        m.labels(peer=peer).set(1 if is_leader else 0)


def increment_workflow_runs(workflow: str, state: str) -> None:
    m = _metric("workflow_runs")
    if m is not None:
        m.labels(workflow=workflow, state=state).inc()


def increment_workflow_steps(workflow: str, state: str) -> None:
    m = _metric("workflow_steps")
    if m is not None:
        m.labels(workflow=workflow, state=state).inc()


def observe_step_duration(workflow: str, seconds: Optional[float]) -> None:
    m = _metric("step_duration")
    if m is not None and seconds is not None:
        m.labels(workflow=workflow).observe(max(0.0, float(seconds)))


def export_prometheus_format() -> str:
    """Render the default registry in the Prometheus text exposition format."""
    ensure_scheduler_metrics_registered()
    return generate_latest(REGISTRY).decode("utf-8")
