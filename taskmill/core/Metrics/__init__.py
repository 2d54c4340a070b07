from .scheduler_metrics import (
    ensure_scheduler_metrics_registered,
    export_prometheus_format,
    increment_job_started,
    increment_job_finished,
    observe_job_duration,
    increment_job_skipped,
    increment_job_rescued,
    increment_dead_letter,
    increment_rate_limited,
    increment_ticks,
    set_circuit_state,
    increment_circuit_trips,
    set_leader,
    increment_workflow_runs,
    increment_workflow_steps,
    observe_step_duration,
)

__all__ = [
    "ensure_scheduler_metrics_registered",
    "export_prometheus_format",
    "increment_job_started",
    "increment_job_finished",
    "observe_job_duration",
    "increment_job_skipped",
    "increment_job_rescued",
    "increment_dead_letter",
    "increment_rate_limited",
    "increment_ticks",
    "set_circuit_state",
    "increment_circuit_trips",
    "set_leader",
    "increment_workflow_runs",
    "increment_workflow_steps",
    "observe_step_duration",
]
