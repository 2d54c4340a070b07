# schemas.py
# Declarative job specifications accepted by Scheduler.register_job

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .cron import is_valid_cron
from .models import Job, ScheduleType


class UniqueSpec(BaseModel):
    """Uniqueness options (all optional; ``unique: true`` uses the defaults)"""
    by: List[str] = Field(default_factory=lambda: ["name"])
    states: List[str] = Field(default_factory=lambda: ["running"])
    period: Optional[float] = Field(default=None, gt=0, description="Lock TTL in seconds; defaults to the job timeout")
    keys: Optional[List[str]] = Field(default=None, description="Restrict the args hash to these keys")


class JobSpec(BaseModel):
    """Declarative job description.

    Exactly one of ``cron``, ``every``, ``at`` or ``reboot`` selects the schedule.
    The callable is given either as ``module`` + ``function`` or as
    ``ref="package.module:function"``.
    """
    name: str = Field(..., pattern=r"^[a-z][a-z0-9_]*$")
    ref: Optional[str] = Field(default=None, description="'module:function' shorthand")
    module: Optional[str] = None
    function: Optional[str] = None
    args: Union[Dict[str, Any], List[Any]] = Field(default_factory=dict)

    cron: Optional[Union[str, List[str]]] = None
    every: Optional[float] = Field(default=None, gt=0, description="Interval in seconds")
    at: Optional[datetime] = None
    reboot: bool = False
    timezone: str = "UTC"

    queue: str = "default"
    worker: Optional[str] = None
    priority: int = Field(default=0, ge=0, le=9)
    max_retries: int = Field(default=3, ge=0)
    retry_delay: float = Field(default=5.0, ge=0)
    timeout: float = Field(default=60.0, gt=0)
    unique: Union[bool, UniqueSpec] = False
    circuit_breaker: Optional[str] = None
    enabled: bool = True
    paused: bool = False
    tags: List[str] = Field(default_factory=list)
    meta: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")

    @field_validator("cron")
    @classmethod
    def _check_cron(cls, v):
        if v is None:
            return v
        exprs = [v] if isinstance(v, str) else list(v)
        if not exprs:
            raise ValueError("cron needs at least one expression")
        bad = [e for e in exprs if not is_valid_cron(e)]
        if bad:
            raise ValueError(f"invalid cron expression(s): {bad}")
        return exprs

    @model_validator(mode="after")
    def _check_target_and_schedule(self):
        if self.ref:
            module, sep, function = self.ref.partition(":")
            if not sep or not module or not function:
                raise ValueError("ref must look like 'package.module:function'")
            self.module, self.function = module, function
        if not self.module or not self.function:
            raise ValueError("either ref or module + function is required")
        chosen = [k for k, v in (("cron", self.cron), ("every", self.every), ("at", self.at), ("reboot", self.reboot or None)) if v]
        if len(chosen) != 1:
            raise ValueError(f"exactly one of cron/every/at/reboot is required, got {chosen or 'none'}")
        return self

    def schedule_type(self) -> ScheduleType:
        if self.cron:
            return ScheduleType.CRON
        if self.every:
            return ScheduleType.INTERVAL
        if self.at:
            return ScheduleType.AT
        return ScheduleType.REBOOT

    def to_job(self) -> Job:
        st = self.schedule_type()
        if st == ScheduleType.CRON:
            schedule: Dict[str, Any] = {"expressions": list(self.cron)}
        elif st == ScheduleType.INTERVAL:
            schedule = {"every": self.every}
        elif st == ScheduleType.AT:
            schedule = {"at": self.at}
        else:
            schedule = {}
        unique: Any = self.unique.model_dump() if isinstance(self.unique, UniqueSpec) else self.unique
        return Job(
            name=self.name,
            module=self.module,
            function=self.function,
            args=self.args,
            schedule_type=st,
            schedule=schedule,
            timezone=self.timezone,
            enabled=self.enabled,
            paused=self.paused,
            queue=self.queue,
            worker=self.worker,
            priority=self.priority,
            max_retries=self.max_retries,
            retry_delay=self.retry_delay,
            timeout=self.timeout,
            unique=unique,
            circuit_breaker=self.circuit_breaker,
            tags=list(self.tags),
            meta=dict(self.meta),
        )


def coerce_job(spec: Union[Job, JobSpec, Dict[str, Any]]) -> Job:
    """Accept a Job, a JobSpec or a plain dict and return a Job."""
    if isinstance(spec, Job):
        return spec
    if isinstance(spec, JobSpec):
        return spec.to_job()
    if isinstance(spec, dict):
        # Stored job rows carry schedule_type; declarative dicts use the shortcut fields
        if "schedule_type" in spec:
            return Job.from_dict(spec)
        return JobSpec.model_validate(spec).to_job()
    raise TypeError(f"Cannot build a Job from {type(spec).__name__}")
