# exceptions.py
# Description: Error taxonomy for the scheduler engine
#
"""
Scheduler Exceptions
--------------------

Exception hierarchy raised by the store, the executor and the workflow engine.
Every class carries a taxonomy ``code`` so that callers and telemetry can refer
to failures without matching on class names.
"""

from typing import Any, Dict, Optional


# Taxonomy codes
TIMEOUT = "timeout"
EXCEPTION = "exception"
EXIT = "exit"
CIRCUIT_OPEN = "circuit_open"
RATE_LIMITED = "rate_limited"
UNIQUE_CONFLICT = "unique_conflict"
LOCK_EXPIRED = "lock_expired"
RESCUED = "rescued"
UNDEFINED_FUNCTION = "undefined_function"
MIDDLEWARE_HALT = "middleware_halt"

ERROR_CODES = frozenset({
    TIMEOUT, EXCEPTION, EXIT, CIRCUIT_OPEN, RATE_LIMITED, UNIQUE_CONFLICT,
    LOCK_EXPIRED, RESCUED, UNDEFINED_FUNCTION, MIDDLEWARE_HALT,
})


class SchedulerError(Exception):
    """Base exception for all scheduler errors."""

    code = "scheduler_error"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.context = context or {}
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "context": self.context,
            "cause": str(self.cause) if self.cause else None,
        }


class StoreError(SchedulerError):
    """Raised when the persistence backend fails (connectivity, corrupt row)."""

    code = "store_error"


class AlreadyExistsError(StoreError):
    """Raised when registering a name that is already taken."""

    code = "already_exists"

    def __init__(self, kind: str, name: str):
        super().__init__(f"{kind} already exists: {name}", context={"kind": kind, "name": name})
        self.kind = kind
        self.name = name


class NotFoundError(StoreError):
    """Raised when a job, workflow or record does not exist."""

    code = "not_found"

    def __init__(self, kind: str, name: str):
        super().__init__(f"{kind} not found: {name}", context={"kind": kind, "name": name})
        self.kind = kind
        self.name = name


class UniqueConflictError(SchedulerError):
    """Raised when a unique lock is already held by another execution."""

    code = UNIQUE_CONFLICT

    def __init__(self, key: str, message: Optional[str] = None):
        super().__init__(message or f"Unique lock held: {key}", context={"key": key})
        self.key = key


class InvalidTransitionError(SchedulerError):
    """Raised when a state change is not allowed by the transition table."""

    code = "invalid_transition"

    def __init__(self, entity: str, current: str, target: str):
        super().__init__(
            f"Invalid {entity} transition: {current} -> {target}",
            context={"entity": entity, "from": current, "to": target},
        )
        self.entity = entity
        self.current = current
        self.target = target


class InvalidCronExpressionError(SchedulerError, ValueError):
    """Raised for malformed cron expressions."""

    code = "invalid_cron"


class WorkflowValidationError(SchedulerError, ValueError):
    """Raised by Workflow.build() for cycles or missing dependencies."""

    code = "invalid_workflow"


class RateLimitedError(SchedulerError):
    """Raised when admission is refused by the rate limiter."""

    code = RATE_LIMITED

    def __init__(self, bucket: str, retry_after: float):
        super().__init__(
            f"Rate limited on {bucket}; retry after {retry_after:.2f}s",
            context={"bucket": bucket, "retry_after": retry_after},
        )
        self.bucket = bucket
        self.retry_after = retry_after


class CircuitOpenError(SchedulerError):
    """Raised when circuit breaker is open."""

    code = CIRCUIT_OPEN


class JobError(Exception):
    """Raise from job code to pick how the failure is classified.

    ``JobError("terminal", "bad input")`` is never retried,
    ``JobError("transient", ...)`` retries quickly, and so on.
    """

    def __init__(self, code: str, message: str = ""):
        super().__init__(message or code)
        self.code = code
        self.message = message or code


class BatchError(SchedulerError):
    """Raised by a batch run that stopped early; its cursor is kept for the next attempt."""

    code = "batch_failed"

    def __init__(self, job_name: str, message: str, cursor: Any = None):
        super().__init__(f"Batch {job_name} failed: {message}", context={"job": job_name, "cursor": cursor})
        self.job_name = job_name
        self.cursor = cursor
