"""
Error classification for retry decisions.

An error is one of:

* a taxonomy code string (``"timeout"``, ``"undefined_function"``, ...)
* a ``(code, detail)`` tuple, e.g. ``("exit", "timeout")``
* an exception instance; ``JobError(code)`` is classified by its code

Classes and their retry behaviour:

* ``terminal``  never retried, discarded
* ``transient`` fixed 0.5s delay, 3 attempts
* ``retryable`` exponential from 1s up to 60s, 5 attempts, trips circuit breakers
* ``unknown``   exponential from 1s up to 30s, 3 attempts

Exceptions that match no pattern are treated as retryable (infrastructure faults).
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Iterable, Optional, Tuple

from .exceptions import JobError


RETRYABLE_PATTERNS: Tuple[Any, ...] = (
    "timeout",
    "connection_refused",
    "connection_closed",
    "econnrefused",
    "econnreset",
    "etimedout",
    "rate_limited",
    "service_unavailable",
    "bad_gateway",
    "gateway_timeout",
    ("exit", "timeout"),
    ("exit", "noproc"),
)

TERMINAL_PATTERNS: Tuple[Any, ...] = (
    "invalid_args",
    "invalid_argument",
    "not_found",
    "unauthorized",
    "forbidden",
    "bad_request",
    "validation_error",
    "schema_error",
    "undefined_function",
)

TRANSIENT_PATTERNS: Tuple[Any, ...] = (
    "busy",
    "overloaded",
    "try_again",
    "temporary_failure",
)


@dataclass(frozen=True)
class Classification:
    error_class: str
    retryable: bool
    max_retries: int
    strategy: str  # none | fixed | exponential
    base_delay: float
    max_delay: float
    trips_circuit: bool


TERMINAL = Classification("terminal", False, 0, "none", 0.0, 0.0, False)
TRANSIENT = Classification("transient", True, 3, "fixed", 0.5, 5.0, False)
RETRYABLE = Classification("retryable", True, 5, "exponential", 1.0, 60.0, True)
UNKNOWN = Classification("unknown", True, 3, "exponential", 1.0, 30.0, False)

# A class name used directly as a code selects that class
CLASSES = {c.error_class: c for c in (TERMINAL, TRANSIENT, RETRYABLE, UNKNOWN)}


@dataclass(frozen=True)
class NextAction:
    """``retry`` (after ``delay`` seconds), ``dead_letter`` or ``discard``."""
    action: str
    delay: float = 0.0

    @property
    def is_retry(self) -> bool:
        return self.action == "retry"


def _exception_code(exc: BaseException) -> Optional[str]:
    if isinstance(exc, JobError):
        return exc.code
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return "timeout"
    if isinstance(exc, ConnectionRefusedError):
        return "connection_refused"
    if isinstance(exc, ConnectionResetError):
        return "econnreset"
    if isinstance(exc, (ConnectionAbortedError, BrokenPipeError)):
        return "connection_closed"
    code = getattr(exc, "code", None)
    return code if isinstance(code, str) else None


class ErrorClassifier:
    """Pattern based classifier; subclass and override ``classify`` for custom rules."""

    def __init__(
        self,
        retryable_patterns: Iterable[Any] = RETRYABLE_PATTERNS,
        terminal_patterns: Iterable[Any] = TERMINAL_PATTERNS,
        transient_patterns: Iterable[Any] = TRANSIENT_PATTERNS,
        jitter: bool = True,
    ):
        self.retryable_patterns = tuple(retryable_patterns)
        self.terminal_patterns = tuple(terminal_patterns)
        self.transient_patterns = tuple(transient_patterns)
        self.jitter = jitter

    @staticmethod
    def _matches(error: Any, pattern: Any) -> bool:
        if isinstance(pattern, tuple):
            return isinstance(error, tuple) and tuple(error[:len(pattern)]) == pattern
        if isinstance(error, str):
            return error == pattern
        if isinstance(error, tuple) and error:
            return error[0] == pattern
        if isinstance(error, BaseException):
            return _exception_code(error) == pattern
        for attr in ("code", "reason", "type"):
            if getattr(error, attr, None) == pattern:
                return True
        if isinstance(error, dict):
            return any(error.get(k) == pattern for k in ("code", "reason", "type"))
        return False

    def _any(self, error: Any, patterns: Tuple[Any, ...]) -> bool:
        return any(self._matches(error, p) for p in patterns)

    def classify(self, error: Any) -> Classification:
        code = _exception_code(error) if isinstance(error, BaseException) else error
        if isinstance(code, str) and code in CLASSES:
            return CLASSES[code]
        if self._any(error, self.terminal_patterns):
            return TERMINAL
        if self._any(error, self.transient_patterns):
            return TRANSIENT
        if self._any(error, self.retryable_patterns):
            return RETRYABLE
        if isinstance(error, BaseException):
            return RETRYABLE
        if isinstance(error, tuple) and error and error[0] in ("exception", "exit"):
            return RETRYABLE
        return UNKNOWN

    def get_class(self, error: Any) -> str:
        return self.classify(error).error_class

    def retryable(self, error: Any) -> bool:
        return self.classify(error).retryable

    def terminal(self, error: Any) -> bool:
        return self.classify(error).error_class == "terminal"

    def trips_circuit(self, error: Any) -> bool:
        return self.classify(error).trips_circuit

    def max_attempts(self, error: Any) -> int:
        return self.classify(error).max_retries

    def retry_delay(self, error: Any, attempt: int) -> float:
        c = self.classify(error)
        if c.strategy == "none":
            return 0.0
        if c.strategy == "fixed":
            return c.base_delay
        delay = c.base_delay * (2 ** max(attempt - 1, 0))
        if self.jitter:
            delay += random.random() * delay * 0.1
        return min(delay, c.max_delay)

    def exhausted(self, error: Any, attempt: int) -> bool:
        return attempt >= self.classify(error).max_retries

    def next_action(self, error: Any, attempt: int) -> NextAction:
        c = self.classify(error)
        if not c.retryable:
            return NextAction("discard")
        if attempt >= c.max_retries:
            return NextAction("dead_letter")
        return NextAction("retry", self.retry_delay(error, attempt))

