# rate_limiter.py
# Description: Token-bucket admission control for job dispatch (worker, queue and global scopes)
#
# Imports
import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from loguru import logger

from taskmill.core.Metrics import increment_rate_limited

from .models import Job
from .telemetry import emit_event

#######################################################################################################################
#
# Types:

GLOBAL = "global"
QUEUE = "queue"
WORKER = "worker"

# Scopes are consulted in this order by check_job/acquire_job
SCOPE_ORDER = (WORKER, QUEUE, GLOBAL)


@dataclass
class RateLimitRule:
    """``limit`` tokens per ``period`` seconds; the bucket holds at most ``limit``."""
    limit: int
    period: float

    def __post_init__(self):
        if self.limit < 1:
            raise ValueError(f"limit must be >= 1, got {self.limit}")
        if self.period <= 0:
            raise ValueError(f"period must be > 0, got {self.period}")


@dataclass
class RateLimitResult:
    allowed: bool
    retry_after: float = 0.0
    bucket: Optional[str] = None

#######################################################################################################################
#
# Classes:

class TokenBucket:
    """
    Token bucket with a monotonic refill.
    """

    def __init__(self, capacity: int, refill_rate: float, time_fn: Callable[[], float] = time.monotonic):
        """
        Args:
            capacity: Maximum number of tokens
            refill_rate: Tokens added per second
        """
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.tokens = float(capacity)
        self._time = time_fn
        self.last_refill = time_fn()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._time()
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def _wait_for(self, tokens: int) -> float:
        missing = tokens - self.tokens
        return max(missing / self.refill_rate, 0.0)

    async def consume(self, tokens: int = 1) -> Tuple[bool, float]:
        """
        Try to consume tokens.

        Returns:
            (consumed, seconds until enough tokens would be available)
        """
        async with self._lock:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return True, 0.0
            return False, self._wait_for(tokens)

    async def peek(self, tokens: int = 1) -> Tuple[bool, float]:
        async with self._lock:
            self._refill()
            if self.tokens >= tokens:
                return True, 0.0
            return False, self._wait_for(tokens)

    async def refund(self, tokens: int = 1) -> None:
        """
        Return tokens to the bucket (clamped to capacity).
        """
        if tokens <= 0:
            return
        async with self._lock:
            self.tokens = min(self.capacity, self.tokens + tokens)


class RateLimiter:
    """
    Admission control with worker, queue and global token buckets.

    Unconfigured scopes always pass. When a later scope rejects a job, tokens
    already taken from earlier scopes are refunded so a rejected dispatch
    costs nothing.
    """

    def __init__(
        self,
        global_limit: Optional[RateLimitRule] = None,
        queue_limits: Optional[Dict[str, RateLimitRule]] = None,
        worker_limits: Optional[Dict[str, RateLimitRule]] = None,
        time_fn: Callable[[], float] = time.monotonic,
    ):
        self._time = time_fn
        self._buckets: Dict[Tuple[str, Optional[str]], TokenBucket] = {}
        self._rules: Dict[Tuple[str, Optional[str]], RateLimitRule] = {}
        if global_limit is not None:
            self.configure(GLOBAL, None, global_limit)
        for name, rule in (queue_limits or {}).items():
            self.configure(QUEUE, name, rule)
        for name, rule in (worker_limits or {}).items():
            self.configure(WORKER, name, rule)

    @staticmethod
    def _bucket_key(scope: str, key: Optional[str]) -> Tuple[str, Optional[str]]:
        if scope not in SCOPE_ORDER:
            raise ValueError(f"Unknown rate limit scope: {scope}")
        return (scope, None) if scope == GLOBAL else (scope, key)

    @staticmethod
    def _label(bucket_key: Tuple[str, Optional[str]]) -> str:
        scope, key = bucket_key
        return scope if key is None else f"{scope}:{key}"

    def configure(self, scope: str, key: Optional[str], rule: RateLimitRule) -> None:
        bk = self._bucket_key(scope, key)
        self._rules[bk] = rule
        self._buckets[bk] = TokenBucket(rule.limit, rule.limit / rule.period, self._time)
        logger.debug(f"Rate limit configured: {self._label(bk)} = {rule.limit}/{rule.period}s")

    def remove(self, scope: str, key: Optional[str] = None) -> None:
        bk = self._bucket_key(scope, key)
        self._rules.pop(bk, None)
        self._buckets.pop(bk, None)

    def _reject(self, bucket: str, retry_after: float, job: Optional[Job] = None) -> RateLimitResult:
        emit_event("rate_limit.exceeded", job=job, attrs={"bucket": bucket, "retry_after": retry_after})
        try:
            increment_rate_limited(bucket)
        except Exception:
            pass
        return RateLimitResult(allowed=False, retry_after=retry_after, bucket=bucket)

    async def check(self, scope: str, key: Optional[str] = None) -> RateLimitResult:
        """Would a token be available? Consumes nothing."""
        bk = self._bucket_key(scope, key)
        bucket = self._buckets.get(bk)
        if bucket is None:
            return RateLimitResult(allowed=True)
        ok, wait = await bucket.peek()
        return RateLimitResult(allowed=ok, retry_after=wait, bucket=self._label(bk))

    async def acquire(self, scope: str, key: Optional[str] = None) -> RateLimitResult:
        bk = self._bucket_key(scope, key)
        bucket = self._buckets.get(bk)
        if bucket is None:
            return RateLimitResult(allowed=True)
        ok, wait = await bucket.consume()
        if not ok:
            return self._reject(self._label(bk), wait)
        return RateLimitResult(allowed=True, bucket=self._label(bk))

    @staticmethod
    def _job_scopes(job: Job) -> List[Tuple[str, Optional[str]]]:
        return [(WORKER, job.worker), (QUEUE, job.queue), (GLOBAL, None)]

    async def check_job(self, job: Job) -> RateLimitResult:
        for scope, key in self._job_scopes(job):
            if scope == WORKER and key is None:
                continue
            res = await self.check(scope, key)
            if not res.allowed:
                return res
        return RateLimitResult(allowed=True)

    async def acquire_job(self, job: Job) -> RateLimitResult:
        taken: List[TokenBucket] = []
        for scope, key in self._job_scopes(job):
            if scope == WORKER and key is None:
                continue
            bk = self._bucket_key(scope, key)
            bucket = self._buckets.get(bk)
            if bucket is None:
                continue
            ok, wait = await bucket.consume()
            if not ok:
                for earlier in taken:
                    await earlier.refund()
                return self._reject(self._label(bk), wait, job)
            taken.append(bucket)
        return RateLimitResult(allowed=True)

    def status(self) -> Dict[str, Dict[str, float]]:
        out: Dict[str, Dict[str, float]] = {}
        for bk, bucket in self._buckets.items():
            rule = self._rules[bk]
            out[self._label(bk)] = {
                "tokens": round(bucket.tokens, 3),
                "limit": rule.limit,
                "period": rule.period,
            }
        return out

#
# End of rate_limiter.py
#######################################################################################################################
