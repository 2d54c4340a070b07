"""
Middleware chain for job lifecycle interception.

A middleware subclasses ``Middleware`` and overrides any of the hooks; hooks
may be plain or ``async`` methods.

    class Timing(Middleware):
        async def before(self, job, ctx):
            ctx["t0"] = time.monotonic()
            return Continue(ctx)

        def on_complete(self, job, result, ctx):
            logger.info(f"{job.name} took {time.monotonic() - ctx['t0']:.3f}s")

Hook contract:

* ``before(job, ctx)``            -> ``Continue(ctx)`` or ``Halt(reason)``; forward order
* ``after(job, result, ctx)``     -> ``Ok(result)`` or ``Fail(reason)``; reverse order
* ``on_error(job, error, ctx)``   -> ``Ok(error)``, ``Retry(reason)`` or ``Ignore(reason)``;
  forward order, the first ``Retry``/``Ignore`` wins
* ``on_complete(job, result, ctx)``  always called, forward order

Returning ``None`` from a hook keeps the current value. A hook that raises is
logged and treated as if it returned ``None``.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Union

from loguru import logger


@dataclass
class Continue:
    ctx: Dict[str, Any]


@dataclass
class Halt:
    reason: Any


@dataclass
class Ok:
    value: Any = None


@dataclass
class Fail:
    reason: Any


@dataclass
class Retry:
    reason: Any


@dataclass
class Ignore:
    reason: Any = None


BeforeResult = Union[Continue, Halt]
AfterResult = Union[Ok, Fail]
ErrorResult = Union[Ok, Retry, Ignore]


class Middleware:
    """Base class; every hook is a no-op by default."""

    def before(self, job, ctx: Dict[str, Any]) -> Optional[BeforeResult]:
        return None

    def after(self, job, result: Any, ctx: Dict[str, Any]) -> Optional[AfterResult]:
        return None

    def on_error(self, job, error: Any, ctx: Dict[str, Any]) -> Optional[ErrorResult]:
        return None

    def on_complete(self, job, result: Any, ctx: Dict[str, Any]) -> None:
        return None

    def __repr__(self) -> str:
        return type(self).__name__


class LoggingMiddleware(Middleware):
    """Logs each run through loguru at a configurable level."""

    def __init__(self, level: str = "DEBUG"):
        self.level = level

    def before(self, job, ctx):
        logger.log(self.level, f"Job {job.name} starting (attempt {ctx.get('attempt', 1)})")
        return Continue(ctx)

    def on_error(self, job, error, ctx):
        logger.log(self.level, f"Job {job.name} failed: {error!r}")
        return Ok(error)

    def on_complete(self, job, result, ctx):
        logger.log(self.level, f"Job {job.name} finished: {result!r}")


class MiddlewareChain:
    """Ordered list of middleware run around one execution."""

    def __init__(self, middleware: Optional[Iterable[Middleware]] = None):
        self.middleware: List[Middleware] = list(middleware or [])

    def add(self, mw: Middleware) -> "MiddlewareChain":
        self.middleware.append(mw)
        return self

    def __len__(self) -> int:
        return len(self.middleware)

    def __bool__(self) -> bool:
        return bool(self.middleware)

    @staticmethod
    async def _call(mw: Middleware, hook: str, *args) -> Any:
        try:
            res = getattr(mw, hook)(*args)
            if inspect.isawaitable(res):
                res = await res
            return res
        except Exception as e:
            logger.warning(f"Middleware {mw!r}.{hook} raised: {e}")
            return None

    async def run_before(self, job, ctx: Dict[str, Any]) -> BeforeResult:
        for mw in self.middleware:
            res = await self._call(mw, "before", job, ctx)
            if isinstance(res, Halt):
                logger.info(f"Middleware {mw!r} halted job {job.name}: {res.reason}")
                return res
            if isinstance(res, Continue) and res.ctx is not None:
                ctx = res.ctx
        return Continue(ctx)

    async def run_after(self, job, result: Any, ctx: Dict[str, Any]) -> AfterResult:
        for mw in reversed(self.middleware):
            res = await self._call(mw, "after", job, result, ctx)
            if isinstance(res, Fail):
                return res
            if isinstance(res, Ok):
                result = res.value
        return Ok(result)

    async def run_error(self, job, error: Any, ctx: Dict[str, Any]) -> ErrorResult:
        for mw in self.middleware:
            res = await self._call(mw, "on_error", job, error, ctx)
            if isinstance(res, (Retry, Ignore)):
                return res
            if isinstance(res, Ok):
                error = res.value
        return Ok(error)

    async def run_complete(self, job, result: Any, ctx: Dict[str, Any]) -> None:
        for mw in self.middleware:
            await self._call(mw, "on_complete", job, result, ctx)
