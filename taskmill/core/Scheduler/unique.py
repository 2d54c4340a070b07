"""
Unique job keys and the lock wrappers around the store primitive.

A key is built from the job fields named by its UniquePolicy (``name``,
``queue``, ``worker``, ``args``) joined by ``:``. Arguments are hashed: the
first 16 hex characters of the md5 of their canonical JSON, optionally
restricted to ``policy.keys``.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Optional

from loguru import logger

from .exceptions import UniqueConflictError
from .models import Job, UniquePolicy

if TYPE_CHECKING:  # pragma: no cover
    from .store.base import Store


LOCK_PREFIX = "job:"


def hash_args(args: Any, keys: Optional[list] = None) -> str:
    if keys is not None and isinstance(args, dict):
        args = {k: args.get(k) for k in keys}
    canonical = json.dumps(args, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.md5(canonical.encode("utf-8")).hexdigest()[:16]


def build_key(job: Job) -> str:
    policy = job.unique or UniquePolicy()
    parts = []
    for f in policy.by:
        if f == "name":
            parts.append(job.name)
        elif f == "queue":
            parts.append(job.queue)
        elif f == "worker":
            parts.append(job.worker or "")
        elif f == "args":
            parts.append(hash_args(job.args, policy.keys))
    return ":".join(parts)


def lock_key(job: Job) -> str:
    """Key under which the store holds the job's unique lock."""
    return LOCK_PREFIX + build_key(job)


async def check(job: Job, store: "Store", now: Optional[datetime] = None) -> bool:
    """True when a conflicting execution is recorded.

    Backends without a conflict query report no conflict; the lock still applies.
    """
    policy = job.unique or UniquePolicy()
    cutoff = None
    if policy.period:
        cutoff = (now or store.now()) - timedelta(seconds=policy.period)
    try:
        return await store.check_unique_conflict(build_key(job), policy.states, cutoff)
    except NotImplementedError:
        logger.debug(f"Store {type(store).__name__} has no conflict query; relying on lock for {job.name}")
        return False


async def acquire(job: Job, store: "Store", owner: str) -> str:
    key = lock_key(job)
    if not await store.acquire_unique_lock(key, owner, job.lock_ttl):
        raise UniqueConflictError(key)
    return key


async def release(job: Job, store: "Store", owner: str) -> bool:
    return await store.release_unique_lock(lock_key(job), owner)
