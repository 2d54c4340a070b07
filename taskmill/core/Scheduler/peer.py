"""
Leadership peers.

Only the leader dispatches due work. A peer answers ``is_leader()``; it does
not implement consensus:

* ``LocalPeer`` is always the leader (single node deployments, tests).
* ``StoreLeasePeer`` holds a store unique lock on ``scheduler:leader`` and
  renews it every ``ttl / 3`` seconds. If renewal fails the node resigns;
  another node takes over once the lease expires.
* ``PostgresAdvisoryPeer`` keeps a dedicated psycopg connection holding a
  session level ``pg_try_advisory_lock``. The server releases the lock when
  the session dies.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Optional

from loguru import logger

from taskmill.core.Metrics import set_leader

from .telemetry import emit_event


LEADER_LOCK_KEY = "scheduler:leader"


class Peer(ABC):
    """Leadership source consumed by the scheduler loops."""

    kind = "peer"

    def __init__(self, node: str):
        self.node = node
        self._leader = False

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    def is_leader(self) -> bool:
        return self._leader

    def leader(self) -> Optional[str]:
        """Name of the leader node when known (this node, or None)."""
        return self.node if self._leader else None

    def _set_leader(self, value: bool) -> None:
        if value == self._leader:
            return
        self._leader = value
        event = "peer.election" if value else "peer.resignation"
        if value:
            logger.info(f"Node {self.node} became scheduler leader ({self.kind})")
        else:
            logger.info(f"Node {self.node} resigned scheduler leadership ({self.kind})")
        emit_event(event, attrs={"node": self.node, "peer": self.kind})
        try:
            set_leader(self.kind, value)
        except Exception:
            pass


class LocalPeer(Peer):
    """Always the leader."""

    kind = "local"

    def __init__(self, node: str = "local"):
        super().__init__(node)
        self._leader = True

    async def start(self) -> None:
        self._leader = False
        self._set_leader(True)

    async def stop(self) -> None:
        self._set_leader(False)

    def is_leader(self) -> bool:
        return True


class _PollingPeer(Peer):
    """Runs ``_check()`` every ``interval`` seconds in a background task."""

    def __init__(self, node: str, interval: float):
        super().__init__(node)
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @abstractmethod
    async def _check(self) -> None:
        ...

    @abstractmethod
    async def _release(self) -> None:
        ...

    async def start(self) -> None:
        if self._task is not None:
            return
        await self._safe_check()
        self._task = asyncio.create_task(self._loop(), name=f"peer:{self.kind}:{self.node}")

    async def _safe_check(self) -> None:
        try:
            await self._check()
        except Exception as e:
            logger.warning(f"Leadership check failed on {self.node}: {e}")
            self._set_leader(False)

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self._safe_check()

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        try:
            await self._release()
        except Exception as e:
            logger.warning(f"Releasing leadership on {self.node} failed: {e}")
        self._set_leader(False)


class StoreLeasePeer(_PollingPeer):
    """Leadership as a renewable store lock."""

    kind = "store"

    def __init__(self, store, node: str, ttl: float = 30.0, key: str = LEADER_LOCK_KEY,
                 interval: Optional[float] = None):
        if ttl <= 0:
            raise ValueError(f"ttl must be > 0, got {ttl}")
        super().__init__(node, interval if interval is not None else ttl / 3.0)
        self.store = store
        self.ttl = ttl
        self.key = key

    async def _check(self) -> None:
        if self._leader:
            if await self.store.renew_unique_lock(self.key, self.node, self.ttl):
                return
            logger.warning(f"Node {self.node} lost the leader lease")
            self._set_leader(False)
        self._set_leader(await self.store.acquire_unique_lock(self.key, self.node, self.ttl))

    async def _release(self) -> None:
        if self._leader:
            await self.store.release_unique_lock(self.key, self.node)


# A bigint advisory key shows up in pg_locks split into classid (high 32 bits) and objid (low 32 bits)
HELD_ADVISORY_LOCK_SQL = (
    "SELECT EXISTS (SELECT 1 FROM pg_locks WHERE locktype = 'advisory' AND objsubid = 1 "
    "AND ((classid::bigint << 32) | objid::bigint) = %s AND pid = pg_backend_pid())"
)


class PostgresAdvisoryPeer(_PollingPeer):
    """Leadership as a PostgreSQL session advisory lock (psycopg 3)."""

    kind = "postgres"

    def __init__(self, dsn: str, node: str, lock_key: int = 123456789, interval: float = 10.0,
                 connect: Any = None):
        super().__init__(node, interval)
        self.dsn = dsn
        self.lock_key = int(lock_key)
        self._connect = connect
        self._conn = None

    async def _open(self):
        if self._connect is not None:
            return await self._connect(self.dsn)
        from psycopg import AsyncConnection

        return await AsyncConnection.connect(self.dsn, autocommit=True)

    async def _fetch_bool(self, sql: str) -> bool:
        cur = await self._conn.execute(sql, (self.lock_key,))
        row = await cur.fetchone()
        return bool(row[0]) if row else False

    async def _check(self) -> None:
        if self._conn is None:
            self._conn = await self._open()
        try:
            if self._leader:
                held = await self._fetch_bool(HELD_ADVISORY_LOCK_SQL)
                if not held:
                    logger.warning(f"Node {self.node} no longer holds advisory lock {self.lock_key}")
                self._set_leader(held)
                if held:
                    return
            self._set_leader(await self._fetch_bool("SELECT pg_try_advisory_lock(%s)"))
        except Exception:
            await self._close()
            raise

    async def _close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is not None:
            try:
                await conn.close()
            except Exception as e:
                logger.debug(f"Closing advisory lock connection failed: {e}")

    async def _release(self) -> None:
        try:
            if self._conn is not None and self._leader:
                await self._fetch_bool("SELECT pg_advisory_unlock(%s)")
        finally:
            await self._close()


def create_peer(config, store) -> Peer:
    """Build the peer named by ``config.peer``."""
    if config.peer == "store":
        return StoreLeasePeer(store, config.node, ttl=config.leader_ttl)
    if config.peer == "postgres":
        if not config.postgres_dsn:
            raise ValueError("peer=postgres requires SCHEDULER_POSTGRES_DSN")
        return PostgresAdvisoryPeer(config.postgres_dsn, config.node,
                                    lock_key=config.advisory_lock_key, interval=config.election_interval)
    return LocalPeer(config.node)
