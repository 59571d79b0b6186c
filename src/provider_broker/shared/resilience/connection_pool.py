"""Per-service-key pool of reusable client handles.

A connection is owned by exactly one caller between ``acquire`` and
``release``.  When a key is at ``max_connections``, callers queue FIFO and a
released connection is handed *directly* to the oldest waiter, so a newcomer
can never slip in between the release and the waiter's wake-up.

All mutations of a key's state happen between ``await`` points on the event
loop, so each ``_ServicePool`` is its own unit of synchronisation and
independent keys never contend.
"""

from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

import structlog

from provider_broker.domain.exceptions import PoolAcquireTimeoutError, ResourceExhaustedError
from provider_broker.shared.resilience.scheduling import PeriodicTask

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]
ClientFactory = Callable[[], Awaitable[Any]]

# Handed to a waiter when a creation slot (not a connection) became free.
_SLOT_FREED = object()

_CLOSE_HOOKS = ("aclose", "close", "disconnect")


@dataclass(frozen=True, slots=True)
class ConnectionPoolConfig:
    max_connections: int = 10
    min_connections: int = 2
    max_idle_seconds: float = 300.0
    acquire_timeout_seconds: float = 30.0
    sweep_interval_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.max_connections < 1:
            raise ValueError("max_connections must be >= 1")
        if not 0 <= self.min_connections <= self.max_connections:
            raise ValueError("min_connections must be within [0, max_connections]")


@dataclass(slots=True)
class PooledConnection:
    id: str
    client: Any
    created_at: float
    last_used_at: float
    in_use: bool = False
    closed: bool = False


@dataclass(slots=True)
class _ServicePool:
    connections: list[PooledConnection] = field(default_factory=list)
    waiters: deque[asyncio.Future[Any]] = field(default_factory=deque)
    pending: int = 0

    @property
    def size(self) -> int:
        return len(self.connections) + self.pending


class ConnectionPool:
    """Bounded, FIFO-fair pool keyed by service key.

    Usage::

        pool = ConnectionPool(ConnectionPoolConfig(max_connections=5))
        async with pool.connection("brave-primary", make_client) as client:
            result = await client.execute(action, payload)
    """

    def __init__(
        self,
        config: ConnectionPoolConfig | None = None,
        *,
        clock: Clock = time.monotonic,
    ) -> None:
        self._config = config or ConnectionPoolConfig()
        self._clock = clock
        self._pools: dict[str, _ServicePool] = {}
        self._sweeper = PeriodicTask(
            "connection_pool_sweep",
            self.sweep,
            interval_s=self._config.sweep_interval_seconds,
        )
        self._sweeper.start()

    @property
    def config(self) -> ConnectionPoolConfig:
        return self._config

    def start(self) -> None:
        self._sweeper.start()

    # ── Acquire / release ────────────────────────────────────
    async def acquire(
        self,
        service_key: str,
        create_fn: ClientFactory,
        timeout: float | None = None,
    ) -> Any:
        """Claim an idle connection, create one, or wait in line.

        Raises:
            PoolAcquireTimeoutError: nothing became available in ``timeout`` seconds.
        """
        timeout = self._config.acquire_timeout_seconds if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            pool = self._pool(service_key)

            conn = self._claim_idle(pool)
            if conn is not None:
                return conn.client

            if pool.size < self._config.max_connections:
                conn = await self._create(service_key, pool, create_fn)
                if conn is None:
                    continue
                return conn.client

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise PoolAcquireTimeoutError(service_key, timeout)

            waiter: asyncio.Future[Any] = loop.create_future()
            pool.waiters.append(waiter)
            try:
                done, _ = await asyncio.wait({waiter}, timeout=remaining)
            except asyncio.CancelledError:
                self._abandon_waiter(pool, waiter)
                raise
            if not done:
                self._abandon_waiter(pool, waiter)
                logger.warning(
                    "pool_acquire_timeout",
                    service_key=service_key,
                    timeout_s=timeout,
                    waiting=len(pool.waiters),
                )
                raise PoolAcquireTimeoutError(service_key, timeout)

            handed = waiter.result()
            if handed is _SLOT_FREED:
                continue
            return handed.client

    def release(self, service_key: str, client: Any) -> None:
        """Return ``client`` to the pool.

        Releasing a client the pool does not hold as in-use is a no-op.
        """
        pool = self._pools.get(service_key)
        if pool is None:
            return
        conn = next((c for c in pool.connections if c.client is client), None)
        if conn is None or not conn.in_use:
            return
        conn.last_used_at = self._clock()
        self._hand_off(pool, conn)

    @asynccontextmanager
    async def connection(
        self,
        service_key: str,
        create_fn: ClientFactory,
        timeout: float | None = None,
    ) -> AsyncIterator[Any]:
        client = await self.acquire(service_key, create_fn, timeout)
        try:
            yield client
        finally:
            self.release(service_key, client)

    # ── Maintenance ──────────────────────────────────────────
    async def sweep(self) -> int:
        """Close idle connections past ``max_idle_seconds``; returns how many."""
        now = self._clock()
        evicted: list[tuple[str, PooledConnection]] = []

        for key, pool in list(self._pools.items()):
            stale = [
                c
                for c in pool.connections
                if not c.in_use and now - c.last_used_at > self._config.max_idle_seconds
            ]
            for conn in stale:
                pool.connections.remove(conn)
                evicted.append((key, conn))
            if not pool.connections and not pool.waiters and not pool.pending:
                del self._pools[key]

        for key, conn in evicted:
            await self._close(key, conn)
        if evicted:
            logger.info("pool_idle_sweep", evicted=len(evicted))
        return len(evicted)

    async def purge(self, service_key: str) -> None:
        """Forcibly close every connection of one key (e.g. after credential rotation).

        Queued callers are woken to create fresh connections.
        """
        pool = self._pools.pop(service_key, None)
        if pool is None:
            return
        while pool.waiters:
            waiter = pool.waiters.popleft()
            if not waiter.done():
                waiter.set_result(_SLOT_FREED)
        for conn in pool.connections:
            await self._close(service_key, conn)
        logger.info("pool_purged", service_key=service_key, closed=len(pool.connections))

    async def drain(self) -> None:
        """Close every connection across all keys exactly once and clear all queues."""
        await self._sweeper.stop()
        pools, self._pools = self._pools, {}
        closed = 0
        for key, pool in pools.items():
            while pool.waiters:
                waiter = pool.waiters.popleft()
                if not waiter.done():
                    waiter.set_exception(
                        ResourceExhaustedError(
                            f"Connection pool drained while waiting for {key!r}",
                            key=key,
                            code="POOL_DRAINED",
                        )
                    )
            for conn in pool.connections:
                await self._close(key, conn)
                closed += 1
        logger.info("pool_drained", keys=len(pools), closed=closed)

    def get_status(self) -> dict[str, dict[str, int]]:
        status: dict[str, dict[str, int]] = {}
        for key, pool in self._pools.items():
            active = sum(1 for c in pool.connections if c.in_use)
            status[key] = {
                "total": len(pool.connections),
                "active": active,
                "idle": len(pool.connections) - active,
            }
        return status

    # ── Internals ────────────────────────────────────────────
    def _pool(self, service_key: str) -> _ServicePool:
        pool = self._pools.get(service_key)
        if pool is None:
            pool = self._pools[service_key] = _ServicePool()
        return pool

    def _claim_idle(self, pool: _ServicePool) -> PooledConnection | None:
        for conn in pool.connections:
            if not conn.in_use and not conn.closed:
                conn.in_use = True
                conn.last_used_at = self._clock()
                return conn
        return None

    async def _create(
        self, service_key: str, pool: _ServicePool, create_fn: ClientFactory
    ) -> PooledConnection | None:
        pool.pending += 1
        try:
            client = await create_fn()
        except BaseException:
            pool.pending -= 1
            self._wake_for_slot(pool)
            raise
        pool.pending -= 1

        now = self._clock()
        conn = PooledConnection(
            id=f"{service_key}-{uuid.uuid4().hex[:12]}",
            client=client,
            created_at=now,
            last_used_at=now,
            in_use=True,
        )
        if self._pools.get(service_key) is not pool:
            # Key was purged or the pool drained while we were creating.
            await self._close(service_key, conn)
            return None
        pool.connections.append(conn)
        logger.debug("pool_connection_created", service_key=service_key, connection_id=conn.id)
        return conn

    def _hand_off(self, pool: _ServicePool, conn: PooledConnection) -> None:
        """Give ``conn`` to the oldest live waiter, or mark it idle."""
        while pool.waiters:
            waiter = pool.waiters.popleft()
            if waiter.done():
                continue
            conn.in_use = True
            conn.last_used_at = self._clock()
            waiter.set_result(conn)
            return
        conn.in_use = False

    def _wake_for_slot(self, pool: _ServicePool) -> None:
        while pool.waiters:
            waiter = pool.waiters.popleft()
            if not waiter.done():
                waiter.set_result(_SLOT_FREED)
                return

    def _abandon_waiter(self, pool: _ServicePool, waiter: asyncio.Future[Any]) -> None:
        """Undo a queued wait that timed out or was cancelled.

        If a connection (or slot) was handed over in the meantime it is passed
        on instead of leaking as in-use.
        """
        if not waiter.done():
            try:
                pool.waiters.remove(waiter)
            except ValueError:
                pass
            waiter.cancel()
            return
        if waiter.cancelled() or waiter.exception() is not None:
            return
        handed = waiter.result()
        if handed is _SLOT_FREED:
            self._wake_for_slot(pool)
        else:
            handed.last_used_at = self._clock()
            self._hand_off(pool, handed)

    async def _close(self, service_key: str, conn: PooledConnection) -> None:
        if conn.closed:
            return
        conn.closed = True
        conn.in_use = False
        for name in _CLOSE_HOOKS:
            hook = getattr(conn.client, name, None)
            if not callable(hook):
                continue
            try:
                result = hook()
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.warning(
                    "pool_connection_close_failed",
                    service_key=service_key,
                    connection_id=conn.id,
                    error=str(exc),
                )
            break
        logger.debug("pool_connection_closed", service_key=service_key, connection_id=conn.id)
