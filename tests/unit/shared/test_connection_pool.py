"""Tests for the per-key connection pool."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from conftest import FakeClock
from provider_broker.domain.exceptions import PoolAcquireTimeoutError, ResourceExhaustedError
from provider_broker.shared.resilience.connection_pool import ConnectionPool, ConnectionPoolConfig


class Handle:
    """Stand-in client that counts how often it was closed."""

    created = 0

    def __init__(self) -> None:
        Handle.created += 1
        self.n = Handle.created
        self.closes = 0

    async def aclose(self) -> None:
        self.closes += 1


async def make_handle() -> Handle:
    return Handle()


def make_pool(clock: FakeClock, **overrides: Any) -> ConnectionPool:
    values: dict[str, Any] = {
        "max_connections": 2,
        "min_connections": 0,
        "max_idle_seconds": 10,
        "acquire_timeout_seconds": 1,
    }
    values.update(overrides)
    return ConnectionPool(ConnectionPoolConfig(**values), clock=clock)


# ═══════════════════════════════════════════════════════════════
#  Config
# ═══════════════════════════════════════════════════════════════
class TestConnectionPoolConfig:
    def test_defaults(self) -> None:
        cfg = ConnectionPoolConfig()
        assert (cfg.max_connections, cfg.min_connections) == (10, 2)
        assert cfg.max_idle_seconds == 300
        assert cfg.acquire_timeout_seconds == 30

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_connections": 0}, {"max_connections": 2, "min_connections": 3}, {"min_connections": -1}],
    )
    def test_rejects_invalid_bounds(self, kwargs: dict[str, int]) -> None:
        with pytest.raises(ValueError):
            ConnectionPoolConfig(**kwargs)


# ═══════════════════════════════════════════════════════════════
#  Acquire / release
# ═══════════════════════════════════════════════════════════════
class TestAcquireRelease:
    @pytest.mark.asyncio
    async def test_released_connection_is_reused(self, clock: FakeClock) -> None:
        pool = make_pool(clock)
        first = await pool.acquire("svc", make_handle)
        pool.release("svc", first)
        second = await pool.acquire("svc", make_handle)
        assert second is first
        assert pool.get_status()["svc"] == {"total": 1, "active": 1, "idle": 0}

    @pytest.mark.asyncio
    async def test_never_exceeds_max_connections(self, clock: FakeClock) -> None:
        pool = make_pool(clock, max_connections=2)
        a = await pool.acquire("svc", make_handle)
        b = await pool.acquire("svc", make_handle)
        assert a is not b
        with pytest.raises(PoolAcquireTimeoutError):
            await pool.acquire("svc", make_handle, timeout=0.05)
        assert pool.get_status()["svc"]["total"] == 2

    @pytest.mark.asyncio
    async def test_keys_are_independent(self, clock: FakeClock) -> None:
        pool = make_pool(clock, max_connections=1)
        await pool.acquire("a", make_handle)
        b = await pool.acquire("b", make_handle, timeout=0.05)
        assert b is not None

    @pytest.mark.asyncio
    async def test_waiters_are_served_fifo(self, clock: FakeClock) -> None:
        pool = make_pool(clock, max_connections=1)
        held = await pool.acquire("svc", make_handle)
        order: list[str] = []

        async def waiter(name: str) -> None:
            client = await pool.acquire("svc", make_handle)
            order.append(name)
            await asyncio.sleep(0)
            pool.release("svc", client)

        first = asyncio.create_task(waiter("first"))
        await asyncio.sleep(0)
        second = asyncio.create_task(waiter("second"))
        await asyncio.sleep(0)

        pool.release("svc", held)
        await asyncio.gather(first, second)
        assert order == ["first", "second"]
        assert pool.get_status()["svc"] == {"total": 1, "active": 0, "idle": 1}

    @pytest.mark.asyncio
    async def test_release_hands_connection_to_waiter_not_newcomer(self, clock: FakeClock) -> None:
        pool = make_pool(clock, max_connections=1)
        held = await pool.acquire("svc", make_handle)
        waiting = asyncio.create_task(pool.acquire("svc", make_handle))
        await asyncio.sleep(0)

        pool.release("svc", held)
        with pytest.raises(PoolAcquireTimeoutError):
            await pool.acquire("svc", make_handle, timeout=0.01)
        assert await waiting is held

    @pytest.mark.asyncio
    async def test_failed_creation_frees_slot_for_waiter(self, clock: FakeClock) -> None:
        pool = make_pool(clock, max_connections=1)
        gate = asyncio.Event()

        async def failing_create() -> Handle:
            await gate.wait()
            raise ConnectionError("vendor down")

        creator = asyncio.create_task(pool.acquire("svc", failing_create))
        await asyncio.sleep(0)
        waiter = asyncio.create_task(pool.acquire("svc", make_handle))
        await asyncio.sleep(0)

        gate.set()
        with pytest.raises(ConnectionError):
            await creator
        client = await asyncio.wait_for(waiter, timeout=1)
        assert isinstance(client, Handle)
        assert pool.get_status()["svc"]["total"] == 1

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_leak(self, clock: FakeClock) -> None:
        pool = make_pool(clock, max_connections=1)
        held = await pool.acquire("svc", make_handle)
        waiting = asyncio.create_task(pool.acquire("svc", make_handle))
        await asyncio.sleep(0)
        waiting.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiting

        pool.release("svc", held)
        assert pool.get_status()["svc"] == {"total": 1, "active": 0, "idle": 1}
        assert await pool.acquire("svc", make_handle, timeout=0.05) is held

    @pytest.mark.asyncio
    async def test_release_of_unknown_client_is_noop(self, clock: FakeClock) -> None:
        pool = make_pool(clock)
        client = await pool.acquire("svc", make_handle)
        pool.release("svc", Handle())
        pool.release("other", client)
        pool.release("svc", client)
        pool.release("svc", client)  # double release
        assert pool.get_status()["svc"] == {"total": 1, "active": 0, "idle": 1}

    @pytest.mark.asyncio
    async def test_context_manager_releases_on_error(self, clock: FakeClock) -> None:
        pool = make_pool(clock)
        with pytest.raises(RuntimeError):
            async with pool.connection("svc", make_handle):
                raise RuntimeError("inside")
        assert pool.get_status()["svc"]["active"] == 0


# ═══════════════════════════════════════════════════════════════
#  Maintenance
# ═══════════════════════════════════════════════════════════════
class TestMaintenance:
    @pytest.mark.asyncio
    async def test_sweep_closes_idle_connections(self, clock: FakeClock) -> None:
        pool = make_pool(clock, max_connections=3, min_connections=0)
        handles = [await pool.acquire("svc", make_handle) for _ in range(3)]
        for h in handles:
            pool.release("svc", h)

        clock.advance(5)
        assert await pool.sweep() == 0
        clock.advance(6)
        assert await pool.sweep() == 3
        assert all(h.closes == 1 for h in handles)
        assert "svc" not in pool.get_status()

    @pytest.mark.asyncio
    async def test_sweep_evicts_stale_connections_below_min(self, clock: FakeClock) -> None:
        pool = make_pool(clock, max_connections=3, min_connections=2)
        handles = [await pool.acquire("svc", make_handle) for _ in range(2)]
        for h in handles:
            pool.release("svc", h)
        clock.advance(10_000)
        assert await pool.sweep() == 2
        assert all(h.closes == 1 for h in handles)
        assert "svc" not in pool.get_status()

    @pytest.mark.asyncio
    async def test_sweep_keeps_fresh_connections(self, clock: FakeClock) -> None:
        pool = make_pool(clock, max_connections=3)
        first = await pool.acquire("svc", make_handle)
        second = await pool.acquire("svc", make_handle)
        pool.release("svc", first)
        clock.advance(8)
        pool.release("svc", second)
        clock.advance(3)
        assert await pool.sweep() == 1
        assert (first.closes, second.closes) == (1, 0)
        assert pool.get_status()["svc"] == {"total": 1, "active": 0, "idle": 1}

    @pytest.mark.asyncio
    async def test_sweep_never_touches_in_use(self, clock: FakeClock) -> None:
        pool = make_pool(clock)
        held = await pool.acquire("svc", make_handle)
        clock.advance(3600)
        assert await pool.sweep() == 0
        assert held.closes == 0

    @pytest.mark.asyncio
    async def test_purge_closes_key_and_wakes_waiters(self, clock: FakeClock) -> None:
        pool = make_pool(clock, max_connections=1)
        held = await pool.acquire("svc", make_handle)
        waiting = asyncio.create_task(pool.acquire("svc", make_handle))
        await asyncio.sleep(0)

        await pool.purge("svc")
        fresh = await asyncio.wait_for(waiting, timeout=1)
        assert held.closes == 1
        assert fresh is not held
        # The purged handle is no longer tracked.
        pool.release("svc", held)
        assert pool.get_status()["svc"] == {"total": 1, "active": 1, "idle": 0}

    @pytest.mark.asyncio
    async def test_drain_closes_everything_once(self, clock: FakeClock) -> None:
        pool = make_pool(clock, max_connections=1)
        a = await pool.acquire("a", make_handle)
        b = await pool.acquire("b", make_handle)
        pool.release("b", b)
        waiting = asyncio.create_task(pool.acquire("a", make_handle))
        await asyncio.sleep(0)

        await pool.drain()
        await pool.drain()

        with pytest.raises(ResourceExhaustedError) as exc_info:
            await waiting
        assert exc_info.value.code == "POOL_DRAINED"
        assert (a.closes, b.closes) == (1, 1)
        assert pool.get_status() == {}

    @pytest.mark.asyncio
    async def test_close_hook_errors_are_swallowed(self, clock: FakeClock) -> None:
        class Broken:
            async def aclose(self) -> None:
                raise OSError("socket already gone")

        async def make_broken() -> Broken:
            return Broken()

        pool = make_pool(clock)
        client = await pool.acquire("svc", make_broken)
        pool.release("svc", client)
        await pool.purge("svc")
        assert pool.get_status() == {}


@pytest.mark.asyncio
async def test_third_caller_receives_the_released_connection(clock: FakeClock) -> None:
    pool = make_pool(clock, max_connections=2)
    results = await asyncio.gather(
        pool.acquire("svc", make_handle),
        pool.acquire("svc", make_handle),
        asyncio.wait_for(pool.acquire("svc", make_handle), timeout=0.01),
        return_exceptions=True,
    )
    assert isinstance(results[2], (PoolAcquireTimeoutError, asyncio.TimeoutError))

    second = results[1]
    third = asyncio.create_task(pool.acquire("svc", make_handle))
    await asyncio.sleep(0)
    assert pool.get_status()["svc"]["total"] == 2

    pool.release("svc", second)
    assert await third is second
    assert pool.get_status()["svc"] == {"total": 2, "active": 2, "idle": 0}
