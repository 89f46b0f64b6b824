"""
Unit tests for ConnectionPoolManager.

Handles are fakes; the resolver is the real VaultResolver over the in-memory
repository.
"""

import asyncio

import pytest

from dbcopilot.config import PoolSettings
from dbcopilot.connectors import ConnectionError
from dbcopilot.errors import (
    ConnectFailed,
    ConnectionNotFound,
    EngineError,
    EngineTimeout,
    PoolExhausted,
)
from dbcopilot.pool import ConnectionPoolManager, VaultResolver


@pytest.fixture
def dialed(make_handle):
    """Factory producing a fresh fake handle per dial."""

    def _factory(config, timeout):
        handle = make_handle(kind=config.engine)
        _factory.handles.append(handle)
        _factory.configs.append(config)
        return handle

    _factory.handles = []
    _factory.configs = []
    return _factory


@pytest.fixture
async def fresh_pool(repository, vault, pool_settings, dialed):
    manager = ConnectionPoolManager(
        VaultResolver(repository, vault), pool_settings, handle_factory=dialed
    )
    yield manager
    await manager.close()


class TestAcquire:
    """Test checkout, reuse and limits."""

    async def test_dial_uses_decrypted_password(self, fresh_pool, dialed, connection):
        pooled = await fresh_pool.acquire(connection.connection_id)

        assert pooled.handle.is_connected
        assert dialed.configs[0].secret() == "s3cret"
        assert dialed.configs[0].database == "shop"
        await fresh_pool.release(pooled)

    async def test_released_handle_is_reused(self, fresh_pool, dialed, connection):
        first = await fresh_pool.acquire(connection.connection_id)
        await fresh_pool.release(first)

        second = await fresh_pool.acquire(connection.connection_id)

        assert second is first
        assert len(dialed.handles) == 1
        await fresh_pool.release(second)

    async def test_exhausted_pool_times_out(self, fresh_pool, connection):
        held = [await fresh_pool.acquire(connection.connection_id) for _ in range(2)]

        with pytest.raises(PoolExhausted):
            await fresh_pool.acquire(connection.connection_id)

        stats = fresh_pool.stats()[connection.connection_id]
        assert stats == {"idle": 0, "in_use": 2, "max": 2}
        for pooled in held:
            await fresh_pool.release(pooled)

    async def test_waiter_gets_released_handle(self, fresh_pool, connection):
        held = [await fresh_pool.acquire(connection.connection_id) for _ in range(2)]
        waiter = asyncio.create_task(fresh_pool.acquire(connection.connection_id))
        await asyncio.sleep(0.05)

        await fresh_pool.release(held[0])
        pooled = await asyncio.wait_for(waiter, timeout=1)

        assert pooled is held[0]
        await fresh_pool.release(pooled)
        await fresh_pool.release(held[1])

    async def test_unknown_connection_frees_slot(self, fresh_pool):
        with pytest.raises(ConnectionNotFound):
            await fresh_pool.acquire("missing")

        assert fresh_pool.stats()["missing"]["in_use"] == 0

    async def test_connect_error_frees_slot(self, repository, vault, pool_settings, connection, make_handle):
        class Unreachable(make_handle):
            async def connect(self):
                raise ConnectionError("connection refused")

        manager = ConnectionPoolManager(
            VaultResolver(repository, vault),
            pool_settings,
            handle_factory=lambda config, timeout: Unreachable(),
        )

        with pytest.raises(ConnectFailed) as exc_info:
            await manager.acquire(connection.connection_id)

        assert "connection refused" in exc_info.value.message
        assert manager.stats()[connection.connection_id]["in_use"] == 0
        await manager.close()

    async def test_closed_pool_rejects_acquire(self, fresh_pool, connection):
        await fresh_pool.close()

        with pytest.raises(PoolExhausted):
            await fresh_pool.acquire(connection.connection_id)

    async def test_concurrent_acquires_never_exceed_limit(
        self, repository, vault, pool_settings, connection, make_handle
    ):
        live = {"now": 0, "peak": 0}

        class SlowDial(make_handle):
            async def connect(self):
                live["now"] += 1
                live["peak"] = max(live["peak"], live["now"])
                await asyncio.sleep(0.1)
                self.connected = True

            async def close(self):
                live["now"] -= 1
                await super().close()

        manager = ConnectionPoolManager(
            VaultResolver(repository, vault),
            pool_settings,
            handle_factory=lambda config, timeout: SlowDial(kind=config.engine),
        )

        results = await asyncio.gather(
            *(manager.acquire(connection.connection_id) for _ in range(10)),
            return_exceptions=True,
        )

        acquired = [r for r in results if not isinstance(r, BaseException)]
        errors = [r for r in results if isinstance(r, BaseException)]
        assert len(acquired) == 2
        assert len(errors) == 8
        assert all(isinstance(e, PoolExhausted) for e in errors)
        assert live["peak"] == 2
        assert manager.stats()[connection.connection_id] == {"idle": 0, "in_use": 2, "max": 2}
        for pooled in acquired:
            await manager.release(pooled)
        await manager.close()
        assert live["now"] == 0

    async def test_concurrent_leases_share_two_handles(
        self, repository, vault, pool_settings, connection, make_handle
    ):
        live = {"now": 0, "peak": 0}
        dials = []

        class SlowDial(make_handle):
            async def connect(self):
                dials.append(self)
                live["now"] += 1
                live["peak"] = max(live["peak"], live["now"])
                await asyncio.sleep(0.05)
                self.connected = True

        manager = ConnectionPoolManager(
            VaultResolver(repository, vault),
            pool_settings,
            handle_factory=lambda config, timeout: SlowDial(kind=config.engine),
        )

        async def use():
            async with manager.lease(connection.connection_id) as handle:
                await asyncio.sleep(0.02)
                return handle

        handles = await asyncio.gather(*(use() for _ in range(10)))

        assert len(handles) == 10
        assert len(dials) == 2
        assert live["peak"] == 2
        assert {id(h) for h in handles} == {id(d) for d in dials}
        assert manager.stats()[connection.connection_id] == {"idle": 2, "in_use": 0, "max": 2}
        await manager.close()


class TestLease:
    """Test release versus invalidation on lease exit."""

    async def test_success_returns_handle_to_pool(self, fresh_pool, connection):
        async with fresh_pool.lease(connection.connection_id) as handle:
            assert handle.is_connected

        assert fresh_pool.stats()[connection.connection_id] == {"idle": 1, "in_use": 0, "max": 2}

    async def test_timeout_invalidates_handle(self, fresh_pool, dialed, connection):
        with pytest.raises(EngineTimeout):
            async with fresh_pool.lease(connection.connection_id):
                raise EngineTimeout("too slow")

        assert dialed.handles[0].closed is True
        assert fresh_pool.stats()[connection.connection_id]["idle"] == 0

    async def test_broken_engine_error_invalidates(self, fresh_pool, dialed, connection):
        with pytest.raises(EngineError):
            async with fresh_pool.lease(connection.connection_id):
                raise EngineError("server closed the connection", connection_broken=True)

        assert dialed.handles[0].closed is True

    async def test_ordinary_engine_error_keeps_handle(self, fresh_pool, dialed, connection):
        with pytest.raises(EngineError):
            async with fresh_pool.lease(connection.connection_id):
                raise EngineError('relation "nope" does not exist')

        assert dialed.handles[0].closed is False
        assert fresh_pool.stats()[connection.connection_id]["idle"] == 1

    async def test_cancellation_invalidates(self, fresh_pool, dialed, connection):
        entered = asyncio.Event()

        async def hold():
            async with fresh_pool.lease(connection.connection_id):
                entered.set()
                await asyncio.sleep(10)

        task = asyncio.create_task(hold())
        await entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert dialed.handles[0].closed is True
        assert fresh_pool.stats()[connection.connection_id]["in_use"] == 0


class TestMaintenance:
    """Test health checks and per-connection shutdown."""

    async def test_health_check_evicts_unhealthy(self, fresh_pool, dialed, connection):
        async with fresh_pool.lease(connection.connection_id):
            pass
        dialed.handles[0].healthy = False

        evicted = await fresh_pool.health_check()

        assert evicted == 1
        assert dialed.handles[0].closed is True

    async def test_health_check_keeps_healthy(self, fresh_pool, dialed, connection):
        async with fresh_pool.lease(connection.connection_id):
            pass

        assert await fresh_pool.health_check() == 0
        assert fresh_pool.stats()[connection.connection_id]["idle"] == 1

    async def test_health_check_evicts_expired(self, repository, vault, dialed, connection):
        settings = PoolSettings(idle_ttl=0.02, health_check_interval=0.01)
        manager = ConnectionPoolManager(
            VaultResolver(repository, vault), settings, handle_factory=dialed
        )
        async with manager.lease(connection.connection_id):
            pass
        await asyncio.sleep(0.05)

        assert await manager.health_check() == 1
        assert dialed.handles[0].closed is True
        await manager.close()

    async def test_close_connection_retires_checked_out_handles(
        self, fresh_pool, dialed, connection
    ):
        idle = await fresh_pool.acquire(connection.connection_id)
        busy = await fresh_pool.acquire(connection.connection_id)
        await fresh_pool.release(idle)

        await fresh_pool.close_connection(connection.connection_id)
        assert idle.handle.closed is True
        assert busy.handle.closed is False

        await fresh_pool.release(busy)
        assert busy.handle.closed is True
        assert fresh_pool.stats()[connection.connection_id]["idle"] == 0

    async def test_ping_crash_evicts_and_frees_slot(self, fresh_pool, dialed, connection):
        async with fresh_pool.lease(connection.connection_id):
            pass

        async def crashing_ping():
            raise RuntimeError("driver bug")

        dialed.handles[0].ping = crashing_ping

        assert await fresh_pool.health_check() == 1
        assert dialed.handles[0].closed is True
        assert fresh_pool.stats()[connection.connection_id] == {"idle": 0, "in_use": 0, "max": 2}

    async def test_pings_run_concurrently(self, fresh_pool, dialed, connection):
        held = [await fresh_pool.acquire(connection.connection_id) for _ in range(2)]
        for pooled in held:
            await fresh_pool.release(pooled)
        active = {"now": 0, "peak": 0}

        async def slow_ping():
            active["now"] += 1
            active["peak"] = max(active["peak"], active["now"])
            await asyncio.sleep(0.1)
            active["now"] -= 1
            return True

        for handle in dialed.handles:
            handle.ping = slow_ping

        assert await fresh_pool.health_check() == 0
        assert active["peak"] == 2
        assert fresh_pool.stats()[connection.connection_id] == {"idle": 2, "in_use": 0, "max": 2}
