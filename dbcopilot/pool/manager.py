"""
Connection Pool Manager

Bounded, per-Connection pools of live engine handles.

Each ``connection_id`` gets its own free list guarded by an
``asyncio.Condition``. Critical sections only move handles between the free
list and the checked-out count; dialing, pinging and closing all happen
outside the lock, so a slow engine never blocks unrelated keys.

Usage:
    pool = ConnectionPoolManager(resolver, settings.pool, handle_timeout=60)
    await pool.start()

    async with pool.lease(connection_id) as handle:
        result = await gateway.execute(handle, query, classification, trigger=trigger)

    await pool.close()
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from collections import deque
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Protocol

from dbcopilot.config import PoolSettings
from dbcopilot.connectors import ConnectorError, EngineHandle, open_handle
from dbcopilot.errors import ConnectFailed, EngineError, EngineTimeout, PoolExhausted
from dbcopilot.models.database import Connection, ConnectionConfig
from dbcopilot.pool.vault import CredentialVault

logger = logging.getLogger(__name__)

_handle_ids = itertools.count(1)


class ConnectionResolver(Protocol):
    """Turns a connection_id into decrypted dial parameters."""

    async def resolve(self, connection_id: str) -> ConnectionConfig: ...


class ConnectionLookup(Protocol):
    async def get_connection(self, connection_id: str) -> Connection: ...


class VaultResolver:
    """Resolves connections from a repository and opens their credentials."""

    def __init__(self, repository: ConnectionLookup, vault: CredentialVault):
        self._repository = repository
        self._vault = vault

    async def resolve(self, connection_id: str) -> ConnectionConfig:
        connection = await self._repository.get_connection(connection_id)
        password = (
            self._vault.open(connection.credentials_ref) if connection.credentials_ref else None
        )
        return ConnectionConfig.from_connection(connection, password)


@dataclass(eq=False)
class PooledHandle:
    """A live handle checked out of, or idle in, a per-Connection pool."""

    connection_id: str
    handle: EngineHandle
    generation: int
    handle_id: int = field(default_factory=lambda: next(_handle_ids))
    created_at: float = field(default_factory=time.monotonic)
    last_used: float = field(default_factory=time.monotonic)


class _KeyPool:
    def __init__(self, max_size: int):
        self.max_size = max_size
        self.idle: deque[PooledHandle] = deque()
        self.checked_out = 0
        self.generation = 0
        self.condition = asyncio.Condition()

    def can_acquire(self) -> bool:
        return bool(self.idle) or self.checked_out + len(self.idle) < self.max_size


class ConnectionPoolManager:
    """
    Per-Connection bounded pools with a background health check.

    A key never has more than ``max_handles_per_connection`` handles alive
    (idle plus checked out plus being dialed).
    """

    def __init__(
        self,
        resolver: ConnectionResolver,
        settings: PoolSettings | None = None,
        *,
        handle_timeout: float = 60.0,
        handle_factory: Callable[[ConnectionConfig, float], EngineHandle] = open_handle,
    ):
        self._resolver = resolver
        self._settings = settings or PoolSettings()
        self._handle_timeout = handle_timeout
        self._handle_factory = handle_factory
        self._pools: dict[str, _KeyPool] = {}
        self._health_task: asyncio.Task | None = None
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the health-check ticker."""
        self._closed = False
        if self._health_task is None or self._health_task.done():
            self._health_task = asyncio.create_task(self._health_loop(), name="pool-health")
            logger.info(
                f"Connection pool started (max {self._settings.max_handles_per_connection} "
                f"handles per connection, sweep every {self._settings.health_check_interval}s)"
            )

    async def close(self) -> None:
        """Stop the ticker and close every idle handle. Checked-out handles close on release."""
        self._closed = True
        if self._health_task is not None:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None
        for connection_id in list(self._pools):
            await self.close_connection(connection_id)
        logger.info("Connection pool closed")

    async def close_connection(self, connection_id: str) -> None:
        """Drop all handles of one Connection (credential rotation or deletion)."""
        pool = self._pools.get(connection_id)
        if pool is None:
            return
        async with pool.condition:
            pool.generation += 1
            stale = list(pool.idle)
            pool.idle.clear()
            pool.condition.notify_all()
        for pooled in stale:
            await self._close_handle(pooled)
        logger.info(
            f"Closed {len(stale)} idle handles for connection {connection_id}",
            extra={"connection_id": connection_id},
        )

    # ------------------------------------------------------------------
    # Acquire / release
    # ------------------------------------------------------------------

    def _pool_for(self, connection_id: str) -> _KeyPool:
        pool = self._pools.get(connection_id)
        if pool is None:
            pool = _KeyPool(self._settings.max_handles_per_connection)
            self._pools[connection_id] = pool
        return pool

    async def acquire(self, connection_id: str) -> PooledHandle:
        """
        Check out a handle, reusing an idle one or dialing a new one.

        Raises:
            PoolExhausted: No slot freed up within ``acquire_timeout``
            ConnectFailed: Dialing the database failed
        """
        if self._closed:
            raise PoolExhausted(
                "Connection pool is closed", context={"connection_id": connection_id}
            )

        pool = self._pool_for(connection_id)
        async with pool.condition:
            try:
                await asyncio.wait_for(
                    pool.condition.wait_for(pool.can_acquire),
                    timeout=self._settings.acquire_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    f"Pool exhausted for connection {connection_id} "
                    f"({pool.checked_out}/{pool.max_size} in use)",
                    extra={"connection_id": connection_id},
                )
                raise PoolExhausted(
                    f"No database handle available within {self._settings.acquire_timeout}s",
                    context={"connection_id": connection_id, "max": pool.max_size},
                ) from None
            pool.checked_out += 1
            if pool.idle:
                pooled = pool.idle.pop()
                pooled.last_used = time.monotonic()
                return pooled
            generation = pool.generation

        # Slot reserved; dial without holding the lock.
        try:
            handle = await self._dial(connection_id)
        except BaseException:
            await self._free_slot(pool)
            raise
        return PooledHandle(connection_id=connection_id, handle=handle, generation=generation)

    async def _dial(self, connection_id: str) -> EngineHandle:
        try:
            config = await self._resolver.resolve(connection_id)
        except ValueError as exc:
            raise ConnectFailed(str(exc), context={"connection_id": connection_id}) from exc
        try:
            handle = self._handle_factory(config, self._handle_timeout)
        except (ValueError, ImportError) as exc:
            raise ConnectFailed(str(exc), context={"connection_id": connection_id}) from exc
        try:
            await asyncio.wait_for(handle.connect(), timeout=self._settings.connect_timeout)
        except asyncio.TimeoutError as exc:
            await self._close_quietly(handle)
            raise ConnectFailed(
                f"Connecting to {config.engine} timed out after "
                f"{self._settings.connect_timeout}s",
                context={"connection_id": connection_id},
            ) from exc
        except ConnectorError as exc:
            await self._close_quietly(handle)
            raise ConnectFailed(str(exc), context={"connection_id": connection_id}) from exc
        logger.info(
            f"Dialed new {config.engine} handle for connection {connection_id}",
            extra={"connection_id": connection_id},
        )
        return handle

    async def release(self, pooled: PooledHandle) -> None:
        """Return a handle to its free list and wake one waiter."""
        pool = self._pools.get(pooled.connection_id)
        if pool is None:
            await self._close_handle(pooled)
            return
        stale = False
        async with pool.condition:
            pool.checked_out -= 1
            if self._closed or pooled.generation != pool.generation:
                stale = True
            else:
                pooled.last_used = time.monotonic()
                pool.idle.append(pooled)
            pool.condition.notify()
        if stale:
            await self._close_handle(pooled)

    async def invalidate(self, pooled: PooledHandle) -> None:
        """Close a handle and free its slot; the next acquire dials afresh."""
        pool = self._pools.get(pooled.connection_id)
        if pool is not None:
            await self._free_slot(pool)
        logger.info(
            f"Invalidated handle {pooled.handle_id} for connection {pooled.connection_id}",
            extra={"connection_id": pooled.connection_id},
        )
        await self._close_handle(pooled)

    async def _free_slot(self, pool: _KeyPool) -> None:
        async with pool.condition:
            pool.checked_out -= 1
            pool.condition.notify()

    @asynccontextmanager
    async def lease(self, connection_id: str) -> AsyncIterator[EngineHandle]:
        """
        Acquire a handle for the duration of a block.

        The handle is released on success and invalidated when the block
        fails in a way that leaves the session in an unknown state.
        """
        pooled = await self.acquire(connection_id)
        try:
            yield pooled.handle
        except (ConnectFailed, EngineTimeout, asyncio.CancelledError):
            await self.invalidate(pooled)
            raise
        except EngineError as exc:
            if exc.connection_broken:
                await self.invalidate(pooled)
            else:
                await self.release(pooled)
            raise
        except BaseException:
            await self.release(pooled)
            raise
        else:
            await self.release(pooled)

    # ------------------------------------------------------------------
    # Health check
    # ------------------------------------------------------------------

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.health_check_interval)
            try:
                await self.health_check()
            except Exception as exc:
                logger.error(f"Pool health check failed: {exc}", exc_info=True)

    async def health_check(self) -> int:
        """Evict idle handles past ``idle_ttl`` or failing ``ping()``. Returns evicted count."""
        evicted = 0
        now = time.monotonic()
        for connection_id, pool in list(self._pools.items()):
            async with pool.condition:
                expired = [p for p in pool.idle if now - p.last_used > self._settings.idle_ttl]
                pinging = [p for p in pool.idle if p not in expired]
                pool.idle.clear()
                # Pinged handles count as checked out until their ping returns.
                pool.checked_out += len(pinging)
                if expired:
                    pool.condition.notify(len(expired))

            results: list[bool | BaseException] = []
            try:
                results = await asyncio.gather(
                    *(self._ping(pooled) for pooled in pinging), return_exceptions=True
                )
            finally:
                healthy = [p for p, alive in zip(pinging, results) if alive is True]
                failed = [p for p in pinging if p not in healthy]
                async with pool.condition:
                    pool.checked_out -= len(pinging)
                    for pooled in healthy:
                        if self._closed or pooled.generation != pool.generation:
                            failed.append(pooled)
                        else:
                            pool.idle.append(pooled)
                    pool.condition.notify_all()

                for pooled in expired + failed:
                    await self._close_handle(pooled)
            if expired or failed:
                logger.info(
                    f"Health check evicted {len(expired)} expired and {len(failed)} "
                    f"unhealthy handles for connection {connection_id}",
                    extra={"connection_id": connection_id},
                )
            evicted += len(expired) + len(failed)
        return evicted

    async def _ping(self, pooled: PooledHandle) -> bool:
        try:
            return await asyncio.wait_for(
                pooled.handle.ping(), timeout=self._settings.connect_timeout
            )
        except Exception as exc:
            logger.debug(f"Ping failed on handle {pooled.handle_id}: {exc!r}")
            return False

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _close_handle(self, pooled: PooledHandle) -> None:
        await self._close_quietly(pooled.handle)

    async def _close_quietly(self, handle: EngineHandle) -> None:
        try:
            await handle.close()
        except Exception as exc:
            logger.warning(f"Error closing handle {handle!r}: {exc}")

    def stats(self) -> dict[str, dict[str, int]]:
        """Per-Connection ``{idle, in_use, max}`` counts."""
        return {
            connection_id: {
                "idle": len(pool.idle),
                "in_use": pool.checked_out,
                "max": pool.max_size,
            }
            for connection_id, pool in self._pools.items()
        }
