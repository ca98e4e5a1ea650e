"""Per-cluster leases.

A deployment must hold the lease of every target cluster before it mutates
any of them. Leases expire after a TTL unless renewed, so a crashed
orchestrator cannot block a cluster forever.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from typing import TYPE_CHECKING, Any

from loguru import logger
from typing_extensions import override

from rollgate.core.errors import ConcurrentDeploymentConflict, LeaseStoreError

if TYPE_CHECKING:
    from redis.asyncio import Redis


class LeaseStore(ABC):
    """Storage backend for TTL leases."""

    @abstractmethod
    async def acquire(self, key: str, holder: str, ttl_seconds: float) -> bool:
        """Take the lease if free (or already ours). Returns True on success."""
        ...

    @abstractmethod
    async def renew(self, key: str, holder: str, ttl_seconds: float) -> bool:
        """Extend the lease if still held by ``holder``."""
        ...

    @abstractmethod
    async def release(self, key: str, holder: str) -> bool:
        """Release the lease if held by ``holder``."""
        ...

    @abstractmethod
    async def holder(self, key: str) -> str | None:
        """Current holder, or None if the lease is free."""
        ...


class InMemoryLeaseStore(LeaseStore):
    """In-process lease store with TTL support."""

    def __init__(self) -> None:
        self._data: dict[str, dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    def _live_holder(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if time.time() > entry["expires_at"]:
            del self._data[key]
            return None
        return str(entry["holder"])

    @override
    async def acquire(self, key: str, holder: str, ttl_seconds: float) -> bool:
        async with self._lock:
            current = self._live_holder(key)
            if current is not None and current != holder:
                return False
            self._data[key] = {"holder": holder, "expires_at": time.time() + ttl_seconds}
            return True

    @override
    async def renew(self, key: str, holder: str, ttl_seconds: float) -> bool:
        async with self._lock:
            if self._live_holder(key) != holder:
                return False
            self._data[key]["expires_at"] = time.time() + ttl_seconds
            return True

    @override
    async def release(self, key: str, holder: str) -> bool:
        async with self._lock:
            if self._live_holder(key) != holder:
                return False
            del self._data[key]
            return True

    @override
    async def holder(self, key: str) -> str | None:
        async with self._lock:
            return self._live_holder(key)


_RENEW_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('pexpire', KEYS[1], ARGV[2])
end
return 0
"""

_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


class RedisLeaseStore(LeaseStore):
    """Redis lease store: ``SET NX PX`` to acquire, compare-and-delete to release."""

    def __init__(self, redis_client: Redis, prefix: str = "rollgate:lease:") -> None:
        self._redis = redis_client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "rollgate:lease:") -> RedisLeaseStore:
        from redis.asyncio import Redis

        return cls(Redis.from_url(url), prefix=prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    @override
    async def acquire(self, key: str, holder: str, ttl_seconds: float) -> bool:
        ttl_ms = max(int(ttl_seconds * 1000), 1)
        try:
            if await self._redis.set(self._key(key), holder, nx=True, px=ttl_ms):
                return True
            if await self.holder(key) == holder:
                return await self.renew(key, holder, ttl_seconds)
            return False
        except LeaseStoreError:
            raise
        except Exception as e:
            raise LeaseStoreError(f"Redis lease acquire failed: {e}") from e

    @override
    async def renew(self, key: str, holder: str, ttl_seconds: float) -> bool:
        ttl_ms = max(int(ttl_seconds * 1000), 1)
        try:
            result = await self._redis.eval(_RENEW_SCRIPT, 1, self._key(key), holder, ttl_ms)
            return bool(result)
        except Exception as e:
            raise LeaseStoreError(f"Redis lease renew failed: {e}") from e

    @override
    async def release(self, key: str, holder: str) -> bool:
        try:
            result = await self._redis.eval(_RELEASE_SCRIPT, 1, self._key(key), holder)
            return bool(result)
        except Exception as e:
            raise LeaseStoreError(f"Redis lease release failed: {e}") from e

    @override
    async def holder(self, key: str) -> str | None:
        try:
            value = await self._redis.get(self._key(key))
        except Exception as e:
            raise LeaseStoreError(f"Redis lease lookup failed: {e}") from e
        if value is None:
            return None
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return str(value)


class ClusterLeaseManager:
    """Acquires, renews and releases cluster leases for a deployment."""

    def __init__(self, store: LeaseStore, ttl_seconds: float = 60.0) -> None:
        self.store = store
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def key(cluster: str) -> str:
        return f"cluster:{cluster}"

    async def holder(self, cluster: str) -> str | None:
        return await self.store.holder(self.key(cluster))

    @contextlib.asynccontextmanager
    async def hold(
        self,
        deployment_id: str,
        clusters: list[str],
        on_lost: Callable[[str], None] | None = None,
    ) -> AsyncIterator[list[str]]:
        """Hold the leases of ``clusters`` for the duration of the block.

        Leases are acquired in the given order. If any is held by another
        deployment, the ones already taken are released and
        ``ConcurrentDeploymentConflict`` is raised before anything is mutated.

        ``on_lost`` is called with the cluster name when a renewal finds the
        lease taken or expired; that cluster is no longer renewed.
        """
        acquired: list[str] = []
        try:
            for cluster in clusters:
                if not await self.store.acquire(
                    self.key(cluster), deployment_id, self.ttl_seconds
                ):
                    holder = await self.store.holder(self.key(cluster))
                    logger.warning(
                        f"Lease on {cluster} held by {holder}; {deployment_id} cannot proceed"
                    )
                    raise ConcurrentDeploymentConflict(cluster, holder)
                acquired.append(cluster)
                logger.debug(f"Lease on {cluster} acquired by {deployment_id}")

            renewer = asyncio.create_task(
                self._renew_loop(deployment_id, list(acquired), on_lost)
            )
            try:
                yield list(acquired)
            finally:
                renewer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await renewer
        finally:
            for cluster in reversed(acquired):
                try:
                    await self.store.release(self.key(cluster), deployment_id)
                    logger.debug(f"Lease on {cluster} released by {deployment_id}")
                except LeaseStoreError as e:
                    logger.error(f"Failed to release lease on {cluster}: {e}")

    async def _renew_loop(
        self,
        deployment_id: str,
        clusters: list[str],
        on_lost: Callable[[str], None] | None,
    ) -> None:
        interval = self.ttl_seconds / 3
        while clusters:
            await asyncio.sleep(interval)
            for cluster in list(clusters):
                try:
                    renewed = await self.store.renew(
                        self.key(cluster), deployment_id, self.ttl_seconds
                    )
                except LeaseStoreError as e:
                    logger.error(f"Lease renewal on {cluster} failed: {e}")
                    continue
                if not renewed:
                    logger.critical(
                        f"Lease on {cluster} lost by {deployment_id}; "
                        "another deployment may now mutate it"
                    )
                    clusters.remove(cluster)
                    if on_lost is not None:
                        on_lost(cluster)
