"""
Per-resource exclusion scopes.

Every mutation of a resource's capacity, quota records and queue happens
inside that resource's scope. Scopes of different resources are independent,
so contention is confined to requesters competing for the same resource.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import structlog

from .base import ConcurrentModificationRetry

logger = structlog.get_logger(__name__)


class ResourceLockRegistry:
    """Hands out one asyncio lock per resource."""

    def __init__(
        self,
        timeout_seconds: float = 0.5,
        retries: int = 3,
        backoff_seconds: float = 0.01,
    ):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._timeout = timeout_seconds
        self._retries = retries
        self._backoff = backoff_seconds
        self._contention_retries = 0

    def lock_for(self, resource_id: str) -> asyncio.Lock:
        """Get (creating on first use) the lock guarding a resource."""
        lock = self._locks.get(resource_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[resource_id] = lock
        return lock

    def is_held(self, resource_id: str) -> bool:
        lock = self._locks.get(resource_id)
        return lock is not None and lock.locked()

    @property
    def contention_retries(self) -> int:
        """Number of timed-out acquisitions that were retried."""
        return self._contention_retries

    async def try_acquire(self, resource_id: str, timeout: Optional[float]) -> asyncio.Lock:
        """Acquire a resource lock within ``timeout`` seconds.

        Raises:
            ConcurrentModificationRetry: the lock stayed held past the timeout
        """
        lock = self.lock_for(resource_id)
        if timeout is None:
            await lock.acquire()
            return lock
        try:
            await asyncio.wait_for(lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            raise ConcurrentModificationRetry(
                f"Resource {resource_id} busy for more than {timeout}s"
            ) from None
        return lock

    @asynccontextmanager
    async def scope(self, resource_id: str) -> AsyncIterator[None]:
        """
        Hold a resource's scope for the duration of the block.

        Timed-out acquisitions are retried with linear backoff; the last
        attempt waits without a timeout, so callers never see contention.
        """
        lock: Optional[asyncio.Lock] = None
        for attempt in range(self._retries + 1):
            timeout = self._timeout if attempt < self._retries else None
            try:
                lock = await self.try_acquire(resource_id, timeout)
                break
            except ConcurrentModificationRetry:
                self._contention_retries += 1
                logger.debug(
                    "resource_scope_retry",
                    resource_id=resource_id,
                    attempt=attempt + 1,
                )
                await asyncio.sleep(self._backoff * (attempt + 1))
        try:
            yield
        finally:
            lock.release()
