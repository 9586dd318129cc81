"""
Per-product write locks.

Every mutation of a product's stock runs while holding that product's lock,
which makes allocation's check-then-commit atomic with respect to other
allocations, receipts and transfers of the same product. Workflow
transitions that touch several products take all their locks up-front, in
sorted order, so two transitions can never wait on each other in a cycle.

Locks are re-entrant for the task that holds them: a sales transition that
already holds product X can call ledger.allocate(X) without deadlocking.
"""

import asyncio
from collections.abc import AsyncIterator, Iterable
from contextlib import AsyncExitStack, asynccontextmanager
from functools import lru_cache
from typing import Any

from core.config import get_settings
from core.errors import LockTimeout


class _TaskReentrantLock:
    def __init__(self):
        self._lock = asyncio.Lock()
        self._owner: asyncio.Task | None = None
        self._depth = 0

    async def acquire(self, timeout: float) -> bool:
        task = asyncio.current_task()
        if self._owner is task and task is not None:
            self._depth += 1
            return True
        try:
            await asyncio.wait_for(self._lock.acquire(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        self._owner = task
        self._depth = 1
        return True

    def release(self) -> None:
        self._depth -= 1
        if self._depth == 0:
            self._owner = None
            self._lock.release()

    @property
    def locked(self) -> bool:
        return self._lock.locked()


class ProductLockRegistry:
    """Hands out one lock per product id for the lifetime of the process."""

    def __init__(self, timeout_seconds: float | None = None):
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else get_settings().lock_timeout_seconds
        self._locks: dict[str, _TaskReentrantLock] = {}

    def _lock_for(self, product_id: Any) -> _TaskReentrantLock:
        key = str(product_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = _TaskReentrantLock()
        return lock

    def is_locked(self, product_id: Any) -> bool:
        lock = self._locks.get(str(product_id))
        return bool(lock and lock.locked)

    @asynccontextmanager
    async def hold(self, *product_ids: Any) -> AsyncIterator[None]:
        """Hold the write locks for every given product (duplicates ignored)."""
        async with AsyncExitStack() as stack:
            for key in _ordered(product_ids):
                lock = self._lock_for(key)
                if not await lock.acquire(self.timeout_seconds):
                    raise LockTimeout(key, self.timeout_seconds)
                stack.callback(lock.release)
            yield


def _ordered(product_ids: Iterable[Any]) -> list[str]:
    return sorted({str(pid) for pid in product_ids if pid is not None})


@lru_cache
def get_lock_registry() -> ProductLockRegistry:
    """Process-wide registry shared by every OperationContext."""
    return ProductLockRegistry()
