"""
Tests for per-product write locks and concurrent allocation.
"""

import asyncio

import pytest

from core.errors import InsufficientStock, LockTimeout
from inventory.ledger import StockLedger
from inventory.locks import ProductLockRegistry


@pytest.mark.asyncio
class TestProductLocks:
    async def test_reentrant_for_the_holding_task(self):
        registry = ProductLockRegistry(timeout_seconds=0.1)

        async with registry.hold("shirt", "fabric"):
            async with registry.hold("fabric"):
                assert registry.is_locked("fabric")
            assert registry.is_locked("fabric")

        assert not registry.is_locked("fabric")
        assert not registry.is_locked("shirt")

    async def test_other_task_times_out(self):
        registry = ProductLockRegistry(timeout_seconds=0.05)
        held = asyncio.Event()
        release = asyncio.Event()

        async def holder():
            async with registry.hold("shirt"):
                held.set()
                await release.wait()

        task = asyncio.create_task(holder())
        await held.wait()
        try:
            with pytest.raises(LockTimeout) as exc_info:
                async with registry.hold("shirt"):
                    pass
            assert exc_info.value.product_id == "shirt"
        finally:
            release.set()
            await task

    async def test_partial_acquisition_is_released_on_timeout(self):
        registry = ProductLockRegistry(timeout_seconds=0.05)
        held = asyncio.Event()
        release = asyncio.Event()

        async def holder():
            async with registry.hold("b"):
                held.set()
                await release.wait()

        task = asyncio.create_task(holder())
        await held.wait()
        with pytest.raises(LockTimeout):
            async with registry.hold("a", "b"):
                pass
        assert not registry.is_locked("a")
        release.set()
        await task

    async def test_waiter_proceeds_once_released(self):
        registry = ProductLockRegistry(timeout_seconds=1.0)
        order = []

        async def worker(name, delay):
            await asyncio.sleep(delay)
            async with registry.hold("shirt"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("first", 0), worker("second", 0.001))

        assert order == ["first-in", "first-out", "second-in", "second-out"]


@pytest.mark.asyncio
class TestConcurrentAllocation:
    async def test_only_one_of_two_competing_allocations_succeeds(self, ctx, seeded_db):
        """Two orders for 6 against 10 on hand: one wins, the other sees the shortfall."""
        ledger = StockLedger(ctx)
        shirt = seeded_db["shirt_id"]
        await ledger.produce(shirt, "MAIN", 10, batch_id="A")

        results = await asyncio.gather(
            ledger.allocate(shirt, 6),
            ledger.allocate(shirt, 6),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, Exception)]
        assert len(failures) == 1
        assert isinstance(failures[0], InsufficientStock)
        assert await ledger.total_quantity(shirt) == 4
