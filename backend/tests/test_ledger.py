"""
Tests for the Stock Ledger — allocate / produce / adjust and the journal.

Covers:
  - Check-then-commit allocation (nothing moves on shortfall)
  - Merge policy for receipts landing on an existing batch
  - Audit events with before/after quantities
  - Reconciliation of ledger totals against the movement journal
"""

from datetime import datetime, timedelta

import pytest

from core.enums import MovementType
from core.errors import InsufficientStock, LocationNotFound
from db.models import StockMovement, StockRecord
from inventory.ledger import StockLedger

DAY_1 = datetime(2024, 3, 1, 9, 0, 0)
DAY_2 = DAY_1 + timedelta(days=1)


@pytest.mark.asyncio
class TestAllocate:
    async def test_scenario_batches_drained_in_receipt_order(self, ctx, seeded_db):
        ledger = StockLedger(ctx)
        shirt = seeded_db["shirt_id"]
        await ledger.produce(shirt, "MAIN", 40, batch_id="A", received_at=DAY_1)
        await ledger.produce(shirt, "MAIN", 10, batch_id="B", received_at=DAY_2)

        plan = await ledger.allocate(shirt, 45)

        assert [(p.batch_id, p.qty_taken) for p in plan] == [("A", 40), ("B", 5)]
        records = {r.batch_id: r.quantity for r in await ledger.records_for(shirt)}
        assert records == {"A": 0, "B": 5}

    async def test_fefo_draws_earliest_expiry(self, ctx, seeded_db):
        ledger = StockLedger(ctx)
        fabric = seeded_db["fabric_id"]
        await ledger.produce(fabric, "MAIN", 30, batch_id="LATE", received_at=DAY_1, expires_at=DAY_1 + timedelta(days=90))
        await ledger.produce(fabric, "MAIN", 30, batch_id="SOON", received_at=DAY_2, expires_at=DAY_1 + timedelta(days=30))

        plan = await ledger.allocate(fabric, 10)

        assert [p.batch_id for p in plan] == ["SOON"]

    async def test_shortfall_leaves_every_record_unchanged(self, ctx, seeded_db, audit_sink):
        ledger = StockLedger(ctx)
        shirt = seeded_db["shirt_id"]
        await ledger.produce(shirt, "MAIN", 2, batch_id="A", received_at=DAY_1)
        await ledger.produce(shirt, "SECOND", 1, batch_id="B", received_at=DAY_2)
        audit_sink.clear()

        with pytest.raises(InsufficientStock) as exc_info:
            await ledger.allocate(shirt, 5)

        assert exc_info.value.required == 5
        assert exc_info.value.available == 3
        assert sorted(r.quantity for r in await ledger.records_for(shirt)) == [1, 2]
        assert audit_sink.of_type("stock.allocated") == []

    async def test_never_drives_a_record_negative(self, ctx, seeded_db):
        ledger = StockLedger(ctx)
        buttons = seeded_db["buttons_id"]
        await ledger.produce(buttons, "MAIN", 0.3, batch_id="A")
        await ledger.produce(buttons, "MAIN", 0.3, batch_id="B")
        await ledger.produce(buttons, "MAIN", 0.3, batch_id="C")

        await ledger.allocate(buttons, 0.9)

        assert all(r.quantity >= 0 for r in await ledger.records_for(buttons))
        assert await ledger.total_quantity(buttons) == pytest.approx(0)

    async def test_allocate_then_produce_restores_total(self, ctx, seeded_db):
        ledger = StockLedger(ctx)
        shirt = seeded_db["shirt_id"]
        await ledger.produce(shirt, "MAIN", 12, batch_id="A")
        before = await ledger.total_quantity(shirt)

        await ledger.allocate(shirt, 7)
        await ledger.produce(shirt, "MAIN", 7)

        assert await ledger.total_quantity(shirt) == before

    async def test_allocation_emits_before_after_audit(self, ctx, seeded_db, audit_sink):
        ledger = StockLedger(ctx)
        shirt = seeded_db["shirt_id"]
        await ledger.produce(shirt, "MAIN", 10, batch_id="A")

        await ledger.allocate(shirt, 4, reference_type="sales_order", reference_id="SO-1")

        (event,) = audit_sink.of_type("stock.allocated")
        assert event.details["before_qty"] == 10
        assert event.details["after_qty"] == 6
        assert event.details["reference_id"] == "SO-1"
        assert event.details["actor"] == "test-user"


@pytest.mark.asyncio
class TestProduce:
    async def test_same_batch_merges_into_one_record(self, ctx, seeded_db):
        ledger = StockLedger(ctx)
        fabric = seeded_db["fabric_id"]
        await ledger.produce(fabric, "MAIN", 10, batch_id="ROLL-7", received_at=DAY_2, expires_at=datetime(2025, 6, 1))
        await ledger.produce(fabric, "MAIN", 5, batch_id="ROLL-7", received_at=DAY_1, expires_at=datetime(2025, 9, 1))

        (record,) = await ledger.records_for(fabric)
        assert record.quantity == 15
        assert record.received_at == DAY_1
        assert record.expires_at == datetime(2025, 6, 1)

    async def test_other_location_gets_its_own_record(self, ctx, seeded_db):
        ledger = StockLedger(ctx)
        fabric = seeded_db["fabric_id"]
        await ledger.produce(fabric, "MAIN", 10, batch_id="ROLL-7")
        await ledger.produce(fabric, "SECOND", 5, batch_id="ROLL-7")

        assert await ledger.total_quantity(fabric, "MAIN") == 10
        assert await ledger.total_quantity(fabric, "SECOND") == 5

    async def test_unknown_or_inactive_location_rejected(self, ctx, seeded_db):
        ledger = StockLedger(ctx)
        with pytest.raises(LocationNotFound):
            await ledger.produce(seeded_db["fabric_id"], "NOWHERE", 1)
        with pytest.raises(LocationNotFound):
            await ledger.produce(seeded_db["fabric_id"], "CLOSED", 1)

    async def test_produce_emits_audit_event(self, ctx, seeded_db, audit_sink):
        ledger = StockLedger(ctx)
        await ledger.produce(seeded_db["shirt_id"], "MAIN", 3, batch_id="A")

        (event,) = audit_sink.of_type("stock.produced")
        assert (event.details["before_qty"], event.details["after_qty"]) == (0.0, 3)


@pytest.mark.asyncio
class TestReconciliation:
    async def test_journal_balances_after_mixed_operations(self, ctx, seeded_db):
        ledger = StockLedger(ctx)
        shirt = seeded_db["shirt_id"]
        await ledger.produce(shirt, "MAIN", 40, batch_id="A", received_at=DAY_1)
        await ledger.produce(shirt, "MAIN", 10, batch_id="B", received_at=DAY_2)
        await ledger.allocate(shirt, 45)
        (record,) = [r for r in await ledger.records_for(shirt) if r.batch_id == "B"]
        await ledger.adjust(record, 4)
        await ledger.produce(shirt, "SECOND", 6, movement_type=MovementType.PRODUCTION_OUTPUT)

        report = await ledger.reconcile(shirt)

        assert report.ledger_total == 10
        assert report.receipts == 56
        assert report.consumptions == 45
        assert report.adjustments == -1
        assert report.balanced

    async def test_adjust_to_same_quantity_writes_nothing(self, ctx, seeded_db, test_db):
        ledger = StockLedger(ctx)
        record = await ledger.produce(seeded_db["shirt_id"], "MAIN", 5)

        assert await ledger.adjust(record, 5) == 0.0
        movements = await ctx.store.count(StockMovement, index={"movement_type": "adjustment"})
        assert movements == 0

    async def test_reset_is_journaled_and_deletes_records(self, ctx, seeded_db, audit_sink):
        ledger = StockLedger(ctx)
        shirt = seeded_db["shirt_id"]
        await ledger.produce(shirt, "MAIN", 8, batch_id="A")
        await ledger.produce(shirt, "SECOND", 2, batch_id="B")

        deleted = await ledger.reset_product(shirt)

        assert deleted == 2
        assert await ctx.store.count(StockRecord, index={"product_id": shirt}) == 0
        report = await ledger.reconcile(shirt)
        assert report.ledger_total == 0
        assert report.balanced
        assert len(audit_sink.of_type("stock.reset")) == 2

    async def test_reset_unlinks_journal_from_deleted_records(self, ctx, seeded_db):
        ledger = StockLedger(ctx)
        shirt = seeded_db["shirt_id"]
        fabric = seeded_db["fabric_id"]
        await ledger.produce(shirt, "MAIN", 8, batch_id="A")
        await ledger.allocate(shirt, 3)
        await ledger.produce(fabric, "MAIN", 5, batch_id="ROLL-1")

        await ledger.reset_product(shirt)

        shirt_movements = await ctx.store.get_all(StockMovement, index={"product_id": shirt})
        assert len(shirt_movements) == 3
        assert all(m.stock_record_id is None for m in shirt_movements)
        (fabric_movement,) = await ctx.store.get_all(StockMovement, index={"product_id": fabric})
        assert fabric_movement.stock_record_id is not None

    async def test_expiring_records_window(self, ctx, seeded_db):
        ledger = StockLedger(ctx)
        fabric = seeded_db["fabric_id"]
        now = ctx.now()
        await ledger.produce(fabric, "MAIN", 5, batch_id="SOON", expires_at=now + timedelta(days=3))
        await ledger.produce(fabric, "MAIN", 5, batch_id="LATER", expires_at=now + timedelta(days=60))
        await ledger.produce(fabric, "MAIN", 5, batch_id="NEVER")

        expiring = await ledger.expiring_records(within_days=7)

        assert [r.batch_id for r in expiring] == ["SOON"]
