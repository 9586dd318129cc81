"""
Tests for the sales-order workflow.

Covers:
  - Stock commit on dispatch / completion with cash posting
  - Delivery assignee and credit-limit guards
  - Cancellation returns stock to the returns location and reverses cash
  - Production spawning for awaiting_production
  - Pick lists from stored provenance
"""

from datetime import datetime, timedelta

import pytest
from pydantic import ValidationError

from core.enums import PaymentTerm, SalesStatus
from core.errors import (
    BOMNotFound,
    CreditLimitExceeded,
    InsufficientStock,
    InvalidTransition,
    LogisticsNotAssigned,
)
from core.schemas import BOMCreate, BOMLineIn, SalesOrderCreate, SalesOrderLineIn
from db.models import ProductionOrder, SalesOrderAllocation
from inventory.ledger import StockLedger
from manufacturing.bom import create_bom
from sales.orders import (
    assign_delivery,
    create_sales_order,
    customer_debt,
    record_customer_payment,
    status_history,
    transition_sales_order,
)
from sales.pick_list import build_pick_list

DAY_1 = datetime(2024, 5, 1, 9, 0, 0)


async def _order(ctx, ids, quantity, payment_term=PaymentTerm.IMMEDIATE, assignee="Van 2", price_tier=None):
    order = await create_sales_order(
        ctx,
        SalesOrderCreate(
            customer_id=ids["customer_id"],
            payment_term=payment_term,
            price_tier=price_tier,
            delivery_assignee=assignee,
            lines=[SalesOrderLineIn(product_id=ids["shirt_id"], quantity=quantity)],
        ),
    )
    await transition_sales_order(ctx, order.order_id, SalesStatus.PENDING)
    return order


@pytest.mark.asyncio
class TestCreateSalesOrder:
    async def test_prices_resolve_from_tier(self, ctx, seeded_db):
        retail = await _order(ctx, seeded_db, 2)
        wholesale = await _order(ctx, seeded_db, 2, price_tier="wholesale")

        assert retail.total_amount == 50.0
        assert wholesale.total_amount == 36.0

    async def test_new_order_starts_as_quote_with_history(self, ctx, seeded_db):
        order = await create_sales_order(
            ctx,
            SalesOrderCreate(lines=[SalesOrderLineIn(product_id=seeded_db["shirt_id"], quantity=1, unit_price=20)]),
        )

        assert order.status == SalesStatus.QUOTE.value
        (entry,) = await status_history(ctx, order.order_id)
        assert entry.to_status == "quote"
        assert entry.actor == "test-user"

    def test_credit_sale_requires_customer(self, seeded_db):
        with pytest.raises(ValidationError):
            SalesOrderCreate(
                payment_term=PaymentTerm.CREDIT,
                lines=[SalesOrderLineIn(product_id=seeded_db["shirt_id"], quantity=1)],
            )


@pytest.mark.asyncio
class TestStockCommit:
    async def test_shortfall_blocks_dispatch_and_changes_nothing(self, ctx, seeded_db):
        """5 ordered, 3 on hand: the order stays pending and stock stays at 3."""
        ledger = StockLedger(ctx)
        await ledger.produce(seeded_db["shirt_id"], "MAIN", 3, batch_id="A")
        order = await _order(ctx, seeded_db, 5)

        with pytest.raises(InsufficientStock):
            await transition_sales_order(ctx, order.order_id, SalesStatus.DISPATCHING)

        assert order.status == SalesStatus.PENDING.value
        assert not order.stock_committed
        assert await ledger.total_quantity(seeded_db["shirt_id"]) == 3
        assert await ctx.cash.balance() == 0

    async def test_dispatch_requires_assignee(self, ctx, seeded_db):
        await StockLedger(ctx).produce(seeded_db["shirt_id"], "MAIN", 10, batch_id="A")
        order = await _order(ctx, seeded_db, 2, assignee=None)

        with pytest.raises(LogisticsNotAssigned):
            await transition_sales_order(ctx, order.order_id, SalesStatus.DISPATCHING)
        assert not order.stock_committed

        await assign_delivery(ctx, order.order_id, "Courier 7")
        result = await transition_sales_order(ctx, order.order_id, SalesStatus.DISPATCHING)
        assert result.stock_committed

    async def test_dispatch_commits_stock_and_cash_once(self, ctx, seeded_db):
        ledger = StockLedger(ctx)
        await ledger.produce(seeded_db["shirt_id"], "MAIN", 10, batch_id="A")
        order = await _order(ctx, seeded_db, 4)

        result = await transition_sales_order(ctx, order.order_id, SalesStatus.DISPATCHING)
        await transition_sales_order(ctx, order.order_id, SalesStatus.OUT_FOR_DELIVERY)
        await transition_sales_order(ctx, order.order_id, SalesStatus.DELIVERED)
        await transition_sales_order(ctx, order.order_id, SalesStatus.COMPLETED)

        assert result.cash_delta == 100.0
        assert await ctx.cash.balance() == 100.0
        assert await ledger.total_quantity(seeded_db["shirt_id"]) == 6
        assert order.paid_at is not None
        history = [h.to_status for h in await status_history(ctx, order.order_id)]
        assert history == ["quote", "pending", "dispatching", "out_for_delivery", "delivered", "completed"]

    async def test_completing_directly_also_commits(self, ctx, seeded_db):
        ledger = StockLedger(ctx)
        await ledger.produce(seeded_db["shirt_id"], "MAIN", 10, batch_id="A")
        order = await _order(ctx, seeded_db, 3, assignee=None)

        await transition_sales_order(ctx, order.order_id, SalesStatus.COMPLETED)

        assert order.stock_committed
        assert await ledger.total_quantity(seeded_db["shirt_id"]) == 7

    async def test_illegal_transitions_rejected(self, ctx, seeded_db):
        order = await create_sales_order(
            ctx, SalesOrderCreate(lines=[SalesOrderLineIn(product_id=seeded_db["shirt_id"], quantity=1)])
        )

        with pytest.raises(InvalidTransition):
            await transition_sales_order(ctx, order.order_id, SalesStatus.DELIVERED)

    async def test_pick_list_follows_provenance(self, ctx, seeded_db):
        ledger = StockLedger(ctx)
        await ledger.produce(seeded_db["shirt_id"], "SECOND", 2, batch_id="OLD", received_at=DAY_1)
        await ledger.produce(seeded_db["shirt_id"], "MAIN", 5, batch_id="NEW", received_at=DAY_1 + timedelta(days=1))
        order = await _order(ctx, seeded_db, 4)
        await transition_sales_order(ctx, order.order_id, SalesStatus.DISPATCHING)

        picks = await build_pick_list(ctx, order.order_id)

        assert [(p.location_id, p.batch_id, p.quantity) for p in picks] == [("MAIN", "NEW", 2), ("SECOND", "OLD", 2)]
        assert {p.sku for p in picks} == {"SHIRT-OXF-M"}


@pytest.mark.asyncio
class TestCancellation:
    async def test_cancel_returns_stock_and_reverses_cash(self, ctx, seeded_db):
        ledger = StockLedger(ctx)
        shirt = seeded_db["shirt_id"]
        await ledger.produce(shirt, "MAIN", 10, batch_id="A", expires_at=datetime(2026, 1, 1))
        order = await _order(ctx, seeded_db, 4)
        await transition_sales_order(ctx, order.order_id, SalesStatus.DISPATCHING)

        result = await transition_sales_order(ctx, order.order_id, SalesStatus.CANCELLED)

        assert result.returned_quantity == 4
        assert result.cash_delta == -100.0
        assert await ctx.cash.balance() == 0
        assert await ledger.total_quantity(shirt) == 10
        (returned,) = await ledger.records_for(shirt, location_id="RETURNS")
        assert returned.batch_id == "A"
        assert returned.expires_at == datetime(2026, 1, 1)
        assert not order.stock_committed
        assert (await ledger.reconcile(shirt)).balanced
        allocations = await ctx.store.get_all(SalesOrderAllocation, index={"order_id": order.order_id})
        assert all(a.reversed_at is not None for a in allocations)
        assert await build_pick_list(ctx, order.order_id) == []

    async def test_cancel_before_commit_moves_nothing(self, ctx, seeded_db):
        order = await _order(ctx, seeded_db, 2)

        result = await transition_sales_order(ctx, order.order_id, SalesStatus.CANCELLED)

        assert result.returned_quantity == 0
        assert await ctx.cash.balance() == 0

    async def test_cancelled_order_can_be_restored_and_recommitted(self, ctx, seeded_db):
        ledger = StockLedger(ctx)
        await ledger.produce(seeded_db["shirt_id"], "MAIN", 10, batch_id="A")
        order = await _order(ctx, seeded_db, 4)
        await transition_sales_order(ctx, order.order_id, SalesStatus.DISPATCHING)
        await transition_sales_order(ctx, order.order_id, SalesStatus.CANCELLED)

        await transition_sales_order(ctx, order.order_id, SalesStatus.PENDING)
        await transition_sales_order(ctx, order.order_id, SalesStatus.DISPATCHING)

        assert order.stock_committed
        assert await ledger.total_quantity(seeded_db["shirt_id"]) == 6
        assert await ctx.cash.balance() == 100.0

    async def test_completed_order_cannot_be_cancelled(self, ctx, seeded_db):
        await StockLedger(ctx).produce(seeded_db["shirt_id"], "MAIN", 10, batch_id="A")
        order = await _order(ctx, seeded_db, 1)
        await transition_sales_order(ctx, order.order_id, SalesStatus.COMPLETED)

        with pytest.raises(InvalidTransition):
            await transition_sales_order(ctx, order.order_id, SalesStatus.CANCELLED)


@pytest.mark.asyncio
class TestCredit:
    async def test_credit_limit_counts_outstanding_debt(self, ctx, seeded_db):
        """Limit 100: a 75 credit order fits, a second 50 order does not until the first is paid."""
        await StockLedger(ctx).produce(seeded_db["shirt_id"], "MAIN", 20, batch_id="A")
        first = await _order(ctx, seeded_db, 3, payment_term=PaymentTerm.CREDIT)
        await transition_sales_order(ctx, first.order_id, SalesStatus.DISPATCHING)
        second = await _order(ctx, seeded_db, 2, payment_term=PaymentTerm.CREDIT)

        assert await ctx.cash.balance() == 0
        assert await customer_debt(ctx, seeded_db["customer_id"]) == 75.0
        with pytest.raises(CreditLimitExceeded) as exc_info:
            await transition_sales_order(ctx, second.order_id, SalesStatus.DISPATCHING)
        assert exc_info.value.existing_debt == 75.0
        assert not second.stock_committed

        await record_customer_payment(ctx, first.order_id)
        await transition_sales_order(ctx, second.order_id, SalesStatus.DISPATCHING)

        assert second.stock_committed
        assert await ctx.cash.balance() == 75.0

    async def test_payment_rules(self, ctx, seeded_db):
        await StockLedger(ctx).produce(seeded_db["shirt_id"], "MAIN", 20, batch_id="A")
        credit = await _order(ctx, seeded_db, 1, payment_term=PaymentTerm.CREDIT)
        immediate = await _order(ctx, seeded_db, 1)

        with pytest.raises(InvalidTransition):
            await record_customer_payment(ctx, credit.order_id)

        await transition_sales_order(ctx, credit.order_id, SalesStatus.DISPATCHING)
        await record_customer_payment(ctx, credit.order_id)
        with pytest.raises(InvalidTransition):
            await record_customer_payment(ctx, credit.order_id)

        await transition_sales_order(ctx, immediate.order_id, SalesStatus.DISPATCHING)
        with pytest.raises(InvalidTransition):
            await record_customer_payment(ctx, immediate.order_id)


@pytest.mark.asyncio
class TestAwaitingProduction:
    async def _activate_bom(self, ctx, ids):
        await create_bom(
            ctx,
            BOMCreate(
                finished_good_id=ids["shirt_id"],
                lines=[BOMLineIn(material_id=ids["fabric_id"], qty_per_unit=3.5)],
            ),
        )

    async def test_spawns_one_production_order_per_finished_good(self, ctx, seeded_db):
        await self._activate_bom(ctx, seeded_db)
        order = await _order(ctx, seeded_db, 6)

        result = await transition_sales_order(ctx, order.order_id, SalesStatus.AWAITING_PRODUCTION)

        (production_order,) = result.production_orders
        assert production_order.quantity == 6
        assert production_order.sales_order_id == order.order_id
        assert production_order.status == "pending"
        assert not result.stock_committed

    async def test_reentering_does_not_duplicate_production(self, ctx, seeded_db):
        await self._activate_bom(ctx, seeded_db)
        order = await _order(ctx, seeded_db, 6)
        await transition_sales_order(ctx, order.order_id, SalesStatus.AWAITING_PRODUCTION)
        await transition_sales_order(ctx, order.order_id, SalesStatus.CANCELLED)
        await transition_sales_order(ctx, order.order_id, SalesStatus.PENDING)

        await transition_sales_order(ctx, order.order_id, SalesStatus.AWAITING_PRODUCTION)

        assert await ctx.store.count(ProductionOrder, index={"sales_order_id": order.order_id}) == 1

    async def test_missing_bom_is_reported_under_skip_policy(self, ctx, seeded_db):
        order = await _order(ctx, seeded_db, 2)

        result = await transition_sales_order(ctx, order.order_id, SalesStatus.AWAITING_PRODUCTION)

        assert result.production_orders == []
        assert result.unbacked_products == [seeded_db["shirt_id"]]
        assert order.status == SalesStatus.AWAITING_PRODUCTION.value

    async def test_missing_bom_blocks_under_block_policy(self, ctx, seeded_db):
        ctx.settings = ctx.settings.model_copy(update={"unbacked_production_policy": "block"})
        order = await _order(ctx, seeded_db, 2)

        with pytest.raises(BOMNotFound):
            await transition_sales_order(ctx, order.order_id, SalesStatus.AWAITING_PRODUCTION)

        assert order.status == SalesStatus.PENDING.value
        assert await ctx.store.count(ProductionOrder) == 0
