"""
Sales Order Workflow.

State machine:
    quote → pending → awaiting_production → dispatching → out_for_delivery
          → delivered → completed
    any non-terminal state → cancelled
    cancelled → pending                      (manual restore)

Side effects, all inside one transition (nothing is applied when any
check fails):
  - first entry into dispatching or completed commits stock: every line is
    allocated FEFO/FIFO with provenance stored for pick lists; immediate
    payment adds the order total to cash
  - entering dispatching requires a delivery assignee
  - credit orders must fit the customer's credit limit before commit
  - entering awaiting_production spawns one production order per finished
    good with an active BOM
  - entering cancelled after a commit returns the picked stock into the
    returns location (batch identity kept) and reverses applied cash
"""

import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import func, select

from core.enums import ItemType, LocationType, MovementType, PaymentTerm, ProductionStatus, SalesStatus
from core.errors import (
    BOMNotFound,
    CreditLimitExceeded,
    CustomerNotFound,
    InvalidTransition,
    LogisticsNotAssigned,
    OrderNotFound,
    ProductNotFound,
)
from core.schemas import ProductionOrderCreate, SalesOrderCreate
from db.models import (
    Customer,
    Location,
    Product,
    ProductionOrder,
    SalesOrder,
    SalesOrderAllocation,
    SalesOrderLine,
    SalesOrderStatusHistory,
)
from inventory.allocation import Allocation, plan_allocation
from inventory.ledger import StockLedger
from manufacturing.bom import find_active_bom
from manufacturing.production import create_production_order

if TYPE_CHECKING:
    from core.context import OperationContext

logger = structlog.get_logger()

SALES_TRANSITIONS: dict[SalesStatus, set[SalesStatus]] = {
    SalesStatus.QUOTE: {SalesStatus.PENDING, SalesStatus.CANCELLED},
    SalesStatus.PENDING: {
        SalesStatus.AWAITING_PRODUCTION,
        SalesStatus.DISPATCHING,
        SalesStatus.COMPLETED,
        SalesStatus.CANCELLED,
    },
    SalesStatus.AWAITING_PRODUCTION: {SalesStatus.DISPATCHING, SalesStatus.COMPLETED, SalesStatus.CANCELLED},
    SalesStatus.DISPATCHING: {SalesStatus.OUT_FOR_DELIVERY, SalesStatus.CANCELLED},
    SalesStatus.OUT_FOR_DELIVERY: {SalesStatus.DELIVERED, SalesStatus.CANCELLED},
    SalesStatus.DELIVERED: {SalesStatus.COMPLETED, SalesStatus.CANCELLED},
    SalesStatus.COMPLETED: set(),
    SalesStatus.CANCELLED: {SalesStatus.PENDING},
}

STOCK_COMMITTING = {SalesStatus.DISPATCHING, SalesStatus.COMPLETED}


@dataclass
class TransitionResult:
    order: SalesOrder
    from_status: str
    to_status: str
    allocations: dict[uuid.UUID, list[Allocation]] = field(default_factory=dict)  # line_id → picks
    production_orders: list[ProductionOrder] = field(default_factory=list)
    unbacked_products: list[uuid.UUID] = field(default_factory=list)
    returned_quantity: float = 0.0
    cash_delta: float = 0.0

    @property
    def stock_committed(self) -> bool:
        return bool(self.allocations)


def can_transition(from_status: str, to_status: str) -> bool:
    return SalesStatus(to_status) in SALES_TRANSITIONS[SalesStatus(from_status)]


def resolve_unit_price(product: Product, price_tier: str | None) -> float:
    """Price from the product's tier table: the order's tier, else the retail tier."""
    tiers = product.price_tiers or {}
    for tier in (price_tier, "retail"):
        if tier and tier in tiers:
            return float(tiers[tier])
    raise ValueError(f"No price for product {product.sku} in tier '{price_tier or 'retail'}'")


# ─── Create / read ──────────────────────────────────────────────────────────


async def create_sales_order(ctx: "OperationContext", payload: SalesOrderCreate) -> SalesOrder:
    if payload.customer_id is not None and await ctx.store.get(Customer, payload.customer_id) is None:
        raise CustomerNotFound(payload.customer_id)

    now = ctx.now()
    order = SalesOrder(
        order_id=uuid.uuid4(),
        customer_id=payload.customer_id,
        status=SalesStatus.QUOTE.value,
        payment_term=payload.payment_term.value,
        price_tier=payload.price_tier,
        delivery_assignee=payload.delivery_assignee,
        order_date=now,
        updated_at=now,
    )

    lines = []
    for line_no, item in enumerate(payload.lines, start=1):
        product = await ctx.store.get(Product, item.product_id)
        if product is None:
            raise ProductNotFound(item.product_id)
        unit_price = item.unit_price if item.unit_price is not None else resolve_unit_price(product, payload.price_tier)
        lines.append(
            SalesOrderLine(
                line_id=uuid.uuid4(),
                order_id=order.order_id,
                line_no=line_no,
                product_id=item.product_id,
                quantity=item.quantity,
                unit_price=unit_price,
                unit_cost=product.unit_cost or 0.0,
            )
        )
    order.total_amount = round(sum(line.quantity * line.unit_price for line in lines), 2)

    await ctx.store.add(order)
    await ctx.store.add_many(lines)
    await ctx.store.add(
        SalesOrderStatusHistory(order_id=order.order_id, to_status=order.status, actor=ctx.actor, changed_at=now)
    )

    ctx.audit_event(
        "sales.created",
        "sales_order",
        order.order_id,
        customer_id=str(order.customer_id) if order.customer_id else None,
        total_amount=order.total_amount,
        lines=len(lines),
    )
    logger.info("sales.created", order_id=str(order.order_id), total=order.total_amount, lines=len(lines))
    return order


async def get_sales_order(ctx: "OperationContext", order_id: uuid.UUID) -> SalesOrder:
    order = await ctx.store.get(SalesOrder, order_id)
    if order is None:
        raise OrderNotFound(order_id)
    return order


async def order_lines(ctx: "OperationContext", order_id: uuid.UUID) -> list[SalesOrderLine]:
    return await ctx.store.get_all(SalesOrderLine, index={"order_id": order_id}, order_by=(SalesOrderLine.line_no,))


async def status_history(ctx: "OperationContext", order_id: uuid.UUID) -> list[SalesOrderStatusHistory]:
    return await ctx.store.get_all(
        SalesOrderStatusHistory,
        index={"order_id": order_id},
        order_by=(SalesOrderStatusHistory.changed_at, SalesOrderStatusHistory.id),
    )


async def assign_delivery(ctx: "OperationContext", order_id: uuid.UUID, assignee: str) -> SalesOrder:
    order = await get_sales_order(ctx, order_id)
    order.delivery_assignee = assignee
    order.updated_at = ctx.now()
    await ctx.db.flush()
    return order


async def customer_debt(ctx: "OperationContext", customer_id: uuid.UUID, exclude_order_id: uuid.UUID | None = None) -> float:
    """Committed, unpaid credit sales of a customer."""
    stmt = select(func.sum(SalesOrder.total_amount - SalesOrder.cash_applied)).where(
        SalesOrder.customer_id == customer_id,
        SalesOrder.payment_term == PaymentTerm.CREDIT.value,
        SalesOrder.stock_committed.is_(True),
        SalesOrder.paid_at.is_(None),
        SalesOrder.status != SalesStatus.CANCELLED.value,
    )
    if exclude_order_id is not None:
        stmt = stmt.where(SalesOrder.order_id != exclude_order_id)
    result = await ctx.db.execute(stmt)
    return float(result.scalar() or 0.0)


# ─── Transitions ────────────────────────────────────────────────────────────


async def transition_sales_order(ctx: "OperationContext", order_id: uuid.UUID, to_status: SalesStatus | str) -> TransitionResult:
    order = await get_sales_order(ctx, order_id)
    to_status = SalesStatus(to_status)
    from_status = order.status
    if not can_transition(from_status, to_status):
        raise InvalidTransition("sales_order", order_id, from_status, to_status.value)

    lines = await order_lines(ctx, order_id)
    result = TransitionResult(order=order, from_status=from_status, to_status=to_status.value)

    async with ctx.locks.hold(*(line.product_id for line in lines)):
        if to_status == SalesStatus.DISPATCHING and not order.delivery_assignee:
            raise LogisticsNotAssigned(order_id)

        if to_status in STOCK_COMMITTING and not order.stock_committed:
            await _commit_stock(ctx, order, lines, result)
        elif to_status == SalesStatus.AWAITING_PRODUCTION:
            await _spawn_production(ctx, order, lines, result)
        elif to_status == SalesStatus.CANCELLED and order.stock_committed:
            await _reverse_commit(ctx, order, result)

        now = ctx.now()
        order.status = to_status.value
        order.updated_at = now
        await ctx.store.add(
            SalesOrderStatusHistory(
                order_id=order.order_id,
                from_status=from_status,
                to_status=to_status.value,
                actor=ctx.actor,
                changed_at=now,
            )
        )

    ctx.audit_event(
        "sales.status_changed",
        "sales_order",
        order.order_id,
        from_status=from_status,
        to_status=to_status.value,
        stock_committed=order.stock_committed,
        cash_delta=result.cash_delta,
    )
    logger.info(
        "sales.transitioned",
        order_id=str(order.order_id),
        from_status=from_status,
        to_status=to_status.value,
        committed=result.stock_committed,
        production_orders=len(result.production_orders),
        unbacked=len(result.unbacked_products),
        cash_delta=result.cash_delta,
    )
    return result


async def record_customer_payment(ctx: "OperationContext", order_id: uuid.UUID) -> SalesOrder:
    """Settle a committed credit order: cash in, debt cleared."""
    order = await get_sales_order(ctx, order_id)
    if (
        order.payment_term != PaymentTerm.CREDIT.value
        or not order.stock_committed
        or order.paid_at is not None
        or order.status == SalesStatus.CANCELLED.value
    ):
        raise InvalidTransition("sales_order", order_id, order.status, "paid")

    outstanding = round(order.total_amount - order.cash_applied, 2)
    await ctx.cash.adjust_balance(outstanding, "customer_payment", "sales_order", order.order_id)
    order.cash_applied = order.total_amount
    order.paid_at = ctx.now()
    order.updated_at = order.paid_at
    await ctx.db.flush()

    ctx.audit_event("sales.payment_recorded", "sales_order", order.order_id, amount=outstanding)
    logger.info("sales.payment_recorded", order_id=str(order.order_id), amount=outstanding)
    return order


# ─── Side effects ───────────────────────────────────────────────────────────


async def _commit_stock(ctx: "OperationContext", order: SalesOrder, lines: list[SalesOrderLine], result: TransitionResult) -> None:
    if order.payment_term == PaymentTerm.CREDIT.value:
        await _check_credit(ctx, order)

    ledger = StockLedger(ctx)

    # Plan every product's total demand before the first record moves
    demand: dict[uuid.UUID, float] = defaultdict(float)
    for line in lines:
        demand[line.product_id] += line.quantity
    for product_id, quantity in demand.items():
        plan_allocation(product_id, await ledger.records_for(product_id, for_update=True), quantity)

    now = ctx.now()
    rows = []
    for line in lines:
        picks = await ledger.allocate(
            line.product_id,
            line.quantity,
            reference_type="sales_order",
            reference_id=order.order_id,
        )
        result.allocations[line.line_id] = picks
        rows.extend(
            SalesOrderAllocation(
                order_id=order.order_id,
                line_id=line.line_id,
                product_id=line.product_id,
                stock_record_id=pick.stock_record_id,
                location_id=pick.location_id,
                batch_id=pick.batch_id,
                expires_at=pick.expires_at,
                quantity=pick.qty_taken,
            )
            for pick in picks
        )
    await ctx.store.add_many(rows)

    order.stock_committed = True
    order.committed_at = now
    if order.payment_term == PaymentTerm.IMMEDIATE.value and order.total_amount > 0:
        await ctx.cash.adjust_balance(order.total_amount, "sale", "sales_order", order.order_id)
        order.cash_applied = order.total_amount
        order.paid_at = now
        result.cash_delta = order.total_amount


async def _check_credit(ctx: "OperationContext", order: SalesOrder) -> None:
    customer = await ctx.store.get(Customer, order.customer_id)
    if customer is None:
        raise CustomerNotFound(order.customer_id)
    if customer.credit_limit <= 0:
        return
    debt = await customer_debt(ctx, customer.customer_id, exclude_order_id=order.order_id)
    if debt + order.total_amount > customer.credit_limit:
        raise CreditLimitExceeded(customer.customer_id, customer.credit_limit, debt, order.total_amount)


async def _spawn_production(ctx: "OperationContext", order: SalesOrder, lines: list[SalesOrderLine], result: TransitionResult) -> None:
    demand: dict[uuid.UUID, float] = defaultdict(float)
    for line in lines:
        product = await ctx.store.get(Product, line.product_id)
        if product.item_type == ItemType.FINISHED_GOOD.value:
            demand[line.product_id] += line.quantity

    boms: dict[uuid.UUID, Any] = {}
    for product_id in demand:
        bom = await find_active_bom(ctx, product_id)
        if bom is None:
            if ctx.settings.unbacked_production_policy == "block":
                raise BOMNotFound(product_id)
            result.unbacked_products.append(product_id)
            logger.warning("sales.unbacked_production", order_id=str(order.order_id), product_id=str(product_id))
            continue
        boms[product_id] = bom

    for product_id, bom in boms.items():
        existing = [
            po
            for po in await ctx.store.get_all(
                ProductionOrder,
                index={"sales_order_id": order.order_id, "finished_good_id": product_id},
            )
            if po.status != ProductionStatus.CANCELLED.value
        ]
        if existing:
            result.production_orders.extend(existing)
            continue
        production_order = await create_production_order(
            ctx,
            ProductionOrderCreate(finished_good_id=product_id, quantity=demand[product_id], bom_id=bom.bom_id),
            sales_order_id=order.order_id,
        )
        result.production_orders.append(production_order)


async def _reverse_commit(ctx: "OperationContext", order: SalesOrder, result: TransitionResult) -> None:
    ledger = StockLedger(ctx)
    returns_location = await _returns_location(ctx)
    now = ctx.now()

    allocations = await ctx.store.get_all(
        SalesOrderAllocation,
        index={"order_id": order.order_id, "reversed_at": None},
    )
    for allocation in allocations:
        await ledger.produce(
            allocation.product_id,
            returns_location.location_id,
            allocation.quantity,
            batch_id=allocation.batch_id,
            expires_at=allocation.expires_at,
            movement_type=MovementType.RETURN,
            reference_type="sales_order",
            reference_id=order.order_id,
        )
        allocation.reversed_at = now
        result.returned_quantity += allocation.quantity

    if order.cash_applied:
        await ctx.cash.adjust_balance(-order.cash_applied, "sale_reversal", "sales_order", order.order_id)
        result.cash_delta = -order.cash_applied
        order.cash_applied = 0.0
        order.paid_at = None

    order.stock_committed = False
    order.committed_at = None


async def _returns_location(ctx: "OperationContext") -> Location:
    location_id = ctx.settings.returns_location_id
    location = await ctx.store.get(Location, location_id)
    if location is None:
        location = await ctx.store.add(
            Location(
                location_id=location_id,
                name="Returns",
                location_type=LocationType.RETURNS.value,
                is_active=True,
                created_at=ctx.now(),
            )
        )
        logger.info("sales.returns_location_created", location_id=location_id)
    return location
