"""
Purchase Orders — creation, supplier payment, cancellation, planner drafts.

Lifecycle:
    pending → received → paid
    pending → cancelled

Receiving lives in supply_chain/receiving.py. Payment is the only path
that takes cash out for a purchase, and it runs once per PO.
"""

import uuid
from typing import TYPE_CHECKING

import structlog

from core.enums import PurchaseStatus
from core.errors import InvalidTransition, OrderNotFound, ProductNotFound
from core.schemas import PurchaseOrderCreate, PurchaseOrderLineIn
from db.models import Product, PurchaseOrder, PurchaseOrderLine
from inventory.planner import PlannerReport

if TYPE_CHECKING:
    from core.context import OperationContext

logger = structlog.get_logger()

PURCHASE_TRANSITIONS: dict[PurchaseStatus, set[PurchaseStatus]] = {
    PurchaseStatus.PENDING: {PurchaseStatus.RECEIVED, PurchaseStatus.CANCELLED},
    PurchaseStatus.RECEIVED: {PurchaseStatus.PAID},
    PurchaseStatus.PAID: set(),
    PurchaseStatus.CANCELLED: set(),
}


def guard_transition(po: PurchaseOrder, to_status: PurchaseStatus) -> None:
    if to_status not in PURCHASE_TRANSITIONS[PurchaseStatus(po.status)]:
        raise InvalidTransition("purchase_order", po.po_id, po.status, to_status.value)


async def create_purchase_order(ctx: "OperationContext", payload: PurchaseOrderCreate, source: str = "manual") -> PurchaseOrder:
    for line in payload.lines:
        if await ctx.store.get(Product, line.product_id) is None:
            raise ProductNotFound(line.product_id)

    po = PurchaseOrder(
        po_id=uuid.uuid4(),
        supplier=payload.supplier,
        status=PurchaseStatus.PENDING.value,
        total_cost=round(sum(line.quantity * line.unit_cost for line in payload.lines), 2),
        additional_costs=payload.additional_costs,
        source=source,
        created_at=ctx.now(),
    )
    await ctx.store.add(po)
    await ctx.store.add_many(
        PurchaseOrderLine(
            po_id=po.po_id,
            line_no=line_no,
            product_id=line.product_id,
            quantity=line.quantity,
            unit_cost=line.unit_cost,
        )
        for line_no, line in enumerate(payload.lines, start=1)
    )

    ctx.audit_event(
        "purchase.created",
        "purchase_order",
        po.po_id,
        supplier=po.supplier,
        total_cost=po.total_cost,
        source=source,
    )
    logger.info(
        "purchase.created",
        po_id=str(po.po_id),
        supplier=po.supplier,
        lines=len(payload.lines),
        total_cost=po.total_cost,
        source=source,
    )
    return po


async def get_purchase_order(ctx: "OperationContext", po_id: uuid.UUID) -> PurchaseOrder:
    po = await ctx.store.get(PurchaseOrder, po_id)
    if po is None:
        raise OrderNotFound(po_id)
    return po


async def purchase_order_lines(ctx: "OperationContext", po_id: uuid.UUID) -> list[PurchaseOrderLine]:
    return await ctx.store.get_all(PurchaseOrderLine, index={"po_id": po_id}, order_by=(PurchaseOrderLine.line_no,))


async def pay(ctx: "OperationContext", po_id: uuid.UUID) -> PurchaseOrder:
    """received → paid; cash decreases by the PO total including additional costs."""
    po = await get_purchase_order(ctx, po_id)
    guard_transition(po, PurchaseStatus.PAID)

    amount = round(po.total_cost + po.additional_costs, 2)
    await ctx.cash.adjust_balance(-amount, "supplier_payment", "purchase_order", po.po_id)
    po.status = PurchaseStatus.PAID.value
    po.paid_at = ctx.now()
    await ctx.db.flush()

    ctx.audit_event("purchase.paid", "purchase_order", po.po_id, amount=amount)
    logger.info("purchase.paid", po_id=str(po.po_id), amount=amount)
    return po


async def cancel(ctx: "OperationContext", po_id: uuid.UUID) -> PurchaseOrder:
    po = await get_purchase_order(ctx, po_id)
    guard_transition(po, PurchaseStatus.CANCELLED)
    po.status = PurchaseStatus.CANCELLED.value
    await ctx.db.flush()

    ctx.audit_event("purchase.cancelled", "purchase_order", po.po_id)
    logger.info("purchase.cancelled", po_id=str(po.po_id))
    return po


async def draft_purchase_order_from_plan(ctx: "OperationContext", report: PlannerReport, supplier: str = "TBD") -> PurchaseOrder | None:
    """One pending PO whose lines order EOQ of every product the planner flagged."""
    draft = report.purchase_order_draft()
    if not draft:
        logger.info("purchase.draft_skipped", reason="nothing_to_reorder")
        return None

    payload = PurchaseOrderCreate(
        supplier=supplier,
        lines=[
            PurchaseOrderLineIn(product_id=line["product_id"], quantity=line["quantity"], unit_cost=line["unit_cost"])
            for line in draft
        ],
    )
    return await create_purchase_order(ctx, payload, source="planner")
