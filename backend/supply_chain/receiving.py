"""
Receiving Module — PO Goods Receipt & Landed Cost.

Called when a purchase order is physically received.
Handles the receiving workflow:
1. Validate the PO is pending, every receipt line refers to a PO line and
   every destination location is active, before any line is booked
2. Spread additional costs (freight, duty) across lines by line value
3. Produce each line into the ledger at its location / batch / expiry
4. Update each product's last unit cost to the landed unit cost
5. Append a goods-receipt record per line
6. Move the PO pending → received
"""

import uuid
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from core.enums import MovementType, PurchaseStatus
from core.schemas import ReceiptLine
from db.models import GoodsReceipt, Product, PurchaseOrder, PurchaseOrderLine
from inventory.ledger import StockLedger
from supply_chain.purchasing import get_purchase_order, guard_transition, purchase_order_lines

if TYPE_CHECKING:
    from core.context import OperationContext

logger = structlog.get_logger()


def allocate_landed_costs(lines: list[PurchaseOrderLine], additional_costs: float) -> dict[int, float]:
    """
    Landed unit cost per line number.

    Additional costs are shared in proportion to line value; when every
    line is free of charge they are shared by quantity instead.
    """
    total_value = sum(line.quantity * line.unit_cost for line in lines)
    total_qty = sum(line.quantity for line in lines)

    landed = {}
    for line in lines:
        if not additional_costs:
            share = 0.0
        elif total_value > 0:
            share = additional_costs * (line.quantity * line.unit_cost) / total_value
        else:
            share = additional_costs * line.quantity / total_qty
        landed[line.line_no] = round(line.unit_cost + share / line.quantity, 4)
    return landed


def default_batch_id(po: PurchaseOrder, line_no: int) -> str:
    return f"PO-{str(po.po_id).replace('-', '')[:8].upper()}-L{line_no}"


async def receive(
    ctx: "OperationContext",
    po_id: uuid.UUID,
    lines: list[ReceiptLine] | None = None,
    received_at: datetime | None = None,
) -> list[GoodsReceipt]:
    """
    Receive every line of a pending PO.

    `lines` gives location, batch and expiry per PO line number; lines not
    listed land at the default location under a batch id derived from the PO.
    """
    po = await get_purchase_order(ctx, po_id)
    guard_transition(po, PurchaseStatus.RECEIVED)

    po_lines = await purchase_order_lines(ctx, po_id)
    by_line_no = {line.line_no: line for line in po_lines}
    instructions = {item.line_no: item for item in lines or []}
    unknown = set(instructions) - set(by_line_no)
    if unknown:
        raise ValueError(f"PO {po_id} has no line(s) {sorted(unknown)}")

    received_at = received_at or ctx.now()
    landed = allocate_landed_costs(po_lines, po.additional_costs)
    ledger = StockLedger(ctx)
    receipts = []

    placements = {}
    for line in po_lines:
        instruction = instructions.get(line.line_no) or ReceiptLine(line_no=line.line_no)
        placements[line.line_no] = (
            instruction.location_id or ctx.settings.default_location_id,
            instruction.batch_id or default_batch_id(po, line.line_no),
            instruction.expires_at,
        )

    async with ctx.locks.hold(*(line.product_id for line in po_lines)):
        for location_id in sorted({location_id for location_id, _, _ in placements.values()}):
            await ledger.require_location(location_id)

        for line in po_lines:
            location_id, batch_id, expires_at = placements[line.line_no]

            await ledger.produce(
                line.product_id,
                location_id,
                line.quantity,
                batch_id=batch_id,
                expires_at=expires_at,
                received_at=received_at,
                movement_type=MovementType.RECEIPT,
                reference_type="purchase_order",
                reference_id=po.po_id,
            )

            product = await ctx.store.get(Product, line.product_id)
            product.unit_cost = landed[line.line_no]
            product.updated_at = received_at

            receipts.append(
                GoodsReceipt(
                    po_id=po.po_id,
                    product_id=line.product_id,
                    location_id=location_id,
                    batch_id=batch_id,
                    quantity=line.quantity,
                    unit_cost=line.unit_cost,
                    landed_unit_cost=landed[line.line_no],
                    total_cost=round(line.quantity * landed[line.line_no], 2),
                    received_at=received_at,
                )
            )
        await ctx.store.add_many(receipts)

        po.status = PurchaseStatus.RECEIVED.value
        po.received_at = received_at
        await ctx.db.flush()

    ctx.audit_event(
        "purchase.received",
        "purchase_order",
        po.po_id,
        lines=len(receipts),
        total_cost=po.total_cost,
        additional_costs=po.additional_costs,
    )
    logger.info(
        "receiving.processed",
        po_id=str(po.po_id),
        lines=len(receipts),
        total_quantity=sum(r.quantity for r in receipts),
        landed_total=round(sum(r.total_cost for r in receipts), 2),
    )
    return receipts
