"""Pick lists built from the allocation provenance stored at stock commit."""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from db.models import Product, SalesOrderAllocation, SalesOrderLine
from sales.orders import get_sales_order

if TYPE_CHECKING:
    from core.context import OperationContext


@dataclass
class PickListLine:
    line_no: int
    sku: str
    product_name: str
    location_id: str
    batch_id: str | None
    expires_at: datetime | None
    quantity: float


async def build_pick_list(ctx: "OperationContext", order_id: uuid.UUID) -> list[PickListLine]:
    """Where to pick each committed unit, grouped by location then line."""
    await get_sales_order(ctx, order_id)
    allocations = await ctx.store.get_all(
        SalesOrderAllocation,
        index={"order_id": order_id, "reversed_at": None},
    )
    if not allocations:
        return []

    lines = {
        line.line_id: line
        for line in await ctx.store.get_all(SalesOrderLine, index={"order_id": order_id})
    }
    products = {
        p.product_id: p
        for p in await ctx.store.get_all(Product, index={"product_id": list({a.product_id for a in allocations})})
    }

    picks = [
        PickListLine(
            line_no=lines[a.line_id].line_no,
            sku=products[a.product_id].sku,
            product_name=products[a.product_id].name,
            location_id=a.location_id,
            batch_id=a.batch_id,
            expires_at=a.expires_at,
            quantity=a.quantity,
        )
        for a in allocations
    ]
    picks.sort(key=lambda p: (p.location_id, p.line_no, p.expires_at is None, p.expires_at or datetime.max))
    return picks
