"""
Location Transfers — Batch-Preserving Stock Moves.

Moves stock of one product from one location to another:
1. Validate the route (distinct locations, destination exists and is active)
2. FEFO-allocate the quantity from the source location only
3. Produce every leg at the destination with its original batch id,
   received time and expiry, so FEFO/FIFO order survives the move
4. Record the completed transfer with its legs

Transfer legs are journaled as transfer_out / transfer_in and net to zero
for the product's reconciliation totals.
"""

import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import func, select

from core.enums import MovementType
from core.errors import InvalidTransfer, ProductNotFound
from db.models import Location, Product, StockRecord, StockTransfer
from inventory.allocation import QTY_EPSILON, summarize
from inventory.ledger import StockLedger

if TYPE_CHECKING:
    from core.context import OperationContext

logger = structlog.get_logger()


@dataclass
class TransferSource:
    """A location holding stock of the product that could ship to the destination."""

    location_id: str
    location_name: str
    available_quantity: float
    recommended_transfer_qty: float
    covers_need: bool


async def transfer(
    ctx: "OperationContext",
    product_id: uuid.UUID,
    from_location: str,
    to_location: str,
    quantity: float,
    reason_code: str = "rebalance",
) -> StockTransfer:
    """
    Move `quantity` of a product between locations.

    Raises InvalidTransfer before anything moves when the route is not
    valid, and InsufficientStockAtLocation when the source holds less than
    `quantity`.
    """
    if from_location == to_location:
        raise InvalidTransfer("source and destination are the same location", from_location, to_location)
    if quantity <= 0:
        raise InvalidTransfer(f"quantity must be positive, got {quantity}", from_location, to_location)

    destination = await ctx.store.get(Location, to_location)
    if destination is None or not destination.is_active:
        raise InvalidTransfer("destination location does not exist or is inactive", from_location, to_location)
    if await ctx.store.get(Product, product_id) is None:
        raise ProductNotFound(product_id)

    ledger = StockLedger(ctx)
    transfer_id = uuid.uuid4()
    async with ctx.locks.hold(product_id):
        plan = await ledger.allocate(
            product_id,
            quantity,
            location_id=from_location,
            movement_type=MovementType.TRANSFER_OUT,
            reference_type="transfer",
            reference_id=transfer_id,
        )
        record = StockTransfer(
            transfer_id=transfer_id,
            product_id=product_id,
            from_location_id=from_location,
            to_location_id=to_location,
            quantity=quantity,
            legs=[
                {"batch_id": leg.batch_id, "quantity": leg.qty_taken, "source_record_id": str(leg.stock_record_id)}
                for leg in plan
            ],
            reason_code=reason_code,
            transferred_at=ctx.now(),
        )
        for leg in plan:
            await ledger.produce(
                product_id,
                to_location,
                leg.qty_taken,
                batch_id=leg.batch_id,
                expires_at=leg.expires_at,
                received_at=leg.received_at,
                movement_type=MovementType.TRANSFER_IN,
                reference_type="transfer",
                reference_id=record.transfer_id,
            )
        await ctx.store.add(record)

    ctx.audit_event(
        "stock.transferred",
        "stock_transfer",
        record.transfer_id,
        product_id=str(product_id),
        from_location=from_location,
        to_location=to_location,
        quantity=quantity,
        legs=summarize(plan),
    )
    logger.info(
        "transfer.completed",
        transfer_id=str(record.transfer_id),
        from_location=from_location,
        to_location=to_location,
        product=str(product_id),
        quantity=quantity,
        legs=len(plan),
    )
    return record


async def find_transfer_sources(
    ctx: "OperationContext",
    product_id: uuid.UUID,
    to_location: str,
    needed_qty: float = 0,
    max_results: int = 3,
) -> list[TransferSource]:
    """
    Rank the other active locations by how much of the product they hold.

    Locations that can cover the whole need come first, then the rest by
    available quantity.
    """
    result = await ctx.db.execute(
        select(StockRecord.location_id, Location.name, func.sum(StockRecord.quantity).label("available"))
        .join(Location, Location.location_id == StockRecord.location_id)
        .where(
            StockRecord.product_id == product_id,
            StockRecord.location_id != to_location,
            Location.is_active.is_(True),
        )
        .group_by(StockRecord.location_id, Location.name)
    )

    sources = []
    for location_id, name, available in result.all():
        available = float(available or 0)
        if available <= QTY_EPSILON:
            continue
        recommended = min(available, needed_qty) if needed_qty > 0 else available
        sources.append(
            TransferSource(
                location_id=location_id,
                location_name=name,
                available_quantity=available,
                recommended_transfer_qty=recommended,
                covers_need=needed_qty > 0 and available + QTY_EPSILON >= needed_qty,
            )
        )

    sources.sort(key=lambda s: (not s.covers_need, -s.available_quantity, s.location_id))
    return sources[:max_results]
