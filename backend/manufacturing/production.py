"""
Production Order Workflow.

State machine:
    pending → wip → completed
    pending | wip → cancelled

Completion (from wip only) is check-all-then-commit-all:
  1. Resolve the order's BOM (pinned bom_id, else the active BOM)
  2. required[material] = qty_per_unit × ordered quantity
  3. Under the locks of the finished good and every material, verify every
     requirement against the ledger and that the target location is active;
     a shortfall raises InsufficientMaterial, an unusable target
     LocationNotFound, and nothing is mutated
  4. Allocate each material once (FEFO/FIFO)
  5. Produce the finished good at the target location under a minted batch id
  6. Mark completed with completion date, produced batch and material cost
"""

import uuid
from datetime import timedelta
from typing import TYPE_CHECKING

import structlog

from core.enums import MovementType, ProductionStatus
from core.errors import InvalidTransition, LocationNotFound, OrderNotFound, ProductNotFound
from core.schemas import ProductionOrderCreate
from db.models import Location, Product, ProductionOrder
from inventory.ledger import StockLedger
from manufacturing.bom import check_feasibility, get_active_bom

if TYPE_CHECKING:
    from core.context import OperationContext

logger = structlog.get_logger()

PRODUCTION_TRANSITIONS: dict[ProductionStatus, set[ProductionStatus]] = {
    ProductionStatus.PENDING: {ProductionStatus.WIP, ProductionStatus.CANCELLED},
    ProductionStatus.WIP: {ProductionStatus.COMPLETED, ProductionStatus.CANCELLED},
    ProductionStatus.COMPLETED: set(),
    ProductionStatus.CANCELLED: set(),
}


def can_transition(from_status: str, to_status: str) -> bool:
    return ProductionStatus(to_status) in PRODUCTION_TRANSITIONS[ProductionStatus(from_status)]


def mint_batch_id(order: ProductionOrder, prefix: str) -> str:
    """Batch id derived from the completion period and the order id: PRD-20240314-1A2B3C4D."""
    period = order.completion_date.strftime("%Y%m%d")
    return f"{prefix}-{period}-{str(order.production_order_id).replace('-', '')[:8].upper()}"


async def create_production_order(
    ctx: "OperationContext",
    payload: ProductionOrderCreate,
    sales_order_id: uuid.UUID | None = None,
) -> ProductionOrder:
    finished_good = await ctx.store.get(Product, payload.finished_good_id)
    if finished_good is None:
        raise ProductNotFound(payload.finished_good_id)

    target_location_id = payload.target_location_id or ctx.settings.default_location_id
    location = await ctx.store.get(Location, target_location_id)
    if location is None or not location.is_active:
        raise LocationNotFound(target_location_id)

    bom_id = payload.bom_id
    if bom_id is None:
        bom_id = (await get_active_bom(ctx, payload.finished_good_id)).bom_id

    order = ProductionOrder(
        production_order_id=uuid.uuid4(),
        finished_good_id=payload.finished_good_id,
        bom_id=bom_id,
        quantity=payload.quantity,
        target_location_id=target_location_id,
        status=ProductionStatus.PENDING.value,
        sales_order_id=sales_order_id,
        start_date=ctx.now(),
        notes=payload.notes,
    )
    await ctx.store.add(order)

    ctx.audit_event(
        "production.created",
        "production_order",
        order.production_order_id,
        finished_good_id=str(order.finished_good_id),
        quantity=order.quantity,
        sales_order_id=str(sales_order_id) if sales_order_id else None,
    )
    logger.info(
        "production.created",
        production_order_id=str(order.production_order_id),
        finished_good=finished_good.sku,
        quantity=order.quantity,
        sales_order_id=str(sales_order_id) if sales_order_id else None,
    )
    return order


async def get_production_order(ctx: "OperationContext", production_order_id: uuid.UUID) -> ProductionOrder:
    order = await ctx.store.get(ProductionOrder, production_order_id)
    if order is None:
        raise OrderNotFound(production_order_id)
    return order


async def transition_production(ctx: "OperationContext", production_order_id: uuid.UUID, to_status: ProductionStatus | str) -> ProductionOrder:
    to_status = ProductionStatus(to_status)
    if to_status == ProductionStatus.WIP:
        return await start_production(ctx, production_order_id)
    if to_status == ProductionStatus.COMPLETED:
        return await complete_production(ctx, production_order_id)
    if to_status == ProductionStatus.CANCELLED:
        return await cancel_production(ctx, production_order_id)
    order = await get_production_order(ctx, production_order_id)
    raise InvalidTransition("production_order", production_order_id, order.status, to_status.value)


async def start_production(ctx: "OperationContext", production_order_id: uuid.UUID) -> ProductionOrder:
    order = await get_production_order(ctx, production_order_id)
    _guard(order, ProductionStatus.WIP)
    _set_status(ctx, order, ProductionStatus.WIP)
    await ctx.db.flush()
    return order


async def cancel_production(ctx: "OperationContext", production_order_id: uuid.UUID) -> ProductionOrder:
    order = await get_production_order(ctx, production_order_id)
    _guard(order, ProductionStatus.CANCELLED)
    _set_status(ctx, order, ProductionStatus.CANCELLED)
    await ctx.db.flush()
    return order


async def complete_production(ctx: "OperationContext", production_order_id: uuid.UUID) -> ProductionOrder:
    """
    Consume BOM materials and produce the finished good.

    Raises InsufficientMaterial (with every short material in `.shortages`)
    before any stock moves.
    """
    order = await get_production_order(ctx, production_order_id)
    _guard(order, ProductionStatus.COMPLETED)

    feasibility = await check_feasibility(ctx, order.finished_good_id, order.quantity, bom_id=order.bom_id)
    material_ids = [r.material_id for r in feasibility.requirements]

    ledger = StockLedger(ctx)
    async with ctx.locks.hold(order.finished_good_id, *material_ids):
        # Re-read availability under the locks; anything consumed since the first look counts
        feasibility = await check_feasibility(ctx, order.finished_good_id, order.quantity, bom_id=feasibility.bom_id)
        if not feasibility.feasible:
            logger.warning(
                "production.insufficient_material",
                production_order_id=str(order.production_order_id),
                shortages=[str(s.material_id) for s in feasibility.shortages],
            )
        feasibility.raise_for_shortage()
        await ledger.require_location(order.target_location_id)
        finished_good = await ctx.store.get(Product, order.finished_good_id)
        if finished_good is None:
            raise ProductNotFound(order.finished_good_id)

        material_cost = 0.0
        for requirement in feasibility.requirements:
            await ledger.allocate(
                requirement.material_id,
                requirement.required,
                reference_type="production_order",
                reference_id=order.production_order_id,
            )
            material = await ctx.store.get(Product, requirement.material_id)
            material_cost += requirement.required * (material.unit_cost or 0)

        order.completion_date = ctx.now()
        order.produced_batch_id = mint_batch_id(order, ctx.settings.production_batch_prefix)
        expires_at = (
            order.completion_date + timedelta(days=finished_good.shelf_life_days)
            if finished_good.shelf_life_days
            else None
        )
        await ledger.produce(
            order.finished_good_id,
            order.target_location_id,
            order.quantity,
            batch_id=order.produced_batch_id,
            expires_at=expires_at,
            received_at=order.completion_date,
            movement_type=MovementType.PRODUCTION_OUTPUT,
            reference_type="production_order",
            reference_id=order.production_order_id,
        )

        order.bom_id = feasibility.bom_id
        order.material_cost = round(material_cost, 4)
        _set_status(ctx, order, ProductionStatus.COMPLETED)
        await ctx.db.flush()

    logger.info(
        "production.completed",
        production_order_id=str(order.production_order_id),
        finished_good=str(order.finished_good_id),
        quantity=order.quantity,
        batch_id=order.produced_batch_id,
        material_cost=order.material_cost,
    )
    return order


def _guard(order: ProductionOrder, to_status: ProductionStatus) -> None:
    if not can_transition(order.status, to_status):
        raise InvalidTransition("production_order", order.production_order_id, order.status, to_status.value)


def _set_status(ctx: "OperationContext", order: ProductionOrder, to_status: ProductionStatus) -> None:
    from_status = order.status
    order.status = to_status.value
    ctx.audit_event(
        "production.status_changed",
        "production_order",
        order.production_order_id,
        from_status=from_status,
        to_status=to_status.value,
    )
    logger.info(
        "production.transitioned",
        production_order_id=str(order.production_order_id),
        from_status=from_status,
        to_status=to_status.value,
    )
