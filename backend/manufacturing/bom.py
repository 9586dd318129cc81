"""
BOM Resolver — per-unit material requirements for finished goods.

A finished good has any number of BOM versions but at most one active.
Resolution explodes the active (or an explicitly chosen) BOM into
material → required quantity for an ordered quantity, and feasibility
compares those requirements with the ledger totals of every material.
"""

import math
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import update

from core.enums import ItemType
from core.errors import BOMNotFound, InsufficientMaterial, ProductNotFound
from core.schemas import BOMCreate
from db.models import BillOfMaterials, BOMLine, Product
from inventory.allocation import QTY_EPSILON
from inventory.ledger import StockLedger

if TYPE_CHECKING:
    from core.context import OperationContext

logger = structlog.get_logger()


@dataclass
class MaterialRequirement:
    material_id: uuid.UUID
    qty_per_unit: float
    required: float
    available: float = 0.0

    @property
    def shortfall(self) -> float:
        return max(0.0, self.required - self.available)

    @property
    def is_short(self) -> bool:
        return self.available + QTY_EPSILON < self.required


@dataclass
class FeasibilityResult:
    finished_good_id: uuid.UUID
    bom_id: uuid.UUID
    quantity: float
    requirements: list[MaterialRequirement] = field(default_factory=list)

    @property
    def shortages(self) -> list[MaterialRequirement]:
        return [r for r in self.requirements if r.is_short]

    @property
    def feasible(self) -> bool:
        return not self.shortages

    def raise_for_shortage(self) -> None:
        shortages = self.shortages
        if shortages:
            first = shortages[0]
            raise InsufficientMaterial(
                first.material_id,
                required=first.required,
                available=first.available,
                shortages=[
                    {"material_id": str(s.material_id), "required": s.required, "available": s.available}
                    for s in shortages
                ],
            )


async def create_bom(ctx: "OperationContext", payload: BOMCreate) -> BillOfMaterials:
    finished_good = await ctx.store.get(Product, payload.finished_good_id)
    if finished_good is None:
        raise ProductNotFound(payload.finished_good_id)
    if finished_good.item_type != ItemType.FINISHED_GOOD.value:
        raise ValueError(f"Product {finished_good.sku} is not a finished good")
    for line in payload.lines:
        if await ctx.store.get(Product, line.material_id) is None:
            raise ProductNotFound(line.material_id)

    bom = BillOfMaterials(
        bom_id=uuid.uuid4(),
        finished_good_id=payload.finished_good_id,
        version=payload.version,
        is_active=False,
        created_at=ctx.now(),
    )
    await ctx.store.add(bom)
    await ctx.store.add_many(
        BOMLine(bom_id=bom.bom_id, material_id=line.material_id, qty_per_unit=line.qty_per_unit)
        for line in payload.lines
    )
    if payload.activate:
        await set_active_bom(ctx, bom.bom_id)

    logger.info(
        "bom.created",
        bom_id=str(bom.bom_id),
        finished_good=str(bom.finished_good_id),
        version=bom.version,
        lines=len(payload.lines),
        active=bom.is_active,
    )
    return bom


async def set_active_bom(ctx: "OperationContext", bom_id: uuid.UUID) -> BillOfMaterials:
    """Activate one BOM version and deactivate every other version of the same finished good."""
    bom = await ctx.store.get(BillOfMaterials, bom_id)
    if bom is None:
        raise BOMNotFound(bom_id)

    await ctx.db.execute(
        update(BillOfMaterials)
        .where(
            BillOfMaterials.finished_good_id == bom.finished_good_id,
            BillOfMaterials.bom_id != bom.bom_id,
        )
        .values(is_active=False)
        .execution_options(synchronize_session="fetch")
    )
    bom.is_active = True
    await ctx.db.flush()

    ctx.audit_event("bom.activated", "bom", bom.bom_id, finished_good_id=str(bom.finished_good_id), version=bom.version)
    return bom


async def get_active_bom(ctx: "OperationContext", finished_good_id: uuid.UUID) -> BillOfMaterials:
    boms = await ctx.store.get_all(BillOfMaterials, index={"finished_good_id": finished_good_id, "is_active": True})
    if not boms:
        raise BOMNotFound(finished_good_id)
    return boms[0]


async def find_active_bom(ctx: "OperationContext", finished_good_id: uuid.UUID) -> BillOfMaterials | None:
    try:
        return await get_active_bom(ctx, finished_good_id)
    except BOMNotFound:
        return None


async def bom_lines(ctx: "OperationContext", bom_id: uuid.UUID) -> list[BOMLine]:
    return await ctx.store.get_all(BOMLine, index={"bom_id": bom_id})


async def resolve_requirements(ctx: "OperationContext", bom: BillOfMaterials, quantity: float) -> list[MaterialRequirement]:
    """required = qty_per_unit × ordered quantity, one entry per material."""
    return [
        MaterialRequirement(
            material_id=line.material_id,
            qty_per_unit=line.qty_per_unit,
            required=line.qty_per_unit * quantity,
        )
        for line in await bom_lines(ctx, bom.bom_id)
    ]


async def check_feasibility(
    ctx: "OperationContext",
    finished_good_id: uuid.UUID,
    quantity: float,
    bom_id: uuid.UUID | None = None,
) -> FeasibilityResult:
    """Every material's requirement against its ledger total. Reports all shortages."""
    if quantity <= 0:
        raise ValueError(f"Production quantity must be positive, got {quantity}")
    bom = await _resolve_bom(ctx, finished_good_id, bom_id)

    ledger = StockLedger(ctx)
    requirements = await resolve_requirements(ctx, bom, quantity)
    for requirement in requirements:
        requirement.available = await ledger.total_quantity(requirement.material_id)

    return FeasibilityResult(
        finished_good_id=finished_good_id,
        bom_id=bom.bom_id,
        quantity=quantity,
        requirements=requirements,
    )


async def max_producible(ctx: "OperationContext", finished_good_id: uuid.UUID, bom_id: uuid.UUID | None = None) -> int:
    """Whole units the current material stock supports."""
    bom = await _resolve_bom(ctx, finished_good_id, bom_id)
    lines = await bom_lines(ctx, bom.bom_id)
    if not lines:
        return 0

    ledger = StockLedger(ctx)
    limits = []
    for line in lines:
        available = await ledger.total_quantity(line.material_id)
        limits.append(math.floor((available + QTY_EPSILON) / line.qty_per_unit))
    return max(0, min(limits))


async def _resolve_bom(ctx: "OperationContext", finished_good_id: uuid.UUID, bom_id: uuid.UUID | None) -> BillOfMaterials:
    if bom_id is None:
        return await get_active_bom(ctx, finished_good_id)
    bom = await ctx.store.get(BillOfMaterials, bom_id)
    if bom is None or bom.finished_good_id != finished_good_id:
        raise BOMNotFound(finished_good_id)
    return bom
