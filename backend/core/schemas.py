"""
Typed payloads validated at the workflow boundary.

Workflows accept these instead of loose dicts so that a missing quantity
or price is a ValidationError up front, not a silent zero halfway through
a stock commit.
"""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, model_validator

from core.enums import PaymentTerm

# ─── Manufacturing ──────────────────────────────────────────────────────────


class BOMLineIn(BaseModel):
    material_id: UUID
    qty_per_unit: float = Field(..., gt=0)


class BOMCreate(BaseModel):
    finished_good_id: UUID
    version: str = Field("v1", min_length=1, max_length=20)
    lines: list[BOMLineIn] = Field(..., min_length=1)
    activate: bool = True

    @model_validator(mode="after")
    def _unique_materials(self):
        materials = [line.material_id for line in self.lines]
        if len(materials) != len(set(materials)):
            raise ValueError("each material may appear only once per BOM")
        return self


class ProductionOrderCreate(BaseModel):
    finished_good_id: UUID
    quantity: float = Field(..., gt=0)
    target_location_id: str | None = None
    bom_id: UUID | None = None
    notes: str | None = None


# ─── Sales ──────────────────────────────────────────────────────────────────


class SalesOrderLineIn(BaseModel):
    product_id: UUID
    quantity: float = Field(..., gt=0)
    unit_price: float | None = Field(None, ge=0)  # None = resolve from price tier


class SalesOrderCreate(BaseModel):
    """New sales order; starts in quote."""

    customer_id: UUID | None = None
    payment_term: PaymentTerm = PaymentTerm.IMMEDIATE
    price_tier: str | None = None
    delivery_assignee: str | None = None
    lines: list[SalesOrderLineIn] = Field(..., min_length=1)

    @model_validator(mode="after")
    def _credit_needs_customer(self):
        if self.payment_term == PaymentTerm.CREDIT and self.customer_id is None:
            raise ValueError("credit sales require a customer")
        return self


# ─── Purchasing ─────────────────────────────────────────────────────────────


class PurchaseOrderLineIn(BaseModel):
    product_id: UUID
    quantity: float = Field(..., gt=0)
    unit_cost: float = Field(..., ge=0)


class PurchaseOrderCreate(BaseModel):
    supplier: str = Field(..., min_length=1, max_length=255)
    lines: list[PurchaseOrderLineIn] = Field(..., min_length=1)
    additional_costs: float = Field(0.0, ge=0, description="Freight, duty and handling, spread by line value")


class ReceiptLine(BaseModel):
    """Where and as which batch one purchase-order line lands."""

    line_no: int = Field(..., ge=1)
    location_id: str | None = None
    batch_id: str | None = None
    expires_at: datetime | None = None
