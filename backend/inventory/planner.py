"""
Replenishment Planner — Reorder Point & Economic Order Quantity.

Turns consumption history into replenishment recommendations. Runs nightly
via Celery beat (workers/replenishment.py) and on demand.

Algorithm (per finished good / raw material):
  daily_avg_usage = units consumed in window, less sales-order returns
                    in the window, / window_days
  ROP             = ⌈lead_time_days × daily_avg_usage⌉
  annual_demand   = daily_avg_usage × 365
  EOQ             = ⌈√((2 × annual_demand × order_cost) / (holding_cost_pct × unit_cost))⌉
                    when holding cost > 0 and demand > 0,
                    else ⌈ROP + daily_avg_usage × window_days⌉

Classification, first match wins:
  stock == 0                                  → critical
  stock ≤ ROP × high_ratio                    → high
  stock ≤ ROP                                 → medium
  usage == 0 and stock > low_threshold        → potential_dead_stock
  otherwise                                   → ok

Inputs:
  - stock_movements (consumption and sales-order return rows inside the window)
  - stock_records (current on-hand total across locations)
  - products (lead time and cost parameters)

Outputs:
  - PlannerReport: summary counter, detail lines, purchase-order draft lines

The planner is read-only and takes no product locks.
"""

import math
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import and_, func, or_, select

from core.enums import ItemType, MovementType, ReplenishmentUrgency
from db.models import Product, StockMovement
from inventory.ledger import StockLedger

if TYPE_CHECKING:
    from core.context import OperationContext

logger = structlog.get_logger()

PLANNED_ITEM_TYPES = (ItemType.FINISHED_GOOD, ItemType.RAW_MATERIAL)

# Urgencies that put a product on the purchase-order draft
REORDER_URGENCIES = (
    ReplenishmentUrgency.CRITICAL,
    ReplenishmentUrgency.HIGH,
    ReplenishmentUrgency.MEDIUM,
)


@dataclass
class PlannerLine:
    """Replenishment recommendation for one product."""

    product_id: uuid.UUID
    sku: str
    name: str
    item_type: str
    current_stock: float
    daily_avg_usage: float
    reorder_point: int
    economic_order_qty: int
    urgency: ReplenishmentUrgency
    unit_cost: float
    rationale: dict[str, Any]

    @property
    def needs_reorder(self) -> bool:
        return self.urgency in REORDER_URGENCIES


@dataclass
class PlannerReport:
    generated_at: datetime
    window_days: int
    lines: list[PlannerLine] = field(default_factory=list)

    @property
    def summary(self) -> Counter:
        counts = Counter({u.value: 0 for u in ReplenishmentUrgency})
        counts.update(line.urgency.value for line in self.lines)
        return counts

    def purchase_order_draft(self) -> list[dict[str, Any]]:
        """Draft purchase-order lines: one per product needing reorder, quantity = EOQ."""
        return [
            {
                "product_id": line.product_id,
                "sku": line.sku,
                "quantity": line.economic_order_qty,
                "unit_cost": line.unit_cost,
                "urgency": line.urgency.value,
            }
            for line in self.lines
            if line.needs_reorder and line.economic_order_qty > 0
        ]

    def by_product(self) -> dict[uuid.UUID, PlannerLine]:
        return {line.product_id: line for line in self.lines}


def calculate_reorder_point(lead_time_days: float, daily_avg_usage: float) -> int:
    return math.ceil(lead_time_days * daily_avg_usage)


def calculate_eoq(
    annual_demand: float,
    order_cost: float,
    holding_cost_pct: float,
    unit_cost: float,
    reorder_point: int,
    daily_avg_usage: float,
    window_days: int = 30,
) -> int:
    """
    Economic Order Quantity (Wilson formula).

    EOQ = √((2 × D × S) / H)
    Where: D = annual demand, S = order cost, H = holding_cost_pct × unit_cost

    Falls back to one window of cover above the reorder point when the
    holding cost or the demand is zero.
    """
    holding_cost = holding_cost_pct * unit_cost
    if holding_cost > 0 and annual_demand > 0:
        return math.ceil(math.sqrt((2 * annual_demand * order_cost) / holding_cost))
    return math.ceil(reorder_point + daily_avg_usage * window_days)


def classify_urgency(
    current_stock: float,
    reorder_point: float,
    daily_avg_usage: float,
    low_threshold: float,
    high_ratio: float = 0.5,
    dead_stock_enabled: bool = True,
) -> ReplenishmentUrgency:
    if current_stock <= 0:
        return ReplenishmentUrgency.CRITICAL
    if current_stock <= reorder_point * high_ratio:
        return ReplenishmentUrgency.HIGH
    if current_stock <= reorder_point:
        return ReplenishmentUrgency.MEDIUM
    if dead_stock_enabled and daily_avg_usage == 0 and current_stock > low_threshold:
        return ReplenishmentUrgency.POTENTIAL_DEAD_STOCK
    return ReplenishmentUrgency.OK


class ReplenishmentPlanner:
    """Calculate reorder points and order quantities from the movement journal."""

    def __init__(self, ctx: "OperationContext", window_days: int | None = None):
        self.ctx = ctx
        self.window_days = window_days or ctx.settings.planner_window_days

    async def run(self, as_of: datetime | None = None) -> PlannerReport:
        as_of = as_of or self.ctx.now()
        products = await self.ctx.store.get_all(
            Product,
            index={"item_type": [t.value for t in PLANNED_ITEM_TYPES], "is_active": True},
            order_by=(Product.sku,),
        )
        usage = await self._consumption_by_product(as_of)
        stock = await StockLedger(self.ctx).totals_by_product()

        report = PlannerReport(generated_at=as_of, window_days=self.window_days)
        for product in products:
            report.lines.append(
                self.plan_product(product, stock.get(product.product_id, 0.0), usage.get(product.product_id, 0.0))
            )

        logger.info(
            "planner.completed",
            window_days=self.window_days,
            products=len(report.lines),
            **{k: v for k, v in report.summary.items() if v},
        )
        return report

    def plan_product(self, product: Product, current_stock: float, consumed: float) -> PlannerLine:
        settings = self.ctx.settings
        daily_avg_usage = consumed / self.window_days
        reorder_point = calculate_reorder_point(product.lead_time_days or 0, daily_avg_usage)
        annual_demand = daily_avg_usage * 365
        eoq = calculate_eoq(
            annual_demand,
            product.order_cost or 0,
            product.holding_cost_pct or 0,
            product.unit_cost or 0,
            reorder_point,
            daily_avg_usage,
            self.window_days,
        )
        urgency = classify_urgency(
            current_stock,
            reorder_point,
            daily_avg_usage,
            product.low_threshold or 0,
            high_ratio=settings.planner_high_ratio,
            dead_stock_enabled=settings.planner_dead_stock_enabled,
        )

        holding_cost = (product.holding_cost_pct or 0) * (product.unit_cost or 0)
        rationale = {
            "window_days": self.window_days,
            "consumed_in_window": round(consumed, 4),
            "daily_avg_usage": round(daily_avg_usage, 4),
            "lead_time_days": product.lead_time_days,
            "annual_demand": round(annual_demand, 2),
            "order_cost": product.order_cost,
            "holding_cost_annual": round(holding_cost, 4),
            "eoq_method": "wilson" if holding_cost > 0 and annual_demand > 0 else "cover_fallback",
            "high_threshold": reorder_point * settings.planner_high_ratio,
        }

        return PlannerLine(
            product_id=product.product_id,
            sku=product.sku,
            name=product.name,
            item_type=product.item_type,
            current_stock=current_stock,
            daily_avg_usage=daily_avg_usage,
            reorder_point=reorder_point,
            economic_order_qty=eoq,
            urgency=urgency,
            unit_cost=product.unit_cost or 0,
            rationale=rationale,
        )

    async def _consumption_by_product(self, as_of: datetime) -> dict[uuid.UUID, float]:
        """
        Units consumed per product inside the window (sales and production use),
        net of stock returned by sales-order cancellations in the same window.
        """
        window_start = as_of - timedelta(days=self.window_days)
        result = await self.ctx.db.execute(
            select(StockMovement.product_id, func.sum(StockMovement.quantity))
            .where(
                or_(
                    StockMovement.movement_type == MovementType.CONSUMPTION.value,
                    and_(
                        StockMovement.movement_type == MovementType.RETURN.value,
                        StockMovement.reference_type == "sales_order",
                    ),
                ),
                StockMovement.created_at >= window_start,
                StockMovement.created_at <= as_of,
            )
            .group_by(StockMovement.product_id)
        )
        # Consumption rows are journaled negative, returns positive
        return {product_id: max(0.0, -float(total or 0)) for product_id, total in result.all()}
