"""
Read-only projections of ledger state and planner output as DataFrames.

Consumers (dashboards, exports) get tabular snapshots; no write path
starts here and no product locks are taken.
"""

from datetime import timedelta
from typing import TYPE_CHECKING

import pandas as pd
import structlog
from sqlalchemy import select

from db.models import Location, Product, StockRecord
from inventory.allocation import QTY_EPSILON
from inventory.planner import PlannerReport

if TYPE_CHECKING:
    from core.context import OperationContext

logger = structlog.get_logger()

STOCK_COLUMNS = [
    "product_id",
    "sku",
    "name",
    "item_type",
    "location_id",
    "location_name",
    "batch_id",
    "quantity",
    "received_at",
    "expires_at",
    "unit_cost",
    "stock_value",
]


async def _stock_rows(ctx: "OperationContext") -> pd.DataFrame:
    result = await ctx.db.execute(
        select(
            StockRecord.product_id,
            Product.sku,
            Product.name,
            Product.item_type,
            StockRecord.location_id,
            Location.name.label("location_name"),
            StockRecord.batch_id,
            StockRecord.quantity,
            StockRecord.received_at,
            StockRecord.expires_at,
            Product.unit_cost,
        )
        .join(Product, Product.product_id == StockRecord.product_id)
        .join(Location, Location.location_id == StockRecord.location_id)
        .where(StockRecord.quantity > QTY_EPSILON)
    )
    df = pd.DataFrame(result.all(), columns=STOCK_COLUMNS[:-1])
    df["stock_value"] = (df["quantity"] * df["unit_cost"].fillna(0)).round(2)
    return df


async def stock_on_hand_frame(ctx: "OperationContext", by: str = "batch") -> pd.DataFrame:
    """
    Stock on hand at one of three grains:
      batch    — one row per stock record
      location — one row per (product, location)
      product  — one row per product across locations
    """
    df = await _stock_rows(ctx)
    if by == "batch":
        return df.sort_values(["sku", "location_id", "expires_at", "received_at"], na_position="last").reset_index(
            drop=True
        )

    keys = {"location": ["product_id", "sku", "name", "location_id"], "product": ["product_id", "sku", "name"]}
    if by not in keys:
        raise ValueError(f"Unknown grain '{by}', expected batch, location or product")
    grouped = (
        df.groupby(keys[by], as_index=False)
        .agg(quantity=("quantity", "sum"), stock_value=("stock_value", "sum"), batches=("batch_id", "nunique"))
        .sort_values(keys[by][1:])
        .reset_index(drop=True)
    )
    return grouped


async def expiring_batches_frame(ctx: "OperationContext", within_days: int = 30) -> pd.DataFrame:
    """Batches with stock expiring inside the window, soonest first, with days left."""
    df = await _stock_rows(ctx)
    now = ctx.now()
    cutoff = now + timedelta(days=within_days)
    df = df[df["expires_at"].notna()]
    df = df[pd.to_datetime(df["expires_at"]) < cutoff].copy()
    df["days_to_expiry"] = (pd.to_datetime(df["expires_at"]) - now).dt.days
    df["expired"] = df["days_to_expiry"] < 0
    logger.info("reports.expiring_batches", within_days=within_days, batches=len(df))
    return df.sort_values("expires_at").reset_index(drop=True)


def planner_frame(report: PlannerReport) -> pd.DataFrame:
    """Planner detail lines; reorder candidates first, most urgent at the top."""
    urgency_rank = {"critical": 0, "high": 1, "medium": 2, "potential_dead_stock": 3, "ok": 4}
    df = pd.DataFrame(
        [
            {
                "product_id": line.product_id,
                "sku": line.sku,
                "name": line.name,
                "item_type": line.item_type,
                "current_stock": line.current_stock,
                "daily_avg_usage": round(line.daily_avg_usage, 4),
                "reorder_point": line.reorder_point,
                "economic_order_qty": line.economic_order_qty,
                "urgency": line.urgency.value,
                "order_value": round(line.economic_order_qty * line.unit_cost, 2) if line.needs_reorder else 0.0,
            }
            for line in report.lines
        ],
        columns=[
            "product_id",
            "sku",
            "name",
            "item_type",
            "current_stock",
            "daily_avg_usage",
            "reorder_point",
            "economic_order_qty",
            "urgency",
            "order_value",
        ],
    )
    if df.empty:
        return df
    df["_rank"] = df["urgency"].map(urgency_rank)
    return df.sort_values(["_rank", "sku"]).drop(columns="_rank").reset_index(drop=True)
