"""
Allocation Engine — FEFO-then-FIFO deduction planning.

Planning is pure: given a product's stock records it decides which records
to draw from and how much, without touching them. The ledger applies the
plan only after it is known to be complete, which is what makes allocation
check-then-commit instead of "decrement as you go and discover the
shortfall halfway through".

Ordering (mirrors warehouse pick practice):
  1. Expiry ascending — soonest-expiring batch first
  2. Records without an expiry after every dated record
  3. Received time ascending — oldest receipt first
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from core.errors import InsufficientStock, InsufficientStockAtLocation

# Float quantities (3.5 m of fabric per shirt) accumulate rounding noise
QTY_EPSILON = 1e-9


@dataclass(frozen=True)
class Allocation:
    """One slice of an allocation: how much was taken from which record."""

    stock_record_id: Any
    location_id: str
    batch_id: str | None
    qty_taken: float
    expires_at: datetime | None = None
    received_at: datetime | None = None


def fefo_sort_key(record) -> tuple:
    return (
        record.expires_at is None,
        record.expires_at or datetime.max,
        record.received_at or datetime.max,
        str(record.id),
    )


def candidate_records(records: Iterable, location_id: str | None = None) -> list:
    """Records with stock on hand, optionally restricted to one location, in pick order."""
    eligible = [
        r
        for r in records
        if (r.quantity or 0) > QTY_EPSILON and (location_id is None or r.location_id == location_id)
    ]
    return sorted(eligible, key=fefo_sort_key)


def available_quantity(records: Iterable, location_id: str | None = None) -> float:
    return sum(r.quantity for r in candidate_records(records, location_id))


def plan_allocation(
    product_id: Any,
    records: Sequence,
    quantity: float,
    location_id: str | None = None,
) -> list[Allocation]:
    """
    Decide which records satisfy `quantity`, or raise before anything moves.

    Raises InsufficientStock (InsufficientStockAtLocation when restricted to
    a location) carrying the required and available totals.
    """
    if quantity <= 0:
        raise ValueError(f"Allocation quantity must be positive, got {quantity}")

    candidates = candidate_records(records, location_id)
    available = sum(r.quantity for r in candidates)
    if available + QTY_EPSILON < quantity:
        if location_id is not None:
            raise InsufficientStockAtLocation(product_id, location_id, required=quantity, available=available)
        raise InsufficientStock(product_id, required=quantity, available=available)

    plan: list[Allocation] = []
    remaining = quantity
    for record in candidates:
        if remaining <= QTY_EPSILON:
            break
        take = min(remaining, record.quantity)
        plan.append(
            Allocation(
                stock_record_id=record.id,
                location_id=record.location_id,
                batch_id=record.batch_id,
                qty_taken=take,
                expires_at=record.expires_at,
                received_at=record.received_at,
            )
        )
        remaining -= take
    return plan


def summarize(plan: Iterable[Allocation]) -> list[dict[str, Any]]:
    """Provenance rows suitable for logs, audit details and pick lists."""
    return [
        {"location_id": a.location_id, "batch_id": a.batch_id, "qty": round(a.qty_taken, 6)}
        for a in plan
    ]
