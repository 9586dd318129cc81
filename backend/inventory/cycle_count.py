"""
Cycle-Count Reconciliation.

Workflow:
  1. start_cycle_count  — snapshot system quantity of every record with stock
  2. record_count       — enter the physical quantity per snapshot line
  3. confirm_adjustment — write physical quantities back to the ledger

Variance is physical − system. Confirmation touches only lines with a
non-zero variance; each adjusted record emits exactly one stock.adjusted
audit event. Lines whose record vanished or changed since the snapshot
fail individually while the rest of the count proceeds.
"""

import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from core.enums import CycleCountStatus
from core.errors import InvalidTransition, NotFoundError
from db.models import CycleCount, CycleCountLine, StockRecord
from inventory.allocation import QTY_EPSILON
from inventory.ledger import StockLedger

if TYPE_CHECKING:
    from core.context import OperationContext

logger = structlog.get_logger()


class CycleCountNotFound(NotFoundError):
    code = "cycle_count_not_found"
    entity_type = "Cycle count"


class CycleCountLineNotFound(NotFoundError):
    code = "cycle_count_line_not_found"
    entity_type = "Cycle count line"


@dataclass
class LineFailure:
    line_id: uuid.UUID
    stock_record_id: uuid.UUID
    reason: str


@dataclass
class CycleCountResult:
    count_id: uuid.UUID
    adjusted: int = 0
    unchanged: int = 0
    uncounted: int = 0
    net_variance: float = 0.0
    failures: list[LineFailure] = field(default_factory=list)


def variance(line: CycleCountLine) -> float | None:
    if line.physical_qty is None:
        return None
    return line.physical_qty - line.system_qty


async def start_cycle_count(ctx: "OperationContext", location_id: str | None = None) -> CycleCount:
    index = {"location_id": location_id} if location_id is not None else None
    records = await ctx.store.get_all(StockRecord, index=index, order_by=(StockRecord.location_id,))

    count = CycleCount(count_id=uuid.uuid4(), location_id=location_id, started_at=ctx.now())
    await ctx.store.add(count)
    lines = [
        CycleCountLine(
            line_id=uuid.uuid4(),
            count_id=count.count_id,
            stock_record_id=r.id,
            product_id=r.product_id,
            location_id=r.location_id,
            batch_id=r.batch_id,
            system_qty=r.quantity,
        )
        for r in records
        if r.quantity > QTY_EPSILON
    ]
    await ctx.store.add_many(lines)

    logger.info("cycle_count.started", count_id=str(count.count_id), location_id=location_id, lines=len(lines))
    return count


async def count_lines(ctx: "OperationContext", count_id: uuid.UUID) -> list[CycleCountLine]:
    return await ctx.store.get_all(CycleCountLine, index={"count_id": count_id})


async def record_count(ctx: "OperationContext", line_id: uuid.UUID, physical_qty: float) -> CycleCountLine:
    if physical_qty < 0:
        raise ValueError(f"Physical quantity cannot be negative, got {physical_qty}")

    line = await ctx.store.get(CycleCountLine, line_id)
    if line is None:
        raise CycleCountLineNotFound(line_id)
    count = await ctx.store.get(CycleCount, line.count_id)
    if count.status != CycleCountStatus.OPEN.value:
        raise InvalidTransition("cycle_count", count.count_id, count.status, "counting")

    line.physical_qty = physical_qty
    await ctx.db.flush()
    return line


async def confirm_adjustment(ctx: "OperationContext", count_id: uuid.UUID) -> CycleCountResult:
    count = await ctx.store.get(CycleCount, count_id)
    if count is None:
        raise CycleCountNotFound(count_id)
    if count.status != CycleCountStatus.OPEN.value:
        raise InvalidTransition("cycle_count", count_id, count.status, CycleCountStatus.CONFIRMED.value)

    ledger = StockLedger(ctx)
    result = CycleCountResult(count_id=count_id)
    now = ctx.now()

    for line in await count_lines(ctx, count_id):
        diff = variance(line)
        if diff is None:
            result.uncounted += 1
            continue
        if abs(diff) <= QTY_EPSILON:
            line.outcome = "unchanged"
            result.unchanged += 1
            continue

        async with ctx.locks.hold(line.product_id):
            record = await ctx.store.get(StockRecord, line.stock_record_id)
            if record is None:
                reason = "record_missing"
            elif abs(record.quantity - line.system_qty) > QTY_EPSILON:
                reason = "record_changed_since_snapshot"
            else:
                reason = None

            if reason is not None:
                line.outcome = "failed"
                line.failure_reason = reason
                result.failures.append(LineFailure(line.line_id, line.stock_record_id, reason))
                logger.warning(
                    "cycle_count.line_failed",
                    count_id=str(count_id),
                    stock_record_id=str(line.stock_record_id),
                    reason=reason,
                )
                continue

            await ledger.adjust(
                record,
                line.physical_qty,
                reference_type="cycle_count",
                reference_id=count_id,
                details={
                    "old_qty": line.system_qty,
                    "new_qty": line.physical_qty,
                    "variance": diff,
                    "date": now.isoformat(),
                },
            )
        line.outcome = "adjusted"
        result.adjusted += 1
        result.net_variance += diff

    count.status = CycleCountStatus.CONFIRMED.value
    count.confirmed_at = now
    await ctx.db.flush()

    logger.info(
        "cycle_count.confirmed",
        count_id=str(count_id),
        adjusted=result.adjusted,
        unchanged=result.unchanged,
        uncounted=result.uncounted,
        failed=len(result.failures),
        net_variance=round(result.net_variance, 6),
    )
    return result
