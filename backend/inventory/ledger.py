"""
Stock Ledger — quantities per (product, location, batch) and their journal.

Every mutation:
  - runs under the product's write lock
  - writes one StockMovement row (signed quantity, before/after)
  - emits one audit event with before/after quantity

so that for every product, at all times:

    sum(stock_records.quantity)
        == receipts − consumptions + adjustments   (transfer legs net to zero)

which `reconcile()` checks directly against the journal.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog
from sqlalchemy import func, select, update

from core.enums import MovementType
from core.errors import LocationNotFound
from db.models import Location, StockMovement, StockRecord
from inventory.allocation import QTY_EPSILON, Allocation, plan_allocation, summarize

if TYPE_CHECKING:
    from core.context import OperationContext

logger = structlog.get_logger()

INBOUND_TYPES = (MovementType.RECEIPT, MovementType.PRODUCTION_OUTPUT, MovementType.RETURN)


@dataclass
class ReconciliationReport:
    product_id: uuid.UUID
    ledger_total: float
    receipts: float
    consumptions: float
    adjustments: float
    transfers_net: float

    @property
    def expected_total(self) -> float:
        return self.receipts - self.consumptions + self.adjustments + self.transfers_net

    @property
    def balanced(self) -> bool:
        return abs(self.ledger_total - self.expected_total) < 1e-6


class StockLedger:
    def __init__(self, ctx: "OperationContext"):
        self.ctx = ctx

    # ── Reads ──────────────────────────────────────────────────────────

    async def records_for(
        self,
        product_id: uuid.UUID,
        location_id: str | None = None,
        for_update: bool = False,
    ) -> list[StockRecord]:
        index: dict[str, Any] = {"product_id": product_id}
        if location_id is not None:
            index["location_id"] = location_id
        return await self.ctx.store.get_all(StockRecord, index=index, for_update=for_update)

    async def total_quantity(self, product_id: uuid.UUID, location_id: str | None = None) -> float:
        records = await self.records_for(product_id, location_id)
        return float(sum(r.quantity for r in records))

    async def totals_by_product(self) -> dict[uuid.UUID, float]:
        result = await self.ctx.db.execute(
            select(StockRecord.product_id, func.sum(StockRecord.quantity)).group_by(StockRecord.product_id)
        )
        return {product_id: float(total or 0) for product_id, total in result.all()}

    async def expiring_records(self, within_days: int) -> list[StockRecord]:
        """Records with stock whose batch expires within the window (already expired included)."""
        cutoff = self.ctx.now() + timedelta(days=within_days)
        records = await self.ctx.store.get_all(
            StockRecord,
            range_=("expires_at", None, cutoff),
            order_by=(StockRecord.expires_at,),
        )
        return [r for r in records if r.expires_at is not None and r.quantity > QTY_EPSILON]

    # ── Consume ────────────────────────────────────────────────────────

    async def allocate(
        self,
        product_id: uuid.UUID,
        quantity: float,
        *,
        location_id: str | None = None,
        movement_type: MovementType = MovementType.CONSUMPTION,
        reference_type: str | None = None,
        reference_id: Any = None,
    ) -> list[Allocation]:
        """
        Take `quantity` of a product using FEFO-then-FIFO.

        The full plan is computed and checked against total availability
        before any record changes; on shortfall InsufficientStock is raised
        and the ledger is untouched.
        """
        async with self.ctx.locks.hold(product_id):
            records = await self.records_for(product_id, location_id, for_update=True)
            plan = plan_allocation(product_id, records, quantity, location_id=location_id)

            by_id = {r.id: r for r in records}
            now = self.ctx.now()
            for slice_ in plan:
                record = by_id[slice_.stock_record_id]
                before = record.quantity
                after = before - slice_.qty_taken
                record.quantity = after if after > QTY_EPSILON else 0.0
                record.updated_at = now
                self._journal(record, movement_type, -slice_.qty_taken, before, reference_type, reference_id)
                self._audit("stock.allocated", record, before, reference_type, reference_id)
            await self.ctx.db.flush()

        logger.info(
            "ledger.allocated",
            product_id=str(product_id),
            quantity=quantity,
            location_id=location_id,
            reference_type=reference_type,
            reference_id=str(reference_id) if reference_id is not None else None,
            picks=summarize(plan),
        )
        return plan

    # ── Produce ────────────────────────────────────────────────────────

    async def produce(
        self,
        product_id: uuid.UUID,
        location_id: str,
        quantity: float,
        batch_id: str | None = None,
        expires_at: datetime | None = None,
        *,
        received_at: datetime | None = None,
        movement_type: MovementType = MovementType.RECEIPT,
        reference_type: str | None = None,
        reference_id: Any = None,
    ) -> StockRecord:
        """
        Add stock, merging into the record for (location, batch) when it exists.

        A merged record keeps the earliest received time and the earliest
        expiry of the two lots so FEFO/FIFO never treats it as fresher than
        its oldest units.
        """
        if quantity <= 0:
            raise ValueError(f"Produce quantity must be positive, got {quantity}")
        await self.require_location(location_id)

        received_at = received_at or self.ctx.now()
        async with self.ctx.locks.hold(product_id):
            existing = await self.ctx.store.get_all(
                StockRecord,
                index={"product_id": product_id, "location_id": location_id, "batch_id": batch_id},
                for_update=True,
            )
            if existing:
                record = existing[0]
                before = record.quantity
                record.quantity = before + quantity
                if record.received_at is None or received_at < record.received_at:
                    record.received_at = received_at
                if expires_at is not None and (record.expires_at is None or expires_at < record.expires_at):
                    record.expires_at = expires_at
                record.updated_at = self.ctx.now()
            else:
                before = 0.0
                record = StockRecord(
                    id=uuid.uuid4(),
                    product_id=product_id,
                    location_id=location_id,
                    batch_id=batch_id,
                    quantity=quantity,
                    received_at=received_at,
                    expires_at=expires_at,
                    updated_at=self.ctx.now(),
                )
                self.ctx.db.add(record)

            self._journal(record, movement_type, quantity, before, reference_type, reference_id)
            self._audit("stock.produced", record, before, reference_type, reference_id)
            await self.ctx.db.flush()

        logger.info(
            "ledger.produced",
            product_id=str(product_id),
            location_id=location_id,
            batch_id=batch_id,
            quantity=quantity,
            merged=before > 0,
            movement_type=movement_type.value,
        )
        return record

    # ── Adjust ─────────────────────────────────────────────────────────

    async def adjust(
        self,
        record: StockRecord,
        new_quantity: float,
        *,
        reference_type: str | None = None,
        reference_id: Any = None,
        details: dict[str, Any] | None = None,
    ) -> float:
        """Set a record to a counted quantity. Returns the signed change."""
        if new_quantity < 0:
            raise ValueError(f"Adjusted quantity cannot be negative, got {new_quantity}")

        async with self.ctx.locks.hold(record.product_id):
            before = record.quantity
            delta = new_quantity - before
            if abs(delta) <= QTY_EPSILON:
                return 0.0
            record.quantity = new_quantity
            record.updated_at = self.ctx.now()
            self._journal(record, MovementType.ADJUSTMENT, delta, before, reference_type, reference_id)
            self._audit("stock.adjusted", record, before, reference_type, reference_id, **(details or {}))
            await self.ctx.db.flush()

        logger.info(
            "ledger.adjusted",
            product_id=str(record.product_id),
            location_id=record.location_id,
            batch_id=record.batch_id,
            before=before,
            after=new_quantity,
        )
        return delta

    async def reset_product(self, product_id: uuid.UUID, reason: str = "administrative_reset") -> int:
        """
        Administrative reset: the only path that hard-deletes stock records.

        Remaining quantity is journaled as a negative adjustment first so the
        reconciliation invariant still holds afterwards; journal rows keep
        their history but drop the link to the deleted records.
        """
        async with self.ctx.locks.hold(product_id):
            records = await self.records_for(product_id, for_update=True)
            for record in records:
                before = record.quantity
                if before > QTY_EPSILON:
                    record.quantity = 0.0
                    self._journal(record, MovementType.ADJUSTMENT, -before, before, "reset", reason)
                self._audit("stock.reset", record, before, "reset", reason)
            await self.ctx.db.flush()
            if records:
                await self.ctx.db.execute(
                    update(StockMovement)
                    .where(StockMovement.stock_record_id.in_([r.id for r in records]))
                    .values(stock_record_id=None)
                )
            for record in records:
                await self.ctx.store.delete(record)

        logger.warning("ledger.reset", product_id=str(product_id), records=len(records), reason=reason)
        return len(records)

    # ── Reconciliation ─────────────────────────────────────────────────

    async def reconcile(self, product_id: uuid.UUID) -> ReconciliationReport:
        result = await self.ctx.db.execute(
            select(StockMovement.movement_type, func.sum(StockMovement.quantity))
            .where(StockMovement.product_id == product_id)
            .group_by(StockMovement.movement_type)
        )
        sums = {movement_type: float(total or 0) for movement_type, total in result.all()}

        return ReconciliationReport(
            product_id=product_id,
            ledger_total=await self.total_quantity(product_id),
            receipts=sum(sums.get(t.value, 0.0) for t in INBOUND_TYPES),
            consumptions=-sums.get(MovementType.CONSUMPTION.value, 0.0),
            adjustments=sums.get(MovementType.ADJUSTMENT.value, 0.0),
            transfers_net=sums.get(MovementType.TRANSFER_IN.value, 0.0)
            + sums.get(MovementType.TRANSFER_OUT.value, 0.0),
        )

    # ── Helpers ────────────────────────────────────────────────────────

    async def require_location(self, location_id: str) -> Location:
        location = await self.ctx.store.get(Location, location_id)
        if location is None or not location.is_active:
            raise LocationNotFound(location_id)
        return location

    def _journal(
        self,
        record: StockRecord,
        movement_type: MovementType,
        delta: float,
        before: float,
        reference_type: str | None,
        reference_id: Any,
    ) -> None:
        self.ctx.db.add(
            StockMovement(
                product_id=record.product_id,
                location_id=record.location_id,
                batch_id=record.batch_id,
                stock_record_id=record.id,
                movement_type=movement_type.value,
                quantity=delta,
                quantity_before=before,
                quantity_after=record.quantity,
                reference_type=reference_type,
                reference_id=str(reference_id) if reference_id is not None else None,
                created_at=self.ctx.now(),
            )
        )

    def _audit(
        self,
        event_type: str,
        record: StockRecord,
        before: float,
        reference_type: str | None,
        reference_id: Any,
        **extra: Any,
    ) -> None:
        self.ctx.audit_event(
            event_type,
            "stock_record",
            record.id,
            product_id=str(record.product_id),
            location_id=record.location_id,
            batch_id=record.batch_id,
            before_qty=before,
            after_qty=record.quantity,
            reference_type=reference_type,
            reference_id=str(reference_id) if reference_id is not None else None,
            **extra,
        )
