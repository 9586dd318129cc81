"""
OperationContext — the explicit session object handed to every workflow.

Replaces process-wide mutable state (current order, active user, cash
account) with one value built per request or job and passed down.
"""

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from core.audit import AuditSink, StructlogAuditSink, emit_audit
from core.config import Settings, get_settings
from db.store import DurableStore
from finance.cash import CashLedger, DatabaseCashLedger
from inventory.locks import ProductLockRegistry, get_lock_registry


@dataclass
class OperationContext:
    db: AsyncSession
    store: DurableStore
    audit: AuditSink
    cash: CashLedger
    locks: ProductLockRegistry
    settings: Settings
    actor: str | None = None
    clock: Callable[[], datetime] = field(default=datetime.utcnow)

    def now(self) -> datetime:
        return self.clock()

    def audit_event(self, event_type: str, entity_type: str, entity_id: Any, **details: Any) -> None:
        if self.actor and "actor" not in details:
            details["actor"] = self.actor
        emit_audit(self.audit, event_type, entity_type, entity_id, details)

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator["OperationContext"]:
        """Commit everything staged inside the block, or roll all of it back."""
        try:
            yield self
        except Exception:
            await self.db.rollback()
            raise
        else:
            await self.db.commit()


def build_context(
    db: AsyncSession,
    *,
    audit: AuditSink | None = None,
    cash: CashLedger | None = None,
    locks: ProductLockRegistry | None = None,
    settings: Settings | None = None,
    actor: str | None = None,
    clock: Callable[[], datetime] | None = None,
) -> OperationContext:
    settings = settings or get_settings()
    return OperationContext(
        db=db,
        store=DurableStore(db),
        audit=audit or StructlogAuditSink(),
        cash=cash or DatabaseCashLedger(db, currency=settings.base_currency),
        locks=locks or get_lock_registry(),
        settings=settings,
        actor=actor,
        clock=clock or datetime.utcnow,
    )
