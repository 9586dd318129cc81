"""
Cash Ledger — running cash balance touched by sales and supplier payments.

Amounts arrive already converted to the base currency. The ledger writes in
the caller's session so a stock commit and its cash effect land (or roll
back) together.
"""

from datetime import datetime
from typing import Protocol

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import CashAccount, CashEntry

logger = structlog.get_logger()

DEFAULT_ACCOUNT_ID = "main"


class CashLedger(Protocol):
    async def adjust_balance(
        self,
        delta: float,
        reason: str,
        reference_type: str | None = None,
        reference_id: str | None = None,
    ) -> float: ...

    async def balance(self) -> float: ...


class DatabaseCashLedger:
    def __init__(self, db: AsyncSession, account_id: str = DEFAULT_ACCOUNT_ID, currency: str = "USD"):
        self.db = db
        self.account_id = account_id
        self.currency = currency

    async def _account(self) -> CashAccount:
        account = await self.db.get(CashAccount, self.account_id)
        if account is None:
            account = CashAccount(
                account_id=self.account_id,
                currency=self.currency,
                balance=0.0,
                updated_at=datetime.utcnow(),
            )
            self.db.add(account)
            await self.db.flush()
        return account

    async def balance(self) -> float:
        account = await self._account()
        return float(account.balance)

    async def adjust_balance(
        self,
        delta: float,
        reason: str,
        reference_type: str | None = None,
        reference_id: str | None = None,
    ) -> float:
        """Apply a signed amount and journal it. Returns the new balance."""
        if delta == 0:
            return await self.balance()

        account = await self._account()
        account.balance = round(float(account.balance) + delta, 2)
        account.updated_at = datetime.utcnow()
        self.db.add(
            CashEntry(
                account_id=self.account_id,
                amount=round(delta, 2),
                balance_after=account.balance,
                reason=reason,
                reference_type=reference_type,
                reference_id=str(reference_id) if reference_id is not None else None,
                created_at=datetime.utcnow(),
            )
        )
        await self.db.flush()

        logger.info(
            "cash.adjusted",
            account_id=self.account_id,
            delta=round(delta, 2),
            balance=account.balance,
            reason=reason,
            reference_type=reference_type,
            reference_id=str(reference_id) if reference_id is not None else None,
        )
        return account.balance
