"""
Durable Store — keyed collection access over an AsyncSession.

Workflows read and write entities through this adapter instead of issuing
ad-hoc queries, so the storage contract stays small:

  get(model, key)                     → entity | None
  get_all(model, index=, range_=)     → list of entities
  put(entity) / add(entity)           → stage insert-or-update / insert
  add_many(entities)                  → one flush for a batch of inserts
  delete(entity)
  count(model, index=)

Reads are retried a bounded number of times on transient driver errors.
Writes are never retried: a repeated decrement is a double deduction.
"""

from collections.abc import Iterable, Sequence
from typing import Any, TypeVar

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config import get_settings

logger = structlog.get_logger()

T = TypeVar("T")


class DurableStore:
    def __init__(self, db: AsyncSession, read_attempts: int | None = None, backoff_max: float | None = None):
        settings = get_settings()
        self.db = db
        self.read_attempts = read_attempts or settings.store_read_attempts
        self.backoff_max = backoff_max if backoff_max is not None else settings.store_read_backoff_max_seconds

    async def _read(self, operation: str, fn):
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(OperationalError),
            stop=stop_after_attempt(self.read_attempts),
            wait=wait_exponential(multiplier=0.05, max=self.backoff_max),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        "store.read_retry",
                        operation=operation,
                        attempt=attempt.retry_state.attempt_number,
                    )
                return await fn()

    # ── Reads ──────────────────────────────────────────────────────────

    async def get(self, model: type[T], key: Any) -> T | None:
        return await self._read(f"get:{model.__tablename__}", lambda: self.db.get(model, key))

    async def get_all(
        self,
        model: type[T],
        index: dict[str, Any] | None = None,
        range_: tuple[str, Any, Any] | None = None,
        order_by: Sequence[Any] = (),
        for_update: bool = False,
    ) -> list[T]:
        """
        Fetch every entity matching equality filters on indexed columns.

        range_ is (column, low, high); either bound may be None. Bounds are
        inclusive on the low side and exclusive on the high side.
        """
        stmt = select(model)
        for column, value in (index or {}).items():
            attr = getattr(model, column)
            if isinstance(value, (list, tuple, set, frozenset)):
                stmt = stmt.where(attr.in_(list(value)))
            elif value is None:
                stmt = stmt.where(attr.is_(None))
            else:
                stmt = stmt.where(attr == value)
        if range_ is not None:
            column, low, high = range_
            attr = getattr(model, column)
            if low is not None:
                stmt = stmt.where(attr >= low)
            if high is not None:
                stmt = stmt.where(attr < high)
        if order_by:
            stmt = stmt.order_by(*order_by)
        if for_update:
            # Row locks for multi-process deployments; fresh values over stale identity-map state
            stmt = stmt.with_for_update().execution_options(populate_existing=True)

        async def _run():
            result = await self.db.execute(stmt)
            return list(result.scalars().all())

        return await self._read(f"get_all:{model.__tablename__}", _run)

    async def count(self, model: type[T], index: dict[str, Any] | None = None) -> int:
        stmt = select(func.count()).select_from(model)
        for column, value in (index or {}).items():
            stmt = stmt.where(getattr(model, column) == value)

        async def _run():
            result = await self.db.execute(stmt)
            return int(result.scalar() or 0)

        return await self._read(f"count:{model.__tablename__}", _run)

    # ── Writes (never retried) ────────────────────────────────────────

    async def add(self, entity: T) -> T:
        self.db.add(entity)
        await self.db.flush()
        return entity

    async def add_many(self, entities: Iterable[T]) -> list[T]:
        batch = list(entities)
        if batch:
            self.db.add_all(batch)
            await self.db.flush()
        return batch

    async def put(self, entity: T) -> T:
        merged = await self.db.merge(entity)
        await self.db.flush()
        return merged

    async def delete(self, entity: Any) -> None:
        await self.db.delete(entity)
        await self.db.flush()
