"""
Replenishment Worker — Nightly reorder planning.

Runs the replenishment planner over every finished good and raw material,
logs the urgency summary, and (when auto_draft_purchase_orders is on)
drafts one pending purchase order covering every product at or below its
reorder point.

Schedule: crontab(hour=2, minute=30) — nightly
Queue: planning
"""

import asyncio
from datetime import datetime, timezone

import structlog

from workers.celery_app import celery_app

logger = structlog.get_logger()


@celery_app.task(
    name="workers.replenishment.run_replenishment_plan",
    bind=True,
    max_retries=2,
    default_retry_delay=300,
    acks_late=True,
)
def run_replenishment_plan(self, supplier: str = "TBD"):
    """
    Nightly job: recompute ROP / EOQ and classify every planned product.

    Workflow:
      1. Read consumption history and on-hand totals
      2. Classify each product (critical, high, medium, potential dead stock, ok)
      3. Optionally draft a purchase order with EOQ quantities
      4. Report summary counts
    """
    run_id = self.request.id or "manual"
    logger.info("replenishment.started", run_id=run_id)

    async def _plan():
        from core.config import get_settings
        from core.context import build_context
        from db.session import create_engine, create_session_factory
        from inventory.locks import ProductLockRegistry
        from inventory.planner import ReplenishmentPlanner
        from supply_chain.purchasing import draft_purchase_order_from_plan

        settings = get_settings()
        engine = create_engine(settings)
        try:
            async_session = create_session_factory(engine)

            async with async_session() as db:
                # asyncio.run gives every job a fresh loop, so locks are per run
                ctx = build_context(
                    db,
                    settings=settings,
                    locks=ProductLockRegistry(settings.lock_timeout_seconds),
                    actor="replenishment_job",
                )
                async with ctx.unit_of_work():
                    report = await ReplenishmentPlanner(ctx).run()
                    drafted = None
                    if settings.auto_draft_purchase_orders:
                        drafted = await draft_purchase_order_from_plan(ctx, report, supplier=supplier)
        finally:
            await engine.dispose()

        summary = {
            "status": "success",
            "run_id": run_id,
            "products": len(report.lines),
            "summary": dict(report.summary),
            "reorder_lines": len(report.purchase_order_draft()),
            "drafted_po_id": str(drafted.po_id) if drafted else None,
            "completed_at": datetime.now(timezone.utc).isoformat(),
        }

        most_urgent = [
            {"sku": line.sku, "urgency": line.urgency.value, "current_stock": line.current_stock}
            for line in report.lines
            if line.needs_reorder
        ][:5]

        logger.info("replenishment.completed", **summary, most_urgent=most_urgent)
        return summary

    try:
        return asyncio.run(_plan())
    except Exception as exc:
        logger.error("replenishment.failed", error=str(exc), exc_info=True)
        raise self.retry(exc=exc)
