"""
GarmentOps Database Models

Tables for the inventory and production-fulfillment core.

Tables:
  Catalog (1-3):
  1. locations               - Physical storage locations (warehouse, store, returns)
  2. products                - Finished goods, raw materials, packaging
  3. customers               - Buyers with optional credit limits

  Stock Ledger (4-6):
  4. stock_records           - Quantity per (product, location, batch)
  5. stock_movements         - Signed journal of every ledger mutation
  6. stock_transfers         - Completed location-to-location moves

  Manufacturing (7-9):
  7. bills_of_materials      - BOM header (one active per finished good)
  8. bom_lines               - Per-unit material requirements
  9. production_orders       - pending → wip → completed workflow

  Sales (10-13):
  10. sales_orders           - Quote-to-completion workflow
  11. sales_order_lines      - Ordered products with price and cost
  12. sales_order_allocations - Stock provenance per line (pick lists)
  13. sales_order_status_history

  Purchasing (14-16):
  14. purchase_orders
  15. purchase_order_lines
  16. goods_receipts         - Receipt records with landed cost

  Counting & Cash (17-20):
  17. cycle_counts
  18. cycle_count_lines
  19. cash_accounts
  20. cash_entries
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    types,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID

from core.enums import (
    CycleCountStatus,
    ItemType,
    LocationType,
    MovementType,
    PaymentTerm,
    ProductionStatus,
    PurchaseStatus,
    SalesStatus,
    sql_in,
)
from db.session import Base


class GUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL UUID when available, stores as CHAR(36) on SQLite.
    """

    impl = types.String(36)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(types.String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value) if isinstance(value, uuid.UUID) else value

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


# ─── 1. Locations ───────────────────────────────────────────────────────────


class Location(Base):
    __tablename__ = "locations"

    location_id = Column(String(50), primary_key=True)
    name = Column(String(255), nullable=False)
    location_type = Column(String(20), nullable=False, default=LocationType.WAREHOUSE.value)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (CheckConstraint(f"location_type IN ({sql_in(LocationType)})", name="ck_location_type"),)


# ─── 2. Products ────────────────────────────────────────────────────────────


class Product(Base):
    __tablename__ = "products"

    product_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    sku = Column(String(100), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    item_type = Column(String(20), nullable=False)
    unit_cost = Column(Float, nullable=False, default=0.0)
    price_tiers = Column(JSON, default=dict)  # {"retail": 25.0, "wholesale": 18.0}
    lead_time_days = Column(Float, nullable=False, default=0.0)
    order_cost = Column(Float, nullable=False, default=0.0)  # Fixed cost per replenishment order
    holding_cost_pct = Column(Float, nullable=False, default=0.0)  # Annual fraction of unit cost
    low_threshold = Column(Float, nullable=False, default=0.0)
    shelf_life_days = Column(Integer)  # Dates produced batches when set
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_products_item_type", "item_type"),
        CheckConstraint(f"item_type IN ({sql_in(ItemType)})", name="ck_product_item_type"),
        CheckConstraint("unit_cost >= 0", name="ck_product_cost_positive"),
        CheckConstraint("lead_time_days >= 0", name="ck_product_lead_time_positive"),
        CheckConstraint("holding_cost_pct >= 0", name="ck_product_holding_cost_positive"),
    )


# ─── 3. Customers ───────────────────────────────────────────────────────────


class Customer(Base):
    __tablename__ = "customers"

    customer_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    email = Column(String(255))
    credit_limit = Column(Float, nullable=False, default=0.0)  # 0 = no limit enforced
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (CheckConstraint("credit_limit >= 0", name="ck_customer_credit_limit_positive"),)


# ═══════════════════════════════════════════════════════════════════════════
# Stock Ledger (4-6)
# ═══════════════════════════════════════════════════════════════════════════


# ─── 4. Stock Records ──────────────────────────────────────────────────────


class StockRecord(Base):
    """Quantity of one batch of a product at one location."""

    __tablename__ = "stock_records"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    product_id = Column(GUID(), ForeignKey("products.product_id"), nullable=False)
    location_id = Column(String(50), ForeignKey("locations.location_id"), nullable=False)
    batch_id = Column(String(100))
    quantity = Column(Float, nullable=False, default=0.0)
    received_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    expires_at = Column(DateTime)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("product_id", "location_id", "batch_id", name="uq_stock_product_location_batch"),
        Index("ix_stock_product", "product_id"),
        Index("ix_stock_product_location", "product_id", "location_id"),
        CheckConstraint("quantity >= 0", name="ck_stock_qty_positive"),
    )


# ─── 5. Stock Movements ────────────────────────────────────────────────────


class StockMovement(Base):
    """Signed journal entry for a single ledger mutation."""

    __tablename__ = "stock_movements"

    movement_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    product_id = Column(GUID(), ForeignKey("products.product_id"), nullable=False)
    location_id = Column(String(50), nullable=False)
    batch_id = Column(String(100))
    stock_record_id = Column(GUID())  # Null once an administrative reset deleted the record
    movement_type = Column(String(20), nullable=False)
    quantity = Column(Float, nullable=False)  # Positive in, negative out
    quantity_before = Column(Float, nullable=False)
    quantity_after = Column(Float, nullable=False)
    reference_type = Column(String(30))  # sales_order, production_order, purchase_order, transfer, cycle_count
    reference_id = Column(String(64))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_movements_product_time", "product_id", "created_at"),
        Index("ix_movements_reference", "reference_type", "reference_id"),
        CheckConstraint(f"movement_type IN ({sql_in(MovementType)})", name="ck_movement_type"),
        CheckConstraint("quantity != 0", name="ck_movement_quantity_nonzero"),
    )


# ─── 6. Stock Transfers ────────────────────────────────────────────────────


class StockTransfer(Base):
    """Completed location-to-location movement with its per-batch legs."""

    __tablename__ = "stock_transfers"

    transfer_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    product_id = Column(GUID(), ForeignKey("products.product_id"), nullable=False)
    from_location_id = Column(String(50), ForeignKey("locations.location_id"), nullable=False)
    to_location_id = Column(String(50), ForeignKey("locations.location_id"), nullable=False)
    quantity = Column(Float, nullable=False)
    legs = Column(JSON, default=list)  # [{"batch_id": ..., "quantity": ...}]
    reason_code = Column(String(30))  # rebalance, replenish_store, return, damaged
    transferred_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_transfers_product", "product_id", "transferred_at"),
        CheckConstraint("quantity > 0", name="ck_transfer_quantity_positive"),
        CheckConstraint("from_location_id != to_location_id", name="ck_transfer_distinct_locations"),
    )


# ═══════════════════════════════════════════════════════════════════════════
# Manufacturing (7-9)
# ═══════════════════════════════════════════════════════════════════════════


# ─── 7. Bills of Materials ─────────────────────────────────────────────────


class BillOfMaterials(Base):
    __tablename__ = "bills_of_materials"

    bom_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    finished_good_id = Column(GUID(), ForeignKey("products.product_id"), nullable=False)
    version = Column(String(20), nullable=False, default="v1")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("finished_good_id", "version", name="uq_bom_version"),
        Index("ix_bom_finished_good", "finished_good_id", "is_active"),
    )


# ─── 8. BOM Lines ──────────────────────────────────────────────────────────


class BOMLine(Base):
    __tablename__ = "bom_lines"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    bom_id = Column(GUID(), ForeignKey("bills_of_materials.bom_id"), nullable=False)
    material_id = Column(GUID(), ForeignKey("products.product_id"), nullable=False)
    qty_per_unit = Column(Float, nullable=False)

    __table_args__ = (
        UniqueConstraint("bom_id", "material_id", name="uq_bom_line_material"),
        Index("ix_bom_lines_bom", "bom_id"),
        CheckConstraint("qty_per_unit > 0", name="ck_bom_line_qty_positive"),
    )


# ─── 9. Production Orders ──────────────────────────────────────────────────


class ProductionOrder(Base):
    __tablename__ = "production_orders"

    production_order_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    finished_good_id = Column(GUID(), ForeignKey("products.product_id"), nullable=False)
    bom_id = Column(GUID(), ForeignKey("bills_of_materials.bom_id"))
    quantity = Column(Float, nullable=False)
    target_location_id = Column(String(50), ForeignKey("locations.location_id"), nullable=False)
    status = Column(String(20), nullable=False, default=ProductionStatus.PENDING.value)
    sales_order_id = Column(GUID(), ForeignKey("sales_orders.order_id"))  # Set when auto-spawned
    start_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    completion_date = Column(DateTime)
    produced_batch_id = Column(String(100))
    material_cost = Column(Float)  # Rolled up from consumed material batches
    notes = Column(Text)

    __table_args__ = (
        Index("ix_production_status", "status", "start_date"),
        Index("ix_production_sales_order", "sales_order_id"),
        CheckConstraint("quantity > 0", name="ck_production_quantity_positive"),
        CheckConstraint(f"status IN ({sql_in(ProductionStatus)})", name="ck_production_status"),
    )


# ═══════════════════════════════════════════════════════════════════════════
# Sales (10-13)
# ═══════════════════════════════════════════════════════════════════════════


# ─── 10. Sales Orders ──────────────────────────────────────────────────────


class SalesOrder(Base):
    __tablename__ = "sales_orders"

    order_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    customer_id = Column(GUID(), ForeignKey("customers.customer_id"))
    status = Column(String(30), nullable=False, default=SalesStatus.QUOTE.value)
    payment_term = Column(String(20), nullable=False, default=PaymentTerm.IMMEDIATE.value)
    price_tier = Column(String(30))
    delivery_assignee = Column(String(255))  # Driver / courier responsible for dispatch
    total_amount = Column(Float, nullable=False, default=0.0)
    stock_committed = Column(Boolean, nullable=False, default=False)
    committed_at = Column(DateTime)
    cash_applied = Column(Float, nullable=False, default=0.0)  # Cash posted on commit (reversed on cancel)
    paid_at = Column(DateTime)
    order_date = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_sales_status_date", "status", "order_date"),
        Index("ix_sales_customer", "customer_id"),
        CheckConstraint(f"status IN ({sql_in(SalesStatus)})", name="ck_sales_status"),
        CheckConstraint(f"payment_term IN ({sql_in(PaymentTerm)})", name="ck_sales_payment_term"),
        CheckConstraint("total_amount >= 0", name="ck_sales_total_positive"),
    )


# ─── 11. Sales Order Lines ─────────────────────────────────────────────────


class SalesOrderLine(Base):
    __tablename__ = "sales_order_lines"

    line_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    order_id = Column(GUID(), ForeignKey("sales_orders.order_id"), nullable=False)
    line_no = Column(Integer, nullable=False)
    product_id = Column(GUID(), ForeignKey("products.product_id"), nullable=False)
    quantity = Column(Float, nullable=False)
    unit_price = Column(Float, nullable=False)
    unit_cost = Column(Float, nullable=False, default=0.0)

    __table_args__ = (
        UniqueConstraint("order_id", "line_no", name="uq_sales_line_no"),
        CheckConstraint("quantity > 0", name="ck_sales_line_quantity_positive"),
        CheckConstraint("unit_price >= 0", name="ck_sales_line_price_positive"),
    )


# ─── 12. Sales Order Allocations ───────────────────────────────────────────


class SalesOrderAllocation(Base):
    """Where each unit of a committed line was picked from."""

    __tablename__ = "sales_order_allocations"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    order_id = Column(GUID(), ForeignKey("sales_orders.order_id"), nullable=False)
    line_id = Column(GUID(), ForeignKey("sales_order_lines.line_id"), nullable=False)
    product_id = Column(GUID(), ForeignKey("products.product_id"), nullable=False)
    stock_record_id = Column(GUID())
    location_id = Column(String(50), nullable=False)
    batch_id = Column(String(100))
    expires_at = Column(DateTime)
    quantity = Column(Float, nullable=False)
    reversed_at = Column(DateTime)  # Set once returned to stock on cancellation

    __table_args__ = (
        Index("ix_sales_alloc_order", "order_id"),
        CheckConstraint("quantity > 0", name="ck_sales_alloc_quantity_positive"),
    )


# ─── 13. Sales Order Status History ────────────────────────────────────────


class SalesOrderStatusHistory(Base):
    __tablename__ = "sales_order_status_history"

    id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    order_id = Column(GUID(), ForeignKey("sales_orders.order_id"), nullable=False)
    from_status = Column(String(30))
    to_status = Column(String(30), nullable=False)
    actor = Column(String(255))
    changed_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (Index("ix_sales_history_order", "order_id", "changed_at"),)


# ═══════════════════════════════════════════════════════════════════════════
# Purchasing (14-16)
# ═══════════════════════════════════════════════════════════════════════════


# ─── 14. Purchase Orders ───────────────────────────────────────────────────


class PurchaseOrder(Base):
    __tablename__ = "purchase_orders"

    po_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    supplier = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default=PurchaseStatus.PENDING.value)
    total_cost = Column(Float, nullable=False, default=0.0)
    additional_costs = Column(Float, nullable=False, default=0.0)  # Freight, duty, handling
    source = Column(String(20), nullable=False, default="manual")  # manual, planner
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    received_at = Column(DateTime)
    paid_at = Column(DateTime)

    __table_args__ = (
        Index("ix_po_status", "status", "created_at"),
        CheckConstraint(f"status IN ({sql_in(PurchaseStatus)})", name="ck_po_status"),
        CheckConstraint("additional_costs >= 0", name="ck_po_additional_costs_positive"),
    )


# ─── 15. Purchase Order Lines ──────────────────────────────────────────────


class PurchaseOrderLine(Base):
    __tablename__ = "purchase_order_lines"

    line_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    po_id = Column(GUID(), ForeignKey("purchase_orders.po_id"), nullable=False)
    line_no = Column(Integer, nullable=False)
    product_id = Column(GUID(), ForeignKey("products.product_id"), nullable=False)
    quantity = Column(Float, nullable=False)
    unit_cost = Column(Float, nullable=False)

    __table_args__ = (
        UniqueConstraint("po_id", "line_no", name="uq_po_line_no"),
        CheckConstraint("quantity > 0", name="ck_po_line_quantity_positive"),
        CheckConstraint("unit_cost >= 0", name="ck_po_line_cost_positive"),
    )


# ─── 16. Goods Receipts ────────────────────────────────────────────────────


class GoodsReceipt(Base):
    __tablename__ = "goods_receipts"

    receipt_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    po_id = Column(GUID(), ForeignKey("purchase_orders.po_id"), nullable=False)
    product_id = Column(GUID(), ForeignKey("products.product_id"), nullable=False)
    location_id = Column(String(50), nullable=False)
    batch_id = Column(String(100))
    quantity = Column(Float, nullable=False)
    unit_cost = Column(Float, nullable=False)
    landed_unit_cost = Column(Float, nullable=False)
    total_cost = Column(Float, nullable=False)
    received_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (Index("ix_receipts_po", "po_id"),)


# ═══════════════════════════════════════════════════════════════════════════
# Counting & Cash (17-20)
# ═══════════════════════════════════════════════════════════════════════════


# ─── 17. Cycle Counts ──────────────────────────────────────────────────────


class CycleCount(Base):
    __tablename__ = "cycle_counts"

    count_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    status = Column(String(20), nullable=False, default=CycleCountStatus.OPEN.value)
    location_id = Column(String(50))  # Null = all locations
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    confirmed_at = Column(DateTime)

    __table_args__ = (CheckConstraint(f"status IN ({sql_in(CycleCountStatus)})", name="ck_cycle_count_status"),)


# ─── 18. Cycle Count Lines ─────────────────────────────────────────────────


class CycleCountLine(Base):
    __tablename__ = "cycle_count_lines"

    line_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    count_id = Column(GUID(), ForeignKey("cycle_counts.count_id"), nullable=False)
    stock_record_id = Column(GUID(), nullable=False)
    product_id = Column(GUID(), nullable=False)
    location_id = Column(String(50), nullable=False)
    batch_id = Column(String(100))
    system_qty = Column(Float, nullable=False)
    physical_qty = Column(Float)
    outcome = Column(String(20))  # adjusted, unchanged, failed
    failure_reason = Column(String(100))

    __table_args__ = (
        Index("ix_cycle_count_lines_count", "count_id"),
        CheckConstraint("physical_qty IS NULL OR physical_qty >= 0", name="ck_cycle_count_physical_positive"),
    )


# ─── 19. Cash Accounts ─────────────────────────────────────────────────────


class CashAccount(Base):
    __tablename__ = "cash_accounts"

    account_id = Column(String(50), primary_key=True, default="main")
    currency = Column(String(3), nullable=False, default="USD")
    balance = Column(Float, nullable=False, default=0.0)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


# ─── 20. Cash Entries ──────────────────────────────────────────────────────


class CashEntry(Base):
    __tablename__ = "cash_entries"

    entry_id = Column(GUID(), primary_key=True, default=uuid.uuid4)
    account_id = Column(String(50), ForeignKey("cash_accounts.account_id"), nullable=False)
    amount = Column(Float, nullable=False)
    balance_after = Column(Float, nullable=False)
    reason = Column(String(50), nullable=False)  # sale, sale_reversal, customer_payment, supplier_payment
    reference_type = Column(String(30))
    reference_id = Column(String(64))
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_cash_entries_account_time", "account_id", "created_at"),
        CheckConstraint("amount != 0", name="ck_cash_entry_amount_nonzero"),
    )
