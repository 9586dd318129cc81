"""Closed value sets shared by models, schemas, and workflows."""

from enum import Enum


class ItemType(str, Enum):
    FINISHED_GOOD = "finished_good"
    RAW_MATERIAL = "raw_material"
    PACKAGING = "packaging"


class LocationType(str, Enum):
    WAREHOUSE = "warehouse"
    STORE = "store"
    PRODUCTION = "production"
    RETURNS = "returns"


class MovementType(str, Enum):
    RECEIPT = "receipt"
    PRODUCTION_OUTPUT = "production_output"
    CONSUMPTION = "consumption"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    ADJUSTMENT = "adjustment"
    RETURN = "return"


class ProductionStatus(str, Enum):
    PENDING = "pending"
    WIP = "wip"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SalesStatus(str, Enum):
    QUOTE = "quote"
    PENDING = "pending"
    AWAITING_PRODUCTION = "awaiting_production"
    DISPATCHING = "dispatching"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentTerm(str, Enum):
    IMMEDIATE = "immediate"
    CREDIT = "credit"


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    RECEIVED = "received"
    PAID = "paid"
    CANCELLED = "cancelled"


class CycleCountStatus(str, Enum):
    OPEN = "open"
    CONFIRMED = "confirmed"


class ReplenishmentUrgency(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    POTENTIAL_DEAD_STOCK = "potential_dead_stock"
    OK = "ok"


def sql_in(enum_cls: type[Enum]) -> str:
    """Render an enum's values as a SQL IN list for CheckConstraints."""
    return ", ".join(f"'{member.value}'" for member in enum_cls)
