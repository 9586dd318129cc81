"""
Domain errors for the inventory core.

Every error names the offending entity and the quantities involved. They
signal business-rule violations and are never retried by the storage
layer.
"""

from typing import Any


class InventoryError(Exception):
    """Base class for all domain errors raised by the inventory core."""

    code = "inventory_error"

    def to_dict(self) -> dict[str, Any]:
        payload = {"error": self.code, "message": str(self)}
        payload.update({k: _jsonable(v) for k, v in vars(self).items() if not k.startswith("_")})
        return payload


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)


class InsufficientStock(InventoryError):
    code = "insufficient_stock"

    def __init__(self, product_id, required: float, available: float):
        self.product_id = product_id
        self.required = required
        self.available = available
        super().__init__(f"Insufficient stock for product {product_id}: required {required}, available {available}")


class InsufficientStockAtLocation(InsufficientStock):
    code = "insufficient_stock_at_location"

    def __init__(self, product_id, location_id: str, required: float, available: float):
        self.location_id = location_id
        super().__init__(product_id, required, available)
        self.args = (
            f"Insufficient stock for product {product_id} at {location_id}: "
            f"required {required}, available {available}",
        )


class InsufficientMaterial(InventoryError):
    code = "insufficient_material"

    def __init__(self, material_id, required: float, available: float, shortages: list | None = None):
        self.material_id = material_id
        self.required = required
        self.available = available
        # Every short material when more than one is short; first one is the headline
        self._shortages = list(shortages or [])
        super().__init__(f"Insufficient material {material_id}: required {required}, available {available}")

    @property
    def shortages(self) -> list:
        return self._shortages


class InvalidTransfer(InventoryError):
    code = "invalid_transfer"

    def __init__(self, reason: str, from_location: str | None = None, to_location: str | None = None):
        self.reason = reason
        self.from_location = from_location
        self.to_location = to_location
        super().__init__(f"Invalid transfer {from_location} -> {to_location}: {reason}")


class CreditLimitExceeded(InventoryError):
    code = "credit_limit_exceeded"

    def __init__(self, customer_id, credit_limit: float, existing_debt: float, order_total: float):
        self.customer_id = customer_id
        self.credit_limit = credit_limit
        self.existing_debt = existing_debt
        self.order_total = order_total
        super().__init__(
            f"Credit limit exceeded for customer {customer_id}: "
            f"debt {existing_debt} + order {order_total} > limit {credit_limit}"
        )


class LogisticsNotAssigned(InventoryError):
    code = "logistics_not_assigned"

    def __init__(self, order_id):
        self.order_id = order_id
        super().__init__(f"Sales order {order_id} has no delivery resource assigned")


class InvalidTransition(InventoryError):
    code = "invalid_transition"

    def __init__(self, entity_type: str, entity_id, from_status: str, to_status: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Cannot move {entity_type} {entity_id} from '{from_status}' to '{to_status}'")


class NotFoundError(InventoryError):
    code = "not_found"
    entity_type = "entity"

    def __init__(self, entity_id):
        self.entity_id = entity_id
        super().__init__(f"{self.entity_type} {entity_id} not found")


class ProductNotFound(NotFoundError):
    code = "product_not_found"
    entity_type = "Product"


class BOMNotFound(NotFoundError):
    code = "bom_not_found"
    entity_type = "Active BOM for product"


class OrderNotFound(NotFoundError):
    code = "order_not_found"
    entity_type = "Order"


class LocationNotFound(NotFoundError):
    code = "location_not_found"
    entity_type = "Location"


class CustomerNotFound(NotFoundError):
    code = "customer_not_found"
    entity_type = "Customer"


class LockTimeout(InventoryError):
    code = "lock_timeout"

    def __init__(self, product_id, timeout_seconds: float):
        self.product_id = product_id
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Timed out after {timeout_seconds}s waiting for the write lock on product {product_id}")
