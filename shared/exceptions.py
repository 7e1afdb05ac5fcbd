"""
exceptions.py - Error Taxonomy Shared by Order and Inventory Services

PURPOSE:
    One set of exception classes for every business and transport failure in the
    reserve/release/confirm protocol. The inventory service raises them, its HTTP
    layer serializes them as {"error": code, "detail": message}, and the order
    service's InventoryClient turns that body back into the same class.

HIERARCHY:
    FulfillmentError
    ├── InvalidArgument            non-positive quantity, bad thresholds (422)
    ├── StockError
    │   ├── InsufficientStock      available < requested (409)
    │   ├── OverRelease            release > reserved (409)
    │   └── OverConfirm            confirm > reserved (409)
    ├── StockRecordNotFound        unknown product (404)
    ├── DuplicateProduct           product already registered (409)
    ├── ConcurrentModification     stale revision / hold timeout, retry (409)
    ├── IllegalTransition          order state machine violation (409)
    ├── OrderNotFound              unknown order number (404)
    └── DownstreamUnavailable      degraded-mode result, fail closed (503)
"""

from typing import Dict, Optional, Type


class FulfillmentError(Exception):
    """Base class. ``code`` is the machine-readable name used on the wire."""

    code = "FULFILLMENT_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidArgument(FulfillmentError):
    code = "INVALID_ARGUMENT"


class StockError(FulfillmentError):
    """Business-rule violation against a stock record."""

    code = "STOCK_ERROR"

    def __init__(self, message: str, product_id: Optional[int] = None, requested: Optional[int] = None):
        super().__init__(message)
        self.product_id = product_id
        self.requested = requested


class InsufficientStock(StockError):
    code = "INSUFFICIENT_STOCK"


class OverRelease(StockError):
    code = "OVER_RELEASE"


class OverConfirm(StockError):
    code = "OVER_CONFIRM"


class StockRecordNotFound(FulfillmentError):
    code = "STOCK_RECORD_NOT_FOUND"

    def __init__(self, product_id: int):
        super().__init__(f"No stock record for product {product_id}")
        self.product_id = product_id


class DuplicateProduct(FulfillmentError):
    code = "DUPLICATE_PRODUCT"


class ConcurrentModification(FulfillmentError):
    """Transient. The caller must reload and retry."""

    code = "CONCURRENT_MODIFICATION"


class IllegalTransition(FulfillmentError):
    code = "ILLEGAL_TRANSITION"

    def __init__(self, order_number: str, current: str, attempted: str):
        super().__init__(f"Order {order_number} cannot {attempted} from status {current}")
        self.order_number = order_number
        self.current = current
        self.attempted = attempted


class OrderNotFound(FulfillmentError):
    code = "ORDER_NOT_FOUND"

    def __init__(self, order_number: str):
        super().__init__(f"Order {order_number} not found")
        self.order_number = order_number


class DownstreamUnavailable(FulfillmentError):
    code = "DOWNSTREAM_UNAVAILABLE"


# Wire code -> class, used by the inventory client to rebuild errors
ERROR_CODE_MAP: Dict[str, Type[FulfillmentError]] = {
    cls.code: cls
    for cls in (
        InvalidArgument,
        InsufficientStock,
        OverRelease,
        OverConfirm,
        ConcurrentModification,
        DuplicateProduct,
    )
}
