"""Errors raised by the order workflow and mapped to HTTP responses in main.py."""
from typing import Any, Dict, Optional


class MarketError(Exception):
    """Base exception for all marketplace errors."""

    status_code = 500
    code = "MARKET_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ValidationError(MarketError):
    status_code = 400
    code = "VALIDATION_ERROR"


class CartEmpty(ValidationError):
    code = "CART_EMPTY"

    def __init__(self):
        super().__init__("Cart is empty")


class OutOfStock(MarketError):
    """Raised when a product has fewer units than requested."""

    status_code = 400
    code = "OUT_OF_STOCK"

    def __init__(self, product_id: str, name: Optional[str], available: int):
        self.product_id = product_id
        self.available = available
        label = name or product_id
        super().__init__(
            f"Only {available} units available for {label}",
            {"product_id": product_id, "available": available},
        )


class ProductUnavailable(MarketError):
    status_code = 400
    code = "PRODUCT_UNAVAILABLE"

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__("Product no longer available", {"product_id": product_id})


class NotAuthenticated(MarketError):
    status_code = 401
    code = "NOT_AUTHENTICATED"


class Forbidden(MarketError):
    status_code = 403
    code = "FORBIDDEN"


class OrderNotFound(MarketError):
    status_code = 404
    code = "ORDER_NOT_FOUND"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("Order not found", {"order_id": order_id})


class CartItemNotFound(MarketError):
    status_code = 404
    code = "CART_ITEM_NOT_FOUND"

    def __init__(self, item_id: str):
        super().__init__("Item not found in cart", {"item_id": item_id})


class NotificationNotFound(MarketError):
    status_code = 404
    code = "NOTIFICATION_NOT_FOUND"

    def __init__(self, notification_id: str):
        super().__init__("Notification not found", {"notification_id": notification_id})


class ConflictError(MarketError):
    """A versioned write lost a race with a concurrent writer."""

    status_code = 409
    code = "CONFLICT"

    def __init__(self, collection: str, doc_id: Any):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(
            f"Concurrent update on {collection}, please retry",
            {"collection": collection, "id": str(doc_id)},
        )


class InvalidTransition(MarketError):
    status_code = 409
    code = "INVALID_TRANSITION"

    def __init__(self, field: str, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot change {field} from {current} to {target}",
            {"field": field, "from": current, "to": target},
        )


class PaymentInitError(MarketError):
    status_code = 502
    code = "PAYMENT_INIT_FAILED"


class GatewayError(MarketError):
    status_code = 502
    code = "GATEWAY_ERROR"


class AmountMismatch(MarketError):
    status_code = 400
    code = "AMOUNT_MISMATCH"

    def __init__(self, expected_minor: int, paid_minor: int):
        self.expected_minor = expected_minor
        self.paid_minor = paid_minor
        super().__init__(
            "Paid amount does not cover the order total",
            {"expected": expected_minor, "paid": paid_minor},
        )


class InvalidMetadata(MarketError):
    status_code = 400
    code = "INVALID_METADATA"

    def __init__(self, message: str = "Invalid payment metadata returned from gateway"):
        super().__init__(message)
