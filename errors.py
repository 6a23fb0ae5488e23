"""Domain exceptions for the storefront service."""
from typing import Any, Dict, Optional


class ShopError(Exception):
    """Base exception for all storefront errors."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> Dict[str, Any]:
        """Render the error envelope returned to API clients."""
        return {
            "success": False,
            "error": self.message,
            "details": self.details or None,
        }


class NotFound(ShopError):
    """Raised when a product, cart line, order or account doesn't exist."""

    status_code = 404

    def __init__(self, resource: str, resource_id: Any = None):
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource} not found"
        if resource_id is not None:
            msg = f"{resource} with ID {resource_id} not found"
        super().__init__(msg, {"resource": resource, "id": resource_id})


class Unauthorized(ShopError):
    """Raised when the caller is not authenticated or not allowed to act."""

    status_code = 401

    def __init__(self, message: str = "Not authorized"):
        super().__init__(message)


class Forbidden(Unauthorized):
    """Raised when an authenticated account lacks the required role."""

    status_code = 403

    def __init__(self, message: str = "Forbidden"):
        super().__init__(message)


class InvalidSelection(ShopError):
    """Raised when a cart or checkout request names an invalid quantity, variant or option."""

    status_code = 400

    def __init__(self, reason: str, **details: Any):
        self.reason = reason
        super().__init__(reason, details)


class InsufficientStock(ShopError):
    """Raised when available stock can't cover the requested quantity."""

    status_code = 409

    def __init__(self, product_id: int, requested: int, available: Optional[int] = None):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        msg = f"Insufficient stock for product {product_id}: requested {requested}"
        if available is not None:
            msg = f"{msg}, available {available}"
        super().__init__(msg, {
            "product_id": product_id,
            "requested": requested,
            "available": available,
        })


class IllegalTransition(ShopError):
    """Raised when an order status change isn't allowed from its current status."""

    status_code = 409

    def __init__(self, from_status: str, to_status: str, reason: Optional[str] = None):
        self.from_status = from_status
        self.to_status = to_status
        msg = f"Cannot transition order from {from_status} to {to_status}"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg, {"from": from_status, "to": to_status})


class OrphanPayment(ShopError):
    """Raised when a payment event can't be matched to any order."""

    status_code = 202

    def __init__(self, correlation_id: str, event_type: str):
        self.correlation_id = correlation_id
        self.event_type = event_type
        super().__init__(
            f"No order found for payment {correlation_id}",
            {"correlation_id": correlation_id, "event_type": event_type},
        )


class PaymentProviderError(ShopError):
    """Raised when the payment provider can't be reached or rejects a request."""

    status_code = 502

    def __init__(self, operation: str, error: str):
        self.operation = operation
        self.error = error
        super().__init__(
            f"Payment provider error during {operation}",
            {"operation": operation, "error": error},
        )


class CartChanged(ShopError):
    """Raised when the cart was modified or checked out while an order was being placed."""

    status_code = 409

    def __init__(self, expected: int, claimed: int):
        self.expected = expected
        self.claimed = claimed
        super().__init__(
            "Cart changed during checkout",
            {"expected_lines": expected, "claimed_lines": claimed},
        )
