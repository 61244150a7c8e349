"""
Domain error taxonomy.

Every error carries a machine-readable ``kind`` plus the identifiers needed by
the caller to decide between retrying, showing a message or paging someone.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    kind = "store_error"
    status_code = 400

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "message": self.message, "details": self.details}


class NotFound(StoreError):
    kind = "not_found"
    status_code = 404


class Forbidden(StoreError):
    kind = "forbidden"
    status_code = 403


# ── Checkout ─────────────────────────────────────────────────────────────────

class EmptyCartError(StoreError):
    kind = "empty_cart"

    def __init__(self, user_id: str) -> None:
        super().__init__("Cart is empty", user_id=user_id)


class ProductUnavailable(StoreError):
    kind = "product_unavailable"
    status_code = 409

    def __init__(self, product_id: int, variant_id: Optional[int] = None) -> None:
        super().__init__(
            f"Product {product_id} is no longer available",
            product_id=product_id,
            variant_id=variant_id,
        )
        self.product_id = product_id
        self.variant_id = variant_id


class InsufficientStock(StoreError):
    kind = "insufficient_stock"
    status_code = 409

    def __init__(self, sku_key, available: int, requested: int) -> None:
        super().__init__(
            f"Insufficient stock for {sku_key}: {available} available, {requested} requested",
            sku_key=str(sku_key),
            product_id=sku_key.product_id,
            variant_id=sku_key.variant_id,
            available=available,
            requested=requested,
        )
        self.sku_key = sku_key
        self.available = available
        self.requested = requested


class CouponError(StoreError):
    kind = "coupon_error"

    def __init__(self, reason: str, code: Optional[str] = None, message: str = "") -> None:
        super().__init__(message or f"Coupon rejected: {reason}", reason=reason, code=code)
        self.reason = reason
        self.code = code


class OrderCreationError(StoreError):
    """Raised by order creation; ``cause`` holds the underlying error."""
    kind = "order_creation_failed"

    def __init__(self, cause: Exception, user_id: Optional[str] = None) -> None:
        if isinstance(cause, StoreError):
            details = {"cause": cause.kind, **cause.details}
            message = cause.message
            self.status_code = cause.status_code
        else:
            details = {"cause": "transaction_failed"}
            message = "Order could not be created"
            self.status_code = 500
        if user_id is not None:
            details["user_id"] = user_id
        super().__init__(message, **details)
        self.cause = cause


# ── Order lifecycle ──────────────────────────────────────────────────────────

class InvalidTransition(StoreError):
    kind = "invalid_transition"
    status_code = 409

    def __init__(self, entity: str, entity_id: int, current: str, requested: str) -> None:
        super().__init__(
            f"Cannot move {entity} {entity_id} from {current} to {requested}",
            entity=entity,
            entity_id=entity_id,
            current=current,
            requested=requested,
        )


class NotCancellable(StoreError):
    kind = "not_cancellable"
    status_code = 409

    def __init__(self, order_id: int, order_status: str) -> None:
        super().__init__(
            f"Order {order_id} cannot be cancelled while {order_status}",
            order_id=order_id,
            order_status=order_status,
        )


class RequiresManualRefund(StoreError):
    kind = "requires_manual_refund"
    status_code = 409

    def __init__(self, order_id: int) -> None:
        super().__init__(
            f"Order {order_id} is paid; cancel it through a refund",
            order_id=order_id,
        )


class PaymentError(StoreError):
    kind = "payment_error"

    def __init__(self, reason: str, **details: Any) -> None:
        super().__init__(f"Payment callback rejected: {reason}", reason=reason, **details)
        self.reason = reason


# ── Refunds ──────────────────────────────────────────────────────────────────

class RefundError(StoreError):
    kind = "refund_error"

    def __init__(self, reason: str, message: str = "", **details: Any) -> None:
        super().__init__(message or f"Refund rejected: {reason}", reason=reason, **details)
        self.reason = reason
