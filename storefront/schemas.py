"""
Pydantic schemas for request/response validation.
"""
from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


# ── Cart ─────────────────────────────────────────────────────────────────────

class CartItemIn(BaseModel):
    product_id: int
    variant_id: Optional[int] = None
    quantity: int = Field(..., gt=0)


class CartLineOut(BaseModel):
    cart_line_id: int
    product_id: int
    variant_id: Optional[int] = None
    product_name: str
    quantity: int
    unit_price: int
    line_total: int
    available: int


class CartView(BaseModel):
    lines: List[CartLineOut]
    subtotal: int


class CouponPreviewIn(BaseModel):
    code: str = Field(..., min_length=1)


class CouponPreviewOut(BaseModel):
    code: str
    order_amount: int
    discount_amount: int
    final_amount: int


# ── Checkout / orders ────────────────────────────────────────────────────────

class ShippingAddress(BaseModel):
    recipient_name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=6)
    address_line: str = Field(..., min_length=1)
    ward: Optional[str] = None
    district: Optional[str] = None
    province: Optional[str] = None


class CheckoutRequest(BaseModel):
    shipping_address: ShippingAddress
    payment_method: Literal["cod", "online"] = "cod"
    shipping_fee: int = Field(default=0, ge=0)
    shipping_provider: Optional[str] = None
    coupon_code: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class OrderItemOut(BaseModel):
    id: int
    product_id: int
    variant_id: Optional[int] = None
    quantity: int
    unit_price: int
    product_name: str
    sku: str
    variant_attributes: Optional[dict] = None

    model_config = {"from_attributes": True}


class OrderOut(BaseModel):
    id: int
    order_number: str
    user_id: str
    subtotal: int
    discount_amount: int
    tax_amount: int
    shipping_fee: int
    total_amount: int
    shipping_address: dict
    payment_method: str
    payment_status: str
    order_status: str
    notes: Optional[str] = None
    created_at: datetime
    items: List[OrderItemOut] = []

    model_config = {"from_attributes": True}


class PlacedOrderOut(BaseModel):
    order: OrderOut
    payment_url: Optional[str] = None


class OrderStatusUpdate(BaseModel):
    status: Literal["confirmed", "processing", "shipping", "delivered", "cancelled"]
    notes: Optional[str] = None


# ── Payments ─────────────────────────────────────────────────────────────────

class PaymentCallback(BaseModel):
    order_number: str
    success: bool
    transaction_id: str = Field(..., min_length=1)
    amount: Optional[int] = None
    gateway: str = "gateway"


class PaymentCallbackResult(BaseModel):
    order_number: str
    payment_status: str
    order_status: str


# ── Refunds ──────────────────────────────────────────────────────────────────

class RefundItemIn(BaseModel):
    order_item_id: int
    quantity: int = Field(..., gt=0)
    reason: Optional[str] = None


class RefundRequest(BaseModel):
    order_id: int
    type: Literal["refund", "return", "exchange"] = "refund"
    reason: str = Field(..., min_length=1, max_length=2000)
    items: List[RefundItemIn] = Field(..., min_length=1)


class RefundItemOut(BaseModel):
    id: int
    order_item_id: int
    quantity: int
    refund_amount: int
    reason: Optional[str] = None

    model_config = {"from_attributes": True}


class RefundOut(BaseModel):
    id: int
    refund_number: str
    order_id: int
    user_id: str
    type: str
    reason: str
    status: str
    refund_amount: int
    admin_notes: Optional[str] = None
    processed_by: Optional[str] = None
    processed_at: Optional[datetime] = None
    restocked_at: Optional[datetime] = None
    created_at: datetime
    items: List[RefundItemOut] = []

    model_config = {"from_attributes": True}


class RefundStatusUpdate(BaseModel):
    status: Literal["approved", "rejected", "processing", "completed"]
    admin_notes: Optional[str] = None


# ── Admin / query responses ───────────────────────────────────────────────────

class StockRow(BaseModel):
    sku_key: str
    product_id: int
    variant_id: Optional[int] = None
    quantity: int
    low_stock_threshold: int
    updated_at: datetime

    model_config = {"from_attributes": True}


class StockAlertRow(BaseModel):
    sku_key: str
    threshold: int
    current_quantity: int
    is_notified: bool
    updated_at: datetime

    model_config = {"from_attributes": True}


class StockReceiveIn(BaseModel):
    product_id: int
    variant_id: Optional[int] = None
    quantity: int = Field(..., gt=0)
    reason: Optional[str] = None
    register_missing: bool = False


class StockAdjustIn(BaseModel):
    product_id: int
    variant_id: Optional[int] = None
    new_quantity: int = Field(..., ge=0)
    reason: Optional[str] = None


class StockChangeOut(BaseModel):
    sku_key: str
    previous: int
    quantity: int


class HealthResponse(BaseModel):
    status: str = "ok"
    db: str = "ok"
