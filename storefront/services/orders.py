"""
Order aggregate builder: cart -> order in one transaction.

create_order() snapshots the cart, prices it, inserts the order and its item
snapshots, reserves stock through the ledger and clears the cart, then
commits.  Only after the commit are side effects published; none of them can
turn a committed order into a failure.
"""
from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config import get_settings
from storefront.errors import Forbidden, InvalidTransition, NotFound, OrderCreationError, StoreError
from storefront.models import (
    Order,
    OrderItem,
    OrderStatus,
    OrderStatusHistory,
    PaymentMethod,
    PaymentStatus,
)
from storefront.schemas import CheckoutRequest
from storefront.services import cart, discounts, ledger
from storefront.services.effects import OrderCreated, SideEffects, stock_events
from storefront.visibility import visible

logger = logging.getLogger(__name__)

# Forward moves only; cancellation is reachable from everything but delivered.
TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPING, OrderStatus.CANCELLED},
    OrderStatus.SHIPPING: {OrderStatus.DELIVERED, OrderStatus.CANCELLED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}


@dataclass
class PlacedOrder:
    order: Order
    payment_url: Optional[str] = None


def generate_order_number(user_id: str, now: Optional[datetime] = None) -> str:
    """<prefix>-<utc timestamp to ms>-<user fragment>-<48 random bits>"""
    now = now or datetime.now(timezone.utc)
    stamp = now.strftime("%Y%m%d%H%M%S") + f"{now.microsecond // 1000:03d}"
    user_part = re.sub(r"[^A-Za-z0-9]", "", user_id)[:8].upper() or "GUEST"
    suffix = secrets.token_hex(6).upper()
    return f"{get_settings().order_number_prefix}-{stamp}-{user_part}-{suffix}"


def compute_tax(taxable: int) -> int:
    rate = get_settings().tax_rate_percent
    if rate <= 0 or taxable <= 0:
        return 0
    return int(
        (Decimal(taxable) * Decimal(rate) / Decimal(100)).quantize(
            Decimal(1), rounding=ROUND_HALF_UP
        )
    )


def record_status(
    session: AsyncSession,
    order: Order,
    status: str,
    notes: Optional[str] = None,
    changed_by: Optional[str] = None,
) -> None:
    session.add(
        OrderStatusHistory(order_id=order.id, status=status, notes=notes, changed_by=changed_by)
    )


async def create_order(
    session: AsyncSession,
    user_id: str,
    request: CheckoutRequest,
    effects: SideEffects,
) -> PlacedOrder:
    """
    Turn the user's cart into an order.

    Any failure (empty cart, unavailable product, coupon rejection, stock
    shortfall, database error) rolls the whole transaction back and is raised
    as OrderCreationError with the original error in ``cause``.
    """
    try:
        lines = await cart.snapshot(session, user_id)
        subtotal = cart.subtotal(lines)

        discount: Optional[discounts.DiscountResult] = None
        if request.coupon_code:
            coupon = await discounts.find_coupon(session, request.coupon_code)
            used = await discounts.count_redemptions(session, coupon.id, user_id)
            discount = discounts.apply_coupon(coupon, subtotal, cart.scope_of(lines), used)
        discount_amount = discount.discount_amount if discount else 0

        tax_amount = compute_tax(subtotal - discount_amount)
        total = subtotal + request.shipping_fee - discount_amount + tax_amount

        order = Order(
            order_number=generate_order_number(user_id),
            user_id=user_id,
            subtotal=subtotal,
            discount_amount=discount_amount,
            tax_amount=tax_amount,
            shipping_fee=request.shipping_fee,
            total_amount=total,
            coupon_id=discount.coupon_id if discount else None,
            shipping_address=request.shipping_address.model_dump(),
            shipping_provider=request.shipping_provider,
            payment_method=request.payment_method,
            payment_status=PaymentStatus.PENDING,
            order_status=OrderStatus.PENDING,
            notes=request.notes,
        )
        order.items = [
            OrderItem(
                product_id=line.sku.product_id,
                variant_id=line.sku.variant_id,
                sku_key=str(line.sku),
                quantity=line.quantity,
                unit_price=line.unit_price,
                product_name=line.product_name,
                sku=line.sku_code,
                variant_attributes=line.variant_attributes,
            )
            for line in lines
        ]
        session.add(order)
        await session.flush()
        record_status(session, order, OrderStatus.PENDING, "Order placed", user_id)

        changes = await ledger.reserve(
            session,
            [(line.sku, line.quantity) for line in lines],
            reference=order.order_number,
        )
        if discount:
            await discounts.record_redemption(session, discount, user_id, order.id)

        await cart.clear(session, user_id)
        await session.commit()
    except StoreError as exc:
        await session.rollback()
        logger.info("Order creation refused for user=%s: %s", user_id, exc.kind)
        raise OrderCreationError(exc, user_id=user_id) from exc
    except SQLAlchemyError as exc:
        await session.rollback()
        logger.error("Order creation failed for user=%s: %s", user_id, exc)
        raise OrderCreationError(exc, user_id=user_id) from exc

    logger.info(
        "Order %s created: user=%s items=%d subtotal=%d discount=%d total=%d",
        order.order_number, user_id, len(order.items), subtotal, discount_amount, total,
    )

    effects.publish(
        [
            OrderCreated(
                order_id=order.id,
                order_number=order.order_number,
                user_id=user_id,
                total_amount=order.total_amount,
                shipping_fee=order.shipping_fee,
                shipping_provider=order.shipping_provider,
                payment_method=order.payment_method,
            ),
            *stock_events(changes),
        ]
    )

    payment_url = None
    if order.payment_method == PaymentMethod.ONLINE:
        payment_url = await effects.request_payment_url(order)
    return PlacedOrder(order=order, payment_url=payment_url)


async def get_order(
    session: AsyncSession,
    order_id: int,
    user_id: Optional[str] = None,
    lock: bool = False,
) -> Order:
    """Load a visible order; with *user_id* set, it must belong to that user."""
    stmt = select(Order).where(Order.id == order_id, visible(Order))
    if lock:
        stmt = stmt.with_for_update().execution_options(populate_existing=True)
    order = (await session.execute(stmt)).scalar_one_or_none()
    if order is None:
        raise NotFound(f"Order {order_id} not found", order_id=order_id)
    if user_id is not None and order.user_id != user_id:
        raise Forbidden(f"Order {order_id} belongs to another user", order_id=order_id)
    return order


async def list_orders(
    session: AsyncSession, user_id: str, status: Optional[str] = None
) -> List[Order]:
    stmt = select(Order).where(Order.user_id == user_id, visible(Order))
    if status:
        stmt = stmt.where(Order.order_status == status)
    stmt = stmt.order_by(Order.created_at.desc(), Order.id.desc())
    return list((await session.execute(stmt)).scalars().all())


async def transition_order_status(
    session: AsyncSession,
    order_id: int,
    new_status: str,
    effects: SideEffects,
    changed_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> Order:
    """
    Administrative status change along the order state machine.  Moving to
    cancelled runs the cancellation path so reserved stock is released.
    """
    if new_status == OrderStatus.CANCELLED:
        from storefront.services.reversal import cancel_order
        return await cancel_order(
            session, order_id, None, effects, changed_by=changed_by, notes=notes
        )

    order = await get_order(session, order_id, lock=True)
    current = order.order_status
    if new_status not in TRANSITIONS.get(current, set()):
        error = InvalidTransition("order", order_id, current, new_status)
        await session.rollback()
        raise error

    order.order_status = new_status
    record_status(session, order, new_status, notes, changed_by)
    await session.commit()

    logger.info(
        "Order %s status %s -> %s by %s", order.order_number, current, new_status, changed_by
    )
    return order
