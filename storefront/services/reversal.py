"""
Reversal engine: order cancellation and refund/return requests.

Cancellation gives reserved stock back through the ledger.  Refunds never
touch stock on their own; putting returned goods back on the shelf is the
separate restock_refund() step.
"""
from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.config import get_settings
from storefront.errors import (
    Forbidden,
    InvalidTransition,
    NotCancellable,
    NotFound,
    RefundError,
    RequiresManualRefund,
)
from storefront.models import (
    Order,
    OrderItem,
    OrderStatus,
    PaymentStatus,
    Refund,
    RefundItem,
    RefundStatus,
    RefundType,
    as_utc,
)
from storefront.patch import Patch
from storefront.schemas import RefundItemIn, RefundRequest
from storefront.services import ledger
from storefront.services.effects import (
    OrderCancelled,
    RefundRequested,
    RefundStatusChanged,
    SideEffects,
    stock_events,
)
from storefront.services.ledger import SkuKey, StockChange
from storefront.services.orders import get_order, record_status
from storefront.visibility import visible

logger = logging.getLogger(__name__)

# Statuses each cancellation path refuses
CUSTOMER_CANCELLABLE_BLOCKED = {
    OrderStatus.SHIPPING, OrderStatus.DELIVERED, OrderStatus.CANCELLED,
}
ADMIN_CANCELLABLE_BLOCKED = {OrderStatus.DELIVERED, OrderStatus.CANCELLED}

REFUNDABLE_ORDER_STATUSES = {OrderStatus.DELIVERED, OrderStatus.CANCELLED}

REFUND_TRANSITIONS = {
    RefundStatus.PENDING: {RefundStatus.APPROVED, RefundStatus.REJECTED, RefundStatus.CANCELLED},
    RefundStatus.APPROVED: {RefundStatus.PROCESSING},
    RefundStatus.PROCESSING: {RefundStatus.COMPLETED},
}

RESTOCKABLE_STATUSES = {RefundStatus.APPROVED, RefundStatus.PROCESSING, RefundStatus.COMPLETED}


# ── Cancellation ─────────────────────────────────────────────────────────────

async def cancel_order(
    session: AsyncSession,
    order_id: int,
    user_id: Optional[str],
    effects: SideEffects,
    changed_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> Order:
    """
    Cancel an unpaid order and release its stock.

    With *user_id* set this is the customer path: the order must be theirs
    and not yet shipping.  With ``user_id=None`` it is the admin path, which
    may also cancel a shipping order.
    """
    try:
        order = await get_order(session, order_id, user_id, lock=True)

        blocked = ADMIN_CANCELLABLE_BLOCKED if user_id is None else CUSTOMER_CANCELLABLE_BLOCKED
        if order.order_status in blocked:
            raise NotCancellable(order.id, order.order_status)
        if order.payment_status == PaymentStatus.PAID:
            raise RequiresManualRefund(order.id)

        changes = await ledger.release(
            session,
            [(SkuKey(item.product_id, item.variant_id), item.quantity) for item in order.items],
            reference=order.order_number,
            reason="order_cancelled",
        )

        previous = order.order_status
        order.order_status = OrderStatus.CANCELLED
        order.cancelled_at = datetime.now(timezone.utc)
        if order.payment_status == PaymentStatus.PENDING:
            order.payment_status = PaymentStatus.FAILED
        record_status(
            session, order, OrderStatus.CANCELLED,
            notes or "Order cancelled", changed_by or user_id,
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info(
        "Order %s cancelled (was %s) by %s; released %d sku(s)",
        order.order_number, previous, changed_by or user_id, len(changes),
    )
    effects.publish(
        [
            OrderCancelled(order_id=order.id, order_number=order.order_number, user_id=order.user_id),
            *stock_events(changes),
        ]
    )
    return order


# ── Refund requests ──────────────────────────────────────────────────────────

def generate_refund_number(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    millis = int(now.timestamp() * 1000)
    return f"{get_settings().refund_number_prefix}-{millis}-{secrets.token_hex(4).upper()}"


async def _refunded_quantities(session: AsyncSession, order_id: int) -> Dict[int, int]:
    """Quantity per order item already claimed by refunds that still count."""
    rows = (
        await session.execute(
            select(RefundItem.order_item_id, func.sum(RefundItem.quantity))
            .join(Refund, Refund.id == RefundItem.refund_id)
            .where(Refund.order_id == order_id, Refund.status.notin_(RefundStatus.VOID))
            .group_by(RefundItem.order_item_id)
        )
    ).all()
    return {item_id: int(total) for item_id, total in rows}


async def _in_flight_refund(session: AsyncSession, order_id: int) -> Optional[str]:
    return (
        await session.execute(
            select(Refund.refund_number)
            .where(Refund.order_id == order_id, Refund.status.in_(RefundStatus.IN_FLIGHT))
            .limit(1)
        )
    ).scalar_one_or_none()


async def _check_capacity(
    session: AsyncSession, order: Order, requested: Iterable[RefundItemIn]
) -> Dict[int, OrderItem]:
    """In-flight and per-item quantity checks; returns the order items touched."""
    in_flight = await _in_flight_refund(session, order.id)
    if in_flight:
        raise RefundError(
            "refund_in_progress",
            f"Order {order.id} already has refund {in_flight} in progress",
            order_id=order.id,
            refund_number=in_flight,
        )

    items_by_id = {item.id: item for item in order.items}
    wanted: Dict[int, int] = {}
    for req in requested:
        if req.order_item_id not in items_by_id:
            raise RefundError(
                "invalid_item",
                f"Item {req.order_item_id} is not part of order {order.id}",
                order_id=order.id,
                order_item_id=req.order_item_id,
            )
        wanted[req.order_item_id] = wanted.get(req.order_item_id, 0) + req.quantity

    already = await _refunded_quantities(session, order.id)
    for item_id, qty in wanted.items():
        remaining = items_by_id[item_id].quantity - already.get(item_id, 0)
        if qty > remaining:
            raise RefundError(
                "quantity_exceeded",
                f"Only {remaining} of item {item_id} can still be refunded",
                order_id=order.id,
                order_item_id=item_id,
                requested=qty,
                remaining=remaining,
            )
    return {item_id: items_by_id[item_id] for item_id in wanted}


async def validate_refund_request(
    session: AsyncSession,
    user_id: str,
    request: RefundRequest,
    now: Optional[datetime] = None,
) -> Order:
    """Eligibility checks that run before any write."""
    now = now or datetime.now(timezone.utc)

    order = (
        await session.execute(select(Order).where(Order.id == request.order_id, visible(Order)))
    ).scalar_one_or_none()
    if order is None:
        raise RefundError("order_not_found", order_id=request.order_id)
    if order.user_id != user_id:
        raise RefundError("not_owner", order_id=order.id)
    if order.order_status not in REFUNDABLE_ORDER_STATUSES:
        raise RefundError(
            "order_not_refundable",
            f"Order {order.id} is {order.order_status}; only delivered or cancelled orders can be refunded",
            order_id=order.id,
            order_status=order.order_status,
        )

    window = timedelta(days=get_settings().refund_window_days)
    if now - as_utc(order.created_at) > window:
        raise RefundError(
            "window_expired",
            f"Refunds must be requested within {window.days} days of ordering",
            order_id=order.id,
        )

    await _check_capacity(session, order, request.items)
    return order


async def create_refund(
    session: AsyncSession,
    user_id: str,
    request: RefundRequest,
    effects: SideEffects,
    now: Optional[datetime] = None,
) -> Refund:
    order = await validate_refund_request(session, user_id, request, now)

    try:
        # Re-check under the order row lock so two concurrent requests cannot
        # both pass the in-flight and quantity checks.  The write takes the lock
        # on backends that ignore FOR UPDATE.
        await session.execute(
            Patch(Order)
            .set("updated_at", datetime.now(timezone.utc))
            .statement(Order.id == order.id)
            .execution_options(synchronize_session=False)
        )
        order = await get_order(session, order.id, lock=True)
        touched = await _check_capacity(session, order, request.items)

        items = [
            RefundItem(
                order_item_id=req.order_item_id,
                quantity=req.quantity,
                refund_amount=touched[req.order_item_id].unit_price * req.quantity,
                reason=req.reason,
            )
            for req in request.items
        ]
        refund = Refund(
            refund_number=generate_refund_number(now),
            order_id=order.id,
            user_id=user_id,
            type=request.type,
            reason=request.reason,
            status=RefundStatus.PENDING,
            refund_amount=sum(item.refund_amount for item in items),
        )
        refund.items = items
        session.add(refund)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info(
        "Refund %s requested for order=%s user=%s amount=%d items=%d",
        refund.refund_number, order.order_number, user_id, refund.refund_amount, len(items),
    )
    effects.publish(
        [
            RefundRequested(
                refund_id=refund.id,
                refund_number=refund.refund_number,
                order_id=order.id,
                user_id=user_id,
                refund_amount=refund.refund_amount,
            )
        ]
    )
    return refund


# ── Refund lifecycle ─────────────────────────────────────────────────────────

async def get_refund(
    session: AsyncSession,
    refund_id: int,
    user_id: Optional[str] = None,
    lock: bool = False,
) -> Refund:
    stmt = select(Refund).where(Refund.id == refund_id)
    if lock:
        stmt = stmt.with_for_update()
    refund = (
        await session.execute(stmt.execution_options(populate_existing=True))
    ).scalar_one_or_none()
    if refund is None:
        raise NotFound(f"Refund {refund_id} not found", refund_id=refund_id)
    if user_id is not None and refund.user_id != user_id:
        raise Forbidden(f"Refund {refund_id} belongs to another user", refund_id=refund_id)
    return refund


async def _apply_status(
    session: AsyncSession, refund: Refund, patch: Patch, new_status: str
) -> Refund:
    current = refund.status
    if new_status not in REFUND_TRANSITIONS.get(current, set()):
        raise InvalidTransition("refund", refund.id, current, new_status)
    await session.execute(
        patch.set("status", new_status)
        .statement(Refund.id == refund.id)
        .execution_options(synchronize_session=False)
    )
    return await get_refund(session, refund.id)


async def update_refund_status(
    session: AsyncSession,
    refund_id: int,
    new_status: str,
    effects: SideEffects,
    actor: Optional[str] = None,
    admin_notes: Optional[str] = None,
) -> Refund:
    """Administrative refund decision or progress update."""
    try:
        refund = await get_refund(session, refund_id, lock=True)
        previous = refund.status
        patch = Patch(Refund).set_if_present("admin_notes", admin_notes)
        if new_status in (RefundStatus.APPROVED, RefundStatus.PROCESSING):
            patch.set("processed_by", actor).set("processed_at", datetime.now(timezone.utc))
        refund = await _apply_status(session, refund, patch, new_status)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info(
        "Refund %s status %s -> %s by %s", refund.refund_number, previous, new_status, actor
    )
    effects.publish(
        [
            RefundStatusChanged(
                refund_id=refund.id,
                refund_number=refund.refund_number,
                user_id=refund.user_id,
                status=refund.status,
            )
        ]
    )
    return refund


async def cancel_refund(
    session: AsyncSession,
    refund_id: int,
    user_id: str,
    effects: SideEffects,
) -> Refund:
    """Withdraw a still-pending refund; only its requester may do this."""
    try:
        refund = await get_refund(session, refund_id, user_id, lock=True)
        refund = await _apply_status(session, refund, Patch(Refund), RefundStatus.CANCELLED)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info("Refund %s cancelled by requester %s", refund.refund_number, user_id)
    effects.publish(
        [
            RefundStatusChanged(
                refund_id=refund.id,
                refund_number=refund.refund_number,
                user_id=refund.user_id,
                status=refund.status,
            )
        ]
    )
    return refund


async def restock_refund(
    session: AsyncSession,
    refund_id: int,
    effects: SideEffects,
    actor: Optional[str] = None,
) -> Tuple[Refund, List[StockChange]]:
    """Put the goods of an accepted return back into stock, once."""
    try:
        refund = await get_refund(session, refund_id, lock=True)
        if refund.type not in (RefundType.RETURN, RefundType.EXCHANGE):
            raise RefundError("not_returnable", refund_id=refund.id, type=refund.type)
        if refund.status not in RESTOCKABLE_STATUSES:
            raise RefundError("not_approved", refund_id=refund.id, status=refund.status)
        if refund.restocked_at is not None:
            raise RefundError("already_restocked", refund_id=refund.id)
        order_status = (
            await session.execute(select(Order.order_status).where(Order.id == refund.order_id))
        ).scalar_one()
        if order_status == OrderStatus.CANCELLED:
            # Cancellation already gave this stock back
            raise RefundError(
                "order_cancelled",
                f"Order {refund.order_id} was cancelled; its stock is already released",
                refund_id=refund.id,
                order_id=refund.order_id,
            )

        quantities: Dict[int, int] = {}
        for item in refund.items:
            quantities[item.order_item_id] = quantities.get(item.order_item_id, 0) + item.quantity
        order_items = (
            await session.execute(select(OrderItem).where(OrderItem.id.in_(list(quantities))))
        ).scalars().all()
        changes = await ledger.release(
            session,
            [
                (SkuKey(item.product_id, item.variant_id), quantities[item.id])
                for item in order_items
            ],
            reference=refund.refund_number,
            reason="return",
        )
        await session.execute(
            Patch(Refund)
            .set("restocked_at", datetime.now(timezone.utc))
            .statement(Refund.id == refund.id)
            .execution_options(synchronize_session=False)
        )
        refund = await get_refund(session, refund.id)
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info(
        "Refund %s restocked by %s: %d sku(s)", refund.refund_number, actor, len(changes)
    )
    effects.publish(stock_events(changes))
    return refund, changes
