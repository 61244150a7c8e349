"""
Payment settlement from the gateway callback.
"""
from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.errors import NotFound, PaymentError
from storefront.models import Order, OrderStatus, PaymentStatus, PaymentTransaction
from storefront.schemas import PaymentCallback
from storefront.services.effects import PaymentSettled, SideEffects
from storefront.services.orders import record_status

logger = logging.getLogger(__name__)


async def settle_payment(
    session: AsyncSession,
    callback: PaymentCallback,
    effects: SideEffects,
) -> Order:
    """
    Apply a verified gateway callback to its order.

    Replays are harmless: an order that is already paid, or a transaction id
    seen before, leaves everything as it is.
    """
    try:
        order = (
            await session.execute(
                select(Order)
                .where(Order.order_number == callback.order_number)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if order is None:
            raise NotFound(
                f"Order {callback.order_number} not found", order_number=callback.order_number
            )

        if order.payment_status == PaymentStatus.PAID:
            logger.info("Payment callback for already-paid order %s ignored", order.order_number)
            await session.commit()
            return order

        seen = (
            await session.execute(
                select(PaymentTransaction.id).where(
                    PaymentTransaction.transaction_id == callback.transaction_id
                )
            )
        ).scalar_one_or_none()
        if seen is not None:
            logger.info("Duplicate payment transaction %s ignored", callback.transaction_id)
            await session.commit()
            return order

        if callback.amount is not None and callback.amount != order.total_amount:
            raise PaymentError(
                "amount_mismatch",
                order_number=order.order_number,
                expected=order.total_amount,
                received=callback.amount,
            )

        if callback.success:
            if order.order_status == OrderStatus.CANCELLED:
                raise PaymentError("order_cancelled", order_number=order.order_number)
            session.add(
                PaymentTransaction(
                    order_id=order.id,
                    transaction_id=callback.transaction_id,
                    gateway=callback.gateway,
                    amount=order.total_amount,
                    status="success",
                )
            )
            order.payment_status = PaymentStatus.PAID
            if order.order_status == OrderStatus.PENDING:
                order.order_status = OrderStatus.CONFIRMED
            record_status(
                session, order, order.order_status,
                f"Payment {callback.transaction_id} received via {callback.gateway}",
                "payment_gateway",
            )
        else:
            session.add(
                PaymentTransaction(
                    order_id=order.id,
                    transaction_id=callback.transaction_id,
                    gateway=callback.gateway,
                    amount=callback.amount if callback.amount is not None else order.total_amount,
                    status="failed",
                )
            )
            if order.payment_status == PaymentStatus.PENDING:
                order.payment_status = PaymentStatus.FAILED
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    logger.info(
        "Payment callback applied: order=%s success=%s txn=%s payment_status=%s",
        order.order_number, callback.success, callback.transaction_id, order.payment_status,
    )
    effects.publish(
        [
            PaymentSettled(
                order_id=order.id,
                order_number=order.order_number,
                user_id=order.user_id,
                success=callback.success,
            )
        ]
    )
    return order
