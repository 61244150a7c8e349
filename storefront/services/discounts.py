"""
Coupon validation and discount arithmetic.

apply_coupon() is pure: it looks only at the coupon, the amount, the order
scope and the caller-supplied redemption count.  Loading coupons and
recording redemptions live in the helpers below it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import FrozenSet, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.errors import CouponError
from storefront.models import Coupon, CouponUsage, as_utc
from storefront.visibility import visible

logger = logging.getLogger(__name__)

PERCENTAGE = "percentage"
FIXED = "fixed"


@dataclass(frozen=True)
class OrderScope:
    product_ids: FrozenSet[int] = field(default_factory=frozenset)
    category_ids: FrozenSet[int] = field(default_factory=frozenset)


@dataclass(frozen=True)
class DiscountResult:
    coupon_id: int
    code: str
    discount_amount: int
    final_amount: int


def apply_coupon(
    coupon: Coupon,
    order_amount: int,
    scope: OrderScope,
    user_redemptions: int = 0,
    now: Optional[datetime] = None,
) -> DiscountResult:
    """Validate *coupon* against the order and compute the discount.  First failing rule wins."""
    now = now or datetime.now(timezone.utc)
    code = coupon.code

    if not coupon.is_active or coupon.deleted_at is not None:
        raise CouponError("inactive", code)
    if now < as_utc(coupon.start_date):
        raise CouponError("not_started", code)
    if now > as_utc(coupon.end_date):
        raise CouponError("expired", code)

    if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
        raise CouponError("usage_limit_reached", code)

    if user_redemptions >= coupon.user_limit:
        raise CouponError("user_limit_reached", code)

    if order_amount < coupon.min_order_amount:
        raise CouponError(
            "below_minimum", code,
            f"Order must be at least {coupon.min_order_amount} to use {code}",
        )

    if coupon.applicable_to == "category" and coupon.category_id not in scope.category_ids:
        raise CouponError("not_applicable", code)
    if coupon.applicable_to == "product" and coupon.product_id not in scope.product_ids:
        raise CouponError("not_applicable", code)

    if coupon.discount_type == PERCENTAGE:
        raw = Decimal(order_amount) * Decimal(coupon.discount_value) / Decimal(100)
        discount = int(raw.quantize(Decimal(1), rounding=ROUND_HALF_UP))
        if coupon.max_discount_amount is not None:
            discount = min(discount, coupon.max_discount_amount)
    elif coupon.discount_type == FIXED:
        discount = coupon.discount_value
    else:
        raise CouponError("unknown_type", code)

    discount = max(0, min(discount, order_amount))
    return DiscountResult(
        coupon_id=coupon.id,
        code=code,
        discount_amount=discount,
        final_amount=order_amount - discount,
    )


async def find_coupon(session: AsyncSession, code: str) -> Coupon:
    coupon = (
        await session.execute(
            select(Coupon).where(Coupon.code == code.strip().upper(), visible(Coupon))
        )
    ).scalar_one_or_none()
    if coupon is None:
        raise CouponError("not_found", code.strip().upper())
    return coupon


async def count_redemptions(session: AsyncSession, coupon_id: int, user_id: str) -> int:
    return (
        await session.execute(
            select(func.count())
            .select_from(CouponUsage)
            .where(CouponUsage.coupon_id == coupon_id, CouponUsage.user_id == user_id)
        )
    ).scalar_one()


async def record_redemption(
    session: AsyncSession,
    result: DiscountResult,
    user_id: str,
    order_id: int,
) -> None:
    """
    Count one redemption inside the order transaction.  The guarded increment
    fails the order if another checkout used up the coupon meanwhile.
    """
    bumped = await session.execute(
        update(Coupon)
        .where(
            Coupon.id == result.coupon_id,
            or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit),
        )
        .values(used_count=Coupon.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    if bumped.rowcount != 1:
        raise CouponError("usage_limit_reached", result.code)

    session.add(
        CouponUsage(
            coupon_id=result.coupon_id,
            user_id=user_id,
            order_id=order_id,
            discount_amount=result.discount_amount,
        )
    )
    logger.info(
        "Coupon %s redeemed by user=%s order=%d discount=%d",
        result.code, user_id, order_id, result.discount_amount,
    )
