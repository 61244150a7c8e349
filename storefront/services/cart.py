"""
Cart maintenance and the checkout-time cart snapshot.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.errors import EmptyCartError, InsufficientStock, NotFound, ProductUnavailable
from storefront.models import CartLine, Product, ProductVariant, StockUnit
from storefront.services.discounts import (
    DiscountResult,
    OrderScope,
    apply_coupon,
    count_redemptions,
    find_coupon,
)
from storefront.services.ledger import SkuKey
from storefront.visibility import is_visible

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PricedLine:
    cart_line_id: int
    sku: SkuKey
    quantity: int
    unit_price: int
    product_name: str
    sku_code: str
    category_id: Optional[int]
    variant_attributes: Optional[dict]
    available: int

    @property
    def line_total(self) -> int:
        return self.unit_price * self.quantity


def subtotal(lines: List[PricedLine]) -> int:
    return sum(line.line_total for line in lines)


def scope_of(lines: List[PricedLine]) -> OrderScope:
    return OrderScope(
        product_ids=frozenset(line.sku.product_id for line in lines),
        category_ids=frozenset(
            line.category_id for line in lines if line.category_id is not None
        ),
    )


async def snapshot(
    session: AsyncSession, user_id: str, check_stock: bool = True
) -> List[PricedLine]:
    """
    Resolve the user's cart into priced lines at current catalog prices.

    Raises EmptyCartError, ProductUnavailable for any inactive or deleted
    product/variant, and InsufficientStock when current availability is
    already short (unless *check_stock* is off, as for the cart view).
    Reads only; stock is reserved later by the ledger.
    """
    rows = (
        await session.execute(
            select(CartLine, Product, ProductVariant, StockUnit)
            .outerjoin(Product, Product.id == CartLine.product_id)
            .outerjoin(ProductVariant, ProductVariant.id == CartLine.variant_id)
            .outerjoin(StockUnit, StockUnit.sku_key == CartLine.sku_key)
            .where(CartLine.user_id == user_id)
            .order_by(CartLine.id)
        )
    ).all()

    if not rows:
        raise EmptyCartError(user_id)

    lines: List[PricedLine] = []
    for cart_line, product, variant, unit in rows:
        if not is_visible(product):
            raise ProductUnavailable(cart_line.product_id, cart_line.variant_id)
        if cart_line.variant_id is not None and (
            not is_visible(variant) or variant.product_id != product.id
        ):
            raise ProductUnavailable(cart_line.product_id, cart_line.variant_id)

        sku = SkuKey(cart_line.product_id, cart_line.variant_id)
        available = unit.quantity if unit else 0
        if check_stock and available < cart_line.quantity:
            raise InsufficientStock(sku, available=available, requested=cart_line.quantity)

        lines.append(
            PricedLine(
                cart_line_id=cart_line.id,
                sku=sku,
                quantity=cart_line.quantity,
                unit_price=product.price + (variant.price_adjustment if variant else 0),
                product_name=product.name,
                sku_code=(variant.sku if variant and variant.sku else product.sku),
                category_id=product.category_id,
                variant_attributes=dict(variant.attributes) if variant else None,
                available=available,
            )
        )
    return lines


async def add_item(
    session: AsyncSession,
    user_id: str,
    product_id: int,
    variant_id: Optional[int],
    quantity: int,
) -> CartLine:
    """Add to cart; an existing line for the same SKU accumulates quantity."""
    if quantity <= 0:
        raise ValueError("quantity must be positive")

    product = await session.get(Product, product_id)
    if not is_visible(product):
        raise ProductUnavailable(product_id, variant_id)
    if variant_id is not None:
        variant = await session.get(ProductVariant, variant_id)
        if not is_visible(variant) or variant.product_id != product_id:
            raise ProductUnavailable(product_id, variant_id)

    sku = SkuKey(product_id, variant_id)
    line = (
        await session.execute(
            select(CartLine).where(CartLine.user_id == user_id, CartLine.sku_key == str(sku))
        )
    ).scalar_one_or_none()

    if line:
        line.quantity += quantity
    else:
        line = CartLine(
            user_id=user_id,
            product_id=product_id,
            variant_id=variant_id,
            sku_key=str(sku),
            quantity=quantity,
        )
        session.add(line)
    await session.flush()
    logger.debug("Cart user=%s sku=%s quantity=%d", user_id, sku, line.quantity)
    return line


async def remove_item(session: AsyncSession, user_id: str, line_id: int) -> None:
    result = await session.execute(
        delete(CartLine).where(CartLine.id == line_id, CartLine.user_id == user_id)
    )
    if result.rowcount == 0:
        raise NotFound(f"Cart line {line_id} not found", cart_line_id=line_id)


async def clear(session: AsyncSession, user_id: str) -> int:
    result = await session.execute(delete(CartLine).where(CartLine.user_id == user_id))
    return result.rowcount


async def preview_coupon(session: AsyncSession, user_id: str, code: str) -> DiscountResult:
    """Price the current cart with *code* without persisting anything."""
    lines = await snapshot(session, user_id)
    coupon = await find_coupon(session, code)
    used = await count_redemptions(session, coupon.id, user_id)
    return apply_coupon(coupon, subtotal(lines), scope_of(lines), used)
