"""
Cart endpoints.

GET    /cart
POST   /cart/items
DELETE /cart/items/{line_id}
POST   /cart/coupon          (preview only, nothing is redeemed)
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.database import get_db
from storefront.deps import current_user_id
from storefront.errors import EmptyCartError
from storefront.schemas import CartItemIn, CartLineOut, CartView, CouponPreviewIn, CouponPreviewOut
from storefront.services import cart

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cart", tags=["cart"])


async def _view(db: AsyncSession, user_id: str) -> CartView:
    try:
        lines = await cart.snapshot(db, user_id, check_stock=False)
    except EmptyCartError:
        return CartView(lines=[], subtotal=0)
    return CartView(
        lines=[
            CartLineOut(
                cart_line_id=line.cart_line_id,
                product_id=line.sku.product_id,
                variant_id=line.sku.variant_id,
                product_name=line.product_name,
                quantity=line.quantity,
                unit_price=line.unit_price,
                line_total=line.line_total,
                available=line.available,
            )
            for line in lines
        ],
        subtotal=cart.subtotal(lines),
    )


@router.get("", response_model=CartView)
async def get_cart(
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
) -> CartView:
    return await _view(db, user_id)


@router.post("/items", response_model=CartView, status_code=status.HTTP_201_CREATED)
async def add_item(
    payload: CartItemIn,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
) -> CartView:
    await cart.add_item(db, user_id, payload.product_id, payload.variant_id, payload.quantity)
    await db.commit()
    return await _view(db, user_id)


@router.delete("/items/{line_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_item(
    line_id: int,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
) -> None:
    await cart.remove_item(db, user_id, line_id)
    await db.commit()


@router.post("/coupon", response_model=CouponPreviewOut)
async def preview_coupon(
    payload: CouponPreviewIn,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
) -> CouponPreviewOut:
    result = await cart.preview_coupon(db, user_id, payload.code)
    return CouponPreviewOut(
        code=result.code,
        order_amount=result.final_amount + result.discount_amount,
        discount_amount=result.discount_amount,
        final_amount=result.final_amount,
    )
