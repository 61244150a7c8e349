"""
Customer order endpoints.

POST /orders                  checkout the cart
GET  /orders
GET  /orders/{order_id}
POST /orders/{order_id}/cancel
"""
from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.database import get_db
from storefront.deps import current_user_id, get_effects
from storefront.schemas import CheckoutRequest, OrderOut, PlacedOrderOut
from storefront.services import orders, reversal
from storefront.services.effects import SideEffects

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", response_model=PlacedOrderOut, status_code=status.HTTP_201_CREATED)
async def checkout(
    payload: CheckoutRequest,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    effects: SideEffects = Depends(get_effects),
) -> PlacedOrderOut:
    placed = await orders.create_order(db, user_id, payload, effects)
    return PlacedOrderOut(
        order=OrderOut.model_validate(placed.order), payment_url=placed.payment_url
    )


@router.get("", response_model=List[OrderOut])
async def list_orders(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
) -> List[OrderOut]:
    rows = await orders.list_orders(db, user_id, status_filter)
    return [OrderOut.model_validate(row) for row in rows]


@router.get("/{order_id}", response_model=OrderOut)
async def get_order(
    order_id: int,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
) -> OrderOut:
    return OrderOut.model_validate(await orders.get_order(db, order_id, user_id))


@router.post("/{order_id}/cancel", response_model=OrderOut)
async def cancel_order(
    order_id: int,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    effects: SideEffects = Depends(get_effects),
) -> OrderOut:
    order = await reversal.cancel_order(db, order_id, user_id, effects)
    return OrderOut.model_validate(order)
