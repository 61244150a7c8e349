"""
Customer refund endpoints.

POST /refunds
GET  /refunds/{refund_id}
POST /refunds/{refund_id}/cancel
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.database import get_db
from storefront.deps import current_user_id, get_effects
from storefront.schemas import RefundOut, RefundRequest
from storefront.services import reversal
from storefront.services.effects import SideEffects

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/refunds", tags=["refunds"])


@router.post("", response_model=RefundOut, status_code=status.HTTP_201_CREATED)
async def request_refund(
    payload: RefundRequest,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    effects: SideEffects = Depends(get_effects),
) -> RefundOut:
    refund = await reversal.create_refund(db, user_id, payload, effects)
    return RefundOut.model_validate(refund)


@router.get("/{refund_id}", response_model=RefundOut)
async def get_refund(
    refund_id: int,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
) -> RefundOut:
    return RefundOut.model_validate(await reversal.get_refund(db, refund_id, user_id))


@router.post("/{refund_id}/cancel", response_model=RefundOut)
async def cancel_refund(
    refund_id: int,
    user_id: str = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    effects: SideEffects = Depends(get_effects),
) -> RefundOut:
    refund = await reversal.cancel_refund(db, refund_id, user_id, effects)
    return RefundOut.model_validate(refund)
