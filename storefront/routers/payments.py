"""
Payment gateway callback receiver.

POST /payments/callback
"""
from __future__ import annotations

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.database import get_db
from storefront.deps import get_effects, verify_payment_callback
from storefront.schemas import PaymentCallback, PaymentCallbackResult
from storefront.services.effects import SideEffects
from storefront.services.payment import settle_payment

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/callback", response_model=PaymentCallbackResult)
async def payment_callback(
    body: bytes = Depends(verify_payment_callback),
    db: AsyncSession = Depends(get_db),
    effects: SideEffects = Depends(get_effects),
) -> PaymentCallbackResult:
    """
    Apply the gateway's verdict for an order.
    Idempotent: re-delivering the same callback is safe.
    """
    try:
        payload = PaymentCallback(**json.loads(body))
    except (ValueError, ValidationError) as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid callback payload: {exc}",
        )

    order = await settle_payment(db, payload, effects)
    return PaymentCallbackResult(
        order_number=order.order_number,
        payment_status=order.payment_status,
        order_status=order.order_status,
    )
