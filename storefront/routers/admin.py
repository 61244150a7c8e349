"""
Admin / operational endpoints.

GET   /admin/health
GET   /admin/stock
GET   /admin/stock/alerts
POST  /admin/stock/receive
POST  /admin/stock/adjust
PATCH /admin/orders/{order_id}/status
PATCH /admin/refunds/{refund_id}/status
POST  /admin/refunds/{refund_id}/restock
"""
from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy import select, text
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.database import get_db
from storefront.deps import get_effects, require_admin
from storefront.models import StockAlert, StockUnit
from storefront.schemas import (
    HealthResponse,
    OrderOut,
    OrderStatusUpdate,
    RefundOut,
    RefundStatusUpdate,
    StockAdjustIn,
    StockAlertRow,
    StockChangeOut,
    StockReceiveIn,
    StockRow,
)
from storefront.services import ledger, orders, reversal
from storefront.services.effects import SideEffects, stock_events
from storefront.services.ledger import SkuKey, StockChange

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


def _change_out(change: StockChange) -> StockChangeOut:
    return StockChangeOut(sku_key=str(change.sku), previous=change.previous, quantity=change.quantity)


@router.get("/health", response_model=HealthResponse)
async def health(db: AsyncSession = Depends(get_db)) -> HealthResponse:
    try:
        await db.execute(text("SELECT 1"))
        db_status = "ok"
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        db_status = "error"
    return HealthResponse(status="ok", db=db_status)


# ── Stock ─────────────────────────────────────────────────────────────────────

@router.get("/stock", response_model=List[StockRow])
async def list_stock(
    _admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> List[StockRow]:
    rows = (
        await db.execute(select(StockUnit).order_by(StockUnit.product_id, StockUnit.variant_id))
    ).scalars().all()
    return [StockRow.model_validate(r) for r in rows]


@router.get("/stock/alerts", response_model=List[StockAlertRow])
async def list_alerts(
    _admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> List[StockAlertRow]:
    rows = (
        await db.execute(select(StockAlert).order_by(StockAlert.current_quantity, StockAlert.sku_key))
    ).scalars().all()
    return [StockAlertRow.model_validate(r) for r in rows]


@router.post("/stock/receive", response_model=StockChangeOut)
async def receive_stock(
    payload: StockReceiveIn,
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    effects: SideEffects = Depends(get_effects),
) -> StockChangeOut:
    change = await ledger.receive(
        db,
        SkuKey(payload.product_id, payload.variant_id),
        payload.quantity,
        reason=payload.reason,
        reference=f"admin:{admin}",
        register_missing=payload.register_missing,
    )
    await db.commit()
    effects.publish(stock_events([change]))
    return _change_out(change)


@router.post("/stock/adjust", response_model=StockChangeOut)
async def adjust_stock(
    payload: StockAdjustIn,
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    effects: SideEffects = Depends(get_effects),
) -> StockChangeOut:
    change = await ledger.adjust(
        db,
        SkuKey(payload.product_id, payload.variant_id),
        payload.new_quantity,
        reason=payload.reason or f"stock count by {admin}",
    )
    await db.commit()
    effects.publish(stock_events([change]))
    return _change_out(change)


# ── Orders / refunds ──────────────────────────────────────────────────────────

@router.patch("/orders/{order_id}/status", response_model=OrderOut)
async def update_order_status(
    order_id: int,
    payload: OrderStatusUpdate,
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    effects: SideEffects = Depends(get_effects),
) -> OrderOut:
    order = await orders.transition_order_status(
        db, order_id, payload.status, effects, changed_by=admin, notes=payload.notes
    )
    return OrderOut.model_validate(order)


@router.patch("/refunds/{refund_id}/status", response_model=RefundOut)
async def update_refund_status(
    refund_id: int,
    payload: RefundStatusUpdate,
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    effects: SideEffects = Depends(get_effects),
) -> RefundOut:
    refund = await reversal.update_refund_status(
        db, refund_id, payload.status, effects, actor=admin, admin_notes=payload.admin_notes
    )
    return RefundOut.model_validate(refund)


@router.post("/refunds/{refund_id}/restock", response_model=RefundOut)
async def restock_refund(
    refund_id: int,
    admin: str = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    effects: SideEffects = Depends(get_effects),
) -> RefundOut:
    refund, _changes = await reversal.restock_refund(db, refund_id, effects, actor=admin)
    return RefundOut.model_validate(refund)
