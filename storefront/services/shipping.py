"""
Shipping placeholder records.  Carrier integration happens elsewhere; the
record created here is what the carrier sync later fills in.
"""
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.models import Shipment

logger = logging.getLogger(__name__)


class ShippingRecorder:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def create_record(self, order_id: int, fee: int, provider: Optional[str]) -> int:
        async with self._session_factory() as session:
            existing = (
                await session.execute(select(Shipment).where(Shipment.order_id == order_id))
            ).scalar_one_or_none()
            if existing:
                return existing.id

            shipment = Shipment(order_id=order_id, fee=fee, provider=provider)
            session.add(shipment)
            await session.commit()

        logger.info(
            "Shipping record %d created for order=%d provider=%s fee=%d",
            shipment.id, order_id, provider, fee,
        )
        return shipment.id
