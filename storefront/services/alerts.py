"""
Low-stock alerts: keeps stock_alerts in step with the latest ledger quantity.
"""
from __future__ import annotations

import logging

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.models import StockAlert

logger = logging.getLogger(__name__)


class StockAlerts:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def check_and_alert(self, sku_key: str, new_quantity: int, threshold: int) -> bool:
        """
        Open (or refresh) an alert when quantity is at or below threshold,
        clear it otherwise.  Returns True when an alert is open afterwards.
        """
        async with self._session_factory() as session:
            existing = (
                await session.execute(
                    select(StockAlert).where(StockAlert.sku_key == sku_key)
                )
            ).scalar_one_or_none()

            if new_quantity <= threshold:
                if existing:
                    existing.current_quantity = new_quantity
                    existing.threshold = threshold
                    existing.is_notified = False
                else:
                    session.add(
                        StockAlert(
                            sku_key=sku_key,
                            threshold=threshold,
                            current_quantity=new_quantity,
                        )
                    )
                await session.commit()
                logger.warning(
                    "Low stock: sku=%s quantity=%d threshold=%d",
                    sku_key, new_quantity, threshold,
                )
                return True

            if existing:
                await session.execute(delete(StockAlert).where(StockAlert.id == existing.id))
                await session.commit()
                logger.info("Low-stock alert cleared: sku=%s quantity=%d", sku_key, new_quantity)
            return False
