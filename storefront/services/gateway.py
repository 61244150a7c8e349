"""
Thin payment-gateway client (no SDK dependency).

The gateway signs and returns a redirect URL for an order; the result of the
payment comes back later through POST /payments/callback.
"""
from __future__ import annotations

import logging
from typing import Optional

import httpx

from storefront.config import Settings

logger = logging.getLogger(__name__)

_TIMEOUT = httpx.Timeout(15.0)


class PaymentGateway:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    def _headers(self) -> dict:
        if self._settings.payment_gateway_key:
            return {"Authorization": f"Bearer {self._settings.payment_gateway_key}"}
        return {}

    async def create_payment_url(
        self, order_id: int, order_number: str, amount: int
    ) -> Optional[str]:
        if not self._settings.payment_enabled:
            logger.debug("Payment gateway not configured – no URL for %s", order_number)
            return None

        payload = {
            "order_id": order_id,
            "order_number": order_number,
            "amount": amount,
            "return_url": self._settings.payment_return_url,
        }
        async with httpx.AsyncClient(timeout=_TIMEOUT) as client:
            resp = await client.post(
                self._settings.payment_gateway_url.rstrip("/") + "/payments",
                json=payload,
                headers=self._headers(),
            )
            if not resp.is_success:
                logger.error(
                    "Payment gateway error order=%s status=%d body=%s",
                    order_number, resp.status_code, resp.text[:300],
                )
                return None
            return resp.json().get("payment_url")
