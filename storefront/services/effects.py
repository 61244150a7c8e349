"""
Post-commit side effects.

Architecture:
  - Services build a list of events while their transaction runs and hand it
    over with publish() only after commit.
  - publish() never blocks: events go onto an asyncio.Queue.
  - A background worker coroutine drains the queue; each handler is retried a
    few times, then logged and dropped.  Nothing here can undo a commit.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.config import Settings, get_settings
from storefront.services.alerts import StockAlerts
from storefront.services.gateway import PaymentGateway
from storefront.services.notifications import Notifier
from storefront.services.shipping import ShippingRecorder

logger = logging.getLogger(__name__)


# ── Event definitions ────────────────────────────────────────────────────────

@dataclass(frozen=True)
class OrderCreated:
    order_id: int
    order_number: str
    user_id: str
    total_amount: int
    shipping_fee: int
    shipping_provider: Optional[str]
    payment_method: str


@dataclass(frozen=True)
class OrderCancelled:
    order_id: int
    order_number: str
    user_id: str


@dataclass(frozen=True)
class StockChanged:
    sku_key: str
    quantity: int
    threshold: int


@dataclass(frozen=True)
class PaymentSettled:
    order_id: int
    order_number: str
    user_id: str
    success: bool


@dataclass(frozen=True)
class RefundRequested:
    refund_id: int
    refund_number: str
    order_id: int
    user_id: str
    refund_amount: int


@dataclass(frozen=True)
class RefundStatusChanged:
    refund_id: int
    refund_number: str
    user_id: str
    status: str


Event = Union[
    OrderCreated, OrderCancelled, StockChanged,
    PaymentSettled, RefundRequested, RefundStatusChanged,
]


def stock_events(changes) -> list:
    return [
        StockChanged(sku_key=str(c.sku), quantity=c.quantity, threshold=c.threshold)
        for c in changes
    ]


@dataclass
class _Envelope:
    event: Event
    enqueued_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# ── Dispatcher ───────────────────────────────────────────────────────────────

class SideEffects:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
        *,
        notifier: Optional[Notifier] = None,
        shipping: Optional[ShippingRecorder] = None,
        alerts: Optional[StockAlerts] = None,
        payment: Optional[PaymentGateway] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.notifier = notifier or Notifier(session_factory, self.settings)
        self.shipping = shipping or ShippingRecorder(session_factory)
        self.alerts = alerts or StockAlerts(session_factory)
        self.payment = payment or PaymentGateway(self.settings)
        self._queue: asyncio.Queue[_Envelope] = asyncio.Queue(
            maxsize=self.settings.effects_queue_size
        )

    # ── Producer side ────────────────────────────────────────────────────────

    def publish(self, events: Iterable[Event]) -> None:
        """Non-blocking enqueue.  Drops the event and logs if the queue is full."""
        for event in events:
            try:
                self._queue.put_nowait(_Envelope(event))
            except asyncio.QueueFull:
                logger.error("Side-effect queue full – dropping %r", event)

    async def request_payment_url(self, order) -> Optional[str]:
        """Ask the gateway for a redirect URL; None when it is off or fails."""
        try:
            return await self.payment.create_payment_url(
                order.id, order.order_number, order.total_amount
            )
        except Exception as exc:
            logger.error(
                "Payment URL request failed for order=%s: %s", order.order_number, exc
            )
            return None

    # ── Consumer side ────────────────────────────────────────────────────────

    async def dispatch(self, event: Event) -> None:
        for name, call in self._handlers(event):
            await self._run(name, event, call)

    async def drain(self) -> int:
        """Handle everything queued right now.  Returns the number of events handled."""
        handled = 0
        while not self._queue.empty():
            envelope = self._queue.get_nowait()
            try:
                await self.dispatch(envelope.event)
                handled += 1
            finally:
                self._queue.task_done()
        return handled

    async def join(self) -> None:
        await self._queue.join()

    async def worker(self) -> None:
        """
        Runs as a long-lived background task.
        Drains the side-effect queue and handles each event.
        """
        logger.info("Side-effect worker started")
        while True:
            envelope = await self._queue.get()
            try:
                await self.dispatch(envelope.event)
            except Exception as exc:
                logger.exception("Unexpected error in side-effect worker: %s", exc)
            finally:
                self._queue.task_done()

    async def _run(self, name: str, event: Event, call) -> None:
        max_retries = self.settings.effects_max_retries
        base_delay = self.settings.effects_retry_base_seconds

        for attempt in range(1, max_retries + 1):
            try:
                await call()
                return
            except Exception as exc:
                logger.warning(
                    "Side effect %s failed for %s attempt=%d/%d: %s",
                    name, type(event).__name__, attempt, max_retries, exc,
                )
            if attempt < max_retries:
                await asyncio.sleep(base_delay * (2 ** (attempt - 1)))

        logger.error("Side effect %s gave up after %d attempts: %r", name, max_retries, event)

    def _handlers(self, event: Event):
        if isinstance(event, OrderCreated):
            return [
                ("shipping", lambda: self.shipping.create_record(
                    event.order_id, event.shipping_fee, event.shipping_provider)),
                ("notify", lambda: self.notifier.notify(
                    event.user_id, "order_created", "Order placed",
                    f"Your order {event.order_number} has been placed.",
                    f"/orders/{event.order_id}")),
                ("email", lambda: self.notifier.send_email(
                    event.user_id, "order_confirmation",
                    {"order_number": event.order_number, "total_amount": event.total_amount})),
            ]
        if isinstance(event, OrderCancelled):
            return [
                ("notify", lambda: self.notifier.notify(
                    event.user_id, "order_cancelled", "Order cancelled",
                    f"Your order {event.order_number} has been cancelled.",
                    f"/orders/{event.order_id}")),
            ]
        if isinstance(event, StockChanged):
            return [
                ("low_stock", lambda: self.alerts.check_and_alert(
                    event.sku_key, event.quantity, event.threshold)),
            ]
        if isinstance(event, PaymentSettled):
            if event.success:
                title, body = "Payment received", f"Payment for order {event.order_number} succeeded."
            else:
                title, body = "Payment failed", f"Payment for order {event.order_number} failed."
            return [
                ("notify", lambda: self.notifier.notify(
                    event.user_id,
                    "payment_success" if event.success else "payment_failed",
                    title, body, f"/orders/{event.order_id}")),
            ]
        if isinstance(event, RefundRequested):
            return [
                ("notify", lambda: self.notifier.notify(
                    event.user_id, "refund_requested", "Refund requested",
                    f"Refund {event.refund_number} for {event.refund_amount} was received.",
                    f"/refunds/{event.refund_id}")),
            ]
        if isinstance(event, RefundStatusChanged):
            return [
                ("notify", lambda: self.notifier.notify(
                    event.user_id, "refund_status", "Refund updated",
                    f"Refund {event.refund_number} is now {event.status}.",
                    f"/refunds/{event.refund_id}")),
            ]
        logger.warning("No handlers for event %r", event)
        return []
