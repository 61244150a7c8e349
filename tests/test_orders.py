"""
Order aggregate builder tests: totals, atomicity, concurrency, side effects,
status transitions and payment settlement.
"""
from __future__ import annotations

import asyncio
import re
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from storefront.config import get_settings
from storefront.errors import (
    CouponError,
    EmptyCartError,
    InsufficientStock,
    InvalidTransition,
    OrderCreationError,
    PaymentError,
    ProductUnavailable,
)
from storefront.models import (
    CartLine,
    Coupon,
    CouponUsage,
    Notification,
    Order,
    OrderStatus,
    OrderStatusHistory,
    PaymentStatus,
    PaymentTransaction,
    Shipment,
    StockAlert,
)
from storefront.schemas import PaymentCallback
from storefront.services import ledger, orders
from storefront.services.effects import OrderCreated, SideEffects, StockChanged
from storefront.services.ledger import SkuKey
from storefront.services.payment import settle_payment


async def _count(session, model) -> int:
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()


def test_order_number_format():
    number = orders.generate_order_number("user-abc_123456789")
    assert re.fullmatch(r"ORD-\d{17}-USERABC1-[0-9A-F]{12}", number)
    assert number != orders.generate_order_number("user-abc_123456789")


@pytest.mark.asyncio
async def test_create_order_totals_and_snapshot(db_session, catalog, effects, checkout):
    product = await catalog.product(name="Lamp", price=1200, stock=5)
    variant = await catalog.variant(product, price_adjustment=300, stock=5)
    await catalog.add_to_cart("u1", product, 2)
    await catalog.add_to_cart("u1", product, 1, variant=variant)

    placed = await orders.create_order(db_session, "u1", checkout(shipping_fee=500), effects)
    order = placed.order

    assert order.subtotal == 2 * 1200 + 1500
    assert order.discount_amount == 0
    assert order.tax_amount == 0
    assert order.total_amount == order.subtotal + 500
    assert order.order_status == OrderStatus.PENDING
    assert order.payment_status == PaymentStatus.PENDING
    assert placed.payment_url is None

    assert {(i.sku_key, i.quantity, i.unit_price) for i in order.items} == {
        (str(SkuKey(product.id)), 2, 1200),
        (str(SkuKey(product.id, variant.id)), 1, 1500),
    }
    assert all(i.product_name == "Lamp" for i in order.items)

    assert await ledger.get_quantity(db_session, SkuKey(product.id)) == 3
    assert await ledger.get_quantity(db_session, SkuKey(product.id, variant.id)) == 4
    assert await _count(db_session, CartLine) == 0

    history = (await db_session.execute(select(OrderStatusHistory))).scalars().all()
    assert [h.status for h in history] == [OrderStatus.PENDING]


@pytest.mark.asyncio
async def test_item_snapshot_survives_price_change(db_session, catalog, effects, checkout):
    product = await catalog.product(price=1000)
    await catalog.add_to_cart("u1", product, 1)
    placed = await orders.create_order(db_session, "u1", checkout(), effects)

    product.price = 9999
    product.name = "Renamed"
    await db_session.commit()

    order = await orders.get_order(db_session, placed.order.id, "u1")
    assert order.items[0].unit_price == 1000
    assert order.items[0].product_name == "Widget"


@pytest.mark.asyncio
async def test_empty_cart_fails(db_session, effects, checkout):
    with pytest.raises(OrderCreationError) as exc_info:
        await orders.create_order(db_session, "u1", checkout(), effects)
    assert isinstance(exc_info.value.cause, EmptyCartError)
    assert exc_info.value.status_code == 400


@pytest.mark.asyncio
async def test_unavailable_product_fails(db_session, catalog, effects, checkout):
    product = await catalog.product()
    await catalog.add_to_cart("u1", product, 1)
    product.is_active = False
    await db_session.commit()

    with pytest.raises(OrderCreationError) as exc_info:
        await orders.create_order(db_session, "u1", checkout(), effects)
    assert isinstance(exc_info.value.cause, ProductUnavailable)
    assert exc_info.value.details["cause"] == "product_unavailable"


@pytest.mark.asyncio
async def test_failure_leaves_no_trace(db_session, catalog, effects, checkout):
    """Coupon rejected after pricing: no order, no reservation, cart intact."""
    product = await catalog.product(price=1000, stock=5)
    sku = SkuKey(product.id)
    await catalog.add_to_cart("u1", product, 2)
    await catalog.coupon("BIG", min_order_amount=50000)

    with pytest.raises(OrderCreationError) as exc_info:
        await orders.create_order(db_session, "u1", checkout(coupon_code="BIG"), effects)
    assert isinstance(exc_info.value.cause, CouponError)

    assert await _count(db_session, Order) == 0
    assert await _count(db_session, CartLine) == 1
    assert await ledger.get_quantity(db_session, sku) == 5
    assert effects._queue.empty()


@pytest.mark.asyncio
async def test_coupon_applied_and_recorded(db_session, catalog, effects, checkout):
    product = await catalog.product(price=50000, stock=5)
    await catalog.add_to_cart("u1", product, 2)
    coupon = await catalog.coupon(
        "SALE10", max_discount_amount=5000, min_order_amount=20000, usage_limit=10
    )

    placed = await orders.create_order(
        db_session, "u1", checkout(coupon_code="sale10", shipping_fee=1000), effects
    )
    order = placed.order

    assert order.subtotal == 100000
    assert order.discount_amount == 5000
    assert order.total_amount == 100000 + 1000 - 5000
    assert order.coupon_id == coupon.id

    refreshed = (
        await db_session.execute(
            select(Coupon).where(Coupon.id == coupon.id).execution_options(populate_existing=True)
        )
    ).scalar_one()
    assert refreshed.used_count == 1
    usage = (await db_session.execute(select(CouponUsage))).scalar_one()
    assert (usage.order_id, usage.discount_amount) == (order.id, 5000)


@pytest.mark.asyncio
async def test_coupon_user_limit(db_session, catalog, effects, checkout):
    product = await catalog.product(price=1000, stock=5)
    await catalog.coupon("ONCE", user_limit=1)

    await catalog.add_to_cart("u1", product, 1)
    await orders.create_order(db_session, "u1", checkout(coupon_code="ONCE"), effects)

    await catalog.add_to_cart("u1", product, 1)
    with pytest.raises(OrderCreationError) as exc_info:
        await orders.create_order(db_session, "u1", checkout(coupon_code="ONCE"), effects)
    assert exc_info.value.cause.reason == "user_limit_reached"


@pytest.mark.asyncio
async def test_tax_rounds_half_up(db_session, catalog, effects, checkout, monkeypatch):
    monkeypatch.setattr(get_settings(), "tax_rate_percent", 10)
    product = await catalog.product(price=1005, stock=5)
    await catalog.add_to_cart("u1", product, 1)

    placed = await orders.create_order(db_session, "u1", checkout(shipping_fee=100), effects)
    assert placed.order.tax_amount == 101
    assert placed.order.total_amount == 1005 + 100 + 101


@pytest.mark.asyncio
async def test_two_checkouts_for_last_unit(db_factory, catalog, effects, checkout):
    product = await catalog.product(id=42, price=7000, stock=1)
    await catalog.add_to_cart("alice", product, 1)
    await catalog.add_to_cart("bob", product, 1)

    async def attempt(user_id):
        async with db_factory() as session:
            return await orders.create_order(session, user_id, checkout(shipping_fee=300), effects)

    results = await asyncio.gather(attempt("alice"), attempt("bob"), return_exceptions=True)

    placed = [r for r in results if isinstance(r, orders.PlacedOrder)]
    failed = [r for r in results if isinstance(r, OrderCreationError)]
    assert len(placed) == 1 and len(failed) == 1
    assert placed[0].order.total_amount == 7000 + 300

    cause = failed[0].cause
    assert isinstance(cause, InsufficientStock)
    assert cause.sku_key == SkuKey(42)
    assert (cause.available, cause.requested) == (0, 1)

    async with db_factory() as session:
        assert await ledger.get_quantity(session, SkuKey(42)) == 0
        assert await _count(session, Order) == 1


@pytest.mark.asyncio
async def test_side_effects_run_after_commit(db_session, catalog, effects, checkout):
    product = await catalog.product(price=1000, stock=3, threshold=2)
    await catalog.add_to_cart("u1", product, 2)

    placed = await orders.create_order(
        db_session, "u1", checkout(shipping_provider="ghn", shipping_fee=200), effects
    )
    queued = list(envelope.event for envelope in effects._queue._queue)
    assert isinstance(queued[0], OrderCreated)
    assert isinstance(queued[1], StockChanged) and queued[1].quantity == 1

    assert await effects.drain() == 2

    shipment = (await db_session.execute(select(Shipment))).scalar_one()
    assert (shipment.order_id, shipment.fee, shipment.provider) == (placed.order.id, 200, "ghn")
    notes = (await db_session.execute(select(Notification))).scalars().all()
    assert [n.type for n in notes] == ["order_created"]
    alert = (await db_session.execute(select(StockAlert))).scalar_one()
    assert (alert.sku_key, alert.current_quantity) == (str(SkuKey(product.id)), 1)


@pytest.mark.asyncio
async def test_failing_side_effect_does_not_fail_order(
    db_session, db_factory, catalog, test_settings, checkout
):
    notifier = AsyncMock()
    notifier.notify.side_effect = RuntimeError("notification store down")
    notifier.send_email.side_effect = RuntimeError("mail down")
    effects = SideEffects(db_factory, test_settings, notifier=notifier, payment=AsyncMock())

    product = await catalog.product(stock=3)
    await catalog.add_to_cart("u1", product, 1)
    placed = await orders.create_order(db_session, "u1", checkout(), effects)

    await effects.drain()

    assert notifier.notify.await_count == test_settings.effects_max_retries
    assert await _count(db_session, Order) == 1
    assert await _count(db_session, Shipment) == 1
    assert placed.order.order_status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_online_payment_gets_redirect_url(db_session, catalog, effects, gateway, checkout):
    product = await catalog.product(price=1000)
    await catalog.add_to_cart("u1", product, 1)

    placed = await orders.create_order(db_session, "u1", checkout(payment_method="online"), effects)

    assert placed.payment_url == f"https://pay.example/checkout/{placed.order.order_number}"
    assert gateway.calls == [(placed.order.id, placed.order.order_number, 1000)]


@pytest.mark.asyncio
async def test_payment_gateway_failure_keeps_order(db_session, db_factory, catalog, test_settings, checkout):
    payment = AsyncMock()
    payment.create_payment_url.side_effect = RuntimeError("gateway timeout")
    effects = SideEffects(db_factory, test_settings, payment=payment)

    product = await catalog.product()
    await catalog.add_to_cart("u1", product, 1)
    placed = await orders.create_order(db_session, "u1", checkout(payment_method="online"), effects)

    assert placed.payment_url is None
    assert await _count(db_session, Order) == 1


# ── Status transitions ────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_transitions_follow_state_machine(db_session, catalog, effects, checkout, advance):
    product = await catalog.product()
    await catalog.add_to_cart("u1", product, 1)
    placed = await orders.create_order(db_session, "u1", checkout(), effects)

    order = await advance(placed.order.id, OrderStatus.DELIVERED)
    assert order.order_status == OrderStatus.DELIVERED

    with pytest.raises(InvalidTransition):
        await orders.transition_order_status(db_session, order.id, OrderStatus.SHIPPING, effects)

    history = (
        await db_session.execute(
            select(OrderStatusHistory.status).order_by(OrderStatusHistory.id)
        )
    ).scalars().all()
    assert history == ["pending", "confirmed", "processing", "shipping", "delivered"]


@pytest.mark.asyncio
async def test_skipping_states_is_rejected(db_session, catalog, effects, checkout):
    product = await catalog.product()
    await catalog.add_to_cart("u1", product, 1)
    placed = await orders.create_order(db_session, "u1", checkout(), effects)
    order_id = placed.order.id

    with pytest.raises(InvalidTransition) as exc_info:
        await orders.transition_order_status(db_session, order_id, OrderStatus.DELIVERED, effects)
    assert exc_info.value.details == {
        "entity": "order", "entity_id": order_id, "current": "pending", "requested": "delivered",
    }

    order = await orders.get_order(db_session, order_id)
    assert order.order_status == OrderStatus.PENDING


@pytest.mark.asyncio
async def test_admin_cancel_releases_stock(db_session, catalog, effects, checkout, advance):
    product = await catalog.product(stock=5)
    await catalog.add_to_cart("u1", product, 2)
    placed = await orders.create_order(db_session, "u1", checkout(), effects)
    await advance(placed.order.id, OrderStatus.SHIPPING)

    order = await orders.transition_order_status(
        db_session, placed.order.id, OrderStatus.CANCELLED, effects, changed_by="admin"
    )
    assert order.order_status == OrderStatus.CANCELLED
    assert await ledger.get_quantity(db_session, SkuKey(product.id)) == 5


# ── Payment callback ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_successful_payment_confirms_order(db_session, catalog, effects, checkout):
    product = await catalog.product(price=1000)
    await catalog.add_to_cart("u1", product, 1)
    placed = await orders.create_order(db_session, "u1", checkout(payment_method="online"), effects)
    number = placed.order.order_number

    callback = PaymentCallback(order_number=number, success=True, transaction_id="TX-1", amount=1000)
    order = await settle_payment(db_session, callback, effects)
    assert (order.payment_status, order.order_status) == ("paid", "confirmed")

    # Replay is a no-op
    again = await settle_payment(db_session, callback, effects)
    assert again.payment_status == "paid"
    assert await _count(db_session, PaymentTransaction) == 1


@pytest.mark.asyncio
async def test_payment_amount_mismatch(db_session, catalog, effects, checkout):
    product = await catalog.product(price=1000)
    await catalog.add_to_cart("u1", product, 1)
    placed = await orders.create_order(db_session, "u1", checkout(payment_method="online"), effects)
    order_id = placed.order.id

    callback = PaymentCallback(
        order_number=placed.order.order_number, success=True, transaction_id="TX-2", amount=1
    )
    with pytest.raises(PaymentError) as exc_info:
        await settle_payment(db_session, callback, effects)
    assert exc_info.value.reason == "amount_mismatch"

    order = await orders.get_order(db_session, order_id, lock=True)
    assert order.payment_status == "pending"


@pytest.mark.asyncio
async def test_failed_payment_marks_failed(db_session, catalog, effects, checkout):
    product = await catalog.product(price=1000)
    await catalog.add_to_cart("u1", product, 1)
    placed = await orders.create_order(db_session, "u1", checkout(payment_method="online"), effects)

    callback = PaymentCallback(
        order_number=placed.order.order_number, success=False, transaction_id="TX-3"
    )
    order = await settle_payment(db_session, callback, effects)
    assert (order.payment_status, order.order_status) == ("failed", "pending")
