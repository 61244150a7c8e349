"""
Integration tests for the HTTP surface using the HTTPX ASGI client.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import json

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from storefront.config import get_settings
from storefront.database import get_db
from storefront.deps import get_effects
from storefront.main import app

ADMIN = {"Authorization": "Bearer admin-token", "X-Admin-User": "ops"}
SECRET = "callback-secret"


def _user(user_id: str = "u1") -> dict:
    return {"X-User-Id": user_id}


def _sign(body: bytes, secret: str = SECRET) -> str:
    sig = hmac.new(secret.encode(), body, hashlib.sha256).digest()
    return base64.b64encode(sig).decode()


CHECKOUT = {
    "shipping_address": {
        "recipient_name": "Ada Lovelace",
        "phone": "0123456789",
        "address_line": "1 Analytical St",
    },
    "shipping_fee": 300,
}


@pytest_asyncio.fixture
async def client(db_factory, effects, monkeypatch):
    settings = get_settings()
    monkeypatch.setattr(settings, "admin_bearer_token", "admin-token")
    monkeypatch.setattr(settings, "payment_callback_secret", SECRET)

    async def override_get_db():
        async with db_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_effects] = lambda: effects
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_checkout_flow(client, catalog):
    product = await catalog.product(price=2500, stock=4)

    resp = await client.post(
        "/cart/items", json={"product_id": product.id, "quantity": 2}, headers=_user()
    )
    assert resp.status_code == 201
    assert resp.json()["subtotal"] == 5000

    resp = await client.post("/orders", json=CHECKOUT, headers=_user())
    assert resp.status_code == 201
    body = resp.json()
    order = body["order"]
    assert order["total_amount"] == 5300
    assert order["order_status"] == "pending"
    assert body["payment_url"] is None
    assert [i["quantity"] for i in order["items"]] == [2]

    resp = await client.get("/cart", headers=_user())
    assert resp.json() == {"lines": [], "subtotal": 0}

    resp = await client.get("/orders", headers=_user())
    assert [o["id"] for o in resp.json()] == [order["id"]]

    resp = await client.get(f"/orders/{order['id']}", headers=_user("u2"))
    assert resp.status_code == 403

    resp = await client.post(f"/orders/{order['id']}/cancel", headers=_user())
    assert resp.status_code == 200
    assert resp.json()["order_status"] == "cancelled"

    resp = await client.get("/admin/stock", headers=ADMIN)
    assert resp.json()[0]["quantity"] == 4


@pytest.mark.asyncio
async def test_missing_user_header(client):
    resp = await client.get("/cart")
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_checkout_errors_are_json(client, catalog):
    resp = await client.post("/orders", json=CHECKOUT, headers=_user())
    assert resp.status_code == 400
    assert resp.json()["details"]["cause"] == "empty_cart"

    product = await catalog.product(stock=1)
    await catalog.add_to_cart("u1", product, 1)
    await client.post("/admin/stock/adjust", json={"product_id": product.id, "new_quantity": 0}, headers=ADMIN)

    resp = await client.post("/orders", json=CHECKOUT, headers=_user())
    assert resp.status_code == 409
    body = resp.json()
    assert body["error"] == "order_creation_failed"
    assert body["details"]["cause"] == "insufficient_stock"
    assert (body["details"]["available"], body["details"]["requested"]) == (0, 1)


@pytest.mark.asyncio
async def test_coupon_preview(client, catalog):
    product = await catalog.product(price=100000)
    await catalog.add_to_cart("u1", product, 1)
    await catalog.coupon("SALE10", max_discount_amount=5000, min_order_amount=20000)

    resp = await client.post("/cart/coupon", json={"code": "SALE10"}, headers=_user())
    assert resp.status_code == 200
    assert resp.json() == {
        "code": "SALE10", "order_amount": 100000, "discount_amount": 5000, "final_amount": 95000,
    }

    resp = await client.post("/cart/coupon", json={"code": "NOPE"}, headers=_user())
    assert resp.status_code == 400
    assert resp.json()["details"]["reason"] == "not_found"


@pytest.mark.asyncio
async def test_admin_requires_token(client):
    resp = await client.get("/admin/health")
    assert resp.json() == {"status": "ok", "db": "ok"}

    resp = await client.get("/admin/stock")
    assert resp.status_code == 401
    resp = await client.get("/admin/stock", headers={"Authorization": "Bearer wrong"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_admin_stock_receive_and_alerts(client, catalog, effects):
    product = await catalog.product(stock=5, threshold=3)

    resp = await client.post(
        "/admin/stock/adjust",
        json={"product_id": product.id, "new_quantity": 1, "reason": "count"},
        headers=ADMIN,
    )
    assert resp.json() == {"sku_key": str(product.id), "previous": 5, "quantity": 1}
    await effects.drain()

    alerts = (await client.get("/admin/stock/alerts", headers=ADMIN)).json()
    assert [(a["sku_key"], a["current_quantity"]) for a in alerts] == [(str(product.id), 1)]

    resp = await client.post(
        "/admin/stock/receive", json={"product_id": product.id, "quantity": 10}, headers=ADMIN
    )
    assert resp.json()["quantity"] == 11
    await effects.drain()
    assert (await client.get("/admin/stock/alerts", headers=ADMIN)).json() == []

    resp = await client.post(
        "/admin/stock/receive", json={"product_id": 999, "quantity": 1}, headers=ADMIN
    )
    assert resp.status_code == 404

    resp = await client.post(
        "/admin/stock/receive",
        json={"product_id": 999, "quantity": 1, "register_missing": True},
        headers=ADMIN,
    )
    assert resp.status_code == 404
    assert resp.json()["details"] == {"product_id": 999}


@pytest.mark.asyncio
async def test_refund_flow_over_http(client, catalog):
    product = await catalog.product(price=1000, stock=10)
    await catalog.add_to_cart("u1", product, 3)
    order = (await client.post("/orders", json=CHECKOUT, headers=_user())).json()["order"]

    for status in ("confirmed", "processing", "shipping", "delivered"):
        resp = await client.patch(
            f"/admin/orders/{order['id']}/status", json={"status": status}, headers=ADMIN
        )
        assert resp.status_code == 200, resp.text

    resp = await client.patch(
        f"/admin/orders/{order['id']}/status", json={"status": "processing"}, headers=ADMIN
    )
    assert resp.status_code == 409
    assert resp.json()["error"] == "invalid_transition"
    assert resp.json()["details"]["current"] == "delivered"

    resp = await client.patch(
        f"/admin/orders/{order['id']}/status", json={"status": "cancelled"}, headers=ADMIN
    )
    assert resp.status_code == 409
    assert resp.json()["error"] == "not_cancellable"

    refund_payload = {
        "order_id": order["id"],
        "type": "return",
        "reason": "Wrong size",
        "items": [{"order_item_id": order["items"][0]["id"], "quantity": 2}],
    }
    resp = await client.post("/refunds", json=refund_payload, headers=_user())
    assert resp.status_code == 201
    refund = resp.json()
    assert refund["refund_amount"] == 2000

    resp = await client.post("/refunds", json=refund_payload, headers=_user())
    assert resp.status_code == 400
    assert resp.json()["details"]["reason"] == "refund_in_progress"

    resp = await client.patch(
        f"/admin/refunds/{refund['id']}/status", json={"status": "approved"}, headers=ADMIN
    )
    assert resp.json()["processed_by"] == "ops"

    resp = await client.post(f"/admin/refunds/{refund['id']}/restock", headers=ADMIN)
    assert resp.status_code == 200
    assert resp.json()["restocked_at"] is not None

    stock = (await client.get("/admin/stock", headers=ADMIN)).json()
    assert stock[0]["quantity"] == 9

    resp = await client.get(f"/refunds/{refund['id']}", headers=_user("u2"))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_payment_callback_signature(client, catalog):
    product = await catalog.product(price=1000)
    await catalog.add_to_cart("u1", product, 1)
    order = (
        await client.post("/orders", json={**CHECKOUT, "payment_method": "online"}, headers=_user())
    ).json()["order"]

    body = json.dumps(
        {"order_number": order["order_number"], "success": True,
         "transaction_id": "TX-1", "amount": order["total_amount"]}
    ).encode()

    resp = await client.post("/payments/callback", content=body)
    assert resp.status_code == 401

    resp = await client.post(
        "/payments/callback", content=body, headers={"X-Signature": _sign(body, "wrong")}
    )
    assert resp.status_code == 401

    resp = await client.post("/payments/callback", content=body, headers={"X-Signature": _sign(body)})
    assert resp.status_code == 200
    assert resp.json() == {
        "order_number": order["order_number"], "payment_status": "paid", "order_status": "confirmed",
    }

    resp = await client.post(f"/orders/{order['id']}/cancel", headers=_user())
    assert resp.status_code == 409
    assert resp.json()["error"] == "requires_manual_refund"
