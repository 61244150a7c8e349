"""
Shared pytest fixtures – file-backed SQLite per test (no real Postgres needed).

A file database rather than :memory: so side-effect handlers and concurrent
checkouts get their own connections, as they would against Postgres.
"""
from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from storefront.config import Settings
from storefront.models import Base, Coupon, OrderStatus, Product, ProductVariant
from storefront.schemas import CheckoutRequest, ShippingAddress
from storefront.services import cart, ledger, orders
from storefront.services.effects import SideEffects
from storefront.services.ledger import SkuKey


@pytest_asyncio.fixture(scope="function")
async def db_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_factory) -> AsyncGenerator[AsyncSession, None]:
    async with db_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        effects_max_retries=2,
        effects_retry_base_seconds=0.0,
        payment_callback_secret="callback-secret",
        admin_bearer_token="admin-token",
    )


class FakeGateway:
    def __init__(self, url: Optional[str] = "https://pay.example/checkout") -> None:
        self.url = url
        self.calls: List[tuple] = []

    async def create_payment_url(self, order_id: int, order_number: str, amount: int):
        self.calls.append((order_id, order_number, amount))
        return f"{self.url}/{order_number}" if self.url else None


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def effects(db_factory, test_settings, gateway) -> SideEffects:
    return SideEffects(db_factory, test_settings, payment=gateway)


class Catalog:
    """Seeds catalog rows and stock units through the ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def product(
        self,
        id: Optional[int] = None,
        name: str = "Widget",
        price: int = 100,
        stock: int = 10,
        category_id: Optional[int] = None,
        threshold: Optional[int] = 2,
        is_active: bool = True,
    ) -> Product:
        product = Product(
            id=id, name=name, sku=f"{name.upper()}-SKU", price=price,
            category_id=category_id, is_active=is_active,
        )
        self.session.add(product)
        await self.session.flush()
        await ledger.register(
            self.session, SkuKey(product.id), quantity=stock, low_stock_threshold=threshold
        )
        await self.session.commit()
        return product

    async def variant(
        self,
        product: Product,
        price_adjustment: int = 0,
        stock: int = 10,
        attributes: Optional[dict] = None,
        threshold: Optional[int] = 2,
    ) -> ProductVariant:
        variant = ProductVariant(
            product_id=product.id,
            sku=f"{product.sku}-V",
            attributes=attributes or {"size": "M"},
            price_adjustment=price_adjustment,
        )
        self.session.add(variant)
        await self.session.flush()
        await ledger.register(
            self.session, SkuKey(product.id, variant.id), quantity=stock,
            low_stock_threshold=threshold,
        )
        await self.session.commit()
        return variant

    async def coupon(self, code: str = "SALE10", **fields) -> Coupon:
        now = datetime.now(timezone.utc)
        values = dict(
            code=code,
            name=code,
            discount_type="percentage",
            discount_value=10,
            start_date=now - timedelta(days=1),
            end_date=now + timedelta(days=30),
        )
        values.update(fields)
        coupon = Coupon(**values)
        self.session.add(coupon)
        await self.session.commit()
        return coupon

    async def add_to_cart(
        self, user_id: str, product: Product, quantity: int = 1,
        variant: Optional[ProductVariant] = None,
    ) -> None:
        await cart.add_item(
            self.session, user_id, product.id, variant.id if variant else None, quantity
        )
        await self.session.commit()


@pytest.fixture
def catalog(db_session) -> Catalog:
    return Catalog(db_session)


def checkout_request(**fields) -> CheckoutRequest:
    values = dict(
        shipping_address=ShippingAddress(
            recipient_name="Ada Lovelace", phone="0123456789", address_line="1 Analytical St",
        ),
    )
    values.update(fields)
    return CheckoutRequest(**values)


@pytest.fixture
def checkout():
    return checkout_request


@pytest.fixture
def advance(db_session, effects):
    """Walk an order forward along the status machine up to *target*."""
    path = [
        OrderStatus.CONFIRMED, OrderStatus.PROCESSING,
        OrderStatus.SHIPPING, OrderStatus.DELIVERED,
    ]

    async def _advance(order_id: int, target: str = OrderStatus.DELIVERED):
        order = None
        for status in path[: path.index(target) + 1]:
            order = await orders.transition_order_status(
                db_session, order_id, status, effects, changed_by="admin"
            )
        return order

    return _advance
