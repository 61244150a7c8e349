"""
Stock ledger: the only writer of stock_units.quantity.

Every mutation runs inside the caller's transaction under a row lock taken
with SELECT ... FOR UPDATE.  Multi-unit calls lock rows in ascending SKU-key
order so two checkouts touching overlapping SKUs cannot deadlock, and
reserve() verifies the whole batch before writing anything.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, NamedTuple, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from storefront.config import get_settings
from storefront.errors import InsufficientStock, NotFound
from storefront.models import Product, ProductVariant, StockHistory, StockUnit

logger = logging.getLogger(__name__)


class SkuKey(NamedTuple):
    product_id: int
    variant_id: Optional[int] = None

    @property
    def sort_key(self) -> Tuple[int, int]:
        return (self.product_id, -1 if self.variant_id is None else self.variant_id)

    def __str__(self) -> str:
        if self.variant_id is None:
            return str(self.product_id)
        return f"{self.product_id}:{self.variant_id}"

    @classmethod
    def parse(cls, raw: str) -> "SkuKey":
        product, _, variant = raw.partition(":")
        return cls(int(product), int(variant) if variant else None)


@dataclass(frozen=True)
class StockChange:
    sku: SkuKey
    previous: int
    quantity: int
    threshold: int

    @property
    def delta(self) -> int:
        return self.quantity - self.previous


def canonical(units: Iterable[Tuple[SkuKey, int]]) -> List[Tuple[SkuKey, int]]:
    """Merge duplicate SKUs and sort into lock order."""
    merged: Dict[SkuKey, int] = {}
    for sku, qty in units:
        if qty <= 0:
            raise ValueError(f"quantity for {sku} must be positive, got {qty}")
        merged[sku] = merged.get(sku, 0) + qty
    return sorted(merged.items(), key=lambda item: item[0].sort_key)


async def _lock(session: AsyncSession, sku: SkuKey) -> Optional[StockUnit]:
    return (
        await session.execute(
            select(StockUnit)
            .where(StockUnit.sku_key == str(sku))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()


async def _write(
    session: AsyncSession,
    unit: StockUnit,
    delta: int,
    change_type: str,
    reason: Optional[str],
    reference: Optional[str],
) -> StockChange:
    previous = unit.quantity
    stmt = (
        update(StockUnit)
        .where(StockUnit.id == unit.id)
        .values({StockUnit._quantity: StockUnit._quantity + delta})
    )
    if delta < 0:
        # Backends without row locks still cannot drive the column negative
        stmt = stmt.where(StockUnit._quantity >= -delta)
    result = await session.execute(stmt.execution_options(synchronize_session=False))
    if result.rowcount != 1:
        current = await _lock(session, SkuKey.parse(unit.sku_key))
        raise InsufficientStock(
            SkuKey.parse(unit.sku_key),
            available=current.quantity if current else 0,
            requested=-delta,
        )
    new_quantity = previous + delta
    # Keep the identity-map copy in step with the row without dirtying it
    set_committed_value(unit, "_quantity", new_quantity)
    session.add(
        StockHistory(
            stock_unit_id=unit.id,
            sku_key=unit.sku_key,
            change_type=change_type,
            delta=delta,
            previous_quantity=previous,
            new_quantity=new_quantity,
            reason=reason,
            reference=reference,
        )
    )
    return StockChange(
        sku=SkuKey.parse(unit.sku_key),
        previous=previous,
        quantity=new_quantity,
        threshold=unit.low_stock_threshold,
    )


async def reserve(
    session: AsyncSession,
    units: Iterable[Tuple[SkuKey, int]],
    reference: Optional[str] = None,
) -> List[StockChange]:
    """
    Decrement stock for every (sku, quantity) pair.

    Raises InsufficientStock for the first SKU (in lock order) that cannot be
    covered; in that case no unit of the batch has been written.
    """
    ordered = canonical(units)
    locked: List[Tuple[StockUnit, int]] = []

    for sku, qty in ordered:
        unit = await _lock(session, sku)
        available = unit.quantity if unit else 0
        if unit is None or available < qty:
            logger.info(
                "Reservation refused: sku=%s available=%d requested=%d ref=%s",
                sku, available, qty, reference,
            )
            raise InsufficientStock(sku, available=available, requested=qty)
        locked.append((unit, qty))

    changes = [
        await _write(session, unit, -qty, "reserve", None, reference)
        for unit, qty in locked
    ]
    await session.flush()

    logger.info(
        "Reserved %d sku(s) ref=%s: %s",
        len(changes), reference,
        ", ".join(f"{c.sku}={c.previous}->{c.quantity}" for c in changes),
    )
    return changes


async def release(
    session: AsyncSession,
    units: Iterable[Tuple[SkuKey, int]],
    reference: Optional[str] = None,
    reason: str = "release",
) -> List[StockChange]:
    """Add quantities back.  Unknown SKUs get a fresh unit starting at zero."""
    changes = []
    for sku, qty in canonical(units):
        unit = await _lock(session, sku)
        if unit is None:
            logger.warning("Releasing into unknown sku=%s; creating stock unit", sku)
            unit = await register(session, sku, quantity=0)
        changes.append(await _write(session, unit, qty, "release", reason, reference))
    await session.flush()

    logger.info(
        "Released %d sku(s) ref=%s reason=%s: %s",
        len(changes), reference, reason,
        ", ".join(f"{c.sku}={c.previous}->{c.quantity}" for c in changes),
    )
    return changes


async def _require_catalog_entry(session: AsyncSession, sku: SkuKey) -> None:
    if await session.get(Product, sku.product_id) is None:
        raise NotFound(f"Product {sku.product_id} not found", product_id=sku.product_id)
    if sku.variant_id is not None:
        variant = await session.get(ProductVariant, sku.variant_id)
        if variant is None or variant.product_id != sku.product_id:
            raise NotFound(
                f"Variant {sku.variant_id} of product {sku.product_id} not found",
                product_id=sku.product_id,
                variant_id=sku.variant_id,
            )


async def receive(
    session: AsyncSession,
    sku: SkuKey,
    quantity: int,
    reason: Optional[str] = None,
    reference: Optional[str] = None,
    register_missing: bool = False,
) -> StockChange:
    """Stock-in of new goods.  With *register_missing* a new SKU starts at zero first."""
    if quantity <= 0:
        raise ValueError("received quantity must be positive")
    unit = await _lock(session, sku)
    if unit is None and register_missing:
        await _require_catalog_entry(session, sku)
        unit = await register(session, sku, quantity=0)
    if unit is None:
        raise NotFound(f"No stock unit for {sku}", sku_key=str(sku))
    change = await _write(session, unit, quantity, "receive", reason, reference)
    await session.flush()
    logger.info("Stock received: sku=%s %d -> %d", sku, change.previous, change.quantity)
    return change


async def adjust(
    session: AsyncSession,
    sku: SkuKey,
    new_quantity: int,
    reason: Optional[str] = None,
) -> StockChange:
    """Overwrite the counted quantity after a physical stock take."""
    if new_quantity < 0:
        raise ValueError("stock quantity cannot be negative")
    unit = await _lock(session, sku)
    if unit is None:
        raise NotFound(f"No stock unit for {sku}", sku_key=str(sku))
    delta = new_quantity - unit.quantity
    change = await _write(session, unit, delta, "adjust", reason, None)
    await session.flush()
    logger.info("Stock adjusted: sku=%s %d -> %d", sku, change.previous, change.quantity)
    return change


async def register(
    session: AsyncSession,
    sku: SkuKey,
    quantity: int = 0,
    low_stock_threshold: Optional[int] = None,
) -> StockUnit:
    """Create the stock unit for a new SKU."""
    if quantity < 0:
        raise ValueError("stock quantity cannot be negative")
    if low_stock_threshold is None:
        low_stock_threshold = get_settings().default_low_stock_threshold
    unit = StockUnit(
        product_id=sku.product_id,
        variant_id=sku.variant_id,
        sku_key=str(sku),
        _quantity=quantity,
        low_stock_threshold=low_stock_threshold,
    )
    session.add(unit)
    await session.flush()
    return unit


async def get_quantity(session: AsyncSession, sku: SkuKey) -> int:
    """Return current quantity for a SKU (0 if unknown)."""
    unit = (
        await session.execute(
            select(StockUnit)
            .where(StockUnit.sku_key == str(sku))
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    return unit.quantity if unit else 0
