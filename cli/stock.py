#!/usr/bin/env python3
"""
CLI: inspect and replenish the stock ledger.

Usage:
    # Show stock levels
    python -m cli.stock --stock

    # Show open low-stock alerts
    python -m cli.stock --alerts

    # Receive goods for a SKU ("42" or "42:7")
    python -m cli.stock --receive 42:7 25 --reason "PO-1182"
"""
from __future__ import annotations

import argparse
import asyncio
import sys

from sqlalchemy import select

from storefront.database import AsyncSessionLocal
from storefront.errors import StoreError
from storefront.models import StockAlert, StockUnit
from storefront.services import ledger
from storefront.services.alerts import StockAlerts
from storefront.services.ledger import SkuKey


async def cmd_stock() -> None:
    async with AsyncSessionLocal() as session:
        rows = (
            await session.execute(
                select(StockUnit).order_by(StockUnit.product_id, StockUnit.variant_id)
            )
        ).scalars().all()

    if not rows:
        print("No stock units found.")
        return

    print(f"\n{'SKU':<16} {'QUANTITY':>10} {'THRESHOLD':>10} UPDATED")
    print("-" * 70)
    for r in rows:
        print(f"{r.sku_key:<16} {r.quantity:>10} {r.low_stock_threshold:>10} {r.updated_at}")


async def cmd_alerts() -> None:
    async with AsyncSessionLocal() as session:
        rows = (
            await session.execute(select(StockAlert).order_by(StockAlert.current_quantity))
        ).scalars().all()

    if not rows:
        print("No open low-stock alerts.")
        return

    print(f"\n{'SKU':<16} {'QUANTITY':>10} {'THRESHOLD':>10} SINCE")
    print("-" * 70)
    for r in rows:
        print(f"{r.sku_key:<16} {r.current_quantity:>10} {r.threshold:>10} {r.created_at}")


async def cmd_receive(raw_sku: str, quantity: int, reason: str | None) -> None:
    try:
        sku = SkuKey.parse(raw_sku)
    except ValueError:
        print(f"ERROR: {raw_sku!r} is not a SKU key (expected 42 or 42:7)", file=sys.stderr)
        sys.exit(1)

    async with AsyncSessionLocal() as session:
        try:
            change = await ledger.receive(
                session, sku, quantity, reason=reason, reference="cli", register_missing=True
            )
            await session.commit()
        except (StoreError, ValueError) as exc:
            await session.rollback()
            print(f"ERROR: {exc}", file=sys.stderr)
            sys.exit(1)

    print(f"→ {change.sku}: {change.previous} -> {change.quantity}")
    # No worker runs here, so refresh the alert row directly
    await StockAlerts(AsyncSessionLocal).check_and_alert(
        str(change.sku), change.quantity, change.threshold
    )


def main() -> None:
    parser = argparse.ArgumentParser(description="Storefront stock CLI")
    parser.add_argument("--stock", action="store_true", help="Print current stock levels")
    parser.add_argument("--alerts", action="store_true", help="Print open low-stock alerts")
    parser.add_argument(
        "--receive", nargs=2, metavar=("SKU", "QTY"), help="Receive QTY units of SKU"
    )
    parser.add_argument("--reason", help="Reason recorded in stock history (with --receive)")
    args = parser.parse_args()

    if args.receive:
        raw_sku, raw_qty = args.receive
        try:
            quantity = int(raw_qty)
        except ValueError:
            parser.error(f"QTY must be an integer, got {raw_qty!r}")
        asyncio.run(cmd_receive(raw_sku, quantity, args.reason))
    elif args.alerts:
        asyncio.run(cmd_alerts())
    else:
        asyncio.run(cmd_stock())


if __name__ == "__main__":
    main()
