#!/usr/bin/env python3
"""
Create the PayPal catalog product and billing plans for the VIP tiers.

Run by hand when prices change; PayPal plans are immutable once active, so
every run creates fresh plan ids and prints them for the deploy config.

Plans are derived from the canonical price table:
- vip_monthly_usd    -> every 1 month
- vip_quarterly_usd  -> every 3 months
- vip_annual_usd     -> every 12 months
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Optional

# Make project modules importable when script is run from tools/.
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from config import (  # noqa: E402
    PAYPAL_API_BASE_URL,
    PAYPAL_CLIENT_ID,
    PAYPAL_CLIENT_SECRET,
    PAYPAL_PRODUCT_ID,
    PAYPAL_TIMEOUT_SECONDS,
)
from monetization import DEFAULT_PRICE_TABLE, PayPalClient, PayPalError, PlanType, PriceTable  # noqa: E402
from monetization.subscription import PLAN_MONTHS  # noqa: E402


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create PayPal billing plans for the Jeezy VIP tiers")
    parser.add_argument("--product-id", default=PAYPAL_PRODUCT_ID, help="Existing PayPal catalog product id")
    parser.add_argument(
        "--create-product",
        action="store_true",
        help="Create a new catalog product first and attach the plans to it",
    )
    parser.add_argument("--currency", default="USD", help="Plan currency code (default: USD)")
    parser.add_argument("--dry-run", action="store_true", help="Print the plans without calling PayPal")
    return parser.parse_args(argv)


def plan_definitions(prices: PriceTable, currency: str = "USD") -> list[dict]:
    plans: list[dict] = []
    for plan in PlanType:
        price = prices.for_plan(plan, currency)
        if price is None:
            print(f"[skip] {plan.value}: no {currency} price")
            continue
        plans.append(
            {
                "product_id": price.product_id,
                "name": f"Jeezy {price.label}",
                "description": f"{price.label} membership, {format(price.amount, 'f')} {price.currency}",
                "price": price.amount,
                "currency": price.currency,
                "interval_count": PLAN_MONTHS[plan],
            }
        )
    return plans


def sync_plans(
    client: PayPalClient,
    prices: PriceTable,
    *,
    product_id: str,
    create_product: bool = False,
    currency: str = "USD",
    dry_run: bool = False,
) -> dict[str, str]:
    plans = plan_definitions(prices, currency)
    if create_product:
        if dry_run:
            print("[create] catalog product Jeezy VIP")
            product_id = "DRY-RUN-PRODUCT"
        else:
            product_id = client.create_product(name="Jeezy VIP", description="Jeezy VIP membership")
            print(f"[create] catalog product {product_id}")
    if not product_id:
        raise RuntimeError("PayPal product id is missing; pass --product-id or --create-product")

    created: dict[str, str] = {}
    for entry in plans:
        print(f"[plan] {entry['product_id']} price={entry['price']} {entry['currency']} every {entry['interval_count']} month(s)")
        if dry_run:
            continue
        created[entry["product_id"]] = client.create_plan(
            product_id=product_id,
            name=entry["name"],
            description=entry["description"],
            price=entry["price"],
            currency=entry["currency"],
            interval_count=entry["interval_count"],
        )
    return created


def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv)
    currency = str(args.currency or "USD").strip().upper() or "USD"
    client = PayPalClient(
        client_id=PAYPAL_CLIENT_ID,
        client_secret=PAYPAL_CLIENT_SECRET,
        base_url=PAYPAL_API_BASE_URL,
        timeout_seconds=PAYPAL_TIMEOUT_SECONDS,
    )
    if not args.dry_run and not client.configured:
        print("[error] PAYPAL_CLIENT_ID / PAYPAL_CLIENT_SECRET are not configured")
        client.close()
        return 2
    try:
        created = sync_plans(
            client,
            DEFAULT_PRICE_TABLE,
            product_id=str(args.product_id or "").strip(),
            create_product=args.create_product,
            currency=currency,
            dry_run=args.dry_run,
        )
    except PayPalError as exc:
        print(f"[error] PayPal request failed: {exc}")
        return 1
    finally:
        client.close()

    for product_id, plan_id in created.items():
        print(f"[ok] {product_id} -> {plan_id}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
