from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterator, Literal, Mapping, Optional

from .models import PlanType

ProductKind = Literal["JEEZ", "VIP", "UNKNOWN"]

_JEEZ_PRODUCT_RE = re.compile(r"^jeez_([1-9][0-9]*)_([a-z]{3})$")
_VIP_PRODUCT_RE = re.compile(r"^vip_(monthly|quarterly|annual)_([a-z]{3})$")


@dataclass(frozen=True)
class ProductPrice:
    product_id: str
    amount: Decimal
    currency: str
    label: str


@dataclass(frozen=True)
class ProductInfo:
    kind: ProductKind
    product_id: str = ""
    jeez_quantity: Optional[int] = None
    plan: Optional[PlanType] = None

    @property
    def is_known(self) -> bool:
        return self.kind != "UNKNOWN"


def classify_product(custom_id: Optional[str]) -> ProductInfo:
    """
    Map a provider `custom_id` to a product kind.

    `jeez_<n>_<ccy>` is a Jeez package of n units, `vip_<plan>_<ccy>` a VIP
    plan. Anything else, including a malformed quantity or a missing
    currency suffix, is UNKNOWN.
    """

    raw = str(custom_id or "").strip().lower()
    if not raw:
        return ProductInfo(kind="UNKNOWN")
    match = _JEEZ_PRODUCT_RE.fullmatch(raw)
    if match:
        return ProductInfo(kind="JEEZ", product_id=raw, jeez_quantity=int(match.group(1)))
    match = _VIP_PRODUCT_RE.fullmatch(raw)
    if match:
        return ProductInfo(kind="VIP", product_id=raw, plan=PlanType(match.group(1)))
    return ProductInfo(kind="UNKNOWN", product_id=raw)


class PriceTable:
    """Canonical product catalog shared by checkout and webhook validation."""

    def __init__(self, prices: Mapping[str, ProductPrice]) -> None:
        self._prices = {str(key).strip().lower(): value for key, value in prices.items()}

    def get(self, product_id: Optional[str]) -> Optional[ProductPrice]:
        return self._prices.get(str(product_id or "").strip().lower())

    def __contains__(self, product_id: object) -> bool:
        return isinstance(product_id, str) and self.get(product_id) is not None

    def __iter__(self) -> Iterator[ProductPrice]:
        return iter(self._prices.values())

    def __len__(self) -> int:
        return len(self._prices)

    def for_plan(self, plan: PlanType, currency: str = "USD") -> Optional[ProductPrice]:
        return self.get(f"vip_{plan.value}_{str(currency or '').strip().lower()}")


def _price(product_id: str, amount: str, label: str, currency: str = "USD") -> ProductPrice:
    return ProductPrice(product_id=product_id, amount=Decimal(amount), currency=currency, label=label)


DEFAULT_PRICE_TABLE = PriceTable(
    {
        "jeez_100_usd": _price("jeez_100_usd", "4.99", "100 Jeez"),
        "jeez_500_usd": _price("jeez_500_usd", "19.99", "500 Jeez"),
        "jeez_1000_usd": _price("jeez_1000_usd", "34.99", "1000 Jeez"),
        "vip_monthly_usd": _price("vip_monthly_usd", "9.99", "VIP Monthly"),
        "vip_quarterly_usd": _price("vip_quarterly_usd", "24.99", "VIP Quarterly"),
        "vip_annual_usd": _price("vip_annual_usd", "79.99", "VIP Annual"),
    }
)
