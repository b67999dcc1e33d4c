# payman_billing/billing/utils/catalog.py
from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from billing.utils.errors import NotFoundError, ValidationError

MONTHLY = "monthly"
ONE_TIME = "one_time"
BILLING_PERIODS = (MONTHLY, ONE_TIME)

# Prices in Rials
PRODUCTS: Dict[str, Dict] = {
    "basic-monthly": {"name": "Basic", "price": 990_000, "billing_period": MONTHLY},
    "pro-monthly": {"name": "Pro", "price": 1_490_000, "billing_period": MONTHLY},
    "business-monthly": {"name": "Business", "price": 2_990_000, "billing_period": MONTHLY},
    "lifetime": {"name": "Lifetime", "price": 25_000_000, "billing_period": ONE_TIME},
}


@dataclass(frozen=True)
class Product:
    id: str
    name: str
    price: int
    billing_period: str = MONTHLY
    is_active: bool = True

    @property
    def is_recurring(self) -> bool:
        return self.billing_period == MONTHLY


class ProductCatalog:
    """Read-only product lookup used by the subscription service."""

    def __init__(self, products: Iterable[Product]):
        self._items: Dict[str, Product] = {p.id: p for p in products}

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Dict]) -> "ProductCatalog":
        items: List[Product] = []
        for product_id, raw in mapping.items():
            period = raw.get("billing_period", MONTHLY)
            if period not in BILLING_PERIODS:
                raise ValueError(f"unknown billing_period {period!r} for product {product_id}")
            price = int(raw["price"])
            if price <= 0:
                raise ValueError(f"price must be positive for product {product_id}")
            items.append(Product(
                id=product_id,
                name=str(raw.get("name") or product_id),
                price=price,
                billing_period=period,
                is_active=bool(raw.get("is_active", True)),
            ))
        return cls(items)

    @classmethod
    def from_env(cls) -> "ProductCatalog":
        """PRODUCTS_FILE (JSON object id -> fields) overrides the built-in PRODUCTS."""
        path = os.getenv("PRODUCTS_FILE")
        if path:
            with open(path, "r", encoding="utf-8") as fh:
                return cls.from_mapping(json.load(fh))
        return cls.from_mapping(PRODUCTS)

    def get(self, product_id: str) -> Optional[Product]:
        return self._items.get(product_id)

    def require_active(self, product_id: str) -> Product:
        product = self._items.get(product_id)
        if product is None:
            raise NotFoundError(f"product {product_id!r} not found")
        if not product.is_active:
            raise ValidationError(f"product {product_id!r} is not available", field="product_id")
        return product

    def all(self) -> List[Product]:
        return list(self._items.values())
