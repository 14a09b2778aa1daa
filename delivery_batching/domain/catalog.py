from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from delivery_batching.core.clock import now_utc
from delivery_batching.persistence.models import ProductModel


class SqlProductCatalog:
    """Product catalog collaborator backed by the synced ``products`` table."""

    def __init__(self, session: Session):
        self.session = session
        self._cache: dict[str, ProductModel | None] = {}

    def _product(self, product_id: str) -> ProductModel | None:
        if product_id not in self._cache:
            self._cache[product_id] = self.session.get(ProductModel, product_id)
        return self._cache[product_id]

    def unit_weight(self, product_id: str) -> Decimal | None:
        product = self._product(product_id)
        if product is None or product.unit_weight is None:
            return None
        return Decimal(product.unit_weight)

    def unit_price(self, product_id: str) -> Decimal | None:
        product = self._product(product_id)
        if product is None:
            return None
        return Decimal(product.unit_price)


def upsert_product(
    session: Session,
    product_id: str,
    name: str,
    unit_weight: Decimal | None,
    unit_price: Decimal = Decimal("0"),
    now: datetime | None = None,
) -> ProductModel:
    now = now or now_utc()
    product = session.get(ProductModel, product_id)
    if product is None:
        product = ProductModel(product_id=product_id, name=name, updated_at=now)
        session.add(product)
    product.name = name
    product.unit_weight = unit_weight
    product.unit_price = unit_price
    product.updated_at = now
    session.flush()
    return product
