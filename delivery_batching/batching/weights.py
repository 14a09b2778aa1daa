from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Iterable

from delivery_batching.batching.errors import InvalidWeight

DEFAULT_MIN_WEIGHT = Decimal("1")

# product_id -> unit weight, None when the catalog has no usable value
UnitWeightLookup = Callable[[str], Decimal | None]


@dataclass(frozen=True)
class WeighedItem:
    product_id: str
    quantity: int


def resolve_order_weight(
    items: Iterable[WeighedItem],
    unit_weight_of: UnitWeightLookup,
    *,
    min_weight: Decimal = DEFAULT_MIN_WEIGHT,
    order_id: str | None = None,
) -> Decimal:
    """Shippable weight of an order: sum of quantity x catalog unit weight.

    An empty item set or a zero sum yields ``min_weight`` so that capacity
    math never sees a weightless order. Missing, null or negative unit
    weights and negative quantities raise ``InvalidWeight``.
    """
    total = Decimal("0")
    for item in items:
        if item.quantity < 0:
            raise InvalidWeight(f"negative quantity {item.quantity} for product {item.product_id}", order_id)
        unit_weight = unit_weight_of(item.product_id)
        if unit_weight is None:
            raise InvalidWeight(f"product {item.product_id} has no unit weight", order_id)
        unit_weight = Decimal(unit_weight)
        if unit_weight < 0:
            raise InvalidWeight(f"product {item.product_id} has negative unit weight {unit_weight}", order_id)
        total += unit_weight * item.quantity

    if total <= 0:
        return min_weight
    return total
