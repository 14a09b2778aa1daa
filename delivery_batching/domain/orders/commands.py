from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterable

from sqlalchemy.orm import Session

from delivery_batching.batching.errors import InvalidWeight, NotFound, OrderLocked
from delivery_batching.batching.weights import WeighedItem, resolve_order_weight
from delivery_batching.core.clock import now_utc
from delivery_batching.domain.catalog import SqlProductCatalog
from delivery_batching.domain.states import ApprovalState
from delivery_batching.persistence.models import LineItemModel, OrderModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LineItemInput:
    product_id: str
    quantity: int
    unit_price: Decimal | None = None


def get_order(session: Session, order_id: str) -> OrderModel:
    order = session.get(OrderModel, order_id)
    if order is None:
        raise NotFound("order", order_id)
    return order


def resolve_weight(order: OrderModel, catalog: SqlProductCatalog, min_weight: Decimal) -> Decimal:
    items = [WeighedItem(product_id=line.product_id, quantity=line.quantity) for line in order.line_items]
    return resolve_order_weight(items, catalog.unit_weight, min_weight=min_weight, order_id=order.order_id)


def _build_lines(catalog: SqlProductCatalog, items: Iterable[LineItemInput]) -> list[LineItemModel]:
    lines: list[LineItemModel] = []
    for item in items:
        unit_price = item.unit_price
        if unit_price is None:
            unit_price = catalog.unit_price(item.product_id) or Decimal("0")
        lines.append(LineItemModel(product_id=item.product_id, quantity=item.quantity, unit_price=unit_price))
    return lines


def refresh_order_weight(session: Session, order: OrderModel, min_weight: Decimal) -> Decimal | None:
    """Recompute the stored weight after a line-item change.

    Unresolvable weights are recorded on the order rather than raised, so
    the edit itself still lands; approval surfaces the problem later.
    """
    session.flush()
    catalog = SqlProductCatalog(session)
    try:
        order.weight = resolve_weight(order, catalog, min_weight)
        order.batching_error = None
    except InvalidWeight as exc:
        order.weight = None
        order.batching_error = str(exc)
        logger.warning("order weight unresolved: %s", exc)
    return order.weight


def place_order(
    session: Session,
    customer_id: str,
    delivery_address: dict[str, Any],
    items: Iterable[LineItemInput],
    *,
    min_weight: Decimal,
    order_id: str | None = None,
    now: datetime | None = None,
) -> OrderModel:
    now = now or now_utc()
    catalog = SqlProductCatalog(session)
    order = OrderModel(
        customer_id=customer_id,
        delivery_address=dict(delivery_address or {}),
        approval_state=ApprovalState.PENDING.value,
        created_at=now,
        updated_at=now,
    )
    if order_id:
        order.order_id = order_id
    order.line_items = _build_lines(catalog, items)
    session.add(order)
    refresh_order_weight(session, order, min_weight)
    session.flush()
    return order


def replace_line_items(
    session: Session,
    order_id: str,
    items: Iterable[LineItemInput],
    *,
    min_weight: Decimal,
    allow_approved: bool = False,
    now: datetime | None = None,
) -> OrderModel:
    now = now or now_utc()
    # Fresh row; an instance loaded before the lock may predate approval.
    order = session.get(OrderModel, order_id, populate_existing=True, with_for_update=True)
    if order is None:
        raise NotFound("order", order_id)
    if order.approval_state == ApprovalState.APPROVED.value and not allow_approved:
        raise OrderLocked(order_id, "line items are frozen once the order is approved")

    catalog = SqlProductCatalog(session)
    order.line_items = _build_lines(catalog, items)
    order.updated_at = now
    refresh_order_weight(session, order, min_weight)
    return order
