from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from delivery_batching.batching.audit import record_batch_event
from delivery_batching.batching.errors import InvalidWeight, MissingLocality
from delivery_batching.batching.lifecycle import ORDER_ACCEPTING_STATUSES, BatchLifecycle
from delivery_batching.batching.reconciler import Reconciler, ReconcileResult
from delivery_batching.batching.selection import select_batch
from delivery_batching.core.clock import now_utc
from delivery_batching.domain.states import BatchStatus
from delivery_batching.persistence.models import BatchModel, OrderModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Allocation:
    order_id: str
    batch_id: str
    locality_key: str
    order_weight: Decimal
    created_batch: bool
    reconcile: ReconcileResult


class BatchAllocator:
    """Bin-packing step: attach an order to an open batch of its locality.

    Must run with the locality lock held; the candidate query, the choice
    and the write happen inside one transaction.
    """

    def __init__(
        self,
        session: Session,
        reconciler: Reconciler,
        *,
        capacity_ceiling: Decimal,
        strategy: str = "tightest_fit",
    ):
        self.session = session
        self.reconciler = reconciler
        self.capacity_ceiling = Decimal(capacity_ceiling)
        self.strategy = strategy

    def open_batches(self, locality: str) -> list[BatchModel]:
        stmt = (
            select(BatchModel)
            .where(BatchModel.locality_key == locality)
            .where(BatchModel.status.in_(sorted(s.value for s in ORDER_ACCEPTING_STATUSES)))
            .order_by(BatchModel.created_at.asc())
        )
        return [b for b in self.session.scalars(stmt).all() if BatchLifecycle(self.session, b).accepts_orders()]

    def allocate(
        self,
        order: OrderModel,
        order_weight: Decimal,
        locality: str,
        now: datetime | None = None,
    ) -> Allocation:
        now = now or now_utc()
        if order_weight is None or order_weight <= 0:
            raise InvalidWeight(f"order weight must be positive, got {order_weight}", order.order_id)
        if not locality:
            raise MissingLocality(order.order_id)
        if order_weight > self.capacity_ceiling:
            raise InvalidWeight(
                f"order weight {order_weight} exceeds batch capacity {self.capacity_ceiling}",
                order.order_id,
            )

        batch = select_batch(self.open_batches(locality), order_weight, self.strategy)
        created = batch is None
        if created:
            batch = BatchModel(
                locality_key=locality,
                aggregate_weight=order_weight,
                capacity_ceiling=self.capacity_ceiling,
                status=BatchStatus.OPEN.value,
                created_at=now,
                updated_at=now,
            )
            self.session.add(batch)
            self.session.flush()
            record_batch_event(
                self.session,
                batch,
                "batch_created",
                {"capacity_ceiling": batch.capacity_ceiling, "strategy": self.strategy},
                occurred_at=now,
            )

        order.weight = order_weight
        order.locality_key = locality
        order.batch_id = batch.batch_id
        order.batching_error = None
        order.updated_at = now
        record_batch_event(
            self.session,
            batch,
            "order_attached",
            {"order_id": order.order_id, "order_weight": order_weight},
            occurred_at=now,
        )

        result = self.reconciler.reconcile(batch.batch_id, now)
        logger.info(
            "order allocated: order_id=%s batch_id=%s locality=%s weight=%s batch_weight=%s new_batch=%s",
            order.order_id,
            batch.batch_id,
            locality,
            order_weight,
            result.aggregate_weight,
            created,
        )
        return Allocation(
            order_id=order.order_id,
            batch_id=batch.batch_id,
            locality_key=locality,
            order_weight=order_weight,
            created_batch=created,
            reconcile=result,
        )
