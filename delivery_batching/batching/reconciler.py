from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from delivery_batching.batching.audit import record_batch_event
from delivery_batching.batching.errors import CapacityExceeded, InvalidWeight, NotFound, OrphanBatch
from delivery_batching.batching.lifecycle import BatchLifecycle
from delivery_batching.core.clock import now_utc
from delivery_batching.domain.states import ApprovalState, BatchStatus
from delivery_batching.persistence.models import BatchModel, OrderModel

logger = logging.getLogger(__name__)

RETIRABLE_STATUSES = (BatchStatus.OPEN.value, BatchStatus.ASSIGNED.value)


@dataclass(frozen=True)
class ReconcileResult:
    batch_id: str
    locality_key: str
    previous_weight: Decimal
    aggregate_weight: Decimal
    member_count: int
    orphan_action: str | None = None

    @property
    def drift(self) -> Decimal:
        return self.aggregate_weight - self.previous_weight

    @property
    def orphaned(self) -> bool:
        return self.orphan_action is not None

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "locality_key": self.locality_key,
            "previous_weight": str(self.previous_weight),
            "aggregate_weight": str(self.aggregate_weight),
            "drift": str(self.drift),
            "member_count": self.member_count,
            "orphan_action": self.orphan_action,
        }


class Reconciler:
    """Sole writer of ``BatchModel.aggregate_weight``.

    The stored weight is always overwritten with the sum over the batch's
    approved members, never adjusted by a delta. Callers hold the lock for
    the batch's locality so the member set cannot change mid-computation.

    A non-cancelled batch whose recomputed total exceeds its ceiling raises
    ``CapacityExceeded`` after the unclamped total has been written to the
    session. Callers that must leave the batch untouched let the error roll
    the transaction back; resync catches it and commits, recording the true
    weight alongside the reported violation.
    """

    def __init__(self, session: Session, *, orphan_policy: str = "delete"):
        if orphan_policy not in {"delete", "close"}:
            raise ValueError(f"unknown orphan batch policy: {orphan_policy}")
        self.session = session
        self.orphan_policy = orphan_policy

    def member_weights(self, batch_id: str) -> list[tuple[str, Decimal | None]]:
        # autoflush is off; pending membership changes must be visible to the query.
        self.session.flush()
        stmt = (
            select(OrderModel.order_id, OrderModel.weight)
            .where(OrderModel.batch_id == batch_id)
            .where(OrderModel.approval_state == ApprovalState.APPROVED.value)
        )
        return [(row.order_id, row.weight) for row in self.session.execute(stmt)]

    def recompute(self, batch: BatchModel) -> tuple[Decimal, int]:
        members = self.member_weights(batch.batch_id)
        if not members:
            raise OrphanBatch(batch.batch_id, batch.locality_key)

        total = Decimal("0")
        for order_id, weight in members:
            if weight is None:
                raise InvalidWeight("approved batch member has no resolved weight", order_id)
            total += Decimal(weight)
        return total, len(members)

    def reconcile(self, batch_id: str, now: datetime | None = None) -> ReconcileResult:
        now = now or now_utc()
        batch = self.session.get(BatchModel, batch_id)
        if batch is None:
            raise NotFound("batch", batch_id)

        previous = Decimal(batch.aggregate_weight)
        try:
            total, count = self.recompute(batch)
        except OrphanBatch as exc:
            return self._retire_orphan(batch, exc, previous, now)

        if total != previous:
            batch.aggregate_weight = total
            batch.updated_at = now
            logger.debug("batch weight: batch_id=%s %s -> %s", batch.batch_id, previous, total)

        if batch.status != BatchStatus.CANCELLED.value and total > Decimal(batch.capacity_ceiling):
            logger.error(
                "capacity invariant violated: batch_id=%s locality=%s weight=%s ceiling=%s",
                batch.batch_id,
                batch.locality_key,
                total,
                batch.capacity_ceiling,
            )
            raise CapacityExceeded(batch.batch_id, total, Decimal(batch.capacity_ceiling))

        self.session.flush()
        return ReconcileResult(
            batch_id=batch.batch_id,
            locality_key=batch.locality_key,
            previous_weight=previous,
            aggregate_weight=total,
            member_count=count,
        )

    def _retire_orphan(self, batch: BatchModel, exc: OrphanBatch, previous: Decimal, now: datetime) -> ReconcileResult:
        if batch.status not in RETIRABLE_STATUSES:
            # Delivery history is kept as-is; only the weight is corrected.
            batch.aggregate_weight = Decimal("0")
            batch.updated_at = now
            self.session.flush()
            logger.warning("%s; status=%s so the batch is retained", exc, batch.status)
            return ReconcileResult(
                batch_id=exc.batch_id,
                locality_key=exc.locality_key,
                previous_weight=previous,
                aggregate_weight=Decimal("0"),
                member_count=0,
                orphan_action="retained",
            )

        # Non-approved orders may still point here on backends without FK enforcement.
        self.session.execute(
            update(OrderModel).where(OrderModel.batch_id == batch.batch_id).values(batch_id=None, updated_at=now)
        )

        if self.orphan_policy == "close":
            batch.aggregate_weight = Decimal("0")
            BatchLifecycle(self.session, batch).cancel(now, reason="orphaned")
            action = "closed"
        else:
            record_batch_event(self.session, batch, "batch_deleted", {"reason": "orphaned"}, occurred_at=now)
            self.session.delete(batch)
            self.session.flush()
            action = "deleted"

        logger.warning("%s; orphan policy=%s applied", exc, action)
        return ReconcileResult(
            batch_id=exc.batch_id,
            locality_key=exc.locality_key,
            previous_weight=previous,
            aggregate_weight=Decimal("0"),
            member_count=0,
            orphan_action=action,
        )
