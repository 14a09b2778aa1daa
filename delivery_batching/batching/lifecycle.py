from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from decimal import Decimal
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.orm import Session

from delivery_batching.batching.audit import record_batch_event
from delivery_batching.batching.errors import BatchNotReady, DriverUnavailable, InvalidTransition
from delivery_batching.batching.scheduling import scheduled_delivery_date
from delivery_batching.core.clock import ensure_utc, now_utc
from delivery_batching.domain.states import ACTIVE_BATCH_STATUSES, ApprovalState, BatchStatus, DeliveryState
from delivery_batching.persistence.models import BatchModel, DriverModel, OrderModel

logger = logging.getLogger(__name__)


TRANSITIONS: dict[BatchStatus, frozenset[BatchStatus]] = {
    BatchStatus.OPEN: frozenset({BatchStatus.ASSIGNED, BatchStatus.CANCELLED}),
    BatchStatus.ASSIGNED: frozenset({BatchStatus.DELIVERING, BatchStatus.CANCELLED}),
    BatchStatus.DELIVERING: frozenset({BatchStatus.DELIVERED}),
    BatchStatus.DELIVERED: frozenset(),
    BatchStatus.CANCELLED: frozenset(),
}

# Only these statuses take new members.
ORDER_ACCEPTING_STATUSES = frozenset({BatchStatus.OPEN})

# Delivery state written to every approved member when the batch enters a status.
CASCADE: dict[BatchStatus, DeliveryState] = {
    BatchStatus.ASSIGNED: DeliveryState.ASSIGNED,
    BatchStatus.DELIVERING: DeliveryState.DELIVERING,
    BatchStatus.DELIVERED: DeliveryState.DELIVERED,
}


@dataclass(frozen=True)
class AssignmentRules:
    fill_ratio: float
    deadline_hours: int
    cutoff: time
    tz: ZoneInfo

    @classmethod
    def from_settings(cls, settings) -> "AssignmentRules":
        return cls(
            fill_ratio=settings.assignment_fill_ratio,
            deadline_hours=settings.assignment_deadline_hours,
            cutoff=settings.delivery_cutoff,
            tz=settings.tz,
        )


def readiness_threshold(batch: BatchModel, fill_ratio: float) -> Decimal:
    return Decimal(batch.capacity_ceiling) * Decimal(str(fill_ratio))


class BatchLifecycle:
    """Guarded state machine for one batch.

    Every status change goes through ``_advance`` which checks the transition
    table and cascades the matching delivery state to approved members.
    """

    def __init__(self, session: Session, batch: BatchModel):
        self.session = session
        self.batch = batch

    @property
    def status(self) -> BatchStatus:
        return BatchStatus(self.batch.status)

    def accepts_orders(self) -> bool:
        return self.status in ORDER_ACCEPTING_STATUSES

    def can_transition(self, target: BatchStatus) -> bool:
        return target in TRANSITIONS[self.status]

    def is_ready(self, rules: AssignmentRules, now: datetime) -> bool:
        if Decimal(self.batch.aggregate_weight) >= readiness_threshold(self.batch, rules.fill_ratio):
            return True
        age = ensure_utc(now) - ensure_utc(self.batch.created_at)
        return age >= timedelta(hours=rules.deadline_hours)

    def assign(self, driver_id: str, rules: AssignmentRules, now: datetime | None = None) -> BatchModel:
        now = now or now_utc()
        self._require(BatchStatus.ASSIGNED)
        if not self.is_ready(rules, now):
            raise BatchNotReady(
                f"batch {self.batch.batch_id} weight {self.batch.aggregate_weight} is below "
                f"{readiness_threshold(self.batch, rules.fill_ratio)} and younger than {rules.deadline_hours}h"
            )
        self._require_free_driver(driver_id)

        self.batch.driver_id = driver_id
        self.batch.assigned_at = now
        self.batch.scheduled_delivery_date = scheduled_delivery_date(now, rules.cutoff, rules.tz)
        self._advance(
            BatchStatus.ASSIGNED,
            now,
            {
                "driver_id": driver_id,
                "scheduled_delivery_date": self.batch.scheduled_delivery_date.isoformat(),
            },
        )
        return self.batch

    def start_delivery(self, now: datetime | None = None) -> BatchModel:
        self._advance(BatchStatus.DELIVERING, now or now_utc())
        return self.batch

    def complete_delivery(self, now: datetime | None = None) -> BatchModel:
        self._advance(BatchStatus.DELIVERED, now or now_utc())
        return self.batch

    def cancel(self, now: datetime | None = None, reason: str = "orphaned") -> BatchModel:
        self._advance(BatchStatus.CANCELLED, now or now_utc(), {"reason": reason})
        return self.batch

    def _require(self, target: BatchStatus) -> None:
        if not self.can_transition(target):
            raise InvalidTransition(
                f"batch {self.batch.batch_id} cannot move from {self.status.value} to {target.value}"
            )

    def _require_free_driver(self, driver_id: str) -> None:
        driver = self.session.get(DriverModel, driver_id)
        if driver is None:
            raise DriverUnavailable(f"driver {driver_id} is not registered")
        if not driver.available:
            raise DriverUnavailable(f"driver {driver_id} is busy")
        busy_with = self.session.scalar(
            select(BatchModel.batch_id)
            .where(BatchModel.driver_id == driver_id)
            .where(BatchModel.status.in_(ACTIVE_BATCH_STATUSES))
            .where(BatchModel.batch_id != self.batch.batch_id)
            .limit(1)
        )
        if busy_with is not None:
            raise DriverUnavailable(f"driver {driver_id} already holds active batch {busy_with}")

    def _advance(self, target: BatchStatus, now: datetime, detail: dict | None = None) -> None:
        self._require(target)
        previous = self.status
        self.batch.status = target.value
        self.batch.updated_at = now

        cascaded = 0
        delivery_state = CASCADE.get(target)
        if delivery_state is not None:
            members = self.session.scalars(
                select(OrderModel)
                .where(OrderModel.batch_id == self.batch.batch_id)
                .where(OrderModel.approval_state == ApprovalState.APPROVED.value)
            ).all()
            for order in members:
                order.delivery_state = delivery_state.value
                order.updated_at = now
                cascaded += 1

        record_batch_event(
            self.session,
            self.batch,
            f"status:{target.value}",
            {"from": previous.value, "orders_cascaded": cascaded, **(detail or {})},
            occurred_at=now,
        )
        self.session.flush()
        logger.info(
            "batch transition: batch_id=%s locality=%s %s->%s orders=%d",
            self.batch.batch_id,
            self.batch.locality_key,
            previous.value,
            target.value,
            cascaded,
        )
