from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Iterable, Iterator

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session, sessionmaker

import delivery_batching.persistence.pg as pg
from delivery_batching.batching.allocator import Allocation, BatchAllocator
from delivery_batching.batching.audit import record_batch_event
from delivery_batching.batching.errors import (
    AllocationAborted,
    AllocationRace,
    CapacityExceeded,
    InvalidTransition,
    InvalidWeight,
    MissingLocality,
    NotFound,
)
from delivery_batching.batching.events import ApprovalEvent
from delivery_batching.batching.guard import KeyedGuard, build_guard, driver_lock_key, locality_lock_key
from delivery_batching.batching.lifecycle import AssignmentRules, BatchLifecycle
from delivery_batching.batching.locality import extract_locality
from delivery_batching.batching.reconciler import RETIRABLE_STATUSES, Reconciler, ReconcileResult
from delivery_batching.core.clock import now_utc
from delivery_batching.core.config import Settings, get_settings
from delivery_batching.domain.catalog import SqlProductCatalog
from delivery_batching.domain.drivers import free_drivers
from delivery_batching.domain.orders.commands import LineItemInput, get_order, replace_line_items, resolve_weight
from delivery_batching.domain.states import ApprovalState, BatchStatus, DeliveryState
from delivery_batching.persistence.models import BatchModel, OrderModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApprovalOutcome:
    order_id: str
    approval_state: str
    allocation: Allocation | None = None
    reconcile: ReconcileResult | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"order_id": self.order_id, "approval_state": self.approval_state}
        if self.allocation is not None:
            payload["batch_id"] = self.allocation.batch_id
            payload["locality_key"] = self.allocation.locality_key
            payload["order_weight"] = str(self.allocation.order_weight)
            payload["created_batch"] = self.allocation.created_batch
            payload["batch"] = self.allocation.reconcile.to_dict()
        if self.reconcile is not None:
            payload["previous_batch"] = self.reconcile.to_dict()
        return payload


@dataclass(frozen=True)
class CorrectionOutcome:
    order_id: str
    weight: Decimal
    batch_id: str | None
    reconciled: list[ReconcileResult] = field(default_factory=list)
    allocation: Allocation | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "weight": str(self.weight),
            "batch_id": self.batch_id,
            "reconciled": [r.to_dict() for r in self.reconciled],
            "reallocated": self.allocation is not None,
        }


@dataclass
class ResyncReport:
    locality_key: str
    weight_corrections: list[dict[str, Any]] = field(default_factory=list)
    unresolved: list[dict[str, Any]] = field(default_factory=list)
    misplaced: list[dict[str, Any]] = field(default_factory=list)
    stale_references: list[dict[str, Any]] = field(default_factory=list)
    batches: list[ReconcileResult] = field(default_factory=list)
    capacity_violations: list[dict[str, Any]] = field(default_factory=list)

    @property
    def orphans(self) -> list[ReconcileResult]:
        return [r for r in self.batches if r.orphaned]

    @property
    def corrected(self) -> bool:
        return bool(
            self.weight_corrections
            or self.misplaced
            or self.stale_references
            or self.orphans
            or any(r.drift for r in self.batches)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "locality_key": self.locality_key,
            "weight_corrections": self.weight_corrections,
            "unresolved": self.unresolved,
            "misplaced": self.misplaced,
            "stale_references": self.stale_references,
            "batches": [r.to_dict() for r in self.batches],
            "orphans": [r.batch_id for r in self.orphans],
            "capacity_violations": self.capacity_violations,
        }


class ConsolidationService:
    """Transaction and lock orchestration for the consolidation engine.

    Every operation that reads then writes batch membership for a locality
    holds that locality's guard for the full transaction: the lock is taken
    before the session opens and released after commit or rollback.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        session_factory: sessionmaker | None = None,
        guard: KeyedGuard | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.settings = settings or get_settings()
        self._session_factory = session_factory
        self.guard = guard or build_guard(self.settings)
        self.clock = clock or now_utc
        self.rules = AssignmentRules.from_settings(self.settings)

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        factory = self._session_factory or pg.SessionLocal
        session = factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _reconciler(self, session: Session) -> Reconciler:
        return Reconciler(session, orphan_policy=self.settings.orphan_batch_policy)

    def _allocator(self, session: Session, reconciler: Reconciler) -> BatchAllocator:
        return BatchAllocator(
            session,
            reconciler,
            capacity_ceiling=self.settings.capacity_ceiling,
            strategy=self.settings.allocation_strategy,
        )

    def _locality_of(self, order: OrderModel) -> str:
        return extract_locality(order.delivery_address, self.settings.known_localities)

    def _peek_locality(self, order_id: str) -> str:
        with self._transaction() as session:
            return self._locality_of(get_order(session, order_id))

    def _peek_batch_locality(self, batch_id: str) -> str:
        with self._transaction() as session:
            batch = session.get(BatchModel, batch_id)
            if batch is None:
                raise NotFound("batch", batch_id)
            return batch.locality_key

    # -- approval ---------------------------------------------------------

    def approve_order(self, order_id: str, now: datetime | None = None) -> ApprovalOutcome:
        """Mark the order approved, then allocate it in a second transaction."""
        now = now or self.clock()
        locality = self._peek_locality(order_id)
        # Serialized with line-item edits so no edit lands between approval and allocation.
        with self.guard.hold(locality_lock_key(locality)):
            with self._transaction() as session:
                order = get_order(session, order_id)
                if order.approval_state != ApprovalState.APPROVED.value:
                    order.approval_state = ApprovalState.APPROVED.value
                    order.approved_at = now
                    order.updated_at = now
                    logger.info("order approved: order_id=%s", order_id)

        allocation = self.allocate_order(order_id, now)
        return ApprovalOutcome(order_id=order_id, approval_state=ApprovalState.APPROVED.value, allocation=allocation)

    def allocate_order(self, order_id: str, now: datetime | None = None) -> Allocation:
        now = now or self.clock()
        locality = self._peek_locality(order_id)
        with self.guard.hold(locality_lock_key(locality)):
            try:
                with self._transaction() as session:
                    order = get_order(session, order_id)
                    if order.approval_state != ApprovalState.APPROVED.value:
                        raise AllocationAborted(order_id, order.approval_state)

                    reconciler = self._reconciler(session)
                    if order.batch_id is not None:
                        # Already placed; re-delivered events reconcile and report it.
                        result = reconciler.reconcile(order.batch_id, now)
                        return Allocation(
                            order_id=order_id,
                            batch_id=order.batch_id,
                            locality_key=order.locality_key or locality,
                            order_weight=Decimal(order.weight),
                            created_batch=False,
                            reconcile=result,
                        )

                    weight = resolve_weight(order, SqlProductCatalog(session), self.settings.min_order_weight)
                    return self._allocator(session, reconciler).allocate(order, weight, locality, now)
            except (InvalidWeight, MissingLocality) as exc:
                self._record_batching_error(order_id, exc, now)
                raise

    def _record_batching_error(self, order_id: str, exc: Exception, now: datetime) -> None:
        with self._transaction() as session:
            order = session.get(OrderModel, order_id)
            if order is None:
                return
            order.batching_error = str(exc)
            order.updated_at = now
        logger.warning("order left unbatched: order_id=%s reason=%s", order_id, exc)

    def reverse_approval(
        self,
        order_id: str,
        approval_state: ApprovalState = ApprovalState.REJECTED,
        now: datetime | None = None,
    ) -> ApprovalOutcome:
        """Withdraw an approval, detaching the order from its batch and reconciling it."""
        now = now or self.clock()
        target = ApprovalState(approval_state)
        if target is ApprovalState.APPROVED:
            raise ValueError("use approve_order to approve an order")

        locality = self._peek_locality(order_id)
        with self.guard.hold(locality_lock_key(locality)):
            with self._transaction() as session:
                order = get_order(session, order_id)
                previous_batch_id = order.batch_id
                batch = session.get(BatchModel, previous_batch_id) if previous_batch_id else None
                if batch is not None and batch.status not in RETIRABLE_STATUSES:
                    raise InvalidTransition(
                        f"order {order_id} is in batch {batch.batch_id} which is already {batch.status}"
                    )

                order.approval_state = target.value
                order.delivery_state = DeliveryState.PENDING.value
                order.batch_id = None
                order.batching_error = None
                order.updated_at = now

                result = None
                if batch is not None:
                    record_batch_event(
                        session,
                        batch,
                        "order_detached",
                        {"order_id": order_id, "approval_state": target.value},
                        occurred_at=now,
                    )
                    result = self._reconciler(session).reconcile(batch.batch_id, now)
                    logger.info(
                        "order detached: order_id=%s batch_id=%s approval_state=%s",
                        order_id,
                        batch.batch_id,
                        target.value,
                    )
        return ApprovalOutcome(order_id=order_id, approval_state=target.value, reconcile=result)

    def reject_order(self, order_id: str, now: datetime | None = None) -> ApprovalOutcome:
        return self.reverse_approval(order_id, ApprovalState.REJECTED, now)

    def handle_approval_event(self, event: ApprovalEvent) -> ApprovalOutcome:
        now = event.occurred_at or self.clock()
        if event.approval_state is ApprovalState.APPROVED:
            return self.approve_order(event.order_id, now)
        return self.reverse_approval(event.order_id, event.approval_state, now)

    # -- line items ---------------------------------------------------------

    def edit_line_items(
        self,
        order_id: str,
        items: Iterable[LineItemInput],
        now: datetime | None = None,
    ) -> OrderModel:
        """Ordinary pre-approval edit; raises ``OrderLocked`` once the order is approved."""
        now = now or self.clock()
        items = list(items)
        locality = self._peek_locality(order_id)
        with self.guard.hold(locality_lock_key(locality)):
            with self._transaction() as session:
                return replace_line_items(session, order_id, items, min_weight=self.settings.min_order_weight, now=now)

    def correct_line_items(
        self,
        order_id: str,
        items: Iterable[LineItemInput],
        now: datetime | None = None,
    ) -> CorrectionOutcome:
        """Data-repair path for an order's line items, allowed after approval.

        The new weight must resolve; otherwise nothing changes. An order that
        no longer fits its open batch moves to another batch of the locality.
        A batch that is already assigned or further along keeps its members,
        so a correction that would take it over its ceiling is refused with
        ``InvalidTransition``.
        """
        now = now or self.clock()
        items = list(items)
        locality = self._peek_locality(order_id)
        with self.guard.hold(locality_lock_key(locality)):
            with self._transaction() as session:
                order = replace_line_items(
                    session,
                    order_id,
                    items,
                    min_weight=self.settings.min_order_weight,
                    allow_approved=True,
                    now=now,
                )
                if order.weight is None:
                    raise InvalidWeight(order.batching_error or "order weight cannot be resolved", order_id)

                weight = Decimal(order.weight)
                if order.approval_state != ApprovalState.APPROVED.value:
                    return CorrectionOutcome(order_id=order_id, weight=weight, batch_id=order.batch_id)

                reconciler = self._reconciler(session)
                reconciled: list[ReconcileResult] = []
                batch = session.get(BatchModel, order.batch_id) if order.batch_id else None

                if batch is not None:
                    others = Decimal("0")
                    for member_id, member_weight in reconciler.member_weights(batch.batch_id):
                        if member_id != order_id and member_weight is not None:
                            others += Decimal(member_weight)
                    overflows = others + weight > Decimal(batch.capacity_ceiling)
                    if overflows and batch.status != BatchStatus.OPEN.value:
                        # Members of a dispatched batch cannot move; refuse and roll back.
                        raise InvalidTransition(
                            f"correction of order {order_id} would put {batch.status} batch {batch.batch_id} "
                            f"at {others + weight}, over its ceiling of {batch.capacity_ceiling}"
                        )
                    if overflows:
                        record_batch_event(
                            session,
                            batch,
                            "order_detached",
                            {"order_id": order_id, "reason": "correction exceeds capacity"},
                            occurred_at=now,
                        )
                        order.batch_id = None
                        reconciled.append(reconciler.reconcile(batch.batch_id, now))
                        batch = None

                if batch is not None:
                    reconciled.append(reconciler.reconcile(batch.batch_id, now))
                    record_batch_event(
                        session,
                        batch,
                        "order_corrected",
                        {"order_id": order_id, "order_weight": weight},
                        occurred_at=now,
                    )
                    return CorrectionOutcome(order_id=order_id, weight=weight, batch_id=batch.batch_id, reconciled=reconciled)

                allocation = self._allocator(session, reconciler).allocate(order, weight, locality, now)
                return CorrectionOutcome(
                    order_id=order_id,
                    weight=weight,
                    batch_id=allocation.batch_id,
                    reconciled=reconciled,
                    allocation=allocation,
                )

    # -- lifecycle ----------------------------------------------------------

    def assign_driver(self, batch_id: str, driver_id: str, now: datetime | None = None) -> BatchModel:
        now = now or self.clock()
        locality = self._peek_batch_locality(batch_id)
        # Locality before driver, always, so two assignments cannot deadlock.
        with self.guard.hold(locality_lock_key(locality)), self.guard.hold(driver_lock_key(driver_id)):
            with self._transaction() as session:
                return BatchLifecycle(session, self._get_batch(session, batch_id)).assign(driver_id, self.rules, now)

    def start_delivery(self, batch_id: str, now: datetime | None = None) -> BatchModel:
        now = now or self.clock()
        locality = self._peek_batch_locality(batch_id)
        with self.guard.hold(locality_lock_key(locality)):
            with self._transaction() as session:
                return BatchLifecycle(session, self._get_batch(session, batch_id)).start_delivery(now)

    def complete_delivery(self, batch_id: str, now: datetime | None = None) -> BatchModel:
        now = now or self.clock()
        locality = self._peek_batch_locality(batch_id)
        with self.guard.hold(locality_lock_key(locality)):
            with self._transaction() as session:
                return BatchLifecycle(session, self._get_batch(session, batch_id)).complete_delivery(now)

    @staticmethod
    def _get_batch(session: Session, batch_id: str) -> BatchModel:
        batch = session.get(BatchModel, batch_id)
        if batch is None:
            raise NotFound("batch", batch_id)
        return batch

    def auto_assign_ready_batches(self, now: datetime | None = None) -> list[dict[str, Any]]:
        """Pair each ready open batch, oldest first, with the next free driver."""
        now = now or self.clock()
        with self._transaction() as session:
            open_batches = session.scalars(
                select(BatchModel)
                .where(BatchModel.status == BatchStatus.OPEN.value)
                .order_by(BatchModel.created_at.asc(), BatchModel.batch_id.asc())
            ).all()
            ready = [b.batch_id for b in open_batches if BatchLifecycle(session, b).is_ready(self.rules, now)]

        assigned: list[dict[str, Any]] = []
        for batch_id in ready:
            with self._transaction() as session:
                drivers = [d.driver_id for d in free_drivers(session)]
            if not drivers:
                logger.info("auto-assign stopped: no free drivers, %d ready batch(es) left", len(ready) - len(assigned))
                break
            try:
                batch = self.assign_driver(batch_id, drivers[0], now)
            except (InvalidTransition, NotFound, AllocationRace) as exc:
                logger.warning("auto-assign skipped batch %s: %s", batch_id, exc)
                continue
            assigned.append(
                {
                    "batch_id": batch.batch_id,
                    "driver_id": batch.driver_id,
                    "locality_key": batch.locality_key,
                    "scheduled_delivery_date": batch.scheduled_delivery_date.isoformat(),
                }
            )
        return assigned

    # -- maintenance --------------------------------------------------------

    def resync_locality(self, locality: str, now: datetime | None = None) -> ResyncReport:
        """Rebuild every batch of a locality from its members' current line items."""
        now = now or self.clock()
        report = ResyncReport(locality_key=locality)
        with self.guard.hold(locality_lock_key(locality)):
            with self._transaction() as session:
                batches = list(
                    session.scalars(
                        select(BatchModel)
                        .where(BatchModel.locality_key == locality)
                        .where(BatchModel.status != BatchStatus.CANCELLED.value)
                        .order_by(BatchModel.created_at.asc())
                    ).all()
                )
                by_id = {b.batch_id: b for b in batches}
                catalog = SqlProductCatalog(session)

                # Members of this locality's batches, plus orders left pointing at deleted batches.
                candidates = session.scalars(
                    select(OrderModel).where(
                        or_(
                            OrderModel.batch_id.in_(list(by_id)),
                            and_(
                                OrderModel.locality_key == locality,
                                OrderModel.batch_id.is_not(None),
                                OrderModel.batch_id.not_in(select(BatchModel.batch_id)),
                            ),
                        )
                    )
                ).all()

                for order in candidates:
                    batch = by_id.get(order.batch_id)
                    if batch is None:
                        report.stale_references.append({"order_id": order.order_id, "batch_id": order.batch_id})
                        order.batch_id = None
                        order.updated_at = now
                        continue
                    if order.approval_state != ApprovalState.APPROVED.value:
                        report.stale_references.append({"order_id": order.order_id, "batch_id": order.batch_id})
                        order.batch_id = None
                        order.delivery_state = DeliveryState.PENDING.value
                        order.updated_at = now
                        continue

                    own_locality = self._locality_of(order)
                    if own_locality != batch.locality_key and batch.status == BatchStatus.OPEN.value:
                        report.misplaced.append(
                            {"order_id": order.order_id, "batch_id": batch.batch_id, "locality_key": own_locality}
                        )
                        record_batch_event(
                            session,
                            batch,
                            "order_detached",
                            {"order_id": order.order_id, "reason": "locality mismatch"},
                            occurred_at=now,
                        )
                        order.batch_id = None
                        order.locality_key = own_locality
                        order.updated_at = now
                        continue

                    try:
                        weight = resolve_weight(order, catalog, self.settings.min_order_weight)
                    except InvalidWeight as exc:
                        entry = {"order_id": order.order_id, "batch_id": batch.batch_id, "reason": exc.reason}
                        if order.weight is None:
                            order.batch_id = None
                            order.batching_error = str(exc)
                            order.updated_at = now
                            entry["detached"] = True
                        report.unresolved.append(entry)
                        continue

                    if order.weight is None or Decimal(order.weight) != weight:
                        report.weight_corrections.append(
                            {
                                "order_id": order.order_id,
                                "batch_id": batch.batch_id,
                                "previous_weight": None if order.weight is None else str(order.weight),
                                "weight": str(weight),
                            }
                        )
                        order.weight = weight
                        order.updated_at = now

                reconciler = self._reconciler(session)
                for batch in batches:
                    batch_id = batch.batch_id
                    try:
                        result = reconciler.reconcile(batch_id, now)
                    except CapacityExceeded as exc:
                        report.capacity_violations.append(
                            {
                                "batch_id": batch_id,
                                "aggregate_weight": str(exc.aggregate_weight),
                                "capacity_ceiling": str(exc.capacity_ceiling),
                            }
                        )
                        continue
                    report.batches.append(result)
                    if result.drift and not result.orphaned:
                        record_batch_event(
                            session,
                            batch,
                            "resync_corrected",
                            {"previous_weight": result.previous_weight, "aggregate_weight": result.aggregate_weight},
                            occurred_at=now,
                        )

        if report.corrected or report.capacity_violations or report.unresolved:
            logger.warning(
                "resync corrected locality=%s weights=%d misplaced=%d stale=%d orphans=%d violations=%d unresolved=%d",
                locality,
                len(report.weight_corrections),
                len(report.misplaced),
                len(report.stale_references),
                len(report.orphans),
                len(report.capacity_violations),
                len(report.unresolved),
            )
        else:
            logger.info("resync clean: locality=%s batches=%d", locality, len(report.batches))
        return report

    def localities(self) -> list[str]:
        with self._transaction() as session:
            from_batches = session.scalars(
                select(BatchModel.locality_key).where(BatchModel.status != BatchStatus.CANCELLED.value).distinct()
            ).all()
            from_orders = session.scalars(
                select(OrderModel.locality_key).where(OrderModel.locality_key.is_not(None)).distinct()
            ).all()
        return sorted(set(from_batches) | set(from_orders))

    def resync_all(self, now: datetime | None = None) -> list[ResyncReport]:
        now = now or self.clock()
        return [self.resync_locality(locality, now) for locality in self.localities()]

    def batch_pending_orders(self, locality: str | None = None, now: datetime | None = None) -> dict[str, list]:
        """Retry allocation for every approved order that has no batch."""
        now = now or self.clock()
        with self._transaction() as session:
            pending = session.scalars(
                select(OrderModel)
                .where(OrderModel.approval_state == ApprovalState.APPROVED.value)
                .where(OrderModel.batch_id.is_(None))
                .order_by(OrderModel.approved_at.asc(), OrderModel.created_at.asc())
            ).all()
            order_ids = [o.order_id for o in pending if locality is None or self._locality_of(o) == locality]

        summary: dict[str, list] = {"allocated": [], "failed": [], "skipped": []}
        for order_id in order_ids:
            try:
                allocation = self.allocate_order(order_id, now)
            except (InvalidWeight, MissingLocality, AllocationRace) as exc:
                summary["failed"].append({"order_id": order_id, "error": type(exc).__name__, "detail": str(exc)})
                continue
            except AllocationAborted as exc:
                summary["skipped"].append({"order_id": order_id, "detail": str(exc)})
                continue
            summary["allocated"].append({"order_id": order_id, "batch_id": allocation.batch_id})

        logger.info(
            "batch-pending run: allocated=%d failed=%d skipped=%d",
            len(summary["allocated"]),
            len(summary["failed"]),
            len(summary["skipped"]),
        )
        return summary
