from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

import delivery_batching.persistence.pg as pg
from delivery_batching.batching.errors import BatchNotReady, DriverUnavailable, InvalidTransition
from delivery_batching.batching.lifecycle import TRANSITIONS, BatchLifecycle
from delivery_batching.batching.service import ConsolidationService
from delivery_batching.domain.drivers import free_drivers, upsert_driver
from delivery_batching.domain.states import BatchStatus
from delivery_batching.persistence.models import BatchAuditModel, BatchModel, OrderModel

T0 = datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc)


@pytest.fixture()
def drivers():
    with pg.session_scope() as s:
        upsert_driver(s, "drv-1", "Ana", now=T0)
        upsert_driver(s, "drv-2", "Ben", now=T0)
        upsert_driver(s, "drv-off", "Cy", available=False, now=T0)


def _full_batch(service, make_order, locality="Riverside", created_at=T0) -> tuple[str, list[str]]:
    order_ids = [make_order(locality, 2000), make_order(locality, 1500)]
    batch_id = None
    for order_id in order_ids:
        batch_id = service.approve_order(order_id, now=created_at).allocation.batch_id
    return batch_id, order_ids


def _delivery_states(order_ids) -> set[str]:
    with pg.session_scope() as s:
        return {s.get(OrderModel, oid).delivery_state for oid in order_ids}


def test_no_backward_or_skipping_transitions():
    assert BatchStatus.OPEN not in TRANSITIONS[BatchStatus.ASSIGNED]
    assert BatchStatus.DELIVERING not in TRANSITIONS[BatchStatus.OPEN]
    assert TRANSITIONS[BatchStatus.DELIVERED] == frozenset()
    assert TRANSITIONS[BatchStatus.CANCELLED] == frozenset()


def test_scenario_d_before_cutoff_is_delivered_tomorrow(service, make_order, drivers):
    batch_id, _ = _full_batch(service, make_order)
    batch = service.assign_driver(batch_id, "drv-1", now=datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc))
    assert batch.scheduled_delivery_date == date(2024, 3, 5)


def test_scenario_d_after_cutoff_is_delivered_day_after_tomorrow(service, make_order, drivers):
    batch_id, _ = _full_batch(service, make_order)
    batch = service.assign_driver(batch_id, "drv-1", now=datetime(2024, 3, 4, 16, 0, tzinfo=timezone.utc))
    assert batch.scheduled_delivery_date == date(2024, 3, 6)


def test_cutoff_is_configurable(settings, make_order, drivers):
    settings.delivery_cutoff = time(9, 0)
    service = ConsolidationService(settings)
    batch_id, _ = _full_batch(service, make_order)
    batch = service.assign_driver(batch_id, "drv-1", now=datetime(2024, 3, 4, 10, 0, tzinfo=timezone.utc))
    assert batch.scheduled_delivery_date == date(2024, 3, 6)


def test_full_lifecycle_cascades_to_members(service, make_order, drivers):
    batch_id, order_ids = _full_batch(service, make_order)
    assert _delivery_states(order_ids) == {"pending"}

    assigned = service.assign_driver(batch_id, "drv-1", now=T0)
    assert assigned.status == "assigned"
    assert assigned.driver_id == "drv-1"
    assert _delivery_states(order_ids) == {"assigned"}

    assert service.start_delivery(batch_id, now=T0 + timedelta(days=1)).status == "delivering"
    assert _delivery_states(order_ids) == {"delivering"}

    assert service.complete_delivery(batch_id, now=T0 + timedelta(days=1, hours=3)).status == "delivered"
    assert _delivery_states(order_ids) == {"delivered"}

    with pg.session_scope() as s:
        events = s.scalars(
            select(BatchAuditModel.event_type)
            .where(BatchAuditModel.batch_id == batch_id, BatchAuditModel.event_type.like("status:%"))
            .order_by(BatchAuditModel.id)
        ).all()
    assert events == ["status:assigned", "status:delivering", "status:delivered"]


def test_illegal_transitions_raise(service, make_order, drivers):
    batch_id, _ = _full_batch(service, make_order)
    with pytest.raises(InvalidTransition):
        service.start_delivery(batch_id, now=T0)
    with pytest.raises(InvalidTransition):
        service.complete_delivery(batch_id, now=T0)

    service.assign_driver(batch_id, "drv-1", now=T0)
    with pytest.raises(InvalidTransition):
        service.assign_driver(batch_id, "drv-2", now=T0)


def test_assigned_batch_accepts_no_new_orders(service, make_order, drivers):
    batch_id, _ = _full_batch(service, make_order)
    service.assign_driver(batch_id, "drv-1", now=T0)

    late = service.approve_order(make_order("Riverside", 10), now=T0 + timedelta(minutes=1)).allocation
    assert late.created_batch
    assert late.batch_id != batch_id


def test_underweight_young_batch_is_not_ready(service, make_order, drivers):
    batch_id = service.approve_order(make_order("Riverside", 100), now=T0).allocation.batch_id
    with pytest.raises(BatchNotReady):
        service.assign_driver(batch_id, "drv-1", now=T0 + timedelta(hours=1))
    with pg.session_scope() as s:
        assert s.get(BatchModel, batch_id).status == "open"


def test_deadline_makes_underweight_batch_ready(service, make_order, drivers):
    batch_id = service.approve_order(make_order("Riverside", 100), now=T0).allocation.batch_id
    batch = service.assign_driver(batch_id, "drv-1", now=T0 + timedelta(hours=48))
    assert batch.status == "assigned"


def test_fill_ratio_lowers_the_readiness_threshold(settings, make_order, drivers):
    settings.assignment_fill_ratio = 0.5
    service = ConsolidationService(settings)
    batch_id = service.approve_order(make_order("Riverside", 1750), now=T0).allocation.batch_id
    assert service.assign_driver(batch_id, "drv-1", now=T0).status == "assigned"


def test_unavailable_or_unknown_driver_is_refused(service, make_order, drivers):
    batch_id, _ = _full_batch(service, make_order)
    with pytest.raises(DriverUnavailable):
        service.assign_driver(batch_id, "drv-off", now=T0)
    with pytest.raises(DriverUnavailable):
        service.assign_driver(batch_id, "nobody", now=T0)


def test_driver_cannot_hold_two_active_batches(service, make_order, drivers):
    first, _ = _full_batch(service, make_order, "Riverside")
    second, _ = _full_batch(service, make_order, "Lakeside")
    service.assign_driver(first, "drv-1", now=T0)

    with pytest.raises(DriverUnavailable):
        service.assign_driver(second, "drv-1", now=T0)

    service.start_delivery(first, now=T0)
    service.complete_delivery(first, now=T0)
    assert service.assign_driver(second, "drv-1", now=T0).driver_id == "drv-1"


def test_free_drivers_excludes_busy_and_unavailable(service, make_order, drivers):
    batch_id, _ = _full_batch(service, make_order)
    service.assign_driver(batch_id, "drv-1", now=T0)
    with pg.session_scope() as s:
        assert [d.driver_id for d in free_drivers(s)] == ["drv-2"]


def test_auto_assign_pairs_ready_batches_oldest_first(service, make_order, drivers):
    older, _ = _full_batch(service, make_order, "Riverside", created_at=T0)
    newer, _ = _full_batch(service, make_order, "Lakeside", created_at=T0 + timedelta(minutes=30))
    third, _ = _full_batch(service, make_order, "Hillside", created_at=T0 + timedelta(minutes=45))
    not_ready = service.approve_order(make_order("Seaside", 10), now=T0).allocation.batch_id

    assigned = service.auto_assign_ready_batches(now=T0 + timedelta(hours=1))

    assert [(a["batch_id"], a["driver_id"]) for a in assigned] == [(older, "drv-1"), (newer, "drv-2")]
    with pg.session_scope() as s:
        assert s.get(BatchModel, third).status == "open"
        assert s.get(BatchModel, not_ready).status == "open"


def test_lifecycle_readiness_uses_aggregate_weight(session, make_order, service):
    batch_id, _ = _full_batch(service, make_order)
    batch = session.get(BatchModel, batch_id)
    lifecycle = BatchLifecycle(session, batch)
    assert lifecycle.accepts_orders()
    assert lifecycle.is_ready(service.rules, T0)
    assert Decimal(batch.aggregate_weight) == Decimal("3500")
