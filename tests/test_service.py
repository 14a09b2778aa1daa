from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

import delivery_batching.persistence.pg as pg
from delivery_batching.batching.errors import AllocationAborted, InvalidTransition, InvalidWeight, OrderLocked
from delivery_batching.batching.events import ApprovalEvent
from delivery_batching.domain.catalog import upsert_product
from delivery_batching.domain.drivers import upsert_driver
from delivery_batching.domain.orders.commands import LineItemInput, place_order, replace_line_items
from delivery_batching.persistence.models import BatchModel, OrderModel

T0 = datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc)


def _order(order_id: str) -> OrderModel:
    with pg.session_scope() as s:
        return s.get(OrderModel, order_id)


def _batch(batch_id: str) -> BatchModel | None:
    with pg.session_scope() as s:
        return s.get(BatchModel, batch_id)


def _place(address: dict, items: list[tuple[str, int]], settings) -> str:
    with pg.session_scope() as s:
        order = place_order(
            s,
            "cust-7",
            address,
            [LineItemInput(product_id=pid, quantity=qty) for pid, qty in items],
            min_weight=settings.min_order_weight,
            now=T0,
        )
        return order.order_id


@pytest.fixture()
def catalog():
    with pg.session_scope() as s:
        upsert_product(s, "rice-25", "Rice 25kg", Decimal("25"), Decimal("1250"), now=T0)
        upsert_product(s, "water-6", "Water 6x1.5l", Decimal("9.5"), Decimal("180"), now=T0)
        upsert_product(s, "mystery", "No weight on file", None, now=T0)


def test_placement_resolves_weight_and_prices(settings, catalog):
    order_id = _place({"barangay": "Poblacion"}, [("rice-25", 4), ("water-6", 2)], settings)
    order = _order(order_id)
    assert order.weight == Decimal("119")
    assert order.approval_state == "pending"
    with pg.session_scope() as s:
        prices = [line.unit_price for line in s.get(OrderModel, order_id).line_items]
    assert prices == [Decimal("1250"), Decimal("180")]


def test_unresolvable_weight_is_recorded_not_raised_at_placement(settings, catalog):
    order_id = _place({"locality": "Riverside"}, [("mystery", 1)], settings)
    order = _order(order_id)
    assert order.weight is None
    assert "no unit weight" in order.batching_error


def test_approval_of_unweighable_order_leaves_it_unbatched(service, settings, catalog):
    order_id = _place({"locality": "Riverside"}, [("mystery", 1)], settings)
    with pytest.raises(InvalidWeight):
        service.approve_order(order_id, now=T0)
    order = _order(order_id)
    assert order.approval_state == "approved"
    assert order.batch_id is None
    assert order.batching_error


def test_unknown_locality_still_batches_under_sentinel(service, settings, catalog):
    order_id = _place({"street": "no locality given"}, [("rice-25", 1)], settings)
    allocation = service.approve_order(order_id, now=T0).allocation
    assert allocation.locality_key == "unknown"


def test_approved_orders_are_locked_against_ordinary_edits(service, settings, catalog):
    order_id = _place({"locality": "Riverside"}, [("rice-25", 1)], settings)
    batch_id = service.approve_order(order_id, now=T0).allocation.batch_id
    with pytest.raises(OrderLocked):
        service.edit_line_items(order_id, [LineItemInput("rice-25", 9)], now=T0)
    assert _order(order_id).weight == Decimal("25")
    assert _batch(batch_id).aggregate_weight == Decimal("25")


def test_pending_edit_recomputes_weight(service, settings, catalog):
    order_id = _place({"locality": "Riverside"}, [("rice-25", 1)], settings)
    order = service.edit_line_items(order_id, [LineItemInput("water-6", 10)], now=T0)
    assert order.weight == Decimal("95")
    assert _order(order_id).weight == Decimal("95")


def test_edit_started_before_approval_cannot_land_after_it(service, settings, catalog):
    order_id = _place({"locality": "Riverside"}, [("rice-25", 40)], settings)
    session = pg.SessionLocal()
    try:
        # the editing session read the order while it was still pending
        assert session.get(OrderModel, order_id).approval_state == "pending"
        batch_id = service.approve_order(order_id, now=T0).allocation.batch_id
        with pytest.raises(OrderLocked):
            replace_line_items(session, order_id, [LineItemInput("rice-25", 80)], min_weight=Decimal("1"))
        session.rollback()
    finally:
        session.close()

    assert _order(order_id).weight == Decimal("1000")
    assert _batch(batch_id).aggregate_weight == Decimal("1000")


def test_correction_reconciles_the_batch(service, settings, catalog):
    order_id = _place({"locality": "Riverside"}, [("rice-25", 10)], settings)
    other_id = _place({"locality": "Riverside"}, [("rice-25", 20)], settings)
    batch_id = service.approve_order(order_id, now=T0).allocation.batch_id
    service.approve_order(other_id, now=T0)
    assert _batch(batch_id).aggregate_weight == Decimal("750")

    outcome = service.correct_line_items(order_id, [LineItemInput("rice-25", 4)], now=T0 + timedelta(hours=1))

    assert outcome.batch_id == batch_id
    assert outcome.weight == Decimal("100")
    assert outcome.allocation is None
    assert _batch(batch_id).aggregate_weight == Decimal("600")


def test_correction_that_overflows_moves_the_order(service, settings, catalog):
    order_id = _place({"locality": "Riverside"}, [("rice-25", 10)], settings)
    other_id = _place({"locality": "Riverside"}, [("rice-25", 100)], settings)
    batch_id = service.approve_order(order_id, now=T0).allocation.batch_id
    service.approve_order(other_id, now=T0)
    assert _batch(batch_id).aggregate_weight == Decimal("2750")

    # 2500 + 1500 no longer fits the 3500 ceiling
    outcome = service.correct_line_items(order_id, [LineItemInput("rice-25", 60)], now=T0)

    assert outcome.allocation is not None
    assert outcome.batch_id != batch_id
    assert _batch(batch_id).aggregate_weight == Decimal("2500")
    assert _batch(outcome.batch_id).aggregate_weight == Decimal("1500")


def test_correction_cannot_push_an_assigned_batch_over_capacity(service, make_order):
    with pg.session_scope() as s:
        upsert_driver(s, "drv-1", "Ana", now=T0)
        upsert_product(s, "heavy", "Heavy pallet", Decimal("2500"), now=T0)
    order_id = make_order("Riverside", 2000)
    other_id = make_order("Riverside", 1500)
    batch_id = service.approve_order(order_id, now=T0).allocation.batch_id
    service.approve_order(other_id, now=T0)
    service.assign_driver(batch_id, "drv-1", now=T0)

    with pytest.raises(InvalidTransition):
        service.correct_line_items(order_id, [LineItemInput("heavy", 1)], now=T0 + timedelta(hours=1))

    order = _order(order_id)
    assert order.weight == Decimal("2000")
    assert order.batch_id == batch_id
    batch = _batch(batch_id)
    assert batch.status == "assigned"
    assert batch.aggregate_weight == Decimal("3500")
    with pg.session_scope() as s:
        assert [line.product_id for line in s.get(OrderModel, order_id).line_items] == ["sku-2000"]


def test_correction_that_fits_an_assigned_batch_is_reconciled(service, make_order, catalog):
    with pg.session_scope() as s:
        upsert_driver(s, "drv-1", "Ana", now=T0)
    order_id = make_order("Riverside", 2000)
    other_id = make_order("Riverside", 1500)
    batch_id = service.approve_order(order_id, now=T0).allocation.batch_id
    service.approve_order(other_id, now=T0)
    service.assign_driver(batch_id, "drv-1", now=T0)

    outcome = service.correct_line_items(order_id, [LineItemInput("rice-25", 40)], now=T0 + timedelta(hours=1))

    assert outcome.batch_id == batch_id
    assert outcome.allocation is None
    assert _batch(batch_id).aggregate_weight == Decimal("2500")


def test_invalid_correction_changes_nothing(service, settings, catalog):
    order_id = _place({"locality": "Riverside"}, [("rice-25", 10)], settings)
    batch_id = service.approve_order(order_id, now=T0).allocation.batch_id

    with pytest.raises(InvalidWeight):
        service.correct_line_items(order_id, [LineItemInput("mystery", 1)], now=T0)

    order = _order(order_id)
    assert order.weight == Decimal("250")
    assert order.batch_id == batch_id
    assert _batch(batch_id).aggregate_weight == Decimal("250")


def test_allocation_aborts_when_approval_was_reversed(service, make_order):
    order_id = make_order("Riverside", 100)
    with pytest.raises(AllocationAborted):
        service.allocate_order(order_id, now=T0)
    assert _order(order_id).batch_id is None


def test_approval_events_route_to_approve_and_reverse(service, make_order):
    order_id = make_order("Riverside", 150)
    approved = service.handle_approval_event(ApprovalEvent(order_id=order_id, approval_state="approved"))
    assert approved.allocation is not None

    rejected = service.handle_approval_event(
        ApprovalEvent(order_id=order_id, approval_state="rejected", occurred_at=T0 + timedelta(hours=2))
    )
    assert rejected.approval_state == "rejected"
    assert rejected.reconcile.orphan_action == "deleted"
    assert _order(order_id).batch_id is None


def test_batch_pending_retries_fixed_orders(service, settings, catalog):
    order_id = _place({"locality": "Riverside"}, [("mystery", 2)], settings)
    with pytest.raises(InvalidWeight):
        service.approve_order(order_id, now=T0)

    first = service.batch_pending_orders(now=T0)
    assert first["allocated"] == []
    assert [f["order_id"] for f in first["failed"]] == [order_id]

    with pg.session_scope() as s:
        upsert_product(s, "mystery", "Now weighed", Decimal("3"), now=T0)

    second = service.batch_pending_orders(locality="riverside", now=T0 + timedelta(hours=1))
    assert [a["order_id"] for a in second["allocated"]] == [order_id]
    order = _order(order_id)
    assert order.weight == Decimal("6")
    assert order.batching_error is None


def test_batch_pending_filters_by_locality(service, settings, catalog):
    order_id = _place({"locality": "Lakeside"}, [("mystery", 1)], settings)
    with pytest.raises(InvalidWeight):
        service.approve_order(order_id, now=T0)
    summary = service.batch_pending_orders(locality="riverside", now=T0)
    assert summary == {"allocated": [], "failed": [], "skipped": []}


def test_resync_repairs_weights_from_catalog(service, settings, catalog):
    order_id = _place({"locality": "Riverside"}, [("water-6", 10)], settings)
    batch_id = service.approve_order(order_id, now=T0).allocation.batch_id
    with pg.session_scope() as s:
        upsert_product(s, "water-6", "Water 6x1.5l", Decimal("10"), now=T0)

    report = service.resync_locality("riverside", now=T0 + timedelta(hours=1))

    assert report.weight_corrections == [
        {"order_id": order_id, "batch_id": batch_id, "previous_weight": "95.000", "weight": "100.000"}
    ]
    assert report.batches[0].aggregate_weight == Decimal("100")
    assert _batch(batch_id).aggregate_weight == Decimal("100")
    assert report.corrected


def test_resync_detaches_misplaced_and_stale_members(service, make_order):
    misplaced_id = make_order("Riverside", 200)
    anchor_id = make_order("Riverside", 300)
    batch_id = service.approve_order(misplaced_id, now=T0).allocation.batch_id
    service.approve_order(anchor_id, now=T0)
    stale_id = make_order("Riverside", 50)
    with pg.session_scope() as s:
        s.get(OrderModel, misplaced_id).delivery_address = {"locality": "Lakeside"}
        # a rejected order left pointing at the batch
        s.get(OrderModel, stale_id).batch_id = batch_id

    report = service.resync_locality("riverside", now=T0)

    assert [m["order_id"] for m in report.misplaced] == [misplaced_id]
    assert [r["order_id"] for r in report.stale_references] == [stale_id]
    assert _batch(batch_id).aggregate_weight == Decimal("300")
    assert _order(misplaced_id).batch_id is None
    assert _order(misplaced_id).locality_key == "lakeside"

    follow_up = service.batch_pending_orders(now=T0)
    assert [a["order_id"] for a in follow_up["allocated"]] == [misplaced_id]
    assert _order(misplaced_id).locality_key == "lakeside"


def test_resync_cleans_up_orphans_and_is_clean_when_rerun(service, make_order):
    order_id = make_order("Riverside", 400)
    batch_id = service.approve_order(order_id, now=T0).allocation.batch_id
    with pg.session_scope() as s:
        # approval reversed behind the engine's back
        s.get(OrderModel, order_id).approval_state = "rejected"

    report = service.resync_locality("riverside", now=T0)
    assert [r.batch_id for r in report.orphans] == [batch_id]
    assert _batch(batch_id) is None

    again = service.resync_locality("riverside", now=T0)
    assert not again.corrected
    assert again.batches == []


def test_resync_reports_capacity_violations(service, make_order):
    order_id = make_order("Riverside", 3000)
    batch_id = service.approve_order(order_id, now=T0).allocation.batch_id
    with pg.session_scope() as s:
        product_id = s.get(OrderModel, order_id).line_items[0].product_id
        upsert_product(s, product_id, "heavier now", Decimal("3600"), now=T0)

    report = service.resync_locality("riverside", now=T0)

    assert [v["batch_id"] for v in report.capacity_violations] == [batch_id]
    # recorded as-is, never clamped
    assert _batch(batch_id).aggregate_weight == Decimal("3600")


def test_resync_all_covers_every_locality(service, make_order):
    service.approve_order(make_order("Riverside", 10), now=T0)
    service.approve_order(make_order("Lakeside", 10), now=T0)
    reports = service.resync_all(now=T0)
    assert sorted(r.locality_key for r in reports) == ["lakeside", "riverside"]
    with pg.session_scope() as s:
        assert len(s.scalars(select(BatchModel)).all()) == 2
