from __future__ import annotations

from decimal import Decimal

from delivery_batching.batching.service import ConsolidationService
from delivery_batching.core.clock import isoformat_z
from delivery_batching.persistence.models import BatchAuditModel, BatchModel, OrderModel


def get_consolidation_service() -> ConsolidationService:
    return ConsolidationService()


def _weight(value: Decimal | None) -> str | None:
    return None if value is None else str(value)


def order_to_dict(order: OrderModel, include_items: bool = True) -> dict:
    payload = {
        "order_id": order.order_id,
        "customer_id": order.customer_id,
        "delivery_address": order.delivery_address,
        "locality_key": order.locality_key,
        "weight": _weight(order.weight),
        "approval_state": order.approval_state,
        "delivery_state": order.delivery_state,
        "batch_id": order.batch_id,
        "batching_error": order.batching_error,
        "created_at": isoformat_z(order.created_at),
        "approved_at": isoformat_z(order.approved_at),
        "updated_at": isoformat_z(order.updated_at),
    }
    if include_items:
        payload["line_items"] = [
            {
                "product_id": line.product_id,
                "quantity": line.quantity,
                "unit_price": str(line.unit_price),
            }
            for line in order.line_items
        ]
    return payload


def batch_to_dict(batch: BatchModel) -> dict:
    return {
        "batch_id": batch.batch_id,
        "locality_key": batch.locality_key,
        "aggregate_weight": _weight(batch.aggregate_weight),
        "capacity_ceiling": _weight(batch.capacity_ceiling),
        "status": batch.status,
        "driver_id": batch.driver_id,
        "scheduled_delivery_date": (
            batch.scheduled_delivery_date.isoformat() if batch.scheduled_delivery_date else None
        ),
        "created_at": isoformat_z(batch.created_at),
        "assigned_at": isoformat_z(batch.assigned_at),
        "updated_at": isoformat_z(batch.updated_at),
    }


def audit_to_dict(row: BatchAuditModel) -> dict:
    return {
        "id": row.id,
        "batch_id": row.batch_id,
        "locality_key": row.locality_key,
        "event_type": row.event_type,
        "detail": row.detail,
        "occurred_at": isoformat_z(row.occurred_at),
    }
