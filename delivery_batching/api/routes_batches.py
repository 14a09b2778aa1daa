from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from delivery_batching.api.utils import audit_to_dict, batch_to_dict, get_consolidation_service, order_to_dict
from delivery_batching.batching.audit import list_batch_events
from delivery_batching.batching.errors import NotFound
from delivery_batching.batching.service import ConsolidationService
from delivery_batching.domain.states import BatchStatus
from delivery_batching.persistence.models import BatchModel, OrderModel
from delivery_batching.persistence.pg import get_session

router = APIRouter(tags=["batches"])


class AssignDriverRequest(BaseModel):
    driver_id: str = Field(min_length=1)


def _load_batch(session: Session, batch_id: str) -> BatchModel:
    batch = session.get(BatchModel, batch_id)
    if batch is None:
        raise NotFound("batch", batch_id)
    return batch


@router.get("/batches")
def list_batches(
    locality: str | None = Query(default=None),
    status: BatchStatus | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    session: Session = Depends(get_session),
):
    stmt = select(BatchModel).order_by(BatchModel.created_at.asc()).limit(limit)
    if locality:
        stmt = stmt.where(BatchModel.locality_key == locality)
    if status:
        stmt = stmt.where(BatchModel.status == status.value)

    rows = list(session.scalars(stmt).all())
    return {"count": len(rows), "batches": [batch_to_dict(row) for row in rows]}


@router.get("/batches/{batch_id}")
def read_batch(batch_id: str, session: Session = Depends(get_session)):
    batch = _load_batch(session, batch_id)
    members = session.scalars(
        select(OrderModel).where(OrderModel.batch_id == batch_id).order_by(OrderModel.approved_at.asc())
    ).all()
    return {**batch_to_dict(batch), "orders": [order_to_dict(o, include_items=False) for o in members]}


@router.get("/batches/{batch_id}/audit")
def read_batch_audit(batch_id: str, session: Session = Depends(get_session)):
    rows = list_batch_events(session, batch_id)
    if not rows:
        _load_batch(session, batch_id)
    return {"batch_id": batch_id, "events": [audit_to_dict(row) for row in rows]}


@router.post("/batches/auto-assign")
def auto_assign(service: ConsolidationService = Depends(get_consolidation_service)):
    assigned = service.auto_assign_ready_batches()
    return {"count": len(assigned), "assigned": assigned}


@router.post("/batches/{batch_id}/assign")
def assign_batch(
    batch_id: str,
    request: AssignDriverRequest,
    service: ConsolidationService = Depends(get_consolidation_service),
):
    return batch_to_dict(service.assign_driver(batch_id, request.driver_id))


@router.post("/batches/{batch_id}/start")
def start_batch(batch_id: str, service: ConsolidationService = Depends(get_consolidation_service)):
    return batch_to_dict(service.start_delivery(batch_id))


@router.post("/batches/{batch_id}/complete")
def complete_batch(batch_id: str, service: ConsolidationService = Depends(get_consolidation_service)):
    return batch_to_dict(service.complete_delivery(batch_id))
