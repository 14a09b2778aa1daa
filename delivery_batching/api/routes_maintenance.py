from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from delivery_batching.api.utils import get_consolidation_service
from delivery_batching.batching.service import ConsolidationService

router = APIRouter(prefix="/maintenance", tags=["maintenance"])


class ResyncRequest(BaseModel):
    # None resyncs every locality that has batches or batched orders
    locality: str | None = None


class BatchPendingRequest(BaseModel):
    locality: str | None = None


@router.post("/resync")
def resync(request: ResyncRequest, service: ConsolidationService = Depends(get_consolidation_service)):
    if request.locality is not None:
        reports = [service.resync_locality(request.locality)]
    else:
        reports = service.resync_all()
    return {"count": len(reports), "reports": [report.to_dict() for report in reports]}


@router.post("/batch-pending")
def batch_pending(request: BatchPendingRequest, service: ConsolidationService = Depends(get_consolidation_service)):
    return service.batch_pending_orders(request.locality)
