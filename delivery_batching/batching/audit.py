from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from delivery_batching.core.clock import isoformat_z, now_utc
from delivery_batching.persistence.models import BatchAuditModel, BatchModel


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return isoformat_z(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def record_batch_event(
    session: Session,
    batch: BatchModel,
    event_type: str,
    detail: dict[str, Any] | None = None,
    occurred_at: datetime | None = None,
) -> BatchAuditModel:
    row = BatchAuditModel(
        batch_id=batch.batch_id,
        locality_key=batch.locality_key,
        event_type=event_type,
        detail=_jsonable(detail or {}),
        occurred_at=occurred_at or now_utc(),
    )
    session.add(row)
    return row


def list_batch_events(session: Session, batch_id: str) -> list[BatchAuditModel]:
    stmt = select(BatchAuditModel).where(BatchAuditModel.batch_id == batch_id).order_by(BatchAuditModel.id.asc())
    return list(session.scalars(stmt).all())
