from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from delivery_batching.core.clock import now_utc
from delivery_batching.domain.states import ACTIVE_BATCH_STATUSES
from delivery_batching.persistence.models import BatchModel, DriverModel


def upsert_driver(
    session: Session,
    driver_id: str,
    name: str,
    available: bool = True,
    now: datetime | None = None,
) -> DriverModel:
    now = now or now_utc()
    driver = session.get(DriverModel, driver_id)
    if driver is None:
        driver = DriverModel(driver_id=driver_id, name=name, updated_at=now)
        session.add(driver)
    driver.name = name
    driver.available = available
    driver.updated_at = now
    session.flush()
    return driver


def free_drivers(session: Session) -> list[DriverModel]:
    """Drivers signalled free and not holding an assigned or delivering batch."""
    busy = select(BatchModel.driver_id).where(
        BatchModel.driver_id.is_not(None),
        BatchModel.status.in_(ACTIVE_BATCH_STATUSES),
    )
    stmt = (
        select(DriverModel)
        .where(DriverModel.available.is_(True))
        .where(DriverModel.driver_id.not_in(busy))
        .order_by(DriverModel.driver_id.asc())
    )
    return list(session.scalars(stmt).all())
