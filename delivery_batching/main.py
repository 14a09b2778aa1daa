from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from delivery_batching.api.routes_batches import router as batches_router
from delivery_batching.api.routes_catalog import router as catalog_router
from delivery_batching.api.routes_maintenance import router as maintenance_router
from delivery_batching.api.routes_orders import router as orders_router
from delivery_batching.batching.errors import (
    AllocationAborted,
    AllocationRace,
    BatchingError,
    CapacityExceeded,
    InvalidTransition,
    InvalidWeight,
    MissingLocality,
    NotFound,
    OrderLocked,
)
from delivery_batching.core.config import get_settings
from delivery_batching.core.logging import configure_logging
from delivery_batching.persistence.pg import init_db

configure_logging()
logger = logging.getLogger(__name__)
settings = get_settings()

app = FastAPI(title=settings.app_name)

# Most specific first; the first isinstance match wins.
ERROR_STATUS: list[tuple[type[BatchingError], int, str]] = [
    (NotFound, 404, "not_found"),
    (InvalidWeight, 422, "invalid_weight"),
    (MissingLocality, 422, "missing_locality"),
    (AllocationRace, 503, "allocation_race"),
    (AllocationAborted, 409, "allocation_aborted"),
    (OrderLocked, 409, "order_locked"),
    (InvalidTransition, 409, "invalid_transition"),
    (CapacityExceeded, 500, "capacity_exceeded"),
]


@app.on_event("startup")
def on_startup() -> None:
    init_db()
    logger.info(
        "delivery batching ready: env=%s capacity=%s strategy=%s orphan_policy=%s lock_backend=%s",
        settings.env,
        settings.capacity_ceiling,
        settings.allocation_strategy,
        settings.orphan_batch_policy,
        settings.lock_backend,
    )


@app.exception_handler(BatchingError)
async def batching_error_handler(_: Request, exc: BatchingError):
    status_code, error = 500, "batching_error"
    for exc_type, code, name in ERROR_STATUS:
        if isinstance(exc, exc_type):
            status_code, error = code, name
            break
    if status_code >= 500:
        logger.error("request failed: %s", exc)
    headers = {"Retry-After": "1"} if isinstance(exc, AllocationRace) else None
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": str(exc),
            "error": error,
        },
        headers=headers,
    )


@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


app.include_router(orders_router)
app.include_router(batches_router)
app.include_router(catalog_router)
app.include_router(maintenance_router)
