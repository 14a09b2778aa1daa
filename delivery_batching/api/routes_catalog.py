from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from delivery_batching.core.clock import isoformat_z
from delivery_batching.domain.catalog import upsert_product
from delivery_batching.domain.drivers import free_drivers, upsert_driver
from delivery_batching.persistence.pg import get_session

router = APIRouter(tags=["catalog"])


class ProductRequest(BaseModel):
    name: str = Field(min_length=1)
    unit_weight: Decimal | None = None
    unit_price: Decimal = Decimal("0")


class DriverRequest(BaseModel):
    name: str = Field(min_length=1)
    available: bool = True


@router.put("/products/{product_id}")
def sync_product(product_id: str, request: ProductRequest, session: Session = Depends(get_session)):
    product = upsert_product(session, product_id, request.name, request.unit_weight, request.unit_price)
    return {
        "product_id": product.product_id,
        "name": product.name,
        "unit_weight": None if product.unit_weight is None else str(product.unit_weight),
        "unit_price": str(product.unit_price),
        "updated_at": isoformat_z(product.updated_at),
    }


@router.put("/drivers/{driver_id}")
def sync_driver(driver_id: str, request: DriverRequest, session: Session = Depends(get_session)):
    driver = upsert_driver(session, driver_id, request.name, request.available)
    return {
        "driver_id": driver.driver_id,
        "name": driver.name,
        "available": driver.available,
        "updated_at": isoformat_z(driver.updated_at),
    }


@router.get("/drivers/free")
def list_free_drivers(session: Session = Depends(get_session)):
    return {"drivers": [{"driver_id": d.driver_id, "name": d.name} for d in free_drivers(session)]}
