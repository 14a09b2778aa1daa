from __future__ import annotations

import uuid
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import JSON

from delivery_batching.domain.states import ApprovalState, BatchStatus, DeliveryState


def _json_type():
    return JSON().with_variant(JSONB(astext_type=Text()), "postgresql")


def _weight_type():
    return Numeric(12, 3, asdecimal=True)


def _new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class ProductModel(Base):
    __tablename__ = "products"

    product_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    unit_weight: Mapped[Optional[Decimal]] = mapped_column(_weight_type(), nullable=True)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2, asdecimal=True), nullable=False, default=Decimal("0"))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class DriverModel(Base):
    __tablename__ = "drivers"

    driver_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    available: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class BatchModel(Base):
    __tablename__ = "batches"

    batch_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    locality_key: Mapped[str] = mapped_column(String(256), nullable=False)
    # Written only by the reconciler.
    aggregate_weight: Mapped[Decimal] = mapped_column(_weight_type(), nullable=False, default=Decimal("0"))
    capacity_ceiling: Mapped[Decimal] = mapped_column(_weight_type(), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=BatchStatus.OPEN.value)
    driver_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        ForeignKey("drivers.driver_id", ondelete="SET NULL"),
        nullable=True,
    )
    scheduled_delivery_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    orders: Mapped[list["OrderModel"]] = relationship(back_populates="batch", passive_deletes=True)


class OrderModel(Base):
    __tablename__ = "orders"

    order_id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    customer_id: Mapped[str] = mapped_column(String(128), nullable=False)
    delivery_address: Mapped[dict] = mapped_column(_json_type(), nullable=False, default=dict)
    locality_key: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    weight: Mapped[Optional[Decimal]] = mapped_column(_weight_type(), nullable=True)
    approval_state: Mapped[str] = mapped_column(String(16), nullable=False, default=ApprovalState.PENDING.value)
    delivery_state: Mapped[str] = mapped_column(String(16), nullable=False, default=DeliveryState.PENDING.value)
    batch_id: Mapped[Optional[str]] = mapped_column(
        String(36),
        ForeignKey("batches.batch_id", ondelete="SET NULL"),
        nullable=True,
    )
    # Why an approved order is still unbatched (data-quality problem awaiting a fix).
    batching_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    batch: Mapped[Optional[BatchModel]] = relationship(back_populates="orders")
    line_items: Mapped[list["LineItemModel"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="LineItemModel.line_id",
    )


class LineItemModel(Base):
    __tablename__ = "order_line_items"

    line_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("orders.order_id", ondelete="CASCADE"),
        nullable=False,
    )
    product_id: Mapped[str] = mapped_column(String(64), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2, asdecimal=True), nullable=False, default=Decimal("0"))

    order: Mapped[OrderModel] = relationship(back_populates="line_items")


class BatchAuditModel(Base):
    __tablename__ = "batch_audit"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Not a foreign key: entries outlive deleted batches.
    batch_id: Mapped[str] = mapped_column(String(36), nullable=False)
    locality_key: Mapped[str] = mapped_column(String(256), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    detail: Mapped[dict] = mapped_column(_json_type(), nullable=False, default=dict)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


Index("ix_batches_locality_status", BatchModel.locality_key, BatchModel.status)
Index("ix_batches_driver_status", BatchModel.driver_id, BatchModel.status)
Index("ix_orders_batch_approval", OrderModel.batch_id, OrderModel.approval_state)
Index("ix_orders_locality_approval", OrderModel.locality_key, OrderModel.approval_state)
Index("ix_order_line_items_order", LineItemModel.order_id)
Index("ix_batch_audit_batch", BatchAuditModel.batch_id)
