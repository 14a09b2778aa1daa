from __future__ import annotations

from decimal import Decimal
from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from delivery_batching.api.utils import get_consolidation_service, order_to_dict
from delivery_batching.batching.events import ApprovalEvent
from delivery_batching.batching.service import ConsolidationService
from delivery_batching.core.config import get_settings
from delivery_batching.domain.orders.commands import LineItemInput, get_order, place_order
from delivery_batching.domain.states import ApprovalState
from delivery_batching.persistence.pg import get_session

router = APIRouter(tags=["orders"])


class LineItemRequest(BaseModel):
    product_id: str = Field(min_length=1)
    quantity: int
    unit_price: Decimal | None = None

    def to_input(self) -> LineItemInput:
        return LineItemInput(product_id=self.product_id, quantity=self.quantity, unit_price=self.unit_price)


class PlaceOrderRequest(BaseModel):
    customer_id: str = Field(min_length=1)
    delivery_address: dict[str, Any] = Field(default_factory=dict)
    items: list[LineItemRequest] = Field(default_factory=list)
    order_id: str | None = None


class ReplaceItemsRequest(BaseModel):
    items: list[LineItemRequest]
    # data repair after approval; reconciles the order's batch
    correction: bool = False


class ApprovalRequest(BaseModel):
    approval_state: ApprovalState


@router.post("/orders", status_code=201)
def create_order(request: PlaceOrderRequest, session: Session = Depends(get_session)):
    order = place_order(
        session,
        request.customer_id,
        request.delivery_address,
        [item.to_input() for item in request.items],
        min_weight=get_settings().min_order_weight,
        order_id=request.order_id,
    )
    return order_to_dict(order)


@router.get("/orders/{order_id}")
def read_order(order_id: str, session: Session = Depends(get_session)):
    return order_to_dict(get_order(session, order_id))


@router.put("/orders/{order_id}/items")
def update_order_items(
    order_id: str,
    request: ReplaceItemsRequest,
    session: Session = Depends(get_session),
    service: ConsolidationService = Depends(get_consolidation_service),
):
    items = [item.to_input() for item in request.items]
    if request.correction:
        outcome = service.correct_line_items(order_id, items)
        return {"correction": outcome.to_dict(), "order": order_to_dict(get_order(session, order_id))}

    service.edit_line_items(order_id, items)
    return {"order": order_to_dict(get_order(session, order_id))}


@router.post("/orders/{order_id}/approval")
def change_approval(
    order_id: str,
    request: ApprovalRequest,
    service: ConsolidationService = Depends(get_consolidation_service),
):
    outcome = service.handle_approval_event(ApprovalEvent(order_id=order_id, approval_state=request.approval_state))
    return outcome.to_dict()
