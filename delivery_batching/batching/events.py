from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from delivery_batching.domain.states import ApprovalState


class ApprovalEvent(BaseModel):
    """An order's approval changed upstream (payment confirmed, admin action)."""

    order_id: str = Field(min_length=1)
    approval_state: ApprovalState
    occurred_at: Optional[datetime] = None
