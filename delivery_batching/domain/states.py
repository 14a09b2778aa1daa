from __future__ import annotations

from enum import Enum


class ApprovalState(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class DeliveryState(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    DELIVERING = "delivering"
    DELIVERED = "delivered"


class BatchStatus(str, Enum):
    OPEN = "open"
    ASSIGNED = "assigned"
    DELIVERING = "delivering"
    DELIVERED = "delivered"
    # terminal state for orphaned batches retained under the "close" policy
    CANCELLED = "cancelled"


ACTIVE_BATCH_STATUSES = (BatchStatus.ASSIGNED.value, BatchStatus.DELIVERING.value)
