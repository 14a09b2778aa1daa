from __future__ import annotations

from decimal import Decimal


class BatchingError(Exception):
    """Base class for consolidation engine failures."""


class NotFound(BatchingError):
    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} not found: {key}")


class InvalidWeight(BatchingError):
    """Order weight is non-positive or cannot be resolved from its line items.

    A data-quality problem: the order stays approved but unbatched until the
    source data is fixed.
    """

    def __init__(self, reason: str, order_id: str | None = None):
        self.reason = reason
        self.order_id = order_id
        prefix = f"order {order_id}: " if order_id else ""
        super().__init__(f"{prefix}{reason}")


class MissingLocality(BatchingError):
    def __init__(self, order_id: str | None = None):
        self.order_id = order_id
        super().__init__(f"no locality could be derived for order {order_id}")


class AllocationRace(BatchingError):
    """The locality lock could not be acquired within the retry budget."""

    def __init__(self, lock_key: str, attempts: int):
        self.lock_key = lock_key
        self.attempts = attempts
        super().__init__(f"lock contention on {lock_key!r} after {attempts} attempt(s)")


class AllocationAborted(BatchingError):
    """The order's approval changed before its batch reference was committed."""

    def __init__(self, order_id: str, approval_state: str):
        self.order_id = order_id
        self.approval_state = approval_state
        super().__init__(f"allocation aborted for order {order_id}: approval_state={approval_state}")


class OrphanBatch(BatchingError):
    def __init__(self, batch_id: str, locality_key: str):
        self.batch_id = batch_id
        self.locality_key = locality_key
        super().__init__(f"batch {batch_id} ({locality_key}) has no approved members")


class CapacityExceeded(BatchingError):
    """Invariant violation: an open batch weighs more than its ceiling."""

    def __init__(self, batch_id: str, aggregate_weight: Decimal, capacity_ceiling: Decimal):
        self.batch_id = batch_id
        self.aggregate_weight = aggregate_weight
        self.capacity_ceiling = capacity_ceiling
        super().__init__(
            f"batch {batch_id} weight {aggregate_weight} exceeds capacity ceiling {capacity_ceiling}"
        )


class InvalidTransition(BatchingError):
    pass


class BatchNotReady(InvalidTransition):
    pass


class DriverUnavailable(InvalidTransition):
    pass


class OrderLocked(BatchingError):
    def __init__(self, order_id: str, reason: str):
        self.order_id = order_id
        super().__init__(f"order {order_id} cannot be edited: {reason}")
