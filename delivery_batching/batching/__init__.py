from delivery_batching.batching.allocator import Allocation, BatchAllocator
from delivery_batching.batching.errors import (
    AllocationAborted,
    AllocationRace,
    BatchingError,
    BatchNotReady,
    CapacityExceeded,
    DriverUnavailable,
    InvalidTransition,
    InvalidWeight,
    MissingLocality,
    NotFound,
    OrderLocked,
    OrphanBatch,
)
from delivery_batching.batching.lifecycle import AssignmentRules, BatchLifecycle
from delivery_batching.batching.locality import UNKNOWN_LOCALITY, extract_locality
from delivery_batching.batching.reconciler import Reconciler, ReconcileResult
from delivery_batching.batching.selection import select_batch
from delivery_batching.batching.weights import WeighedItem, resolve_order_weight

__all__ = [
    "Allocation",
    "AllocationAborted",
    "AllocationRace",
    "AssignmentRules",
    "BatchAllocator",
    "BatchingError",
    "BatchLifecycle",
    "BatchNotReady",
    "CapacityExceeded",
    "DriverUnavailable",
    "InvalidTransition",
    "InvalidWeight",
    "MissingLocality",
    "NotFound",
    "OrderLocked",
    "OrphanBatch",
    "Reconciler",
    "ReconcileResult",
    "UNKNOWN_LOCALITY",
    "WeighedItem",
    "extract_locality",
    "resolve_order_weight",
    "select_batch",
]
