from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Callable, Sequence

from delivery_batching.core.clock import ensure_utc
from delivery_batching.persistence.models import BatchModel


def remaining_capacity(batch: BatchModel) -> Decimal:
    return Decimal(batch.capacity_ceiling) - Decimal(batch.aggregate_weight)


def fits(batch: BatchModel, order_weight: Decimal) -> bool:
    return Decimal(batch.aggregate_weight) + order_weight <= Decimal(batch.capacity_ceiling)


def _created(batch: BatchModel) -> datetime:
    return ensure_utc(batch.created_at)


def _tightest_fit(batch: BatchModel) -> tuple:
    return (remaining_capacity(batch), _created(batch), batch.batch_id)


def _fifo(batch: BatchModel) -> tuple:
    return (_created(batch), batch.batch_id)


def _loosest_fit(batch: BatchModel) -> tuple:
    return (-remaining_capacity(batch), _created(batch), batch.batch_id)


STRATEGIES: dict[str, Callable[[BatchModel], tuple]] = {
    "tightest_fit": _tightest_fit,
    "fifo": _fifo,
    "loosest_fit": _loosest_fit,
}


def select_batch(candidates: Sequence[BatchModel], order_weight: Decimal, strategy: str) -> BatchModel | None:
    """Pick the batch an order joins, or None when nothing fits.

    tightest_fit: least remaining capacity that still fits, oldest on ties.
    fifo: oldest batch that fits.
    loosest_fit: most remaining capacity, oldest on ties.
    """
    try:
        sort_key = STRATEGIES[strategy]
    except KeyError as exc:
        raise ValueError(f"unknown allocation strategy: {strategy}") from exc

    eligible = [batch for batch in candidates if fits(batch, order_weight)]
    if not eligible:
        return None
    return min(eligible, key=sort_key)
