from __future__ import annotations

from datetime import time
from decimal import Decimal
from functools import lru_cache
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

AllocationStrategy = Literal["tightest_fit", "fifo", "loosest_fit"]
OrphanBatchPolicy = Literal["delete", "close"]
LockBackend = Literal["local", "postgres_advisory"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_prefix="DLB_", extra="ignore")

    app_name: str = "Delivery Batching"
    env: str = "dev"
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    log_level: str = "INFO"

    database_url: str = "sqlite+pysqlite:///./delivery_batching.db"

    capacity_ceiling: Decimal = Field(default=Decimal("3500"), description="max aggregate weight per batch")
    min_order_weight: Decimal = Field(
        default=Decimal("1"),
        description="sentinel weight for orders whose items sum to zero",
    )

    # tightest_fit | fifo | loosest_fit
    allocation_strategy: AllocationStrategy = "tightest_fit"
    # delete | close
    orphan_batch_policy: OrphanBatchPolicy = "delete"

    # A batch may be assigned once aggregate_weight >= capacity_ceiling * fill_ratio,
    # or once it has been open for assignment_deadline_hours.
    assignment_fill_ratio: float = 1.0
    assignment_deadline_hours: int = 48
    delivery_cutoff: time = time(15, 0)
    delivery_timezone: str = "UTC"

    # local | postgres_advisory
    lock_backend: LockBackend = "local"
    lock_timeout_seconds: float = 5.0
    lock_max_retries: int = 3
    lock_retry_backoff_seconds: float = 0.05

    # Scanned in order against free-text addresses lacking a structured locality.
    known_localities: list[str] = Field(default_factory=list)

    def model_post_init(self, __context) -> None:
        problems: list[str] = []
        if self.capacity_ceiling <= 0:
            problems.append("DLB_CAPACITY_CEILING must be > 0")
        if self.min_order_weight <= 0:
            problems.append("DLB_MIN_ORDER_WEIGHT must be > 0")
        if not 0 < self.assignment_fill_ratio <= 1:
            problems.append("DLB_ASSIGNMENT_FILL_RATIO must be in (0, 1]")
        if self.assignment_deadline_hours < 0:
            problems.append("DLB_ASSIGNMENT_DEADLINE_HOURS must be >= 0")
        if self.lock_timeout_seconds <= 0:
            problems.append("DLB_LOCK_TIMEOUT_SECONDS must be > 0")
        if self.lock_max_retries < 0:
            problems.append("DLB_LOCK_MAX_RETRIES must be >= 0")
        try:
            ZoneInfo(self.delivery_timezone)
        except (ZoneInfoNotFoundError, ValueError):
            problems.append(f"DLB_DELIVERY_TIMEZONE is not a known timezone: {self.delivery_timezone}")

        if problems:
            raise ValueError("invalid delivery batching settings: " + "; ".join(problems))

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.delivery_timezone)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
