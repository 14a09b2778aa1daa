from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from hashlib import sha256
from typing import Any, Callable, Iterator

from sqlalchemy import text
from sqlalchemy.engine import Engine

import delivery_batching.persistence.pg as pg
from delivery_batching.batching.errors import AllocationRace

logger = logging.getLogger(__name__)


def locality_lock_key(locality: str) -> str:
    return f"locality:{locality}"


def driver_lock_key(driver_id: str) -> str:
    return f"driver:{driver_id}"


def advisory_lock_id(key: str) -> int:
    # pg advisory locks take a signed bigint.
    return int.from_bytes(sha256(key.encode("utf-8")).digest()[:8], "big", signed=True)


class KeyedGuard:
    """Named mutual exclusion with bounded retry.

    ``hold(key)`` blocks up to ``timeout_seconds`` per attempt, retries with
    exponential backoff ``max_retries`` times, then raises ``AllocationRace``.
    Different keys never contend with each other.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 5.0,
        max_retries: int = 3,
        backoff_seconds: float = 0.05,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "KeyedGuard":
        return cls(
            timeout_seconds=settings.lock_timeout_seconds,
            max_retries=settings.lock_max_retries,
            backoff_seconds=settings.lock_retry_backoff_seconds,
            **kwargs,
        )

    def _try_acquire(self, key: str, timeout: float) -> Any | None:
        raise NotImplementedError

    def _release(self, key: str, token: Any) -> None:
        raise NotImplementedError

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        attempts = 0
        while True:
            attempts += 1
            token = self._try_acquire(key, self.timeout_seconds)
            if token is not None:
                break
            if attempts > self.max_retries:
                logger.warning("lock retries exhausted: key=%s attempts=%d", key, attempts)
                raise AllocationRace(key, attempts)
            delay = self.backoff_seconds * (2 ** (attempts - 1))
            logger.info("lock busy, retrying: key=%s attempt=%d delay=%.3fs", key, attempts, delay)
            self._sleep(delay)

        try:
            yield
        finally:
            self._release(key, token)


class LocalLockGuard(KeyedGuard):
    """In-process guard: one ``threading.Lock`` per key, shared by all instances.

    Registry entries are counted per holder and waiter and dropped when the
    count reaches zero, so the registry only holds keys currently in use.
    """

    # key -> [lock, holders and waiters]
    _lock_registry: dict[str, list] = {}
    _lock_registry_guard = threading.Lock()

    @classmethod
    def _checkout(cls, key: str) -> threading.Lock:
        with cls._lock_registry_guard:
            entry = cls._lock_registry.get(key)
            if entry is None:
                entry = cls._lock_registry[key] = [threading.Lock(), 0]
            entry[1] += 1
            return entry[0]

    @classmethod
    def _checkin(cls, key: str) -> None:
        with cls._lock_registry_guard:
            entry = cls._lock_registry[key]
            entry[1] -= 1
            if entry[1] == 0:
                del cls._lock_registry[key]

    def _try_acquire(self, key: str, timeout: float) -> threading.Lock | None:
        lock = self._checkout(key)
        if lock.acquire(timeout=timeout):
            return lock
        self._checkin(key)
        return None

    def _release(self, key: str, token: threading.Lock) -> None:
        token.release()
        self._checkin(key)


class PostgresAdvisoryGuard(KeyedGuard):
    """Cross-process guard on PostgreSQL session-level advisory locks.

    Each hold pins a dedicated connection for its duration so the lock is
    independent of the transaction doing the allocation work.
    """

    def __init__(self, engine_provider: Callable[[], Engine], *, poll_interval: float = 0.05, **kwargs):
        super().__init__(**kwargs)
        self._engine_provider = engine_provider
        self.poll_interval = poll_interval

    def _try_acquire(self, key: str, timeout: float):
        lock_id = advisory_lock_id(key)
        conn = self._engine_provider().connect()
        deadline = time.monotonic() + timeout
        try:
            while True:
                acquired = conn.execute(text("SELECT pg_try_advisory_lock(:lock_id)"), {"lock_id": lock_id}).scalar()
                conn.commit()
                if acquired:
                    return conn
                if time.monotonic() >= deadline:
                    conn.close()
                    return None
                time.sleep(self.poll_interval)
        except Exception:
            conn.close()
            raise

    def _release(self, key: str, token) -> None:
        try:
            token.execute(text("SELECT pg_advisory_unlock(:lock_id)"), {"lock_id": advisory_lock_id(key)})
            token.commit()
        finally:
            token.close()


def build_guard(settings) -> KeyedGuard:
    if settings.lock_backend == "postgres_advisory":
        return PostgresAdvisoryGuard.from_settings(settings, engine_provider=lambda: pg.engine)
    return LocalLockGuard.from_settings(settings)
