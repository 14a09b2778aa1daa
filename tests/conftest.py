from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

import delivery_batching.persistence.pg as pg
from delivery_batching.batching.service import ConsolidationService
from delivery_batching.core.config import get_settings
from delivery_batching.domain.catalog import upsert_product
from delivery_batching.domain.orders.commands import LineItemInput, place_order
from delivery_batching.persistence.models import Base

T0 = datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    return tmp_path_factory.mktemp("db") / "test.sqlite"


@pytest.fixture(scope="session", autouse=True)
def configure_test_engine(test_db_path: Path):
    engine = pg.create_engine_from_url(f"sqlite+pysqlite:///{test_db_path}")
    TestSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

    pg.engine = engine
    pg.SessionLocal = TestSessionLocal

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clean_tables(configure_test_engine):
    yield
    with pg.engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture()
def settings():
    settings = get_settings()
    snapshot = settings.model_dump()
    try:
        yield settings
    finally:
        for key, value in snapshot.items():
            setattr(settings, key, value)


@pytest.fixture()
def service(settings) -> ConsolidationService:
    return ConsolidationService(settings)


@pytest.fixture()
def client(configure_test_engine):
    from delivery_batching.main import app

    with TestClient(app) as c:
        yield c


@pytest.fixture()
def session(configure_test_engine):
    with pg.session_scope() as s:
        yield s


@pytest.fixture()
def make_order(settings):
    """Place a pending order of a given weight for a locality; returns its id.

    Each distinct weight gets its own catalog product with that unit weight,
    so one line of quantity 1 yields exactly the requested weight.
    """

    def _make(locality: str, weight: str | int, *, customer_id: str = "cust-1", created_at: datetime = T0) -> str:
        weight = Decimal(str(weight))
        product_id = f"sku-{weight}"
        with pg.session_scope() as s:
            upsert_product(s, product_id, f"crate {weight}", weight, now=created_at)
            order = place_order(
                s,
                customer_id,
                {"locality": locality, "street": "1 Main St"},
                [LineItemInput(product_id=product_id, quantity=1)],
                min_weight=settings.min_order_weight,
                now=created_at,
            )
            return order.order_id

    return _make
