from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import pytest
from fastapi.testclient import TestClient

import app.persistence.pg as pg
from app.core.config import get_settings
from app.crm.client import InMemoryCrmClient
from app.distributor.client import FakeDistributorClient
from app.domain.orders.aggregates import Order
from app.domain.orders.commands import create_order
from app.persistence.models import Base
from app.reconciliation.orchestrator import ReconciliationOrchestrator
from factories import intake_payload, seed_ladders


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    return tmp_path_factory.mktemp("db") / "test.sqlite"


@pytest.fixture(scope="session", autouse=True)
def configure_test_engine(test_db_path: Path):
    settings = get_settings()
    settings.fulfillment_environment = "test"
    settings.distributor_backend = "fake"
    settings.crm_backend = "memory"
    settings.distributor_backoff_base_seconds = 0.0
    settings.distributor_backoff_max_seconds = 0.0
    settings.distributor_timeout_seconds = 5.0

    engine = pg.configure_engine(f"sqlite+pysqlite:///{test_db_path}")

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def session(configure_test_engine):
    with pg.session_scope() as s:
        yield s


@pytest.fixture()
def fake_distributor() -> FakeDistributorClient:
    return FakeDistributorClient()


@pytest.fixture()
def memory_crm() -> InMemoryCrmClient:
    return InMemoryCrmClient()


@pytest.fixture()
def orchestrator(fake_distributor, memory_crm) -> ReconciliationOrchestrator:
    return ReconciliationOrchestrator(distributor=fake_distributor, crm=memory_crm)


@pytest.fixture()
def client(configure_test_engine, orchestrator):
    from app.api.routes_orders import get_orchestrator
    from app.main import app

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def auth_headers() -> dict[str, str]:
    return {"X-API-Key": get_settings().operator_api_key}


@pytest.fixture()
def order_factory(configure_test_engine) -> Callable[..., Order]:
    def _make(items: list[dict[str, Any]], *, ladders: bool = True, **kwargs) -> Order:
        if ladders:
            seed_ladders(items)
        with pg.session_scope() as s:
            return create_order(s, intake_payload(items, **kwargs))

    return _make
