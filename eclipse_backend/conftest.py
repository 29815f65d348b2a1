# eclipse_backend/conftest.py
import os
import pytest
from unittest.mock import patch

# Before any settings object is built
os.environ.setdefault("ENV", "test")
os.environ.pop("TEST_DATABASE_URL", None)

from eclipse_backend.core.config import settings
from eclipse_backend.core.database import init_engine, create_all_tables, dispose_engine
from eclipse_backend.core.metrics import METRICS
from eclipse_backend.features.entitlements.store import (
    FileEntitlementStore,
    SqlEntitlementStore,
    set_store,
)
from eclipse_backend.tests.mocks import FakeBillingProvider, WEBHOOK_SECRET


@pytest.fixture(scope="function", autouse=True)
def sql_store():
    """
    Fresh in-memory SQLite database per test, installed as the process store.

    Every test starts from empty tables and zeroed counters.
    """
    init_engine("sqlite:///:memory:")
    create_all_tables()
    store = SqlEntitlementStore()
    set_store(store)
    METRICS.reset()
    yield store
    set_store(None)
    dispose_engine()


@pytest.fixture
def file_store(tmp_path):
    """JSON-file store installed as the process store."""
    store = FileEntitlementStore(tmp_path / "premium.json")
    set_store(store)
    yield store


@pytest.fixture
def sqlite_file_store(tmp_path, sql_store):
    """
    SQLite on disk instead of :memory:.

    The in-memory engine shares one connection between threads, so tests
    that write from several threads use this one.
    """
    dispose_engine()
    init_engine(f"sqlite:///{tmp_path / 'eclipse.db'}")
    create_all_tables()
    store = SqlEntitlementStore()
    set_store(store)
    yield store


@pytest.fixture(params=["sql", "file"])
def store(request):
    """Run a test against both store backends."""
    if request.param == "file":
        return request.getfixturevalue("file_store")
    return request.getfixturevalue("sql_store")


@pytest.fixture
def fake_provider(monkeypatch):
    """Billing enabled with an in-memory provider standing in for Stripe."""
    provider = FakeBillingProvider(webhook_secret=WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_fake")
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "STRIPE_PRICE_ID", "price_premium")
    with patch("eclipse_backend.features.billing.service.get_provider", return_value=provider):
        yield provider


@pytest.fixture
def billing_disabled(monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", None)
    monkeypatch.setattr(settings, "STRIPE_PRICE_ID", None)


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from eclipse_backend.main import app
    return TestClient(app)
