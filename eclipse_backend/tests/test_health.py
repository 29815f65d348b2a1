from unittest.mock import patch

from eclipse_backend.core.database import drop_all_tables
from eclipse_backend.features.entitlements.store import get_store


def test_healthz(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_readyz_ok(client):
    assert client.get("/readyz").json() == {"status": "ok"}


def test_readyz_store_down(client):
    with patch.object(get_store(), "ping", return_value=False):
        resp = client.get("/readyz")
    assert resp.status_code == 503


def test_readyz_missing_tables(client):
    drop_all_tables()
    resp = client.get("/readyz")
    assert resp.status_code == 503
    assert "user_entitlements" in resp.json()["detail"]


def test_readyz_file_backend(client, file_store):
    assert client.get("/readyz").status_code == 200
