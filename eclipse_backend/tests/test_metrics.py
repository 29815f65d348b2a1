from eclipse_backend.core.metrics import (
    MetricsRegistry,
    billing_customers_created_total,
    http_requests_total,
    normalize_path,
)


def test_normalize_path_collapses_ids():
    assert normalize_path("/api/customers/cus_ABC123/") == "/api/customers/:id"
    assert normalize_path("/api/events/evt_1Nx/sub_9") == "/api/events/:id/:id"
    assert normalize_path("/api/items/42") == "/api/items/:id"
    assert normalize_path("/api/entitlement") == "/api/entitlement"


def test_counter_export_format():
    registry = MetricsRegistry()
    counter = registry.counter("billing_webhooks_total", ["event_type", "outcome"])
    counter.inc({"event_type": "invoice.paid", "outcome": "applied"})
    counter.inc({"event_type": "invoice.paid", "outcome": "applied"})

    text = registry.export_prometheus()
    assert "# TYPE billing_webhooks_total counter" in text
    assert 'billing_webhooks_total{event_type="invoice.paid",outcome="applied"} 2.0' in text


def test_registry_returns_same_counter():
    registry = MetricsRegistry()
    assert registry.counter("a_total") is registry.counter("a_total")


def test_metrics_endpoint(client, fake_provider):
    client.post("/api/billing/checkout", json={"user_id": "user_alice"})
    client.get("/api/entitlement", params={"user_id": "user_alice"})

    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert "billing_customers_created_total 1.0" in resp.text
    assert 'http_requests_total{method="GET",path="/api/entitlement",status="200"} 1.0' in resp.text
    assert billing_customers_created_total.value() == 1


def test_request_paths_keep_their_prefix(client):
    client.get("/api/entitlement", params={"user_id": "user_alice"})
    client.get("/entitlement", params={"user_id": "user_alice"})

    assert http_requests_total.value(
        {"method": "GET", "path": "/api/entitlement", "status": "200"}
    ) == 1
    assert http_requests_total.value(
        {"method": "GET", "path": "/entitlement", "status": "200"}
    ) == 1


def test_unmatched_paths_collapse_ids(client):
    client.get("/api/customers/cus_ABC123")
    assert http_requests_total.value(
        {"method": "GET", "path": "/api/customers/:id", "status": "404"}
    ) == 1
