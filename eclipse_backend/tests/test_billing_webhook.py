"""
Webhook endpoint tests: POST /api/billing/webhook.

Payloads are signed locally with the test secret and verified by the real
Stripe signature check.
"""
import time
from unittest.mock import patch

from eclipse_backend.core.errors import StoreWriteError
from eclipse_backend.core.metrics import billing_webhooks_total
from eclipse_backend.features.entitlements.store import get_store
from eclipse_backend.tests.mocks import (
    FailingLookupProvider,
    checkout_completed,
    invoice_paid,
    sign_payload,
    stripe_event,
    subscription_deleted,
)


def _post(client, payload: str, signature=None):
    headers = {"Content-Type": "application/json"}
    sig = sign_payload(payload) if signature is None else signature
    if sig:
        headers["Stripe-Signature"] = sig
    return client.post("/api/billing/webhook", content=payload.encode("utf-8"), headers=headers)


def _customer_for(user_id="user_alice", customer_id="cus_A"):
    get_store().assign_customer(user_id, customer_id)


def test_checkout_completed_grants_premium(client, fake_provider):
    _customer_for()
    payload = stripe_event("evt_1", "checkout.session.completed", checkout_completed("cus_A"), 1_700_000_000)

    resp = _post(client, payload)
    assert resp.status_code == 200
    assert resp.json() == {"received": True, "status": "applied", "event_id": "evt_1"}

    record = get_store().get("user_alice")
    assert record.is_premium is True
    assert billing_webhooks_total.value({"event_type": "checkout.session.completed", "outcome": "applied"}) == 1


def test_duplicate_delivery_is_acknowledged(client, fake_provider):
    _customer_for()
    payload = stripe_event("evt_1", "invoice.paid", invoice_paid("cus_A"), 1_700_000_000)

    assert _post(client, payload).json()["status"] == "applied"
    second = _post(client, payload)
    assert second.status_code == 200
    assert second.json()["status"] == "duplicate"


def test_out_of_order_cancellation_wins(client, fake_provider):
    _customer_for()
    cancel = stripe_event("ev_2", "customer.subscription.deleted", subscription_deleted("cus_A"), 1_700_000_200)
    renew = stripe_event("ev_1", "invoice.paid", invoice_paid("cus_A"), 1_700_000_100)

    assert _post(client, cancel).json()["status"] == "applied"
    late = _post(client, renew)
    assert late.status_code == 200
    assert late.json()["status"] == "rejected"
    assert get_store().get("user_alice").is_premium is False


def test_invalid_signature_rejected_without_changes(client, fake_provider):
    _customer_for()
    payload = stripe_event("evt_1", "invoice.paid", invoice_paid("cus_A"), 1_700_000_000)

    resp = _post(client, payload, signature=sign_payload(payload, secret="whsec_wrong"))
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "signature_invalid"
    assert get_store().get("user_alice").is_premium is False
    assert not get_store().has_event("evt_1")


def test_missing_signature_rejected(client, fake_provider):
    payload = stripe_event("evt_1", "invoice.paid", invoice_paid("cus_A"), 1_700_000_000)
    resp = _post(client, payload, signature="")
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "signature_invalid"


def test_expired_signature_rejected(client, fake_provider):
    payload = stripe_event("evt_1", "invoice.paid", invoice_paid("cus_A"), 1_700_000_000)
    old = sign_payload(payload, timestamp=int(time.time()) - 3600)
    assert _post(client, payload, signature=old).status_code == 400


def test_tampered_body_rejected(client, fake_provider):
    _customer_for()
    payload = stripe_event("evt_1", "invoice.paid", invoice_paid("cus_A"), 1_700_000_000)
    signature = sign_payload(payload)
    tampered = payload.replace("cus_A", "cus_B")
    assert _post(client, tampered, signature=signature).status_code == 400


def test_unhandled_event_type_ignored(client, fake_provider):
    payload = stripe_event("evt_9", "customer.created", {"id": "cus_A"}, 1_700_000_000)
    resp = _post(client, payload)
    assert resp.status_code == 200
    assert resp.json()["status"] == "ignored"
    assert billing_webhooks_total.value({"event_type": "customer.created", "outcome": "ignored"}) == 1


def test_unknown_customer_acknowledged(client, fake_provider):
    payload = stripe_event("evt_1", "invoice.paid", invoice_paid("cus_stranger"), 1_700_000_000)
    resp = _post(client, payload)
    assert resp.status_code == 200
    assert resp.json()["status"] == "unknown_customer"
    assert not get_store().has_event("evt_1")


def test_customer_attributed_through_metadata_tag(client, fake_provider):
    # Checkout created elsewhere; only the Stripe customer carries the user id
    fake_provider.add_customer("cus_T", "user_tagged")
    payload = stripe_event("evt_1", "checkout.session.completed", checkout_completed("cus_T"), 1_700_000_000)

    assert _post(client, payload).json()["status"] == "applied"
    record = get_store().get("user_tagged")
    assert record.is_premium is True
    assert record.billing_customer_id == "cus_T"


def test_store_failure_returns_500_for_redelivery(client, fake_provider):
    _customer_for()
    payload = stripe_event("evt_1", "invoice.paid", invoice_paid("cus_A"), 1_700_000_000)

    store = get_store()
    with patch.object(store, "commit_event", side_effect=StoreWriteError("database unavailable")):
        resp = _post(client, payload)
    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "store_write_failed"
    assert billing_webhooks_total.value({"event_type": "invoice.paid", "outcome": "error"}) == 1

    retry = _post(client, payload)
    assert retry.json()["status"] == "applied"


def test_provider_lookup_failure_returns_502(client, monkeypatch):
    from eclipse_backend.core.config import settings

    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_fake")
    provider = FailingLookupProvider()
    payload = stripe_event("evt_1", "invoice.paid", invoice_paid("cus_A"), 1_700_000_000)

    with patch("eclipse_backend.features.billing.service.get_provider", return_value=provider):
        resp = _post(client, payload)
    assert resp.status_code == 502
    assert resp.json()["error"]["code"] == "provider_error"


def test_webhook_disabled_without_stripe(client, billing_disabled):
    payload = stripe_event("evt_1", "invoice.paid", invoice_paid("cus_A"), 1_700_000_000)
    resp = _post(client, payload)
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "billing_disabled"


def test_checkout_to_cancellation_scenario(client, fake_provider):
    resp = client.post("/api/billing/checkout", json={"user_id": "u1"})
    assert resp.status_code == 200
    customer_id = get_store().get("u1").billing_customer_id

    completed = stripe_event("ev_1", "checkout.session.completed", checkout_completed(customer_id, "sub_1"), 100)
    assert _post(client, completed).json()["status"] == "applied"
    record = get_store().get("u1")
    assert record.is_premium is True
    assert record.billing_subscription_id == "sub_1"

    stale_cancel = stripe_event("ev_2", "customer.subscription.deleted", subscription_deleted(customer_id, "sub_1"), 50)
    assert _post(client, stale_cancel).json()["status"] == "rejected"
    assert get_store().get("u1").is_premium is True

    assert _post(client, completed).json()["status"] == "duplicate"
    assert client.get("/api/entitlement", params={"user_id": "u1"}).json() == {"isPremium": True}
