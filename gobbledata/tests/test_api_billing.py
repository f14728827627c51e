"""Stripe routes, the entitlements summary and operational endpoints."""
import pytest
from fastapi.testclient import TestClient

from gobbledata.core.database import billing_events
from gobbledata.core.metrics import ga4_discovery_degraded_total
from gobbledata.dependencies import build_services
from gobbledata.main import create_app
from gobbledata.tests.mocks import VALID_SIGNATURE, make_settings, make_subscription, webhook_body


USER = {"X-User-Id": "user-a", "X-User-Email": "a@example.com"}


def test_checkout_rejects_unknown_price(client, billing_provider):
    resp = client.post("/api/stripe/create-checkout-session", headers=USER, json={"priceId": "price_other"})

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"
    assert billing_provider.checkout_calls == []


def test_checkout_returns_session(client, billing_provider):
    resp = client.post("/api/stripe/create-checkout-session", headers=USER, json={"priceId": "price_pro"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["sessionId"].startswith("cs_test")
    assert body["checkoutUrl"] == f"https://checkout.stripe.test/{body['sessionId']}"
    assert billing_provider.checkout_calls[0]["client_reference_id"] == "user-a"


def test_checkout_requires_price(client):
    resp = client.post("/api/stripe/create-checkout-session", headers=USER, json={})
    assert resp.status_code == 422


def test_verify_session_of_another_user(client, billing_provider):
    billing_provider.sessions["cs_1"] = {
        "id": "cs_1",
        "client_reference_id": "user-b",
        "subscription": make_subscription("sub_1", "price_pro"),
    }

    resp = client.get("/api/stripe/verify-session", params={"session_id": "cs_1"}, headers=USER)

    assert resp.status_code == 403
    assert resp.json()["error"]["code"] == "forbidden"
    assert resp.json()["detail"] == "Unauthorized access to session"


def test_verify_session_summary(client, billing_provider, services):
    services.entitlements.check_trial("user-a")
    billing_provider.sessions["cs_1"] = {
        "id": "cs_1",
        "client_reference_id": "user-a",
        "subscription": make_subscription("sub_1", "price_growth", unit_amount=3900),
    }

    resp = client.get("/api/stripe/verify-session", params={"session_id": "cs_1"}, headers=USER)

    assert resp.status_code == 200
    body = resp.json()
    assert body["planName"] == "Growth Plan"
    assert body["amount"] == 39.0
    assert body["customerEmail"] == "a@example.com"
    assert body["trialEnd"] == "No trial"

    entitlements = client.get("/api/entitlements", headers=USER).json()
    assert entitlements["plan"] == "growth"
    assert entitlements["limit"] == 2


def test_subscription_status_and_cancel(client, billing_provider, services):
    services.entitlements.check_trial("user-a")
    subscription = make_subscription("sub_1", "price_pro", status="active", metadata={"supabase_user_id": "user-a"})
    billing_provider.subscriptions["sub_1"] = subscription
    client.post(
        "/api/stripe/webhook",
        headers={"stripe-signature": VALID_SIGNATURE},
        content=webhook_body("evt_1", "customer.subscription.created", subscription),
    )

    status = client.get("/api/stripe/subscription", headers=USER).json()
    assert status["tier"] == "pro"
    assert status["status"] == "active"
    assert status["stripeDetails"]["cancel_at_period_end"] is False

    cancel = client.post("/api/stripe/cancel-subscription", headers=USER)
    assert cancel.status_code == 200
    assert cancel.json()["success"] is True
    assert billing_provider.subscriptions["sub_1"]["cancel_at_period_end"] is True


def test_cancel_without_subscription(client, services):
    services.entitlements.check_trial("user-a")
    resp = client.post("/api/stripe/cancel-subscription", headers=USER)
    assert resp.status_code == 404


def test_webhook_rejects_bad_signature(client):
    resp = client.post(
        "/api/stripe/webhook",
        headers={"stripe-signature": "t=1,v1=forged"},
        content=webhook_body("evt_1", "customer.subscription.updated", {}),
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_webhook"


def test_webhook_redelivery_is_acknowledged(client):
    body = webhook_body("evt_5", "invoice.paid", {"id": "in_1"})
    headers = {"stripe-signature": VALID_SIGNATURE}

    first = client.post("/api/stripe/webhook", headers=headers, content=body)
    second = client.post("/api/stripe/webhook", headers=headers, content=body)

    assert first.json() == {"received": True, "duplicate": False, "event_type": "invoice.paid"}
    assert second.json()["duplicate"] is True


def test_billing_disabled_returns_503(database, identity):
    services = build_services(make_settings(STRIPE_SECRET_KEY=None), database, identity=identity)
    with TestClient(create_app(services)) as client:
        resp = client.post("/api/stripe/create-checkout-session", headers=USER, json={"priceId": "price_pro"})
        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "billing_disabled"
        assert client.get("/readyz").json()["billing_enabled"] is False


def test_entitlements_for_new_user(client):
    resp = client.get("/api/entitlements", headers=USER)

    assert resp.status_code == 200
    body = resp.json()
    assert body["plan"] == "free"
    assert body["status"] == "trialing"
    assert body["can_add_property"] is True
    assert body["remaining"] == 1


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_readyz_reports_ready(client):
    resp = client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok", "billing_enabled": True}


def test_readyz_with_missing_tables(client, database):
    billing_events.drop(database.engine)
    resp = client.get("/readyz")

    assert resp.status_code == 503
    assert "billing_events" in resp.json()["detail"]
    billing_events.create(database.engine)


def test_metrics_exposes_counters(client):
    ga4_discovery_degraded_total.inc({"reason": "rateLimitExceeded"})

    resp = client.get("/metrics")

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    assert 'ga4_discovery_degraded_total{reason="rateLimitExceeded"} 1.0' in resp.text
    assert "# TYPE billing_mirror_write_failures_total counter" in resp.text
    assert "# HELP ga4_connections_deactivated_total GA4 connections marked inactive, by cause." in resp.text


def test_counter_rejects_undeclared_labels():
    with pytest.raises(ValueError):
        ga4_discovery_degraded_total.inc({"source": "callback"})
