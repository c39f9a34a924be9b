from datetime import timedelta

from plateyard.models.webhook import WebhookQueueEntry
from plateyard.services.health import order_consistency
from plateyard.services.orders import utcnow


def test_public_health(anon_client):
    resp = anon_client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "status": "ok"}
    assert resp.headers["x-request-id"]


def test_request_id_is_echoed(anon_client):
    resp = anon_client.get("/health", headers={"X-Request-ID": "abc123"})
    assert resp.headers["x-request-id"] == "abc123"


def test_system_health_reports_counts_and_missing_config(client, make_order):
    make_order()

    resp = client.get("/admin/system/health")

    assert resp.status_code == 200
    body = resp.json()
    assert body["checks"]["database"]["ok"] is True
    assert body["checks"]["orders"]["total"] == 1
    assert body["checks"]["orders"]["pending"] == 1
    assert body["checks"]["counts"]["products"] == 1
    assert body["checks"]["configuration"]["stripe_webhook_secret"] is True
    # no STRIPE_API_KEY in the test environment
    assert body["status"] == "warning"
    assert "Stripe API key is not configured" in body["issues"]


def test_system_health_flags_stuck_queue_entries(client, db, make_order):
    order = make_order()
    db.add(
        WebhookQueueEntry(
            order_id=order.id,
            event_type="order_completed",
            webhook_url="https://hooks.example.test/orders",
            payload={},
            status="processing",
            attempts=1,
            max_attempts=3,
            updated_at=utcnow() - timedelta(hours=2),
        )
    )
    db.commit()

    body = client.get("/admin/system/health").json()

    assert body["checks"]["webhook_queue"]["stuck_processing"] == 1
    assert "1 webhook queue entries stuck in processing" in body["issues"]


def test_order_diagnostics_lists_problems(client, db, make_order):
    order = make_order()
    order.payment_link_url = "https://checkout.stripe.test/pay/x"
    order.stripe_checkout_session_id = "cs_x"
    db.commit()

    resp = client.get(f"/admin/orders/{order.id}/diagnostics")

    assert resp.status_code == 200
    body = resp.json()
    assert body["problems"] == ["Payment link exists but the order is not locked"]
    assert body["lock_status"]["has_payment_link"] is True
    assert body["webhook_queue"] == []


def test_consistent_order_has_no_problems(make_order):
    assert order_consistency(make_order()) == []


def test_admin_health_requires_admin(anon_client, db):
    resp = anon_client.get("/admin/system/health")
    assert resp.status_code == 401
    assert resp.json()["success"] is False


def test_stripe_settings_round_trip(client):
    assert client.get("/admin/system/stripe-settings").json()["default_tax_code"]

    resp = client.put("/admin/system/stripe-settings", json={"default_tax_code": "txcd_99999999"})
    assert resp.json()["default_tax_code"] == "txcd_99999999"

    assert client.put("/admin/system/stripe-settings", json={}).status_code == 400


def test_test_email_needs_mailgun(client):
    resp = client.post("/admin/system/test-email", json={"to": "ops@example.com"})
    assert resp.status_code == 503
    assert resp.json()["error"] == "Mailgun is not configured"
