from datetime import timedelta

import httpx
import pytest

from plateyard.core.errors import InvalidRequest
from plateyard.core.security import sign_payload
from plateyard.models.webhook import WebhookLogEntry, WebhookQueueEntry
from plateyard.services import webhook_notifier
from plateyard.services.webhook_notifier import (
    backoff_seconds,
    trigger_order_completed_webhook,
    trigger_payment_link_webhook,
    utcnow,
)
from plateyard.services.webhook_queue import process_webhook_queue

WEBHOOK_URL = "https://hooks.example.test/orders"


def _entries(db):
    return db.query(WebhookQueueEntry).order_by(WebhookQueueEntry.id).all()


def _later(minutes):
    return utcnow() + timedelta(minutes=minutes)


class TestSettings:
    def test_defaults(self, client):
        body = client.get("/admin/webhooks/settings").json()
        assert body["webhook_enabled"] is False
        assert body["webhook_url"] == ""
        assert body["webhook_timeout"] == 30
        assert body["webhook_retry_attempts"] == 3
        assert body["has_webhook_secret"] is False

    def test_update_and_secret_is_not_echoed(self, client):
        resp = client.patch(
            "/admin/webhooks/settings",
            json={
                "webhook_url": WEBHOOK_URL,
                "webhook_enabled": True,
                "webhook_secret": "s3cret",
            },
        )
        assert resp.status_code == 200
        body = resp.json()
        assert body["webhook_url"] == WEBHOOK_URL
        assert body["webhook_enabled"] is True
        assert body["has_webhook_secret"] is True
        assert "s3cret" not in resp.text

        listed = client.get("/admin/options").json()["options"]
        assert "webhook_secret" not in {o["option_name"] for o in listed}

    @pytest.mark.parametrize(
        "patch, message",
        [
            ({"webhook_timeout": 400}, "Webhook timeout must be between 5 and 300 seconds"),
            ({"webhook_timeout": 2}, "Webhook timeout must be between 5 and 300 seconds"),
            ({"webhook_retry_attempts": 11}, "Retry attempts must be between 0 and 10"),
            ({"webhook_retry_delay": 0}, "Retry delay must be between 1 and 3600 seconds"),
            ({"webhook_url": "not a url"}, "Invalid webhook URL format"),
        ],
    )
    def test_out_of_range_values_change_nothing(self, client, patch, message):
        resp = client.patch(
            "/admin/webhooks/settings", json={"webhook_enabled": True, **patch}
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == message

        body = client.get("/admin/webhooks/settings").json()
        assert body["webhook_enabled"] is False
        assert body["webhook_timeout"] == 30


def test_disabled_webhooks_queue_nothing(db, http, make_order, receiver):
    order = make_order()
    result = trigger_payment_link_webhook(db, http, order.id)
    assert result.success is False
    assert result.error == "Webhook disabled"
    assert _entries(db) == []
    assert receiver.requests == []


def test_missing_url_is_reported(db, http, make_order, enable_webhooks):
    enable_webhooks(webhook_url="")
    result = trigger_payment_link_webhook(db, http, make_order().id)
    assert result.error == "Webhook URL not configured"


def test_successful_delivery_is_sent_and_logged(db, http, make_order, enable_webhooks, receiver):
    enable_webhooks(webhook_secret="s3cret")
    order = make_order(email="pat@example.com")

    result = trigger_payment_link_webhook(db, http, order.id, {"created_via": "admin"})

    assert result.success is True
    assert result.status == "sent"
    (entry,) = _entries(db)
    assert entry.status == "sent"
    assert entry.attempts == 1
    assert entry.sent_at is not None

    (request,) = receiver.requests
    assert str(request.url) == WEBHOOK_URL
    assert request.headers["user-agent"] == "PlateYard-Webhook/1.0"
    assert request.headers["x-webhook-signature"] == sign_payload("s3cret", request.content)

    payload = receiver.payloads[0]
    assert payload["event_type"] == "payment_link_created"
    assert payload["metadata"]["created_via"] == "admin"
    assert payload["order_snapshot"]["order_number"] == order.order_number
    assert payload["order_snapshot"]["customer"]["email"] == "pat@example.com"
    assert payload["order_snapshot"]["items"][0]["quantity"] == 1

    (log,) = db.query(WebhookLogEntry).all()
    assert log.success is True
    assert log.status_code == 200
    assert log.queue_entry_id == entry.id


def test_payload_respects_include_flags(db, http, make_order, enable_webhooks, receiver):
    enable_webhooks(include_customer_data=False, include_order_items=False)
    trigger_order_completed_webhook(
        db, http, make_order().id, payment_info={"session_id": "cs_1"}
    )
    payload = receiver.payloads[0]
    assert payload["event_type"] == "order_completed"
    assert payload["payment"] == {"session_id": "cs_1"}
    assert "customer" not in payload["order_snapshot"]
    assert "items" not in payload["order_snapshot"]
    assert "x-webhook-signature" not in receiver.requests[0].headers


def test_failures_back_off_then_become_terminal(
    db, http, make_order, enable_webhooks, receiver
):
    enable_webhooks(webhook_retry_attempts=3, webhook_retry_delay=5)
    receiver.status_code = 500

    result = trigger_payment_link_webhook(db, http, make_order().id)

    assert result.success is False
    assert result.error == "HTTP 500"
    (entry,) = _entries(db)
    assert (entry.status, entry.attempts) == ("queued", 1)
    assert entry.next_retry_at is not None
    assert entry.last_error == "HTTP 500"

    # not due yet
    run = process_webhook_queue(db, http)
    assert run.processed == 0
    assert len(receiver.requests) == 1

    run = process_webhook_queue(db, http, now=_later(10))
    assert run.retried == 1
    db.refresh(entry)
    assert (entry.status, entry.attempts) == ("queued", 2)

    run = process_webhook_queue(db, http, now=_later(20))
    assert run.failed == 1
    db.refresh(entry)
    assert (entry.status, entry.attempts) == ("failed", 3)
    assert entry.failed_at is not None

    receiver.status_code = 200
    run = process_webhook_queue(db, http, now=_later(60))
    assert run.processed == 0
    assert len(receiver.requests) == 3
    assert db.query(WebhookLogEntry).count() == 3


def test_zero_retries_still_makes_one_attempt(db, http, make_order, enable_webhooks, receiver):
    enable_webhooks(webhook_retry_attempts=0)
    receiver.fail_with = httpx.ConnectError("connection refused")

    result = trigger_payment_link_webhook(db, http, make_order().id)

    assert result.success is False
    assert "ConnectError" in result.error
    (entry,) = _entries(db)
    assert entry.max_attempts == 1
    assert (entry.status, entry.attempts) == ("failed", 1)
    (log,) = db.query(WebhookLogEntry).all()
    assert log.status_code == 0
    assert log.success is False


def test_trigger_never_raises_for_missing_order(db, http, enable_webhooks):
    enable_webhooks()
    result = trigger_payment_link_webhook(db, http, 98765)
    assert result.success is False
    assert "not found" in result.error


@pytest.mark.parametrize(
    "delay, attempts, expected",
    [(5, 1, 5), (5, 2, 10), (5, 3, 20), (100, 3, 300), (3600, 1, 300)],
)
def test_backoff_is_capped(delay, attempts, expected):
    assert backoff_seconds(delay, attempts) == expected


def test_stats_count_deliveries_and_queue_states(
    client, db, http, make_order, enable_webhooks, receiver
):
    enable_webhooks(webhook_retry_attempts=2)
    trigger_payment_link_webhook(db, http, make_order().id)
    receiver.status_code = 503
    trigger_payment_link_webhook(db, http, make_order().id)

    body = client.get("/admin/webhooks/stats").json()

    assert body["total_sent"] == 2
    assert body["successful"] == 1
    assert body["failed"] == 1
    assert body["sent"] == 1
    assert body["queued"] == 1
    assert body["failed_entries"] == 0

    logs = client.get("/admin/webhooks/logs").json()
    assert len(logs) == 2
    queue = client.get("/admin/webhooks/queue", params={"status": "queued"}).json()
    assert [q["status"] for q in queue] == ["queued"]


def test_settings_patch_validation_is_all_or_nothing(db):
    with pytest.raises(InvalidRequest):
        webhook_notifier.update_settings(
            db, {"webhook_enabled": True, "webhook_retry_delay": 99999}
        )
    assert webhook_notifier.get_settings(db).enabled is False
