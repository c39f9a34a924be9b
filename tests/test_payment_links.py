from sqlalchemy.exc import OperationalError

from plateyard.models.customer import Customer
from plateyard.models.order import OrderTimelineEvent
from plateyard.models.webhook import WebhookQueueEntry
from plateyard.services.orders import PAYMENT_LINK_LOCK_REASON

NO_EMAIL = {"send_email": False}


def test_link_is_created_and_order_locked(client, db, make_order, make_product, payments):
    p45 = make_product(weight=45, price="50.00")
    order = make_order(items=[(p45, 2)])

    resp = client.post(f"/admin/orders/{order.id}/payment-link", json=NO_EMAIL)

    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["payment_url"].startswith("https://checkout.stripe.test/")
    assert body["already_exists"] is False
    assert body["warnings"] == []

    db.refresh(order)
    assert order.order_locked is True
    assert order.order_locked_reason == PAYMENT_LINK_LOCK_REASON
    assert order.payment_status == "pending"
    assert order.payment_link_url == body["payment_url"]
    assert order.stripe_checkout_session_id == body["checkout_session_id"]

    (call,) = payments.checkout_calls
    assert call["metadata"] == {"order_id": str(order.id), "order_number": order.order_number}
    assert call["line_items"][0]["price_data"]["unit_amount"] == 5000
    assert call["line_items"][0]["quantity"] == 2
    assert call["customer_email"] == order.customer_email

    customer = db.query(Customer).filter(Customer.id == order.customer_id).one()
    assert customer.stripe_customer_id.startswith("cus_")

    event = (
        db.query(OrderTimelineEvent)
        .filter(OrderTimelineEvent.order_id == order.id)
        .one()
    )
    assert event.event_type == "payment_link_created"
    assert event.event_data["checkout_session_id"] == body["checkout_session_id"]


def test_custom_amount_is_a_single_line(client, make_order, payments):
    order = make_order()
    client.post(
        f"/admin/orders/{order.id}/payment-link",
        json={"amount": "12.34", "send_email": False},
    )
    (call,) = payments.checkout_calls
    assert len(call["line_items"]) == 1
    assert call["line_items"][0]["price_data"]["unit_amount"] == 1234


def test_existing_link_is_returned_without_a_new_session(client, make_order, payments):
    order = make_order()
    first = client.post(f"/admin/orders/{order.id}/payment-link", json=NO_EMAIL).json()

    again = client.post(f"/admin/orders/{order.id}/payment-link", json=NO_EMAIL).json()

    assert again["already_exists"] is True
    assert again["payment_url"] == first["payment_url"]
    assert len(payments.checkout_calls) == 1


def test_link_fires_webhook_when_enabled(client, make_order, enable_webhooks, receiver):
    enable_webhooks()
    order = make_order()

    body = client.post(f"/admin/orders/{order.id}/payment-link", json=NO_EMAIL).json()

    assert body["webhook_sent"] is True
    (payload,) = receiver.payloads
    assert payload["event_type"] == "payment_link_created"
    assert payload["order_snapshot"]["payment_link_url"] == body["payment_url"]


def test_webhook_failure_is_a_warning_not_an_error(
    client, db, make_order, enable_webhooks, receiver
):
    enable_webhooks()
    receiver.status_code = 502
    order = make_order()

    resp = client.post(f"/admin/orders/{order.id}/payment-link", json=NO_EMAIL)

    assert resp.status_code == 200
    assert resp.json()["warnings"] == [{"effect": "webhook:payment_link", "error": "HTTP 502"}]
    db.refresh(order)
    assert order.order_locked is True
    assert db.query(WebhookQueueEntry).one().status == "queued"


def test_unconfigured_email_is_reported_as_warning(client, make_order):
    order = make_order()
    body = client.post(f"/admin/orders/{order.id}/payment-link", json={}).json()
    assert body["email_sent"] is False
    assert body["warnings"][0]["effect"] == "email:payment_link"


def test_locked_or_non_pending_orders_are_rejected(client, db, make_order, payments):
    locked = make_order()
    locked.order_locked = True
    locked.order_locked_reason = "Manual hold"
    paid = make_order()
    paid.status = "paid"
    db.commit()

    resp = client.post(f"/admin/orders/{locked.id}/payment-link", json=NO_EMAIL)
    assert resp.status_code == 400
    assert resp.json()["error"] == "Order is locked"

    resp = client.post(f"/admin/orders/{paid.id}/payment-link", json=NO_EMAIL)
    assert resp.status_code == 400
    assert "Current status: paid" in resp.json()["error"]

    assert payments.checkout_calls == []
    assert client.post("/admin/orders/777/payment-link", json=NO_EMAIL).status_code == 404


def test_order_save_failure_after_session_needs_reconciliation(
    client, db, make_order, payments, monkeypatch
):
    order = make_order()

    def fail_commit():
        raise OperationalError("UPDATE orders", {}, Exception("database is locked"))

    payments.after_session_created = lambda: monkeypatch.setattr(db, "commit", fail_commit)

    resp = client.post(f"/admin/orders/{order.id}/payment-link", json=NO_EMAIL)
    monkeypatch.undo()

    assert resp.status_code == 500
    body = resp.json()
    assert "needs reconciliation" in body["error"]
    (session_id,) = payments.sessions
    assert body["details"]["checkout_session_id"] == session_id
    assert body["details"]["payment_url"] == payments.sessions[session_id].url

    db.refresh(order)
    assert order.order_locked is False
    assert order.payment_link_url is None
    assert order.stripe_checkout_session_id is None


def test_amount_must_be_positive(client, make_order, payments):
    order = make_order()
    resp = client.post(
        f"/admin/orders/{order.id}/payment-link",
        json={"amount": "0", "send_email": False},
    )
    assert resp.status_code == 400
    assert payments.checkout_calls == []


def test_bulk_links_report_each_order(client, db, make_order):
    ok = make_order()
    done = make_order()
    done.status = "fulfilled"
    db.commit()

    resp = client.post(
        "/admin/orders/bulk-payment-links",
        json={"order_ids": [ok.id, done.id, 4040], "send_email": False},
    )

    assert resp.status_code == 200
    body = resp.json()
    assert (body["succeeded"], body["failed"]) == (1, 2)
    by_id = {r["order_id"]: r for r in body["results"]}
    assert by_id[ok.id]["payment_url"]
    assert by_id[4040]["error"] == "Order not found"

    db.refresh(ok)
    assert ok.batch_id == body["batch_id"]


def test_payment_success_page_marks_order_paid(client, db, make_order, payments):
    order = make_order()
    link = client.post(f"/admin/orders/{order.id}/payment-link", json=NO_EMAIL).json()
    session_id = link["checkout_session_id"]
    payments.mark_session_paid(session_id)

    resp = client.get(
        "/payments/success", params={"session_id": session_id, "order_id": order.id}
    )

    assert resp.status_code == 200, resp.text
    db.refresh(order)
    assert order.payment_status == "paid"
    assert order.status == "paid"
    assert order.stripe_payment_intent_id == f"pi_{session_id}"
    assert resp.json()["newly_paid"] is True

    again = client.get(
        "/payments/success", params={"session_id": session_id, "order_id": order.id}
    )
    assert again.json()["newly_paid"] is False
