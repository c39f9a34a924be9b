import os
from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import OperationalError

from plateyard.models.order import Order, OrderTimelineEvent
from plateyard.services import orders as order_service


def _events(db, order_id, event_type=None):
    q = db.query(OrderTimelineEvent).filter(OrderTimelineEvent.order_id == order_id)
    if event_type:
        q = q.filter(OrderTimelineEvent.event_type == event_type)
    return q.order_by(OrderTimelineEvent.id).all()


@pytest.mark.parametrize("new_status", ["confirmed", "paid", "fulfilled", "cancelled"])
def test_status_update_sets_status_and_appends_event(client, make_order, db, new_status):
    order = make_order()

    resp = client.post(
        f"/admin/orders/{order.id}/status", json={"status": new_status, "notes": "called"}
    )

    assert resp.status_code == 200, resp.text
    assert resp.json()["order"]["status"] == new_status
    db.refresh(order)
    assert order.status == new_status

    (event,) = _events(db, order.id, "status_changed")
    assert event.event_data["new_status"] == new_status
    assert event.event_data["old_status"] == "pending"
    assert event.event_data["notes"] == "called"
    assert event.created_by == "admin"


def test_status_update_rejects_unknown_status(client, make_order, db):
    order = make_order()
    resp = client.post(f"/admin/orders/{order.id}/status", json={"status": "shipped"})
    assert resp.status_code == 400
    db.refresh(order)
    assert order.status == "pending"
    assert _events(db, order.id) == []


def test_status_update_missing_order_is_404(client):
    resp = client.post("/admin/orders/424242/status", json={"status": "paid"})
    assert resp.status_code == 404
    assert resp.json()["error"] == "Order not found"


def test_timeline_failure_does_not_fail_status_update(client, make_order, db, monkeypatch):
    order = make_order()

    def broken(*args, **kwargs):
        raise OperationalError("INSERT INTO order_timeline", {}, Exception("disk full"))

    monkeypatch.setattr(order_service, "add_timeline_event", broken)

    resp = client.post(f"/admin/orders/{order.id}/status", json={"status": "confirmed"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["order"]["status"] == "confirmed"
    assert body["warnings"][0]["effect"] == "timeline:status_changed"
    db.refresh(order)
    assert order.status == "confirmed"


def test_update_status_outcome_reports_side_effects(db, make_order, monkeypatch):
    order = make_order()
    outcome = order_service.update_status(db, order.id, "confirmed")
    assert outcome.ok
    assert outcome.value.status == "confirmed"

    monkeypatch.setattr(
        order_service,
        "add_timeline_event",
        lambda *a, **k: (_ for _ in ()).throw(OperationalError("x", {}, Exception("y"))),
    )
    outcome = order_service.update_status(db, order.id, "paid")
    assert not outcome.ok
    assert outcome.value.status == "paid"


class TestCancellation:
    def test_pending_order_can_be_cancelled(self, anon_client, make_order, db):
        order = make_order()
        resp = anon_client.post(
            f"/orders/{order.order_number.lower()}/cancel", json={"reason": "changed mind"}
        )
        assert resp.status_code == 200, resp.text
        db.refresh(order)
        assert order.status == "cancelled"
        assert order.cancellation_reason == "changed mind"
        assert order.cancelled_at is not None
        assert _events(db, order.id, "order_cancelled")[0].created_by == "customer"

    def test_default_reason(self, anon_client, make_order, db):
        order = make_order()
        anon_client.post(f"/orders/{order.order_number}/cancel")
        db.refresh(order)
        assert order.cancellation_reason == "Cancelled by customer"

    @pytest.mark.parametrize("status", ["confirmed", "paid", "fulfilled", "cancelled"])
    def test_non_pending_order_is_rejected_untouched(self, anon_client, make_order, db, status):
        order = make_order()
        order.status = status
        db.commit()

        resp = anon_client.post(f"/orders/{order.order_number}/cancel")

        assert resp.status_code == 400
        assert resp.json()["error"] == f"Order cannot be cancelled. Current status: {status}"
        db.refresh(order)
        assert order.status == status
        assert order.cancelled_at is None

    def test_invoiced_order_is_rejected_untouched(self, anon_client, make_order, db):
        order = make_order()
        order.invoiced_at = datetime(2026, 1, 2, tzinfo=timezone.utc)
        db.commit()

        resp = anon_client.post(f"/orders/{order.order_number}/cancel")

        assert resp.status_code == 400
        assert "invoiced" in resp.json()["error"]
        db.refresh(order)
        assert order.status == "pending"

    def test_unknown_order_is_404(self, anon_client):
        assert anon_client.post("/orders/CBP-NOPE00/cancel").status_code == 404


def test_lookup_matches_number_and_email(anon_client, make_order):
    order = make_order(email="pat@example.com")

    resp = anon_client.post(
        "/orders/lookup",
        json={"order_number": order.order_number.lower(), "email": "PAT@example.com"},
    )
    assert resp.status_code == 200
    assert resp.json()["can_modify"] is True

    resp = anon_client.post(
        "/orders/lookup",
        json={"order_number": order.order_number, "email": "someone@else.com"},
    )
    assert resp.status_code == 404

    resp = anon_client.post("/orders/lookup", json={"order_number": "", "email": ""})
    assert resp.status_code == 400


def test_customer_edit_changes_items_and_logs(anon_client, make_order, make_product, db):
    order = make_order(email="pat@example.com")
    p10 = make_product(weight=10, price="20.00", regular="25.00")

    resp = anon_client.patch(
        f"/orders/{order.order_number}",
        json={
            "email": "pat@example.com",
            "city": "Raleigh",
            "items": [{"product_id": p10.id, "quantity": 3}],
        },
    )

    assert resp.status_code == 200, resp.text
    db.refresh(order)
    assert order.city == "Raleigh"
    assert str(order.subtotal) == "60.00"
    assert order.total_weight == 60
    event = _events(db, order.id, "order_modified")[0]
    assert set(event.event_data["changed"]) == {"city", "items"}


def test_locked_order_cannot_be_edited(anon_client, make_order, db):
    order = make_order(email="pat@example.com")
    order.order_locked = True
    order.order_locked_reason = order_service.PAYMENT_LINK_LOCK_REASON
    order.payment_link_url = "https://checkout.stripe.test/x"
    db.commit()

    resp = anon_client.patch(
        f"/orders/{order.order_number}", json={"email": "pat@example.com", "city": "Cary"}
    )

    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "This order can no longer be modified"
    assert order_service.PAYMENT_LINK_LOCK_REASON in body["details"]["reasons"]
    db.refresh(order)
    assert order.city is None


def test_lock_status(anon_client, make_order, db):
    order = make_order()
    resp = anon_client.get(f"/orders/{order.id}/lock-status")
    assert resp.json()["can_modify"] is True
    assert resp.json()["has_payment_link"] is False

    order.order_locked = True
    db.commit()
    resp = anon_client.get(f"/orders/{order.id}/lock-status")
    assert resp.json()["order_locked"] is True
    assert resp.json()["can_modify"] is False


class TestAdminActions:
    def test_invalid_action(self, client, make_order):
        order = make_order()
        resp = client.patch(f"/admin/orders/{order.id}", json={"action": "refund"})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid action"

    def test_mark_paid_then_fulfil(self, client, make_order, db):
        order = make_order()

        resp = client.patch(f"/admin/orders/{order.id}", json={"action": "mark_paid"})
        assert resp.status_code == 200
        db.refresh(order)
        assert (order.status, order.payment_status) == ("paid", "paid")
        assert order.paid_at is not None

        resp = client.patch(
            f"/admin/orders/{order.id}",
            json={"action": "mark_fulfilled", "tracking_number": "1Z999"},
        )
        assert resp.status_code == 200
        db.refresh(order)
        assert order.status == "fulfilled"
        assert order.tracking_number == "1Z999"

        types = [e.event_type for e in _events(db, order.id)]
        assert types == ["payment_completed", "order_fulfilled"]

    def test_paid_order_cannot_be_cancelled(self, client, make_order, db):
        order = make_order()
        client.patch(f"/admin/orders/{order.id}", json={"action": "mark_paid"})

        resp = client.patch(f"/admin/orders/{order.id}", json={"action": "cancel_order"})

        assert resp.status_code == 400
        db.refresh(order)
        assert order.status == "paid"

    def test_unpaid_order_cannot_be_fulfilled(self, client, make_order):
        order = make_order()
        resp = client.patch(f"/admin/orders/{order.id}", json={"action": "mark_fulfilled"})
        assert resp.status_code == 400

    def test_add_note_appends(self, client, make_order, db):
        order = make_order()
        client.patch(f"/admin/orders/{order.id}", json={"action": "add_note", "note": "a"})
        client.patch(f"/admin/orders/{order.id}", json={"action": "add_note", "note": "b"})
        db.refresh(order)
        assert order.notes.count("\n") == 1
        assert order.notes.endswith(" b")


def test_admin_order_detail_and_list(client, make_order, db):
    first = make_order(email="a@example.com")
    make_order(email="b@example.com")
    order_service.update_status(db, first.id, "confirmed")

    resp = client.get("/admin/orders")
    assert resp.json()["count"] == 2

    resp = client.get(f"/admin/orders/{first.id}")
    body = resp.json()
    assert body["order"]["order_number"] == first.order_number
    assert [e["event_type"] for e in body["timeline"]] == ["status_changed"]
    assert body["customer"]["email"] == "a@example.com"
    assert body["order"]["items"][0]["product_title"]


def test_customer_orders_and_profile(anon_client, make_order):
    make_order(email="pat@example.com")
    make_order(email="pat@example.com")

    resp = anon_client.get("/customer/orders", params={"email": "PAT@example.com"})
    assert resp.json()["count"] == 2

    assert anon_client.get("/customer/orders").status_code == 400
    assert anon_client.get("/customer/profile", params={"email": "x@y.z"}).status_code == 404
    resp = anon_client.get("/customer/profile", params={"email": "pat@example.com"})
    assert resp.json()["customer"]["name"] == "Sam Lifter"


def test_admin_routes_require_a_session(anon_client):
    resp = anon_client.get("/admin/orders")
    assert resp.status_code == 401
    assert resp.json() == {"success": False, "error": "Not authenticated"}


def test_reset_database_keeps_products_and_admin(client, make_order, db, admin):
    make_order()
    assert client.post("/admin/system/reset-database", json={}).status_code == 400

    resp = client.post("/admin/system/reset-database", json={"confirm": "RESET"})

    assert resp.status_code == 200
    deleted = resp.json()["deleted"]
    assert deleted["orders"] == 1
    assert deleted["customers"] == 1
    assert db.query(Order).count() == 0
    db.refresh(admin)


def test_customer_list_counts_orders_and_paid_spend(client, make_order, make_product):
    p = make_product(weight=45, price="50.00")
    paid = make_order(items=[(p, 2)], email="pat@example.com")
    make_order(items=[(p, 1)], email="pat@example.com")
    client.patch(f"/admin/orders/{paid.id}", json={"action": "mark_paid"})

    body = client.get("/admin/customers").json()

    by_email = {c["email"]: c for c in body["customers"]}
    pat = by_email["pat@example.com"]
    assert pat["order_count"] == 2
    assert pat["total_spent"] == "100.00"
    assert pat["last_payment_at"] is not None
    assert by_email[os.environ["ADMIN_EMAIL"]]["order_count"] == 0
