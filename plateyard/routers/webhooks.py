import logging
from datetime import datetime, timezone
from typing import Any

import httpx
import stripe
from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from plateyard.core.config import settings
from plateyard.core.deps import get_http_client
from plateyard.core.errors import AppError
from plateyard.core.stripe_client import StripePayments, get_payments
from plateyard.db.session import get_db
from plateyard.models.order import Order
from plateyard.models.stripe_event import StripeWebhookEvent
from plateyard.models.webhook import WebhookDebugLog
from plateyard.services import orders as order_service
from plateyard.services.webhook_notifier import trigger_order_completed_webhook

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger("plateyard.stripe.webhook")


def _utcnow():
    return datetime.now(timezone.utc)


def _mark_event(db: Session, event_id: str, status: str, error: str | None = None):
    db.query(StripeWebhookEvent).filter(StripeWebhookEvent.event_id == event_id).update(
        {"status": status, "processed_at": _utcnow(), "error": error[:400] if error else None}
    )
    db.commit()


def _debug_log(
    db: Session,
    event: dict,
    status: str,
    message: str,
    order_number: str | None = None,
    data: dict[str, Any] | None = None,
):
    db.add(
        WebhookDebugLog(
            event_type=event.get("type") or "unknown",
            event_id=event.get("id"),
            order_number=order_number,
            status=status,
            message=message,
            debug_data=data,
        )
    )
    db.commit()


def _find_order(db: Session, session: dict) -> Order | None:
    metadata = session.get("metadata") or {}

    order_number = metadata.get("order_number")
    if order_number:
        order = (
            db.query(Order)
            .filter(Order.order_number == order_service.normalize_order_number(order_number))
            .first()
        )
        if order:
            return order

    session_id = session.get("id")
    if session_id:
        order = (
            db.query(Order).filter(Order.stripe_checkout_session_id == session_id).first()
        )
        if order:
            return order

    # last resort: the customer's most recent order still waiting on payment
    details = session.get("customer_details") or {}
    email = (session.get("customer_email") or details.get("email") or "").lower()
    if email:
        return (
            db.query(Order)
            .filter(Order.customer_email == email, Order.payment_status == "pending")
            .order_by(Order.created_at.desc(), Order.id.desc())
            .first()
        )
    return None


def _checkout_completed(db: Session, http: httpx.Client, event: dict) -> str:
    session = event["data"]["object"]
    if session.get("payment_status") != "paid":
        _debug_log(db, event, "warning", "session completed without payment")
        return "ignored"

    order = _find_order(db, session)
    if not order:
        _debug_log(
            db,
            event,
            "error",
            "no order matches checkout session",
            data={"session_id": session.get("id"), "metadata": dict(session.get("metadata") or {})},
        )
        return "error"

    outcome = order_service.mark_order_paid(
        db,
        order,
        session_id=session.get("id"),
        payment_intent_id=session.get("payment_intent"),
        actor="stripe_webhook",
    )
    if not outcome.value:
        _debug_log(db, event, "success", "order already paid", order.order_number)
        return "processed"

    result = trigger_order_completed_webhook(
        db,
        http,
        order.id,
        {
            "checkout_session_id": session.get("id"),
            "payment_intent_id": session.get("payment_intent"),
            "amount_total": session.get("amount_total"),
        },
        {"created_via": "stripe_webhook"},
    )
    if not result.success and not result.skipped:
        outcome.record_failure("webhook:order_completed", result.error)

    _debug_log(
        db,
        event,
        "success" if outcome.ok else "warning",
        "order marked paid",
        order.order_number,
        {"warnings": outcome.warnings(), "amount_total": session.get("amount_total")},
    )
    return "processed"


def _checkout_expired(db: Session, event: dict) -> str:
    session = event["data"]["object"]
    order = _find_order(db, session)
    if not order:
        return "ignored"
    order_service.add_timeline_event(
        db,
        order.id,
        "payment_link_expired",
        description="Checkout session expired",
        data={"checkout_session_id": session.get("id")},
        created_by="stripe_webhook",
    )
    _debug_log(db, event, "success", "payment link expired", order.order_number)
    return "processed"


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    payments: StripePayments = Depends(get_payments),
    http: httpx.Client = Depends(get_http_client),
):
    if not settings.STRIPE_WEBHOOK_SECRET:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook not configured",
        )
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        raise HTTPException(status_code=400, detail="Missing Stripe-Signature")

    try:
        event = payments.construct_event(payload, sig_header, settings.STRIPE_WEBHOOK_SECRET)
    except (ValueError, stripe.SignatureVerificationError):
        raise HTTPException(status_code=400, detail="Invalid signature")

    # database work and the outbound webhook block, so keep them off the event loop
    return await run_in_threadpool(_process_event, db, http, event)


def _process_event(db: Session, http: httpx.Client, event: dict) -> dict[str, Any]:
    event_id = event.get("id")
    event_type = event.get("type")

    # idempotency: the unique event_id rejects redeliveries
    try:
        db.add(StripeWebhookEvent(event_id=event_id, event_type=event_type, status="received"))
        db.commit()
    except IntegrityError:
        db.rollback()
        return {"success": True, "duplicate": True}

    try:
        if event_type == "checkout.session.completed":
            outcome = _checkout_completed(db, http, event)
        elif event_type == "checkout.session.expired":
            outcome = _checkout_expired(db, event)
        else:
            outcome = "ignored"
        _mark_event(db, event_id, outcome)
        return {"success": True, "status": outcome}

    except (SQLAlchemyError, AppError) as e:
        db.rollback()
        logger.exception("stripe event %s (%s) failed", event_id, event_type)
        _mark_event(db, event_id, "error", str(e))
        # acknowledge so Stripe stops retrying; the debug log has the details
        _debug_log(db, event, "error", str(e)[:500])
        return {"success": True, "status": "error"}
