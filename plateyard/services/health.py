import logging
import time
from datetime import timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from plateyard.core.config import Settings
from plateyard.models.customer import Customer
from plateyard.models.option import Option
from plateyard.models.order import Order, OrderTimelineEvent
from plateyard.models.product import Product
from plateyard.models.webhook import WebhookLogEntry, WebhookQueueEntry
from plateyard.services import webhook_notifier
from plateyard.services.orders import timeline_for, utcnow

logger = logging.getLogger("plateyard.health")

SLOW_DB_MS = 1000
# entries sitting in processing longer than this were probably orphaned
STUCK_PROCESSING_AFTER = timedelta(minutes=15)


def _count(db: Session, column, *filters) -> int:
    return int(db.query(func.count(column)).filter(*filters).scalar() or 0)


def ping(db: Session) -> dict[str, Any]:
    started = time.monotonic()
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        db.rollback()
        return {"ok": False, "error": str(e), "response_time_ms": None}
    return {"ok": True, "response_time_ms": int((time.monotonic() - started) * 1000)}


def system_health(db: Session, config: Settings) -> dict[str, Any]:
    """
    One report covering the database, order and queue state, and which
    integrations are configured. `status` is error when the database is
    unreachable, warning when any issue was found.
    """
    issues: list[str] = []
    checks: dict[str, Any] = {"database": ping(db)}

    if not checks["database"]["ok"]:
        return {"status": "error", "checks": checks, "issues": ["Database unreachable"]}
    if checks["database"]["response_time_ms"] > SLOW_DB_MS:
        issues.append("Database response is slow")

    since = utcnow() - timedelta(hours=24)
    revenue = (
        db.query(func.coalesce(func.sum(Order.subtotal), 0))
        .filter(Order.payment_status == "paid")
        .scalar()
    )
    checks["orders"] = {
        "total": _count(db, Order.id),
        "pending": _count(db, Order.id, Order.status == "pending"),
        "paid": _count(db, Order.id, Order.payment_status == "paid"),
        "recent_24h": _count(db, Order.id, Order.created_at >= since),
        "revenue": str(Decimal(str(revenue or 0)).quantize(Decimal("0.01"))),
    }
    checks["counts"] = {
        "customers": _count(db, Customer.id),
        "products": _count(db, Product.id),
        "available_products": _count(db, Product.id, Product.available.is_(True)),
        "options": _count(db, Option.id),
        "timeline_events": _count(db, OrderTimelineEvent.id),
        "webhook_logs": _count(db, WebhookLogEntry.id),
    }

    webhook_settings = webhook_notifier.get_settings(db)
    checks["configuration"] = {
        "stripe": bool(config.STRIPE_API_KEY),
        "stripe_webhook_secret": bool(config.STRIPE_WEBHOOK_SECRET),
        "mailgun": bool(config.MAILGUN_API_KEY and config.MAILGUN_DOMAIN),
        "webhook_enabled": webhook_settings.enabled,
        "webhook_url": bool(webhook_settings.url),
        "environment": config.ENV,
    }
    if not config.STRIPE_API_KEY:
        issues.append("Stripe API key is not configured")
    if not config.STRIPE_WEBHOOK_SECRET:
        issues.append("Stripe webhook secret is not configured")
    if webhook_settings.enabled and not webhook_settings.url:
        issues.append("Webhooks are enabled but no URL is configured")

    stuck = _count(
        db,
        WebhookQueueEntry.id,
        WebhookQueueEntry.status == "processing",
        WebhookQueueEntry.updated_at < utcnow() - STUCK_PROCESSING_AFTER,
    )
    checks["webhook_queue"] = {
        **webhook_notifier.get_webhook_stats(db),
        "stuck_processing": stuck,
    }
    if stuck:
        issues.append(f"{stuck} webhook queue entries stuck in processing")
    if checks["webhook_queue"]["failed_entries"]:
        issues.append(
            f"{checks['webhook_queue']['failed_entries']} webhook deliveries failed permanently"
        )

    unreconciled = _count(
        db,
        Order.id,
        Order.stripe_checkout_session_id.isnot(None),
        Order.order_locked.is_(False),
        Order.payment_status != "paid",
    )
    if unreconciled:
        issues.append(f"{unreconciled} orders have a checkout session but are not locked")

    return {"status": "warning" if issues else "healthy", "checks": checks, "issues": issues}


def order_consistency(order: Order) -> list[str]:
    problems = []
    if order.order_locked and not order.stripe_checkout_session_id:
        problems.append("Order is locked but has no checkout session")
    if order.stripe_checkout_session_id and not order.payment_link_url:
        problems.append("Checkout session recorded without a payment link")
    if order.payment_link_url and not order.order_locked:
        problems.append("Payment link exists but the order is not locked")
    if order.payment_status == "paid" and not order.paid_at:
        problems.append("Order is paid but paid_at is missing")
    if order.status == "paid" and order.payment_status != "paid":
        problems.append("Order status is paid but payment_status is not")
    return problems


def order_diagnostics(db: Session, order: Order) -> dict[str, Any]:
    entries = (
        db.query(WebhookQueueEntry)
        .filter(WebhookQueueEntry.order_id == order.id)
        .order_by(WebhookQueueEntry.created_at.desc(), WebhookQueueEntry.id.desc())
        .all()
    )
    logs = (
        db.query(WebhookLogEntry)
        .filter(WebhookLogEntry.order_id == order.id)
        .order_by(WebhookLogEntry.created_at.desc(), WebhookLogEntry.id.desc())
        .limit(50)
        .all()
    )
    return {
        "timeline": timeline_for(db, order.id),
        "webhook_queue": entries,
        "webhook_logs": logs,
        "problems": order_consistency(order),
    }
