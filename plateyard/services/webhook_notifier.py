"""
Outbound order notifications.

A trigger writes a queue entry, claims it and tries to deliver it straight
away. Entries that fail are left `queued` with a backoff until the queue
processor picks them up again, or marked `failed` once their attempts are
used up. Every attempt is written to `webhook_logs`.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
from pydantic import AnyHttpUrl, TypeAdapter, ValidationError
from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from plateyard.core.errors import InvalidRequest
from plateyard.core.security import sign_payload
from plateyard.models.order import Order
from plateyard.models.webhook import WebhookLogEntry, WebhookQueueEntry
from plateyard.services import options

logger = logging.getLogger("plateyard.webhooks")

USER_AGENT = "PlateYard-Webhook/1.0"
SIGNATURE_HEADER = "X-Webhook-Signature"

EVENT_PAYMENT_LINK = "payment_link_created"
EVENT_ORDER_COMPLETED = "order_completed"

MAX_BACKOFF_SECONDS = 300
RESPONSE_BODY_LIMIT = 1000

TIMEOUT_RANGE = (5, 300)
RETRY_ATTEMPTS_RANGE = (0, 10)
RETRY_DELAY_RANGE = (1, 3600)

SETTINGS_CATEGORY = "webhooks"

# option name -> (default, option type)
SETTING_DEFAULTS: dict[str, tuple[Any, str]] = {
    "webhook_url": ("", "string"),
    "webhook_enabled": (False, "boolean"),
    "webhook_timeout": (30, "number"),
    "webhook_retry_attempts": (3, "number"),
    "webhook_retry_delay": (5, "number"),
    "include_customer_data": (True, "boolean"),
    "include_order_items": (True, "boolean"),
    "webhook_secret": ("", "string"),
}

_url_adapter = TypeAdapter(AnyHttpUrl)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class WebhookSettings:
    url: str
    enabled: bool
    timeout: int
    retry_attempts: int
    retry_delay: int
    include_customer_data: bool
    include_order_items: bool
    secret: str

    @property
    def max_attempts(self) -> int:
        # a retry limit of 0 still allows the first attempt
        return max(1, self.retry_attempts)

    def public(self) -> dict[str, Any]:
        return {
            "webhook_url": self.url,
            "webhook_enabled": self.enabled,
            "webhook_timeout": self.timeout,
            "webhook_retry_attempts": self.retry_attempts,
            "webhook_retry_delay": self.retry_delay,
            "include_customer_data": self.include_customer_data,
            "include_order_items": self.include_order_items,
            "has_webhook_secret": bool(self.secret),
        }


@dataclass
class DeliveryResult:
    success: bool
    status_code: int = 0
    response_time_ms: int = 0
    body: str | None = None
    error: str | None = None


@dataclass
class WebhookResult:
    success: bool
    error: str | None = None
    # true when delivery was not attempted because webhooks are off
    skipped: bool = False
    entry_id: int | None = None
    status: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


# --- settings ----------------------------------------------------------------


def get_settings(db: Session) -> WebhookSettings:
    stored = options.get_options_by_category(db, SETTINGS_CATEGORY)

    def value(name: str) -> Any:
        default, _ = SETTING_DEFAULTS[name]
        v = stored.get(name)
        return default if v is None or v == "" else v

    return WebhookSettings(
        url=value("webhook_url"),
        enabled=bool(value("webhook_enabled")),
        timeout=int(value("webhook_timeout")),
        retry_attempts=int(value("webhook_retry_attempts")),
        retry_delay=int(value("webhook_retry_delay")),
        include_customer_data=bool(value("include_customer_data")),
        include_order_items=bool(value("include_order_items")),
        secret=value("webhook_secret"),
    )


def _check_range(patch: dict[str, Any], name: str, bounds: tuple[int, int], msg: str) -> None:
    v = patch.get(name)
    if v is None:
        return
    lo, hi = bounds
    if isinstance(v, bool) or not isinstance(v, int) or not lo <= v <= hi:
        raise InvalidRequest(msg)


def validate_settings_patch(patch: dict[str, Any]) -> dict[str, Any]:
    unknown = set(patch) - set(SETTING_DEFAULTS)
    if unknown:
        raise InvalidRequest(f"Unknown webhook settings: {', '.join(sorted(unknown))}")

    url = patch.get("webhook_url")
    if url:
        try:
            _url_adapter.validate_python(url)
        except ValidationError:
            raise InvalidRequest("Invalid webhook URL format")

    _check_range(
        patch,
        "webhook_timeout",
        TIMEOUT_RANGE,
        "Webhook timeout must be between 5 and 300 seconds",
    )
    _check_range(
        patch,
        "webhook_retry_attempts",
        RETRY_ATTEMPTS_RANGE,
        "Retry attempts must be between 0 and 10",
    )
    _check_range(
        patch,
        "webhook_retry_delay",
        RETRY_DELAY_RANGE,
        "Retry delay must be between 1 and 3600 seconds",
    )
    return patch


def update_settings(db: Session, patch: dict[str, Any]) -> WebhookSettings:
    """Validate the whole patch, then write it in one batch."""
    patch = {k: v for k, v in patch.items() if v is not None}
    validate_settings_patch(patch)

    batch = [
        {
            "option_name": name,
            "option_value": value,
            "option_type": SETTING_DEFAULTS[name][1],
            "category": SETTINGS_CATEGORY,
        }
        for name, value in patch.items()
    ]
    if batch:
        options.set_options(db, batch)
        logger.info("webhook settings updated: %s", ", ".join(sorted(patch)))
    return get_settings(db)


# --- payloads ----------------------------------------------------------------


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def order_snapshot(order: Order, settings: WebhookSettings) -> dict[str, Any]:
    snap: dict[str, Any] = {
        "id": order.id,
        "order_number": order.order_number,
        "status": order.status,
        "payment_status": order.payment_status,
        "payment_link_url": order.payment_link_url,
        "total_amount": float(order.subtotal),
        "total_weight": order.total_weight,
        "currency": "USD",
        "created_at": _iso(order.created_at),
        "paid_at": _iso(order.paid_at),
    }
    if settings.include_order_items:
        snap["items"] = [
            {
                "product_id": item.product_id,
                "product_title": item.product_title or f"{item.weight}lb Bumper Plate",
                "weight": item.weight,
                "quantity": item.quantity,
                "price": float(item.price),
                "total": float(item.price * item.quantity),
            }
            for item in order.items
        ]
    if settings.include_customer_data:
        snap["customer"] = {
            "name": order.customer_name,
            "email": order.customer_email,
            "phone": order.customer_phone,
            "street_address": order.street_address,
            "city": order.city,
            "state": order.state,
            "zip_code": order.zip_code,
            "delivery_option": order.delivery_option,
        }
    return snap


def build_payload(
    order: Order,
    event_type: str,
    settings: WebhookSettings,
    context: dict[str, Any] | None = None,
    extra: dict[str, Any] | None = None,
) -> dict[str, Any]:
    context = context or {}
    metadata = {
        "source": "plateyard",
        "created_via": context.get("created_via", "system"),
        "batch_id": context.get("batch_id"),
    }
    metadata.update({k: v for k, v in context.items() if k not in metadata})
    payload = {
        "event_type": event_type,
        "timestamp": utcnow().isoformat(),
        "order_snapshot": order_snapshot(order, settings),
        "metadata": metadata,
    }
    if extra:
        payload.update(extra)
    return payload


# --- delivery ----------------------------------------------------------------


def send(
    http: httpx.Client,
    url: str,
    payload: dict[str, Any],
    timeout: float,
    secret: str | None = None,
) -> DeliveryResult:
    body = json.dumps(payload, default=str).encode("utf-8")
    headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
    if secret:
        headers[SIGNATURE_HEADER] = sign_payload(secret, body)

    started = time.monotonic()
    try:
        resp = http.post(url, content=body, headers=headers, timeout=timeout)
    except httpx.HTTPError as e:
        elapsed = int((time.monotonic() - started) * 1000)
        return DeliveryResult(
            success=False,
            response_time_ms=elapsed,
            error=f"{type(e).__name__}: {e}",
        )

    elapsed = int((time.monotonic() - started) * 1000)
    text = resp.text[:RESPONSE_BODY_LIMIT]
    ok = resp.is_success
    return DeliveryResult(
        success=ok,
        status_code=resp.status_code,
        response_time_ms=elapsed,
        body=text,
        error=None if ok else f"HTTP {resp.status_code}",
    )


def backoff_seconds(retry_delay: int, attempts: int) -> int:
    return min(MAX_BACKOFF_SECONDS, retry_delay * 2 ** max(0, attempts - 1))


def claim_entry(db: Session, entry_id: int) -> bool:
    """
    Move an entry from queued to processing. Only one caller can win: the
    update matches zero rows if someone else already claimed it.
    """
    result = db.execute(
        update(WebhookQueueEntry)
        .where(WebhookQueueEntry.id == entry_id, WebhookQueueEntry.status == "queued")
        .values(status="processing", updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def deliver_claimed(
    db: Session,
    http: httpx.Client,
    entry: WebhookQueueEntry,
    settings: WebhookSettings,
) -> DeliveryResult:
    """Attempt delivery of a claimed entry and record the outcome."""
    db.refresh(entry)
    result = send(http, entry.webhook_url, entry.payload, settings.timeout, settings.secret)

    now = utcnow()
    entry.attempts += 1
    if result.success:
        entry.status = "sent"
        entry.sent_at = now
        entry.last_error = None
        entry.next_retry_at = None
    elif entry.attempts >= entry.max_attempts:
        entry.status = "failed"
        entry.failed_at = now
        entry.last_error = result.error
        entry.next_retry_at = None
    else:
        entry.status = "queued"
        entry.last_error = result.error
        entry.next_retry_at = now + timedelta(
            seconds=backoff_seconds(settings.retry_delay, entry.attempts)
        )

    db.add(entry)
    db.add(
        WebhookLogEntry(
            queue_entry_id=entry.id,
            order_id=entry.order_id,
            event_type=entry.event_type,
            webhook_url=entry.webhook_url,
            success=result.success,
            status_code=result.status_code,
            response_time_ms=result.response_time_ms,
            response_body=result.body,
            error_message=result.error,
            attempt=entry.attempts,
        )
    )
    db.commit()

    if result.success:
        logger.info(
            "webhook %s sent entry=%s in %dms", entry.event_type, entry.id, result.response_time_ms
        )
    else:
        logger.warning(
            "webhook %s failed entry=%s attempt=%d/%d status=%s error=%s",
            entry.event_type,
            entry.id,
            entry.attempts,
            entry.max_attempts,
            entry.status,
            result.error,
        )
    return result


def enqueue(
    db: Session,
    order: Order,
    event_type: str,
    payload: dict[str, Any],
    settings: WebhookSettings,
) -> WebhookQueueEntry:
    entry = WebhookQueueEntry(
        order_id=order.id,
        event_type=event_type,
        webhook_url=settings.url,
        payload=payload,
        status="queued",
        attempts=0,
        max_attempts=settings.max_attempts,
        next_retry_at=utcnow(),
    )
    db.add(entry)
    db.commit()
    db.refresh(entry)
    return entry


def _trigger(
    db: Session,
    http: httpx.Client,
    order_id: int,
    event_type: str,
    context: dict[str, Any] | None,
    extra: dict[str, Any] | None = None,
) -> WebhookResult:
    try:
        settings = get_settings(db)
        if not settings.enabled:
            return WebhookResult(success=False, error="Webhook disabled", skipped=True)
        if not settings.url:
            return WebhookResult(success=False, error="Webhook URL not configured", skipped=True)

        order = db.query(Order).filter(Order.id == order_id).first()
        if not order:
            return WebhookResult(success=False, error=f"Order {order_id} not found")

        payload = build_payload(order, event_type, settings, context, extra)
        entry = enqueue(db, order, event_type, payload, settings)

        if not claim_entry(db, entry.id):
            # a queue run got there first and owns delivery now
            return WebhookResult(success=True, entry_id=entry.id, status="processing")

        result = deliver_claimed(db, http, entry, settings)
        return WebhookResult(
            success=result.success,
            error=result.error,
            entry_id=entry.id,
            status=entry.status,
            details={
                "status_code": result.status_code,
                "response_time_ms": result.response_time_ms,
            },
        )
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("webhook %s for order %s could not be queued", event_type, order_id)
        return WebhookResult(success=False, error=f"Database error: {e}")
    except Exception as e:
        logger.exception("webhook %s for order %s failed", event_type, order_id)
        return WebhookResult(success=False, error=str(e))


def trigger_payment_link_webhook(
    db: Session, http: httpx.Client, order_id: int, context: dict[str, Any] | None = None
) -> WebhookResult:
    return _trigger(db, http, order_id, EVENT_PAYMENT_LINK, context)


def trigger_order_completed_webhook(
    db: Session,
    http: httpx.Client,
    order_id: int,
    payment_info: dict[str, Any] | None = None,
    context: dict[str, Any] | None = None,
) -> WebhookResult:
    return _trigger(
        db,
        http,
        order_id,
        EVENT_ORDER_COMPLETED,
        context,
        extra={"payment": payment_info or {}},
    )


# --- stats -------------------------------------------------------------------


def get_webhook_stats(db: Session) -> dict[str, int]:
    total = int(db.query(func.count(WebhookLogEntry.id)).scalar() or 0)
    successful = int(
        db.query(func.count(WebhookLogEntry.id))
        .filter(WebhookLogEntry.success.is_(True))
        .scalar()
        or 0
    )
    avg = (
        db.query(func.avg(WebhookLogEntry.response_time_ms))
        .filter(WebhookLogEntry.success.is_(True))
        .scalar()
    )

    by_status = dict(
        db.query(WebhookQueueEntry.status, func.count(WebhookQueueEntry.id))
        .group_by(WebhookQueueEntry.status)
        .all()
    )

    return {
        "total_sent": total,
        "successful": successful,
        "failed": total - successful,
        "queued": int(by_status.get("queued", 0)),
        "processing": int(by_status.get("processing", 0)),
        "sent": int(by_status.get("sent", 0)),
        "failed_entries": int(by_status.get("failed", 0)),
        "avg_response_time": int(round(float(avg))) if avg is not None else 0,
    }
