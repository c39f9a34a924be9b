import logging
import uuid

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from plateyard.core.admin import require_admin
from plateyard.core.deps import get_http_client
from plateyard.core.effects import Outcome
from plateyard.core.errors import (
    AppError,
    ConfigurationMissing,
    InvalidRequest,
    UpstreamError,
)
from plateyard.core.stripe_client import StripePayments, get_payments
from plateyard.db.session import get_db
from plateyard.models.customer import Customer
from plateyard.models.order import Order
from plateyard.models.product import Product
from plateyard.schemas.customer import CustomerOut
from plateyard.schemas.order import (
    AdminActionIn,
    BulkConfirmIn,
    BulkConfirmOut,
    BulkPaymentLinkIn,
    BulkPaymentLinkOut,
    BulkPaymentLinkResult,
    ManualWebhookIn,
    OrderDetailOut,
    OrderEnvelope,
    OrderItemOut,
    OrderListOut,
    OrderOut,
    PaymentLinkIn,
    PaymentLinkOut,
    ReceiptOut,
    StatusUpdateIn,
    TimelineEventOut,
)
from plateyard.schemas.webhook import LogEntryOut, QueueEntryOut, WebhookTriggerOut
from plateyard.services import health
from plateyard.services import orders as order_service
from plateyard.services.email import (
    email_configured,
    send_payment_link_email,
    send_payment_receipt_email,
)
from plateyard.services.payment_links import (
    PaymentLinkOptions,
    check_can_issue,
    create_payment_link_core,
    existing_link,
)
from plateyard.services.webhook_notifier import (
    trigger_order_completed_webhook,
    trigger_payment_link_webhook,
)

router = APIRouter(
    prefix="/admin/orders", tags=["admin"], dependencies=[Depends(require_admin)]
)
logger = logging.getLogger("plateyard.admin.orders")

WEBHOOK_TYPES = ("payment_link", "order_completed")


def _order_detail(db: Session, order: Order) -> OrderOut:
    out = OrderOut.model_validate(order)
    product_ids = [i.product_id for i in order.items if i.product_id]
    products = {}
    if product_ids:
        rows = db.query(Product).filter(Product.id.in_(product_ids)).all()
        products = {p.id: p for p in rows}

    items = []
    for item in out.items:
        p = products.get(item.product_id)
        items.append(
            OrderItemOut(
                **item.model_dump(exclude={"image_url", "product_title"}),
                product_title=item.product_title or (p.title if p else None),
                image_url=p.image_url if p else None,
            )
        )
    out.items = items
    return out


def _issue_link(
    db: Session,
    payments: StripePayments,
    http: httpx.Client,
    order_id: int,
    payload: PaymentLinkIn,
    options: PaymentLinkOptions,
) -> PaymentLinkOut:
    order = order_service.get_order(db, order_id)
    existing = existing_link(order)
    if existing:
        return PaymentLinkOut(
            payment_url=existing.payment_url,
            checkout_session_id=existing.checkout_session_id,
            already_exists=True,
        )
    check_can_issue(order)

    outcome = create_payment_link_core(db, payments, order.id, payload.amount, options)
    link = outcome.value

    webhook = trigger_payment_link_webhook(
        db,
        http,
        order.id,
        {"created_via": options.created_via, "batch_id": options.batch_id},
    )
    if not webhook.success and not webhook.skipped:
        outcome.record_failure("webhook:payment_link", webhook.error)

    email_sent = False
    if payload.send_email:
        email = send_payment_link_email(
            http,
            to=order.customer_email,
            customer_name=order.customer_name,
            order_number=order.order_number,
            amount=payload.amount or order.subtotal,
            payment_url=link.payment_url,
        )
        email_sent = email.success
        if not email.success:
            outcome.record_failure("email:payment_link", email.error)

    return PaymentLinkOut(
        payment_url=link.payment_url,
        checkout_session_id=link.checkout_session_id,
        webhook_sent=webhook.success,
        email_sent=email_sent,
        warnings=outcome.warnings(),
    )


@router.get("", response_model=OrderListOut)
def list_orders(
    status: str | None = None,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    rows, total = order_service.list_orders(db, status, limit, offset)
    return OrderListOut(orders=[OrderOut.model_validate(o) for o in rows], count=total)


@router.post("/bulk-payment-links", response_model=BulkPaymentLinkOut)
def bulk_payment_links(
    payload: BulkPaymentLinkIn,
    db: Session = Depends(get_db),
    payments: StripePayments = Depends(get_payments),
    http: httpx.Client = Depends(get_http_client),
):
    batch_id = uuid.uuid4().hex[:12]
    options = PaymentLinkOptions(created_via="bulk", batch_id=batch_id)

    results = []
    for order_id in payload.order_ids:
        try:
            link = _issue_link(
                db,
                payments,
                http,
                order_id,
                PaymentLinkIn(send_email=payload.send_email),
                options,
            )
        except AppError as e:
            results.append(BulkPaymentLinkResult(order_id=order_id, success=False, error=e.message))
            continue
        results.append(
            BulkPaymentLinkResult(order_id=order_id, success=True, payment_url=link.payment_url)
        )

    succeeded = sum(1 for r in results if r.success)
    logger.info("bulk payment links batch=%s ok=%d of %d", batch_id, succeeded, len(results))
    return BulkPaymentLinkOut(
        batch_id=batch_id,
        succeeded=succeeded,
        failed=len(results) - succeeded,
        results=results,
    )


@router.post("/bulk-confirm", response_model=BulkConfirmOut)
def bulk_confirm(payload: BulkConfirmIn, db: Session = Depends(get_db)):
    outcome = order_service.bulk_confirm(
        db, payload.order_ids, payload.notes, payload.ready_date
    )
    result = outcome.value
    count = len(result["confirmed"])
    return BulkConfirmOut(
        confirmed_count=count,
        confirmed=result["confirmed"],
        skipped=result["skipped"],
        message=f"Successfully confirmed {count} orders",
        warnings=outcome.warnings(),
    )


@router.get("/{order_id}", response_model=OrderDetailOut)
def get_order(order_id: int, db: Session = Depends(get_db)):
    order = order_service.get_order(db, order_id)
    customer = None
    if order.customer_id:
        row = db.query(Customer).filter(Customer.id == order.customer_id).first()
        if row:
            customer = CustomerOut.model_validate(row).model_dump()
    return OrderDetailOut(
        order=_order_detail(db, order),
        timeline=[
            TimelineEventOut.model_validate(e)
            for e in order_service.timeline_for(db, order.id)
        ],
        customer=customer,
    )


@router.patch("/{order_id}", response_model=OrderEnvelope)
def order_action(order_id: int, payload: AdminActionIn, db: Session = Depends(get_db)):
    outcome = order_service.apply_admin_action(
        db,
        order_id,
        payload.action,
        tracking_number=payload.tracking_number,
        note=payload.note,
        reason=payload.reason,
    )
    return OrderEnvelope(
        order=OrderOut.model_validate(outcome.value), warnings=outcome.warnings()
    )


@router.post("/{order_id}/status", response_model=OrderEnvelope)
def update_order_status(
    order_id: int, payload: StatusUpdateIn, db: Session = Depends(get_db)
):
    outcome = order_service.update_status(db, order_id, payload.status, payload.notes)
    return OrderEnvelope(
        order=OrderOut.model_validate(outcome.value), warnings=outcome.warnings()
    )


@router.post("/{order_id}/payment-link", response_model=PaymentLinkOut)
def create_payment_link(
    order_id: int,
    payload: PaymentLinkIn | None = None,
    db: Session = Depends(get_db),
    payments: StripePayments = Depends(get_payments),
    http: httpx.Client = Depends(get_http_client),
):
    return _issue_link(
        db,
        payments,
        http,
        order_id,
        payload or PaymentLinkIn(),
        PaymentLinkOptions(created_via="admin"),
    )


@router.post("/{order_id}/resend-receipt", response_model=ReceiptOut)
def resend_receipt(
    order_id: int,
    db: Session = Depends(get_db),
    http: httpx.Client = Depends(get_http_client),
):
    order = order_service.get_order(db, order_id)
    if order.payment_status != "paid":
        raise InvalidRequest("Cannot send receipt for unpaid order")
    if not email_configured():
        raise ConfigurationMissing("Mailgun is not configured")

    result = send_payment_receipt_email(http, order)
    outcome = Outcome(result)
    data = {"email_type": "payment_receipt_resend", "recipient": order.customer_email}

    if not result.success:
        order_service.record_timeline(
            db,
            outcome,
            order.id,
            "email_failed",
            description="Failed to manually resend payment receipt",
            data={**data, "error": result.error},
            created_by="admin",
        )
        raise UpstreamError(result.error or "Failed to send email")

    order_service.record_timeline(
        db,
        outcome,
        order.id,
        "email_sent",
        description="Payment receipt manually resent by admin",
        data={**data, "message_id": result.message_id},
        created_by="admin",
    )
    return ReceiptOut(
        message="Receipt email sent successfully",
        recipient=order.customer_email,
        message_id=result.message_id,
        warnings=outcome.warnings(),
    )


@router.post("/{order_number}/webhooks", response_model=WebhookTriggerOut)
def trigger_webhook(
    order_number: str,
    payload: ManualWebhookIn,
    db: Session = Depends(get_db),
    http: httpx.Client = Depends(get_http_client),
):
    if payload.webhook_type not in WEBHOOK_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid webhook type. Use one of: {', '.join(WEBHOOK_TYPES)}",
        )

    order = order_service.get_order_by_number(db, order_number)
    context = {"created_via": "manual_trigger"}

    if payload.webhook_type == "payment_link":
        if not order.payment_link_url:
            raise HTTPException(status_code=400, detail="Order has no payment link")
        result = trigger_payment_link_webhook(db, http, order.id, context)
    else:
        if order.payment_status != "paid":
            raise HTTPException(status_code=400, detail="Order has not been paid")
        result = trigger_order_completed_webhook(
            db,
            http,
            order.id,
            {"paid_at": order.paid_at.isoformat() if order.paid_at else None},
            context,
        )

    outcome = Outcome(result)
    order_service.record_timeline(
        db,
        outcome,
        order.id,
        "manual_webhook_trigger",
        description=f"Manual {payload.webhook_type} webhook",
        data={
            "webhook_type": payload.webhook_type,
            "success": result.success,
            "error": result.error,
            "queue_entry_id": result.entry_id,
        },
        created_by="admin",
    )
    return WebhookTriggerOut(
        success=result.success,
        error=result.error,
        entry_id=result.entry_id,
        status=result.status,
        details={**result.details, "warnings": outcome.warnings()},
    )


@router.get("/{order_id}/diagnostics")
def order_diagnostics(order_id: int, db: Session = Depends(get_db)):
    order = order_service.get_order(db, order_id)
    report = health.order_diagnostics(db, order)
    return {
        "success": True,
        "order": OrderOut.model_validate(order).model_dump(mode="json"),
        "lock_status": order_service.lock_status(order),
        "timeline": [
            TimelineEventOut.model_validate(e).model_dump(mode="json")
            for e in report["timeline"]
        ],
        "webhook_queue": [
            QueueEntryOut.model_validate(e).model_dump(mode="json")
            for e in report["webhook_queue"]
        ],
        "webhook_logs": [
            LogEntryOut.model_validate(e).model_dump(mode="json")
            for e in report["webhook_logs"]
        ],
        "problems": report["problems"],
    }
