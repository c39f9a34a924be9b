import logging

import httpx
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from plateyard.core.deps import get_http_client
from plateyard.core.stripe_client import StripePayments, get_payments
from plateyard.db.session import get_db
from plateyard.models.customer import Customer
from plateyard.models.product import Product
from plateyard.schemas.customer import CustomerOut, CustomerProfileOut
from plateyard.schemas.order import (
    BatchProgressOut,
    CancelIn,
    CheckoutIn,
    CheckoutOut,
    LockStatusOut,
    LookupIn,
    LookupOut,
    OrderEnvelope,
    OrderListOut,
    OrderModifyIn,
    OrderOut,
    PaymentSuccessOut,
)
from plateyard.schemas.product import ProductOut
from plateyard.services import orders as order_service
from plateyard.services.webhook_notifier import trigger_order_completed_webhook

router = APIRouter(tags=["storefront"])
logger = logging.getLogger("plateyard.storefront")


def _require_email(email: str | None) -> str:
    email = (email or "").strip().lower()
    if not email:
        raise HTTPException(status_code=400, detail="Email is required")
    return email


@router.get("/products", response_model=list[ProductOut])
def list_products(db: Session = Depends(get_db)):
    rows = (
        db.query(Product)
        .filter(Product.available.is_(True))
        .order_by(Product.weight)
        .all()
    )
    return [ProductOut.model_validate(p) for p in rows]


@router.get("/batch-progress", response_model=BatchProgressOut)
def batch_progress(db: Session = Depends(get_db)):
    return BatchProgressOut(**order_service.batch_progress(db))


@router.post("/checkout", response_model=CheckoutOut, status_code=201)
def checkout(payload: CheckoutIn, db: Session = Depends(get_db)):
    order, totals = order_service.create_order_from_checkout(db, payload)
    return CheckoutOut(
        order=OrderOut.model_validate(order),
        order_number=order.order_number,
        customer_id=order.customer_id,
        total_savings=totals.total_savings,
        item_count=totals.item_count,
        redirect_url=f"/order-confirmation?order={order.order_number}",
    )


@router.post("/orders/lookup", response_model=LookupOut)
def lookup_order(payload: LookupIn, db: Session = Depends(get_db)):
    order = order_service.lookup_order(db, payload.order_number, payload.email)
    return LookupOut(
        order=OrderOut.model_validate(order),
        can_modify=order.invoiced_at is None and order.status == "pending",
    )


@router.post("/orders/{order_number}/cancel", response_model=OrderEnvelope)
def cancel_order(
    order_number: str,
    payload: CancelIn | None = None,
    db: Session = Depends(get_db),
):
    outcome = order_service.cancel_order(
        db, order_number, payload.reason if payload else None
    )
    return OrderEnvelope(
        order=OrderOut.model_validate(outcome.value), warnings=outcome.warnings()
    )


@router.patch("/orders/{order_number}", response_model=OrderEnvelope)
def modify_order(order_number: str, payload: OrderModifyIn, db: Session = Depends(get_db)):
    outcome = order_service.modify_order(db, order_number, payload)
    return OrderEnvelope(
        order=OrderOut.model_validate(outcome.value), warnings=outcome.warnings()
    )


@router.get("/orders/{order_id}/lock-status", response_model=LockStatusOut)
def order_lock_status(order_id: int, db: Session = Depends(get_db)):
    order = order_service.get_order(db, order_id)
    return LockStatusOut(**order_service.lock_status(order))


@router.get("/customer/orders", response_model=OrderListOut)
def customer_orders(email: str | None = None, db: Session = Depends(get_db)):
    rows = order_service.orders_for_email(db, _require_email(email))
    return OrderListOut(orders=[OrderOut.model_validate(o) for o in rows], count=len(rows))


@router.get("/customer/profile", response_model=CustomerProfileOut)
def customer_profile(email: str | None = None, db: Session = Depends(get_db)):
    customer = db.query(Customer).filter(Customer.email == _require_email(email)).first()
    if not customer:
        raise HTTPException(status_code=404, detail="Customer not found")
    return CustomerProfileOut(customer=CustomerOut.model_validate(customer))


@router.get("/payments/success", response_model=PaymentSuccessOut)
def payment_success(
    session_id: str | None = None,
    order_id: int | None = None,
    db: Session = Depends(get_db),
    payments: StripePayments = Depends(get_payments),
    http: httpx.Client = Depends(get_http_client),
):
    """
    Landing check for the checkout success redirect. Marks the order paid
    when Stripe reports the session paid and the webhook has not yet done so.
    """
    if not session_id or not order_id:
        raise HTTPException(status_code=400, detail="session_id and order_id are required")

    order = order_service.get_order(db, order_id)
    session = payments.retrieve_checkout_session(session_id)

    session_order = (session.metadata or {}).get("order_id")
    if session_order and session_order != str(order.id):
        raise HTTPException(status_code=400, detail="Checkout session does not match order")

    newly_paid = False
    if session.payment_status == "paid" and order.payment_status != "paid":
        outcome = order_service.mark_order_paid(
            db,
            order,
            session_id=session.id,
            payment_intent_id=session.payment_intent,
            actor="system",
            via="payment_success",
        )
        newly_paid = outcome.value
        if newly_paid:
            result = trigger_order_completed_webhook(
                db,
                http,
                order.id,
                {"checkout_session_id": session.id, "amount_total": session.amount_total},
                {"created_via": "payment_success"},
            )
            if not result.success and not result.skipped:
                logger.warning(
                    "order completed webhook for %s: %s", order.order_number, result.error
                )

    return PaymentSuccessOut(
        order_number=order.order_number,
        payment_status=order.payment_status,
        session_status=session.payment_status,
        newly_paid=newly_paid,
        amount_total=session.amount_total,
    )
