import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from plateyard.core.config import settings
from plateyard.core.effects import Outcome
from plateyard.core.errors import InvalidRequest, ReconciliationNeeded, UpstreamError
from plateyard.core.stripe_client import StripePayments
from plateyard.models.customer import Customer
from plateyard.models.order import Order
from plateyard.services.orders import (
    PAYMENT_LINK_LOCK_REASON,
    get_order,
    record_timeline,
    utcnow,
)

logger = logging.getLogger("plateyard.payment_links")


@dataclass(frozen=True)
class PaymentLinkOptions:
    created_via: str = "admin"
    batch_id: str | None = None


@dataclass(frozen=True)
class PaymentLink:
    order_id: int
    payment_url: str
    checkout_session_id: str | None
    created_at: datetime | None
    already_exists: bool = False


def _cents(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


def _line_items(order: Order, amount: Decimal, currency: str) -> list[dict]:
    # a custom amount replaces the itemised lines with a single charge
    if amount != order.subtotal or not order.items:
        return [
            {
                "price_data": {
                    "currency": currency,
                    "product_data": {"name": f"Order {order.order_number}"},
                    "unit_amount": _cents(amount),
                },
                "quantity": 1,
            }
        ]
    return [
        {
            "price_data": {
                "currency": currency,
                "product_data": {
                    "name": item.product_title or f"{item.weight}lb Bumper Plate",
                    "description": f"Pair of {item.weight}lb bumper plates",
                },
                "unit_amount": _cents(item.price),
            },
            "quantity": item.quantity,
        }
        for item in order.items
    ]


def _ensure_stripe_customer(db: Session, payments: StripePayments, order: Order) -> str | None:
    if not order.customer_id:
        return None
    customer = db.query(Customer).filter(Customer.id == order.customer_id).first()
    if not customer:
        return None
    if not customer.stripe_customer_id:
        customer.stripe_customer_id = payments.create_customer(
            customer.email, customer.name, customer.phone
        )
        db.add(customer)
        db.commit()
    return customer.stripe_customer_id


def check_can_issue(order: Order) -> None:
    if order.order_locked:
        raise InvalidRequest(
            "Order is locked", details={"reason": order.order_locked_reason}
        )
    if order.status != "pending":
        raise InvalidRequest(
            f"Payment links can only be created for pending orders. Current status: {order.status}"
        )


def existing_link(order: Order) -> PaymentLink | None:
    if not order.payment_link_url:
        return None
    return PaymentLink(
        order_id=order.id,
        payment_url=order.payment_link_url,
        checkout_session_id=order.stripe_checkout_session_id,
        created_at=order.payment_link_created_at,
        already_exists=True,
    )


def create_payment_link_core(
    db: Session,
    payments: StripePayments,
    order_id: int,
    amount: Decimal | None = None,
    options: PaymentLinkOptions | None = None,
) -> Outcome[PaymentLink]:
    """
    Create a Stripe checkout session for an order and lock the order.

    The checkout session is not cancelled if saving the order fails
    afterwards; that case is logged with the session id and raised so an
    admin can reconcile it from the order diagnostics.
    """
    options = options or PaymentLinkOptions()
    order = get_order(db, order_id)
    amount = Decimal(amount) if amount is not None else Decimal(order.subtotal)
    if amount <= 0:
        raise InvalidRequest("Amount must be greater than zero")

    currency = payments.currency
    stripe_customer = _ensure_stripe_customer(db, payments, order)
    session = payments.create_checkout_session(
        line_items=_line_items(order, amount, currency),
        metadata={"order_id": str(order.id), "order_number": order.order_number},
        success_url=(
            f"{settings.BASE_URL}/order-success"
            f"?session_id={{CHECKOUT_SESSION_ID}}&order_id={order.id}"
        ),
        cancel_url=f"{settings.BASE_URL}/order-confirmation?order={order.order_number}",
        client_reference_id=str(order.id),
        customer_id=stripe_customer,
        customer_email=order.customer_email,
    )
    if not session.url:
        raise UpstreamError("Payment processor returned no checkout URL")

    now = utcnow()
    try:
        order.stripe_checkout_session_id = session.id
        order.payment_link_url = session.url
        order.payment_link_created_at = now
        order.payment_status = "pending"
        order.order_locked = True
        order.order_locked_reason = PAYMENT_LINK_LOCK_REASON
        if options.batch_id:
            order.batch_id = options.batch_id
        db.add(order)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            "checkout session %s created for order %s but the order was not updated: %s",
            session.id,
            order_id,
            e,
        )
        raise ReconciliationNeeded(
            "Payment link was created but the order could not be updated; needs reconciliation",
            details={"checkout_session_id": session.id, "payment_url": session.url},
        )

    logger.info("payment link issued for order %s session=%s", order.order_number, session.id)
    outcome = Outcome(
        PaymentLink(
            order_id=order.id,
            payment_url=session.url,
            checkout_session_id=session.id,
            created_at=now,
        )
    )
    record_timeline(
        db,
        outcome,
        order.id,
        "payment_link_created",
        description=f"Payment link created for ${amount:.2f}",
        data={
            "checkout_session_id": session.id,
            "payment_url": session.url,
            "amount": str(amount),
            "order_locked": True,
            "created_via": options.created_via,
            "batch_id": options.batch_id,
        },
        created_by="admin",
    )
    return outcome
