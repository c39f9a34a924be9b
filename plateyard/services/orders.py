import logging
import secrets
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Protocol

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from plateyard.core.config import settings
from plateyard.core.effects import Outcome
from plateyard.core.errors import InvalidRequest, NotFound, UpstreamError
from plateyard.core.security import MIN_PASSWORD_LENGTH, hash_password
from plateyard.models.customer import Customer
from plateyard.models.order import ORDER_STATUSES, Order, OrderItem, OrderTimelineEvent
from plateyard.models.product import Product
from plateyard.models.webhook import WebhookLogEntry, WebhookQueueEntry
from plateyard.schemas.order import CheckoutIn, ModifyItemIn, OrderModifyIn
from plateyard.services import options

logger = logging.getLogger("plateyard.orders")

ORDER_NUMBER_PREFIX = "CBP-"
ORDER_NUMBER_ATTEMPTS = 3

PAYMENT_LINK_LOCK_REASON = "Payment link created - order modifications restricted"
DEFAULT_CANCEL_REASON = "Cancelled by customer"

ADMIN_ACTIONS = {"mark_fulfilled", "mark_paid", "cancel_order", "update_tracking", "add_note"}
# a paid order can still be shipped and annotated, nothing else
PAID_ORDER_ACTIONS = {"add_note", "mark_fulfilled", "update_tracking"}

# unpaid orders in these states count toward the open batch
BATCH_STATUSES = ("pending", "confirmed")
DEFAULT_BATCH_GOAL_WEIGHT = 7000

_CENTS = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _money(value: Decimal) -> Decimal:
    return value.quantize(_CENTS, rounding=ROUND_HALF_UP)


class PricedLine(Protocol):
    weight: int
    quantity: int
    price: Decimal
    regular_price: Decimal | None


@dataclass(frozen=True)
class OrderLine:
    product_id: int
    product_title: str
    weight: int
    quantity: int
    price: Decimal
    regular_price: Decimal | None


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    total_weight: int
    total_savings: Decimal
    item_count: int


def compute_totals(lines: Iterable[PricedLine]) -> Totals:
    """
    Totals for a set of lines. Prices are per pair, so the shipped weight
    counts both plates of every pair.
    """
    subtotal = Decimal("0")
    savings = Decimal("0")
    weight = 0
    count = 0
    for line in lines:
        price = Decimal(line.price)
        subtotal += price * line.quantity
        weight += line.weight * line.quantity * 2
        count += line.quantity
        if line.regular_price is not None:
            savings += (Decimal(line.regular_price) - price) * line.quantity
    return Totals(
        subtotal=_money(subtotal),
        total_weight=weight,
        total_savings=_money(savings),
        item_count=count,
    )


def generate_order_number() -> str:
    return ORDER_NUMBER_PREFIX + secrets.token_hex(3).upper()


def normalize_order_number(order_number: str) -> str:
    return (order_number or "").strip().upper()


# --- lookups -----------------------------------------------------------------


def get_order(db: Session, order_id: int) -> Order:
    order = db.query(Order).filter(Order.id == order_id).first()
    if not order:
        raise NotFound("Order not found")
    return order


def get_order_by_number(db: Session, order_number: str) -> Order:
    order = (
        db.query(Order)
        .filter(Order.order_number == normalize_order_number(order_number))
        .first()
    )
    if not order:
        raise NotFound("Order not found")
    return order


def lookup_order(db: Session, order_number: str, email: str) -> Order:
    if not order_number or not email:
        raise InvalidRequest("Order number and email are required")
    order = (
        db.query(Order)
        .filter(
            Order.order_number == normalize_order_number(order_number),
            func.lower(Order.customer_email) == email.strip().lower(),
        )
        .first()
    )
    if not order:
        raise NotFound("Order not found")
    return order


def list_orders(
    db: Session, status: str | None = None, limit: int = 100, offset: int = 0
) -> tuple[list[Order], int]:
    q = db.query(Order)
    if status:
        q = q.filter(Order.status == status)
    total = q.count()
    rows = q.order_by(Order.created_at.desc(), Order.id.desc()).offset(offset).limit(limit).all()
    return rows, total


def orders_for_email(db: Session, email: str) -> list[Order]:
    return (
        db.query(Order)
        .filter(func.lower(Order.customer_email) == email.strip().lower())
        .order_by(Order.created_at.desc(), Order.id.desc())
        .all()
    )


def timeline_for(db: Session, order_id: int) -> list[OrderTimelineEvent]:
    return (
        db.query(OrderTimelineEvent)
        .filter(OrderTimelineEvent.order_id == order_id)
        .order_by(OrderTimelineEvent.created_at.asc(), OrderTimelineEvent.id.asc())
        .all()
    )


# --- timeline ----------------------------------------------------------------


def add_timeline_event(
    db: Session,
    order_id: int,
    event_type: str,
    *,
    description: str | None = None,
    data: dict[str, Any] | None = None,
    created_by: str = "system",
) -> OrderTimelineEvent:
    event = OrderTimelineEvent(
        order_id=order_id,
        event_type=event_type,
        description=description,
        event_data=data,
        created_by=created_by,
    )
    db.add(event)
    db.commit()
    return event


def record_timeline(
    db: Session, outcome: Outcome, order_id: int, event_type: str, **kwargs: Any
) -> None:
    """Append a timeline event; a failure is noted on the outcome, not raised."""
    try:
        add_timeline_event(db, order_id, event_type, **kwargs)
    except SQLAlchemyError as e:
        db.rollback()
        outcome.record_failure(f"timeline:{event_type}", e)


def _commit(db: Session, what: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise UpstreamError(f"Failed to {what}", details=str(e))


# --- checkout ----------------------------------------------------------------


def _resolve_lines(db: Session, items: Iterable[ModifyItemIn]) -> list[OrderLine]:
    lines = []
    for item in items:
        product = db.query(Product).filter(Product.id == item.product_id).first()
        if not product:
            raise InvalidRequest(f"Product with ID {item.product_id} not found")
        if not product.available:
            raise InvalidRequest(f"Product {product.title} is no longer available")
        lines.append(
            OrderLine(
                product_id=product.id,
                product_title=product.title,
                weight=product.weight,
                quantity=item.quantity,
                price=Decimal(product.selling_price),
                regular_price=Decimal(product.regular_price),
            )
        )
    return lines


def _split_name(name: str) -> tuple[str, str | None]:
    parts = name.split(None, 1)
    return parts[0], (parts[1] if len(parts) > 1 else None)


def _upsert_customer(db: Session, data: CheckoutIn) -> Customer:
    c = data.customer
    email = str(c.email).strip().lower()
    first, last = _split_name(c.name.strip())

    customer = db.query(Customer).filter(Customer.email == email).first()
    if not customer:
        customer = Customer(email=email)

    customer.name = c.name.strip()
    customer.first_name = first
    customer.last_name = last
    customer.phone = c.phone.strip()
    for field in ("street_address", "city", "state", "zip_code", "delivery_instructions"):
        value = getattr(c, field)
        if value:
            setattr(customer, field, value)

    # an existing account keeps its password
    if data.create_account and not customer.password_hash:
        customer.password_hash = hash_password(data.password)

    db.add(customer)
    _commit(db, "save customer")
    return customer


def _items_for(lines: Iterable[OrderLine]) -> list[OrderItem]:
    return [
        OrderItem(
            product_id=line.product_id,
            product_title=line.product_title,
            weight=line.weight,
            quantity=line.quantity,
            price=line.price,
            regular_price=line.regular_price,
        )
        for line in lines
    ]


def create_order_from_checkout(db: Session, data: CheckoutIn) -> tuple[Order, Totals]:
    if not data.items:
        raise InvalidRequest("No order items provided")

    c = data.customer
    if not c.name.strip() or not c.email or not c.phone.strip():
        raise InvalidRequest("Missing required customer information")

    if data.create_account and len(data.password or "") < MIN_PASSWORD_LENGTH:
        raise InvalidRequest(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
        )

    lines = _resolve_lines(db, data.items)
    totals = compute_totals(lines)
    customer = _upsert_customer(db, data)

    for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
        order = Order(
            order_number=generate_order_number(),
            customer_id=customer.id,
            customer_name=c.name.strip(),
            customer_email=customer.email,
            customer_phone=c.phone.strip(),
            street_address=c.street_address,
            city=c.city,
            state=c.state,
            zip_code=c.zip_code,
            delivery_option=c.delivery_option,
            delivery_instructions=c.delivery_instructions,
            subtotal=totals.subtotal,
            total_weight=totals.total_weight,
            status="pending",
            payment_status="unpaid",
        )
        order.items = _items_for(lines)
        db.add(order)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.warning("order number collision on attempt %d", attempt)
            continue
        except SQLAlchemyError as e:
            db.rollback()
            raise UpstreamError("Failed to create order", details=str(e))
        db.refresh(order)
        logger.info("order %s created for customer %s", order.order_number, customer.id)
        return order, totals

    raise UpstreamError("Failed to allocate an order number")


# --- state changes -----------------------------------------------------------


def update_status(
    db: Session,
    order_id: int,
    status: str,
    notes: str | None = None,
    actor: str = "admin",
) -> Outcome[Order]:
    if not status:
        raise InvalidRequest("Order ID and status are required")
    if status not in ORDER_STATUSES:
        raise InvalidRequest(
            f"Invalid status '{status}'. Expected one of: {', '.join(ORDER_STATUSES)}"
        )

    order = get_order(db, order_id)
    old_status = order.status
    now = utcnow()

    order.status = status
    if status == "cancelled" and not order.cancelled_at:
        order.cancelled_at = now
    if status == "paid":
        order.payment_status = "paid"
        order.paid_at = order.paid_at or now
    if status == "fulfilled" and not order.fulfilled_at:
        order.fulfilled_at = now
    db.add(order)
    _commit(db, "update order status")

    outcome = Outcome(order)
    record_timeline(
        db,
        outcome,
        order.id,
        "status_changed",
        description=f"Status changed from {old_status} to {status}",
        data={"old_status": old_status, "new_status": status, "notes": notes},
        created_by=actor,
    )
    return outcome


def cancel_order(db: Session, order_number: str, reason: str | None = None) -> Outcome[Order]:
    order = get_order_by_number(db, order_number)

    if order.status != "pending":
        raise InvalidRequest(f"Order cannot be cancelled. Current status: {order.status}")
    if order.invoiced_at is not None:
        raise InvalidRequest("Order cannot be cancelled because it has already been invoiced")

    order.status = "cancelled"
    order.cancellation_reason = (reason or "").strip() or DEFAULT_CANCEL_REASON
    order.cancelled_at = utcnow()
    db.add(order)
    _commit(db, "cancel order")

    outcome = Outcome(order)
    record_timeline(
        db,
        outcome,
        order.id,
        "order_cancelled",
        description="Order cancelled by customer",
        data={"reason": order.cancellation_reason},
        created_by="customer",
    )
    return outcome


def modification_block_reasons(order: Order) -> list[str]:
    reasons = []
    if order.order_locked:
        reasons.append(order.order_locked_reason or "Order is locked")
    if order.payment_link_url:
        reasons.append("A payment link has been issued")
    if order.invoiced_at is not None:
        reasons.append("Order has been invoiced")
    if order.status != "pending":
        reasons.append(f"Order status is {order.status}")
    if order.payment_status == "paid":
        reasons.append("Order has been paid")
    return reasons


def can_modify(order: Order) -> bool:
    return not modification_block_reasons(order)


def lock_status(order: Order) -> dict[str, Any]:
    return {
        "order_id": order.id,
        "order_number": order.order_number,
        "order_locked": order.order_locked,
        "order_locked_reason": order.order_locked_reason,
        "payment_link_url": order.payment_link_url,
        "has_payment_link": bool(order.payment_link_url),
        "can_modify": can_modify(order),
    }


_CONTACT_FIELDS = (
    "customer_name",
    "customer_phone",
    "street_address",
    "city",
    "state",
    "zip_code",
    "delivery_option",
    "delivery_instructions",
)


def modify_order(db: Session, order_number: str, changes: OrderModifyIn) -> Outcome[Order]:
    order = lookup_order(db, order_number, changes.email)

    reasons = modification_block_reasons(order)
    if reasons:
        raise InvalidRequest(
            "This order can no longer be modified", details={"reasons": reasons}
        )

    changed = []
    for field in _CONTACT_FIELDS:
        value = getattr(changes, field)
        if value is not None and value != getattr(order, field):
            setattr(order, field, value)
            changed.append(field)

    if changes.items is not None:
        if not changes.items:
            raise InvalidRequest("No order items provided")
        lines = _resolve_lines(db, changes.items)
        totals = compute_totals(lines)
        order.items = _items_for(lines)
        order.subtotal = totals.subtotal
        order.total_weight = totals.total_weight
        changed.append("items")

    if not changed:
        return Outcome(order)

    db.add(order)
    _commit(db, "update order")
    db.refresh(order)

    outcome = Outcome(order)
    record_timeline(
        db,
        outcome,
        order.id,
        "order_modified",
        description="Order modified by customer",
        data={"changed": changed},
        created_by="customer",
    )
    return outcome


def mark_order_paid(
    db: Session,
    order: Order,
    *,
    session_id: str | None = None,
    payment_intent_id: str | None = None,
    actor: str = "system",
    via: str | None = None,
) -> Outcome[bool]:
    """
    Mark an order paid. Returns an outcome whose value is False when the order
    was already paid through the same checkout session.
    """
    if order.payment_status == "paid" and (
        session_id is None or order.stripe_checkout_session_id == session_id
    ):
        return Outcome(False)

    now = utcnow()
    order.payment_status = "paid"
    if order.status in ("pending", "confirmed"):
        order.status = "paid"
    order.paid_at = now
    if session_id:
        order.stripe_checkout_session_id = session_id
    if payment_intent_id:
        order.stripe_payment_intent_id = payment_intent_id
    db.add(order)

    if order.customer_id:
        customer = db.query(Customer).filter(Customer.id == order.customer_id).first()
        if customer:
            customer.last_payment_at = now
            db.add(customer)

    _commit(db, "mark order paid")

    outcome = Outcome(True)
    record_timeline(
        db,
        outcome,
        order.id,
        "payment_completed",
        description="Payment received",
        data={
            "checkout_session_id": session_id,
            "payment_intent_id": payment_intent_id,
            "amount": str(order.subtotal),
            "via": via or actor,
        },
        created_by=actor,
    )
    return outcome


def apply_admin_action(
    db: Session,
    order_id: int,
    action: str,
    *,
    tracking_number: str | None = None,
    note: str | None = None,
    reason: str | None = None,
) -> Outcome[Order]:
    if action not in ADMIN_ACTIONS:
        raise InvalidRequest("Invalid action")

    order = get_order(db, order_id)
    if order.payment_status == "paid" and action not in PAID_ORDER_ACTIONS:
        raise InvalidRequest(f"Action {action} is not allowed on a paid order")

    if action == "mark_paid":
        outcome = Outcome(order)
        outcome.merge(mark_order_paid(db, order, actor="admin", via="manual"))
        return outcome

    now = utcnow()
    if action == "mark_fulfilled":
        if order.status != "paid":
            raise InvalidRequest("Only paid orders can be fulfilled")
        order.status = "fulfilled"
        order.fulfilled_at = now
        if tracking_number:
            order.tracking_number = tracking_number
        event = ("order_fulfilled", "Order fulfilled", {"tracking_number": tracking_number})
    elif action == "cancel_order":
        if order.status in ("cancelled", "fulfilled"):
            raise InvalidRequest(f"Order cannot be cancelled. Current status: {order.status}")
        order.status = "cancelled"
        order.cancelled_at = now
        order.cancellation_reason = reason or "Cancelled by admin"
        event = ("order_cancelled", "Order cancelled by admin", {"reason": order.cancellation_reason})
    elif action == "update_tracking":
        if not tracking_number:
            raise InvalidRequest("tracking_number is required")
        order.tracking_number = tracking_number
        event = ("tracking_updated", "Tracking number updated", {"tracking_number": tracking_number})
    else:
        if not note:
            raise InvalidRequest("note is required")
        stamp = now.strftime("%Y-%m-%d %H:%M")
        order.notes = f"{order.notes}\n[{stamp}] {note}" if order.notes else f"[{stamp}] {note}"
        event = ("note_added", "Note added", {"note": note})

    db.add(order)
    _commit(db, action.replace("_", " "))

    event_type, description, data = event
    outcome = Outcome(order)
    record_timeline(
        db, outcome, order.id, event_type, description=description, data=data, created_by="admin"
    )
    return outcome


# --- batch -------------------------------------------------------------------


def _int_option(db: Session, name: str, default: int) -> int:
    value = options.get_option(db, name, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("option %s=%r is not a whole number, using %d", name, value, default)
        return default


def batch_progress(db: Session) -> dict[str, Any]:
    """How close the open batch is to the vendor's minimum order weight."""
    goal = _int_option(db, "minimum_order_weight", DEFAULT_BATCH_GOAL_WEIGHT)
    offset = _int_option(db, "batch_progress_offset", 0)

    actual, order_count = (
        db.query(func.coalesce(func.sum(Order.total_weight), 0), func.count(Order.id))
        .filter(
            Order.status.in_(BATCH_STATUSES),
            Order.payment_status != "paid",
        )
        .one()
    )
    current = int(actual) + offset
    percentage = min(current / goal * 100, 100) if goal > 0 else 100.0
    return {
        "current_weight": current,
        "goal_weight": goal,
        "percentage": round(percentage, 1),
        "remaining": max(goal - current, 0),
        "order_count": order_count,
        "is_goal_met": current >= goal,
    }


def bulk_confirm(
    db: Session,
    order_ids: list[int],
    notes: str | None = None,
    ready_date: date | None = None,
) -> Outcome[dict[str, Any]]:
    """
    Confirm a set of pending orders for the vendor batch in one transaction.
    Orders that are missing or no longer pending are skipped and reported.
    """
    if not order_ids:
        raise InvalidRequest("Order IDs are required")

    wanted = list(dict.fromkeys(order_ids))
    found = {o.id: o for o in db.query(Order).filter(Order.id.in_(wanted)).all()}

    confirmed: list[Order] = []
    skipped = []
    for order_id in wanted:
        order = found.get(order_id)
        if order is None:
            skipped.append({"order_id": order_id, "reason": "Order not found"})
        elif order.status != "pending":
            skipped.append(
                {"order_id": order_id, "reason": f"Current status: {order.status}"}
            )
        else:
            order.status = "confirmed"
            db.add(order)
            confirmed.append(order)

    if confirmed:
        _commit(db, "confirm orders")

    outcome = Outcome(
        {"confirmed": [o.id for o in confirmed], "skipped": skipped}
    )
    for order in confirmed:
        record_timeline(
            db,
            outcome,
            order.id,
            "status_changed",
            description="Order confirmed for vendor batch",
            data={
                "old_status": "pending",
                "new_status": "confirmed",
                "vendor_notes": notes,
                "ready_date": ready_date.isoformat() if ready_date else None,
            },
            created_by="admin",
        )
    logger.info("bulk confirm: %d confirmed, %d skipped", len(confirmed), len(skipped))
    return outcome


# --- customers and maintenance ----------------------------------------------


def customer_stats(db: Session) -> list[tuple[Customer, int, Decimal]]:
    """Customers with order count and paid total, matched on email."""
    counts = (
        db.query(
            func.lower(Order.customer_email).label("email"),
            func.count(Order.id).label("order_count"),
        )
        .group_by(func.lower(Order.customer_email))
        .subquery()
    )
    spent = (
        db.query(
            func.lower(Order.customer_email).label("email"),
            func.sum(Order.subtotal).label("total_spent"),
        )
        .filter(Order.payment_status == "paid")
        .group_by(func.lower(Order.customer_email))
        .subquery()
    )
    rows = (
        db.query(Customer, counts.c.order_count, spent.c.total_spent)
        .outerjoin(counts, counts.c.email == Customer.email)
        .outerjoin(spent, spent.c.email == Customer.email)
        .order_by(Customer.created_at.desc(), Customer.id.desc())
        .all()
    )
    return [
        (customer, int(order_count or 0), _money(Decimal(str(total or 0))))
        for customer, order_count, total in rows
    ]


def reset_database(db: Session) -> dict[str, int]:
    """Delete all order data and customers. Products and options are kept."""
    deleted = {}
    try:
        for name, model in (
            ("webhook_logs", WebhookLogEntry),
            ("webhook_queue", WebhookQueueEntry),
            ("order_timeline", OrderTimelineEvent),
            ("order_items", OrderItem),
            ("orders", Order),
        ):
            deleted[name] = db.query(model).delete(synchronize_session=False)
        # the admin signs in with a customer account
        deleted["customers"] = (
            db.query(Customer)
            .filter(Customer.email != settings.ADMIN_EMAIL.lower())
            .delete(synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        raise UpstreamError("Failed to reset database", details=str(e))
    logger.warning("database reset: %s", deleted)
    return deleted
