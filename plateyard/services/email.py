import html as html_lib
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

import httpx

from plateyard.core.config import settings
from plateyard.models.order import Order

logger = logging.getLogger("plateyard.email")

MAILGUN_API = "https://api.mailgun.net/v3"


@dataclass(frozen=True)
class EmailResult:
    success: bool
    message_id: str | None = None
    error: str | None = None


def email_configured() -> bool:
    return bool(settings.MAILGUN_API_KEY and settings.MAILGUN_DOMAIN)


def send_email(
    http: httpx.Client, to: str, subject: str, html: str, text: str | None = None
) -> EmailResult:
    if not email_configured():
        return EmailResult(success=False, error="Mailgun is not configured")

    data = {
        "from": settings.MAILGUN_FROM_EMAIL,
        "to": to,
        "subject": subject,
        "html": html,
    }
    if text:
        data["text"] = text

    try:
        resp = http.post(
            f"{MAILGUN_API}/{settings.MAILGUN_DOMAIN}/messages",
            auth=("api", settings.MAILGUN_API_KEY),
            data=data,
        )
    except httpx.HTTPError as e:
        logger.warning("email to %s failed: %s", to, e)
        return EmailResult(success=False, error=str(e))

    if not resp.is_success:
        logger.warning("mailgun rejected email to %s: %s", to, resp.status_code)
        return EmailResult(success=False, error=f"Mailgun returned {resp.status_code}")

    try:
        body = resp.json()
    except ValueError:
        # accepted, but without the usual JSON body
        body = None
    message_id = body.get("id") if isinstance(body, dict) else None
    logger.info("email sent to %s id=%s", to, message_id)
    return EmailResult(success=True, message_id=message_id)


def send_payment_link_email(
    http: httpx.Client,
    *,
    to: str,
    customer_name: str,
    order_number: str,
    amount: Decimal,
    payment_url: str,
) -> EmailResult:
    subject = f"Your payment link for order {order_number}"
    safe_name = html_lib.escape(customer_name)
    text = (
        f"Hi {customer_name},\n\n"
        f"Your bumper plates are ready. Pay ${amount:.2f} for order "
        f"{order_number} here:\n{payment_url}\n\n"
        "Thanks for ordering from The Plate Yard."
    )
    html = (
        f"<p>Hi {safe_name},</p>"
        f"<p>Your bumper plates are ready. Pay <strong>${amount:.2f}</strong> "
        f"for order <strong>{html_lib.escape(order_number)}</strong>.</p>"
        f'<p><a href="{html_lib.escape(payment_url)}">Complete payment</a></p>'
        "<p>Thanks for ordering from The Plate Yard.</p>"
    )
    return send_email(http, to, subject, html, text)


def send_payment_receipt_email(http: httpx.Client, order: Order) -> EmailResult:
    """Receipt for a paid order, listing each plate pair and the amount paid."""
    paid_at = order.paid_at or datetime.now()
    paid_on = f"{paid_at:%B} {paid_at.day}, {paid_at.year}"
    subject = f"Payment Received - Order {order.order_number} | The Plate Yard"

    rows = []
    lines = []
    for item in order.items:
        title = item.product_title or f"{item.weight}lb Bumper Plate"
        line_total = item.price * item.quantity
        rows.append(
            f"<tr><td>{html_lib.escape(title)}</td><td>{item.quantity}</td>"
            f"<td>${line_total:.2f}</td></tr>"
        )
        lines.append(f"  {item.quantity} x {title}: ${line_total:.2f}")

    text = (
        f"Thank you, {order.customer_name}!\n\n"
        f"We received ${order.subtotal:.2f} for order {order.order_number} "
        f"on {paid_on}.\n\n" + "\n".join(lines) + "\n\n"
        f"View your orders: {settings.BASE_URL}/my-account"
    )
    html = (
        f"<h2>Thank you, {html_lib.escape(order.customer_name)}!</h2>"
        f"<p>We received <strong>${order.subtotal:.2f}</strong> for order "
        f"<strong>{html_lib.escape(order.order_number)}</strong> on {paid_on}.</p>"
        "<table><tr><th>Item</th><th>Qty</th><th>Total</th></tr>"
        + "".join(rows)
        + "</table>"
        f'<p><a href="{html_lib.escape(settings.BASE_URL)}/my-account">View my orders</a></p>'
        "<p>Questions? Reply to this email and we will help.</p>"
    )
    return send_email(http, order.customer_email, subject, html, text)
