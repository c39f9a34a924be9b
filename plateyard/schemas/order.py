from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class CheckoutItemIn(BaseModel):
    product_id: int
    quantity: int = Field(ge=1, le=100)


class CheckoutCustomerIn(BaseModel):
    # presence is checked by the checkout itself so the error is descriptive
    name: str = ""
    email: EmailStr | None = None
    phone: str = ""
    street_address: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    delivery_option: str | None = None
    delivery_instructions: str | None = None


class CheckoutIn(BaseModel):
    customer: CheckoutCustomerIn
    items: list[CheckoutItemIn] = []
    create_account: bool = False
    password: str | None = Field(default=None, max_length=128)


class OrderItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    product_id: int | None
    product_title: str | None
    weight: int
    quantity: int
    price: Decimal
    regular_price: Decimal | None
    image_url: str | None = None


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_number: str
    customer_id: int | None
    customer_name: str
    customer_email: str
    customer_phone: str
    street_address: str | None
    city: str | None
    state: str | None
    zip_code: str | None
    delivery_option: str | None
    delivery_instructions: str | None
    subtotal: Decimal
    total_weight: int
    status: str
    payment_status: str
    paid_at: datetime | None
    payment_link_url: str | None
    payment_link_created_at: datetime | None
    order_locked: bool
    order_locked_reason: str | None
    invoiced_at: datetime | None
    cancelled_at: datetime | None
    cancellation_reason: str | None
    fulfilled_at: datetime | None
    tracking_number: str | None
    notes: str | None
    created_at: datetime | None
    updated_at: datetime | None
    items: list[OrderItemOut]


class TimelineEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    event_type: str
    description: str | None
    event_data: dict[str, Any] | None
    created_by: str
    created_at: datetime | None


class SideEffectWarning(BaseModel):
    effect: str
    error: str


class CheckoutOut(BaseModel):
    success: bool = True
    order: OrderOut
    order_number: str
    customer_id: int
    total_savings: Decimal
    item_count: int
    redirect_url: str


class OrderEnvelope(BaseModel):
    success: bool = True
    order: OrderOut
    warnings: list[SideEffectWarning] = []


class OrderDetailOut(BaseModel):
    success: bool = True
    order: OrderOut
    timeline: list[TimelineEventOut]
    customer: dict[str, Any] | None


class OrderListOut(BaseModel):
    success: bool = True
    orders: list[OrderOut]
    count: int


class LookupIn(BaseModel):
    order_number: str = ""
    email: str = ""


class LookupOut(BaseModel):
    success: bool = True
    order: OrderOut
    can_modify: bool


class CancelIn(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class ModifyItemIn(BaseModel):
    product_id: int
    quantity: int = Field(ge=1, le=100)


class OrderModifyIn(BaseModel):
    email: str
    customer_name: str | None = None
    customer_phone: str | None = None
    street_address: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    delivery_option: str | None = None
    delivery_instructions: str | None = None
    items: list[ModifyItemIn] | None = None


class StatusUpdateIn(BaseModel):
    status: str = ""
    notes: str | None = None


class AdminActionIn(BaseModel):
    action: str
    tracking_number: str | None = None
    note: str | None = None
    reason: str | None = None


class LockStatusOut(BaseModel):
    success: bool = True
    order_id: int
    order_number: str
    order_locked: bool
    order_locked_reason: str | None
    payment_link_url: str | None
    has_payment_link: bool
    can_modify: bool


class PaymentLinkIn(BaseModel):
    amount: Decimal | None = None
    send_email: bool = True


class PaymentLinkOut(BaseModel):
    success: bool = True
    payment_url: str
    checkout_session_id: str | None
    already_exists: bool = False
    webhook_sent: bool = False
    email_sent: bool = False
    warnings: list[SideEffectWarning] = []


class BulkPaymentLinkIn(BaseModel):
    order_ids: list[int] = Field(min_length=1, max_length=200)
    send_email: bool = True


class BulkPaymentLinkResult(BaseModel):
    order_id: int
    success: bool
    payment_url: str | None = None
    error: str | None = None


class BulkPaymentLinkOut(BaseModel):
    success: bool = True
    batch_id: str
    succeeded: int
    failed: int
    results: list[BulkPaymentLinkResult]


class ManualWebhookIn(BaseModel):
    webhook_type: str


class PaymentSuccessOut(BaseModel):
    success: bool = True
    order_number: str
    payment_status: str
    session_status: str | None
    newly_paid: bool
    amount_total: int | None


class BulkConfirmIn(BaseModel):
    order_ids: list[int] = Field(default_factory=list, max_length=200)
    notes: str | None = None
    ready_date: date | None = None


class SkippedOrder(BaseModel):
    order_id: int
    reason: str


class BulkConfirmOut(BaseModel):
    success: bool = True
    confirmed_count: int
    confirmed: list[int]
    skipped: list[SkippedOrder]
    message: str
    warnings: list[SideEffectWarning] = []


class ReceiptOut(BaseModel):
    success: bool = True
    message: str
    recipient: str
    message_id: str | None = None
    warnings: list[SideEffectWarning] = []


class BatchProgressOut(BaseModel):
    success: bool = True
    current_weight: int
    goal_weight: int
    percentage: float
    remaining: int
    order_count: int
    is_goal_met: bool
