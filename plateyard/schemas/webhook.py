from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict


class WebhookSettingsOut(BaseModel):
    success: bool = True
    webhook_url: str
    webhook_enabled: bool
    webhook_timeout: int
    webhook_retry_attempts: int
    webhook_retry_delay: int
    include_customer_data: bool
    include_order_items: bool
    has_webhook_secret: bool


class WebhookSettingsIn(BaseModel):
    # ranges are checked when applying so the message can name the field
    webhook_url: str | None = None
    webhook_enabled: bool | None = None
    webhook_timeout: int | None = None
    webhook_retry_attempts: int | None = None
    webhook_retry_delay: int | None = None
    include_customer_data: bool | None = None
    include_order_items: bool | None = None
    webhook_secret: str | None = None


class WebhookStatsOut(BaseModel):
    success: bool = True
    total_sent: int
    successful: int
    failed: int
    queued: int
    processing: int
    sent: int
    failed_entries: int
    avg_response_time: int


class QueueEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int | None
    event_type: str
    webhook_url: str
    status: str
    attempts: int
    max_attempts: int
    next_retry_at: datetime | None
    last_error: str | None
    sent_at: datetime | None
    failed_at: datetime | None
    created_at: datetime | None


class LogEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    queue_entry_id: int | None
    order_id: int | None
    event_type: str
    webhook_url: str
    success: bool
    status_code: int
    response_time_ms: int
    response_body: str | None
    error_message: str | None
    attempt: int
    created_at: datetime | None


class QueueRunOut(BaseModel):
    success: bool = True
    processed: int
    sent: int
    retried: int
    failed: int
    skipped: int
    message: str
    timestamp: datetime


class WebhookTriggerOut(BaseModel):
    success: bool
    error: str | None = None
    entry_id: int | None = None
    status: str | None = None
    details: dict[str, Any] | None = None
